"""Command line entry points: ``status`` and ``demo``."""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
import tempfile
from io import StringIO
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from rich.console import Console
from rich.table import Table

from .auth import AuthUser, StaticAuthProvider
from .configuration import ConfigurationBundle, load_runtime_configuration
from .errors import LocalStoreError
from .logging_utils import LoggingSettings, setup_logging
from .runtime import SyncRuntime
from .snapshot import BehaviorEvent, Child
from .store.document import InMemoryDocumentDatabase
from .store.local import FamilyIdStore, LocalStore, StorageSettings
from .sync.queue import QueueSettings

logger = logging.getLogger("familysync.cli")

DEMO_CONFIG: Dict[str, Dict[str, float]] = {
    "storage": {"save_debounce": 0.05},
    "queue": {"debounce_interval": 0.1, "min_sync_interval": 0.05, "base_delay": 0.1},
}


def render_rich(render_fn: Callable[[Console], None]) -> str:
    """Render a Rich layout to an ANSI string without printing live."""

    terminal_size = shutil.get_terminal_size(fallback=(80, 24))
    console = Console(
        record=True,
        force_terminal=True,
        color_system="auto",
        width=max(20, terminal_size.columns),
        file=StringIO(),
    )
    render_fn(console)
    return console.export_text(clear=False, styles=True)


def render_status(bundle: ConfigurationBundle) -> str:
    """Summarize configuration and the locally stored snapshot."""

    storage = StorageSettings.from_config(bundle.merged)
    queue = QueueSettings.from_config(bundle.merged)
    store = LocalStore.from_settings(bundle.data_dir, storage)
    family_id = FamilyIdStore.from_settings(bundle.data_dir, storage).get()

    load_error: Optional[str] = None
    snapshot = None
    try:
        snapshot = store.load()
    except LocalStoreError as exc:
        load_error = str(exc)

    def _render(console: Console) -> None:
        table = Table(title="Family Sync Status", show_header=False)
        table.add_column("Property", style="bold")
        table.add_column("Value")

        table.add_row("Config Status", bundle.status)
        table.add_row("Data Dir", str(bundle.data_dir))
        table.add_row("Snapshot File", str(store.path))
        table.add_row("Family ID", family_id or "(not signed in)")
        table.add_row(
            "Queue",
            f"timeout={queue.operation_timeout:g}s retries={queue.max_retries} "
            f"debounce={queue.debounce_interval:g}s interval={queue.min_sync_interval:g}s",
        )

        if load_error:
            table.add_row("Snapshot Error", load_error)
        elif snapshot is None:
            table.add_row("Snapshot", "(none saved yet)")
        else:
            table.add_row("Family", snapshot.family.name)
            table.add_row("Onboarding", "complete" if snapshot.has_completed_onboarding else "pending")
            for name, count in snapshot.counts().items():
                table.add_row(name.replace("_", " ").title(), str(count))
        console.print(table)

        problems = [diag for diag in bundle.diagnostics if diag.level != "info"]
        if problems:
            diag_table = Table(title="Diagnostics")
            diag_table.add_column("Level", style="bold")
            diag_table.add_column("Message")
            for diag in problems:
                diag_table.add_row(diag.level, diag.message)
            console.print(diag_table)

    return render_rich(_render)


async def run_demo(base_dir: Path) -> Dict[str, Dict[str, int]]:
    """Two devices of one parent converge through a shared in-memory database."""

    database = InMemoryDocumentDatabase(latency=0.01)
    user = AuthUser(uid="parent-demo", display_name="Demo Parent")

    first = SyncRuntime.create(base_dir / "device-a", database, DEMO_CONFIG, auth=StaticAuthProvider())
    second = SyncRuntime.create(base_dir / "device-b", database, DEMO_CONFIG, auth=StaticAuthProvider())
    first.start()
    second.start()

    ava = first.repository.add_child(Child(name="Ava", age=6))
    leo = first.repository.add_child(Child(name="Leo", age=4))
    routine = first.repository.snapshot.behavior_types[0]
    for child in (ava, leo):
        first.repository.add_behavior_event(
            BehaviorEvent(child_id=child.id, behavior_type_id=routine.id, points_applied=routine.default_points)
        )
    await first.repository.flush()
    task = first.coordinator.handle_auth_state_change(user)
    if task is not None:
        await task

    second.repository.add_child(Child(name="Mia", age=8))
    await second.repository.flush()
    task = second.coordinator.handle_auth_state_change(user)
    if task is not None:
        await task

    first.coordinator.request_full_sync()
    await first.queue.wait_idle()
    await asyncio.sleep(0.2)

    counts = {
        "device-a": first.repository.snapshot.counts(),
        "device-b": second.repository.snapshot.counts(),
    }
    await first.shutdown()
    await second.shutdown()
    return counts


def render_demo(counts: Dict[str, Dict[str, int]]) -> str:
    def _render(console: Console) -> None:
        table = Table(title="Demo: converged snapshots")
        table.add_column("Collection", style="bold")
        devices = list(counts)
        for device in devices:
            table.add_column(device, justify="right")
        for name in counts[devices[0]]:
            table.add_row(name, *(str(counts[device][name]) for device in devices))
        console.print(table)

    return render_rich(_render)


def _usage() -> str:
    return "\n".join(
        [
            "usage: python -m familysync [status|demo|help]",
            "  status  Show configuration and local snapshot counts",
            "  demo    Sync two simulated devices through an in-memory database",
        ]
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args: List[str] = list(sys.argv[1:] if argv is None else argv)
    command = args[0].lower() if args else "status"

    if command in {"help", "-h", "--help"}:
        print(_usage())
        return 0

    bundle = load_runtime_configuration()
    if bundle.status == "ready":
        log_settings = LoggingSettings.from_config(bundle.merged)
        # the terminal is for the rendered tables
        log_settings.console = False
        bundle.log_path = setup_logging(bundle.data_dir, log_settings)

    if command == "status":
        print(render_status(bundle))
        return 0 if bundle.status != "invalid" else 1
    if command == "demo":
        with tempfile.TemporaryDirectory(prefix="familysync-demo-") as tmp:
            counts = asyncio.run(run_demo(Path(tmp)))
        print(render_demo(counts))
        return 0

    print(f"[familysync] Unknown command '{command}'.")
    print(_usage())
    return 2


__all__ = ["main", "render_demo", "render_rich", "render_status", "run_demo"]
