"""On-device persistence of the aggregate snapshot."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from ..errors import LocalStoreError
from ..snapshot import AppDataSnapshot

logger = logging.getLogger("familysync.store.local")


@dataclass
class StorageSettings:
    """Settings for local persistence."""

    snapshot_file: str = "state/app_data.json"
    family_file: str = "state/family.json"
    save_debounce: float = 0.1

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "StorageSettings":
        raw = config.get("storage", {}) if config else {}
        return cls(
            snapshot_file=str(raw.get("snapshot_file", "state/app_data.json")),
            family_file=str(raw.get("family_file", "state/family.json")),
            save_debounce=float(raw.get("save_debounce", 0.1)),
        )


def _atomic_write_json(path: Path, payload: Dict[str, Any]) -> None:
    """Write JSON next to ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class LocalStore:
    """Single JSON document holding the whole snapshot.

    ``load`` returns ``None`` when nothing has been saved yet; every other
    failure is raised as :class:`LocalStoreError`.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    @classmethod
    def from_settings(cls, data_dir: Path, settings: StorageSettings) -> "LocalStore":
        return cls(Path(data_dir) / settings.snapshot_file)

    def load(self) -> Optional[AppDataSnapshot]:
        if not self.path.exists():
            logger.debug("No local snapshot at %s", self.path)
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            snapshot = AppDataSnapshot.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise LocalStoreError("load", str(exc), context={"path": str(self.path)}) from exc
        logger.debug("Loaded local snapshot from %s", self.path)
        return snapshot

    def save(self, snapshot: AppDataSnapshot) -> None:
        try:
            _atomic_write_json(self.path, snapshot.to_dict())
        except (OSError, TypeError, ValueError) as exc:
            raise LocalStoreError("save", str(exc), context={"path": str(self.path)}) from exc
        logger.debug(
            "Saved local snapshot to %s (%d children, %d events)",
            self.path,
            len(snapshot.children),
            len(snapshot.behavior_events),
        )

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise LocalStoreError("clear", str(exc), context={"path": str(self.path)}) from exc
        logger.info("Cleared local snapshot at %s", self.path)


class FamilyIdStore:
    """Remembers which family this device belongs to across launches."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @classmethod
    def from_settings(cls, data_dir: Path, settings: StorageSettings) -> "FamilyIdStore":
        return cls(Path(data_dir) / settings.family_file)

    def get(self) -> Optional[str]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable family id file %s: %s", self.path, exc)
            return None
        family_id = data.get("family_id") if isinstance(data, dict) else None
        return str(family_id) if family_id else None

    def set(self, family_id: str) -> None:
        try:
            _atomic_write_json(self.path, {"family_id": family_id})
        except OSError as exc:
            raise LocalStoreError("save", str(exc), context={"path": str(self.path)}) from exc

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise LocalStoreError("clear", str(exc), context={"path": str(self.path)}) from exc


__all__ = ["FamilyIdStore", "LocalStore", "StorageSettings"]
