"""Connectivity monitor that feeds the sync coordinator a boolean signal."""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import psutil

from .events import EventChannel

logger = logging.getLogger("familysync.connectivity")

DEFAULT_CONNECTIVITY_TIMEOUT = 1.0
DEFAULT_POLL_INTERVAL = 5.0


@dataclass
class ConnectivitySettings:
    """Settings for connectivity probing."""

    enabled: bool = True
    checks: Sequence[str] = ()
    timeout: float = DEFAULT_CONNECTIVITY_TIMEOUT
    interval: float = DEFAULT_POLL_INTERVAL

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ConnectivitySettings":
        raw = config.get("connectivity", {}) if config else {}

        checks = raw.get("checks", [])
        if isinstance(checks, str):
            checks = [checks]
        normalized = tuple(str(item).strip() for item in checks or [] if str(item).strip())

        def _positive(key: str, default: float) -> float:
            try:
                value = float(raw.get(key, default))
            except (TypeError, ValueError):
                return default
            return value if value > 0 else default

        return cls(
            enabled=bool(raw.get("enabled", True)),
            checks=normalized,
            timeout=_positive("timeout", DEFAULT_CONNECTIVITY_TIMEOUT),
            interval=_positive("interval", DEFAULT_POLL_INTERVAL),
        )


class ConnectivityMonitor:
    """Holds the connected flag and tells listeners when it flips."""

    def __init__(self, settings: Optional[ConnectivitySettings] = None, connected: bool = True):
        self.settings = settings or ConnectivitySettings()
        self._connected = connected
        self._changes: EventChannel[bool] = EventChannel("connectivity")
        self._task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    def subscribe(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        return self._changes.subscribe(listener)

    def set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        logger.info("Network status: %s", "connected" if connected else "disconnected")
        self._changes.publish(connected)

    def probe(self) -> bool:
        """Blocking check: an interface is up and a configured target, if any, answers."""
        if not _any_interface_up():
            return False
        if not self.settings.checks:
            return True
        results = _run_connectivity_checks(self.settings.checks, timeout=self.settings.timeout)
        return any(entry["reachable"] for entry in results)

    async def refresh(self) -> bool:
        connected = await asyncio.to_thread(self.probe)
        self.set_connected(connected)
        return connected

    async def run(self) -> None:
        while True:
            try:
                await self.refresh()
            except OSError as exc:
                logger.warning("Connectivity probe failed: %s", exc)
            await asyncio.sleep(self.settings.interval)

    def start(self) -> None:
        if not self.settings.enabled:
            logger.info("Connectivity polling disabled via configuration")
            return
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None


def _any_interface_up() -> bool:
    addrs = psutil.net_if_addrs()
    stats = psutil.net_if_stats()
    for name, entries in addrs.items():
        if _is_loopback(name, entries):
            continue
        entry_stats = stats.get(name)
        if entry_stats is not None and getattr(entry_stats, "isup", False):
            return True
    return False


def _is_loopback(name: str, entries: Sequence[Any]) -> bool:
    if name.lower().startswith("lo"):
        return True
    for addr in entries:
        address = getattr(addr, "address", "")
        if isinstance(address, str) and (address.startswith("127.") or address == "::1"):
            return True
    return False


def _run_connectivity_checks(targets: Sequence[str], *, timeout: float) -> List[Dict[str, Any]]:
    results: List[Dict[str, Any]] = []
    for target in targets:
        host, port = _parse_target(target)
        try:
            with socket.create_connection((host, port), timeout=timeout):
                results.append({"target": f"{host}:{port}", "reachable": True})
        except OSError as exc:
            results.append({"target": f"{host}:{port}", "reachable": False, "detail": str(exc)})
    return results


def _parse_target(target: str) -> Tuple[str, int]:
    default_port = 443
    stripped = target.strip()
    if not stripped:
        return ("localhost", default_port)
    if stripped.count(":") == 1 and stripped.split(":", 1)[1].isdigit():
        host, raw_port = stripped.split(":", 1)
        return (host or "localhost", int(raw_port))
    return (stripped, default_port)


__all__ = ["ConnectivityMonitor", "ConnectivitySettings"]
