"""Logging helpers for the familysync runtime.

Every record is stamped with the name of the device that wrote it, so the
logs of two devices syncing one family can be read side by side. Queue and
coordinator records may carry a ``sync`` mapping (operation id, kind,
attempt) through ``extra=``; the JSON formatter keeps it as a field.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import Any, Dict, Optional, Union

LOG_SUBPATH = Path("logs") / "familysync.log"
STRUCTURED_LOG_SUBPATH = Path("logs") / "familysync.jsonl"
REPO_ROOT = Path(__file__).resolve().parent.parent
FALLBACK_ROOT = REPO_ROOT / ".familysync_runtime"
LOGGER_NAME = "familysync"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(device)s %(name)s: %(message)s"


@dataclass
class LoggingSettings:
    level: Union[str, int] = "INFO"
    structured: bool = False
    console: bool = True
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 3
    device_name: str = "this device"

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "LoggingSettings":
        section = config.get("logging", {}) or {}
        runtime = config.get("runtime", {}) or {}
        defaults = cls()
        return cls(
            level=section.get("level", defaults.level),
            structured=bool(section.get("structured", defaults.structured)),
            console=bool(section.get("console", defaults.console)),
            max_bytes=int(section.get("max_bytes", defaults.max_bytes)),
            backup_count=int(section.get("backup_count", defaults.backup_count)),
            device_name=str(runtime.get("device_name", defaults.device_name)),
        )


class DeviceFilter(logging.Filter):
    """Attach ``record.device`` unless the caller already set one."""

    def __init__(self, device_name: str):
        super().__init__()
        self.device_name = device_name

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "device"):
            record.device = self.device_name
        return True


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "device": getattr(record, "device", None),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        sync_context = getattr(record, "sync", None)
        if sync_context:
            log_entry["sync"] = sync_context
        return json.dumps(log_entry, default=str)


def setup_logging(data_dir: Path, settings: Optional[LoggingSettings] = None) -> Path:
    """Configure familysync logging; safe to call repeatedly.

    Args:
        data_dir: Directory that holds ``logs/``.
        settings: Level, outputs and rotation; defaults when omitted.

    Returns:
        Path to the primary (text) log file.
    """
    settings = settings or LoggingSettings()
    log_path = _resolve_path(data_dir, LOG_SUBPATH)
    device_filter = DeviceFilter(settings.device_name)
    text_formatter = logging.Formatter(TEXT_FORMAT)

    logger = logging.getLogger(LOGGER_NAME)
    _reset_handlers(logger)
    logger.setLevel(_resolve_level(settings.level))
    logger.addHandler(_rotating_handler(log_path, settings, text_formatter, device_filter))

    if settings.console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(text_formatter)
        console_handler.addFilter(device_filter)
        logger.addHandler(console_handler)

    if settings.structured:
        json_path = _resolve_path(data_dir, STRUCTURED_LOG_SUBPATH)
        logger.addHandler(_rotating_handler(json_path, settings, JSONFormatter(), device_filter))

    logger.propagate = False
    return log_path


def _rotating_handler(
    path: Path,
    settings: LoggingSettings,
    formatter: logging.Formatter,
    device_filter: DeviceFilter,
) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=settings.max_bytes,
        backupCount=settings.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(formatter)
    handler.addFilter(device_filter)
    return handler


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return int(level)


def _resolve_path(data_dir: Path, subpath: Path) -> Path:
    primary = data_dir / subpath
    try:
        primary.parent.mkdir(parents=True, exist_ok=True)
        return primary
    except PermissionError:
        fallback = FALLBACK_ROOT / subpath
        fallback.parent.mkdir(parents=True, exist_ok=True)
        print(
            f"[config] Unable to write logs under '{data_dir}'; "
            f"falling back to '{fallback.parent}'.",
            file=sys.stderr,
        )
        return fallback


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


__all__ = [
    "DeviceFilter",
    "FALLBACK_ROOT",
    "JSONFormatter",
    "LOG_SUBPATH",
    "LoggingSettings",
    "STRUCTURED_LOG_SUBPATH",
    "setup_logging",
]
