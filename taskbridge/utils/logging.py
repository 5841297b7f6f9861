"""Logging handlers for the CLI and the sync log files."""
from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Mapping

from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from taskbridge.core.config import AppConfig


_LEVEL_MAP: Mapping[str, int] = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

FILE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def parse_level(value: str | int) -> tuple[int, str]:
    """Return ``(levelno, levelname)`` for a level name or number."""
    if isinstance(value, int):
        return value, logging.getLevelName(value)
    level_name = str(value).upper()
    if level_name not in _LEVEL_MAP:
        raise ValueError(f"Unsupported log level: {value}")
    return _LEVEL_MAP[level_name], level_name


class SeverityOverrideFilter(logging.Filter):
    """Re-level records by their ``log_category`` extra (``general.log_overrides``)."""

    def __init__(self, category_levels: Mapping[str, str]):
        super().__init__()
        self.category_levels = {
            category: parse_level(level)[0] for category, level in category_levels.items()
        }

    def filter(self, record: logging.LogRecord) -> bool:
        category = getattr(record, "log_category", None)
        levelno = self.category_levels.get(category) if category else None
        if levelno is not None:
            record.levelno = levelno
            record.levelname = logging.getLevelName(levelno)
        return True


def build_console_handler(levelno: int, console: Console | None = None) -> logging.Handler:
    handler = RichHandler(console=console, rich_tracebacks=True, show_time=False, show_path=False)
    handler.setLevel(levelno)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def build_file_handler(config: AppConfig) -> logging.Handler:
    """Rotating log under ``data_dir/logs``; always records DEBUG."""
    log_dir = config.general.data_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_dir / config.general.log_file_name,
        maxBytes=config.general.log_file_max_bytes,
        backupCount=config.general.log_file_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(
    config: AppConfig,
    *,
    level_name: str | None = None,
    console: Console | None = None,
) -> Path:
    """Replace the root handlers with a console handler and a rotating file.

    The console shows ``level_name`` (default ``general.log_level``) and up;
    the file keeps everything. The sync core filters its own records through
    ``SyncContext``, so the root logger is left open to DEBUG.

    Returns:
        Path of the rotating log file
    """
    levelno, _ = parse_level(level_name or config.general.log_level)
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.DEBUG)

    overrides = SeverityOverrideFilter(config.general.log_overrides)
    for handler in (build_console_handler(levelno, console), build_file_handler(config)):
        handler.addFilter(overrides)
        root.addHandler(handler)

    logging.captureWarnings(True)

    # caldav logs every request at INFO, aiosqlite every statement at DEBUG
    for noisy in ("caldav", "aiosqlite"):
        logging.getLogger(noisy).setLevel(max(levelno, logging.WARNING))

    return config.general.data_dir / "logs" / config.general.log_file_name


def setup_sync_file_logging(log_dir: Path) -> logging.FileHandler:
    """
    Add a file handler capturing one sync run.

    Args:
        log_dir: Directory for ``sync_<timestamp>.log`` (created if missing)

    Returns:
        The handler added to the root logger; remove it when the run ends
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"sync_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt=DATE_FORMAT))
    logging.getLogger().addHandler(file_handler)
    logging.getLogger(__name__).info(f"Sync log file created: {log_file}")
    return file_handler
