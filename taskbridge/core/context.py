"""Per-run context threaded through the sync components."""

from __future__ import annotations

import logging
from typing import Any

from taskbridge.utils.logging import parse_level


class SyncContext:
    """
    Carries the active log level for the sync core.

    Every component that logs during a cycle receives the context instead of
    consulting a process-wide flag. ``set_log_level`` takes effect for the
    next log call, including one made mid-cycle.

    The level lives only on the context. Contexts sharing a logger name never
    see each other's level; the logger itself stays open to DEBUG and the
    root handlers decide what reaches the console.
    """

    def __init__(self, log_level: str | int = "INFO", logger_name: str = "taskbridge.sync"):
        self.logger = logging.getLogger(logger_name)
        self.logger.setLevel(logging.DEBUG)
        self._levelno = logging.INFO
        self.set_log_level(log_level)

    @property
    def log_level(self) -> str:
        return logging.getLevelName(self._levelno)

    def set_log_level(self, level: str | int) -> None:
        self._levelno, _ = parse_level(level)

    def is_enabled_for(self, levelno: int) -> bool:
        return levelno >= self._levelno

    def log(self, levelno: int, msg: str, *args: Any, **kwargs: Any) -> None:
        if not self.is_enabled_for(levelno):
            return
        kwargs.setdefault("extra", {"log_category": "sync"})
        self.logger.log(levelno, msg, *args, **kwargs)

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.log(logging.ERROR, msg, *args, **kwargs)
