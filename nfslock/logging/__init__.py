"""Structured logging for nfslock.

Everything logs under the ``nfslock`` logger. Records carry the lock they
concern in ``extra={"metadata": {...}}``; the JSON file sink writes that
metadata out together with the pid, since the processes sharing a lock
usually share a log file too.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from collections.abc import Mapping
from contextlib import contextmanager
from logging import Handler, LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator, Optional

_DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
_DEFAULT_BACKUP_COUNT = 5
_LOGGER_NAME = "nfslock"
_DEFAULT_LEVEL = logging.WARNING
_LOCK = threading.RLock()
_CONFIGURED = False
_FILE_HANDLER: Optional[Handler] = None

_LEVEL_COLORS = {
    "DEBUG": "\033[36m",  # cyan
    "WARNING": "\033[33m",  # yellow
    "ERROR": "\033[31m",  # red
    "CRITICAL": "\033[41m",  # red background
}
_RESET_COLOR = "\033[0m"


class NFSLockJsonFormatter(logging.Formatter):
    """One JSON object per record, with the lock path lifted to the top."""

    default_time_format = "%Y-%m-%dT%H:%M:%S"

    def format(self, record: LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.default_time_format),
            "level": record.levelname,
            "component": record.name,
            "pid": record.process,
            "message": record.getMessage(),
        }
        metadata = getattr(record, "metadata", None)
        if isinstance(metadata, Mapping) and metadata:
            if "lock" in metadata:
                payload["lock"] = str(metadata["lock"])
            payload["metadata"] = dict(metadata)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


class NFSLockConsoleFormatter(logging.Formatter):
    """Console lines tagged with the pid; coloured on a terminal."""

    def format(self, record: LogRecord) -> str:  # noqa: D401 - inherited docs
        base = super().format(record)
        colour = _LEVEL_COLORS.get(record.levelname)
        if not colour or not sys.stderr.isatty():
            return base
        return f"{colour}{base}{_RESET_COLOR}"


def _coerce_level(value: Optional[str | int]) -> Optional[int]:
    """Map ``value`` to a logging level; None when it names none."""

    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value
    value = value.strip()
    if value.isdigit():
        return int(value)
    mapped = getattr(logging, value.upper(), None)
    return mapped if isinstance(mapped, int) else None


def configure_logging(
    level: Optional[str | int] = None,
    *,
    log_file: Optional[Path | str] = None,
) -> None:
    """Set up the ``nfslock`` logger, optionally with a rotating JSON file.

    The level comes from ``level`` or ``NFSLOCK_LOG_LEVEL``; without either
    the first call sets WARNING and later calls keep whatever is in effect.
    A file sink is only attached when ``log_file`` or ``NFSLOCK_LOG_FILE``
    names one.
    """

    global _CONFIGURED, _FILE_HANDLER

    with _LOCK:
        requested = _coerce_level(level)
        if requested is None:
            requested = _coerce_level(os.getenv("NFSLOCK_LOG_LEVEL"))
        logger = logging.getLogger(_LOGGER_NAME)

        if not _CONFIGURED:
            logger.handlers.clear()
            logger.propagate = False
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(
                NFSLockConsoleFormatter(
                    fmt="%(asctime)s %(levelname)s [%(process)d] %(name)s %(message)s",
                    datefmt="%H:%M:%S",
                )
            )
            logger.addHandler(console_handler)
            logger.setLevel(requested if requested is not None else _DEFAULT_LEVEL)
            _CONFIGURED = True
        elif requested is not None:
            logger.setLevel(requested)

        target = log_file or os.getenv("NFSLOCK_LOG_FILE")
        if not target:
            return
        target_file = Path(target).resolve()
        if _FILE_HANDLER is not None:
            if getattr(_FILE_HANDLER, "baseFilename", None) == str(target_file):
                return
            logger.removeHandler(_FILE_HANDLER)
            _FILE_HANDLER.close()
            _FILE_HANDLER = None

        target_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            target_file,
            maxBytes=_DEFAULT_MAX_BYTES,
            backupCount=_DEFAULT_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(NFSLockJsonFormatter())
        logger.addHandler(file_handler)
        _FILE_HANDLER = file_handler


def get_logger(name: str, *, metadata: Optional[Mapping[str, Any]] = None) -> logging.Logger:
    """Return a logger scoped under the nfslock namespace."""

    if not _CONFIGURED:
        configure_logging()
    qualified = name if name.startswith(f"{_LOGGER_NAME}.") else f"{_LOGGER_NAME}.{name}"
    logger = logging.getLogger(qualified)
    if metadata:
        return NFSLockLoggerAdapter(logger, dict(metadata))
    return logger


class NFSLockLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects fixed metadata (e.g. a lock path)."""

    def process(self, msg: str, kwargs: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = dict(kwargs.get("extra", {}))
        metadata = dict(self.extra)
        metadata.update(extra.get("metadata", {}))
        if metadata:
            extra["metadata"] = metadata
        kwargs = dict(kwargs)
        kwargs["extra"] = extra
        return msg, kwargs


@contextmanager
def log_exceptions(logger: logging.Logger, *, message: str = "Unhandled error") -> Iterator[None]:
    """Log an exception escaping the ``with`` body, then let it propagate."""

    try:
        yield
    except Exception:
        logger.exception(message)
        raise


__all__ = [
    "NFSLockConsoleFormatter",
    "NFSLockJsonFormatter",
    "NFSLockLoggerAdapter",
    "configure_logging",
    "get_logger",
    "log_exceptions",
]
