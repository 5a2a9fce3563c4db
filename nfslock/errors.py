"""Exception taxonomy and the process-wide last-error slot."""

from __future__ import annotations

import threading
from typing import Optional

__all__ = [
    "AcquisitionConflict",
    "AcquisitionTimeout",
    "FilesystemError",
    "ForkFailure",
    "NFSLockError",
    "StaleRecoveryExhausted",
    "clear_last_error",
    "last_error",
    "record_error",
]


class NFSLockError(RuntimeError):
    """Base class for every failure raised by nfslock."""


class AcquisitionConflict(NFSLockError):
    """Another incompatible claim is active and not stale."""


class AcquisitionTimeout(NFSLockError):
    """The blocking deadline elapsed before the lock could be claimed."""


class StaleRecoveryExhausted(NFSLockError):
    """Too many stale lock objects were removed during one acquisition.

    Usually means ``stale_lock_timeout`` is set lower than the time real
    holders keep the lock.
    """


class FilesystemError(NFSLockError):
    """An I/O failure unrelated to lock contention."""

    def __init__(self, message: str, *, path: Optional[str] = None, errno: Optional[int] = None) -> None:
        super().__init__(message)
        self.path = path
        self.errno = errno

    @classmethod
    def from_oserror(cls, exc: OSError, action: str) -> "FilesystemError":
        path = exc.filename if exc.filename is not None else None
        return cls(
            f"{action} failed for {path or '<unknown>'}: {exc.strerror or exc}",
            path=str(path) if path is not None else None,
            errno=exc.errno,
        )


class ForkFailure(NFSLockError):
    """The platform fork primitive failed."""


_ERROR_LOCK = threading.Lock()
_LAST_ERROR: Optional[str] = None


def record_error(exc: BaseException | str) -> str:
    """Store a human readable failure reason and return it."""

    global _LAST_ERROR
    message = str(exc)
    with _ERROR_LOCK:
        _LAST_ERROR = message
    return message


def last_error() -> Optional[str]:
    """Return the reason for the most recent failed acquisition, if any."""

    with _ERROR_LOCK:
        return _LAST_ERROR


def clear_last_error() -> None:
    global _LAST_ERROR
    with _ERROR_LOCK:
        _LAST_ERROR = None
