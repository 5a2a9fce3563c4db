"""Top-level package for nfslock."""

from __future__ import annotations

from importlib import metadata

try:
    __version__: str = metadata.version("nfslock")
except metadata.PackageNotFoundError:  # pragma: no cover - runtime fallback during dev
    __version__ = "0.0.0.dev0"

from nfslock.cache import uncache
from nfslock.config import LockSettings, configure, get_settings, load_settings
from nfslock.errors import (
    AcquisitionConflict,
    AcquisitionTimeout,
    FilesystemError,
    ForkFailure,
    NFSLockError,
    StaleRecoveryExhausted,
    clear_last_error,
    last_error,
)
from nfslock.handle import (
    HandleState,
    LockHandle,
    acquire,
    fork_with_lock,
    locked,
    propagate_ownership,
    release,
    try_acquire,
)
from nfslock.records import LockMode, LockType, OwnerRecord

__all__ = [
    "AcquisitionConflict",
    "AcquisitionTimeout",
    "FilesystemError",
    "ForkFailure",
    "HandleState",
    "LockHandle",
    "LockMode",
    "LockSettings",
    "LockType",
    "NFSLockError",
    "OwnerRecord",
    "StaleRecoveryExhausted",
    "__version__",
    "acquire",
    "clear_last_error",
    "configure",
    "fork_with_lock",
    "get_settings",
    "last_error",
    "load_settings",
    "locked",
    "propagate_ownership",
    "release",
    "try_acquire",
    "uncache",
]
