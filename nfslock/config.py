"""Configuration for lock naming and polling behaviour.

Settings are resolved once per process: defaults, then the ``lock:`` mapping
of an ``nfslock.yaml`` file, then ``NFSLOCK_*`` environment variables. Each
acquisition may also receive an explicit :class:`LockSettings`, which is the
preferred way to vary behaviour between call sites.
"""

from __future__ import annotations

import os
import socket
import threading
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

__all__ = [
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_LOCK_EXTENSION",
    "LockSettings",
    "configure",
    "get_settings",
    "load_settings",
    "reset_settings",
]

DEFAULT_LOCK_EXTENSION = ".NFSLock"
DEFAULT_CONFIG_FILE = Path("nfslock.yaml")

_ENV_PREFIX = "NFSLOCK_"
_SETTINGS_LOCK = threading.Lock()
_SETTINGS: Optional["LockSettings"] = None


def _default_hostname() -> str:
    return socket.gethostname()


@dataclass(frozen=True)
class LockSettings:
    """Tunables shared by every component of the locking protocol."""

    lock_extension: str = DEFAULT_LOCK_EXTENSION
    poll_interval: float = 0.05
    max_poll_interval: float = 1.0
    backoff_factor: float = 1.5
    stale_retry_limit: int = 10
    guard_blocking_timeout: float = 62.0
    guard_stale_timeout: float = 60.0
    hostname: str = field(default_factory=_default_hostname)

    def __post_init__(self) -> None:
        if not self.lock_extension or os.sep in self.lock_extension:
            raise ValueError(f"Invalid lock extension: {self.lock_extension!r}")
        if self.poll_interval <= 0 or self.max_poll_interval < self.poll_interval:
            raise ValueError("poll_interval must be positive and <= max_poll_interval")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if self.stale_retry_limit < 0:
            raise ValueError("stale_retry_limit must not be negative")
        if any(ch.isspace() for ch in self.hostname) or not self.hostname:
            raise ValueError(f"Hostname {self.hostname!r} cannot be encoded in owner records")

    def with_overrides(self, **overrides: Any) -> "LockSettings":
        return replace(self, **overrides)


def _coerce(name: str, raw: Any) -> Any:
    kind = {f.name: f.type for f in fields(LockSettings)}[name]
    if kind in ("float", float):
        return float(raw)
    if kind in ("int", int):
        return int(raw)
    return str(raw)


def _from_mapping(data: Mapping[str, Any]) -> dict[str, Any]:
    known = {f.name for f in fields(LockSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown lock settings: {', '.join(unknown)}")
    return {key: _coerce(key, value) for key, value in data.items()}


def _from_environment(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for f in fields(LockSettings):
        raw = environ.get(f"{_ENV_PREFIX}{f.name.upper()}")
        if raw is not None and raw.strip():
            overrides[f.name] = _coerce(f.name, raw.strip())
    return overrides


def load_settings(
    path: Optional[Path | str] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> LockSettings:
    """Build :class:`LockSettings` from a YAML file and the environment.

    ``path`` defaults to ``NFSLOCK_CONFIG`` or ``nfslock.yaml`` in the working
    directory; a missing default file is not an error, a missing explicit
    file is.
    """

    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}

    explicit = path is not None or bool(environ.get("NFSLOCK_CONFIG"))
    config_path = Path(path or environ.get("NFSLOCK_CONFIG") or DEFAULT_CONFIG_FILE)
    if config_path.exists() or explicit:
        with open(config_path, "r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle) or {}
        if not isinstance(document, Mapping):
            raise ValueError(f"{config_path} must contain a mapping")
        section = document.get("lock", {}) or {}
        if not isinstance(section, Mapping):
            raise ValueError(f"'lock' section of {config_path} must be a mapping")
        values.update(_from_mapping(section))

    values.update(_from_environment(environ))
    return LockSettings(**values)


def configure(settings: Optional[LockSettings] = None, **overrides: Any) -> LockSettings:
    """Install the process-wide default settings.

    Meant to be called once at startup. Existing lock handles keep the lock
    path they were created with.
    """

    global _SETTINGS
    base = settings if settings is not None else load_settings()
    if overrides:
        base = base.with_overrides(**overrides)
    with _SETTINGS_LOCK:
        _SETTINGS = base
    return base


def get_settings() -> LockSettings:
    """Return the process-wide settings, loading them on first use."""

    global _SETTINGS
    with _SETTINGS_LOCK:
        if _SETTINGS is None:
            _SETTINGS = load_settings()
        return _SETTINGS


def reset_settings() -> None:
    """Forget the process-wide settings so the next lookup reloads them."""

    global _SETTINGS
    with _SETTINGS_LOCK:
        _SETTINGS = None
