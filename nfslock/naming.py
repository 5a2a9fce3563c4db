"""Names of lock objects, guard objects and claim tokens.

All of them live in the target's directory so that hard links between them
never cross a filesystem boundary.
"""

from __future__ import annotations

import os
import secrets
import time
from pathlib import Path
from typing import Union

from nfslock.config import LockSettings
from nfslock.errors import FilesystemError
from nfslock.records import OwnerRecord

__all__ = [
    "CLAIM_MARKER",
    "OWNER_MARKER",
    "claim_token_path",
    "guard_path_for",
    "is_claim_token",
    "lock_path_for",
    "owner_token_path",
    "resolve_target",
]

PathLike = Union[str, "os.PathLike[str]"]

CLAIM_MARKER = "claim"
OWNER_MARKER = "owner"


def resolve_target(target: PathLike) -> Path:
    """Return the absolute target path, rejecting directories."""

    path = Path(os.path.abspath(os.fspath(target)))
    if path.is_dir():
        raise FilesystemError(
            f"Cannot lock directory {path}: hard links cannot target directories",
            path=str(path),
        )
    return path


def lock_path_for(target: PathLike, settings: LockSettings) -> Path:
    target_path = resolve_target(target)
    return target_path.with_name(target_path.name + settings.lock_extension)


def guard_path_for(lock_path: Path, settings: LockSettings) -> Path:
    """The guard serialising owner-list changes is a lock on the lock object."""

    return lock_path.with_name(lock_path.name + settings.lock_extension)


def claim_token_path(lock_path: Path, owner: OwnerRecord) -> Path:
    """A fresh, never reused token name for one claim attempt."""

    disambiguator = f"{secrets.token_hex(6)}{time.time_ns():x}"
    return lock_path.with_name(
        f"{lock_path.name}.{CLAIM_MARKER}.{owner.host}.{owner.pid}.{disambiguator}"
    )


def owner_token_path(lock_path: Path, owner: OwnerRecord, origin: Path) -> Path:
    """Deterministic token name for an owner added by fork propagation.

    ``origin`` is the claim token the ownership is propagated from. Parent
    and child compute the same name, which is what lets whichever of them
    arrives second notice the registration already happened.
    """

    suffix = origin.name.rsplit(".", 1)[-1]
    return lock_path.with_name(
        f"{lock_path.name}.{OWNER_MARKER}.{owner.host}.{owner.pid}.{suffix}"
    )


def is_claim_token(lock_path: Path, candidate: PathLike) -> bool:
    name = os.path.basename(os.fspath(candidate))
    return name.startswith(f"{lock_path.name}.{CLAIM_MARKER}.") or name.startswith(
        f"{lock_path.name}.{OWNER_MARKER}."
    )
