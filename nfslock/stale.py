"""Detection and removal of abandoned lock objects."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import FrozenSet, Optional, Tuple

from nfslock.claim import MISSING_ERRNOS, discard_token, read_owner_lines
from nfslock.errors import FilesystemError, StaleRecoveryExhausted
from nfslock.logging import get_logger
from nfslock.records import OwnerLine

__all__ = [
    "DEFAULT_STALE_RETRY_LIMIT",
    "LockSnapshot",
    "StaleLockResolver",
    "StaleVerdict",
    "snapshot_lock",
]

logger = get_logger(__name__)

DEFAULT_STALE_RETRY_LIMIT = 10

_SNAPSHOT_READS = 3


class StaleVerdict(Enum):
    HELD = "held"
    RETRY = "retry"


@dataclass(frozen=True)
class LockSnapshot:
    """What a lock object looked like when it was judged.

    Inode numbers are reused as soon as a file is freed and coarse ctime can
    repeat within one clock tick, so a lock is only the same lock when its
    device, inode, ctime and the tokens it lists all match.
    """

    device: int
    inode: int
    changed_ns: int
    links: int
    modified: float
    owners: Tuple[OwnerLine, ...]
    settled: bool = True

    @property
    def tokens(self) -> FrozenSet[str]:
        return frozenset(entry.token for entry in self.owners)

    def same_lock(self, other: Optional["LockSnapshot"]) -> bool:
        return other is not None and other.settled and (
            self.device,
            self.inode,
            self.changed_ns,
            self.tokens,
        ) == (other.device, other.inode, other.changed_ns, other.tokens)


def _stat(path: Path) -> Optional[os.stat_result]:
    try:
        return os.stat(path)
    except OSError as exc:
        if exc.errno in MISSING_ERRNOS:
            return None
        raise FilesystemError.from_oserror(exc, "stat lock object") from exc


def _fingerprint(info: os.stat_result) -> Tuple[int, int, int]:
    return info.st_dev, info.st_ino, info.st_ctime_ns


def snapshot_lock(lock_path: Path) -> Optional[LockSnapshot]:
    """Stat and read ``lock_path``; None when it does not exist.

    The content only belongs to the inode if nothing changed between the
    two stats around the read. A lock that keeps changing is returned
    unsettled.
    """

    settled = False
    for _ in range(_SNAPSHOT_READS):
        before = _stat(lock_path)
        if before is None:
            return None
        owners = read_owner_lines(lock_path)
        after = _stat(lock_path)
        if owners is None or after is None:
            return None
        if _fingerprint(before) == _fingerprint(after):
            settled = True
            break
    return LockSnapshot(
        after.st_dev,
        after.st_ino,
        after.st_ctime_ns,
        after.st_nlink,
        after.st_mtime,
        tuple(owners) if settled else (),
        settled=settled,
    )


class StaleLockResolver:
    """Decide whether a conflicting lock object may be broken.

    One resolver serves one acquisition. It removes at most ``retry_limit``
    lock objects; needing more means holders keep the lock longer than
    ``stale_lock_timeout`` and the next removal raises
    :class:`StaleRecoveryExhausted` instead of trampling them.
    """

    def __init__(
        self,
        stale_lock_timeout: Optional[float],
        *,
        retry_limit: int = DEFAULT_STALE_RETRY_LIMIT,
        clock=time.time,
    ) -> None:
        self.stale_lock_timeout = stale_lock_timeout
        self.retry_limit = retry_limit
        self.removals = 0
        self._clock = clock

    def assess(self, lock_path: Path) -> StaleVerdict:
        snapshot = snapshot_lock(lock_path)
        if snapshot is None:
            return StaleVerdict.RETRY
        if not snapshot.settled:
            # Owners are coming and going; somebody is alive.
            return StaleVerdict.HELD

        if snapshot.links == 1:
            reason = "orphaned (no claim tokens linked)"
        elif self.stale_lock_timeout is not None and self.stale_lock_timeout > 0:
            age = self._clock() - snapshot.modified
            if age <= self.stale_lock_timeout:
                return StaleVerdict.HELD
            reason = f"stale ({age:.1f}s old, limit {self.stale_lock_timeout}s)"
        else:
            return StaleVerdict.HELD

        if self.removals >= self.retry_limit:
            message = (
                f"Gave up on {lock_path} after removing {self.removals} stale lock "
                f"objects; stale_lock_timeout={self.stale_lock_timeout} is likely "
                "shorter than real hold times"
            )
            logger.error(message, extra={"metadata": {"lock": str(lock_path)}})
            raise StaleRecoveryExhausted(message)

        if self.remove(lock_path, snapshot, reason):
            self.removals += 1
        return StaleVerdict.RETRY

    def remove(self, lock_path: Path, snapshot: LockSnapshot, reason: str) -> bool:
        """Delete ``lock_path`` and the tokens it names if it is still ``snapshot``.

        Returns False without touching anything when the lock object changed
        since it was judged.
        """

        if not snapshot.same_lock(snapshot_lock(lock_path)):
            logger.debug(
                "%s changed after it was judged %s; not removing it",
                lock_path,
                reason,
                extra={"metadata": {"lock": str(lock_path)}},
            )
            return False

        try:
            info = os.stat(lock_path)
            if _fingerprint(info) != (snapshot.device, snapshot.inode, snapshot.changed_ns):
                return False
            os.unlink(lock_path)
        except OSError as exc:
            if exc.errno in MISSING_ERRNOS:
                return False
            raise FilesystemError.from_oserror(exc, "remove stale lock object") from exc

        # The tokens keep the removed inode alive, so its number cannot have
        # been handed out again while any of them still exists.
        for name in sorted(snapshot.tokens):
            token = lock_path.with_name(name)
            info = _stat(token)
            if info is None or (info.st_dev, info.st_ino) != (snapshot.device, snapshot.inode):
                continue
            discard_token(token)

        logger.warning(
            "Removed %s lock object %s",
            reason,
            lock_path,
            extra={
                "metadata": {
                    "lock": str(lock_path),
                    "owners": [str(entry.owner) for entry in snapshot.owners],
                }
            },
        )
        return True
