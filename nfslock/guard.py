"""Short-lived exclusive claim serialising changes to a lock object's owners."""

from __future__ import annotations

import os
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import Iterator, Optional

from nfslock.claim import MISSING_ERRNOS, AtomicClaimer, discard_token
from nfslock.config import LockSettings
from nfslock.errors import FilesystemError
from nfslock.logging import get_logger
from nfslock.naming import claim_token_path, guard_path_for
from nfslock.records import LockMode, OwnerRecord
from nfslock.retry import RetryPolicy, RetryScheduler
from nfslock.stale import StaleLockResolver

__all__ = ["owner_list_guard"]

logger = get_logger(__name__)


@contextmanager
def owner_list_guard(
    lock_path: Path,
    settings: LockSettings,
    *,
    blocking: bool = True,
    timeout: Optional[float] = None,
) -> Iterator[Path]:
    """Hold an exclusive claim on ``lock_path`` itself for the ``with`` body.

    The guard object is ``lock_path`` plus the lock extension and follows the
    same link/stat protocol as every other exclusive claim. ``timeout``
    defaults to ``settings.guard_blocking_timeout``; a non-blocking guard
    raises :class:`AcquisitionConflict` at once when another process holds
    it.
    """

    guard_path = guard_path_for(lock_path, settings)
    owner = OwnerRecord.current(settings.hostname)
    claimer = AtomicClaimer(guard=nullcontext)
    resolver = StaleLockResolver(
        settings.guard_stale_timeout,
        retry_limit=settings.stale_retry_limit,
    )
    scheduler = RetryScheduler(
        RetryPolicy(
            blocking=blocking,
            timeout=settings.guard_blocking_timeout if timeout is None else timeout,
        ),
        settings,
    )

    def attempt():
        token = claim_token_path(guard_path, owner)
        return claimer.claim(guard_path, token, owner, LockMode.EXCLUSIVE)

    result = scheduler.run(attempt, resolver, guard_path)
    try:
        yield guard_path
    finally:
        _drop_guard(guard_path, result.token_path)


def _drop_guard(guard_path: Path, token_path: Path) -> None:
    try:
        if os.stat(guard_path).st_ino == os.stat(token_path).st_ino:
            os.unlink(guard_path)
        else:
            logger.warning(
                "Guard %s was broken while held",
                guard_path,
                extra={"metadata": {"guard": str(guard_path)}},
            )
    except OSError as exc:
        if exc.errno not in MISSING_ERRNOS:
            raise FilesystemError.from_oserror(exc, "release guard") from exc
    discard_token(token_path)
