"""The lock handle returned to callers and the module-level API around it."""

from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Iterator, List, Optional, Union

from nfslock.cache import uncache
from nfslock.claim import AtomicClaimer, ClaimResult
from nfslock.config import LockSettings, get_settings
from nfslock.errors import ForkFailure, NFSLockError, record_error
from nfslock.guard import owner_list_guard
from nfslock.logging import get_logger
from nfslock.naming import claim_token_path, lock_path_for, resolve_target
from nfslock.owners import OwnerRegistry
from nfslock.records import LockType, OwnerLine, OwnerRecord, parse_lock_type
from nfslock.retry import RetryPolicy, RetryScheduler
from nfslock.stale import StaleLockResolver

__all__ = [
    "HandleState",
    "LockHandle",
    "acquire",
    "fork_with_lock",
    "locked",
    "propagate_ownership",
    "release",
    "try_acquire",
]

logger = get_logger(__name__)

PathLike = Union[str, "os.PathLike[str]"]
LockTypeLike = Union[LockType, int, str, None]


class HandleState(Enum):
    UNLOCKED = "unlocked"
    ACQUIRING = "acquiring"
    HELD = "held"
    RELEASED = "released"


class LockHandle:
    """A held lock on ``target``.

    Constructing a handle acquires the lock; if acquisition fails the
    constructor raises and no handle exists. A released handle cannot be
    locked again.

    Usage::

        with LockHandle("data.csv", "EX", blocking_timeout=30) as handle:
            ...

    :param target: File to protect. It does not have to exist.
    :param lock_type: :class:`LockType` flags or a string such as ``"SH|NB"``.
        Defaults to exclusive and blocking.
    :param blocking_timeout: Seconds a blocking acquisition may wait; ``None``
        waits forever. Ignored for non-blocking locks.
    :param stale_lock_timeout: Age in seconds after which a conflicting lock
        object counts as abandoned and is removed; ``None`` disables it.
    :param settings: Explicit settings; defaults to the process-wide ones.
    """

    def __init__(
        self,
        target: PathLike,
        lock_type: LockTypeLike = None,
        blocking_timeout: Optional[float] = None,
        stale_lock_timeout: Optional[float] = None,
        *,
        settings: Optional[LockSettings] = None,
    ) -> None:
        self.state = HandleState.UNLOCKED
        self._state_lock = threading.Lock()
        self.settings = settings if settings is not None else get_settings()
        self.lock_type = parse_lock_type(lock_type)
        self.mode = self.lock_type.mode
        self.blocking = self.lock_type.blocking
        self.blocking_timeout = blocking_timeout
        self.stale_lock_timeout = stale_lock_timeout

        self.state = HandleState.ACQUIRING
        try:
            self.target = resolve_target(target)
            self.lock_path = lock_path_for(self.target, self.settings)
            self._guard = partial(owner_list_guard, self.lock_path, self.settings)
            self._registry = OwnerRegistry(
                self.lock_path, self.mode, self.settings.hostname, self._guard
            )
            self._acquire()
        except NFSLockError as exc:
            self.state = HandleState.RELEASED
            record_error(exc)
            raise
        self.state = HandleState.HELD

    def _acquire(self) -> None:
        owner = OwnerRecord.current(self.settings.hostname)
        guard_timeout = None
        if self.blocking_timeout is not None and self.blocking_timeout > 0:
            guard_timeout = min(self.blocking_timeout, self.settings.guard_blocking_timeout)
        # Joining a shared lock waits for the guard no longer than the caller
        # is willing to wait for the lock itself.
        claimer = AtomicClaimer(
            guard=partial(
                owner_list_guard,
                self.lock_path,
                self.settings,
                blocking=self.blocking,
                timeout=guard_timeout,
            )
        )
        resolver = StaleLockResolver(
            self.stale_lock_timeout,
            retry_limit=self.settings.stale_retry_limit,
        )
        scheduler = RetryScheduler(
            RetryPolicy(blocking=self.blocking, timeout=self.blocking_timeout),
            self.settings,
        )

        def attempt() -> ClaimResult:
            token = claim_token_path(self.lock_path, owner)
            return claimer.claim(self.lock_path, token, owner, self.mode)

        result = scheduler.run(attempt, resolver, self.lock_path)
        self._registry.seed(owner, result.token_path)
        try:
            uncache(self.target)
        except NFSLockError:
            self._registry.remove_owner(owner)
            raise
        logger.debug(
            "Acquired %s lock on %s",
            self.mode.name,
            self.target,
            extra={
                "metadata": {
                    "lock": str(self.lock_path),
                    "mode": self.mode.value,
                    "attempts": scheduler.attempts,
                    "stale_removed": resolver.removals,
                }
            },
        )

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} {self.target} {self.mode.name} "
            f"{self.state.value} owners={len(self._registry)}>"
        )

    @property
    def is_held(self) -> bool:
        return self.state is HandleState.HELD

    @property
    def owner_records(self) -> tuple[OwnerRecord, ...]:
        return self._registry.records()

    @property
    def claim_tokens(self) -> tuple[Path, ...]:
        return self._registry.token_paths()

    def owners(self) -> List[OwnerLine]:
        """Owners as recorded in the lock object, visible to every host."""

        return self._registry.read_disk_owners()

    def release(self) -> None:
        """Give up this process's ownership. Calling it again is a no-op.

        After a fork, each process releases only its own ownership; the lock
        object goes away with the last one.
        """

        with self._state_lock:
            if self.state is not HandleState.HELD:
                return
            record = self._registry.current_record()
            owned = self._registry.owned_by_current_process()
            self.state = HandleState.RELEASED
        if owned:
            deleted = self._registry.remove_owner(record)
        else:
            # A forked child that never propagated ownership.
            deleted = self._registry.retire(record)
        logger.debug(
            "Released %s",
            self.target,
            extra={"metadata": {"lock": str(self.lock_path), "lock_deleted": deleted}},
        )

    def uncache(self) -> None:
        uncache(self.target)

    def propagate_ownership(self, child_pid: Optional[int] = None) -> List[OwnerRecord]:
        """Make the current process (and ``child_pid``) owners after a fork."""

        if self.state is not HandleState.HELD:
            raise NFSLockError(f"Cannot propagate ownership of a {self.state.value} lock")
        return self._registry.propagate(child_pid)

    def fork(self) -> int:
        return fork_with_lock(self)

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False

    def __del__(self) -> None:
        # Safety net only; callers are expected to release explicitly.
        if getattr(self, "state", None) is not HandleState.HELD:
            return
        try:
            self.release()
        except NFSLockError as exc:
            logger.error("Releasing %s at garbage collection failed: %s", self.target, exc)


def acquire(
    target: PathLike,
    lock_type: LockTypeLike = None,
    blocking_timeout: Optional[float] = None,
    stale_lock_timeout: Optional[float] = None,
    *,
    settings: Optional[LockSettings] = None,
) -> LockHandle:
    """Acquire a lock on ``target``, raising :class:`NFSLockError` on failure."""

    return LockHandle(
        target,
        lock_type,
        blocking_timeout,
        stale_lock_timeout,
        settings=settings,
    )


def try_acquire(
    target: PathLike,
    lock_type: LockTypeLike = None,
    blocking_timeout: Optional[float] = None,
    stale_lock_timeout: Optional[float] = None,
    *,
    settings: Optional[LockSettings] = None,
) -> Optional[LockHandle]:
    """Like :func:`acquire` but return None on failure.

    The reason is available from :func:`nfslock.errors.last_error`.
    """

    try:
        return acquire(target, lock_type, blocking_timeout, stale_lock_timeout, settings=settings)
    except NFSLockError:
        return None


@contextmanager
def locked(
    target: PathLike,
    lock_type: LockTypeLike = None,
    blocking_timeout: Optional[float] = None,
    stale_lock_timeout: Optional[float] = None,
    *,
    settings: Optional[LockSettings] = None,
) -> Iterator[LockHandle]:
    """Hold a lock on ``target`` for the duration of the ``with`` block."""

    handle = acquire(target, lock_type, blocking_timeout, stale_lock_timeout, settings=settings)
    try:
        yield handle
    finally:
        handle.release()


def release(handle: Optional[LockHandle]) -> None:
    if handle is not None:
        handle.release()


def propagate_ownership(handle: LockHandle, child_pid: Optional[int] = None) -> List[OwnerRecord]:
    """Register ownership after a manual ``os.fork()``.

    Call it in the child with no arguments and in the parent with the
    child's pid, in either order. The parent's call keeps the lock alive
    even if the parent releases before the child has run; it adds nothing
    once the child has released.
    """

    return handle.propagate_ownership(child_pid)


def fork_with_lock(handle: LockHandle) -> int:
    """Fork, leaving both processes owners of ``handle``'s lock.

    Returns the child's pid in the parent and 0 in the child.
    """

    if handle.state is not HandleState.HELD:
        raise NFSLockError(f"Cannot fork with a {handle.state.value} lock")
    try:
        pid = os.fork()
    except OSError as exc:
        error = ForkFailure(f"fork failed: {exc}")
        record_error(error)
        raise error from exc
    if pid == 0:
        handle.propagate_ownership()
    else:
        handle.propagate_ownership(child_pid=pid)
    return pid
