"""Owners of a held lock, in memory and in the lock object's content.

Each owner has a line ``host pid mode token`` in the lock object and a claim
token hard-linked to it. Every change to an existing lock object's owner
list happens under :func:`nfslock.guard.owner_list_guard`, so a parent and
a child registering after a fork cannot lose each other's update.

A fork-propagated owner that releases leaves a ``retired <token>`` line
behind for as long as the lock object lives, so the other side of the fork
cannot register it again afterwards.
"""

from __future__ import annotations

import os
import threading
import weakref
from pathlib import Path
from typing import Callable, ContextManager, Dict, List, Optional, Tuple

from nfslock.claim import (
    MISSING_ERRNOS,
    AtomicClaimer,
    discard_token,
    read_lock_content,
    read_owner_lines,
)
from nfslock.errors import FilesystemError, NFSLockError
from nfslock.logging import get_logger
from nfslock.naming import owner_token_path
from nfslock.records import (
    LockMode,
    OwnerLine,
    OwnerRecord,
    encode_owner_line,
    encode_retired_line,
    parse_owner_lines,
    parse_retired_tokens,
)

__all__ = ["OwnerRegistry"]

logger = get_logger(__name__)

_REGISTRIES: "weakref.WeakSet[OwnerRegistry]" = weakref.WeakSet()


def _reset_mutexes_after_fork() -> None:
    # A thread of the parent may have held a registry mutex at fork time;
    # that thread does not exist in the child.
    for registry in list(_REGISTRIES):
        registry._mutex = threading.RLock()


if hasattr(os, "register_at_fork"):
    os.register_at_fork(after_in_child=_reset_mutexes_after_fork)


def _inode(path: Path) -> Optional[int]:
    try:
        return os.stat(path).st_ino
    except OSError as exc:
        if exc.errno in MISSING_ERRNOS:
            return None
        raise FilesystemError.from_oserror(exc, "stat") from exc


class OwnerRegistry:
    """Track which processes hold ``lock_path`` in ``mode``."""

    def __init__(
        self,
        lock_path: Path,
        mode: LockMode,
        host: str,
        guard: Callable[[], ContextManager[object]],
    ) -> None:
        self.lock_path = lock_path
        self.mode = mode
        self.host = host
        self._guard = guard
        self._claimer = AtomicClaimer(guard=guard)
        self._records: Dict[OwnerRecord, Path] = {}
        self._origin: Optional[Path] = None
        self._mutex = threading.RLock()
        _REGISTRIES.add(self)

    def seed(self, record: OwnerRecord, token_path: Path) -> None:
        """Register the owner created by a successful claim."""

        with self._mutex:
            self._records[record] = token_path
            if self._origin is None:
                self._origin = token_path

    def records(self) -> Tuple[OwnerRecord, ...]:
        with self._mutex:
            return tuple(sorted(self._records))

    def token_paths(self) -> Tuple[Path, ...]:
        with self._mutex:
            return tuple(self._records[record] for record in sorted(self._records))

    def current_record(self) -> OwnerRecord:
        return OwnerRecord(self.host, os.getpid())

    def owned_by_current_process(self) -> bool:
        with self._mutex:
            return self.current_record() in self._records

    def __len__(self) -> int:
        with self._mutex:
            return len(self._records)

    def read_disk_owners(self) -> List[OwnerLine]:
        return read_owner_lines(self.lock_path) or []

    def add_owner(self, record: OwnerRecord) -> bool:
        """Add ``record`` as an owner; False when it already was one.

        Also False when ``record`` has already been an owner and released:
        a parent registering its child late must not resurrect it.
        """

        with self._mutex:
            if record in self._records:
                return False
            if self._origin is None:
                raise NFSLockError(f"Cannot add owner {record}: {self.lock_path} is not held")
            token = owner_token_path(self.lock_path, record, self._origin)
            with self._guard():
                content = read_lock_content(self.lock_path)
                lock_inode = _inode(self.lock_path)
                if content is None or lock_inode is None:
                    raise NFSLockError(
                        f"Cannot add owner {record}: {self.lock_path} no longer exists"
                    )
                if token.name in parse_retired_tokens(content):
                    logger.debug(
                        "Owner %s already released %s",
                        record,
                        self.lock_path,
                        extra={"metadata": {"lock": str(self.lock_path), "owner": str(record)}},
                    )
                    return False
                if any(entry.token == token.name for entry in parse_owner_lines(content)):
                    self._records[record] = token
                    return False

                leftover = _inode(token)
                if leftover is not None and leftover != lock_inode:
                    # From a dead process whose pid has been reused.
                    discard_token(token)
                result = self._claimer.join(self.lock_path, token)
                if not result.succeeded:
                    raise NFSLockError(f"Cannot add owner {record}: {self.lock_path} vanished")
                if _inode(token) != lock_inode:
                    discard_token(token)
                    raise NFSLockError(
                        f"Cannot add owner {record}: {self.lock_path} was replaced"
                    )
                try:
                    _append(token, encode_owner_line(record, self.mode, token.name))
                except FilesystemError:
                    discard_token(token)
                    raise
                self._records[record] = token

        logger.debug(
            "Added owner %s to %s",
            record,
            self.lock_path,
            extra={"metadata": {"lock": str(self.lock_path), "owner": str(record)}},
        )
        return True

    def remove_owner(self, record: OwnerRecord) -> bool:
        """Remove ``record``; True when the lock object itself was deleted."""

        with self._mutex:
            token = self._records.pop(record, None)
            if token is None:
                return False
            with self._guard():
                deleted = self._remove_from_disk(record, token)

        self._log_removal(record, deleted)
        return deleted

    def retire(self, record: OwnerRecord) -> bool:
        """Release ``record`` from a forked process that never registered itself.

        The parent may already have registered it, in which case that
        ownership is removed. Otherwise the owner is marked retired so a
        later registration by the parent is refused.
        """

        with self._mutex:
            if record in self._records:
                return self.remove_owner(record)
            if self._origin is None:
                return False
            token = owner_token_path(self.lock_path, record, self._origin)
            with self._guard():
                content = read_lock_content(self.lock_path)
                if content is None:
                    return False
                if any(entry.token == token.name for entry in parse_owner_lines(content)):
                    deleted = self._remove_from_disk(record, token)
                elif _inode(self._origin) == _inode(self.lock_path):
                    _append(self.lock_path, encode_retired_line(token.name))
                    deleted = False
                else:
                    # The parent no longer holds it and cannot register us.
                    return False

        self._log_removal(record, deleted)
        return deleted

    def propagate(self, child_pid: Optional[int] = None) -> List[OwnerRecord]:
        """Register the calling process, and ``child_pid`` if given, as owners.

        Safe to call from both sides of a fork, in any order and more than
        once, including after the other side has already released.
        """

        added: List[OwnerRecord] = []
        with self._mutex:
            if not self._records:
                raise NFSLockError(f"{self.lock_path} has no owners to propagate from")
            candidates = [self.current_record()]
            if child_pid is not None:
                candidates.append(OwnerRecord(self.host, int(child_pid)))
            for record in candidates:
                if self.add_owner(record):
                    added.append(record)
        return added

    def _log_removal(self, record: OwnerRecord, deleted: bool) -> None:
        logger.debug(
            "Removed owner %s from %s",
            record,
            self.lock_path,
            extra={
                "metadata": {
                    "lock": str(self.lock_path),
                    "owner": str(record),
                    "lock_deleted": deleted,
                }
            },
        )

    def _remove_from_disk(self, record: OwnerRecord, token: Path) -> bool:
        lock_inode = _inode(self.lock_path)
        token_inode = _inode(token)
        if lock_inode is None or token_inode is None or lock_inode != token_inode:
            logger.warning(
                "%s was broken or replaced while held by %s",
                self.lock_path,
                record,
                extra={"metadata": {"lock": str(self.lock_path), "owner": str(record)}},
            )
            discard_token(token)
            return False

        content = read_lock_content(token) or ""
        remaining = [entry for entry in parse_owner_lines(content) if entry.token != token.name]
        if not remaining:
            # Lock name first: with the token still linked the lock object
            # never looks orphaned to a concurrent acquirer.
            try:
                os.unlink(self.lock_path)
            except OSError as exc:
                if exc.errno not in MISSING_ERRNOS:
                    raise FilesystemError.from_oserror(exc, "unlink lock object") from exc
            discard_token(token)
            return True

        retired = parse_retired_tokens(content)
        if token != self._origin:
            retired.add(token.name)
        rewritten = "".join(encode_owner_line(e.owner, e.mode, e.token) for e in remaining)
        rewritten += "".join(encode_retired_line(name) for name in sorted(retired))
        try:
            with open(token, "r+", encoding="utf-8") as handle:
                handle.seek(0)
                handle.write(rewritten)
                handle.truncate()
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            raise FilesystemError.from_oserror(exc, "rewrite owner lines") from exc
        discard_token(token)
        return False


def _append(path: Path, line: str) -> None:
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(line)
            handle.flush()
            os.fsync(handle.fileno())
    except OSError as exc:
        raise FilesystemError.from_oserror(exc, "append to lock object") from exc
