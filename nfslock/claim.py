"""Atomic claim of a lock object through hard links.

``link(2)`` is atomic on NFS servers, but the reply can be lost: the server
creates the link, the retransmitted request then fails with EEXIST, and the
client sees an error for an operation that succeeded. Every failed link is
therefore re-checked with ``stat`` on the claim token; a link count of two or
more means the token is the lock object and the claim went through.
"""

from __future__ import annotations

import errno
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, ContextManager, List, Optional

from nfslock.errors import FilesystemError
from nfslock.logging import get_logger
from nfslock.records import (
    LockMode,
    OwnerLine,
    OwnerRecord,
    encode_owner_line,
    parse_owner_lines,
)

__all__ = [
    "AtomicClaimer",
    "ClaimOutcome",
    "ClaimResult",
    "MISSING_ERRNOS",
    "discard_token",
    "read_lock_content",
    "read_owner_lines",
]

logger = get_logger(__name__)

# ENOENT is what some Linux clients report where the server said ESTALE.
MISSING_ERRNOS = (errno.ENOENT, errno.ESTALE)


class ClaimOutcome(Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class ClaimResult:
    outcome: ClaimOutcome
    token_path: Path
    recovered: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome is ClaimOutcome.SUCCESS


def discard_token(token_path: Path) -> None:
    """Remove a claim token, tolerating one that is already gone."""

    try:
        os.unlink(token_path)
    except OSError as exc:
        if exc.errno not in MISSING_ERRNOS:
            raise FilesystemError.from_oserror(exc, "unlink claim token") from exc


def read_lock_content(path: Path) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read()
    except OSError as exc:
        if exc.errno in MISSING_ERRNOS:
            return None
        raise FilesystemError.from_oserror(exc, "read lock object") from exc


def read_owner_lines(path: Path) -> Optional[List[OwnerLine]]:
    """Owner lines stored in a lock object, or None when it is absent."""

    content = read_lock_content(path)
    if content is None:
        return None
    return parse_owner_lines(content)


class AtomicClaimer:
    """Establish claims on a lock object.

    ``guard`` is a factory returning a context manager that serialises
    changes to an existing lock object's owner list; only shared claims
    need it.
    """

    def __init__(self, guard: Callable[[], ContextManager[object]]) -> None:
        self._guard = guard

    def claim(
        self,
        lock_path: Path,
        token_path: Path,
        owner: OwnerRecord,
        mode: LockMode,
    ) -> ClaimResult:
        line = encode_owner_line(owner, mode, token_path.name)
        if mode is LockMode.EXCLUSIVE:
            return self.create(lock_path, token_path, line)
        with self._guard():
            return self._claim_shared(lock_path, token_path, line)

    def create(self, lock_path: Path, token_path: Path, line: str) -> ClaimResult:
        """Create ``lock_path`` as a new link to a freshly written token."""

        self._write_token(token_path, line)
        try:
            os.link(token_path, lock_path)
        except OSError as exc:
            return self._resolve_failed_link(exc, token_path)
        logger.debug(
            "Claimed %s",
            lock_path,
            extra={"metadata": {"lock": str(lock_path), "token": token_path.name}},
        )
        return ClaimResult(ClaimOutcome.SUCCESS, token_path)

    def join(self, lock_path: Path, token_path: Path) -> ClaimResult:
        """Add ``token_path`` as another name of the existing lock object."""

        try:
            os.link(lock_path, token_path)
        except OSError as exc:
            return self._resolve_failed_link(exc, token_path)
        return ClaimResult(ClaimOutcome.SUCCESS, token_path)

    def _claim_shared(self, lock_path: Path, token_path: Path, line: str) -> ClaimResult:
        result = self.create(lock_path, token_path, line)
        if result.succeeded:
            return result

        existing = read_owner_lines(lock_path)
        if existing is None:
            # Released between our link and the read; let the caller retry.
            return ClaimResult(ClaimOutcome.CONFLICT, token_path)
        if any(entry.mode is LockMode.EXCLUSIVE for entry in existing):
            return ClaimResult(ClaimOutcome.CONFLICT, token_path)

        result = self.join(lock_path, token_path)
        if not result.succeeded:
            return result

        # The inode we joined is the one whose content we now read through
        # our own token; an exclusive holder may have replaced the lock in
        # between the read above and the link.
        joined = read_owner_lines(token_path) or []
        if any(entry.mode is LockMode.EXCLUSIVE for entry in joined):
            discard_token(token_path)
            return ClaimResult(ClaimOutcome.CONFLICT, token_path)

        try:
            with open(token_path, "a", encoding="utf-8") as handle:
                handle.write(line)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            discard_token(token_path)
            raise FilesystemError.from_oserror(exc, "append owner line") from exc
        logger.debug(
            "Joined shared lock %s",
            lock_path,
            extra={"metadata": {"lock": str(lock_path), "token": token_path.name}},
        )
        return ClaimResult(ClaimOutcome.SUCCESS, token_path, result.recovered)

    def _write_token(self, token_path: Path, line: str) -> None:
        try:
            fd = os.open(token_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except OSError as exc:
            raise FilesystemError.from_oserror(exc, "create claim token") from exc
        try:
            os.write(fd, line.encode("utf-8"))
            os.fsync(fd)
        except OSError as exc:
            os.close(fd)
            discard_token(token_path)
            raise FilesystemError.from_oserror(exc, "write claim token") from exc
        os.close(fd)

    def _resolve_failed_link(self, exc: OSError, token_path: Path) -> ClaimResult:
        try:
            linked = os.stat(token_path).st_nlink >= 2
        except OSError as stat_exc:
            if stat_exc.errno not in MISSING_ERRNOS:
                raise FilesystemError.from_oserror(stat_exc, "stat claim token") from stat_exc
            linked = False

        if linked:
            logger.warning(
                "link reported %s but %s is linked; claim succeeded",
                errno.errorcode.get(exc.errno or 0, exc.errno),
                token_path.name,
                extra={"metadata": {"token": str(token_path)}},
            )
            return ClaimResult(ClaimOutcome.SUCCESS, token_path, recovered=True)

        if exc.errno == errno.EEXIST or exc.errno in MISSING_ERRNOS:
            discard_token(token_path)
            return ClaimResult(ClaimOutcome.CONFLICT, token_path)

        discard_token(token_path)
        raise FilesystemError.from_oserror(exc, "link") from exc
