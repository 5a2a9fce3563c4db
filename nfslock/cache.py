"""Force NFS clients to drop cached attributes and data for a path."""

from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import TYPE_CHECKING, Union

from nfslock.claim import MISSING_ERRNOS
from nfslock.errors import FilesystemError
from nfslock.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover
    from nfslock.handle import LockHandle

__all__ = ["uncache"]

logger = get_logger(__name__)


def _scratch_name(path: Path) -> Path:
    return path.with_name(f".{path.name}.uncache.{os.getpid()}.{secrets.token_hex(6)}")


def _same_inode(first: Path, second: Path) -> bool:
    try:
        return os.path.samefile(first, second)
    except OSError:
        return False


def uncache(target: Union[str, "os.PathLike[str]", "LockHandle"]) -> None:
    """Make the next read of ``target`` see the server's current state.

    Linking the file to a throwaway name and unlinking it is a metadata
    change the client cannot serve from cache. It bumps the inode's ctime
    on the server, and the client drops its cached attributes and pages for
    the file when it notices. A missing file is left alone.
    """

    lock_target = getattr(target, "target", None)
    path = Path(os.fspath(lock_target if lock_target is not None else target))
    if path.is_dir():
        raise FilesystemError(f"Cannot uncache directory {path}", path=str(path))

    while True:
        scratch = _scratch_name(path)
        try:
            os.link(path, scratch)
            break
        except FileExistsError:
            # Either a lost reply to our own link or a name collision.
            if _same_inode(path, scratch):
                break
            continue
        except OSError as exc:
            if exc.errno in MISSING_ERRNOS:
                return
            raise FilesystemError.from_oserror(exc, "uncache link") from exc

    try:
        os.unlink(scratch)
    except OSError as exc:
        if exc.errno not in MISSING_ERRNOS:
            raise FilesystemError.from_oserror(exc, "uncache unlink") from exc
    logger.debug("Uncached %s", path, extra={"metadata": {"path": str(path)}})
