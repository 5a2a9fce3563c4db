"""Lock types, owner records and the owner-line format stored in lock objects."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum, IntFlag
from typing import List, Set, Union

__all__ = [
    "LockMode",
    "LockType",
    "OwnerLine",
    "OwnerRecord",
    "RETIRED_MARKER",
    "encode_owner_line",
    "encode_retired_line",
    "parse_lock_type",
    "parse_owner_lines",
    "parse_retired_tokens",
]

RETIRED_MARKER = "retired"


class LockMode(Enum):
    """Access mode recorded for each owner of a lock object."""

    EXCLUSIVE = "EX"
    SHARED = "SH"


class LockType(IntFlag):
    """Flags accepted by :func:`nfslock.acquire`.

    ``BLOCKING`` is the absence of ``NONBLOCKING`` and exists so callers can
    spell the default out.
    """

    BLOCKING = 0
    SHARED = 1
    EXCLUSIVE = 2
    NONBLOCKING = 4

    @property
    def mode(self) -> LockMode:
        return LockMode.SHARED if self & LockType.SHARED else LockMode.EXCLUSIVE

    @property
    def blocking(self) -> bool:
        return not self & LockType.NONBLOCKING


_TYPE_ALIASES = {
    "EX": LockType.EXCLUSIVE,
    "EXCLUSIVE": LockType.EXCLUSIVE,
    "LOCK_EX": LockType.EXCLUSIVE,
    "SH": LockType.SHARED,
    "SHARED": LockType.SHARED,
    "LOCK_SH": LockType.SHARED,
    "NB": LockType.NONBLOCKING,
    "NONBLOCKING": LockType.NONBLOCKING,
    "LOCK_NB": LockType.NONBLOCKING,
    "BL": LockType.BLOCKING,
    "BLOCKING": LockType.BLOCKING,
}


def parse_lock_type(value: Union[LockType, int, str, None]) -> LockType:
    """Normalise a lock type given as flags or as a ``"EX|NB"`` style string.

    ``None`` means exclusive and blocking. Shared combined with exclusive is
    rejected.
    """

    if value is None:
        flags = LockType.EXCLUSIVE
    elif isinstance(value, str):
        flags = LockType.BLOCKING
        for token in value.replace(",", "|").split("|"):
            name = token.strip().upper()
            if not name:
                continue
            try:
                flags |= _TYPE_ALIASES[name]
            except KeyError:
                raise ValueError(f"Unknown lock type component: {token!r}") from None
    else:
        flags = LockType(int(value))

    if flags & LockType.SHARED and flags & LockType.EXCLUSIVE:
        raise ValueError("A lock cannot be both SHARED and EXCLUSIVE")
    if not flags & (LockType.SHARED | LockType.EXCLUSIVE):
        flags |= LockType.EXCLUSIVE
    return flags


@dataclass(frozen=True, order=True)
class OwnerRecord:
    """One process entitled to a held lock."""

    host: str
    pid: int

    @classmethod
    def current(cls, host: str) -> "OwnerRecord":
        return cls(host, os.getpid())

    def __str__(self) -> str:
        return f"{self.host}:{self.pid}"


@dataclass(frozen=True)
class OwnerLine:
    """Parsed line of a lock object: owner, mode and its claim token name."""

    owner: OwnerRecord
    mode: LockMode
    token: str


def encode_owner_line(owner: OwnerRecord, mode: LockMode, token: str) -> str:
    return f"{owner.host} {owner.pid} {mode.value} {os.path.basename(token)}\n"


def parse_owner_lines(text: str) -> List[OwnerLine]:
    """Parse lock object content, skipping lines that are not owner records.

    A torn write on a flaky mount can leave a partial trailing line; it is
    ignored rather than treated as an owner.
    """

    lines: List[OwnerLine] = []
    for raw in text.splitlines():
        parts = raw.split()
        if len(parts) != 4:
            continue
        host, pid, mode, token = parts
        try:
            lines.append(OwnerLine(OwnerRecord(host, int(pid)), LockMode(mode), token))
        except ValueError:
            continue
    return lines


def encode_retired_line(token: str) -> str:
    """Mark a fork-propagated owner token as released for good.

    The line keeps a late ``propagate`` call in the parent from registering a
    child that has already come and gone.
    """

    return f"{RETIRED_MARKER} {os.path.basename(token)}\n"


def parse_retired_tokens(text: str) -> Set[str]:
    retired: Set[str] = set()
    for raw in text.splitlines():
        parts = raw.split()
        if len(parts) == 2 and parts[0] == RETIRED_MARKER:
            retired.add(parts[1])
    return retired
