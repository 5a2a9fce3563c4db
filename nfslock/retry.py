"""Polling loop that turns single claim attempts into blocking acquisition."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from nfslock.claim import ClaimResult
from nfslock.config import LockSettings
from nfslock.errors import AcquisitionConflict, AcquisitionTimeout
from nfslock.logging import get_logger
from nfslock.stale import StaleLockResolver, StaleVerdict

__all__ = ["RetryPolicy", "RetryScheduler"]

logger = get_logger(__name__)

_JITTER = 0.1


@dataclass(frozen=True)
class RetryPolicy:
    """How long an acquisition keeps trying.

    ``timeout`` only applies to blocking policies; ``None`` (or 0) blocks
    until the lock is obtained.
    """

    blocking: bool = True
    timeout: Optional[float] = None

    @property
    def deadline_seconds(self) -> Optional[float]:
        if not self.blocking or not self.timeout or self.timeout <= 0:
            return None
        return float(self.timeout)


class RetryScheduler:
    """Drive ``attempt`` until it succeeds, conflicts for good, or times out.

    ``attempt`` must create a fresh claim token on every call and leave no
    token behind when it reports a conflict.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        settings: LockSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy
        self.settings = settings
        self._sleep = sleep
        self._clock = clock
        self.attempts = 0

    def run(
        self,
        attempt: Callable[[], ClaimResult],
        resolver: StaleLockResolver,
        lock_path: Path,
    ) -> ClaimResult:
        started = self._clock()
        limit = self.policy.deadline_seconds
        deadline = started + limit if limit is not None else None
        delay = self.settings.poll_interval
        last_chance = False

        while True:
            self.attempts += 1
            result = attempt()
            if result.succeeded:
                return result

            if resolver.assess(lock_path) is StaleVerdict.RETRY:
                if deadline is not None and self._clock() >= deadline:
                    raise self._timeout(lock_path, limit)
                continue

            if not self.policy.blocking:
                raise AcquisitionConflict(f"{lock_path} is held by another owner")

            now = self._clock()
            if deadline is not None and (last_chance or now >= deadline):
                raise self._timeout(lock_path, limit)

            pause = delay * (1 + random.uniform(0, _JITTER))
            if deadline is not None and pause >= deadline - now:
                # One more attempt right at the deadline, then give up.
                pause = deadline - now
                last_chance = True
            if self.attempts == 1 or self.attempts % 50 == 0:
                logger.debug(
                    "Waiting for %s (attempt %d)",
                    lock_path,
                    self.attempts,
                    extra={"metadata": {"lock": str(lock_path), "attempt": self.attempts}},
                )
            self._sleep(pause)
            delay = min(delay * self.settings.backoff_factor, self.settings.max_poll_interval)

    def _timeout(self, lock_path: Path, limit: Optional[float]) -> AcquisitionTimeout:
        return AcquisitionTimeout(
            f"Timed out acquiring {lock_path} after {limit:.1f}s ({self.attempts} attempts)"
        )
