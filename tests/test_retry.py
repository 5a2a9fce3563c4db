import pytest

from nfslock.claim import ClaimOutcome, ClaimResult
from nfslock.errors import AcquisitionConflict, AcquisitionTimeout
from nfslock.retry import RetryPolicy, RetryScheduler
from nfslock.stale import StaleVerdict


class FakeClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedResolver:
    def __init__(self, verdicts=()):
        self.verdicts = list(verdicts)
        self.calls = 0

    def assess(self, lock_path):
        self.calls += 1
        if self.verdicts:
            return self.verdicts.pop(0)
        return StaleVerdict.HELD


def _attempts(outcomes, tmp_path):
    outcomes = list(outcomes)
    tokens = []

    def attempt():
        token = tmp_path / f"token-{len(tokens)}"
        tokens.append(token)
        outcome = outcomes.pop(0) if outcomes else ClaimOutcome.CONFLICT
        return ClaimResult(outcome, token)

    return attempt, tokens


def _scheduler(policy, fast_settings, clock):
    return RetryScheduler(policy, fast_settings, sleep=clock.sleep, clock=clock)


def test_nonblocking_conflict_fails_after_one_attempt(tmp_path, fast_settings):
    clock = FakeClock()
    attempt, tokens = _attempts([], tmp_path)
    scheduler = _scheduler(RetryPolicy(blocking=False), fast_settings, clock)

    with pytest.raises(AcquisitionConflict):
        scheduler.run(attempt, ScriptedResolver(), tmp_path / "T.NFSLock")
    assert len(tokens) == 1
    assert clock.sleeps == []


def test_nonblocking_retries_immediately_after_stale_removal(tmp_path, fast_settings):
    clock = FakeClock()
    attempt, tokens = _attempts([ClaimOutcome.CONFLICT, ClaimOutcome.SUCCESS], tmp_path)
    scheduler = _scheduler(RetryPolicy(blocking=False), fast_settings, clock)

    result = scheduler.run(attempt, ScriptedResolver([StaleVerdict.RETRY]), tmp_path / "T.NFSLock")
    assert result.succeeded
    assert result.token_path == tokens[1]
    assert tokens[0] != tokens[1]
    assert clock.sleeps == []


def test_blocking_waits_with_capped_backoff(tmp_path, fast_settings):
    clock = FakeClock()
    attempt, tokens = _attempts([ClaimOutcome.CONFLICT] * 8 + [ClaimOutcome.SUCCESS], tmp_path)
    scheduler = _scheduler(RetryPolicy(blocking=True), fast_settings, clock)

    result = scheduler.run(attempt, ScriptedResolver(), tmp_path / "T.NFSLock")
    assert result.succeeded
    assert scheduler.attempts == 9
    assert len(clock.sleeps) == 8
    assert clock.sleeps[0] >= fast_settings.poll_interval
    assert max(clock.sleeps) <= fast_settings.max_poll_interval * 1.1
    assert clock.sleeps[-1] > clock.sleeps[0]


def test_blocking_timeout_raises(tmp_path, fast_settings):
    clock = FakeClock()
    attempt, tokens = _attempts([], tmp_path)
    scheduler = _scheduler(RetryPolicy(blocking=True, timeout=0.5), fast_settings, clock)

    with pytest.raises(AcquisitionTimeout, match="0.5s"):
        scheduler.run(attempt, ScriptedResolver(), tmp_path / "T.NFSLock")
    assert clock.now - 100.0 == pytest.approx(0.5)
    assert len(tokens) > 1


def test_timeout_ignored_for_nonblocking_policy():
    assert RetryPolicy(blocking=False, timeout=5).deadline_seconds is None
    assert RetryPolicy(blocking=True, timeout=0).deadline_seconds is None
    assert RetryPolicy(blocking=True, timeout=2).deadline_seconds == 2.0
