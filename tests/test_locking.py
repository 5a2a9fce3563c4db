import errno
import multiprocessing
import os
import random
import threading
import time

import pytest

import nfslock
from nfslock import (
    AcquisitionConflict,
    AcquisitionTimeout,
    HandleState,
    LockMode,
    acquire,
    last_error,
    locked,
    release,
    try_acquire,
)
from nfslock.errors import FilesystemError
from nfslock.guard import owner_list_guard


def _lock_path(target):
    return target.with_name(target.name + ".NFSLock")


def _residue(target):
    return sorted(p.name for p in target.parent.iterdir() if p.name.startswith(target.name + "."))


def test_exclusive_scenario_on_missing_target(target):
    assert not target.exists()

    a = acquire(target, "EX|NB")
    assert a.state is HandleState.HELD
    assert _lock_path(target).exists()

    with pytest.raises(AcquisitionConflict):
        acquire(target, "EX|NB")

    a.release()
    assert not _lock_path(target).exists()

    b = acquire(target, "EX|NB")
    assert b.is_held
    b.release()
    assert _residue(target) == []


def test_default_lock_type_is_exclusive_and_blocking(target):
    with acquire(target) as handle:
        assert handle.mode is LockMode.EXCLUSIVE
        assert handle.blocking


def test_shared_locks_coexist_and_exclude_writers(target):
    first = acquire(target, "SH|NB")
    second = acquire(target, "SH|NB")
    assert os.stat(_lock_path(target)).st_nlink == 3
    assert {entry.mode for entry in first.owners()} == {LockMode.SHARED}

    with pytest.raises(AcquisitionConflict):
        acquire(target, "EX|NB")

    first.release()
    assert _lock_path(target).exists()
    with pytest.raises(AcquisitionConflict):
        acquire(target, "EX|NB")

    second.release()
    assert not _lock_path(target).exists()

    writer = acquire(target, "EX|NB")
    with pytest.raises(AcquisitionConflict):
        acquire(target, "SH|NB")
    writer.release()
    assert _residue(target) == []


def test_nonblocking_shared_does_not_wait_for_a_busy_owner_list(target, fast_settings):
    holder = acquire(target, "SH|NB")
    with owner_list_guard(_lock_path(target), fast_settings):
        started = time.monotonic()
        with pytest.raises(AcquisitionConflict):
            acquire(target, "SH|NB")
        assert time.monotonic() - started < fast_settings.guard_blocking_timeout / 2

    joined = acquire(target, "SH|NB")
    assert len(holder.owners()) == 2
    joined.release()
    holder.release()
    assert _residue(target) == []



def test_release_is_idempotent(target):
    handle = acquire(target)
    handle.release()
    handle.release()
    release(handle)
    release(None)
    assert handle.state is HandleState.RELEASED
    assert _residue(target) == []


def test_released_handle_does_not_touch_a_newer_lock(target):
    old = acquire(target)
    old.release()
    new = acquire(target, "NB")
    old.release()
    assert _lock_path(target).exists()
    new.release()


def test_context_manager_releases_on_error(target):
    with pytest.raises(RuntimeError):
        with locked(target):
            assert _lock_path(target).exists()
            raise RuntimeError("boom")
    assert not _lock_path(target).exists()


def test_try_acquire_reports_reason_through_last_error(target):
    holder = acquire(target)
    assert last_error() is None

    assert try_acquire(target, "NB") is None
    assert "held by another owner" in last_error()
    holder.release()
    assert _residue(target) == []


def test_blocking_acquire_waits_for_release(target):
    holder = acquire(target)
    acquired = threading.Event()
    order = []

    def _waiter():
        with acquire(target, "EX", blocking_timeout=5):
            order.append("waiter")
            acquired.set()

    thread = threading.Thread(target=_waiter)
    thread.start()
    time.sleep(0.2)
    assert not acquired.is_set()
    order.append("holder")
    holder.release()
    thread.join(timeout=5)

    assert order == ["holder", "waiter"]
    assert _residue(target) == []


def test_blocking_timeout_cleans_up_claim_tokens(target):
    holder = acquire(target)
    started = time.monotonic()
    with pytest.raises(AcquisitionTimeout):
        acquire(target, "EX", blocking_timeout=0.3)
    assert time.monotonic() - started >= 0.3
    assert "Timed out" in last_error()

    remaining = _residue(target)
    assert len(remaining) == 2  # the lock object and the holder's token
    assert set(remaining) == {_lock_path(target).name, holder.claim_tokens[0].name}
    holder.release()


def test_stale_lock_is_broken_after_timeout(target):
    holder = acquire(target)
    past = time.time() - 5
    os.utime(_lock_path(target), (past, past))

    with acquire(target, "NB", stale_lock_timeout=1) as thief:
        assert thief.is_held
        assert not holder.claim_tokens[0].exists()
    holder.release()
    assert _residue(target) == []


def test_uncache_runs_after_acquisition(target, monkeypatch):
    seen = []
    monkeypatch.setattr("nfslock.handle.uncache", lambda path: seen.append(path))
    with acquire(target) as handle:
        assert seen == [handle.target]


def test_directory_target_is_rejected(tmp_path):
    with pytest.raises(FilesystemError):
        acquire(tmp_path)
    assert "directory" in last_error()


def test_lock_extension_change_only_affects_new_locks(target, fast_settings):
    old = acquire(target)
    nfslock.configure(fast_settings.with_overrides(lock_extension=".lck"))
    new = acquire(target, "NB")
    assert new.lock_path.name == "T.lck"
    old.release()
    assert not _lock_path(target).exists()
    assert new.lock_path.exists()
    new.release()


def test_mutual_exclusion_survives_lost_link_replies(target, monkeypatch):
    real_link = os.link

    def flaky_link(src, dst, *args, **kwargs):
        real_link(src, dst, *args, **kwargs)
        if random.random() < 0.3:
            raise FileExistsError(errno.EEXIST, "File exists", str(dst))

    monkeypatch.setattr(os, "link", flaky_link)
    inside = []
    violations = []
    mutex = threading.Lock()

    def worker():
        for _ in range(25):
            handle = try_acquire(target, "NB")
            if handle is None:
                continue
            with mutex:
                inside.append(1)
                if len(inside) > 1:
                    violations.append(len(inside))
            time.sleep(0.001)
            with mutex:
                inside.pop()
            handle.release()

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert violations == []
    assert _residue(target) == []


def _crash_while_holding(path, settings, ready):
    handle = acquire(path, settings=settings)
    assert handle.is_held
    ready.set()
    # Exit without release or finalizers, as a crashed holder would.
    os._exit(0)


@pytest.mark.skipif(
    "fork" not in multiprocessing.get_all_start_methods(), reason="requires fork start method"
)
def test_abandoned_lock_is_recovered_by_another_process(target, fast_settings):
    ctx = multiprocessing.get_context("fork")
    ready = ctx.Event()
    crashed = ctx.Process(target=_crash_while_holding, args=(target, fast_settings, ready))
    crashed.start()
    crashed.join(timeout=10)
    assert ready.is_set()
    assert _lock_path(target).exists()

    with pytest.raises(AcquisitionConflict):
        acquire(target, "NB", stale_lock_timeout=1)

    time.sleep(1.2)
    with acquire(target, "NB", stale_lock_timeout=1):
        pass
    assert _residue(target) == []


def _hold_shared(path, settings, ready, done):
    handle = acquire(path, "SH", settings=settings)
    ready.set()
    done.wait(10)
    handle.release()


@pytest.mark.skipif(
    "fork" not in multiprocessing.get_all_start_methods(), reason="requires fork start method"
)
def test_shared_holders_in_separate_processes(target, fast_settings):
    ctx = multiprocessing.get_context("fork")
    done = ctx.Event()
    readies = [ctx.Event() for _ in range(3)]
    procs = [
        ctx.Process(target=_hold_shared, args=(target, fast_settings, ready, done))
        for ready in readies
    ]
    for proc in procs:
        proc.start()
    for ready in readies:
        assert ready.wait(10)

    assert os.stat(_lock_path(target)).st_nlink == 4
    assert try_acquire(target, "EX|NB") is None

    done.set()
    for proc in procs:
        proc.join(10)
        assert proc.exitcode == 0
    writer = try_acquire(target, "EX|NB")
    assert writer is not None
    writer.release()
