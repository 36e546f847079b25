import os
import threading
import time

import pytest

from taskplanner.lock import PID_FILE, DirLock, LockTimeout, with_lock


def test_acquire_writes_pid_and_release_removes(tmp_path):
    lock = DirLock(tmp_path / "state.lock")
    lock.acquire()

    assert lock.is_held
    assert lock.holder() == os.getpid()

    lock.release()
    assert not lock.is_held


def test_release_is_idempotent(tmp_path):
    lock = DirLock(tmp_path / "state.lock")
    lock.release()
    lock.acquire()
    lock.release()
    lock.release()
    assert not lock.is_held


def test_held_releases_on_error(tmp_path):
    lock = DirLock(tmp_path / "state.lock")
    with pytest.raises(RuntimeError):
        with lock.held():
            raise RuntimeError("boom")
    assert not lock.is_held


def test_with_lock_returns_value(tmp_path):
    path = tmp_path / "state.lock"
    assert with_lock(path, lambda: 42) == 42
    assert not path.exists()


def test_timeout_names_holder(tmp_path):
    path = tmp_path / "state.lock"
    DirLock(path).acquire()

    contender = DirLock(path, max_attempts=3, retry_interval=0.01)
    with pytest.raises(LockTimeout) as exc:
        contender.acquire()

    assert exc.value.attempts == 3
    assert exc.value.holder == os.getpid()
    assert "taskplanner unlock" in str(exc.value)


def test_second_acquirer_waits_for_release(tmp_path):
    path = tmp_path / "state.lock"
    first = DirLock(path)
    first.acquire()

    acquired_at = []
    started = threading.Event()

    def contend():
        second = DirLock(path, max_attempts=500, retry_interval=0.01)
        started.set()
        second.acquire()
        acquired_at.append(time.monotonic())
        second.release()

    worker = threading.Thread(target=contend)
    worker.start()
    started.wait()
    time.sleep(0.2)
    assert acquired_at == []

    released_at = time.monotonic()
    first.release()
    worker.join(timeout=5)

    assert len(acquired_at) == 1
    assert acquired_at[0] >= released_at


def test_lock_is_not_broken_without_lease(tmp_path):
    path = tmp_path / "state.lock"
    path.mkdir()
    (path / PID_FILE).write_text("999999")
    old = time.time() - 3600
    os.utime(path / PID_FILE, (old, old))

    with pytest.raises(LockTimeout):
        DirLock(path, max_attempts=2, retry_interval=0.01).acquire()


def test_stale_lock_is_broken_with_lease(tmp_path):
    path = tmp_path / "state.lock"
    path.mkdir()
    (path / PID_FILE).write_text("999999")
    old = time.time() - 3600
    os.utime(path / PID_FILE, (old, old))

    lock = DirLock(path, max_attempts=2, retry_interval=0.01, stale_after=60)
    lock.acquire()
    assert lock.holder() == os.getpid()
    lock.release()


def _stale_lock(path, pid="999999"):
    path.mkdir()
    (path / PID_FILE).write_text(pid)
    old = time.time() - 3600
    os.utime(path / PID_FILE, (old, old))


def test_late_breaker_leaves_a_fresh_lock_alone(tmp_path):
    path = tmp_path / "state.lock"
    _stale_lock(path)
    first = DirLock(path, max_attempts=1, stale_after=60)
    second = DirLock(path, max_attempts=1, stale_after=60)

    # second sees the old lock as stale, then first breaks it and takes over
    assert second._is_stale(path)
    first.acquire()
    fresh = (path.stat().st_ino, first.holder())

    second._break()

    assert (path.stat().st_ino, first.holder()) == fresh
    with pytest.raises(LockTimeout):
        second.acquire()
    assert first.holder() == os.getpid()
    assert not second.breaker_path.exists()
    assert [p.name for p in tmp_path.iterdir()] == ["state.lock"]
    first.release()


def test_break_in_progress_blocks_other_breakers(tmp_path):
    path = tmp_path / "state.lock"
    _stale_lock(path)
    lock = DirLock(path, max_attempts=2, retry_interval=0.01, stale_after=60)
    lock.breaker_path.mkdir()

    with pytest.raises(LockTimeout):
        lock.acquire()
    assert lock.holder() == 999999


def test_concurrent_breakers_yield_one_holder(tmp_path):
    path = tmp_path / "state.lock"
    _stale_lock(path)
    holders = []
    barrier = threading.Barrier(4)
    guard = threading.Lock()

    def contend():
        lock = DirLock(path, max_attempts=1, stale_after=60)
        barrier.wait()
        try:
            lock.acquire()
        except LockTimeout:
            return
        with guard:
            holders.append(lock)

    workers = [threading.Thread(target=contend) for _ in range(4)]
    for w in workers:
        w.start()
    for w in workers:
        w.join(timeout=5)

    assert len(holders) <= 1
    if holders:
        assert holders[0].holder() == os.getpid()
        holders[0].release()
