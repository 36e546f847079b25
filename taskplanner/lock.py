"""
taskplanner Lock Manager

Filesystem mutual exclusion for cooperating processes. A lock is a
directory: `mkdir` either creates it or fails, atomically, on every
platform we care about. The holder's pid is written inside for
diagnostics.

There is no lease by default. A holder killed mid-transaction leaves its
lock behind until an operator runs `taskplanner unlock`, unless the project
opts into `lock.stale_after_seconds`.
"""

from __future__ import annotations

import os
import shutil
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from loguru import logger
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

T = TypeVar("T")

PID_FILE = "pid"


class LockTimeout(Exception):
    """Raised when the lock could not be acquired within the attempt budget."""

    def __init__(self, path: Path, attempts: int, holder: int | None = None):
        self.path = path
        self.attempts = attempts
        self.holder = holder
        held_by = f" (held by pid {holder})" if holder else ""
        super().__init__(
            f"Failed to acquire lock {path} after {attempts} attempts{held_by}.\n"
            "Another process may be holding it. If its holder is gone, run "
            "`taskplanner unlock` to remove the lock."
        )


class _LockBusy(Exception):
    pass


class DirLock:
    """
    Directory-based mutex with bounded, fixed-delay retry.
    """

    def __init__(
        self,
        path: Path,
        max_attempts: int = 50,
        retry_interval: float = 0.1,
        stale_after: float | None = None,
    ):
        self.path = Path(path)
        self.max_attempts = max_attempts
        self.retry_interval = retry_interval
        self.stale_after = stale_after

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_fixed(self.retry_interval),
                retry=retry_if_exception_type(_LockBusy),
                reraise=True,
            ):
                with attempt:
                    self._try_acquire()
        except _LockBusy:
            raise LockTimeout(self.path, self.max_attempts, self.holder()) from None

    def release(self) -> None:
        """Remove the lock directory. Safe to call when it is already gone."""
        if not self.path.exists():
            return
        shutil.rmtree(self.path, ignore_errors=True)
        logger.debug(f"[LOCK] Released {self.path}")

    @contextmanager
    def held(self) -> Iterator["DirLock"]:
        self.acquire()
        try:
            yield self
        finally:
            self.release()

    def holder(self) -> int | None:
        """Pid recorded by the current holder, if any."""
        try:
            return int((self.path / PID_FILE).read_text().strip())
        except (OSError, ValueError):
            return None

    @property
    def is_held(self) -> bool:
        return self.path.is_dir()

    def _try_acquire(self) -> None:
        self._break_if_stale()
        try:
            self.path.mkdir()
        except FileExistsError:
            raise _LockBusy(str(self.path))
        (self.path / PID_FILE).write_text(str(os.getpid()))
        logger.debug(f"[LOCK] Acquired {self.path} (pid {os.getpid()})")

    @property
    def breaker_path(self) -> Path:
        """Held while a contender breaks a stale lock, so breaks never overlap."""
        return self.path.with_name(f"{self.path.name}.break")

    def _break_if_stale(self) -> None:
        if self.stale_after is None or not self._is_stale(self.path):
            return
        self._break()

    def _break(self) -> None:
        """
        Remove the lock at `path` if it is still the stale one.

        Staleness is re-checked under the breaker directory: another
        contender may have broken the old lock and taken a fresh one since
        we last looked. The lock is renamed to a private tombstone before it
        is deleted, and a tombstone that turns out to be a different lock
        than the one judged stale is put back untouched.
        """
        try:
            self.breaker_path.mkdir()
        except (FileExistsError, FileNotFoundError):
            return
        try:
            observed = _identity(self.path)
            if observed is None or not self._is_stale(self.path):
                return
            tombstone = self.path.with_name(
                f"{self.path.name}.stale.{os.getpid()}.{time.monotonic_ns()}"
            )
            try:
                os.rename(self.path, tombstone)
            except OSError:
                return
            if _identity(tombstone) != observed:
                self._restore(tombstone)
                return
            logger.warning(
                f"[LOCK] Breaking stale lock {self.path} "
                f"(held by pid {observed[2]}, idle over {self.stale_after}s)"
            )
            shutil.rmtree(tombstone, ignore_errors=True)
        finally:
            try:
                self.breaker_path.rmdir()
            except OSError:
                pass

    def _restore(self, tombstone: Path) -> None:
        try:
            os.rename(tombstone, self.path)
        except OSError as e:
            logger.error(f"[LOCK] Could not restore {self.path} from {tombstone}: {e}")

    def _is_stale(self, path: Path) -> bool:
        try:
            age = time.time() - (path / PID_FILE).stat().st_mtime
        except OSError:
            return False
        return age > self.stale_after


def _identity(path: Path) -> tuple[int, int, str] | None:
    """(directory inode, pid file mtime, recorded pid) of one lock instance."""
    try:
        pid_file = path / PID_FILE
        return path.stat().st_ino, pid_file.stat().st_mtime_ns, pid_file.read_text().strip()
    except OSError:
        return None


def with_lock(path: Path, fn: Callable[[], T], **lock_kwargs) -> T:
    """Run `fn` while holding the lock at `path`; the lock never leaks."""
    with DirLock(path, **lock_kwargs).held():
        return fn()
