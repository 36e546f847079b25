"""
taskplanner State Store

The task graph lives in a single JSON document that stays read-only on
disk between transactions, so any writer that bypasses the store fails
loudly. Every mutation runs the same protocol under the Lock Manager:

  acquire lock → relax permissions → load → apply transform →
  write temp file → atomic rename → restore read-only → release lock

Readers never lock. They see either the previous or the next document,
never a partial one, because commits are a single rename.
"""

from __future__ import annotations

import os
import stat
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable

from loguru import logger
from pydantic import ValidationError

from taskplanner.config_loader import PlannerConfig
from taskplanner.lock import DirLock
from taskplanner.state import TaskGraph, utc_now

Transform = Callable[[TaskGraph], TaskGraph]

READ_ONLY = stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH
WRITABLE = READ_ONLY | stat.S_IWUSR


class NoActiveGraph(Exception):
    """Raised when a transaction targets a document that does not exist."""


class StateCorrupted(Exception):
    """Raised when the document on disk is not a valid task graph."""


class Store(ABC):
    """Load / atomically-update access to the one task graph."""

    @abstractmethod
    def load(self) -> TaskGraph | None:
        ...

    @abstractmethod
    def update(self, fn: Transform) -> TaskGraph:
        """Apply `fn` to the current graph and commit its result atomically.

        `fn` receives a private copy and returns the new graph. If it raises,
        nothing is written and the exception propagates.
        """
        ...

    @abstractmethod
    def replace(self, graph: TaskGraph) -> TaskGraph:
        ...

    @abstractmethod
    def delete(self) -> bool:
        ...

    def exists(self) -> bool:
        return self.load() is not None


def _stamp(before: TaskGraph, after: TaskGraph) -> TaskGraph:
    if after != before:
        after.updated_at = utc_now()
    return after


# ---------------------------------------------------------------------------
# Filesystem store
# ---------------------------------------------------------------------------

class FileStore(Store):

    def __init__(self, path: Path, lock: DirLock | None = None):
        self.path = Path(path)
        self.lock = lock or DirLock(self.path.parent / ".task_graph.lock")

    @classmethod
    def from_config(cls, state_path: Path, config: PlannerConfig) -> "FileStore":
        lock = DirLock(
            config.lock_path(state_path),
            max_attempts=config.lock.max_attempts,
            retry_interval=config.lock.retry_interval,
            stale_after=config.lock.stale_after_seconds,
        )
        return cls(state_path, lock)

    def load(self) -> TaskGraph | None:
        try:
            text = self.path.read_text()
        except FileNotFoundError:
            return None
        return self._parse(text)

    def update(self, fn: Transform) -> TaskGraph:
        with self.lock.held():
            self._set_mode(WRITABLE)
            try:
                current = self.load()
                if current is None:
                    raise NoActiveGraph(f"No task graph at {self.path}")
                updated = _stamp(current, fn(current.model_copy(deep=True)))
                self._commit(updated)
            finally:
                self._set_mode(READ_ONLY)
        return updated

    def replace(self, graph: TaskGraph) -> TaskGraph:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.lock.held():
            self._set_mode(WRITABLE)
            try:
                graph.updated_at = utc_now()
                self._commit(graph)
            finally:
                self._set_mode(READ_ONLY)
        logger.info(f"[STORE] Task graph written: {self.path}")
        return graph

    def delete(self) -> bool:
        with self.lock.held():
            if not self.path.exists():
                return False
            self.path.unlink()
        logger.info(f"[STORE] Task graph deleted: {self.path}")
        return True

    def _parse(self, text: str) -> TaskGraph:
        try:
            return TaskGraph.model_validate_json(text)
        except ValidationError as e:
            raise StateCorrupted(f"{self.path} is not a valid task graph: {e}") from e

    def _commit(self, graph: TaskGraph) -> None:
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                tmp.write(graph.to_json())
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug(f"[STORE] Committed {self.path} (phase={graph.current_phase}, wave={graph.current_wave})")

    def _set_mode(self, mode: int) -> None:
        if self.path.exists():
            os.chmod(self.path, mode)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class MemoryStore(Store):
    """Same contract as FileStore, without a filesystem. Used by tests and dry runs."""

    def __init__(self, graph: TaskGraph | None = None):
        self._graph = graph.model_copy(deep=True) if graph else None
        self._mutex = threading.Lock()
        self.commits = 0

    def load(self) -> TaskGraph | None:
        with self._mutex:
            return self._graph.model_copy(deep=True) if self._graph else None

    def update(self, fn: Transform) -> TaskGraph:
        with self._mutex:
            if self._graph is None:
                raise NoActiveGraph("No task graph in memory")
            updated = _stamp(self._graph, fn(self._graph.model_copy(deep=True)))
            self._graph = updated
            self.commits += 1
            return updated.model_copy(deep=True)

    def replace(self, graph: TaskGraph) -> TaskGraph:
        with self._mutex:
            self._graph = graph.model_copy(deep=True)
            self.commits += 1
            return graph

    def delete(self) -> bool:
        with self._mutex:
            existed = self._graph is not None
            self._graph = None
            return existed
