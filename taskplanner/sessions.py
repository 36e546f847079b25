"""
Session registry.

Spawned subagents may run in another working directory than the
orchestrator that owns the task graph. The registry keeps two kinds of
ephemeral files per session id in a shared temp directory:

  <session>.task_graph   absolute path of the authoritative state document
  <session>.subagents    number of subagents currently running for it

It is only used for discovery. Nothing here is authoritative state.
"""

from __future__ import annotations

import re
from pathlib import Path

from loguru import logger

from taskplanner.lock import DirLock

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


class SessionRegistry:

    def __init__(self, base_dir: Path, max_attempts: int = 50, retry_interval: float = 0.1):
        self.base_dir = Path(base_dir)
        self.max_attempts = max_attempts
        self.retry_interval = retry_interval

    # -- task graph path ---------------------------------------------------

    def register_graph(self, session_id: str, state_path: Path) -> None:
        if not session_id:
            return
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._file(session_id, "task_graph").write_text(str(Path(state_path).resolve()))
        logger.debug(f"[SESSION] {session_id} → {state_path}")

    def resolve_graph(self, session_id: str | None, local_path: Path) -> Path | None:
        """
        Find the state document for a session.

        A session mapping wins over the local path so subagents working in
        other checkouts still reach the orchestrator's graph.
        """
        if session_id:
            mapping = self._file(session_id, "task_graph")
            if mapping.exists():
                target = Path(mapping.read_text().strip())
                if target.exists():
                    return target
                logger.warning(f"[SESSION] Stale mapping for {session_id}: {target} is gone")
        if local_path.exists():
            return local_path
        return None

    # -- subagent markers --------------------------------------------------

    def subagent_started(self, session_id: str) -> int:
        return self._bump(session_id, +1)

    def subagent_finished(self, session_id: str) -> int:
        return self._bump(session_id, -1)

    def is_subagent(self, session_id: str | None) -> bool:
        if not session_id:
            return False
        return self._count(session_id) > 0

    def clear(self, session_id: str) -> None:
        for kind in ("task_graph", "subagents"):
            self._file(session_id, kind).unlink(missing_ok=True)

    # -- internals ---------------------------------------------------------

    def _file(self, session_id: str, kind: str) -> Path:
        return self.base_dir / f"{_UNSAFE.sub('_', session_id)}.{kind}"

    def _count(self, session_id: str) -> int:
        try:
            return int(self._file(session_id, "subagents").read_text().strip() or 0)
        except (OSError, ValueError):
            return 0

    def _bump(self, session_id: str, delta: int) -> int:
        if not session_id:
            return 0
        self.base_dir.mkdir(parents=True, exist_ok=True)
        lock = DirLock(
            self._file(session_id, "subagents.lock"),
            max_attempts=self.max_attempts,
            retry_interval=self.retry_interval,
        )
        with lock.held():
            count = max(0, self._count(session_id) + delta)
            marker = self._file(session_id, "subagents")
            if count:
                marker.write_text(str(count))
            else:
                marker.unlink(missing_ok=True)
        return count
