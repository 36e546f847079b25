"""
Issue-tracker sync.

When a wave passes its gate, the completed task ids are ticked off in the
tracking issue's checklist (`- [ ] T1` → `- [x] T1`). The graph is the
source of truth; the issue is a courtesy copy and failures here never
affect it.
"""

from __future__ import annotations

import json
import re
import subprocess
from pathlib import Path
from typing import Iterable, Protocol

from loguru import logger


class ExternalSyncFailure(Exception):
    pass


class IssueSync(Protocol):
    def mark_done(self, issue: int, task_ids: Iterable[str]) -> int:
        ...


def check_off_tasks(body: str, task_ids: Iterable[str]) -> tuple[str, int]:
    """Tick the checklist items for `task_ids`. Returns (new_body, items_changed)."""
    changed = 0
    for task_id in task_ids:
        pattern = re.compile(rf"^(\s*[-*]\s+)\[ \](\s+{re.escape(task_id)}\b)", re.M)
        body, n = pattern.subn(r"\1[x]\2", body)
        changed += n
    return body, changed


class GitHubIssueSync:
    """Updates issue checklists through the `gh` CLI."""

    def __init__(self, repo_dir: Path, repo: str | None = None):
        self.repo_dir = Path(repo_dir)
        self.repo = repo

    def mark_done(self, issue: int, task_ids: Iterable[str]) -> int:
        task_ids = list(task_ids)
        data = json.loads(self._gh("issue", "view", str(issue), "--json", "body"))
        body, changed = check_off_tasks(data.get("body") or "", task_ids)
        if not changed:
            logger.info(f"[SYNC] Issue #{issue}: no open checklist items for {', '.join(task_ids)}")
            return 0
        self._gh("issue", "edit", str(issue), "--body-file", "-", stdin=body)
        logger.info(f"[SYNC] Issue #{issue}: checked off {changed} task(s)")
        return changed

    def _gh(self, *args: str, stdin: str | None = None) -> str:
        cmd = ["gh", *args]
        if self.repo:
            cmd += ["--repo", self.repo]
        try:
            result = subprocess.run(
                cmd,
                cwd=self.repo_dir,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=30,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ExternalSyncFailure(f"{' '.join(cmd[:3])} failed: {e}") from e
        if result.returncode != 0:
            raise ExternalSyncFailure(f"{' '.join(cmd[:3])} failed: {result.stderr.strip()}")
        return result.stdout


def sync_completed(sync: IssueSync | None, issue: int | None, task_ids: list[str]) -> bool:
    """Best-effort notification. Returns whether the tracker was updated."""
    if sync is None or issue is None or not task_ids:
        return False
    try:
        return sync.mark_done(issue, task_ids) > 0
    except (ExternalSyncFailure, ValueError) as e:
        logger.warning(f"[SYNC] Could not update issue #{issue}: {e}")
        return False
