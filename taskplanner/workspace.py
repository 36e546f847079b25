"""
Git access for the project checkout.

Used to pin the commit a task started from and to diff the work an
implementation agent produced since then.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

from loguru import logger


class GitError(Exception):
    pass


class Workspace:
    """Read-only view of the project's git checkout."""

    def __init__(self, repo_path: Path):
        self.repo_path = Path(repo_path).resolve()

    def head_sha(self) -> str:
        return self._git("rev-parse", "HEAD").strip()

    def diff_since(self, sha: str) -> str:
        """Unified diff from `sha` to the working tree, untracked files excluded."""
        return self._git("diff", sha)

    def try_head_sha(self) -> str | None:
        try:
            return self.head_sha()
        except GitError as e:
            logger.warning(f"[WORKSPACE] Could not read HEAD: {e}")
            return None

    def _git(self, *args: str) -> str:
        return self._run_cmd(["git", *args], cwd=self.repo_path)

    @staticmethod
    def _run_cmd(cmd: list[str], cwd: Path) -> str:
        try:
            result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=60)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise GitError(f"Git failed: {' '.join(cmd)}\n{e}") from e
        if result.returncode != 0:
            raise GitError(f"Git failed: {' '.join(cmd)}\n{result.stderr}")
        return result.stdout
