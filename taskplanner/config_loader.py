"""
Configuration loader for taskplanner.
Merges defaults with per-project .taskplanner/config.yaml overrides.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class PathsConfig(BaseModel):
    state_dir: str = ".taskplanner/state"
    task_graph_file: str = "active_task_graph.json"
    lock_name: str = ".task_graph.lock"
    specs_dir: str = ".taskplanner/specs"
    plans_dir: str = ".taskplanner/plans"
    log_dir: str = ".taskplanner/logs"


class LockConfig(BaseModel):
    max_attempts: int = 50
    retry_interval: float = 0.1
    stale_after_seconds: float | None = None


class PhasesConfig(BaseModel):
    clarify_marker_threshold: int = 3
    exempt_agents: list[str] = Field(default_factory=list)
    exempt_skills: list[str] = Field(default_factory=list)


class HooksConfig(BaseModel):
    blocked_edit_tools: list[str] = Field(
        default_factory=lambda: ["Edit", "Write", "MultiEdit", "NotebookEdit"]
    )
    session_dir: str | None = None


class PlannerConfig(BaseModel):
    paths: PathsConfig = Field(default_factory=PathsConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    phases: PhasesConfig = Field(default_factory=PhasesConfig)
    hooks: HooksConfig = Field(default_factory=HooksConfig)

    def state_path(self, project_dir: Path) -> Path:
        return project_dir / self.paths.state_dir / self.paths.task_graph_file

    def lock_path(self, state_path: Path) -> Path:
        """The lock directory always sits beside the document it guards."""
        return state_path.parent / self.paths.lock_name

    def log_dir(self, project_dir: Path) -> Path:
        return project_dir / self.paths.log_dir

    def session_dir(self) -> Path:
        configured = os.environ.get("TASKPLANNER_SESSION_DIR") or self.hooks.session_dir
        if configured:
            return Path(configured).expanduser()
        return Path(tempfile.gettempdir()) / "taskplanner-subagents"


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(project_dir: Path | None = None) -> PlannerConfig:
    """
    Load config by merging:
      1. Built-in defaults (taskplanner/config.yaml)
      2. Project-level overrides (<project>/.taskplanner/config.yaml)
      3. Environment from <project>/.env (TASKPLANNER_SESSION_DIR, read lazily)
    """
    # 1. Built-in defaults
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    if project_dir:
        # 2. Project overrides
        project_config = project_dir / ".taskplanner" / "config.yaml"
        if project_config.exists():
            with open(project_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

        # 3. Env
        env_file = project_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file)

    return PlannerConfig(**base)
