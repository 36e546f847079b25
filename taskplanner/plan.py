"""
Plan loading.

The decompose phase produces a YAML task list:

  tasks:
    - id: T1
      description: "Add the repository layer"
      wave: 1
      agent: code-implementer-agent
      depends_on: []
      spec_anchors: [FR-001]
      new_tests_required: true

`apply_plan` installs it into the graph once it is known to be well formed.
"""

from __future__ import annotations

from pathlib import Path

import yaml
from loguru import logger
from pydantic import ValidationError

from taskplanner.state import Task, TaskGraph, WaveGate


class PlanError(Exception):
    pass


def load_plan(path: Path) -> list[Task]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise PlanError(f"Cannot read plan {path}: {e}") from e

    raw = data.get("tasks") if isinstance(data, dict) else data
    if not isinstance(raw, list) or not raw:
        raise PlanError(f"{path} has no task list")
    try:
        tasks = [Task(**item) for item in raw]
    except (TypeError, ValidationError) as e:
        raise PlanError(f"Invalid task in {path}: {e}") from e

    validate_plan(tasks)
    return tasks


def validate_plan(tasks: list[Task]) -> None:
    """Ids unique, dependencies known and never in a later wave, no cycles."""
    by_id: dict[str, Task] = {}
    for task in tasks:
        if task.id in by_id:
            raise PlanError(f"Duplicate task id {task.id}")
        if task.wave < 1:
            raise PlanError(f"{task.id}: wave must be >= 1, got {task.wave}")
        by_id[task.id] = task

    for task in tasks:
        for dep_id in task.depends_on:
            dep = by_id.get(dep_id)
            if dep is None:
                raise PlanError(f"{task.id} depends on unknown task {dep_id}")
            if dep.wave > task.wave:
                raise PlanError(
                    f"{task.id} (wave {task.wave}) depends on {dep_id} in later wave {dep.wave}"
                )

    visiting: set[str] = set()
    done: set[str] = set()

    def visit(task_id: str, trail: list[str]) -> None:
        if task_id in done:
            return
        if task_id in visiting:
            raise PlanError(f"Dependency cycle: {' → '.join(trail + [task_id])}")
        visiting.add(task_id)
        for dep_id in by_id[task_id].depends_on:
            visit(dep_id, trail + [task_id])
        visiting.discard(task_id)
        done.add(task_id)

    for task_id in by_id:
        visit(task_id, [])


def apply_plan(graph: TaskGraph, tasks: list[Task]) -> TaskGraph:
    """Install `tasks` as the graph's plan, starting at the lowest wave."""
    if graph.current_phase != "decompose":
        raise PlanError(
            f'Tasks can only be planned in the decompose phase (current: "{graph.current_phase}")'
        )
    graph.tasks = [t.model_copy(deep=True) for t in tasks]
    graph.current_wave = min(t.wave for t in tasks)
    graph.executing_tasks = []
    graph.wave_gates = {str(w): WaveGate() for w in sorted({t.wave for t in tasks})}
    graph.spec_check = None
    logger.info(f"[PLAN] {len(tasks)} tasks across {len(graph.wave_gates)} wave(s)")
    return graph
