"""
Task execution validation.

Run before an implementation agent is spawned for a planned task:

  1. Wave order   - the task's wave is not ahead of the current wave
  2. Dependencies - every dependency is implemented or completed
  3. Review gate  - the previous wave's reviews are complete
"""

from __future__ import annotations

from loguru import logger

from taskplanner.state import DONE_STATUSES, Task, TaskGraph


class ExecutionBlocked(Exception):
    """A planned task may not start yet."""

    def __init__(self, task_id: str, check: str, message: str):
        self.task_id = task_id
        self.check = check
        super().__init__(message)


def check_wave_order(task: Task, graph: TaskGraph) -> None:
    if task.wave > graph.current_wave:
        raise ExecutionBlocked(
            task.id, "wave_order",
            f"BLOCKED: Task {task.id} is in wave {task.wave}, "
            f"but the current wave is {graph.current_wave}.\n\n"
            f"Complete all wave {graph.current_wave} tasks and pass the wave gate first.",
        )


def check_dependencies(task: Task, graph: TaskGraph) -> None:
    unmet: list[str] = []
    for dep_id in task.depends_on:
        dep = graph.task(dep_id)
        if dep is None:
            unmet.append(f"{dep_id} (not in graph)")
        elif dep.status not in DONE_STATUSES:
            unmet.append(f"{dep_id} (status: {dep.status})")
    if unmet:
        raise ExecutionBlocked(
            task.id, "dependencies",
            f"BLOCKED: Task {task.id} has unmet dependencies:\n"
            + "\n".join(f"  - {d}" for d in unmet)
            + "\n\nComplete the dependency tasks first.",
        )


def check_review_gate(task: Task, graph: TaskGraph) -> None:
    previous = task.wave - 1
    if task.wave != graph.current_wave or not graph.wave_tasks(previous):
        return
    gate = graph.gate(previous)
    if gate is not None and gate.reviews_complete:
        return

    reasons: list[str] = []
    if gate is None:
        reasons.append("wave gate has not been run")
    else:
        if gate.tests_passed is False:
            reasons.append("integration tests failed")
        critical = graph.critical_count(previous)
        if critical:
            reasons.append(f"{critical} critical review findings")
        if not reasons:
            reasons.append("reviews are not complete")
    raise ExecutionBlocked(
        task.id, "review_gate",
        f"BLOCKED: Wave {previous} review gate has not passed ({'; '.join(reasons)}).\n\n"
        "Run `taskplanner gate` once every task is reviewed.",
    )


def validate_execution(graph: TaskGraph, task_id: str | None) -> Task | None:
    """
    Check that `task_id` may start now.

    Returns the planned Task, or None for ad-hoc work (no id, or an id the
    graph does not know). Raises ExecutionBlocked otherwise.
    """
    if not task_id:
        return None
    task = graph.task(task_id)
    if task is None:
        logger.debug(f"[EXEC] {task_id} is not a planned task; allowing")
        return None

    check_wave_order(task, graph)
    check_dependencies(task, graph)
    check_review_gate(task, graph)
    logger.info(f"[EXEC] Task execution validated: {task.id} (wave {task.wave})")
    return task


def ready_tasks(graph: TaskGraph) -> list[Task]:
    """Pending or failed tasks in the current wave whose dependencies are done."""
    ready = []
    for task in graph.wave_tasks():
        if task.status not in ("pending", "failed"):
            continue
        deps = [graph.task(d) for d in task.depends_on]
        if all(d is not None and d.status in DONE_STATUSES for d in deps):
            ready.append(task)
    return ready


def remaining_tasks(graph: TaskGraph, wave: int | None = None) -> list[str]:
    return [t.id for t in graph.wave_tasks(wave) if t.status not in DONE_STATUSES]
