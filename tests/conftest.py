from pathlib import Path

import pytest

from taskplanner.state import Task, TaskGraph, WaveGate


def make_task(task_id: str, wave: int = 1, **fields) -> Task:
    return Task(id=task_id, wave=wave, **fields)


def done_task(task_id: str, wave: int = 1, **fields) -> Task:
    """A task that satisfies every wave gate check."""
    values = dict(
        status="implemented",
        tests_passed=True,
        test_evidence="pytest: 3 passed",
        new_tests_written=True,
        review_status="passed",
    )
    values.update(fields)
    return make_task(task_id, wave, **values)


def make_graph(tasks=(), **fields) -> TaskGraph:
    tasks = list(tasks)
    waves = sorted({t.wave for t in tasks})
    fields.setdefault("wave_gates", {str(w): WaveGate() for w in waves})
    return TaskGraph(tasks=tasks, **fields)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A project with a spec and a plan artifact on disk."""
    specs = tmp_path / ".taskplanner" / "specs"
    plans = tmp_path / ".taskplanner" / "plans"
    specs.mkdir(parents=True)
    plans.mkdir(parents=True)
    (specs / "feature.md").write_text("# Feature\n\nNo open questions.\n")
    (plans / "feature.md").write_text("# Plan\n")
    return tmp_path
