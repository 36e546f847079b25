import pytest

from conftest import make_task
from taskplanner.plan import PlanError, apply_plan, load_plan, validate_plan
from taskplanner.state import TaskGraph

PLAN_YAML = """\
tasks:
  - id: T1
    description: Add the repository layer
    wave: 1
  - id: T2
    description: Wire the service
    wave: 2
    depends_on: [T1]
    new_tests_required: false
"""


def test_load_plan(tmp_path):
    path = tmp_path / "tasks.yaml"
    path.write_text(PLAN_YAML)
    tasks = load_plan(path)
    assert [t.id for t in tasks] == ["T1", "T2"]
    assert tasks[1].depends_on == ["T1"]
    assert tasks[1].new_tests_required is False
    assert tasks[0].new_tests_required is None


def test_load_bare_list(tmp_path):
    path = tmp_path / "tasks.yaml"
    path.write_text("- id: T1\n- id: T2\n  wave: 2\n")
    assert [t.wave for t in load_plan(path)] == [1, 2]


@pytest.mark.parametrize("content", ["", "tasks: []\n", "title: nothing\n"])
def test_empty_plan_is_rejected(tmp_path, content):
    path = tmp_path / "tasks.yaml"
    path.write_text(content)
    with pytest.raises(PlanError, match="no task list"):
        load_plan(path)


def test_invalid_task_is_rejected(tmp_path):
    path = tmp_path / "tasks.yaml"
    path.write_text("tasks:\n  - description: no id\n")
    with pytest.raises(PlanError, match="Invalid task"):
        load_plan(path)


def test_missing_plan_file(tmp_path):
    with pytest.raises(PlanError, match="Cannot read"):
        load_plan(tmp_path / "nope.yaml")


def test_validate_plan_rules():
    with pytest.raises(PlanError, match="Duplicate"):
        validate_plan([make_task("T1"), make_task("T1")])
    with pytest.raises(PlanError, match="wave must be"):
        validate_plan([make_task("T1", 0)])
    with pytest.raises(PlanError, match="unknown task T9"):
        validate_plan([make_task("T1", depends_on=["T9"])])
    with pytest.raises(PlanError, match="later wave"):
        validate_plan([make_task("T1", 1, depends_on=["T2"]), make_task("T2", 2)])
    with pytest.raises(PlanError, match="cycle"):
        validate_plan([make_task("T1", depends_on=["T2"]), make_task("T2", depends_on=["T1"])])


def test_apply_plan_requires_decompose():
    with pytest.raises(PlanError, match="decompose"):
        apply_plan(TaskGraph(current_phase="architecture"), [make_task("T1")])


def test_apply_plan_installs_tasks_and_gates():
    graph = TaskGraph(current_phase="decompose", executing_tasks=["T0"])
    apply_plan(graph, [make_task("T1", 2), make_task("T2", 3)])
    assert [t.id for t in graph.tasks] == ["T1", "T2"]
    assert graph.current_wave == 2
    assert graph.executing_tasks == []
    assert sorted(graph.wave_gates) == ["2", "3"]
