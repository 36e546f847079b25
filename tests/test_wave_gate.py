import pytest

from conftest import done_task, make_graph, make_task
from taskplanner.event_bus import EventBus
from taskplanner.issue_sync import ExternalSyncFailure
from taskplanner.state import SpecCheck, WaveGate
from taskplanner.store import MemoryStore
from taskplanner.wave_gate import (
    GateCheckFailure,
    WaveGateController,
    blocking_tasks,
    evaluate_gate,
)


def _two_wave_graph(**t2_fields):
    return make_graph(
        [done_task("T1"), done_task("T2", **t2_fields), make_task("T3", 2)],
        current_phase="execute",
        executing_tasks=["T1"],
    )


class _FakeSync:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def mark_done(self, issue, task_ids):
        self.calls.append((issue, list(task_ids)))
        if self.fail:
            raise ExternalSyncFailure("gh not authenticated")
        return len(task_ids)


def test_missing_test_evidence_fails_without_writing():
    store = MemoryStore(_two_wave_graph(tests_passed=False))
    before = store.load()

    with pytest.raises(GateCheckFailure) as exc:
        WaveGateController(store).complete()

    assert exc.value.check == "test_evidence"
    assert exc.value.task_ids == ["T2"]
    assert store.commits == 0
    assert store.load() == before


def test_passing_gate_completes_wave_and_advances():
    store = MemoryStore(_two_wave_graph())
    result = WaveGateController(store).complete()

    graph = store.load()
    assert result.completed == ["T1", "T2"]
    assert [t.status for t in graph.wave_tasks(1)] == ["completed", "completed"]
    assert graph.executing_tasks == []
    gate = graph.wave_gates["1"]
    assert gate.impl_complete and gate.tests_passed and gate.reviews_complete
    assert gate.checked_at is not None
    assert graph.current_wave == 2
    assert graph.wave_gates["2"] == WaveGate()
    assert not result.all_complete


def test_last_wave_reports_all_complete():
    store = MemoryStore(make_graph([done_task("T1")]))
    result = WaveGateController(store).complete()
    assert result.all_complete

    graph = store.load()
    assert graph.current_wave == 1
    assert "2" not in graph.wave_gates
    assert graph.task("T1").status == "completed"


def test_gate_after_last_wave_still_reports_complete():
    store = MemoryStore(make_graph([done_task("T1")]))
    WaveGateController(store).complete()

    again = WaveGateController(store).complete()
    assert again.all_complete
    assert again.report.passed
    assert store.load().current_wave == 1


def test_checks_run_in_order():
    graph = make_graph([done_task("T1", new_tests_written=False, review_status="pending")])
    report = evaluate_gate(graph)
    assert report.failed_check == "new_tests"
    assert report.checks == {"test_evidence": True, "new_tests": False}


def test_new_tests_opt_out():
    graph = make_graph([done_task("T1", new_tests_written=False, new_tests_required=False)])
    assert evaluate_gate(graph).passed


def test_unreviewed_tasks_fail():
    report = evaluate_gate(make_graph([done_task("T1"), done_task("T2", review_status="evidence_capture_failed")]))
    assert (report.failed_check, report.task_ids) == ("reviews", ["T2"])


def test_critical_findings_fail():
    graph = make_graph([done_task("T1", review_status="blocked", critical_findings=["leaks token"])])
    report = evaluate_gate(graph)
    assert (report.failed_check, report.task_ids) == ("critical_findings", ["T1"])
    assert blocking_tasks(graph) == ["T1"]


def test_spec_check_for_this_wave_is_enforced():
    graph = make_graph([done_task("T1")])
    graph.spec_check = SpecCheck(wave=1, critical_count=1, critical_findings=["FR-002 missing"], verdict="BLOCKED")
    report = evaluate_gate(graph)
    assert report.failed_check == "spec_alignment"
    assert "FR-002 missing" in report.message


def test_spec_check_for_another_wave_only_warns():
    graph = make_graph([done_task("T1", 2)], current_wave=2)
    graph.spec_check = SpecCheck(wave=1, critical_count=3, verdict="BLOCKED")
    report = evaluate_gate(graph)
    assert report.passed
    assert "wave 1" in report.warnings[0]


def test_empty_wave_fails():
    store = MemoryStore(make_graph([done_task("T1", 2)]))
    with pytest.raises(GateCheckFailure) as exc:
        WaveGateController(store).complete()
    assert exc.value.check == "tasks"


def test_only_current_wave_can_be_gated():
    store = MemoryStore(_two_wave_graph())
    with pytest.raises(GateCheckFailure) as exc:
        WaveGateController(store).complete(wave=2)
    assert exc.value.check == "wave"
    assert store.commits == 0


def test_issue_sync_after_commit():
    sync = _FakeSync()
    graph = _two_wave_graph()
    graph.github_issue = 12
    store = MemoryStore(graph)

    WaveGateController(store, issue_sync=sync).complete()
    assert sync.calls == [(12, ["T1", "T2"])]


def test_issue_sync_failure_keeps_the_commit():
    store = MemoryStore(make_graph([done_task("T1")], github_issue=3))
    result = WaveGateController(store, issue_sync=_FakeSync(fail=True)).complete()
    assert result.completed == ["T1"]
    assert store.load().task("T1").status == "completed"


def test_gate_events():
    bus = EventBus()
    events = []
    bus.subscribe(events.append)

    store = MemoryStore(_two_wave_graph(tests_passed=False))
    with pytest.raises(GateCheckFailure):
        WaveGateController(store, bus=bus).complete()

    store = MemoryStore(_two_wave_graph())
    WaveGateController(store, bus=bus).complete()

    assert [e.event_type for e in events] == ["wave_gate_failed", "wave_gate_passed"]
    assert events[0].payload["task_ids"] == ["T2"]
    assert events[1].payload["next_wave"] == 2
