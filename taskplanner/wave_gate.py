"""
taskplanner Wave Gate Controller

A wave is finished only when every task in it passes, in order:

  1. Test evidence      - tests_passed is true
  2. New tests          - new tests were written, unless opted out
  3. Reviews            - every task was reviewed (passed or blocked)
  4. Spec alignment     - the latest spec check for this wave has no criticals
  5. Critical findings  - no critical review findings remain

Evaluation is pure and runs inside the store transaction, so a failure
leaves the document exactly as it was. On success all tasks are completed
and the wave advances in the same commit. Passing the last planned wave
leaves it current and reports the orchestration complete.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from taskplanner.event_bus import EventBus
from taskplanner.issue_sync import IssueSync, sync_completed
from taskplanner.state import TaskGraph, WaveGate, utc_now
from taskplanner.store import Store

CHECK_ORDER = ("test_evidence", "new_tests", "reviews", "spec_alignment", "critical_findings")


@dataclass
class GateReport:
    wave: int
    passed: bool = True
    failed_check: str | None = None
    task_ids: list[str] = field(default_factory=list)
    message: str = ""
    warnings: list[str] = field(default_factory=list)
    checks: dict[str, bool] = field(default_factory=dict)


@dataclass
class GateResult:
    report: GateReport
    graph: TaskGraph
    completed: list[str]
    all_complete: bool


class GateCheckFailure(Exception):
    """A gate check failed. Carries the report; nothing was written."""

    def __init__(self, report: GateReport):
        self.report = report
        self.check = report.failed_check
        self.task_ids = report.task_ids
        super().__init__(report.message)


def _fail(report: GateReport, check: str, task_ids: list[str], message: str) -> GateReport:
    report.passed = False
    report.failed_check = check
    report.task_ids = task_ids
    report.message = message
    report.checks[check] = False
    return report


def evaluate_gate(graph: TaskGraph, wave: int | None = None) -> GateReport:
    wave = graph.current_wave if wave is None else wave
    report = GateReport(wave=wave)
    tasks = graph.wave_tasks(wave)

    if not tasks:
        return _fail(report, "tasks", [], f"FAILED: Wave {wave} has no planned tasks.")

    # 1
    missing = [t.id for t in tasks if not t.tests_passed]
    if missing:
        return _fail(
            report, "test_evidence", missing,
            f"FAILED: Not all wave {wave} tasks have test evidence.\n\n"
            f"Missing evidence: {', '.join(missing)}\n\n"
            "Re-spawn the agents that did not run the tests.",
        )
    report.checks["test_evidence"] = True

    # 2
    missing = [t.id for t in tasks if t.new_tests_required is not False and not t.new_tests_written]
    if missing:
        return _fail(
            report, "new_tests", missing,
            f"FAILED: Not all wave {wave} tasks satisfied the new-test requirement.\n\n"
            f"Missing new-test evidence: {', '.join(missing)}\n\n"
            "Tasks must write new tests unless new_tests_required is false.",
        )
    report.checks["new_tests"] = True

    # 3
    unreviewed = [t.id for t in tasks if t.review_status not in ("passed", "blocked")]
    if unreviewed:
        return _fail(
            report, "reviews", unreviewed,
            f"FAILED: Not all wave {wave} tasks have been reviewed.\n\n"
            f"Unreviewed: {', '.join(unreviewed)}\n\n"
            "Spawn a review agent for each unreviewed task.",
        )
    report.checks["reviews"] = True

    # 4
    spec_check = graph.spec_check
    if spec_check is not None and spec_check.wave != wave:
        report.warnings.append(
            f"Spec check was recorded for wave {spec_check.wave}, not wave {wave}; not enforced."
        )
    elif spec_check is not None and spec_check.critical_count > 0:
        return _fail(
            report, "spec_alignment", [],
            f"FAILED: Wave {wave} spec check found {spec_check.critical_count} critical issue(s):\n"
            + "\n".join(f"  - {f}" for f in spec_check.critical_findings),
        )
    report.checks["spec_alignment"] = True

    # 5
    flagged = [t.id for t in tasks if t.critical_findings]
    if flagged:
        count = graph.critical_count(wave)
        return _fail(
            report, "critical_findings", flagged,
            f"FAILED: Wave {wave} code review has {count} critical finding(s) "
            f"in {', '.join(flagged)}.\n\nFix them before completing the wave gate.",
        )
    report.checks["critical_findings"] = True

    report.message = f"Wave {wave} gate passed ({len(tasks)} tasks)."
    return report


def blocking_tasks(graph: TaskGraph, wave: int | None = None) -> list[str]:
    """Task ids holding a blocked gate shut."""
    tasks = graph.wave_tasks(wave)
    flagged = [t.id for t in tasks if t.critical_findings or t.review_status == "blocked"]
    return flagged or [t.id for t in tasks if t.status == "implemented" and not t.tests_passed]


class WaveGateController:

    def __init__(self, store: Store, issue_sync: IssueSync | None = None, bus: EventBus | None = None):
        self.store = store
        self.issue_sync = issue_sync
        self.bus = bus

    def complete(self, wave: int | None = None) -> GateResult:
        """
        Run the gate for the current wave and advance on success.

        Raises GateCheckFailure (state untouched) when any check fails.
        """
        captured: dict = {}

        def transform(graph: TaskGraph) -> TaskGraph:
            if wave is not None and wave != graph.current_wave:
                report = GateReport(wave=wave)
                raise GateCheckFailure(_fail(
                    report, "wave", [],
                    f"FAILED: Only the current wave ({graph.current_wave}) can be gated, not {wave}.",
                ))
            report = evaluate_gate(graph)
            captured["report"] = report
            if not report.passed:
                raise GateCheckFailure(report)

            gated = graph.current_wave
            completed = []
            for task in graph.wave_tasks(gated):
                task.status = "completed"
                task.review_status = "passed"
                completed.append(task.id)
            graph.executing_tasks = [t for t in graph.executing_tasks if t not in completed]

            gate = graph.ensure_gate(gated)
            gate.impl_complete = True
            gate.tests_passed = True
            gate.reviews_complete = True
            gate.blocked = False
            gate.checked_at = utc_now()

            last = gated >= graph.max_wave
            if not last:
                graph.current_wave = gated + 1
                graph.wave_gates[str(graph.current_wave)] = WaveGate()
            captured["completed"] = completed
            captured["all_complete"] = last
            return graph

        try:
            graph = self.store.update(transform)
        except GateCheckFailure as e:
            logger.warning(f"[GATE] Wave gate failed at {e.check}: {', '.join(e.task_ids) or '-'}")
            if self.bus:
                self.bus.emit("wave_gate_failed", "wave_gate", {
                    "wave": e.report.wave, "check": e.check, "task_ids": e.task_ids,
                })
            raise

        report = captured["report"]
        completed = captured["completed"]
        all_complete = captured["all_complete"]
        for warning in report.warnings:
            logger.warning(f"[GATE] {warning}")
        if all_complete:
            logger.info(f"[GATE] Wave {report.wave} passed; all waves complete")
        else:
            logger.info(f"[GATE] Wave {report.wave} passed; now at wave {graph.current_wave}")

        if self.bus:
            self.bus.emit("wave_gate_passed", "wave_gate", {
                "wave": report.wave,
                "completed": completed,
                "next_wave": graph.current_wave,
                "all_complete": all_complete,
            })
        sync_completed(self.issue_sync, graph.github_issue, completed)

        return GateResult(report=report, graph=graph, completed=completed, all_complete=all_complete)
