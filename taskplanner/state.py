from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Phase = Literal["init", "brainstorm", "specify", "clarify", "architecture", "decompose", "execute"]
TaskStatus = Literal["pending", "in_progress", "implemented", "completed", "failed"]
ReviewStatus = Literal["pending", "passed", "blocked", "evidence_capture_failed"]
Verdict = Literal["PASSED", "BLOCKED"]

PHASE_ORDER: tuple[Phase, ...] = (
    "init", "brainstorm", "specify", "clarify", "architecture", "decompose", "execute",
)

# Statuses that satisfy a dependency or count towards wave implementation.
DONE_STATUSES: tuple[TaskStatus, ...] = ("implemented", "completed")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Task(BaseModel):
    """One planned unit of work, executed by a single implementation agent."""
    model_config = ConfigDict(extra="allow")

    id: str
    description: str = ""
    wave: int = 1
    agent: str = "general"
    status: TaskStatus = "pending"
    depends_on: list[str] = Field(default_factory=list)
    spec_anchors: list[str] = Field(default_factory=list)

    # Only an explicit False opts a task out of the new-test requirement.
    new_tests_required: bool | None = None

    start_sha: str | None = None
    tests_passed: bool = False
    test_evidence: str = ""
    new_tests_written: bool = False
    new_test_evidence: str = ""
    review_status: ReviewStatus = "pending"
    critical_findings: list[str] = Field(default_factory=list)
    advisory_findings: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    failure_reason: str = ""
    retry_count: int = 0


class WaveGate(BaseModel):
    """Aggregated gate status for one wave."""
    model_config = ConfigDict(extra="allow")

    impl_complete: bool = False
    tests_passed: bool | None = None
    reviews_complete: bool = False
    blocked: bool = False
    checked_at: str | None = None


class SpecCheck(BaseModel):
    """Latest spec-alignment result."""
    wave: int
    run_at: str = Field(default_factory=utc_now)
    critical_count: int = 0
    high_count: int = 0
    critical_findings: list[str] = Field(default_factory=list)
    high_findings: list[str] = Field(default_factory=list)
    medium_findings: list[str] = Field(default_factory=list)
    verdict: Verdict = "PASSED"


class TaskGraph(BaseModel):
    """
    The persisted orchestration document.

    One instance per orchestration run. Only ever mutated through a Store
    transaction; see taskplanner.store.
    """
    model_config = ConfigDict(extra="allow")

    title: str = ""
    spec_file: str = ""
    plan_file: str = ""
    github_issue: int | None = None
    github_repo: str | None = None

    current_phase: Phase = "init"
    phase_artifacts: dict[str, str] = Field(default_factory=dict)
    skipped_phases: list[Phase] = Field(default_factory=list)

    current_wave: int = 1
    tasks: list[Task] = Field(default_factory=list)
    executing_tasks: list[str] = Field(default_factory=list)
    wave_gates: dict[str, WaveGate] = Field(default_factory=dict)

    spec_check: SpecCheck | None = None

    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    def task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def wave_tasks(self, wave: int | None = None) -> list[Task]:
        wave = self.current_wave if wave is None else wave
        return [t for t in self.tasks if t.wave == wave]

    def gate(self, wave: int | None = None) -> WaveGate | None:
        wave = self.current_wave if wave is None else wave
        return self.wave_gates.get(str(wave))

    def ensure_gate(self, wave: int | None = None) -> WaveGate:
        wave = self.current_wave if wave is None else wave
        return self.wave_gates.setdefault(str(wave), WaveGate())

    @property
    def max_wave(self) -> int:
        return max((t.wave for t in self.tasks), default=0)

    def is_wave_implemented(self, wave: int | None = None) -> bool:
        tasks = self.wave_tasks(wave)
        return bool(tasks) and all(t.status in DONE_STATUSES for t in tasks)

    def critical_count(self, wave: int | None = None) -> int:
        return sum(len(t.critical_findings) for t in self.wave_tasks(wave))

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)
