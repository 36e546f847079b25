"""
taskplanner Event Handlers

Entry points for the events the agent runtime reports:

  pre_tool_use       before any tool runs (edit guard, phase + execution gates)
  subagent_stop      when a spawned agent finishes (task, review, spec check)
  assistant_message  when the orchestrator finishes a turn (phase completion)

Each returns a HookDecision. No document means no active orchestration,
and every handler then allows silently. All state changes go through a
single Store transaction; checks run before anything is written.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from taskplanner.config_loader import PlannerConfig
from taskplanner.event_bus import EventBus
from taskplanner.evidence import (
    detect_new_tests,
    extract_review_findings,
    extract_spec_check,
    extract_task_id,
    extract_test_evidence,
    parse_files_modified,
)
from taskplanner.execution import ExecutionBlocked, validate_execution
from taskplanner.phases import (
    GENERIC_AGENTS,
    IMPLEMENTATION_AGENTS,
    ExemptAgent,
    InvalidTransition,
    MissingArtifact,
    PhaseValidator,
    classify_agent,
    classify_skill,
    detect_completed_phase,
    enter_phase,
    is_review_agent,
    is_review_prompt,
    is_spec_check_agent,
    record_completion,
)
from taskplanner.sessions import SessionRegistry
from taskplanner.state import TaskGraph
from taskplanner.store import Store
from taskplanner.wave_gate import blocking_tasks
from taskplanner.workspace import GitError, Workspace

BASH_WRITE_PATTERNS = (
    re.compile(r"\becho\b.*>"),
    re.compile(r"\bprintf\b.*>"),
    re.compile(r"\bcat\b.*>"),
    re.compile(r"\btee\b"),
    re.compile(r"\bcp\b"),
    re.compile(r"\bmv\b"),
    re.compile(r"\brm\b"),
    re.compile(r"\bsed\b.*-i"),
    re.compile(r"\bawk\b.*>"),
    re.compile(r"\bchmod\b"),
)

_PATH_CANDIDATES = (
    re.compile(r'"([^"]+)"'),
    re.compile(r"'([^']+)'"),
    re.compile(r"\S+\.(?:json|md)\b"),
)


@dataclass
class HookDecision:
    allowed: bool = True
    reason: str = ""
    messages: list[str] = field(default_factory=list)

    @classmethod
    def allow(cls, *messages: str) -> "HookDecision":
        return cls(True, "", [m for m in messages if m])

    @classmethod
    def deny(cls, reason: str) -> "HookDecision":
        return cls(False, reason, [])


class EventHandlers:

    def __init__(
        self,
        store: Store,
        project_dir: Path,
        config: PlannerConfig | None = None,
        session_id: str | None = None,
        registry: SessionRegistry | None = None,
        workspace: Workspace | None = None,
        bus: EventBus | None = None,
    ):
        self.store = store
        self.project_dir = Path(project_dir)
        self.config = config or PlannerConfig()
        self.session_id = session_id
        self.registry = registry
        self.workspace = workspace
        self.bus = bus
        self.validator = PhaseValidator(self.project_dir, self.config.phases.clarify_marker_threshold)

        paths = self.config.paths
        self._protected = (
            re.compile(re.escape(paths.state_dir) + r"/.*\.json$"),
            re.compile(re.escape(paths.specs_dir) + r"/.*\.md$"),
            re.compile(re.escape(paths.plans_dir) + r"/.*\.md$"),
        )
        self._state_file = re.compile(re.escape(paths.state_dir) + r"/.*\.json$")

    # -----------------------------------------------------------------------
    # Pre-action check
    # -----------------------------------------------------------------------

    def pre_tool_use(self, tool_name: str, tool_input: dict | None) -> HookDecision:
        graph = self.store.load()
        if graph is None:
            return HookDecision.allow()
        tool_input = tool_input or {}

        if tool_name == "Bash":
            decision = self._guard_bash(tool_input.get("command") or "")
        elif tool_name in self.config.hooks.blocked_edit_tools:
            decision = self._guard_edit(graph, tool_input)
        elif tool_name == "Skill":
            decision = self._on_skill(graph, tool_input)
        elif tool_name == "Task":
            decision = self._on_task(graph, tool_input)
        else:
            decision = HookDecision.allow()

        if not decision.allowed:
            logger.info(f"[HOOK] Denied {tool_name}: {decision.reason.splitlines()[0]}")
            self._emit("tool_denied", {"tool": tool_name, "reason": decision.reason})
        return decision

    def _guard_bash(self, command: str) -> HookDecision:
        if not command or not any(p.search(command) for p in BASH_WRITE_PATTERNS):
            return HookDecision.allow()
        target = self._protected_target(command)
        if target:
            return HookDecision.deny(
                f"BLOCKED: Direct write to orchestration file: {target}\n\n"
                "State, spec and plan files are only changed through taskplanner.\n"
                "Use the CLI (`taskplanner status`, `taskplanner skip`, `taskplanner reset`)."
            )
        return HookDecision.allow()

    def _protected_target(self, command: str) -> str | None:
        for pattern in _PATH_CANDIDATES:
            for match in pattern.finditer(command):
                candidate = match.group(1) if pattern.groups else match.group(0)
                if any(p.search(candidate) for p in self._protected):
                    return candidate
        return None

    def _guard_edit(self, graph: TaskGraph, tool_input: dict) -> HookDecision:
        target = tool_input.get("file_path") or tool_input.get("notebook_path") or ""
        if target and self._state_file.search(str(target)):
            return HookDecision.deny(
                f"BLOCKED: {target} is managed by taskplanner and cannot be edited directly."
            )
        if self.registry and self.registry.is_subagent(self.session_id):
            return HookDecision.allow()

        reason = (
            "BLOCKED: Direct file edits are disabled while an orchestration is active.\n\n"
            "Spawn an implementation agent with the Task tool for the planned task instead."
        )
        gate = graph.gate()
        if gate is not None and gate.blocked:
            blockers = blocking_tasks(graph)
            reason += (
                f"\n\nWave {graph.current_wave} gate is BLOCKED by: {', '.join(blockers) or 'unknown'}.\n"
                "Re-spawn implementation agents for these tasks to fix their findings."
            )
        return HookDecision.deny(reason)

    def _on_skill(self, graph: TaskGraph, tool_input: dict) -> HookDecision:
        skill = tool_input.get("skill") or tool_input.get("name") or tool_input.get("command") or ""
        intent = classify_skill(skill, self.config.phases.exempt_skills)
        try:
            target = self.validator.validate(graph, intent)
            if target is not None and target != graph.current_phase:
                self.store.update(lambda g: enter_phase(g, self.validator.validate(g, intent)))
                self._emit("phase_entered", {"phase": target, "via": f"skill:{skill}"})
        except (InvalidTransition, MissingArtifact) as e:
            return HookDecision.deny(str(e))
        return HookDecision.allow()

    def _on_task(self, graph: TaskGraph, tool_input: dict) -> HookDecision:
        agent_type = tool_input.get("subagent_type") or ""
        prompt = "\n".join(
            str(tool_input.get(k) or "") for k in ("description", "prompt")
        ).strip()
        intent = classify_agent(agent_type, prompt, self.config.phases.exempt_agents)

        try:
            target = self.validator.validate(graph, intent)
        except (InvalidTransition, MissingArtifact) as e:
            return HookDecision.deny(str(e))
        if isinstance(intent, ExemptAgent):
            return HookDecision.allow()

        implementing = (
            target == "execute"
            and not is_review_agent(agent_type)
            and not is_spec_check_agent(agent_type)
            and not (agent_type.lower() in GENERIC_AGENTS and is_review_prompt(prompt))
        )
        task_id = extract_task_id(prompt) if implementing else None
        try:
            task = validate_execution(graph, task_id) if implementing else None
        except ExecutionBlocked as e:
            return HookDecision.deny(str(e))

        start_sha = self._head_sha() if task is not None and not task.start_sha else None

        def transform(g: TaskGraph) -> TaskGraph:
            enter_phase(g, self.validator.validate(g, intent))
            if task is None:
                return g
            planned = validate_execution(g, task.id)
            if planned is not None and planned.status != "completed":
                planned.status = "in_progress"
                planned.start_sha = planned.start_sha or start_sha
                if planned.id not in g.executing_tasks:
                    g.executing_tasks.append(planned.id)
            return g

        try:
            self.store.update(transform)
        except (InvalidTransition, MissingArtifact, ExecutionBlocked) as e:
            return HookDecision.deny(str(e))

        self._track_subagent()
        if target != graph.current_phase:
            self._emit("phase_entered", {"phase": target, "via": f"agent:{intent.name}"})
        if task is not None:
            self._emit("task_started", {"task_id": task.id, "wave": task.wave, "agent": agent_type})
            return HookDecision.allow(f"Task {task.id} started (wave {task.wave})")
        return HookDecision.allow()

    def _head_sha(self) -> str | None:
        if self.workspace is None:
            return None
        return self.workspace.try_head_sha()

    def _track_subagent(self) -> None:
        if self.registry is None or not self.session_id:
            return
        path = getattr(self.store, "path", None)
        if path is not None:
            self.registry.register_graph(self.session_id, path)
        self.registry.subagent_started(self.session_id)

    # -----------------------------------------------------------------------
    # Subagent completion
    # -----------------------------------------------------------------------

    def subagent_stop(
        self,
        transcript: str,
        agent_type: str | None = None,
        task_id: str | None = None,
    ) -> HookDecision:
        intent = classify_agent(agent_type, transcript, self.config.phases.exempt_agents)
        if self.registry and self.session_id and not isinstance(intent, ExemptAgent):
            self.registry.subagent_finished(self.session_id)

        if self.store.load() is None:
            return HookDecision.allow()
        if is_spec_check_agent(agent_type):
            return self.spec_check_complete(transcript)
        if is_review_agent(agent_type):
            return self.review_complete(transcript, task_id)
        return self.task_complete(transcript, agent_type, task_id)

    def task_complete(
        self,
        transcript: str,
        agent_type: str | None = None,
        task_id: str | None = None,
    ) -> HookDecision:
        graph = self.store.load()
        if graph is None:
            return HookDecision.allow()

        task_id = task_id or extract_task_id(transcript)
        if not task_id:
            if (agent_type or "").lower() in IMPLEMENTATION_AGENTS:
                return self._crashed(agent_type)
            return HookDecision.allow()

        task = graph.task(task_id)
        if task is None:
            logger.debug(f"[HOOK] {task_id} is not a planned task")
            return HookDecision.allow()
        if _finalized(task):
            logger.debug(f"[HOOK] {task_id} already {task.status}; nothing to record")
            return HookDecision.allow()

        evidence = extract_test_evidence(transcript)
        files = parse_files_modified(transcript)
        new_tests = None
        if task.new_tests_required is not False:
            new_tests = detect_new_tests(self._diff_since(task.start_sha))

        def transform(g: TaskGraph) -> TaskGraph:
            t = g.task(task_id)
            if t is None or _finalized(t):
                return g
            t.status = "implemented"
            t.tests_passed = evidence.passed
            t.test_evidence = evidence.evidence
            t.files_modified = list(dict.fromkeys(t.files_modified + files))
            if new_tests is not None:
                t.new_tests_written = new_tests.found
                t.new_test_evidence = new_tests.evidence
            g.executing_tasks = [e for e in g.executing_tasks if e != task_id]
            if g.is_wave_implemented(t.wave):
                g.ensure_gate(t.wave).impl_complete = True
            return g

        graph = self.store.update(transform)
        task = graph.task(task_id)
        self._emit("task_implemented", {
            "task_id": task_id,
            "tests_passed": task.tests_passed,
            "framework": evidence.framework,
            "new_tests_written": task.new_tests_written,
        })

        messages = [f"Task {task_id} implemented"]
        if evidence.passed:
            messages.append(f"  Tests passed: {evidence.evidence}")
        elif evidence.found:
            messages.append(f"  Tests FAILED: {evidence.evidence}")
        else:
            messages.append("  WARNING: no test evidence found in agent output")
        if new_tests is not None and not new_tests.found:
            messages.append("  WARNING: no new tests detected since the task started")
        if graph.is_wave_implemented(task.wave):
            messages.append(
                f"Wave {task.wave} implementation complete. "
                "Review every task, then run `taskplanner gate`."
            )
        return HookDecision.allow(*messages)

    def _diff_since(self, sha: str | None) -> str:
        if self.workspace is None or not sha:
            return ""
        try:
            return self.workspace.diff_since(sha)
        except GitError as e:
            logger.warning(f"[HOOK] Could not diff since {sha}: {e}")
            return ""

    def _crashed(self, agent_type: str | None) -> HookDecision:
        failed: list[str] = []

        def transform(g: TaskGraph) -> TaskGraph:
            for task_id in list(g.executing_tasks):
                t = g.task(task_id)
                if t is not None and t.status == "in_progress":
                    t.status = "failed"
                    t.retry_count += 1
                    t.failure_reason = f"{agent_type} finished without reporting a task id"
                    failed.append(t.id)
            g.executing_tasks = [e for e in g.executing_tasks if e not in failed]
            return g

        self.store.update(transform)
        if not failed:
            return HookDecision.allow()
        logger.warning(f"[HOOK] {agent_type} exited without a task id; failed: {', '.join(failed)}")
        self._emit("task_failed", {"task_ids": failed, "agent": agent_type})
        return HookDecision.allow(
            f"WARNING: {agent_type} finished without a task id. "
            f"Marked failed for retry: {', '.join(failed)}"
        )

    # -----------------------------------------------------------------------
    # Review and spec-check completion
    # -----------------------------------------------------------------------

    def review_complete(self, output: str, task_id: str | None = None) -> HookDecision:
        graph = self.store.load()
        if graph is None:
            return HookDecision.allow()
        task_id = task_id or extract_task_id(output)
        if not task_id or graph.task(task_id) is None:
            logger.warning("[HOOK] Review finished without a recognisable task id")
            return HookDecision.allow("WARNING: review output did not name a planned task")
        if graph.task(task_id).status == "completed":
            return HookDecision.allow()

        findings = extract_review_findings(output)
        captured = bool((output or "").strip())

        def transform(g: TaskGraph) -> TaskGraph:
            t = g.task(task_id)
            if t is None or t.status == "completed":
                return g
            if not captured:
                t.review_status = "evidence_capture_failed"
                return g
            t.review_status = "blocked" if findings.blocked else "passed"
            t.critical_findings = findings.critical
            t.advisory_findings = findings.advisory
            g.ensure_gate(t.wave).blocked = g.critical_count(t.wave) > 0
            return g

        graph = self.store.update(transform)
        status = graph.task(task_id).review_status
        self._emit("review_recorded", {
            "task_id": task_id,
            "status": status,
            "critical": len(findings.critical),
            "advisory": len(findings.advisory),
        })

        if status == "evidence_capture_failed":
            return HookDecision.allow(f"WARNING: review of {task_id} produced no output; re-run the review")
        messages = [f"Review of {task_id}: {status}"]
        messages += [f"  CRITICAL: {f}" for f in findings.critical]
        messages += [f"  ADVISORY: {f}" for f in findings.advisory]
        return HookDecision.allow(*messages)

    def spec_check_complete(self, output: str) -> HookDecision:
        graph = self.store.load()
        if graph is None:
            return HookDecision.allow()
        spec_check = extract_spec_check(output, graph.current_wave)
        if spec_check is None:
            logger.warning("[HOOK] Spec check finished without findings or a verdict")
            return HookDecision.allow("WARNING: spec check output had no findings or verdict")

        def transform(g: TaskGraph) -> TaskGraph:
            g.spec_check = spec_check
            return g

        self.store.update(transform)
        self._emit("spec_check_recorded", spec_check.model_dump())
        return HookDecision.allow(
            f"Spec check (wave {spec_check.wave}): {spec_check.verdict} "
            f"({spec_check.critical_count} critical, {spec_check.high_count} high)"
        )

    # -----------------------------------------------------------------------
    # Orchestrator turn
    # -----------------------------------------------------------------------

    def assistant_message(self, content: str) -> HookDecision:
        graph = self.store.load()
        if graph is None or not content:
            return HookDecision.allow()
        if graph.current_phase in graph.phase_artifacts:
            return HookDecision.allow()
        if detect_completed_phase(content, graph.current_phase) is None:
            return HookDecision.allow()

        captured: dict = {}

        def transform(g: TaskGraph) -> TaskGraph:
            captured["completion"] = record_completion(
                g, content, self.project_dir, self.config.phases.clarify_marker_threshold
            )
            return g

        self.store.update(transform)
        completion = captured.get("completion")
        if completion is None:
            return HookDecision.allow()

        self._emit("phase_completed", {
            "phase": completion.phase,
            "artifact": completion.artifact,
            "clarify_skipped": completion.clarify_skipped,
        })
        messages = [f"Phase {completion.phase} complete (artifact: {completion.artifact})"]
        if completion.clarify_skipped:
            messages.append(
                f"  clarify skipped: {completion.markers} clarification markers "
                f"(threshold {self.config.phases.clarify_marker_threshold})"
            )
        return HookDecision.allow(*messages)

    def _emit(self, event_type: str, payload: dict) -> None:
        if self.bus is not None:
            self.bus.emit(event_type, "handlers", {"session_id": self.session_id, **payload})


def _finalized(task) -> bool:
    return task.status == "completed" or (task.status == "implemented" and bool(task.test_evidence))
