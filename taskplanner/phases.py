"""
taskplanner Phase Validator

The workflow is a fixed pipeline:

  init → brainstorm → specify → clarify → architecture → decompose → execute

Agent spawns and skill loads are classified ONCE at the boundary into a
closed variant (KnownAgent / ExemptAgent / UnknownAgent). Everything
downstream branches on that variant, never on raw names. Unknown intent is
rejected in every phase.

Also tracks phase completion: when the agent of the current phase reports
its artifact, the artifact is recorded and `clarify` is auto-skipped if the
spec has few enough open questions.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from loguru import logger

from taskplanner.state import PHASE_ORDER, Phase, TaskGraph

VALID_TRANSITIONS: dict[Phase, tuple[Phase, ...]] = {
    "init": ("brainstorm", "specify"),
    "brainstorm": ("specify",),
    "specify": ("clarify", "architecture"),
    "clarify": ("architecture",),
    "architecture": ("decompose",),
    "decompose": ("execute",),
    "execute": ("execute",),
}

SKIPPABLE_PHASES: tuple[Phase, ...] = ("brainstorm", "clarify")

CLARIFICATION_MARKER = re.compile(r"\[NEEDS CLARIFICATION[\]:]")

AGENT_PHASES: dict[str, Phase] = {
    "brainstorm-agent": "brainstorm",
    "specify-agent": "specify",
    "clarify-agent": "clarify",
    "architecture-agent": "architecture",
    "task-planner-agent": "decompose",
    "code-implementer-agent": "execute",
    "java-test-agent": "execute",
    "ts-test-agent": "execute",
    "frontend-agent": "execute",
    "security-agent": "execute",
    "k8s-agent": "execute",
    "keycloak-agent": "execute",
    "dotfiles-agent": "execute",
    "reviewer-agent": "execute",
    "review-invoker": "execute",
    "task-reviewer": "execute",
    "spec-check-agent": "execute",
    "spec-check-invoker": "execute",
}

SKILL_PHASES: dict[str, Phase] = {
    "brainstorming": "brainstorm",
    "specify": "specify",
    "clarify": "clarify",
    "architecture-tech-lead": "architecture",
    "task-planner": "decompose",
    "code-implementer": "execute",
    "java-test-engineer": "execute",
    "ts-test-engineer": "execute",
    "nextjs-frontend-design": "execute",
    "security-expert": "execute",
    "k8s-expert": "execute",
    "keycloak-expert": "execute",
    "dotfiles-expert": "execute",
    "spec-check": "execute",
    "review-skill": "execute",
    "wave-gate": "execute",
}

REVIEW_AGENTS = ("reviewer-agent", "review-invoker", "task-reviewer")
SPEC_CHECK_AGENTS = ("spec-check-agent", "spec-check-invoker")
IMPLEMENTATION_AGENTS = (
    "code-implementer-agent", "java-test-agent", "ts-test-agent", "frontend-agent",
    "security-agent", "k8s-agent", "keycloak-agent", "dotfiles-agent",
)
GENERIC_AGENTS = ("", "general", "general-purpose")

_TASK_ID_IN_PROMPT = re.compile(r"\bT\d+\b")

# Ordered: the first matching keyword group decides the phase.
_PROMPT_PHASES: tuple[tuple[re.Pattern, Phase], ...] = (
    (re.compile(r"\breview\b|spec[- ]check|wave[- ]gate", re.I), "execute"),
    (re.compile(r"brainstorm|explore.*intent|refine.*idea", re.I), "brainstorm"),
    (re.compile(r"clarify|resolve.*markers|needs clarification", re.I), "clarify"),
    (re.compile(r"specify|specification|requirements|spec\.md", re.I), "specify"),
    (re.compile(r"architecture|technical design|plan\.md", re.I), "architecture"),
    (re.compile(r"decompos|break.*into tasks|task graph", re.I), "decompose"),
)

PHASE_COMPLETION_PATTERNS: dict[Phase, re.Pattern] = {
    "brainstorm": re.compile(
        r"(?:brainstorm(?:ing)?|exploration)\s+(?:is\s+)?(?:complete|done|finished)", re.I
    ),
    "specify": re.compile(
        r"spec(?:ification)?\s+(?:is\s+)?(?:complete|written|created|saved)"
        r"|(?:created|wrote)\s+(?:the\s+)?spec",
        re.I,
    ),
    "clarify": re.compile(r"clarif(?:y|ication)\s+(?:is\s+)?(?:complete|resolved|done)", re.I),
    "architecture": re.compile(
        r"(?:architecture|design|plan)\s+(?:is\s+)?(?:complete|done|created)"
        r"|(?:plan|design)\s+(?:has\s+been\s+)?created",
        re.I,
    ),
    "decompose": re.compile(
        r"(?:decompos(?:e|ition)|tasks?)\s+(?:is\s+)?(?:complete|created|defined)"
        r"|tasks?\s+(?:have\s+been\s+)?(?:created|defined)",
        re.I,
    ),
}

ARTIFACT_PATH_PATTERN = re.compile(
    r"(?:saved|created|wrote|generated)\s+(?:to\s+)?['\"`]?([^\s'\"`]+\.md)['\"`]?", re.I
)

# Phase whose recorded artifact each phase needs on disk.
_ARTIFACT_SOURCES: dict[Phase, Phase] = {
    "clarify": "specify",
    "architecture": "specify",
    "decompose": "architecture",
    "execute": "architecture",
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class InvalidTransition(Exception):
    """The requested phase does not follow from the current one."""

    def __init__(self, current: str, target: str, message: str | None = None):
        self.current = current
        self.target = target
        super().__init__(message or (
            f'BLOCKED: Cannot move to phase "{target}" from "{current}".\n\n'
            "Phases must be completed in order:\n"
            f"  {' → '.join(PHASE_ORDER)}\n\n"
            "Complete (or skip) the current phase before proceeding."
        ))


class UnrecognizedAgent(InvalidTransition):
    """The agent or skill could not be mapped to any workflow phase."""

    def __init__(self, current: str, name: str):
        self.name = name
        super().__init__(current, "?", (
            f'BLOCKED: Unrecognized agent or skill "{name or "<empty>"}" during orchestration.\n\n'
            "Only workflow agents may be spawned while a task graph is active.\n"
            "Use a phase agent (brainstorm-agent, specify-agent, clarify-agent,\n"
            "architecture-agent) or an implementation/review agent for a planned task."
        ))


class MissingArtifact(Exception):
    """A phase prerequisite is not on disk."""

    def __init__(self, phase: str, missing: str):
        self.phase = phase
        self.missing = missing
        super().__init__(
            f"BLOCKED: Cannot enter {phase} phase - missing prerequisite.\n\n"
            f"Required: {missing}\n\n"
            "Complete the prerequisite phase first."
        )


# ---------------------------------------------------------------------------
# Boundary classification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class KnownAgent:
    name: str
    phase: Phase


@dataclass(frozen=True)
class ExemptAgent:
    name: str


@dataclass(frozen=True)
class UnknownAgent:
    name: str


AgentIntent = Union[KnownAgent, ExemptAgent, UnknownAgent]


def infer_phase_from_prompt(prompt: str) -> Phase | None:
    if _TASK_ID_IN_PROMPT.search(prompt):
        return "execute"
    for pattern, phase in _PROMPT_PHASES:
        if pattern.search(prompt):
            return phase
    return None


def classify_agent(agent_type: str | None, prompt: str = "", exempt: tuple[str, ...] | list[str] = ()) -> AgentIntent:
    name = (agent_type or "").strip()
    key = name.lower()
    if key in {e.lower() for e in exempt}:
        return ExemptAgent(name)
    if key in AGENT_PHASES:
        return KnownAgent(name, AGENT_PHASES[key])
    if key in GENERIC_AGENTS:
        phase = infer_phase_from_prompt(prompt or "")
        if phase:
            return KnownAgent(name or "general", phase)
    return UnknownAgent(name)


def classify_skill(skill: str | None, exempt: tuple[str, ...] | list[str] = ()) -> AgentIntent:
    name = (skill or "").strip()
    key = name.lower()
    if key in {e.lower() for e in exempt}:
        return ExemptAgent(name)
    # Host-prefixed variants, e.g. "opencode-specify".
    for candidate in (key, key.split(":")[-1], key.removeprefix("opencode-")):
        if candidate in SKILL_PHASES:
            return KnownAgent(name, SKILL_PHASES[candidate])
    return UnknownAgent(name)


def is_review_agent(agent_type: str | None) -> bool:
    key = (agent_type or "").lower()
    return key in REVIEW_AGENTS or "review" in key


def is_spec_check_agent(agent_type: str | None) -> bool:
    key = (agent_type or "").lower()
    return key in SPEC_CHECK_AGENTS or "spec-check" in key


def is_review_prompt(prompt: str) -> bool:
    return bool(_PROMPT_PHASES[0][0].search(prompt or ""))


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def count_clarification_markers(path: Path | None) -> int:
    """Count unresolved clarification markers in a spec file (0 if unreadable)."""
    if not path or not path.is_file():
        logger.warning(f"[PHASE] Spec file not found for marker counting: {path}")
        return 0
    return len(CLARIFICATION_MARKER.findall(path.read_text(errors="replace")))


def is_valid_transition(current: Phase, target: Phase) -> bool:
    return target in VALID_TRANSITIONS.get(current, ())


class PhaseValidator:
    """Checks a requested phase against the current graph. Never mutates it."""

    def __init__(self, project_dir: Path, marker_threshold: int = 3):
        self.project_dir = Path(project_dir)
        self.marker_threshold = marker_threshold

    def validate(self, graph: TaskGraph, intent: AgentIntent) -> Phase | None:
        """Return the target phase, or None for exempt intents. Raises on any violation."""
        if isinstance(intent, ExemptAgent):
            return None
        if isinstance(intent, UnknownAgent):
            raise UnrecognizedAgent(graph.current_phase, intent.name)

        target = intent.phase
        self.check_transition(graph, target)
        self.check_artifacts(graph, target)
        logger.info(f"[PHASE] Validated {graph.current_phase} → {target} ({intent.name})")
        return target

    def check_transition(self, graph: TaskGraph, target: Phase) -> None:
        current = graph.current_phase
        # Re-running an unfinished phase is a retry, not a transition.
        if target == current and current != "init" and current not in graph.phase_artifacts:
            return
        if not is_valid_transition(current, target):
            raise InvalidTransition(current, target)

    def check_artifacts(self, graph: TaskGraph, target: Phase) -> None:
        if target == "specify":
            if "brainstorm" not in graph.phase_artifacts and "brainstorm" not in graph.skipped_phases:
                raise MissingArtifact(
                    target, "brainstorm phase completed or skipped (`taskplanner skip brainstorm`)"
                )
            return

        source = _ARTIFACT_SOURCES.get(target)
        if source is None:
            return

        artifact = self.artifact_path(graph, source)
        if artifact is None:
            raise MissingArtifact(target, f"{source} phase artifact not recorded")
        if not artifact.is_file():
            raise MissingArtifact(target, f"{source} artifact file not found: {artifact}")

        if target == "architecture" and "clarify" not in graph.skipped_phases:
            markers = count_clarification_markers(artifact)
            if markers > self.marker_threshold:
                raise MissingArtifact(
                    target,
                    f"clarify phase: {markers} unresolved clarification markers in {artifact} "
                    f"(at most {self.marker_threshold} allowed)",
                )

    def artifact_path(self, graph: TaskGraph, phase: Phase) -> Path | None:
        recorded = graph.phase_artifacts.get(phase)
        if not recorded or recorded == "completed":
            recorded = {"specify": graph.spec_file, "architecture": graph.plan_file}.get(phase) or None
        if not recorded:
            return None
        path = Path(recorded)
        return path if path.is_absolute() else self.project_dir / path


# ---------------------------------------------------------------------------
# Advancement
# ---------------------------------------------------------------------------

@dataclass
class PhaseCompletion:
    phase: Phase
    artifact: str
    clarify_skipped: bool = False
    markers: int = 0


def detect_completed_phase(content: str, current: Phase) -> Phase | None:
    """Only the current phase's pattern is checked, to avoid false positives."""
    pattern = PHASE_COMPLETION_PATTERNS.get(current)
    if pattern and pattern.search(content):
        return current
    return None


def extract_artifact_path(content: str) -> str:
    match = ARTIFACT_PATH_PATTERN.search(content)
    return match.group(1) if match else "completed"


def record_completion(
    graph: TaskGraph,
    content: str,
    project_dir: Path,
    marker_threshold: int = 3,
) -> PhaseCompletion | None:
    """
    Record the current phase's artifact if `content` announces its completion.

    Mutates `graph`; callers run it inside a store transaction.
    """
    phase = detect_completed_phase(content, graph.current_phase)
    if phase is None:
        return None

    artifact = extract_artifact_path(content)
    graph.phase_artifacts[phase] = artifact
    if phase == "specify" and artifact != "completed":
        graph.spec_file = artifact
    if phase == "architecture" and artifact != "completed":
        graph.plan_file = artifact

    completion = PhaseCompletion(phase=phase, artifact=artifact)
    if phase == "specify":
        spec = PhaseValidator(project_dir, marker_threshold).artifact_path(graph, "specify")
        completion.markers = count_clarification_markers(spec)
        if completion.markers <= marker_threshold and "clarify" not in graph.skipped_phases:
            graph.skipped_phases.append("clarify")
            completion.clarify_skipped = True
            logger.info(
                f"[PHASE] clarify auto-skipped: {completion.markers} markers "
                f"(threshold {marker_threshold})"
            )

    logger.info(f"[PHASE] {phase} complete (artifact: {artifact})")
    return completion


def skip_phase(graph: TaskGraph, phase: Phase) -> TaskGraph:
    if phase not in SKIPPABLE_PHASES:
        raise InvalidTransition(
            graph.current_phase, phase,
            f'Phase "{phase}" cannot be skipped. Skippable: {", ".join(SKIPPABLE_PHASES)}',
        )
    if phase not in graph.skipped_phases:
        graph.skipped_phases.append(phase)
    return graph


def enter_phase(graph: TaskGraph, phase: Phase) -> TaskGraph:
    graph.current_phase = phase
    return graph
