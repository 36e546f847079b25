"""
taskplanner Evidence Parsing

Pure functions that turn free-form agent output into structured facts:
task ids, test-run evidence, review findings, spec-check results and
new-test evidence from diffs. Nothing here touches state.

Test evidence is recognised by an ordered list of grammar matchers. Each
matcher returns a TestEvidence when it recognises its framework's output
(passing OR failing) and None otherwise; the first recognition wins.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from taskplanner.state import SpecCheck


@dataclass(frozen=True)
class TestEvidence:
    __test__ = False

    passed: bool
    framework: Optional[str] = None
    evidence: str = ""
    test_count: int = 0

    @property
    def found(self) -> bool:
        return self.framework is not None


NO_EVIDENCE = TestEvidence(passed=False)


@dataclass
class ReviewFindings:
    critical: list[str] = field(default_factory=list)
    advisory: list[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return bool(self.critical)


@dataclass
class NewTestEvidence:
    found: bool
    count: int = 0
    details: list[str] = field(default_factory=list)

    @property
    def evidence(self) -> str:
        return "; ".join(self.details)


# ---------------------------------------------------------------------------
# Transcripts
# ---------------------------------------------------------------------------

def _text_blocks(content) -> list[str]:
    if isinstance(content, str):
        return [content]
    if isinstance(content, list):
        return [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
    return []


def read_transcript(path: Path | str | None, last_only: bool = False) -> str:
    """
    Return the assistant text of a transcript.

    JSONL transcripts contribute the text blocks of their assistant
    messages (only the final one with `last_only`); anything that is not
    JSONL is returned verbatim.
    """
    if not path:
        return ""
    path = Path(path)
    if not path.is_file():
        logger.warning(f"[EVIDENCE] Transcript not found: {path}")
        return ""

    raw = path.read_text(errors="replace")
    texts: list[str] = []
    parsed_any = False
    for line in raw.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict):
            continue
        parsed_any = True
        message = entry.get("message") if isinstance(entry.get("message"), dict) else entry
        role = message.get("role") or entry.get("type")
        if role == "assistant":
            text = "\n".join(t for t in _text_blocks(message.get("content")) if t)
            if text:
                texts.append(text)

    if not parsed_any:
        return raw
    if last_only:
        return texts[-1] if texts else ""
    return "\n".join(texts)


# ---------------------------------------------------------------------------
# Task ids
# ---------------------------------------------------------------------------

TASK_ID_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"\*\*Task ID:\*\*\s?(T\d+)", re.I),
    re.compile(r"Task ID:?\s?(T\d+)", re.I),
    re.compile(r"Task:?\s?(T\d+)", re.I),
    re.compile(r"^(T\d+)[:\s-]"),
    re.compile(r"(?:implement|fix|complete|execute|run|start|do|work(?:ing)?\s+on)\s+(T\d+)", re.I),
    re.compile(r"(T\d+)\s+[A-Z]"),
    re.compile(r"\b(T\d+)\b"),
)


def extract_task_id(text: str | None) -> str | None:
    if not text:
        return None
    for pattern in TASK_ID_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).upper()
    return None


# ---------------------------------------------------------------------------
# Test evidence
# ---------------------------------------------------------------------------

_MAVEN_RESULTS = re.compile(r"Tests run:\s*(\d+),\s*Failures:\s*(\d+),\s*Errors:\s*(\d+)")
_VITEST_PASSED = re.compile(r"Tests?\s+(\d+)\s+passed", re.I)
_VITEST_FAILED = re.compile(r"Tests?\s+(\d+)\s+failed", re.I)
_MOCHA_PASSING = re.compile(r"(\d+)(?:[ \t]+\w+){0,2}[ \t]+passing", re.I)
_MOCHA_FAILING = re.compile(r"(\d+)\s+failing", re.I)
_PYTEST_PASSED = re.compile(r"(\d+)\s+passed", re.I)
_PYTEST_FAILED = re.compile(r"(\d+)\s+failed", re.I)
_JUNIT_COMPLETED = re.compile(r"(\d+)\s+tests?\s+completed(?:,\s*(\d+)\s+failed)?", re.I)


def _maven(text: str) -> TestEvidence | None:
    results = _MAVEN_RESULTS.findall(text)
    if re.search(r"BUILD FAILURE", text):
        return TestEvidence(False, "maven", "maven: BUILD FAILURE")
    if not re.search(r"BUILD SUCCESS", text, re.I) or not results:
        return None
    # The last "Tests run" line is the reactor summary.
    run, failures, errors = (int(n) for n in results[-1])
    summary = f"Tests run: {run}, Failures: {failures}, Errors: {errors}"
    return TestEvidence(failures == 0 and errors == 0, "maven", f"maven: {summary}", run)


def _vitest(text: str) -> TestEvidence | None:
    failed = _VITEST_FAILED.search(text)
    if failed and int(failed.group(1)) > 0:
        return TestEvidence(False, "vitest", f"vitest: {failed.group(0)}")
    passed = _VITEST_PASSED.search(text)
    if passed:
        return TestEvidence(True, "vitest", f"vitest: {passed.group(0)}", int(passed.group(1)))
    return None


def _mocha(text: str) -> TestEvidence | None:
    passing = _MOCHA_PASSING.search(text)
    if not passing:
        return None
    failing = _MOCHA_FAILING.search(text)
    if failing and int(failing.group(1)) > 0:
        return TestEvidence(False, "mocha", f"node: {failing.group(0)}")
    return TestEvidence(True, "mocha", f"node: {passing.group(0)}", int(passing.group(1)))


def _pytest(text: str) -> TestEvidence | None:
    passed = _PYTEST_PASSED.search(text)
    failed = _PYTEST_FAILED.search(text)
    if failed and int(failed.group(1)) > 0:
        return TestEvidence(False, "pytest", f"pytest: {failed.group(0)}")
    if passed:
        return TestEvidence(True, "pytest", f"pytest: {passed.group(0)}", int(passed.group(1)))
    return None


def _junit(text: str) -> TestEvidence | None:
    match = _JUNIT_COMPLETED.search(text)
    if not match:
        return None
    failed = int(match.group(2) or 0)
    return TestEvidence(failed == 0, "junit", f"junit: {match.group(0)}", int(match.group(1)))


TEST_MATCHERS: tuple[Callable[[str], Optional[TestEvidence]], ...] = (
    _maven, _vitest, _mocha, _pytest, _junit,
)


def extract_test_evidence(text: str | None) -> TestEvidence:
    """Return the first recognised test run, or NO_EVIDENCE."""
    if not text:
        return NO_EVIDENCE
    clean = text.replace("**", "")
    for matcher in TEST_MATCHERS:
        result = matcher(clean)
        if result is not None:
            return result
    logger.warning("[EVIDENCE] No recognisable test output in transcript")
    return NO_EVIDENCE


# ---------------------------------------------------------------------------
# Reviews and spec checks
# ---------------------------------------------------------------------------

CRITICAL_FINDING = re.compile(r"^\s*(?:🚨\s*)?CRITICAL:\s*(.+)$", re.M)
ADVISORY_FINDING = re.compile(r"^\s*(?:💡\s*)?ADVISORY:\s*(.+)$", re.M)


def extract_review_findings(text: str | None) -> ReviewFindings:
    text = text or ""
    return ReviewFindings(
        critical=[m.strip() for m in CRITICAL_FINDING.findall(text)],
        advisory=[m.strip() for m in ADVISORY_FINDING.findall(text)],
    )


SPEC_FINDING = re.compile(r"^\s*[-*]?\s*\[(CRITICAL|HIGH|MEDIUM|LOW)\]\s*(.+)$", re.M)
_VERDICT = re.compile(r"(?:SPEC_CHECK_)?verdict[:\s]+(PASSED|BLOCKED)", re.I)


def extract_spec_check(text: str | None, wave: int) -> SpecCheck | None:
    """Parse spec-alignment output; None when the text carries no spec-check result."""
    text = text or ""
    findings: dict[str, list[str]] = {"CRITICAL": [], "HIGH": [], "MEDIUM": [], "LOW": []}
    for severity, description in SPEC_FINDING.findall(text):
        findings[severity].append(description.strip())

    verdict_match = _VERDICT.search(text)
    if not verdict_match and not any(findings.values()):
        return None

    if verdict_match:
        verdict = verdict_match.group(1).upper()
    else:
        verdict = "BLOCKED" if findings["CRITICAL"] else "PASSED"

    return SpecCheck(
        wave=wave,
        critical_count=len(findings["CRITICAL"]),
        high_count=len(findings["HIGH"]),
        critical_findings=findings["CRITICAL"],
        high_findings=findings["HIGH"],
        medium_findings=findings["MEDIUM"],
        verdict=verdict,
    )


# ---------------------------------------------------------------------------
# Diffs
# ---------------------------------------------------------------------------

NEW_TEST_PATTERNS: dict[str, re.Pattern] = {
    "java": re.compile(r"@(?:Test|Property|ParameterizedTest)\b"),
    "ts/js": re.compile(r"\s(?:it|test|describe)\("),
    "python": re.compile(r"def test_|class Test"),
}


def detect_new_tests(diff: str | None) -> NewTestEvidence:
    """Count test definitions on lines the diff adds."""
    added = [
        line for line in (diff or "").splitlines()
        if line.startswith("+") and not line.startswith("+++")
    ]
    details: list[str] = []
    total = 0
    for language, pattern in NEW_TEST_PATTERNS.items():
        count = sum(1 for line in added if pattern.search(line))
        if count:
            details.append(f"{language}: {count} new test definitions")
            total += count
    return NewTestEvidence(found=total > 0, count=total, details=details)


FILES_MODIFIED_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(
        r"(?:Wrote|Written|Modified|Created|Updated|Edited)(?:\s+to)?(?:\s+file)?:\s*['\"]?([^\s'\"]+)",
        re.I,
    ),
    re.compile(r"file\.edited.*path['\":\s]+([^\s'\"]+)", re.I),
)


def parse_files_modified(text: str | None) -> list[str]:
    files: list[str] = []
    for pattern in FILES_MODIFIED_PATTERNS:
        for match in pattern.findall(text or ""):
            if match not in files:
                files.append(match)
    return files
