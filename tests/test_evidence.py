import json

import pytest

from taskplanner.evidence import (
    NO_EVIDENCE,
    detect_new_tests,
    extract_review_findings,
    extract_spec_check,
    extract_task_id,
    extract_test_evidence,
    parse_files_modified,
    read_transcript,
)


@pytest.mark.parametrize("text,expected", [
    ("**Task ID:** T3\nImplement the cache", "T3"),
    ("Task ID: T12 - wire the API", "T12"),
    ("task: t4", "T4"),
    ("T5 - Add repository layer", "T5"),
    ("Please implement T7 next", "T7"),
    ("Working through things, T9 Create new component", "T9"),
    ("see notes on T2.", "T2"),
    ("no identifiers here", None),
    ("", None),
])
def test_extract_task_id(text, expected):
    assert extract_task_id(text) == expected


def test_canonical_id_wins_over_earlier_mentions():
    assert extract_task_id("Depends on T1.\n**Task ID:** T2") == "T2"


# ---------------------------------------------------------------------------
# Test evidence
# ---------------------------------------------------------------------------

def test_maven_success():
    out = "[INFO] Tests run: 4, Failures: 0, Errors: 0\n[INFO] Tests run: 12, Failures: 0, Errors: 0, Skipped: 1\n[INFO] BUILD SUCCESS"
    evidence = extract_test_evidence(out)
    assert evidence.passed
    assert evidence.framework == "maven"
    assert evidence.test_count == 12


def test_maven_with_markdown_bold():
    evidence = extract_test_evidence("Tests run: **128**, Failures: **0**, Errors: **0**\n**BUILD SUCCESS**")
    assert evidence.passed
    assert evidence.test_count == 128


def test_maven_failure():
    evidence = extract_test_evidence("Tests run: 5, Failures: 1, Errors: 0\nBUILD FAILURE")
    assert evidence.found
    assert not evidence.passed
    assert evidence.framework == "maven"


def test_vitest():
    passing = extract_test_evidence(" Test Files  3 passed (3)\n      Tests  12 passed (12)")
    assert (passing.passed, passing.framework, passing.test_count) == (True, "vitest", 12)

    failing = extract_test_evidence("      Tests  1 failed | 11 passed (12)")
    assert (failing.passed, failing.framework) == (False, "vitest")


def test_mocha():
    passing = extract_test_evidence("  14 passing (2s)")
    assert (passing.passed, passing.framework, passing.test_count) == (True, "mocha", 14)

    failing = extract_test_evidence("  12 passing (2s)\n  2 failing")
    assert (failing.passed, failing.framework) == (False, "mocha")


def test_pytest():
    passing = extract_test_evidence("============ 8 passed in 0.12s ============")
    assert (passing.passed, passing.framework, passing.test_count) == (True, "pytest", 8)

    failing = extract_test_evidence("===== 1 failed, 7 passed in 0.30s =====")
    assert (failing.passed, failing.framework) == (False, "pytest")


def test_junit():
    evidence = extract_test_evidence("BUILD SUCCESSFUL in 4s\n12 tests completed, 0 failed")
    assert (evidence.passed, evidence.framework, evidence.test_count) == (True, "junit", 12)

    assert not extract_test_evidence("5 tests completed, 2 failed").passed


def test_no_evidence():
    assert extract_test_evidence("All done, looks good to me.") is NO_EVIDENCE
    assert extract_test_evidence("") is NO_EVIDENCE
    assert not NO_EVIDENCE.found


# ---------------------------------------------------------------------------
# Reviews and spec checks
# ---------------------------------------------------------------------------

def test_review_findings():
    findings = extract_review_findings(
        "Review of T1\n"
        "CRITICAL: SQL built by string concatenation\n"
        "  🚨 CRITICAL: token logged in plain text\n"
        "💡 ADVISORY: rename helper\n"
        "Nothing CRITICAL: inline mentions do not count\n"
    )
    assert findings.critical == ["SQL built by string concatenation", "token logged in plain text"]
    assert findings.advisory == ["rename helper"]
    assert findings.blocked


def test_clean_review():
    findings = extract_review_findings("Looks good.\nADVISORY: consider a docstring")
    assert not findings.blocked
    assert findings.advisory == ["consider a docstring"]


def test_spec_check_verdict_from_findings():
    check = extract_spec_check("- [CRITICAL] FR-001 not implemented\n- [HIGH] FR-004 partial\n- [MEDIUM] wording", wave=2)
    assert check.wave == 2
    assert check.verdict == "BLOCKED"
    assert check.critical_count == 1
    assert check.high_count == 1
    assert check.medium_findings == ["wording"]


def test_spec_check_explicit_verdict_wins():
    check = extract_spec_check("[HIGH] naming drift\nSPEC_CHECK_VERDICT: PASSED", wave=1)
    assert check.verdict == "PASSED"
    assert extract_spec_check("nothing to see", wave=1) is None


# ---------------------------------------------------------------------------
# Diffs and transcripts
# ---------------------------------------------------------------------------

def test_detect_new_tests_counts_added_lines_only():
    diff = "\n".join([
        "+++ b/tests/test_cache.py",
        "+def test_cache_hit():",
        "+    assert cache.get('a') == 1",
        "-def test_removed():",
        "+    @Test",
        "+  it('expires entries', () => {",
        " def test_unchanged():",
    ])
    evidence = detect_new_tests(diff)
    assert evidence.found
    assert evidence.count == 3
    assert "python: 1" in evidence.evidence


def test_no_new_tests():
    assert not detect_new_tests("+x = 1\n-def test_gone():").found
    assert not detect_new_tests("").found


def test_parse_files_modified():
    text = "Modified: src/a.py\nCreated: src/b.py\nWrote to file: 'src/a.py'\n"
    assert parse_files_modified(text) == ["src/a.py", "src/b.py"]


def test_read_jsonl_transcript(tmp_path):
    path = tmp_path / "agent.jsonl"
    lines = [
        {"type": "user", "message": {"role": "user", "content": "Implement T1"}},
        {"type": "assistant", "message": {"role": "assistant", "content": [
            {"type": "text", "text": "Working on T1"},
            {"type": "tool_use", "name": "Bash", "input": {}},
        ]}},
        {"type": "assistant", "message": {"role": "assistant", "content": "8 passed in 0.1s"}},
    ]
    path.write_text("\n".join(json.dumps(line) for line in lines))

    assert read_transcript(path) == "Working on T1\n8 passed in 0.1s"
    assert read_transcript(path, last_only=True) == "8 passed in 0.1s"


def test_read_plain_transcript(tmp_path):
    path = tmp_path / "out.txt"
    path.write_text("Task ID: T2\n3 passing")
    assert read_transcript(path) == "Task ID: T2\n3 passing"
    assert read_transcript(tmp_path / "missing.txt") == ""
