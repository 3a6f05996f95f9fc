from __future__ import annotations

import json
from pathlib import Path

from dcode_delivery.models import AgentResult, ReviewFinding, ReviewRule, Severity
from dcode_delivery.review_loop import AdversarialLoopResult, IterationRecord
from dcode_delivery.review_rules import (
    RULES_FILENAME,
    build_rules_prompt_section,
    build_rules_prompts,
    extract_rule_candidates,
    load_review_rules,
    merge_rules,
    normalize_to_key,
    record_review_rules,
)


def _rule(key: str, times_seen: int, *, agent: str = "security", projects: list[str] | None = None) -> ReviewRule:
    return ReviewRule(
        key=key,
        description=f"{key} description",
        severity=Severity.HIGH,
        source_agent=agent,
        times_seen=times_seen,
        projects=projects or ["alpha"],
        first_seen="2026-01-01T00:00:00+00:00",
        last_seen="2026-01-01T00:00:00+00:00",
    )


def _loop_result(findings: list[ReviewFinding]) -> AdversarialLoopResult:
    record = IterationRecord(
        iteration=1,
        agent_results=[AgentResult(agent="security", success=True, report="", findings=findings)],
        verified=findings,
        discarded=[],
        fixable=findings,
        deferred=[],
    )
    return AdversarialLoopResult(
        iterations=[record],
        converged=False,
        exit_reason="max-iterations",
        total_findings=len(findings),
        total_fixed=0,
        total_discarded=0,
        unresolved_findings=findings,
        all_fix_results=[],
        deferred_findings=[],
    )


def test_normalize_to_key() -> None:
    assert normalize_to_key("security", "  SQL Injection in /login! ") == "security--sql-injection-in-login"


def test_unresolved_findings_count_twice() -> None:
    finding = ReviewFinding(title="Missing CSRF token", severity=Severity.HIGH, source="security")
    candidates = extract_rule_candidates(_loop_result([finding]), "alpha")
    assert len(candidates) == 1
    assert candidates[0].key == "security--missing-csrf-token"
    assert candidates[0].times_seen == 2
    assert candidates[0].projects == ["alpha"]


def test_merge_is_additive() -> None:
    existing = [_rule("security--a", 1), _rule("security--b", 4)]
    merged = merge_rules(existing, [_rule("security--a", 2, projects=["beta"]), _rule("security--c", 1)])
    by_key = {rule.key: rule for rule in merged}
    assert set(by_key) == {"security--a", "security--b", "security--c"}
    assert by_key["security--a"].times_seen == 3
    assert by_key["security--a"].projects == ["alpha", "beta"]
    assert existing[0].times_seen == 1


def test_prompt_section_respects_threshold_and_agent() -> None:
    rules = [_rule("security--a", 1), _rule("security--b", 5), _rule("quality--c", 9, agent="code-quality")]
    section = build_rules_prompt_section(rules, "security")
    assert section.startswith("## Known Recurring Issues from Past Projects")
    assert "security--b description" in section
    assert "security--a" not in section
    assert "seen 5 times across 1 project)" in section
    assert build_rules_prompt_section(rules, "test-coverage") == ""


def test_record_then_prompt_round_trip(tmp_path: Path) -> None:
    memory_dir = tmp_path / "memory"
    finding = ReviewFinding(title="Hard-coded secret", severity=Severity.CRITICAL, source="security")
    assert record_review_rules(_loop_result([finding]), "alpha", memory_dir) == 1

    rules = load_review_rules(memory_dir)
    assert rules[0].times_seen == 2
    prompts = build_rules_prompts(memory_dir, ["security", "code-quality"])
    assert list(prompts) == ["security"]


def test_unreadable_rules_file_is_ignored(tmp_path: Path) -> None:
    (tmp_path / RULES_FILENAME).write_text("{not json", encoding="utf-8")
    assert load_review_rules(tmp_path) == []
    (tmp_path / RULES_FILENAME).write_text(json.dumps([{"key": "x"}]), encoding="utf-8")
    assert load_review_rules(tmp_path) == []
