from __future__ import annotations

import json
from pathlib import Path

import pytest

from dcode_delivery.models import (
    AgentResult,
    ApprovalDecision,
    FixResult,
    ResolvedRiskTier,
    ReviewContext,
    ReviewFinding,
    RiskTier,
    Severity,
    TestSuiteResult,
)
from dcode_delivery.review_loop import (
    AdversarialReviewLoop,
    partition_by_severity,
    render_adversarial_summary,
    run_adversarial_review,
)
from dcode_delivery.sandbox import PolicyViolation
from dcode_delivery.settings import RuntimeSettings
from dcode_delivery.state_store import DeliveryStateStore


class ScriptedAgent:
    """Returns one batch of findings per call; the last batch repeats."""

    def __init__(self, name: str, batches: list[list[ReviewFinding]]) -> None:
        self.name = name
        self.batches = batches
        self.calls = 0

    def run(self, context: ReviewContext) -> AgentResult:
        batch = self.batches[min(self.calls, len(self.batches) - 1)]
        self.calls += 1
        return AgentResult(agent=self.name, success=True, report="ok", findings=list(batch))


class RaisingAgent:
    def __init__(self, name: str, exc: Exception) -> None:
        self.name = name
        self.exc = exc

    def run(self, context: ReviewContext) -> AgentResult:
        raise self.exc


class RecordingFixer:
    def __init__(self, fixed: bool = True) -> None:
        self.fixed = fixed
        self.fixed_ids: list[str] = []
        self.reverts = 0
        self.commits: list[str] = []

    def fix(self, finding: ReviewFinding, context: ReviewContext) -> FixResult:
        self.fixed_ids.append(finding.id)
        return FixResult(finding=finding, fixed=self.fixed)

    def commit(self, finding: ReviewFinding, context: ReviewContext) -> str | None:
        self.commits.append(finding.id)
        return None

    def revert(self, context: ReviewContext) -> None:
        self.reverts += 1


class StaticSuite:
    def __init__(self, passed: bool = True) -> None:
        self.passed = passed
        self.calls = 0

    def run(self) -> TestSuiteResult:
        self.calls += 1
        return TestSuiteResult(passed=self.passed, output="")


class SequenceSuite:
    """Replays pass/fail outcomes in order; the last one repeats."""

    def __init__(self, outcomes: list[bool]) -> None:
        self.outcomes = outcomes
        self.calls = 0

    def run(self) -> TestSuiteResult:
        passed = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        return TestSuiteResult(passed=passed, output="")


class FreshFindingAgent:
    """Reports one new high-severity finding per call."""

    def __init__(self, name: str = "code-quality") -> None:
        self.name = name
        self.calls = 0

    def run(self, context: ReviewContext) -> AgentResult:
        self.calls += 1
        finding = ReviewFinding(title=f"Issue number {self.calls}", severity=Severity.HIGH)
        return AgentResult(agent=self.name, success=True, report="ok", findings=[finding])


class FixedGate:
    def __init__(self, decision: ApprovalDecision) -> None:
        self.decision = decision
        self.summaries: list[str] = []

    def decide(self, summary: str) -> ApprovalDecision:
        self.summaries.append(summary)
        return self.decision


def _high(title: str = "Unchecked input") -> ReviewFinding:
    return ReviewFinding(title=title, severity=Severity.HIGH)


def _tier(max_iterations: int = 3, agents: list[str] | None = None, minimum: Severity = Severity.HIGH) -> ResolvedRiskTier:
    return ResolvedRiskTier(
        name="high",
        tier=RiskTier(max_iterations=max_iterations, min_fix_severity=minimum, agents=agents or ["code-quality"]),
    )


def _context(store: DeliveryStateStore) -> ReviewContext:
    return ReviewContext(
        project_dir=str(store.project_dir),
        epic_number=1,
        review_dir=str(store.epic_review_dir(1)),
    )


def _loop(store: DeliveryStateStore, agents: dict, fixer=None, suite=None, gate=None) -> AdversarialReviewLoop:
    return AdversarialReviewLoop(
        agents=agents,
        fixer=fixer or RecordingFixer(),
        test_runner=suite or StaticSuite(),
        store=store,
        approval_gate=gate,
    )


def test_partition_threshold_is_inclusive() -> None:
    findings = [
        ReviewFinding(title="a", severity=Severity.CRITICAL),
        ReviewFinding(title="b", severity=Severity.HIGH),
        ReviewFinding(title="c", severity=Severity.MEDIUM),
    ]
    fixable, deferred = partition_by_severity(findings, Severity.HIGH)
    assert [finding.title for finding in fixable] == ["a", "b"]
    assert [finding.title for finding in deferred] == ["c"]


def test_clean_review_converges_after_one_iteration(store: DeliveryStateStore) -> None:
    agent = ScriptedAgent("code-quality", [[]])
    suite = StaticSuite()
    result = _loop(store, {"code-quality": agent}, suite=suite).run(_context(store), _tier())

    assert result.converged
    assert result.exit_reason == "converged"
    assert len(result.iterations) == 1
    assert result.iterations[0].tests_passed is None
    assert suite.calls == 0
    saved = json.loads((store.epic_review_dir(1) / "iteration-1.json").read_text(encoding="utf-8"))
    assert saved["iteration"] == 1
    assert saved["tests_passed"] is None


def test_fix_then_clean_pass_converges(store: DeliveryStateStore) -> None:
    agent = ScriptedAgent("code-quality", [[_high()], []])
    fixer = RecordingFixer()
    result = _loop(store, {"code-quality": agent}, fixer=fixer).run(_context(store), _tier())

    assert result.exit_reason == "converged"
    assert len(result.iterations) == 2
    assert fixer.fixed_ids == ["code-quality-1-1"]
    assert fixer.commits == ["code-quality-1-1"]
    assert result.total_fixed == 1
    assert result.total_findings == 1
    assert result.unresolved_findings == []
    saved = json.loads((store.epic_review_dir(1) / "iteration-1.json").read_text(encoding="utf-8"))
    assert saved["findings"][0]["id"] == "code-quality-1-1"
    assert saved["findings"][0]["source"] == "code-quality"


def test_new_findings_each_pass_stop_at_iteration_budget(store: DeliveryStateStore) -> None:
    fixer = RecordingFixer(fixed=False)
    result = _loop(store, {"code-quality": FreshFindingAgent()}, fixer=fixer).run(
        _context(store), _tier(max_iterations=2)
    )

    assert not result.converged
    assert result.exit_reason == "max-iterations"
    assert len(result.iterations) == 2
    assert [finding.id for finding in result.unresolved_findings] == ["code-quality-2-1"]
    assert result.total_fixed == 0
    assert result.iterations[0].tests_passed is None


def test_same_unresolved_findings_twice_is_stuck(store: DeliveryStateStore) -> None:
    agent = ScriptedAgent("code-quality", [[_high()]])
    result = _loop(store, {"code-quality": agent}, fixer=RecordingFixer(fixed=False)).run(
        _context(store), _tier(max_iterations=5)
    )

    assert result.exit_reason == "stuck"
    assert len(result.iterations) == 2
    assert agent.calls == 2
    assert "Stuck" in render_adversarial_summary(1, result)


def test_rising_finding_count_stops_as_diverging(store: DeliveryStateStore) -> None:
    agent = ScriptedAgent("code-quality", [[_high("a")], [_high("b"), _high("c")]])
    fixer = RecordingFixer()
    result = _loop(store, {"code-quality": agent}, fixer=fixer).run(_context(store), _tier(max_iterations=5))

    assert result.exit_reason == "diverging"
    assert not result.converged
    assert len(result.iterations) == 2
    assert fixer.fixed_ids == ["code-quality-1-1"]
    assert [finding.title for finding in result.unresolved_findings] == ["b", "c"]
    assert result.iterations[1].fix_results == []


def test_below_threshold_findings_are_deferred(store: DeliveryStateStore) -> None:
    low = ReviewFinding(title="Rename variable", severity=Severity.LOW)
    fixer = RecordingFixer()
    result = _loop(store, {"code-quality": ScriptedAgent("code-quality", [[low]])}, fixer=fixer).run(
        _context(store), _tier()
    )
    assert result.converged
    assert [finding.title for finding in result.deferred_findings] == ["Rename variable"]
    assert fixer.fixed_ids == []


def test_hallucinated_findings_are_discarded(store: DeliveryStateStore) -> None:
    ghost = ReviewFinding(title="Bad import", severity=Severity.CRITICAL, file="src/ghost.py")
    result = _loop(store, {"code-quality": ScriptedAgent("code-quality", [[ghost]])}).run(_context(store), _tier())
    assert result.converged
    assert result.total_discarded == 1


def test_failing_tests_revert_and_count_as_discarded(store: DeliveryStateStore) -> None:
    fixer = RecordingFixer()
    suite = StaticSuite(passed=False)
    result = _loop(
        store,
        {"code-quality": ScriptedAgent("code-quality", [[_high()]])},
        fixer=fixer,
        suite=suite,
    ).run(_context(store), _tier(max_iterations=3))

    assert fixer.reverts == 1
    assert fixer.commits == []
    assert suite.calls == 2
    assert result.exit_reason == "test-failure"
    assert len(result.iterations) == 1
    assert result.iterations[0].tests_passed is False
    assert result.iterations[0].fix_results[0].reverted
    assert result.total_fixed == 0
    assert result.total_discarded == 1
    assert len(result.unresolved_findings) == 1


def test_only_the_fix_that_breaks_tests_is_reverted(store: DeliveryStateStore) -> None:
    agent = ScriptedAgent("code-quality", [[_high("first"), _high("second"), _high("third")], []])
    fixer = RecordingFixer()
    suite = SequenceSuite([True, False, True])
    result = _loop(store, {"code-quality": agent}, fixer=fixer, suite=suite).run(_context(store), _tier())

    assert fixer.fixed_ids == ["code-quality-1-1", "code-quality-1-2", "code-quality-1-3"]
    assert fixer.commits == ["code-quality-1-1", "code-quality-1-3"]
    assert fixer.reverts == 1
    assert suite.calls == 3
    first = result.iterations[0]
    assert first.tests_passed is True
    assert [finding.title for finding in first.unresolved] == ["second"]
    assert result.total_fixed == 2
    assert result.total_discarded == 1
    assert result.exit_reason == "converged"
    saved = json.loads((store.epic_review_dir(1) / "iteration-1.json").read_text(encoding="utf-8"))
    assert saved["fix_results"] == {"fixed": 2, "unfixed": 1, "reverted": 1}


def test_recursion_limit_grows_with_the_iteration_budget(store: DeliveryStateStore) -> None:
    loop = AdversarialReviewLoop(
        agents={"code-quality": FreshFindingAgent()},
        fixer=RecordingFixer(fixed=False),
        test_runner=StaticSuite(),
        store=store,
        approval_gate=FixedGate(ApprovalDecision.approve()),
        recursion_limit=25,
    )
    result = loop.run(_context(store), _tier(max_iterations=6))

    assert result.exit_reason == "max-iterations"
    assert len(result.iterations) == 6


def test_gate_rejection_stops_without_fixing(store: DeliveryStateStore) -> None:
    fixer = RecordingFixer()
    gate = FixedGate(ApprovalDecision.reject("Leave auth alone"))
    result = _loop(
        store,
        {"code-quality": ScriptedAgent("code-quality", [[_high()]])},
        fixer=fixer,
        gate=gate,
    ).run(_context(store), _tier())

    assert result.exit_reason == "rejected"
    assert result.rejection_feedback == "Leave auth alone"
    assert fixer.fixed_ids == []
    assert len(result.iterations) == 1
    assert result.iterations[0].approval == "rejected"
    assert "## Findings to Fix (1)" in gate.summaries[0]


def test_gate_is_not_asked_when_nothing_is_fixable(store: DeliveryStateStore) -> None:
    gate = FixedGate(ApprovalDecision.reject("should not be asked"))
    result = _loop(store, {"code-quality": ScriptedAgent("code-quality", [[]])}, gate=gate).run(
        _context(store), _tier()
    )
    assert result.converged
    assert gate.summaries == []


def test_failing_agent_does_not_fail_the_iteration(store: DeliveryStateStore) -> None:
    agents = {
        "code-quality": ScriptedAgent("code-quality", [[]]),
        "security": RaisingAgent("security", RuntimeError("model unavailable")),
    }
    result = _loop(store, agents).run(_context(store), _tier(agents=["code-quality", "security"]))
    assert result.converged
    failed = [agent for agent in result.iterations[0].agent_results if not agent.success]
    assert [agent.agent for agent in failed] == ["security"]
    assert "model unavailable" in failed[0].report


def test_policy_violation_propagates(store: DeliveryStateStore) -> None:
    agents = {"security": RaisingAgent("security", PolicyViolation("rm -rf /", "blocked command"))}
    with pytest.raises(PolicyViolation):
        _loop(store, agents).run(_context(store), _tier(agents=["security"]))


def test_run_adversarial_review_writes_summary(store: DeliveryStateStore, settings: RuntimeSettings) -> None:
    seen_agents: list[list[str]] = []

    def agent_factory(names: list[str]) -> dict:
        seen_agents.append(names)
        return {name: ScriptedAgent(name, [[]]) for name in names}

    outcome = run_adversarial_review(
        store=store,
        settings=settings,
        epic_number=1,
        project_name="demo",
        changed_files=["src/app.py"],
        agent_factory=agent_factory,
        fixer=RecordingFixer(),
        test_runner=StaticSuite(),
    )

    assert seen_agents == [["code-quality", "test-coverage", "security"]]
    assert outcome.loop_result.converged
    assert outcome.review.can_advance
    assert outcome.summary_path == store.epic_review_dir(1) / "adversarial-summary.md"
    assert "# Epic 1 Adversarial Review Summary" in outcome.summary_path.read_text(encoding="utf-8")


def test_run_adversarial_review_rejects_corrupt_policy(store: DeliveryStateStore, settings: RuntimeSettings) -> None:
    store.risk_policy_path.parent.mkdir(parents=True, exist_ok=True)
    store.risk_policy_path.write_text("{broken", encoding="utf-8")
    with pytest.raises(ValueError):
        run_adversarial_review(
            store=store,
            settings=settings,
            epic_number=1,
            project_name="demo",
            changed_files=[],
            agent_factory=lambda names: {},
            fixer=RecordingFixer(),
            test_runner=StaticSuite(),
        )
