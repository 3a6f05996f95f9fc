"""Adversarial review convergence loop.

Each iteration fans the tier's review agents out over the same working
tree snapshot, drops hallucinated findings, splits the rest by the tier's
minimum fix severity, optionally asks an approval gate, applies fixes one
at a time with a test run after each (a fix that breaks the suite is
reverted on its own). The loop converges on the first pass that yields no
fix-eligible findings. It stops early when the gate rejects, when the
verified finding count rises between passes, when the same findings stay
unresolved twice in a row, or when the suite still fails after fixing, and
otherwise at the tier's iteration budget.

The iteration cycle is a LangGraph ``StateGraph``::

    START -> review -> verify -> triage -> [approve] -> [fix] -> route -> (review | END)
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Literal, Mapping, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .approval import ApprovalGate, format_findings_for_approval
from .collaborators import Fixer, ReviewAgent, SuiteRunner
from .models import (
    SEVERITY_RANK,
    AgentResult,
    FixResult,
    ResolvedRiskTier,
    ReviewContext,
    ReviewFinding,
    ReviewPhaseResult,
    Severity,
    TestSuiteResult,
    meets_severity,
    utc_now_iso,
)
from .review_rules import build_rules_prompts, record_review_rules
from .risk_policy import resolve_review_tier
from .sandbox import PolicyViolation
from .settings import RuntimeSettings
from .state_store import DeliveryStateStore
from .verifier import DiscardedFinding, verify_findings

logger = logging.getLogger(__name__)

ExitReason = Literal["converged", "max-iterations", "rejected", "stuck", "diverging", "test-failure"]
ProgressFn = Callable[[int, str, str], None]

_STEPS_PER_ITERATION = 6

_EXIT_LABELS: dict[str, str] = {
    "converged": "Converged (zero findings)",
    "max-iterations": "Max iterations reached",
    "rejected": "Rejected at approval gate",
    "stuck": "Stuck (same findings unresolved twice)",
    "diverging": "Diverging (finding count increased)",
    "test-failure": "Test suite failing after fixes",
}


@dataclass(frozen=True)
class IterationRecord:
    iteration: int
    agent_results: list[AgentResult]
    verified: list[ReviewFinding]
    discarded: list[DiscardedFinding]
    fixable: list[ReviewFinding]
    deferred: list[ReviewFinding]
    fix_results: list[FixResult] = field(default_factory=list)
    tests_passed: bool | None = None
    unresolved: list[ReviewFinding] = field(default_factory=list)
    approval: Literal["approved", "rejected"] | None = None

    @property
    def findings(self) -> list[ReviewFinding]:
        return [finding for result in self.agent_results for finding in result.findings]


@dataclass(frozen=True)
class AdversarialLoopResult:
    iterations: list[IterationRecord]
    converged: bool
    exit_reason: ExitReason
    total_findings: int
    total_fixed: int
    total_discarded: int
    unresolved_findings: list[ReviewFinding]
    all_fix_results: list[FixResult]
    deferred_findings: list[ReviewFinding]
    tier_name: str = ""
    rejection_feedback: str | None = None


def partition_by_severity(
    findings: list[ReviewFinding],
    minimum: Severity,
) -> tuple[list[ReviewFinding], list[ReviewFinding]]:
    """Split into (fixable, deferred); the threshold is inclusive."""
    fixable: list[ReviewFinding] = []
    deferred: list[ReviewFinding] = []
    for finding in findings:
        (fixable if meets_severity(finding.severity, minimum) else deferred).append(finding)
    return fixable, deferred


def _fingerprints(findings: list[ReviewFinding]) -> set[tuple[str, str, str]]:
    # Ids embed the iteration number, so repeats are matched on content.
    return {(finding.source, finding.file or "", finding.title.strip().lower()) for finding in findings}


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


class ReviewLoopState(TypedDict, total=False):
    iteration: int
    agent_results: list[AgentResult]
    verified: list[ReviewFinding]
    discarded: list[DiscardedFinding]
    fixable: list[ReviewFinding]
    deferred: list[ReviewFinding]
    fix_results: list[FixResult]
    tests_passed: bool | None
    approval: str | None
    rejection_feedback: str | None
    records: list[IterationRecord]
    exit_reason: str | None


class AdversarialReviewLoop:
    """Runs review iterations for one epic under one resolved risk tier."""

    def __init__(
        self,
        *,
        agents: Mapping[str, ReviewAgent],
        fixer: Fixer,
        test_runner: SuiteRunner,
        store: DeliveryStateStore,
        approval_gate: ApprovalGate | None = None,
        concurrency: int = 3,
        recursion_limit: int = 100,
        on_progress: ProgressFn | None = None,
    ) -> None:
        self.agents = dict(agents)
        self.fixer = fixer
        self.test_runner = test_runner
        self.store = store
        self.approval_gate = approval_gate
        self.concurrency = max(1, concurrency)
        self.recursion_limit = recursion_limit
        self.on_progress = on_progress
        self._context: ReviewContext | None = None
        self._tier: ResolvedRiskTier | None = None
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(ReviewLoopState)
        graph.add_node("review", self._review_node)
        graph.add_node("verify", self._verify_node)
        graph.add_node("triage", self._triage_node)
        graph.add_node("approve", self._approve_node)
        graph.add_node("fix", self._fix_node)
        graph.add_node("route", self._route_node)

        graph.add_edge(START, "review")
        graph.add_edge("review", "verify")
        graph.add_edge("verify", "triage")
        graph.add_edge("fix", "route")
        return graph

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def context(self) -> ReviewContext:
        if self._context is None:
            raise RuntimeError("review loop context is not set; call run()")
        return self._context

    @property
    def tier(self) -> ResolvedRiskTier:
        if self._tier is None:
            raise RuntimeError("review loop tier is not set; call run()")
        return self._tier

    def _progress(self, iteration: int, step: str, message: str) -> None:
        logger.info("review iteration %d [%s] %s", iteration, step, message)
        if self.on_progress is not None:
            self.on_progress(iteration, step, message)

    def _run_agent(self, name: str, agent: ReviewAgent) -> AgentResult:
        try:
            return agent.run(self.context)
        except PolicyViolation:
            raise
        except Exception as exc:  # noqa: BLE001 - one failing agent must not fail the iteration
            logger.warning("review agent %s failed: %s", name, exc)
            return AgentResult(agent=name, success=False, report=f"Agent error: {exc}")

    def _fan_out(self, names: list[str]) -> dict[str, AgentResult]:
        results: dict[str, AgentResult] = {}
        workers = min(self.concurrency, len(names))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_name = {executor.submit(self._run_agent, name, self.agents[name]): name for name in names}
            for future in as_completed(future_to_name):
                results[future_to_name[future]] = future.result()
        return results

    @staticmethod
    def _stamp_findings(result: AgentResult, iteration: int) -> AgentResult:
        stamped = [
            finding.model_copy(
                update={
                    "id": f"{result.agent}-{iteration}-{index}",
                    "source": finding.source or result.agent,
                }
            )
            for index, finding in enumerate(result.findings, start=1)
        ]
        return AgentResult(
            agent=result.agent,
            success=result.success,
            report=result.report,
            findings=stamped,
            blocking_issues=list(result.blocking_issues),
        )

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _review_node(self, state: ReviewLoopState) -> dict[str, Any]:
        iteration = int(state.get("iteration", 0)) + 1
        max_iterations = self.tier.tier.max_iterations
        self._progress(iteration, "review", f"Starting adversarial review iteration {iteration}/{max_iterations}")

        names = [name for name in self.tier.tier.agents if name in self.agents]
        missing = sorted(set(self.tier.tier.agents) - set(names))
        if missing:
            logger.warning("tier %s names unknown review agents: %s", self.tier.name, ", ".join(missing))
        by_name = self._fan_out(names) if names else {}
        agent_results = [self._stamp_findings(by_name[name], iteration) for name in names]

        finding_count = sum(len(result.findings) for result in agent_results)
        succeeded = sum(1 for result in agent_results if result.success)
        self._progress(iteration, "review", f"Found {finding_count} findings across {succeeded} agents")
        return {
            "iteration": iteration,
            "agent_results": agent_results,
            "fix_results": [],
            "tests_passed": None,
            "approval": None,
        }

    def _verify_node(self, state: ReviewLoopState) -> dict[str, Any]:
        iteration = int(state["iteration"])
        findings = [finding for result in state.get("agent_results", []) for finding in result.findings]
        verification = verify_findings(Path(self.context.project_dir), findings)
        self._progress(
            iteration,
            "verify",
            f"Verified: {len(verification.verified)}, Discarded: {len(verification.discarded)}",
        )
        return {"verified": verification.verified, "discarded": verification.discarded}

    def _triage_node(self, state: ReviewLoopState) -> Command[str]:
        iteration = int(state["iteration"])
        verified = sorted(state.get("verified", []), key=lambda finding: SEVERITY_RANK[finding.severity])
        fixable, deferred = partition_by_severity(verified, self.tier.tier.min_fix_severity)
        if deferred:
            self._progress(iteration, "triage", f"Deferred {len(deferred)} below-threshold findings to summary")
        update: dict[str, Any] = {"fixable": fixable, "deferred": deferred}
        if not fixable:
            return Command(update=update, goto="route")
        records = state.get("records", [])
        if records and len(verified) > len(records[-1].verified):
            self._progress(
                iteration,
                "done",
                f"Diverging: verified findings rose from {len(records[-1].verified)} to {len(verified)}",
            )
            return Command(update={**update, "exit_reason": "diverging"}, goto="route")
        if self.approval_gate is not None:
            return Command(update=update, goto="approve")
        return Command(update=update, goto="fix")

    def _approve_node(self, state: ReviewLoopState) -> Command[str]:
        iteration = int(state["iteration"])
        fixable = list(state.get("fixable", []))
        gate = self.approval_gate
        if gate is None:
            return Command(goto="fix")
        self._progress(iteration, "approval", f"Awaiting approval for {len(fixable)} findings...")
        summary = format_findings_for_approval(
            fixable,
            list(state.get("deferred", [])),
            iteration=iteration,
            max_iterations=self.tier.tier.max_iterations,
        )
        decision = gate.decide(summary)
        if not decision.approved:
            self._progress(iteration, "approval", f"Fixes rejected: {decision.feedback}")
            return Command(
                update={
                    "approval": "rejected",
                    "rejection_feedback": decision.feedback,
                    "exit_reason": "rejected",
                },
                goto="route",
            )
        return Command(update={"approval": "approved"}, goto="fix")

    def _attempt_fix(self, finding: ReviewFinding) -> FixResult:
        try:
            return self.fixer.fix(finding, self.context)
        except PolicyViolation:
            raise
        except Exception as exc:  # noqa: BLE001 - a failed fix leaves the finding unresolved
            logger.warning("fix for %s failed: %s", finding.id, exc)
            return FixResult(finding=finding, fixed=False, error=str(exc))

    def _fix_node(self, state: ReviewLoopState) -> dict[str, Any]:
        """Fix findings one at a time, testing after each.

        A fix that breaks the suite is reverted alone and recorded with
        ``reverted=True``; fixes that pass are committed. When the last
        action was a revert, one more suite run reports the final state.
        """
        iteration = int(state["iteration"])
        fixable = list(state.get("fixable", []))
        self._progress(iteration, "fix", f"Fixing {len(fixable)} findings...")
        fix_results: list[FixResult] = []
        tests_passed: bool | None = None
        untested_revert = False
        for finding in fixable:
            result = self._attempt_fix(finding)
            if not result.fixed:
                self.fixer.revert(self.context)
                fix_results.append(result)
                continue
            tests: TestSuiteResult = self.test_runner.run()
            if tests.passed:
                self.fixer.commit(finding, self.context)
                fix_results.append(result)
                tests_passed = True
                untested_revert = False
                continue
            self._progress(iteration, "test", f"Test suite failed after fixing {finding.id}; reverting that fix")
            self.fixer.revert(self.context)
            fix_results.append(
                FixResult(
                    finding=finding,
                    fixed=False,
                    error="Test suite failed after this fix; reverted",
                    attempts=result.attempts,
                    reverted=True,
                )
            )
            untested_revert = True

        if untested_revert:
            tests_passed = self.test_runner.run().passed
        fixed = sum(1 for result in fix_results if result.fixed)
        if tests_passed is False:
            self._progress(iteration, "test", "Test suite still failing after reverting fixes")
        else:
            self._progress(iteration, "test", f"Fixed {fixed}/{len(fixable)} findings")
        return {"fix_results": fix_results, "tests_passed": tests_passed}

    def _route_node(self, state: ReviewLoopState) -> Command[str]:
        iteration = int(state["iteration"])
        fixable = list(state.get("fixable", []))
        fix_results = list(state.get("fix_results", []))
        tests_passed = state.get("tests_passed")
        approval = state.get("approval")

        if approval == "rejected" or not fix_results:
            unresolved = fixable
        else:
            fixed_ids = {result.finding.id for result in fix_results if result.fixed}
            unresolved = [finding for finding in fixable if finding.id not in fixed_ids]

        record = IterationRecord(
            iteration=iteration,
            agent_results=list(state.get("agent_results", [])),
            verified=list(state.get("verified", [])),
            discarded=list(state.get("discarded", [])),
            fixable=fixable,
            deferred=list(state.get("deferred", [])),
            fix_results=fix_results,
            tests_passed=tests_passed,
            unresolved=unresolved,
            approval=approval,  # type: ignore[arg-type]
        )
        self._save_iteration(record)
        previous = state.get("records", [])
        records = [*previous, record]

        exit_reason = state.get("exit_reason")
        if exit_reason in ("rejected", "diverging"):
            return Command(update={"records": records}, goto=END)
        if not fixable:
            self._progress(iteration, "done", "Converged: no fixable findings")
            return Command(update={"records": records, "exit_reason": "converged"}, goto=END)
        if tests_passed is False:
            self._progress(iteration, "done", "Tests failing; stopping")
            return Command(update={"records": records, "exit_reason": "test-failure"}, goto=END)
        if unresolved and previous and _fingerprints(previous[-1].unresolved) == _fingerprints(unresolved):
            self._progress(iteration, "done", "Stuck: same findings unresolved across iterations")
            return Command(update={"records": records, "exit_reason": "stuck"}, goto=END)
        if iteration >= self.tier.tier.max_iterations:
            self._progress(iteration, "done", "Iteration budget exhausted")
            return Command(update={"records": records, "exit_reason": "max-iterations"}, goto=END)
        return Command(update={"records": records}, goto="review")

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def _save_iteration(self, record: IterationRecord) -> None:
        fixed = sum(1 for result in record.fix_results if result.fixed)
        payload = {
            "iteration": record.iteration,
            "agents": [
                {"agent": result.agent, "success": result.success, "finding_count": len(result.findings)}
                for result in record.agent_results
            ],
            "verification": {
                "total": len(record.findings),
                "verified": len(record.verified),
                "discarded": len(record.discarded),
            },
            "findings": [
                finding.model_dump(mode="json", include={"id", "title", "severity", "file", "source"})
                for finding in record.verified
            ],
            "fixable": [finding.id for finding in record.fixable],
            "deferred": [finding.id for finding in record.deferred],
            "approval": record.approval,
            "fix_results": {
                "fixed": fixed,
                "unfixed": len(record.fix_results) - fixed,
                "reverted": sum(1 for result in record.fix_results if result.reverted),
            },
            "tests_passed": record.tests_passed,
            "unresolved_ids": [finding.id for finding in record.unresolved],
        }
        path = Path(self.context.review_dir) / f"iteration-{record.iteration}.json"
        self.store.write_json(path, payload)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, context: ReviewContext, tier: ResolvedRiskTier) -> AdversarialLoopResult:
        self._context = context
        self._tier = tier
        # review, verify, triage, approve, fix and route each count as a step
        recursion_limit = max(self.recursion_limit, _STEPS_PER_ITERATION * tier.tier.max_iterations + 5)
        logger.info(
            "adversarial review for epic %d under tier %s (max %d iterations, min severity %s)",
            context.epic_number,
            tier.name,
            tier.tier.max_iterations,
            tier.tier.min_fix_severity.value,
        )
        result = self.graph.invoke(
            {"iteration": 0, "records": [], "exit_reason": None, "rejection_feedback": None},
            config={
                "recursion_limit": recursion_limit,
                "configurable": {"thread_id": f"review-epic-{context.epic_number}-{uuid.uuid4().hex[:8]}"},
            },
        )
        return self._summarize(result)

    def _summarize(self, state: dict[str, Any]) -> AdversarialLoopResult:
        records: list[IterationRecord] = list(state.get("records", []))
        exit_reason: ExitReason = state.get("exit_reason") or "max-iterations"
        all_fix_results = [result for record in records for result in record.fix_results]
        total_fixed = sum(1 for result in all_fix_results if result.fixed)
        reverted = sum(1 for result in all_fix_results if result.reverted)
        return AdversarialLoopResult(
            iterations=records,
            converged=exit_reason == "converged",
            exit_reason=exit_reason,
            total_findings=sum(len(record.findings) for record in records),
            total_fixed=total_fixed,
            total_discarded=sum(len(record.discarded) for record in records) + reverted,
            unresolved_findings=list(records[-1].unresolved) if records else [],
            all_fix_results=all_fix_results,
            deferred_findings=[finding for record in records for finding in record.deferred],
            tier_name=self.tier.name,
            rejection_feedback=state.get("rejection_feedback"),
        )


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def severity_table(findings: list[ReviewFinding]) -> str:
    counts = Counter(finding.severity for finding in findings)
    if not counts:
        return "No findings.\n"
    lines = ["| Severity | Count |", "| -------- | ----- |"]
    for severity in Severity:
        if counts.get(severity):
            lines.append(f"| {severity.value} | {counts[severity]} |")
    lines.append("")
    return "\n".join(lines)


def render_adversarial_summary(epic_number: int, result: AdversarialLoopResult) -> str:
    lines = [
        f"# Epic {epic_number} Adversarial Review Summary",
        "",
        f"**Date:** {utc_now_iso()}",
        f"**Risk tier:** {result.tier_name}",
        f"**Iterations:** {len(result.iterations)}",
        f"**Status:** {_EXIT_LABELS.get(result.exit_reason, result.exit_reason)}",
        f"**All Resolved:** {'Yes' if result.converged else 'No'}",
        "",
        "## Overview",
        "",
        "| Metric | Count |",
        "| ------ | ----- |",
        f"| Total findings (all iterations) | {result.total_findings} |",
        f"| Auto-fixed | {result.total_fixed} |",
        f"| Deferred (below fix threshold) | {len(result.deferred_findings)} |",
        f"| Discarded (hallucinated or reverted) | {result.total_discarded} |",
        f"| Unresolved | {len(result.unresolved_findings)} |",
        "",
        "## Iteration Breakdown",
        "",
    ]
    for record in result.iterations:
        fixed = sum(1 for fix in record.fix_results if fix.fixed)
        lines.append(f"### Iteration {record.iteration}")
        lines.append("")
        lines.append(f"- **Findings:** {len(record.findings)}")
        lines.append(f"- **Verified:** {len(record.verified)}")
        lines.append(f"- **Discarded:** {len(record.discarded)}")
        if record.fix_results:
            lines.append(f"- **Fixed:** {fixed}")
            lines.append(f"- **Unfixed:** {len(record.fix_results) - fixed}")
        if record.tests_passed is not None:
            lines.append(f"- **Tests pass:** {'Yes' if record.tests_passed else 'No'}")
        if record.approval is not None:
            lines.append(f"- **Approval:** {record.approval}")
        lines.append("")
        for agent in record.agent_results:
            status = "completed" if agent.success else "failed"
            lines.append(f"**{agent.agent}** ({status}): {len(agent.findings)} findings")
        lines.append("")

    fixed_results = [fix for fix in result.all_fix_results if fix.fixed]
    if fixed_results:
        lines.append("## Auto-Fixed Findings")
        lines.append("")
        for fix in fixed_results:
            lines.append(f"- **[{fix.finding.severity.value.upper()}]** {fix.finding.title}")
            if fix.finding.file:
                lines.append(f"  - File: `{fix.finding.file}`")
        lines.append("")

    if result.unresolved_findings:
        lines.append("## Unresolved Findings")
        lines.append("")
        lines.append(
            f"The following {len(result.unresolved_findings)} findings could not be auto-fixed "
            f"after {len(result.iterations)} iterations:"
        )
        lines.append("")
        for finding in result.unresolved_findings:
            lines.append(f"### [{finding.severity.value.upper()}] {finding.title}")
            lines.append("")
            if finding.file:
                lines.append(f"**File:** `{finding.file}`")
            lines.append(f"**Source:** {finding.source}")
            lines.append("")
            lines.append(finding.description)
            lines.append("")
            attempt = next(
                (fix for fix in result.all_fix_results if fix.finding.id == finding.id and not fix.fixed),
                None,
            )
            if attempt is not None and attempt.error:
                lines.append(f"**Fix error:** {attempt.error}")
                lines.append(f"**Attempts:** {attempt.attempts}")
                lines.append("")
        lines.append("### Unresolved by Severity")
        lines.append("")
        lines.append(severity_table(result.unresolved_findings))

    if result.deferred_findings:
        lines.append("## Deferred Findings (Future Improvements)")
        lines.append("")
        lines.append(
            "The following findings were below the auto-fix severity threshold. "
            "They are captured here for future reference but were not auto-fixed."
        )
        lines.append("")
        for finding in result.deferred_findings:
            lines.append(f"- **[{finding.severity.value.upper()}]** {finding.title}")
            if finding.file:
                lines.append(f"  - File: `{finding.file}`")
            if finding.description:
                lines.append(f"  - {finding.description}")
        lines.append("")
    return "\n".join(lines)


def to_review_phase_result(epic_number: int, result: AdversarialLoopResult) -> ReviewPhaseResult:
    blocking = [
        f"[{finding.severity.value}] {finding.title}" + (f" in {finding.file}" if finding.file else "")
        for finding in result.unresolved_findings
        if meets_severity(finding.severity, Severity.HIGH)
    ]
    last = result.iterations[-1] if result.iterations else None
    if last is not None and last.tests_passed is False:
        blocking.append("Test suite failing after adversarial review fixes")
    if result.exit_reason == "rejected":
        feedback = result.rejection_feedback or "no feedback"
        blocking.append(f"Automated fixes rejected at approval gate: {feedback}")
    test_result = None
    if last is not None and last.tests_passed is not None:
        test_result = TestSuiteResult(passed=last.tests_passed, output="")
    return ReviewPhaseResult(
        epic_number=epic_number,
        parallel_results=list(last.agent_results) if last is not None else [],
        test_suite_result=test_result,
        can_advance=not blocking,
        blocking_issues=blocking,
    )


# ---------------------------------------------------------------------------
# Phase entry point
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReviewOutcome:
    loop_result: AdversarialLoopResult
    review: ReviewPhaseResult
    summary_path: Path


def run_adversarial_review(
    *,
    store: DeliveryStateStore,
    settings: RuntimeSettings,
    epic_number: int,
    project_name: str,
    changed_files: list[str],
    agent_factory: Callable[[list[str]], Mapping[str, ReviewAgent]],
    fixer: Fixer,
    test_runner: SuiteRunner,
    gate_factory: Callable[[], ApprovalGate] | None = None,
    on_progress: ProgressFn | None = None,
) -> ReviewOutcome:
    """Run the full review phase for one epic.

    Resolves the risk tier from *changed_files*, binds an approval gate when
    the tier requires one and *gate_factory* is given (it is None in
    autonomous runs), runs the loop, writes the summary, and merges finding
    patterns into the cross-project rule store.

    Raises:
        ValueError: If the project's risk policy file is invalid.
        PolicyViolation: If any agent, fix, or test command is denied.
    """
    tier = resolve_review_tier(
        store.risk_policy_path,
        changed_files,
        default_iterations=settings.default_review_iterations,
    )
    gate = gate_factory() if tier.tier.require_approval and gate_factory is not None else None
    review_dir = store.epic_review_dir(epic_number)
    context = ReviewContext(
        project_dir=str(store.project_dir),
        epic_number=epic_number,
        review_dir=str(review_dir),
        changed_files=list(changed_files),
        rules_prompt=build_rules_prompts(settings.memory_path(), tier.tier.agents),
    )
    loop = AdversarialReviewLoop(
        agents=agent_factory(list(tier.tier.agents)),
        fixer=fixer,
        test_runner=test_runner,
        store=store,
        approval_gate=gate,
        concurrency=settings.review_concurrency,
        recursion_limit=settings.recursion_limit,
        on_progress=on_progress,
    )
    loop_result = loop.run(context, tier)
    summary_path = store.write_review_artifact(
        epic_number,
        "adversarial-summary.md",
        render_adversarial_summary(epic_number, loop_result),
    )

    try:
        record_review_rules(loop_result, project_name, settings.memory_path())
    except Exception as exc:  # noqa: BLE001 - rule learning is best effort
        logger.warning("review rule extraction failed for epic %d: %s", epic_number, exc)

    return ReviewOutcome(
        loop_result=loop_result,
        review=to_review_phase_result(epic_number, loop_result),
        summary_path=summary_path,
    )
