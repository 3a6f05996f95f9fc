"""Epic sign-off: summarize the review, obtain a decision, run fix cycles.

A rejection triggers one fix cycle (refactoring over the open findings plus
the reviewer's feedback, test hardening, the test suite, a security scan
and a smoke test), after which the summary is regenerated and the decision
source is asked again.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from .approval import DecisionCancelled
from .collaborators import Fixer, ReviewAgent, SuiteRunner
from .messaging import MessagingDispatcher, OutboundMessage, PipelineEvent, format_event
from .models import (
    AgentResult,
    ReviewContext,
    ReviewFinding,
    ReviewPhaseResult,
    Severity,
    SignOffDecision,
    meets_severity,
    utc_now_iso,
)
from .state_store import DeliveryStateStore

logger = logging.getLogger(__name__)

NO_FEEDBACK = "No feedback provided."
CANCELLED_FEEDBACK = "Sign-off cancelled by user."
SIGN_OFF_APPROVE_WORDS = frozenset({"approve", "approved", "yes", "y", "lgtm", "ok"})
SIGN_OFF_CANCEL_WORDS = frozenset({"cancel", "abort", "stop"})


@dataclass(frozen=True)
class EpicSummary:
    epic_number: int
    markdown: str
    can_advance: bool
    blocking_issues: list[str]
    summary_path: Path


@dataclass(frozen=True)
class SignOffResult:
    summary: EpicSummary
    approved: bool
    rejection_cycles: int


class SignOffSource(Protocol):
    def decide(self, summary: EpicSummary) -> SignOffDecision: ...


@dataclass(frozen=True)
class FixCycleAgents:
    refactoring: Fixer
    test_hardener: ReviewAgent
    test_runner: SuiteRunner
    security: ReviewAgent
    qa: ReviewAgent


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def _severity_counts(findings: list[ReviewFinding]) -> str:
    counts = Counter(finding.severity for finding in findings)
    if not counts:
        return "No findings.\n"
    lines = ["| Severity | Count |", "| -------- | ----- |"]
    lines += [f"| {severity.value} | {counts[severity]} |" for severity in Severity if counts.get(severity)]
    lines.append("")
    return "\n".join(lines)


def _agent_section(label: str, result: AgentResult | None) -> str:
    if result is None:
        return f"### {label}\n\nSkipped.\n"
    lines = [f"### {label}", "", f"**Status:** {'Passed' if result.success else 'Failed'}", ""]
    lines.append(_severity_counts(result.findings))
    if result.blocking_issues:
        lines.append("**Blocking Issues:**")
        lines += [f"- {issue}" for issue in result.blocking_issues]
        lines.append("")
    return "\n".join(lines)


def all_findings(review: ReviewPhaseResult) -> list[ReviewFinding]:
    results = [
        *review.parallel_results,
        review.refactoring_result,
        review.test_hardening_result,
        review.security_result,
        review.qa_result,
    ]
    return [finding for result in results if result is not None for finding in result.findings]


def render_epic_summary(epic_number: int, review: ReviewPhaseResult) -> str:
    lines = [
        f"# Epic {epic_number} Review Summary",
        "",
        f"**Date:** {utc_now_iso()}",
        f"**Can Advance:** {'Yes' if review.can_advance else 'No'}",
        "",
    ]
    if review.blocking_issues:
        lines += ["## Blocking Issues", ""]
        lines += [f"- {issue}" for issue in review.blocking_issues]
        lines.append("")

    lines += ["## Review Results", ""]
    for result in review.parallel_results:
        lines.append(_agent_section(result.agent.replace("-", " ").title(), result))
    lines.append(_agent_section("Refactoring", review.refactoring_result))
    lines.append(_agent_section("Test Hardening", review.test_hardening_result))
    lines += ["### Test Suite", ""]
    if review.test_suite_result is None:
        lines.append("Skipped.\n")
    else:
        lines.append(f"**Status:** {'Passed' if review.test_suite_result.passed else 'Failed'}\n")
    lines.append(_agent_section("Security Scan", review.security_result))
    lines.append(_agent_section("QA Smoke Test", review.qa_result))

    findings = all_findings(review)
    lines += ["## Overall Findings", "", f"**Total Findings:** {len(findings)}", "", _severity_counts(findings)]
    return "\n".join(lines)


def generate_epic_summary(store: DeliveryStateStore, epic_number: int, review: ReviewPhaseResult) -> EpicSummary:
    markdown = render_epic_summary(epic_number, review)
    path = store.write_review_artifact(epic_number, "summary.md", markdown)
    return EpicSummary(
        epic_number=epic_number,
        markdown=markdown,
        can_advance=review.can_advance,
        blocking_issues=list(review.blocking_issues),
        summary_path=path,
    )


# ---------------------------------------------------------------------------
# Fix cycle
# ---------------------------------------------------------------------------


def _run_refactoring(fixer: Fixer, context: ReviewContext, findings: list[ReviewFinding]) -> AgentResult:
    unresolved: list[ReviewFinding] = []
    report_lines: list[str] = []
    for finding in findings:
        result = fixer.fix(finding, context)
        if result.fixed:
            report_lines.append(f"Fixed: {finding.title}")
        else:
            unresolved.append(finding)
            report_lines.append(f"Not fixed: {finding.title} ({result.error or 'no change'})")
    return AgentResult(
        agent="refactoring",
        success=not unresolved,
        report="\n".join(report_lines),
        findings=unresolved,
    )


def run_fix_cycle(
    context: ReviewContext,
    feedback: str,
    previous_findings: list[ReviewFinding],
    agents: FixCycleAgents,
    *,
    cycle: int = 1,
) -> ReviewPhaseResult:
    result = ReviewPhaseResult(epic_number=context.epic_number)
    feedback_finding = ReviewFinding(
        id=f"sign-off-{cycle}",
        title="User feedback during sign-off",
        severity=Severity.HIGH,
        description=feedback,
        source="sign-off",
    )

    refactoring = _run_refactoring(agents.refactoring, context, [*previous_findings, feedback_finding])
    result.refactoring_result = refactoring
    result.blocking_issues.extend(refactoring.blocking_issues)

    hardening = agents.test_hardener.run(context)
    result.test_hardening_result = hardening
    result.blocking_issues.extend(hardening.blocking_issues)

    suite = agents.test_runner.run()
    result.test_suite_result = suite
    if not suite.passed:
        result.blocking_issues.append("Test suite failed after fix cycle")
        result.can_advance = False
        return result

    security = agents.security.run(context)
    result.security_result = security
    result.blocking_issues.extend(
        f"[{finding.severity.value}] {finding.title}"
        for finding in security.findings
        if meets_severity(finding.severity, Severity.HIGH)
    )
    result.blocking_issues.extend(security.blocking_issues)

    qa = agents.qa.run(context)
    result.qa_result = qa
    if not qa.success:
        result.blocking_issues.append("QA smoke test failed during fix cycle")
    result.blocking_issues.extend(qa.blocking_issues)

    result.can_advance = not result.blocking_issues
    return result


# ---------------------------------------------------------------------------
# Sign-off loop
# ---------------------------------------------------------------------------


def _ask(source: SignOffSource, summary: EpicSummary) -> SignOffDecision:
    try:
        decision = source.decide(summary)
    except DecisionCancelled:
        return SignOffDecision.reject(CANCELLED_FEEDBACK)
    if not decision.approved and not decision.feedback.strip():
        return SignOffDecision.reject(NO_FEEDBACK)
    return decision


def run_epic_sign_off(
    *,
    store: DeliveryStateStore,
    epic_number: int,
    review: ReviewPhaseResult,
    autonomous: bool,
    source: SignOffSource | None,
    fix_agents: FixCycleAgents | None,
    max_rejection_cycles: int | None = None,
    changed_files: list[str] | None = None,
) -> SignOffResult:
    """Obtain sign-off for one epic.

    Autonomous runs approve without consulting *source*. Rejection cycles
    are unbounded unless *max_rejection_cycles* is given; reaching the cap
    reports not approved.
    """
    summary = generate_epic_summary(store, epic_number, review)
    if autonomous or source is None:
        return SignOffResult(summary=summary, approved=True, rejection_cycles=0)

    current = review
    cycles = 0
    while True:
        decision = _ask(source, summary)
        if decision.approved:
            logger.info("epic %d approved after %d rejection cycles", epic_number, cycles)
            return SignOffResult(summary=summary, approved=True, rejection_cycles=cycles)
        logger.info("epic %d rejected at sign-off: %s", epic_number, decision.feedback)
        if fix_agents is None:
            return SignOffResult(summary=summary, approved=False, rejection_cycles=cycles)
        if max_rejection_cycles is not None and cycles >= max_rejection_cycles:
            logger.warning("epic %d reached the sign-off rejection cap (%d)", epic_number, max_rejection_cycles)
            return SignOffResult(summary=summary, approved=False, rejection_cycles=cycles)

        cycles += 1
        context = ReviewContext(
            project_dir=str(store.project_dir),
            epic_number=epic_number,
            review_dir=str(store.epic_review_dir(epic_number)),
            changed_files=list(changed_files or []),
        )
        current = run_fix_cycle(context, decision.feedback, all_findings(current), fix_agents, cycle=cycles)
        summary = generate_epic_summary(store, epic_number, current)


# ---------------------------------------------------------------------------
# Decision sources
# ---------------------------------------------------------------------------


class InteractiveSignOff:
    """Terminal decision source; EOF or Ctrl-C cancels."""

    def __init__(
        self,
        input_fn: Callable[[str], str] = input,
        output_fn: Callable[[str], None] = print,
    ) -> None:
        self._input = input_fn
        self._output = output_fn

    def decide(self, summary: EpicSummary) -> SignOffDecision:
        self._output(summary.markdown)
        self._output(f"Summary saved to {summary.summary_path}")
        try:
            answer = self._input(f"Approve Epic {summary.epic_number}? [y/N]: ").strip().lower()
            if answer in SIGN_OFF_APPROVE_WORDS:
                return SignOffDecision.approve()
            feedback = self._input("What should change? ").strip()
        except (EOFError, KeyboardInterrupt) as exc:
            raise DecisionCancelled("sign-off prompt closed") from exc
        return SignOffDecision.reject(feedback or NO_FEEDBACK)


class MessagingSignOff:
    """Sign-off over the messaging channel; no reply before the timeout approves."""

    def __init__(self, dispatcher: MessagingDispatcher) -> None:
        self.dispatcher = dispatcher

    def decide(self, summary: EpicSummary) -> SignOffDecision:
        self.dispatcher.send_summary(summary.epic_number, summary.markdown)
        result = self.dispatcher.ask(format_event(PipelineEvent.SIGN_OFF_READY, epic=summary.epic_number))
        if not result.replied:
            logger.info("no sign-off reply for epic %d (%s); approving", summary.epic_number, result.reason)
            self.dispatcher.send(OutboundMessage(text="No reply received. Pipeline continuing...", type="status"))
            return SignOffDecision.approve()
        reply = result.text.strip()
        normalized = reply.lower()
        if normalized in SIGN_OFF_APPROVE_WORDS:
            return SignOffDecision.approve()
        if normalized in SIGN_OFF_CANCEL_WORDS:
            raise DecisionCancelled(f"sign-off cancelled over {self.dispatcher.config.channel}")
        return SignOffDecision.reject(reply or NO_FEEDBACK)
