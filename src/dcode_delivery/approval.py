from __future__ import annotations

import logging
from typing import Callable, Protocol, Sequence

from .messaging import MessagingDispatcher, OutboundMessage
from .models import ApprovalDecision, ReviewFinding

logger = logging.getLogger(__name__)

APPROVE_WORDS = frozenset({"", "approve", "approved", "yes", "y", "lgtm", "ok"})
ABORT_WORDS = frozenset({"abort", "stop", "cancel"})
DECLINE_WORDS = frozenset({"no", "n", "reject", "rejected"})


class DecisionCancelled(RuntimeError):
    """Raised by a decision source when the human aborts the prompt."""


class ApprovalGate(Protocol):
    def decide(self, summary: str) -> ApprovalDecision: ...


def format_findings_for_approval(
    fixable: Sequence[ReviewFinding],
    deferred: Sequence[ReviewFinding],
    *,
    iteration: int | None = None,
    max_iterations: int | None = None,
) -> str:
    lines: list[str] = []
    if iteration is not None and max_iterations is not None:
        lines.append(f"Review iteration {iteration}/{max_iterations}")
        lines.append("")
    lines.append(f"## Findings to Fix ({len(fixable)})")
    for index, finding in enumerate(fixable, start=1):
        location = f" in {finding.file}" if finding.file else ""
        lines.append(f"{index}. [{finding.id}] **{finding.title}** ({finding.severity.value}){location}")
    if deferred:
        lines.append("")
        lines.append(f"## Deferred ({len(deferred)})")
        for finding in deferred:
            location = f" in {finding.file}" if finding.file else ""
            lines.append(f"- [{finding.id}] {finding.title} ({finding.severity.value}){location}")
    return "\n".join(lines)


def parse_approval_reply(text: str) -> ApprovalDecision:
    """Map a free-text reply onto an approval decision.

    ``approve``/``yes``/``lgtm``/``ok`` (or an empty reply) approve;
    ``abort``/``stop``/``cancel`` and ``no`` reject; ``reject: <reason>``
    and any other text reject with that text as feedback.
    """
    stripped = text.strip()
    normalized = stripped.lower()
    if normalized in APPROVE_WORDS:
        return ApprovalDecision.approve()
    if normalized in ABORT_WORDS:
        return ApprovalDecision.reject("Review loop aborted by user.")
    if normalized in DECLINE_WORDS:
        return ApprovalDecision.reject("Rejected by user.")
    if normalized.startswith("reject:"):
        feedback = stripped.split(":", 1)[1].strip()
        return ApprovalDecision.reject(feedback or "Rejected by user.")
    return ApprovalDecision.reject(stripped)


class InteractiveApprovalGate:
    """Terminal approval gate; input and output are injectable for tests."""

    def __init__(
        self,
        input_fn: Callable[[str], str] = input,
        output_fn: Callable[[str], None] = print,
    ) -> None:
        self._input = input_fn
        self._output = output_fn

    def decide(self, summary: str) -> ApprovalDecision:
        self._output(summary)
        try:
            answer = self._input("Apply automated fixes? [Y/n, abort, or feedback]: ")
        except (EOFError, KeyboardInterrupt):
            return ApprovalDecision.reject("Approval cancelled by user.")
        return parse_approval_reply(answer)


class MessagingApprovalGate:
    """Approval over the remote messaging channel; silence counts as approval."""

    def __init__(self, dispatcher: MessagingDispatcher) -> None:
        self.dispatcher = dispatcher

    def decide(self, summary: str) -> ApprovalDecision:
        self.dispatcher.send(OutboundMessage(text=summary, type="summary"))
        result = self.dispatcher.ask(
            "Reply 'approve' to apply the fixes, 'abort' to stop the review loop, or describe what to change."
        )
        if not result.replied:
            logger.info("no approval reply (%s); continuing with automated fixes", result.reason)
            self.dispatcher.send(
                OutboundMessage(text="No reply received. Continuing with automated fixes.", type="status")
            )
            return ApprovalDecision.approve()
        return parse_approval_reply(result.text)
