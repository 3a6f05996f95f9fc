"""Deterministic checks that drop hallucinated review findings.

No model call is involved: a finding survives when its file exists inside
the project and, if the finding quotes identifiers, at least one of them
appears in that file. Findings without a file are kept.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from .models import ReviewFinding

logger = logging.getLogger(__name__)

_QUOTED_TERM_RE = re.compile(r"[\"'`]([A-Za-z_$][\w$.]*(?:\(\))?)[`\"']")


@dataclass(frozen=True)
class DiscardedFinding:
    finding: ReviewFinding
    reason: str


@dataclass(frozen=True)
class VerificationResult:
    verified: list[ReviewFinding] = field(default_factory=list)
    discarded: list[DiscardedFinding] = field(default_factory=list)


def extract_key_terms(text: str) -> list[str]:
    """Quoted or backticked identifiers, in first-seen order."""
    terms: list[str] = []
    for match in _QUOTED_TERM_RE.finditer(text):
        term = match.group(1).replace("()", "")
        if term not in terms:
            terms.append(term)
    return terms


def _resolve_inside(project_dir: Path, file_path: str) -> Path | None:
    root = project_dir.resolve()
    candidate = (root / file_path.lstrip("/")).resolve()
    if candidate != root and root not in candidate.parents:
        return None
    return candidate


def _check(project_dir: Path, file_path: str, finding: ReviewFinding) -> str | None:
    target = _resolve_inside(project_dir, file_path)
    if target is None:
        return f"File is outside the project: {file_path}"
    if not target.is_file():
        return f"File does not exist: {file_path}"
    try:
        content = target.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        return f"File unreadable: {file_path} ({exc})"
    terms = extract_key_terms(finding.description)
    terms += [term for term in extract_key_terms(finding.title) if term not in terms]
    if terms and not any(term in content for term in terms):
        return f"None of the key terms [{', '.join(terms)}] found in {file_path}"
    return None


def verify_findings(project_dir: Path, findings: list[ReviewFinding]) -> VerificationResult:
    verified: list[ReviewFinding] = []
    discarded: list[DiscardedFinding] = []
    for finding in findings:
        if not finding.file:
            verified.append(finding)
            continue
        reason = _check(project_dir, finding.file, finding)
        if reason is None:
            verified.append(finding)
        else:
            logger.debug("discarding finding %s: %s", finding.id, reason)
            discarded.append(DiscardedFinding(finding=finding, reason=reason))
    return VerificationResult(verified=verified, discarded=discarded)
