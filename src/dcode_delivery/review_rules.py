"""Cross-project review rules.

After each adversarial review, recurring finding patterns are merged into
``<memory_dir>/review-rules.json``. Rules seen often enough are fed back to
the agent that found them so later reviews look for the same mistakes.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from pydantic import TypeAdapter, ValidationError

from .models import ReviewFinding, ReviewRule, utc_now_iso
from .state_store import atomic_write_text

if TYPE_CHECKING:
    from .review_loop import AdversarialLoopResult

logger = logging.getLogger(__name__)

RULES_FILENAME = "review-rules.json"
PROMOTION_THRESHOLD = 2
MAX_RULES_PER_AGENT = 10

_RULES_ADAPTER = TypeAdapter(list[ReviewRule])
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def normalize_to_key(agent: str, title: str) -> str:
    slug = _SLUG_RE.sub("-", title.strip().lower()).strip("-")
    return f"{agent}--{slug}"


def _iter_loop_findings(loop_result: AdversarialLoopResult) -> Iterable[ReviewFinding]:
    for record in loop_result.iterations:
        for agent_result in record.agent_results:
            yield from agent_result.findings
    yield from loop_result.deferred_findings
    yield from loop_result.unresolved_findings


def extract_rule_candidates(loop_result: AdversarialLoopResult, project_name: str) -> list[ReviewRule]:
    """Group every finding of a loop run by normalized key.

    Each occurrence counts once, so a finding that was both reported and
    left unresolved weighs more than one that was fixed.
    """
    now = utc_now_iso()
    grouped: dict[str, tuple[ReviewFinding, int]] = {}
    for finding in _iter_loop_findings(loop_result):
        key = normalize_to_key(finding.source, finding.title)
        first, count = grouped.get(key, (finding, 0))
        grouped[key] = (first, count + 1)
    return [
        ReviewRule(
            key=key,
            description=finding.description or finding.title,
            severity=finding.severity,
            source_agent=finding.source,
            times_seen=count,
            projects=[project_name],
            first_seen=now,
            last_seen=now,
        )
        for key, (finding, count) in grouped.items()
    ]


def merge_rules(existing: list[ReviewRule], candidates: list[ReviewRule]) -> list[ReviewRule]:
    """Additive merge; existing rules are never dropped."""
    merged: dict[str, ReviewRule] = {rule.key: rule.model_copy(deep=True) for rule in existing}
    for candidate in candidates:
        found = merged.get(candidate.key)
        if found is None:
            merged[candidate.key] = candidate.model_copy(deep=True)
            continue
        found.times_seen += candidate.times_seen
        found.last_seen = candidate.last_seen
        for project in candidate.projects:
            if project not in found.projects:
                found.projects.append(project)
    return list(merged.values())


def load_review_rules(memory_dir: Path) -> list[ReviewRule]:
    path = memory_dir / RULES_FILENAME
    if not path.is_file():
        return []
    try:
        return _RULES_ADAPTER.validate_python(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        logger.warning("ignoring unreadable review rules at %s: %s", path, exc)
        return []


def save_review_rules(rules: list[ReviewRule], memory_dir: Path) -> Path:
    path = memory_dir / RULES_FILENAME
    payload = _RULES_ADAPTER.dump_python(rules, mode="json")
    atomic_write_text(path, json.dumps(payload, indent=2) + "\n")
    return path


def build_rules_prompt_section(
    rules: list[ReviewRule],
    agent: str,
    threshold: int = PROMOTION_THRESHOLD,
) -> str:
    qualified = sorted(
        (rule for rule in rules if rule.source_agent == agent and rule.times_seen >= threshold),
        key=lambda rule: rule.times_seen,
        reverse=True,
    )[:MAX_RULES_PER_AGENT]
    if not qualified:
        return ""
    lines = [
        "## Known Recurring Issues from Past Projects",
        "The following patterns have been found repeatedly in past reviews. Pay special attention to these:",
        "",
    ]
    for index, rule in enumerate(qualified, start=1):
        project_count = len(rule.projects)
        plural = "" if project_count == 1 else "s"
        lines.append(
            f"{index}. **{rule.description}** (severity: {rule.severity.value}, "
            f"seen {rule.times_seen} times across {project_count} project{plural})"
        )
    return "\n".join(lines)


def build_rules_prompts(memory_dir: Path, agents: Iterable[str]) -> dict[str, str]:
    """Prompt sections keyed by agent name; agents without promoted rules are omitted."""
    rules = load_review_rules(memory_dir)
    sections: dict[str, str] = {}
    for agent in agents:
        section = build_rules_prompt_section(rules, agent)
        if section:
            sections[agent] = section
    return sections


def record_review_rules(loop_result: AdversarialLoopResult, project_name: str, memory_dir: Path) -> int:
    """Merge this run's findings into the rule store; returns the candidate count."""
    candidates = extract_rule_candidates(loop_result, project_name)
    if not candidates:
        return 0
    merged = merge_rules(load_review_rules(memory_dir), candidates)
    path = save_review_rules(merged, memory_dir)
    logger.info("merged %d review rule candidates into %s", len(candidates), path)
    return len(candidates)
