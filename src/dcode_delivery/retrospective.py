"""Post-delivery retrospective built from the run's own artifacts.

Reads the per-epic plan snapshots (``plans/epic-N.json``) and the review
iteration records (``reviews/epic-N/iteration-K.json``), renders
``retrospective.md`` and appends learnings to the cross-project memory.
"""

from __future__ import annotations

import json
import logging
import re
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any

from .collaborators import MemoryEntry, RetrospectiveOptions
from .models import RetrospectiveData, Severity, utc_now_iso
from .review_rules import normalize_to_key
from .state_store import DeliveryStateStore, atomic_write_text

logger = logging.getLogger(__name__)

MEMORY_FILENAME = "retrospectives.json"
_EPIC_DIR_RE = re.compile(r"^epic-(\d+)$")


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("skipping unreadable artifact %s: %s", path, exc)
        return None


class FileRetrospective:
    def __init__(self, store: DeliveryStateStore, memory_dir: Path) -> None:
        self.store = store
        self.memory_dir = memory_dir

    def _plan_files(self) -> list[Path]:
        snapshots = sorted(self.store.epic_plan_path(0).parent.glob("epic-*.json"))
        if snapshots:
            return snapshots
        return [self.store.plan_path] if self.store.plan_path.is_file() else []

    def analyze(self, options: RetrospectiveOptions) -> RetrospectiveData:
        stories_total = stories_passed = 0
        for path in self._plan_files():
            payload = _read_json(path)
            if not isinstance(payload, dict):
                continue
            stories = payload.get("stories") or []
            stories_total += len(stories)
            stories_passed += sum(1 for story in stories if story.get("passes"))

        iterations = 0
        severities: Counter[str] = Counter()
        epics_by_key: dict[str, set[int]] = defaultdict(set)
        titles: dict[str, str] = {}
        if self.store.reviews_dir.is_dir():
            for epic_dir in sorted(self.store.reviews_dir.iterdir()):
                match = _EPIC_DIR_RE.match(epic_dir.name)
                if match is None or not epic_dir.is_dir():
                    continue
                for record_path in sorted(epic_dir.glob("iteration-*.json")):
                    record = _read_json(record_path)
                    if not isinstance(record, dict):
                        continue
                    iterations += 1
                    for finding in record.get("findings") or []:
                        severities[str(finding.get("severity", "info"))] += 1
                        key = normalize_to_key(str(finding.get("source", "")), str(finding.get("title", "")))
                        epics_by_key[key].add(int(match.group(1)))
                        titles.setdefault(key, str(finding.get("title", "")))

        recurring = [
            f"{titles[key]} ({len(epics)} epics)"
            for key, epics in sorted(epics_by_key.items(), key=lambda item: (-len(item[1]), item[0]))
            if len(epics) >= 2
        ]
        ordered = {severity.value: severities[severity.value] for severity in Severity if severities[severity.value]}
        return RetrospectiveData(
            project_name=options.project_name,
            total_epics=options.total_epics,
            stories_total=stories_total,
            stories_passed=stories_passed,
            review_iterations=iterations,
            findings_by_severity=ordered,
            recurring_findings=recurring,
        )

    def report(self, data: RetrospectiveData) -> Path:
        lines = [
            f"# Retrospective: {data.project_name}",
            "",
            f"**Generated:** {data.generated_at}",
            "",
            "## Delivery",
            "",
            f"- Epics: {data.total_epics}",
            f"- Stories passed: {data.stories_passed}/{data.stories_total}",
            f"- Review iterations: {data.review_iterations}",
            "",
            "## Findings by Severity",
            "",
        ]
        if data.findings_by_severity:
            lines += ["| Severity | Count |", "| -------- | ----- |"]
            lines += [f"| {name} | {count} |" for name, count in data.findings_by_severity.items()]
        else:
            lines.append("No verified findings.")
        lines += ["", "## Recurring Findings", ""]
        lines += [f"- {item}" for item in data.recurring_findings] or ["None."]
        lines.append("")
        return self.store.write_text(self.store.retrospective_path, "\n".join(lines))

    def save_memory(self, entries: list[MemoryEntry]) -> Path:
        """Append *entries* to the memory file; an unreadable file is replaced."""
        path = self.memory_dir / MEMORY_FILENAME
        existing: list[Any] = []
        if path.is_file():
            loaded = _read_json(path)
            if isinstance(loaded, list):
                existing = loaded
        stamp = utc_now_iso()
        existing += [
            {"category": entry.category, "content": entry.content, "project": entry.project, "recorded_at": stamp}
            for entry in entries
        ]
        atomic_write_text(path, json.dumps(existing, indent=2) + "\n")
        return path


def memory_entries(data: RetrospectiveData) -> list[MemoryEntry]:
    entries = [
        MemoryEntry(
            category="delivery",
            content=(
                f"{data.stories_passed}/{data.stories_total} stories over {data.total_epics} epics "
                f"in {data.review_iterations} review iterations"
            ),
            project=data.project_name,
        )
    ]
    entries += [
        MemoryEntry(category="recurring-finding", content=item, project=data.project_name)
        for item in data.recurring_findings
    ]
    return entries
