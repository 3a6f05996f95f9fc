"""Markdown story breakdown -> per-epic buildable plan.

Input is the planning markdown::

    ## Epic 1: Foundation
    **Goal:** ...
    **Scope:** ...

    ### Story 1.1: Project setup
    As a developer, I want ...

    **Acceptance Criteria:**
    - ...
    **Prerequisites:** None
    **Technical Notes:**
    - ...
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from .models import Epic, EpicBreakdown, Plan, PlanStory, ProjectMetadata, Story
from .state_store import DeliveryStateStore

logger = logging.getLogger(__name__)

EPIC_HEADING_RE = re.compile(r"^##\s+Epic\s+(\d+):\s+(.+)$")
STORY_HEADING_RE = re.compile(r"^###\s+Story\s+(\d+\.\d+):\s+(.+)$")
META_LINE_RE = re.compile(r"^\*\*(\w+):\*\*\s*(.+)$")
SECTION_HEADER_RE = re.compile(r"^\*\*([\w\s]+):\*\*\s*$")
BULLET_RE = re.compile(r"^[-*]\s+(.+)$")
_SEPARATOR_RE = re.compile(r"^---+$")
_BOLD_RE = re.compile(r"\*\*([^*]+)\*\*")
_STORY_ID_RE = re.compile(r"^\d+\.\d+$")

REQUIRED_CRITERIA: tuple[str, ...] = ("Typecheck passes", "All tests pass")


def _strip_bold(text: str) -> str:
    return _BOLD_RE.sub(r"\1", text)


def _parse_prerequisites(text: str) -> list[str]:
    stripped = text.strip()
    if not stripped or stripped.lower() == "none":
        return []
    return [token for token in re.split(r"[,\s]+", stripped) if _STORY_ID_RE.match(token)]


def _section_name(line: str) -> str | None:
    match = SECTION_HEADER_RE.match(line) or META_LINE_RE.match(line)
    return match.group(1).strip().lower() if match else None


def _parse_story(lines: list[str]) -> Story:
    heading = STORY_HEADING_RE.match(lines[0].strip())
    if heading is None:
        raise ValueError(f"Expected story heading, got: {lines[0]}")
    story = Story(story_id=heading.group(1), title=heading.group(2).strip())
    preamble: list[str] = []
    section = "preamble"

    for raw in lines[1:]:
        line = raw.strip()
        if not line:
            continue
        name = _section_name(line)
        if name is not None:
            if name == "acceptance criteria":
                section = "criteria"
            elif name == "prerequisites":
                section = "prerequisites"
                meta = META_LINE_RE.match(line)
                if meta:
                    story.prerequisites.extend(_parse_prerequisites(meta.group(2)))
            elif name == "technical notes":
                section = "notes"
            continue

        if section == "preamble":
            preamble.append(_strip_bold(line))
            continue
        bullet = BULLET_RE.match(line)
        if bullet is None:
            continue
        item = bullet.group(1).strip()
        if section == "criteria":
            story.acceptance_criteria.append(_strip_bold(item))
        elif section == "prerequisites":
            story.prerequisites.extend(_parse_prerequisites(item))
        else:
            story.technical_notes.append(item)

    story.user_story = " ".join(preamble).strip()
    return story


def parse_story_markdown(markdown: str) -> EpicBreakdown:
    """Parse the planning markdown into epics and stories.

    Raises:
        ValueError: If the text contains no epics or no stories.
    """
    epics: list[Epic] = []
    current_epic: Epic | None = None
    story_lines: list[str] | None = None

    def flush_story() -> None:
        nonlocal story_lines
        if story_lines and current_epic is not None:
            current_epic.stories.append(_parse_story(story_lines))
        story_lines = None

    for raw in markdown.splitlines():
        line = raw.strip()
        epic_match = EPIC_HEADING_RE.match(line)
        if epic_match:
            flush_story()
            if current_epic is not None:
                epics.append(current_epic)
            current_epic = Epic(number=int(epic_match.group(1)), name=epic_match.group(2).strip())
            continue
        if STORY_HEADING_RE.match(line):
            flush_story()
            story_lines = [line]
            continue
        if current_epic is not None and story_lines is None:
            meta = META_LINE_RE.match(line)
            if meta:
                key = meta.group(1).lower()
                if key == "goal":
                    current_epic.goal = meta.group(2).strip()
                elif key == "scope":
                    current_epic.scope = meta.group(2).strip()
            continue
        if story_lines is not None and not _SEPARATOR_RE.match(line):
            story_lines.append(raw)

    flush_story()
    if current_epic is not None:
        epics.append(current_epic)

    if not epics:
        raise ValueError("No epics found in story markdown")
    breakdown = EpicBreakdown(epics=epics)
    if not breakdown.all_stories:
        raise ValueError("No stories found in story markdown")
    return breakdown


def _ensure_required_criteria(criteria: list[str]) -> list[str]:
    result = list(criteria)
    present = {item.lower() for item in result}
    result.extend(required for required in REQUIRED_CRITERIA if required.lower() not in present)
    return result


def _story_notes(story: Story) -> str | None:
    parts: list[str] = []
    if story.technical_notes:
        parts.append(". ".join(story.technical_notes))
    if story.prerequisites:
        parts.append(f"Depends on {', '.join(story.prerequisites)} being complete.")
    return ". ".join(parts) if parts else None


def convert_epic(breakdown: EpicBreakdown, epic_number: int, metadata: ProjectMetadata) -> Plan:
    """Build the plan for one epic.

    Raises:
        ValueError: If *epic_number* is not in the breakdown.
    """
    epic = next((item for item in breakdown.epics if item.number == epic_number), None)
    if epic is None:
        raise ValueError(f"Epic {epic_number} not found in breakdown")
    stories = [
        PlanStory(
            id=story.story_id,
            title=story.title,
            description=story.user_story,
            acceptance_criteria=_ensure_required_criteria(story.acceptance_criteria),
            priority=index + 1,
            passes=False,
            notes=_story_notes(story),
        )
        for index, story in enumerate(epic.stories)
    ]
    return Plan(
        project=metadata.project,
        branch_name=metadata.branch_name,
        description=metadata.description,
        epic_number=epic_number,
        stories=stories,
    )


class MarkdownBridge:
    def parse(self, plan_text: str) -> EpicBreakdown:
        return parse_story_markdown(plan_text)

    def convert(self, breakdown: EpicBreakdown, epic_number: int, metadata: ProjectMetadata) -> Plan:
        return convert_epic(breakdown, epic_number, metadata)

    def save(self, plan: Plan, store: DeliveryStateStore) -> Path:
        """Write ``plan.json``; stories already built for this epic stay passed."""
        if store.plan_path.is_file():
            try:
                existing = store.read_plan()
            except ValueError as exc:
                logger.warning("replacing unreadable plan: %s", exc)
            else:
                if existing.epic_number == plan.epic_number:
                    passed = {story.id for story in existing.stories if story.passes}
                    for story in plan.stories:
                        story.passes = story.id in passed
        return store.write_plan(plan)
