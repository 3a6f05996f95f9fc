from __future__ import annotations

import json
from pathlib import Path

from dcode_delivery.collaborators import RetrospectiveOptions
from dcode_delivery.models import Plan, PlanStory
from dcode_delivery.retrospective import MEMORY_FILENAME, FileRetrospective, memory_entries
from dcode_delivery.state_store import DeliveryStateStore


def _snapshot(store: DeliveryStateStore, epic: int, passes: list[bool]) -> None:
    stories = [PlanStory(id=f"{epic}.{index}", title="s", passes=flag) for index, flag in enumerate(passes, start=1)]
    plan = Plan(project="demo", branch_name="main", description="Demo", epic_number=epic, stories=stories)
    store.write_plan(plan, store.epic_plan_path(epic))


def _iteration(store: DeliveryStateStore, epic: int, number: int, findings: list[dict]) -> None:
    path = store.epic_review_dir(epic) / f"iteration-{number}.json"
    store.write_json(path, {"iteration": number, "findings": findings})


def _finding(title: str, severity: str, source: str = "security") -> dict:
    return {"id": f"{source}-1-1", "title": title, "severity": severity, "file": None, "source": source}


def test_analyze_reads_plans_and_iterations(store: DeliveryStateStore, tmp_path: Path) -> None:
    _snapshot(store, 1, [True, True])
    _snapshot(store, 2, [True, False])
    _iteration(store, 1, 1, [_finding("Missing auth check", "high"), _finding("Long function", "low", "code-quality")])
    _iteration(store, 1, 2, [])
    _iteration(store, 2, 1, [_finding("Missing Auth Check", "critical")])

    retrospective = FileRetrospective(store, tmp_path / "memory")
    data = retrospective.analyze(RetrospectiveOptions(project_dir=store.project_dir, project_name="demo", total_epics=2))

    assert data.stories_total == 4
    assert data.stories_passed == 3
    assert data.review_iterations == 3
    assert data.findings_by_severity == {"critical": 1, "high": 1, "low": 1}
    assert data.recurring_findings == ["Missing auth check (2 epics)"]

    report = retrospective.report(data).read_text(encoding="utf-8")
    assert report.startswith("# Retrospective: demo")
    assert "- Stories passed: 3/4" in report
    assert "- Missing auth check (2 epics)" in report


def test_analyze_falls_back_to_plan_json(store: DeliveryStateStore, tmp_path: Path) -> None:
    store.write_plan(
        Plan(project="demo", branch_name="main", description="Demo", epic_number=1, stories=[PlanStory(id="1.1", title="s")])
    )
    data = FileRetrospective(store, tmp_path).analyze(
        RetrospectiveOptions(project_dir=store.project_dir, project_name="demo", total_epics=1)
    )
    assert data.stories_total == 1
    assert data.stories_passed == 0
    assert data.review_iterations == 0
    assert data.recurring_findings == []


def test_save_memory_appends(store: DeliveryStateStore, tmp_path: Path) -> None:
    memory_dir = tmp_path / "memory"
    retrospective = FileRetrospective(store, memory_dir)
    data = retrospective.analyze(RetrospectiveOptions(project_dir=store.project_dir, project_name="demo", total_epics=0))

    retrospective.save_memory(memory_entries(data))
    path = retrospective.save_memory(memory_entries(data))

    saved = json.loads(path.read_text(encoding="utf-8"))
    assert path == memory_dir / MEMORY_FILENAME
    assert len(saved) == 2
    assert saved[0]["category"] == "delivery"
    assert saved[0]["project"] == "demo"
    assert saved[0]["content"] == "0/0 stories over 0 epics in 0 review iterations"
