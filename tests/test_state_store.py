from __future__ import annotations

import json
from pathlib import Path

import pytest

from dcode_delivery.models import PipelinePhase, PipelineState, Plan, PlanStory
from dcode_delivery.state_store import DeliveryStateStore, atomic_write_text


def test_missing_state_file_loads_defaults(store: DeliveryStateStore) -> None:
    state = store.read_state()
    assert state.phase == PipelinePhase.IDLE
    assert state.epic_number == 0
    assert not store.state_path.exists()


def test_write_state_stamps_updated_at_and_uses_flat_keys(store: DeliveryStateStore) -> None:
    written = store.write_state(PipelineState(phase=PipelinePhase.BUILDING, epic_number=2, current_story="2.1"))
    assert written.updated_at is not None

    payload = json.loads(store.state_path.read_text(encoding="utf-8"))
    assert payload["phase"] == "BUILDING"
    assert payload["epic_number"] == 2
    assert payload["current_story"] == "2.1"
    assert set(payload) >= {"last_completed_step", "scaffolding_complete", "updated_at"}


def test_corrupt_state_file_raises_value_error(store: DeliveryStateStore) -> None:
    store.root.mkdir(parents=True)
    store.state_path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        store.read_state()


def test_plan_round_trip_and_explicit_path(store: DeliveryStateStore) -> None:
    plan = Plan(
        project="demo",
        branch_name="epic-1",
        description="Foundation",
        epic_number=1,
        stories=[PlanStory(id="1.1", title="Setup", priority=1)],
    )
    assert store.write_plan(plan) == store.plan_path
    assert store.read_plan().stories[0].id == "1.1"

    snapshot = store.write_plan(plan, store.epic_plan_path(1))
    assert snapshot.name == "epic-1.json"
    assert store.read_plan(snapshot).epic_number == 1


def test_read_plan_missing_file_raises(store: DeliveryStateStore) -> None:
    with pytest.raises(FileNotFoundError):
        store.read_plan()


def test_atomic_write_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "out.json"
    atomic_write_text(target, "{}\n")
    atomic_write_text(target, '{"a": 1}\n')
    assert json.loads(target.read_text(encoding="utf-8")) == {"a": 1}
    assert [path.name for path in target.parent.iterdir()] == ["out.json"]
