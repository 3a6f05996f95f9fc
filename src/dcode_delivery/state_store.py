from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from pydantic import ValidationError

from .models import PipelineState, Plan, utc_now_iso

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the data file can be atomically
    replaced via ``os.replace`` without disturbing the lock handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place so a crash mid-write never leaves a
    partial file behind.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


# ---------------------------------------------------------------------------
# DeliveryStateStore
# ---------------------------------------------------------------------------


class DeliveryStateStore:
    """Filesystem store for one project's pipeline records.

    Everything lives under ``<project_dir>/<state_dir>/``. All writes are
    atomic; the pipeline state file is additionally guarded by an
    ``fcntl`` lock.
    """

    def __init__(self, project_dir: Path, state_dir: str = ".dcode") -> None:
        self.project_dir = project_dir
        self.state_dir = state_dir
        self.root = project_dir / state_dir
        self.reviews_dir = self.root / "reviews"

    # ------------------------------------------------------------------
    # Path properties
    # ------------------------------------------------------------------

    @property
    def state_path(self) -> Path:
        return self.root / "state.json"

    @property
    def plan_path(self) -> Path:
        return self.root / "plan.json"

    @property
    def risk_policy_path(self) -> Path:
        return self.root / "risk-policy.json"

    @property
    def deploy_result_path(self) -> Path:
        return self.root / "deploy-result.json"

    @property
    def retrospective_path(self) -> Path:
        return self.root / "retrospective.md"

    @property
    def stories_path(self) -> Path:
        return self.root / "stories.md"

    def epic_review_dir(self, epic_number: int) -> Path:
        return self.reviews_dir / f"epic-{epic_number}"

    def epic_plan_path(self, epic_number: int) -> Path:
        return self.root / "plans" / f"epic-{epic_number}.json"

    # ------------------------------------------------------------------
    # Pipeline state (locked)
    # ------------------------------------------------------------------

    def read_state(self) -> PipelineState:
        """Read pipeline state; a missing file yields the default IDLE state.

        Raises:
            ValueError: If the file is corrupt or fails validation.
        """
        if not self.state_path.is_file():
            return PipelineState()
        with _locked_file(self.state_path):
            text = _safe_read_json(self.state_path, "pipeline state")
            try:
                return PipelineState.model_validate_json(text)
            except ValidationError as exc:
                raise ValueError(f"pipeline state at {self.state_path} failed validation: {exc}") from exc

    def write_state(self, state: PipelineState) -> PipelineState:
        """Persist state under an exclusive lock, stamping ``updated_at``.

        Returns:
            The state exactly as written.
        """
        stamped = state.model_copy(update={"updated_at": utc_now_iso()})
        with _locked_file(self.state_path):
            atomic_write_text(self.state_path, stamped.model_dump_json(indent=2) + "\n")
        logger.debug("pipeline state saved: phase=%s epic=%d", stamped.phase.value, stamped.epic_number)
        return stamped

    # ------------------------------------------------------------------
    # Plan
    # ------------------------------------------------------------------

    def write_plan(self, plan: Plan, path: Path | None = None) -> Path:
        plan_path = path if path is not None else self.plan_path
        atomic_write_text(plan_path, plan.model_dump_json(indent=2) + "\n")
        return plan_path

    def read_plan(self, path: Path | None = None) -> Plan:
        plan_path = path if path is not None else self.plan_path
        text = _safe_read_json(plan_path, "plan")
        try:
            return Plan.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"plan at {plan_path} failed validation: {exc}") from exc

    # ------------------------------------------------------------------
    # Generic artifacts
    # ------------------------------------------------------------------

    def write_json(self, path: Path, payload: dict[str, Any]) -> Path:
        atomic_write_text(path, json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return path

    def write_text(self, path: Path, content: str) -> Path:
        atomic_write_text(path, content)
        return path

    def write_review_artifact(self, epic_number: int, name: str, content: str) -> Path:
        return self.write_text(self.epic_review_dir(epic_number) / name, content)
