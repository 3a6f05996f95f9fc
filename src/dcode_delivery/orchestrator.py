"""Phase state machine for the delivery pipeline.

One ``PipelineOrchestrator`` owns the state of one project directory. Every
mutation is persisted synchronously, so a fresh orchestrator constructed
against the same directory reconstructs identical state and the runner can
resume from the persisted phase.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .models import PHASE_SEQUENCE, DeveloperProfile, PipelinePhase, PipelineState
from .state_store import DeliveryStateStore

logger = logging.getLogger(__name__)


class PipelineStateError(RuntimeError):
    """Base class for precondition failures raised by the orchestrator."""


class InvalidTransitionError(PipelineStateError):
    def __init__(self, current: PipelinePhase, target: PipelinePhase, detail: str = "") -> None:
        self.current = current
        self.target = target
        message = f"Invalid transition: {current.value} -> {target.value}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ProfileRequiredError(PipelineStateError):
    def __init__(self, current: PipelinePhase, target: PipelinePhase) -> None:
        self.current = current
        self.target = target
        super().__init__(
            f"A developer profile is required to move from {current.value} to {target.value}. "
            "Create ~/.dcode/profile.json or pass --profile."
        )


class ScaffoldingCompleteError(PipelineStateError):
    def __init__(self) -> None:
        super().__init__("SCAFFOLDING already complete for this project; it only runs for the first epic")


class PipelineCompleteError(PipelineStateError):
    def __init__(self) -> None:
        super().__init__("Pipeline is already COMPLETE; start a new epic or reset before advancing")


# Strict linear sequence with two skips: scaffolding runs once per project
# and deployment is optional.
VALID_TRANSITIONS: dict[PipelinePhase, frozenset[PipelinePhase]] = {
    PipelinePhase.IDLE: frozenset({PipelinePhase.PLANNING, PipelinePhase.BRIDGING}),
    PipelinePhase.PLANNING: frozenset({PipelinePhase.BRIDGING}),
    PipelinePhase.BRIDGING: frozenset({PipelinePhase.SCAFFOLDING, PipelinePhase.BUILDING}),
    PipelinePhase.SCAFFOLDING: frozenset({PipelinePhase.BUILDING}),
    PipelinePhase.BUILDING: frozenset({PipelinePhase.REVIEWING}),
    PipelinePhase.REVIEWING: frozenset({PipelinePhase.SIGN_OFF}),
    PipelinePhase.SIGN_OFF: frozenset({PipelinePhase.DEPLOYING, PipelinePhase.RETROSPECTIVE}),
    PipelinePhase.DEPLOYING: frozenset({PipelinePhase.RETROSPECTIVE}),
    PipelinePhase.RETROSPECTIVE: frozenset({PipelinePhase.COMPLETE}),
    PipelinePhase.COMPLETE: frozenset(),
}

PROFILE_REQUIRED_FROM: frozenset[PipelinePhase] = frozenset({PipelinePhase.IDLE, PipelinePhase.PLANNING})


def is_valid_transition(current: PipelinePhase, target: PipelinePhase) -> bool:
    return target in VALID_TRANSITIONS[current]


class PipelineOrchestrator:
    """Holds the canonical phase, epic, story, and scaffolding flag for a project."""

    def __init__(
        self,
        project_dir: Path,
        profile: DeveloperProfile | None = None,
        *,
        state_dir: str = ".dcode",
    ) -> None:
        self.project_dir = project_dir
        self.profile = profile
        self.store = DeliveryStateStore(project_dir, state_dir)
        self._state = self.store.read_state()

    @property
    def state(self) -> PipelineState:
        """Return a copy of the current state."""
        return self._state.model_copy(deep=True)

    @property
    def phase(self) -> PipelinePhase:
        return self._state.phase

    def _save(self, state: PipelineState) -> None:
        self._state = self.store.write_state(state)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _check_transition(self, target: PipelinePhase) -> None:
        current = self._state.phase
        if target == PipelinePhase.SCAFFOLDING and self._state.scaffolding_complete:
            raise ScaffoldingCompleteError()
        if not is_valid_transition(current, target):
            raise InvalidTransitionError(current, target)
        if (
            current == PipelinePhase.BRIDGING
            and target == PipelinePhase.BUILDING
            and not self._state.scaffolding_complete
        ):
            raise InvalidTransitionError(current, target, "scaffolding has not completed yet")
        if current in PROFILE_REQUIRED_FROM and self.profile is None:
            raise ProfileRequiredError(current, target)

    def transition(self, target: PipelinePhase) -> PipelineState:
        """Move to *target* after validating the edge; persists on success.

        Raises:
            ScaffoldingCompleteError: Re-entering SCAFFOLDING after it completed.
            InvalidTransitionError: The edge is not in the transition table.
            ProfileRequiredError: The edge requires a profile and none is loaded.
        """
        target = PipelinePhase(target)
        self._check_transition(target)
        previous = self._state.phase
        self._save(self._state.model_copy(update={"phase": target}))
        logger.info("phase transition: %s -> %s (epic %d)", previous.value, target.value, self._state.epic_number)
        return self.state

    def advance(self) -> PipelineState:
        """Move to the next phase in the canonical sequence.

        SCAFFOLDING is skipped when scaffolding already completed.

        Raises:
            PipelineCompleteError: Called while already COMPLETE.
        """
        current = self._state.phase
        if current == PipelinePhase.COMPLETE:
            raise PipelineCompleteError()
        index = PHASE_SEQUENCE.index(current) + 1
        target = PHASE_SEQUENCE[index]
        if target == PipelinePhase.SCAFFOLDING and self._state.scaffolding_complete:
            target = PHASE_SEQUENCE[index + 1]
        return self.transition(target)

    # ------------------------------------------------------------------
    # Epic and progress bookkeeping
    # ------------------------------------------------------------------

    def start_epic(self, epic_number: int) -> PipelineState:
        if epic_number < 1:
            raise ValueError(f"epic_number must be >= 1, got: {epic_number}")
        self._save(
            self._state.model_copy(
                update={
                    "phase": PipelinePhase.IDLE,
                    "epic_number": epic_number,
                    "current_story": None,
                    "last_completed_step": None,
                }
            )
        )
        logger.info("started epic %d", epic_number)
        return self.state

    def complete_scaffolding(self) -> PipelineState:
        self._save(self._state.model_copy(update={"scaffolding_complete": True}))
        return self.state

    def set_current_story(self, story_id: str | None) -> PipelineState:
        self._save(self._state.model_copy(update={"current_story": story_id}))
        return self.state

    def set_last_completed_step(self, marker: str | None) -> PipelineState:
        self._save(self._state.model_copy(update={"last_completed_step": marker}))
        return self.state

    def reset(self) -> PipelineState:
        self._save(PipelineState())
        logger.info("pipeline state reset for %s", self.project_dir)
        return self.state

    # ------------------------------------------------------------------
    # Human-readable views
    # ------------------------------------------------------------------

    def format_status(self) -> str:
        state = self._state
        if state.phase == PipelinePhase.IDLE and state.epic_number == 0:
            return "No active pipeline."
        lines = [
            f"Phase: {state.phase.value}",
            f"Epic: {state.epic_number}",
        ]
        if state.current_story:
            lines.append(f"Story: {state.current_story}")
        if state.last_completed_step:
            lines.append(f"Last step: {state.last_completed_step}")
        lines.append(f"Scaffolding: {'complete' if state.scaffolding_complete else 'pending'}")
        if state.updated_at:
            lines.append(f"Updated: {state.updated_at}")
        return "\n".join(lines)

    def format_resume_context(self) -> str:
        state = self._state
        lines = [
            "Resuming interrupted pipeline run.",
            f"Phase at interruption: {state.phase.value}",
            f"Epic: {state.epic_number}",
        ]
        if state.current_story:
            lines.append(f"Story in progress: {state.current_story}")
        if state.last_completed_step:
            lines.append(f"Last completed step: {state.last_completed_step}")
        return "\n".join(lines)
