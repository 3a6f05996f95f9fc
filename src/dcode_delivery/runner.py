"""Epic execution loop.

Per epic: bridge -> scaffold (first epic only) -> build -> review -> sign-off.
After the last epic: deploy (optional, non-fatal) -> retrospective -> complete.

Every phase delegate runs inside its own failure boundary. A failure is
logged with the phase and epic and ends the run with the state machine
parked at that phase, so ``--resume`` re-enters exactly there.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .collaborators import (
    Deployer,
    DeployOptions,
    PipelineContext,
    RetrospectiveOptions,
    RunnerFactories,
)
from .messaging import MessagingConfig, MessagingDispatcher, PipelineEvent
from .models import (
    BuildOutcome,
    DeployResult,
    DeveloperProfile,
    Epic,
    EpicBreakdown,
    PipelinePhase,
    ProjectMetadata,
)
from .orchestrator import PipelineOrchestrator
from .redaction import build_deploy_record
from .retrospective import memory_entries
from .review_loop import ReviewOutcome, run_adversarial_review
from .scaffolding import write_generated_file
from .settings import RuntimeSettings
from .signoff import run_epic_sign_off

logger = logging.getLogger(__name__)

RESUME_HINT = "Resume with: python -m dcode_delivery --resume"
BUILD_ATTEMPTS_PER_STORY = 3
_FINALIZATION_PHASES = frozenset({PipelinePhase.DEPLOYING, PipelinePhase.RETROSPECTIVE})

ProgressCallback = Callable[[str, str], None]


@dataclass(frozen=True)
class RunResult:
    completed: bool
    phase: PipelinePhase
    epic_number: int
    error: str | None = None


class PhaseHalt(Exception):
    """Internal signal: a phase failed and the run stops where it is."""


class PipelineRunner:
    def __init__(
        self,
        project_dir: Path,
        settings: RuntimeSettings,
        profile: DeveloperProfile | None,
        factories: RunnerFactories,
        *,
        autonomous: bool = False,
        on_progress: ProgressCallback | None = None,
        dispatcher: MessagingDispatcher | None = None,
    ) -> None:
        self.project_dir = project_dir
        self.settings = settings
        self.profile = profile
        self.factories = factories
        self.autonomous = autonomous
        self.on_progress = on_progress
        self.dispatcher = dispatcher or MessagingDispatcher(MessagingConfig())
        self.orchestrator = PipelineOrchestrator(project_dir, profile, state_dir=settings.state_dir)
        self.store = self.orchestrator.store
        self.context = PipelineContext(
            project_dir=project_dir,
            settings=settings,
            profile=profile,
            store=self.store,
        )
        self.bridge = factories.bridge(self.context)
        self._halt_error: str | None = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def project_name(self) -> str:
        return self.project_dir.resolve().name

    def _progress(self, phase: str, message: str) -> None:
        logger.info("[%s] %s", phase, message)
        if self.on_progress is not None:
            self.on_progress(phase, message)

    def _halt(self, phase: PipelinePhase, epic_number: int, exc: BaseException) -> PhaseHalt:
        self._halt_error = f"{phase.value} failed for epic {epic_number}: {exc}"
        logger.error("%s. %s", self._halt_error, RESUME_HINT)
        self.dispatcher.notify(PipelineEvent.ERROR, epic=epic_number, detail=str(exc))
        return PhaseHalt(self._halt_error)

    def _result(self) -> RunResult:
        state = self.orchestrator.state
        return RunResult(
            completed=state.phase == PipelinePhase.COMPLETE,
            phase=state.phase,
            epic_number=state.epic_number,
            error=self._halt_error,
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self, stories_text: str | None = None, *, resume: bool = False) -> RunResult:
        """Drive the pipeline over every epic in *stories_text*.

        With ``resume=True`` the persisted state decides where to re-enter and
        *stories_text* defaults to the copy saved by the original run.

        Raises:
            FileNotFoundError: Resuming without a saved or supplied breakdown.
            ValueError: If the breakdown cannot be parsed.
        """
        state = self.orchestrator.state
        if resume and state.phase == PipelinePhase.COMPLETE:
            self._progress("COMPLETE", "Pipeline already complete; nothing to resume.")
            return self._result()

        if stories_text is None:
            if not self.store.stories_path.is_file():
                raise FileNotFoundError(f"no story breakdown saved at {self.store.stories_path}")
            stories_text = self.store.stories_path.read_text(encoding="utf-8")
        breakdown = self.bridge.parse(stories_text)
        if not resume or not self.store.stories_path.is_file():
            self.store.write_text(self.store.stories_path, stories_text)

        self.dispatcher.start()
        try:
            if resume:
                self._progress(state.phase.value, self.orchestrator.format_resume_context())
            if not (resume and state.phase in _FINALIZATION_PHASES):
                start_at = state.epic_number if resume and state.epic_number > 0 else 0
                for epic in breakdown.epics:
                    if epic.number < start_at:
                        logger.info("skipping epic %d; completed in an earlier run", epic.number)
                        continue
                    if not self._run_epic(epic, breakdown):
                        return self._result()
            self._finalize(len(breakdown.epics))
        except PhaseHalt:
            return self._result()
        finally:
            self.dispatcher.stop()
        return self._result()

    # ------------------------------------------------------------------
    # Per-epic phases
    # ------------------------------------------------------------------

    def _run_epic(self, epic: Epic, breakdown: EpicBreakdown) -> bool:
        """Run one epic to sign-off. Returns False when the run must stop."""
        number = epic.number
        self._progress("BRIDGING", f"Starting epic {number}: {epic.name}")
        try:
            self.orchestrator.start_epic(number)
            self.orchestrator.transition(PipelinePhase.BRIDGING)
            metadata = ProjectMetadata(
                project=self.project_name,
                branch_name=f"epic-{number}",
                description=f"{epic.name}: {epic.goal}" if epic.goal else epic.name,
            )
            plan = self.bridge.convert(breakdown, number, metadata)
            plan_path = self.bridge.save(plan, self.store)
            self.orchestrator.set_last_completed_step("bridging")
        except Exception as exc:  # noqa: BLE001 - phase boundary
            raise self._halt(PipelinePhase.BRIDGING, number, exc) from exc

        if not self.orchestrator.state.scaffolding_complete:
            self._scaffold(number)

        self.orchestrator.advance()
        self.dispatcher.notify(PipelineEvent.BUILD_STARTED, epic=number)
        self._build(number, plan_path, len(plan.stories))
        self.dispatcher.notify(PipelineEvent.BUILD_COMPLETE, epic=number)

        outcome = self._review(number)
        return self._sign_off(number, outcome)

    def _scaffold(self, epic_number: int) -> None:
        if self.profile is None:
            raise self._halt(PipelinePhase.SCAFFOLDING, epic_number, RuntimeError("developer profile is required"))
        try:
            self.orchestrator.transition(PipelinePhase.SCAFFOLDING)
            self._progress("SCAFFOLDING", "Scaffolding project")
            self.factories.scaffolder(self.context).scaffold(self.profile, self.project_dir)
        except Exception as exc:  # noqa: BLE001 - phase boundary
            raise self._halt(PipelinePhase.SCAFFOLDING, epic_number, exc) from exc

        for generator in self.factories.default_files:
            for generated in generator(self.profile):
                try:
                    write_generated_file(self.project_dir, generated)
                except (OSError, ValueError) as exc:
                    self._progress("SCAFFOLDING", f"Warning: failed to write {generated.filepath}: {exc}")
                    logger.warning("failed to write default file %s: %s", generated.filepath, exc)
        self.orchestrator.complete_scaffolding()
        self.orchestrator.set_last_completed_step("scaffolding")

    def _build(self, epic_number: int, plan_path: Path, story_count: int) -> None:
        try:
            builder = self.factories.builder(self.context)
            for attempt in range(1, BUILD_ATTEMPTS_PER_STORY * story_count + 1):
                result = builder.run_one(self.project_dir, plan_path, self.settings.model_build, epic_number)
                if result.story is not None:
                    self.orchestrator.set_current_story(result.story.id)
                if result.outcome == BuildOutcome.FAILED:
                    raise RuntimeError(result.error or f"build iteration {attempt} failed")
                if result.outcome == BuildOutcome.NO_STORIES:
                    self._progress("BUILDING", "No stories to build")
                    break
                if result.outcome == BuildOutcome.ALL_COMPLETE or result.all_complete:
                    self._progress("BUILDING", "All stories complete")
                    break
                self._progress("BUILDING", f"Story {result.story.id if result.story else '?'} passed")
            if plan_path.is_file():
                self.store.write_plan(self.store.read_plan(plan_path), self.store.epic_plan_path(epic_number))
            self.orchestrator.set_last_completed_step("building")
        except Exception as exc:  # noqa: BLE001 - phase boundary
            raise self._halt(PipelinePhase.BUILDING, epic_number, exc) from exc

    def _review(self, epic_number: int) -> ReviewOutcome:
        try:
            self.orchestrator.transition(PipelinePhase.REVIEWING)
            gate_factory = None
            if not self.autonomous:
                gate_factory = lambda: self.factories.approval_gate(self.context, self.dispatcher)  # noqa: E731
            outcome = run_adversarial_review(
                store=self.store,
                settings=self.settings,
                epic_number=epic_number,
                project_name=self.project_name,
                changed_files=self.factories.changed_files(self.context),
                agent_factory=lambda names: self.factories.review_agents(self.context, names),
                fixer=self.factories.fixer(self.context),
                test_runner=self.factories.test_runner(self.context),
                gate_factory=gate_factory,
                on_progress=lambda iteration, step, message: self._progress(
                    "REVIEWING", f"[iteration {iteration}] {step}: {message}"
                ),
            )
            self.orchestrator.set_last_completed_step("reviewing")
        except Exception as exc:  # noqa: BLE001 - phase boundary
            raise self._halt(PipelinePhase.REVIEWING, epic_number, exc) from exc
        self.dispatcher.notify(
            PipelineEvent.REVIEW_COMPLETE,
            epic=epic_number,
            detail=f"{outcome.loop_result.exit_reason}, {len(outcome.loop_result.unresolved_findings)} unresolved",
        )
        return outcome

    def _sign_off(self, epic_number: int, outcome: ReviewOutcome) -> bool:
        try:
            self.orchestrator.transition(PipelinePhase.SIGN_OFF)
            source = None if self.autonomous else self.factories.sign_off_source(self.context, self.dispatcher)
            result = run_epic_sign_off(
                store=self.store,
                epic_number=epic_number,
                review=outcome.review,
                autonomous=self.autonomous,
                source=source,
                fix_agents=None if self.autonomous else self.factories.fix_cycle_agents(self.context),
                max_rejection_cycles=self.settings.rejection_cap,
                changed_files=self.factories.changed_files(self.context),
            )
        except Exception as exc:  # noqa: BLE001 - phase boundary
            raise self._halt(PipelinePhase.SIGN_OFF, epic_number, exc) from exc

        if not result.approved:
            self._halt_error = f"Epic {epic_number} was not approved at sign-off"
            logger.error("%s. %s", self._halt_error, RESUME_HINT)
            return False
        self.orchestrator.set_last_completed_step("sign-off")
        self._progress("SIGN_OFF", f"Epic {epic_number} approved after {result.rejection_cycles} rejection cycles")
        self.dispatcher.notify(PipelineEvent.EPIC_COMPLETE, epic=epic_number)
        return True

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _finalize(self, total_epics: int) -> None:
        phase = self.orchestrator.phase
        epic_number = self.orchestrator.state.epic_number
        deployer = self.factories.deployer(self.context)

        if phase == PipelinePhase.SIGN_OFF and deployer is not None:
            self.orchestrator.transition(PipelinePhase.DEPLOYING)
            phase = PipelinePhase.DEPLOYING
        if phase == PipelinePhase.DEPLOYING and deployer is not None:
            self._deploy(deployer, epic_number)

        if self.orchestrator.phase != PipelinePhase.RETROSPECTIVE:
            self.orchestrator.transition(PipelinePhase.RETROSPECTIVE)
        try:
            retrospective = self.factories.retrospective(self.context)
            data = retrospective.analyze(
                RetrospectiveOptions(
                    project_dir=self.project_dir,
                    project_name=self.project_name,
                    total_epics=total_epics,
                )
            )
            report_path = retrospective.report(data)
            retrospective.save_memory(memory_entries(data))
        except Exception as exc:  # noqa: BLE001 - phase boundary
            raise self._halt(PipelinePhase.RETROSPECTIVE, epic_number, exc) from exc
        self.dispatcher.notify(PipelineEvent.RETROSPECTIVE_COMPLETE, epic=epic_number, detail=str(report_path))
        self.orchestrator.transition(PipelinePhase.COMPLETE)
        self._progress("COMPLETE", "Pipeline complete")

    def _deploy(self, deployer: Deployer, epic_number: int) -> None:
        """Deploy once; any failure is recorded and the run continues."""
        self._progress("DEPLOYING", "Deploying")
        self.dispatcher.notify(PipelineEvent.DEPLOYMENT_STARTED)
        provider = self.profile.cloud_provider if self.profile is not None else "none"
        try:
            result = deployer.deploy(
                DeployOptions(project_dir=self.project_dir, provider=provider, project_name=self.project_name)
            )
        except Exception as exc:  # noqa: BLE001 - deployment failure is non-fatal
            logger.warning("deployment raised for epic %d: %s", epic_number, exc)
            result = DeployResult(success=False, provider=provider, error=str(exc))

        try:
            self.store.write_json(self.store.deploy_result_path, build_deploy_record(result))
        except OSError as exc:
            logger.warning("could not save deploy result: %s", exc)
        if result.success:
            self.dispatcher.notify(PipelineEvent.DEPLOYMENT_COMPLETE, detail=result.url)
        else:
            logger.warning("deployment failed: %s", result.error)
            self.dispatcher.notify(PipelineEvent.DEPLOYMENT_FAILED, detail=result.error)
