from __future__ import annotations

import json
from pathlib import Path

import pytest

from dcode_delivery.bridge import MarkdownBridge
from dcode_delivery.collaborators import DeployOptions, PipelineContext, RunnerFactories
from dcode_delivery.models import (
    AgentResult,
    BuildOutcome,
    BuildResult,
    DeployResult,
    DeveloperProfile,
    FixResult,
    GeneratedFile,
    PipelinePhase,
    ReviewContext,
    ReviewFinding,
    ScaffoldResult,
    SignOffDecision,
    TestSuiteResult,
)
from dcode_delivery.retrospective import FileRetrospective
from dcode_delivery.runner import PipelineRunner
from dcode_delivery.settings import RuntimeSettings
from dcode_delivery.signoff import EpicSummary

TWO_EPICS = """\
## Epic 1: Foundation
**Goal:** Skeleton

### Story 1.1: Setup
As a developer, I want a skeleton.

## Epic 2: Accounts

### Story 2.1: Sign up
As a visitor, I want to register.
"""


class CountingScaffolder:
    def __init__(self) -> None:
        self.calls = 0

    def scaffold(self, profile: DeveloperProfile, project_dir: Path) -> ScaffoldResult:
        self.calls += 1
        return ScaffoldResult()


class PlanBuilder:
    """Marks the next story passed, or fails when told to."""

    def __init__(self, ctx: PipelineContext, fail: bool = False) -> None:
        self.store = ctx.store
        self.fail = fail
        self.calls = 0

    def run_one(self, project_dir: Path, plan_path: Path, model: str, epic_number: int) -> BuildResult:
        self.calls += 1
        plan = self.store.read_plan(plan_path)
        pending = [story for story in plan.stories if not story.passes]
        if not pending:
            return BuildResult(outcome=BuildOutcome.ALL_COMPLETE, all_complete=True)
        story = pending[0]
        if self.fail:
            return BuildResult(outcome=BuildOutcome.FAILED, story=story, error="compile error")
        story.passes = True
        self.store.write_plan(plan, plan_path)
        return BuildResult(outcome=BuildOutcome.PASSED, story=story, all_complete=len(pending) == 1)


class QuietAgent:
    def __init__(self, name: str) -> None:
        self.name = name

    def run(self, context: ReviewContext) -> AgentResult:
        return AgentResult(agent=self.name, success=True, report="clean")


class NoopFixer:
    def fix(self, finding: ReviewFinding, context: ReviewContext) -> FixResult:
        return FixResult(finding=finding, fixed=True)

    def commit(self, finding: ReviewFinding, context: ReviewContext) -> str | None:
        return None

    def revert(self, context: ReviewContext) -> None:
        pass


class PassingSuite:
    def run(self) -> TestSuiteResult:
        return TestSuiteResult(passed=True, output="")


class RejectingSource:
    def decide(self, summary: EpicSummary) -> SignOffDecision:
        return SignOffDecision.reject("Not yet")


class ScriptedDeployer:
    def __init__(self, result: DeployResult | Exception) -> None:
        self.result = result
        self.calls = 0

    def deploy(self, options: DeployOptions) -> DeployResult:
        self.calls += 1
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class Harness:
    def __init__(self) -> None:
        self.scaffolder = CountingScaffolder()
        self.review_calls = 0
        self.build_fails = False
        self.review_error: Exception | None = None
        self.deployer: ScriptedDeployer | None = None
        self.default_files: list = []

    def review_agents(self, ctx: PipelineContext, names: list[str]) -> dict:
        self.review_calls += 1
        if self.review_error is not None:
            raise self.review_error
        return {name: QuietAgent(name) for name in names}

    def factories(self) -> RunnerFactories:
        return RunnerFactories(
            bridge=lambda ctx: MarkdownBridge(),
            scaffolder=lambda ctx: self.scaffolder,
            builder=lambda ctx: PlanBuilder(ctx, fail=self.build_fails),
            review_agents=self.review_agents,
            fixer=lambda ctx: NoopFixer(),
            test_runner=lambda ctx: PassingSuite(),
            fix_cycle_agents=lambda ctx: None,
            approval_gate=lambda ctx, dispatcher: pytest.fail("approval gate should not be built"),
            sign_off_source=lambda ctx, dispatcher: RejectingSource(),
            deployer=lambda ctx: self.deployer,
            retrospective=lambda ctx: FileRetrospective(ctx.store, ctx.settings.memory_path()),
            changed_files=lambda ctx: [],
            default_files=self.default_files,
        )


def _runner(
    project_dir: Path,
    settings: RuntimeSettings,
    profile: DeveloperProfile | None,
    harness: Harness,
    *,
    autonomous: bool = True,
) -> PipelineRunner:
    return PipelineRunner(project_dir, settings, profile, harness.factories(), autonomous=autonomous)


def test_two_epics_run_to_completion(project_dir: Path, settings: RuntimeSettings, profile: DeveloperProfile) -> None:
    harness = Harness()
    runner = _runner(project_dir, settings, profile, harness)
    result = runner.run(TWO_EPICS)

    assert result.completed
    assert result.phase == PipelinePhase.COMPLETE
    assert result.epic_number == 2
    assert harness.scaffolder.calls == 1
    assert harness.review_calls == 2
    assert runner.store.stories_path.read_text(encoding="utf-8") == TWO_EPICS
    assert runner.store.epic_plan_path(1).is_file()
    assert runner.store.epic_plan_path(2).is_file()
    assert runner.store.retrospective_path.is_file()
    assert not runner.store.deploy_result_path.exists()


def test_build_failure_parks_at_building(project_dir: Path, settings: RuntimeSettings, profile: DeveloperProfile) -> None:
    harness = Harness()
    harness.build_fails = True
    runner = _runner(project_dir, settings, profile, harness)
    result = runner.run(TWO_EPICS)

    assert not result.completed
    assert result.phase == PipelinePhase.BUILDING
    assert result.error is not None and "compile error" in result.error
    assert harness.review_calls == 0
    assert runner.orchestrator.state.current_story == "1.1"


def test_review_failure_parks_at_reviewing(project_dir: Path, settings: RuntimeSettings, profile: DeveloperProfile) -> None:
    harness = Harness()
    harness.review_error = RuntimeError("model unavailable")
    result = _runner(project_dir, settings, profile, harness).run(TWO_EPICS)
    assert result.phase == PipelinePhase.REVIEWING
    assert result.epic_number == 1


def test_rejected_sign_off_parks_at_sign_off(project_dir: Path, settings: RuntimeSettings, profile: DeveloperProfile) -> None:
    result = _runner(project_dir, settings, profile, Harness(), autonomous=False).run(TWO_EPICS)
    assert not result.completed
    assert result.phase == PipelinePhase.SIGN_OFF
    assert result.error == "Epic 1 was not approved at sign-off"


def test_deploy_failure_is_recorded_and_run_completes(
    project_dir: Path, settings: RuntimeSettings, profile: DeveloperProfile
) -> None:
    harness = Harness()
    harness.deployer = ScriptedDeployer(
        DeployResult(success=False, provider="fly", error="auth failed", output="API_KEY=supersecretvalue123 rejected")
    )
    runner = _runner(project_dir, settings, profile, harness)
    result = runner.run(TWO_EPICS)

    assert result.completed
    assert harness.deployer.calls == 1
    record = json.loads(runner.store.deploy_result_path.read_text(encoding="utf-8"))
    assert record["success"] is False
    assert record["error"] == "auth failed"
    assert "supersecretvalue123" not in record["output"]


def test_deploy_exception_is_recorded(project_dir: Path, settings: RuntimeSettings, profile: DeveloperProfile) -> None:
    harness = Harness()
    harness.deployer = ScriptedDeployer(RuntimeError("network down"))
    runner = _runner(project_dir, settings, profile, harness)
    assert runner.run(TWO_EPICS).completed
    record = json.loads(runner.store.deploy_result_path.read_text(encoding="utf-8"))
    assert record["error"] == "network down"


def test_default_file_failure_only_warns(project_dir: Path, settings: RuntimeSettings, profile: DeveloperProfile) -> None:
    messages: list[str] = []
    harness = Harness()
    harness.default_files.append(lambda _profile: [GeneratedFile(filepath="../outside.txt", content="x")])
    runner = PipelineRunner(
        project_dir,
        settings,
        profile,
        harness.factories(),
        autonomous=True,
        on_progress=lambda _phase, message: messages.append(message),
    )
    assert runner.run(TWO_EPICS).completed
    assert any(message.startswith("Warning: failed to write ../outside.txt") for message in messages)


def test_scaffolding_requires_a_profile(project_dir: Path, settings: RuntimeSettings) -> None:
    result = _runner(project_dir, settings, None, Harness()).run(TWO_EPICS)
    assert not result.completed
    assert result.phase == PipelinePhase.IDLE


def test_resume_continues_from_saved_state(project_dir: Path, settings: RuntimeSettings, profile: DeveloperProfile) -> None:
    harness = Harness()
    harness.review_error = RuntimeError("flaky")
    first = _runner(project_dir, settings, profile, harness).run(TWO_EPICS)
    assert first.phase == PipelinePhase.REVIEWING

    harness.review_error = None
    resumed = _runner(project_dir, settings, profile, harness).run(resume=True)
    assert resumed.completed
    assert harness.scaffolder.calls == 1

    again = _runner(project_dir, settings, profile, harness).run(resume=True)
    assert again.completed


def test_resume_without_saved_stories_raises(project_dir: Path, settings: RuntimeSettings, profile: DeveloperProfile) -> None:
    with pytest.raises(FileNotFoundError):
        _runner(project_dir, settings, profile, Harness()).run(resume=True)
