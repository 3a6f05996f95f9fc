"""Concrete collaborator wiring used by the CLI."""

from __future__ import annotations

from .agents import DeepAgentFixer, DeepAgentStoryBuilder, DeepAgentTask, LLMReviewAgent
from .approval import ApprovalGate, InteractiveApprovalGate, MessagingApprovalGate
from .bridge import MarkdownBridge
from .collaborators import Deployer, PipelineContext, ReviewAgent, RunnerFactories
from .commands import CommandCheckAgent, CommandDeployer, CommandTestRunner, git_changed_files
from .messaging import MessagingDispatcher
from .retrospective import FileRetrospective
from .sandbox import create_policy
from .scaffolding import ProfileScaffolder, default_generators
from .signoff import FixCycleAgents, InteractiveSignOff, MessagingSignOff, SignOffSource

TEST_HARDENING_INSTRUCTIONS = (
    "Strengthen the test suite for the changed files: add tests for untested branches and edge cases, "
    "remove assertions that cannot fail, and keep every test passing. Do not change production code."
)


def _test_runner(ctx: PipelineContext) -> CommandTestRunner:
    return CommandTestRunner(
        ctx.project_dir,
        ctx.settings.test_argv,
        timeout=ctx.settings.test_timeout,
        policy=create_policy(ctx.project_dir),
    )


def _fixer(ctx: PipelineContext) -> DeepAgentFixer:
    return DeepAgentFixer(
        model_name=ctx.settings.model_fix,
        project_dir=ctx.project_dir,
        state_dir=ctx.settings.state_dir,
        policy=create_policy(ctx.project_dir),
        status_timeout=ctx.settings.status_timeout,
        recursion_limit=ctx.settings.recursion_limit,
    )


def _builder(ctx: PipelineContext) -> DeepAgentStoryBuilder:
    return DeepAgentStoryBuilder(
        store=ctx.store,
        test_runner=_test_runner(ctx),
        recursion_limit=ctx.settings.recursion_limit,
        policy=create_policy(ctx.project_dir),
        status_timeout=ctx.settings.status_timeout,
    )


def _review_agents(ctx: PipelineContext, names: list[str]) -> dict[str, ReviewAgent]:
    return {name: LLMReviewAgent(name, model_name=ctx.settings.model_review) for name in names}


def _fix_cycle_agents(ctx: PipelineContext) -> FixCycleAgents:
    return FixCycleAgents(
        refactoring=_fixer(ctx),
        test_hardener=DeepAgentTask(
            "test-hardening",
            TEST_HARDENING_INSTRUCTIONS,
            model_name=ctx.settings.model_fix,
            project_dir=ctx.project_dir,
            state_dir=ctx.settings.state_dir,
            recursion_limit=ctx.settings.recursion_limit,
        ),
        test_runner=_test_runner(ctx),
        security=LLMReviewAgent("security", model_name=ctx.settings.model_review),
        qa=CommandCheckAgent(
            "qa-smoke",
            ctx.settings.smoke_argv,
            timeout=ctx.settings.test_timeout,
            policy=create_policy(ctx.project_dir),
        ),
    )


def _approval_gate(ctx: PipelineContext, dispatcher: MessagingDispatcher) -> ApprovalGate:
    return MessagingApprovalGate(dispatcher) if dispatcher.active else InteractiveApprovalGate()


def _sign_off_source(ctx: PipelineContext, dispatcher: MessagingDispatcher) -> SignOffSource:
    return MessagingSignOff(dispatcher) if dispatcher.active else InteractiveSignOff()


def _deployer(ctx: PipelineContext) -> Deployer | None:
    if not ctx.settings.deploy_argv:
        return None
    return CommandDeployer(
        ctx.settings.deploy_argv,
        timeout=ctx.settings.deploy_timeout,
        policy=create_policy(ctx.project_dir),
    )


def _retrospective(ctx: PipelineContext) -> FileRetrospective:
    return FileRetrospective(ctx.store, ctx.settings.memory_path())


def _changed_files(ctx: PipelineContext) -> list[str]:
    return git_changed_files(
        ctx.project_dir,
        ctx.settings.base_branch,
        timeout=ctx.settings.status_timeout,
        policy=create_policy(ctx.project_dir),
    )


def default_factories(state_dir: str = ".dcode") -> RunnerFactories:
    return RunnerFactories(
        bridge=lambda ctx: MarkdownBridge(),
        scaffolder=lambda ctx: ProfileScaffolder(ctx.settings.state_dir),
        builder=_builder,
        review_agents=_review_agents,
        fixer=_fixer,
        test_runner=_test_runner,
        fix_cycle_agents=_fix_cycle_agents,
        approval_gate=_approval_gate,
        sign_off_source=_sign_off_source,
        deployer=_deployer,
        retrospective=_retrospective,
        changed_files=_changed_files,
        default_files=default_generators(state_dir),
    )
