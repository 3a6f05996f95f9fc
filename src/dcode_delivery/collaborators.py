"""Capability interfaces for everything the pipeline delegates.

The runner never constructs collaborators directly; it asks the
``RunnerFactories`` it was given, so tests substitute in-process fakes and
the CLI wires in the concrete implementations from ``defaults``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Protocol

from .models import (
    AgentResult,
    BuildResult,
    DeployResult,
    DeveloperProfile,
    EpicBreakdown,
    FixResult,
    GeneratedFile,
    Plan,
    ProjectMetadata,
    RetrospectiveData,
    ReviewContext,
    ReviewFinding,
    ScaffoldResult,
    TestSuiteResult,
)
from .settings import RuntimeSettings
from .state_store import DeliveryStateStore

if TYPE_CHECKING:
    from .approval import ApprovalGate
    from .messaging import MessagingDispatcher
    from .signoff import FixCycleAgents, SignOffSource


class Bridge(Protocol):
    def parse(self, plan_text: str) -> EpicBreakdown: ...

    def convert(self, breakdown: EpicBreakdown, epic_number: int, metadata: ProjectMetadata) -> Plan: ...

    def save(self, plan: Plan, store: DeliveryStateStore) -> Path: ...


class Scaffolder(Protocol):
    def scaffold(self, profile: DeveloperProfile, project_dir: Path) -> ScaffoldResult: ...


DefaultFileGenerator = Callable[[DeveloperProfile], list[GeneratedFile]]


class StoryBuilder(Protocol):
    def run_one(self, project_dir: Path, plan_path: Path, model: str, epic_number: int) -> BuildResult: ...


class ReviewAgent(Protocol):
    name: str

    def run(self, context: ReviewContext) -> AgentResult: ...


class Fixer(Protocol):
    def fix(self, finding: ReviewFinding, context: ReviewContext) -> FixResult: ...

    def commit(self, finding: ReviewFinding, context: ReviewContext) -> str | None: ...

    def revert(self, context: ReviewContext) -> None: ...


class SuiteRunner(Protocol):
    def run(self) -> TestSuiteResult: ...


@dataclass(frozen=True)
class DeployOptions:
    project_dir: Path
    provider: str
    project_name: str


class Deployer(Protocol):
    def deploy(self, options: DeployOptions) -> DeployResult: ...


@dataclass(frozen=True)
class RetrospectiveOptions:
    project_dir: Path
    project_name: str
    total_epics: int


@dataclass(frozen=True)
class MemoryEntry:
    category: str
    content: str
    project: str


class Retrospective(Protocol):
    def analyze(self, options: RetrospectiveOptions) -> RetrospectiveData: ...

    def report(self, data: RetrospectiveData) -> Path: ...

    def save_memory(self, entries: list[MemoryEntry]) -> Path: ...


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PipelineContext:
    """Everything a factory may need to build a collaborator for one run."""

    project_dir: Path
    settings: RuntimeSettings
    profile: DeveloperProfile | None
    store: DeliveryStateStore


@dataclass
class RunnerFactories:
    bridge: Callable[[PipelineContext], Bridge]
    scaffolder: Callable[[PipelineContext], Scaffolder]
    builder: Callable[[PipelineContext], StoryBuilder]
    review_agents: Callable[[PipelineContext, list[str]], dict[str, ReviewAgent]]
    fixer: Callable[[PipelineContext], Fixer]
    test_runner: Callable[[PipelineContext], SuiteRunner]
    fix_cycle_agents: Callable[[PipelineContext], FixCycleAgents | None]
    approval_gate: Callable[[PipelineContext, MessagingDispatcher], ApprovalGate]
    sign_off_source: Callable[[PipelineContext, MessagingDispatcher], SignOffSource]
    deployer: Callable[[PipelineContext], Deployer | None]
    retrospective: Callable[[PipelineContext], Retrospective]
    changed_files: Callable[[PipelineContext], list[str]]
    default_files: list[DefaultFileGenerator] = field(default_factory=list)
