from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Pipeline state
# ---------------------------------------------------------------------------


class PipelinePhase(str, Enum):
    IDLE = "IDLE"
    PLANNING = "PLANNING"
    BRIDGING = "BRIDGING"
    SCAFFOLDING = "SCAFFOLDING"
    BUILDING = "BUILDING"
    REVIEWING = "REVIEWING"
    SIGN_OFF = "SIGN_OFF"
    DEPLOYING = "DEPLOYING"
    RETROSPECTIVE = "RETROSPECTIVE"
    COMPLETE = "COMPLETE"


PHASE_SEQUENCE: tuple[PipelinePhase, ...] = (
    PipelinePhase.IDLE,
    PipelinePhase.PLANNING,
    PipelinePhase.BRIDGING,
    PipelinePhase.SCAFFOLDING,
    PipelinePhase.BUILDING,
    PipelinePhase.REVIEWING,
    PipelinePhase.SIGN_OFF,
    PipelinePhase.DEPLOYING,
    PipelinePhase.RETROSPECTIVE,
    PipelinePhase.COMPLETE,
)


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class PipelineState(BaseModel):
    """Durable pipeline record, one per project directory."""

    model_config = ConfigDict(extra="ignore")

    phase: PipelinePhase = PipelinePhase.IDLE
    epic_number: int = Field(default=0, ge=0)
    current_story: str | None = None
    last_completed_step: str | None = None
    scaffolding_complete: bool = False
    updated_at: str | None = None


class DeveloperProfile(BaseModel):
    """Developer preferences. Read-only to the pipeline."""

    model_config = ConfigDict(extra="ignore")

    name: str
    languages: list[str] = Field(default_factory=list)
    frontend_framework: str = "none"
    backend_framework: str = "none"
    database: str = "none"
    cloud_provider: str = "none"
    package_manager: str = "pip"
    test_runner: str = "pytest"
    ai_model: str = ""
    autonomous_by_default: bool = False
    notification_channel: Literal["telegram", "none"] = "none"
    telegram_chat_id: str | None = None
    telegram_bot_token: str | None = None
    notification_timeout: int = Field(default=300, ge=0)


# ---------------------------------------------------------------------------
# Findings and agent results
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


# Lower rank = more severe.
SEVERITY_RANK: dict[Severity, int] = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
    Severity.INFO: 4,
}


def meets_severity(severity: Severity, minimum: Severity) -> bool:
    """Return True when *severity* is at or above *minimum* (inclusive)."""
    return SEVERITY_RANK[severity] <= SEVERITY_RANK[minimum]


class ReviewFinding(BaseModel):
    id: str = ""
    title: str
    severity: Severity
    file: str | None = None
    description: str = ""
    source: str = ""


@dataclass(frozen=True)
class AgentResult:
    agent: str
    success: bool
    report: str
    findings: list[ReviewFinding] = field(default_factory=list)
    blocking_issues: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TestSuiteResult:
    __test__ = False

    passed: bool
    output: str


@dataclass(frozen=True)
class FixResult:
    finding: ReviewFinding
    fixed: bool
    error: str | None = None
    attempts: int = 1
    reverted: bool = False


@dataclass
class ReviewPhaseResult:
    """Review outcome handed to sign-off; the fix cycle updates it in place."""

    epic_number: int
    parallel_results: list[AgentResult] = field(default_factory=list)
    refactoring_result: AgentResult | None = None
    test_hardening_result: AgentResult | None = None
    test_suite_result: TestSuiteResult | None = None
    security_result: AgentResult | None = None
    qa_result: AgentResult | None = None
    can_advance: bool = True
    blocking_issues: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ReviewContext:
    """Read-only context handed to review agents and fix agents."""

    project_dir: str
    epic_number: int
    review_dir: str
    changed_files: list[str] = field(default_factory=list)
    rules_prompt: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Risk policy
# ---------------------------------------------------------------------------


class RiskTier(BaseModel):
    paths: list[str] = Field(default_factory=list)
    max_iterations: int = Field(default=3, ge=1)
    min_fix_severity: Severity = Severity.HIGH
    agents: list[str] = Field(default_factory=lambda: ["code-quality", "test-coverage", "security"])
    require_approval: bool = False


class RiskPolicy(BaseModel):
    """Named tiers, ordered from highest risk to lowest."""

    version: str = "1"
    tiers: dict[str, RiskTier]


@dataclass(frozen=True)
class ResolvedRiskTier:
    name: str
    tier: RiskTier


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SignOffDecision:
    action: Literal["approve", "reject"]
    feedback: str = ""

    @classmethod
    def approve(cls) -> "SignOffDecision":
        return cls(action="approve")

    @classmethod
    def reject(cls, feedback: str) -> "SignOffDecision":
        return cls(action="reject", feedback=feedback)

    @property
    def approved(self) -> bool:
        return self.action == "approve"


# Approval-gate decisions share the sign-off shape.
ApprovalDecision = SignOffDecision


# ---------------------------------------------------------------------------
# Planning artifacts
# ---------------------------------------------------------------------------


@dataclass
class Story:
    story_id: str
    title: str
    user_story: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    prerequisites: list[str] = field(default_factory=list)
    technical_notes: list[str] = field(default_factory=list)


@dataclass
class Epic:
    number: int
    name: str
    goal: str = ""
    scope: str = ""
    stories: list[Story] = field(default_factory=list)


@dataclass
class EpicBreakdown:
    epics: list[Epic]

    @property
    def all_stories(self) -> list[Story]:
        return [story for epic in self.epics for story in epic.stories]


@dataclass(frozen=True)
class ProjectMetadata:
    project: str
    branch_name: str
    description: str


class PlanStory(BaseModel):
    id: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    priority: int = 1
    passes: bool = False
    notes: str | None = None


class Plan(BaseModel):
    """Scoped, buildable plan for one epic."""

    project: str
    branch_name: str
    description: str
    epic_number: int
    stories: list[PlanStory] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Collaborator results
# ---------------------------------------------------------------------------


class BuildOutcome(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    NO_STORIES = "no-stories"
    ALL_COMPLETE = "all-complete"


@dataclass(frozen=True)
class BuildResult:
    outcome: BuildOutcome
    all_complete: bool = False
    story: PlanStory | None = None
    error: str | None = None


@dataclass(frozen=True)
class GeneratedFile:
    filepath: str
    content: str


@dataclass(frozen=True)
class ScaffoldResult:
    directories: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DeployResult:
    success: bool
    provider: str
    url: str | None = None
    error: str | None = None
    output: str = ""


@dataclass(frozen=True)
class RetrospectiveData:
    project_name: str
    total_epics: int
    stories_total: int = 0
    stories_passed: int = 0
    review_iterations: int = 0
    findings_by_severity: dict[str, int] = field(default_factory=dict)
    recurring_findings: list[str] = field(default_factory=list)
    generated_at: str = field(default_factory=utc_now_iso)


class ReviewRule(BaseModel):
    key: str
    description: str
    severity: Severity
    source_agent: str
    times_seen: int = 1
    projects: list[str] = Field(default_factory=list)
    first_seen: str
    last_seen: str
