from importlib.metadata import version

from .approval import ApprovalGate, DecisionCancelled, InteractiveApprovalGate, MessagingApprovalGate
from .collaborators import PipelineContext, RunnerFactories
from .defaults import default_factories
from .models import (
    AgentResult,
    DeveloperProfile,
    FixResult,
    PipelinePhase,
    PipelineState,
    Plan,
    ReviewFinding,
    RiskPolicy,
    RiskTier,
    Severity,
    SignOffDecision,
)
from .orchestrator import (
    InvalidTransitionError,
    PipelineCompleteError,
    PipelineOrchestrator,
    PipelineStateError,
    ProfileRequiredError,
    ScaffoldingCompleteError,
)
from .review_loop import AdversarialLoopResult, AdversarialReviewLoop, run_adversarial_review
from .risk_policy import load_risk_policy, resolve_risk_tier
from .runner import PipelineRunner, RunResult
from .sandbox import PolicyViolation
from .settings import RuntimeSettings, load_profile
from .signoff import SignOffResult, run_epic_sign_off


def get_version() -> str:
    try:
        return version("dcode-delivery")
    except Exception:
        return "0.0.0"


__all__ = [
    "AdversarialLoopResult",
    "AdversarialReviewLoop",
    "AgentResult",
    "ApprovalGate",
    "DecisionCancelled",
    "DeveloperProfile",
    "FixResult",
    "InteractiveApprovalGate",
    "InvalidTransitionError",
    "MessagingApprovalGate",
    "PipelineCompleteError",
    "PipelineContext",
    "PipelineOrchestrator",
    "PipelinePhase",
    "PipelineRunner",
    "PipelineState",
    "PipelineStateError",
    "Plan",
    "PolicyViolation",
    "ProfileRequiredError",
    "ReviewFinding",
    "RiskPolicy",
    "RiskTier",
    "RunResult",
    "RunnerFactories",
    "RuntimeSettings",
    "ScaffoldingCompleteError",
    "Severity",
    "SignOffDecision",
    "SignOffResult",
    "default_factories",
    "get_version",
    "load_profile",
    "load_risk_policy",
    "resolve_risk_tier",
    "run_adversarial_review",
    "run_epic_sign_off",
]
