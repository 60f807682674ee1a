from warden.budget import ContextBudgetTracker
from warden.classifier import TaskClassifier
from warden.config import ConfigurationError, WardenConfig, load_config
from warden.models import (
    ActionRecord,
    AgentProfile,
    Artifact,
    Decision,
    GitAction,
    GitActionKind,
    RejectionReason,
    RunStatus,
    Task,
    TDDState,
    WorkflowRun,
)
from warden.orchestrator import RunBusyError, WorkflowOrchestrator
from warden.policy import ArtifactConventionValidator, ConventionRuleSet, GitSafetyGuard
from warden.tdd import Evidence, EvidenceKind, TDDStateMachine, TransitionOutcome

__version__ = "0.1.0"

__all__ = [
    "ActionRecord",
    "AgentProfile",
    "Artifact",
    "ArtifactConventionValidator",
    "ConfigurationError",
    "ContextBudgetTracker",
    "ConventionRuleSet",
    "Decision",
    "Evidence",
    "EvidenceKind",
    "GitAction",
    "GitActionKind",
    "GitSafetyGuard",
    "RejectionReason",
    "RunBusyError",
    "RunStatus",
    "TDDState",
    "TDDStateMachine",
    "Task",
    "TaskClassifier",
    "TransitionOutcome",
    "WardenConfig",
    "WorkflowOrchestrator",
    "WorkflowRun",
    "__version__",
    "load_config",
]
