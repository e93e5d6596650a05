"""Learning Kernel data models."""

from learning_kernel.models.agent import AgentRecord, AgentVersion, VersionStatus
from learning_kernel.models.approval import Approval, ApprovalDecision, ApprovalSource
from learning_kernel.models.config import LearningConfig
from learning_kernel.models.dataset import Dataset, SelectionCriteria
from learning_kernel.models.experiment import (
    ConfidenceInterval,
    Experiment,
    ExperimentMode,
    ExperimentStatus,
    GateDecision,
    GatingResult,
    GroupMetrics,
    TrafficSplit,
)
from learning_kernel.models.policy import (
    EffectiveConfig,
    LearningPolicy,
    PolicyAuditEntry,
    PolicyCheck,
)
from learning_kernel.models.proposal import (
    GuardrailChange,
    InstructionsChange,
    MemoryChange,
    ModelChange,
    Proposal,
    RiskTier,
    ToolChange,
)
from learning_kernel.models.run import AgentRun, RunStatus
from learning_kernel.models.session import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    LearningSession,
    SessionStatus,
    TransitionEvent,
    TriggerType,
)
from learning_kernel.models.signal import (
    Signal,
    SignalEvidence,
    SignalSeverity,
    SignalType,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AgentRecord",
    "AgentRun",
    "AgentVersion",
    "Approval",
    "ApprovalDecision",
    "ApprovalSource",
    "ConfidenceInterval",
    "Dataset",
    "EffectiveConfig",
    "Experiment",
    "ExperimentMode",
    "ExperimentStatus",
    "GateDecision",
    "GatingResult",
    "GroupMetrics",
    "GuardrailChange",
    "InstructionsChange",
    "LearningConfig",
    "LearningPolicy",
    "LearningSession",
    "MemoryChange",
    "ModelChange",
    "PolicyAuditEntry",
    "PolicyCheck",
    "Proposal",
    "RiskTier",
    "RunStatus",
    "SelectionCriteria",
    "SessionStatus",
    "Signal",
    "SignalEvidence",
    "SignalSeverity",
    "SignalType",
    "TERMINAL_STATUSES",
    "ToolChange",
    "TrafficSplit",
    "TransitionEvent",
    "TriggerType",
    "VersionStatus",
]
