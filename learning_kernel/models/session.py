"""Learning Session — one closed-loop improvement cycle for one agent."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import Field

from learning_kernel.models.base import LearningModel


class SessionStatus(str, Enum):
    COLLECTING = "COLLECTING"
    ANALYZING = "ANALYZING"
    PROPOSING = "PROPOSING"
    TESTING = "TESTING"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    APPROVED = "APPROVED"
    PROMOTED = "PROMOTED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    THRESHOLD = "threshold"


TERMINAL_STATUSES = frozenset({
    SessionStatus.PROMOTED,
    SessionStatus.REJECTED,
    SessionStatus.FAILED,
    SessionStatus.CANCELLED,
})

_ABORT_EDGES = {SessionStatus.FAILED, SessionStatus.CANCELLED}

ALLOWED_TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.COLLECTING: frozenset({SessionStatus.ANALYZING} | _ABORT_EDGES),
    SessionStatus.ANALYZING: frozenset({SessionStatus.PROPOSING} | _ABORT_EDGES),
    SessionStatus.PROPOSING: frozenset({SessionStatus.TESTING} | _ABORT_EDGES),
    SessionStatus.TESTING: frozenset(
        {SessionStatus.AWAITING_APPROVAL, SessionStatus.REJECTED} | _ABORT_EDGES
    ),
    SessionStatus.AWAITING_APPROVAL: frozenset(
        {SessionStatus.APPROVED, SessionStatus.REJECTED} | _ABORT_EDGES
    ),
    SessionStatus.APPROVED: frozenset({SessionStatus.PROMOTED} | _ABORT_EDGES),
    SessionStatus.PROMOTED: frozenset(),
    SessionStatus.REJECTED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


def is_terminal(status: SessionStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(from_status: SessionStatus, to_status: SessionStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


class LearningSession(LearningModel):
    """
    One closed-loop cycle for one agent.

    Only the session state machine writes ``status``. Sessions are never
    deleted; they end in PROMOTED, REJECTED, FAILED or CANCELLED.
    """

    id: str
    agent_id: str
    status: SessionStatus = SessionStatus.COLLECTING
    run_count: int = 0
    dataset_hash: Optional[str] = None
    baseline_version: Optional[int] = None
    scorer_config: List[str] = []
    metadata: dict = {}                     # failureReason, triggerReason, triggerType, ...
    created_at: datetime
    updated_at: datetime
    stage_entered_at: datetime              # Start of the current dwell window
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return not is_terminal(self.status)


class TransitionEvent(LearningModel):
    """A persisted status change, also pushed to in-process subscribers."""

    session_id: str
    agent_id: str
    from_status: Optional[SessionStatus] = None   # None for creation
    to_status: SessionStatus
    reason: Optional[str] = None
    occurred_at: datetime = Field(default_factory=datetime.utcnow)
