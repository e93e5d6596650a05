"""Approval — the final human or automatic decision on a session."""

from datetime import datetime
from enum import Enum
from typing import Optional

from learning_kernel.models.base import LearningModel


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO_APPROVED = "auto_approved"


class ApprovalSource(str, Enum):
    HUMAN = "human"
    AUTO = "auto"


class Approval(LearningModel):
    """Exactly one per session that reaches a decision."""

    id: str
    session_id: str
    decision: ApprovalDecision
    rationale: Optional[str] = None
    approved_by: Optional[str] = None
    promoted_version_id: Optional[str] = None
    auto_approved: bool = False
    reviewed_at: datetime
    created_at: datetime
