"""Learning Policy — per-agent switches and overrides for the learning loop."""

from datetime import datetime
from typing import Optional

from pydantic import Field

from learning_kernel.models.base import LearningModel


class LearningPolicy(LearningModel):
    """
    Stored per agent. Nullable numeric fields are overrides; ``None`` means
    "use the global default" and is resolved by ``effective_config``.
    """

    agent_id: str
    enabled: bool = True
    auto_promotion_enabled: bool = False
    scheduled_enabled: bool = True
    threshold_enabled: bool = True
    paused: bool = False
    paused_until: Optional[datetime] = None
    pause_reason: Optional[str] = None
    signal_threshold: Optional[int] = Field(default=None, ge=1)
    signal_window_minutes: Optional[int] = Field(default=None, ge=1)
    traffic_split_candidate: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    min_confidence_for_auto: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    min_win_rate_for_auto: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class EffectiveConfig(LearningModel):
    """Policy overrides merged over global defaults."""

    enabled: bool
    auto_promotion_enabled: bool
    scheduled_enabled: bool
    threshold_enabled: bool
    signal_threshold: int
    signal_window_minutes: int
    traffic_split_candidate: float
    min_confidence_for_auto: float
    min_win_rate_for_auto: float


class PolicyCheck(LearningModel):
    """Answer to "may this happen?" with the denial code and reasons."""

    allowed: bool
    code: Optional[str] = None
    reasons: list = []


class PolicyAuditEntry(LearningModel):
    id: int
    agent_id: str
    action: str                             # LEARNING_POLICY_UPDATED | LEARNING_PAUSED | ...
    actor_id: Optional[str] = None
    details: dict = {}
    created_at: datetime
