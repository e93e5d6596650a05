"""Experiment — an A/B test of a candidate version against the baseline."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import Field

from learning_kernel.models.base import LearningModel
from learning_kernel.models.proposal import RiskTier


class ExperimentStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ExperimentMode(str, Enum):
    SHADOW = "shadow"                       # Split live traffic
    REPLAY = "replay"                       # Re-score held-out runs


class GatingResult(str, Enum):
    PASSED = "passed"
    FAILED = "failed"


class GroupMetrics(LearningModel):
    """Running metrics for one arm. Updated incrementally per sample."""

    avg_score: Optional[float] = None
    success_rate: Optional[float] = None
    sample_count: int = 0
    success_count: int = 0


class ConfidenceInterval(LearningModel):
    lower: float = Field(ge=0.0, le=1.0)
    upper: float = Field(ge=0.0, le=1.0)


class TrafficSplit(LearningModel):
    baseline: float = Field(ge=0.0, le=1.0)
    candidate: float = Field(ge=0.0, le=1.0)


class GateDecision(LearningModel):
    """Output of the gating engine."""

    result: GatingResult
    auto_eligible: bool
    reasons: List[str] = []

    @property
    def passed(self) -> bool:
        return self.result == GatingResult.PASSED


class Experiment(LearningModel):
    id: str
    session_id: str
    proposal_id: str
    status: ExperimentStatus = ExperimentStatus.PENDING
    mode: ExperimentMode = ExperimentMode.SHADOW
    baseline_version_id: str
    candidate_version_id: str
    traffic_split: TrafficSplit
    baseline_metrics: GroupMetrics = Field(default_factory=GroupMetrics)
    candidate_metrics: GroupMetrics = Field(default_factory=GroupMetrics)
    baseline_scores: List[float] = []
    candidate_scores: List[float] = []
    paired: bool = False                    # Replay pairs scores index-by-index
    shadow_run_count: int = 0
    gating_threshold: float = Field(ge=0.0, le=1.0)
    win_rate: Optional[float] = None
    confidence_interval: Optional[ConfidenceInterval] = None
    gating_result: Optional[GatingResult] = None
    gating_reasons: List[str] = []
    risk_tier: RiskTier = RiskTier.LOW
    auto_eligible: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

    @property
    def is_finished(self) -> bool:
        return self.status in (ExperimentStatus.COMPLETED, ExperimentStatus.FAILED)

    @property
    def sample_count(self) -> int:
        return self.baseline_metrics.sample_count + self.candidate_metrics.sample_count

    @property
    def has_regressions(self) -> bool:
        """The candidate succeeds less often than the baseline."""
        base = self.baseline_metrics.success_rate
        cand = self.candidate_metrics.success_rate
        return base is not None and cand is not None and cand < base
