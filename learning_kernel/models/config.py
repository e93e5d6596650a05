"""Learning loop configuration — global defaults and engine limits."""

from typing import List, Optional

from pydantic import BaseModel, Field

from learning_kernel.models.experiment import ExperimentMode


class LearningConfig(BaseModel):
    """Configuration for the learning loop. Per-agent policy overrides some of it."""

    # Dataset
    min_runs_for_session: int = Field(default=10, ge=1)
    max_runs_per_session: int = Field(default=100, ge=1)
    dataset_lookback_days: int = Field(default=7, ge=1)
    scorers: List[str] = []                 # Empty: use the scorers present in the data

    # Signal detection
    low_score_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    high_severity_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    high_severity_fraction: float = Field(default=0.2, ge=0.0, le=1.0)
    medium_severity_fraction: float = Field(default=0.1, ge=0.0, le=1.0)
    high_latency_threshold_ms: float = 30000
    evidence_cap: int = Field(default=10, ge=1)

    # Proposal generation
    min_proposal_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    max_generation_attempts: int = Field(default=3, ge=1)
    generation_backoff_seconds: float = Field(default=0.5, ge=0.0)

    # Experiments
    experiment_mode: ExperimentMode = ExperimentMode.SHADOW
    min_runs_per_group: int = Field(default=20, ge=1)
    max_runs_per_experiment: int = Field(default=200, ge=2)
    max_experiment_hours: float = 72
    default_gating_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    confidence_z: float = 1.96              # 95%

    # Policy defaults (overridable per agent)
    signal_threshold: int = 10
    signal_window_minutes: int = 60
    traffic_split_candidate: float = Field(default=0.1, ge=0.0, le=1.0)
    min_confidence_for_auto: float = Field(default=0.7, ge=0.0, le=1.0)
    min_win_rate_for_auto: float = Field(default=0.55, ge=0.0, le=1.0)
    auto_promotion_enabled: bool = False

    # Auto-promotion guards (global)
    min_runs_before_auto_promotion: int = Field(default=50, ge=0)   # Experiment samples, both arms
    max_cost_increase_pct: float = Field(default=0.10, ge=0.0)
    require_no_regressions: bool = True

    # Stage dwell timeouts
    collecting_timeout_minutes: float = 60
    analyzing_timeout_minutes: float = 15
    proposing_timeout_minutes: float = 30
    testing_timeout_minutes: float = 96 * 60    # Experiment window plus grace

    # Triggers
    schedule_cron: str = "0 */6 * * *"
    min_hours_between_sessions: float = 8
    max_concurrent_sessions: int = Field(default=5, ge=1)
    heartbeat_interval_seconds: int = Field(default=60, ge=1)

    db_path: str = ":memory:"
    replay_holdout: Optional[int] = Field(default=None, ge=1)   # Runs to replay; None = all
