"""
Experiment Runner — A/B tests a candidate version against the baseline.

Two modes:
  shadow  live runs are split by ``assign_variant`` and scored as they arrive
  replay  held-out dataset runs are re-scored under both versions (paired)

Win rate is the probability that a candidate sample beats a baseline
sample on the primary score (ties count half). Its 95% confidence interval
is the Wilson score interval, closed-form and deterministic.
"""

from __future__ import annotations

import hashlib
import math
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Tuple
from uuid import uuid4

import structlog

from learning_kernel.models.agent import AgentVersion
from learning_kernel.models.config import LearningConfig
from learning_kernel.models.experiment import (
    ConfidenceInterval,
    Experiment,
    ExperimentMode,
    ExperimentStatus,
    GateDecision,
    GroupMetrics,
    TrafficSplit,
)
from learning_kernel.models.proposal import Proposal
from learning_kernel.models.run import AgentRun

logger = structlog.get_logger(__name__)

BASELINE = "baseline"
CANDIDATE = "candidate"


class ReplayEvaluator(Protocol):
    """Scores a recorded run's input under a given agent version."""

    def score(self, run: AgentRun, version: AgentVersion) -> Optional[float]: ...


def assign_variant(run_id: str, candidate_split: float, salt: str = "") -> str:
    """
    Route a run to an arm. Pure and stateless: the same run id, split and
    salt always land in the same arm, so concurrent dispatchers agree
    without coordination.
    """
    if candidate_split <= 0.0:
        return BASELINE
    if candidate_split >= 1.0:
        return CANDIDATE
    digest = hashlib.sha256(f"{salt}:{run_id}".encode()).hexdigest()
    bucket = int(digest[:8], 16) / 0xFFFFFFFF
    return CANDIDATE if bucket < candidate_split else BASELINE


def update_group(metrics: GroupMetrics, score: Optional[float], success: bool) -> GroupMetrics:
    """Fold one sample into running metrics."""
    count = metrics.sample_count + 1
    successes = metrics.success_count + (1 if success else 0)
    avg = metrics.avg_score
    if score is not None:
        prior = metrics.avg_score if metrics.avg_score is not None else 0.0
        scored_before = metrics.sample_count if metrics.avg_score is not None else 0
        avg = (prior * scored_before + score) / (scored_before + 1)
    return GroupMetrics(
        avg_score=round(avg, 6) if avg is not None else None,
        success_rate=round(successes / count, 6),
        sample_count=count,
        success_count=successes,
    )


def compute_win_rate(
    baseline_scores: List[float],
    candidate_scores: List[float],
    paired: bool = False,
) -> Tuple[Optional[float], int]:
    """
    Fraction of comparisons the candidate wins, ties counting half.

    Paired: compare index by index; n is the number of pairs.
    Independent: compare every candidate sample against every baseline
    sample; n is the smaller arm, which keeps the interval honest.
    """
    if paired:
        pairs = list(zip(baseline_scores, candidate_scores))
        if not pairs:
            return None, 0
        wins = sum(1.0 if c > b else 0.5 if c == b else 0.0 for b, c in pairs)
        return wins / len(pairs), len(pairs)

    if not baseline_scores or not candidate_scores:
        return None, 0
    ordered = sorted(baseline_scores)
    wins = 0.0
    for c in candidate_scores:
        below = _count_below(ordered, c)
        equal = _count_below(ordered, c, inclusive=True) - below
        wins += below + 0.5 * equal
    total = len(baseline_scores) * len(candidate_scores)
    return wins / total, min(len(baseline_scores), len(candidate_scores))


def _count_below(ordered: List[float], value: float, inclusive: bool = False) -> int:
    lo, hi = 0, len(ordered)
    while lo < hi:
        mid = (lo + hi) // 2
        if ordered[mid] < value or (inclusive and ordered[mid] == value):
            lo = mid + 1
        else:
            hi = mid
    return lo


def wilson_interval(p: float, n: int, z: float = 1.96) -> ConfidenceInterval:
    """Wilson score interval for a proportion."""
    if n <= 0:
        return ConfidenceInterval(lower=0.0, upper=1.0)
    denom = 1 + z * z / n
    centre = (p + z * z / (2 * n)) / denom
    margin = z * math.sqrt(p * (1 - p) / n + z * z / (4 * n * n)) / denom
    return ConfidenceInterval(
        lower=round(max(0.0, centre - margin), 4),
        upper=round(min(1.0, centre + margin), 4),
    )


class ExperimentRunner:
    """Creates experiments, accumulates samples and measures outcomes."""

    def __init__(self, config: Optional[LearningConfig] = None):
        self.config = config or LearningConfig()

    def create(
        self,
        session_id: str,
        proposal: Proposal,
        baseline_version_id: str,
        candidate_version_id: str,
        candidate_split: float,
        gating_threshold: Optional[float] = None,
        mode: Optional[ExperimentMode] = None,
        current_time: Optional[datetime] = None,
    ) -> Experiment:
        """A RUNNING experiment for the selected proposal."""
        if current_time is None:
            current_time = datetime.utcnow()
        mode = mode or self.config.experiment_mode
        threshold = (
            gating_threshold if gating_threshold is not None
            else self.config.default_gating_threshold
        )
        return Experiment(
            id=f"exp_{uuid4().hex[:12]}",
            session_id=session_id,
            proposal_id=proposal.id,
            status=ExperimentStatus.RUNNING,
            mode=mode,
            baseline_version_id=baseline_version_id,
            candidate_version_id=candidate_version_id,
            traffic_split=TrafficSplit(
                baseline=round(1.0 - candidate_split, 6), candidate=candidate_split
            ),
            paired=(mode == ExperimentMode.REPLAY),
            gating_threshold=threshold,
            risk_tier=proposal.risk_tier,
            started_at=current_time,
            created_at=current_time,
        )

    def variant_for(self, experiment: Experiment, run_id: str) -> str:
        return assign_variant(run_id, experiment.traffic_split.candidate, salt=experiment.id)

    def version_for(self, experiment: Experiment, run_id: str) -> str:
        """The version a new run should be dispatched to."""
        if self.variant_for(experiment, run_id) == CANDIDATE:
            return experiment.candidate_version_id
        return experiment.baseline_version_id

    def record_sample(self, experiment: Experiment, run: AgentRun) -> Experiment:
        """Fold a finished shadow run into its arm. Runs of other versions are ignored."""
        if experiment.is_finished:
            return experiment
        score = run.aggregate_score
        update = {"shadow_run_count": experiment.shadow_run_count + 1}
        if run.version_id == experiment.candidate_version_id:
            update["candidate_metrics"] = update_group(
                experiment.candidate_metrics, score, run.succeeded
            )
            if score is not None:
                update["candidate_scores"] = experiment.candidate_scores + [score]
        elif run.version_id == experiment.baseline_version_id:
            update["baseline_metrics"] = update_group(
                experiment.baseline_metrics, score, run.succeeded
            )
            if score is not None:
                update["baseline_scores"] = experiment.baseline_scores + [score]
        else:
            return experiment
        return experiment.model_copy(update=update)

    def replay(
        self,
        experiment: Experiment,
        runs: List[AgentRun],
        baseline: AgentVersion,
        candidate: AgentVersion,
        evaluator: ReplayEvaluator,
    ) -> Experiment:
        """Score held-out runs under both versions as paired samples."""
        holdout = sorted(runs, key=lambda r: r.id)
        if self.config.replay_holdout:
            holdout = holdout[:self.config.replay_holdout]

        base_metrics = GroupMetrics()
        cand_metrics = GroupMetrics()
        base_scores: List[float] = []
        cand_scores: List[float] = []
        for run in holdout:
            b = evaluator.score(run, baseline)
            c = evaluator.score(run, candidate)
            if b is None or c is None:
                continue
            base_metrics = update_group(base_metrics, b, b >= self.config.low_score_threshold)
            cand_metrics = update_group(cand_metrics, c, c >= self.config.low_score_threshold)
            base_scores.append(b)
            cand_scores.append(c)

        logger.info(
            "experiment_replayed",
            experiment_id=experiment.id,
            pairs=len(base_scores),
        )
        return experiment.model_copy(update={
            "paired": True,
            "baseline_metrics": base_metrics,
            "candidate_metrics": cand_metrics,
            "baseline_scores": base_scores,
            "candidate_scores": cand_scores,
        })

    def should_evaluate(
        self, experiment: Experiment, current_time: Optional[datetime] = None
    ) -> Tuple[bool, str]:
        """Whether the experiment has enough data, or has run out of time."""
        if current_time is None:
            current_time = datetime.utcnow()
        base_n = experiment.baseline_metrics.sample_count
        cand_n = experiment.candidate_metrics.sample_count
        if base_n >= self.config.min_runs_per_group and cand_n >= self.config.min_runs_per_group:
            return True, "Minimum runs reached for both groups"
        if base_n + cand_n >= self.config.max_runs_per_experiment:
            return True, "Maximum experiment runs reached"
        started = experiment.started_at or experiment.created_at
        if current_time - started >= timedelta(hours=self.config.max_experiment_hours):
            return True, "Maximum experiment duration reached"
        return False, "Waiting for more data"

    def measure(self, experiment: Experiment) -> Experiment:
        """Compute win rate and confidence interval from the collected samples."""
        win_rate, n = compute_win_rate(
            experiment.baseline_scores, experiment.candidate_scores, experiment.paired
        )
        interval = wilson_interval(win_rate, n, self.config.confidence_z) if win_rate is not None else None
        return experiment.model_copy(update={
            "win_rate": round(win_rate, 4) if win_rate is not None else None,
            "confidence_interval": interval,
        })

    def complete(
        self,
        experiment: Experiment,
        gate: GateDecision,
        current_time: Optional[datetime] = None,
    ) -> Experiment:
        """Freeze the experiment with its gating outcome."""
        return experiment.model_copy(update={
            "status": ExperimentStatus.COMPLETED,
            "gating_result": gate.result,
            "gating_reasons": gate.reasons,
            "auto_eligible": gate.auto_eligible,
            "completed_at": current_time or datetime.utcnow(),
        })

    def fail(
        self,
        experiment: Experiment,
        reason: str,
        current_time: Optional[datetime] = None,
    ) -> Experiment:
        """Abort an experiment that could not be measured."""
        return experiment.model_copy(update={
            "status": ExperimentStatus.FAILED,
            "gating_reasons": [reason],
            "completed_at": current_time or datetime.utcnow(),
        })
