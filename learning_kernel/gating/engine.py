"""
Gating Engine — pass/fail decision on an experiment's measured outcome.

Behavioral Contract:
  - passed   iff win_rate >= threshold AND candidate samples >= minimum
  - failed   whenever samples are below the minimum, whatever the win rate
  - no measurement (win_rate is None) always fails
  - auto_eligible iff passed AND risk tier LOW AND ci.lower >= threshold
"""

from typing import Callable, List, Optional, Tuple

import structlog

from learning_kernel.models.config import LearningConfig
from learning_kernel.models.experiment import (
    ConfidenceInterval,
    Experiment,
    GateDecision,
    GatingResult,
)
from learning_kernel.models.proposal import RiskTier

logger = structlog.get_logger(__name__)


def evaluate_gate(
    win_rate: Optional[float],
    confidence_interval: Optional[ConfidenceInterval],
    gating_threshold: float,
    risk_tier: RiskTier,
    sample_count: int,
    min_samples: int,
) -> GateDecision:
    """Pure gate function. See the module contract."""
    reasons: List[str] = []
    passed = True

    if win_rate is None:
        passed = False
        reasons.append("No comparable samples were collected")
    elif win_rate < gating_threshold:
        passed = False
        reasons.append(
            f"Win rate {win_rate:.2f} is below the gating threshold {gating_threshold:.2f}"
        )

    if sample_count < min_samples:
        passed = False
        reasons.append(
            f"Candidate sample count {sample_count} is below the minimum {min_samples}"
        )

    if passed:
        reasons.append(
            f"Win rate {win_rate:.2f} meets the gating threshold {gating_threshold:.2f}"
        )

    auto_eligible = passed
    if passed and risk_tier != RiskTier.LOW:
        auto_eligible = False
        reasons.append(f"Risk tier {risk_tier.value} is not eligible for auto-promotion")
    if passed and (confidence_interval is None or confidence_interval.lower < gating_threshold):
        auto_eligible = False
        lower = confidence_interval.lower if confidence_interval else 0.0
        reasons.append(
            f"Confidence lower bound {lower:.2f} is below the gating threshold "
            f"{gating_threshold:.2f}"
        )

    return GateDecision(
        result=GatingResult.PASSED if passed else GatingResult.FAILED,
        auto_eligible=auto_eligible,
        reasons=reasons,
    )


class GatingEngine:
    """
    Applies the gate to an experiment. Extra checks can be registered as
    rules; each returns (ok, reason) and a failing rule fails the gate.
    """

    def __init__(self, config: Optional[LearningConfig] = None):
        self.config = config or LearningConfig()
        self._rules: List[Callable[[Experiment], Tuple[bool, str]]] = []

    def add_rule(self, rule: Callable[[Experiment], Tuple[bool, str]]) -> None:
        self._rules.append(rule)

    def evaluate(self, experiment: Experiment) -> GateDecision:
        sample_count = experiment.candidate_metrics.sample_count
        if experiment.paired:
            sample_count = min(len(experiment.candidate_scores), len(experiment.baseline_scores))
        decision = evaluate_gate(
            win_rate=experiment.win_rate,
            confidence_interval=experiment.confidence_interval,
            gating_threshold=experiment.gating_threshold,
            risk_tier=experiment.risk_tier,
            sample_count=sample_count,
            min_samples=self.config.min_runs_per_group,
        )

        for rule in self._rules:
            ok, reason = rule(experiment)
            if not ok:
                decision = GateDecision(
                    result=GatingResult.FAILED,
                    auto_eligible=False,
                    reasons=decision.reasons + [reason],
                )

        logger.info(
            "experiment_gated",
            experiment_id=experiment.id,
            session_id=experiment.session_id,
            result=decision.result.value,
            auto_eligible=decision.auto_eligible,
            win_rate=experiment.win_rate,
        )
        return decision
