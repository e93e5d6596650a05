"""Tests for the Gating Engine."""

from datetime import datetime

from learning_kernel.gating.engine import GatingEngine, evaluate_gate
from learning_kernel.models.config import LearningConfig
from learning_kernel.models.experiment import (
    ConfidenceInterval,
    Experiment,
    ExperimentStatus,
    GatingResult,
    GroupMetrics,
    TrafficSplit,
)
from learning_kernel.models.proposal import RiskTier


def _make_experiment(**overrides) -> Experiment:
    fields = dict(
        id="exp_1",
        session_id="ls_1",
        proposal_id="prop_1",
        status=ExperimentStatus.RUNNING,
        baseline_version_id="ver_base",
        candidate_version_id="ver_cand",
        traffic_split=TrafficSplit(baseline=0.5, candidate=0.5),
        candidate_metrics=GroupMetrics(sample_count=30, success_count=30, avg_score=0.8),
        baseline_metrics=GroupMetrics(sample_count=30, success_count=30, avg_score=0.6),
        gating_threshold=0.55,
        win_rate=0.8,
        confidence_interval=ConfidenceInterval(lower=0.65, upper=0.9),
        risk_tier=RiskTier.LOW,
        created_at=datetime(2026, 3, 2),
    )
    fields.update(overrides)
    return Experiment(**fields)


class TestEvaluateGate:
    def test_passes_but_wide_interval_blocks_auto(self):
        decision = evaluate_gate(
            win_rate=0.62,
            confidence_interval=ConfidenceInterval(lower=0.51, upper=0.73),
            gating_threshold=0.55,
            risk_tier=RiskTier.LOW,
            sample_count=100,
            min_samples=20,
        )
        assert decision.result == GatingResult.PASSED
        assert decision.passed
        assert decision.auto_eligible is False
        assert any("lower bound" in r for r in decision.reasons)

    def test_tight_interval_low_risk_is_auto_eligible(self):
        decision = evaluate_gate(
            0.8, ConfidenceInterval(lower=0.6, upper=0.9), 0.55, RiskTier.LOW, 50, 20
        )
        assert decision.passed
        assert decision.auto_eligible

    def test_medium_risk_never_auto_eligible(self):
        decision = evaluate_gate(
            0.8, ConfidenceInterval(lower=0.6, upper=0.9), 0.55, RiskTier.MEDIUM, 50, 20
        )
        assert decision.passed
        assert not decision.auto_eligible
        assert any("MEDIUM" in r for r in decision.reasons)

    def test_below_threshold_fails(self):
        decision = evaluate_gate(
            0.5, ConfidenceInterval(lower=0.4, upper=0.6), 0.55, RiskTier.LOW, 50, 20
        )
        assert decision.result == GatingResult.FAILED
        assert not decision.auto_eligible

    def test_too_few_samples_fails_despite_high_win_rate(self):
        decision = evaluate_gate(
            0.95, ConfidenceInterval(lower=0.8, upper=1.0), 0.55, RiskTier.LOW, 19, 20
        )
        assert decision.result == GatingResult.FAILED
        assert any("below the minimum 20" in r for r in decision.reasons)

    def test_no_measurement_fails(self):
        decision = evaluate_gate(None, None, 0.55, RiskTier.LOW, 0, 20)
        assert decision.result == GatingResult.FAILED
        assert not decision.auto_eligible


class TestGatingEngine:
    def test_evaluate_experiment(self):
        engine = GatingEngine(LearningConfig(min_runs_per_group=20))
        decision = engine.evaluate(_make_experiment())
        assert decision.passed
        assert decision.auto_eligible

    def test_paired_experiment_counts_pairs(self):
        engine = GatingEngine(LearningConfig(min_runs_per_group=5))
        experiment = _make_experiment(
            paired=True,
            candidate_metrics=GroupMetrics(),
            baseline_scores=[0.5] * 4,
            candidate_scores=[0.9] * 4,
        )
        decision = engine.evaluate(experiment)
        assert decision.result == GatingResult.FAILED

    def test_custom_rule_can_fail_gate(self):
        engine = GatingEngine(LearningConfig(min_runs_per_group=20))
        engine.add_rule(lambda exp: (exp.candidate_metrics.avg_score >= 0.9, "Average score too low"))
        decision = engine.evaluate(_make_experiment())
        assert decision.result == GatingResult.FAILED
        assert "Average score too low" in decision.reasons
