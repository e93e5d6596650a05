"""
Signal Detector — finds recurring quality issues in a dataset.

Rule-based and deterministic: the same dataset, runs and scorer config
always yield the same signals (ids included), so a retried analysis
produces an identical signal set.

Rules:
  low_score          per scorer, runs scoring below the cutoff
  tool_failure       per tool, runs where that tool failed
  negative_feedback  runs with negative user feedback
  high_latency       runs slower than the latency threshold
"""

import hashlib
from datetime import datetime
from typing import Callable, Dict, List, Optional

import structlog

from learning_kernel.models.config import LearningConfig
from learning_kernel.models.dataset import Dataset
from learning_kernel.models.run import AgentRun
from learning_kernel.models.signal import (
    Signal,
    SignalEvidence,
    SignalSeverity,
    SignalType,
)

logger = structlog.get_logger(__name__)


def _signal_id(dataset: Dataset, signal_type: SignalType, subject: str) -> str:
    key = f"{dataset.session_id}:{dataset.dataset_hash}:{signal_type.value}:{subject}"
    return f"sig_{hashlib.sha256(key.encode()).hexdigest()[:12]}"


def _evidence(run: AgentRun) -> SignalEvidence:
    return SignalEvidence(run_id=run.id, scores=dict(sorted(run.scores.items())))


def is_problem_run(run: AgentRun, config: LearningConfig) -> bool:
    """Whether a single run would contribute to any signal."""
    score = run.aggregate_score
    if score is not None and score < config.low_score_threshold:
        return True
    if run.tool_failures or run.feedback == "negative":
        return True
    if run.latency_ms is not None and run.latency_ms > config.high_latency_threshold_ms:
        return True
    return False


class SignalDetector:
    """
    Tier 0 detection: fixed thresholds, no model calls.
    """

    def __init__(self, config: Optional[LearningConfig] = None):
        self.config = config or LearningConfig()
        self._rules: List[Callable] = []
        self._register_default_rules()

    def _register_default_rules(self) -> None:
        self._rules = [
            self._detect_low_scores,
            self._detect_tool_failures,
            self._detect_negative_feedback,
            self._detect_high_latency,
        ]

    def detect(
        self,
        dataset: Dataset,
        runs: List[AgentRun],
        scorer_config: List[str],
        current_time: Optional[datetime] = None,
    ) -> List[Signal]:
        """
        Run every rule over the dataset's runs.
        Returns signals ordered by impact (highest first).
        """
        if current_time is None:
            current_time = datetime.utcnow()

        included = set(dataset.run_ids)
        runs = sorted((r for r in runs if r.id in included), key=lambda r: r.id)
        if not runs:
            return []

        signals: List[Signal] = []
        for rule in self._rules:
            signals.extend(rule(dataset, runs, sorted(scorer_config), current_time))

        signals.sort(
            key=lambda s: (-(s.impact or 0.0), -s.frequency, s.type.value, s.subject)
        )
        logger.info(
            "signals_detected",
            session_id=dataset.session_id,
            dataset_id=dataset.id,
            signal_count=len(signals),
        )
        return signals

    def _severity(self, fraction: float, mean_score: Optional[float] = None) -> SignalSeverity:
        if fraction > self.config.high_severity_fraction:
            return SignalSeverity.HIGH
        if mean_score is not None and mean_score < self.config.high_severity_threshold:
            return SignalSeverity.HIGH
        if fraction > self.config.medium_severity_fraction:
            return SignalSeverity.MEDIUM
        return SignalSeverity.LOW

    def _detect_low_scores(
        self,
        dataset: Dataset,
        runs: List[AgentRun],
        scorers: List[str],
        current_time: datetime,
    ) -> List[Signal]:
        cutoff = self.config.low_score_threshold
        signals = []
        for scorer in scorers:
            scored = [r for r in runs if scorer in r.scores]
            if not scored:
                continue
            low = [r for r in scored if r.scores[scorer] < cutoff]
            if not low:
                continue

            fraction = len(low) / len(scored)
            mean_low = sum(r.scores[scorer] for r in low) / len(low)
            deficit = (cutoff - mean_low) / cutoff if cutoff > 0 else 0.0
            impact = round(min(1.0, 0.5 * fraction + 0.5 * deficit), 4)

            # Largest deviation first
            worst = sorted(low, key=lambda r: (r.scores[scorer], r.id))
            signals.append(Signal(
                id=_signal_id(dataset, SignalType.LOW_SCORE, scorer),
                session_id=dataset.session_id,
                type=SignalType.LOW_SCORE,
                severity=self._severity(fraction, mean_low),
                subject=scorer,
                pattern=(
                    f"{len(low)}/{len(scored)} runs scored below {cutoff:g} "
                    f"on '{scorer}' (mean {mean_low:.2f})"
                ),
                frequency=len(low),
                impact=impact,
                evidence=[_evidence(r) for r in worst[:self.config.evidence_cap]],
                created_at=current_time,
            ))
        return signals

    def _detect_tool_failures(
        self,
        dataset: Dataset,
        runs: List[AgentRun],
        scorers: List[str],
        current_time: datetime,
    ) -> List[Signal]:
        failures: Dict[str, List[AgentRun]] = {}
        for run in runs:
            for tool in sorted(set(run.tool_failures)):
                failures.setdefault(tool, []).append(run)

        signals = []
        for tool in sorted(failures):
            failed_runs = failures[tool]
            fraction = len(failed_runs) / len(runs)
            ordered = sorted(
                failed_runs,
                key=lambda r: (-r.tool_failures.count(tool), r.aggregate_score or 0.0, r.id),
            )
            signals.append(Signal(
                id=_signal_id(dataset, SignalType.TOOL_FAILURE, tool),
                session_id=dataset.session_id,
                type=SignalType.TOOL_FAILURE,
                severity=self._severity(fraction),
                subject=tool,
                pattern=f"Tool '{tool}' failed in {len(failed_runs)}/{len(runs)} runs",
                frequency=len(failed_runs),
                impact=round(fraction, 4),
                evidence=[_evidence(r) for r in ordered[:self.config.evidence_cap]],
                created_at=current_time,
            ))
        return signals

    def _detect_negative_feedback(
        self,
        dataset: Dataset,
        runs: List[AgentRun],
        scorers: List[str],
        current_time: datetime,
    ) -> List[Signal]:
        negative = [r for r in runs if r.feedback == "negative"]
        if not negative:
            return []
        fraction = len(negative) / len(runs)
        ordered = sorted(negative, key=lambda r: (r.aggregate_score or 0.0, r.id))
        return [Signal(
            id=_signal_id(dataset, SignalType.NEGATIVE_FEEDBACK, "feedback"),
            session_id=dataset.session_id,
            type=SignalType.NEGATIVE_FEEDBACK,
            severity=self._severity(fraction),
            subject="feedback",
            pattern=f"{len(negative)}/{len(runs)} runs received negative feedback",
            frequency=len(negative),
            impact=round(fraction, 4),
            evidence=[_evidence(r) for r in ordered[:self.config.evidence_cap]],
            created_at=current_time,
        )]

    def _detect_high_latency(
        self,
        dataset: Dataset,
        runs: List[AgentRun],
        scorers: List[str],
        current_time: datetime,
    ) -> List[Signal]:
        limit = self.config.high_latency_threshold_ms
        slow = [r for r in runs if r.latency_ms is not None and r.latency_ms > limit]
        if not slow:
            return []
        fraction = len(slow) / len(runs)
        ordered = sorted(slow, key=lambda r: (-r.latency_ms, r.id))
        return [Signal(
            id=_signal_id(dataset, SignalType.HIGH_LATENCY, "latency"),
            session_id=dataset.session_id,
            type=SignalType.HIGH_LATENCY,
            # Latency alone never reaches high severity
            severity=(
                SignalSeverity.MEDIUM
                if fraction > self.config.medium_severity_fraction
                else SignalSeverity.LOW
            ),
            subject="latency",
            pattern=f"{len(slow)}/{len(runs)} runs exceeded {limit:g} ms",
            frequency=len(slow),
            impact=round(fraction * 0.5, 4),
            evidence=[_evidence(r) for r in ordered[:self.config.evidence_cap]],
            created_at=current_time,
        )]
