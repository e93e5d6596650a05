"""
Proposal Generator — turns signals into candidate changes.

Generation is pluggable (an LLM-backed generator can replace the rule-based
one). Selection is not: ``select_proposal`` is a pure function of
(confidence_score, created_at) so the choice is reproducible whatever the
generator did.
"""

from __future__ import annotations

import difflib
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

import structlog

from learning_kernel.errors import ExternalDependencyError
from learning_kernel.models.agent import AgentVersion
from learning_kernel.models.dataset import Dataset
from learning_kernel.models.proposal import (
    GuardrailChange,
    InstructionsChange,
    MemoryChange,
    ModelChange,
    Proposal,
    RiskTier,
    ToolChange,
)
from learning_kernel.models.signal import SEVERITY_WEIGHT, Signal, SignalType

logger = structlog.get_logger(__name__)

HIGH_RISK_COST_INCREASE = 0.10
MEDIUM_RISK_COST_INCREASE = 0.05


class ProposalGenerator(Protocol):
    """Protocol for proposal generation — pluggable backend."""

    def generate(
        self,
        session_id: str,
        signals: List[Signal],
        dataset: Dataset,
        baseline: AgentVersion,
        current_time: Optional[datetime] = None,
    ) -> List[Proposal]: ...


def classify_risk_tier(change, cost_increase_pct: float = 0.0) -> Tuple[RiskTier, List[str]]:
    """
    Risk tiers:
      HIGH:   model, memory or guardrail changes, or cost increase above 10%
      MEDIUM: tool changes, or a cost increase up to 5%
      LOW:    instruction-only changes with no cost increase
    """
    reasons: List[str] = []
    tier = RiskTier.LOW

    if isinstance(change, ModelChange):
        tier = RiskTier.HIGH
        reasons.append("Contains model provider or model name changes")
    if isinstance(change, MemoryChange):
        tier = RiskTier.HIGH
        reasons.append("Contains memory configuration changes")
    if isinstance(change, GuardrailChange):
        tier = RiskTier.HIGH
        reasons.append("Contains guardrail policy changes")
    if cost_increase_pct > HIGH_RISK_COST_INCREASE:
        tier = RiskTier.HIGH
        reasons.append(
            f"Cost increase ({cost_increase_pct * 100:.1f}%) exceeds threshold"
        )

    if tier != RiskTier.HIGH:
        if isinstance(change, ToolChange):
            tier = RiskTier.MEDIUM
            reasons.append("Contains tool configuration changes")
        if 0 < cost_increase_pct <= MEDIUM_RISK_COST_INCREASE:
            tier = RiskTier.MEDIUM
            reasons.append(f"Minor cost increase ({cost_increase_pct * 100:.1f}%)")
        elif MEDIUM_RISK_COST_INCREASE < cost_increase_pct <= HIGH_RISK_COST_INCREASE:
            tier = RiskTier.MEDIUM
            reasons.append(f"Moderate cost increase ({cost_increase_pct * 100:.1f}%)")

    if tier == RiskTier.LOW and isinstance(change, InstructionsChange):
        reasons.append("Instruction-only changes, no tool/model/memory modifications")

    return tier, reasons


def estimate_confidence(signals: List[Signal], dataset: Dataset) -> float:
    """Confidence from the addressed signals' impact, severity and run coverage."""
    if not signals:
        return 0.0
    impact = sum(s.impact or 0.0 for s in signals) / len(signals)
    severity = sum(
        SEVERITY_WEIGHT[s.severity] if s.severity else 0.3 for s in signals
    ) / len(signals)
    coverage = min(1.0, sum(s.frequency for s in signals) / max(dataset.run_count, 1))
    return round(min(1.0, 0.4 * impact + 0.35 * severity + 0.25 * coverage), 4)


def select_proposal(
    proposals: List[Proposal], min_confidence: float = 0.0
) -> Optional[Proposal]:
    """
    Pick the proposal to test: highest confidence, ties to the most recent.
    Proposals under ``min_confidence`` are never picked.
    """
    eligible = [
        p for p in proposals
        if p.confidence_score is not None and p.confidence_score >= min_confidence
    ]
    if not eligible:
        return None
    return max(eligible, key=lambda p: (p.confidence_score, p.created_at, p.id))


def mark_selected(proposals: List[Proposal], selected_id: str) -> List[Proposal]:
    """Copies of the proposals with exactly ``selected_id`` flagged."""
    return [
        p.model_copy(update={"is_selected": p.id == selected_id}) for p in proposals
    ]


def generate_with_retry(
    generator: ProposalGenerator,
    session_id: str,
    signals: List[Signal],
    dataset: Dataset,
    baseline: AgentVersion,
    max_attempts: int = 3,
    backoff_seconds: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
    current_time: Optional[datetime] = None,
) -> List[Proposal]:
    """
    Call the generator, retrying ExternalDependencyError with exponential
    backoff. The last error propagates once the attempt budget is spent.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return generator.generate(session_id, signals, dataset, baseline, current_time)
        except ExternalDependencyError as exc:
            if attempt >= max_attempts:
                logger.warning(
                    "generation_failed",
                    session_id=session_id,
                    attempts=attempt,
                    error=str(exc),
                )
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.info(
                "generation_retry",
                session_id=session_id,
                attempt=attempt,
                delay_seconds=delay,
                error=str(exc),
            )
            sleep(delay)


class RuleBasedProposalGenerator:
    """
    Rule-based generator for the kernel.
    Each rule addresses a distinct group of signals:
      quality signals (low_score, negative_feedback) -> instruction edits
      tool_failure                                   -> tool config hardening
      high_latency                                   -> model parameter tuning
    """

    def __init__(self):
        self._rules: List[Callable] = []
        self._register_default_rules()

    def _register_default_rules(self) -> None:
        self._rules = [
            self._rule_instruction_guidance,
            self._rule_tool_hardening,
            self._rule_latency_tuning,
        ]

    def generate(
        self,
        session_id: str,
        signals: List[Signal],
        dataset: Dataset,
        baseline: AgentVersion,
        current_time: Optional[datetime] = None,
    ) -> List[Proposal]:
        proposals = []
        created = current_time or datetime.utcnow()
        for rule in self._rules:
            proposal = rule(session_id, signals, dataset, baseline, created)
            if proposal:
                proposals.append(proposal)
                # Keep creation order strictly increasing for the recency tie-break
                created = created + timedelta(microseconds=1)
        return proposals

    def _build(
        self,
        session_id: str,
        change,
        addressed: List[Signal],
        dataset: Dataset,
        title: str,
        description: str,
        expected_impact: str,
        created_at: datetime,
        cost_increase_pct: float = 0.0,
    ) -> Proposal:
        tier, reasons = classify_risk_tier(change, cost_increase_pct)
        return Proposal(
            id=f"prop_{uuid4().hex[:12]}",
            session_id=session_id,
            proposal_type=change.kind,
            title=title,
            description=description,
            change=change,
            signal_ids=[s.id for s in addressed],
            expected_impact=expected_impact,
            confidence_score=estimate_confidence(addressed, dataset),
            risk_tier=tier,
            risk_reasons=reasons,
            estimated_cost_increase_pct=cost_increase_pct,
            created_at=created_at,
        )

    def _rule_instruction_guidance(
        self,
        session_id: str,
        signals: List[Signal],
        dataset: Dataset,
        baseline: AgentVersion,
        created_at: datetime,
    ) -> Optional[Proposal]:
        """Append targeted guidance for each quality signal to the instructions."""
        addressed = [
            s for s in signals
            if s.type in (SignalType.LOW_SCORE, SignalType.NEGATIVE_FEEDBACK)
        ]
        if not addressed:
            return None

        guidance = []
        for s in addressed:
            if s.type == SignalType.LOW_SCORE:
                guidance.append(
                    f"- Before answering, check your response against the "
                    f"'{s.subject}' criterion; recent runs fell short ({s.pattern})."
                )
            else:
                guidance.append(
                    "- Confirm the user's goal before acting and state clearly "
                    "what was done; users reported dissatisfaction."
                )
        new_instructions = baseline.instructions.rstrip()
        block = "## Quality guidance\n" + "\n".join(guidance)
        new_instructions = f"{new_instructions}\n\n{block}\n" if new_instructions else f"{block}\n"
        diff = "".join(difflib.unified_diff(
            baseline.instructions.splitlines(keepends=True),
            new_instructions.splitlines(keepends=True),
            fromfile=f"v{baseline.version}",
            tofile="candidate",
        ))
        subjects = ", ".join(sorted({s.subject for s in addressed}))
        return self._build(
            session_id,
            InstructionsChange(diff=diff, new_instructions=new_instructions),
            addressed,
            dataset,
            title=f"Add quality guidance for {subjects}",
            description=(
                f"Adds {len(guidance)} instruction(s) targeting "
                f"{sum(s.frequency for s in addressed)} problem occurrences."
            ),
            expected_impact="Higher evaluation scores on the affected scorers",
            created_at=created_at,
        )

    def _rule_tool_hardening(
        self,
        session_id: str,
        signals: List[Signal],
        dataset: Dataset,
        baseline: AgentVersion,
        created_at: datetime,
    ) -> Optional[Proposal]:
        """Add retries and input validation to failing tools."""
        addressed = [s for s in signals if s.type == SignalType.TOOL_FAILURE]
        if not addressed:
            return None
        changes: Dict[str, dict] = {}
        for s in addressed:
            current = baseline.tools.get(s.subject, {})
            retries = int(current.get("max_retries", 0)) + 1
            changes[s.subject] = {"max_retries": retries, "validate_inputs": True}
        tools = ", ".join(sorted(changes))
        return self._build(
            session_id,
            ToolChange(changes=changes),
            addressed,
            dataset,
            title=f"Harden failing tools: {tools}",
            description="Enables input validation and one extra retry per failing tool.",
            expected_impact="Fewer tool failures and higher run success rate",
            created_at=created_at,
            cost_increase_pct=0.02,
        )

    def _rule_latency_tuning(
        self,
        session_id: str,
        signals: List[Signal],
        dataset: Dataset,
        baseline: AgentVersion,
        created_at: datetime,
    ) -> Optional[Proposal]:
        """Cap output length to bring slow runs under the latency limit."""
        addressed = [s for s in signals if s.type == SignalType.HIGH_LATENCY]
        if not addressed:
            return None
        params = baseline.llm.get("parameters", {})
        current_cap = int(params.get("max_output_tokens", 4096))
        return self._build(
            session_id,
            ModelChange(parameters={"max_output_tokens": max(256, current_cap // 2)}),
            addressed,
            dataset,
            title="Reduce output token budget",
            description=f"Halves max_output_tokens (currently {current_cap}).",
            expected_impact="Lower latency on long-running responses",
            created_at=created_at,
        )
