"""Tests for proposal generation, risk classification and selection."""

from datetime import datetime, timedelta

import pytest

from learning_kernel.agents.registry import AgentRegistry
from learning_kernel.errors import ExternalDependencyError
from learning_kernel.models.agent import AgentVersion, VersionStatus
from learning_kernel.models.dataset import Dataset, SelectionCriteria
from learning_kernel.models.proposal import (
    GuardrailChange,
    InstructionsChange,
    MemoryChange,
    ModelChange,
    Proposal,
    RiskTier,
    ToolChange,
)
from learning_kernel.models.signal import Signal, SignalSeverity, SignalType
from learning_kernel.proposals.generator import (
    RuleBasedProposalGenerator,
    classify_risk_tier,
    estimate_confidence,
    generate_with_retry,
    mark_selected,
    select_proposal,
)

NOW = datetime(2026, 3, 2, 12, 0, 0)


def _make_signal(signal_type: SignalType, subject: str, frequency: int = 10,
                 impact: float = 0.5, severity=SignalSeverity.HIGH) -> Signal:
    return Signal(
        id=f"sig_{signal_type.value}_{subject}",
        session_id="ls_1",
        type=signal_type,
        severity=severity,
        pattern=f"{subject} problem",
        subject=subject,
        frequency=frequency,
        impact=impact,
        created_at=NOW,
    )


def _make_dataset(run_count: int = 30) -> Dataset:
    return Dataset(
        id="ds_1",
        session_id="ls_1",
        run_count=run_count,
        dataset_hash="h",
        selection_criteria=SelectionCriteria(agent_id="a1"),
        run_ids=[f"r{i}" for i in range(run_count)],
        created_at=NOW,
    )


def _make_baseline() -> AgentVersion:
    return AgentVersion(
        id="ver_1",
        agent_id="a1",
        version=1,
        instructions="You are a helpful support agent.",
        tools={"search": {"max_retries": 1}},
        llm={"provider": "acme", "name": "m1", "parameters": {"max_output_tokens": 2048}},
        status=VersionStatus.ACTIVE,
        created_at=NOW,
    )


def _make_proposal(pid: str, confidence, created_at: datetime) -> Proposal:
    return Proposal(
        id=pid,
        session_id="ls_1",
        proposal_type="instructions",
        title=pid,
        description=pid,
        change=InstructionsChange(diff="+x\n", new_instructions="x"),
        confidence_score=confidence,
        created_at=created_at,
    )


class TestRiskClassification:
    def test_instruction_only_is_low(self):
        tier, reasons = classify_risk_tier(InstructionsChange(diff="+a\n", new_instructions="a"))
        assert tier == RiskTier.LOW
        assert reasons

    def test_tool_change_is_medium(self):
        tier, _ = classify_risk_tier(ToolChange(changes={"search": {"timeout": 5}}))
        assert tier == RiskTier.MEDIUM

    def test_model_and_memory_changes_are_high(self):
        assert classify_risk_tier(ModelChange(name="bigger"))[0] == RiskTier.HIGH
        assert classify_risk_tier(MemoryChange(changes={"window": 20}))[0] == RiskTier.HIGH

    def test_guardrail_change_is_high(self):
        tier, reasons = classify_risk_tier(GuardrailChange(changes={"pii_filter": {"mode": "warn"}}))
        assert tier == RiskTier.HIGH
        assert "Contains guardrail policy changes" in reasons

    def test_cost_increase_raises_tier(self):
        change = InstructionsChange(diff="+a\n", new_instructions="a")
        assert classify_risk_tier(change, 0.03)[0] == RiskTier.MEDIUM
        assert classify_risk_tier(change, 0.25)[0] == RiskTier.HIGH


class TestSelection:
    def test_highest_confidence_wins(self):
        proposals = [
            _make_proposal("p1", 0.4, NOW),
            _make_proposal("p2", 0.8, NOW),
            _make_proposal("p3", 0.6, NOW),
        ]
        assert select_proposal(proposals).id == "p2"

    def test_tie_goes_to_most_recent(self):
        proposals = [
            _make_proposal("p1", 0.7, NOW),
            _make_proposal("p2", 0.7, NOW + timedelta(seconds=1)),
        ]
        assert select_proposal(proposals).id == "p2"

    def test_confidence_floor(self):
        proposals = [_make_proposal("p1", 0.2, NOW), _make_proposal("p2", None, NOW)]
        assert select_proposal(proposals, min_confidence=0.3) is None

    def test_selection_ignores_input_order(self):
        proposals = [
            _make_proposal("p1", 0.5, NOW),
            _make_proposal("p2", 0.9, NOW - timedelta(minutes=1)),
        ]
        assert select_proposal(proposals).id == select_proposal(list(reversed(proposals))).id

    def test_mark_selected_flags_exactly_one(self):
        proposals = [_make_proposal(f"p{i}", 0.5, NOW) for i in range(3)]
        marked = mark_selected(proposals, "p1")
        assert [p.is_selected for p in marked] == [False, True, False]


class TestRuleBasedGenerator:
    def setup_method(self):
        self.generator = RuleBasedProposalGenerator()

    def test_one_proposal_per_signal_group(self):
        signals = [
            _make_signal(SignalType.LOW_SCORE, "quality"),
            _make_signal(SignalType.TOOL_FAILURE, "search"),
            _make_signal(SignalType.HIGH_LATENCY, "latency", severity=SignalSeverity.MEDIUM),
        ]
        proposals = self.generator.generate("ls_1", signals, _make_dataset(), _make_baseline())
        kinds = [p.change.kind for p in proposals]
        assert kinds == ["instructions", "tools", "model"]
        assert [p.risk_tier for p in proposals] == [RiskTier.LOW, RiskTier.MEDIUM, RiskTier.HIGH]

    def test_instruction_proposal_has_diff_against_baseline(self):
        signals = [_make_signal(SignalType.LOW_SCORE, "quality")]
        proposal = self.generator.generate("ls_1", signals, _make_dataset(), _make_baseline())[0]
        assert "Quality guidance" in proposal.change.new_instructions
        assert proposal.change.diff.startswith("--- v1")
        assert proposal.signal_ids == ["sig_low_score_quality"]

    def test_tool_hardening_bumps_retries(self):
        signals = [_make_signal(SignalType.TOOL_FAILURE, "search")]
        proposal = self.generator.generate("ls_1", signals, _make_dataset(), _make_baseline())[0]
        assert proposal.change.changes["search"] == {"max_retries": 2, "validate_inputs": True}

    def test_creation_times_strictly_increase(self):
        signals = [
            _make_signal(SignalType.LOW_SCORE, "quality"),
            _make_signal(SignalType.TOOL_FAILURE, "search"),
        ]
        proposals = self.generator.generate("ls_1", signals, _make_dataset(), _make_baseline())
        assert proposals[0].created_at < proposals[1].created_at

    def test_confidence_grows_with_severity(self):
        dataset = _make_dataset()
        high = estimate_confidence([_make_signal(SignalType.LOW_SCORE, "q")], dataset)
        low = estimate_confidence(
            [_make_signal(SignalType.LOW_SCORE, "q", severity=SignalSeverity.LOW)], dataset
        )
        assert high > low
        assert estimate_confidence([], dataset) == 0.0


class _FlakyGenerator:
    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def generate(self, session_id, signals, dataset, baseline, current_time=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise ExternalDependencyError("model provider unavailable", dependency="llm")
        return [_make_proposal("p1", 0.9, NOW)]


class TestGenerationRetry:
    def test_retries_then_succeeds(self):
        sleeps = []
        generator = _FlakyGenerator(failures=2)
        proposals = generate_with_retry(
            generator, "ls_1", [], _make_dataset(), _make_baseline(),
            max_attempts=3, backoff_seconds=0.5, sleep=sleeps.append,
        )
        assert [p.id for p in proposals] == ["p1"]
        assert sleeps == [0.5, 1.0]

    def test_gives_up_after_budget(self):
        sleeps = []
        generator = _FlakyGenerator(failures=5)
        with pytest.raises(ExternalDependencyError):
            generate_with_retry(
                generator, "ls_1", [], _make_dataset(), _make_baseline(),
                max_attempts=3, backoff_seconds=0.1, sleep=sleeps.append,
            )
        assert generator.calls == 3
        assert len(sleeps) == 2


class TestCandidateVersions:
    def test_guardrail_change_is_merged_into_candidate(self):
        registry = AgentRegistry()
        agent = registry.register_agent("support-bot", instructions="Be helpful.")
        proposal = Proposal(
            id="prop_g1",
            session_id="ls_1",
            proposal_type="guardrails",
            title="Relax PII filter",
            description="Warn instead of blocking",
            change=GuardrailChange(changes={"pii_filter": {"mode": "warn"}}),
            created_at=NOW,
        )
        candidate = registry.create_candidate_version(agent.id, proposal)
        assert candidate.version == 2
        assert candidate.status == VersionStatus.DRAFT
        assert candidate.guardrails == {"pii_filter": {"mode": "warn"}}
        assert registry.active_version(agent.id).guardrails == {}
