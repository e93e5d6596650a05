"""Tests for the learning data models."""

from datetime import datetime

import pytest
from pydantic import ValidationError as PydanticValidationError

from learning_kernel.models import (
    AgentRun,
    Dataset,
    GuardrailChange,
    InstructionsChange,
    LearningSession,
    ModelChange,
    Proposal,
    RunStatus,
    SelectionCriteria,
    SessionStatus,
    ToolChange,
)
from learning_kernel.models.session import ALLOWED_TRANSITIONS, can_transition, is_terminal

NOW = datetime(2026, 3, 2, 12, 0, 0)


def _make_proposal(change, **overrides) -> Proposal:
    fields = dict(
        id="prop_1",
        session_id="ls_1",
        proposal_type=change.kind,
        title="Change",
        description="A change",
        change=change,
        created_at=NOW,
    )
    fields.update(overrides)
    return Proposal(**fields)


class TestSessionTransitions:
    def test_happy_path_edges_exist(self):
        path = [
            SessionStatus.COLLECTING,
            SessionStatus.ANALYZING,
            SessionStatus.PROPOSING,
            SessionStatus.TESTING,
            SessionStatus.AWAITING_APPROVAL,
            SessionStatus.APPROVED,
            SessionStatus.PROMOTED,
        ]
        for src, dst in zip(path, path[1:]):
            assert can_transition(src, dst)

    def test_no_stage_skipping(self):
        assert not can_transition(SessionStatus.COLLECTING, SessionStatus.TESTING)
        assert not can_transition(SessionStatus.ANALYZING, SessionStatus.AWAITING_APPROVAL)
        assert not can_transition(SessionStatus.TESTING, SessionStatus.PROMOTED)

    def test_every_active_state_can_fail_or_cancel(self):
        for status, targets in ALLOWED_TRANSITIONS.items():
            if is_terminal(status):
                assert targets == frozenset()
            else:
                assert SessionStatus.FAILED in targets
                assert SessionStatus.CANCELLED in targets

    def test_testing_can_be_rejected_by_gate(self):
        assert can_transition(SessionStatus.TESTING, SessionStatus.REJECTED)

    def test_session_is_active_until_terminal(self):
        session = LearningSession(
            id="ls_1", agent_id="a1", created_at=NOW, updated_at=NOW, stage_entered_at=NOW
        )
        assert session.is_active
        done = session.model_copy(update={"status": SessionStatus.CANCELLED})
        assert not done.is_active

    def test_api_dump_is_camel_case(self):
        session = LearningSession(
            id="ls_1", agent_id="a1", created_at=NOW, updated_at=NOW, stage_entered_at=NOW
        )
        data = session.to_api()
        assert data["agentId"] == "a1"
        assert data["status"] == "COLLECTING"
        assert "runCount" in data and "completedAt" in data


class TestProposalChanges:
    def test_instructions_require_non_empty_diff(self):
        with pytest.raises(PydanticValidationError):
            InstructionsChange(diff="   ", new_instructions="x")

    def test_tool_change_requires_a_tool(self):
        with pytest.raises(PydanticValidationError):
            ToolChange(changes={})

    def test_discriminated_union_round_trips_through_json(self):
        proposal = _make_proposal(ToolChange(changes={"search": {"max_retries": 2}}))
        restored = Proposal.model_validate_json(proposal.model_dump_json())
        assert isinstance(restored.change, ToolChange)
        assert restored.change.changes["search"]["max_retries"] == 2

    def test_flat_fields_exposed_in_api_view(self):
        proposal = _make_proposal(
            InstructionsChange(diff="+ be concise\n", new_instructions="be concise")
        )
        data = proposal.to_api()
        assert data["instructionsDiff"] == "+ be concise\n"
        assert data["toolChangesJson"] is None
        assert data["change"]["kind"] == "instructions"

    def test_model_change_flat_view(self):
        proposal = _make_proposal(ModelChange(parameters={"temperature": 0.2}))
        assert proposal.to_api()["modelChangesJson"]["parameters"] == {"temperature": 0.2}

    def test_guardrail_change_flat_view(self):
        proposal = _make_proposal(GuardrailChange(changes={"pii_filter": {"mode": "block"}}))
        data = proposal.to_api()
        assert data["guardrailChangesJson"] == {"pii_filter": {"mode": "block"}}
        assert data["instructionsDiff"] is None


class TestRunsAndDatasets:
    def test_aggregate_score_is_mean_of_scorers(self):
        run = AgentRun(id="r1", agent_id="a1", scores={"quality": 0.8, "helpfulness": 0.4})
        assert run.aggregate_score == pytest.approx(0.6)

    def test_unscored_run_has_no_aggregate(self):
        assert AgentRun(id="r1", agent_id="a1").aggregate_score is None

    def test_success_requires_completion_without_tool_failures(self):
        assert AgentRun(id="r1", agent_id="a1").succeeded
        assert not AgentRun(id="r2", agent_id="a1", tool_failures=["search"]).succeeded
        assert not AgentRun(id="r3", agent_id="a1", status=RunStatus.FAILED).succeeded

    def test_dataset_is_immutable(self):
        dataset = Dataset(
            id="ds_1",
            session_id="ls_1",
            run_count=1,
            dataset_hash="abc",
            selection_criteria=SelectionCriteria(agent_id="a1"),
            run_ids=["r1"],
            created_at=NOW,
        )
        with pytest.raises(PydanticValidationError):
            dataset.run_count = 2
