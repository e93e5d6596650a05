"""Proposal — a candidate change to an agent, derived from signals."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import Field, field_validator

from learning_kernel.models.base import LearningModel


class RiskTier(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class InstructionsChange(LearningModel):
    kind: Literal["instructions"] = "instructions"
    diff: str                               # Unified diff against baseline instructions
    new_instructions: str

    @field_validator("diff")
    @classmethod
    def _diff_not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("instructions proposals require a non-empty diff")
        return value


class ToolChange(LearningModel):
    kind: Literal["tools"] = "tools"
    changes: Dict[str, dict]                # tool name -> config patch

    @field_validator("changes")
    @classmethod
    def _changes_not_empty(cls, value: Dict[str, dict]) -> Dict[str, dict]:
        if not value:
            raise ValueError("tool proposals must change at least one tool")
        return value


class MemoryChange(LearningModel):
    kind: Literal["memory"] = "memory"
    changes: dict

    @field_validator("changes")
    @classmethod
    def _changes_not_empty(cls, value: dict) -> dict:
        if not value:
            raise ValueError("memory proposals must change at least one setting")
        return value


class GuardrailChange(LearningModel):
    kind: Literal["guardrails"] = "guardrails"
    changes: dict                           # guardrail name -> policy patch

    @field_validator("changes")
    @classmethod
    def _changes_not_empty(cls, value: dict) -> dict:
        if not value:
            raise ValueError("guardrail proposals must change at least one policy")
        return value


class ModelChange(LearningModel):
    kind: Literal["model"] = "model"
    provider: Optional[str] = None
    name: Optional[str] = None
    parameters: dict = {}


ProposalChange = Annotated[
    Union[InstructionsChange, ToolChange, MemoryChange, ModelChange, GuardrailChange],
    Field(discriminator="kind"),
]


class Proposal(LearningModel):
    id: str
    session_id: str
    proposal_type: str                      # Mirrors change.kind
    title: str
    description: str
    change: ProposalChange
    signal_ids: List[str] = []              # Signals this proposal addresses
    expected_impact: Optional[str] = None
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    risk_tier: RiskTier = RiskTier.LOW
    risk_reasons: List[str] = []
    estimated_cost_increase_pct: float = 0.0
    generated_by: str = "rule_based_generator"
    candidate_version_id: Optional[str] = None
    is_selected: bool = False
    created_at: datetime

    def flat_changes(self) -> dict:
        """The wide nullable-field view older dashboards read."""
        change = self.change
        return {
            "instructionsDiff": change.diff if isinstance(change, InstructionsChange) else None,
            "toolChangesJson": change.changes if isinstance(change, ToolChange) else None,
            "memoryChangesJson": change.changes if isinstance(change, MemoryChange) else None,
            "modelChangesJson": (
                change.model_dump(mode="json", exclude={"kind"})
                if isinstance(change, ModelChange) else None
            ),
            "guardrailChangesJson": change.changes if isinstance(change, GuardrailChange) else None,
        }

    def to_api(self) -> dict:
        data = super().to_api()
        data.update(self.flat_changes())
        return data
