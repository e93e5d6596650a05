"""Agent Run — one execution of an agent, owned by the execution subsystem."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import Field

from learning_kernel.models.base import LearningModel


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentRun(LearningModel):
    """A single agent execution with its evaluation results."""

    id: str
    agent_id: str
    version_id: Optional[str] = None        # Version that served the run
    status: RunStatus = RunStatus.COMPLETED
    scores: Dict[str, float] = {}           # scorer name -> score in [0, 1]
    tool_calls: List[str] = []              # Tool names invoked
    tool_failures: List[str] = []           # Tool names whose call failed
    feedback: Optional[str] = None          # "positive" | "negative" | "neutral"
    latency_ms: Optional[float] = Field(default=None, ge=0)
    cost_usd: Optional[float] = Field(default=None, ge=0)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def aggregate_score(self) -> Optional[float]:
        """Mean over all scorers, or None when the run was not evaluated."""
        if not self.scores:
            return None
        return sum(self.scores.values()) / len(self.scores)

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.COMPLETED and not self.tool_failures
