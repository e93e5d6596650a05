"""Signal — a detected recurring quality issue in a dataset."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import Field

from learning_kernel.models.base import LearningModel


class SignalType(str, Enum):
    LOW_SCORE = "low_score"
    TOOL_FAILURE = "tool_failure"
    NEGATIVE_FEEDBACK = "negative_feedback"
    HIGH_LATENCY = "high_latency"


class SignalSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


SEVERITY_WEIGHT = {
    SignalSeverity.LOW: 0.3,
    SignalSeverity.MEDIUM: 0.6,
    SignalSeverity.HIGH: 1.0,
}


class SignalEvidence(LearningModel):
    run_id: str
    scores: Dict[str, float] = {}


class Signal(LearningModel):
    id: str
    session_id: str
    type: SignalType
    severity: Optional[SignalSeverity] = None
    pattern: str                            # Human-readable description
    subject: str                            # Scorer or tool the signal is about
    frequency: int = Field(ge=0)
    impact: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    evidence: List[SignalEvidence] = []
    created_at: datetime

    def fingerprint(self) -> tuple:
        """Content identity, independent of detection time."""
        return (
            self.type.value,
            self.subject,
            self.severity.value if self.severity else None,
            self.frequency,
            self.impact,
            tuple(e.run_id for e in self.evidence),
        )
