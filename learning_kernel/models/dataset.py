"""Dataset — immutable, content-addressed snapshot of runs for one session."""

from datetime import datetime
from typing import List, Optional

from pydantic import ConfigDict

from learning_kernel.models.base import LearningModel
from learning_kernel.models.run import RunStatus


class SelectionCriteria(LearningModel):
    """How runs are chosen. Serialized into the dataset hash."""

    agent_id: str
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    run_ids: Optional[List[str]] = None     # Explicit selection overrides the window
    version_id: Optional[str] = None
    statuses: List[RunStatus] = [RunStatus.COMPLETED]
    max_runs: int = 100
    require_scores: bool = True


class Dataset(LearningModel):
    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    run_count: int
    avg_score: Optional[float] = None
    dataset_hash: str
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    selection_criteria: SelectionCriteria
    run_ids: List[str]                      # Sorted; referential only
    created_at: datetime
