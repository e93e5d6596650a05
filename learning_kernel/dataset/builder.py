"""
Dataset Builder — selects eligible runs and freezes them into a Dataset.

Behavioral Contract:
- Eligible runs match the criteria statuses and carry evaluation scores
- ``dataset_hash`` is a pure function of (sorted run ids, criteria)
- Fewer eligible runs than the minimum raises InsufficientData
- The produced Dataset is immutable
"""

import hashlib
import json
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import uuid4

import structlog

from learning_kernel.errors import InsufficientData
from learning_kernel.models.dataset import Dataset, SelectionCriteria
from learning_kernel.models.run import AgentRun
from learning_kernel.runs.store import RunStore

logger = structlog.get_logger(__name__)


def compute_dataset_hash(run_ids: List[str], criteria: SelectionCriteria) -> str:
    """Content hash over the sorted run ids and the serialized selection criteria."""
    payload = {
        "runIds": sorted(run_ids),
        "criteria": criteria.model_dump(mode="json", by_alias=True),
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()
    return hashlib.sha256(encoded).hexdigest()


def _is_eligible(run: AgentRun, criteria: SelectionCriteria) -> bool:
    if run.status not in criteria.statuses:
        return False
    if criteria.require_scores and not run.scores:
        return False
    return True


class DatasetBuilder:
    """Materializes the fixed input for one learning cycle."""

    def __init__(self, run_store: RunStore):
        self.run_store = run_store

    def default_criteria(
        self,
        agent_id: str,
        lookback_days: int,
        max_runs: int,
        current_time: Optional[datetime] = None,
    ) -> SelectionCriteria:
        """Time-window criteria ending now."""
        if current_time is None:
            current_time = datetime.utcnow()
        return SelectionCriteria(
            agent_id=agent_id,
            from_date=current_time - timedelta(days=lookback_days),
            to_date=current_time,
            max_runs=max_runs,
        )

    def select_runs(self, criteria: SelectionCriteria) -> List[AgentRun]:
        """Eligible runs for the criteria, most recent ``max_runs`` kept."""
        if criteria.run_ids is not None:
            candidates = [
                r for r in self.run_store.get_many(sorted(set(criteria.run_ids)))
                if r.agent_id == criteria.agent_id
            ]
        else:
            candidates = self.run_store.list_for_agent(
                criteria.agent_id,
                from_date=criteria.from_date,
                to_date=criteria.to_date,
                version_id=criteria.version_id,
            )
        eligible = [r for r in candidates if _is_eligible(r, criteria)]
        # list_for_agent is oldest-first; keep the newest slice
        if len(eligible) > criteria.max_runs:
            eligible = eligible[-criteria.max_runs:]
        return eligible

    def build(
        self,
        session_id: str,
        criteria: SelectionCriteria,
        min_runs: int,
        current_time: Optional[datetime] = None,
    ) -> Dataset:
        """Select runs and freeze them. Raises InsufficientData below ``min_runs``."""
        runs = self.select_runs(criteria)
        if len(runs) < min_runs:
            logger.info(
                "dataset_insufficient",
                session_id=session_id,
                run_count=len(runs),
                minimum=min_runs,
            )
            raise InsufficientData(len(runs), min_runs)

        run_ids = sorted(r.id for r in runs)
        scored = [r.aggregate_score for r in runs if r.aggregate_score is not None]
        avg_score = round(sum(scored) / len(scored), 4) if scored else None

        dataset = Dataset(
            id=f"ds_{uuid4().hex[:12]}",
            session_id=session_id,
            run_count=len(run_ids),
            avg_score=avg_score,
            dataset_hash=compute_dataset_hash(run_ids, criteria),
            from_date=criteria.from_date,
            to_date=criteria.to_date,
            selection_criteria=criteria,
            run_ids=run_ids,
            created_at=current_time or datetime.utcnow(),
        )
        logger.info(
            "dataset_built",
            session_id=session_id,
            dataset_id=dataset.id,
            run_count=dataset.run_count,
            dataset_hash=dataset.dataset_hash,
        )
        return dataset


def scorers_in(runs: List[AgentRun]) -> List[str]:
    """Sorted union of scorer names present in the runs."""
    names = set()
    for run in runs:
        names.update(run.scores.keys())
    return sorted(names)
