"""
Run Store — agent execution runs as seen by the learning loop.

Updated by: Execution subsystem (run ingestion)
Queried by: Dataset Builder, Threshold trigger, Experiment Runner
"""

import threading
from datetime import datetime
from typing import Dict, List, Optional

from learning_kernel.models.run import AgentRun


def _run_time(run: AgentRun) -> Optional[datetime]:
    return run.completed_at or run.started_at


class RunStore:
    """
    In-memory run store.
    Runs are owned by the execution subsystem; this is a read model.
    """

    def __init__(self):
        self._runs: Dict[str, AgentRun] = {}
        self._lock = threading.Lock()

    def add(self, run: AgentRun) -> None:
        """Insert or replace a run."""
        with self._lock:
            self._runs[run.id] = run

    def get(self, run_id: str) -> Optional[AgentRun]:
        return self._runs.get(run_id)

    def get_many(self, run_ids: List[str]) -> List[AgentRun]:
        return [self._runs[r] for r in run_ids if r in self._runs]

    def list_for_agent(
        self,
        agent_id: str,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        version_id: Optional[str] = None,
    ) -> List[AgentRun]:
        """Runs for an agent inside an optional time window, oldest first."""
        with self._lock:
            runs = [r for r in self._runs.values() if r.agent_id == agent_id]

        selected = []
        for run in runs:
            if version_id and run.version_id != version_id:
                continue
            ts = _run_time(run)
            if from_date and (ts is None or ts < from_date):
                continue
            if to_date and (ts is None or ts > to_date):
                continue
            selected.append(run)
        return sorted(selected, key=lambda r: (_run_time(r) or datetime.min, r.id))

    def count(self) -> int:
        return len(self._runs)
