"""
Session Store — durable state for learning sessions and their artifacts.

Behavioral Contract:
- At most one active session per agent, enforced by a partial UNIQUE index
  on sessions(agent_id) WHERE active = 1. Check-then-create is one INSERT.
- At most one approval per session (UNIQUE on approvals.session_id).
- At most one dataset per session.
- Sessions and transitions are never deleted.
- Writes issued inside ``transaction()`` commit or roll back together.
"""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional

from learning_kernel.errors import AlreadyActiveSession, ApprovalAlreadyRecorded
from learning_kernel.models.approval import Approval
from learning_kernel.models.dataset import Dataset
from learning_kernel.models.experiment import Experiment, ExperimentStatus
from learning_kernel.models.proposal import Proposal
from learning_kernel.models.session import LearningSession, SessionStatus, TransitionEvent
from learning_kernel.models.signal import Signal


class SessionStore:
    """
    SQLite-backed store. One connection in autocommit mode guarded by a
    re-entrant lock; ``transaction()`` wraps a block in BEGIN IMMEDIATE.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    agent_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    active INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    record_json TEXT NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS uq_sessions_one_active
                    ON sessions(agent_id) WHERE active = 1;
                CREATE INDEX IF NOT EXISTS idx_sessions_agent ON sessions(agent_id, created_at);

                CREATE TABLE IF NOT EXISTS datasets (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL UNIQUE,
                    record_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS signals (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    record_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_signals_session ON signals(session_id);

                CREATE TABLE IF NOT EXISTS proposals (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    record_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_proposals_session ON proposals(session_id);

                CREATE TABLE IF NOT EXISTS experiments (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    record_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_experiments_session ON experiments(session_id);

                CREATE TABLE IF NOT EXISTS approvals (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL UNIQUE,
                    record_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS transitions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    record_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_transitions_session ON transitions(session_id);
            """)

    @contextmanager
    def transaction(self) -> Iterator["SessionStore"]:
        """Run a block atomically. Nested calls join the outer transaction."""
        with self._lock:
            if self._in_transaction:
                yield self
                return
            self._conn.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield self
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._in_transaction = False

    # ----------------------------------------------------------------
    # Sessions
    # ----------------------------------------------------------------

    def insert_session(self, session: LearningSession) -> LearningSession:
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO sessions (id, agent_id, status, active, created_at, updated_at, record_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session.id,
                        session.agent_id,
                        session.status.value,
                        int(session.is_active),
                        session.created_at.isoformat(),
                        session.updated_at.isoformat(),
                        session.model_dump_json(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise AlreadyActiveSession(
                    f"Agent {session.agent_id} already has an active learning session"
                ) from exc
        return session

    def update_session(self, session: LearningSession) -> LearningSession:
        with self._lock:
            self._conn.execute(
                """
                UPDATE sessions SET status = ?, active = ?, updated_at = ?, record_json = ?
                WHERE id = ?
                """,
                (
                    session.status.value,
                    int(session.is_active),
                    session.updated_at.isoformat(),
                    session.model_dump_json(),
                    session.id,
                ),
            )
        return session

    def get_session(self, session_id: str) -> Optional[LearningSession]:
        with self._lock:
            row = self._conn.execute(
                "SELECT record_json FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return LearningSession.model_validate_json(row["record_json"]) if row else None

    def get_active_session(self, agent_id: str) -> Optional[LearningSession]:
        with self._lock:
            row = self._conn.execute(
                "SELECT record_json FROM sessions WHERE agent_id = ? AND active = 1",
                (agent_id,),
            ).fetchone()
        return LearningSession.model_validate_json(row["record_json"]) if row else None

    def list_sessions(
        self,
        agent_id: Optional[str] = None,
        statuses: Optional[Iterable[SessionStatus]] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[LearningSession]:
        """Newest first."""
        clauses, params = [], []
        if agent_id is not None:
            clauses.append("agent_id = ?")
            params.append(agent_id)
        if statuses is not None:
            values = [s.value for s in statuses]
            if not values:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(since.isoformat())
        query = "SELECT record_json FROM sessions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [LearningSession.model_validate_json(r["record_json"]) for r in rows]

    def list_active_sessions(self) -> List[LearningSession]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT record_json FROM sessions WHERE active = 1 ORDER BY created_at"
            ).fetchall()
        return [LearningSession.model_validate_json(r["record_json"]) for r in rows]

    def count_active_sessions(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM sessions WHERE active = 1").fetchone()
        return row["n"]

    def last_session_created_at(self, agent_id: str) -> Optional[datetime]:
        with self._lock:
            row = self._conn.execute(
                "SELECT MAX(created_at) AS ts FROM sessions WHERE agent_id = ?", (agent_id,)
            ).fetchone()
        return datetime.fromisoformat(row["ts"]) if row and row["ts"] else None

    def artifact_counts(self, session_ids: List[str]) -> Dict[str, Dict[str, int]]:
        """Signal, proposal and experiment counts per session."""
        counts = {sid: {"signalCount": 0, "proposalCount": 0, "experimentCount": 0} for sid in session_ids}
        if not session_ids:
            return counts
        marks = ", ".join("?" for _ in session_ids)
        with self._lock:
            for table, key in (
                ("signals", "signalCount"),
                ("proposals", "proposalCount"),
                ("experiments", "experimentCount"),
            ):
                rows = self._conn.execute(
                    f"SELECT session_id, COUNT(*) AS n FROM {table} "
                    f"WHERE session_id IN ({marks}) GROUP BY session_id",
                    session_ids,
                ).fetchall()
                for row in rows:
                    counts[row["session_id"]][key] = row["n"]
        return counts

    # ----------------------------------------------------------------
    # Artifacts
    # ----------------------------------------------------------------

    def save_dataset(self, dataset: Dataset) -> Dataset:
        with self._lock:
            self._conn.execute(
                "INSERT INTO datasets (id, session_id, record_json) VALUES (?, ?, ?)",
                (dataset.id, dataset.session_id, dataset.model_dump_json()),
            )
        return dataset

    def get_dataset(self, session_id: str) -> Optional[Dataset]:
        with self._lock:
            row = self._conn.execute(
                "SELECT record_json FROM datasets WHERE session_id = ?", (session_id,)
            ).fetchone()
        return Dataset.model_validate_json(row["record_json"]) if row else None

    def save_signals(self, session_id: str, signals: List[Signal]) -> None:
        with self._lock:
            self._conn.executemany(
                "INSERT INTO signals (id, session_id, position, record_json) VALUES (?, ?, ?, ?)",
                [(s.id, session_id, i, s.model_dump_json()) for i, s in enumerate(signals)],
            )

    def get_signals(self, session_id: str) -> List[Signal]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT record_json FROM signals WHERE session_id = ? ORDER BY position",
                (session_id,),
            ).fetchall()
        return [Signal.model_validate_json(r["record_json"]) for r in rows]

    def save_proposals(self, session_id: str, proposals: List[Proposal]) -> None:
        with self._lock:
            self._conn.executemany(
                "INSERT INTO proposals (id, session_id, position, record_json) VALUES (?, ?, ?, ?)",
                [(p.id, session_id, i, p.model_dump_json()) for i, p in enumerate(proposals)],
            )

    def get_proposals(self, session_id: str) -> List[Proposal]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT record_json FROM proposals WHERE session_id = ? ORDER BY position",
                (session_id,),
            ).fetchall()
        return [Proposal.model_validate_json(r["record_json"]) for r in rows]

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        with self._lock:
            row = self._conn.execute(
                "SELECT record_json FROM proposals WHERE id = ?", (proposal_id,)
            ).fetchone()
        return Proposal.model_validate_json(row["record_json"]) if row else None

    def save_experiment(self, experiment: Experiment) -> Experiment:
        """Insert or replace. Finished experiments are never overwritten."""
        with self._lock:
            existing = self.get_experiment(experiment.id)
            if existing is not None and existing.is_finished:
                return existing
            self._conn.execute(
                """
                INSERT INTO experiments (id, session_id, status, created_at, record_json)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    record_json = excluded.record_json
                """,
                (
                    experiment.id,
                    experiment.session_id,
                    experiment.status.value,
                    experiment.created_at.isoformat(),
                    experiment.model_dump_json(),
                ),
            )
        return experiment

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        with self._lock:
            row = self._conn.execute(
                "SELECT record_json FROM experiments WHERE id = ?", (experiment_id,)
            ).fetchone()
        return Experiment.model_validate_json(row["record_json"]) if row else None

    def get_experiments(self, session_id: str) -> List[Experiment]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT record_json FROM experiments WHERE session_id = ? ORDER BY created_at",
                (session_id,),
            ).fetchall()
        return [Experiment.model_validate_json(r["record_json"]) for r in rows]

    def list_experiments(
        self,
        agent_id: Optional[str] = None,
        statuses: Optional[Iterable[ExperimentStatus]] = None,
    ) -> List[Experiment]:
        """Newest first, optionally filtered by the owning session's agent."""
        query = (
            "SELECT e.record_json FROM experiments e "
            "JOIN sessions s ON s.id = e.session_id"
        )
        clauses, params = [], []
        if agent_id is not None:
            clauses.append("s.agent_id = ?")
            params.append(agent_id)
        if statuses is not None:
            values = [s.value for s in statuses]
            if not values:
                return []
            clauses.append(f"e.status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY e.created_at DESC"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [Experiment.model_validate_json(r["record_json"]) for r in rows]

    def insert_approval(self, approval: Approval) -> Approval:
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO approvals (id, session_id, record_json) VALUES (?, ?, ?)",
                    (approval.id, approval.session_id, approval.model_dump_json()),
                )
            except sqlite3.IntegrityError as exc:
                raise ApprovalAlreadyRecorded(
                    f"Session {approval.session_id} already has an approval"
                ) from exc
        return approval

    def update_approval(self, approval: Approval) -> Approval:
        with self._lock:
            self._conn.execute(
                "UPDATE approvals SET record_json = ? WHERE id = ?",
                (approval.model_dump_json(), approval.id),
            )
        return approval

    def get_approval(self, session_id: str) -> Optional[Approval]:
        with self._lock:
            row = self._conn.execute(
                "SELECT record_json FROM approvals WHERE session_id = ?", (session_id,)
            ).fetchone()
        return Approval.model_validate_json(row["record_json"]) if row else None

    def append_transition(self, event: TransitionEvent) -> TransitionEvent:
        with self._lock:
            self._conn.execute(
                "INSERT INTO transitions (session_id, record_json) VALUES (?, ?)",
                (event.session_id, event.model_dump_json()),
            )
        return event

    def get_transitions(self, session_id: str) -> List[TransitionEvent]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT record_json FROM transitions WHERE session_id = ? ORDER BY id",
                (session_id,),
            ).fetchall()
        return [TransitionEvent.model_validate_json(r["record_json"]) for r in rows]
