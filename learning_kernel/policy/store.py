"""
Policy Store — keyed store of per-agent learning policies plus their audit trail.

Behavioral Contract:
- One row per agent. A missing row means "defaults"; the store never invents one.
- Audit entries are append-only.
"""

import json
import sqlite3
import threading
from datetime import datetime
from typing import List, Optional

from learning_kernel.models.policy import LearningPolicy, PolicyAuditEntry


class PolicyStore:
    """
    SQLite-backed policy store. Shares nothing with the session store so
    policy reads never contend with session writes.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS learning_policies (
                    agent_id TEXT PRIMARY KEY,
                    record_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS policy_audit (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    agent_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    actor_id TEXT,
                    details_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_policy_audit_agent ON policy_audit(agent_id)
            """)
            self._conn.commit()

    def get(self, agent_id: str) -> Optional[LearningPolicy]:
        with self._lock:
            row = self._conn.execute(
                "SELECT record_json FROM learning_policies WHERE agent_id = ?", (agent_id,)
            ).fetchone()
        return LearningPolicy.model_validate_json(row["record_json"]) if row else None

    def save(self, policy: LearningPolicy) -> LearningPolicy:
        updated_at = (policy.updated_at or datetime.utcnow()).isoformat()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO learning_policies (agent_id, record_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(agent_id) DO UPDATE SET
                    record_json = excluded.record_json,
                    updated_at = excluded.updated_at
                """,
                (policy.agent_id, policy.model_dump_json(), updated_at),
            )
            self._conn.commit()
        return policy

    def append_audit(
        self,
        agent_id: str,
        action: str,
        actor_id: Optional[str],
        details: dict,
        created_at: Optional[datetime] = None,
    ) -> PolicyAuditEntry:
        created_at = created_at or datetime.utcnow()
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO policy_audit (agent_id, action, actor_id, details_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (agent_id, action, actor_id, json.dumps(details, default=str), created_at.isoformat()),
            )
            self._conn.commit()
            entry_id = cursor.lastrowid
        return PolicyAuditEntry(
            id=entry_id,
            agent_id=agent_id,
            action=action,
            actor_id=actor_id,
            details=details,
            created_at=created_at,
        )

    def list_audit(self, agent_id: str, limit: int = 50) -> List[PolicyAuditEntry]:
        """Most recent first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM policy_audit WHERE agent_id = ? ORDER BY id DESC LIMIT ?",
                (agent_id, limit),
            ).fetchall()
        return [
            PolicyAuditEntry(
                id=row["id"],
                agent_id=row["agent_id"],
                action=row["action"],
                actor_id=row["actor_id"],
                details=json.loads(row["details_json"]),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]
