"""
Session State Machine — sole writer of a learning session's status.

Behavioral Contract:
- Status moves only along ALLOWED_TRANSITIONS. Anything else raises
  InvalidTransition and changes nothing.
- A stage commit names the status it expects to leave. If the session has
  moved on (typically cancelled), the commit raises ConcurrencyConflict and
  its artifact writes are rolled back with it.
- Every transition updates ``updated_at`` and ``stage_entered_at``, sets
  ``completed_at`` on entering a terminal state, is persisted as a
  TransitionEvent and is pushed to subscribers after commit.
- Cancelling or failing a terminal session is a no-op.
- Human and automatic approvals go through ``record_approval``; one per session.
"""

import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional
from uuid import uuid4

import structlog

from learning_kernel.errors import (
    ConcurrencyConflict,
    InvalidTransition,
    SessionNotFound,
    ValidationError,
)
from learning_kernel.models.approval import Approval, ApprovalDecision, ApprovalSource
from learning_kernel.models.session import (
    LearningSession,
    SessionStatus,
    TransitionEvent,
    TriggerType,
    can_transition,
    is_terminal,
)
from learning_kernel.session.store import SessionStore

logger = structlog.get_logger(__name__)

Subscriber = Callable[[TransitionEvent], None]


class SessionStateMachine:
    def __init__(self, store: Optional[SessionStore] = None):
        self.store = store or SessionStore()
        self._subscribers: List[Subscriber] = []
        self._guard = threading.Lock()
        self._session_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

    # ----------------------------------------------------------------
    # Observation
    # ----------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register for transition events. Returns an unsubscribe function."""
        with self._guard:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._guard:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, event: TransitionEvent) -> None:
        with self._guard:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "subscriber_failed", session_id=event.session_id, to_status=event.to_status.value
                )

    def get(self, session_id: str) -> LearningSession:
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Learning session {session_id} not found")
        return session

    @contextmanager
    def advance_lock(self, session_id: str) -> Iterator[None]:
        """
        Exclusive right to advance one session. A second caller does not
        wait: it gets ConcurrencyConflict and should treat it as a no-op.
        """
        with self._guard:
            lock = self._session_locks[session_id]
        if not lock.acquire(blocking=False):
            raise ConcurrencyConflict(f"Session {session_id} is already being advanced")
        try:
            yield
        finally:
            lock.release()

    # ----------------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------------

    def create(
        self,
        agent_id: str,
        trigger_type: TriggerType = TriggerType.MANUAL,
        trigger_reason: Optional[str] = None,
        baseline_version: Optional[int] = None,
        scorer_config: Optional[List[str]] = None,
        current_time: Optional[datetime] = None,
    ) -> LearningSession:
        """New session in COLLECTING. Raises AlreadyActiveSession on a race."""
        if current_time is None:
            current_time = datetime.utcnow()
        session = LearningSession(
            id=f"ls_{uuid4().hex[:12]}",
            agent_id=agent_id,
            status=SessionStatus.COLLECTING,
            baseline_version=baseline_version,
            scorer_config=sorted(scorer_config or []),
            metadata={
                "triggerType": trigger_type.value,
                "triggerReason": trigger_reason,
            },
            created_at=current_time,
            updated_at=current_time,
            stage_entered_at=current_time,
        )
        event = TransitionEvent(
            session_id=session.id,
            agent_id=agent_id,
            from_status=None,
            to_status=SessionStatus.COLLECTING,
            reason=trigger_reason,
            occurred_at=current_time,
        )
        with self.store.transaction():
            self.store.insert_session(session)
            self.store.append_transition(event)

        logger.info(
            "session_created",
            session_id=session.id,
            agent_id=agent_id,
            trigger_type=trigger_type.value,
        )
        self._publish(event)
        return session

    def commit_stage(
        self,
        session_id: str,
        expected: SessionStatus,
        to_status: SessionStatus,
        reason: Optional[str] = None,
        updates: Optional[dict] = None,
        metadata: Optional[dict] = None,
        writes: Optional[Callable[[], None]] = None,
        current_time: Optional[datetime] = None,
    ) -> LearningSession:
        """
        Atomically move ``expected`` -> ``to_status`` together with the
        stage's artifact ``writes``.
        """
        if current_time is None:
            current_time = datetime.utcnow()

        with self.store.transaction():
            session = self.get(session_id)
            if session.status != expected:
                raise ConcurrencyConflict(
                    f"Session {session_id} is {session.status.value}, expected {expected.value}"
                )
            if not can_transition(session.status, to_status):
                raise InvalidTransition(session_id, session.status.value, to_status.value)

            if writes is not None:
                writes()

            changes = dict(updates or {})
            changes.update({
                "status": to_status,
                "updated_at": current_time,
                "stage_entered_at": current_time,
                "metadata": {**session.metadata, **(metadata or {})},
            })
            if is_terminal(to_status):
                changes["completed_at"] = current_time
            updated = session.model_copy(update=changes)
            event = TransitionEvent(
                session_id=session_id,
                agent_id=session.agent_id,
                from_status=session.status,
                to_status=to_status,
                reason=reason,
                occurred_at=current_time,
            )
            self.store.update_session(updated)
            self.store.append_transition(event)

        logger.info(
            "session_transition",
            session_id=session_id,
            agent_id=session.agent_id,
            from_status=session.status.value,
            to_status=to_status.value,
            reason=reason,
        )
        self._publish(event)
        return updated

    def touch(
        self,
        session_id: str,
        expected: SessionStatus,
        updates: Optional[dict] = None,
        metadata: Optional[dict] = None,
        current_time: Optional[datetime] = None,
    ) -> LearningSession:
        """Update non-status fields without a transition."""
        if current_time is None:
            current_time = datetime.utcnow()
        with self.store.transaction():
            session = self.get(session_id)
            if session.status != expected:
                raise ConcurrencyConflict(
                    f"Session {session_id} is {session.status.value}, expected {expected.value}"
                )
            changes = dict(updates or {})
            changes["updated_at"] = current_time
            changes["metadata"] = {**session.metadata, **(metadata or {})}
            updated = session.model_copy(update=changes)
            self.store.update_session(updated)
        return updated

    def fail(
        self,
        session_id: str,
        reason: str,
        stage: Optional[SessionStatus] = None,
        current_time: Optional[datetime] = None,
    ) -> LearningSession:
        """Move an active session to FAILED with ``metadata.failureReason``."""
        session = self.get(session_id)
        if is_terminal(session.status):
            return session
        if stage is not None and session.status != stage:
            # The stage that failed is no longer current; nothing to fail.
            return session
        failed_stage = session.status
        session = self.commit_stage(
            session_id,
            session.status,
            SessionStatus.FAILED,
            reason=reason,
            metadata={"failureReason": reason, "failedStage": failed_stage.value},
            current_time=current_time,
        )
        logger.warning(
            "stage_failed",
            session_id=session_id,
            agent_id=session.agent_id,
            stage=failed_stage.value,
            reason=reason,
        )
        return session

    def cancel(
        self,
        session_id: str,
        reason: Optional[str] = None,
        cancelled_by: Optional[str] = None,
        current_time: Optional[datetime] = None,
    ) -> LearningSession:
        """Cancel an active session. Terminal sessions are returned unchanged."""
        while True:
            session = self.get(session_id)
            if is_terminal(session.status):
                return session
            try:
                return self.commit_stage(
                    session_id,
                    session.status,
                    SessionStatus.CANCELLED,
                    reason=reason,
                    metadata={
                        "cancelReason": reason,
                        "cancelledBy": cancelled_by,
                        "cancelledFromStatus": session.status.value,
                    },
                    current_time=current_time,
                )
            except ConcurrencyConflict:
                # Status moved under us; re-read and try again.
                continue

    def reject_auto(
        self,
        session_id: str,
        rationale: str,
        gating_reasons: Optional[List[str]] = None,
        writes: Optional[Callable[[], None]] = None,
        current_time: Optional[datetime] = None,
    ) -> LearningSession:
        """TESTING -> REJECTED after a failed gate. No Approval is written."""
        return self.commit_stage(
            session_id,
            SessionStatus.TESTING,
            SessionStatus.REJECTED,
            reason=rationale,
            metadata={
                "rejectionReason": rationale,
                "gatingReasons": gating_reasons or [],
                "rejectedBy": "gating",
            },
            writes=writes,
            current_time=current_time,
        )

    def record_approval(
        self,
        session_id: str,
        decision: ApprovalDecision,
        source: ApprovalSource,
        approved_by: Optional[str] = None,
        rationale: Optional[str] = None,
        promote: Optional[Callable[[LearningSession], str]] = None,
        current_time: Optional[datetime] = None,
    ) -> Approval:
        """
        Record the one decision for a session awaiting approval.

        approved / auto_approved: AWAITING_APPROVAL -> APPROVED, then
        ``promote`` returns the promoted version id and the session moves to
        PROMOTED. rejected: AWAITING_APPROVAL -> REJECTED.
        """
        if current_time is None:
            current_time = datetime.utcnow()
        if source == ApprovalSource.AUTO and decision != ApprovalDecision.AUTO_APPROVED:
            raise ValidationError("Automatic approvals must use the auto_approved decision")
        if source == ApprovalSource.HUMAN and decision == ApprovalDecision.AUTO_APPROVED:
            raise ValidationError("Human decisions cannot be auto_approved")

        approval = Approval(
            id=f"apr_{uuid4().hex[:12]}",
            session_id=session_id,
            decision=decision,
            rationale=rationale,
            approved_by=approved_by,
            auto_approved=(source == ApprovalSource.AUTO),
            reviewed_at=current_time,
            created_at=current_time,
        )
        approving = decision != ApprovalDecision.REJECTED
        to_status = SessionStatus.APPROVED if approving else SessionStatus.REJECTED
        metadata = {"decidedBy": approved_by, "decisionSource": source.value}
        if not approving:
            metadata["rejectionReason"] = rationale

        session = self.get(session_id)
        if session.status != SessionStatus.AWAITING_APPROVAL:
            raise InvalidTransition(session_id, session.status.value, to_status.value)

        session = self.commit_stage(
            session_id,
            SessionStatus.AWAITING_APPROVAL,
            to_status,
            reason=rationale or decision.value,
            metadata=metadata,
            writes=lambda: self.store.insert_approval(approval),
            current_time=current_time,
        )
        logger.info(
            "approval_recorded",
            session_id=session_id,
            decision=decision.value,
            source=source.value,
            approved_by=approved_by,
        )
        if not approving or promote is None:
            return approval

        try:
            promoted_version_id = promote(session)
        except Exception as exc:
            logger.exception("promotion_failed", session_id=session_id)
            self.fail(session_id, f"promotion failed: {exc}", current_time=current_time)
            raise

        approval = approval.model_copy(update={"promoted_version_id": promoted_version_id})
        self.commit_stage(
            session_id,
            SessionStatus.APPROVED,
            SessionStatus.PROMOTED,
            reason="candidate promoted",
            metadata={"promotedVersionId": promoted_version_id},
            writes=lambda: self.store.update_approval(approval),
            current_time=current_time,
        )
        return approval
