"""
Learning Kernel error taxonomy.

Every error carries a stable machine-readable ``code`` and an HTTP status
hint. The API maps these onto the ``{success: false, error}`` envelope.
"""

from typing import Optional


class LearningError(Exception):
    """Base class for all learning-loop errors."""

    code = "LearningError"
    status_code = 500

    @property
    def public_message(self) -> str:
        return str(self) or self.code


class ValidationError(LearningError):
    """Bad or missing parameters. Never retried."""

    code = "ValidationError"
    status_code = 400


class AgentNotFound(LearningError):
    code = "AgentNotFound"
    status_code = 404


class SessionNotFound(LearningError):
    code = "SessionNotFound"
    status_code = 404


class PolicyDenied(LearningError):
    """Session creation blocked by policy or by the active-session invariant."""

    code = "PolicyDenied"
    status_code = 409

    @property
    def public_message(self) -> str:
        return self.code


class AlreadyActiveSession(PolicyDenied):
    code = "AlreadyActiveSession"


class PolicyDisabled(PolicyDenied):
    code = "PolicyDisabled"


class PolicyPaused(PolicyDenied):
    code = "PolicyPaused"


class TriggerDisabled(PolicyDenied):
    code = "TriggerDisabled"


class CooldownActive(PolicyDenied):
    code = "CooldownActive"


class ConcurrencyLimitReached(PolicyDenied):
    code = "ConcurrencyLimitReached"


class InsufficientData(LearningError):
    code = "InsufficientData"
    status_code = 422

    def __init__(self, run_count: int, minimum: int):
        super().__init__(
            f"insufficient data: {run_count} eligible runs, {minimum} required"
        )
        self.run_count = run_count
        self.minimum = minimum


class ComponentTimeout(LearningError):
    code = "ComponentTimeout"
    status_code = 504

    def __init__(self, stage: str, dwell_minutes: float):
        super().__init__(
            f"stage {stage} exceeded its dwell budget of {dwell_minutes:g} minutes"
        )
        self.stage = stage
        self.dwell_minutes = dwell_minutes


class ExternalDependencyError(LearningError):
    """A collaborator call failed (e.g. model provider). Retried with backoff."""

    code = "ExternalDependencyError"
    status_code = 502

    def __init__(self, message: str, dependency: Optional[str] = None):
        super().__init__(message)
        self.dependency = dependency


class ConcurrencyConflict(LearningError):
    """Two triggers raced on one session. The loser is a no-op."""

    code = "ConcurrencyConflict"
    status_code = 409


class InvalidTransition(LearningError):
    code = "InvalidTransition"
    status_code = 409

    def __init__(self, session_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Session {session_id} cannot move from {from_status} to {to_status}"
        )
        self.from_status = from_status
        self.to_status = to_status


class ApprovalAlreadyRecorded(LearningError):
    code = "ApprovalAlreadyRecorded"
    status_code = 409
