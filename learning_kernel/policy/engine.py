"""
Policy Engine — per-agent rules for when learning may run and what it may do.

Behavioral Contract:
- No stored policy means defaults: enabled, auto-promotion off, scheduled
  and threshold triggers on.
- A pause whose ``paused_until`` has passed is lifted on the next read.
- Reads and writes for one agent are serialized; agents never block each other.
- Every update, pause and resume is written to the audit trail.
- Manual triggers check only enabled/paused/active-session. Automatic
  triggers also need their switch on, the cooldown elapsed and a free
  concurrency slot.
"""

import threading
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import structlog
from croniter import croniter
from pydantic import ValidationError as PydanticValidationError

from learning_kernel.errors import (
    AlreadyActiveSession,
    ConcurrencyLimitReached,
    CooldownActive,
    PolicyDenied,
    PolicyDisabled,
    PolicyPaused,
    TriggerDisabled,
    ValidationError,
)
from learning_kernel.models.config import LearningConfig
from learning_kernel.models.policy import (
    EffectiveConfig,
    LearningPolicy,
    PolicyAuditEntry,
    PolicyCheck,
)
from learning_kernel.models.proposal import RiskTier
from learning_kernel.models.session import TriggerType
from learning_kernel.policy.store import PolicyStore

logger = structlog.get_logger(__name__)

UPDATABLE_FIELDS = frozenset({
    "enabled",
    "auto_promotion_enabled",
    "scheduled_enabled",
    "threshold_enabled",
    "signal_threshold",
    "signal_window_minutes",
    "traffic_split_candidate",
    "min_confidence_for_auto",
    "min_win_rate_for_auto",
})

ACTION_UPDATED = "LEARNING_POLICY_UPDATED"
ACTION_PAUSED = "LEARNING_PAUSED"
ACTION_RESUMED = "LEARNING_RESUMED"

_DENIALS: Dict[str, type] = {
    AlreadyActiveSession.code: AlreadyActiveSession,
    PolicyDisabled.code: PolicyDisabled,
    PolicyPaused.code: PolicyPaused,
    TriggerDisabled.code: TriggerDisabled,
    CooldownActive.code: CooldownActive,
    ConcurrencyLimitReached.code: ConcurrencyLimitReached,
}


def _field_name(key: str) -> Optional[str]:
    """Accept either snake_case field names or their camelCase aliases."""
    for name, info in LearningPolicy.model_fields.items():
        if key == name or key == info.alias:
            return name
    return None


class PolicyEngine:
    """Holds one policy per agent and answers admission questions."""

    def __init__(self, store: Optional[PolicyStore] = None, config: Optional[LearningConfig] = None):
        self.config = config or LearningConfig()
        self.store = store or PolicyStore(self.config.db_path)
        self._guard = threading.Lock()
        self._agent_locks: Dict[str, threading.RLock] = defaultdict(threading.RLock)

    def _lock_for(self, agent_id: str) -> threading.RLock:
        with self._guard:
            return self._agent_locks[agent_id]

    def _defaults(self, agent_id: str) -> LearningPolicy:
        return LearningPolicy(
            agent_id=agent_id,
            auto_promotion_enabled=self.config.auto_promotion_enabled,
        )

    # ----------------------------------------------------------------
    # Reads
    # ----------------------------------------------------------------

    def get_policy(self, agent_id: str, current_time: Optional[datetime] = None) -> LearningPolicy:
        """Stored policy or defaults. Lifts an expired pause."""
        if current_time is None:
            current_time = datetime.utcnow()
        with self._lock_for(agent_id):
            policy = self.store.get(agent_id)
            if policy is None:
                return self._defaults(agent_id)
            if policy.paused and policy.paused_until and policy.paused_until <= current_time:
                policy = policy.model_copy(update={
                    "paused": False,
                    "paused_until": None,
                    "pause_reason": None,
                    "updated_by": "system",
                    "updated_at": current_time,
                })
                self.store.save(policy)
                self.store.append_audit(
                    agent_id, ACTION_RESUMED, "system", {"reason": "pause expired"}, current_time
                )
                logger.info("learning_pause_expired", agent_id=agent_id)
            return policy

    def effective_config(
        self, agent_id: str, current_time: Optional[datetime] = None
    ) -> EffectiveConfig:
        """Policy overrides merged over the global defaults."""
        policy = self.get_policy(agent_id, current_time)
        return self.resolve(policy)

    def resolve(self, policy: LearningPolicy) -> EffectiveConfig:
        def pick(override, default):
            return default if override is None else override

        return EffectiveConfig(
            enabled=policy.enabled,
            auto_promotion_enabled=policy.auto_promotion_enabled,
            scheduled_enabled=policy.scheduled_enabled,
            threshold_enabled=policy.threshold_enabled,
            signal_threshold=pick(policy.signal_threshold, self.config.signal_threshold),
            signal_window_minutes=pick(
                policy.signal_window_minutes, self.config.signal_window_minutes
            ),
            traffic_split_candidate=pick(
                policy.traffic_split_candidate, self.config.traffic_split_candidate
            ),
            min_confidence_for_auto=pick(
                policy.min_confidence_for_auto, self.config.min_confidence_for_auto
            ),
            min_win_rate_for_auto=pick(
                policy.min_win_rate_for_auto, self.config.min_win_rate_for_auto
            ),
        )

    def list_audit(self, agent_id: str, limit: int = 50) -> List[PolicyAuditEntry]:
        return self.store.list_audit(agent_id, limit)

    # ----------------------------------------------------------------
    # Writes
    # ----------------------------------------------------------------

    def update_policy(
        self,
        agent_id: str,
        updates: dict,
        actor_id: Optional[str] = None,
        current_time: Optional[datetime] = None,
    ) -> LearningPolicy:
        """
        Apply a partial update. Unknown or read-only keys and out-of-range
        values raise ValidationError; nothing is written in that case.
        """
        if current_time is None:
            current_time = datetime.utcnow()

        changes = {}
        for key, value in updates.items():
            name = _field_name(key)
            if name is None or name not in UPDATABLE_FIELDS:
                raise ValidationError(f"Unknown or read-only policy field: {key}")
            changes[name] = value
        if not changes:
            raise ValidationError("No policy fields to update")

        with self._lock_for(agent_id):
            current = self.get_policy(agent_id, current_time)
            data = current.model_dump()
            data.update(changes)
            data.update({"updated_by": actor_id, "updated_at": current_time})
            if data.get("created_at") is None:
                data["created_at"] = current_time
            try:
                policy = LearningPolicy.model_validate(data)
            except PydanticValidationError as exc:
                raise ValidationError(
                    "; ".join(
                        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                        for err in exc.errors()
                    )
                ) from exc
            self.store.save(policy)
            self.store.append_audit(
                agent_id,
                ACTION_UPDATED,
                actor_id,
                {"changes": changes},
                current_time,
            )
        logger.info("policy_updated", agent_id=agent_id, actor_id=actor_id, fields=sorted(changes))
        return policy

    def pause(
        self,
        agent_id: str,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        until: Optional[datetime] = None,
        current_time: Optional[datetime] = None,
    ) -> LearningPolicy:
        if current_time is None:
            current_time = datetime.utcnow()
        if until is not None and until.tzinfo is not None:
            until = until.astimezone(timezone.utc).replace(tzinfo=None)
        if until is not None and until <= current_time:
            raise ValidationError("pausedUntil must be in the future")
        with self._lock_for(agent_id):
            current = self.get_policy(agent_id, current_time)
            policy = current.model_copy(update={
                "paused": True,
                "paused_until": until,
                "pause_reason": reason,
                "updated_by": actor_id,
                "updated_at": current_time,
                "created_at": current.created_at or current_time,
            })
            self.store.save(policy)
            self.store.append_audit(
                agent_id,
                ACTION_PAUSED,
                actor_id,
                {"reason": reason, "pausedUntil": until.isoformat() if until else None},
                current_time,
            )
        logger.info("learning_paused", agent_id=agent_id, actor_id=actor_id, reason=reason)
        return policy

    def resume(
        self,
        agent_id: str,
        actor_id: Optional[str] = None,
        current_time: Optional[datetime] = None,
    ) -> LearningPolicy:
        if current_time is None:
            current_time = datetime.utcnow()
        with self._lock_for(agent_id):
            current = self.get_policy(agent_id, current_time)
            policy = current.model_copy(update={
                "paused": False,
                "paused_until": None,
                "pause_reason": None,
                "updated_by": actor_id,
                "updated_at": current_time,
                "created_at": current.created_at or current_time,
            })
            self.store.save(policy)
            self.store.append_audit(agent_id, ACTION_RESUMED, actor_id, {}, current_time)
        logger.info("learning_resumed", agent_id=agent_id, actor_id=actor_id)
        return policy

    # ----------------------------------------------------------------
    # Admission
    # ----------------------------------------------------------------

    def is_session_creation_allowed(
        self,
        agent_id: str,
        trigger_type: TriggerType = TriggerType.MANUAL,
        has_active_session: bool = False,
        last_session_at: Optional[datetime] = None,
        active_session_count: int = 0,
        current_time: Optional[datetime] = None,
    ) -> PolicyCheck:
        """
        Whether a new session may start now. The active-session check here is
        advisory; the session store's unique index is the authority.
        """
        if current_time is None:
            current_time = datetime.utcnow()
        policy = self.get_policy(agent_id, current_time)

        if not policy.enabled:
            return PolicyCheck(
                allowed=False, code=PolicyDisabled.code,
                reasons=["Learning is disabled for this agent"],
            )
        if policy.paused:
            reason = "Learning is paused"
            if policy.pause_reason:
                reason += f": {policy.pause_reason}"
            return PolicyCheck(allowed=False, code=PolicyPaused.code, reasons=[reason])
        if has_active_session:
            return PolicyCheck(
                allowed=False, code=AlreadyActiveSession.code,
                reasons=["Agent already has an active learning session"],
            )

        if trigger_type == TriggerType.MANUAL:
            return PolicyCheck(allowed=True)

        if trigger_type == TriggerType.SCHEDULED and not policy.scheduled_enabled:
            return PolicyCheck(
                allowed=False, code=TriggerDisabled.code,
                reasons=["Scheduled learning is disabled"],
            )
        if trigger_type == TriggerType.THRESHOLD and not policy.threshold_enabled:
            return PolicyCheck(
                allowed=False, code=TriggerDisabled.code,
                reasons=["Threshold-triggered learning is disabled"],
            )
        if last_session_at is not None:
            cooldown = timedelta(hours=self.config.min_hours_between_sessions)
            if current_time - last_session_at < cooldown:
                return PolicyCheck(
                    allowed=False, code=CooldownActive.code,
                    reasons=[
                        f"Last session started less than "
                        f"{self.config.min_hours_between_sessions:g}h ago"
                    ],
                )
        if active_session_count >= self.config.max_concurrent_sessions:
            return PolicyCheck(
                allowed=False, code=ConcurrencyLimitReached.code,
                reasons=[
                    f"{active_session_count} sessions already active "
                    f"(limit {self.config.max_concurrent_sessions})"
                ],
            )
        return PolicyCheck(allowed=True)

    def ensure_session_creation_allowed(self, agent_id: str, **kwargs) -> None:
        """Raise the matching PolicyDenied subclass when creation is denied."""
        check = self.is_session_creation_allowed(agent_id, **kwargs)
        if not check.allowed:
            error_cls = _DENIALS.get(check.code, PolicyDenied)
            raise error_cls("; ".join(check.reasons))

    def is_auto_promotion_allowed(
        self,
        agent_id: str,
        confidence: Optional[float],
        win_rate: Optional[float],
        risk_tier: RiskTier,
        current_time: Optional[datetime] = None,
        run_count: Optional[int] = None,
        cost_increase_pct: float = 0.0,
        has_regressions: bool = False,
    ) -> PolicyCheck:
        """
        All shortfalls are reported, not just the first. ``run_count`` is
        the experiment's sample count; unknown counts as too few.
        """
        effective = self.effective_config(agent_id, current_time)
        reasons = []
        if not effective.enabled:
            reasons.append("Learning is disabled for this agent")
        if not effective.auto_promotion_enabled:
            reasons.append("Auto-promotion is disabled")
        if confidence is None or confidence < effective.min_confidence_for_auto:
            reasons.append(
                f"Confidence {confidence if confidence is not None else 0:.2f} is below "
                f"{effective.min_confidence_for_auto:.2f}"
            )
        if win_rate is None or win_rate < effective.min_win_rate_for_auto:
            reasons.append(
                f"Win rate {win_rate if win_rate is not None else 0:.2f} is below "
                f"{effective.min_win_rate_for_auto:.2f}"
            )
        if risk_tier != RiskTier.LOW:
            reasons.append(f"Risk tier {risk_tier.value} requires human approval")
        min_runs = self.config.min_runs_before_auto_promotion
        if run_count is None or run_count < min_runs:
            reasons.append(f"Run count {run_count or 0} is below {min_runs}")
        if cost_increase_pct > self.config.max_cost_increase_pct:
            reasons.append(
                f"Cost increase {cost_increase_pct * 100:.1f}% exceeds "
                f"{self.config.max_cost_increase_pct * 100:.1f}%"
            )
        if self.config.require_no_regressions and has_regressions:
            reasons.append("Candidate regressed against the baseline")
        return PolicyCheck(allowed=not reasons, reasons=reasons)

    def is_schedule_due(
        self,
        last_checked_at: Optional[datetime],
        current_time: Optional[datetime] = None,
    ) -> bool:
        """True when a cron fire time falls in (last_checked_at, current_time]."""
        if current_time is None:
            current_time = datetime.utcnow()
        if last_checked_at is None:
            return False
        next_fire = croniter(self.config.schedule_cron, last_checked_at).get_next(datetime)
        return next_fire <= current_time
