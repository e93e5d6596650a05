"""Tests for the Policy Engine."""

from datetime import datetime, timedelta

import pytest

from learning_kernel.errors import (
    AlreadyActiveSession,
    ConcurrencyLimitReached,
    CooldownActive,
    PolicyPaused,
    TriggerDisabled,
    ValidationError,
)
from learning_kernel.models.config import LearningConfig
from learning_kernel.models.proposal import RiskTier
from learning_kernel.models.session import TriggerType
from learning_kernel.policy.engine import (
    ACTION_PAUSED,
    ACTION_RESUMED,
    ACTION_UPDATED,
    PolicyEngine,
)
from learning_kernel.policy.store import PolicyStore

NOW = datetime(2026, 3, 2, 12, 0, 0)


def _make_engine(**config) -> PolicyEngine:
    return PolicyEngine(store=PolicyStore(":memory:"), config=LearningConfig(**config))


class TestPolicyReadsAndUpdates:
    def setup_method(self):
        self.engine = _make_engine()

    def test_defaults_without_stored_policy(self):
        policy = self.engine.get_policy("a1", NOW)
        assert policy.enabled
        assert not policy.auto_promotion_enabled
        assert policy.scheduled_enabled and policy.threshold_enabled
        assert self.engine.list_audit("a1") == []

    def test_effective_config_merges_overrides(self):
        self.engine.update_policy("a1", {"trafficSplitCandidate": 0.25}, "user_1", NOW)
        effective = self.engine.effective_config("a1", NOW)
        assert effective.traffic_split_candidate == 0.25
        assert effective.min_win_rate_for_auto == 0.55

    def test_update_accepts_snake_and_camel_case(self):
        policy = self.engine.update_policy(
            "a1", {"auto_promotion_enabled": True, "minConfidenceForAuto": 0.8}, "user_1", NOW
        )
        assert policy.auto_promotion_enabled
        assert policy.min_confidence_for_auto == 0.8
        assert policy.updated_by == "user_1"
        assert self.engine.get_policy("a1", NOW).min_confidence_for_auto == 0.8

    def test_update_is_audited(self):
        self.engine.update_policy("a1", {"signalThreshold": 25}, "user_1", NOW)
        (entry,) = self.engine.list_audit("a1")
        assert entry.action == ACTION_UPDATED
        assert entry.actor_id == "user_1"
        assert entry.details == {"changes": {"signal_threshold": 25}}

    @pytest.mark.parametrize("updates", [
        {"trafficSplitCandidate": 1.5},
        {"signalThreshold": 0},
        {"paused": True},
        {"notAField": 1},
        {},
    ])
    def test_invalid_updates_rejected_without_writing(self, updates):
        with pytest.raises(ValidationError):
            self.engine.update_policy("a1", updates, "user_1", NOW)
        assert self.engine.list_audit("a1") == []
        assert self.engine.store.get("a1") is None


class TestPauseResume:
    def setup_method(self):
        self.engine = _make_engine()

    def test_pause_then_resume(self):
        paused = self.engine.pause("a1", "user_1", "incident", current_time=NOW)
        assert paused.paused
        assert paused.pause_reason == "incident"
        resumed = self.engine.resume("a1", "user_1", NOW + timedelta(minutes=5))
        assert not resumed.paused
        actions = [e.action for e in self.engine.list_audit("a1")]
        assert actions == [ACTION_RESUMED, ACTION_PAUSED]

    def test_pause_in_the_past_rejected(self):
        with pytest.raises(ValidationError):
            self.engine.pause("a1", "user_1", until=NOW - timedelta(hours=1), current_time=NOW)

    def test_expired_pause_is_lifted_on_read(self):
        self.engine.pause("a1", "user_1", "deploy", until=NOW + timedelta(hours=1), current_time=NOW)
        assert self.engine.get_policy("a1", NOW + timedelta(minutes=30)).paused
        policy = self.engine.get_policy("a1", NOW + timedelta(hours=2))
        assert not policy.paused
        latest = self.engine.list_audit("a1")[0]
        assert latest.action == ACTION_RESUMED
        assert latest.actor_id == "system"


class TestSessionAdmission:
    def setup_method(self):
        self.engine = _make_engine(min_hours_between_sessions=8, max_concurrent_sessions=2)

    def test_manual_allowed_by_default(self):
        assert self.engine.is_session_creation_allowed("a1", current_time=NOW).allowed

    def test_paused_denies_every_trigger(self):
        self.engine.pause("a1", "user_1", current_time=NOW)
        for trigger in TriggerType:
            check = self.engine.is_session_creation_allowed("a1", trigger, current_time=NOW)
            assert check.code == PolicyPaused.code
        with pytest.raises(PolicyPaused):
            self.engine.ensure_session_creation_allowed("a1", current_time=NOW)

    def test_disabled_policy(self):
        self.engine.update_policy("a1", {"enabled": False}, "user_1", NOW)
        check = self.engine.is_session_creation_allowed("a1", current_time=NOW)
        assert check.code == "PolicyDisabled"

    def test_active_session_blocks(self):
        with pytest.raises(AlreadyActiveSession):
            self.engine.ensure_session_creation_allowed(
                "a1", has_active_session=True, current_time=NOW
            )

    def test_manual_ignores_cooldown(self):
        check = self.engine.is_session_creation_allowed(
            "a1", TriggerType.MANUAL, last_session_at=NOW - timedelta(hours=1), current_time=NOW
        )
        assert check.allowed

    def test_trigger_switches(self):
        self.engine.update_policy("a1", {"scheduledEnabled": False}, "user_1", NOW)
        with pytest.raises(TriggerDisabled):
            self.engine.ensure_session_creation_allowed(
                "a1", trigger_type=TriggerType.SCHEDULED, current_time=NOW
            )
        assert self.engine.is_session_creation_allowed(
            "a1", TriggerType.THRESHOLD, current_time=NOW
        ).allowed

    def test_cooldown_for_automatic_triggers(self):
        with pytest.raises(CooldownActive):
            self.engine.ensure_session_creation_allowed(
                "a1",
                trigger_type=TriggerType.THRESHOLD,
                last_session_at=NOW - timedelta(hours=7),
                current_time=NOW,
            )
        assert self.engine.is_session_creation_allowed(
            "a1", TriggerType.THRESHOLD, last_session_at=NOW - timedelta(hours=9), current_time=NOW
        ).allowed

    def test_concurrency_limit(self):
        with pytest.raises(ConcurrencyLimitReached):
            self.engine.ensure_session_creation_allowed(
                "a1", trigger_type=TriggerType.SCHEDULED, active_session_count=2, current_time=NOW
            )


class TestAutoPromotion:
    def setup_method(self):
        self.engine = _make_engine()

    def _enable(self):
        self.engine.update_policy("a1", {"autoPromotionEnabled": True}, "user_1", NOW)

    def test_disabled_by_default(self):
        check = self.engine.is_auto_promotion_allowed("a1", 0.9, 0.9, RiskTier.LOW, NOW, run_count=100)
        assert not check.allowed
        assert "Auto-promotion is disabled" in check.reasons

    def test_allowed_when_all_conditions_hold(self):
        self._enable()
        check = self.engine.is_auto_promotion_allowed("a1", 0.9, 0.6, RiskTier.LOW, NOW, run_count=50)
        assert check.allowed
        assert check.reasons == []

    def test_each_shortfall_is_reported(self):
        self._enable()
        check = self.engine.is_auto_promotion_allowed("a1", 0.5, 0.5, RiskTier.HIGH, NOW, run_count=100)
        assert not check.allowed
        assert len(check.reasons) == 3

    def test_insufficient_run_count_blocks(self):
        self._enable()
        check = self.engine.is_auto_promotion_allowed("a1", 0.9, 0.9, RiskTier.LOW, NOW, run_count=30)
        assert not check.allowed
        assert check.reasons == ["Run count 30 is below 50"]
        unknown = self.engine.is_auto_promotion_allowed("a1", 0.9, 0.9, RiskTier.LOW, NOW)
        assert not unknown.allowed

    def test_cost_increase_over_limit_blocks(self):
        self._enable()
        check = self.engine.is_auto_promotion_allowed(
            "a1", 0.9, 0.9, RiskTier.LOW, NOW, run_count=100, cost_increase_pct=0.15
        )
        assert not check.allowed
        assert check.reasons == ["Cost increase 15.0% exceeds 10.0%"]

    def test_regressions_block_unless_allowed_by_config(self):
        self._enable()
        check = self.engine.is_auto_promotion_allowed(
            "a1", 0.9, 0.9, RiskTier.LOW, NOW, run_count=100, has_regressions=True
        )
        assert check.reasons == ["Candidate regressed against the baseline"]

        lenient = _make_engine(require_no_regressions=False)
        lenient.update_policy("a1", {"autoPromotionEnabled": True}, "user_1", NOW)
        assert lenient.is_auto_promotion_allowed(
            "a1", 0.9, 0.9, RiskTier.LOW, NOW, run_count=100, has_regressions=True
        ).allowed


class TestSchedule:
    def test_schedule_due(self):
        engine = _make_engine(schedule_cron="0 */6 * * *")
        assert not engine.is_schedule_due(None, NOW)
        assert not engine.is_schedule_due(NOW, NOW + timedelta(hours=5))
        assert engine.is_schedule_due(NOW, NOW + timedelta(hours=6))
