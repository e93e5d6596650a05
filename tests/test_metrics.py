"""Tests for the learning metrics summary."""

from datetime import datetime, timedelta

from learning_kernel.metrics.summary import compute_summary
from learning_kernel.models.run import AgentRun
from learning_kernel.models.session import SessionStatus
from learning_kernel.session.machine import SessionStateMachine
from learning_kernel.session.store import SessionStore

NOW = datetime(2026, 3, 2, 12, 0, 0)


def _make_machine() -> SessionStateMachine:
    return SessionStateMachine(SessionStore(":memory:"))


class TestComputeSummary:
    def test_empty_window(self):
        summary = compute_summary(SessionStore(":memory:"), "a1", [], 30, NOW)
        assert summary["totalSessions"] == 0
        assert summary["promotionRate"] == 0.0
        assert summary["evalCoverage"] == 0.0
        assert summary["windowDays"] == 30

    def test_counts_by_outcome(self):
        machine = _make_machine()
        failed = machine.create("a1", current_time=NOW - timedelta(days=3))
        machine.fail(failed.id, "no signals", current_time=NOW - timedelta(days=3))
        cancelled = machine.create("a1", current_time=NOW - timedelta(days=2))
        machine.cancel(cancelled.id, "stop", "user_1", NOW - timedelta(days=2))
        machine.create("a1", current_time=NOW - timedelta(days=1))
        # Outside the window
        old = machine.create("a2", current_time=NOW - timedelta(days=40))
        machine.fail(old.id, "boom", current_time=NOW - timedelta(days=40))

        runs = [
            AgentRun(id="r1", agent_id="a1", scores={"q": 0.5}),
            AgentRun(id="r2", agent_id="a1"),
        ]
        summary = compute_summary(machine.store, "a1", runs, 30, NOW)
        assert summary["totalSessions"] == 3
        assert summary["activeSessions"] == 1
        assert summary["failedSessions"] == 1
        assert summary["cancelledSessions"] == 1
        assert summary["promotionRate"] == 0.0
        assert summary["statusBreakdown"][SessionStatus.COLLECTING.value] == 1
        assert summary["evalCoverage"] == 50.0

    def test_window_excludes_old_sessions(self):
        machine = _make_machine()
        old = machine.create("a1", current_time=NOW - timedelta(days=10))
        machine.fail(old.id, "boom", current_time=NOW - timedelta(days=10))
        assert compute_summary(machine.store, "a1", [], 7, NOW)["totalSessions"] == 0
        assert compute_summary(machine.store, "a1", [], 30, NOW)["totalSessions"] == 1
