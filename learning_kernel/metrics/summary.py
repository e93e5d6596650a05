"""Learning metrics — dashboard summary over a trailing window of sessions."""

from datetime import datetime, timedelta
from typing import List, Optional

from learning_kernel.models.experiment import ExperimentStatus, GatingResult
from learning_kernel.models.run import AgentRun
from learning_kernel.models.session import LearningSession, SessionStatus, TERMINAL_STATUSES
from learning_kernel.session.store import SessionStore


def _pct(part: int, whole: int) -> float:
    return round(100.0 * part / whole, 1) if whole else 0.0


def compute_summary(
    store: SessionStore,
    agent_id: str,
    runs: List[AgentRun],
    days: int = 30,
    current_time: Optional[datetime] = None,
) -> dict:
    """
    Aggregate counters and rates for sessions created in the last ``days``.
    ``runs`` are the agent's runs in the same window (for eval coverage).
    """
    if current_time is None:
        current_time = datetime.utcnow()
    since = current_time - timedelta(days=days)
    sessions: List[LearningSession] = store.list_sessions(agent_id, since=since)

    by_status = {status.value: 0 for status in SessionStatus}
    for session in sessions:
        by_status[session.status.value] += 1

    finished = [s for s in sessions if s.status in TERMINAL_STATUSES]
    promoted = [s for s in sessions if s.status == SessionStatus.PROMOTED]

    total_proposals = 0
    experiments = []
    for session in sessions:
        total_proposals += len(store.get_proposals(session.id))
        experiments.extend(store.get_experiments(session.id))
    completed_experiments = [e for e in experiments if e.status == ExperimentStatus.COMPLETED]
    passed = [e for e in completed_experiments if e.gating_result == GatingResult.PASSED]

    improvements = []
    for session in promoted:
        for experiment in store.get_experiments(session.id):
            base = experiment.baseline_metrics.avg_score
            cand = experiment.candidate_metrics.avg_score
            if experiment.gating_result == GatingResult.PASSED and base and cand is not None:
                improvements.append((cand - base) / base * 100.0)

    hours = [
        (s.completed_at - s.created_at).total_seconds() / 3600.0
        for s in promoted if s.completed_at
    ]

    evaluated = [r for r in runs if r.scores]

    return {
        "totalSessions": len(sessions),
        "activeSessions": len(sessions) - len(finished),
        "promotedSessions": by_status[SessionStatus.PROMOTED.value],
        "rejectedSessions": by_status[SessionStatus.REJECTED.value],
        "failedSessions": by_status[SessionStatus.FAILED.value],
        "cancelledSessions": by_status[SessionStatus.CANCELLED.value],
        "promotionRate": _pct(len(promoted), len(finished)),
        "totalProposals": total_proposals,
        "totalExperiments": len(experiments),
        "experimentPassRate": _pct(len(passed), len(completed_experiments)),
        "avgImprovementPct": round(sum(improvements) / len(improvements), 1) if improvements else 0.0,
        "avgTimeToImproveHours": round(sum(hours) / len(hours), 1) if hours else 0.0,
        "evalCoverage": _pct(len(evaluated), len(runs)),
        "statusBreakdown": by_status,
        "windowDays": days,
    }
