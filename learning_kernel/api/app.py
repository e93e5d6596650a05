"""
Learning Kernel API — FastAPI endpoints.

Exposes the learning loop to dashboards under
``/api/agents/{agent_slug}/learning``:
- Session listing, detail, start, cancel
- Human approval and rejection
- Metrics summary
- Policy read/update, pause/resume and audit
- Active experiments

Plus operational endpoints for agent registration, run ingestion,
traffic routing and the heartbeat.

Every response is an envelope: ``{"success": true, ...}`` or
``{"success": false, "error": "...", "code": "..."}``.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import uuid4

import structlog
from fastapi import BackgroundTasks, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from learning_kernel.agents.registry import AgentRegistry
from learning_kernel.config import get_config
from learning_kernel.errors import LearningError, SessionNotFound, ValidationError
from learning_kernel.experiments.runner import ReplayEvaluator
from learning_kernel.logging_config import configure_logging
from learning_kernel.metrics.summary import compute_summary
from learning_kernel.models.base import LearningModel
from learning_kernel.models.config import LearningConfig
from learning_kernel.models.experiment import ExperimentStatus
from learning_kernel.models.run import AgentRun, RunStatus
from learning_kernel.models.session import TERMINAL_STATUSES, LearningSession, SessionStatus
from learning_kernel.policy.engine import PolicyEngine
from learning_kernel.policy.store import PolicyStore
from learning_kernel.proposals.generator import ProposalGenerator
from learning_kernel.runs.store import RunStore
from learning_kernel.session.machine import SessionStateMachine
from learning_kernel.session.orchestrator import LearningOrchestrator
from learning_kernel.session.store import SessionStore

logger = structlog.get_logger(__name__)

EXPERIMENT_FILTERS = {
    "active": [ExperimentStatus.PENDING, ExperimentStatus.RUNNING],
    "completed": [ExperimentStatus.COMPLETED],
    "failed": [ExperimentStatus.FAILED],
}


# --- Request Models ---

class StartSessionRequest(LearningModel):
    trigger_reason: Optional[str] = None


class CancelRequest(LearningModel):
    reason: Optional[str] = None
    cancelled_by: Optional[str] = None


class ApproveRequest(LearningModel):
    approved_by: Optional[str] = None
    rationale: Optional[str] = None


class RejectRequest(LearningModel):
    rejected_by: Optional[str] = None
    rationale: Optional[str] = None


class PolicyUpdateRequest(LearningModel):
    enabled: Optional[bool] = None
    auto_promotion_enabled: Optional[bool] = None
    scheduled_enabled: Optional[bool] = None
    threshold_enabled: Optional[bool] = None
    signal_threshold: Optional[int] = None
    signal_window_minutes: Optional[int] = None
    traffic_split_candidate: Optional[float] = None
    min_confidence_for_auto: Optional[float] = None
    min_win_rate_for_auto: Optional[float] = None
    actor_id: Optional[str] = None


class PauseRequest(LearningModel):
    paused: bool
    actor_id: Optional[str] = None
    reason: Optional[str] = None
    paused_until: Optional[datetime] = None


class AgentCreateRequest(LearningModel):
    slug: str
    name: Optional[str] = None
    instructions: str = ""
    tools: dict = {}
    memory: dict = {}
    llm: dict = {}
    tenant_id: Optional[str] = None


class RunIngestRequest(LearningModel):
    id: Optional[str] = None
    version_id: Optional[str] = None
    status: RunStatus = RunStatus.COMPLETED
    scores: Dict[str, float] = {}
    tool_calls: List[str] = []
    tool_failures: List[str] = []
    feedback: Optional[str] = None
    latency_ms: Optional[float] = None
    cost_usd: Optional[float] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


def _envelope(**payload) -> dict:
    return {"success": True, **payload}


def _error(status_code: int, error: str, code: str, **extra) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": error, "code": code, **extra}, status_code=status_code
    )


def _parse_statuses(raw: Optional[str]) -> Optional[List[SessionStatus]]:
    """``status`` filter: comma-separated statuses, or "active"/"terminal"."""
    if not raw:
        return None
    statuses = []
    for token in raw.split(","):
        token = token.strip().upper()
        if token == "ACTIVE":
            statuses.extend(s for s in SessionStatus if s not in TERMINAL_STATUSES)
        elif token == "TERMINAL":
            statuses.extend(s for s in SessionStatus if s in TERMINAL_STATUSES)
        else:
            try:
                statuses.append(SessionStatus(token))
            except ValueError:
                raise ValidationError(f"Unknown session status: {token}")
    return statuses


# --- Application Factory ---

def create_app(
    config: Optional[LearningConfig] = None,
    registry: Optional[AgentRegistry] = None,
    run_store: Optional[RunStore] = None,
    session_store: Optional[SessionStore] = None,
    policy_engine: Optional[PolicyEngine] = None,
    generator: Optional[ProposalGenerator] = None,
    replay_evaluator: Optional[ReplayEvaluator] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    configure_logging()

    app = FastAPI(
        title="Agent Learning Kernel API",
        description="Closed-loop agent improvement: sessions, experiments, gating, policy",
        version="0.1.0",
    )

    # Initialize components
    cfg = config or get_config()
    reg = registry or AgentRegistry()
    runs = run_store or RunStore()
    store = session_store or SessionStore(cfg.db_path)
    policy = policy_engine or PolicyEngine(PolicyStore(cfg.db_path), cfg)
    machine = SessionStateMachine(store)
    orchestrator = LearningOrchestrator(
        registry=reg,
        run_store=runs,
        machine=machine,
        policy=policy,
        config=cfg,
        generator=generator,
        replay_evaluator=replay_evaluator,
    )

    # Store components on app state for access in endpoints
    app.state.config = cfg
    app.state.registry = reg
    app.state.run_store = runs
    app.state.session_store = store
    app.state.policy_engine = policy
    app.state.machine = machine
    app.state.orchestrator = orchestrator

    # === ERROR ENVELOPE ===

    @app.exception_handler(LearningError)
    async def learning_error_handler(request: Request, exc: LearningError) -> JSONResponse:
        logger.info(
            "request_failed", path=request.url.path, code=exc.code, error=str(exc)
        )
        return _error(exc.status_code, exc.public_message, exc.code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        message = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return _error(422, message or "Invalid request", "ValidationError")

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        request_id = str(uuid4())
        logger.exception("unhandled_exception", path=request.url.path, request_id=request_id)
        return _error(500, "Internal server error", "InternalError", requestId=request_id)

    # === HELPERS ===

    def session_for_agent(agent_slug: str, session_id: str) -> LearningSession:
        agent = reg.resolve(agent_slug)
        session = store.get_session(session_id)
        if session is None or session.agent_id != agent.id:
            raise SessionNotFound(f"Learning session {session_id} not found")
        return session

    def session_summaries(sessions: List[LearningSession]) -> List[dict]:
        counts = store.artifact_counts([s.id for s in sessions])
        summaries = []
        for session in sessions:
            dataset = store.get_dataset(session.id)
            summaries.append({
                **session.to_api(),
                **counts[session.id],
                "avgScore": dataset.avg_score if dataset else None,
            })
        return summaries

    # === LEARNING SESSIONS ===

    @app.get("/api/agents/{agent_slug}/learning")
    def list_sessions(
        agent_slug: str,
        status: Optional[str] = None,
        limit: int = Query(default=50, ge=1, le=200),
    ):
        """Sessions for an agent, newest first."""
        agent = reg.resolve(agent_slug)
        sessions = store.list_sessions(agent.id, statuses=_parse_statuses(status), limit=limit)
        return _envelope(sessions=session_summaries(sessions))

    @app.post("/api/agents/{agent_slug}/learning")
    def start_session(
        agent_slug: str,
        background_tasks: BackgroundTasks,
        req: Optional[StartSessionRequest] = None,
    ):
        """Start a session. Advancement runs in the background."""
        reason = req.trigger_reason if req else None
        session = orchestrator.start_session(agent_slug, trigger_reason=reason or "Manual trigger")
        background_tasks.add_task(orchestrator.advance, session.id)
        return _envelope(sessionId=session.id, status=session.status.value)

    @app.get("/api/agents/{agent_slug}/learning/metrics")
    def get_metrics(agent_slug: str, days: int = Query(default=30, ge=1, le=365)):
        agent = reg.resolve(agent_slug)
        now = datetime.utcnow()
        window_runs = runs.list_for_agent(
            agent.id, from_date=now - timedelta(days=days), to_date=now
        )
        summary = compute_summary(store, agent.id, window_runs, days=days, current_time=now)
        return _envelope(metrics={"summary": summary})

    @app.get("/api/agents/{agent_slug}/learning/policy")
    def get_policy(agent_slug: str):
        agent = reg.resolve(agent_slug)
        current = policy.get_policy(agent.id)
        return _envelope(
            policy=current.to_api(),
            effective=policy.resolve(current).to_api(),
        )

    @app.post("/api/agents/{agent_slug}/learning/policy")
    def update_policy(agent_slug: str, req: PolicyUpdateRequest):
        agent = reg.resolve(agent_slug)
        updates = req.model_dump(exclude_unset=True, exclude={"actor_id"})
        updated = policy.update_policy(agent.id, updates, actor_id=req.actor_id)
        return _envelope(policy=updated.to_api(), effective=policy.resolve(updated).to_api())

    @app.get("/api/agents/{agent_slug}/learning/policy/audit")
    def get_policy_audit(agent_slug: str, limit: int = Query(default=50, ge=1, le=500)):
        agent = reg.resolve(agent_slug)
        return _envelope(entries=[e.to_api() for e in policy.list_audit(agent.id, limit)])

    @app.post("/api/agents/{agent_slug}/learning/pause")
    def pause_learning(agent_slug: str, req: PauseRequest):
        agent = reg.resolve(agent_slug)
        if req.paused:
            policy.pause(agent.id, actor_id=req.actor_id, reason=req.reason, until=req.paused_until)
            message = "Learning paused"
        else:
            policy.resume(agent.id, actor_id=req.actor_id)
            message = "Learning resumed"
        return _envelope(paused=req.paused, message=message)

    @app.get("/api/agents/{agent_slug}/learning/experiments")
    def list_experiments(agent_slug: str, status: Optional[str] = "active"):
        agent = reg.resolve(agent_slug)
        statuses = EXPERIMENT_FILTERS.get((status or "").lower()) if status != "all" else None
        if status and status != "all" and statuses is None:
            raise ValidationError(f"Unknown experiment filter: {status}")
        experiments = store.list_experiments(agent.id, statuses)
        items = []
        for experiment in experiments:
            proposal = store.get_proposal(experiment.proposal_id)
            items.append({
                "id": experiment.id,
                "sessionId": experiment.session_id,
                "status": experiment.status.value,
                "mode": experiment.mode.value,
                "proposalTitle": proposal.title if proposal else None,
                "riskTier": experiment.risk_tier.value,
                "autoEligible": experiment.auto_eligible,
                "trafficSplit": experiment.traffic_split.to_api(),
                "shadowRunCount": experiment.shadow_run_count,
                "baselineRunCount": experiment.baseline_metrics.sample_count,
                "candidateRunCount": experiment.candidate_metrics.sample_count,
                "winRate": experiment.win_rate,
                "startedAt": experiment.started_at.isoformat() if experiment.started_at else None,
            })
        return _envelope(experiments=items)

    @app.get("/api/agents/{agent_slug}/learning/{session_id}")
    def get_session(agent_slug: str, session_id: str):
        """Everything about one session."""
        session = session_for_agent(agent_slug, session_id)
        agent = reg.resolve(agent_slug)
        dataset = store.get_dataset(session.id)
        approval = store.get_approval(session.id)
        return _envelope(
            session=session_summaries([session])[0],
            agent=agent.to_api(),
            dataset=dataset.to_api() if dataset else None,
            signals=[s.to_api() for s in store.get_signals(session.id)],
            proposals=[p.to_api() for p in store.get_proposals(session.id)],
            experiments=[e.to_api() for e in store.get_experiments(session.id)],
            approval=approval.to_api() if approval else None,
            transitions=[t.to_api() for t in store.get_transitions(session.id)],
        )

    @app.delete("/api/agents/{agent_slug}/learning/{session_id}")
    def cancel_session(agent_slug: str, session_id: str, req: Optional[CancelRequest] = None):
        """Cancel. Cancelling a finished session is a no-op."""
        session_for_agent(agent_slug, session_id)
        session = orchestrator.cancel(
            session_id,
            reason=req.reason if req else None,
            cancelled_by=req.cancelled_by if req else None,
        )
        return _envelope(status=session.status.value)

    @app.post("/api/agents/{agent_slug}/learning/{session_id}/approve")
    def approve_session(agent_slug: str, session_id: str, req: ApproveRequest):
        session_for_agent(agent_slug, session_id)
        approval = orchestrator.approve(session_id, req.approved_by, req.rationale)
        session = store.get_session(session_id)
        return _envelope(
            approvalId=approval.id,
            status=session.status.value,
            promotedVersionId=approval.promoted_version_id,
        )

    @app.post("/api/agents/{agent_slug}/learning/{session_id}/reject")
    def reject_session(agent_slug: str, session_id: str, req: RejectRequest):
        session_for_agent(agent_slug, session_id)
        approval = orchestrator.reject(session_id, req.rejected_by, req.rationale)
        return _envelope(approvalId=approval.id, status=SessionStatus.REJECTED.value)

    # === OPERATIONS ===

    @app.post("/api/agents")
    def register_agent(req: AgentCreateRequest):
        agent = reg.register_agent(
            slug=req.slug,
            name=req.name,
            instructions=req.instructions,
            tools=req.tools,
            memory=req.memory,
            llm=req.llm,
            tenant_id=req.tenant_id,
        )
        return _envelope(agent=agent.to_api())

    @app.post("/api/agents/{agent_slug}/runs")
    def ingest_run(agent_slug: str, req: RunIngestRequest, background_tasks: BackgroundTasks):
        """Record a run; folds into a running shadow experiment."""
        agent = reg.resolve(agent_slug)
        now = datetime.utcnow()
        run = AgentRun(
            id=req.id or f"run_{uuid4().hex[:12]}",
            agent_id=agent.id,
            version_id=req.version_id,
            status=req.status,
            scores=req.scores,
            tool_calls=req.tool_calls,
            tool_failures=req.tool_failures,
            feedback=req.feedback,
            latency_ms=req.latency_ms,
            cost_usd=req.cost_usd,
            started_at=req.started_at or now,
            completed_at=req.completed_at or (now if req.status == RunStatus.COMPLETED else None),
        )
        result = orchestrator.record_run(agent.id, run)
        if result["evaluationDue"]:
            background_tasks.add_task(orchestrator.advance, result["sessionId"])
        return _envelope(**result)

    @app.get("/api/agents/{agent_slug}/route/{run_id}")
    def route_run(agent_slug: str, run_id: str):
        """Traffic-split decision for a new run."""
        return _envelope(**orchestrator.route_run(agent_slug, run_id))

    @app.post("/api/learning/tick")
    def tick():
        """Run one heartbeat now."""
        return _envelope(**orchestrator.tick())

    @app.get("/api/learning/status")
    def heartbeat_status():
        return _envelope(
            status=orchestrator.status,
            activeSessions=store.count_active_sessions(),
            heartbeatIntervalSeconds=cfg.heartbeat_interval_seconds,
        )

    return app


# Default application instance
app = create_app()
