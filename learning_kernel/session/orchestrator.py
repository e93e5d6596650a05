"""
Learning Orchestrator — the heartbeat of the learning loop.

Sequences the components for each session:

  COLLECTING         DatasetBuilder     -> dataset (stays until enough runs)
  ANALYZING          SignalDetector     -> signals (none: FAILED "no signals")
  PROPOSING          ProposalGenerator  -> proposals, one selected, candidate version
  TESTING            ExperimentRunner   -> samples, then GatingEngine
  AWAITING_APPROVAL  human approve/reject, or auto-approval when policy allows

Behavioral Contract:
- One advancement per session at a time. A concurrent trigger is a no-op.
- Cancellation is observed at every stage commit: the stage's output is
  dropped and any draft candidate version is discarded.
- Component errors are recorded as ``metadata.failureReason`` and the session
  moves to FAILED. Stage dwell timeouts are the backstop for stuck sessions.
- Scheduled and threshold triggers go through the same admission checks as
  manual starts, plus their own switches, cooldown and concurrency limit.
"""

import asyncio
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import structlog

from learning_kernel.agents.registry import AgentRegistry
from learning_kernel.dataset.builder import DatasetBuilder, scorers_in
from learning_kernel.errors import (
    ComponentTimeout,
    ConcurrencyConflict,
    InsufficientData,
    LearningError,
    PolicyDenied,
)
from learning_kernel.experiments.runner import ExperimentRunner, ReplayEvaluator
from learning_kernel.gating.engine import GatingEngine
from learning_kernel.models.approval import Approval, ApprovalDecision, ApprovalSource
from learning_kernel.models.config import LearningConfig
from learning_kernel.models.experiment import Experiment, ExperimentMode, ExperimentStatus
from learning_kernel.models.run import AgentRun, RunStatus
from learning_kernel.models.session import LearningSession, SessionStatus, TriggerType
from learning_kernel.policy.engine import PolicyEngine
from learning_kernel.proposals.generator import (
    ProposalGenerator,
    RuleBasedProposalGenerator,
    generate_with_retry,
    mark_selected,
    select_proposal,
)
from learning_kernel.runs.store import RunStore
from learning_kernel.session.machine import SessionStateMachine
from learning_kernel.signals.detector import SignalDetector, is_problem_run

logger = structlog.get_logger(__name__)


class LearningOrchestrator:
    """
    Drives sessions through their stages.

    Stage handlers return the updated session after a transition, or None
    when the session should stay where it is until the next tick.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        run_store: RunStore,
        machine: SessionStateMachine,
        policy: PolicyEngine,
        config: Optional[LearningConfig] = None,
        generator: Optional[ProposalGenerator] = None,
        replay_evaluator: Optional[ReplayEvaluator] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or LearningConfig()
        self.registry = registry
        self.run_store = run_store
        self.machine = machine
        self.store = machine.store
        self.policy = policy
        self.dataset_builder = DatasetBuilder(run_store)
        self.detector = SignalDetector(self.config)
        self.generator = generator or RuleBasedProposalGenerator()
        self.experiments = ExperimentRunner(self.config)
        self.gating = GatingEngine(self.config)
        self.replay_evaluator = replay_evaluator
        self._sleep = sleep

        self._experiment_lock = threading.RLock()
        self._last_schedule_check: Dict[str, datetime] = {}
        self._running = False

        self._stages = {
            SessionStatus.COLLECTING: self._collect,
            SessionStatus.ANALYZING: self._analyze,
            SessionStatus.PROPOSING: self._propose,
            SessionStatus.TESTING: self._test,
        }
        self._timeouts = {
            SessionStatus.COLLECTING: self.config.collecting_timeout_minutes,
            SessionStatus.ANALYZING: self.config.analyzing_timeout_minutes,
            SessionStatus.PROPOSING: self.config.proposing_timeout_minutes,
            SessionStatus.TESTING: self.config.testing_timeout_minutes,
        }

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    # ----------------------------------------------------------------
    # Session lifecycle
    # ----------------------------------------------------------------

    def start_session(
        self,
        agent_ref: str,
        trigger_reason: Optional[str] = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
        current_time: Optional[datetime] = None,
    ) -> LearningSession:
        """Admit and create a session. Returns immediately in COLLECTING."""
        if current_time is None:
            current_time = datetime.utcnow()
        agent = self.registry.resolve(agent_ref)
        self.policy.ensure_session_creation_allowed(
            agent.id,
            trigger_type=trigger_type,
            has_active_session=self.store.get_active_session(agent.id) is not None,
            last_session_at=self.store.last_session_created_at(agent.id),
            active_session_count=self.store.count_active_sessions(),
            current_time=current_time,
        )
        baseline = self.registry.active_version(agent.id)
        return self.machine.create(
            agent.id,
            trigger_type=trigger_type,
            trigger_reason=trigger_reason,
            baseline_version=baseline.version,
            scorer_config=self.config.scorers,
            current_time=current_time,
        )

    def advance(self, session_id: str, current_time: Optional[datetime] = None) -> LearningSession:
        """
        Run stages until the session is terminal or has to wait. A second
        caller while one is in flight returns the current state untouched.
        """
        if current_time is None:
            current_time = datetime.utcnow()
        session = self.machine.get(session_id)
        with structlog.contextvars.bound_contextvars(
            session_id=session.id, agent_id=session.agent_id
        ):
            try:
                with self.machine.advance_lock(session_id):
                    self._advance_locked(session_id, current_time)
            except ConcurrencyConflict:
                logger.info("advance_skipped", reason="in flight")
        return self.machine.get(session_id)

    def _advance_locked(self, session_id: str, current_time: datetime) -> None:
        while True:
            session = self.machine.get(session_id)
            handler = self._stages.get(session.status)
            if handler is None:
                return
            try:
                updated = handler(session, current_time)
            except ConcurrencyConflict:
                # Moved on (usually cancelled) while the stage ran.
                logger.info("stage_output_discarded", stage=session.status.value)
                self._release_candidates(self.machine.get(session_id), "session moved on", current_time)
                return
            except LearningError as exc:
                self._fail(session, str(exc) or exc.code, current_time)
                return
            except Exception as exc:
                logger.exception("stage_crashed", stage=session.status.value)
                self._fail(session, f"{type(exc).__name__}: {exc}", current_time)
                return
            if updated is None or not updated.is_active:
                return

    def _fail(self, session: LearningSession, reason: str, current_time: datetime) -> None:
        failed = self.machine.fail(session.id, reason, stage=session.status, current_time=current_time)
        self._release_candidates(failed, reason, current_time)

    def _release_candidates(
        self, session: LearningSession, reason: str, current_time: datetime
    ) -> None:
        """Stop unfinished experiments and discard drafts of a session that ended without promotion."""
        if session.is_active or session.status == SessionStatus.PROMOTED:
            return
        for experiment in self.store.get_experiments(session.id):
            if not experiment.is_finished:
                self.store.save_experiment(self.experiments.fail(experiment, reason, current_time))
            self.registry.discard_version(experiment.candidate_version_id)
        for proposal in self.store.get_proposals(session.id):
            if proposal.candidate_version_id:
                self.registry.discard_version(proposal.candidate_version_id)

    # ----------------------------------------------------------------
    # Stages
    # ----------------------------------------------------------------

    def _collect(self, session: LearningSession, current_time: datetime) -> Optional[LearningSession]:
        criteria = self.dataset_builder.default_criteria(
            session.agent_id,
            lookback_days=self.config.dataset_lookback_days,
            max_runs=self.config.max_runs_per_session,
            current_time=current_time,
        )
        try:
            dataset = self.dataset_builder.build(
                session.id, criteria, self.config.min_runs_for_session, current_time
            )
        except InsufficientData as exc:
            dwell = current_time - session.stage_entered_at
            if dwell >= timedelta(minutes=self.config.collecting_timeout_minutes):
                self._fail(session, "insufficient data", current_time)
                return None
            self.machine.touch(
                session.id,
                SessionStatus.COLLECTING,
                updates={"run_count": exc.run_count},
                metadata={"collectingStatus": str(exc)},
                current_time=current_time,
            )
            return None

        runs = self.run_store.get_many(dataset.run_ids)
        scorers = session.scorer_config or scorers_in(runs)
        return self.machine.commit_stage(
            session.id,
            SessionStatus.COLLECTING,
            SessionStatus.ANALYZING,
            reason=f"dataset of {dataset.run_count} runs",
            updates={
                "run_count": dataset.run_count,
                "dataset_hash": dataset.dataset_hash,
                "scorer_config": scorers,
            },
            writes=lambda: self.store.save_dataset(dataset),
            current_time=current_time,
        )

    def _analyze(self, session: LearningSession, current_time: datetime) -> Optional[LearningSession]:
        dataset = self.store.get_dataset(session.id)
        if dataset is None:
            raise InsufficientData(0, self.config.min_runs_for_session)
        runs = self.run_store.get_many(dataset.run_ids)
        signals = self.detector.detect(dataset, runs, session.scorer_config, current_time)
        if not signals:
            return self.machine.fail(
                session.id, "no signals", stage=SessionStatus.ANALYZING, current_time=current_time
            )
        return self.machine.commit_stage(
            session.id,
            SessionStatus.ANALYZING,
            SessionStatus.PROPOSING,
            reason=f"{len(signals)} signals detected",
            metadata={"signalCount": len(signals)},
            writes=lambda: self.store.save_signals(session.id, signals),
            current_time=current_time,
        )

    def _propose(self, session: LearningSession, current_time: datetime) -> Optional[LearningSession]:
        dataset = self.store.get_dataset(session.id)
        signals = self.store.get_signals(session.id)
        baseline = self.registry.active_version(session.agent_id)

        proposals = generate_with_retry(
            self.generator,
            session.id,
            signals,
            dataset,
            baseline,
            max_attempts=self.config.max_generation_attempts,
            backoff_seconds=self.config.generation_backoff_seconds,
            sleep=self._sleep,
            current_time=current_time,
        )
        selected = select_proposal(proposals, self.config.min_proposal_confidence)
        if selected is None:
            failed = self.machine.commit_stage(
                session.id,
                SessionStatus.PROPOSING,
                SessionStatus.FAILED,
                reason="no viable proposal",
                metadata={
                    "failureReason": "no viable proposal",
                    "failedStage": SessionStatus.PROPOSING.value,
                },
                writes=lambda: self.store.save_proposals(session.id, proposals),
                current_time=current_time,
            )
            logger.warning("stage_failed", stage="PROPOSING",
                           reason="no viable proposal", proposal_count=len(proposals))
            return failed

        candidate = self.registry.create_candidate_version(session.agent_id, selected)
        selected = selected.model_copy(update={"candidate_version_id": candidate.id, "is_selected": True})
        proposals = [
            selected if p.id == selected.id else p
            for p in mark_selected(proposals, selected.id)
        ]

        effective = self.policy.effective_config(session.agent_id, current_time)
        mode = self.config.experiment_mode
        if mode == ExperimentMode.REPLAY and self.replay_evaluator is None:
            logger.warning("replay_unavailable", fallback="shadow")
            mode = ExperimentMode.SHADOW
        experiment = self.experiments.create(
            session.id,
            selected,
            baseline_version_id=baseline.id,
            candidate_version_id=candidate.id,
            candidate_split=effective.traffic_split_candidate,
            mode=mode,
            current_time=current_time,
        )

        def writes() -> None:
            self.store.save_proposals(session.id, proposals)
            self.store.save_experiment(experiment)

        try:
            return self.machine.commit_stage(
                session.id,
                SessionStatus.PROPOSING,
                SessionStatus.TESTING,
                reason=f"testing proposal {selected.id}",
                metadata={
                    "proposalCount": len(proposals),
                    "selectedProposalId": selected.id,
                    "experimentId": experiment.id,
                },
                writes=writes,
                current_time=current_time,
            )
        except LearningError:
            self.registry.discard_version(candidate.id)
            raise

    def _test(self, session: LearningSession, current_time: datetime) -> Optional[LearningSession]:
        experiment = self._running_experiment(session.id)
        if experiment is None:
            raise LearningError(f"Session {session.id} has no running experiment")

        if experiment.mode == ExperimentMode.REPLAY and self.replay_evaluator is not None:
            dataset = self.store.get_dataset(session.id)
            runs = self.run_store.get_many(dataset.run_ids)
            experiment = self.experiments.replay(
                experiment,
                runs,
                baseline=self.registry.get_version(experiment.baseline_version_id),
                candidate=self.registry.get_version(experiment.candidate_version_id),
                evaluator=self.replay_evaluator,
            )
            return self._evaluate(session, experiment, "replay complete", current_time)

        due, why = self.experiments.should_evaluate(experiment, current_time)
        if not due:
            return None
        return self._evaluate(session, experiment, why, current_time)

    def _evaluate(
        self,
        session: LearningSession,
        experiment: Experiment,
        trigger: str,
        current_time: datetime,
    ) -> LearningSession:
        # Held through the commit so no shadow sample lands between
        # measurement and the frozen experiment.
        with self._experiment_lock:
            if experiment.mode == ExperimentMode.SHADOW:
                measured = self._measure_settled(experiment)
            else:
                measured = self.experiments.measure(experiment)
            gate = self.gating.evaluate(measured)
            completed = self.experiments.complete(measured, gate, current_time)
            logger.info(
                "experiment_evaluated",
                experiment_id=experiment.id,
                trigger=trigger,
                result=gate.result.value,
                win_rate=completed.win_rate,
                samples=completed.sample_count,
            )

            if not gate.passed:
                rejected = self.machine.reject_auto(
                    session.id,
                    rationale="; ".join(gate.reasons),
                    gating_reasons=gate.reasons,
                    writes=lambda: self.store.save_experiment(completed),
                    current_time=current_time,
                )
                self.registry.discard_version(completed.candidate_version_id)
                return rejected

            proposal = self.store.get_proposal(completed.proposal_id)
            confidence = proposal.confidence_score if proposal else None
            auto = self.policy.is_auto_promotion_allowed(
                session.agent_id,
                confidence,
                completed.win_rate,
                completed.risk_tier,
                current_time=current_time,
                run_count=completed.sample_count,
                cost_increase_pct=proposal.estimated_cost_increase_pct if proposal else 0.0,
                has_regressions=completed.has_regressions,
            )
            auto_reasons = list(auto.reasons)
            if not gate.auto_eligible:
                auto_reasons.append("Experiment is not eligible for auto-promotion")

            awaiting = self.machine.commit_stage(
                session.id,
                SessionStatus.TESTING,
                SessionStatus.AWAITING_APPROVAL,
                reason=trigger,
                metadata={"autoPromotionBlockedBy": auto_reasons},
                writes=lambda: self.store.save_experiment(completed),
                current_time=current_time,
            )
        if auto_reasons:
            return awaiting

        self.machine.record_approval(
            session.id,
            ApprovalDecision.AUTO_APPROVED,
            ApprovalSource.AUTO,
            approved_by="system",
            rationale=(
                f"Auto-approved: win rate {completed.win_rate:.2f}, "
                f"confidence {confidence:.2f}, risk tier {completed.risk_tier.value}"
            ),
            promote=self._promote,
            current_time=current_time,
        )
        return self.machine.get(session.id)

    def _measure_settled(self, experiment: Experiment) -> Experiment:
        """Measure the stored experiment, again if a sample arrived meanwhile."""
        while True:
            current = self.store.get_experiment(experiment.id) or experiment
            measured = self.experiments.measure(current)
            latest = self.store.get_experiment(experiment.id)
            if latest is None or latest.shadow_run_count == current.shadow_run_count:
                return measured


    def _running_experiment(self, session_id: str) -> Optional[Experiment]:
        for experiment in reversed(self.store.get_experiments(session_id)):
            if experiment.status == ExperimentStatus.RUNNING:
                return experiment
        return None

    def _selected_experiment(self, session_id: str) -> Optional[Experiment]:
        experiments = self.store.get_experiments(session_id)
        return experiments[-1] if experiments else None

    def _promote(self, session: LearningSession) -> str:
        experiment = self._selected_experiment(session.id)
        if experiment is None:
            raise LearningError(f"Session {session.id} has no experiment to promote")
        version = self.registry.promote_version(experiment.candidate_version_id)
        return version.id

    # ----------------------------------------------------------------
    # Decisions
    # ----------------------------------------------------------------

    def approve(
        self,
        session_id: str,
        approved_by: Optional[str] = None,
        rationale: Optional[str] = None,
        current_time: Optional[datetime] = None,
    ) -> Approval:
        return self.machine.record_approval(
            session_id,
            ApprovalDecision.APPROVED,
            ApprovalSource.HUMAN,
            approved_by=approved_by,
            rationale=rationale,
            promote=self._promote,
            current_time=current_time,
        )

    def reject(
        self,
        session_id: str,
        rejected_by: Optional[str] = None,
        rationale: Optional[str] = None,
        current_time: Optional[datetime] = None,
    ) -> Approval:
        if current_time is None:
            current_time = datetime.utcnow()
        approval = self.machine.record_approval(
            session_id,
            ApprovalDecision.REJECTED,
            ApprovalSource.HUMAN,
            approved_by=rejected_by,
            rationale=rationale,
            current_time=current_time,
        )
        self._release_candidates(self.machine.get(session_id), "rejected", current_time)
        return approval

    def cancel(
        self,
        session_id: str,
        reason: Optional[str] = None,
        cancelled_by: Optional[str] = None,
        current_time: Optional[datetime] = None,
    ) -> LearningSession:
        """Idempotent. An in-flight stage notices at its next commit."""
        if current_time is None:
            current_time = datetime.utcnow()
        session = self.machine.cancel(session_id, reason, cancelled_by, current_time)
        if session.status == SessionStatus.CANCELLED:
            self._release_candidates(session, "session cancelled", current_time)
        return session

    # ----------------------------------------------------------------
    # Runs and traffic
    # ----------------------------------------------------------------

    def _shadow_experiment(self, agent_id: str) -> Optional[Experiment]:
        session = self.store.get_active_session(agent_id)
        if session is None or session.status != SessionStatus.TESTING:
            return None
        experiment = self._running_experiment(session.id)
        if experiment is None or experiment.mode != ExperimentMode.SHADOW:
            return None
        return experiment

    def route_run(self, agent_ref: str, run_id: str) -> dict:
        """Which version serves a new run. Pure split; no state is written."""
        agent = self.registry.resolve(agent_ref)
        experiment = self._shadow_experiment(agent.id)
        if experiment is None:
            return {
                "runId": run_id,
                "variant": "baseline",
                "versionId": agent.active_version_id,
                "experimentId": None,
            }
        return {
            "runId": run_id,
            "variant": self.experiments.variant_for(experiment, run_id),
            "versionId": self.experiments.version_for(experiment, run_id),
            "experimentId": experiment.id,
        }

    def record_run(
        self, agent_ref: str, run: AgentRun, current_time: Optional[datetime] = None
    ) -> dict:
        """
        Store a run and, when a shadow experiment is running, fold it into
        the right arm. ``evaluationDue`` tells the caller to advance the session.
        """
        agent = self.registry.resolve(agent_ref)
        if run.agent_id != agent.id:
            run = run.model_copy(update={"agent_id": agent.id})
        experiment = self._shadow_experiment(agent.id)
        if run.version_id is None:
            if experiment is not None:
                run = run.model_copy(
                    update={"version_id": self.experiments.version_for(experiment, run.id)}
                )
            else:
                run = run.model_copy(update={"version_id": agent.active_version_id})
        self.run_store.add(run)

        result = {
            "runId": run.id,
            "versionId": run.version_id,
            "experimentId": None,
            "sessionId": None,
            "evaluationDue": False,
        }
        if experiment is None or run.status not in (RunStatus.COMPLETED, RunStatus.FAILED):
            return result

        with self._experiment_lock:
            current = self.store.get_experiment(experiment.id)
            if current is None or current.is_finished:
                return result
            updated = self.experiments.record_sample(current, run)
            if updated is current:
                return result
            self.store.save_experiment(updated)

        due, _ = self.experiments.should_evaluate(updated, current_time)
        result.update({
            "experimentId": updated.id,
            "sessionId": updated.session_id,
            "evaluationDue": due,
        })
        return result

    # ----------------------------------------------------------------
    # Heartbeat
    # ----------------------------------------------------------------

    def sweep_timeouts(self, current_time: Optional[datetime] = None) -> List[LearningSession]:
        """Force-fail sessions that overstayed their current stage."""
        if current_time is None:
            current_time = datetime.utcnow()
        failed = []
        for session in self.store.list_active_sessions():
            limit = self._timeouts.get(session.status)
            if limit is None:
                continue
            if current_time - session.stage_entered_at < timedelta(minutes=limit):
                continue
            try:
                with self.machine.advance_lock(session.id):
                    current = self.machine.get(session.id)
                    if current.status != session.status:
                        continue
                    if current.status == SessionStatus.COLLECTING:
                        reason = "insufficient data"
                    else:
                        reason = str(ComponentTimeout(current.status.value, limit))
                    self._fail(current, reason, current_time)
                    failed.append(self.machine.get(session.id))
            except ConcurrencyConflict:
                continue
        return failed

    def check_triggers(self, current_time: Optional[datetime] = None) -> List[LearningSession]:
        """
        Start scheduled and threshold sessions that policy admits. A denied
        scheduled start still leaves the threshold check its turn.
        """
        if current_time is None:
            current_time = datetime.utcnow()
        started = []
        for agent in self.registry.list_agents():
            last_check = self._last_schedule_check.get(agent.id)
            self._last_schedule_check[agent.id] = current_time
            for trigger_type, reason in self._due_triggers(agent.id, last_check, current_time):
                try:
                    started.append(
                        self.start_session(agent.id, reason, trigger_type, current_time)
                    )
                except PolicyDenied as exc:
                    logger.info(
                        "trigger_denied",
                        agent_id=agent.id,
                        trigger_type=trigger_type.value,
                        code=exc.code,
                    )
                    continue
                break
        return started

    def _due_triggers(
        self, agent_id: str, last_check: Optional[datetime], current_time: datetime
    ) -> Iterator[Tuple[TriggerType, str]]:
        if self.policy.is_schedule_due(last_check, current_time):
            yield TriggerType.SCHEDULED, "Scheduled learning run"
        effective = self.policy.effective_config(agent_id, current_time)
        window_start = current_time - timedelta(minutes=effective.signal_window_minutes)
        recent = self.run_store.list_for_agent(agent_id, from_date=window_start, to_date=current_time)
        problems = sum(1 for r in recent if is_problem_run(r, self.config))
        if problems >= effective.signal_threshold:
            yield (
                TriggerType.THRESHOLD,
                f"{problems} problem runs in the last {effective.signal_window_minutes} minutes",
            )

    def tick(self, current_time: Optional[datetime] = None) -> dict:
        """One heartbeat: triggers, advancement of active sessions, timeouts."""
        if current_time is None:
            current_time = datetime.utcnow()
        started = self.check_triggers(current_time)
        advanced = 0
        for session in self.store.list_active_sessions():
            if session.status not in self._stages:
                continue
            before = session.status
            after = self.advance(session.id, current_time)
            if after.status != before:
                advanced += 1
        timed_out = self.sweep_timeouts(current_time)
        result = {
            "started": [s.id for s in started],
            "advanced": advanced,
            "timedOut": [s.id for s in timed_out],
        }
        logger.info("learning_tick", **result)
        return result

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run the heartbeat until ``stop_event`` is set."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                self.tick()
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.config.heartbeat_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False
