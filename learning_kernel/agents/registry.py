"""
Agent Registry — agents and their numbered versions.

Updated by: Session promotion / rejection
Queried by: Orchestrator, API (slug resolution)

A selected proposal becomes a draft version here. Promotion activates the
draft and archives the previous baseline; rejection discards the draft.
"""

import threading
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

import structlog

from learning_kernel.errors import AgentNotFound, ValidationError
from learning_kernel.models.agent import AgentRecord, AgentVersion, VersionStatus
from learning_kernel.models.proposal import (
    GuardrailChange,
    InstructionsChange,
    MemoryChange,
    ModelChange,
    Proposal,
    ToolChange,
)

logger = structlog.get_logger(__name__)


class AgentRegistry:
    """
    In-memory agent/version registry for the kernel.
    Production would back this with the platform's agent tables.
    """

    def __init__(self):
        self._agents: Dict[str, AgentRecord] = {}
        self._versions: Dict[str, AgentVersion] = {}
        self._lock = threading.RLock()

    def register_agent(
        self,
        slug: str,
        name: Optional[str] = None,
        instructions: str = "",
        tools: Optional[dict] = None,
        memory: Optional[dict] = None,
        llm: Optional[dict] = None,
        agent_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> AgentRecord:
        """Register an agent with an active version 1."""
        if not slug:
            raise ValidationError("Agent slug is required")
        with self._lock:
            if any(a.slug == slug for a in self._agents.values()):
                raise ValidationError(f"Agent slug '{slug}' is already registered")
            now = datetime.utcnow()
            agent = AgentRecord(
                id=agent_id or f"agent_{uuid4().hex[:12]}",
                slug=slug,
                name=name or slug,
                tenant_id=tenant_id,
                version=1,
                created_at=now,
            )
            version = AgentVersion(
                id=f"ver_{uuid4().hex[:12]}",
                agent_id=agent.id,
                version=1,
                instructions=instructions,
                tools=tools or {},
                memory=memory or {},
                llm=llm or {},
                status=VersionStatus.ACTIVE,
                created_at=now,
                promoted_at=now,
            )
            agent.active_version_id = version.id
            self._agents[agent.id] = agent
            self._versions[version.id] = version
            logger.info("agent_registered", agent_id=agent.id, slug=slug)
            return agent

    def resolve(self, slug_or_id: str) -> AgentRecord:
        """Find an agent by slug or id."""
        with self._lock:
            agent = self._agents.get(slug_or_id)
            if agent:
                return agent
            for candidate in self._agents.values():
                if candidate.slug == slug_or_id:
                    return candidate
        raise AgentNotFound(f"Agent '{slug_or_id}' not found")

    def list_agents(self) -> List[AgentRecord]:
        return list(self._agents.values())

    def get_version(self, version_id: str) -> Optional[AgentVersion]:
        return self._versions.get(version_id)

    def active_version(self, agent_id: str) -> AgentVersion:
        agent = self._agents.get(agent_id)
        if not agent or not agent.active_version_id:
            raise AgentNotFound(f"Agent '{agent_id}' has no active version")
        return self._versions[agent.active_version_id]

    def list_versions(self, agent_id: str) -> List[AgentVersion]:
        return sorted(
            (v for v in self._versions.values() if v.agent_id == agent_id),
            key=lambda v: v.version,
        )

    def create_candidate_version(self, agent_id: str, proposal: Proposal) -> AgentVersion:
        """Materialize a proposal as a draft version on top of the active one."""
        with self._lock:
            baseline = self.active_version(agent_id)
            next_number = max(v.version for v in self.list_versions(agent_id)) + 1
            candidate = baseline.model_copy(
                deep=True,
                update={
                    "id": f"ver_{uuid4().hex[:12]}",
                    "version": next_number,
                    "status": VersionStatus.DRAFT,
                    "source_proposal_id": proposal.id,
                    "created_at": datetime.utcnow(),
                    "promoted_at": None,
                },
            )
            _apply_change(candidate, proposal)
            self._versions[candidate.id] = candidate
            logger.info(
                "candidate_version_created",
                agent_id=agent_id,
                version_id=candidate.id,
                version=candidate.version,
                proposal_id=proposal.id,
            )
            return candidate

    def promote_version(self, version_id: str) -> AgentVersion:
        """Make a draft the active baseline. The previous baseline is archived."""
        with self._lock:
            candidate = self._versions.get(version_id)
            if not candidate:
                raise ValidationError(f"Version '{version_id}' not found")
            if candidate.status != VersionStatus.DRAFT:
                raise ValidationError(
                    f"Version '{version_id}' is {candidate.status.value}, not draft"
                )
            agent = self._agents[candidate.agent_id]
            if agent.active_version_id:
                self._versions[agent.active_version_id].status = VersionStatus.ARCHIVED
            candidate.status = VersionStatus.ACTIVE
            candidate.promoted_at = datetime.utcnow()
            agent.active_version_id = candidate.id
            agent.version = candidate.version
            logger.info(
                "version_promoted",
                agent_id=agent.id,
                version_id=candidate.id,
                version=candidate.version,
            )
            return candidate

    def discard_version(self, version_id: str) -> Optional[AgentVersion]:
        """Discard a draft. Non-drafts are left untouched."""
        with self._lock:
            version = self._versions.get(version_id)
            if version and version.status == VersionStatus.DRAFT:
                version.status = VersionStatus.DISCARDED
                logger.info("candidate_version_discarded", version_id=version_id)
                return version
            return None


def _apply_change(version: AgentVersion, proposal: Proposal) -> None:
    """Apply a proposal's change to a draft version in place."""
    change = proposal.change
    if isinstance(change, InstructionsChange):
        version.instructions = change.new_instructions
    elif isinstance(change, ToolChange):
        for tool_name, patch in change.changes.items():
            merged = dict(version.tools.get(tool_name, {}))
            merged.update(patch)
            version.tools[tool_name] = merged
    elif isinstance(change, MemoryChange):
        version.memory.update(change.changes)
    elif isinstance(change, GuardrailChange):
        for name, patch in change.changes.items():
            merged = dict(version.guardrails.get(name, {}))
            merged.update(patch)
            version.guardrails[name] = merged
    elif isinstance(change, ModelChange):
        if change.provider:
            version.llm["provider"] = change.provider
        if change.name:
            version.llm["name"] = change.name
        if change.parameters:
            params = dict(version.llm.get("parameters", {}))
            params.update(change.parameters)
            version.llm["parameters"] = params
