"""Agent and Agent Version — the things the learning loop improves."""

from datetime import datetime
from enum import Enum
from typing import Optional

from learning_kernel.models.base import LearningModel


class VersionStatus(str, Enum):
    DRAFT = "draft"                         # Candidate under test
    ACTIVE = "active"                       # Current production baseline
    ARCHIVED = "archived"                   # Former baseline
    DISCARDED = "discarded"                 # Rejected candidate


class AgentVersion(LearningModel):
    id: str
    agent_id: str
    version: int
    instructions: str = ""
    tools: dict = {}                        # tool name -> config
    memory: dict = {}
    llm: dict = {}                          # provider, name, parameters
    guardrails: dict = {}                   # guardrail name -> policy
    status: VersionStatus = VersionStatus.DRAFT
    source_proposal_id: Optional[str] = None
    created_at: datetime
    promoted_at: Optional[datetime] = None


class AgentRecord(LearningModel):
    id: str
    slug: str
    name: str
    tenant_id: Optional[str] = None
    version: int = 1                        # Current active version number
    active_version_id: Optional[str] = None
    created_at: datetime
