from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional
from uuid import uuid4

from pydantic import Field

from .agent_config import AgentConfig
from .base import BaseSchema
from .policy import PolicyDocument


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AgentKind(str, Enum):
    replica_balance = "RBA"
    predictive_renewal = "PRA"
    pricing_arbitrage = "PAA"


class AgentStatus(str, Enum):
    created = "created"
    running = "running"
    paused = "paused"
    stopped = "stopped"
    error = "error"


# Agents in these states still hold on to their policy.
NON_TERMINAL_AGENT_STATUSES: FrozenSet[AgentStatus] = frozenset(
    {AgentStatus.created, AgentStatus.running, AgentStatus.paused, AgentStatus.error}
)


class ActionKind(str, Enum):
    create_deal = "create_deal"
    upgrade_sector = "upgrade_sector"


class ActionStatus(str, Enum):
    proposed = "proposed"
    approved = "approved"
    executing = "executing"
    completed = "completed"
    failed = "failed"
    rejected = "rejected"


TERMINAL_ACTION_STATUSES: FrozenSet[ActionStatus] = frozenset(
    {ActionStatus.completed, ActionStatus.failed, ActionStatus.rejected}
)


class AlertSeverity(str, Enum):
    critical = "critical"
    warning = "warning"
    info = "info"


class AlertStatus(str, Enum):
    open = "open"
    acknowledged = "acknowledged"
    resolved = "resolved"


class DealStatus(str, Enum):
    pending = "pending"
    active = "active"
    expired = "expired"
    slashed = "slashed"


class PolicyRecord(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    project_id: str
    name: str
    version: int = 1
    doc: PolicyDocument
    active: bool = False

    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class HeartbeatMetrics(BaseSchema):
    actions_proposed: int = 0
    actions_executed: int = 0
    error_count: int = 0


class AgentInstance(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    kind: AgentKind
    project_id: str
    policy_id: str
    config: AgentConfig

    status: AgentStatus = AgentStatus.created
    last_heartbeat: Optional[datetime] = None
    error_count: int = 0
    last_error: Optional[str] = None

    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class ActionMetadata(BaseSchema):
    region: Optional[str] = None
    provider_id: Optional[str] = None
    estimated_cost: Optional[float] = None
    reason: Optional[str] = None
    dataset_cid: Optional[str] = None
    dataset_size_bytes: Optional[int] = None


class Action(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    agent_id: str
    dataset_id: str
    kind: ActionKind
    status: ActionStatus = ActionStatus.proposed

    metadata: ActionMetadata = Field(default_factory=ActionMetadata)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    created_at: datetime = Field(default_factory=_utc_now)
    executed_at: Optional[datetime] = None


class Alert(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    project_id: str
    severity: AlertSeverity
    summary: str
    details: Dict[str, Any] = Field(default_factory=dict)
    status: AlertStatus = AlertStatus.open
    source: str

    created_at: datetime = Field(default_factory=_utc_now)


class Dataset(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    project_id: str
    name: str
    cid: str
    size_bytes: int = 0

    created_at: datetime = Field(default_factory=_utc_now)


class Deal(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    dataset_id: str
    provider_id: str
    region: Optional[str] = None
    status: DealStatus = DealStatus.active

    deal_ref: Optional[str] = None
    tx_hash: Optional[str] = None
    price_fil: Optional[str] = None
    collateral_fil: Optional[str] = None
    price_usd_per_tib_month: Optional[float] = None
    expires_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=_utc_now)


class DatasetSnapshot(BaseSchema):
    """A dataset together with the deals that are active right now."""

    dataset: Dataset
    active_deals: List[Deal] = Field(default_factory=list)


@dataclass(frozen=True)
class Deficit:
    region: str
    required: int
    current: int

    @property
    def gap(self) -> int:
        return self.required - self.current
