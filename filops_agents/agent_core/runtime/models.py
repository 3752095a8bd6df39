from __future__ import annotations

"""Runtime dependency bundle and loop state types.

- ``LoopDeps`` collects the collaborators a compliance loop needs. It is
  built once by the wiring code and shared by every loop.
- ``AgentReporter`` is the narrow view of the registry a loop reports to.
- ``ComplianceMetrics`` is the in-memory counter set owned by one loop.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol

from ..actions.lifecycle import ActionLifecycle
from ..alerts import AlertEmitter
from ..events import EventPublisher
from ..integrations.interfaces import ProviderSelector
from ..repos.interfaces import DatasetRepository, PolicyRepository
from ..schemas.domain import AgentStatus, HeartbeatMetrics


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AgentReporter(Protocol):
    async def record_heartbeat(
        self,
        agent_id: str,
        timestamp: datetime,
        status: AgentStatus,
        metrics: Optional[HeartbeatMetrics] = None,
    ) -> None:
        ...

    async def record_error(
        self,
        agent_id: str,
        timestamp: datetime,
        error: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


@dataclass(frozen=True)
class LoopDeps:
    """Dependency bundle for ``ComplianceLoop``.

    ``default_min_availability`` and ``default_max_price`` are only used when
    a policy leaves the corresponding value unset or zero.
    """

    policies: PolicyRepository
    datasets: DatasetRepository
    providers: ProviderSelector
    lifecycle: ActionLifecycle
    alerts: AlertEmitter
    events: EventPublisher

    default_min_availability: float = 0.99
    default_max_price: float = 1000.0
    clock: Callable[[], datetime] = _utc_now


@dataclass
class ComplianceMetrics:
    """Cumulative counters of one compliance loop; reset when the loop is rebuilt."""

    checks_performed: int = 0
    deficits_detected: int = 0
    actions_proposed: int = 0
    actions_executed: int = 0
    actions_succeeded: int = 0
    actions_failed: int = 0
    last_check_at: Optional[datetime] = field(default=None)

    def snapshot(self) -> "ComplianceMetrics":
        return ComplianceMetrics(**asdict(self))

    def heartbeat(self) -> HeartbeatMetrics:
        return HeartbeatMetrics(
            actions_proposed=self.actions_proposed,
            actions_executed=self.actions_executed,
            error_count=self.actions_failed,
        )

    def to_payload(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_check_at"] = self.last_check_at.isoformat() if self.last_check_at else None
        return data
