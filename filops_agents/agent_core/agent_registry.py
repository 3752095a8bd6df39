"""Agent lifecycle registry.

The registry owns every ``AgentInstance``: callers never write agent fields
directly, they go through the transition operations below.

States::

    created -> running -> paused | stopped | error
    paused  -> running
    stopped -> running   (via start)
    error   -> running   (via start)

While an agent is running the registry keeps two periodic tasks for it: the
compliance loop built by ``loop_factory`` (replica-balance agents only) and a
heartbeat staleness monitor. Pause and stop cancel both; a tick already in
progress is allowed to finish.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Set, Union

from pydantic import BaseModel

from ..core.config import RuntimeConfig
from ..core.errors import (
    AgentNotFoundError,
    AgentNotPausedError,
    PolicyNotActiveError,
    PolicyNotFoundError,
    ValidationFailedError,
)
from ..core.logging_config import get_logger
from .alerts import AlertEmitter
from .events import EventPublisher, EventType, Topics, build_event
from .repos.interfaces import AgentRepository, PolicyRepository
from .runtime.models import ComplianceMetrics
from .runtime.scheduler import PeriodicScheduler
from .schemas.agent_config import parse_agent_config
from .schemas.domain import (
    AgentInstance,
    AgentKind,
    AgentStatus,
    Alert,
    AlertSeverity,
    HeartbeatMetrics,
)

logger = get_logger(__name__)

SOURCE = "agent-orchestrator"


class AgentLoop(Protocol):
    """What the registry needs from a running agent loop."""

    @property
    def metrics(self) -> ComplianceMetrics:
        ...

    def start(self) -> None:
        ...

    def stop(self, status: AgentStatus = AgentStatus.stopped) -> None:
        ...


LoopFactory = Callable[[AgentInstance, "AgentRegistry"], AgentLoop]
"""
LoopFactory:
    Builds the periodic loop for a freshly started agent. The registry passes
    itself so the loop can report heartbeats and errors back.
"""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def monitor_key(agent_id: str) -> str:
    return f"heartbeat:{agent_id}"


class AgentRegistry:
    """
    Register agents, drive their lifecycle and watch their health.

    Args:
        agents: Agent persistence.
        policies: Policy persistence, used to check the bound policy on registration.
        events: Event publisher.
        alerts: Alert emitter for error escalation and stale heartbeats.
        scheduler: Runs heartbeat monitors and agent loops.
        loop_factory: Builds a compliance loop for a replica-balance agent.
            Without it agents change state but run no loop.
        runtime: Heartbeat check period, staleness threshold and error threshold.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        *,
        agents: AgentRepository,
        policies: PolicyRepository,
        events: EventPublisher,
        alerts: AlertEmitter,
        scheduler: Optional[PeriodicScheduler] = None,
        loop_factory: Optional[LoopFactory] = None,
        runtime: Optional[RuntimeConfig] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._agents = agents
        self._policies = policies
        self._events = events
        self._alerts = alerts
        self._scheduler = scheduler or PeriodicScheduler()
        self._loop_factory = loop_factory
        self._runtime = runtime or RuntimeConfig()
        self._clock = clock
        self._loops: Dict[str, AgentLoop] = {}
        # Agents whose loop was taken away by pause or stop; a tick still in
        # flight must not write its status back.
        self._detached: Set[str] = set()

    # ------------------------------------------------------------------
    # Registration and queries
    # ------------------------------------------------------------------

    async def register_agent(
        self,
        kind: Union[AgentKind, str],
        project_id: str,
        policy_id: str,
        config: Union[BaseModel, Mapping[str, Any], None] = None,
    ) -> AgentInstance:
        """
        Register a new agent in ``created``.

        Args:
            kind: Agent kind.
            project_id: Owning project.
            policy_id: Policy the agent enforces; it must exist and be active.
            config: Kind-specific configuration; missing fields take defaults.

        Returns:
            AgentInstance: The persisted agent.

        Raises:
            ValidationFailedError: Invalid kind or configuration.
            PolicyNotFoundError: The policy does not exist.
            PolicyNotActiveError: The policy exists but is inactive.
        """
        try:
            agent_kind = AgentKind(kind)
        except ValueError as exc:
            raise ValidationFailedError(f"Unknown agent kind {kind!r}", details={"kind": str(kind)}) from exc
        raw = config.model_dump() if isinstance(config, BaseModel) else config
        cfg = parse_agent_config(agent_kind, raw)

        policy = await self._policies.get(policy_id)
        if policy is None:
            raise PolicyNotFoundError(policy_id)
        if not policy.active:
            raise PolicyNotActiveError(policy_id)

        now = self._clock()
        agent = AgentInstance(
            kind=agent_kind,
            project_id=project_id,
            policy_id=policy_id,
            config=cfg,
            status=AgentStatus.created,
            created_at=now,
            updated_at=now,
        )
        await self._agents.create(agent)
        logger.info("Agent %s registered (kind=%s, policy=%s)", agent.id, agent_kind.value, policy_id)
        await self._publish(
            EventType.agent_registered,
            {
                "agent_id": agent.id,
                "agent_type": agent_kind.value,
                "project_id": project_id,
                "policy_id": policy_id,
                "config": cfg.model_dump(mode="json"),
            },
        )
        return agent

    async def get_agent(self, agent_id: str) -> AgentInstance:
        """Return the agent or raise ``AgentNotFoundError``."""
        agent = await self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    async def list_agents(
        self,
        *,
        project_id: Optional[str] = None,
        policy_id: Optional[str] = None,
        kind: Optional[AgentKind] = None,
        status: Optional[AgentStatus] = None,
    ) -> List[AgentInstance]:
        """List agents matching every given filter, newest first."""
        return await self._agents.list(project_id=project_id, policy_id=policy_id, kind=kind, status=status)

    def get_metrics(self, agent_id: str) -> Optional[ComplianceMetrics]:
        """Live metrics of the agent's loop, or None when no loop is attached."""
        loop = self._loops.get(agent_id)
        return loop.metrics if loop is not None else None

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    async def start_agent(self, agent_id: str) -> AgentInstance:
        """
        Start an agent.

        Starting a running agent is a no-op; in particular the error counter
        is not reset again. Otherwise the counter and last error are cleared,
        the heartbeat is refreshed and monitoring begins.
        """
        agent = await self.get_agent(agent_id)
        if agent.status == AgentStatus.running:
            logger.info("Agent %s already running", agent_id)
            self._attach(agent)
            return agent

        updated = await self._agents.update(
            agent_id,
            status=AgentStatus.running,
            error_count=0,
            last_error=None,
            last_heartbeat=self._clock(),
        )
        if updated is None:
            raise AgentNotFoundError(agent_id)
        self._attach(updated)
        logger.info("Agent %s started", agent_id)
        await self._publish(EventType.agent_started, {"agent_id": agent_id, "agent_type": updated.kind.value})
        return updated

    async def pause_agent(self, agent_id: str) -> AgentInstance:
        """Pause an agent from any state; its loop and monitor are cancelled."""
        return await self._halt(agent_id, AgentStatus.paused, EventType.agent_paused)

    async def stop_agent(self, agent_id: str) -> AgentInstance:
        """Stop an agent from any state; its loop and monitor are cancelled."""
        return await self._halt(agent_id, AgentStatus.stopped, EventType.agent_stopped)

    async def resume_agent(self, agent_id: str) -> AgentInstance:
        """
        Resume a paused agent.

        Raises:
            AgentNotFoundError: Unknown agent.
            AgentNotPausedError: The agent is not ``paused``.
        """
        agent = await self.get_agent(agent_id)
        if agent.status != AgentStatus.paused:
            raise AgentNotPausedError(agent_id, agent.status.value)
        updated = await self._agents.update(agent_id, status=AgentStatus.running, last_heartbeat=self._clock())
        if updated is None:
            raise AgentNotFoundError(agent_id)
        self._attach(updated)
        logger.info("Agent %s resumed", agent_id)
        await self._publish(EventType.agent_resumed, {"agent_id": agent_id, "agent_type": updated.kind.value})
        return updated

    # ------------------------------------------------------------------
    # Health reporting
    # ------------------------------------------------------------------

    async def record_heartbeat(
        self,
        agent_id: str,
        timestamp: datetime,
        status: AgentStatus,
        metrics: Optional[HeartbeatMetrics] = None,
    ) -> None:
        """
        Store the heartbeat time and reported status, then publish the heartbeat.

        A heartbeat from a loop that was detached by pause or stop only
        refreshes the timestamp; the operator's status stands. The event is
        published even when the agent is unknown.
        """
        if self._heartbeat_sets_status(agent_id, status):
            updated = await self._agents.update(agent_id, last_heartbeat=timestamp, status=status)
        else:
            updated = await self._agents.update(agent_id, last_heartbeat=timestamp)
        if updated is None:
            logger.warning("Heartbeat for unknown agent %s", agent_id)
        else:
            status = updated.status
            if status == AgentStatus.running and agent_id in self._loops and not self.is_monitored(agent_id):
                # The monitor drops out while the agent sits in error; pick it up again.
                self._attach(updated)
        await self._events.publish(
            Topics.AGENTS_HEARTBEAT,
            build_event(
                EventType.agent_heartbeat,
                SOURCE,
                {
                    "agent_id": agent_id,
                    "timestamp": timestamp.isoformat(),
                    "status": AgentStatus(status).value,
                    "metrics": metrics.model_dump() if metrics is not None else None,
                },
            ),
        )

    async def record_error(
        self,
        agent_id: str,
        timestamp: datetime,
        error: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Count an agent error and escalate when the threshold is reached.

        Unknown agents are ignored. The agent moves to ``error`` but its loop
        keeps running. Once the counter reaches the threshold every further
        error raises another critical alert.
        """
        agent = await self._agents.increment_error(agent_id, error=error, at=timestamp)
        if agent is None:
            return

        await self._publish(
            EventType.agent_error,
            {
                "agent_id": agent_id,
                "timestamp": timestamp.isoformat(),
                "error": error,
                "error_count": agent.error_count,
                "context": dict(context or {}),
            },
        )
        logger.error("Agent %s error recorded (count=%d): %s", agent_id, agent.error_count, error)

        if agent.error_count >= self._runtime.error_alert_threshold:
            await self._alerts.raise_alert(
                project_id=agent.project_id,
                severity=AlertSeverity.critical,
                summary=f"Agent {agent.kind.value} has failed {agent.error_count} times",
                source=SOURCE,
                details={"agent_id": agent_id, "error_message": error, "error_count": agent.error_count},
            )

    async def check_heartbeat(self, agent_id: str) -> Optional[Alert]:
        """
        One run of the staleness monitor for ``agent_id``.

        The monitor cancels itself once the agent is gone or no longer
        running. A stale heartbeat raises a warning alert on every run until
        the agent heartbeats again.

        Returns:
            The alert raised by this run, if any.
        """
        agent = await self._agents.get(agent_id)
        if agent is None or agent.status != AgentStatus.running:
            self._scheduler.cancel(monitor_key(agent_id))
            return None
        if agent.last_heartbeat is None:
            return None

        stale_for = (self._clock() - agent.last_heartbeat).total_seconds()
        if stale_for <= self._runtime.heartbeat_stale_after_seconds:
            return None
        logger.warning("Agent %s heartbeat is stale (%.0fs)", agent_id, stale_for)
        return await self._alerts.raise_alert(
            project_id=agent.project_id,
            severity=AlertSeverity.warning,
            summary=f"Agent {agent.kind.value} heartbeat is stale",
            source=SOURCE,
            details={
                "agent_id": agent_id,
                "last_heartbeat": agent.last_heartbeat.isoformat(),
                "stale_seconds": stale_for,
            },
        )

    def is_monitored(self, agent_id: str) -> bool:
        return self._scheduler.is_scheduled(monitor_key(agent_id))

    async def shutdown(self) -> None:
        """Cancel every loop and monitor and wait for in-flight runs.

        Stored agent status is left as is, so running agents can be
        re-attached with ``start_agent`` after a restart.
        """
        for loop in self._loops.values():
            loop.stop(AgentStatus.running)
        self._loops.clear()
        await self._scheduler.shutdown()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _halt(self, agent_id: str, status: AgentStatus, event_type: EventType) -> AgentInstance:
        await self.get_agent(agent_id)
        # Detach first so a tick finishing meanwhile already reports ``status``.
        self._detach(agent_id, status)
        updated = await self._agents.update(agent_id, status=status)
        if updated is None:
            raise AgentNotFoundError(agent_id)
        logger.info("Agent %s %s", agent_id, status.value)
        await self._publish(event_type, {"agent_id": agent_id, "agent_type": updated.kind.value})
        return updated

    def _attach(self, agent: AgentInstance) -> None:
        if not self.is_monitored(agent.id):
            self._scheduler.schedule(
                monitor_key(agent.id),
                lambda: self._monitor(agent.id),
                self._runtime.heartbeat_check_interval_seconds,
            )
        if agent.id in self._loops or self._loop_factory is None:
            return
        if agent.kind != AgentKind.replica_balance:
            logger.debug("No runtime loop for agent kind %s", agent.kind.value)
            return
        self._detached.discard(agent.id)
        loop = self._loop_factory(agent, self)
        self._loops[agent.id] = loop
        loop.start()

    def _heartbeat_sets_status(self, agent_id: str, status: AgentStatus) -> bool:
        if agent_id in self._detached:
            return False
        # An attached loop only reports paused or stopped when it is a
        # replaced one finishing its last tick.
        return not (agent_id in self._loops and status in (AgentStatus.paused, AgentStatus.stopped))

    def _detach(self, agent_id: str, status: AgentStatus) -> None:
        self._scheduler.cancel(monitor_key(agent_id))
        loop = self._loops.pop(agent_id, None)
        if loop is not None:
            self._detached.add(agent_id)
            loop.stop(status)

    async def _monitor(self, agent_id: str) -> None:
        await self.check_heartbeat(agent_id)

    async def _publish(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        await self._events.publish(Topics.AGENTS_ACTIONS, build_event(event_type, SOURCE, payload))
