"""Event envelope, topics and the publish contract.

Every state change the core makes visible to the outside world is announced
as an ``EventEnvelope`` on one of the ``Topics``. Publishing is awaited, so a
failing bus surfaces as an exception in the publishing operation.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

from pydantic import Field

from .schemas.base import BaseSchema

ENVELOPE_VERSION = "1.0"


class Topics:
    AGENTS_ACTIONS = "filops.agents.actions"
    AGENTS_HEARTBEAT = "filops.agents.heartbeat"
    ALERTS = "filops.alerts"
    POLICIES_UPDATES = "filops.policies.updates"


class EventType(str, Enum):
    agent_registered = "agent.registered"
    agent_started = "agent.started"
    agent_paused = "agent.paused"
    agent_resumed = "agent.resumed"
    agent_stopped = "agent.stopped"
    agent_heartbeat = "agent.heartbeat"
    agent_error = "agent.error"

    check_started = "rba.check.started"
    check_completed = "rba.check.completed"
    deficit_detected = "rba.deficit.detected"
    action_proposed = "rba.action.proposed"

    action_approved = "action.approved"
    action_rejected = "action.rejected"
    action_executed = "action.executed"
    action_failed = "action.failed"

    policy_created = "policy.created"
    policy_updated = "policy.updated"
    policy_activated = "policy.activated"
    policy_deactivated = "policy.deactivated"
    policy_deleted = "policy.deleted"

    alert_created = "alert.created"


class EventEnvelope(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    type: str
    source: str
    version: str = ENVELOPE_VERSION
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventPublisher(Protocol):
    """Message bus contract."""

    async def publish(self, topic: str, envelope: EventEnvelope) -> None:
        """
        Publish one envelope.

        Args:
            topic: Destination topic, one of ``Topics``.
            envelope: The event to publish.
        """
        ...


def build_event(
    event_type: EventType,
    source: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    timestamp: Optional[datetime] = None,
) -> EventEnvelope:
    """Create an envelope with a fresh id; ``payload`` must be JSON-serializable."""
    env = EventEnvelope(type=event_type.value, source=source, payload=dict(payload or {}))
    if timestamp is not None:
        env.timestamp = timestamp
    return env


class InMemoryEventPublisher:
    """Publisher that keeps every envelope in memory, in publish order.

    Useful for local runs and tests where no bus is available.
    """

    def __init__(self) -> None:
        self.published: List[Tuple[str, EventEnvelope]] = []

    async def publish(self, topic: str, envelope: EventEnvelope) -> None:
        self.published.append((topic, envelope))

    def of_type(self, event_type: EventType) -> List[EventEnvelope]:
        return [env for _, env in self.published if env.type == event_type.value]
