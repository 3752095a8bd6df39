from __future__ import annotations

"""Repository interface contracts.

The registry, the compliance loop, the action lifecycle and the policy
service depend on these Protocols instead of a concrete persistence engine.

Contract guidelines
-------------------

- All methods are async and may raise on storage failure.
- Implementations must not leak sessions or transactions to callers.
- ``get`` returns ``None`` for unknown ids; it never raises ``NotFoundError``.
  Translating absence into domain errors is the caller's job.
- ``list`` methods accept equality filters and return newest records first
  unless stated otherwise.

Two methods carry concurrency guarantees the core relies on:

- ``ActionRepository.transition`` is a compare-and-set on the action status.
  Two concurrent callers moving the same action out of ``proposed`` cannot
  both succeed.
- ``AgentRepository.increment_error`` increments the error counter
  atomically and returns the resulting record.
"""

from datetime import datetime
from typing import Any, Iterable, List, Optional, Protocol

from ..schemas.domain import (
    Action,
    ActionStatus,
    AgentInstance,
    AgentKind,
    AgentStatus,
    Alert,
    AlertSeverity,
    AlertStatus,
    Dataset,
    DatasetSnapshot,
    Deal,
    PolicyRecord,
)


class PolicyRepository(Protocol):
    """Persist and query versioned policy records."""

    async def create(self, policy: PolicyRecord) -> None:
        """
        Persist a new policy record.

        Args:
            policy: The policy to insert.
        """
        ...

    async def get(self, policy_id: str) -> Optional[PolicyRecord]:
        """
        Retrieve a policy by id.

        Args:
            policy_id: The policy identifier.

        Returns:
            The PolicyRecord if found, else None.
        """
        ...

    async def update(self, policy: PolicyRecord) -> None:
        """
        Overwrite a stored policy with ``policy``.

        Args:
            policy: The full record to store; unknown ids are ignored.
        """
        ...

    async def list(self, *, project_id: Optional[str] = None, active: Optional[bool] = None) -> List[PolicyRecord]:
        """
        List policies, newest first.

        Args:
            project_id: Only policies of this project.
            active: Only policies with this activation flag.
        """
        ...

    async def delete(self, policy_id: str) -> bool:
        """Delete a policy. Returns False when it did not exist."""
        ...


class AgentRepository(Protocol):
    """Persist agent instances. Only the registry writes through this contract."""

    async def create(self, agent: AgentInstance) -> None:
        ...

    async def get(self, agent_id: str) -> Optional[AgentInstance]:
        ...

    async def update(self, agent_id: str, **changes: Any) -> Optional[AgentInstance]:
        """
        Apply field changes to an agent and bump ``updated_at``.

        Args:
            agent_id: The agent identifier.
            **changes: Field values keyed by ``AgentInstance`` attribute name
                (``status``, ``last_heartbeat``, ``error_count``, ``last_error``).

        Returns:
            The updated agent, or None if it does not exist.
        """
        ...

    async def increment_error(self, agent_id: str, *, error: str, at: datetime) -> Optional[AgentInstance]:
        """
        Atomically add one to the error counter and move the agent to ``error``.

        Args:
            agent_id: The agent identifier.
            error: Message stored as ``last_error``.
            at: Timestamp stored as ``updated_at``.

        Returns:
            The updated agent, or None if it does not exist.
        """
        ...

    async def list(
        self,
        *,
        project_id: Optional[str] = None,
        policy_id: Optional[str] = None,
        kind: Optional[AgentKind] = None,
        status: Optional[AgentStatus] = None,
    ) -> List[AgentInstance]:
        ...

    async def count_by_policy(self, policy_id: str, statuses: Iterable[AgentStatus]) -> int:
        """Count agents bound to ``policy_id`` whose status is one of ``statuses``."""
        ...


class ActionRepository(Protocol):
    """Persist remediation actions."""

    async def create(self, action: Action) -> None:
        ...

    async def get(self, action_id: str) -> Optional[Action]:
        ...

    async def transition(
        self,
        action_id: str,
        *,
        from_statuses: Iterable[ActionStatus],
        to_status: ActionStatus,
        **changes: Any,
    ) -> Optional[Action]:
        """
        Move an action to ``to_status`` if its current status is in ``from_statuses``.

        Args:
            action_id: The action identifier.
            from_statuses: Allowed current statuses.
            to_status: The new status.
            **changes: Extra fields written in the same update
                (``result``, ``error``, ``executed_at``).

        Returns:
            The updated action, or None when the action is missing or its
            status did not match.
        """
        ...

    async def list(
        self,
        *,
        agent_id: Optional[str] = None,
        dataset_id: Optional[str] = None,
        status: Optional[ActionStatus] = None,
    ) -> List[Action]:
        ...


class AlertRepository(Protocol):
    """Append alerts. Alert status is owned by an operator workflow."""

    async def create(self, alert: Alert) -> None:
        ...

    async def list(
        self,
        *,
        project_id: Optional[str] = None,
        severity: Optional[AlertSeverity] = None,
        status: Optional[AlertStatus] = None,
    ) -> List[Alert]:
        ...


class DatasetRepository(Protocol):
    """Read datasets together with their replication state."""

    async def create(self, dataset: Dataset) -> None:
        ...

    async def get(self, dataset_id: str) -> Optional[Dataset]:
        ...

    async def list_with_active_deals(self, project_id: str) -> List[DatasetSnapshot]:
        """
        Return every dataset of a project with its currently active deals.

        Datasets are returned oldest first; callers must not depend on it.
        """
        ...


class DealRepository(Protocol):
    """Persist storage deals."""

    async def create(self, deal: Deal) -> None:
        ...

    async def list_active_by_project(self, project_id: str) -> List[Deal]:
        ...
