from __future__ import annotations

"""Application-facing service for the agent core.

``AgentService`` is the single entry point callers (an HTTP layer, a CLI, a
worker process) use. It is intentionally thin: lifecycle rules live in
``AgentRegistry``, action rules in ``ActionLifecycle`` and policy rules in
``PolicyService``. The service only resolves those collaborators and adds
read-only listing helpers.
"""

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Union

from pydantic import BaseModel

from .actions.lifecycle import ActionLifecycle
from .agent_registry import AgentRegistry
from .policy.service import PolicyService
from .repos.interfaces import ActionRepository, AlertRepository
from .runtime.models import ComplianceMetrics
from .schemas.domain import (
    Action,
    ActionStatus,
    AgentInstance,
    AgentKind,
    AgentStatus,
    Alert,
    AlertSeverity,
    AlertStatus,
)


@dataclass(frozen=True)
class AgentServiceDeps:
    """Dependency bundle for ``AgentService``."""

    registry: AgentRegistry
    lifecycle: ActionLifecycle
    policies: PolicyService
    actions: ActionRepository
    alerts: AlertRepository


class AgentService:
    """Register and drive agents, review their actions and read alerts."""

    def __init__(self, *, deps: AgentServiceDeps) -> None:
        self._deps = deps

    @property
    def policies(self) -> PolicyService:
        return self._deps.policies

    @property
    def registry(self) -> AgentRegistry:
        return self._deps.registry

    async def register_agent(
        self,
        kind: Union[AgentKind, str],
        project_id: str,
        policy_id: str,
        config: Union[BaseModel, Mapping[str, Any], None] = None,
        *,
        start: bool = False,
    ) -> AgentInstance:
        """
        Register an agent and optionally start it right away.

        Args:
            kind: Agent kind.
            project_id: Owning project.
            policy_id: Active policy to enforce.
            config: Kind-specific configuration.
            start: Start the agent after registration.

        Returns:
            AgentInstance: The agent in its resulting state.
        """
        agent = await self._deps.registry.register_agent(kind, project_id, policy_id, config)
        if start:
            agent = await self._deps.registry.start_agent(agent.id)
        return agent

    async def start_agent(self, agent_id: str) -> AgentInstance:
        return await self._deps.registry.start_agent(agent_id)

    async def pause_agent(self, agent_id: str) -> AgentInstance:
        return await self._deps.registry.pause_agent(agent_id)

    async def resume_agent(self, agent_id: str) -> AgentInstance:
        return await self._deps.registry.resume_agent(agent_id)

    async def stop_agent(self, agent_id: str) -> AgentInstance:
        return await self._deps.registry.stop_agent(agent_id)

    async def get_agent(self, agent_id: str) -> AgentInstance:
        return await self._deps.registry.get_agent(agent_id)

    async def list_agents(
        self,
        *,
        project_id: Optional[str] = None,
        policy_id: Optional[str] = None,
        kind: Optional[AgentKind] = None,
        status: Optional[AgentStatus] = None,
    ) -> List[AgentInstance]:
        return await self._deps.registry.list_agents(
            project_id=project_id, policy_id=policy_id, kind=kind, status=status
        )

    def get_metrics(self, agent_id: str) -> Optional[ComplianceMetrics]:
        return self._deps.registry.get_metrics(agent_id)

    async def get_action(self, action_id: str) -> Action:
        return await self._deps.lifecycle.get(action_id)

    async def list_actions(
        self,
        *,
        agent_id: Optional[str] = None,
        dataset_id: Optional[str] = None,
        status: Optional[ActionStatus] = None,
    ) -> List[Action]:
        return await self._deps.actions.list(agent_id=agent_id, dataset_id=dataset_id, status=status)

    async def approve_action(self, action_id: str) -> Action:
        """Approve a proposed action; it is executed immediately."""
        return await self._deps.lifecycle.approve(action_id)

    async def reject_action(self, action_id: str, reason: Optional[str] = None) -> Action:
        return await self._deps.lifecycle.reject(action_id, reason)

    async def execute_action(self, action_id: str) -> Action:
        return await self._deps.lifecycle.execute(action_id)

    async def list_alerts(
        self,
        *,
        project_id: Optional[str] = None,
        severity: Optional[AlertSeverity] = None,
        status: Optional[AlertStatus] = None,
    ) -> List[Alert]:
        return await self._deps.alerts.list(project_id=project_id, severity=severity, status=status)

    async def shutdown(self) -> None:
        await self._deps.registry.shutdown()
