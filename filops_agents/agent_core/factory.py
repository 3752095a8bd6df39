from __future__ import annotations

"""Convenience factories for wiring the agent core.

``build_agent_service`` assembles the registry, the action lifecycle, the
policy service and the compliance loop factory from any set of repositories
and collaborators. ``build_sql_agent_service`` does the same from
``Settings``: an async SQL engine, the SQL repositories, the outbox publisher
and the HTTP collaborator clients.

Nothing else in ``agent_core`` reads ``settings``.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from ..core.config import DealDefaultsConfig, RuntimeConfig, Settings
from .actions.lifecycle import ActionLifecycle
from .agent_registry import AgentRegistry, LoopFactory
from .alerts import AlertEmitter
from .events import EventPublisher
from .integrations.http import HttpDealExecutor, HttpProviderSelector
from .integrations.interfaces import DealExecutor, ProviderSelector
from .policy.service import PolicyService
from .policy.validator import PolicyValidator
from .repos.interfaces import (
    ActionRepository,
    AgentRepository,
    AlertRepository,
    DatasetRepository,
    DealRepository,
    PolicyRepository,
)
from .repos.sql import build_sql_repos, create_all, create_engine, create_sessionmaker
from .runtime.compliance import ComplianceLoop
from .runtime.models import LoopDeps
from .runtime.scheduler import PeriodicScheduler
from .schemas.domain import AgentInstance
from .service import AgentService, AgentServiceDeps


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def build_loop_factory(deps: LoopDeps, scheduler: PeriodicScheduler) -> LoopFactory:
    """Return a factory building a ``ComplianceLoop`` that reports to the given registry."""

    def _factory(agent: AgentInstance, registry: AgentRegistry) -> ComplianceLoop:
        return ComplianceLoop(agent, deps, registry, scheduler)

    return _factory


def build_agent_service(
    *,
    policies: PolicyRepository,
    agents: AgentRepository,
    actions: ActionRepository,
    alerts: AlertRepository,
    datasets: DatasetRepository,
    deals: DealRepository,
    events: EventPublisher,
    providers: ProviderSelector,
    executor: DealExecutor,
    runtime: Optional[RuntimeConfig] = None,
    deal_defaults: Optional[DealDefaultsConfig] = None,
    scheduler: Optional[PeriodicScheduler] = None,
    clock: Callable[[], datetime] = _utc_now,
) -> AgentService:
    """Construct an ``AgentService`` from repositories and collaborators."""
    runtime = runtime or RuntimeConfig()
    scheduler = scheduler or PeriodicScheduler()
    emitter = AlertEmitter(alerts=alerts, events=events)
    lifecycle = ActionLifecycle(
        actions=actions,
        deals=deals,
        executor=executor,
        events=events,
        deal_defaults=deal_defaults,
        clock=clock,
    )
    loop_deps = LoopDeps(
        policies=policies,
        datasets=datasets,
        providers=providers,
        lifecycle=lifecycle,
        alerts=emitter,
        events=events,
        default_min_availability=runtime.default_min_availability,
        default_max_price=runtime.default_max_price_usd,
        clock=clock,
    )
    registry = AgentRegistry(
        agents=agents,
        policies=policies,
        events=events,
        alerts=emitter,
        scheduler=scheduler,
        loop_factory=build_loop_factory(loop_deps, scheduler),
        runtime=runtime,
        clock=clock,
    )
    policy_service = PolicyService(
        policies=policies,
        agents=agents,
        deals=deals,
        events=events,
        validator=PolicyValidator(assumed_min_unit_cost=runtime.budget_min_unit_cost_usd),
        clock=clock,
    )
    return AgentService(
        deps=AgentServiceDeps(
            registry=registry,
            lifecycle=lifecycle,
            policies=policy_service,
            actions=actions,
            alerts=alerts,
        )
    )


@dataclass(frozen=True)
class SqlAgentRuntime:
    """An ``AgentService`` together with the engine it owns."""

    service: AgentService
    engine: AsyncEngine
    providers: HttpProviderSelector
    executor: HttpDealExecutor

    async def aclose(self) -> None:
        await self.service.shutdown()
        await self.providers.aclose()
        await self.executor.aclose()
        await self.engine.dispose()


async def build_sql_agent_service(
    settings: Optional[Settings] = None,
    *,
    create_tables: bool = False,
) -> SqlAgentRuntime:
    """
    Wire the agent core against SQL persistence and the HTTP collaborators.

    Args:
        settings: Settings to use; the module-level ``settings`` by default.
        create_tables: Create the schema first (development and tests).
    """
    if settings is None:
        from ..core.config import settings as default_settings

        settings = default_settings

    engine = create_engine(settings.database_url)
    if create_tables:
        await create_all(engine)
    repos = build_sql_repos(session_factory=create_sessionmaker(engine))

    integ = settings.integrations
    providers = HttpProviderSelector(
        integ.pricing_api_url, api_token=integ.api_token, timeout=integ.timeout_seconds
    )
    executor = HttpDealExecutor(integ.synapse_api_url, api_token=integ.api_token, timeout=integ.timeout_seconds)

    service = build_agent_service(
        policies=repos.policies,
        agents=repos.agents,
        actions=repos.actions,
        alerts=repos.alerts,
        datasets=repos.datasets,
        deals=repos.deals,
        events=repos.events,
        providers=providers,
        executor=executor,
        runtime=settings.runtime,
        deal_defaults=settings.deals,
    )
    return SqlAgentRuntime(service=service, engine=engine, providers=providers, executor=executor)
