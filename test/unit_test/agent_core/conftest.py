from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pytest

from filops_agents.agent_core.actions.lifecycle import ActionLifecycle
from filops_agents.agent_core.agent_registry import AgentRegistry, LoopFactory
from filops_agents.agent_core.alerts import AlertEmitter
from filops_agents.agent_core.events import InMemoryEventPublisher
from filops_agents.agent_core.integrations.interfaces import (
    CreateDealParams,
    CreateDealResult,
    ProviderCandidate,
    ProviderQuery,
)
from filops_agents.agent_core.policy.service import PolicyService
from filops_agents.agent_core.policy.validator import PolicyValidator
from filops_agents.agent_core.runtime.models import LoopDeps
from filops_agents.agent_core.runtime.scheduler import PeriodicScheduler
from filops_agents.agent_core.schemas.domain import (
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
    DealStatus,
    PolicyRecord,
)
from filops_agents.agent_core.schemas.policy import PolicyDocument
from filops_agents.core.config import RuntimeConfig
from filops_agents.core.errors import CollaboratorFailure


def base_policy_doc(**overrides: Any) -> Dict[str, Any]:
    doc: Dict[str, Any] = {
        "replication": {
            "regions": [
                {"code": "NA", "min_replicas": 2},
                {"code": "EU", "min_replicas": 1},
            ]
        },
        "availability_target": 0.99,
        "cost_ceiling_usd_per_TiB_month": 100,
        "renewal": {"lead_time_days": 14, "min_collateral_buffer_pct": 20},
        "arbitrage": {
            "enable": False,
            "min_expected_savings_pct": 10,
            "verification_strategy": {"hash_check": True, "sample_retrieval": 0.05},
        },
    }
    doc.update(overrides)
    return doc


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class _PolicyRepo:
    def __init__(self) -> None:
        self.items: Dict[str, PolicyRecord] = {}

    async def create(self, policy: PolicyRecord) -> None:
        self.items[policy.id] = policy.model_copy()

    async def get(self, policy_id: str) -> Optional[PolicyRecord]:
        p = self.items.get(policy_id)
        return p.model_copy() if p is not None else None

    async def update(self, policy: PolicyRecord) -> None:
        if policy.id in self.items:
            self.items[policy.id] = policy.model_copy()

    async def list(self, *, project_id: Optional[str] = None, active: Optional[bool] = None) -> List[PolicyRecord]:
        out = [
            p.model_copy()
            for p in self.items.values()
            if (project_id is None or p.project_id == project_id) and (active is None or p.active == active)
        ]
        return sorted(out, key=lambda p: p.created_at, reverse=True)

    async def delete(self, policy_id: str) -> bool:
        return self.items.pop(policy_id, None) is not None


class _AgentRepo:
    def __init__(self) -> None:
        self.items: Dict[str, AgentInstance] = {}
        self.updates: List[Tuple[str, Dict[str, Any]]] = []

    async def create(self, agent: AgentInstance) -> None:
        self.items[agent.id] = agent.model_copy()

    async def get(self, agent_id: str) -> Optional[AgentInstance]:
        a = self.items.get(agent_id)
        return a.model_copy() if a is not None else None

    async def update(self, agent_id: str, **changes: Any) -> Optional[AgentInstance]:
        if agent_id not in self.items:
            return None
        self.updates.append((agent_id, dict(changes)))
        self.items[agent_id] = self.items[agent_id].model_copy(update=changes)
        return self.items[agent_id].model_copy()

    async def increment_error(self, agent_id: str, *, error: str, at: datetime) -> Optional[AgentInstance]:
        a = self.items.get(agent_id)
        if a is None:
            return None
        self.items[agent_id] = a.model_copy(
            update={"error_count": a.error_count + 1, "status": AgentStatus.error, "last_error": error, "updated_at": at}
        )
        return self.items[agent_id].model_copy()

    async def list(
        self,
        *,
        project_id: Optional[str] = None,
        policy_id: Optional[str] = None,
        kind: Optional[AgentKind] = None,
        status: Optional[AgentStatus] = None,
    ) -> List[AgentInstance]:
        out = [
            a.model_copy()
            for a in self.items.values()
            if (project_id is None or a.project_id == project_id)
            and (policy_id is None or a.policy_id == policy_id)
            and (kind is None or a.kind == kind)
            and (status is None or a.status == status)
        ]
        return sorted(out, key=lambda a: a.created_at, reverse=True)

    async def count_by_policy(self, policy_id: str, statuses: Iterable[AgentStatus]) -> int:
        wanted = set(statuses)
        return sum(1 for a in self.items.values() if a.policy_id == policy_id and a.status in wanted)


class _ActionRepo:
    def __init__(self) -> None:
        self.items: Dict[str, Action] = {}

    async def create(self, action: Action) -> None:
        self.items[action.id] = action.model_copy()

    async def get(self, action_id: str) -> Optional[Action]:
        a = self.items.get(action_id)
        return a.model_copy() if a is not None else None

    async def transition(
        self,
        action_id: str,
        *,
        from_statuses: Iterable[ActionStatus],
        to_status: ActionStatus,
        **changes: Any,
    ) -> Optional[Action]:
        # No await between check and write: atomic under asyncio.
        a = self.items.get(action_id)
        if a is None or a.status not in set(from_statuses):
            return None
        self.items[action_id] = a.model_copy(update={"status": to_status, **changes})
        return self.items[action_id].model_copy()

    async def list(
        self,
        *,
        agent_id: Optional[str] = None,
        dataset_id: Optional[str] = None,
        status: Optional[ActionStatus] = None,
    ) -> List[Action]:
        return [
            a.model_copy()
            for a in self.items.values()
            if (agent_id is None or a.agent_id == agent_id)
            and (dataset_id is None or a.dataset_id == dataset_id)
            and (status is None or a.status == status)
        ]


class _AlertRepo:
    def __init__(self) -> None:
        self.items: List[Alert] = []

    async def create(self, alert: Alert) -> None:
        self.items.append(alert)

    async def list(
        self,
        *,
        project_id: Optional[str] = None,
        severity: Optional[AlertSeverity] = None,
        status: Optional[AlertStatus] = None,
    ) -> List[Alert]:
        return [
            a
            for a in reversed(self.items)
            if (project_id is None or a.project_id == project_id)
            and (severity is None or a.severity == severity)
            and (status is None or a.status == status)
        ]

    def of_severity(self, severity: AlertSeverity) -> List[Alert]:
        return [a for a in self.items if a.severity == severity]


class _DatasetRepo:
    def __init__(self, deals: _DealRepo) -> None:
        self.items: List[Dataset] = []
        self._deals = deals

    async def create(self, dataset: Dataset) -> None:
        self.items.append(dataset)

    async def get(self, dataset_id: str) -> Optional[Dataset]:
        return next((d for d in self.items if d.id == dataset_id), None)

    async def list_with_active_deals(self, project_id: str) -> List[DatasetSnapshot]:
        return [
            DatasetSnapshot(
                dataset=d,
                active_deals=[x for x in self._deals.items if x.dataset_id == d.id and x.status == DealStatus.active],
            )
            for d in self.items
            if d.project_id == project_id
        ]


class _DealRepo:
    def __init__(self) -> None:
        self.items: List[Deal] = []
        self.datasets: Optional[_DatasetRepo] = None

    async def create(self, deal: Deal) -> None:
        self.items.append(deal)

    async def list_active_by_project(self, project_id: str) -> List[Deal]:
        assert self.datasets is not None
        ids = {d.id for d in self.datasets.items if d.project_id == project_id}
        return [x for x in self.items if x.dataset_id in ids and x.status == DealStatus.active]


class _Selector:
    """Provider selector returning ``per_region`` candidates, or raising ``fail``."""

    def __init__(self) -> None:
        self.per_region: Dict[str, int] = {}
        self.default_count = 5
        self.fail: Optional[Exception] = None
        self.queries: List[ProviderQuery] = []

    async def find_best_providers(self, query: ProviderQuery) -> List[ProviderCandidate]:
        self.queries.append(query)
        if self.fail is not None:
            raise self.fail
        n = min(self.per_region.get(query.region, self.default_count), query.limit)
        return [
            ProviderCandidate(provider_id=f"f0{query.region.lower()}{i}", price_usd_per_tib_month=4.0 + i, region=query.region)
            for i in range(n)
        ]


class _Executor:
    """Deal executor that records calls; set ``fail`` to make it raise."""

    def __init__(self) -> None:
        self.calls: List[CreateDealParams] = []
        self.fail: Optional[Exception] = None
        self.yield_before_result = False

    async def create_deal(self, params: CreateDealParams) -> CreateDealResult:
        self.calls.append(params)
        if self.yield_before_result:
            await asyncio.sleep(0)
        if self.fail is not None:
            raise self.fail
        n = len(self.calls)
        return CreateDealResult(deal_id=f"deal-{n}", tx_hash=f"0x{n:04x}")


class CoreEnv:
    """In-memory collaborators plus builders for the components under test."""

    def __init__(self) -> None:
        self.clock = _Clock()
        self.policies = _PolicyRepo()
        self.agents = _AgentRepo()
        self.actions = _ActionRepo()
        self.alerts = _AlertRepo()
        self.deals = _DealRepo()
        self.datasets = _DatasetRepo(self.deals)
        self.deals.datasets = self.datasets
        self.events = InMemoryEventPublisher()
        self.selector = _Selector()
        self.executor = _Executor()
        self.scheduler = PeriodicScheduler()
        self.runtime = RuntimeConfig()

    @property
    def emitter(self) -> AlertEmitter:
        return AlertEmitter(alerts=self.alerts, events=self.events)

    def lifecycle(self) -> ActionLifecycle:
        return ActionLifecycle(
            actions=self.actions,
            deals=self.deals,
            executor=self.executor,
            events=self.events,
            clock=self.clock,
        )

    def loop_deps(self) -> LoopDeps:
        return LoopDeps(
            policies=self.policies,
            datasets=self.datasets,
            providers=self.selector,
            lifecycle=self.lifecycle(),
            alerts=self.emitter,
            events=self.events,
            clock=self.clock,
        )

    def registry(self, loop_factory: Optional[LoopFactory] = None) -> AgentRegistry:
        return AgentRegistry(
            agents=self.agents,
            policies=self.policies,
            events=self.events,
            alerts=self.emitter,
            scheduler=self.scheduler,
            loop_factory=loop_factory,
            runtime=self.runtime,
            clock=self.clock,
        )

    def policy_service(self) -> PolicyService:
        return PolicyService(
            policies=self.policies,
            agents=self.agents,
            deals=self.deals,
            events=self.events,
            validator=PolicyValidator(),
            clock=self.clock,
        )

    async def add_policy(
        self,
        *,
        project_id: str = "proj-1",
        regions: Sequence[Tuple[str, int]] = (("NA", 2), ("EU", 1)),
        active: bool = True,
        **doc_overrides: Any,
    ) -> PolicyRecord:
        raw = base_policy_doc(**doc_overrides)
        raw["replication"] = {"regions": [{"code": c, "min_replicas": n} for c, n in regions]}
        policy = PolicyRecord(
            project_id=project_id,
            name="default",
            doc=PolicyDocument.model_validate(raw),
            active=active,
            created_at=self.clock(),
            updated_at=self.clock(),
        )
        await self.policies.create(policy)
        return policy

    async def add_dataset(
        self,
        *,
        project_id: str = "proj-1",
        deal_regions: Sequence[Optional[str]] = (),
        cid: str = "bafy-dataset",
    ) -> Dataset:
        ds = Dataset(project_id=project_id, name=cid, cid=cid, size_bytes=1024)
        await self.datasets.create(ds)
        for i, region in enumerate(deal_regions):
            await self.deals.create(Deal(dataset_id=ds.id, provider_id=f"f0seed{i}", region=region))
        return ds

    async def add_agent(
        self,
        policy: PolicyRecord,
        *,
        status: AgentStatus = AgentStatus.created,
        error_count: int = 0,
        **config: Any,
    ) -> AgentInstance:
        from filops_agents.agent_core.schemas.agent_config import parse_agent_config

        agent = AgentInstance(
            kind=AgentKind.replica_balance,
            project_id=policy.project_id,
            policy_id=policy.id,
            config=parse_agent_config(AgentKind.replica_balance, config),
            status=status,
            error_count=error_count,
            last_heartbeat=self.clock(),
            created_at=self.clock(),
            updated_at=self.clock(),
        )
        await self.agents.create(agent)
        return agent


@pytest.fixture
async def env():
    core = CoreEnv()
    yield core
    await core.scheduler.shutdown(timeout=1.0)


@pytest.fixture
def failing_collaborator():
    def _make(message: str = "deal service unavailable") -> CollaboratorFailure:
        return CollaboratorFailure(message, status_code=503)

    return _make


@pytest.fixture
def policy_doc():
    """Factory for a valid raw policy document; keyword overrides replace top-level keys."""
    return base_policy_doc
