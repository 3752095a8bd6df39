from __future__ import annotations

"""SQLAlchemy async repository implementations.

This module provides a SQL persistence implementation for the repository
interfaces defined in ``filops_agents.agent_core.repos.interfaces`` and an
outbox implementation of ``EventPublisher``.

Usage
-----

Typical wiring (tests or application setup):

- Create an async engine with ``create_engine``.
- Create tables with ``create_all`` (for tests/dev).
- Create a session factory with ``create_sessionmaker``.
- Build repository instances with ``build_sql_repos``.

Transaction model
-----------------

Each repository method opens an ``AsyncSession``, performs its operation, and
commits. Status gates and counters are expressed as single ``UPDATE``
statements so concurrent callers are arbitrated by the database.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..events import EventEnvelope
from ..schemas.agent_config import parse_agent_config
from ..schemas.domain import (
    Action,
    ActionKind,
    ActionMetadata,
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
from ..schemas.policy import PolicyDocument
from .interfaces import (
    ActionRepository,
    AgentRepository,
    AlertRepository,
    DatasetRepository,
    DealRepository,
    PolicyRepository,
)
from .models import (
    ActionRow,
    AgentRow,
    AlertRow,
    Base,
    DatasetRow,
    DealRow,
    OutboxEventRow,
    PolicyRow,
)


def create_engine(db_url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    The helper normalizes Postgres URLs to ensure the async driver is used.
    For example, it rewrites ``postgresql://`` and other variants to
    ``postgresql+asyncpg://``.
    """
    url = re.sub(r"^postgres(?:ql)?(?:\+[a-z0-9_]+)?://", "postgresql+asyncpg://", db_url, count=1)
    if url.startswith("sqlite"):
        return create_async_engine(url)
    return create_async_engine(url, pool_pre_ping=True)


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an ``async_sessionmaker`` with safe defaults for this project."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_all(engine: AsyncEngine) -> None:
    """Create all tables for the current ORM metadata.

    This is mainly intended for tests and local development.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _value(v: Any) -> Any:
    return v.value if isinstance(v, Enum) else v


def _policy_from_row(row: PolicyRow) -> PolicyRecord:
    return PolicyRecord(
        id=row.id,
        project_id=row.project_id,
        name=row.name,
        version=row.version,
        doc=PolicyDocument.model_validate(row.doc),
        active=row.active,
        created_by=row.created_by,
        updated_by=row.updated_by,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _agent_from_row(row: AgentRow) -> AgentInstance:
    return AgentInstance(
        id=row.id,
        kind=AgentKind(row.kind),
        project_id=row.project_id,
        policy_id=row.policy_id,
        config=parse_agent_config(row.kind, row.config),
        status=AgentStatus(row.status),
        last_heartbeat=_as_utc(row.last_heartbeat),
        error_count=row.error_count,
        last_error=row.last_error,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _action_from_row(row: ActionRow) -> Action:
    return Action(
        id=row.id,
        agent_id=row.agent_id,
        dataset_id=row.dataset_id,
        kind=ActionKind(row.kind),
        status=ActionStatus(row.status),
        metadata=ActionMetadata.model_validate(row.action_metadata or {}),
        result=row.result,
        error=row.error,
        created_at=_as_utc(row.created_at),
        executed_at=_as_utc(row.executed_at),
    )


def _alert_from_row(row: AlertRow) -> Alert:
    return Alert(
        id=row.id,
        project_id=row.project_id,
        severity=AlertSeverity(row.severity),
        summary=row.summary,
        details=dict(row.details or {}),
        status=AlertStatus(row.status),
        source=row.source,
        created_at=_as_utc(row.created_at),
    )


def _dataset_from_row(row: DatasetRow) -> Dataset:
    return Dataset(
        id=row.id,
        project_id=row.project_id,
        name=row.name,
        cid=row.cid,
        size_bytes=row.size_bytes,
        created_at=_as_utc(row.created_at),
    )


def _deal_from_row(row: DealRow) -> Deal:
    return Deal(
        id=row.id,
        dataset_id=row.dataset_id,
        provider_id=row.provider_id,
        region=row.region,
        status=DealStatus(row.status),
        deal_ref=row.deal_ref,
        tx_hash=row.tx_hash,
        price_fil=row.price_fil,
        collateral_fil=row.collateral_fil,
        price_usd_per_tib_month=row.price_usd_per_tib_month,
        expires_at=_as_utc(row.expires_at),
        created_at=_as_utc(row.created_at),
    )


@dataclass(frozen=True)
class SqlPolicyRepository(PolicyRepository):
    """SQL implementation of ``PolicyRepository``."""

    session_factory: async_sessionmaker[AsyncSession]

    async def create(self, policy: PolicyRecord) -> None:
        """
        Persist a new policy record.

        Args:
            policy: The policy domain object to insert.
        """
        async with self.session_factory() as s:
            s.add(
                PolicyRow(
                    id=policy.id,
                    project_id=policy.project_id,
                    name=policy.name,
                    version=policy.version,
                    doc=policy.doc.model_dump(mode="json"),
                    active=policy.active,
                    created_by=policy.created_by,
                    updated_by=policy.updated_by,
                    created_at=policy.created_at,
                    updated_at=policy.updated_at,
                )
            )
            await s.commit()

    async def get(self, policy_id: str) -> Optional[PolicyRecord]:
        async with self.session_factory() as s:
            row = await s.get(PolicyRow, policy_id)
            return _policy_from_row(row) if row is not None else None

    async def update(self, policy: PolicyRecord) -> None:
        async with self.session_factory() as s:
            row = await s.get(PolicyRow, policy.id)
            if row is None:
                return
            row.name = policy.name
            row.version = policy.version
            row.doc = policy.doc.model_dump(mode="json")
            row.active = policy.active
            row.updated_by = policy.updated_by
            row.updated_at = policy.updated_at
            await s.commit()

    async def list(self, *, project_id: Optional[str] = None, active: Optional[bool] = None) -> List[PolicyRecord]:
        async with self.session_factory() as s:
            stmt = select(PolicyRow)
            if project_id is not None:
                stmt = stmt.where(PolicyRow.project_id == project_id)
            if active is not None:
                stmt = stmt.where(PolicyRow.active == active)
            stmt = stmt.order_by(PolicyRow.created_at.desc())
            res = await s.execute(stmt)
            return [_policy_from_row(r) for r in res.scalars().all()]

    async def delete(self, policy_id: str) -> bool:
        async with self.session_factory() as s:
            res = await s.execute(delete(PolicyRow).where(PolicyRow.id == policy_id))
            await s.commit()
            return bool(res.rowcount)


@dataclass(frozen=True)
class SqlAgentRepository(AgentRepository):
    """SQL implementation of ``AgentRepository``."""

    session_factory: async_sessionmaker[AsyncSession]

    async def create(self, agent: AgentInstance) -> None:
        """
        Persist a new agent instance.

        Args:
            agent: The agent domain object to insert.
        """
        async with self.session_factory() as s:
            s.add(
                AgentRow(
                    id=agent.id,
                    kind=_value(agent.kind),
                    project_id=agent.project_id,
                    policy_id=agent.policy_id,
                    config=agent.config.model_dump(mode="json"),
                    status=_value(agent.status),
                    last_heartbeat=agent.last_heartbeat,
                    error_count=agent.error_count,
                    last_error=agent.last_error,
                    created_at=agent.created_at,
                    updated_at=agent.updated_at,
                )
            )
            await s.commit()

    async def get(self, agent_id: str) -> Optional[AgentInstance]:
        async with self.session_factory() as s:
            row = await s.get(AgentRow, agent_id)
            return _agent_from_row(row) if row is not None else None

    async def update(self, agent_id: str, **changes: Any) -> Optional[AgentInstance]:
        """
        Apply field changes to an agent.

        Args:
            agent_id: The agent identifier.
            **changes: Column values keyed by attribute name.

        Returns:
            The updated agent, or None if no row matched.
        """
        values: Dict[str, Any] = {k: _value(v) for k, v in changes.items()}
        values.setdefault("updated_at", _utc_now())
        async with self.session_factory() as s:
            res = await s.execute(update(AgentRow).where(AgentRow.id == agent_id).values(**values))
            await s.commit()
        if not res.rowcount:
            return None
        return await self.get(agent_id)

    async def increment_error(self, agent_id: str, *, error: str, at: datetime) -> Optional[AgentInstance]:
        async with self.session_factory() as s:
            res = await s.execute(
                update(AgentRow)
                .where(AgentRow.id == agent_id)
                .values(
                    error_count=AgentRow.error_count + 1,
                    status=AgentStatus.error.value,
                    last_error=error,
                    updated_at=at,
                )
            )
            await s.commit()
        if not res.rowcount:
            return None
        return await self.get(agent_id)

    async def list(
        self,
        *,
        project_id: Optional[str] = None,
        policy_id: Optional[str] = None,
        kind: Optional[AgentKind] = None,
        status: Optional[AgentStatus] = None,
    ) -> List[AgentInstance]:
        async with self.session_factory() as s:
            stmt = select(AgentRow)
            if project_id is not None:
                stmt = stmt.where(AgentRow.project_id == project_id)
            if policy_id is not None:
                stmt = stmt.where(AgentRow.policy_id == policy_id)
            if kind is not None:
                stmt = stmt.where(AgentRow.kind == _value(kind))
            if status is not None:
                stmt = stmt.where(AgentRow.status == _value(status))
            stmt = stmt.order_by(AgentRow.created_at.desc())
            res = await s.execute(stmt)
            return [_agent_from_row(r) for r in res.scalars().all()]

    async def count_by_policy(self, policy_id: str, statuses: Iterable[AgentStatus]) -> int:
        wanted = [_value(st) for st in statuses]
        async with self.session_factory() as s:
            stmt = (
                select(func.count())
                .select_from(AgentRow)
                .where(AgentRow.policy_id == policy_id, AgentRow.status.in_(wanted))
            )
            res = await s.execute(stmt)
            return int(res.scalar_one())


@dataclass(frozen=True)
class SqlActionRepository(ActionRepository):
    """SQL implementation of ``ActionRepository``.

    ``transition`` is a conditional ``UPDATE``; the row count tells whether
    this caller won the status gate.
    """

    session_factory: async_sessionmaker[AsyncSession]

    async def create(self, action: Action) -> None:
        async with self.session_factory() as s:
            s.add(
                ActionRow(
                    id=action.id,
                    agent_id=action.agent_id,
                    dataset_id=action.dataset_id,
                    kind=_value(action.kind),
                    status=_value(action.status),
                    action_metadata=action.metadata.model_dump(mode="json"),
                    result=action.result,
                    error=action.error,
                    created_at=action.created_at,
                    executed_at=action.executed_at,
                )
            )
            await s.commit()

    async def get(self, action_id: str) -> Optional[Action]:
        async with self.session_factory() as s:
            row = await s.get(ActionRow, action_id)
            return _action_from_row(row) if row is not None else None

    async def transition(
        self,
        action_id: str,
        *,
        from_statuses: Iterable[ActionStatus],
        to_status: ActionStatus,
        **changes: Any,
    ) -> Optional[Action]:
        allowed = [_value(st) for st in from_statuses]
        values: Dict[str, Any] = {k: _value(v) for k, v in changes.items()}
        values["status"] = _value(to_status)
        async with self.session_factory() as s:
            res = await s.execute(
                update(ActionRow)
                .where(ActionRow.id == action_id, ActionRow.status.in_(allowed))
                .values(**values)
            )
            await s.commit()
        if res.rowcount != 1:
            return None
        return await self.get(action_id)

    async def list(
        self,
        *,
        agent_id: Optional[str] = None,
        dataset_id: Optional[str] = None,
        status: Optional[ActionStatus] = None,
    ) -> List[Action]:
        async with self.session_factory() as s:
            stmt = select(ActionRow)
            if agent_id is not None:
                stmt = stmt.where(ActionRow.agent_id == agent_id)
            if dataset_id is not None:
                stmt = stmt.where(ActionRow.dataset_id == dataset_id)
            if status is not None:
                stmt = stmt.where(ActionRow.status == _value(status))
            stmt = stmt.order_by(ActionRow.created_at.desc())
            res = await s.execute(stmt)
            return [_action_from_row(r) for r in res.scalars().all()]


@dataclass(frozen=True)
class SqlAlertRepository(AlertRepository):
    """SQL implementation of ``AlertRepository`` (append-only)."""

    session_factory: async_sessionmaker[AsyncSession]

    async def create(self, alert: Alert) -> None:
        async with self.session_factory() as s:
            s.add(
                AlertRow(
                    id=alert.id,
                    project_id=alert.project_id,
                    severity=_value(alert.severity),
                    summary=alert.summary,
                    details=alert.details,
                    status=_value(alert.status),
                    source=alert.source,
                    created_at=alert.created_at,
                )
            )
            await s.commit()

    async def list(
        self,
        *,
        project_id: Optional[str] = None,
        severity: Optional[AlertSeverity] = None,
        status: Optional[AlertStatus] = None,
    ) -> List[Alert]:
        async with self.session_factory() as s:
            stmt = select(AlertRow)
            if project_id is not None:
                stmt = stmt.where(AlertRow.project_id == project_id)
            if severity is not None:
                stmt = stmt.where(AlertRow.severity == _value(severity))
            if status is not None:
                stmt = stmt.where(AlertRow.status == _value(status))
            stmt = stmt.order_by(AlertRow.created_at.desc())
            res = await s.execute(stmt)
            return [_alert_from_row(r) for r in res.scalars().all()]


@dataclass(frozen=True)
class SqlDatasetRepository(DatasetRepository):
    """SQL implementation of ``DatasetRepository``."""

    session_factory: async_sessionmaker[AsyncSession]

    async def create(self, dataset: Dataset) -> None:
        async with self.session_factory() as s:
            s.add(
                DatasetRow(
                    id=dataset.id,
                    project_id=dataset.project_id,
                    name=dataset.name,
                    cid=dataset.cid,
                    size_bytes=dataset.size_bytes,
                    created_at=dataset.created_at,
                )
            )
            await s.commit()

    async def get(self, dataset_id: str) -> Optional[Dataset]:
        async with self.session_factory() as s:
            row = await s.get(DatasetRow, dataset_id)
            return _dataset_from_row(row) if row is not None else None

    async def list_with_active_deals(self, project_id: str) -> List[DatasetSnapshot]:
        """
        Load the project's datasets and their active deals in two queries.

        Args:
            project_id: The owning project.

        Returns:
            One snapshot per dataset, oldest dataset first.
        """
        async with self.session_factory() as s:
            ds_res = await s.execute(
                select(DatasetRow).where(DatasetRow.project_id == project_id).order_by(DatasetRow.created_at)
            )
            datasets = [_dataset_from_row(r) for r in ds_res.scalars().all()]
            if not datasets:
                return []
            deal_res = await s.execute(
                select(DealRow)
                .where(
                    DealRow.dataset_id.in_([d.id for d in datasets]),
                    DealRow.status == DealStatus.active.value,
                )
                .order_by(DealRow.created_at)
            )
            by_dataset: Dict[str, List[Deal]] = {}
            for row in deal_res.scalars().all():
                by_dataset.setdefault(row.dataset_id, []).append(_deal_from_row(row))
        return [DatasetSnapshot(dataset=d, active_deals=by_dataset.get(d.id, [])) for d in datasets]


@dataclass(frozen=True)
class SqlDealRepository(DealRepository):
    """SQL implementation of ``DealRepository``."""

    session_factory: async_sessionmaker[AsyncSession]

    async def create(self, deal: Deal) -> None:
        async with self.session_factory() as s:
            s.add(
                DealRow(
                    id=deal.id,
                    dataset_id=deal.dataset_id,
                    provider_id=deal.provider_id,
                    region=deal.region,
                    status=_value(deal.status),
                    deal_ref=deal.deal_ref,
                    tx_hash=deal.tx_hash,
                    price_fil=deal.price_fil,
                    collateral_fil=deal.collateral_fil,
                    price_usd_per_tib_month=deal.price_usd_per_tib_month,
                    expires_at=deal.expires_at,
                    created_at=deal.created_at,
                )
            )
            await s.commit()

    async def list_active_by_project(self, project_id: str) -> List[Deal]:
        async with self.session_factory() as s:
            stmt = (
                select(DealRow)
                .join(DatasetRow, DatasetRow.id == DealRow.dataset_id)
                .where(DatasetRow.project_id == project_id, DealRow.status == DealStatus.active.value)
                .order_by(DealRow.created_at)
            )
            res = await s.execute(stmt)
            return [_deal_from_row(r) for r in res.scalars().all()]


@dataclass(frozen=True)
class SqlEventOutbox:
    """``EventPublisher`` that appends every envelope to ``fo_event_outbox``."""

    session_factory: async_sessionmaker[AsyncSession]

    async def publish(self, topic: str, envelope: EventEnvelope) -> None:
        async with self.session_factory() as s:
            s.add(
                OutboxEventRow(
                    id=envelope.id,
                    topic=topic,
                    type=envelope.type,
                    source=envelope.source,
                    version=envelope.version,
                    timestamp=envelope.timestamp,
                    payload=envelope.model_dump(mode="json")["payload"],
                )
            )
            await s.commit()

    async def list(self, *, topic: Optional[str] = None, event_type: Optional[str] = None) -> List[EventEnvelope]:
        """List stored envelopes in publish order."""
        async with self.session_factory() as s:
            stmt = select(OutboxEventRow)
            if topic is not None:
                stmt = stmt.where(OutboxEventRow.topic == topic)
            if event_type is not None:
                stmt = stmt.where(OutboxEventRow.type == event_type)
            stmt = stmt.order_by(OutboxEventRow.timestamp)
            res = await s.execute(stmt)
            return [
                EventEnvelope(
                    id=r.id,
                    timestamp=_as_utc(r.timestamp),
                    type=r.type,
                    source=r.source,
                    version=r.version,
                    payload=dict(r.payload or {}),
                )
                for r in res.scalars().all()
            ]


@dataclass(frozen=True)
class SqlRepoBundle:
    """Convenience bundle of all SQL repositories for dependency injection."""

    policies: SqlPolicyRepository
    agents: SqlAgentRepository
    actions: SqlActionRepository
    alerts: SqlAlertRepository
    datasets: SqlDatasetRepository
    deals: SqlDealRepository
    events: SqlEventOutbox


def build_sql_repos(*, session_factory: async_sessionmaker[AsyncSession]) -> SqlRepoBundle:
    """Build a ``SqlRepoBundle`` from a session factory."""
    return SqlRepoBundle(
        policies=SqlPolicyRepository(session_factory=session_factory),
        agents=SqlAgentRepository(session_factory=session_factory),
        actions=SqlActionRepository(session_factory=session_factory),
        alerts=SqlAlertRepository(session_factory=session_factory),
        datasets=SqlDatasetRepository(session_factory=session_factory),
        deals=SqlDealRepository(session_factory=session_factory),
        events=SqlEventOutbox(session_factory=session_factory),
    )
