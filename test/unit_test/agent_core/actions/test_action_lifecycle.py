from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from filops_agents.agent_core.events import EventType, Topics
from filops_agents.agent_core.schemas.domain import (
    ActionKind,
    ActionMetadata,
    ActionStatus,
    DealStatus,
)
from filops_agents.core.errors import (
    ActionNotFoundError,
    CollaboratorFailure,
    InvalidStateError,
    ValidationFailedError,
)


def _meta(**overrides) -> ActionMetadata:
    data = {
        "region": "EU",
        "provider_id": "f01234",
        "estimated_cost": 4.5,
        "reason": "Replica deficit in EU: 0/1",
        "dataset_cid": "bafy-dataset",
        "dataset_size_bytes": 1024,
    }
    data.update(overrides)
    return ActionMetadata(**data)


@pytest.mark.asyncio
async def test_propose_persists_proposed_action(env) -> None:
    lc = env.lifecycle()
    action = await lc.propose("agent-1", "ds-1", ActionKind.create_deal, _meta())

    stored = await lc.get(action.id)
    assert stored.status == ActionStatus.proposed
    assert stored.metadata.provider_id == "f01234"
    assert stored.created_at == env.clock()


@pytest.mark.asyncio
async def test_get_unknown_action(env) -> None:
    with pytest.raises(ActionNotFoundError):
        await env.lifecycle().get("missing")


@pytest.mark.asyncio
async def test_approve_executes_and_records_deal(env) -> None:
    lc = env.lifecycle()
    action = await lc.propose("agent-1", "ds-1", ActionKind.create_deal, _meta())

    done = await lc.approve(action.id)
    assert done.status == ActionStatus.completed
    assert done.result == {"deal_id": "deal-1", "tx_hash": "0x0001"}
    assert done.executed_at == env.clock()

    [params] = env.executor.calls
    assert params.data_cid == "bafy-dataset"
    assert params.provider_id == "f01234"
    assert params.duration_days == 180
    assert params.price_fil == "50"
    assert params.collateral_fil == "100"
    assert params.verified is True

    [deal] = env.deals.items
    assert deal.dataset_id == "ds-1"
    assert deal.region == "EU"
    assert deal.status == DealStatus.active
    assert deal.deal_ref == "deal-1"
    assert deal.expires_at == env.clock() + timedelta(days=180)

    types = [e.type for t, e in env.events.published if t == Topics.AGENTS_ACTIONS]
    assert types == [EventType.action_approved.value, EventType.action_executed.value]


@pytest.mark.asyncio
async def test_approve_twice_is_invalid_state(env) -> None:
    lc = env.lifecycle()
    action = await lc.propose("agent-1", "ds-1", ActionKind.create_deal, _meta())
    await lc.approve(action.id)

    with pytest.raises(InvalidStateError) as ei:
        await lc.approve(action.id)
    assert ei.value.details["status"] == "completed"
    assert len(env.executor.calls) == 1


@pytest.mark.asyncio
async def test_reject_stores_reason(env) -> None:
    lc = env.lifecycle()
    action = await lc.propose("agent-1", "ds-1", ActionKind.create_deal, _meta())

    rejected = await lc.reject(action.id, "too expensive")
    assert rejected.status == ActionStatus.rejected
    assert rejected.error == "too expensive"
    [evt] = env.events.of_type(EventType.action_rejected)
    assert evt.payload["reason"] == "too expensive"


@pytest.mark.asyncio
async def test_rejected_action_cannot_be_executed(env) -> None:
    lc = env.lifecycle()
    action = await lc.propose("agent-1", "ds-1", ActionKind.create_deal, _meta())
    await lc.reject(action.id)

    with pytest.raises(InvalidStateError):
        await lc.execute(action.id)
    with pytest.raises(InvalidStateError):
        await lc.approve(action.id)
    assert env.executor.calls == []


@pytest.mark.asyncio
async def test_reject_unknown_action(env) -> None:
    with pytest.raises(ActionNotFoundError):
        await env.lifecycle().reject("missing", "nope")


@pytest.mark.asyncio
async def test_execute_failure_marks_failed_and_raises(env, failing_collaborator) -> None:
    env.executor.fail = failing_collaborator("synapse unavailable")
    lc = env.lifecycle()
    action = await lc.propose("agent-1", "ds-1", ActionKind.create_deal, _meta())

    with pytest.raises(CollaboratorFailure):
        await lc.execute(action.id)

    stored = await lc.get(action.id)
    assert stored.status == ActionStatus.failed
    assert stored.error == "synapse unavailable"
    assert stored.executed_at == env.clock()
    assert env.deals.items == []
    [evt] = env.events.of_type(EventType.action_failed)
    assert evt.payload["error"] == "synapse unavailable"


@pytest.mark.asyncio
async def test_unexpected_executor_error_is_wrapped(env) -> None:
    env.executor.fail = RuntimeError("socket closed")
    lc = env.lifecycle()
    action = await lc.propose("agent-1", "ds-1", ActionKind.create_deal, _meta())

    with pytest.raises(CollaboratorFailure) as ei:
        await lc.execute(action.id)
    assert isinstance(ei.value.__cause__, RuntimeError)
    assert (await lc.get(action.id)).status == ActionStatus.failed


@pytest.mark.asyncio
async def test_failed_action_is_not_retried(env, failing_collaborator) -> None:
    env.executor.fail = failing_collaborator()
    lc = env.lifecycle()
    action = await lc.propose("agent-1", "ds-1", ActionKind.create_deal, _meta())
    with pytest.raises(CollaboratorFailure):
        await lc.execute(action.id)

    env.executor.fail = None
    with pytest.raises(InvalidStateError):
        await lc.execute(action.id)
    assert len(env.executor.calls) == 1


@pytest.mark.asyncio
async def test_upgrade_sector_is_not_executable(env) -> None:
    lc = env.lifecycle()
    action = await lc.propose("agent-1", "ds-1", ActionKind.upgrade_sector, _meta())

    with pytest.raises(ValidationFailedError) as ei:
        await lc.execute(action.id)
    assert ei.value.code == "UNSUPPORTED_ACTION_KIND"
    assert (await lc.get(action.id)).status == ActionStatus.failed
    assert env.executor.calls == []


@pytest.mark.asyncio
async def test_missing_provider_fails_without_calling_executor(env) -> None:
    lc = env.lifecycle()
    action = await lc.propose("agent-1", "ds-1", ActionKind.create_deal, _meta(provider_id=None))

    with pytest.raises(ValidationFailedError):
        await lc.execute(action.id)
    assert env.executor.calls == []


@pytest.mark.asyncio
async def test_concurrent_execute_runs_deal_once(env) -> None:
    env.executor.yield_before_result = True
    lc = env.lifecycle()
    action = await lc.propose("agent-1", "ds-1", ActionKind.create_deal, _meta())

    results = await asyncio.gather(lc.execute(action.id), lc.execute(action.id), return_exceptions=True)

    completed = [r for r in results if not isinstance(r, Exception)]
    lost = [r for r in results if isinstance(r, InvalidStateError)]
    assert len(completed) == 1
    assert len(lost) == 1
    assert len(env.executor.calls) == 1
    assert (await lc.get(action.id)).status == ActionStatus.completed


@pytest.mark.asyncio
async def test_concurrent_approve_and_reject_single_outcome(env) -> None:
    env.executor.yield_before_result = True
    lc = env.lifecycle()
    action = await lc.propose("agent-1", "ds-1", ActionKind.create_deal, _meta())

    results = await asyncio.gather(lc.approve(action.id), lc.reject(action.id, "no"), return_exceptions=True)

    assert sum(1 for r in results if isinstance(r, InvalidStateError)) == 1
    final = (await lc.get(action.id)).status
    assert final in (ActionStatus.completed, ActionStatus.rejected)
    assert len(env.executor.calls) == (1 if final == ActionStatus.completed else 0)
