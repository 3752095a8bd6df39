"""Action lifecycle state machine.

States::

    proposed -> approved -> executing -> completed | failed
    proposed -> rejected

``proposed`` and ``approved`` may both enter ``executing``; auto-execution
skips approval. Every transition is a compare-and-set through
``ActionRepository.transition``, so a caller that loses a race observes
``InvalidStateError`` and the stored action is left untouched. Terminal
states are never left.

Execution calls the deal collaborator at most once per ``execute`` call. A
failed action stays ``failed``; nothing here retries it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Optional

from ...core.config import DealDefaultsConfig
from ...core.errors import (
    ActionNotFoundError,
    CollaboratorFailure,
    FilOpsError,
    InvalidStateError,
    ValidationFailedError,
)
from ..events import EventPublisher, EventType, Topics, build_event
from ..integrations.interfaces import CreateDealParams, DealExecutor
from ..repos.interfaces import ActionRepository, DealRepository
from ..schemas.domain import (
    Action,
    ActionKind,
    ActionMetadata,
    ActionStatus,
    Deal,
    DealStatus,
)

logger = logging.getLogger(__name__)

EXECUTABLE_STATUSES = (ActionStatus.proposed, ActionStatus.approved)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ActionLifecycle:
    """Drive actions through their states and execute them against the deal service.

    Args:
        actions: Action persistence.
        deals: Deal persistence; a completed create-deal action records its deal here.
        executor: Deal-execution collaborator.
        events: Event publisher.
        deal_defaults: Commercial terms used for every new deal.
        clock: Returns the current UTC time.
        source: ``source`` field of emitted events.
    """

    def __init__(
        self,
        *,
        actions: ActionRepository,
        deals: DealRepository,
        executor: DealExecutor,
        events: EventPublisher,
        deal_defaults: Optional[DealDefaultsConfig] = None,
        clock: Callable[[], datetime] = _utc_now,
        source: str = "action-lifecycle",
    ) -> None:
        self._actions = actions
        self._deals = deals
        self._executor = executor
        self._events = events
        self._defaults = deal_defaults or DealDefaultsConfig()
        self._clock = clock
        self._source = source

    async def propose(
        self,
        agent_id: str,
        dataset_id: str,
        kind: ActionKind,
        metadata: Optional[ActionMetadata] = None,
    ) -> Action:
        """Persist a new action in ``proposed``."""
        action = Action(
            agent_id=agent_id,
            dataset_id=dataset_id,
            kind=kind,
            status=ActionStatus.proposed,
            metadata=metadata or ActionMetadata(),
            created_at=self._clock(),
        )
        await self._actions.create(action)
        logger.info("Action %s proposed (%s) for dataset %s", action.id, kind.value, dataset_id)
        return action

    async def get(self, action_id: str) -> Action:
        action = await self._actions.get(action_id)
        if action is None:
            raise ActionNotFoundError(action_id)
        return action

    async def approve(self, action_id: str) -> Action:
        """
        Approve a proposed action and execute it right away.

        Returns:
            Action: The action after execution (``completed``).

        Raises:
            ActionNotFoundError: Unknown action.
            InvalidStateError: The action is not ``proposed``.
            FilOpsError: Execution failed; the action is ``failed``.
        """
        approved = await self._actions.transition(
            action_id, from_statuses=(ActionStatus.proposed,), to_status=ActionStatus.approved
        )
        if approved is None:
            raise await self._gate_error(action_id, "approved", (ActionStatus.proposed,))
        await self._publish(EventType.action_approved, approved)
        return await self.execute(action_id)

    async def reject(self, action_id: str, reason: Optional[str] = None) -> Action:
        """Reject a proposed action; ``reason`` is stored as its error."""
        rejected = await self._actions.transition(
            action_id,
            from_statuses=(ActionStatus.proposed,),
            to_status=ActionStatus.rejected,
            error=reason,
        )
        if rejected is None:
            raise await self._gate_error(action_id, "rejected", (ActionStatus.proposed,))
        logger.info("Action %s rejected: %s", action_id, reason)
        await self._publish(EventType.action_rejected, rejected, reason=reason)
        return rejected

    async def execute(self, action_id: str) -> Action:
        """
        Execute a proposed or approved action once.

        The action is claimed by moving it to ``executing`` before the deal
        service is called. On success it becomes ``completed`` with the deal
        reference as result; on failure it becomes ``failed`` with the error
        message and the error is raised to the caller.

        Raises:
            ActionNotFoundError: Unknown action.
            InvalidStateError: The action is not ``proposed`` or ``approved``.
            FilOpsError: Execution failed.
        """
        claimed = await self._actions.transition(
            action_id, from_statuses=EXECUTABLE_STATUSES, to_status=ActionStatus.executing
        )
        if claimed is None:
            raise await self._gate_error(action_id, "executed", EXECUTABLE_STATUSES)

        try:
            result = await self._perform(claimed)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            failed = await self._actions.transition(
                action_id,
                from_statuses=(ActionStatus.executing,),
                to_status=ActionStatus.failed,
                error=message,
                executed_at=self._clock(),
            )
            logger.error("Action %s failed: %s", action_id, message)
            await self._publish(EventType.action_failed, failed or claimed, error=message)
            if isinstance(exc, FilOpsError):
                raise
            raise CollaboratorFailure(message) from exc

        completed = await self._actions.transition(
            action_id,
            from_statuses=(ActionStatus.executing,),
            to_status=ActionStatus.completed,
            result=result,
            executed_at=self._clock(),
        )
        if completed is None:
            raise InvalidStateError(f"Action {action_id} left executing while its deal was being created")
        logger.info("Action %s completed: %s", action_id, result)
        await self._publish(EventType.action_executed, completed, result=result)
        return completed

    async def _perform(self, action: Action) -> Dict[str, Any]:
        if action.kind != ActionKind.create_deal:
            raise ValidationFailedError(
                f"Action kind {action.kind.value} cannot be executed",
                code="UNSUPPORTED_ACTION_KIND",
            )
        meta = action.metadata
        if not meta.provider_id or not meta.dataset_cid:
            raise ValidationFailedError(f"Action {action.id} is missing provider_id or dataset_cid")

        d = self._defaults
        res = await self._executor.create_deal(
            CreateDealParams(
                data_cid=meta.dataset_cid,
                provider_id=meta.provider_id,
                duration_days=d.duration_days,
                price_fil=d.price_fil,
                collateral_fil=d.collateral_fil,
                verified=d.verified,
            )
        )
        now = self._clock()
        await self._deals.create(
            Deal(
                dataset_id=action.dataset_id,
                provider_id=meta.provider_id,
                region=meta.region,
                status=DealStatus.active,
                deal_ref=res.deal_id,
                tx_hash=res.tx_hash,
                price_fil=d.price_fil,
                collateral_fil=d.collateral_fil,
                price_usd_per_tib_month=meta.estimated_cost,
                expires_at=now + timedelta(days=d.duration_days),
                created_at=now,
            )
        )
        return {"deal_id": res.deal_id, "tx_hash": res.tx_hash}

    async def _gate_error(self, action_id: str, verb: str, allowed: Iterable[ActionStatus]) -> FilOpsError:
        current = await self._actions.get(action_id)
        if current is None:
            return ActionNotFoundError(action_id)
        return InvalidStateError(
            f"Action {action_id} cannot be {verb} from status {current.status.value}",
            details={
                "action_id": action_id,
                "status": current.status.value,
                "allowed": [s.value for s in allowed],
            },
        )

    async def _publish(self, event_type: EventType, action: Action, **extra: Any) -> None:
        payload: Dict[str, Any] = {
            "agent_id": action.agent_id,
            "action_id": action.id,
            "dataset_id": action.dataset_id,
            "action_type": action.kind.value,
        }
        payload.update({k: v for k, v in extra.items() if v is not None})
        await self._events.publish(Topics.AGENTS_ACTIONS, build_event(event_type, self._source, payload))
