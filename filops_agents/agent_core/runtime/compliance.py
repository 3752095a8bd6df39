"""Replica-balance compliance loop.

One ``ComplianceLoop`` runs per running replica-balance agent. Each tick:

1. Loads the bound policy; an inactive policy skips the tick entirely.
2. Loads every dataset of the policy's project with its active deals.
3. Computes per-region deficits for each dataset. A dataset with deficits
   raises a warning alert and is remediated: providers are selected for each
   deficit and create-deal actions are proposed (and executed right away when
   the agent auto-executes).
4. Counts the check and sends a heartbeat to the registry.

At most ``max_actions_per_run`` actions are proposed per tick, across all
datasets. A failed execution is counted and the tick goes on; any other
exception aborts the tick and is reported to the registry as an agent error.
"""

from __future__ import annotations

from typing import Any, Dict, List

from ...core.errors import FilOpsError, InvalidStateError, PolicyNotFoundError
from ...core.logging_config import get_logger
from ..events import EventType, Topics, build_event
from ..integrations.interfaces import ProviderQuery
from ..schemas.domain import (
    Action,
    ActionKind,
    ActionMetadata,
    AgentInstance,
    AgentStatus,
    AlertSeverity,
    DatasetSnapshot,
    Deficit,
    PolicyRecord,
)
from .deficits import compute_deficits
from .models import AgentReporter, ComplianceMetrics, LoopDeps
from .scheduler import PeriodicScheduler

logger = get_logger(__name__)

SOURCE = "agent-rba"


def loop_key(agent_id: str) -> str:
    return f"compliance:{agent_id}"


class _TickBudget:
    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.used = 0

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit


def _deficit_payload(deficits: List[Deficit]) -> List[Dict[str, Any]]:
    return [{"region": d.region, "required": d.required, "current": d.current, "gap": d.gap} for d in deficits]


class ComplianceLoop:
    """Periodic policy compliance check for one agent.

    Args:
        agent: The agent this loop works for; its config supplies the check
            interval, the per-run action cap and the auto-execute flag.
        deps: Shared collaborators.
        reporter: Receives heartbeats and tick errors (the registry).
        scheduler: Runs the periodic tick.
    """

    def __init__(
        self,
        agent: AgentInstance,
        deps: LoopDeps,
        reporter: AgentReporter,
        scheduler: PeriodicScheduler,
    ) -> None:
        self._agent_id = agent.id
        self._policy_id = agent.policy_id
        self._config = agent.config
        self._deps = deps
        self._reporter = reporter
        self._scheduler = scheduler
        self._metrics = ComplianceMetrics()
        self._status = agent.status

    @property
    def agent_id(self) -> str:
        return self._agent_id

    @property
    def metrics(self) -> ComplianceMetrics:
        """A copy of the current counters."""
        return self._metrics.snapshot()

    @property
    def is_running(self) -> bool:
        return self._scheduler.is_scheduled(loop_key(self._agent_id))

    def start(self) -> None:
        """Schedule the tick every ``check_interval_seconds``, starting now."""
        self._status = AgentStatus.running
        self._scheduler.schedule(
            loop_key(self._agent_id),
            self.run_tick_safely,
            self._config.check_interval_seconds,
            run_immediately=True,
        )
        logger.info(
            "Compliance loop started for agent %s (interval=%ss, auto_execute=%s)",
            self._agent_id,
            self._config.check_interval_seconds,
            self._config.auto_execute,
        )

    def stop(self, status: AgentStatus = AgentStatus.stopped) -> None:
        """
        Cancel future ticks; a tick in progress still completes.

        Args:
            status: Status reported by heartbeats from a tick that finishes
                after the stop.
        """
        self._status = status
        if self._scheduler.cancel(loop_key(self._agent_id)):
            logger.info("Compliance loop stopped for agent %s", self._agent_id)

    async def run_tick_safely(self) -> None:
        """Run one tick and report any failure to the registry instead of raising."""
        try:
            await self.tick()
        except Exception as exc:
            logger.error("Compliance check failed for agent %s: %s", self._agent_id, exc)
            await self._reporter.record_error(
                self._agent_id,
                self._deps.clock(),
                str(exc) or exc.__class__.__name__,
                {"policy_id": self._policy_id, "phase": "compliance_check"},
            )

    async def tick(self) -> bool:
        """
        Run one compliance check.

        Returns:
            bool: False when the tick was skipped because the policy is inactive.

        Raises:
            PolicyNotFoundError: The bound policy no longer exists.
        """
        policy = await self._deps.policies.get(self._policy_id)
        if policy is None:
            raise PolicyNotFoundError(self._policy_id)
        if not policy.active:
            logger.warning("Policy %s is not active, skipping check for agent %s", policy.id, self._agent_id)
            return False

        await self._publish(EventType.check_started, {"policy_id": policy.id})
        snapshots = await self._deps.datasets.list_with_active_deals(policy.project_id)
        logger.debug("Agent %s checking %d datasets", self._agent_id, len(snapshots))

        budget = _TickBudget(self._config.max_actions_per_run)
        for snap in snapshots:
            await self._check_dataset(policy, snap, budget)

        now = self._deps.clock()
        self._metrics.checks_performed += 1
        self._metrics.last_check_at = now
        await self._reporter.record_heartbeat(self._agent_id, now, self._status, self._metrics.heartbeat())
        await self._publish(
            EventType.check_completed,
            {
                "policy_id": policy.id,
                "datasets_checked": len(snapshots),
                "metrics": self._metrics.to_payload(),
            },
        )
        return True

    async def _check_dataset(self, policy: PolicyRecord, snap: DatasetSnapshot, budget: _TickBudget) -> None:
        dataset = snap.dataset
        deficits = compute_deficits(policy.doc, snap.active_deals)
        if not deficits:
            logger.debug("Dataset %s is compliant", dataset.id)
            return

        logger.info("Replica deficits detected for dataset %s: %s", dataset.id, _deficit_payload(deficits))
        self._metrics.deficits_detected += 1
        await self._publish(
            EventType.deficit_detected,
            {"dataset_id": dataset.id, "policy_id": policy.id, "deficits": _deficit_payload(deficits)},
        )
        await self._deps.alerts.raise_alert(
            project_id=policy.project_id,
            severity=AlertSeverity.warning,
            summary=f"Dataset {dataset.cid} has replica deficits",
            source=SOURCE,
            details={
                "dataset_id": dataset.id,
                "dataset_cid": dataset.cid,
                "policy_id": policy.id,
                "agent_id": self._agent_id,
                "deficits": _deficit_payload(deficits),
            },
        )
        await self._remediate(policy, snap, deficits, budget)

    async def _remediate(
        self,
        policy: PolicyRecord,
        snap: DatasetSnapshot,
        deficits: List[Deficit],
        budget: _TickBudget,
    ) -> None:
        doc = policy.doc
        min_availability = doc.availability_target or self._deps.default_min_availability
        max_price = doc.cost_ceiling_usd_per_tib_month or self._deps.default_max_price

        for deficit in deficits:
            if budget.exhausted:
                logger.warning(
                    "Max actions per run (%d) reached for agent %s; skipping remaining deficits",
                    budget.limit,
                    self._agent_id,
                )
                return

            candidates = await self._deps.providers.find_best_providers(
                ProviderQuery(
                    region=deficit.region,
                    min_availability=min_availability,
                    max_price=max_price,
                    limit=deficit.gap,
                )
            )
            if not candidates:
                logger.warning("No suitable providers found in region %s", deficit.region)
                continue

            for candidate in candidates[: deficit.gap]:
                if budget.exhausted:
                    break
                action = await self._deps.lifecycle.propose(
                    self._agent_id,
                    snap.dataset.id,
                    ActionKind.create_deal,
                    ActionMetadata(
                        region=deficit.region,
                        provider_id=candidate.provider_id,
                        estimated_cost=candidate.price_usd_per_tib_month,
                        reason=f"Replica deficit in {deficit.region}: {deficit.current}/{deficit.required}",
                        dataset_cid=snap.dataset.cid,
                        dataset_size_bytes=snap.dataset.size_bytes,
                    ),
                )
                budget.used += 1
                self._metrics.actions_proposed += 1
                await self._publish(
                    EventType.action_proposed,
                    {
                        "action_id": action.id,
                        "dataset_id": snap.dataset.id,
                        "action_type": action.kind.value,
                        "region": deficit.region,
                        "provider_id": candidate.provider_id,
                    },
                )
                if self._config.auto_execute:
                    await self._execute(action)

    async def _execute(self, action: Action) -> None:
        try:
            await self._deps.lifecycle.execute(action.id)
        except InvalidStateError as exc:
            # Someone else already moved the action on.
            logger.info("Skipping auto-execution of action %s: %s", action.id, exc)
            return
        except FilOpsError as exc:
            self._metrics.actions_executed += 1
            self._metrics.actions_failed += 1
            logger.warning("Auto-execution of action %s failed: %s", action.id, exc)
            return
        self._metrics.actions_executed += 1
        self._metrics.actions_succeeded += 1

    async def _publish(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        body: Dict[str, Any] = {"agent_id": self._agent_id}
        body.update(payload)
        await self._deps.events.publish(
            Topics.AGENTS_ACTIONS, build_event(event_type, SOURCE, body, timestamp=self._deps.clock())
        )
