"""Policy service.

Create, update, activate, deactivate and delete policy records, with every
document passing through ``PolicyValidator`` first. A document that is not
``valid`` is rejected with ``ValidationFailedError``; conflicts with
``error`` severity are rejected with ``ConflictDetectedError``; warnings are
returned to the caller with the stored record.

``conflict_strategy`` is stored and reported but never acted upon here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ...core.errors import ConflictDetectedError, PolicyNotFoundError, ValidationFailedError
from ..events import EventPublisher, EventType, Topics, build_event
from ..repos.interfaces import AgentRepository, DealRepository, PolicyRepository
from ..runtime.deficits import count_replicas_by_region
from ..schemas.domain import NON_TERMINAL_AGENT_STATUSES, PolicyRecord
from ..schemas.policy import PolicyDocument
from .models import (
    PolicyComplianceStatus,
    PolicyConflict,
    PolicyValidationResult,
    PolicyWriteResult,
    RegionCompliance,
)
from .validator import PolicyInput, PolicyValidator

logger = logging.getLogger(__name__)

SOURCE = "policy-engine"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PolicyService:
    """Manage policy records.

    Args:
        policies: Policy persistence.
        agents: Agent persistence, consulted before deletion.
        deals: Deal persistence, read by ``compliance_status``.
        events: Event publisher.
        validator: Document validator; a default one is built when omitted.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        *,
        policies: PolicyRepository,
        agents: AgentRepository,
        deals: DealRepository,
        events: EventPublisher,
        validator: Optional[PolicyValidator] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._policies = policies
        self._agents = agents
        self._deals = deals
        self._events = events
        self._validator = validator or PolicyValidator()
        self._clock = clock

    async def create(
        self,
        project_id: str,
        name: str,
        doc: PolicyInput,
        *,
        active: bool = False,
        actor_id: Optional[str] = None,
    ) -> PolicyWriteResult:
        """
        Validate and store a new policy at version 1.

        Args:
            project_id: Owning project.
            name: Display name.
            doc: The policy document.
            active: Initial activation flag; policies start inactive by default.
            actor_id: Who made the change.

        Returns:
            PolicyWriteResult: The record plus validation warnings and
            warning-level conflicts.

        Raises:
            ValidationFailedError: The document is not valid.
            ConflictDetectedError: A blocking conflict with another policy.
        """
        validation, parsed, conflicts = await self._vet(doc, project_id)
        now = self._clock()
        record = PolicyRecord(
            project_id=project_id,
            name=name,
            version=1,
            doc=parsed,
            active=active,
            created_by=actor_id,
            updated_by=actor_id,
            created_at=now,
            updated_at=now,
        )
        await self._policies.create(record)
        logger.info("Policy %s created for project %s", record.id, project_id)
        await self._publish(
            EventType.policy_created,
            {
                "policy_id": record.id,
                "project_id": project_id,
                "name": name,
                "version": record.version,
                "active": active,
            },
        )
        return PolicyWriteResult(policy=record, validation=validation, conflicts=conflicts)

    async def get(self, policy_id: str) -> PolicyRecord:
        policy = await self._policies.get(policy_id)
        if policy is None:
            raise PolicyNotFoundError(policy_id)
        return policy

    async def list_by_project(self, project_id: str, *, active_only: bool = False) -> List[PolicyRecord]:
        return await self._policies.list(project_id=project_id, active=True if active_only else None)

    async def update(
        self,
        policy_id: str,
        *,
        name: Optional[str] = None,
        doc: Optional[PolicyInput] = None,
        active: Optional[bool] = None,
        actor_id: Optional[str] = None,
    ) -> PolicyWriteResult:
        """
        Update a policy. A changed document bumps the version.

        Fields left as None are not touched. An update that changes nothing is
        not stored and emits no event.

        Raises:
            PolicyNotFoundError: Unknown policy.
            ValidationFailedError: The new document is not valid.
            ConflictDetectedError: A blocking conflict with another policy.
        """
        current = await self.get(policy_id)
        updated = current.model_copy()
        changes: List[str] = []
        validation: Optional[PolicyValidationResult] = None
        conflicts: List[PolicyConflict] = []

        if doc is not None:
            validation, parsed, conflicts = await self._vet(doc, current.project_id, exclude_policy_id=policy_id)
            if parsed != current.doc:
                updated.doc = parsed
                updated.version = current.version + 1
                changes.append("doc")
        if name is not None and name != current.name:
            updated.name = name
            changes.append("name")
        if active is not None and active != current.active:
            updated.active = active
            changes.append("active")

        if not changes:
            return PolicyWriteResult(policy=current, validation=validation, conflicts=conflicts)

        updated.updated_by = actor_id
        updated.updated_at = self._clock()
        await self._policies.update(updated)
        logger.info("Policy %s updated (%s)", policy_id, ", ".join(changes))
        await self._publish(
            EventType.policy_updated,
            {"policy_id": policy_id, "version": updated.version, "changes": changes},
        )
        return PolicyWriteResult(policy=updated, validation=validation, conflicts=conflicts)

    async def activate(self, policy_id: str, *, actor_id: Optional[str] = None) -> PolicyRecord:
        return await self._set_active(policy_id, True, actor_id)

    async def deactivate(self, policy_id: str, *, actor_id: Optional[str] = None) -> PolicyRecord:
        return await self._set_active(policy_id, False, actor_id)

    async def delete(self, policy_id: str) -> None:
        """
        Delete a policy that no live agent depends on.

        Raises:
            PolicyNotFoundError: Unknown policy.
            ConflictDetectedError: Agents bound to the policy are created,
                running, paused or in error.
        """
        await self.get(policy_id)
        bound = await self._agents.count_by_policy(policy_id, NON_TERMINAL_AGENT_STATUSES)
        if bound:
            raise ConflictDetectedError(
                f"Cannot delete policy {policy_id}: {bound} agent(s) still use it",
                code="POLICY_HAS_ACTIVE_AGENTS",
                details={"policy_id": policy_id, "agent_count": bound},
            )
        await self._policies.delete(policy_id)
        logger.info("Policy %s deleted", policy_id)
        await self._publish(EventType.policy_deleted, {"policy_id": policy_id})

    def validate_document(self, doc: PolicyInput) -> PolicyValidationResult:
        return self._validator.validate(doc)

    async def compliance_status(self, policy_id: str) -> PolicyComplianceStatus:
        """
        Summarize the project's active deals against the policy.

        Replica counts are aggregated over every dataset in the project; the
        monthly cost is the sum of the deals' USD price.
        """
        policy = await self.get(policy_id)
        deals = await self._deals.list_active_by_project(policy.project_id)
        by_region = count_replicas_by_region(deals)
        doc = policy.doc

        regions = []
        for req in doc.replication.regions:
            have = by_region.get(req.code.value, 0)
            regions.append(
                RegionCompliance(code=req.code.value, required=req.min_replicas, current=have, compliant=have >= req.min_replicas)
            )
        cost = sum(d.price_usd_per_tib_month or 0.0 for d in deals)
        return PolicyComplianceStatus(
            policy_id=policy.id,
            compliant=all(r.compliant for r in regions),
            regions=regions,
            total_replicas=len(deals),
            required_replicas=doc.replication.total_replicas,
            monthly_cost_usd_per_tib=cost,
            cost_ceiling_usd_per_tib=doc.cost_ceiling_usd_per_tib_month,
            within_budget=cost <= doc.cost_ceiling_usd_per_tib_month,
            conflict_strategy=doc.conflict_strategy.value,
            checked_at=self._clock(),
        )

    async def _set_active(self, policy_id: str, active: bool, actor_id: Optional[str]) -> PolicyRecord:
        current = await self.get(policy_id)
        if current.active == active:
            return current
        updated = current.model_copy(update={"active": active, "updated_by": actor_id, "updated_at": self._clock()})
        await self._policies.update(updated)
        logger.info("Policy %s %s", policy_id, "activated" if active else "deactivated")
        await self._publish(
            EventType.policy_activated if active else EventType.policy_deactivated,
            {"policy_id": policy_id, "project_id": current.project_id},
        )
        return updated

    async def _vet(
        self,
        doc: PolicyInput,
        project_id: str,
        *,
        exclude_policy_id: Optional[str] = None,
    ) -> "tuple[PolicyValidationResult, PolicyDocument, List[PolicyConflict]]":
        validation = self._validator.validate(doc)
        if not validation.valid:
            raise ValidationFailedError(
                "Policy validation failed",
                details={
                    "errors": validation.errors,
                    "conflicts": [c.model_dump(mode="json") for c in validation.conflicts if c.blocking],
                },
            )
        parsed = self._validator.parse(doc)
        existing = await self._policies.list(project_id=project_id)
        conflicts = self._validator.check_conflicts(parsed, project_id, existing, exclude_policy_id=exclude_policy_id)
        blocking = [c for c in conflicts if c.blocking]
        if blocking:
            raise ConflictDetectedError(
                "Policy conflicts with existing policies",
                details={"conflicts": [c.model_dump(mode="json") for c in blocking]},
            )
        return validation, parsed, conflicts

    async def _publish(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        await self._events.publish(Topics.POLICIES_UPDATES, build_event(event_type, SOURCE, payload))
