from __future__ import annotations

"""Policy document validation.

``PolicyValidator`` runs in two stages:

1. Schema validation through ``PolicyDocument``. A failure here is reported as
   a single error and short-circuits every other rule.
2. Business rules, all evaluated: replication, providers, budget, renewal and
   arbitrage. Hard problems become ``errors`` or ``error`` conflicts; soft
   problems become ``warnings`` or ``warning`` conflicts.

The validator is synchronous and has no collaborators. ``check_conflicts`` is
a separate, cross-policy check that only ever produces warnings.
"""

import logging
from collections import Counter
from typing import Any, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from ..schemas.domain import PolicyRecord
from ..schemas.policy import PolicyDocument
from .models import ConflictSeverity, ConflictType, PolicyConflict, PolicyValidationResult

logger = logging.getLogger(__name__)

DEFAULT_MIN_UNIT_COST_USD = 5.0

MIN_TOTAL_REPLICAS = 2
HIGH_TOTAL_REPLICAS = 50
HIGH_COST_CEILING_USD = 1000.0
MIN_LEAD_TIME_DAYS = 7
MAX_LEAD_TIME_DAYS = 90
MIN_COLLATERAL_BUFFER_PCT = 10.0
MIN_SAVINGS_PCT = 5.0
MIN_SAMPLE_RETRIEVAL = 0.01

PolicyInput = Union[PolicyDocument, Mapping[str, Any]]


class PolicyValidator:
    """Validate policy documents against structural and business rules.

    Args:
        assumed_min_unit_cost: Per-replica monthly cost floor used by the budget
            heuristic. It is not derived from the policy itself.
    """

    def __init__(self, *, assumed_min_unit_cost: float = DEFAULT_MIN_UNIT_COST_USD) -> None:
        self._unit_cost = float(assumed_min_unit_cost)

    def parse(self, doc: PolicyInput) -> PolicyDocument:
        """Return ``doc`` as a ``PolicyDocument``, raising pydantic's ``ValidationError`` on bad shape."""
        if isinstance(doc, PolicyDocument):
            return doc
        return PolicyDocument.model_validate(doc)

    def validate(self, doc: PolicyInput) -> PolicyValidationResult:
        """
        Validate one policy document.

        Args:
            doc: A ``PolicyDocument`` or its raw mapping form.

        Returns:
            PolicyValidationResult: Errors, warnings and typed conflicts.
        """
        try:
            parsed = self.parse(doc)
        except ValidationError as exc:
            return PolicyValidationResult(valid=False, errors=[f"Schema validation failed: {_summarize(exc)}"])

        errors: List[str] = []
        warnings: List[str] = []
        conflicts: List[PolicyConflict] = []

        self._check_replication(parsed, errors, warnings, conflicts)
        self._check_budget(parsed, warnings, conflicts)
        self._check_renewal(parsed, warnings)
        self._check_arbitrage(parsed, warnings, conflicts)

        valid = not errors and not any(c.blocking for c in conflicts)
        if not valid:
            logger.warning(
                "Policy validation failed: errors=%s conflicts=%s",
                errors,
                [c.message for c in conflicts if c.blocking],
            )
        return PolicyValidationResult(valid=valid, errors=errors, warnings=warnings, conflicts=conflicts)

    def check_conflicts(
        self,
        doc: PolicyInput,
        project_id: str,
        existing_policies: Iterable[PolicyRecord],
        *,
        exclude_policy_id: Optional[str] = None,
    ) -> List[PolicyConflict]:
        """
        Compare a document against the project's existing policies.

        Several active policies per project are allowed, so this only reports a
        ``warning`` region conflict listing the other active policies.

        Args:
            doc: The candidate document.
            project_id: Owning project of the candidate.
            existing_policies: Policies to compare against; records of other
                projects are ignored.
            exclude_policy_id: The candidate's own id when it is an update.

        Returns:
            List[PolicyConflict]: Zero or one warning conflict.
        """
        active = [
            p
            for p in existing_policies
            if p.active and p.project_id == project_id and p.id != exclude_policy_id
        ]
        if not active:
            return []
        return [
            PolicyConflict(
                type=ConflictType.region,
                severity=ConflictSeverity.warning,
                message=f"Project already has {len(active)} active policy/policies",
                details={"active_policy_ids": [p.id for p in active]},
            )
        ]

    def _check_replication(
        self,
        doc: PolicyDocument,
        errors: List[str],
        warnings: List[str],
        conflicts: List[PolicyConflict],
    ) -> None:
        replication = doc.replication
        counts = Counter(r.code.value for r in replication.regions)
        duplicates = [code for code, n in counts.items() if n > 1]
        if duplicates:
            errors.append(f"Duplicate regions found: {', '.join(duplicates)}")

        total = replication.total_replicas
        if total < MIN_TOTAL_REPLICAS:
            conflicts.append(
                PolicyConflict(
                    type=ConflictType.region,
                    severity=ConflictSeverity.error,
                    message=f"Total replicas must be at least {MIN_TOTAL_REPLICAS} for data safety",
                    details={"total_replicas": total},
                )
            )
        if total > HIGH_TOTAL_REPLICAS:
            warnings.append(f"High replica count ({total}) may be expensive")

        if replication.allowlist_providers and replication.denylist_providers:
            denied = set(replication.denylist_providers)
            both = [p for p in replication.allowlist_providers if p in denied]
            if both:
                conflicts.append(
                    PolicyConflict(
                        type=ConflictType.provider,
                        severity=ConflictSeverity.error,
                        message="Providers cannot be in both allowlist and denylist",
                        details={"conflicting_providers": both},
                    )
                )

    def _check_budget(self, doc: PolicyDocument, warnings: List[str], conflicts: List[PolicyConflict]) -> None:
        ceiling = doc.cost_ceiling_usd_per_tib_month
        total = doc.replication.total_replicas
        estimated_min = total * self._unit_cost
        if ceiling < estimated_min:
            conflicts.append(
                PolicyConflict(
                    type=ConflictType.budget,
                    severity=ConflictSeverity.warning,
                    message=f"Cost ceiling (${ceiling:g}) may be too low for {total} replicas",
                    details={"ceiling": ceiling, "estimated_min": estimated_min, "replicas": total},
                )
            )
        if ceiling > HIGH_COST_CEILING_USD:
            warnings.append(f"Very high cost ceiling: ${ceiling:g}/TiB/month")

    def _check_renewal(self, doc: PolicyDocument, warnings: List[str]) -> None:
        renewal = doc.renewal
        if renewal.lead_time_days < MIN_LEAD_TIME_DAYS:
            warnings.append(f"Renewal lead time less than {MIN_LEAD_TIME_DAYS} days may be risky")
        if renewal.lead_time_days > MAX_LEAD_TIME_DAYS:
            warnings.append("Very long renewal lead time may lock funds unnecessarily")
        if renewal.min_collateral_buffer_pct < MIN_COLLATERAL_BUFFER_PCT:
            warnings.append("Low collateral buffer may cause renewal failures")

    def _check_arbitrage(self, doc: PolicyDocument, warnings: List[str], conflicts: List[PolicyConflict]) -> None:
        arbitrage = doc.arbitrage
        if not arbitrage.enable:
            return
        if arbitrage.min_expected_savings_pct < MIN_SAVINGS_PCT:
            warnings.append("Low savings threshold may cause frequent migrations")
        if not arbitrage.verification_strategy.hash_check:
            conflicts.append(
                PolicyConflict(
                    type=ConflictType.sla,
                    severity=ConflictSeverity.error,
                    message="Hash verification must be enabled for arbitrage",
                )
            )
        if arbitrage.verification_strategy.sample_retrieval < MIN_SAMPLE_RETRIEVAL:
            warnings.append("Very low sample retrieval rate may miss data corruption")


def _summarize(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)
