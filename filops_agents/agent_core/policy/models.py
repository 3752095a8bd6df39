from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from ..schemas.base import BaseSchema
from ..schemas.domain import PolicyRecord


class ConflictType(str, Enum):
    budget = "budget"
    region = "region"
    provider = "provider"
    sla = "sla"


class ConflictSeverity(str, Enum):
    """
    How a conflict affects policy acceptance.

    Attributes:
        error: Blocks the policy; ``valid`` is false.
        warning: Reported to the caller, never blocking.
    """
    error = "error"
    warning = "warning"


class PolicyConflict(BaseSchema):
    type: ConflictType
    severity: ConflictSeverity
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def blocking(self) -> bool:
        return self.severity == ConflictSeverity.error


class PolicyValidationResult(BaseSchema):
    """
    Outcome of validating one policy document.

    ``valid`` is true only when there are no ``errors`` and no conflict with
    ``error`` severity. ``warnings`` never affect ``valid``.
    """
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    conflicts: List[PolicyConflict] = Field(default_factory=list)


class RegionCompliance(BaseSchema):
    code: str
    required: int
    current: int
    compliant: bool


class PolicyComplianceStatus(BaseSchema):
    """Aggregate replication and cost view of a policy over its project's active deals."""

    policy_id: str
    compliant: bool
    regions: List[RegionCompliance] = Field(default_factory=list)
    total_replicas: int = 0
    required_replicas: int = 0
    monthly_cost_usd_per_tib: float = 0.0
    cost_ceiling_usd_per_tib: float = 0.0
    within_budget: bool = True
    conflict_strategy: str = "warn"
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PolicyWriteResult(BaseSchema):
    """A stored policy plus the non-blocking findings raised while writing it."""

    policy: PolicyRecord
    validation: Optional[PolicyValidationResult] = None
    conflicts: List[PolicyConflict] = Field(default_factory=list)

    @property
    def warnings(self) -> List[str]:
        found = list(self.validation.warnings) if self.validation is not None else []
        found.extend(c.message for c in self.conflicts)
        return found
