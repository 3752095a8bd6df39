"""Policy subsystem: document validation, cross-policy checks and the policy service.

Components
----------

- ``PolicyValidator``: schema plus business-rule validation of a policy
  document, and the cross-policy ``check_conflicts``.
- ``PolicyService``: versioned policy records, activation, guarded deletion
  and a compliance summary over a project's deals.

The document model itself lives in ``agent_core.schemas.policy``.
"""

from .models import (
    ConflictSeverity,
    ConflictType,
    PolicyComplianceStatus,
    PolicyConflict,
    PolicyValidationResult,
    PolicyWriteResult,
)
from .service import PolicyService
from .validator import PolicyValidator

__all__ = [
    "ConflictSeverity",
    "ConflictType",
    "PolicyComplianceStatus",
    "PolicyConflict",
    "PolicyService",
    "PolicyValidationResult",
    "PolicyValidator",
    "PolicyWriteResult",
]
