"""Policy document schema.

A policy document is the declarative description of how a project's datasets
must be replicated: per-region replica floors, availability and cost targets,
renewal posture and the arbitrage toggle with its verification strategy.

The structural constraints (value ranges, cardinalities) live here so that
``PolicyDocument.model_validate`` is the schema validation stage of the
policy validator. Business rules that only warn, or that must report every
problem at once (duplicate regions, replica floor, provider lists), are left
to ``agent_core.policy.validator``.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import Field

from .base import BaseSchema


class RegionCode(str, Enum):
    NA = "NA"
    EU = "EU"
    APAC = "APAC"
    SA = "SA"
    AF = "AF"
    ME = "ME"


class ConflictStrategy(str, Enum):
    warn = "warn"
    auto_adjust = "auto_adjust"
    block = "block"


class RegionReplication(BaseSchema):
    code: RegionCode
    min_replicas: int = Field(gt=0, le=100)


class ReplicationPolicy(BaseSchema):
    """Ordered region requirements plus optional provider allow/deny lists."""

    regions: List[RegionReplication] = Field(min_length=1, max_length=10)
    allowlist_providers: Optional[List[str]] = None
    denylist_providers: Optional[List[str]] = None

    @property
    def total_replicas(self) -> int:
        return sum(r.min_replicas for r in self.regions)


class RenewalPolicy(BaseSchema):
    lead_time_days: int = Field(ge=1, le=365)
    min_collateral_buffer_pct: float = Field(ge=0, le=100)


class VerificationStrategy(BaseSchema):
    hash_check: bool
    sample_retrieval: float = Field(ge=0, le=1)


class ArbitragePolicy(BaseSchema):
    enable: bool
    min_expected_savings_pct: float = Field(ge=0, le=100)
    verification_strategy: VerificationStrategy


class PolicyDocument(BaseSchema):
    """
    Root policy document.

    ``cost_ceiling_usd_per_tib_month`` also accepts the historical
    ``cost_ceiling_usd_per_TiB_month`` key.
    """

    replication: ReplicationPolicy
    availability_target: float = Field(ge=0, le=1)
    latency_targets_ms: Optional[Dict[RegionCode, float]] = None
    cost_ceiling_usd_per_tib_month: float = Field(gt=0, le=10_000, alias="cost_ceiling_usd_per_TiB_month")
    renewal: RenewalPolicy
    arbitrage: ArbitragePolicy
    conflict_strategy: ConflictStrategy = ConflictStrategy.warn
