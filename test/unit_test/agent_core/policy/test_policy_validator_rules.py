from __future__ import annotations

from typing import Any, Dict

import pytest

from filops_agents.agent_core.policy.models import ConflictSeverity, ConflictType
from filops_agents.agent_core.policy.validator import PolicyValidator
from filops_agents.agent_core.schemas.domain import PolicyRecord
from filops_agents.agent_core.schemas.policy import PolicyDocument


def _regions(*pairs: tuple) -> Dict[str, Any]:
    return {"regions": [{"code": c, "min_replicas": n} for c, n in pairs]}


def test_baseline_document_is_valid_without_findings(policy_doc) -> None:
    res = PolicyValidator().validate(policy_doc())
    assert res.valid is True
    assert res.errors == []
    assert res.warnings == []
    assert res.conflicts == []


def test_accepts_parsed_document(policy_doc) -> None:
    doc = PolicyDocument.model_validate(policy_doc())
    assert PolicyValidator().validate(doc).valid is True


def test_schema_failure_short_circuits_business_rules(policy_doc) -> None:
    raw = policy_doc(availability_target=1.5, replication=_regions(("NA", 1)))
    res = PolicyValidator().validate(raw)
    assert res.valid is False
    assert len(res.errors) == 1
    assert res.errors[0].startswith("Schema validation failed:")
    # total replicas of 1 would add a conflict if business rules had run
    assert res.conflicts == []


@pytest.mark.parametrize(
    "patch",
    [
        {"replication": {"regions": []}},
        {"replication": _regions(("XX", 1), ("NA", 1))},
        {"replication": _regions(("NA", 0), ("EU", 2))},
        {"cost_ceiling_usd_per_TiB_month": 0},
        {"renewal": {"lead_time_days": 0, "min_collateral_buffer_pct": 20}},
    ],
)
def test_schema_rejections(policy_doc, patch: Dict[str, Any]) -> None:
    res = PolicyValidator().validate(policy_doc(**patch))
    assert res.valid is False
    assert res.errors[0].startswith("Schema validation failed:")


def test_duplicate_region_is_an_error(policy_doc) -> None:
    res = PolicyValidator().validate(policy_doc(replication=_regions(("NA", 1), ("NA", 2))))
    assert res.valid is False
    assert "Duplicate regions found: NA" in res.errors


def test_single_replica_is_a_blocking_region_conflict(policy_doc) -> None:
    res = PolicyValidator().validate(policy_doc(replication=_regions(("NA", 1))))
    assert res.valid is False
    assert res.errors == []
    [c] = res.conflicts
    assert c.type == ConflictType.region
    assert c.severity == ConflictSeverity.error
    assert c.message == "Total replicas must be at least 2 for data safety"
    assert c.details == {"total_replicas": 1}


def test_high_replica_count_warns(policy_doc) -> None:
    raw = policy_doc(
        replication=_regions(("NA", 20), ("EU", 20), ("APAC", 11)),
        cost_ceiling_usd_per_TiB_month=500,
    )
    res = PolicyValidator().validate(raw)
    assert res.valid is True
    assert "High replica count (51) may be expensive" in res.warnings


def test_provider_in_both_lists_blocks(policy_doc) -> None:
    replication = _regions(("NA", 2))
    replication["allowlist_providers"] = ["f01", "f02"]
    replication["denylist_providers"] = ["f02", "f03"]
    res = PolicyValidator().validate(policy_doc(replication=replication))
    assert res.valid is False
    [c] = res.conflicts
    assert c.type == ConflictType.provider
    assert c.details == {"conflicting_providers": ["f02"]}


def test_low_cost_ceiling_is_a_budget_warning_only(policy_doc) -> None:
    res = PolicyValidator().validate(policy_doc(cost_ceiling_usd_per_TiB_month=10))
    assert res.valid is True
    [c] = res.conflicts
    assert c.type == ConflictType.budget
    assert c.severity == ConflictSeverity.warning
    assert c.details == {"ceiling": 10, "estimated_min": 15, "replicas": 3}


def test_budget_heuristic_uses_configured_unit_cost(policy_doc) -> None:
    res = PolicyValidator(assumed_min_unit_cost=50).validate(policy_doc())
    assert [c.type for c in res.conflicts] == [ConflictType.budget]
    assert res.conflicts[0].details["estimated_min"] == 150


def test_very_high_cost_ceiling_warns(policy_doc) -> None:
    res = PolicyValidator().validate(policy_doc(cost_ceiling_usd_per_TiB_month=2000))
    assert res.valid is True
    assert "Very high cost ceiling: $2000/TiB/month" in res.warnings


@pytest.mark.parametrize(
    ("renewal", "expected"),
    [
        ({"lead_time_days": 3, "min_collateral_buffer_pct": 20}, "Renewal lead time less than 7 days may be risky"),
        ({"lead_time_days": 120, "min_collateral_buffer_pct": 20}, "Very long renewal lead time may lock funds unnecessarily"),
        ({"lead_time_days": 14, "min_collateral_buffer_pct": 5}, "Low collateral buffer may cause renewal failures"),
    ],
)
def test_renewal_warnings(policy_doc, renewal: Dict[str, Any], expected: str) -> None:
    res = PolicyValidator().validate(policy_doc(renewal=renewal))
    assert res.valid is True
    assert res.warnings == [expected]


def test_disabled_arbitrage_is_not_checked(policy_doc) -> None:
    arbitrage = {
        "enable": False,
        "min_expected_savings_pct": 1,
        "verification_strategy": {"hash_check": False, "sample_retrieval": 0.0},
    }
    res = PolicyValidator().validate(policy_doc(arbitrage=arbitrage))
    assert res.valid is True
    assert res.warnings == []


def test_enabled_arbitrage_without_hash_check_blocks(policy_doc) -> None:
    arbitrage = {
        "enable": True,
        "min_expected_savings_pct": 1,
        "verification_strategy": {"hash_check": False, "sample_retrieval": 0.001},
    }
    res = PolicyValidator().validate(policy_doc(arbitrage=arbitrage))
    assert res.valid is False
    assert [c.type for c in res.conflicts] == [ConflictType.sla]
    assert "Low savings threshold may cause frequent migrations" in res.warnings
    assert "Very low sample retrieval rate may miss data corruption" in res.warnings


def test_warnings_never_affect_validity(policy_doc) -> None:
    raw = policy_doc(
        cost_ceiling_usd_per_TiB_month=1,
        renewal={"lead_time_days": 1, "min_collateral_buffer_pct": 0},
    )
    res = PolicyValidator().validate(raw)
    assert res.warnings
    assert res.conflicts
    assert res.valid is True


def _record(project_id: str, active: bool, policy_doc) -> PolicyRecord:
    return PolicyRecord(
        project_id=project_id,
        name="p",
        doc=PolicyDocument.model_validate(policy_doc()),
        active=active,
    )


def test_check_conflicts_reports_other_active_policies(policy_doc) -> None:
    mine = _record("proj-1", True, policy_doc)
    other = _record("proj-1", True, policy_doc)
    inactive = _record("proj-1", False, policy_doc)
    foreign = _record("proj-2", True, policy_doc)

    conflicts = PolicyValidator().check_conflicts(
        policy_doc(), "proj-1", [mine, other, inactive, foreign], exclude_policy_id=mine.id
    )
    [c] = conflicts
    assert c.severity == ConflictSeverity.warning
    assert c.type == ConflictType.region
    assert c.details == {"active_policy_ids": [other.id]}
    assert c.message == "Project already has 1 active policy/policies"


def test_check_conflicts_is_empty_without_active_policies(policy_doc) -> None:
    existing = [_record("proj-1", False, policy_doc)]
    assert PolicyValidator().check_conflicts(policy_doc(), "proj-1", existing) == []
