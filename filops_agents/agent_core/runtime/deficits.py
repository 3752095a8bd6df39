from __future__ import annotations

from collections import Counter
from typing import Dict, Iterable, List

from ..schemas.domain import Deal, Deficit
from ..schemas.policy import PolicyDocument

UNKNOWN_REGION = "UNKNOWN"


def count_replicas_by_region(deals: Iterable[Deal]) -> Dict[str, int]:
    """Count deals per region; deals without a region count under ``UNKNOWN``."""
    return dict(Counter(d.region or UNKNOWN_REGION for d in deals))


def compute_deficits(doc: PolicyDocument, active_deals: Iterable[Deal]) -> List[Deficit]:
    """
    Compare active deals with the policy's per-region replica floors.

    Args:
        doc: The policy document.
        active_deals: Active deals of one dataset.

    Returns:
        One ``Deficit`` per under-replicated region, in policy region order.
        An empty list means the dataset is compliant.
    """
    current = count_replicas_by_region(active_deals)
    deficits: List[Deficit] = []
    for req in doc.replication.regions:
        have = current.get(req.code.value, 0)
        if have < req.min_replicas:
            deficits.append(Deficit(region=req.code.value, required=req.min_replicas, current=have))
    return deficits
