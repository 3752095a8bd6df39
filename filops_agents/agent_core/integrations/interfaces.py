from __future__ import annotations

"""Collaborator contracts for provider selection and deal execution.

Both collaborators are plain request/response services. They either return a
typed result or raise; the core never retries a call on their behalf.
Timeouts are the collaborator's responsibility and surface as failures.
"""

from typing import List, Optional, Protocol

from pydantic import ConfigDict, Field

from ..schemas.base import BaseSchema


class ProviderQuery(BaseSchema):
    region: str
    min_availability: float = Field(ge=0, le=1)
    max_price: float = Field(gt=0)
    limit: int = Field(ge=1)


class ProviderCandidate(BaseSchema):
    """One storage provider offered for a region.

    Unknown response fields are ignored so that pricing services can add data
    without breaking callers.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    provider_id: str = Field(alias="providerId")
    price_usd_per_tib_month: float = Field(alias="priceUsdPerTiBMonth")
    region: Optional[str] = None
    availability: Optional[float] = None
    reputation: Optional[float] = None


class CreateDealParams(BaseSchema):
    data_cid: str
    provider_id: str
    duration_days: int = Field(ge=1)
    price_fil: str
    collateral_fil: str
    verified: bool = True


class CreateDealResult(BaseSchema):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    deal_id: str = Field(alias="dealId")
    tx_hash: str = Field(alias="txHash")


class ProviderSelector(Protocol):
    async def find_best_providers(self, query: ProviderQuery) -> List[ProviderCandidate]:
        """
        Return up to ``query.limit`` providers for a region, best first.

        Args:
            query: Region, availability floor, price ceiling and result limit.

        Returns:
            Candidate providers; may be empty.
        """
        ...


class DealExecutor(Protocol):
    async def create_deal(self, params: CreateDealParams) -> CreateDealResult:
        """
        Create a storage deal with a provider.

        Args:
            params: Content id, provider and commercial terms.

        Returns:
            The new deal reference and its transaction hash.
        """
        ...
