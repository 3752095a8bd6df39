"""HTTP clients for the provider-selection and deal-execution collaborators.

Overview
--------
Thin async clients over ``httpx.AsyncClient``:

- ``HttpProviderSelector``: ``GET {base_url}/providers/best`` on the pricing
  service.
- ``HttpDealExecutor``: ``POST {base_url}/deals`` on the deal service.

Errors
------
Non-2xx responses, transport errors (including timeouts) and malformed
payloads are raised as ``CollaboratorFailure`` with the status code and
response body where applicable. Nothing is retried.

Usage
-----
>>> selector = HttpProviderSelector("http://pricing.local", api_token="t")
>>> providers = await selector.find_best_providers(ProviderQuery(region="EU", min_availability=0.99, max_price=50, limit=2))
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from ...core.errors import CollaboratorFailure
from .interfaces import CreateDealParams, CreateDealResult, ProviderCandidate, ProviderQuery

logger = logging.getLogger(__name__)


class _HttpCollaborator:
    """Shared plumbing: base URL, bearer auth and error mapping."""

    name = "collaborator"

    def __init__(
        self,
        base_url: str,
        *,
        api_token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Args:
            base_url: Service root, e.g. ``http://pricing.local/api``.
            api_token: Sent as ``Authorization: Bearer <token>`` when set.
            timeout: Default timeout for the internal client.
            client: Optional preconfigured ``httpx.AsyncClient`` (tests inject a
                ``MockTransport`` here). It is not closed by ``aclose``.
        """
        self.base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        try:
            r = await self._client.request(method, url, headers=self._headers(), **kwargs)
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CollaboratorFailure(
                f"{self.name} {method} {path} failed: {e.response.status_code}",
                status_code=e.response.status_code,
                details={"body": e.response.text},
            ) from e
        except httpx.HTTPError as e:
            raise CollaboratorFailure(f"{self.name} {method} {path} failed: {e}") from e
        try:
            return r.json()
        except ValueError as e:
            raise CollaboratorFailure(
                f"{self.name} {method} {path} returned invalid JSON",
                status_code=r.status_code,
                details={"body": r.text},
            ) from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class HttpProviderSelector(_HttpCollaborator):
    """``ProviderSelector`` backed by the pricing service."""

    name = "pricing"

    async def find_best_providers(self, query: ProviderQuery) -> List[ProviderCandidate]:
        """Query the best providers for a region.

        API
        ---
        - Method/Path: ``GET /providers/best``
        - Query: ``region``, ``minAvailability``, ``maxPrice``, ``limit``

        Returns:
            At most ``query.limit`` candidates. The response may be a bare list
            or an object with a ``providers`` list.

        Raises:
            CollaboratorFailure: On HTTP, transport or payload errors.
        """
        params = {
            "region": query.region,
            "minAvailability": query.min_availability,
            "maxPrice": query.max_price,
            "limit": query.limit,
        }
        data = await self._request("GET", "/providers/best", params=params)
        items = data.get("providers", []) if isinstance(data, dict) else data
        try:
            candidates = [ProviderCandidate.model_validate(item) for item in items or []]
        except (ValidationError, TypeError) as e:
            raise CollaboratorFailure("pricing returned malformed providers", details={"body": data}) from e
        logger.debug("pricing returned %d providers for region %s", len(candidates), query.region)
        return candidates[: query.limit]


class HttpDealExecutor(_HttpCollaborator):
    """``DealExecutor`` backed by the deal service."""

    name = "deals"

    async def create_deal(self, params: CreateDealParams) -> CreateDealResult:
        """Create a storage deal.

        API
        ---
        - Method/Path: ``POST /deals``
        - Body: ``dataCid``, ``providerId``, ``duration`` (days), ``price``,
          ``collateral``, ``verified``

        Raises:
            CollaboratorFailure: On HTTP, transport or payload errors.
        """
        body = {
            "dataCid": params.data_cid,
            "providerId": params.provider_id,
            "duration": params.duration_days,
            "price": params.price_fil,
            "collateral": params.collateral_fil,
            "verified": params.verified,
        }
        data = await self._request("POST", "/deals", json=body)
        try:
            result = CreateDealResult.model_validate(data)
        except ValidationError as e:
            raise CollaboratorFailure("deals returned a malformed result", details={"body": data}) from e
        logger.info("Deal %s created with provider %s", result.deal_id, params.provider_id)
        return result
