"""
Amazon Selling Partner API client for the orders and finances feeds.

Only the three paginated reads the sync pipeline needs are implemented.
Every method returns the ``payload`` object of the response unchanged.
"""

from datetime import datetime
from typing import Any, Optional

import httpx

from pnl_sync.clients.base import AuthenticationError, BaseAPIClient
from pnl_sync.core.cache import TTLCache
from pnl_sync.core.config import SpApiConnectionConfig, settings
from pnl_sync.core.logging import get_logger
from pnl_sync.core.time import format_iso

logger = get_logger(__name__)

REGION_ENDPOINTS = {
    "na": "https://sellingpartnerapi-na.amazon.com",
    "eu": "https://sellingpartnerapi-eu.amazon.com",
    "fe": "https://sellingpartnerapi-fe.amazon.com",
}

LWA_TOKEN_URL = "https://api.amazon.com/auth/o2/token"

# Refresh a little before Amazon expires the token.
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class SpApiClient(BaseAPIClient):
    """
    SP-API client.

    Handles the LWA refresh-token grant and the orders/finances endpoints.
    """

    def __init__(
        self,
        config: SpApiConnectionConfig,
        token_cache: Optional[TTLCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            base_url=REGION_ENDPOINTS[config.region],
            timeout=settings.sp_api_timeout,
            rate_limit=settings.sp_api_rate_limit,
            transport=transport,
        )
        self.config = config
        self.token_cache = token_cache if token_cache is not None else TTLCache()

    @property
    def _token_cache_key(self) -> str:
        return f"lwa:{self.config.client_id}"

    async def _get_access_token(self) -> str:
        """
        Return a valid LWA access token, refreshing it when the cache is empty.

        Raises:
            AuthenticationError: If the token endpoint returns no access token
        """
        cached = self.token_cache.get(self._token_cache_key)
        if cached:
            return cached

        logger.info("Refreshing LWA access token")

        response = await self.post(
            LWA_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": self.config.refresh_token,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            },
        )

        access_token = response.get("access_token")
        if not access_token:
            raise AuthenticationError("LWA token response did not contain an access token")

        expires_in = float(response.get("expires_in", 3600))
        self.token_cache.set(
            self._token_cache_key,
            access_token,
            ttl_seconds=max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0),
        )
        return access_token

    async def _get_headers(self) -> dict[str, str]:
        """Get headers with authentication."""
        access_token = await self._get_access_token()
        return {
            "x-amz-access-token": access_token,
            "user-agent": self.config.user_agent,
            "accept": "application/json",
        }

    async def _get_payload(self, endpoint: str, params: dict[str, Any]) -> dict[str, Any]:
        headers = await self._get_headers()
        response = await self.get(endpoint, headers=headers, params=params)
        return response.get("payload") or {}

    async def get_orders(
        self,
        created_after: datetime,
        created_before: Optional[datetime] = None,
        page_size: int = 100,
        next_token: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Get one page of orders for the configured marketplace.

        Args:
            created_after: Lower purchase-date bound
            created_before: Upper purchase-date bound
            page_size: MaxResultsPerPage
            next_token: Continuation token of the previous page

        Returns:
            Payload with "Orders" and an optional "NextToken"
        """
        params: dict[str, Any] = {
            "MarketplaceIds": self.config.marketplace_id,
            "CreatedAfter": format_iso(created_after),
            "MaxResultsPerPage": page_size,
        }
        if created_before:
            params["CreatedBefore"] = format_iso(created_before)
        if next_token:
            params["NextToken"] = next_token

        return await self._get_payload("/orders/v0/orders", params)

    async def get_order_items(
        self,
        order_id: str,
        next_token: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Get one page of line items for an order.

        Args:
            order_id: Amazon order id
            next_token: Continuation token of the previous page

        Returns:
            Payload with "OrderItems" and an optional "NextToken"
        """
        params: dict[str, Any] = {}
        if next_token:
            params["NextToken"] = next_token

        return await self._get_payload(f"/orders/v0/orders/{order_id}/orderItems", params)

    async def list_financial_events(
        self,
        posted_after: datetime,
        posted_before: Optional[datetime] = None,
        page_size: int = 100,
        next_token: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Get one page of financial events.

        Args:
            posted_after: Lower posted-date bound
            posted_before: Upper posted-date bound
            page_size: MaxResultsPerPage
            next_token: Continuation token of the previous page

        Returns:
            Payload with the category-keyed "FinancialEvents" object and an
            optional "NextToken"
        """
        params: dict[str, Any] = {
            "PostedAfter": format_iso(posted_after),
            "MaxResultsPerPage": page_size,
        }
        if posted_before:
            params["PostedBefore"] = format_iso(posted_before)
        if next_token:
            params["NextToken"] = next_token

        return await self._get_payload("/finances/v0/financialEvents", params)
