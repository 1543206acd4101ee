"""
Base HTTP client with request pacing and error handling.

Retries are not performed here; collectors wrap each upstream call in a
``RetryingTransport`` so the retry policy sees the status code and headers of
every failure.
"""

import asyncio
from typing import Any, Optional
from urllib.parse import urljoin

import httpx

from pnl_sync.core.logging import get_logger

logger = get_logger(__name__)


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[Any] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response = response
        self.headers = headers or {}


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded."""

    pass


class AuthenticationError(APIError):
    """Raised when authentication fails."""

    pass


class BaseAPIClient:
    """
    Base class for API clients with common functionality.

    Features:
    - Request pacing to a requests-per-second budget
    - Request/response logging
    - Error handling with status code and headers preserved
    """

    def __init__(
        self,
        base_url: str,
        timeout: int = 30,
        rate_limit: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize API client.

        Args:
            base_url: Base URL for API
            timeout: Request timeout in seconds
            rate_limit: Maximum requests per second
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.base_url = base_url
        self.timeout = timeout
        self.rate_limit = rate_limit
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._pacing_lock = asyncio.Lock()
        self._last_request_time = 0.0

    async def __aenter__(self) -> "BaseAPIClient":
        """Async context manager entry."""
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def _ensure_client(self) -> None:
        """Ensure HTTP client is initialized."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _rate_limit_wait(self) -> None:
        """Space requests so the client never exceeds its per-second budget."""
        if self.rate_limit <= 0:
            return

        async with self._pacing_lock:
            loop = asyncio.get_running_loop()
            time_since_last = loop.time() - self._last_request_time
            min_interval = 1.0 / self.rate_limit

            if time_since_last < min_interval:
                await asyncio.sleep(min_interval - time_since_last)

            self._last_request_time = loop.time()

    async def request(
        self,
        method: str,
        endpoint: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """
        Make HTTP request with error handling.

        Args:
            method: HTTP method
            endpoint: API endpoint (or absolute URL)
            **kwargs: Additional arguments for httpx.request

        Returns:
            Response JSON data

        Raises:
            APIError: On API error
            RateLimitError: On rate limit exceeded
            AuthenticationError: On authentication failure
        """
        await self._ensure_client()
        await self._rate_limit_wait()

        url = urljoin(self.base_url, endpoint)

        logger.debug(f"{method} {url}", extra={"params": str(kwargs.get("params"))})

        try:
            assert self._client is not None
            response = await self._client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            logger.error(f"Request error: {e}")
            raise APIError(f"Request failed: {e}") from e

        headers = {key.lower(): value for key, value in response.headers.items()}

        if response.status_code == 429:
            logger.warning(
                "Rate limit exceeded",
                extra={"url": url, "rate_limit": headers.get("x-amzn-ratelimit-limit")},
            )
            raise RateLimitError(
                "Rate limit exceeded",
                status_code=429,
                response=self._safe_json(response),
                headers=headers,
            )

        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Authentication failed: {response.text}",
                status_code=response.status_code,
                response=self._safe_json(response),
                headers=headers,
            )

        if response.is_error:
            logger.error(f"HTTP error: {response.status_code} - {response.text}")
            raise APIError(
                f"HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
                response=self._safe_json(response),
                headers=headers,
            )

        return response.json()

    @staticmethod
    def _safe_json(response: httpx.Response) -> Optional[Any]:
        if not response.text:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    async def get(self, endpoint: str, **kwargs: Any) -> dict[str, Any]:
        """Make GET request."""
        return await self.request("GET", endpoint, **kwargs)

    async def post(self, endpoint: str, **kwargs: Any) -> dict[str, Any]:
        """Make POST request."""
        return await self.request("POST", endpoint, **kwargs)
