"""
UpstreamClient - async HTTP client shared by the pricing and ESIID upstreams.

Every transport failure and non-2xx status is turned into a typed
ServiceError right here, so nothing downstream inspects httpx exceptions or
message text.
"""

from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger

from powerplans.services.errors import (
    ApiBadRequest,
    ApiInvalidResponse,
    ApiRateLimited,
    ApiServerError,
    ApiTimeout,
    ApiUnauthorized,
    ConfigurationMissing,
    NetworkError,
    ServiceError,
)

USER_AGENT = "powerplans/1.0"


@dataclass
class UpstreamConfig:
    """Configuration for one upstream API."""

    service_id: str
    base_url: str
    timeout: float = 10.0
    api_key: str = ""
    headers: dict[str, str] = field(default_factory=dict)


def classify_status(response: httpx.Response, service_id: str) -> ServiceError:
    """Map a non-success response to the matching error class."""
    status = response.status_code
    detail = f"HTTP {status}: {response.text[:200]}"

    if status in (401, 403):
        return ApiUnauthorized(detail, service_id=service_id)
    if status == 429:
        retry_after = response.headers.get("Retry-After")
        try:
            seconds = float(retry_after) if retry_after else None
        except ValueError:
            seconds = None
        return ApiRateLimited(service_id, retry_after=seconds)
    if status >= 500:
        return ApiServerError(detail, status_code=status, service_id=service_id)
    return ApiBadRequest(detail, status_code=status, service_id=service_id)


class UpstreamClient:
    """
    Thin httpx wrapper for one upstream.

    Usage:
        async with UpstreamClient(UpstreamConfig("pricing", base_url)) as client:
            data = await client.get_json("/api/plans/current", params={...})
    """

    def __init__(
        self,
        config: UpstreamConfig,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self._http_client = http_client
        self._owns_http_client = http_client is None

    @property
    def service_id(self) -> str:
        return self.config.service_id

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout),
                follow_redirects=True,
            )
        return self._http_client

    def _headers(self) -> dict[str, str]:
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        if self.config.api_key:
            headers["X-API-Key"] = self.config.api_key
        headers.update(self.config.headers)
        return headers

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """
        GET base_url + path and decode the JSON body.

        Raises:
            ConfigurationMissing: No base URL configured
            ApiTimeout / NetworkError: Transport failures
            ApiUnauthorized / ApiRateLimited / ApiServerError / ApiBadRequest:
                Classified non-2xx responses
            ApiInvalidResponse: Body is not JSON
        """
        if not self.config.base_url:
            raise ConfigurationMissing(
                f"No base URL configured for service '{self.service_id}'",
                service_id=self.service_id,
            )

        client = await self._get_http_client()
        url = f"{self.config.base_url.rstrip('/')}{path}"

        try:
            response = await client.get(
                url,
                params=params,
                headers=self._headers(),
                timeout=self.config.timeout,
            )
        except httpx.TimeoutException as e:
            raise ApiTimeout(self.service_id, self.config.timeout) from e
        except httpx.RequestError as e:
            raise NetworkError(
                f"{type(e).__name__}: {e}", service_id=self.service_id
            ) from e

        if not response.is_success:
            error = classify_status(response, self.service_id)
            logger.warning(f"[{self.service_id}] {error}")
            raise error

        try:
            return response.json()
        except ValueError as e:
            raise ApiInvalidResponse(
                f"Response from '{self.service_id}' is not valid JSON",
                service_id=self.service_id,
            ) from e

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._http_client and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.debug(f"UpstreamClient '{self.service_id}' closed")

    async def __aenter__(self) -> "UpstreamClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
