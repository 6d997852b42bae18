"""
HTTP transport for definitions, stats and health checks.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

import httpx

from togglebox.errors import NetworkError, ValidationError, error_for_status
from togglebox.retry import RetryConfig, DEFAULT_RETRY_CONFIG, retry_async

logger = logging.getLogger("togglebox.transport")

USER_AGENT = "togglebox-python"


@runtime_checkable
class Transport(Protocol):
    """What the store, batcher and client need from the backend."""

    async def fetch_definitions(
        self,
        platform: str,
        environment: str,
        version: str,
        etag: Optional[str] = None,
    ) -> Optional[Tuple[Dict[str, Any], Optional[str]]]:
        """Return ``(payload, etag)``, or None when ``etag`` is still current."""
        ...

    async def post_events(self, batch: List[Dict[str, Any]]) -> None:
        ...

    async def check_connection(self) -> Dict[str, Any]:
        ...

    async def close(self) -> None:
        ...


class HttpTransport:
    """
    httpx-backed transport.

    Every request carries the client timeout. Definition fetches are retried
    with backoff; event posts and health checks are single attempts.
    """

    def __init__(
        self,
        base_url: str,
        platform: str,
        environment: str,
        api_key: Optional[str] = None,
        timeout_ms: int = 5000,
        retry: RetryConfig = DEFAULT_RETRY_CONFIG,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._stats_url = f"{self._environment_url(platform, environment)}/stats/events"
        self._api_key = api_key
        self._retry = retry
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_ms / 1000)

    @property
    def base_url(self) -> str:
        return self._base_url

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _environment_url(self, platform: str, environment: str) -> str:
        return f"{self._base_url}/api/v1/platforms/{platform}/environments/{environment}"

    async def fetch_definitions(
        self,
        platform: str,
        environment: str,
        version: str,
        etag: Optional[str] = None,
    ) -> Optional[Tuple[Dict[str, Any], Optional[str]]]:
        """
        Fetch the definitions payload.

        Raises:
            ToggleBoxError: Classified failure after retries are exhausted
        """
        url = f"{self._environment_url(platform, environment)}/definitions"
        params = {"version": version}

        async def attempt():
            headers = self._headers()
            if etag:
                headers["If-None-Match"] = etag
            response = await self._request("GET", url, params=params, headers=headers)
            if response.status_code == 304:
                return None
            return _json_body(response), response.headers.get("ETag")

        logger.debug(f"Fetching definitions for {platform}/{environment} version {version!r}")
        return await retry_async(attempt, self._retry)

    async def post_events(self, batch: List[Dict[str, Any]]) -> None:
        """Post one batch of events. Raises a classified error on failure."""
        headers = self._headers()
        headers["Content-Type"] = "application/json"
        await self._request("POST", self._stats_url, json={"events": batch}, headers=headers)
        logger.debug(f"Posted {len(batch)} event(s)")

    async def check_connection(self) -> Dict[str, Any]:
        """
        Probe the health endpoint.

        Raises:
            ToggleBoxError: If the API is unreachable or unhealthy
        """
        response = await self._request("GET", f"{self._base_url}/health", headers=self._headers())
        body = _json_body(response)
        if "status" not in body:
            raise ValidationError("Health response is missing 'status'")
        return body

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http_client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request to {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Request to {url} failed: {e}") from e

        _raise_for_status(response)
        return response

    async def close(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()


def _raise_for_status(response: httpx.Response) -> None:
    status = response.status_code
    if status == 304 or response.is_success:
        return

    retry_after = response.headers.get("Retry-After")
    raise error_for_status(
        status,
        f"{response.request.method} {response.request.url.path} returned {status}",
        retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
    )


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise ValidationError(f"Response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"Expected a JSON object, got {type(data).__name__}")
    return data
