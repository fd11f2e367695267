"""
Shared httpx plumbing for vendor adapters.
"""

from typing import Any

import httpx

from daily_calls.infrastructure.observability.logging import get_logger
from daily_calls.providers.base import CallProvider, ProviderInitiationFailed

logger = get_logger(__name__)


class HttpCallProvider(CallProvider):
    """CallProvider that talks to a vendor REST API over one AsyncClient."""

    def __init__(
        self,
        base_url: str,
        timeout_s: float = 30.0,
        webhook_secret: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(webhook_secret=webhook_secret)
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_s),
                transport=self._transport,
            )
        return self._client

    async def _post(self, path: str, payload: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        """
        POST to the vendor.

        Raises:
            ProviderInitiationFailed: connection refused (nothing sent) or an
                ambiguous transport failure such as a timeout
        """
        client = self._get_client()
        try:
            return await client.post(path, json=payload, headers=headers)
        except httpx.ConnectError as e:
            logger.warning("Call provider unreachable", provider=self.name, error=str(e))
            raise ProviderInitiationFailed(
                f"{self.name} unreachable: {e}", provider=self.name, ambiguous=False
            ) from e
        except httpx.TimeoutException as e:
            logger.warning(
                "Call provider request timed out",
                provider=self.name,
                timeout_s=self.timeout_s,
                error=str(e),
            )
            raise ProviderInitiationFailed(
                f"{self.name} request timed out after {self.timeout_s}s",
                provider=self.name,
                ambiguous=True,
            ) from e
        except httpx.RequestError as e:
            logger.warning(
                "Call provider request failed",
                provider=self.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ProviderInitiationFailed(
                f"{self.name} request failed: {e}", provider=self.name, ambiguous=True
            ) from e

    def _json_body(self, response: httpx.Response) -> dict[str, Any]:
        """
        JSON object body of an accepted request.

        The vendor already took the call, so a body that is not a JSON object
        yields an empty dict instead of an error.
        """
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            logger.warning(
                "Call provider accepted the call with an unreadable body",
                provider=self.name,
                status_code=response.status_code,
                body=response.text[:200],
            )
            return {}
        return data

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
