"""
Provider HTTP Client - Timed, typed outbound calls for REST payment providers.
"""

from typing import Any

import httpx
from structlog import get_logger

from app.exceptions import GatewayError
from app.models.domain import Provider
from app.observability.metrics import track_provider_call

logger = get_logger(__name__)


class ProviderHttpClient:
    """
    Thin wrapper over httpx for one provider.

    Every request carries the configured timeout; transport failures and
    timeouts surface as GatewayError so adapters only deal with responses.
    """

    def __init__(
        self,
        provider: Provider,
        base_url: str,
        timeout_seconds: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize provider HTTP client.

        Args:
            provider: Provider the calls are made to (for errors and metrics)
            base_url: Provider API base URL
            timeout_seconds: Per-request timeout
            client: Shared client; a short-lived client is used per call if omitted
        """
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def request(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request and return the raw response (any status code).

        Raises:
            GatewayError: On timeout or transport failure
        """
        url = f"{self.base_url}{path}"
        with track_provider_call(self.provider.value, operation):
            try:
                if self._client is not None:
                    return await self._client.request(
                        method, url, timeout=self.timeout_seconds, **kwargs
                    )
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    return await client.request(method, url, **kwargs)
            except httpx.TimeoutException as exc:
                logger.error(
                    "provider_request_timeout",
                    provider=self.provider.value,
                    operation=operation,
                    timeout_seconds=self.timeout_seconds,
                )
                raise GatewayError(self.provider, f"{operation} timed out") from exc
            except httpx.HTTPError as exc:
                logger.error(
                    "provider_request_failed",
                    provider=self.provider.value,
                    operation=operation,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise GatewayError(self.provider, f"{operation} failed: {exc}") from exc

    def json_body(self, operation: str, response: httpx.Response) -> dict[str, Any]:
        """
        Decode a JSON object body.

        Raises:
            GatewayError: If the body is not a JSON object
        """
        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayError(
                self.provider,
                f"{operation} returned invalid JSON",
                status_code=response.status_code,
            ) from exc
        if not isinstance(body, dict):
            raise GatewayError(
                self.provider,
                f"{operation} returned unexpected payload",
                status_code=response.status_code,
            )
        return body

    def raise_for_status(self, operation: str, response: httpx.Response) -> None:
        """
        Translate an error response into GatewayError.

        Raises:
            GatewayError: If the response status is 4xx/5xx
        """
        if response.status_code < 400:
            return

        logger.error(
            "provider_api_error",
            provider=self.provider.value,
            operation=operation,
            status=response.status_code,
            error=response.text[:500],
        )
        raise GatewayError(
            self.provider,
            f"{operation} rejected with HTTP {response.status_code}",
            status_code=response.status_code,
        )
