"""
Credential Cache - Provider tokens cached per process with single-flight refresh.

At most one token request per provider is in flight at any time; concurrent
callers await the same refresh. Cached tokens are retired a safety margin
before the provider-declared expiry so a payment call never races the expiry.
"""

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from structlog import get_logger

from app.exceptions import CredentialError
from app.models.domain import CredentialToken, Provider, utc_now
from app.observability.metrics import metrics

logger = get_logger(__name__)


@dataclass(frozen=True)
class IssuedToken:
    """Token as issued by a provider, before the cache computes its expiry."""

    value: str
    lifetime_seconds: int


class TokenSource(Protocol):
    """Anything that can obtain a fresh token from a provider's token endpoint."""

    async def fetch_token(self) -> IssuedToken:
        """
        Request a new token.

        Raises:
            CredentialError: If secrets are missing or the endpoint rejects the request
        """
        ...


class CredentialCache:
    """
    In-memory token cache keyed by provider.

    Explicitly constructed and injected; the only shared mutable state is the
    token map and the in-flight refresh map, both touched only on the event loop.
    """

    def __init__(
        self,
        sources: Mapping[Provider, TokenSource],
        safety_margin: timedelta,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize credential cache.

        Args:
            sources: Token source per provider
            safety_margin: How long before declared expiry a token is retired
            clock: Returns the current UTC time
        """
        self._sources = dict(sources)
        self._safety_margin = safety_margin
        self._clock = clock
        self._tokens: dict[Provider, CredentialToken] = {}
        self._inflight: dict[Provider, asyncio.Task[CredentialToken]] = {}

    async def get_token(self, provider: Provider) -> CredentialToken:
        """
        Return a valid token, refreshing it if needed.

        Raises:
            CredentialError: If no source is configured or the refresh fails
        """
        cached = self._tokens.get(provider)
        if cached is not None and cached.is_valid(self._clock()):
            return cached

        task = self._inflight.get(provider)
        if task is None:
            source = self._sources.get(provider)
            if source is None:
                raise CredentialError(provider, "no token source configured")

            task = asyncio.create_task(self._refresh(provider, source))
            task.add_done_callback(_retrieve_exception)
            self._inflight[provider] = task
        else:
            logger.debug("credential_refresh_joined", provider=provider.value)

        # Shield so one caller going away never cancels the shared refresh
        return await asyncio.shield(task)

    def invalidate(self, provider: Provider, stale: CredentialToken) -> None:
        """
        Drop a token the provider has rejected.

        Only removes the cached token if it is still the rejected one, so many
        callers reporting the same stale token trigger a single refresh.
        """
        current = self._tokens.get(provider)
        if current is not None and current.value == stale.value:
            del self._tokens[provider]
            logger.info("credential_invalidated", provider=provider.value)

    def cached_token(self, provider: Provider) -> CredentialToken | None:
        """Return the cached token if it is still valid."""
        cached = self._tokens.get(provider)
        if cached is not None and cached.is_valid(self._clock()):
            return cached
        return None

    async def _refresh(self, provider: Provider, source: TokenSource) -> CredentialToken:
        """Fetch a token and install it. Always clears the in-flight marker."""
        try:
            logger.info("credential_refresh_started", provider=provider.value)
            try:
                issued = await source.fetch_token()
            except CredentialError:
                metrics.record_credential_refresh(provider.value, success=False)
                raise
            except Exception as exc:
                metrics.record_credential_refresh(provider.value, success=False)
                logger.error(
                    "credential_refresh_failed",
                    provider=provider.value,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise CredentialError(provider, f"token request failed: {exc}") from exc

            now = self._clock()
            lifetime = timedelta(seconds=issued.lifetime_seconds)

            if lifetime > self._safety_margin:
                token = CredentialToken(
                    value=issued.value,
                    expires_at=now + lifetime - self._safety_margin,
                )
                self._tokens[provider] = token
            else:
                # Too short-lived to cache safely; hand it to the waiting callers only
                token = CredentialToken(value=issued.value, expires_at=now + lifetime)
                logger.warning(
                    "credential_lifetime_below_margin",
                    provider=provider.value,
                    lifetime_seconds=issued.lifetime_seconds,
                )

            metrics.record_credential_refresh(provider.value, success=True)
            logger.info(
                "credential_refreshed",
                provider=provider.value,
                expires_at=token.expires_at.isoformat(),
            )
            return token
        finally:
            if self._inflight.get(provider) is asyncio.current_task():
                del self._inflight[provider]


def _retrieve_exception(task: asyncio.Task[CredentialToken]) -> None:
    """Mark refresh failures as retrieved when every waiter has gone away."""
    if not task.cancelled():
        task.exception()
