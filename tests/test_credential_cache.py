"""
Tests for CredentialCache.

Covers single-flight refresh, expiry with safety margin, failure handling and
invalidation after a provider rejects a token.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from app.exceptions import CredentialError
from app.models.domain import Provider
from app.services.credential_cache import CredentialCache, IssuedToken


class FakeClock:
    """Settable UTC clock."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeTokenSource:
    """Token source that counts calls and can fail its first attempts."""

    def __init__(
        self,
        lifetime_seconds: int = 86400,
        fail_times: int = 0,
        error: Exception | None = None,
        delay: float = 0.01,
    ) -> None:
        self.lifetime_seconds = lifetime_seconds
        self.fail_times = fail_times
        self.error = error or CredentialError(Provider.BILL_GATEWAY, "token rejected")
        self.delay = delay
        self.calls = 0

    async def fetch_token(self) -> IssuedToken:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.calls <= self.fail_times:
            raise self.error
        return IssuedToken(value=f"token-{self.calls}", lifetime_seconds=self.lifetime_seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_cache(source: FakeTokenSource, clock: FakeClock, margin_hours: int = 1) -> CredentialCache:
    return CredentialCache(
        {Provider.BILL_GATEWAY: source},
        safety_margin=timedelta(hours=margin_hours),
        clock=clock,
    )


class TestSingleFlight:
    """At most one token request per provider."""

    async def test_concurrent_callers_share_one_refresh(self, clock: FakeClock):
        """Fifty simultaneous callers trigger exactly one token request."""
        source = FakeTokenSource()
        cache = make_cache(source, clock)

        tokens = await asyncio.gather(
            *(cache.get_token(Provider.BILL_GATEWAY) for _ in range(50))
        )

        assert source.calls == 1
        assert {token.value for token in tokens} == {"token-1"}

    async def test_cached_token_is_reused(self, clock: FakeClock):
        """A valid cached token is returned without a new request."""
        source = FakeTokenSource()
        cache = make_cache(source, clock)

        first = await cache.get_token(Provider.BILL_GATEWAY)
        clock.advance(hours=22)
        second = await cache.get_token(Provider.BILL_GATEWAY)

        assert first == second
        assert source.calls == 1

    async def test_cancelled_waiter_does_not_cancel_refresh(self, clock: FakeClock):
        """One caller going away leaves the shared refresh running for the others."""
        source = FakeTokenSource(delay=0.05)
        cache = make_cache(source, clock)

        leaving = asyncio.create_task(cache.get_token(Provider.BILL_GATEWAY))
        staying = asyncio.create_task(cache.get_token(Provider.BILL_GATEWAY))
        await asyncio.sleep(0.01)
        leaving.cancel()

        token = await staying

        assert token.value == "token-1"
        assert source.calls == 1
        assert leaving.cancelled()


class TestExpiry:
    """Tokens are retired a safety margin before declared expiry."""

    async def test_expiry_subtracts_safety_margin(self, clock: FakeClock):
        """A 24h token with a 1h margin is cached for 23h."""
        cache = make_cache(FakeTokenSource(lifetime_seconds=86400), clock)

        token = await cache.get_token(Provider.BILL_GATEWAY)

        assert token.expires_at == clock.now + timedelta(hours=23)

    async def test_refreshes_after_margin_reached(self, clock: FakeClock):
        """Once inside the margin the next call fetches a new token."""
        source = FakeTokenSource()
        cache = make_cache(source, clock)

        await cache.get_token(Provider.BILL_GATEWAY)
        clock.advance(hours=23)
        token = await cache.get_token(Provider.BILL_GATEWAY)

        assert token.value == "token-2"
        assert source.calls == 2

    async def test_short_lived_token_is_not_cached(self, clock: FakeClock):
        """A token shorter than the margin is handed out but never cached."""
        source = FakeTokenSource(lifetime_seconds=600)
        cache = make_cache(source, clock)

        token = await cache.get_token(Provider.BILL_GATEWAY)

        assert token.value == "token-1"
        assert cache.cached_token(Provider.BILL_GATEWAY) is None

        await cache.get_token(Provider.BILL_GATEWAY)
        assert source.calls == 2


class TestFailures:
    """Refresh failures reach every waiter and never stick."""

    async def test_failure_reaches_all_waiters(self, clock: FakeClock):
        """Every concurrent caller receives the CredentialError."""
        source = FakeTokenSource(fail_times=1)
        cache = make_cache(source, clock)

        results = await asyncio.gather(
            *(cache.get_token(Provider.BILL_GATEWAY) for _ in range(5)),
            return_exceptions=True,
        )

        assert source.calls == 1
        assert all(isinstance(result, CredentialError) for result in results)

    async def test_failure_clears_in_flight_refresh(self, clock: FakeClock):
        """The call after a failed refresh starts a new one."""
        source = FakeTokenSource(fail_times=1)
        cache = make_cache(source, clock)

        with pytest.raises(CredentialError):
            await cache.get_token(Provider.BILL_GATEWAY)

        token = await cache.get_token(Provider.BILL_GATEWAY)

        assert token.value == "token-2"
        assert source.calls == 2

    async def test_unexpected_error_becomes_credential_error(self, clock: FakeClock):
        """Source failures other than CredentialError are wrapped."""
        source = FakeTokenSource(fail_times=1, error=RuntimeError("socket closed"))
        cache = make_cache(source, clock)

        with pytest.raises(CredentialError) as exc_info:
            await cache.get_token(Provider.BILL_GATEWAY)

        assert exc_info.value.provider == Provider.BILL_GATEWAY
        assert "socket closed" in exc_info.value.message

    async def test_missing_source_raises(self, clock: FakeClock):
        """A provider without a token source cannot get a token."""
        cache = make_cache(FakeTokenSource(), clock)

        with pytest.raises(CredentialError):
            await cache.get_token(Provider.TXN_GATEWAY)


class TestInvalidate:
    """Dropping a token the provider rejected."""

    async def test_invalidate_forces_refresh(self, clock: FakeClock):
        """After invalidation the next call fetches a fresh token."""
        source = FakeTokenSource()
        cache = make_cache(source, clock)

        stale = await cache.get_token(Provider.BILL_GATEWAY)
        cache.invalidate(Provider.BILL_GATEWAY, stale)
        fresh = await cache.get_token(Provider.BILL_GATEWAY)

        assert fresh.value == "token-2"

    async def test_invalidate_ignores_already_replaced_token(self, clock: FakeClock):
        """Reporting an old token does not evict its replacement."""
        source = FakeTokenSource()
        cache = make_cache(source, clock)

        stale = await cache.get_token(Provider.BILL_GATEWAY)
        cache.invalidate(Provider.BILL_GATEWAY, stale)
        fresh = await cache.get_token(Provider.BILL_GATEWAY)

        cache.invalidate(Provider.BILL_GATEWAY, stale)

        assert cache.cached_token(Provider.BILL_GATEWAY) == fresh
        assert source.calls == 2
