"""Tests for circuit breaking around the identity service."""

import asyncio
import logging

import pytest

from apihub.circuit_breaker import BreakerState, CircuitBreaker, CircuitBreakerIdmsConnector
from apihub.errors import IdmsError, IdmsIssue


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("idms-test", max_failures=3, reset_timeout=30.0, clock=clock)


async def fail(issue: IdmsIssue = IdmsIssue.CALL_ERROR):
    raise IdmsError("boom", issue)


async def succeed():
    return "ok"


async def trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(IdmsError):
            await breaker.call(fail)


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_starts_closed(self, breaker):
        assert breaker.state == BreakerState.CLOSED
        assert await breaker.call(succeed) == "ok"

    @pytest.mark.asyncio
    async def test_opens_after_max_failures(self, breaker):
        await trip(breaker, 2)
        assert breaker.state == BreakerState.CLOSED

        await trip(breaker, 1)
        assert breaker.state == BreakerState.OPEN

    @pytest.mark.asyncio
    async def test_open_fails_fast(self, breaker):
        await trip(breaker, 3)
        calls = []

        async def tracked():
            calls.append(1)
            return "ok"

        with pytest.raises(IdmsError) as exc:
            await breaker.call(tracked)

        assert exc.value.issue == IdmsIssue.CALL_ERROR
        assert calls == []

    @pytest.mark.asyncio
    async def test_success_resets_count(self, breaker):
        await trip(breaker, 2)
        await breaker.call(succeed)
        await trip(breaker, 2)

        assert breaker.state == BreakerState.CLOSED
        assert breaker.failures == 2

    @pytest.mark.asyncio
    async def test_client_not_found_is_not_a_failure(self, breaker):
        for _ in range(5):
            with pytest.raises(IdmsError):
                await breaker.call(lambda: fail(IdmsIssue.CLIENT_NOT_FOUND))

        assert breaker.state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_unexpected_response_is_a_failure(self, breaker):
        for _ in range(3):
            with pytest.raises(IdmsError):
                await breaker.call(lambda: fail(IdmsIssue.UNEXPECTED_RESPONSE))

        assert breaker.state == BreakerState.OPEN

    @pytest.mark.asyncio
    async def test_half_open_after_reset_timeout(self, breaker, clock):
        await trip(breaker, 3)
        clock.advance(30.0)

        assert breaker.state == BreakerState.HALF_OPEN
        assert await breaker.call(succeed) == "ok"
        assert breaker.state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_trial_reopens(self, breaker, clock):
        await trip(breaker, 3)
        clock.advance(31.0)

        await trip(breaker, 1)

        assert breaker.state == BreakerState.OPEN

    @pytest.mark.asyncio
    async def test_call_timeout(self, clock):
        breaker = CircuitBreaker("idms-test", max_failures=1, call_timeout=0.01, clock=clock)

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(IdmsError) as exc:
            await breaker.call(slow)

        assert exc.value.issue == IdmsIssue.CALL_ERROR
        assert breaker.state == BreakerState.OPEN

    @pytest.mark.asyncio
    async def test_state_changes_logged(self, breaker, clock, caplog):
        with caplog.at_level(logging.WARNING, logger="apihub.circuit_breaker"):
            await trip(breaker, 3)
            clock.advance(30.0)
            await breaker.call(succeed)

        messages = [r.getMessage() for r in caplog.records]
        assert "Circuit breaker idms-test opened after 3 failures" in messages
        assert "Circuit breaker idms-test closed" in messages


class TestCircuitBreakerIdmsConnector:

    @pytest.mark.asyncio
    async def test_delegates(self, fake_idms, non_prod_env):
        fake_idms.add_client("test", "c1", scopes=["a"])
        connector = CircuitBreakerIdmsConnector(fake_idms)

        scopes = await connector.fetch_client_scopes(non_prod_env, "c1")
        await connector.add_client_scope(non_prod_env, "c1", "b")

        assert [s.client_scope_id for s in scopes] == ["a"]
        assert fake_idms.scopes("test", "c1") == {"a", "b"}

    @pytest.mark.asyncio
    async def test_one_breaker_per_environment(self, fake_idms, non_prod_env, prod_env, clock):
        connector = CircuitBreakerIdmsConnector(fake_idms, max_failures=2, clock=clock)
        fake_idms.errors["fetch_client_scopes"] = IdmsError.call_error(ConnectionError("refused"))

        for _ in range(2):
            with pytest.raises(IdmsError):
                await connector.fetch_client_scopes(non_prod_env, "c1")

        assert connector.breaker(non_prod_env).state == BreakerState.OPEN
        assert connector.breaker(prod_env).state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_open_breaker_skips_delegate(self, fake_idms, non_prod_env, clock):
        connector = CircuitBreakerIdmsConnector(fake_idms, max_failures=1, clock=clock)
        fake_idms.errors["delete_client"] = IdmsError.unexpected_response(500)

        with pytest.raises(IdmsError):
            await connector.delete_client(non_prod_env, "c1")
        with pytest.raises(IdmsError):
            await connector.delete_client(non_prod_env, "c1")

        assert len(fake_idms.calls_to("delete_client")) == 1
