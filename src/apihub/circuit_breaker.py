"""Circuit breaking for identity service calls.

One breaker per environment, so an unreachable environment fails fast without
affecting the others. Only CALL_ERROR and UNEXPECTED_RESPONSE count as
failures; "client not found" is a valid answer from a healthy service.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from apihub.connectors.idms import IdmsConnector
from apihub.environments import Environment
from apihub.errors import IdmsError, IdmsIssue
from apihub.models import ClientDescriptor, ClientResponse, ClientScope, Secret

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FAILURE_ISSUES = {IdmsIssue.CALL_ERROR, IdmsIssue.UNEXPECTED_RESPONSE}


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Counts consecutive failures and short-circuits calls while open."""

    def __init__(
        self,
        name: str,
        max_failures: int = 5,
        reset_timeout: float = 60.0,
        call_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._name = name
        self._max_failures = max_failures
        self._reset_timeout = reset_timeout
        self._call_timeout = call_timeout
        self._clock = clock
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def state(self) -> BreakerState:
        if self._opened_at is None:
            return BreakerState.CLOSED
        if self._clock() - self._opened_at >= self._reset_timeout:
            return BreakerState.HALF_OPEN
        return BreakerState.OPEN

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        state = self.state
        if state == BreakerState.OPEN or (state == BreakerState.HALF_OPEN and self._trial_in_flight):
            raise IdmsError(f"Circuit breaker {self._name} is open", IdmsIssue.CALL_ERROR)

        if state == BreakerState.HALF_OPEN:
            self._trial_in_flight = True
        try:
            try:
                if self._call_timeout is None:
                    result = await fn()
                else:
                    result = await asyncio.wait_for(fn(), self._call_timeout)
            except asyncio.TimeoutError as exc:
                raise IdmsError.call_error(exc, {"breaker": self._name, "timeout": self._call_timeout}) from exc
        except IdmsError as e:
            if e.issue in _FAILURE_ISSUES:
                self._record_failure()
            else:
                self._record_success()
            raise
        finally:
            self._trial_in_flight = False

        self._record_success()
        return result

    def _record_success(self) -> None:
        if self._opened_at is not None:
            logger.warning(f"Circuit breaker {self._name} closed")
        self._failures = 0
        self._opened_at = None

    def _record_failure(self) -> None:
        self._failures += 1
        if self._opened_at is not None or self._failures >= self._max_failures:
            self._opened_at = self._clock()
            logger.warning(f"Circuit breaker {self._name} opened after {self._failures} failures")


class CircuitBreakerIdmsConnector:
    """IdmsConnector wrapper guarding each environment with its own breaker."""

    def __init__(
        self,
        delegate: IdmsConnector,
        max_failures: int = 5,
        reset_timeout: float = 60.0,
        call_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.delegate = delegate
        self._max_failures = max_failures
        self._reset_timeout = reset_timeout
        self._call_timeout = call_timeout
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def breaker(self, environment: Environment) -> CircuitBreaker:
        breaker = self._breakers.get(environment.id)
        if breaker is None:
            breaker = CircuitBreaker(
                f"idms-{environment.id}",
                max_failures=self._max_failures,
                reset_timeout=self._reset_timeout,
                call_timeout=self._call_timeout,
                clock=self._clock,
            )
            self._breakers[environment.id] = breaker
        return breaker

    async def close(self):
        close = getattr(self.delegate, "close", None)
        if close is not None:
            await close()

    async def create_client(self, environment: Environment, client: ClientDescriptor) -> ClientResponse:
        return await self.breaker(environment).call(lambda: self.delegate.create_client(environment, client))

    async def fetch_client(self, environment: Environment, client_id: str) -> ClientResponse:
        return await self.breaker(environment).call(lambda: self.delegate.fetch_client(environment, client_id))

    async def delete_client(self, environment: Environment, client_id: str) -> None:
        await self.breaker(environment).call(lambda: self.delegate.delete_client(environment, client_id))

    async def new_secret(self, environment: Environment, client_id: str) -> Secret:
        return await self.breaker(environment).call(lambda: self.delegate.new_secret(environment, client_id))

    async def add_client_scope(self, environment: Environment, client_id: str, scope_id: str) -> None:
        await self.breaker(environment).call(
            lambda: self.delegate.add_client_scope(environment, client_id, scope_id)
        )

    async def delete_client_scope(self, environment: Environment, client_id: str, scope_id: str) -> None:
        await self.breaker(environment).call(
            lambda: self.delegate.delete_client_scope(environment, client_id, scope_id)
        )

    async def fetch_client_scopes(self, environment: Environment, client_id: str) -> list[ClientScope]:
        return await self.breaker(environment).call(
            lambda: self.delegate.fetch_client_scopes(environment, client_id)
        )
