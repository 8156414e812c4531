"""
Circuit Breaker Pattern Implementation

Provides protection for external provider calls to prevent cascade failures,
with a bounded retry loop on top.
"""
import asyncio
import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar, ParamSpec
from dataclasses import dataclass

from app.core.logging import get_logger
from app.core.exceptions import (
    CircuitBreakerOpenError,
    ProviderRequestError,
    RateLimitedError,
)

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"      # Normal operation, requests pass through
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # One trial call allowed


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker"""
    failure_threshold: int = 5          # Consecutive failures before opening
    reset_timeout_seconds: float = 60.0  # Cooldown before the half-open trial
    half_open_max_calls: int = 1        # Trial calls admitted while half-open
    max_retries: int = 3                # Attempts per execute_with_retry
    retry_delay_seconds: float = 1.0    # Delay between attempts
    exponential_backoff: bool = False   # Double the delay after each attempt


@dataclass
class CircuitBreakerState:
    """State tracking for circuit breaker"""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    total_calls: int = 0
    successful_calls: int = 0
    last_failure_time: float | None = None
    half_open_calls: int = 0


def is_upstream_failure(error: BaseException) -> bool:
    """
    Errors that say something about upstream health.

    A 4xx answer (including quota refusals) means the provider is reachable,
    and a local rate-limit refusal never reached it.
    """
    return not isinstance(error, (ProviderRequestError, RateLimitedError))


async def _default_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


class CircuitBreaker:
    """
    Circuit breaker for one external service.

    States:
    - CLOSED: Normal operation, tracking consecutive failures
    - OPEN: Service is failing, block all requests until the cooldown ends
    - HALF_OPEN: A single trial call decides between CLOSED and OPEN
    """

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = _default_sleep,
        is_failure: Callable[[BaseException], bool] = is_upstream_failure,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitBreakerState()
        self._clock = clock
        self._sleep = sleep
        self._is_failure = is_failure
        # threading.Lock rather than asyncio.Lock: Celery tasks run on fresh event loops
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state"""
        return self._state.state

    @property
    def is_closed(self) -> bool:
        return self._state.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state.state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state.state == CircuitState.HALF_OPEN

    def stats(self) -> dict[str, Any]:
        """Per-service counters"""
        with self._lock:
            return {
                "service": self.service_name,
                "state": self._state.state.value,
                "failures": self._state.failure_count,
                "total_calls": self._state.total_calls,
                "successful_calls": self._state.successful_calls,
                "last_failure": self._state.last_failure_time,
            }

    def _cooldown_elapsed(self) -> bool:
        if self._state.last_failure_time is None:
            return True
        elapsed = self._clock() - self._state.last_failure_time
        return elapsed >= self.config.reset_timeout_seconds

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to a new state (caller holds the lock)"""
        old_state = self._state.state
        self._state.state = new_state

        if new_state == CircuitState.HALF_OPEN:
            self._state.half_open_calls = 0

        if new_state == CircuitState.CLOSED:
            self._state.failure_count = 0

        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value
            }
        )

    async def record_success(self) -> None:
        """Record a successful call"""
        with self._lock:
            self._state.successful_calls += 1
            self._state.failure_count = 0
            if self._state.state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.CLOSED)

    async def record_failure(self, error: BaseException | None = None) -> None:
        """Record a failed call"""
        with self._lock:
            self._state.failure_count += 1
            self._state.last_failure_time = self._clock()

            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._state.failure_count,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None
                }
            )

            if self._state.state == CircuitState.HALF_OPEN:
                # trial failed, cooldown restarts from now
                self._transition_to(CircuitState.OPEN)
            elif (
                self._state.state == CircuitState.CLOSED
                and self._state.failure_count >= self.config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    async def can_execute(self) -> bool:
        """Check if a request can be executed (admits the half-open trial)"""
        with self._lock:
            if self._state.state == CircuitState.CLOSED:
                return True

            if self._state.state == CircuitState.OPEN:
                if self._cooldown_elapsed():
                    self._transition_to(CircuitState.HALF_OPEN)
                    self._state.half_open_calls = 1
                    return True
                return False

            if self._state.half_open_calls < self.config.half_open_max_calls:
                self._state.half_open_calls += 1
                return True
            return False

    def get_retry_after(self) -> float:
        """Get seconds until the circuit admits a trial call"""
        if self._state.state != CircuitState.OPEN or self._state.last_failure_time is None:
            return 0.0

        remaining = self.config.reset_timeout_seconds - (self._clock() - self._state.last_failure_time)
        return max(0.0, remaining)

    async def execute(
        self,
        func: Callable[P, T],
        *args: P.args,
        **kwargs: P.kwargs
    ) -> T:
        """
        Execute a function once with circuit breaker protection.

        Raises:
            CircuitBreakerOpenError: If circuit is open
        """
        if not await self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        with self._lock:
            self._state.total_calls += 1

        try:
            if asyncio.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except Exception as e:
            if self._is_failure(e):
                await self.record_failure(e)
            else:
                # upstream answered; the error belongs to the request
                await self.record_success()
            raise

        await self.record_success()
        return result

    def _delay_for(self, attempt: int) -> float:
        delay = self.config.retry_delay_seconds
        if self.config.exponential_backoff:
            delay *= 2 ** (attempt - 1)
        return delay

    async def execute_with_retry(
        self,
        func: Callable[P, T],
        *args: P.args,
        **kwargs: P.kwargs
    ) -> T:
        """
        Execute with up to ``max_retries`` attempts.

        Fails fast with CircuitBreakerOpenError while the circuit is open.
        Non-upstream errors propagate on the first attempt. When all attempts
        fail, the last error is re-raised.
        """
        last_error: Exception | None = None
        for attempt in range(1, self.config.max_retries + 1):
            try:
                return await self.execute(func, *args, **kwargs)
            except CircuitBreakerOpenError:
                raise
            except Exception as e:
                if not self._is_failure(e):
                    raise
                last_error = e
                if attempt >= self.config.max_retries:
                    break
                delay = self._delay_for(attempt)
                logger.info(
                    f"Retrying call to '{self.service_name}'",
                    extra_data={
                        "service": self.service_name,
                        "attempt": attempt,
                        "max_retries": self.config.max_retries,
                        "delay_seconds": delay,
                        "error": str(e),
                    },
                )
                await self._sleep(delay)

        assert last_error is not None
        raise last_error


class CircuitBreakerRegistry:
    """
    Process-wide breakers keyed by service name.

    Constructed once by the service container and passed to whatever talks
    to an external service; tests build their own.
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = _default_sleep,
    ):
        self.default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._sleep = sleep
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, service_name: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        """Get or create the breaker for a service"""
        with self._lock:
            breaker = self._breakers.get(service_name)
            if breaker is None:
                breaker = CircuitBreaker(
                    service_name,
                    config or self.default_config,
                    clock=self._clock,
                    sleep=self._sleep,
                )
                self._breakers[service_name] = breaker
            return breaker

    def snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [b.stats() for b in breakers]

    def reset_all(self) -> None:
        with self._lock:
            self._breakers.clear()
