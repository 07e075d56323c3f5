"""
Failure isolation helpers: circuit breakers, timeouts, retries and error categorization
"""
import asyncio
import inspect
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

import httpx
from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from models import EnrichmentError, ErrorKind


class CircuitOpenError(Exception):
    """Raised when a call is rejected because its circuit is open"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Circuit breaker open for: {name}")


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for one named dependency

    States:
    - CLOSED: calls pass through, consecutive failures are counted
    - OPEN: calls are rejected until the reset timeout elapses
    - HALF_OPEN: calls pass through; enough consecutive successes close the
      circuit, any failure opens it again
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        half_open_successes: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_successes = half_open_successes
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: Optional[float] = None

    def _should_attempt_reset(self) -> bool:
        return (self.state == CircuitState.OPEN and self.opened_at is not None
                and self._clock() - self.opened_at >= self.reset_timeout)

    def allow_request(self) -> bool:
        """Whether a call may proceed, moving OPEN to HALF_OPEN once the timeout has passed"""
        if self.state == CircuitState.OPEN:
            if not self._should_attempt_reset():
                return False
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0
            logger.warning(f"Circuit breaker {self.name} transitioning to half-open state")
        return True

    def record_success(self) -> None:
        self.failure_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.half_open_successes:
                self.state = CircuitState.CLOSED
                self.success_count = 0
                self.opened_at = None
                logger.info(f"Circuit breaker {self.name} reset to closed state")

    def record_failure(self) -> None:
        self.success_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self._open()
            return
        self.failure_count += 1
        if self.failure_count >= self.failure_threshold:
            self._open()

    def _open(self) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = self._clock()
        logger.error(f"Circuit breaker {self.name} opened after {self.failure_count} failures")

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self.failure_count,
            "half_open_successes": self.success_count,
        }


class CircuitBreakerRegistry:
    """Per-name circuit breakers owned by one service context"""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        half_open_successes: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_successes = half_open_successes
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings) -> "CircuitBreakerRegistry":
        return cls(
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout=settings.circuit_reset_timeout_ms / 1000,
            half_open_successes=settings.circuit_half_open_successes,
        )

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                failure_threshold=self.failure_threshold,
                reset_timeout=self.reset_timeout,
                half_open_successes=self.half_open_successes,
                clock=self._clock,
            )
            self._breakers[name] = breaker
        return breaker

    async def call(
        self,
        name: str,
        func: Callable[..., Awaitable[Any]],
        *args,
        fallback: Optional[Callable[[], Any]] = None,
        **kwargs,
    ) -> Any:
        """
        Execute a coroutine function with circuit breaker protection

        Args:
            name: Dependency name, e.g. "storage:write" or "scraper:example.com"
            func: Coroutine function to call
            fallback: Called instead of func while the circuit is open

        Returns:
            Result of func, or of fallback when the circuit is open

        Raises:
            CircuitOpenError: If the circuit is open and no fallback was given
        """
        breaker = self.get(name)
        if not breaker.allow_request():
            if fallback is not None:
                result = fallback()
                if inspect.isawaitable(result):
                    result = await result
                return result
            raise CircuitOpenError(name)

        try:
            result = await func(*args, **kwargs)
        except Exception:
            breaker.record_failure()
            raise
        breaker.record_success()
        return result

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}

    def reset(self, name: Optional[str] = None) -> None:
        if name is None:
            self._breakers.clear()
        else:
            self._breakers.pop(name, None)


async def with_timeout(awaitable: Awaitable[Any], timeout: float, error_message: str = "Operation timed out") -> Any:
    """Await with a deadline, raising TimeoutError with a readable message"""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise TimeoutError(error_message)


_KEYWORD_KINDS: Tuple[Tuple[Tuple[str, ...], ErrorKind], ...] = (
    (("validation", "invalid", "required"), ErrorKind.VALIDATION),
    (("database", "connection", "postgres", "sql", "storage"), ErrorKind.DATABASE),
    (("network", "timeout", "timed out", "fetch"), ErrorKind.NETWORK),
    (("unauthorized", "auth", "token", "forbidden"), ErrorKind.AUTH),
)


def categorize_error(error: BaseException) -> EnrichmentError:
    """
    Map an exception to an error kind

    Known exception types are classified first, then the message is matched
    against keyword groups.

    Args:
        error: Exception raised during processing

    Returns:
        EnrichmentError carrying the kind and message
    """
    # Local import avoids a cycle with database, which uses the registry
    from database import StorageError

    message = str(error) or error.__class__.__name__
    type_kinds: Tuple[Tuple[Tuple[Type[BaseException], ...], ErrorKind], ...] = (
        ((ValueError,), ErrorKind.VALIDATION),
        ((StorageError,), ErrorKind.DATABASE),
        ((httpx.TransportError, TimeoutError, asyncio.TimeoutError, CircuitOpenError), ErrorKind.NETWORK),
    )
    for types, kind in type_kinds:
        if isinstance(error, types):
            return EnrichmentError(kind=kind, message=message)

    lowered = message.lower()
    for keywords, kind in _KEYWORD_KINDS:
        if any(keyword in lowered for keyword in keywords):
            return EnrichmentError(kind=kind, message=message)
    return EnrichmentError(kind=ErrorKind.UNKNOWN, message=message)


async def with_retry(
    func: Callable[..., Awaitable[Any]],
    *args,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs,
) -> Any:
    """
    Retry a coroutine function with exponential backoff while its errors are recoverable

    Args:
        func: Coroutine function to call
        max_attempts: Total attempts including the first
        base_delay: Initial delay in seconds
        max_delay: Upper bound for a single delay
        sleep: Coroutine used to wait between attempts

    Returns:
        Result of the first successful call
    """
    result = None
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception(lambda e: categorize_error(e).recoverable),
        reraise=True,
        sleep=sleep,
    ):
        with attempt:
            result = await func(*args, **kwargs)
    return result
