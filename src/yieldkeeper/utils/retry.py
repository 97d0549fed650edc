"""Retry utilities with exponential backoff.

Two layers use these helpers:

- HTTP clients retry a single request a few times (``retry_with_backoff``,
  ``with_retry``) and stop hammering a failing upstream (``CircuitBreaker``);
- the rebalance worker keeps its cycle loop alive across failures
  (``run_with_backoff``) and sleeps in a way shutdown can interrupt.
"""

import asyncio
import functools
import inspect
import random
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from yieldkeeper.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


def backoff_delay(
    failures: int,
    base_delay: float,
    max_delay: float,
    jitter: float = 0.0,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before the next attempt after ``failures`` consecutive failures.

    ``base * 2**(failures - 1)`` capped at ``max_delay``, then scaled by a
    factor drawn uniformly from ``[1 - jitter, 1 + jitter]``.
    """
    exponential = min(base_delay * (2 ** max(failures - 1, 0)), max_delay)
    factor = 1.0 + (rng() * 2.0 - 1.0) * jitter
    return exponential * factor


async def interruptible_sleep(delay: float, stop_event: asyncio.Event) -> bool:
    """Sleep for ``delay`` seconds or until ``stop_event`` is set.

    Returns:
        True if the sleep was cut short by the event.
    """
    if stop_event.is_set():
        return True
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except TimeoutError:
        return False
    return True


async def _invoke(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    result = func(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


async def retry_with_backoff(
    func: Callable[..., T],
    *args: Any,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    **kwargs: Any,
) -> T:
    """
    Call ``func(*args, **kwargs)``, retrying on ``exceptions``.

    Makes at most ``max_retries + 1`` attempts, doubling the delay from
    ``initial_delay`` up to ``max_delay``. Exceptions outside ``exceptions``
    propagate immediately; the last retried one is re-raised.
    """
    name = getattr(func, "__name__", repr(func))
    attempt = 0

    while True:
        try:
            return await _invoke(func, *args, **kwargs)
        except exceptions as e:
            attempt += 1
            if attempt > max_retries:
                logger.error(
                    f"{name} failed after {attempt} attempts: {e}",
                    extra={"function": name, "attempts": attempt, "error": str(e)},
                )
                raise

            delay = backoff_delay(attempt, initial_delay, max_delay)
            logger.warning(
                f"Retry {attempt}/{max_retries} for {name} in {delay:.2f}s: {e}",
                extra={"function": name, "attempt": attempt, "delay": delay, "error": str(e)},
            )
            await asyncio.sleep(delay)


def with_retry(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
):
    """
    Decorator form of ``retry_with_backoff`` for async methods.

    Example:
        @with_retry(max_retries=2, exceptions=(httpx.TransportError,))
        async def _get(self, params):
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry_with_backoff(
                func,
                *args,
                max_retries=max_retries,
                initial_delay=initial_delay,
                max_delay=max_delay,
                exceptions=exceptions,
                **kwargs,
            )

        return wrapper

    return decorator


async def run_with_backoff(
    func: Callable[[], Awaitable[None]],
    name: str,
    stop_event: asyncio.Event,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    jitter: float = 0.25,
    rng: Callable[[], float] = random.random,
) -> None:
    """Call ``func`` repeatedly until ``stop_event`` is set.

    A failure is logged and followed by an exponential backoff with jitter;
    the failure counter resets after any successful call. The backoff sleep
    returns early on shutdown. ``CancelledError`` is never swallowed.
    """
    consecutive_failures = 0

    while not stop_event.is_set():
        try:
            await func()
            consecutive_failures = 0
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if stop_event.is_set():
                break
            consecutive_failures += 1
            delay = backoff_delay(consecutive_failures, base_delay, max_delay, jitter, rng)
            context = getattr(e, "context", None)
            context_str = f" | context={context}" if context else ""
            logger.error(
                f"Error in loop [{name}]. Retrying in {delay:.2f}s: {e}{context_str}",
                exc_info=True,
                extra={
                    "loop": name,
                    "attempt": consecutive_failures,
                    "retry_in": round(delay, 3),
                    "context": context,
                },
            )
            await interruptible_sleep(delay, stop_event)

    logger.info(f"Loop [{name}] exiting due to shutdown", extra={"loop": name})


class CircuitBreaker:
    """
    Fail fast once an upstream keeps erroring.

    CLOSED passes calls through. ``failure_threshold`` consecutive
    ``expected_exception`` errors switch it to OPEN, where calls raise
    ``RuntimeError`` without touching the upstream. After
    ``recovery_timeout`` seconds the next call runs as a HALF_OPEN probe:
    success closes the circuit, failure opens it again.
    """

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exception: type[Exception] | tuple[type[Exception], ...] = Exception,
        name: str = "upstream",
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name

        self.failure_count = 0
        self.opened_at: float | None = None
        self.state = self.CLOSED

    def _before_call(self) -> None:
        if self.state != self.OPEN:
            return
        if self.opened_at is not None and time.monotonic() - self.opened_at >= self.recovery_timeout:
            self.state = self.HALF_OPEN
            logger.info(f"Circuit breaker HALF_OPEN for {self.name}, probing upstream")
            return
        raise RuntimeError(
            f"Circuit breaker OPEN for {self.name}, failing fast (failures: {self.failure_count})"
        )

    def _record_failure(self) -> None:
        self.failure_count += 1
        if self.state == self.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.state = self.OPEN
            self.opened_at = time.monotonic()
            logger.error(
                f"Circuit breaker OPEN for {self.name} after {self.failure_count} failures",
                extra={"circuit": self.name, "failures": self.failure_count},
            )

    async def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` under circuit-breaker protection."""
        self._before_call()
        try:
            result = await _invoke(func, *args, **kwargs)
        except self.expected_exception:
            self._record_failure()
            raise

        if self.state == self.HALF_OPEN:
            logger.info(f"Circuit breaker CLOSED for {self.name}, upstream recovered")
        self.state = self.CLOSED
        self.failure_count = 0
        self.opened_at = None
        return result
