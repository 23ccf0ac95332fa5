"""Retry policy and per-backend circuit breaker.

Retries are driven by tenacity and only ever fire for retryable
:class:`~providergateway.errors.ProviderError` kinds.  The circuit breaker sits
inside the retry loop so that every attempt is counted and an open circuit
stops the loop immediately.
"""

import threading
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from providergateway.errors import CircuitOpenError, ErrorKind, ProviderError
from providergateway.observability import RETRIES

_log = structlog.get_logger(__name__)

T = TypeVar("T")

# A backend that answers at all (even with 4xx or 429) is reachable.
_TRIPPING_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.SERVER_ERROR, ErrorKind.TIMEOUT, ErrorKind.NETWORK_ERROR}
)


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, CircuitOpenError):
        return False
    return isinstance(exc, ProviderError) and exc.retryable


def _before_sleep(retry_state: RetryCallState) -> None:
    """Tenacity ``before_sleep`` hook that emits a structured warning."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    next_action = retry_state.next_action
    wait_seconds = next_action.sleep if next_action is not None else 0.0
    backend = getattr(exc, "backend", None) or "unknown"
    kind = exc.kind.value if isinstance(exc, ProviderError) else type(exc).__name__
    RETRIES.labels(backend=backend, kind=kind).inc()
    _log.warning(
        "llm_request_retry",
        backend=backend,
        attempt=retry_state.attempt_number,
        wait_seconds=round(wait_seconds, 2),
        error_kind=kind,
        error=str(exc) if exc else None,
    )


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Three-state circuit breaker for one backend.

    ``closed`` -> ``open`` after *failure_threshold* consecutive failures of a
    tripping kind (server error, timeout, network error).  While open, calls
    fail fast with :class:`CircuitOpenError`.  Once *cooldown* seconds have
    passed a single trial call is let through (``half_open``): success closes the
    circuit, failure re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive")
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if self._state is CircuitState.OPEN and self._clock() - self._opened_at >= self.cooldown:
                return CircuitState.HALF_OPEN
            return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def before_call(self) -> None:
        """Admit a call or raise :class:`CircuitOpenError`."""
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return
            now = self._clock()
            if self._state is CircuitState.OPEN:
                remaining = self.cooldown - (now - self._opened_at)
                if remaining > 0:
                    raise CircuitOpenError(self.name, retry_after=remaining)
                self._transition(CircuitState.HALF_OPEN)
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, retry_after=0.0)
            self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._trial_in_flight = False
            if self._state is not CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)

    def record_failure(self, error: ProviderError) -> None:
        if error.kind not in _TRIPPING_KINDS:
            self.record_success()
            return
        with self._lock:
            self._failures += 1
            self._trial_in_flight = False
            if self._state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                self._opened_at = self._clock()
                if self._state is not CircuitState.OPEN:
                    self._transition(CircuitState.OPEN)

    def release(self) -> None:
        """Give back a half-open trial slot without recording an outcome."""
        with self._lock:
            self._trial_in_flight = False

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._trial_in_flight = False

    def _transition(self, state: CircuitState) -> None:
        _log.info(
            "circuit_state_change",
            backend=self.name,
            from_state=self._state.value,
            to_state=state.value,
            failures=self._failures,
        )
        self._state = state


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


class RetryPolicy:
    """Exponential backoff for transient backend failures.

    Args:
        max_attempts: Total attempts including the first one.
        initial_delay: Delay before the first retry, in seconds.
        multiplier: Growth factor applied per retry.
        max_delay: Upper bound for any single delay, including delays
            requested by the backend through ``Retry-After``.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 30.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.multiplier = multiplier
        self.max_delay = max_delay

    def compute_delay(self, retry_index: int, retry_after: float | None = None) -> float:
        """Delay before retry number *retry_index* (0-based)."""
        delay = self.initial_delay * self.multiplier**retry_index
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.max_delay)

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = exc.retry_after if isinstance(exc, ProviderError) else None
        return self.compute_delay(retry_state.attempt_number - 1, retry_after)

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        backend: str,
        breaker: CircuitBreaker | None = None,
    ) -> T:
        """Run *fn* until it succeeds, fails permanently or attempts run out.

        Exceptions other than :class:`ProviderError` are wrapped with kind
        ``unknown``.  The last error is raised unchanged.
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception(_should_retry),
            wait=self._wait,
            before_sleep=_before_sleep,
            reraise=True,
        ):
            with attempt:
                if breaker is not None:
                    breaker.before_call()
                try:
                    result = await fn()
                except ProviderError as exc:
                    if breaker is not None:
                        breaker.record_failure(exc)
                    raise
                except Exception as exc:
                    mapped = ProviderError(
                        ErrorKind.UNKNOWN,
                        f"unexpected error from {backend}: {exc}",
                        backend,
                        original_error=exc,
                    )
                    if breaker is not None:
                        breaker.record_failure(mapped)
                    raise mapped from exc
                except BaseException:
                    # Cancellation: no outcome to record.
                    if breaker is not None:
                        breaker.release()
                    raise
                if breaker is not None:
                    breaker.record_success()
                return result
        raise AssertionError("unreachable")  # pragma: no cover
