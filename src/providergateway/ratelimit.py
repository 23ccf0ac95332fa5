"""Fixed-window admission control per (backend, model).

Each key owns a bucket with its own lock; buckets for different backends
never contend.  A window starts with the first request after the previous
one expired and resets at a known time, which is reported back to rejected
callers as ``retry_after``.
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from providergateway.errors import ErrorKind, ProviderError
from providergateway.observability import RATE_LIMITED

_log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimit:
    """Ceilings for one backend.

    Args:
        requests_per_minute: Requests admitted per window.
        tokens_per_minute: Estimated tokens admitted per window.  ``None``
            disables the token ceiling.
        burst: Extra allowance added to both ceilings.
        window: Window length in seconds.
    """

    requests_per_minute: int
    tokens_per_minute: int | None = None
    burst: int = 0
    window: float = 60.0

    def __post_init__(self) -> None:
        if self.requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        if self.tokens_per_minute is not None and self.tokens_per_minute <= 0:
            raise ValueError("tokens_per_minute must be positive when set")
        if self.burst < 0 or self.window <= 0:
            raise ValueError("burst must be >= 0 and window > 0")

    @property
    def max_requests(self) -> int:
        return self.requests_per_minute + self.burst

    @property
    def max_tokens(self) -> int | None:
        if self.tokens_per_minute is None:
            return None
        return self.tokens_per_minute + self.burst


@dataclass(frozen=True)
class WindowUsage:
    requests: int
    tokens: int
    reset_in: float


@dataclass
class _Bucket:
    limit: RateLimit
    reset_at: float = 0.0
    requests: int = 0
    tokens: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)

    def roll(self, now: float) -> None:
        if now >= self.reset_at:
            self.reset_at = now + self.limit.window
            self.requests = 0
            self.tokens = 0


class RateLimiter:
    """Per-(backend, model) fixed-window rate limiter.

    Usage::

        limiter = RateLimiter(RateLimit(requests_per_minute=60))

        # Before calling the backend (raises quota_exceeded when over limit):
        limiter.check_request("claude", "claude-3-haiku", estimated_tokens=1200)

        # After the backend reports actual usage:
        limiter.record_usage("claude", 950, model="claude-3-haiku", estimated_tokens=1200)
    """

    def __init__(
        self,
        default_limit: RateLimit,
        limits: dict[str, RateLimit] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default = default_limit
        self._limits: dict[str, RateLimit] = dict(limits or {})
        self._clock = clock
        self._buckets: dict[tuple[str, str], _Bucket] = {}
        self._buckets_lock = threading.Lock()

    def set_limit(self, backend: str, limit: RateLimit) -> None:
        """Override the limit for *backend*; existing windows restart."""
        with self._buckets_lock:
            self._limits[backend] = limit
            for key in [k for k in self._buckets if k[0] == backend]:
                del self._buckets[key]

    def limit_for(self, backend: str) -> RateLimit:
        return self._limits.get(backend, self._default)

    def _bucket(self, backend: str, model: str) -> _Bucket:
        key = (backend, model)
        bucket = self._buckets.get(key)
        if bucket is None:
            with self._buckets_lock:
                bucket = self._buckets.setdefault(key, _Bucket(limit=self.limit_for(backend)))
        return bucket

    def check_request(self, backend: str, model: str, estimated_tokens: int = 0) -> None:
        """Admit one request or raise.

        Raises:
            ProviderError: kind ``quota_exceeded`` with ``retry_after`` set to
                the seconds until the window resets.  A request whose estimate
                exceeds the whole token ceiling can never be admitted and is
                rejected with ``retry_after=None``.
        """
        bucket = self._bucket(backend, model)
        with bucket.lock:
            now = self._clock()
            bucket.roll(now)
            limit = bucket.limit
            retry_after = max(0.0, bucket.reset_at - now)

            if limit.max_tokens is not None and estimated_tokens > limit.max_tokens:
                raise self._reject(
                    backend,
                    model,
                    f"estimated {estimated_tokens} tokens exceeds the per-window ceiling of "
                    f"{limit.max_tokens}",
                    None,
                )
            if bucket.requests >= limit.max_requests:
                raise self._reject(
                    backend,
                    model,
                    f"request limit of {limit.max_requests} per {limit.window:g}s reached",
                    retry_after,
                )
            if limit.max_tokens is not None and bucket.tokens + estimated_tokens > limit.max_tokens:
                raise self._reject(
                    backend,
                    model,
                    f"token limit of {limit.max_tokens} per {limit.window:g}s reached",
                    retry_after,
                )

            bucket.requests += 1
            bucket.tokens += estimated_tokens

    def record_usage(
        self,
        backend: str,
        actual_tokens: int,
        *,
        model: str,
        estimated_tokens: int = 0,
    ) -> None:
        """Reconcile the current window with the backend-reported token count."""
        bucket = self._bucket(backend, model)
        with bucket.lock:
            if self._clock() >= bucket.reset_at:
                # The window the estimate was charged to has already expired.
                return
            bucket.tokens = max(0, bucket.tokens + actual_tokens - estimated_tokens)

    def get_usage(self, backend: str, model: str) -> WindowUsage:
        bucket = self._bucket(backend, model)
        with bucket.lock:
            now = self._clock()
            if now >= bucket.reset_at:
                return WindowUsage(requests=0, tokens=0, reset_in=0.0)
            return WindowUsage(
                requests=bucket.requests,
                tokens=bucket.tokens,
                reset_in=bucket.reset_at - now,
            )

    def reset(self, backend: str | None = None) -> None:
        with self._buckets_lock:
            if backend is None:
                self._buckets.clear()
                return
            for key in [k for k in self._buckets if k[0] == backend]:
                del self._buckets[key]

    @staticmethod
    def _reject(backend: str, model: str, reason: str, retry_after: float | None) -> ProviderError:
        RATE_LIMITED.labels(backend=backend).inc()
        _log.warning(
            "rate_limit_rejected",
            backend=backend,
            model=model,
            reason=reason,
            retry_after=round(retry_after, 2) if retry_after is not None else None,
        )
        return ProviderError(
            ErrorKind.QUOTA_EXCEEDED,
            f"local rate limit for {backend}/{model}: {reason}",
            backend,
            retry_after=retry_after,
        )
