"""Per-backend usage counters."""

import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone

from providergateway.models import UsageStats


class UsageTracker:
    """Thread-safe running statistics for one backend.

    Latency is a running average over successful calls only; failed calls
    count towards ``total_requests`` and ``error_count``.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._requests = 0
        self._successes = 0
        self._errors = 0
        self._input_tokens = 0
        self._output_tokens = 0
        self._average_latency = 0.0
        self._first_request: float | None = None
        self._last_request: float | None = None

    def _touch(self) -> None:
        now = self._clock()
        if self._first_request is None:
            self._first_request = now
        self._last_request = now
        self._requests += 1

    def record_success(self, input_tokens: int, output_tokens: int, latency: float) -> None:
        with self._lock:
            self._touch()
            self._successes += 1
            self._input_tokens += input_tokens
            self._output_tokens += output_tokens
            n = self._successes
            self._average_latency = (self._average_latency * (n - 1) + latency) / n

    def record_error(self) -> None:
        with self._lock:
            self._touch()
            self._errors += 1

    def snapshot(self) -> UsageStats:
        with self._lock:
            if self._requests == 0:
                return UsageStats()
            elapsed_hours = (self._clock() - self._first_request) / 3600
            # Anything under a minute is reported as the raw count.
            per_hour = self._requests / elapsed_hours if elapsed_hours > 1 / 60 else float(self._requests)
            return UsageStats(
                total_requests=self._requests,
                input_tokens=self._input_tokens,
                output_tokens=self._output_tokens,
                average_latency=self._average_latency,
                error_count=self._errors,
                error_rate=self._errors / self._requests,
                last_request_time=datetime.fromtimestamp(self._last_request, tz=timezone.utc),
                requests_per_hour=per_hour,
            )
