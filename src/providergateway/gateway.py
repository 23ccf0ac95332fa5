"""The gateway façade.

:class:`Gateway` resolves a backend, sizes the request, asks the rate limiter
for admission, runs the call through the circuit breaker and retry policy,
and records usage, metrics, logs and spans around it.  Callers only ever see
canonical types and :class:`~providergateway.errors.ProviderError`.

Example::

    gateway = Gateway.from_settings()
    request = GenerateRequest(messages=[{"role": "user", "content": "Hello"}])
    response = await gateway.generate_response(request)

    async with await gateway.generate_response_stream(request) as stream:
        async for event in stream:
            print(event.content_delta or "", end="", flush=True)
"""

import asyncio
import time
import uuid
from dataclasses import replace
from typing import Any

import structlog
from opentelemetry import trace
from opentelemetry.trace import StatusCode

from providergateway.cache import EmbeddingCache
from providergateway.config import Settings
from providergateway.errors import ErrorKind, ProviderError, ProviderNotFoundError
from providergateway.models import (
    BackendHealth,
    EmbeddingResponse,
    GenerateRequest,
    GenerateResponse,
    ProviderConfig,
    UsageStats,
)
from providergateway.observability import record_request
from providergateway.providers.base import Provider
from providergateway.ratelimit import RateLimit, RateLimiter
from providergateway.registry import ProviderRegistry, build_default_registry
from providergateway.retry import CircuitBreaker, RetryPolicy
from providergateway.streaming import EventStream, StreamOptions
from providergateway.tokens import count_tokens, estimate_request_tokens

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)


class Gateway:
    """Single entry point for every backend.

    Args:
        registry: Registry holding the adapter constructors.
        configs: Configuration per backend name.  Adapters are created from
            these on first use.
        default_backend: Backend used when a call names none.  Defaults to
            the first configured backend.
        rate_limiter: Admission control; a permissive limiter is used when
            omitted.
        retry_policy: Backoff for retryable failures.
        embedding_cache: Cache in front of :meth:`generate_embedding`.
            ``None`` disables caching.
        circuit_failure_threshold: Consecutive failures that open a
            backend's circuit.
        circuit_cooldown: Seconds an open circuit waits before probing.

    Raises:
        ProviderNotFoundError: *default_backend* is not configured.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        configs: dict[str, ProviderConfig] | None = None,
        *,
        default_backend: str | None = None,
        rate_limiter: RateLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        embedding_cache: EmbeddingCache | None = None,
        circuit_failure_threshold: int = 5,
        circuit_cooldown: float = 60.0,
    ) -> None:
        self._registry = registry
        self._configs = dict(configs or {})
        self._rate_limiter = rate_limiter or RateLimiter(RateLimit(requests_per_minute=1_000_000))
        self._retry = retry_policy or RetryPolicy()
        self._cache = embedding_cache
        self._circuit_failure_threshold = circuit_failure_threshold
        self._circuit_cooldown = circuit_cooldown
        self._breakers: dict[str, CircuitBreaker] = {}

        available = self.available_backends()
        if default_backend is None and available:
            default_backend = available[0]
        if default_backend is not None and default_backend not in available:
            raise ProviderNotFoundError(default_backend, available)
        self._default_backend = default_backend

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "Gateway":
        """Build a gateway with the built-in backends from :class:`Settings`."""
        if settings is None:
            from providergateway.config import settings as default_settings

            settings = default_settings

        stream_options = StreamOptions(
            buffer_size=settings.stream_buffer_size,
            send_timeout=settings.stream_send_timeout,
            idle_timeout=settings.stream_idle_timeout,
            chunk_delay=settings.simulated_chunk_delay,
        )
        configs = settings.provider_configs()
        default_backend = settings.default_backend if settings.default_backend in configs else None
        return cls(
            build_default_registry(stream_options),
            configs,
            default_backend=default_backend,
            rate_limiter=RateLimiter(
                RateLimit(
                    requests_per_minute=settings.rate_limit_requests_per_minute,
                    tokens_per_minute=settings.rate_limit_tokens_per_minute,
                    burst=settings.rate_limit_burst,
                )
            ),
            retry_policy=RetryPolicy(
                max_attempts=settings.llm_max_retries,
                initial_delay=settings.retry_initial_delay,
                multiplier=settings.retry_multiplier,
                max_delay=settings.retry_max_delay,
            ),
            embedding_cache=EmbeddingCache(
                max_size=settings.embedding_cache_size,
                ttl=settings.embedding_cache_ttl,
            ),
            circuit_failure_threshold=settings.circuit_failure_threshold,
            circuit_cooldown=settings.circuit_cooldown,
        )

    async def __aenter__(self) -> "Gateway":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Backend selection
    # ------------------------------------------------------------------

    @property
    def default_backend(self) -> str | None:
        return self._default_backend

    def set_default_backend(self, name: str) -> None:
        available = self.available_backends()
        if name not in available:
            raise ProviderNotFoundError(name, available)
        self._default_backend = name
        _log.info("default_backend_changed", backend=name)

    def available_backends(self) -> list[str]:
        return sorted(set(self._configs) | set(self._registry.available_providers()))

    def breaker(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = self._breakers.setdefault(
                name,
                CircuitBreaker(
                    name,
                    failure_threshold=self._circuit_failure_threshold,
                    cooldown=self._circuit_cooldown,
                ),
            )
        return breaker

    def _resolve(self, backend: str | None) -> tuple[str, Provider]:
        name = backend or self._default_backend
        if name is None:
            raise ProviderNotFoundError("<default>", self.available_backends())
        if name in self._configs:
            return name, self._registry.create_provider(name, self._configs[name])
        return name, self._registry.get_provider(name)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_response(
        self,
        request: GenerateRequest,
        backend: str | None = None,
    ) -> GenerateResponse:
        """Generate a complete response.

        Args:
            request: Validated generation parameters.
            backend: Backend name; the default backend when ``None``.

        Returns:
            GenerateResponse: With ``request_id`` set to a fresh correlation ID.

        Raises:
            ProviderNotFoundError: *backend* is not configured.
            ProviderError: Admission was refused (``quota_exceeded``), the
                circuit is open, or the backend failed permanently / after
                the last retry.
        """
        name, provider = self._resolve(backend)
        model = provider.resolve_model(request)
        estimated = estimate_request_tokens(
            request, model, default_output_tokens=provider.resolve_max_tokens(request)
        )
        request_id = str(uuid.uuid4())
        start = time.monotonic()

        with _tracer.start_as_current_span("gateway.generate") as span:
            span.set_attribute("gen_ai.system", name)
            span.set_attribute("gen_ai.request.model", model)
            span.set_attribute("gen_ai.request.max_tokens", provider.resolve_max_tokens(request))
            span.set_attribute("llm.stream", False)

            log = _log.bind(request_id=request_id, backend=name, model=model, stream=False)
            log.info("llm_request_start", estimated_tokens=estimated)

            admitted = False
            try:
                self._rate_limiter.check_request(name, model, estimated)
                admitted = True
                response = await self._retry.call(
                    lambda: provider.generate_response(request),
                    backend=name,
                    breaker=self.breaker(name),
                )
            except ProviderError as exc:
                if admitted:
                    self._rate_limiter.record_usage(name, 0, model=model, estimated_tokens=estimated)
                self._fail(name, exc, request_id, span, log, "generate", start)
                raise

            usage = response.tokens_used
            self._rate_limiter.record_usage(
                name, usage.total_tokens, model=model, estimated_tokens=estimated
            )
            span.set_attribute("gen_ai.usage.input_tokens", usage.input_tokens)
            span.set_attribute("gen_ai.usage.output_tokens", usage.output_tokens)
            span.set_attribute("gen_ai.response.finish_reasons", response.finish_reason)
            record_request(
                name,
                "generate",
                "ok",
                time.monotonic() - start,
                usage.input_tokens,
                usage.output_tokens,
            )
            log.info(
                "llm_request_complete",
                duration_ms=round((time.monotonic() - start) * 1000, 2),
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                finish_reason=response.finish_reason,
            )
            return replace(response, request_id=request_id)

    async def generate_response_stream(
        self,
        request: GenerateRequest,
        backend: str | None = None,
    ) -> EventStream:
        """Open a stream of canonical events.

        Retries cover opening the stream only; once events flow, a failure
        arrives as the terminal error event and is never retried.  Usage and
        rate-limit reconciliation happen when the stream finishes.

        Raises:
            ProviderNotFoundError: *backend* is not configured.
            ProviderError: The stream could not be opened.
        """
        name, provider = self._resolve(backend)
        model = provider.resolve_model(request)
        estimated = estimate_request_tokens(
            request, model, default_output_tokens=provider.resolve_max_tokens(request)
        )
        request_id = str(uuid.uuid4())
        start = time.monotonic()
        breaker = self.breaker(name)

        with _tracer.start_as_current_span("gateway.generate_stream") as span:
            span.set_attribute("gen_ai.system", name)
            span.set_attribute("gen_ai.request.model", model)
            span.set_attribute("llm.stream", True)

            log = _log.bind(request_id=request_id, backend=name, model=model, stream=True)
            log.info("llm_request_start", estimated_tokens=estimated)

            admitted = False
            try:
                self._rate_limiter.check_request(name, model, estimated)
                admitted = True
                stream = await self._retry.call(
                    lambda: provider.generate_response_stream(request),
                    backend=name,
                    breaker=breaker,
                )
            except ProviderError as exc:
                if admitted:
                    self._rate_limiter.record_usage(name, 0, model=model, estimated_tokens=estimated)
                self._fail(name, exc, request_id, span, log, "stream", start)
                raise

        def _reconcile(finished: EventStream) -> None:
            elapsed = time.monotonic() - start
            if finished.aborted:
                record_request(name, "stream", "cancelled", elapsed)
                log.info("llm_stream_cancelled", duration_ms=round(elapsed * 1000, 2))
                return
            if finished.stalled:
                # Consumer-side; the backend is not at fault.
                record_request(name, "stream", "consumer_stalled", elapsed)
                log.warning("llm_stream_consumer_stalled", duration_ms=round(elapsed * 1000, 2))
                return

            terminal = finished.terminal
            if terminal is not None and terminal.error is not None:
                breaker.record_failure(terminal.error)
                self._rate_limiter.record_usage(name, 0, model=model, estimated_tokens=estimated)
                record_request(name, "stream", terminal.error.kind.value, elapsed)
                log.error(
                    "llm_stream_error",
                    error_kind=terminal.error.kind.value,
                    error=terminal.error.message,
                )
                return

            usage = terminal.tokens_used if terminal is not None else None
            total = usage.total_tokens if usage is not None else 0
            self._rate_limiter.record_usage(name, total, model=model, estimated_tokens=estimated)
            record_request(
                name,
                "stream",
                "ok",
                elapsed,
                usage.input_tokens if usage else 0,
                usage.output_tokens if usage else 0,
            )
            log.info(
                "llm_request_complete",
                duration_ms=round(elapsed * 1000, 2),
                total_tokens=total,
                finish_reason=terminal.finish_reason if terminal is not None else None,
            )

        stream.add_done_callback(_reconcile)
        return stream

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def generate_embedding(self, text: str, backend: str | None = None) -> EmbeddingResponse:
        """Embed *text*, serving repeated inputs from the cache.

        Raises:
            ProviderError: kind ``invalid_request`` when the backend offers no
                embeddings (never retried), or any backend failure.
        """
        name, provider = self._resolve(backend)
        request_id = str(uuid.uuid4())
        log = _log.bind(request_id=request_id, backend=name)

        if not provider.supports_embeddings:
            raise ProviderError(
                ErrorKind.INVALID_REQUEST,
                f"embeddings are not supported by {name}",
                name,
                request_id=request_id,
            )

        if self._cache is not None:
            cached = self._cache.get(name, text)
            if cached is not None:
                log.debug("embedding_cache_hit")
                record_request(name, "embedding", "cache_hit")
                return replace(cached, request_id=request_id, cached=True, latency=0.0)

        model = provider.embedding_model
        estimated = count_tokens(text, model)
        start = time.monotonic()

        with _tracer.start_as_current_span("gateway.embedding") as span:
            span.set_attribute("gen_ai.system", name)
            span.set_attribute("gen_ai.request.model", model)

            admitted = False
            try:
                self._rate_limiter.check_request(name, model, estimated)
                admitted = True
                response = await self._retry.call(
                    lambda: provider.generate_embedding(text),
                    backend=name,
                    breaker=self.breaker(name),
                )
            except ProviderError as exc:
                if admitted:
                    self._rate_limiter.record_usage(name, 0, model=model, estimated_tokens=estimated)
                self._fail(name, exc, request_id, span, log, "embedding", start)
                raise

            actual = response.tokens_used.input_tokens
            self._rate_limiter.record_usage(name, actual, model=model, estimated_tokens=estimated)
            span.set_attribute("gen_ai.usage.input_tokens", actual)
            record_request(name, "embedding", "ok", time.monotonic() - start, actual)
            log.info(
                "embedding_complete",
                dimensions=len(response.embedding),
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )

        if self._cache is not None:
            self._cache.put(name, text, response)
        return replace(response, request_id=request_id)

    # ------------------------------------------------------------------
    # Health, usage and lifecycle
    # ------------------------------------------------------------------

    async def health(self, *, fail_fast: bool = False) -> dict[str, BackendHealth]:
        """Probe every backend concurrently.

        Args:
            fail_fast: Raise the first unhealthy backend's error instead of
                returning the report.

        Returns:
            Health per backend name.
        """

        async def check(name: str) -> BackendHealth:
            start = time.monotonic()
            try:
                _, provider = self._resolve(name)
                await provider.health()
            except ProviderError as exc:
                _log.warning("backend_unhealthy", backend=name, error_kind=exc.kind.value, error=exc.message)
                return BackendHealth(name, False, time.monotonic() - start, exc)
            return BackendHealth(name, True, time.monotonic() - start)

        results = await asyncio.gather(*(check(name) for name in self.available_backends()))
        if fail_fast:
            for result in results:
                if not result.healthy:
                    raise result.error
        return {result.backend: result for result in results}

    async def get_usage_stats(self) -> dict[str, UsageStats]:
        """Usage per live backend; backends whose stats cannot be read are skipped."""
        stats: dict[str, UsageStats] = {}
        for name, provider in self._registry.providers().items():
            try:
                stats[name] = await provider.get_usage()
            except Exception as exc:
                _log.warning("usage_stats_failed", backend=name, error=str(exc))
        return stats

    async def close(self) -> None:
        if self._cache is not None:
            self._cache.clear()
        await self._registry.close_all()
        _log.info("gateway_closed")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _fail(
        name: str,
        exc: ProviderError,
        request_id: str,
        span: trace.Span,
        log: Any,
        operation: str,
        start: float,
    ) -> None:
        if exc.request_id is None:
            exc.request_id = request_id
        span.record_exception(exc)
        span.set_status(StatusCode.ERROR, exc.message)
        record_request(name, operation, exc.kind.value, time.monotonic() - start)
        log.error(
            "llm_request_error",
            error_type=type(exc).__name__,
            error_kind=exc.kind.value,
            error=exc.message,
            retryable=exc.retryable,
            retry_after=exc.retry_after,
        )
