"""Abstract backend adapter.

Concrete adapters implement :meth:`Provider._generate` (and optionally
:meth:`Provider._open_stream` / :meth:`Provider._embed`); the public methods
here add usage accounting, error mapping and the simulated-streaming
fallback so every backend behaves identically from the outside.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from dataclasses import replace
from typing import Any, TypeVar

import httpx
import structlog
from opentelemetry import trace
from opentelemetry.trace import StatusCode

from providergateway.errors import (
    ErrorKind,
    ProviderError,
    error_from_response,
    error_from_transport,
)
from providergateway.models import (
    EmbeddingResponse,
    GenerateRequest,
    GenerateResponse,
    Message,
    ProviderConfig,
    UsageStats,
)
from providergateway.streaming import EventStream, StreamOptions, pump_simulated
from providergateway.usage import UsageTracker

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)

T = TypeVar("T")

HEALTH_PROMPT = "Hello"
HEALTH_MAX_TOKENS = 10


class Provider(ABC):
    """Common base for every backend adapter.

    Args:
        name: Registry name of this backend (e.g. ``"claude"``).
        config: Backend configuration; missing fields are filled from the
            class defaults.
        http_client: Optional pre-built ``httpx.AsyncClient``.  When given,
            the adapter does not close it.
        stream_options: Buffering and timeout settings for streams.

    Raises:
        ProviderError: kind ``authentication`` when the backend needs an API
            key and none is configured.
    """

    default_base_url: str = ""
    default_model: str = ""
    default_max_tokens: int = 4096
    default_timeout: float = 30.0
    requires_api_key: bool = True
    supports_embeddings: bool = False

    def __init__(
        self,
        name: str,
        config: ProviderConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        stream_options: StreamOptions | None = None,
    ) -> None:
        if self.requires_api_key and not config.api_key:
            raise ProviderError(ErrorKind.AUTHENTICATION, "API key is required", name)
        self._name = name
        self.config = config.with_defaults(
            base_url=self.default_base_url,
            model=self.default_model,
            max_tokens=self.default_max_tokens,
            timeout=self.default_timeout,
        )
        self.stream_options = stream_options or StreamOptions()
        self.usage = UsageTracker()
        self._client = http_client
        self._owns_client = http_client is None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self._name!r}, model={self.config.model!r})"

    @property
    def name(self) -> str:
        return self._name

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._client

    # ------------------------------------------------------------------
    # Request defaults
    # ------------------------------------------------------------------

    @property
    def embedding_model(self) -> str:
        return self.config.model

    def resolve_model(self, request: GenerateRequest) -> str:
        return request.model or self.config.model

    def resolve_max_tokens(self, request: GenerateRequest) -> int:
        return request.max_tokens or self.config.max_tokens

    def resolve_temperature(self, request: GenerateRequest) -> float:
        return request.temperature if request.temperature is not None else self.config.temperature

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate_response(self, request: GenerateRequest) -> GenerateResponse:
        """Run a blocking generation call.

        Raises:
            ProviderError: Any backend failure, already classified.
        """
        start = time.monotonic()
        try:
            response = await self._guard(self._generate(request))
        except ProviderError:
            self.usage.record_error()
            raise
        latency = time.monotonic() - start
        self.usage.record_success(
            response.tokens_used.input_tokens,
            response.tokens_used.output_tokens,
            latency,
        )
        return replace(response, latency=latency)

    async def generate_response_stream(self, request: GenerateRequest) -> EventStream:
        """Open a stream of canonical events.

        Failures that happen before the first event (bad status, auth,
        connection errors) are raised here; later failures arrive as a
        terminal error event.
        """
        start = time.monotonic()
        try:
            stream = await self._guard(self._open_stream(request))
        except ProviderError:
            self.usage.record_error()
            raise

        def _account(finished: EventStream) -> None:
            if finished.aborted or finished.stalled:
                return
            terminal = finished.terminal
            if terminal is not None and terminal.error is not None:
                self.usage.record_error()
                return
            tokens = terminal.tokens_used if terminal is not None else None
            self.usage.record_success(
                tokens.input_tokens if tokens else 0,
                tokens.output_tokens if tokens else 0,
                time.monotonic() - start,
            )

        stream.add_done_callback(_account)
        return stream

    async def generate_embedding(self, text: str) -> EmbeddingResponse:
        if not self.supports_embeddings:
            raise ProviderError(
                ErrorKind.INVALID_REQUEST,
                f"embeddings are not supported by {self.name}",
                self.name,
            )
        if not text.strip():
            raise ProviderError(ErrorKind.INVALID_REQUEST, "text must not be empty", self.name)
        start = time.monotonic()
        try:
            response = await self._guard(self._embed(text))
        except ProviderError:
            self.usage.record_error()
            raise
        latency = time.monotonic() - start
        self.usage.record_success(response.tokens_used.input_tokens, 0, latency)
        return replace(response, latency=latency)

    async def health(self) -> None:
        """Issue a minimal generation call; raise if the backend is unusable."""
        request = GenerateRequest(
            messages=(Message(role="user", content=HEALTH_PROMPT),),
            max_tokens=HEALTH_MAX_TOKENS,
        )
        await self._guard(self._generate(request))

    async def get_usage(self) -> UsageStats:
        return self.usage.snapshot()

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Adapter hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _generate(self, request: GenerateRequest) -> GenerateResponse:
        """Perform one blocking call against the backend."""

    async def _open_stream(self, request: GenerateRequest) -> EventStream:
        """Simulated streaming: one blocking call replayed as word groups."""
        response = await self._generate(request)
        return self.new_stream().start(
            lambda stream: pump_simulated(stream, response, self.stream_options.chunk_delay)
        )

    async def _embed(self, text: str) -> EmbeddingResponse:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Helpers for HTTP adapters
    # ------------------------------------------------------------------

    def new_stream(self) -> EventStream:
        return EventStream(
            self.name,
            buffer_size=self.stream_options.buffer_size,
            send_timeout=self.stream_options.send_timeout,
        )

    async def _guard(self, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except ProviderError:
            raise
        except Exception as exc:
            raise error_from_transport(exc, self.name) from exc

    async def _post_json(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str],
        *,
        model: str,
    ) -> dict[str, Any]:
        """POST *payload* and return the decoded JSON body.

        Raises:
            ProviderError: Classified from the HTTP status, the transport
                exception, or ``server_error`` for an undecodable body.
        """
        with _tracer.start_as_current_span("llm.api_call") as span:
            span.set_attribute("gen_ai.system", self.name)
            span.set_attribute("gen_ai.request.model", model)
            try:
                response = await self.client.post(url, json=payload, headers=headers)
            except httpx.HTTPError as exc:
                error = error_from_transport(exc, self.name)
                span.record_exception(exc)
                span.set_status(StatusCode.ERROR, error.message)
                raise error from exc

            span.set_attribute("http.response.status_code", response.status_code)
            if not response.is_success:
                error = self.error_from_response(response)
                span.set_status(StatusCode.ERROR, error.message)
                raise error

            try:
                body = response.json()
            except ValueError as exc:
                raise ProviderError(
                    ErrorKind.SERVER_ERROR,
                    f"undecodable response body from {self.name}",
                    self.name,
                    status_code=response.status_code,
                    original_error=exc,
                ) from exc
            if not isinstance(body, dict):
                raise ProviderError(
                    ErrorKind.SERVER_ERROR,
                    f"unexpected response shape from {self.name}",
                    self.name,
                    status_code=response.status_code,
                )
            return body

    def error_from_response(self, response: httpx.Response) -> ProviderError:
        """Classify a non-2xx response, using the body's error message if present."""
        message = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            detail = body["error"].get("message")
            if detail:
                message = f"HTTP {response.status_code}: {detail}"
        error = error_from_response(response, self.name, message)
        _log.warning(
            "backend_http_error",
            backend=self.name,
            status_code=response.status_code,
            kind=error.kind.value,
            retry_after=error.retry_after,
        )
        return error
