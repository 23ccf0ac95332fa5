"""Deterministic in-process backend for tests and local development."""

import asyncio
import hashlib
from collections import deque
from collections.abc import Iterable, Sequence

from providergateway.errors import ProviderError
from providergateway.models import (
    EmbeddingResponse,
    GenerateRequest,
    GenerateResponse,
    ProviderConfig,
    StreamEvent,
    TokenUsage,
)
from providergateway.providers.base import Provider
from providergateway.streaming import EventStream, StreamOptions
from providergateway.tokens import count_tokens

EMBEDDING_DIMENSIONS = 16


class MockProvider(Provider):
    """A backend that never leaves the process.

    Responses are taken from *responses* in order, then fall back to echoing
    the last user turn.  Queued *failures* are raised before any response.
    When *stream_events* is given, streams replay exactly those events
    instead of the simulated word groups.

    Args:
        name: Registry name.
        config: Optional configuration; no API key is needed.
        responses: Canned response texts.
        failures: Errors to raise, one per call, before serving responses.
        stream_events: Canned events for :meth:`generate_response_stream`.
        stream_delay: Seconds to sleep before each canned stream event.
    """

    default_base_url = "mock://local"
    default_model = "mock-model"
    requires_api_key = False
    supports_embeddings = True

    def __init__(
        self,
        name: str = "mock",
        config: ProviderConfig | None = None,
        *,
        responses: Iterable[str] | None = None,
        failures: Iterable[ProviderError] | None = None,
        stream_events: Sequence[StreamEvent] | None = None,
        stream_delay: float = 0.0,
        stream_options: StreamOptions | None = None,
    ) -> None:
        super().__init__(
            name,
            config or ProviderConfig(),
            stream_options=stream_options or StreamOptions(chunk_delay=0.0),
        )
        self.responses: deque[str] = deque(responses or ())
        self.failures: deque[ProviderError] = deque(failures or ())
        self.stream_events = list(stream_events) if stream_events is not None else None
        self.stream_delay = stream_delay
        self.calls: list[GenerateRequest] = []
        self.embedding_calls: list[str] = []
        self.closed = False

    def queue_response(self, *texts: str) -> None:
        self.responses.extend(texts)

    def fail_next(self, *errors: ProviderError) -> None:
        self.failures.extend(errors)

    def _raise_queued_failure(self) -> None:
        if self.failures:
            raise self.failures.popleft()

    async def _generate(self, request: GenerateRequest) -> GenerateResponse:
        self.calls.append(request)
        self._raise_queued_failure()

        model = self.resolve_model(request)
        if self.responses:
            content = self.responses.popleft()
        else:
            last_user = next(
                (m.content for m in reversed(request.conversation) if m.role == "user"),
                "",
            )
            content = f"Mock response to: {last_user}"

        return GenerateResponse(
            content=content,
            model=model,
            backend=self.name,
            tokens_used=TokenUsage(
                input_tokens=count_tokens(request.prompt_text, model),
                output_tokens=count_tokens(content, model),
            ),
            metadata={"max_tokens": self.resolve_max_tokens(request)},
        )

    async def _open_stream(self, request: GenerateRequest) -> EventStream:
        if self.stream_events is None:
            return await super()._open_stream(request)

        self.calls.append(request)
        self._raise_queued_failure()
        events = list(self.stream_events)

        async def produce(stream: EventStream) -> None:
            for event in events:
                if self.stream_delay:
                    await asyncio.sleep(self.stream_delay)
                await stream.send(event)

        return self.new_stream().start(produce)

    async def _embed(self, text: str) -> EmbeddingResponse:
        self.embedding_calls.append(text)
        self._raise_queued_failure()
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        vector = tuple(round(byte / 127.5 - 1.0, 6) for byte in digest[:EMBEDDING_DIMENSIONS])
        return EmbeddingResponse(
            embedding=vector,
            model=self.config.model,
            backend=self.name,
            tokens_used=TokenUsage(input_tokens=count_tokens(text, self.config.model)),
        )

    async def close(self) -> None:
        self.closed = True
        await super().close()
