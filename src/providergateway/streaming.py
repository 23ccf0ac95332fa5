"""Stream normalisation: one event shape for every backend.

An :class:`EventStream` couples a single producer task to a bounded
``asyncio.Queue``.  The producer either decodes a native Server-Sent-Event
body (:func:`pump_native`) or replays a blocking response as word groups
(:func:`pump_simulated`).  Consumers just iterate::

    async with await gateway.generate_response_stream(request) as stream:
        async for event in stream:
            if event.content_delta:
                print(event.content_delta, end="", flush=True)

A stream ends with exactly one terminal event (finish or error) unless it is
cancelled, in which case it closes with none.
"""

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from providergateway.errors import ErrorKind, ProviderError, error_from_payload
from providergateway.models import GenerateResponse, StreamEvent, TokenUsage, normalize_finish_reason

_log = structlog.get_logger(__name__)

DEFAULT_BUFFER_SIZE = 100
DEFAULT_SEND_TIMEOUT = 30.0
DEFAULT_IDLE_TIMEOUT = 30.0
DEFAULT_CHUNK_DELAY = 0.02
DEFAULT_GROUP_SIZE = 5

_PUNCTUATION = frozenset(".!?,;:")
_CLOSED = object()


@dataclass(frozen=True)
class StreamOptions:
    """Tuning knobs shared by every stream a backend opens."""

    buffer_size: int = DEFAULT_BUFFER_SIZE
    send_timeout: float = DEFAULT_SEND_TIMEOUT
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    chunk_delay: float = DEFAULT_CHUNK_DELAY


class StreamState(str, Enum):
    IDLE = "idle"
    READING = "reading"
    EMITTING = "emitting"
    ERRORING = "erroring"
    CLOSED = "closed"


class _ConsumerStalled(Exception):
    """Raised inside the producer when the consumer stops draining the queue."""


class EventStream:
    """Ordered, bounded stream of :class:`~providergateway.models.StreamEvent`.

    Args:
        backend: Name of the backend feeding the stream.
        buffer_size: Queue capacity; the producer blocks when it is full.
        send_timeout: Seconds the producer waits for queue space before the
            stream is terminated with a ``timeout`` error.
    """

    def __init__(
        self,
        backend: str,
        *,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ) -> None:
        self.backend = backend
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=buffer_size)
        self._send_timeout = send_timeout
        self._state = StreamState.IDLE
        self._task: asyncio.Task[None] | None = None
        self._terminal: StreamEvent | None = None
        self._overflow: StreamEvent | None = None
        self._producer_done = False
        self._consumer_done = False
        self._aborted = False
        self._stalled = False
        self._callbacks: list[Callable[["EventStream"], None]] = []
        self._close_hooks: list[Callable[[], Awaitable[None]]] = []
        self._cleanup_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def start(self, producer: Callable[["EventStream"], Awaitable[None]]) -> "EventStream":
        """Run *producer* as this stream's single producer task."""
        if self._task is not None:
            raise RuntimeError("stream already started")
        self._state = StreamState.READING
        self._task = asyncio.create_task(self._run(producer), name=f"stream-{self.backend}")
        return self

    async def send(self, event: StreamEvent) -> None:
        """Enqueue *event*, waiting at most ``send_timeout`` for space.

        Events offered after the terminal event are ignored.
        """
        if self._terminal is not None:
            return
        if event.is_terminal:
            self._terminal = event
            self._state = StreamState.ERRORING if event.error is not None else StreamState.EMITTING
        else:
            self._state = StreamState.EMITTING

        try:
            await asyncio.wait_for(self._queue.put(event), timeout=self._send_timeout)
        except asyncio.TimeoutError:
            if not event.is_terminal:
                self._stalled = True
                self._terminal = StreamEvent.failure(
                    ProviderError(
                        ErrorKind.TIMEOUT,
                        f"consumer did not read the stream within {self._send_timeout:g}s",
                        self.backend,
                    )
                )
            self._overflow = self._terminal
            raise _ConsumerStalled from None

        if not event.is_terminal:
            self._state = StreamState.READING

    async def _run(self, producer: Callable[["EventStream"], Awaitable[None]]) -> None:
        try:
            await producer(self)
        except asyncio.CancelledError:
            self._aborted = True
            raise
        except _ConsumerStalled:
            _log.warning("stream_consumer_stalled", backend=self.backend, send_timeout=self._send_timeout)
        except ProviderError as exc:
            await self._send_final(StreamEvent.failure(exc))
        except Exception as exc:
            _log.exception("stream_producer_failed", backend=self.backend, error=str(exc))
            await self._send_final(
                StreamEvent.failure(
                    ProviderError(
                        ErrorKind.UNKNOWN,
                        f"stream producer failed: {exc}",
                        self.backend,
                        original_error=exc,
                    )
                )
            )
        finally:
            await self._run_close_hooks()
            self._producer_done = True
            try:
                self._queue.put_nowait(_CLOSED)
            except asyncio.QueueFull:
                pass  # the consumer notices _producer_done once it drains the queue
            self._fire_callbacks()

    async def _send_final(self, event: StreamEvent) -> None:
        try:
            await self.send(event)
        except _ConsumerStalled:
            _log.warning("stream_consumer_stalled", backend=self.backend, send_timeout=self._send_timeout)

    def add_done_callback(self, callback: Callable[["EventStream"], None]) -> None:
        """Call *callback(stream)* once the producer has finished.

        Fires immediately when the producer is already done.
        """
        if self._producer_done:
            self._invoke(callback)
        else:
            self._callbacks.append(callback)

    def on_close(self, hook: Callable[[], Awaitable[None]]) -> None:
        """Await *hook()* once the producer is finished, even if it never ran.

        Adapters register transport cleanup here (e.g. ``response.aclose``).
        """
        self._close_hooks.append(hook)

    async def _run_close_hooks(self) -> None:
        hooks, self._close_hooks = self._close_hooks, []
        for hook in hooks:
            try:
                await hook()
            except Exception as exc:
                _log.exception("stream_close_hook_failed", backend=self.backend, error=str(exc))

    def _fire_callbacks(self) -> None:
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._invoke(callback)

    def _invoke(self, callback: Callable[["EventStream"], None]) -> None:
        try:
            callback(self)
        except Exception as exc:
            _log.exception("stream_callback_failed", backend=self.backend, error=str(exc))

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._consumer_done:
            raise StopAsyncIteration
        if self._queue.empty() and self._producer_done:
            return self._tail()
        item = await self._queue.get()
        if item is _CLOSED:
            return self._tail()
        return item

    def _tail(self) -> StreamEvent:
        # A terminal event that did not fit in the queue is delivered last.
        if self._overflow is not None:
            event, self._overflow = self._overflow, None
            return event
        self._close()
        raise StopAsyncIteration

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def collect(self) -> list[StreamEvent]:
        """Consume the rest of the stream and return every event."""
        return [event async for event in self]

    def cancel(self) -> None:
        """Abort the stream: stop the producer and drop buffered events."""
        if self._task is not None and not self._task.done():
            self._aborted = True
            self._task.cancel()
            self._task.add_done_callback(self._after_cancel)
        self._discard()

    def _after_cancel(self, task: "asyncio.Task[None]") -> None:
        # A task cancelled before its first step never enters _run, so its
        # cleanup has to happen here.
        if self._producer_done:
            return
        self._producer_done = True
        if self._close_hooks:
            self._cleanup_task = task.get_loop().create_task(self._run_close_hooks())
        self._fire_callbacks()

    async def aclose(self) -> None:
        """Like :meth:`cancel`, but waits for the producer and cleanup to finish."""
        task = self._task
        self.cancel()
        if task is not None and not task.done():
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._run_close_hooks()
        if self._cleanup_task is not None:
            await self._cleanup_task

    def _discard(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()
        self._overflow = None
        self._close()

    def _close(self) -> None:
        self._consumer_done = True
        self._state = StreamState.CLOSED

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def terminal(self) -> StreamEvent | None:
        """The terminal event, or ``None`` if the stream did not produce one."""
        return None if self._aborted else self._terminal

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def stalled(self) -> bool:
        """``True`` when the stream ended because the consumer stopped reading.

        The resulting ``timeout`` event says nothing about the backend's health.
        """
        return self._stalled

    @property
    def completed(self) -> bool:
        """``True`` once the producer has delivered a successful finish event."""
        terminal = self.terminal
        return terminal is not None and terminal.error is None

    @property
    def done(self) -> bool:
        return self._producer_done


# ---------------------------------------------------------------------------
# Native Server-Sent-Event decoding
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SSEFrame:
    event: str | None
    data: str


async def iter_sse_frames(
    lines: AsyncIterator[str],
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
    backend: str | None = None,
) -> AsyncIterator[SSEFrame]:
    """Group raw SSE lines into frames.

    Lines accumulate until a blank line; multiple ``data:`` lines are joined
    with newlines and comment lines (``:``) are dropped.

    Raises:
        ProviderError: kind ``timeout`` when no line arrives within
            *idle_timeout* seconds.
    """
    iterator = aiter(lines)
    event: str | None = None
    data: list[str] = []
    while True:
        try:
            line = await asyncio.wait_for(anext(iterator), timeout=idle_timeout)
        except StopAsyncIteration:
            break
        except asyncio.TimeoutError:
            raise ProviderError(
                ErrorKind.TIMEOUT,
                f"no stream data received for {idle_timeout:g}s",
                backend,
            ) from None

        line = line.rstrip("\r\n")
        if not line:
            if data:
                yield SSEFrame(event, "\n".join(data))
            event, data = None, []
            continue
        if line.startswith(":"):
            continue

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)

    if data:
        yield SSEFrame(event, "\n".join(data))


async def pump_native(stream: EventStream, frames: AsyncIterator[SSEFrame]) -> None:
    """Translate Messages-API SSE frames into canonical events.

    ``message_start`` and ``message_delta`` accumulate usage and the stop
    reason; ``message_stop`` emits the single finish event.  ``[DONE]`` or the
    end of the transport finishes the stream with no further events.
    """
    input_tokens = 0
    output_tokens = 0
    stop_reason: str | None = None

    async for frame in frames:
        if frame.data.strip() == "[DONE]":
            return
        try:
            payload = json.loads(frame.data)
        except json.JSONDecodeError as exc:
            _log.warning("stream_frame_unparseable", backend=stream.backend, error=str(exc))
            continue
        if not isinstance(payload, dict):
            continue

        frame_type = payload.get("type") or frame.event

        if frame_type == "message_start":
            usage = (payload.get("message") or {}).get("usage") or {}
            input_tokens = usage.get("input_tokens", input_tokens)
            output_tokens = usage.get("output_tokens", output_tokens)

        elif frame_type == "content_block_delta":
            delta = payload.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                await stream.send(StreamEvent.delta(delta["text"]))

        elif frame_type == "message_delta":
            stop_reason = (payload.get("delta") or {}).get("stop_reason") or stop_reason
            usage = payload.get("usage") or {}
            input_tokens = usage.get("input_tokens", input_tokens)
            output_tokens = usage.get("output_tokens", output_tokens)

        elif frame_type == "message_stop":
            usage = payload.get("usage") or {}
            input_tokens = usage.get("input_tokens", input_tokens)
            output_tokens = usage.get("output_tokens", output_tokens)
            await stream.send(
                StreamEvent.finish(
                    normalize_finish_reason(stop_reason),
                    TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
                )
            )
            return

        elif frame_type == "error":
            error = payload.get("error") or {}
            await stream.send(StreamEvent.failure(error_from_payload(error, stream.backend)))
            return


# ---------------------------------------------------------------------------
# Simulated streaming
# ---------------------------------------------------------------------------


def chunk_words(text: str, group_size: int = DEFAULT_GROUP_SIZE) -> list[str]:
    """Split *text* into word groups for simulated streaming.

    A group is flushed when it reaches *group_size* words, when a word
    contains punctuation (``.!?,;:``), or at the last word.  Every group but
    the last keeps a trailing space so the groups concatenate back to the
    whitespace-normalised text.
    """
    words = text.split()
    groups: list[str] = []
    current: list[str] = []
    for index, word in enumerate(words):
        current.append(word)
        if (
            len(current) >= group_size
            or any(ch in _PUNCTUATION for ch in word)
            or index == len(words) - 1
        ):
            groups.append(" ".join(current))
            current = []
    return [group + " " for group in groups[:-1]] + groups[-1:]


async def pump_simulated(
    stream: EventStream,
    response: GenerateResponse,
    chunk_delay: float = DEFAULT_CHUNK_DELAY,
) -> None:
    """Replay a complete response as a sequence of delta events."""
    for index, chunk in enumerate(chunk_words(response.content)):
        if index and chunk_delay > 0:
            await asyncio.sleep(chunk_delay)
        await stream.send(StreamEvent.delta(chunk))
    await stream.send(StreamEvent.finish(response.finish_reason, response.tokens_used))
