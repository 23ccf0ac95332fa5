"""Unit tests for the stream normaliser (streaming.py)."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator

import pytest

from providergateway.errors import ErrorKind, ProviderError
from providergateway.models import GenerateResponse, StreamEvent, TokenUsage
from providergateway.streaming import (
    EventStream,
    SSEFrame,
    StreamState,
    chunk_words,
    iter_sse_frames,
    pump_native,
    pump_simulated,
)


async def _lines(*lines: str, delay: float = 0.0) -> AsyncIterator[str]:
    for line in lines:
        if delay:
            await asyncio.sleep(delay)
        yield line


def _sse(event: str, payload: dict) -> list[str]:
    return [f"event: {event}", f"data: {json.dumps(payload)}", ""]


def _anthropic_stream(*texts: str, stop_reason: str = "end_turn") -> list[str]:
    lines = _sse(
        "message_start",
        {"type": "message_start", "message": {"id": "msg_1", "usage": {"input_tokens": 25, "output_tokens": 1}}},
    )
    lines += _sse("ping", {"type": "ping"})
    for text in texts:
        lines += _sse(
            "content_block_delta",
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
        )
    lines += _sse(
        "message_delta",
        {"type": "message_delta", "delta": {"stop_reason": stop_reason}, "usage": {"output_tokens": 15}},
    )
    lines += _sse("message_stop", {"type": "message_stop"})
    return lines


def _native_stream(lines: list[str], **kwargs: float) -> EventStream:
    stream = EventStream("claude", **kwargs)
    return stream.start(lambda s: pump_native(s, iter_sse_frames(_lines(*lines), backend="claude")))


# ---------------------------------------------------------------------------
# 1. Word chunking
# ---------------------------------------------------------------------------


class TestChunkWords:
    """chunk_words groups words for simulated streaming."""

    def test_groups_of_five(self) -> None:
        text = "one two three four five six seven"
        assert chunk_words(text) == ["one two three four five ", "six seven"]

    def test_punctuation_flushes_group(self) -> None:
        text = "Hello world. This is a simple test of the chunker"
        assert chunk_words(text) == ["Hello world. ", "This is a simple test ", "of the chunker"]

    def test_concatenation_restores_normalised_text(self) -> None:
        text = "  The quick,  brown fox\njumps over the lazy dog!  Again?  "
        assert "".join(chunk_words(text)) == " ".join(text.split())

    def test_single_word(self) -> None:
        assert chunk_words("hi") == ["hi"]

    def test_empty_text(self) -> None:
        assert chunk_words("") == []
        assert chunk_words("   ") == []


# ---------------------------------------------------------------------------
# 2. SSE framing
# ---------------------------------------------------------------------------


class TestSSEFrames:
    """iter_sse_frames groups raw lines into frames."""

    async def test_basic_frames(self) -> None:
        frames = [f async for f in iter_sse_frames(_lines("event: a", "data: 1", "", "data: 2", ""))]
        assert frames == [SSEFrame("a", "1"), SSEFrame(None, "2")]

    async def test_multiline_data_and_comments(self) -> None:
        lines = _lines(": keep-alive", "data: first", "data:second", "", "")
        frames = [f async for f in iter_sse_frames(lines)]
        assert frames == [SSEFrame(None, "first\nsecond")]

    async def test_trailing_frame_without_blank_line(self) -> None:
        frames = [f async for f in iter_sse_frames(_lines("data: tail"))]
        assert frames == [SSEFrame(None, "tail")]

    async def test_idle_timeout(self) -> None:
        lines = _lines("data: 1", "", "data: 2", delay=0.2)
        with pytest.raises(ProviderError) as exc_info:
            async for _ in iter_sse_frames(lines, idle_timeout=0.01, backend="claude"):
                pass
        assert exc_info.value.kind is ErrorKind.TIMEOUT
        assert exc_info.value.backend == "claude"


# ---------------------------------------------------------------------------
# 3. Native decoding
# ---------------------------------------------------------------------------


class TestPumpNative:
    """pump_native maps Messages-API frames onto canonical events."""

    async def test_deltas_then_finish(self) -> None:
        async with _native_stream(_anthropic_stream("Hel", "lo")) as stream:
            events = await stream.collect()

        assert [e.content_delta for e in events[:-1]] == ["Hel", "lo"]
        final = events[-1]
        assert final.finish_reason == "stop"
        assert final.tokens_used == TokenUsage(input_tokens=25, output_tokens=15)
        assert sum(e.is_terminal for e in events) == 1
        assert stream.completed

    async def test_stop_reason_is_normalised(self) -> None:
        events = await _native_stream(_anthropic_stream("x", stop_reason="max_tokens")).collect()
        assert events[-1].finish_reason == "length"

    async def test_error_frame_ends_stream(self) -> None:
        lines = _sse("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "par"}})
        lines += _sse("error", {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        lines += _sse("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "never"}})

        stream = _native_stream(lines)
        events = await stream.collect()

        assert [e.content_delta for e in events[:-1]] == ["par"]
        assert events[-1].error is not None
        assert events[-1].error.kind is ErrorKind.SERVER_ERROR
        assert events[-1].error.backend == "claude"
        assert not stream.completed

    async def test_unparseable_frame_is_skipped(self) -> None:
        lines = ["data: {not json", ""] + _anthropic_stream("ok")
        events = await _native_stream(lines).collect()
        assert [e.content_delta for e in events if e.content_delta] == ["ok"]
        assert events[-1].finish_reason == "stop"

    async def test_done_marker_closes_without_terminal(self) -> None:
        lines = _sse("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "a"}})
        lines += ["data: [DONE]", ""]
        stream = _native_stream(lines)
        events = await stream.collect()
        assert [e.content_delta for e in events] == ["a"]
        assert stream.terminal is None

    async def test_idle_timeout_becomes_error_event(self) -> None:
        async def slow() -> AsyncIterator[str]:
            yield "data: {}"
            await asyncio.sleep(1)
            yield ""

        stream = EventStream("claude").start(
            lambda s: pump_native(s, iter_sse_frames(slow(), idle_timeout=0.01, backend="claude"))
        )
        events = await stream.collect()
        assert len(events) == 1
        assert events[0].error.kind is ErrorKind.TIMEOUT


# ---------------------------------------------------------------------------
# 4. Simulated streaming
# ---------------------------------------------------------------------------


class TestPumpSimulated:
    async def test_replays_response_as_chunks(self) -> None:
        response = GenerateResponse(
            content="Hello world. This is a simple test",
            model="gemini-pro",
            backend="gemini",
            tokens_used=TokenUsage(5, 8),
            finish_reason="stop",
        )
        stream = EventStream("gemini").start(lambda s: pump_simulated(s, response, chunk_delay=0))
        events = await stream.collect()

        deltas = [e.content_delta for e in events[:-1]]
        assert deltas == ["Hello world. ", "This is a simple test"]
        assert "".join(deltas) == response.content
        assert events[-1].finish_reason == "stop"
        assert events[-1].tokens_used == TokenUsage(5, 8)

    async def test_empty_response_only_finishes(self) -> None:
        response = GenerateResponse(content="", model="m", backend="gemini", tokens_used=TokenUsage())
        events = await EventStream("gemini").start(lambda s: pump_simulated(s, response, 0)).collect()
        assert len(events) == 1
        assert events[0].is_terminal


# ---------------------------------------------------------------------------
# 5. EventStream lifecycle
# ---------------------------------------------------------------------------


class TestEventStream:
    """EventStream ordering, termination and cancellation."""

    async def test_events_after_terminal_are_ignored(self) -> None:
        async def producer(s: EventStream) -> None:
            await s.send(StreamEvent.finish("stop", TokenUsage()))
            await s.send(StreamEvent.delta("late"))
            await s.send(StreamEvent.finish("length", TokenUsage()))

        events = await EventStream("mock").start(producer).collect()
        assert len(events) == 1
        assert events[0].finish_reason == "stop"

    async def test_provider_error_becomes_failure_event(self) -> None:
        async def producer(s: EventStream) -> None:
            await s.send(StreamEvent.delta("a"))
            raise ProviderError(ErrorKind.NETWORK_ERROR, "dropped", "mock")

        stream = EventStream("mock").start(producer)
        events = await stream.collect()
        assert events[0].content_delta == "a"
        assert events[1].error.kind is ErrorKind.NETWORK_ERROR
        assert stream.terminal is events[1]

    async def test_unexpected_exception_becomes_unknown(self) -> None:
        async def producer(s: EventStream) -> None:
            raise RuntimeError("bug")

        events = await EventStream("mock").start(producer).collect()
        assert events[0].error.kind is ErrorKind.UNKNOWN
        assert isinstance(events[0].error.original_error, RuntimeError)

    async def test_stalled_consumer_gets_timeout_last(self) -> None:
        """A full buffer past send_timeout ends the stream with a timeout error."""

        async def producer(s: EventStream) -> None:
            for i in range(5):
                await s.send(StreamEvent.delta(str(i)))
            await s.send(StreamEvent.finish("stop", TokenUsage()))

        stream = EventStream("mock", buffer_size=2, send_timeout=0.01).start(producer)
        while not stream.done:
            await asyncio.sleep(0.01)

        events = await stream.collect()
        assert [e.content_delta for e in events[:-1]] == ["0", "1"]
        assert events[-1].error.kind is ErrorKind.TIMEOUT
        assert stream.stalled
        assert stream.state is StreamState.CLOSED

    async def test_cancel_stops_producer_and_emits_no_terminal(self) -> None:
        blocker = asyncio.Event()
        seen: list[EventStream] = []

        async def producer(s: EventStream) -> None:
            await s.send(StreamEvent.delta("first"))
            await blocker.wait()
            await s.send(StreamEvent.finish("stop", TokenUsage()))

        stream = EventStream("mock").start(producer)
        stream.add_done_callback(seen.append)

        first = await stream.__anext__()
        assert first.content_delta == "first"
        await stream.aclose()

        assert stream.aborted
        assert stream.terminal is None
        assert seen == [stream]
        assert await stream.collect() == []

    async def test_done_callback_fires_once_when_added_late(self) -> None:
        async def producer(s: EventStream) -> None:
            await s.send(StreamEvent.finish("stop", TokenUsage(1, 1)))

        stream = EventStream("mock").start(producer)
        await stream.collect()
        await asyncio.sleep(0)

        seen: list[EventStream] = []
        stream.add_done_callback(seen.append)
        assert seen == [stream]

    async def test_failing_callback_does_not_break_stream(self) -> None:
        async def producer(s: EventStream) -> None:
            await s.send(StreamEvent.finish("stop", TokenUsage()))

        def broken(_: EventStream) -> None:
            raise ValueError("callback bug")

        stream = EventStream("mock")
        stream.add_done_callback(broken)
        events = await stream.start(producer).collect()
        assert events[0].finish_reason == "stop"

    async def test_start_twice_raises(self) -> None:
        async def producer(s: EventStream) -> None:
            return None

        stream = EventStream("mock").start(producer)
        with pytest.raises(RuntimeError):
            stream.start(producer)
        await stream.aclose()

    async def test_backend_timeout_is_not_a_stall(self) -> None:
        async def producer(s: EventStream) -> None:
            await s.send(StreamEvent.failure(ProviderError(ErrorKind.TIMEOUT, "slow backend", "mock")))

        stream = EventStream("mock").start(producer)
        events = await stream.collect()
        assert events[-1].error.kind is ErrorKind.TIMEOUT
        assert not stream.stalled


class TestCloseHooks:
    """on_close hooks release transport resources exactly once."""

    async def test_run_after_producer_finishes(self) -> None:
        closed: list[str] = []

        async def hook() -> None:
            closed.append("response")

        async def producer(s: EventStream) -> None:
            await s.send(StreamEvent.finish("stop", TokenUsage()))

        stream = EventStream("mock")
        stream.on_close(hook)
        await stream.start(producer).collect()
        await stream.aclose()

        assert closed == ["response"]

    async def test_aclose_before_producer_runs(self) -> None:
        """Cancelling a task that never ran still cleans up and fires callbacks."""
        closed: list[str] = []
        started: list[str] = []
        seen: list[EventStream] = []

        async def hook() -> None:
            closed.append("response")

        async def producer(s: EventStream) -> None:
            started.append("producer")

        stream = EventStream("mock")
        stream.on_close(hook)
        stream.add_done_callback(seen.append)
        stream.start(producer)
        await stream.aclose()

        assert started == []
        assert closed == ["response"]
        assert seen == [stream]
        assert stream.done
        assert stream.aborted
        assert stream.terminal is None

    async def test_cancel_before_producer_runs(self) -> None:
        closed: list[str] = []

        async def hook() -> None:
            closed.append("response")

        async def producer(s: EventStream) -> None:
            await s.send(StreamEvent.finish("stop", TokenUsage()))

        stream = EventStream("mock")
        stream.on_close(hook)
        stream.start(producer)
        stream.cancel()
        await asyncio.sleep(0.01)

        assert closed == ["response"]
        assert stream.done

    async def test_failing_hook_is_logged_not_raised(self) -> None:
        async def hook() -> None:
            raise OSError("already closed")

        async def producer(s: EventStream) -> None:
            await s.send(StreamEvent.finish("stop", TokenUsage()))

        stream = EventStream("mock")
        stream.on_close(hook)
        events = await stream.start(producer).collect()

        assert events[0].finish_reason == "stop"
        assert stream.done
