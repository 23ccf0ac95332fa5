"""Adapter for the Anthropic Messages API, with native SSE streaming."""

from contextlib import aclosing
from typing import Any

import httpx
import structlog

from providergateway.errors import error_from_payload, error_from_transport
from providergateway.models import (
    GenerateRequest,
    GenerateResponse,
    TokenUsage,
    ToolCall,
    normalize_finish_reason,
)
from providergateway.providers.base import Provider
from providergateway.streaming import EventStream, iter_sse_frames, pump_native

_log = structlog.get_logger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(Provider):
    """Claude models over ``POST {base_url}/v1/messages``.

    The system prompt travels in the top-level ``system`` field, never as a
    message.  Temperature is only sent when positive so the backend default
    applies otherwise.  Embeddings are not offered by this backend.
    """

    default_base_url = "https://api.anthropic.com"
    default_model = "claude-3-sonnet-20240229"

    @property
    def messages_url(self) -> str:
        return f"{self.config.base_url}/v1/messages"

    def _headers(self, *, stream: bool = False) -> dict[str, str]:
        headers = {
            "x-api-key": self.config.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        if stream:
            headers["accept"] = "text/event-stream"
        return headers

    def build_payload(self, request: GenerateRequest, *, stream: bool = False) -> dict[str, Any]:
        """Convert a :class:`GenerateRequest` to a Messages API body."""
        payload: dict[str, Any] = {
            "model": self.resolve_model(request),
            "max_tokens": self.resolve_max_tokens(request),
            "messages": [
                {"role": "assistant" if m.role == "assistant" else "user", "content": m.content}
                for m in request.conversation
            ],
        }
        temperature = self.resolve_temperature(request)
        if temperature > 0:
            payload["temperature"] = temperature
        system = request.effective_system_prompt
        if system:
            payload["system"] = system
        if request.tools:
            payload["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters or {"type": "object", "properties": {}},
                }
                for tool in request.tools
            ]
        if stream:
            payload["stream"] = True
        return payload

    def parse_response(self, body: dict[str, Any], model: str) -> GenerateResponse:
        if body.get("type") == "error":
            raise error_from_payload(body.get("error") or {}, self.name)

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in body.get("content") or []:
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=block.get("id", ""),
                        name=block.get("name", ""),
                        arguments=block.get("input") or {},
                    )
                )

        usage = body.get("usage") or {}
        return GenerateResponse(
            content="".join(text_parts),
            model=body.get("model") or model,
            backend=self.name,
            tokens_used=TokenUsage(
                input_tokens=usage.get("input_tokens", 0),
                output_tokens=usage.get("output_tokens", 0),
            ),
            finish_reason=normalize_finish_reason(body.get("stop_reason")),
            tool_calls=tuple(tool_calls),
            metadata={"message_id": body.get("id")},
        )

    async def _generate(self, request: GenerateRequest) -> GenerateResponse:
        model = self.resolve_model(request)
        body = await self._post_json(
            self.messages_url,
            self.build_payload(request),
            self._headers(),
            model=model,
        )
        return self.parse_response(body, model)

    async def _open_stream(self, request: GenerateRequest) -> EventStream:
        http_request = self.client.build_request(
            "POST",
            self.messages_url,
            json=self.build_payload(request, stream=True),
            headers=self._headers(stream=True),
        )
        try:
            response = await self.client.send(http_request, stream=True)
        except httpx.HTTPError as exc:
            raise error_from_transport(exc, self.name) from exc

        if not response.is_success:
            await response.aread()
            await response.aclose()
            raise self.error_from_response(response)

        _log.debug("stream_opened", backend=self.name, model=self.resolve_model(request))

        async def produce(stream: EventStream) -> None:
            try:
                frames = iter_sse_frames(
                    response.aiter_lines(),
                    self.stream_options.idle_timeout,
                    self.name,
                )
                async with aclosing(frames):
                    await pump_native(stream, frames)
            except httpx.HTTPError as exc:
                raise error_from_transport(exc, self.name) from exc

        stream = self.new_stream()
        stream.on_close(response.aclose)
        return stream.start(produce)
