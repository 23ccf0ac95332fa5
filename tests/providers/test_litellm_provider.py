"""Unit tests for LiteLLMProvider (litellm_provider.py).

Mocking strategy
----------------
* ``litellm.acompletion`` and ``litellm.aembedding`` are patched at
  ``providergateway.providers.litellm_provider.litellm.*`` so no real API is
  called.
* LiteLLM exceptions are built with their real constructors so the
  ``isinstance`` checks in ``map_error`` pass.
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import httpx
import litellm
import pytest

from providergateway.errors import ErrorKind, ProviderError
from providergateway.models import GenerateRequest, ProviderConfig, TokenUsage, ToolSchema
from providergateway.providers import LiteLLMProvider
from providergateway.streaming import StreamOptions

_ACOMPLETION = "providergateway.providers.litellm_provider.litellm.acompletion"
_AEMBEDDING = "providergateway.providers.litellm_provider.litellm.aembedding"

# ---------------------------------------------------------------------------
# Mock helpers: lightweight stand-ins for LiteLLM response objects
# ---------------------------------------------------------------------------


class _Usage:
    def __init__(self, prompt_tokens: int, completion_tokens: int = 0) -> None:
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens


class _Function:
    def __init__(self, name: str, arguments: str) -> None:
        self.name = name
        self.arguments = arguments


class _ToolCall:
    def __init__(self, call_id: str, name: str, arguments: str) -> None:
        self.id = call_id
        self.function = _Function(name, arguments)


class _ResponseMessage:
    def __init__(self, content: str | None, tool_calls: list[_ToolCall] | None = None) -> None:
        self.content = content
        self.tool_calls = tool_calls


class _ResponseChoice:
    def __init__(self, message: _ResponseMessage, finish_reason: str) -> None:
        self.message = message
        self.finish_reason = finish_reason


class _CompletionResponse:
    """Mimics a LiteLLM non-streaming completion response object."""

    def __init__(
        self,
        content: str | None = "Hello!",
        finish_reason: str = "stop",
        prompt_tokens: int = 10,
        completion_tokens: int = 5,
        model: str = "gpt-4o-mini-2024-07-18",
        tool_calls: list[_ToolCall] | None = None,
    ) -> None:
        self.model = model
        self.choices = [_ResponseChoice(_ResponseMessage(content, tool_calls), finish_reason)]
        self.usage = _Usage(prompt_tokens, completion_tokens)


class _EmbeddingResponse:
    def __init__(self, vector: list[float], prompt_tokens: int = 2) -> None:
        self.model = "text-embedding-3-small"
        self.data = [{"embedding": vector, "index": 0, "object": "embedding"}]
        self.usage = _Usage(prompt_tokens)


# ---------------------------------------------------------------------------
# LiteLLM exception factories
# ---------------------------------------------------------------------------

_DUMMY_REQ = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
_MODEL = "gpt-4o-mini"


def _auth_error() -> litellm.AuthenticationError:
    return litellm.AuthenticationError(
        message="Missing or invalid API key",
        llm_provider="openai",
        model=_MODEL,
        response=httpx.Response(401, request=_DUMMY_REQ),
    )


def _rate_limit_error(retry_after: float | None = None) -> litellm.RateLimitError:
    exc = litellm.RateLimitError(
        message="Rate limit exceeded",
        llm_provider="openai",
        model=_MODEL,
        response=httpx.Response(429, request=_DUMMY_REQ),
    )
    exc.retry_after = retry_after
    return exc


def _timeout_error() -> litellm.Timeout:
    return litellm.Timeout(message="Request timed out", model=_MODEL, llm_provider="openai")


def _bad_request_error() -> litellm.BadRequestError:
    return litellm.BadRequestError(
        message="Invalid request",
        llm_provider="openai",
        model=_MODEL,
        response=httpx.Response(400, request=_DUMMY_REQ),
    )


def _service_unavailable_error() -> litellm.ServiceUnavailableError:
    return litellm.ServiceUnavailableError(
        message="Service unavailable",
        llm_provider="openai",
        model=_MODEL,
        response=httpx.Response(503, request=_DUMMY_REQ),
    )


def _api_connection_error() -> litellm.APIConnectionError:
    return litellm.APIConnectionError(
        message="Connection failed",
        llm_provider="openai",
        model=_MODEL,
        request=_DUMMY_REQ,
    )


# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def provider() -> LiteLLMProvider:
    return LiteLLMProvider(
        "litellm",
        ProviderConfig(model=_MODEL, timeout=5.0),
        stream_options=StreamOptions(chunk_delay=0.0),
    )


@pytest.fixture
def request_() -> GenerateRequest:
    return GenerateRequest(
        messages=[
            {"role": "system", "content": "Be terse."},
            {"role": "user", "content": "Hello"},
        ]
    )


# ---------------------------------------------------------------------------
# 1. Request conversion
# ---------------------------------------------------------------------------


class TestRequestConversion:
    """to_litellm_format builds acompletion kwargs."""

    def test_system_prompt_first(self, provider: LiteLLMProvider, request_: GenerateRequest) -> None:
        params = provider.to_litellm_format(request_)
        assert params["messages"] == [
            {"role": "system", "content": "Be terse."},
            {"role": "user", "content": "Hello"},
        ]

    def test_defaults_and_credentials(self, provider: LiteLLMProvider, request_: GenerateRequest) -> None:
        params = provider.to_litellm_format(request_)
        assert params["model"] == _MODEL
        assert params["max_tokens"] == 4096
        assert params["temperature"] == 0.0
        assert params["timeout"] == 5.0
        assert "api_key" not in params
        assert "api_base" not in params

    def test_explicit_key_and_base_url_forwarded(self, request_: GenerateRequest) -> None:
        provider = LiteLLMProvider(
            "litellm", ProviderConfig(api_key="sk-x", base_url="http://localhost:4000/")
        )
        params = provider.to_litellm_format(request_)
        assert params["api_key"] == "sk-x"
        assert params["api_base"] == "http://localhost:4000"

    def test_tools_use_function_format(self, provider: LiteLLMProvider) -> None:
        request = GenerateRequest(
            messages=[{"role": "user", "content": "Weather?"}],
            tools=[ToolSchema("get_weather", "Look up weather", {"type": "object"})],
        )
        tool = provider.to_litellm_format(request)["tools"][0]
        assert tool["type"] == "function"
        assert tool["function"]["name"] == "get_weather"


# ---------------------------------------------------------------------------
# 2. Completion
# ---------------------------------------------------------------------------


class TestGenerate:
    async def test_response_mapped(
        self, provider: LiteLLMProvider, request_: GenerateRequest, mocker: Any
    ) -> None:
        mock_acompletion = mocker.patch(_ACOMPLETION, new=AsyncMock(return_value=_CompletionResponse()))

        response = await provider.generate_response(request_)

        assert response.content == "Hello!"
        assert response.model == "gpt-4o-mini-2024-07-18"
        assert response.backend == "litellm"
        assert response.tokens_used == TokenUsage(10, 5)
        assert response.finish_reason == "stop"
        assert response.latency >= 0
        assert mock_acompletion.call_args.kwargs["model"] == _MODEL

    async def test_length_finish_reason(
        self, provider: LiteLLMProvider, request_: GenerateRequest, mocker: Any
    ) -> None:
        mocker.patch(_ACOMPLETION, new=AsyncMock(return_value=_CompletionResponse(finish_reason="length")))
        response = await provider.generate_response(request_)
        assert response.finish_reason == "length"

    async def test_tool_calls_decoded(
        self, provider: LiteLLMProvider, request_: GenerateRequest, mocker: Any
    ) -> None:
        raw = _CompletionResponse(
            content=None,
            finish_reason="tool_calls",
            tool_calls=[_ToolCall("call_1", "get_weather", '{"city": "Oslo"}')],
        )
        mocker.patch(_ACOMPLETION, new=AsyncMock(return_value=raw))

        response = await provider.generate_response(request_)

        assert response.content == ""
        assert response.finish_reason == "tool_calls"
        assert response.tool_calls[0].name == "get_weather"
        assert response.tool_calls[0].arguments == {"city": "Oslo"}

    async def test_usage_recorded(
        self, provider: LiteLLMProvider, request_: GenerateRequest, mocker: Any
    ) -> None:
        mocker.patch(_ACOMPLETION, new=AsyncMock(return_value=_CompletionResponse()))
        await provider.generate_response(request_)
        stats = await provider.get_usage()
        assert stats.total_requests == 1
        assert stats.total_tokens == 15

    async def test_simulated_stream(
        self, provider: LiteLLMProvider, request_: GenerateRequest, mocker: Any
    ) -> None:
        mocker.patch(_ACOMPLETION, new=AsyncMock(return_value=_CompletionResponse(content="Hi there friend")))

        events = await (await provider.generate_response_stream(request_)).collect()

        assert "".join(e.content_delta or "" for e in events) == "Hi there friend"
        assert events[-1].tokens_used == TokenUsage(10, 5)


# ---------------------------------------------------------------------------
# 3. Embeddings
# ---------------------------------------------------------------------------


class TestEmbedding:
    async def test_embedding(self, provider: LiteLLMProvider, mocker: Any) -> None:
        mock_embed = mocker.patch(_AEMBEDDING, new=AsyncMock(return_value=_EmbeddingResponse([0.1, 0.2, 0.3])))

        response = await provider.generate_embedding("hello")

        assert response.embedding == (0.1, 0.2, 0.3)
        assert response.tokens_used.input_tokens == 2
        assert mock_embed.call_args.kwargs["model"] == "text-embedding-3-small"
        assert mock_embed.call_args.kwargs["input"] == ["hello"]

    async def test_embedding_model_override(self, mocker: Any) -> None:
        provider = LiteLLMProvider("litellm", ProviderConfig(extra={"embedding_model": "voyage/voyage-3"}))
        mock_embed = mocker.patch(_AEMBEDDING, new=AsyncMock(return_value=_EmbeddingResponse([1.0])))
        await provider.generate_embedding("hello")
        assert mock_embed.call_args.kwargs["model"] == "voyage/voyage-3"


# ---------------------------------------------------------------------------
# 4. Error mapping
# ---------------------------------------------------------------------------


class TestErrorMapping:
    """LiteLLM exceptions are converted to the correct ErrorKind."""

    async def _assert_maps_to(
        self,
        provider: LiteLLMProvider,
        mocker: Any,
        litellm_exc: Exception,
        kind: ErrorKind,
    ) -> ProviderError:
        """Helper: patch acompletion to raise *litellm_exc*, run generate, assert kind."""
        mocker.patch(_ACOMPLETION, new=AsyncMock(side_effect=litellm_exc))
        request = GenerateRequest(messages=[{"role": "user", "content": "Hi"}])
        with pytest.raises(ProviderError) as exc_info:
            await provider.generate_response(request)
        assert exc_info.value.kind is kind
        assert exc_info.value.backend == "litellm"
        return exc_info.value

    async def test_authentication(self, provider: LiteLLMProvider, mocker: Any) -> None:
        """litellm.AuthenticationError -> authentication."""
        err = await self._assert_maps_to(provider, mocker, _auth_error(), ErrorKind.AUTHENTICATION)
        assert isinstance(err.original_error, litellm.AuthenticationError)
        assert err.status_code == 401

    async def test_rate_limit_with_retry_after(self, provider: LiteLLMProvider, mocker: Any) -> None:
        """litellm.RateLimitError -> rate_limit; retry_after is extracted."""
        err = await self._assert_maps_to(
            provider, mocker, _rate_limit_error(retry_after=30.0), ErrorKind.RATE_LIMIT
        )
        assert err.retry_after == 30.0

    async def test_rate_limit_without_retry_after(self, provider: LiteLLMProvider, mocker: Any) -> None:
        err = await self._assert_maps_to(provider, mocker, _rate_limit_error(), ErrorKind.RATE_LIMIT)
        assert err.retry_after is None

    async def test_timeout(self, provider: LiteLLMProvider, mocker: Any) -> None:
        """litellm.Timeout -> timeout."""
        await self._assert_maps_to(provider, mocker, _timeout_error(), ErrorKind.TIMEOUT)

    async def test_bad_request(self, provider: LiteLLMProvider, mocker: Any) -> None:
        """litellm.BadRequestError -> invalid_request."""
        err = await self._assert_maps_to(provider, mocker, _bad_request_error(), ErrorKind.INVALID_REQUEST)
        assert not err.retryable

    async def test_service_unavailable(self, provider: LiteLLMProvider, mocker: Any) -> None:
        """litellm.ServiceUnavailableError -> server_error."""
        await self._assert_maps_to(provider, mocker, _service_unavailable_error(), ErrorKind.SERVER_ERROR)

    async def test_api_connection(self, provider: LiteLLMProvider, mocker: Any) -> None:
        """litellm.APIConnectionError -> network_error."""
        await self._assert_maps_to(provider, mocker, _api_connection_error(), ErrorKind.NETWORK_ERROR)

    async def test_unknown_exception(self, provider: LiteLLMProvider, mocker: Any) -> None:
        """An exception outside the mapping table becomes unknown."""
        await self._assert_maps_to(provider, mocker, RuntimeError("something strange"), ErrorKind.UNKNOWN)

    async def test_embedding_errors_mapped_too(self, provider: LiteLLMProvider, mocker: Any) -> None:
        mocker.patch(_AEMBEDDING, new=AsyncMock(side_effect=_auth_error()))
        with pytest.raises(ProviderError) as exc_info:
            await provider.generate_embedding("hello")
        assert exc_info.value.kind is ErrorKind.AUTHENTICATION

    async def test_failures_recorded_in_usage(self, provider: LiteLLMProvider, mocker: Any) -> None:
        await self._assert_maps_to(provider, mocker, _bad_request_error(), ErrorKind.INVALID_REQUEST)
        stats = await provider.get_usage()
        assert stats.error_count == 1
        assert stats.error_rate == 1.0
