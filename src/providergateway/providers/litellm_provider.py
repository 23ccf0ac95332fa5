"""Adapter routing any LiteLLM model string through ``litellm.acompletion``.

LiteLLM already handles provider selection and request normalisation, so this
adapter only converts to and from the gateway's canonical types and maps
LiteLLM's exception hierarchy onto :class:`~providergateway.errors.ErrorKind`.
Streaming uses the simulated path.
"""

import json
import logging
from typing import Any

import litellm

from providergateway.errors import ErrorKind, ProviderError, kind_for_status
from providergateway.models import (
    EmbeddingResponse,
    GenerateRequest,
    GenerateResponse,
    TokenUsage,
    ToolCall,
    normalize_finish_reason,
)
from providergateway.providers.base import Provider

# LiteLLM logs through stdlib logging; keep it quiet.
logging.getLogger("LiteLLM").setLevel(logging.WARNING)
logging.getLogger("LiteLLM Router").setLevel(logging.WARNING)
logging.getLogger("LiteLLM Proxy").setLevel(logging.WARNING)

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"


class LiteLLMProvider(Provider):
    """Backend for any model LiteLLM supports (``gpt-4o``, ``groq/llama-3.1-70b``, ...).

    Credentials are read by LiteLLM from the usual provider environment
    variables unless ``config.api_key`` is set.
    """

    default_model = "gpt-4o-mini"
    default_timeout = 60.0
    requires_api_key = False
    supports_embeddings = True

    @property
    def embedding_model(self) -> str:
        return self.config.extra.get("embedding_model", DEFAULT_EMBEDDING_MODEL)

    def _credentials(self) -> dict[str, Any]:
        params: dict[str, Any] = {"timeout": self.config.timeout}
        if self.config.api_key:
            params["api_key"] = self.config.api_key
        if self.config.base_url:
            params["api_base"] = self.config.base_url
        return params

    def to_litellm_format(self, request: GenerateRequest) -> dict[str, Any]:
        """Convert a :class:`GenerateRequest` to ``litellm.acompletion`` kwargs."""
        messages: list[dict[str, str]] = []
        system = request.effective_system_prompt
        if system:
            messages.append({"role": "system", "content": system})
        messages.extend({"role": m.role, "content": m.content} for m in request.conversation)

        params: dict[str, Any] = {
            "model": self.resolve_model(request),
            "messages": messages,
            "max_tokens": self.resolve_max_tokens(request),
            "temperature": self.resolve_temperature(request),
        }
        if request.tools:
            params["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters or {"type": "object", "properties": {}},
                    },
                }
                for tool in request.tools
            ]
        params.update(self._credentials())
        return params

    def parse_response(self, raw: Any, model: str) -> GenerateResponse:
        """Convert a LiteLLM non-streaming response to :class:`GenerateResponse`."""
        choice = raw.choices[0]
        message = choice.message
        tool_calls = tuple(
            ToolCall(
                id=getattr(call, "id", "") or "",
                name=call.function.name,
                arguments=_decode_arguments(call.function.arguments),
            )
            for call in (getattr(message, "tool_calls", None) or [])
        )
        usage = getattr(raw, "usage", None)
        return GenerateResponse(
            content=message.content or "",
            model=getattr(raw, "model", None) or model,
            backend=self.name,
            tokens_used=TokenUsage(
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
            finish_reason=normalize_finish_reason(choice.finish_reason),
            tool_calls=tool_calls,
        )

    async def _generate(self, request: GenerateRequest) -> GenerateResponse:
        params = self.to_litellm_format(request)
        try:
            raw = await litellm.acompletion(**params)
        except Exception as exc:
            raise self.map_error(exc) from exc
        return self.parse_response(raw, params["model"])

    async def _embed(self, text: str) -> EmbeddingResponse:
        model = self.embedding_model
        try:
            raw = await litellm.aembedding(model=model, input=[text], **self._credentials())
        except Exception as exc:
            raise self.map_error(exc) from exc

        item = raw.data[0]
        vector = item["embedding"] if isinstance(item, dict) else item.embedding
        usage = getattr(raw, "usage", None)
        return EmbeddingResponse(
            embedding=tuple(float(v) for v in vector),
            model=getattr(raw, "model", None) or model,
            backend=self.name,
            tokens_used=TokenUsage(input_tokens=getattr(usage, "prompt_tokens", 0) or 0),
        )

    def map_error(self, error: Exception) -> ProviderError:
        """Map a LiteLLM exception to a typed :class:`ProviderError`.

        Mapping table:

        ===================================  ==================
        LiteLLM exception                    Kind
        ===================================  ==================
        ``litellm.RateLimitError``           rate_limit
        ``litellm.AuthenticationError``      authentication
        ``litellm.Timeout``                  timeout
        ``litellm.BadRequestError``          invalid_request
        ``litellm.NotFoundError``            invalid_request
        ``litellm.APIConnectionError``       network_error
        ``litellm.ServiceUnavailableError``  server_error
        ``litellm.InternalServerError``      server_error
        ``litellm.APIError`` (catch-all)     server_error
        ===================================  ==================

        ``litellm.ContextWindowExceededError`` is a subclass of
        ``litellm.BadRequestError`` and is therefore also mapped to
        ``invalid_request``.  Anything else is classified from its
        ``status_code`` attribute when present.
        """
        # Already mapped.
        if isinstance(error, ProviderError):
            return error

        status_code = getattr(error, "status_code", None)
        if not isinstance(status_code, int):
            status_code = None

        if isinstance(error, litellm.RateLimitError):
            kind = ErrorKind.RATE_LIMIT
        elif isinstance(error, litellm.AuthenticationError):
            kind = ErrorKind.AUTHENTICATION
        # Timeouts first: some LiteLLM versions raise them as connection errors.
        elif isinstance(error, litellm.Timeout):
            kind = ErrorKind.TIMEOUT
        elif isinstance(error, litellm.BadRequestError | litellm.NotFoundError):
            kind = ErrorKind.INVALID_REQUEST
        elif isinstance(error, litellm.APIConnectionError):
            kind = ErrorKind.NETWORK_ERROR
        elif isinstance(
            error,
            litellm.ServiceUnavailableError | litellm.InternalServerError | litellm.APIError,
        ):
            kind = ErrorKind.SERVER_ERROR
        elif status_code is not None:
            kind = kind_for_status(status_code)
        else:
            kind = ErrorKind.UNKNOWN

        retry_after = getattr(error, "retry_after", None)
        return ProviderError(
            kind,
            str(error),
            self.name,
            retry_after=retry_after if isinstance(retry_after, (int, float)) else None,
            status_code=status_code,
            original_error=error,
        )


def _decode_arguments(arguments: Any) -> dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if not arguments:
        return {}
    try:
        decoded = json.loads(arguments)
    except (TypeError, ValueError):
        return {"raw": arguments}
    return decoded if isinstance(decoded, dict) else {"value": decoded}
