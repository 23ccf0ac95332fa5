"""Adapter for the Google Generative Language API.

This backend has no incremental delivery in the gateway; streaming requests
go through the simulated path inherited from :class:`Provider`.
"""

from typing import Any

from providergateway.errors import ErrorKind, ProviderError
from providergateway.models import (
    FINISH_CONTENT_FILTER,
    FINISH_STOP,
    FINISH_TOOL_CALLS,
    EmbeddingResponse,
    GenerateRequest,
    GenerateResponse,
    TokenUsage,
    ToolCall,
    normalize_finish_reason,
)
from providergateway.providers.base import Provider
from providergateway.tokens import count_tokens

DEFAULT_EMBEDDING_MODEL = "embedding-001"

SAFETY_CATEGORIES: tuple[str, ...] = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)
SAFETY_THRESHOLD = "BLOCK_MEDIUM_AND_ABOVE"


class GeminiProvider(Provider):
    """Gemini models over ``POST {base_url}/v1beta/models/{model}:generateContent``."""

    default_base_url = "https://generativelanguage.googleapis.com"
    default_model = "gemini-pro"
    supports_embeddings = True

    @property
    def embedding_model(self) -> str:
        return self.config.extra.get("embedding_model", DEFAULT_EMBEDDING_MODEL)

    def _headers(self) -> dict[str, str]:
        return {
            "x-goog-api-key": self.config.api_key,
            "content-type": "application/json",
        }

    def build_payload(self, request: GenerateRequest) -> dict[str, Any]:
        """Convert a :class:`GenerateRequest` to a ``generateContent`` body."""
        generation_config: dict[str, Any] = {"maxOutputTokens": self.resolve_max_tokens(request)}
        temperature = self.resolve_temperature(request)
        if temperature > 0:
            generation_config["temperature"] = temperature

        payload: dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if m.role == "assistant" else "user",
                    "parts": [{"text": m.content}],
                }
                for m in request.conversation
            ],
            "generationConfig": generation_config,
            "safetySettings": [
                {"category": category, "threshold": SAFETY_THRESHOLD}
                for category in SAFETY_CATEGORIES
            ],
        }
        system = request.effective_system_prompt
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        if request.tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": tool.name,
                            "description": tool.description,
                            "parameters": tool.parameters or {"type": "object", "properties": {}},
                        }
                        for tool in request.tools
                    ]
                }
            ]
        return payload

    def parse_response(self, body: dict[str, Any], model: str) -> GenerateResponse:
        usage = body.get("usageMetadata") or {}
        tokens = TokenUsage(
            input_tokens=usage.get("promptTokenCount", 0),
            output_tokens=usage.get("candidatesTokenCount", 0),
        )
        model = body.get("modelVersion") or model

        candidates = body.get("candidates") or []
        if not candidates:
            block_reason = (body.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                return GenerateResponse(
                    content="",
                    model=model,
                    backend=self.name,
                    tokens_used=tokens,
                    finish_reason=FINISH_CONTENT_FILTER,
                    metadata={"block_reason": block_reason},
                )
            raise ProviderError(
                ErrorKind.SERVER_ERROR,
                "response contained no candidates",
                self.name,
            )

        candidate = candidates[0]
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for index, part in enumerate((candidate.get("content") or {}).get("parts") or []):
            if "text" in part:
                text_parts.append(part["text"])
            elif "functionCall" in part:
                call = part["functionCall"]
                tool_calls.append(
                    ToolCall(
                        id=f"call_{index}",
                        name=call.get("name", ""),
                        arguments=call.get("args") or {},
                    )
                )

        finish_reason = normalize_finish_reason(candidate.get("finishReason"))
        if tool_calls and finish_reason == FINISH_STOP:
            finish_reason = FINISH_TOOL_CALLS

        return GenerateResponse(
            content="".join(text_parts),
            model=model,
            backend=self.name,
            tokens_used=tokens,
            finish_reason=finish_reason,
            tool_calls=tuple(tool_calls),
        )

    async def _generate(self, request: GenerateRequest) -> GenerateResponse:
        model = self.resolve_model(request)
        body = await self._post_json(
            f"{self.config.base_url}/v1beta/models/{model}:generateContent",
            self.build_payload(request),
            self._headers(),
            model=model,
        )
        return self.parse_response(body, model)

    async def _embed(self, text: str) -> EmbeddingResponse:
        model = self.embedding_model
        body = await self._post_json(
            f"{self.config.base_url}/v1beta/models/{model}:embedContent",
            {"model": f"models/{model}", "content": {"parts": [{"text": text}]}},
            self._headers(),
            model=model,
        )
        values = (body.get("embedding") or {}).get("values")
        if not values:
            raise ProviderError(
                ErrorKind.SERVER_ERROR,
                "embedding response contained no values",
                self.name,
            )
        return EmbeddingResponse(
            embedding=tuple(float(v) for v in values),
            model=model,
            backend=self.name,
            tokens_used=TokenUsage(input_tokens=count_tokens(text, model)),
        )
