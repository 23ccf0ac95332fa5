"""Provider gateway: one canonical contract over several LLM backends.

Example::

    from providergateway import Gateway, GenerateRequest

    async with Gateway.from_settings() as gateway:
        request = GenerateRequest(messages=[{"role": "user", "content": "Hello"}])
        response = await gateway.generate_response(request)
        print(response.content, response.tokens_used.total_tokens)
"""

from providergateway.cache import EmbeddingCache
from providergateway.errors import (
    CircuitOpenError,
    ErrorKind,
    GatewayError,
    ProviderError,
    ProviderNotFoundError,
    is_retryable,
)
from providergateway.gateway import Gateway
from providergateway.models import (
    BackendHealth,
    EmbeddingResponse,
    GenerateRequest,
    GenerateResponse,
    Message,
    ProviderConfig,
    StreamEvent,
    TokenUsage,
    ToolCall,
    ToolSchema,
    UsageStats,
)
from providergateway.ratelimit import RateLimit, RateLimiter
from providergateway.registry import ProviderRegistry, build_default_registry
from providergateway.retry import CircuitBreaker, CircuitState, RetryPolicy
from providergateway.streaming import EventStream, StreamOptions, StreamState
from providergateway.tokens import TokenCounter, count_tokens

__all__ = [
    # Façade
    "Gateway",
    # Models
    "Message",
    "ToolSchema",
    "ToolCall",
    "GenerateRequest",
    "GenerateResponse",
    "TokenUsage",
    "StreamEvent",
    "EmbeddingResponse",
    "ProviderConfig",
    "UsageStats",
    "BackendHealth",
    # Building blocks
    "ProviderRegistry",
    "build_default_registry",
    "RateLimit",
    "RateLimiter",
    "RetryPolicy",
    "CircuitBreaker",
    "CircuitState",
    "EventStream",
    "StreamOptions",
    "StreamState",
    "EmbeddingCache",
    "TokenCounter",
    "count_tokens",
    # Errors
    "GatewayError",
    "ProviderError",
    "ProviderNotFoundError",
    "CircuitOpenError",
    "ErrorKind",
    "is_retryable",
]
