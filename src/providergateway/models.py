"""Canonical request, response and event types shared by every backend.

These types form the public contract between callers and the gateway.  All
of them are immutable (``frozen=True``) and validated at construction time so
callers get a fast, explicit error rather than a cryptic backend rejection.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from providergateway.errors import ProviderError, invalid_request

_VALID_ROLES: frozenset[str] = frozenset({"system", "user", "assistant", "tool", "function"})

# ---------------------------------------------------------------------------
# Finish reasons
# ---------------------------------------------------------------------------

FINISH_STOP = "stop"
FINISH_LENGTH = "length"
FINISH_TOOL_CALLS = "tool_calls"
FINISH_CONTENT_FILTER = "content_filter"
FINISH_UNKNOWN = "unknown"

_FINISH_REASONS: dict[str, str] = {
    # Anthropic Messages API
    "end_turn": FINISH_STOP,
    "stop_sequence": FINISH_STOP,
    "max_tokens": FINISH_LENGTH,
    "tool_use": FINISH_TOOL_CALLS,
    # Google Generative Language API
    "STOP": FINISH_STOP,
    "MAX_TOKENS": FINISH_LENGTH,
    "SAFETY": FINISH_CONTENT_FILTER,
    "RECITATION": FINISH_CONTENT_FILTER,
    "BLOCKLIST": FINISH_CONTENT_FILTER,
    "PROHIBITED_CONTENT": FINISH_CONTENT_FILTER,
    # OpenAI-compatible (LiteLLM)
    "stop": FINISH_STOP,
    "length": FINISH_LENGTH,
    "tool_calls": FINISH_TOOL_CALLS,
    "function_call": FINISH_TOOL_CALLS,
    "content_filter": FINISH_CONTENT_FILTER,
}


def normalize_finish_reason(raw: str | None) -> str:
    """Map a backend-specific stop reason onto the canonical vocabulary.

    Missing reasons are treated as a normal stop; unrecognised ones map to
    ``"unknown"``.
    """
    if not raw:
        return FINISH_STOP
    return _FINISH_REASONS.get(raw, FINISH_UNKNOWN)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Message:
    """One conversation turn.

    Args:
        role: One of system, user, assistant, tool, function.
        content: Text of the turn.
        name: Optional author or tool name.
    """

    role: str
    content: str
    name: str | None = None

    def __post_init__(self) -> None:
        if self.role not in _VALID_ROLES:
            raise invalid_request(
                f"invalid role '{self.role}'; must be one of {sorted(_VALID_ROLES)}"
            )
        if not isinstance(self.content, str):
            raise invalid_request(f"message content must be a string, got {type(self.content).__name__}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        if "role" not in data or "content" not in data:
            raise invalid_request("message must contain both 'role' and 'content' keys")
        return cls(role=data["role"], content=data["content"], name=data.get("name"))


@dataclass(frozen=True)
class ToolSchema:
    """A tool the model may call, described by a JSON schema."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise invalid_request("tool name must be a non-empty string")


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GenerateRequest:
    """Parameters for a single generation call.

    Args:
        messages: Ordered conversation.  Plain dicts with ``role`` and
            ``content`` keys are converted to :class:`Message`.
        max_tokens: Maximum tokens to generate.  ``None`` defers to the
            backend configuration.
        temperature: Sampling temperature in ``[0.0, 2.0]``.  ``None`` defers
            to the backend configuration.
        model: Backend model override.  ``None`` uses the configured model.
        system_prompt: Explicit system prompt.  Takes precedence over any
            ``system``-role message in *messages*.
        tools: Tool schemas offered to the model.
        metadata: Opaque caller data; counted towards the token estimate.

    Raises:
        ProviderError: With kind ``invalid_request`` if any field fails
            validation.
    """

    messages: tuple[Message, ...]
    max_tokens: int | None = None
    temperature: float | None = None
    model: str | None = None
    system_prompt: str | None = None
    tools: tuple[ToolSchema, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        messages = tuple(
            m if isinstance(m, Message) else Message.from_dict(m) for m in self.messages
        )
        object.__setattr__(self, "messages", messages)
        object.__setattr__(self, "tools", tuple(self.tools))

        if not messages:
            raise invalid_request("messages must not be empty")

        if not any(m.role != "system" for m in messages):
            raise invalid_request("messages must contain at least one non-system turn")

        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            raise invalid_request(f"temperature must be in [0.0, 2.0], got {self.temperature}")

        if self.max_tokens is not None and self.max_tokens <= 0:
            raise invalid_request(f"max_tokens must be a positive integer, got {self.max_tokens}")

        if self.model is not None and not self.model.strip():
            raise invalid_request("model must be a non-empty string when given")

        names = [t.name for t in self.tools]
        if len(names) != len(set(names)):
            raise invalid_request("tool names must be unique")

    @property
    def effective_system_prompt(self) -> str | None:
        """The single system prompt sent to the backend.

        The explicit ``system_prompt`` wins; otherwise the last ``system``
        message applies.
        """
        if self.system_prompt:
            return self.system_prompt
        prompt = None
        for message in self.messages:
            if message.role == "system":
                prompt = message.content
        return prompt

    @property
    def conversation(self) -> tuple[Message, ...]:
        """Messages with every ``system`` turn removed."""
        return tuple(m for m in self.messages if m.role != "system")

    @property
    def prompt_text(self) -> str:
        return "\n".join(m.content for m in self.messages)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    def __post_init__(self) -> None:
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("token counts must be non-negative")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class GenerateResponse:
    """Complete result of a non-streaming generation call.

    Attributes:
        content: Generated text.
        model: Model that produced the text, as reported by the backend.
        backend: Gateway backend name.
        tokens_used: Token accounting; ``total_tokens`` is always the sum of
            input and output.
        finish_reason: Canonical stop reason (``stop``, ``length``,
            ``tool_calls``, ``content_filter``, ``unknown``).
        latency: Wall-clock seconds spent on the backend call.
        request_id: Gateway correlation ID.
        tool_calls: Tool invocations requested by the model.
        metadata: Backend-specific extras (e.g. the backend's own message ID).
    """

    content: str
    model: str
    backend: str
    tokens_used: TokenUsage
    finish_reason: str = FINISH_STOP
    latency: float = 0.0
    request_id: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamEvent:
    """A single unit of streaming output.

    Exactly one of the three shapes is populated: a ``content_delta``; a
    terminal ``finish_reason`` with ``tokens_used``; or a terminal ``error``.
    """

    content_delta: str | None = None
    finish_reason: str | None = None
    tokens_used: TokenUsage | None = None
    error: ProviderError | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def delta(cls, text: str, **metadata: Any) -> "StreamEvent":
        return cls(content_delta=text, metadata=metadata)

    @classmethod
    def finish(cls, finish_reason: str, tokens_used: TokenUsage, **metadata: Any) -> "StreamEvent":
        return cls(finish_reason=finish_reason, tokens_used=tokens_used, metadata=metadata)

    @classmethod
    def failure(cls, error: ProviderError, **metadata: Any) -> "StreamEvent":
        return cls(error=error, metadata=metadata)

    @property
    def is_terminal(self) -> bool:
        return self.finish_reason is not None or self.error is not None


@dataclass(frozen=True)
class EmbeddingResponse:
    embedding: tuple[float, ...]
    model: str
    backend: str
    tokens_used: TokenUsage
    latency: float = 0.0
    request_id: str = ""
    cached: bool = False


# ---------------------------------------------------------------------------
# Configuration and statistics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable per-backend configuration.

    Adapters never mutate a config; they derive a defaulted copy with
    :meth:`with_defaults`.  Rotating a key means building a new adapter.
    """

    api_key: str = field(default="", repr=False)
    base_url: str = ""
    model: str = ""
    max_tokens: int = 0
    temperature: float = 0.0
    timeout: float = 0.0
    extra: dict[str, Any] = field(default_factory=dict)

    def with_defaults(
        self,
        *,
        base_url: str,
        model: str,
        max_tokens: int = 4096,
        timeout: float = 30.0,
    ) -> "ProviderConfig":
        return replace(
            self,
            base_url=(self.base_url or base_url).rstrip("/"),
            model=self.model or model,
            max_tokens=self.max_tokens or max_tokens,
            timeout=self.timeout or timeout,
        )


@dataclass(frozen=True)
class UsageStats:
    """Point-in-time copy of a backend's usage counters."""

    total_requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    average_latency: float = 0.0
    error_count: int = 0
    error_rate: float = 0.0
    last_request_time: datetime | None = None
    requests_per_hour: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class BackendHealth:
    backend: str
    healthy: bool
    latency: float = 0.0
    error: ProviderError | None = None
