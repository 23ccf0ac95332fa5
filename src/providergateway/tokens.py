"""Heuristic, script-aware token estimation.

No tokenizer is loaded: counts are derived from code-point totals using a
per-model-family divisor pair (Han ideographs vs everything else).  The
numbers are an approximation for budgeting and rate limiting only; backends
report the authoritative counts after each call.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from providergateway.models import GenerateRequest

DEFAULT_OUTPUT_TOKENS = 1000
STRUCTURED_OVERHEAD = 0.1

_HAN_RANGES: tuple[tuple[int, int], ...] = (
    (0x3400, 0x4DBF),  # Extension A
    (0x4E00, 0x9FFF),  # Unified ideographs
    (0xF900, 0xFAFF),  # Compatibility ideographs
    (0x20000, 0x2FA1F),  # Extensions B-F, compatibility supplement
    (0x30000, 0x3134F),  # Extension G
)


@dataclass(frozen=True)
class TokenProfile:
    """Characters-per-token divisors for one model family."""

    name: str
    cjk_chars_per_token: float
    other_chars_per_token: float


CLAUDE_PROFILE = TokenProfile("claude", 1.5, 4.0)
GPT_PROFILE = TokenProfile("gpt", 1.0, 4.0)
GENERIC_PROFILE = TokenProfile("generic", 3.0, 3.0)

_PROFILE_PREFIXES: tuple[tuple[tuple[str, ...], TokenProfile], ...] = (
    (("claude", "anthropic/"), CLAUDE_PROFILE),
    (("gpt", "o1", "o3", "openai/"), GPT_PROFILE),
)


def profile_for(model: str | None) -> TokenProfile:
    """Pick the estimation profile for *model* by name prefix."""
    name = (model or "").strip().lower()
    for prefixes, profile in _PROFILE_PREFIXES:
        if name.startswith(prefixes):
            return profile
    return GENERIC_PROFILE


def _is_han(char: str) -> bool:
    code = ord(char)
    return any(lo <= code <= hi for lo, hi in _HAN_RANGES)


def count_tokens(text: str, model: str | None = "generic") -> int:
    """Estimate the number of tokens in *text* for *model*.

    Returns ``0`` for the empty string and at least ``1`` for any other
    input.  Rounds half up.
    """
    if not text:
        return 0

    clean = text.strip()
    profile = profile_for(model)
    cjk = sum(1 for ch in clean if _is_han(ch))
    other = len(clean) - cjk

    estimate = cjk / profile.cjk_chars_per_token + other / profile.other_chars_per_token
    return max(1, int(estimate + 0.5))


def _count_value(value: Any, model: str | None) -> int:
    if isinstance(value, str):
        return count_tokens(value, model)
    if isinstance(value, Mapping):
        return estimate_structured_tokens(value, model)
    if isinstance(value, Iterable) and not isinstance(value, (bytes, bytearray)):
        return sum(_count_value(item, model) for item in value)
    return count_tokens(str(value), model)


def estimate_structured_tokens(content: Mapping[str, Any], model: str | None = "generic") -> int:
    """Estimate tokens for nested dict/list content.

    Keys and leaf values are counted as text; nested mappings recurse.  Each
    mapping level adds a flat 10% (truncated) for JSON punctuation.
    """
    total = 0
    for key, value in content.items():
        total += count_tokens(str(key), model)
        total += _count_value(value, model)
    return total + int(total * STRUCTURED_OVERHEAD)


def estimate_message_tokens(
    content: str,
    metadata: Mapping[str, Any] | None = None,
    model: str | None = "generic",
) -> int:
    tokens = count_tokens(content, model)
    if metadata:
        tokens += estimate_structured_tokens(metadata, model)
    return tokens


def estimate_request_tokens(
    request: GenerateRequest,
    model: str | None = None,
    default_output_tokens: int = DEFAULT_OUTPUT_TOKENS,
) -> int:
    """Estimate the total token cost of *request*, including expected output.

    Input is the sum of every conversation turn, the effective system prompt,
    tool schemas and request metadata.  Output is the requested
    ``max_tokens``, or *default_output_tokens* when unset.
    """
    model = model or request.model
    tokens = sum(count_tokens(m.content, model) for m in request.conversation)
    system = request.effective_system_prompt
    if system:
        tokens += count_tokens(system, model)
    for tool in request.tools:
        tokens += count_tokens(tool.name, model) + count_tokens(tool.description, model)
        if tool.parameters:
            tokens += estimate_structured_tokens(tool.parameters, model)
    if request.metadata:
        tokens += estimate_structured_tokens(request.metadata, model)
    return tokens + (request.max_tokens or default_output_tokens)


class TokenCounter:
    """Token estimator bound to one model, for repeated use.

    Example::

        counter = TokenCounter("claude-3-5-sonnet")
        counter.count("hello world")  # -> 3
    """

    def __init__(self, model: str = "generic") -> None:
        self.model = model

    @property
    def profile(self) -> TokenProfile:
        return profile_for(self.model)

    def count(self, text: str) -> int:
        return count_tokens(text, self.model)

    def count_structured(self, content: Mapping[str, Any]) -> int:
        return estimate_structured_tokens(content, self.model)

    def count_message(self, content: str, metadata: Mapping[str, Any] | None = None) -> int:
        return estimate_message_tokens(content, metadata, self.model)

    def count_request(self, request: GenerateRequest) -> int:
        return estimate_request_tokens(request, self.model)
