"""Shared fixtures.

Gateways under test are assembled from a :class:`ProviderRegistry` whose
constructors hand back pre-built :class:`MockProvider` instances, so tests can
queue responses and failures on the provider and then drive it through the
gateway.  Retry delays are zero so retry tests run instantly.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest

from providergateway.cache import EmbeddingCache
from providergateway.gateway import Gateway
from providergateway.models import ProviderConfig
from providergateway.providers.base import Provider
from providergateway.providers.mock import MockProvider
from providergateway.ratelimit import RateLimit, RateLimiter
from providergateway.registry import ProviderRegistry
from providergateway.retry import RetryPolicy


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Three attempts with no backoff delay."""
    return RetryPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0)


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider("mock")


@pytest.fixture
def make_gateway(fast_retry: RetryPolicy) -> Callable[..., Gateway]:
    """Factory building a gateway over the given pre-built providers.

    Every provider is registered under its own name and configured, so it is
    available immediately.
    """

    def _make(*providers: Provider, **kwargs: Any) -> Gateway:
        registry = ProviderRegistry()
        for provider in providers:
            registry.register_provider(provider.name, lambda name, cfg, p=provider: p)
        kwargs.setdefault("retry_policy", fast_retry)
        kwargs.setdefault("rate_limiter", RateLimiter(RateLimit(requests_per_minute=1000)))
        kwargs.setdefault("embedding_cache", EmbeddingCache(max_size=100))
        return Gateway(registry, {p.name: ProviderConfig() for p in providers}, **kwargs)

    return _make


@pytest.fixture
def gateway(make_gateway: Callable[..., Gateway], mock_provider: MockProvider) -> Gateway:
    return make_gateway(mock_provider)


@pytest.fixture
def mock_span() -> MagicMock:
    """A MagicMock that behaves as an OTel span context manager."""
    span = MagicMock()
    span.__enter__ = MagicMock(return_value=span)
    span.__exit__ = MagicMock(return_value=False)
    return span


@pytest.fixture
def mock_tracer(mock_span: MagicMock) -> MagicMock:
    """A MagicMock tracer whose start_as_current_span always returns mock_span."""
    tracer = MagicMock()
    tracer.start_as_current_span.return_value = mock_span
    return tracer
