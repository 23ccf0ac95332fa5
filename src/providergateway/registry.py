"""Backend registry: name -> constructor table plus a cache of live adapters."""

import threading
from collections.abc import Callable
from functools import partial

import httpx
import structlog

from providergateway.errors import ProviderNotFoundError
from providergateway.models import ProviderConfig
from providergateway.providers.anthropic import AnthropicProvider
from providergateway.providers.base import Provider
from providergateway.providers.gemini import GeminiProvider
from providergateway.providers.litellm_provider import LiteLLMProvider
from providergateway.providers.mock import MockProvider
from providergateway.streaming import StreamOptions

_log = structlog.get_logger(__name__)

ProviderConstructor = Callable[[str, ProviderConfig], Provider]


class ProviderRegistry:
    """Creates adapters lazily and keeps one instance per backend name.

    ``create_provider`` is idempotent: the first call builds and caches the
    adapter, later calls return the same instance whatever config they pass.
    """

    def __init__(self) -> None:
        self._constructors: dict[str, ProviderConstructor] = {}
        self._providers: dict[str, Provider] = {}
        self._lock = threading.Lock()

    def register_provider(self, name: str, constructor: ProviderConstructor) -> None:
        with self._lock:
            self._constructors[name] = constructor

    def create_provider(self, name: str, config: ProviderConfig) -> Provider:
        """Return the adapter for *name*, building it on first use.

        Raises:
            ProviderNotFoundError: No constructor is registered for *name*.
            ProviderError: The constructor rejected *config* (e.g. missing
                API key).
        """
        with self._lock:
            provider = self._providers.get(name)
            if provider is not None:
                return provider

            constructor = self._constructors.get(name)
            if constructor is None:
                raise ProviderNotFoundError(name, list(self._constructors))

            provider = constructor(name, config)
            self._providers[name] = provider

        _log.info("provider_created", backend=name, model=provider.config.model)
        return provider

    def get_provider(self, name: str) -> Provider:
        with self._lock:
            provider = self._providers.get(name)
            if provider is None:
                raise ProviderNotFoundError(name, list(self._providers))
            return provider

    def supported_providers(self) -> list[str]:
        with self._lock:
            return sorted(self._constructors)

    def available_providers(self) -> list[str]:
        with self._lock:
            return sorted(self._providers)

    def providers(self) -> dict[str, Provider]:
        """Snapshot of the live adapters."""
        with self._lock:
            return dict(self._providers)

    async def close_all(self) -> None:
        """Close every live adapter and empty the cache.

        Closing is best effort: every adapter is attempted, failures are
        logged and the last one is re-raised once all have been tried.
        """
        with self._lock:
            providers, self._providers = self._providers, {}

        last_error: Exception | None = None
        for name, provider in providers.items():
            try:
                await provider.close()
            except Exception as exc:
                _log.error("provider_close_failed", backend=name, error=str(exc))
                last_error = exc
        if last_error is not None:
            raise last_error


def build_default_registry(
    stream_options: StreamOptions | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> ProviderRegistry:
    """Registry with the built-in backends: claude, gemini, litellm and mock.

    *http_client* is shared by the HTTP adapters when given (tests pass one
    backed by ``httpx.MockTransport``).
    """
    registry = ProviderRegistry()
    registry.register_provider(
        "claude",
        partial(AnthropicProvider, http_client=http_client, stream_options=stream_options),
    )
    registry.register_provider(
        "gemini",
        partial(GeminiProvider, http_client=http_client, stream_options=stream_options),
    )
    registry.register_provider(
        "litellm",
        partial(LiteLLMProvider, stream_options=stream_options),
    )
    registry.register_provider("mock", MockProvider)
    return registry
