"""Backend adapters.

Public surface area for the providers package.  Import from here rather than
from the individual submodules so internal structure can change freely.

Example::

    from providergateway.providers import AnthropicProvider
    from providergateway.models import GenerateRequest, ProviderConfig

    provider = AnthropicProvider("claude", ProviderConfig(api_key="sk-ant-..."))
    request = GenerateRequest(messages=[{"role": "user", "content": "Hello"}])
    response = await provider.generate_response(request)
"""

from providergateway.providers.anthropic import AnthropicProvider
from providergateway.providers.base import Provider
from providergateway.providers.gemini import GeminiProvider
from providergateway.providers.litellm_provider import LiteLLMProvider
from providergateway.providers.mock import MockProvider

__all__ = [
    "Provider",
    "AnthropicProvider",
    "GeminiProvider",
    "LiteLLMProvider",
    "MockProvider",
]
