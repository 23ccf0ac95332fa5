from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from providergateway.models import ProviderConfig


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_version: str = Field(default="0.1.0")

    # Observability
    otel_exporter_otlp_endpoint: str | None = Field(default=None)
    otel_service_name: str = Field(default="provider-gateway")
    log_level: str = Field(default="INFO")

    # Backend selection
    default_backend: str = Field(default="claude")
    enable_mock_backend: bool = Field(default=False)

    # Backend credentials (SecretStr keeps them out of logs)
    anthropic_api_key: SecretStr | None = Field(default=None)
    anthropic_base_url: str = Field(default="https://api.anthropic.com")
    anthropic_model: str = Field(default="claude-3-sonnet-20240229")
    anthropic_max_tokens: int = Field(default=4096)

    gemini_api_key: SecretStr | None = Field(default=None)
    gemini_base_url: str = Field(default="https://generativelanguage.googleapis.com")
    gemini_model: str = Field(default="gemini-pro")
    gemini_max_tokens: int = Field(default=4096)

    # LiteLLM backend: any model string LiteLLM understands, keys read from env
    litellm_model: str | None = Field(default=None)

    llm_temperature: float = Field(default=0.0)
    llm_timeout: float = Field(default=30.0)

    # Retry / circuit breaker
    llm_max_retries: int = Field(default=3)
    retry_initial_delay: float = Field(default=1.0)
    retry_multiplier: float = Field(default=2.0)
    retry_max_delay: float = Field(default=30.0)
    circuit_failure_threshold: int = Field(default=5)
    circuit_cooldown: float = Field(default=60.0)

    # Rate limiting, applied per (backend, model)
    rate_limit_requests_per_minute: int = Field(default=60)
    rate_limit_tokens_per_minute: int | None = Field(default=None)
    rate_limit_burst: int = Field(default=0)

    # Streaming
    stream_buffer_size: int = Field(default=100)
    stream_send_timeout: float = Field(default=30.0)
    stream_idle_timeout: float = Field(default=30.0)
    simulated_chunk_delay: float = Field(default=0.02)

    # Embedding cache
    embedding_cache_size: int = Field(default=1000)
    embedding_cache_ttl: float = Field(default=3600.0)

    def provider_configs(self) -> dict[str, ProviderConfig]:
        """Build a :class:`ProviderConfig` for every backend that is configured.

        Backends without credentials are left out so the gateway never
        instantiates an adapter that is certain to fail authentication.
        """
        configs: dict[str, ProviderConfig] = {}
        if self.anthropic_api_key is not None:
            configs["claude"] = ProviderConfig(
                api_key=self.anthropic_api_key.get_secret_value(),
                base_url=self.anthropic_base_url,
                model=self.anthropic_model,
                max_tokens=self.anthropic_max_tokens,
                temperature=self.llm_temperature,
                timeout=self.llm_timeout,
            )
        if self.gemini_api_key is not None:
            configs["gemini"] = ProviderConfig(
                api_key=self.gemini_api_key.get_secret_value(),
                base_url=self.gemini_base_url,
                model=self.gemini_model,
                max_tokens=self.gemini_max_tokens,
                temperature=self.llm_temperature,
                timeout=self.llm_timeout,
            )
        if self.litellm_model:
            configs["litellm"] = ProviderConfig(
                model=self.litellm_model,
                temperature=self.llm_temperature,
                timeout=self.llm_timeout,
            )
        if self.enable_mock_backend:
            configs["mock"] = ProviderConfig(model="mock-model")
        return configs


settings = Settings()
