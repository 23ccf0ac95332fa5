"""Tests for metrics, logging and tracing setup (observability.py)."""

from __future__ import annotations

import logging
from collections.abc import Callable

import pytest
from prometheus_client import REGISTRY

from providergateway.config import Settings
from providergateway.gateway import Gateway
from providergateway.models import GenerateRequest
from providergateway.observability import configure_logging, configure_tracing, record_request
from providergateway.providers.mock import MockProvider


def _sample(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class TestRecordRequest:
    def test_counts_outcome(self) -> None:
        before = _sample("gateway_requests_total", backend="obs", operation="generate", outcome="ok")
        record_request("obs", "generate", "ok")
        after = _sample("gateway_requests_total", backend="obs", operation="generate", outcome="ok")
        assert after - before == 1

    def test_latency_and_tokens(self) -> None:
        latency_before = _sample(
            "gateway_request_latency_seconds_count", backend="obs-tok", operation="generate"
        )
        input_before = _sample("gateway_tokens_total", backend="obs-tok", direction="input")
        output_before = _sample("gateway_tokens_total", backend="obs-tok", direction="output")

        record_request("obs-tok", "generate", "ok", 0.25, input_tokens=12, output_tokens=30)

        assert (
            _sample("gateway_request_latency_seconds_count", backend="obs-tok", operation="generate")
            - latency_before
            == 1
        )
        assert _sample("gateway_tokens_total", backend="obs-tok", direction="input") - input_before == 12
        assert _sample("gateway_tokens_total", backend="obs-tok", direction="output") - output_before == 30

    def test_no_latency_sample_without_latency(self) -> None:
        before = _sample("gateway_request_latency_seconds_count", backend="obs-hit", operation="embedding")
        record_request("obs-hit", "embedding", "cache_hit")
        after = _sample("gateway_request_latency_seconds_count", backend="obs-hit", operation="embedding")
        assert after == before

    async def test_gateway_records_calls(self, make_gateway: Callable[..., Gateway]) -> None:
        gateway = make_gateway(MockProvider("obs-mock"))
        request = GenerateRequest(messages=[{"role": "user", "content": "Hello"}])
        before = _sample("gateway_requests_total", backend="obs-mock", operation="generate", outcome="ok")

        await gateway.generate_response(request)

        after = _sample("gateway_requests_total", backend="obs-mock", operation="generate", outcome="ok")
        assert after - before == 1


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_installs_json_pipeline(self, mocker) -> None:
        configure = mocker.patch("providergateway.observability.structlog.configure")

        configure_logging("DEBUG")

        kwargs = configure.call_args.kwargs
        assert type(kwargs["processors"][-1]).__name__ == "JSONRenderer"
        assert kwargs["cache_logger_on_first_use"] is True

    @pytest.mark.parametrize("level", ["warning", "WARNING"])
    def test_quiets_third_party_loggers(self, mocker, level: str) -> None:
        mocker.patch("providergateway.observability.structlog.configure")
        configure_logging(level)
        assert logging.getLogger("LiteLLM").level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING


# ---------------------------------------------------------------------------
# Tracing
# ---------------------------------------------------------------------------


class TestConfigureTracing:
    def test_without_endpoint_no_exporter(self, mocker) -> None:
        install = mocker.patch("providergateway.observability.trace.set_tracer_provider")
        exporter = mocker.patch("providergateway.observability.OTLPSpanExporter")

        provider = configure_tracing(Settings(_env_file=None, otel_service_name="gw-test"))

        install.assert_called_once_with(provider)
        exporter.assert_not_called()
        assert provider.resource.attributes["service.name"] == "gw-test"

    def test_with_endpoint_exports_traces(self, mocker) -> None:
        mocker.patch("providergateway.observability.trace.set_tracer_provider")
        exporter = mocker.patch("providergateway.observability.OTLPSpanExporter")
        processor = mocker.patch("providergateway.observability.BatchSpanProcessor")
        settings = Settings(_env_file=None, otel_exporter_otlp_endpoint="http://collector:4318/")

        provider = configure_tracing(settings)

        exporter.assert_called_once_with(endpoint="http://collector:4318/v1/traces")
        processor.assert_called_once_with(exporter.return_value)
        provider.shutdown()
