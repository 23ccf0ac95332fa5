"""Logging, tracing and metrics setup for the gateway.

Library code only ever calls ``structlog.get_logger`` / ``trace.get_tracer``;
the functions here install the process-wide configuration and are meant to be
called once by the embedding application.
"""

import logging

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import Counter, Histogram

from providergateway.config import Settings

# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

REQUESTS = Counter(
    "gateway_requests_total",
    "Gateway calls by backend, operation and outcome",
    ["backend", "operation", "outcome"],
)
REQUEST_LATENCY = Histogram(
    "gateway_request_latency_seconds",
    "Backend call latency in seconds",
    ["backend", "operation"],
)
TOKENS = Counter(
    "gateway_tokens_total",
    "Tokens consumed by backend and direction",
    ["backend", "direction"],
)
RATE_LIMITED = Counter(
    "gateway_rate_limited_total",
    "Requests rejected by local admission control",
    ["backend"],
)
RETRIES = Counter(
    "gateway_retries_total",
    "Retry attempts by backend and error kind",
    ["backend", "kind"],
)


def record_request(
    backend: str,
    operation: str,
    outcome: str,
    latency: float | None = None,
    input_tokens: int = 0,
    output_tokens: int = 0,
) -> None:
    REQUESTS.labels(backend=backend, operation=operation, outcome=outcome).inc()
    if latency is not None:
        REQUEST_LATENCY.labels(backend=backend, operation=operation).observe(latency)
    if input_tokens:
        TOKENS.labels(backend=backend, direction="input").inc(input_tokens)
    if output_tokens:
        TOKENS.labels(backend=backend, direction="output").inc(output_tokens)


# ---------------------------------------------------------------------------
# Structured logging
# ---------------------------------------------------------------------------


def configure_logging(level: str = "INFO") -> None:
    """Install the JSON structlog pipeline at *level*."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.stdlib.NAME_TO_LEVEL.get(level.lower(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Third-party libraries log through stdlib logging; keep them quiet.
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)
    logging.getLogger("LiteLLM Router").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# OpenTelemetry
# ---------------------------------------------------------------------------


def configure_tracing(settings: Settings) -> TracerProvider:
    """Create and install a tracer provider.

    Spans are exported over OTLP/HTTP when ``otel_exporter_otlp_endpoint`` is
    set; otherwise the provider records spans without exporting them.
    """
    resource = Resource.create(
        {"service.name": settings.otel_service_name, "service.version": settings.app_version}
    )
    tracer_provider = TracerProvider(resource=resource)
    if settings.otel_exporter_otlp_endpoint:
        exporter = OTLPSpanExporter(
            endpoint=f"{settings.otel_exporter_otlp_endpoint.rstrip('/')}/v1/traces",
        )
        tracer_provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(tracer_provider)
    return tracer_provider
