"""OpenTelemetry wiring for devloop.

setup_telemetry() installs SDK tracer and meter providers tagged with the
service name. With ``otlp_enabled`` they also export to the configured
collector over gRPC, which needs the ``otlp`` extra installed. The record_*
helpers are safe to call before create_metrics() has run.
"""

import logging

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

from devloop.config import DevloopConfig

logger = logging.getLogger(__name__)

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Set by create_metrics()
iterations_counter: metrics.Counter
invocations_counter: metrics.Counter
tokens_counter: metrics.Counter
invocation_duration: metrics.Histogram
extraction_failures_counter: metrics.Counter
blocked_counter: metrics.Counter


def build_providers(config: DevloopConfig) -> tuple[TracerProvider, MeterProvider]:
    """Create tracer and meter providers for the configured export mode."""
    resource = Resource.create({"service.name": config.service_name})
    if not config.otlp_enabled:
        return TracerProvider(resource=resource), MeterProvider(resource=resource)

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
        OTLPMetricExporter,
    )
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
        OTLPSpanExporter,
    )
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    logger.info(f"Exporting telemetry to {config.otlp_endpoint}")
    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otlp_endpoint))
    )
    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=config.otlp_endpoint))
    return tracer_provider, MeterProvider(resource=resource, metric_readers=[reader])


def setup_telemetry(config: DevloopConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Install the global providers.

    Args:
        config: Devloop configuration with the OTLP settings and service name

    Returns:
        Tuple of (tracer, meter) for spans and instruments
    """
    tracer_provider, meter_provider = build_providers(config)
    trace.set_tracer_provider(tracer_provider)
    metrics.set_meter_provider(meter_provider)
    return trace.get_tracer(config.service_name), metrics.get_meter(config.service_name)


def create_metrics(meter: metrics.Meter) -> None:
    """Create metric instruments for devloop tracking.

    Counters:
    - Iterations run (by outcome)
    - Agent invocations (by outcome)
    - Estimated agent tokens
    - Extraction failures
    - Tasks blocked

    Histograms:
    - Agent invocation duration

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global iterations_counter, invocations_counter, tokens_counter
    global invocation_duration, extraction_failures_counter, blocked_counter

    iterations_counter = meter.create_counter(
        "devloop_iterations_total",
        description="Total workflow iterations",
    )

    invocations_counter = meter.create_counter(
        "devloop_agent_invocations_total",
        description="Total agent process invocations",
    )

    tokens_counter = meter.create_counter(
        "devloop_agent_tokens_total",
        description="Estimated tokens produced by the agent",
    )

    invocation_duration = meter.create_histogram(
        "devloop_agent_duration_seconds",
        description="Agent invocation duration",
        unit="s",
    )

    extraction_failures_counter = meter.create_counter(
        "devloop_extraction_failures_total",
        description="Agent responses no extraction strategy could use",
    )

    blocked_counter = meter.create_counter(
        "devloop_tasks_blocked_total",
        description="Tasks moved to blocked",
    )


def record_invocation(outcome: str, tokens: int, duration_seconds: float) -> None:
    """Record one agent invocation if counters are initialized."""
    try:
        invocations_counter.add(1, {"outcome": outcome})
        tokens_counter.add(tokens)
        invocation_duration.record(duration_seconds)
    except (AttributeError, NameError):
        # Counters not initialized - telemetry disabled
        pass


def record_iteration(outcome: str) -> None:
    try:
        iterations_counter.add(1, {"outcome": outcome})
    except (AttributeError, NameError):
        pass


def record_extraction_failure(strategies: list[str]) -> None:
    try:
        extraction_failures_counter.add(1, {"strategies": ",".join(strategies)})
    except (AttributeError, NameError):
        pass


def record_blocked(category: str) -> None:
    try:
        blocked_counter.add(1, {"category": category})
    except (AttributeError, NameError):
        pass
