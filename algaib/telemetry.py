"""Telemetry setup for OpenTelemetry traces and metrics.

Traces and metrics are exported over OTLP gRPC when OTLP_ENABLED=true.
Otherwise in-process providers are installed and nothing leaves the
process.

Metric instruments start out bound to a no-op meter, so recording is safe
before create_metrics() runs.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.metrics import NoOpMeter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from algaib.config import AlgaibConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (rebound by create_metrics)
subtasks_counter: metrics.Counter
plans_counter: metrics.Counter
fallbacks_counter: metrics.Counter
permission_requests_counter: metrics.Counter
subtask_duration: metrics.Histogram


def setup_telemetry(config: AlgaibConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry with optional OTLP export.

    Args:
        config: Configuration with OTLP endpoint and service name

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    otlp_enabled = os.getenv("OTLP_ENABLED", "false").lower() == "true"

    if otlp_enabled and config.otlp_endpoint:
        # Import OTLP exporters only when needed
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        trace_provider = TracerProvider()
        trace_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otlp_endpoint))
        )
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=config.otlp_endpoint)
        )
        metrics.set_meter_provider(MeterProvider(metric_readers=[metric_reader]))
    else:
        trace.set_tracer_provider(TracerProvider())
        metrics.set_meter_provider(MeterProvider())

    tracer = trace.get_tracer(config.service_name)
    meter = metrics.get_meter(config.service_name)

    return tracer, meter


def create_metrics(meter: metrics.Meter) -> None:
    """Create metric instruments.

    Counters:
    - Subtasks executed (by agent and status)
    - Plans created (by source: agent or fallback)
    - Local fallback executions (by agent and outcome)
    - Permission requests (by type and decision)

    Histogram:
    - Subtask duration distribution

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global subtasks_counter, plans_counter, fallbacks_counter
    global permission_requests_counter, subtask_duration

    subtasks_counter = meter.create_counter(
        "algaib_subtasks_total",
        description="Total subtasks executed",
    )

    plans_counter = meter.create_counter(
        "algaib_plans_total",
        description="Total plans created",
    )

    fallbacks_counter = meter.create_counter(
        "algaib_fallbacks_total",
        description="Total local fallback executions",
    )

    permission_requests_counter = meter.create_counter(
        "algaib_permission_requests_total",
        description="Total permission prompts mediated",
    )

    subtask_duration = meter.create_histogram(
        "algaib_subtask_duration_seconds",
        description="Subtask execution duration",
        unit="s",
    )


create_metrics(NoOpMeter("algaib"))
