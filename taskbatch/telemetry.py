"""OpenTelemetry traces and metrics for batch runs.

Spans and instruments always work; they are exported over OTLP gRPC only
when OTLP_ENABLED=true. Metric instruments live at module level so the
scheduler and escalation coordinator can record without passing a meter
around.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider

from taskbatch.config import BatchConfig

logger = logging.getLogger(__name__)

# An unreachable collector makes the gRPC exporter log on every flush
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Set by create_metrics()
tasks_counter: metrics.Counter
cost_counter: metrics.Counter
task_duration: metrics.Histogram
escalations_counter: metrics.Counter
batches_counter: metrics.Counter


def _otlp_enabled() -> bool:
    return os.getenv("OTLP_ENABLED", "false").lower() == "true"


def _build_providers(
    resource: Resource, endpoint: str | None
) -> tuple[TracerProvider, MeterProvider]:
    if not endpoint:
        return TracerProvider(resource=resource), MeterProvider(resource=resource)

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
        OTLPMetricExporter,
    )
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
        OTLPSpanExporter,
    )
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint))
    )
    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=endpoint))
    return tracer_provider, MeterProvider(resource=resource, metric_readers=[reader])


def setup_telemetry(config: BatchConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Install the global tracer and meter providers.

    Args:
        config: Supplies the OTLP endpoint and the service name

    Returns:
        Tuple of (tracer, meter) named after the service
    """
    endpoint = config.otlp_endpoint if _otlp_enabled() else None
    resource = Resource.create({SERVICE_NAME: config.service_name})
    tracer_provider, meter_provider = _build_providers(resource, endpoint)
    trace.set_tracer_provider(tracer_provider)
    metrics.set_meter_provider(meter_provider)
    logger.debug("Telemetry export: %s", endpoint or "disabled")

    return (
        trace.get_tracer(config.service_name),
        metrics.get_meter(config.service_name),
    )


def create_metrics(meter: metrics.Meter) -> None:
    """Create the batch instruments.

    Counters: finished tasks and batches by status, USD spent, operator
    escalations. Histogram: task run time in seconds.
    """
    global tasks_counter, cost_counter, task_duration
    global escalations_counter, batches_counter

    tasks_counter = meter.create_counter(
        "taskbatch_tasks_total", description="Tasks finished, by status"
    )
    cost_counter = meter.create_counter(
        "taskbatch_cost_usd_total", description="Agent spend in USD"
    )
    task_duration = meter.create_histogram(
        "taskbatch_task_duration_seconds", description="Task run time", unit="s"
    )
    escalations_counter = meter.create_counter(
        "taskbatch_escalations_total", description="Questions raised to the operator"
    )
    batches_counter = meter.create_counter(
        "taskbatch_batches_total", description="Batches finished, by status"
    )


def get_tracer() -> trace.Tracer:
    """Tracer from the global provider (a no-op one if none is installed)."""
    return trace.get_tracer("taskbatch")


def record_task(status: str, duration_seconds: float, cost_usd: float) -> None:
    try:
        tasks_counter.add(1, {"status": status})
        task_duration.record(duration_seconds, {"status": status})
        if cost_usd > 0:
            cost_counter.add(cost_usd)
    except NameError:
        pass  # Metrics not initialized


def record_escalation(task_id: str) -> None:
    try:
        escalations_counter.add(1, {"task_id": task_id})
    except NameError:
        pass  # Metrics not initialized


def record_batch(status: str) -> None:
    try:
        batches_counter.add(1, {"status": status})
    except NameError:
        pass  # Metrics not initialized
