"""OpenTelemetry instrumentation for pollci."""

from typing import Any

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from pollci.logger import get_logger

logger = get_logger(__name__)

_initialized = False
_tracer: trace.Tracer | None = None
_meter: metrics.Meter | None = None
_job_counter: metrics.Counter | None = None
_duration_histogram: metrics.Histogram | None = None


def init_telemetry(
    endpoint: str,
    service_name: str,
    service_version: str | None = None,
) -> None:
    """Initialize OpenTelemetry tracing and metrics.

    Does nothing when endpoint is empty; spans then go to the no-op tracer.

    Args:
        endpoint: OTLP endpoint URL (e.g., http://localhost:4318)
        service_name: Service name for telemetry (e.g., "pollci")
        service_version: Optional service version
    """
    global _initialized, _tracer, _meter
    global _job_counter, _duration_histogram

    if _initialized or not endpoint:
        return

    resource_attrs = {"service.name": service_name}
    if service_version:
        resource_attrs["service.version"] = service_version
    resource = Resource.create(resource_attrs)

    trace_exporter = OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces")
    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)
    _tracer = trace.get_tracer(__name__)

    metric_exporter = OTLPMetricExporter(endpoint=f"{endpoint}/v1/metrics")
    metric_reader = PeriodicExportingMetricReader(metric_exporter, export_interval_millis=10000)
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    _meter = metrics.get_meter(__name__)

    _job_counter = _meter.create_counter(
        "pollci.jobs",
        unit="jobs",
        description="Number of CI jobs by final state",
    )
    _duration_histogram = _meter.create_histogram(
        "pollci.job.duration",
        unit="s",
        description="Wall-clock duration of CI jobs in seconds",
    )

    _initialized = True
    version_info = f", version={service_version}" if service_version else ""
    logger.info(
        f"OpenTelemetry initialized: endpoint={endpoint}, service={service_name}{version_info}"
    )


def get_tracer() -> trace.Tracer:
    """Get the global tracer, or a no-op tracer if not initialized."""
    return _tracer or trace.get_tracer(__name__)


def record_job_metrics(
    repo: str,
    ci_identifier: str,
    state: str,
    duration_seconds: float,
) -> None:
    """Record the outcome of one job.

    Args:
        repo: Repository in 'owner/repo' format
        ci_identifier: Status context of the worker
        state: Final job state (succeeded, failed, aborted)
        duration_seconds: Wall-clock time from start to final state
    """
    if not _initialized:
        return

    attributes: dict[str, Any] = {
        "repo": repo,
        "ci_identifier": ci_identifier,
        "state": state,
    }

    if _job_counter:
        _job_counter.add(1, attributes)

    if _duration_histogram and duration_seconds > 0:
        _duration_histogram.record(duration_seconds, attributes)


def reset_telemetry() -> None:
    """Reset module state (for testing only)."""
    global _initialized, _tracer, _meter, _job_counter, _duration_histogram
    _initialized = False
    _tracer = None
    _meter = None
    _job_counter = None
    _duration_histogram = None
