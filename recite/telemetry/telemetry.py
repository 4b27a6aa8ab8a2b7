"""OpenTelemetry instrumentation for the recitation matcher."""

import logging
import os
from typing import Optional

from opentelemetry import trace, metrics
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION, DEPLOYMENT_ENVIRONMENT

SERVICE = "recite"


def _otel_enabled() -> bool:
    return os.getenv("OTEL_ENABLED", "false").lower() == "true"


def get_resource(instance_id: str) -> Resource:
    """Create resource with service and instance information."""
    return Resource.create({
        SERVICE_NAME: SERVICE,
        SERVICE_VERSION: "0.1.0",
        DEPLOYMENT_ENVIRONMENT: os.getenv("ENV", "production"),
        "service.namespace": "recitation-companion",
        "service.instance.id": instance_id,
    })


def setup_tracing(instance_id: str, endpoint: str = "http://localhost:4318") -> Optional[TracerProvider]:
    """Setup OpenTelemetry tracing.

    Args:
        instance_id: Identifier of this running instance
        endpoint: OTLP endpoint (collector)

    Returns:
        TracerProvider instance or None if disabled
    """
    if not _otel_enabled():
        return None

    provider = TracerProvider(resource=get_resource(instance_id))
    processor = BatchSpanProcessor(
        OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces", timeout=30),
        max_queue_size=1024,
        max_export_batch_size=256,
        schedule_delay_millis=10000,
    )
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
    return provider


def setup_metrics(instance_id: str, endpoint: str = "http://localhost:4318") -> Optional[MeterProvider]:
    """Setup OpenTelemetry metrics.

    Returns:
        MeterProvider instance or None if disabled
    """
    if not _otel_enabled():
        return None

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=f"{endpoint}/v1/metrics", timeout=30),
        export_interval_millis=60000,
    )
    provider = MeterProvider(resource=get_resource(instance_id), metric_readers=[reader])
    metrics.set_meter_provider(provider)
    return provider


def setup_logging(instance_id: str, endpoint: str = "http://localhost:4318") -> Optional[LoggerProvider]:
    """Setup OpenTelemetry logging and attach its handler to the root logger.

    Returns:
        LoggerProvider instance or None if disabled
    """
    if not _otel_enabled():
        return None

    provider = LoggerProvider(resource=get_resource(instance_id))
    provider.add_log_record_processor(BatchLogRecordProcessor(
        OTLPLogExporter(endpoint=f"{endpoint}/v1/logs", timeout=30),
        max_queue_size=1024,
        max_export_batch_size=256,
        schedule_delay_millis=10000,
    ))

    handler = LoggingHandler(level=logging.INFO, logger_provider=provider)
    logging.getLogger().addHandler(handler)
    return provider


def setup_telemetry(instance_id: str, endpoint: str = "http://localhost:4318"):
    """Setup all OpenTelemetry components.

    Args:
        instance_id: Identifier of this running instance
        endpoint: OTLP endpoint
    """
    if not _otel_enabled():
        logging.info("OpenTelemetry is disabled")
        return None, None, None

    logging.info(f"Initializing OpenTelemetry for {SERVICE}, instance: {instance_id}, endpoint: {endpoint}")

    tracer_provider = setup_tracing(instance_id, endpoint)
    meter_provider = setup_metrics(instance_id, endpoint)
    logger_provider = setup_logging(instance_id, endpoint)

    logging.info("OpenTelemetry initialized successfully")
    return tracer_provider, meter_provider, logger_provider


def get_tracer(name: str):
    return trace.get_tracer(name)


def get_meter(name: str):
    return metrics.get_meter(name)


def get_logger(name: str, instance_id: str = None):
    """Get a logger that tags every record with the instance id.

    Args:
        name: Logger name (typically __name__)
        instance_id: Instance id to include in all logs
    """
    logger = logging.getLogger(name)

    if instance_id:
        class InstanceAdapter(logging.LoggerAdapter):
            def process(self, msg, kwargs):
                extra = kwargs.get('extra', {})
                extra['instance_id'] = instance_id
                extra['service.name'] = SERVICE
                kwargs['extra'] = extra
                return msg, kwargs

        return InstanceAdapter(logger, {'instance_id': instance_id})

    return logger


def add_span_event(name: str, **attributes):
    """Add an event to the current span."""
    span = trace.get_current_span()
    if span.is_recording():
        span.add_event(name, attributes)


def record_exception(exception: Exception):
    """Record an exception in the current span."""
    span = trace.get_current_span()
    if span.is_recording():
        span.record_exception(exception)
        span.set_status(trace.Status(trace.StatusCode.ERROR, str(exception)))


def create_span(name: str, **attributes):
    """Create a new span for manual instrumentation.

    Example:
        with create_span("phrase_match", frames=120):
            ...
    """
    span = get_tracer(__name__).start_span(name)
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, str(value))
    return trace.use_span(span, end_on_exit=True)


def create_matcher_metrics():
    """Create metric instruments for the matcher.

    Returns:
        Dictionary of metric instruments
    """
    meter = get_meter(SERVICE)

    return {
        "phrases": meter.create_counter(
            name="phrases_detected_total",
            description="Phrases segmented by the voice activity detector",
            unit="1",
        ),
        "accepted": meter.create_counter(
            name="matches_accepted_total",
            description="Phrases matched to a corpus line",
            unit="1",
        ),
        "rejected": meter.create_counter(
            name="matches_rejected_total",
            description="Phrases with no acceptable candidate",
            unit="1",
        ),
        "terminal": meter.create_counter(
            name="terminal_phrase_total",
            description="Terminal phrase triggers",
            unit="1",
        ),
        "match_latency": meter.create_histogram(
            name="match_latency_milliseconds",
            description="Time spent scoring one phrase",
            unit="ms",
        ),
    }
