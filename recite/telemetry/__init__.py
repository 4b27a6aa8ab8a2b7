"""OpenTelemetry integration for observability"""

from .telemetry import (
    setup_telemetry,
    get_tracer,
    get_meter,
    get_logger,
    add_span_event,
    create_span,
    create_matcher_metrics,
    record_exception,
)

__all__ = [
    "setup_telemetry",
    "get_tracer",
    "get_meter",
    "get_logger",
    "add_span_event",
    "create_span",
    "create_matcher_metrics",
    "record_exception",
]
