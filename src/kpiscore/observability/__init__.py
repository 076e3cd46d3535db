"""kpiscore observability: opt-in OpenTelemetry tracing."""

from kpiscore.observability.tracing import (
    configure_tracing,
    get_current_trace_id,
    traced_operation,
)

__all__ = ["configure_tracing", "get_current_trace_id", "traced_operation"]
