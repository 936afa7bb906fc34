"""Observability helpers."""

from agentwatch.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_refresh,
    record_transcripts,
    record_delivery,
    record_callback_failure,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_refresh",
    "record_transcripts",
    "record_delivery",
    "record_callback_failure",
]
