"""
Observability: run context propagation and structured logging.

Log lines automatically carry run_id, graph_id and step_id while a
workflow is running. Output is JSON in production and colorized text in
a terminal.
"""

from lcagraph.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
    "StructuredFormatter",
    "HumanReadableFormatter",
]
