"""
Observability: structured logging with automatic context propagation, and
the per-execution Tracer that records steps, tokens, cost and latency.
"""

from flowengine.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
    trace_scope,
)
from flowengine.observability.tracer import Tracer

__all__ = [
    "Tracer",
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
    "trace_scope",
]
