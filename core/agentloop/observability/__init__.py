"""
Observability module for run correlation and structured logging.

- Run context (run_id, iteration) propagated via ContextVar
- Structured JSON logging for production
- Human-readable logging for development
"""

from agentloop.observability.logging import (
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
]
