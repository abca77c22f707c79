"""
Observability module - Logging, Metrics, and Tracing.
"""

from adfree.observability.logging import log_context, setup_logging
from adfree.observability.metrics import metrics
from adfree.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "log_context",
    "setup_logging",
    "metrics",
    "get_tracer",
    "setup_tracing",
]
