"""Structured stdout logging for the episode scheduler.

Wraps Python's ``logging`` module with JSON or plain output and
context propagation for scheduling correlation fields.
"""

from .config import configure_from_settings, configure_logging
from .context import bind_context, clear_context, get_context, log_context

__all__ = [
    "bind_context",
    "clear_context",
    "configure_from_settings",
    "configure_logging",
    "get_context",
    "log_context",
]
