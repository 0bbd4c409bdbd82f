"""Shared utilities for logging and retry handling"""

from profilesync.utils.logging_config import bind_run_context, clear_run_context, configure_logging
from profilesync.utils.retry import RetryPolicy, call_with_retry

__all__ = [
    "RetryPolicy",
    "bind_run_context",
    "call_with_retry",
    "clear_run_context",
    "configure_logging",
]
