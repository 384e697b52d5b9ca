"""Utility helpers shared across the metagrowth package."""

from metagrowth.utils.logging import (
    configure_logging,
    get_logger,
    log_calls,
    log_operation,
    log_performance,
    set_log_level,
)

__all__ = [
    "configure_logging",
    "get_logger",
    "log_calls",
    "log_operation",
    "log_performance",
    "set_log_level",
]
