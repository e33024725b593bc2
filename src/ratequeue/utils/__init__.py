"""Utility modules for ratequeue."""

from ratequeue.utils.logging import setup_logging, get_logger

__all__ = [
    "setup_logging",
    "get_logger",
]
