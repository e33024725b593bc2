"""Core configuration for ratequeue."""

from ratequeue.core.config import QueueSettings, get_settings

__all__ = [
    "QueueSettings",
    "get_settings",
]
