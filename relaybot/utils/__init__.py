"""Utility functions for relaybot."""

from relaybot.utils.clock import Clock, ManualClock, backoff_delay
from relaybot.utils.helpers import ensure_dir, get_data_path, safe_filename, truncate

__all__ = [
    "Clock",
    "ManualClock",
    "backoff_delay",
    "ensure_dir",
    "get_data_path",
    "safe_filename",
    "truncate",
]
