"""Logging setup and error capture."""

from relaybot.logging.error_store import clear_errors, get_errors, init_error_store
from relaybot.logging.setup import CHAT, register_chat_level, setup_logging

__all__ = [
    "CHAT",
    "clear_errors",
    "get_errors",
    "init_error_store",
    "register_chat_level",
    "setup_logging",
]
