"""Loguru sink setup driven by the ``logger`` config section."""

import sys
from pathlib import Path

from loguru import logger

from relaybot.config.schema import LoggerConfig
from relaybot.utils.helpers import get_logs_path

CHAT = "CHAT"

_FORMAT = "<green>{time:HH:mm:ss}</green> {level.icon} <level>{level: <7}</level> | {message}"

# Switch in LoggerConfig that governs each level
_LEVEL_FLAGS = {
    "TRACE": "debug",
    "DEBUG": "debug",
    "INFO": "info",
    "SUCCESS": "info",
    CHAT: "chat",
    "WARNING": "warning",
    "ERROR": "error",
    "CRITICAL": "error",
}


def register_chat_level() -> None:
    """Register the CHAT level used for inbound chat lines (idempotent)."""
    try:
        logger.level(CHAT)
    except ValueError:
        logger.level(CHAT, no=22, color="<green>", icon="💬")


def _level_filter(config: LoggerConfig):
    def _filter(record) -> bool:  # type: ignore[no-untyped-def]
        flag = _LEVEL_FLAGS.get(record["level"].name)
        if flag is None:
            return True
        return bool(getattr(config, flag))

    return _filter


def setup_logging(config: LoggerConfig, data_dir: str | Path | None = None) -> Path | None:
    """
    Replace loguru's default sink with one filtered by the config switches.

    Returns the log file path when file output is enabled.
    """
    register_chat_level()
    logger.remove()
    logger.add(
        sys.stderr,
        format=_FORMAT,
        level="DEBUG" if config.debug else "INFO",
        filter=_level_filter(config),
        colorize=None,
    )

    if not config.generate_file:
        return None

    if config.save_path:
        log_file = Path(config.save_path).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
    else:
        log_file = get_logs_path(data_dir) / "relaybot.log"
    logger.add(
        log_file,
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}",
        level="DEBUG" if config.debug else "INFO",
        filter=_level_filter(config),
        rotation="10 MB",
        retention=5,
        encoding="utf-8",
    )
    return log_file


register_chat_level()
