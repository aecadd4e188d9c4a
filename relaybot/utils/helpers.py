"""Utility functions for relaybot."""

import re
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path(data_dir: str | Path | None = None) -> Path:
    """Get the relaybot data directory (defaults to ~/.relaybot)."""
    if data_dir:
        return ensure_dir(Path(data_dir).expanduser())
    return ensure_dir(Path.home() / ".relaybot")


def get_logs_path(data_dir: str | Path | None = None) -> Path:
    """Get the log directory."""
    return ensure_dir(get_data_path(data_dir) / "logs")


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_filename(name: str) -> str:
    """Replace characters that are unsafe in file names with underscores."""
    cleaned = _UNSAFE_CHARS.sub("_", name.strip())
    return cleaned or "_"


def truncate(text: str, limit: int = 80) -> str:
    """Shorten text for log lines."""
    text = " ".join((text or "").split())
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"
