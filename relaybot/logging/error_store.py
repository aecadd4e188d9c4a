"""Error capture for the operator control plane.

Installs a loguru sink at ERROR level that keeps a bounded list of recent
error records, optionally mirrored to a JSONL file so they survive restarts.
"""

from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger


@dataclass
class ErrorRecord:
    ts: str
    level: str
    message: str
    where: str
    scope: str | None = None
    exception: str | None = None

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "ErrorRecord":
        return cls(
            ts=str(obj.get("ts", "")),
            level=str(obj.get("level", "ERROR")),
            message=str(obj.get("message", "")),
            where=str(obj.get("where", "")),
            scope=obj.get("scope"),
            exception=obj.get("exception"),
        )


class ErrorStore:
    """Bounded, thread-safe list of error records, newest kept."""

    def __init__(self, path: Path | None = None, max_items: int = 500):
        self._path = path.expanduser() if path else None
        self._max_items = max(50, int(max_items))
        self._lock = threading.Lock()
        self._items: list[ErrorRecord] = []
        self._load_tail()

    def _load_tail(self) -> None:
        if not self._path or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()[-2000:]
        except OSError:
            return
        loaded: list[ErrorRecord] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                loaded.append(ErrorRecord.from_dict(json.loads(line)))
            except (json.JSONDecodeError, AttributeError):
                continue
        with self._lock:
            self._items = loaded[-self._max_items :]

    def _append_file(self, rec: ErrorRecord) -> None:
        if not self._path:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(asdict(rec), ensure_ascii=True) + "\n")
        except OSError:
            # A failing error log must not take the bot down.
            return

    def ingest_loguru_record(self, record: dict[str, Any]) -> None:
        dt = record.get("time")
        ts = dt.isoformat() if isinstance(dt, datetime) else str(dt)
        level = record.get("level")
        exc_obj = record.get("exception")
        rec = ErrorRecord(
            ts=ts,
            level=str(getattr(level, "name", "ERROR")),
            message=str(record.get("message", "")),
            where=f"{record.get('name') or '?'}:{record.get('function') or '?'}:{record.get('line') or '?'}",
            scope=(record.get("extra") or {}).get("scope"),
            exception=str(exc_obj) if exc_obj else None,
        )

        with self._lock:
            self._items.append(rec)
            if len(self._items) > self._max_items:
                self._items = self._items[-self._max_items :]

        self._append_file(rec)

    def get(self, limit: int = 200) -> list[dict[str, Any]]:
        """Most recent records, newest first."""
        n = max(1, min(int(limit), self._max_items))
        with self._lock:
            items = list(self._items[-n:])
        items.reverse()
        return [asdict(r) for r in items]

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
        if self._path:
            try:
                self._path.unlink(missing_ok=True)
            except OSError:
                return


_STORE: ErrorStore | None = None
_SINK_ID: int | None = None


def init_error_store(path: Path | None = None, max_items: int = 500) -> ErrorStore:
    """Initialize the global error store and its loguru sink (idempotent)."""
    global _STORE, _SINK_ID
    if _STORE is None:
        _STORE = ErrorStore(path=path, max_items=max_items)

    if _SINK_ID is None:
        def _sink(message):  # type: ignore[no-untyped-def]
            if _STORE is not None:
                _STORE.ingest_loguru_record(message.record)

        _SINK_ID = logger.add(_sink, level="ERROR", backtrace=True, diagnose=False)
    return _STORE


def reset_error_store() -> None:
    """Remove the sink and forget all records."""
    global _STORE, _SINK_ID
    if _SINK_ID is not None:
        logger.remove(_SINK_ID)
    _SINK_ID = None
    _STORE = None


def get_errors(limit: int = 200) -> list[dict[str, Any]]:
    if _STORE is None:
        return []
    return _STORE.get(limit=limit)


def clear_errors() -> None:
    if _STORE is None:
        return
    _STORE.clear()
