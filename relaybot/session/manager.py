"""Per-scope conversation windows."""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Iterator

from loguru import logger

from relaybot.bus.events import Scope
from relaybot.session.repository import ConversationRepository, PersistenceError, Turn


@dataclass(frozen=True)
class ConversationContext:
    """Read-only copy of a scope's window, oldest turn first."""

    scope: Scope
    turns: tuple[Turn, ...]
    max_turns: int

    def __len__(self) -> int:
        return len(self.turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self.turns)

    @property
    def latest(self) -> Turn | None:
        return self.turns[-1] if self.turns else None


class ConversationStore:
    """
    Owns the rolling context window of every scope.

    Windows are bounded deques: appending the (N+1)th turn evicts the oldest
    one. Eviction counts turns, not tokens.

    Windows are loaded from the repository on first touch. ``flush`` writes
    in the background; at most one write per scope runs at a time and a flush
    requested mid-write re-runs it, so the latest window always lands last.
    Write failures are logged and never reach the caller.
    """

    def __init__(self, repository: ConversationRepository, max_turns: int = 20):
        if max_turns < 1:
            raise ValueError("max_turns must be >= 1")
        self.repository = repository
        self.max_turns = max_turns
        self._windows: dict[str, deque[Turn]] = {}
        self._load_locks: dict[str, asyncio.Lock] = {}
        self._flush_tasks: dict[str, asyncio.Task[None]] = {}
        self._dirty: set[str] = set()

    def _context(self, scope: Scope, window: deque[Turn]) -> ConversationContext:
        return ConversationContext(scope=scope, turns=tuple(window), max_turns=self.max_turns)

    def _get_load_lock(self, key: str) -> asyncio.Lock:
        lock = self._load_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._load_locks[key] = lock
        return lock

    async def load(self, scope: Scope) -> ConversationContext:
        """Return the window for a scope, reading it from the repository once."""
        window = self._windows.get(scope.key)
        if window is not None:
            return self._context(scope, window)

        async with self._get_load_lock(scope.key):
            window = self._windows.get(scope.key)
            if window is None:
                try:
                    turns = await asyncio.to_thread(self.repository.load_context, scope)
                except Exception as e:
                    logger.warning(f"Could not load context {scope.key}, starting empty: {e}")
                    turns = None
                # A deque built from a longer history keeps only the newest max_turns.
                window = deque(turns or [], maxlen=self.max_turns)
                self._windows[scope.key] = window
        return self._context(scope, window)

    async def append(self, scope: Scope, turn: Turn) -> ConversationContext:
        """Append a turn, evicting the oldest one past the window size."""
        await self.load(scope)
        window = self._windows[scope.key]
        window.append(turn)
        return self._context(scope, window)

    async def snapshot(self, scope: Scope) -> ConversationContext:
        """Read-only copy of the current window."""
        return await self.load(scope)

    async def clear(self, scope: Scope) -> ConversationContext:
        """Drop every turn of a scope."""
        await self.load(scope)
        window = self._windows[scope.key]
        window.clear()
        return self._context(scope, window)

    def flush(self, scope: Scope) -> "asyncio.Task[None]":
        """
        Schedule a durable write of the scope's window.

        Returns the writer task; callers on the dispatch path never await it.
        """
        key = scope.key
        self._dirty.add(key)
        task = self._flush_tasks.get(key)
        if task is None or task.done():
            task = asyncio.create_task(self._flush_loop(scope))
            self._flush_tasks[key] = task
        return task

    async def _flush_loop(self, scope: Scope) -> None:
        key = scope.key
        try:
            while key in self._dirty:
                self._dirty.discard(key)
                window = self._windows.get(key)
                if window is None:
                    return
                turns = list(window)
                try:
                    await asyncio.to_thread(self.repository.save_context, scope, turns)
                    logger.debug(f"Flushed {len(turns)} turn(s) for {key}")
                except PersistenceError as e:
                    logger.error(f"Context write failed for {key}: {e}")
                except Exception as e:
                    logger.error(f"Unexpected error writing context {key}: {e}")
        finally:
            if self._flush_tasks.get(key) is asyncio.current_task():
                self._flush_tasks.pop(key, None)

    async def drain(self) -> None:
        """Wait for every pending write to finish."""
        while self._flush_tasks:
            await asyncio.gather(*list(self._flush_tasks.values()), return_exceptions=True)

    def loaded_scopes(self) -> list[str]:
        return sorted(self._windows)
