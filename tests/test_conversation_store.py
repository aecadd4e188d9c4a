from __future__ import annotations

import asyncio
import json
import threading
from datetime import datetime, timedelta

from relaybot.bus.events import Scope
from relaybot.permissions.engine import PermissionPolicy, Tier
from relaybot.session.manager import ConversationStore
from relaybot.session.repository import (
    JsonFileRepository,
    MemoryRepository,
    PersistenceError,
    Turn,
)


def _turn(i: int, role: str = "user") -> Turn:
    return Turn(role, f"message {i}", datetime(2024, 1, 1) + timedelta(seconds=i), sender_id="7", sender_name="seven")


def test_window_never_exceeds_max_turns() -> None:
    store = ConversationStore(MemoryRepository(), max_turns=5)
    scope = Scope.group("1")

    async def _run() -> None:
        for i in range(12):
            ctx = await store.append(scope, _turn(i))
            assert len(ctx) <= 5
        snap = await store.snapshot(scope)
        assert [t.text for t in snap] == [f"message {i}" for i in range(7, 12)]
        assert snap.latest.text == "message 11"

    asyncio.run(_run())


def test_scopes_are_independent() -> None:
    store = ConversationStore(MemoryRepository(), max_turns=3)

    async def _run() -> None:
        await store.append(Scope.group("1"), _turn(1))
        await store.append(Scope.private("1"), _turn(2))
        assert len(await store.snapshot(Scope.group("1"))) == 1
        assert len(await store.snapshot(Scope.private("1"))) == 1
        cleared = await store.clear(Scope.group("1"))
        assert len(cleared) == 0
        assert len(await store.snapshot(Scope.private("1"))) == 1

    asyncio.run(_run())
    assert store.loaded_scopes() == ["group:1", "private:1"]


def test_flush_then_fresh_load_round_trips(tmp_path) -> None:
    scope = Scope.group("42")

    async def _write() -> None:
        store = ConversationStore(JsonFileRepository(tmp_path), max_turns=10)
        await store.append(scope, _turn(1))
        await store.append(scope, Turn("assistant", "hi there", datetime(2024, 1, 1, 0, 0, 5)))
        await store.flush(scope)

    async def _read() -> list[Turn]:
        store = ConversationStore(JsonFileRepository(tmp_path), max_turns=10)
        return list(await store.load(scope))

    asyncio.run(_write())
    turns = asyncio.run(_read())

    assert turns == [_turn(1), Turn("assistant", "hi there", datetime(2024, 1, 1, 0, 0, 5))]


def test_loading_longer_history_keeps_newest(tmp_path) -> None:
    scope = Scope.private("9")
    JsonFileRepository(tmp_path).save_context(scope, [_turn(i) for i in range(8)])

    async def _run() -> list[str]:
        store = ConversationStore(JsonFileRepository(tmp_path), max_turns=3)
        return [t.text for t in await store.load(scope)]

    assert asyncio.run(_run()) == ["message 5", "message 6", "message 7"]


def test_malformed_lines_are_skipped(tmp_path) -> None:
    repo = JsonFileRepository(tmp_path)
    scope = Scope.group("3")
    repo.save_context(scope, [_turn(1), _turn(2)])
    path = next((tmp_path / "contexts").glob("*.jsonl"))
    lines = path.read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[0])["_type"] == "metadata"
    lines.insert(2, "{broken")
    lines.append(json.dumps({"role": "user"}))
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    assert repo.load_context(scope) == [_turn(1), _turn(2)]


class _SlowRepository(MemoryRepository):
    def __init__(self) -> None:
        super().__init__()
        self.writes: list[list[str]] = []
        self.gate = threading.Event()

    def save_context(self, scope, turns) -> None:
        self.gate.wait(timeout=2)
        self.writes.append([t.text for t in turns])
        super().save_context(scope, turns)


def test_flush_is_coalesced_and_latest_lands_last() -> None:
    repo = _SlowRepository()
    store = ConversationStore(repo, max_turns=10)
    scope = Scope.group("1")

    async def _run() -> None:
        await store.append(scope, _turn(1))
        first = store.flush(scope)
        await asyncio.sleep(0.05)  # first write is now blocked in the worker thread
        for i in range(2, 6):
            await store.append(scope, _turn(i))
            assert store.flush(scope) is first
        repo.gate.set()
        await store.drain()

    asyncio.run(_run())

    assert len(repo.writes) == 2
    assert repo.writes[-1] == [f"message {i}" for i in range(1, 6)]


class _BrokenRepository(MemoryRepository):
    def save_context(self, scope, turns) -> None:
        raise PersistenceError("disk full")

    def load_context(self, scope):
        raise OSError("unreadable")


def test_write_failures_are_logged_not_raised() -> None:
    store = ConversationStore(_BrokenRepository(), max_turns=4)
    scope = Scope.private("1")

    async def _run() -> int:
        ctx = await store.append(scope, _turn(1))
        await store.flush(scope)
        await store.drain()
        return len(ctx)

    assert asyncio.run(_run()) == 1


def test_policy_snapshot_persists(tmp_path) -> None:
    repo = JsonFileRepository(tmp_path)
    assert repo.load_policy() is None

    policy = PermissionPolicy.from_dict({"default": "blocked", "admins": ["1"], "other": {"group:2": "trusted"}})
    repo.save_policy(policy)

    loaded = JsonFileRepository(tmp_path).load_policy()
    assert loaded == policy
    assert loaded.overrides["group:2"] is Tier.TRUSTED
