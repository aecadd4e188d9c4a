"""Persistence for conversation contexts and the permission policy."""

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from relaybot.bus.events import Scope
from relaybot.permissions.engine import PermissionPolicy
from relaybot.utils.helpers import ensure_dir, safe_filename


class PersistenceError(RuntimeError):
    """A repository write failed. Always best-effort for callers."""


@dataclass(frozen=True)
class Turn:
    """One stored message in a context window."""

    role: str  # "user" or "assistant"
    text: str
    timestamp: datetime
    sender_id: str | None = None
    sender_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "role": self.role,
            "content": self.text,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.sender_id is not None:
            data["sender_id"] = self.sender_id
        if self.sender_name is not None:
            data["sender_name"] = self.sender_name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Turn":
        return cls(
            role=str(data["role"]),
            text=str(data["content"]),
            timestamp=datetime.fromisoformat(str(data["timestamp"])),
            sender_id=data.get("sender_id"),
            sender_name=data.get("sender_name"),
        )


class ConversationRepository(ABC):
    """
    Narrow persistence interface.

    Methods are synchronous; the conversation store calls them from a worker
    thread so disk or network latency never blocks the event loop.
    """

    @abstractmethod
    def load_context(self, scope: Scope) -> list[Turn] | None:
        """Return the stored turns for a scope, or None if nothing is stored."""

    @abstractmethod
    def save_context(self, scope: Scope, turns: list[Turn]) -> None:
        """Replace the stored turns for a scope. Raises PersistenceError."""

    @abstractmethod
    def load_policy(self) -> PermissionPolicy | None:
        """Return the persisted policy snapshot, if any."""

    @abstractmethod
    def save_policy(self, policy: PermissionPolicy) -> None:
        """Persist a policy snapshot. Raises PersistenceError."""


class MemoryRepository(ConversationRepository):
    """Keeps everything in process memory."""

    def __init__(self) -> None:
        self._contexts: dict[str, list[Turn]] = {}
        self._policy: PermissionPolicy | None = None
        self._lock = threading.Lock()

    def load_context(self, scope: Scope) -> list[Turn] | None:
        with self._lock:
            turns = self._contexts.get(scope.key)
            return list(turns) if turns is not None else None

    def save_context(self, scope: Scope, turns: list[Turn]) -> None:
        with self._lock:
            self._contexts[scope.key] = list(turns)

    def load_policy(self) -> PermissionPolicy | None:
        return self._policy

    def save_policy(self, policy: PermissionPolicy) -> None:
        self._policy = policy


class JsonFileRepository(ConversationRepository):
    """
    File-backed repository.

    Each scope is a JSONL file: a metadata line followed by one line per
    turn. The policy snapshot lives in ``policy.json``. Writes go to a temp
    file that replaces the target atomically.
    """

    def __init__(self, root: Path):
        self.root = ensure_dir(Path(root).expanduser())
        self.contexts_dir = ensure_dir(self.root / "contexts")
        self.policy_path = self.root / "policy.json"
        self._write_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _get_context_path(self, scope: Scope) -> Path:
        return self.contexts_dir / f"{safe_filename(scope.key.replace(':', '_'))}.jsonl"

    def _get_write_lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._write_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._write_locks[key] = lock
            return lock

    def load_context(self, scope: Scope) -> list[Turn] | None:
        path = self._get_context_path(scope)
        if not path.exists():
            return None

        turns: list[Turn] = []
        malformed_lines = 0
        try:
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        malformed_lines += 1
                        continue
                    if not isinstance(data, dict):
                        malformed_lines += 1
                        continue
                    if data.get("_type") == "metadata":
                        continue
                    try:
                        turns.append(Turn.from_dict(data))
                    except (KeyError, TypeError, ValueError):
                        malformed_lines += 1
        except OSError as e:
            logger.warning(f"Failed to load context {scope.key}: {e}")
            return None

        if malformed_lines:
            logger.warning(
                f"Context {scope.key} contained {malformed_lines} malformed line(s); "
                "loaded remaining valid entries."
            )
        return turns

    def save_context(self, scope: Scope, turns: list[Turn]) -> None:
        metadata_line = {
            "_type": "metadata",
            "scope": scope.key,
            "updated_at": datetime.now().isoformat(),
            "turns": len(turns),
        }
        lines = [json.dumps(metadata_line, ensure_ascii=False)]
        lines.extend(json.dumps(t.to_dict(), ensure_ascii=False) for t in turns)
        with self._get_write_lock(scope.key):
            self._atomic_write(self._get_context_path(scope), "\n".join(lines) + "\n")

    def load_policy(self) -> PermissionPolicy | None:
        if not self.policy_path.exists():
            return None
        try:
            data = json.loads(self.policy_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable policy snapshot {self.policy_path}: {e}")
            return None
        return PermissionPolicy.from_dict(data)

    def save_policy(self, policy: PermissionPolicy) -> None:
        payload = json.dumps(policy.to_dict(), indent=2, ensure_ascii=False)
        with self._get_write_lock("__policy__"):
            self._atomic_write(self.policy_path, payload + "\n")

    def _atomic_write(self, path: Path, content: str) -> None:
        tmp_file = None
        tmp_path: str | None = None
        try:
            tmp_file = tempfile.NamedTemporaryFile(
                mode="w",
                dir=str(path.parent),
                prefix=f"{path.name}.",
                suffix=".tmp",
                delete=False,
                encoding="utf-8",
            )
            tmp_path = tmp_file.name
            tmp_file.write(content)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
            tmp_file.close()
            os.replace(tmp_path, path)
            tmp_path = None
        except OSError as e:
            raise PersistenceError(f"Failed to write {path}: {e}") from e
        finally:
            if tmp_file is not None and not tmp_file.closed:
                tmp_file.close()
            if tmp_path and os.path.exists(tmp_path):
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
