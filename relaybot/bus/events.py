"""Event types shared by the gateway and the dispatcher."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ScopeKind(str, Enum):
    """Kind of conversation a message belongs to."""

    PRIVATE = "private"
    GROUP = "group"


@dataclass(frozen=True)
class Scope:
    """
    Identity of a conversation context.

    A private scope is keyed by the other user's id, a group scope by the
    group id. Scopes are immutable and hashable so they can key dicts.
    """

    kind: ScopeKind
    id: str

    @property
    def key(self) -> str:
        """Stable string key, e.g. ``group:123``."""
        return f"{self.kind.value}:{self.id}"

    @property
    def is_private(self) -> bool:
        return self.kind is ScopeKind.PRIVATE

    @classmethod
    def private(cls, user_id: str | int) -> "Scope":
        return cls(ScopeKind.PRIVATE, str(user_id))

    @classmethod
    def group(cls, group_id: str | int) -> "Scope":
        return cls(ScopeKind.GROUP, str(group_id))

    @classmethod
    def parse(cls, key: str) -> "Scope":
        """Parse a ``kind:id`` key. Raises ValueError on malformed keys."""
        kind, sep, ident = (key or "").strip().partition(":")
        if not sep or not ident:
            raise ValueError(f"Malformed scope key: {key!r}")
        try:
            return cls(ScopeKind(kind.lower()), ident)
        except ValueError:
            raise ValueError(f"Unknown scope kind in {key!r}") from None

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class Principal:
    """The sender of an inbound message."""

    sender_id: str
    display_name: str | None = None


@dataclass(frozen=True)
class InboundEvent:
    """A message received from the gateway."""

    scope: Scope
    principal: Principal
    raw_text: str
    sequence_no: int
    received_at: datetime = field(default_factory=datetime.now)
    message_id: str | None = None
    mentions_self: bool = False  # The bot (or @all) was mentioned
    from_self: bool = False  # Echo of a message the bot account sent itself
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

