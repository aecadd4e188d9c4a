"""Permission tiers and policy evaluation.

``evaluate`` is a pure function of (principal, scope, policy). The policy is
validated once when it is built; evaluation itself never fails.
"""

import threading
from dataclasses import dataclass, field
from enum import IntEnum
from types import MappingProxyType
from typing import Any, Mapping

from relaybot.bus.events import Principal, Scope
from relaybot.config.loader import ConfigError
from relaybot.config.schema import PermissionConfig


class Tier(IntEnum):
    """Trust levels, totally ordered."""

    BLOCKED = 0
    DEFAULT = 1
    TRUSTED = 2
    ADMIN = 3

    @classmethod
    def parse(cls, value: "str | int | Tier") -> "Tier":
        """Parse a tier name or numeric level. Raises ValueError."""
        if isinstance(value, Tier):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Invalid tier: {value!r}")
        if isinstance(value, int):
            return cls(value)
        name = str(value).strip().upper()
        if name.isdigit():
            return cls(int(name))
        try:
            return cls[name]
        except KeyError:
            raise ValueError(f"Unknown tier: {value!r}") from None


def _freeze(overrides: Mapping[str, Tier]) -> Mapping[str, Tier]:
    return MappingProxyType(dict(overrides))


@dataclass(frozen=True)
class PermissionPolicy:
    """
    Immutable permission snapshot.

    Override keys are either a scope key ("group:123", "private:42") or a
    member of a scope ("group:123/456").
    """

    default_tier: Tier = Tier.DEFAULT
    private_tier: Tier = Tier.DEFAULT
    admin_ids: frozenset[str] = frozenset()
    overrides: Mapping[str, Tier] = field(default_factory=lambda: _freeze({}))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PermissionPolicy":
        """
        Build a validated policy from a plain mapping.

        Accepts the config field names (default, private, admins, other) and
        the snapshot field names written by ``to_dict``.

        Raises:
            ConfigError: A tier or override key is malformed.
        """
        if not isinstance(data, Mapping):
            raise ConfigError("Permission policy must be a mapping")

        def tier_of(name: str, value: Any) -> Tier:
            try:
                return Tier.parse(value)
            except ValueError as e:
                raise ConfigError(f"Invalid tier for {name}: {e}") from None

        default_raw = data.get("default_tier", data.get("default", Tier.DEFAULT))
        private_raw = data.get("private_tier", data.get("private", Tier.DEFAULT))
        admins_raw = data.get("admin_ids", data.get("admins", [])) or []
        other_raw = data.get("overrides", data.get("other", {})) or {}

        if isinstance(admins_raw, (str, bytes)) or not isinstance(admins_raw, (list, tuple, set, frozenset)):
            raise ConfigError("Permission admins must be a list of user ids")
        if not isinstance(other_raw, Mapping):
            raise ConfigError("Permission overrides must be a mapping")

        overrides: dict[str, Tier] = {}
        for key, value in other_raw.items():
            overrides[_normalize_override_key(str(key))] = tier_of(f"override {key!r}", value)

        return cls(
            default_tier=tier_of("default", default_raw),
            private_tier=tier_of("private", private_raw),
            admin_ids=frozenset(str(a).strip() for a in admins_raw if str(a).strip()),
            overrides=_freeze(overrides),
        )

    @classmethod
    def from_config(cls, config: PermissionConfig) -> "PermissionPolicy":
        return cls.from_dict(config.model_dump())

    def to_dict(self) -> dict[str, Any]:
        return {
            "default_tier": self.default_tier.name.lower(),
            "private_tier": self.private_tier.name.lower(),
            "admin_ids": sorted(self.admin_ids),
            "overrides": {k: v.name.lower() for k, v in sorted(self.overrides.items())},
        }


def _normalize_override_key(key: str) -> str:
    scope_part, sep, member = key.strip().partition("/")
    try:
        scope = Scope.parse(scope_part)
    except ValueError as e:
        raise ConfigError(f"Invalid override key {key!r}: {e}") from None
    if sep:
        member = member.strip()
        if not member:
            raise ConfigError(f"Invalid override key {key!r}: empty member id")
        return f"{scope.key}/{member}"
    return scope.key


def evaluate(principal: Principal, scope: Scope, policy: PermissionPolicy) -> Tier:
    """
    Resolve the tier for a sender in a scope.

    Precedence, highest first: member override for this principal in this
    scope, scope override, admin membership, the private-scope tier, the
    policy default.
    """
    member_key = f"{scope.key}/{principal.sender_id}"
    if member_key in policy.overrides:
        return policy.overrides[member_key]
    if scope.key in policy.overrides:
        return policy.overrides[scope.key]
    if principal.sender_id in policy.admin_ids:
        return Tier.ADMIN
    if scope.is_private:
        return policy.private_tier
    return policy.default_tier


class PolicyHolder:
    """
    Shared reference to the current policy.

    Readers take ``current`` once per evaluation and keep using that
    snapshot; ``swap`` replaces the whole policy in one assignment.
    """

    def __init__(self, policy: PermissionPolicy):
        self._policy = policy
        self._version = 1
        self._swap_lock = threading.Lock()

    @property
    def current(self) -> PermissionPolicy:
        return self._policy

    @property
    def version(self) -> int:
        return self._version

    def swap(self, policy: PermissionPolicy) -> PermissionPolicy:
        """Install a new policy and return the one it replaced."""
        if not isinstance(policy, PermissionPolicy):
            raise TypeError("swap() expects a PermissionPolicy")
        with self._swap_lock:
            previous = self._policy
            self._policy = policy
            self._version += 1
        return previous
