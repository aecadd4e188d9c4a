"""Permission policy and evaluation."""

from relaybot.permissions.engine import PermissionPolicy, PolicyHolder, Tier, evaluate

__all__ = ["PermissionPolicy", "PolicyHolder", "Tier", "evaluate"]
