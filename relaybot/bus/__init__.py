"""Event types exchanged between the gateway and the dispatcher."""

from relaybot.bus.events import InboundEvent, Principal, Scope, ScopeKind

__all__ = ["InboundEvent", "Principal", "Scope", "ScopeKind"]
