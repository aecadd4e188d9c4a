"""Base gateway interface."""

from abc import ABC, abstractmethod
from typing import AsyncIterator

from relaybot.bus.events import InboundEvent, Scope


class GatewayClient(ABC):
    """
    Connection to a messaging bridge.

    ``events()`` yields inbound messages for as long as the gateway runs,
    reconnecting underneath as needed. ``send`` posts a reply through the
    bridge's command API and returns the bridge's delivery id.
    """

    name: str = "base"

    @abstractmethod
    def events(self) -> AsyncIterator[InboundEvent]:
        """Stream inbound events until ``close()`` is called."""

    @abstractmethod
    async def send(self, scope: Scope, text: str, reply_to: str | None = None) -> str:
        """
        Send a text message to a scope.

        Raises:
            TemporaryGatewayError: Safe to retry.
            SendFailed: Permanent rejection.
        """

    @abstractmethod
    async def stop_events(self) -> None:
        """End the event stream. ``send`` keeps working until ``close()``."""

    @abstractmethod
    async def close(self) -> None:
        """Stop the event stream and release connections. ``send`` fails afterwards."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the event socket is currently up."""
