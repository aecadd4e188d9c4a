"""Messaging gateways."""

from relaybot.channels.base import GatewayClient
from relaybot.channels.errors import (
    GatewayDisconnected,
    GatewayError,
    GatewayTimeout,
    SendFailed,
    TemporaryGatewayError,
)
from relaybot.channels.onebot import OneBotGateway

__all__ = [
    "GatewayClient",
    "GatewayDisconnected",
    "GatewayError",
    "GatewayTimeout",
    "OneBotGateway",
    "SendFailed",
    "TemporaryGatewayError",
]
