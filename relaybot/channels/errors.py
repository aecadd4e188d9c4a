"""Gateway errors.

Gateways raise these so the dispatcher can decide whether to retry.
"""


class GatewayError(RuntimeError):
    """Base class for gateway errors."""


class TemporaryGatewayError(GatewayError):
    """A transient failure (network, reconnect, rate limit). Safe to retry."""


class GatewayDisconnected(TemporaryGatewayError):
    """The bridge could not be reached."""


class GatewayTimeout(TemporaryGatewayError):
    """The bridge did not answer within the send timeout."""


class SendFailed(GatewayError):
    """A permanent failure (bad target id, rejected message). Do not retry."""
