"""
Exception hierarchy for the Poloniex client.

Callers can tell transient failures (transport, protocol) apart from
failures that must never be retried blindly (API errors on signed commands).
"""

from typing import Optional


class PoloniexError(Exception):
    """Base class for all client errors."""


class TransportError(PoloniexError):
    """Connection refused, timeout, TLS failure or dropped socket."""


class ProtocolError(PoloniexError):
    """Handshake rejected or unexpected message on the push channel."""


class DecodeError(PoloniexError):
    """Response body or streamed frame does not match the expected schema."""


class ApiError(PoloniexError):
    """
    Business-level failure reported by the exchange.

    Raised whenever a response envelope carries an ``error`` field, even
    when the HTTP status is 200.
    """

    def __init__(self, message: str, command: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.command = command
        self.status = status


class InvalidTopicError(PoloniexError, ValueError):
    """Topic name can never be subscribed to."""


class SubscriptionError(PoloniexError):
    """Topic already has an active subscriber."""
