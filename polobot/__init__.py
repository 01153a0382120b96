"""
Poloniex API client - Core Module

Signed trading API commands, public market data and a multiplexed push
channel with cooperative stop/reset of subscriptions.
"""

__version__ = "1.0.0"
__author__ = "Trading Bot Team"

from .client import PoloniexClient
from .config import Config, load_config
from .connectors import ControlSignal, SubscriptionControl, SubscriptionState
from .errors import (
    ApiError,
    DecodeError,
    InvalidTopicError,
    PoloniexError,
    ProtocolError,
    SubscriptionError,
    TransportError,
)

__all__ = [
    "PoloniexClient",
    "Config",
    "load_config",
    "ControlSignal",
    "SubscriptionControl",
    "SubscriptionState",
    "ApiError",
    "DecodeError",
    "InvalidTopicError",
    "PoloniexError",
    "ProtocolError",
    "SubscriptionError",
    "TransportError",
]
