"""
Poloniex connector modules for REST and push channel communication.
"""

from .rest import PoloniexRESTClient
from .rate_limiter import RateLimiter, RateLimit
from .router import TopicRouter
from .session import StreamHub, StreamSession
from .signing import NonceSource, sign
from .stream import StreamConnection
from .subscription import (
    ControlSignal,
    SubscriptionControl,
    SubscriptionController,
    SubscriptionState,
)

__all__ = [
    "PoloniexRESTClient",
    "RateLimiter",
    "RateLimit",
    "TopicRouter",
    "StreamHub",
    "StreamSession",
    "NonceSource",
    "sign",
    "StreamConnection",
    "ControlSignal",
    "SubscriptionControl",
    "SubscriptionController",
    "SubscriptionState",
]
