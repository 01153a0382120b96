"""
Request signing for the Poloniex trading API.

Every private command carries a nonce that must be strictly larger than the
previous one seen by the exchange for the same key, and a HMAC-SHA512
signature over the exact form-encoded body that is sent.
"""

import hashlib
import hmac
import threading
import time
from typing import Optional, Union


class NonceSource:
    """
    Strictly increasing nonce generator shared by all signed requests.

    Values are seeded from wall-clock nanoseconds so a restarted client keeps
    issuing values above the ones a previous run already used.
    """

    def __init__(self, start: Optional[int] = None):
        """
        Initialize nonce source.

        Args:
            start: Last value considered used. Mostly useful in tests.
        """
        self._last = start if start is not None else 0
        self._lock = threading.Lock()

    def next(self) -> int:
        """Return a nonce larger than every value returned before."""
        with self._lock:
            self._last = max(self._last + 1, time.time_ns())
            return self._last

    @property
    def last(self) -> int:
        """Most recently issued nonce (0 before the first call)."""
        return self._last


def sign(secret: Union[bytes, str], body: bytes) -> str:
    """Generate the HMAC SHA512 hex signature of a serialized request body."""
    if isinstance(secret, str):
        secret = secret.encode('utf-8')
    return hmac.new(secret, body, hashlib.sha512).hexdigest()
