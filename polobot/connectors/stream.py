"""
WAMP push channel connection.
Owns one websocket to the push endpoint, performs the session handshake and
reads/writes raw JSON frames.
"""

import asyncio
import json
import logging
from typing import Any, List, Optional
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import DecodeError, ProtocolError, TransportError


WAMP_SUBPROTOCOL = "wamp.2.json"

# WAMP v2 message codes
HELLO = 1
WELCOME = 2
ABORT = 3
GOODBYE = 6
ERROR = 8
SUBSCRIBE = 32
SUBSCRIBED = 33
UNSUBSCRIBE = 34
UNSUBSCRIBED = 35
EVENT = 36


class StreamConnection:
    """
    Single websocket connection speaking WAMP v2 JSON.

    The first frame received after HELLO must be WELCOME; anything else fails
    the connection attempt.
    """

    def __init__(
        self,
        url: str = "wss://api.poloniex.com",
        realm: str = "realm1",
        handshake_timeout: float = 10.0,
        open_timeout: float = 10.0,
        ping_interval: Optional[float] = 20.0,
        ping_timeout: Optional[float] = 10.0,
    ):
        self.url = url
        self.realm = realm
        self.handshake_timeout = handshake_timeout
        self.open_timeout = open_timeout
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout

        self.logger = logging.getLogger(__name__)
        self.websocket = None
        self.session_id: Optional[int] = None

    @property
    def is_connected(self) -> bool:
        return self.websocket is not None and self.session_id is not None

    async def connect(self) -> None:
        """
        Open the websocket and join the realm.

        Raises:
            TransportError: Socket could not be opened
            ProtocolError: Handshake rejected or not acknowledged in time
        """
        self.logger.info(f"Connecting to push endpoint: {self.url}")
        try:
            self.websocket = await websockets.connect(
                self.url,
                subprotocols=[WAMP_SUBPROTOCOL],
                open_timeout=self.open_timeout,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
                close_timeout=10,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self.logger.error(f"Failed to connect to {self.url}: {e}")
            raise TransportError(f"Failed to connect to {self.url}: {e}") from e

        try:
            await self.send([HELLO, self.realm, {"roles": {"subscriber": {}}}])
            welcome = await asyncio.wait_for(self.receive(), timeout=self.handshake_timeout)
        except asyncio.TimeoutError as e:
            await self.close()
            raise ProtocolError(f"No handshake acknowledgment within {self.handshake_timeout}s") from e
        except (TransportError, DecodeError) as e:
            await self.close()
            raise ProtocolError(f"Handshake failed: {e}") from e

        if not welcome or welcome[0] != WELCOME:
            await self.close()
            raise ProtocolError(f"Handshake rejected: {welcome}")

        self.session_id = welcome[1] if len(welcome) > 1 else None
        self.logger.info(f"Push session established (session {self.session_id})")

    async def send(self, frame: List[Any]) -> None:
        """Send one frame."""
        if self.websocket is None:
            raise TransportError("Push connection is not open")
        try:
            await self.websocket.send(json.dumps(frame))
        except ConnectionClosed as e:
            raise TransportError(f"Push connection closed: {e}") from e

    async def receive(self) -> List[Any]:
        """
        Wait for the next frame.

        Raises:
            TransportError: Socket closed or failed
            DecodeError: Frame is not a JSON array
        """
        if self.websocket is None:
            raise TransportError("Push connection is not open")
        try:
            message = await self.websocket.recv()
        except ConnectionClosed as e:
            raise TransportError(f"Push connection closed: {e}") from e
        except WebSocketException as e:
            raise TransportError(f"Push connection error: {e}") from e

        try:
            frame = json.loads(message)
        except ValueError as e:
            raise DecodeError(f"Failed to parse frame: {e}") from e

        if not isinstance(frame, list) or not frame or not isinstance(frame[0], int):
            raise DecodeError(f"Not a WAMP frame: {message!r}")
        return frame

    async def close(self) -> None:
        """Close the socket. Safe to call multiple times."""
        websocket, self.websocket = self.websocket, None
        self.session_id = None
        if websocket is not None:
            try:
                await websocket.close()
            except (OSError, WebSocketException) as e:
                self.logger.debug(f"Error while closing push connection: {e}")
            self.logger.info("Push connection closed")
