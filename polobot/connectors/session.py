"""
Push session management.

A StreamSession is one live connection plus the single task reading from it.
The StreamHub owns the session shared by every active subscription and makes
sure concurrent subscribers never open two sockets or close one twice.
"""

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from ..errors import DecodeError, PoloniexError, ProtocolError, TransportError
from ..types import StreamEvent
from .router import TopicRouter
from .stream import (
    ABORT, ERROR, EVENT, GOODBYE, SUBSCRIBE, SUBSCRIBED, UNSUBSCRIBE, UNSUBSCRIBED,
)


class StreamSession:
    """
    One push connection and its reader task.

    The reader resolves subscribe/unsubscribe acknowledgments and hands events
    to the router. Frames that fail to parse are counted and skipped; a
    transport or protocol failure ends the session and is kept in ``error``.
    """

    def __init__(self, connection, router: TopicRouter, request_timeout: float = 10.0):
        """
        Initialize push session.

        Args:
            connection: Unopened StreamConnection (or compatible object)
            router: Router receiving decoded events
            request_timeout: Seconds to wait for a subscribe/unsubscribe acknowledgment
        """
        self.connection = connection
        self.router = router
        self.request_timeout = request_timeout
        self.logger = logging.getLogger(__name__)

        self.error: Optional[PoloniexError] = None
        self._closed = asyncio.Event()
        self._reader: Optional[asyncio.Task] = None
        self._request_ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._topics_by_subscription: Dict[Any, str] = {}
        self._subscriptions_by_topic: Dict[str, Any] = {}

        # Statistics
        self.frames_received = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def topics(self) -> List[str]:
        return list(self._subscriptions_by_topic)

    async def start(self) -> None:
        """Connect and start reading."""
        await self.connection.connect()
        self._reader = asyncio.create_task(self._read_loop())

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def close(self) -> None:
        """Stop the reader and close the connection. Safe to call multiple times."""
        if self.error is None:
            self.error = TransportError("Push session closed")
        reader = self._reader
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        await self.connection.close()
        self._finish()

    async def subscribe(self, topic: str) -> Any:
        """
        Subscribe the session to a topic.

        Returns:
            Subscription id assigned by the router
        """
        reply = await self._request(SUBSCRIBE, {}, topic)
        if len(reply) < 3:
            raise ProtocolError(f"Malformed subscription acknowledgment: {reply}")

        subscription_id = reply[2]
        self._topics_by_subscription[subscription_id] = topic
        self._subscriptions_by_topic[topic] = subscription_id
        self.logger.info(f"Subscribed to {topic} (subscription {subscription_id})")
        return subscription_id

    async def unsubscribe(self, topic: str) -> None:
        """Unsubscribe the session from a topic."""
        subscription_id = self._subscriptions_by_topic.pop(topic, None)
        if subscription_id is None:
            return
        self._topics_by_subscription.pop(subscription_id, None)
        if not self.closed:
            await self._request(UNSUBSCRIBE, subscription_id)
            self.logger.info(f"Unsubscribed from {topic}")

    async def _request(self, code: int, *payload: Any) -> List[Any]:
        if self.closed:
            raise self.error or TransportError("Push session closed")

        request_id = next(self._request_ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self.connection.send([code, request_id, *payload])
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise ProtocolError(f"No acknowledgment for request {request_id} within {self.request_timeout}s") from e
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    frame = await self.connection.receive()
                except DecodeError as e:
                    self.router.record_malformed_frame()
                    self.logger.warning(f"Dropping malformed frame: {e}")
                    continue

                self.frames_received += 1
                await self._handle_frame(frame)

        except (TransportError, ProtocolError) as e:
            self.error = e
            self.logger.warning(f"Push session ended: {e}")
        finally:
            self._finish()

    async def _handle_frame(self, frame: List[Any]) -> None:
        code = frame[0]
        try:
            if code == EVENT:
                await self._handle_event(frame)
            elif code in (SUBSCRIBED, UNSUBSCRIBED):
                self._resolve(frame[1], result=frame)
            elif code == ERROR:
                reason = frame[4] if len(frame) > 4 else frame
                self._resolve(frame[2], error=ProtocolError(f"Request rejected: {reason}"))
            elif code in (GOODBYE, ABORT):
                raise ProtocolError(f"Session closed by router: {frame}")
            else:
                self.logger.debug(f"Ignoring frame: {frame}")
        except (IndexError, TypeError) as e:
            self.router.record_malformed_frame()
            self.logger.warning(f"Dropping malformed frame {frame!r}: {e}")

    async def _handle_event(self, frame: List[Any]) -> None:
        # [EVENT, subscription, publication, details, args?, kwargs?]
        topic = self._topics_by_subscription.get(frame[1])
        if topic is None:
            self.router.record_dropped_event()
            return

        args = frame[4] if len(frame) > 4 else []
        kwargs = frame[5] if len(frame) > 5 else {}
        if not isinstance(args, list) or not isinstance(kwargs, dict):
            raise TypeError("event payload must be a list and a dict")

        await self.router.dispatch(StreamEvent(topic=topic, args=args, kwargs=kwargs))

    def _resolve(self, request_id: Any, result: Any = None, error: Optional[Exception] = None) -> None:
        future = self._pending.get(request_id)
        if future is None or future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def _finish(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        error = self.error or TransportError("Push session closed")
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)


class StreamHub:
    """
    Owner of the push session shared by all subscriptions.

    The session is created lazily by the first subscriber and closed when
    the last active subscription controller detaches. ``close()`` and
    ``unsubscribe_all()`` abort a connection that is still being opened.
    """

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        router: TopicRouter,
        request_timeout: float = 10.0,
    ):
        """
        Initialize stream hub.

        Args:
            connection_factory: Callable returning a new, unopened connection
            router: Router shared by every session
            request_timeout: Acknowledgment timeout passed to sessions
        """
        self.connection_factory = connection_factory
        self.router = router
        self.request_timeout = request_timeout
        self.logger = logging.getLogger(__name__)

        self.session: Optional[StreamSession] = None
        self.controllers: Set[Any] = set()
        self._lock = asyncio.Lock()
        self._idle = asyncio.Event()
        self._idle.set()
        self._opening: Optional[asyncio.Task] = None
        # Bumped by every shutdown; a session opened across one is thrown away
        self._generation = 0

        # Statistics
        self.sessions_opened = 0

    async def acquire(self) -> StreamSession:
        """
        Return the live session, opening a new one if there is none.

        Raises:
            TransportError: Socket could not be opened, or the hub was shut
                down while it was being opened
            ProtocolError: Handshake failed
        """
        async with self._lock:
            if self.session is not None and not self.session.closed:
                return self.session

            stale, self.session = self.session, None
            if stale is not None:
                await stale.close()

            generation = self._generation
            session = StreamSession(self.connection_factory(), self.router, self.request_timeout)
            opening = asyncio.ensure_future(session.start())
            self._opening = opening
            try:
                await asyncio.wait({opening})
            except asyncio.CancelledError:
                opening.cancel()
                await asyncio.gather(opening, return_exceptions=True)
                await session.close()
                raise
            finally:
                if self._opening is opening:
                    self._opening = None

            if opening.cancelled() or generation != self._generation:
                await session.close()
                raise TransportError("Push connection shut down while opening")
            if opening.exception() is not None:
                await session.close()
                raise opening.exception()

            self.session = session
            self.sessions_opened += 1
            return session

    async def discard(self, session: StreamSession) -> None:
        """Tear a session down; the next acquire opens a fresh one."""
        if self.session is session:
            self.session = None
        await session.close()

    def attach(self, controller: Any) -> None:
        self.controllers.add(controller)
        self._idle.clear()

    async def detach(self, controller: Any) -> None:
        self.controllers.discard(controller)
        if not self.controllers:
            self._idle.set()
            await self._close_session()

    async def unsubscribe_all(self) -> None:
        """Stop every active subscription and release the shared connection."""
        controllers = list(self.controllers)
        self.logger.info(f"Stopping {len(controllers)} subscription(s)")
        self._stop_all()

        await self._idle.wait()
        await self._close_session()

    async def close(self) -> None:
        """Stop every subscription and close the connection without waiting for them."""
        self._stop_all()
        await self._close_session()

    def _stop_all(self) -> None:
        for controller in list(self.controllers):
            controller.control.stop()
        self._generation += 1
        if self._opening is not None:
            self._opening.cancel()

    async def _close_session(self) -> None:
        session, self.session = self.session, None
        if session is not None:
            await session.close()

    def get_stats(self) -> Dict[str, Any]:
        """Get hub statistics."""
        return {
            'connected': self.session is not None and not self.session.closed,
            'active_subscriptions': len(self.controllers),
            'sessions_opened': self.sessions_opened,
            'session_topics': self.session.topics if self.session else [],
        }
