"""
Subscription lifecycle on the shared push connection.

Each subscribe call runs one SubscriptionController until the caller asks it
to stop. The controller drives the connection through
IDLE -> CONNECTING -> SUBSCRIBED -> RECONNECTING -> STOPPED, reconnecting on
socket failures and on caller-requested resets.
"""

import asyncio
import logging
import re
from collections import deque
from enum import Enum
from typing import Any, Callable, Optional

from ..errors import InvalidTopicError, ProtocolError, TransportError
from .router import TopicRouter
from .session import StreamHub, StreamSession
from .updates import TICKER_TOPIC, decoder_for


PAIR_TOPIC = re.compile(r"^[A-Za-z0-9]+_[A-Za-z0-9]+$")


def is_valid_topic(topic: str) -> bool:
    return isinstance(topic, str) and (topic == TICKER_TOPIC or bool(PAIR_TOPIC.match(topic)))


class ControlSignal(str, Enum):
    """Instruction sent by the caller to a running subscription."""
    STOP = "stop"
    RESET = "reset"
    CLOSED = "closed"  # control handle was closed

    @property
    def is_stop(self) -> bool:
        return self is not ControlSignal.RESET


class SubscriptionState(str, Enum):
    """Subscription controller states."""
    IDLE = "idle"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


class SubscriptionControl:
    """
    Caller handle used to stop or reset one subscription.

    ``reset()`` rebuilds the push connection without ending the subscription,
    useful when updates look stalled. ``stop()`` and ``close()`` both end it;
    a closed control keeps reporting CLOSED. Must be used from the event
    loop running the subscription.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def stop(self) -> None:
        self._queue.put_nowait(ControlSignal.STOP)

    def reset(self) -> None:
        self._queue.put_nowait(ControlSignal.RESET)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(ControlSignal.CLOSED)

    def poll(self) -> Optional[ControlSignal]:
        """Return the next pending signal without waiting, or None."""
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return ControlSignal.CLOSED if self._closed else None

    async def next_signal(self) -> ControlSignal:
        """Wait for the next signal."""
        signal = self.poll()
        if signal is not None:
            return signal
        return await self._queue.get()


class SubscriptionController:
    """
    State machine driving one topic subscription.

    Transport and protocol failures are absorbed and trigger a reconnect.
    ``run()`` returns None after a caller-requested stop on a healthy
    subscription and raises the last connection error when the stop arrives
    while the connection could not be established.
    """

    def __init__(
        self,
        hub: StreamHub,
        router: TopicRouter,
        topic: str,
        handler: Callable[[Any], Any],
        control: Optional[SubscriptionControl] = None,
        decoder: Optional[Callable] = None,
        reconnect_delay: float = 0.5,
        max_reconnect_delay: float = 30.0,
    ):
        """
        Initialize subscription controller.

        Args:
            hub: Owner of the shared push session
            router: Router the handler is registered with
            topic: ``ticker`` or a market name such as ``BTC_ETH``
            handler: Callable (plain or coroutine) receiving decoded updates
            control: Caller control handle, a private one is created if None
            decoder: Event decoder, picked from the topic if None
            reconnect_delay: Delay after the first failed connection attempt
            max_reconnect_delay: Upper bound of the exponential backoff
        """
        self.hub = hub
        self.router = router
        self.topic = topic
        self.handler = handler
        self.control = control or SubscriptionControl()
        self.decoder = decoder or decoder_for(topic)
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.logger = logging.getLogger(__name__)

        self.state = SubscriptionState.IDLE
        self.state_history = deque([SubscriptionState.IDLE], maxlen=64)
        self.last_error: Optional[Exception] = None
        self.failed_attempts = 0
        self.reconnects = 0

    def _set_state(self, state: SubscriptionState) -> None:
        if state is self.state:
            return
        self.logger.debug(f"{self.topic}: {self.state.value} -> {state.value}")
        self.state = state
        self.state_history.append(state)

    def _backoff_delay(self) -> float:
        return min(self.reconnect_delay * 2 ** (self.failed_attempts - 1), self.max_reconnect_delay)

    async def run(self) -> None:
        """
        Run the subscription until the control handle says stop.

        Raises:
            InvalidTopicError: Topic can never be subscribed
            SubscriptionError: Topic already has an active subscriber
            TransportError, ProtocolError: Stopped while the last connection attempt had failed
        """
        if not is_valid_topic(self.topic):
            self._set_state(SubscriptionState.STOPPED)
            raise InvalidTopicError(f"Invalid topic: {self.topic!r}")

        self.router.register(self.topic, self.handler, self.decoder)
        self.hub.attach(self)
        try:
            await self._run()
        finally:
            self.router.deregister(self.topic)
            self._set_state(SubscriptionState.STOPPED)
            await self.hub.detach(self)
            self.logger.info(f"Subscription to {self.topic} stopped")

    async def _run(self) -> None:
        while True:
            if self._stop_requested():
                self._stop_unconnected()
                return

            self._set_state(SubscriptionState.CONNECTING)
            try:
                session = await self._connect()

            except (TransportError, ProtocolError) as e:
                self.last_error = e
                self.failed_attempts += 1
                self.logger.warning(f"{self.topic}: connection attempt {self.failed_attempts} failed: {e}")

                if self._stop_requested():
                    raise

                delay = self._backoff_delay()
                signal = await self._wait_for_signal(delay)
                if signal is not None and signal.is_stop:
                    raise
                continue

            if session is None:
                self._stop_unconnected()
                return

            self.failed_attempts = 0
            self.last_error = None
            self._set_state(SubscriptionState.SUBSCRIBED)

            signal = await self._watch(session)
            if signal is not None and signal.is_stop:
                await self._unsubscribe(session)
                return

            if signal is ControlSignal.RESET:
                self.logger.info(f"{self.topic}: reset requested, rebuilding push connection")
            else:
                self.last_error = session.error
                self.logger.warning(f"{self.topic}: push connection lost: {session.error}")

            self._set_state(SubscriptionState.RECONNECTING)
            self.reconnects += 1
            await self.hub.discard(session)

    def _stop_requested(self) -> bool:
        """Drain queued signals; resets are dropped while there is no connection to rebuild."""
        while True:
            signal = self.control.poll()
            if signal is None:
                return False
            if signal.is_stop:
                return True
            self.logger.debug(f"{self.topic}: reset ignored, not connected")

    def _stop_unconnected(self) -> None:
        if self.failed_attempts:
            raise self.last_error

    async def _open(self) -> StreamSession:
        session = await self.hub.acquire()
        await session.subscribe(self.topic)
        return session

    async def _connect(self) -> Optional[StreamSession]:
        """
        Open the push session and subscribe, unless a stop arrives first.

        Returns:
            Subscribed session, or None if the caller asked to stop
        """
        opening = asyncio.ensure_future(self._open())
        try:
            while True:
                signal = asyncio.ensure_future(self.control.next_signal())
                try:
                    done, _ = await asyncio.wait({opening, signal}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    if not signal.done():
                        signal.cancel()

                if signal in done and signal.result().is_stop:
                    break
                if signal in done:
                    self.logger.debug(f"{self.topic}: reset ignored, still connecting")
                if opening in done:
                    return opening.result()
        finally:
            if not opening.done():
                opening.cancel()
                await asyncio.gather(opening, return_exceptions=True)

        # Stopped while connecting; the attempt may have completed meanwhile
        if not opening.cancelled() and opening.exception() is None:
            await self._unsubscribe(opening.result())
        return None

    async def _watch(self, session: StreamSession) -> Optional[ControlSignal]:
        """Wait for the session to end or a control signal, whichever comes first."""
        closed = asyncio.ensure_future(session.wait_closed())
        signal = asyncio.ensure_future(self.control.next_signal())
        try:
            done, _ = await asyncio.wait({closed, signal}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (closed, signal):
                if not task.done():
                    task.cancel()

        if signal in done:
            return signal.result()
        return None

    async def _wait_for_signal(self, timeout: float) -> Optional[ControlSignal]:
        try:
            return await asyncio.wait_for(self.control.next_signal(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def _unsubscribe(self, session: StreamSession) -> None:
        if session.closed:
            return
        try:
            await session.unsubscribe(self.topic)
        except (TransportError, ProtocolError) as e:
            self.logger.debug(f"{self.topic}: unsubscribe failed: {e}")
