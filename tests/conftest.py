"""
Shared fixtures: an in-memory push connection standing in for the websocket.
"""

import asyncio

import pytest

from polobot.connectors.router import TopicRouter
from polobot.connectors.session import StreamHub
from polobot.connectors.stream import (
    EVENT, SUBSCRIBE, SUBSCRIBED, UNSUBSCRIBE, UNSUBSCRIBED,
)
from polobot.errors import DecodeError, TransportError


class FakeConnection:
    """Push connection replaying frames queued by the test."""

    def __init__(self, fail_connect=None, hang_connect=False):
        self.fail_connect = fail_connect
        self.hang_connect = hang_connect
        self.connect_cancelled = False
        self._released = asyncio.Event()
        self.inbox = asyncio.Queue()
        self.sent = []
        self.subscriptions = {}
        self.connected = False
        self.closed = False
        self._next_subscription = 100

    async def connect(self):
        if self.fail_connect is not None:
            raise self.fail_connect
        if self.hang_connect:
            try:
                await self._released.wait()
            except asyncio.CancelledError:
                self.connect_cancelled = True
                raise
        self.connected = True

    def release(self):
        """Let a hanging connect complete."""
        self._released.set()

    async def send(self, frame):
        if self.closed:
            raise TransportError("Push connection is not open")
        self.sent.append(frame)
        if frame[0] == SUBSCRIBE:
            self._next_subscription += 1
            self.subscriptions[frame[3]] = self._next_subscription
            self.inbox.put_nowait([SUBSCRIBED, frame[1], self._next_subscription])
        elif frame[0] == UNSUBSCRIBE:
            self.inbox.put_nowait([UNSUBSCRIBED, frame[1]])

    async def receive(self):
        item = await self.inbox.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(TransportError("Push connection closed"))

    def push_event(self, topic, args, kwargs=None):
        self.inbox.put_nowait([EVENT, self.subscriptions[topic], 1, {}, args, kwargs or {}])

    def push_frame(self, frame):
        self.inbox.put_nowait(frame)

    def push_malformed(self):
        self.inbox.put_nowait(DecodeError("Failed to parse frame"))

    def drop(self):
        self.inbox.put_nowait(TransportError("Connection reset by peer"))

    def sent_codes(self):
        return [frame[0] for frame in self.sent]


class FakeConnectionFactory:
    """Creates fake connections; queued failures are used by the next connects."""

    def __init__(self):
        self.connections = []
        self.failures = []
        self.hang = False

    def __call__(self):
        failure = self.failures.pop(0) if self.failures else None
        connection = FakeConnection(fail_connect=failure, hang_connect=self.hang)
        self.connections.append(connection)
        return connection

    @property
    def latest(self):
        return self.connections[-1]

    @property
    def opened(self):
        return [connection for connection in self.connections if connection.connected]


async def _wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def connection_factory():
    return FakeConnectionFactory()


@pytest.fixture
def router():
    return TopicRouter()


@pytest.fixture
def hub(connection_factory, router):
    return StreamHub(connection_factory, router, request_timeout=1.0)


@pytest.fixture
def ticker_args():
    return ["BTC_ETH", "0.0251", "0.02589999", "0.0251", "0.02390438",
            "6.16485315", "245.82513926", 0, "0.026", "0.0245"]


@pytest.fixture
def book_args():
    return [
        {"type": "orderBookModify", "data": {"type": "bid", "rate": "0.00240000", "amount": "12.50000000"}},
        {"type": "orderBookRemove", "data": {"type": "ask", "rate": "0.00250000"}},
        {"type": "newTrade", "data": {"tradeID": "364476", "rate": "0.00300888", "amount": "0.03580906",
                                      "date": "2014-10-07 21:51:20", "total": "0.00010775", "type": "sell"}},
    ]
