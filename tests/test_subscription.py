"""
Tests for the subscription controller, the push session and shared connection bookkeeping.
"""

import pytest
import asyncio

from polobot.connectors.session import StreamSession
from polobot.connectors.stream import EVENT, GOODBYE, UNSUBSCRIBE
from polobot.connectors.subscription import (
    ControlSignal,
    SubscriptionControl,
    SubscriptionController,
    SubscriptionState,
    is_valid_topic,
)
from polobot.errors import InvalidTopicError, ProtocolError, SubscriptionError, TransportError


def make_controller(hub, router, topic, handler, control=None):
    return SubscriptionController(
        hub,
        router,
        topic,
        handler,
        control=control,
        reconnect_delay=0.01,
        max_reconnect_delay=0.05,
    )


class TestSubscriptionControl:
    """Test caller control handles."""

    @pytest.mark.asyncio
    async def test_poll_empty(self):
        assert SubscriptionControl().poll() is None

    @pytest.mark.asyncio
    async def test_signals_in_order(self):
        control = SubscriptionControl()
        control.reset()
        control.stop()

        assert await control.next_signal() is ControlSignal.RESET
        assert await control.next_signal() is ControlSignal.STOP

    @pytest.mark.asyncio
    async def test_closed_keeps_reporting(self):
        control = SubscriptionControl()
        control.close()

        assert control.closed
        assert await control.next_signal() is ControlSignal.CLOSED
        assert control.poll() is ControlSignal.CLOSED

    def test_is_stop(self):
        assert ControlSignal.STOP.is_stop
        assert ControlSignal.CLOSED.is_stop
        assert not ControlSignal.RESET.is_stop

    def test_topic_validation(self):
        assert is_valid_topic('ticker')
        assert is_valid_topic('BTC_ETH')
        assert not is_valid_topic('BTC-ETH')
        assert not is_valid_topic('')
        assert not is_valid_topic(None)


class TestSubscriptionController:
    """Test the subscription state machine against a fake connection."""

    @pytest.mark.asyncio
    async def test_immediate_stop(self, hub, router, connection_factory):
        """A stop queued before subscribing ends the call without opening a connection."""
        received = []
        control = SubscriptionControl()
        control.stop()
        controller = make_controller(hub, router, 'BTC_ETH', received.append, control)

        result = await asyncio.wait_for(controller.run(), timeout=2)

        assert result is None
        assert received == []
        assert controller.state is SubscriptionState.STOPPED
        assert connection_factory.connections == []
        assert hub.session is None
        assert not router.is_registered('BTC_ETH')

    @pytest.mark.asyncio
    async def test_stop_while_endpoint_down(self, hub, router, connection_factory, wait_until):
        """A stop after failed connection attempts surfaces the last error."""
        connection_factory.failures = [TransportError('Connection refused')] * 100
        received = []
        control = SubscriptionControl()
        controller = make_controller(hub, router, 'BTC_ETH', received.append, control)
        task = asyncio.create_task(controller.run())

        await wait_until(lambda: controller.failed_attempts >= 2)
        control.stop()

        with pytest.raises(TransportError, match='refused'):
            await asyncio.wait_for(task, timeout=2)

        assert received == []
        assert connection_factory.opened == []
        assert controller.state is SubscriptionState.STOPPED
        assert SubscriptionState.SUBSCRIBED not in controller.state_history

    @pytest.mark.asyncio
    async def test_stop_while_connect_hangs(self, hub, router, connection_factory, wait_until):
        connection_factory.hang = True
        control = SubscriptionControl()
        controller = make_controller(hub, router, 'ticker', lambda update: None, control)
        task = asyncio.create_task(controller.run())
        await wait_until(lambda: connection_factory.connections
                         and controller.state is SubscriptionState.CONNECTING)

        control.stop()

        assert await asyncio.wait_for(task, timeout=0.5) is None
        assert controller.state is SubscriptionState.STOPPED
        assert connection_factory.latest.connect_cancelled
        assert connection_factory.latest.closed
        assert hub.session is None

    @pytest.mark.asyncio
    async def test_reset_while_connecting_is_dropped(self, hub, router, connection_factory, wait_until):
        connection_factory.hang = True
        control = SubscriptionControl()
        controller = make_controller(hub, router, 'ticker', lambda update: None, control)
        task = asyncio.create_task(controller.run())
        await wait_until(lambda: connection_factory.connections
                         and controller.state is SubscriptionState.CONNECTING)

        control.reset()
        await asyncio.sleep(0.02)
        connection_factory.latest.release()
        await wait_until(lambda: controller.state is SubscriptionState.SUBSCRIBED)
        await asyncio.sleep(0.05)

        assert controller.reconnects == 0
        assert len(connection_factory.connections) == 1
        assert not connection_factory.latest.closed

        control.stop()
        assert await asyncio.wait_for(task, timeout=2) is None

    @pytest.mark.asyncio
    async def test_stop_after_drop_does_not_reconnect(self, hub, router, connection_factory, wait_until):
        control = SubscriptionControl()
        controller = make_controller(hub, router, 'ticker', lambda update: None, control)
        task = asyncio.create_task(controller.run())
        await wait_until(lambda: controller.state is SubscriptionState.SUBSCRIBED)

        # Stop arrives right after the socket is gone
        watcher = asyncio.ensure_future(hub.session.wait_closed())
        watcher.add_done_callback(lambda _: control.stop())
        connection_factory.latest.drop()

        assert await asyncio.wait_for(task, timeout=2) is None
        assert len(connection_factory.connections) == 1
        assert connection_factory.latest.closed
        assert hub.session is None

    @pytest.mark.asyncio
    async def test_retries_until_endpoint_recovers(self, hub, router, connection_factory, wait_until):
        connection_factory.failures = [
            TransportError('Connection refused'),
            ProtocolError('Handshake rejected'),
        ]
        control = SubscriptionControl()
        controller = make_controller(hub, router, 'ticker', lambda update: None, control)
        task = asyncio.create_task(controller.run())

        await wait_until(lambda: controller.state is SubscriptionState.SUBSCRIBED)

        assert len(connection_factory.connections) == 3
        assert controller.failed_attempts == 0
        assert controller.last_error is None

        control.stop()
        assert await asyncio.wait_for(task, timeout=2) is None

    @pytest.mark.asyncio
    async def test_stop_during_backoff(self, hub, router, connection_factory, wait_until):
        connection_factory.failures = [TransportError('Connection refused')] * 100
        control = SubscriptionControl()
        controller = SubscriptionController(
            hub, router, 'ticker', lambda update: None, control=control,
            reconnect_delay=5.0, max_reconnect_delay=5.0,
        )
        task = asyncio.create_task(controller.run())

        await wait_until(lambda: controller.failed_attempts == 1)
        control.stop()

        with pytest.raises(TransportError):
            await asyncio.wait_for(task, timeout=1)

    @pytest.mark.asyncio
    async def test_malformed_frame_does_not_end_subscription(
        self, hub, router, connection_factory, wait_until, book_args
    ):
        received = []
        control = SubscriptionControl()
        controller = make_controller(hub, router, 'BTC_ETH', received.append, control)
        task = asyncio.create_task(controller.run())
        await wait_until(lambda: controller.state is SubscriptionState.SUBSCRIBED)

        connection = connection_factory.latest
        connection.push_malformed()
        connection.push_event('BTC_ETH', [{"type": "orderBookModify"}], {'seq': 1})
        connection.push_frame([EVENT])
        connection.push_event('BTC_ETH', book_args, {'seq': 2})

        await wait_until(lambda: len(received) == 1)

        assert received[0].seq == 2
        assert router.malformed_frames == 2
        assert router.malformed_events == 1
        assert controller.state is SubscriptionState.SUBSCRIBED
        assert len(connection_factory.connections) == 1

        control.stop()
        assert await asyncio.wait_for(task, timeout=2) is None

    @pytest.mark.asyncio
    async def test_socket_drop_reconnects(self, hub, router, connection_factory, wait_until, ticker_args):
        received = []
        control = SubscriptionControl()
        controller = make_controller(hub, router, 'ticker', received.append, control)
        task = asyncio.create_task(controller.run())
        await wait_until(lambda: controller.state is SubscriptionState.SUBSCRIBED)

        first = connection_factory.latest
        first.drop()

        await wait_until(lambda: len(connection_factory.connections) == 2
                         and controller.state is SubscriptionState.SUBSCRIBED)

        assert not task.done()
        assert controller.reconnects == 1
        assert SubscriptionState.RECONNECTING in controller.state_history
        assert first.closed

        connection_factory.latest.push_event('ticker', ticker_args)
        await wait_until(lambda: len(received) == 1)

        control.stop()
        assert await asyncio.wait_for(task, timeout=2) is None

    @pytest.mark.asyncio
    async def test_goodbye_reconnects(self, hub, router, connection_factory, wait_until):
        control = SubscriptionControl()
        controller = make_controller(hub, router, 'ticker', lambda update: None, control)
        task = asyncio.create_task(controller.run())
        await wait_until(lambda: controller.state is SubscriptionState.SUBSCRIBED)

        connection_factory.latest.push_frame([GOODBYE, {}, "wamp.close.system_shutdown"])

        await wait_until(lambda: len(connection_factory.connections) == 2
                         and controller.state is SubscriptionState.SUBSCRIBED)
        assert controller.reconnects == 1
        assert SubscriptionState.RECONNECTING in controller.state_history

        control.stop()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_reset_rebuilds_connection(self, hub, router, connection_factory, wait_until):
        control = SubscriptionControl()
        controller = make_controller(hub, router, 'ticker', lambda update: None, control)
        task = asyncio.create_task(controller.run())
        await wait_until(lambda: controller.state is SubscriptionState.SUBSCRIBED)

        first = connection_factory.latest
        control.reset()

        await wait_until(lambda: len(connection_factory.connections) == 2
                         and controller.state is SubscriptionState.SUBSCRIBED)

        assert first.closed
        assert not task.done()
        assert controller.reconnects == 1

        control.stop()
        assert await asyncio.wait_for(task, timeout=2) is None

    @pytest.mark.asyncio
    async def test_closed_control_stops(self, hub, router, connection_factory, wait_until):
        control = SubscriptionControl()
        controller = make_controller(hub, router, 'ticker', lambda update: None, control)
        task = asyncio.create_task(controller.run())
        await wait_until(lambda: controller.state is SubscriptionState.SUBSCRIBED)

        control.close()

        assert await asyncio.wait_for(task, timeout=2) is None
        assert connection_factory.latest.closed
        assert UNSUBSCRIBE in connection_factory.latest.sent_codes()

    @pytest.mark.asyncio
    async def test_invalid_topic(self, hub, router, connection_factory):
        controller = make_controller(hub, router, 'not a topic', lambda update: None)

        with pytest.raises(InvalidTopicError):
            await controller.run()

        assert connection_factory.connections == []

    @pytest.mark.asyncio
    async def test_duplicate_topic(self, hub, router, connection_factory, wait_until):
        control = SubscriptionControl()
        first = make_controller(hub, router, 'ticker', lambda update: None, control)
        task = asyncio.create_task(first.run())
        await wait_until(lambda: first.state is SubscriptionState.SUBSCRIBED)

        second = make_controller(hub, router, 'ticker', lambda update: None)
        with pytest.raises(SubscriptionError):
            await second.run()

        assert first.state is SubscriptionState.SUBSCRIBED
        control.stop()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_task_cancellation_cleans_up(self, hub, router, connection_factory, wait_until):
        controller = make_controller(hub, router, 'ticker', lambda update: None)
        task = asyncio.create_task(controller.run())
        await wait_until(lambda: controller.state is SubscriptionState.SUBSCRIBED)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not router.is_registered('ticker')
        assert hub.controllers == set()
        assert connection_factory.latest.closed


class TestStreamHub:
    """Test the shared connection bookkeeping."""

    @pytest.mark.asyncio
    async def test_subscriptions_share_connection(self, hub, router, connection_factory, wait_until):
        controls = [SubscriptionControl(), SubscriptionControl()]
        controllers = [
            make_controller(hub, router, 'ticker', lambda update: None, controls[0]),
            make_controller(hub, router, 'BTC_ETH', lambda update: None, controls[1]),
        ]
        tasks = [asyncio.create_task(controller.run()) for controller in controllers]
        await wait_until(lambda: all(c.state is SubscriptionState.SUBSCRIBED for c in controllers))

        assert len(connection_factory.connections) == 1
        assert sorted(hub.session.topics) == ['BTC_ETH', 'ticker']

        # One subscription ending keeps the connection for the other
        controls[0].stop()
        await asyncio.wait_for(tasks[0], timeout=2)
        assert not connection_factory.latest.closed
        assert hub.session.topics == ['BTC_ETH']

        controls[1].stop()
        await asyncio.wait_for(tasks[1], timeout=2)
        assert connection_factory.latest.closed
        assert hub.session is None

    @pytest.mark.asyncio
    async def test_unsubscribe_all(self, hub, router, connection_factory, wait_until):
        controllers = [
            make_controller(hub, router, 'ticker', lambda update: None),
            make_controller(hub, router, 'BTC_ETH', lambda update: None),
        ]
        tasks = [asyncio.create_task(controller.run()) for controller in controllers]
        await wait_until(lambda: all(c.state is SubscriptionState.SUBSCRIBED for c in controllers))

        await asyncio.wait_for(hub.unsubscribe_all(), timeout=2)

        results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=2)
        assert results == [None, None]
        assert connection_factory.latest.closed
        assert hub.session is None
        assert hub.controllers == set()

        # A new subscription opens a fresh connection
        control = SubscriptionControl()
        controller = make_controller(hub, router, 'ticker', lambda update: None, control)
        task = asyncio.create_task(controller.run())
        await wait_until(lambda: controller.state is SubscriptionState.SUBSCRIBED)

        assert len(connection_factory.connections) == 2
        assert not connection_factory.latest.closed

        control.stop()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_close_releases_connection(self, hub, router, connection_factory, wait_until):
        controllers = [
            make_controller(hub, router, 'ticker', lambda update: None),
            make_controller(hub, router, 'BTC_ETH', lambda update: None),
        ]
        tasks = [asyncio.create_task(controller.run()) for controller in controllers]
        await wait_until(lambda: all(c.state is SubscriptionState.SUBSCRIBED for c in controllers))

        await hub.close()

        assert connection_factory.latest.closed
        assert hub.session is None
        results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=2)
        assert results == [None, None]
        assert len(connection_factory.connections) == 1

    @pytest.mark.asyncio
    async def test_close_during_hanging_connect(self, hub, router, connection_factory, wait_until):
        connection_factory.hang = True
        controller = make_controller(hub, router, 'ticker', lambda update: None)
        task = asyncio.create_task(controller.run())
        await wait_until(lambda: connection_factory.connections
                         and controller.state is SubscriptionState.CONNECTING)

        await asyncio.wait_for(hub.close(), timeout=0.5)

        assert await asyncio.wait_for(task, timeout=0.5) is None
        assert connection_factory.latest.connect_cancelled
        assert connection_factory.latest.closed
        assert hub.session is None
        assert len(connection_factory.connections) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_all_during_hanging_connect(self, hub, router, connection_factory, wait_until):
        connection_factory.hang = True
        controller = make_controller(hub, router, 'ticker', lambda update: None)
        task = asyncio.create_task(controller.run())
        await wait_until(lambda: connection_factory.connections
                         and controller.state is SubscriptionState.CONNECTING)

        await asyncio.wait_for(hub.unsubscribe_all(), timeout=0.5)

        assert await asyncio.wait_for(task, timeout=0.5) is None
        assert connection_factory.latest.closed
        assert hub.controllers == set()

    @pytest.mark.asyncio
    async def test_acquire_aborted_by_close(self, hub, connection_factory, wait_until):
        connection_factory.hang = True
        acquire = asyncio.create_task(hub.acquire())
        await wait_until(lambda: len(connection_factory.connections) == 1)

        await hub.close()

        with pytest.raises(TransportError, match='shut down'):
            await asyncio.wait_for(acquire, timeout=0.5)
        assert connection_factory.latest.closed
        assert hub.session is None

    @pytest.mark.asyncio
    async def test_concurrent_acquire_opens_one_session(self, hub, connection_factory):
        sessions = await asyncio.gather(*[hub.acquire() for _ in range(5)])

        assert len({id(session) for session in sessions}) == 1
        assert len(connection_factory.connections) == 1
        assert hub.sessions_opened == 1

        await hub.discard(sessions[0])
        assert hub.session is None


class TestStreamSession:
    """Test request/acknowledgment handling of a session."""

    @pytest.mark.asyncio
    async def test_subscription_rejected(self, router, connection_factory):
        connection = connection_factory()
        session = StreamSession(connection, router, request_timeout=1.0)
        await session.start()

        async def reject(frame):
            connection.sent.append(frame)
            connection.push_frame([8, 32, frame[1], {}, "wamp.error.not_authorized"])

        connection.send = reject

        with pytest.raises(ProtocolError, match='not_authorized'):
            await session.subscribe('BTC_ETH')

        assert not session.closed
        await session.close()
        assert session.closed

    @pytest.mark.asyncio
    async def test_pending_request_fails_when_socket_drops(self, router, connection_factory):
        connection = connection_factory()
        session = StreamSession(connection, router, request_timeout=1.0)
        await session.start()

        async def swallow(frame):
            connection.sent.append(frame)
            connection.drop()

        connection.send = swallow

        with pytest.raises(TransportError, match='reset'):
            await session.subscribe('ticker')

        await session.wait_closed()
        assert isinstance(session.error, TransportError)

    @pytest.mark.asyncio
    async def test_acknowledgment_timeout(self, router, connection_factory):
        connection = connection_factory()
        session = StreamSession(connection, router, request_timeout=0.05)
        await session.start()

        async def ignore(frame):
            connection.sent.append(frame)

        connection.send = ignore

        with pytest.raises(ProtocolError, match='acknowledgment'):
            await session.subscribe('ticker')

        await session.close()

    @pytest.mark.asyncio
    async def test_event_for_unknown_subscription_dropped(self, router, connection_factory, wait_until):
        connection = connection_factory()
        session = StreamSession(connection, router)
        await session.start()

        connection.push_frame([EVENT, 999, 1, {}, [], {}])

        await wait_until(lambda: router.dropped_events == 1)
        assert not session.closed
        await session.close()


if __name__ == "__main__":
    pytest.main([__file__])
