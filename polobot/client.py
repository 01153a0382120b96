"""
Poloniex client facade combining the REST API and the push channel.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .config import Config
from .connectors.rate_limiter import RateLimit, RateLimiter
from .connectors.rest import PoloniexRESTClient
from .connectors.router import TopicRouter
from .connectors.session import StreamHub
from .connectors.stream import StreamConnection
from .connectors.subscription import SubscriptionControl, SubscriptionController
from .connectors.updates import TICKER_TOPIC
from .types import (
    Balance, CandleStick, Currency, Deposit, Fees, Number, OpenOrder, OrderBook,
    Ticker, Trade, TradeOrder, TradeType, VolumeCollection, Withdrawal,
)


class PoloniexClient:
    """
    Poloniex API client.

    Owns the HTTP session, the nonce source used by signed commands and the
    single push connection shared by every subscription.

    Example:
        async with PoloniexClient(api_key, api_secret) as client:
            balances = await client.get_balances()
            control = SubscriptionControl()
            await client.subscribe_ticker(print, control)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        config: Optional[Config] = None,
        connection_factory: Optional[Callable[[], Any]] = None,
    ):
        """
        Initialize Poloniex client.

        Args:
            api_key: API key, falls back to the configuration
            api_secret: API secret, falls back to the configuration
            config: Client configuration, defaults are used if None
            connection_factory: Callable returning a new push connection
        """
        self.config = config or Config()
        self.logger = logging.getLogger(__name__)

        poloniex = self.config.poloniex
        limits = self.config.rate_limits
        self.rest = PoloniexRESTClient(
            api_key=api_key or poloniex.api_key,
            api_secret=api_secret or poloniex.api_secret,
            base_url=poloniex.base_url,
            timeout=poloniex.request_timeout,
            rate_limiter=RateLimiter(RateLimit(
                requests_per_second=limits.requests_per_second,
                requests_per_minute=limits.requests_per_minute,
            )),
        )
        self.rest.set_debug(poloniex.debug)

        self.router = TopicRouter()
        self.hub = StreamHub(
            connection_factory or self._create_connection,
            self.router,
            request_timeout=self.config.stream.subscribe_timeout,
        )

    def _create_connection(self) -> StreamConnection:
        stream = self.config.stream
        return StreamConnection(
            url=self.config.poloniex.ws_url,
            realm=self.config.poloniex.realm,
            handshake_timeout=stream.handshake_timeout,
            open_timeout=stream.open_timeout,
            ping_interval=stream.ping_interval,
            ping_timeout=stream.ping_timeout,
        )

    async def __aenter__(self) -> "PoloniexClient":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def initialize(self) -> None:
        await self.rest.initialize()

    async def close(self) -> None:
        """Stop all subscriptions, release the push connection and the HTTP session."""
        await self.hub.close()
        await self.rest.close()

    def set_debug(self, enable: bool) -> None:
        """Enable or disable HTTP request/response dumps."""
        self.rest.set_debug(enable)

    # Public API

    async def get_tickers(self) -> Dict[str, Ticker]:
        return await self.rest.get_tickers()

    async def get_volumes(self) -> VolumeCollection:
        return await self.rest.get_volumes()

    async def get_currencies(self) -> Dict[str, Currency]:
        return await self.rest.get_currencies()

    async def get_order_book(self, market: str, depth: int = 50) -> OrderBook:
        return await self.rest.get_order_book(market, depth)

    async def get_all_order_book(self, depth: int = 50) -> Dict[str, OrderBook]:
        return await self.rest.get_all_order_book(depth)

    async def get_chart_data(
        self,
        pair: str,
        period: int,
        start: Union[datetime, int],
        end: Union[datetime, int],
    ) -> List[CandleStick]:
        return await self.rest.get_chart_data(pair, period, start, end)

    # Trading API

    async def execute_signed_command(self, command: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """Execute a raw trading API command and return the decoded JSON."""
        return await self.rest.execute(command, params)

    async def get_balances(self) -> Dict[str, Balance]:
        return await self.rest.get_balances()

    async def get_trade_history(self, pair: str, start: Union[datetime, int]) -> Dict[str, List[Trade]]:
        return await self.rest.get_trade_history(pair, start)

    async def get_deposits_withdrawals(
        self,
        start: Union[datetime, int],
        end: Union[datetime, int],
    ) -> Tuple[List[Deposit], List[Withdrawal]]:
        return await self.rest.get_deposits_withdrawals(start, end)

    async def buy(self, pair: str, rate: Number, amount: Number,
                  trade_type: Optional[Union[TradeType, str]] = None) -> TradeOrder:
        return await self.rest.buy(pair, rate, amount, trade_type)

    async def sell(self, pair: str, rate: Number, amount: Number,
                   trade_type: Optional[Union[TradeType, str]] = None) -> TradeOrder:
        return await self.rest.sell(pair, rate, amount, trade_type)

    async def get_open_orders(self, pair: str) -> Dict[str, List[OpenOrder]]:
        return await self.rest.get_open_orders(pair)

    async def get_fees(self) -> Fees:
        return await self.rest.get_fees()

    # Push channel

    async def subscribe(
        self,
        topic: str,
        handler: Callable[[Any], Any],
        control: Optional[SubscriptionControl] = None,
    ) -> None:
        """
        Subscribe to a push topic and block until the subscription stops.

        Run it as a task to keep several subscriptions or trading calls going
        at the same time.

        Args:
            topic: ``ticker`` or a market name such as ``BTC_ETH``
            handler: Plain or coroutine function receiving decoded updates
            control: Handle to stop or reset the subscription; if None it
                only ends through ``unsubscribe_all()`` or ``close()``
        """
        stream = self.config.stream
        controller = SubscriptionController(
            self.hub,
            self.router,
            topic,
            handler,
            control=control,
            reconnect_delay=stream.reconnect_delay,
            max_reconnect_delay=stream.max_reconnect_delay,
        )
        await controller.run()

    async def subscribe_order_book(
        self,
        pair: str,
        handler: Callable[[Any], Any],
        control: Optional[SubscriptionControl] = None,
    ) -> None:
        """Subscribe to order book changes and trades of one market."""
        await self.subscribe(pair.upper(), handler, control)

    async def subscribe_ticker(
        self,
        handler: Callable[[Any], Any],
        control: Optional[SubscriptionControl] = None,
    ) -> None:
        """Subscribe to the global ticker feed."""
        await self.subscribe(TICKER_TOPIC, handler, control)

    async def unsubscribe_all(self) -> None:
        """Stop every active subscription and release the push connection."""
        await self.hub.unsubscribe_all()

    def get_stats(self) -> Dict[str, Any]:
        """Get client statistics."""
        return {
            'rate_limiter': self.rest.rate_limiter.get_stats(),
            'last_nonce': self.rest.nonce_source.last,
            'stream': self.hub.get_stats(),
            'router': self.router.get_stats(),
        }
