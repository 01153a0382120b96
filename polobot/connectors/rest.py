"""
Poloniex REST API client with request signing and rate limiting.
Implements the public market data endpoints and the trading API commands.
"""

import asyncio
import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlencode
import aiohttp
import logging
from pydantic import TypeAdapter, ValidationError

from ..errors import ApiError, DecodeError, PoloniexError, TransportError
from ..types import (
    Balance, CandleStick, Currency, Deposit, Fees, Number, OpenOrder, OrderBook,
    Ticker, Trade, TradeOrder, TradeType, VolumeCollection, Withdrawal,
)
from .rate_limiter import RateLimiter
from .signing import NonceSource, sign


CHART_PERIODS = (300, 900, 1800, 7200, 14400, 86400)
MAX_ORDER_BOOK_DEPTH = 100


def _format_number(value: Number) -> str:
    """Render a number in plain positional notation."""
    return format(Decimal(str(value)), 'f')


def _unix(value: Union[datetime, int]) -> int:
    if isinstance(value, datetime):
        return int(value.timestamp())
    return int(value)


class PoloniexRESTClient:
    """
    Poloniex REST API client with authentication and rate limiting.

    Handles all REST API calls to Poloniex including:
    - Public market data (tickers, volumes, currencies, order books, charts)
    - Signed trading API commands (balances, orders, history, fees)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        base_url: str = "https://poloniex.com",
        timeout: float = 30.0,
        rate_limiter: Optional[RateLimiter] = None,
        nonce_source: Optional[NonceSource] = None,
    ):
        """
        Initialize Poloniex REST client.

        Args:
            api_key: Poloniex API key (only needed for trading API calls)
            api_secret: Poloniex API secret
            base_url: Base URL for API calls
            timeout: Total timeout of one HTTP call in seconds
            rate_limiter: Shared rate limiter, a default one is created if None
            nonce_source: Nonce generator for signed commands
        """
        self.api_key = api_key
        self._api_secret = api_secret.encode('utf-8') if api_secret else None
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.debug = False

        self.logger = logging.getLogger(__name__)
        self.session: Optional[aiohttp.ClientSession] = None
        self.rate_limiter = rate_limiter or RateLimiter()
        self.nonce_source = nonce_source or NonceSource()

    async def initialize(self) -> None:
        """Initialize the HTTP session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )

    async def close(self) -> None:
        """Close the client session."""
        if self.session:
            await self.session.close()
            self.session = None

    def set_debug(self, enable: bool) -> None:
        """Enable or disable request/response dumps at DEBUG level."""
        self.debug = enable

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        command: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """
        Make a request to the Poloniex API.

        Args:
            method: HTTP method
            endpoint: API endpoint
            command: API command name, used in errors and logs
            params: Query parameters
            data: Serialized request body
            headers: Extra request headers

        Returns:
            Decoded JSON response
        """
        if not self.session:
            raise RuntimeError("Client not initialized")

        url = f"{self.base_url}{endpoint}"
        if self.debug:
            self.logger.debug(f"{method} {url} params={params} body={data!r}")

        try:
            async with self.session.request(
                method=method,
                url=url,
                params=params,
                data=data,
                headers=headers,
            ) as response:
                status = response.status
                text = await response.text()

        except asyncio.TimeoutError as e:
            self.logger.error(f"Request timeout: {command}")
            raise TransportError(f"Request timed out: {command}") from e
        except aiohttp.ClientError as e:
            self.logger.error(f"Request failed: {command}: {e}")
            raise TransportError(f"Request failed: {command}: {e}") from e

        if self.debug:
            self.logger.debug(f"Response {status} for {command}: {text}")

        return self._decode_envelope(command, status, text)

    def _decode_envelope(self, command: str, status: int, text: str) -> Any:
        """Decode a response body, surfacing API errors reported inside it."""
        try:
            data = json.loads(text)
        except ValueError as e:
            if status >= 400:
                raise TransportError(f"HTTP {status} for {command}: {text[:200]}") from e
            raise DecodeError(f"Invalid JSON in {command} response: {text[:200]!r}") from e

        if isinstance(data, dict) and data.get('error'):
            self.logger.error(f"API error for {command}: {data['error']}")
            raise ApiError(str(data['error']), command=command, status=status)

        if status >= 400:
            raise TransportError(f"HTTP {status} for {command}: {text[:200]}")

        return data

    @staticmethod
    def _decode(shape: Any, data: Any, command: str) -> Any:
        try:
            return TypeAdapter(shape).validate_python(data)
        except ValidationError as e:
            raise DecodeError(f"Unexpected {command} response: {e}") from e

    async def _public(self, command: str, **params: Any) -> Any:
        await self.rate_limiter.wait_for_request()
        query = {'command': command}
        query.update({key: str(value) for key, value in params.items()})
        return await self._make_request('GET', '/public', command, params=query)

    # ------------------------------------------------------------------
    # Signed commands
    # ------------------------------------------------------------------

    def _build_signed_request(self, command: str, params: Mapping[str, Any]) -> Tuple[bytes, Dict[str, str]]:
        """
        Take a nonce, serialize the body and sign it.

        Runs without yielding to the event loop so the nonce order matches the
        order in which bodies are built.
        """
        fields = [('command', command)]
        fields.extend((key, str(value)) for key, value in params.items())
        fields.append(('nonce', str(self.nonce_source.next())))

        body = urlencode(fields).encode('utf-8')
        headers = {
            'Key': self.api_key,
            'Sign': sign(self._api_secret, body),
            'Content-Type': 'application/x-www-form-urlencoded',
        }
        return body, headers

    async def execute(self, command: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """
        Execute a signed trading API command.

        Failures are never retried here: a replayed body carries a stale nonce
        and a fresh nonce would change what the caller asked for.

        Args:
            command: Trading API command name
            params: Command parameters, sent in iteration order

        Returns:
            Decoded JSON response

        Raises:
            ApiError: The exchange reported an error
            TransportError: The request did not complete
            DecodeError: The response was not JSON
        """
        if not self.api_key or not self._api_secret:
            raise PoloniexError("API key and secret are required for trading API calls")

        params = params or {}
        reserved = {'command', 'nonce'} & set(params)
        if reserved:
            raise ValueError(f"Reserved parameter names: {sorted(reserved)}")

        if not self.session:
            raise RuntimeError("Client not initialized")

        await self.rate_limiter.wait_for_request()
        body, headers = self._build_signed_request(command, params)
        return await self._make_request('POST', '/tradingApi', command, data=body, headers=headers)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_tickers(self) -> Dict[str, Ticker]:
        """Get the ticker for all markets."""
        data = await self._public('returnTicker')
        return self._decode(Dict[str, Ticker], data, 'returnTicker')

    async def get_volumes(self) -> VolumeCollection:
        """Get the 24h volume for all markets."""
        data = await self._public('return24hVolume')
        if not isinstance(data, dict):
            raise DecodeError("Unexpected return24hVolume response")
        try:
            return VolumeCollection.from_response(data)
        except ValidationError as e:
            raise DecodeError(f"Unexpected return24hVolume response: {e}") from e

    async def get_currencies(self) -> Dict[str, Currency]:
        """Get metadata of every currency."""
        data = await self._public('returnCurrencies')
        return self._decode(Dict[str, Currency], data, 'returnCurrencies')

    async def get_order_book(self, market: str, depth: int = 50) -> OrderBook:
        """
        Get the order book of one market.

        Args:
            market: Market name (ex: BTC_NXT)
            depth: Number of levels per side, clamped to 1..100

        Returns:
            Order book snapshot
        """
        depth = max(1, min(depth, MAX_ORDER_BOOK_DEPTH))
        data = await self._public('returnOrderBook', currencyPair=market.upper(), depth=depth)
        return self._decode(OrderBook, data, 'returnOrderBook')

    async def get_all_order_book(self, depth: int = 50) -> Dict[str, OrderBook]:
        """Get the order books of all markets."""
        depth = max(1, min(depth, MAX_ORDER_BOOK_DEPTH))
        data = await self._public('returnOrderBook', currencyPair='all', depth=depth)
        return self._decode(Dict[str, OrderBook], data, 'returnOrderBook')

    async def get_chart_data(
        self,
        pair: str,
        period: int,
        start: Union[datetime, int],
        end: Union[datetime, int],
    ) -> List[CandleStick]:
        """
        Get candlestick chart data.

        Args:
            pair: Market name
            period: Candle period in seconds (300, 900, 1800, 7200, 14400 or 86400)
            start: Range start (datetime or unix seconds)
            end: Range end (datetime or unix seconds)

        Returns:
            Candles in the requested range
        """
        if period not in CHART_PERIODS:
            raise ValueError(f"Invalid chart period {period}, expected one of {CHART_PERIODS}")

        data = await self._public(
            'returnChartData',
            currencyPair=pair.upper(),
            period=period,
            start=_unix(start),
            end=_unix(end),
        )
        return self._decode(List[CandleStick], data, 'returnChartData')

    # ------------------------------------------------------------------
    # Trading API
    # ------------------------------------------------------------------

    async def get_balances(self) -> Dict[str, Balance]:
        """Get complete balances of the account."""
        data = await self.execute('returnCompleteBalances')
        return self._decode(Dict[str, Balance], data, 'returnCompleteBalances')

    async def get_trade_history(self, pair: str, start: Union[datetime, int]) -> Dict[str, List[Trade]]:
        """
        Get the account trade history.

        Args:
            pair: Market name or ``all``
            start: History start (datetime or unix seconds)

        Returns:
            Trades keyed by market
        """
        data = await self.execute('returnTradeHistory', {'currencyPair': pair, 'start': _unix(start)})
        if pair == 'all':
            return self._decode(Dict[str, List[Trade]], data, 'returnTradeHistory')
        return {pair: self._decode(List[Trade], data, 'returnTradeHistory')}

    async def get_deposits_withdrawals(
        self,
        start: Union[datetime, int],
        end: Union[datetime, int],
    ) -> Tuple[List[Deposit], List[Withdrawal]]:
        """Get deposits and withdrawals in a time range."""
        data = await self.execute('returnDepositsWithdrawals', {'start': _unix(start), 'end': _unix(end)})
        if not isinstance(data, dict):
            raise DecodeError("Unexpected returnDepositsWithdrawals response")

        deposits = self._decode(List[Deposit], data.get('deposits', []), 'returnDepositsWithdrawals')
        withdrawals = self._decode(List[Withdrawal], data.get('withdrawals', []), 'returnDepositsWithdrawals')
        return deposits, withdrawals

    async def _place_order(
        self,
        command: str,
        pair: str,
        rate: Number,
        amount: Number,
        trade_type: Optional[Union[TradeType, str]] = None,
    ) -> TradeOrder:
        params = {
            'currencyPair': pair,
            'rate': _format_number(rate),
            'amount': _format_number(amount),
        }
        if trade_type:
            params[TradeType(trade_type).value] = '1'

        data = await self.execute(command, params)
        return self._decode(TradeOrder, data, command)

    async def buy(
        self,
        pair: str,
        rate: Number,
        amount: Number,
        trade_type: Optional[Union[TradeType, str]] = None,
    ) -> TradeOrder:
        """
        Place a buy order.

        Args:
            pair: Market name
            rate: Limit price
            amount: Quantity to buy
            trade_type: Optional fillOrKill, immediateOrCancel or postOnly flag

        Returns:
            Order number and trades executed immediately
        """
        return await self._place_order('buy', pair, rate, amount, trade_type)

    async def sell(
        self,
        pair: str,
        rate: Number,
        amount: Number,
        trade_type: Optional[Union[TradeType, str]] = None,
    ) -> TradeOrder:
        """Place a sell order. Arguments as in :meth:`buy`."""
        return await self._place_order('sell', pair, rate, amount, trade_type)

    async def get_open_orders(self, pair: str) -> Dict[str, List[OpenOrder]]:
        """Get open orders of one market, or of every market with ``all``."""
        data = await self.execute('returnOpenOrders', {'currencyPair': pair})
        if pair == 'all':
            return self._decode(Dict[str, List[OpenOrder]], data, 'returnOpenOrders')
        return {pair: self._decode(List[OpenOrder], data, 'returnOpenOrders')}

    async def get_fees(self) -> Fees:
        """Get the account fee tier."""
        data = await self.execute('returnFeeInfo')
        return self._decode(Fees, data, 'returnFeeInfo')
