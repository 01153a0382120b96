"""
Type definitions and data models for the Poloniex client.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator


EXCHANGE_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_exchange_time(value: Any) -> Any:
    """Parse the exchange's 'YYYY-MM-DD HH:MM:SS' timestamps as UTC."""
    if isinstance(value, str) and " " in value:
        return datetime.strptime(value, EXCHANGE_TIME_FORMAT).replace(tzinfo=timezone.utc)
    return value


class ExchangeModel(BaseModel):
    """Base model accepting both the exchange's camelCase names and ours."""
    model_config = ConfigDict(populate_by_name=True)


class TradeType(str, Enum):
    """Optional execution flags for buy and sell orders."""
    FILL_OR_KILL = "fillOrKill"
    IMMEDIATE_OR_CANCEL = "immediateOrCancel"
    POST_ONLY = "postOnly"


class Ticker(ExchangeModel):
    """24h ticker for one market."""
    id: Optional[int] = None
    last: Decimal
    lowest_ask: Decimal = Field(alias="lowestAsk")
    highest_bid: Decimal = Field(alias="highestBid")
    percent_change: Decimal = Field(alias="percentChange")
    base_volume: Decimal = Field(alias="baseVolume")
    quote_volume: Decimal = Field(alias="quoteVolume")
    is_frozen: bool = Field(default=False, alias="isFrozen")
    high_24hr: Optional[Decimal] = Field(default=None, alias="high24hr")
    low_24hr: Optional[Decimal] = Field(default=None, alias="low24hr")


class VolumeCollection(ExchangeModel):
    """24h volumes split into per-market entries and ``total*`` entries."""
    pairs: Dict[str, Dict[str, Decimal]] = Field(default_factory=dict)
    totals: Dict[str, Decimal] = Field(default_factory=dict)

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "VolumeCollection":
        pairs = {}
        totals = {}
        for key, value in data.items():
            if key.startswith("total"):
                totals[key] = value
            else:
                pairs[key] = value
        return cls(pairs=pairs, totals=totals)


class Currency(ExchangeModel):
    """Currency metadata."""
    id: int
    name: str
    tx_fee: Decimal = Field(alias="txFee")
    min_conf: int = Field(alias="minConf")
    deposit_address: Optional[str] = Field(default=None, alias="depositAddress")
    disabled: bool = False
    delisted: bool = False
    frozen: bool = False


class OrderBook(ExchangeModel):
    """Order book snapshot; each level is ``[rate, amount]``."""
    asks: List[List[Decimal]] = Field(default_factory=list)
    bids: List[List[Decimal]] = Field(default_factory=list)
    is_frozen: bool = Field(default=False, alias="isFrozen")
    seq: int = 0


class CandleStick(ExchangeModel):
    """Chart data candle."""
    date: datetime
    high: Decimal
    low: Decimal
    open: Decimal
    close: Decimal
    volume: Decimal
    quote_volume: Decimal = Field(alias="quoteVolume")
    weighted_average: Decimal = Field(alias="weightedAverage")


class Balance(ExchangeModel):
    """Balance of one currency."""
    available: Decimal
    on_orders: Decimal = Field(alias="onOrders")
    btc_value: Decimal = Field(alias="btcValue")


class Trade(ExchangeModel):
    """Entry of the account trade history."""
    global_trade_id: int = Field(alias="globalTradeID")
    trade_id: int = Field(alias="tradeID")
    date: datetime
    rate: Decimal
    amount: Decimal
    total: Decimal
    fee: Decimal
    order_number: int = Field(alias="orderNumber")
    type: str
    category: str = "exchange"

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, value: Any) -> Any:
        return _parse_exchange_time(value)


class Deposit(ExchangeModel):
    """Deposit record."""
    currency: str
    address: str
    amount: Decimal
    confirmations: int
    txid: str
    timestamp: datetime
    status: str


class Withdrawal(ExchangeModel):
    """Withdrawal record."""
    withdrawal_number: int = Field(alias="withdrawalNumber")
    currency: str
    address: str
    amount: Decimal
    timestamp: datetime
    status: str
    ip_address: Optional[str] = Field(default=None, alias="ipAddress")


class ResultingTrade(ExchangeModel):
    """Trade that happened immediately when an order was placed."""
    amount: Decimal
    date: datetime
    rate: Decimal
    total: Decimal
    trade_id: int = Field(alias="tradeID")
    type: str

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, value: Any) -> Any:
        return _parse_exchange_time(value)


class TradeOrder(ExchangeModel):
    """Result of a buy or sell command."""
    order_number: int = Field(alias="orderNumber")
    resulting_trades: List[ResultingTrade] = Field(default_factory=list, alias="resultingTrades")


class OpenOrder(ExchangeModel):
    """Order resting on the book."""
    order_number: int = Field(alias="orderNumber")
    type: str
    rate: Decimal
    amount: Decimal
    total: Decimal


class Fees(ExchangeModel):
    """Maker/taker fee tier of the account."""
    maker_fee: Decimal = Field(alias="makerFee")
    taker_fee: Decimal = Field(alias="takerFee")
    thirty_day_volume: Decimal = Field(alias="thirtyDayVolume")
    next_tier: Optional[Decimal] = Field(default=None, alias="nextTier")


class MarketChangeKind(str, Enum):
    """Kind of change carried by an order book topic event."""
    MODIFY = "orderBookModify"
    REMOVE = "orderBookRemove"
    TRADE = "newTrade"


class MarketChange(ExchangeModel):
    """
    One order book delta or trade.

    ``side`` is ``bid``/``ask`` for book changes and ``buy``/``sell`` for
    trades. ``amount`` is absent for removals.
    """
    kind: MarketChangeKind
    side: str
    rate: Decimal
    amount: Optional[Decimal] = None
    trade_id: Optional[str] = None
    total: Optional[Decimal] = None
    date: Optional[datetime] = None

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, value: Any) -> Any:
        return _parse_exchange_time(value)


class MarketUpdate(ExchangeModel):
    """All changes published for a market under one sequence number."""
    pair: str
    seq: int
    changes: List[MarketChange] = Field(default_factory=list)
    received_at: datetime = Field(default_factory=_utcnow)


class TickerUpdate(ExchangeModel):
    """Tick from the global ticker feed."""
    pair: str
    last: Decimal
    lowest_ask: Decimal
    highest_bid: Decimal
    percent_change: Decimal
    base_volume: Decimal
    quote_volume: Decimal
    is_frozen: bool
    high_24hr: Decimal
    low_24hr: Decimal
    received_at: datetime = Field(default_factory=_utcnow)


class StreamEvent(BaseModel):
    """Raw event routed from the push channel to a topic."""
    topic: str
    args: List[Any] = Field(default_factory=list)
    kwargs: Dict[str, Any] = Field(default_factory=dict)


# Type aliases for common use cases
Pair = str
Rate = Decimal
Amount = Decimal
Number = Union[Decimal, float, int, str]
StreamUpdate = Union[MarketUpdate, TickerUpdate]
