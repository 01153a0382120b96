"""
Decoders turning push channel events into typed updates.
"""

from typing import Any, Dict, List

from pydantic import ValidationError

from ..errors import DecodeError
from ..types import MarketChange, MarketUpdate, StreamEvent, TickerUpdate


TICKER_TOPIC = "ticker"

TICKER_FIELDS = (
    "pair", "last", "lowest_ask", "highest_bid", "percent_change",
    "base_volume", "quote_volume", "is_frozen", "high_24hr", "low_24hr",
)


def _market_change(item: Dict[str, Any]) -> MarketChange:
    data = item["data"]
    return MarketChange(
        kind=item["type"],
        side=data["type"],
        rate=data["rate"],
        amount=data.get("amount"),
        trade_id=data.get("tradeID"),
        total=data.get("total"),
        date=data.get("date"),
    )


def decode_market_update(event: StreamEvent) -> MarketUpdate:
    """
    Decode an order book topic event.

    Args carry a list of ``{"type": ..., "data": {...}}`` changes, kwargs
    carry the ``seq`` number shared by all of them.
    """
    try:
        changes: List[MarketChange] = [_market_change(item) for item in event.args]
        return MarketUpdate(pair=event.topic, seq=event.kwargs["seq"], changes=changes)
    except (KeyError, TypeError, ValidationError) as e:
        raise DecodeError(f"Malformed {event.topic} update: {e}") from e


def decode_ticker_update(event: StreamEvent) -> TickerUpdate:
    """Decode a ticker feed event (positional args)."""
    if len(event.args) < len(TICKER_FIELDS):
        raise DecodeError(f"Malformed ticker update: expected {len(TICKER_FIELDS)} fields, got {len(event.args)}")
    try:
        return TickerUpdate(**dict(zip(TICKER_FIELDS, event.args)))
    except ValidationError as e:
        raise DecodeError(f"Malformed ticker update: {e}") from e


def decoder_for(topic: str):
    """Pick the decoder matching a topic."""
    if topic == TICKER_TOPIC:
        return decode_ticker_update
    return decode_market_update
