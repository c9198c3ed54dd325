"""
Binance trade stream normalization.

Decodes raw websocket frames into typed feed events and maps them onto the
canonical TradeRecord. Pure functions: no I/O, no state.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .base import Side, TradeRecord


MAX_ID = 2**63 - 1  # signed 64-bit, the widest integer the store accepts
MAX_EPOCH_MS = 253402300799999  # 9999-12-31T23:59:59.999Z


class MalformedMessage(ValueError):
    """Raised when a frame cannot be decoded into a recognized, valid event."""
    pass


class BinanceTradeEvent(BaseModel):
    """Payload of a `<symbol>@trade` stream."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    event_type: Literal["trade"] = Field(alias="e")
    event_time: int = Field(alias="E", ge=0, le=MAX_EPOCH_MS)
    symbol: str = Field(alias="s", min_length=1)
    trade_id: int = Field(alias="t", ge=0, le=MAX_ID)
    price: Decimal = Field(alias="p", gt=0, allow_inf_nan=False)
    quantity: Decimal = Field(alias="q", gt=0, allow_inf_nan=False)
    # Spot streams stopped sending order ids in late 2023
    buyer_order_id: int | None = Field(default=None, alias="b", ge=0, le=MAX_ID)
    seller_order_id: int | None = Field(default=None, alias="a", ge=0, le=MAX_ID)
    trade_time: int = Field(alias="T", ge=0, le=MAX_EPOCH_MS)
    buyer_is_maker: bool = Field(alias="m")


# Recognized event kinds, keyed by the "e" tag. Anything else is rejected.
FeedEvent = Union[BinanceTradeEvent]
EVENT_MODELS: dict[str, type[BaseModel]] = {
    "trade": BinanceTradeEvent,
}


def _ms_to_datetime(ms: int) -> datetime:
    try:
        return datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(milliseconds=ms)
    except OverflowError as e:
        raise MalformedMessage(f"timestamp out of range: {ms}") from e


def side_from_maker_flag(buyer_is_maker: bool) -> Side:
    """
    Map Binance's `m` flag to the aggressor side.

    `m` is true when the buyer was the resting (maker) order, so the taker
    sold into the bid: SELL. When the seller was the maker, the taker lifted
    the offer: BUY.
    """
    return Side.SELL if buyer_is_maker else Side.BUY


def unwrap_envelope(message: Any) -> dict[str, Any] | None:
    """
    Return the event payload of a decoded frame.

    Handles both the raw single-stream shape and the combined
    `{"stream": ..., "data": {...}}` wrapper. Returns None for control
    frames (subscription acks) that carry no event.
    """
    if not isinstance(message, dict):
        raise MalformedMessage(f"expected JSON object, got {type(message).__name__}")

    if "stream" in message and "data" in message:
        payload = message["data"]
        if not isinstance(payload, dict):
            raise MalformedMessage(f"combined stream {message['stream']!r} carries non-object data")
        return payload

    if "result" in message and "id" in message:
        return None

    return message


def decode_event(raw: str | bytes) -> FeedEvent | None:
    """Decode one websocket frame into a typed feed event (None for control frames)."""
    try:
        message = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedMessage(f"invalid JSON: {e}") from e

    payload = unwrap_envelope(message)
    if payload is None:
        return None

    tag = payload.get("e")
    model = EVENT_MODELS.get(tag) if isinstance(tag, str) else None
    if model is None:
        raise MalformedMessage(f"unknown event type {tag!r}")

    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise MalformedMessage(f"invalid {tag} event: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e


def normalize_trade(event: BinanceTradeEvent) -> TradeRecord:
    symbol = event.symbol.strip().upper()
    if not symbol:
        raise MalformedMessage("empty symbol")

    return TradeRecord(
        symbol=symbol,
        price=event.price,
        quantity=event.quantity,
        side=side_from_maker_flag(event.buyer_is_maker),
        event_time=_ms_to_datetime(event.trade_time),
        trade_id=event.trade_id,
        buyer_order_id=event.buyer_order_id,
        seller_order_id=event.seller_order_id,
    )


def normalize_message(raw: str | bytes) -> TradeRecord | None:
    """
    Decode and normalize one frame.

    Returns None for frames that carry no trade (control frames).
    Raises MalformedMessage for anything undecodable or invalid.
    """
    event = decode_event(raw)
    if event is None:
        return None
    return normalize_trade(event)
