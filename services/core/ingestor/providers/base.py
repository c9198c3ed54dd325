"""Base types shared by the feed client, buffer and writer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Side(str, Enum):
    """Aggressor side of a trade (taker's perspective)."""
    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class TradeRecord:
    """Canonical, provider-agnostic representation of one executed trade."""
    symbol: str  # uppercase, e.g. "BTCUSDT"
    price: Decimal
    quantity: Decimal
    side: Side
    event_time: datetime  # execution time reported by the feed (UTC)
    trade_id: int  # idempotency key within a symbol's stream
    buyer_order_id: int | None = None
    seller_order_id: int | None = None

    @property
    def event_time_ms(self) -> int:
        return (self.event_time - EPOCH) // timedelta(milliseconds=1)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class ConnectionStatus:
    """
    Snapshot of the stream client's state machine.

    `attempt` and `next_delay` are only meaningful while RECONNECTING.
    """
    state: ConnectionState
    attempt: int = 0
    next_delay: float | None = None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "attempt": self.attempt,
            "next_delay": self.next_delay,
        }
