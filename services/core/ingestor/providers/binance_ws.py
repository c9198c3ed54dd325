"""Binance WebSocket trade stream with a reconnect state machine."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..streaming.metrics import MetricsCollector
from .base import ConnectionState, ConnectionStatus, TradeRecord
from .normalizer import MalformedMessage, normalize_message


logger = logging.getLogger(__name__)

DEFAULT_WS_URL = "wss://stream.binance.com:9443/stream"


class BinanceWsUnavailable(Exception):
    """Raised when Binance WebSocket is unavailable after the maximum reconnection attempts."""
    pass


def compute_backoff(attempt: int, base: float, multiplier: float, max_delay: float) -> float:
    """
    Delay before reconnect attempt `attempt` (0-based).

    delay = min(base * multiplier ** attempt, max_delay)
    """
    return min(base * (multiplier ** attempt), max_delay)


def build_stream_url(base_url: str, symbols: list[str]) -> str:
    """
    Build the multiplexed subscription URL for all symbols.

    The combined endpoint (`.../stream`) takes `?streams=a@trade/b@trade`;
    the raw endpoint (`.../ws`) takes the stream names as a path.
    """
    streams = "/".join(f"{s.lower()}@trade" for s in symbols)
    base = base_url.rstrip("/")
    if base.endswith("/stream"):
        return f"{base}?streams={streams}"
    return f"{base}/{streams}"


class BinanceTradeStream:
    """
    Streams trades for all configured symbols over one Binance connection.

    State machine:
        DISCONNECTED -> CONNECTING -> CONNECTED
        CONNECTED/CONNECTING -> RECONNECTING(attempt, delay) -> CONNECTING
        RECONNECTING -> DISCONNECTED once `max_reconnect_attempts` are used up

    Trades are handed to `on_trade` synchronously from the read loop, so the
    listener must not block. A successful connection resets the attempt
    counter. If no frame arrives for `liveness_timeout` seconds the socket
    is treated as dead and the client reconnects.
    """

    MALFORMED_LOG_EVERY = 100

    def __init__(
        self,
        symbols: list[str],
        metrics: MetricsCollector,
        on_trade: Callable[[TradeRecord], None],
        on_state_change: Callable[[ConnectionStatus], None] | None = None,
        on_fatal: Callable[[BaseException], None] | None = None,
        base_url: str = DEFAULT_WS_URL,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
        backoff_multiplier: float = 2.0,
        max_reconnect_attempts: int = 10,
        liveness_timeout: float = 30.0,
        open_timeout: float = 10.0,
    ):
        """
        Initialize the trade stream.

        Args:
            symbols: Symbols to subscribe (any case, e.g. ["btcusdt", "ETHUSDT"])
            metrics: Collector updated with received/malformed/reconnect counts
            on_trade: Called with every normalized trade
            on_state_change: Called on every ConnectionStatus transition
            on_fatal: Called once when reconnect attempts are exhausted
        """
        self.symbols = list(dict.fromkeys(s.strip().lower() for s in symbols if s.strip()))
        self.metrics = metrics
        self.on_trade = on_trade
        self.on_state_change = on_state_change
        self.on_fatal = on_fatal
        self.url = build_stream_url(base_url, self.symbols)
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.backoff_multiplier = backoff_multiplier
        self.max_reconnect_attempts = max_reconnect_attempts
        self.liveness_timeout = liveness_timeout
        self.open_timeout = open_timeout

        self._ws = None
        self._task: asyncio.Task | None = None
        self._stopping = False
        self._fatal_emitted = False
        self._attempt = 0
        self._status = ConnectionStatus(ConnectionState.DISCONNECTED)

        self.messages_received = 0
        self.malformed_messages = 0
        self.total_reconnects = 0
        self._connected_since: float | None = None
        self._last_message_at: float | None = None

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    def is_connected(self) -> bool:
        return self._status.state == ConnectionState.CONNECTED and self._ws is not None

    def connection_metrics(self) -> dict:
        return {
            **self._status.to_dict(),
            "url": self.url,
            "symbols": self.symbols,
            "messages_received": self.messages_received,
            "malformed_messages": self.malformed_messages,
            "total_reconnects": self.total_reconnects,
            "connected_since": self._connected_since,
            "last_message_at": self._last_message_at,
        }

    async def connect(self) -> None:
        """Start the connection loop in the background. Returns immediately."""
        if not self.symbols:
            raise ValueError("No Binance symbols configured")
        if self._task is not None and not self._task.done():
            logger.warning("Binance trade stream already running")
            return

        self._stopping = False
        self._fatal_emitted = False
        self._attempt = 0
        self._task = asyncio.create_task(self._run(), name="binance-trade-stream")

    async def disconnect(self) -> None:
        """Cancel any pending reconnect, close the socket and wait for the loop to exit."""
        self._stopping = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._ws = None
        self._connected_since = None
        if self._status.state != ConnectionState.DISCONNECTED:
            self._set_status(ConnectionStatus(ConnectionState.DISCONNECTED))
        logger.info("Binance WebSocket disconnected")

    async def _run(self) -> None:
        while not self._stopping:
            self._set_status(ConnectionStatus(ConnectionState.CONNECTING, self._attempt))
            logger.info(f"Connecting to Binance WebSocket: {self.symbols}")

            try:
                async with websockets.connect(
                    self.url,
                    open_timeout=self.open_timeout,
                    close_timeout=5,
                    ping_interval=20,
                    ping_timeout=20,
                ) as ws:
                    self._ws = ws
                    self._on_open()
                    reason = await self._read_loop(ws)
                    logger.warning(f"Binance WebSocket connection lost: {reason}")

            except (WebSocketException, asyncio.TimeoutError, OSError) as e:
                logger.error(f"Binance WebSocket connection error (attempt {self._attempt}): {e}")

            except Exception as e:
                logger.error(f"Unexpected error in Binance stream: {e}", exc_info=True)

            finally:
                self._ws = None
                self._connected_since = None

            if self._stopping:
                return

            if self._attempt >= self.max_reconnect_attempts:
                logger.error(
                    f"Binance WebSocket unavailable after {self._attempt} reconnection attempts. "
                    "Giving up."
                )
                self._set_status(ConnectionStatus(ConnectionState.DISCONNECTED, self._attempt))
                self._emit_fatal(
                    BinanceWsUnavailable(
                        f"max reconnection attempts ({self.max_reconnect_attempts}) reached"
                    )
                )
                return

            delay = compute_backoff(
                self._attempt,
                self.reconnect_delay,
                self.backoff_multiplier,
                self.max_reconnect_delay,
            )
            self._attempt += 1
            self.total_reconnects += 1
            self.metrics.record_reconnect()
            self._set_status(ConnectionStatus(ConnectionState.RECONNECTING, self._attempt, delay))
            logger.info(f"Reconnecting to Binance WebSocket in {delay:.1f}s (attempt {self._attempt})...")
            await asyncio.sleep(delay)

    def _on_open(self) -> None:
        self._attempt = 0
        self._connected_since = time.time()
        self._last_message_at = None
        self._set_status(ConnectionStatus(ConnectionState.CONNECTED))
        logger.info(f"Connected to Binance WebSocket. Streaming {len(self.symbols)} symbols.")

    async def _read_loop(self, ws) -> str:
        while True:
            try:
                message = await asyncio.wait_for(ws.recv(), timeout=self.liveness_timeout)
            except asyncio.TimeoutError:
                self.metrics.record_liveness_timeout()
                logger.warning(
                    f"No message from Binance for {self.liveness_timeout}s; forcing reconnect"
                )
                await ws.close()
                return "liveness timeout"
            except ConnectionClosed as e:
                return f"closed ({e})"

            self._handle_message(message)

    def _handle_message(self, message: str | bytes) -> None:
        self.messages_received += 1
        self._last_message_at = time.time()

        try:
            trade = normalize_message(message)
        except MalformedMessage as e:
            self.malformed_messages += 1
            self.metrics.record_malformed()
            if self.malformed_messages == 1 or self.malformed_messages % self.MALFORMED_LOG_EVERY == 0:
                logger.warning(
                    f"Dropping malformed Binance message ({self.malformed_messages} so far): {e}"
                )
            return

        if trade is None:
            return

        self.metrics.record_trade()
        try:
            self.on_trade(trade)
        except Exception as e:
            logger.error(f"Trade listener failed for {trade.symbol} #{trade.trade_id}: {e}", exc_info=True)

    def _set_status(self, status: ConnectionStatus) -> None:
        self._status = status
        if self.on_state_change is None:
            return
        try:
            self.on_state_change(status)
        except Exception as e:
            logger.error(f"Connection state listener failed: {e}", exc_info=True)

    def _emit_fatal(self, error: BaseException) -> None:
        if self._fatal_emitted:
            return
        self._fatal_emitted = True
        if self.on_fatal is not None:
            self.on_fatal(error)
