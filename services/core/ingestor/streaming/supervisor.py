"""Supervisor that wires the trade stream, batch buffer and writer."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..config import Settings
from ..providers.base import ConnectionState, ConnectionStatus
from ..providers.binance_ws import BinanceTradeStream
from ..storage.sqlite import TradeStore
from .buffer import BatchBuffer
from .metrics import MetricsCollector
from .writer import TradeWriter


logger = logging.getLogger(__name__)


class IngestSupervisor:
    """
    Manages lifecycle of the ingestion pipeline.

    Startup: store -> flush worker -> feed connection.
    Shutdown (reverse, always runs to completion): stop flush worker and make
    one bounded final flush -> disconnect feed -> close store.

    A fatal condition from the feed (reconnects exhausted) or the writer
    (store rejects writes permanently) triggers the same shutdown.
    """

    def __init__(
        self,
        settings: Settings,
        store: TradeStore | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.settings = settings
        self.store = store or TradeStore(settings.sqlite_path)
        self.metrics = metrics or MetricsCollector()
        self.writer = TradeWriter(self.store, self.metrics)
        self.buffer = BatchBuffer(
            self.writer,
            self.metrics,
            batch_size=settings.batch_size,
            batch_timeout=settings.batch_timeout,
            on_fatal=self._on_fatal,
        )
        self.stream = BinanceTradeStream(
            settings.get_symbols(),
            self.metrics,
            on_trade=self.buffer.add,
            on_state_change=self._on_state_change,
            on_fatal=self._on_fatal,
            base_url=settings.binance_ws_url,
            reconnect_delay=settings.reconnect_delay,
            max_reconnect_delay=settings.max_reconnect_delay,
            backoff_multiplier=settings.backoff_multiplier,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            liveness_timeout=settings.liveness_timeout,
            open_timeout=settings.open_timeout,
        )

        self.fatal_error: BaseException | None = None
        self.running = False
        self._stopped = False
        self._fatal_event = asyncio.Event()
        self._stop_lock = asyncio.Lock()
        self._shutdown_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start all components. On failure, stops whatever already started and re-raises."""
        logger.info(f"Starting ingestion for symbols: {self.stream.symbols}")
        try:
            await self.store.connect()
            logger.info(f"Trade store connected: {self.store.path}")
            self.buffer.start()
            await self.stream.connect()
        except Exception as e:
            logger.error(f"Failed to start ingestion: {e}", exc_info=True)
            await self.stop()
            raise
        self.running = True
        logger.info("Ingestion pipeline started.")

    async def stop(self) -> None:
        """Stop everything in reverse startup order. Safe to call more than once."""
        async with self._stop_lock:
            if self._stopped:
                return
            logger.info("Stopping ingestion pipeline...")
            self.running = False

            try:
                await self.buffer.stop(self.settings.shutdown_timeout)
            except Exception as e:
                logger.error(f"Error stopping batch buffer: {e}", exc_info=True)

            try:
                await self.stream.disconnect()
            except Exception as e:
                logger.error(f"Error disconnecting trade stream: {e}", exc_info=True)

            try:
                await self.store.close()
            except Exception as e:
                logger.error(f"Error closing trade store: {e}", exc_info=True)

            self._stopped = True
            logger.info("Ingestion pipeline stopped.")

    async def run(self, cancel: asyncio.Event) -> BaseException | None:
        """
        Run until `cancel` is set or a fatal condition occurs, then shut down.

        Returns the fatal error, if any.
        """
        await self.start()
        cancel_wait = asyncio.create_task(cancel.wait())
        fatal_wait = asyncio.create_task(self._fatal_event.wait())
        try:
            await asyncio.wait({cancel_wait, fatal_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
            fatal_wait.cancel()
            await self.stop()
        return self.fatal_error

    def _on_fatal(self, error: BaseException) -> None:
        if self.fatal_error is not None:
            return
        self.fatal_error = error
        logger.error(f"Fatal ingestion error, shutting down: {error}")
        self._fatal_event.set()
        self._shutdown_task = asyncio.get_running_loop().create_task(self.stop())

    def _on_state_change(self, status: ConnectionStatus) -> None:
        if status.state == ConnectionState.RECONNECTING:
            logger.debug(f"Feed reconnecting: attempt={status.attempt} delay={status.next_delay}")
        else:
            logger.debug(f"Feed state: {status.state.value}")

    def is_healthy(self) -> bool:
        return (
            self.running
            and self.fatal_error is None
            and self.stream.is_connected()
            and self.writer.is_healthy()
        )

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "healthy": self.is_healthy(),
            "fatal_error": str(self.fatal_error) if self.fatal_error else None,
            "stream": self.stream.connection_metrics(),
            "writer": {
                "healthy": self.writer.is_healthy(),
                "consecutive_failures": self.writer.consecutive_failures,
                "last_error": self.writer.last_error,
            },
            "buffer": {
                "state": self.buffer.state.value,
                "occupancy": self.buffer.occupancy(),
                "capacity": self.buffer.capacity,
            },
        }
