"""Bounded batch buffer between the feed read loop and the trade writer."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Callable

from ..providers.base import TradeRecord
from .metrics import MetricsCollector
from .writer import TradeWriter, WriterFatalError


logger = logging.getLogger(__name__)


class BufferState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"


class BatchBuffer:
    """
    Accumulates trades and hands them to the writer in bounded batches.

    Flushes when `batch_size` trades are pending or every `batch_timeout`
    seconds, whichever comes first. All buffer mutations are synchronous and
    happen on the event loop thread, so `add()` (read loop) and the batch
    swap in `flush()` (flush worker) never interleave. The batch handed to the
    writer is an immutable tuple; trades arriving while it is being written
    land in the next batch.

    A failed batch goes back to the head of the buffer so it stays ahead of
    newer trades. Occupancy counts pending trades plus the batch in flight and
    is capped at `2 * batch_size`: beyond that the oldest pending trades are
    dropped and counted. The in-flight batch is never dropped while the
    writer holds it.
    """

    SUMMARY_INTERVAL = 60.0

    def __init__(
        self,
        writer: TradeWriter,
        metrics: MetricsCollector,
        batch_size: int,
        batch_timeout: float,
        on_fatal: Callable[[BaseException], None] | None = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if batch_timeout <= 0:
            raise ValueError("batch_timeout must be > 0")

        self.writer = writer
        self.metrics = metrics
        self.batch_size = batch_size
        self.batch_timeout = batch_timeout
        self.capacity = 2 * batch_size
        self.on_fatal = on_fatal

        self._pending: deque[TradeRecord] = deque()
        self._flush_requested = asyncio.Event()
        self._flush_lock = asyncio.Lock()
        self._in_flight = 0
        self._task: asyncio.Task | None = None
        self._overflow_logged = False
        self._last_summary = time.monotonic()
        self._persisted_at_summary = 0

        metrics.bind_occupancy(self.occupancy)

    @property
    def state(self) -> BufferState:
        if self._in_flight:
            return BufferState.FLUSHING
        if self._pending:
            return BufferState.ACCUMULATING
        return BufferState.IDLE

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def occupancy(self) -> int:
        return len(self._pending) + self._in_flight

    def add(self, record: TradeRecord) -> None:
        """Append a trade. O(1), never blocks, never awaits."""
        self._pending.append(record)
        self._enforce_capacity()
        if len(self._pending) >= self.batch_size:
            self._flush_requested.set()

    def requeue(self, batch: tuple[TradeRecord, ...]) -> None:
        """Put a failed batch back at the head, preserving its order."""
        self._pending.extendleft(reversed(batch))
        self._enforce_capacity()

    def _enforce_capacity(self) -> None:
        excess = min(len(self._pending) + self._in_flight - self.capacity, len(self._pending))
        if excess <= 0:
            return
        for _ in range(excess):
            self._pending.popleft()
        self.metrics.record_dropped(excess)
        if not self._overflow_logged:
            self._overflow_logged = True
            logger.warning(
                f"Trade buffer full ({self.capacity} pending); dropping oldest trades "
                "until the store accepts writes again"
            )

    def _take_batch(self) -> tuple[TradeRecord, ...]:
        n = min(self.batch_size, len(self._pending))
        return tuple(self._pending.popleft() for _ in range(n))

    async def flush(self) -> bool:
        """
        Write up to `batch_size` of the oldest pending trades.

        Returns True if the batch was persisted (or there was nothing to
        write), False if it was requeued after a transient failure.
        """
        async with self._flush_lock:
            batch = self._take_batch()
            if not batch:
                return True

            self._in_flight = len(batch)
            try:
                ok = await self.writer.persist(batch)
            except BaseException:
                self._in_flight = 0
                self.requeue(batch)
                raise
            self._in_flight = 0

            if not ok:
                self.requeue(batch)
                return False

            self._overflow_logged = False
            return True

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="batch-flush")
        logger.info(
            f"Batch buffer started (batch_size={self.batch_size}, "
            f"batch_timeout={self.batch_timeout}s)"
        )

    async def _run(self) -> None:
        retry_pending = False
        while True:
            if retry_pending:
                # After a failed write the flush interval is the retry interval
                await asyncio.sleep(self.batch_timeout)
            else:
                try:
                    await asyncio.wait_for(self._flush_requested.wait(), timeout=self.batch_timeout)
                except asyncio.TimeoutError:
                    pass
            self._flush_requested.clear()

            if self._pending:
                try:
                    ok = await self.flush()
                except WriterFatalError as e:
                    logger.error(f"Batch writer failed permanently: {e}")
                    if self.on_fatal:
                        self.on_fatal(e)
                    return
                except Exception as e:
                    logger.error(f"Unexpected error in flush worker: {e}", exc_info=True)
                    if self.on_fatal:
                        self.on_fatal(e)
                    return
                retry_pending = not ok
                if ok and len(self._pending) >= self.batch_size:
                    self._flush_requested.set()

            self._maybe_log_summary()

    def _maybe_log_summary(self) -> None:
        now = time.monotonic()
        if now - self._last_summary < self.SUMMARY_INTERVAL:
            return
        persisted = self.metrics.trades_persisted - self._persisted_at_summary
        logger.info(
            f"Persisted {persisted} trades in the last {now - self._last_summary:.0f}s "
            f"(pending={len(self._pending)}, dropped_total={self.metrics.dropped_records}, "
            f"write_errors={self.metrics.write_errors})"
        )
        self._last_summary = now
        self._persisted_at_summary = self.metrics.trades_persisted

    async def stop(self, timeout: float) -> int:
        """
        Stop the flush worker and make one bounded attempt to drain.

        Returns the number of trades dropped because they could not be
        written before `timeout` elapsed.
        """
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._pending:
            logger.info(f"Flushing {len(self._pending)} remaining trades before shutdown")
            try:
                await asyncio.wait_for(self._drain(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.error(f"Final flush did not complete within {timeout}s")
            except WriterFatalError as e:
                logger.error(f"Final flush failed: {e}")
            except Exception as e:
                logger.error(f"Unexpected error in final flush: {e}", exc_info=True)

        dropped = len(self._pending)
        if dropped:
            self._pending.clear()
            self.metrics.record_dropped(dropped)
            logger.error(f"Dropped {dropped} unpersisted trades on shutdown")
        return dropped

    async def _drain(self) -> None:
        while self._pending:
            if not await self.flush():
                return
