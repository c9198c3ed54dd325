"""Batch writer: one idempotent store write per batch."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from typing import Sequence

from ..providers.base import TradeRecord
from ..storage.sqlite import StoreNotConnected, TradeStore
from .metrics import MetricsCollector


logger = logging.getLogger(__name__)

# Failures worth retrying on the next flush cycle
TRANSIENT_ERRORS = (sqlite3.OperationalError, OSError, asyncio.TimeoutError)
# Rows the driver cannot bind; the same batch would fail again
DATA_ERRORS = (OverflowError, ValueError, TypeError)


class WriterFatalError(Exception):
    """Raised when the store rejects a write in a way retrying cannot fix."""
    pass


class TradeWriter:
    """
    Persists batches into the trade store.

    `persist()` returns True when the batch is durable (including rows that
    were already stored), False on a transient failure so the caller can
    requeue it. Non-transient failures raise WriterFatalError.
    """

    def __init__(self, store: TradeStore, metrics: MetricsCollector):
        self.store = store
        self.metrics = metrics
        self.consecutive_failures = 0
        self.last_error: str | None = None

    def is_healthy(self) -> bool:
        return self.store.is_connected and self.consecutive_failures == 0

    async def persist(self, batch: Sequence[TradeRecord]) -> bool:
        if not batch:
            return True

        started = time.perf_counter()
        try:
            inserted = await self.store.insert_trades(batch)
        except StoreNotConnected as e:
            self.last_error = str(e)
            raise WriterFatalError(str(e)) from e
        except TRANSIENT_ERRORS as e:
            self.consecutive_failures += 1
            self.last_error = f"{type(e).__name__}: {e}"
            self.metrics.record_write_error()
            logger.warning(
                f"Failed to persist batch of {len(batch)} trades "
                f"(failure #{self.consecutive_failures}): {self.last_error}"
            )
            return False
        except sqlite3.Error as e:
            self.last_error = f"{type(e).__name__}: {e}"
            self.metrics.record_write_error()
            logger.error(f"Store rejected batch of {len(batch)} trades: {self.last_error}")
            raise WriterFatalError(self.last_error) from e
        except DATA_ERRORS as e:
            self.last_error = f"{type(e).__name__}: {e}"
            self.metrics.record_write_error()
            logger.error(f"Batch of {len(batch)} trades could not be bound: {self.last_error}")
            raise WriterFatalError(self.last_error) from e

        latency_ms = (time.perf_counter() - started) * 1000.0
        if self.consecutive_failures:
            logger.info(f"Store writes recovered after {self.consecutive_failures} failed attempt(s)")
        self.consecutive_failures = 0
        self.last_error = None
        self.metrics.record_batch(len(batch), inserted, latency_ms)
        logger.debug(
            f"Persisted batch: size={len(batch)} inserted={inserted} "
            f"latency={latency_ms:.1f}ms"
        )
        return True
