"""Passive counters and gauges read by the health surface."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Callable


@dataclass(frozen=True)
class MetricsSnapshot:
    """Read-only view of pipeline metrics at one instant."""
    trades_received: int
    trades_per_second: float
    trades_persisted: int
    batches_persisted: int
    duplicates_ignored: int
    malformed_messages: int
    write_errors: int
    dropped_records: int
    reconnect_attempts: int
    liveness_timeouts: int
    last_flush_latency_ms: float | None
    buffer_occupancy: int
    uptime_seconds: float

    def to_dict(self) -> dict:
        return asdict(self)


class MetricsCollector:
    """
    Collects ingestion metrics.

    Components call the `record_*` methods; the health surface only calls
    `snapshot()`. Throughput is a rolling rate over `window_seconds`, kept as
    one counter per whole second so recording stays O(1).
    """

    def __init__(self, window_seconds: int = 10, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = max(1, window_seconds)
        self._clock = clock
        self._started_at = clock()

        self.trades_received = 0
        self.trades_persisted = 0
        self.batches_persisted = 0
        self.duplicates_ignored = 0
        self.malformed_messages = 0
        self.write_errors = 0
        self.dropped_records = 0
        self.reconnect_attempts = 0
        self.liveness_timeouts = 0
        self.last_flush_latency_ms: float | None = None

        # (second, count) buckets, oldest first
        self._rate_buckets: deque[list[int]] = deque()
        self._occupancy_source: Callable[[], int] | None = None

    def bind_occupancy(self, source: Callable[[], int]) -> None:
        """Register the callable that reports current buffer occupancy."""
        self._occupancy_source = source

    def record_trade(self) -> None:
        self.trades_received += 1
        second = int(self._clock())
        if self._rate_buckets and self._rate_buckets[-1][0] == second:
            self._rate_buckets[-1][1] += 1
        else:
            self._rate_buckets.append([second, 1])
            self._evict(second)

    def record_malformed(self) -> None:
        self.malformed_messages += 1

    def record_batch(self, size: int, inserted: int, latency_ms: float) -> None:
        self.batches_persisted += 1
        self.trades_persisted += inserted
        self.duplicates_ignored += size - inserted
        self.last_flush_latency_ms = latency_ms

    def record_write_error(self) -> None:
        self.write_errors += 1

    def record_dropped(self, count: int) -> None:
        self.dropped_records += count

    def record_reconnect(self) -> None:
        self.reconnect_attempts += 1

    def record_liveness_timeout(self) -> None:
        self.liveness_timeouts += 1

    def trades_per_second(self) -> float:
        now = int(self._clock())
        self._evict(now)
        total = sum(count for _, count in self._rate_buckets)
        return total / self.window_seconds

    def _evict(self, now: int) -> None:
        horizon = now - self.window_seconds
        while self._rate_buckets and self._rate_buckets[0][0] <= horizon:
            self._rate_buckets.popleft()

    def snapshot(self) -> MetricsSnapshot:
        occupancy = self._occupancy_source() if self._occupancy_source else 0
        return MetricsSnapshot(
            trades_received=self.trades_received,
            trades_per_second=round(self.trades_per_second(), 3),
            trades_persisted=self.trades_persisted,
            batches_persisted=self.batches_persisted,
            duplicates_ignored=self.duplicates_ignored,
            malformed_messages=self.malformed_messages,
            write_errors=self.write_errors,
            dropped_records=self.dropped_records,
            reconnect_attempts=self.reconnect_attempts,
            liveness_timeouts=self.liveness_timeouts,
            last_flush_latency_ms=self.last_flush_latency_ms,
            buffer_occupancy=occupancy,
            uptime_seconds=round(self._clock() - self._started_at, 3),
        )
