"""Tests for MetricsCollector."""

from ingestor.streaming.metrics import MetricsCollector


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_rolling_rate_over_window():
    clock = FakeClock()
    metrics = MetricsCollector(window_seconds=10, clock=clock)

    for _ in range(50):
        metrics.record_trade()
    clock.now += 1
    for _ in range(30):
        metrics.record_trade()

    assert metrics.trades_per_second() == 8.0

    # First bucket ages out of the window
    clock.now += 9.5
    assert metrics.trades_per_second() == 3.0

    clock.now += 5
    assert metrics.trades_per_second() == 0.0
    assert metrics.trades_received == 80


def test_batch_accounting():
    metrics = MetricsCollector(clock=FakeClock())
    metrics.record_batch(size=10, inserted=8, latency_ms=12.5)
    metrics.record_batch(size=5, inserted=5, latency_ms=3.0)

    assert metrics.batches_persisted == 2
    assert metrics.trades_persisted == 13
    assert metrics.duplicates_ignored == 2
    assert metrics.last_flush_latency_ms == 3.0


def test_snapshot_reads_bound_occupancy():
    clock = FakeClock()
    metrics = MetricsCollector(clock=clock)
    pending = [1, 2, 3]
    metrics.bind_occupancy(lambda: len(pending))
    metrics.record_dropped(4)
    metrics.record_write_error()
    metrics.record_reconnect()
    metrics.record_malformed()
    metrics.record_liveness_timeout()
    clock.now += 2

    snap = metrics.snapshot().to_dict()

    assert snap["buffer_occupancy"] == 3
    assert snap["dropped_records"] == 4
    assert snap["write_errors"] == 1
    assert snap["reconnect_attempts"] == 1
    assert snap["malformed_messages"] == 1
    assert snap["liveness_timeouts"] == 1
    assert snap["last_flush_latency_ms"] is None
    assert snap["uptime_seconds"] == 2.0


def test_snapshot_without_buffer():
    assert MetricsCollector().snapshot().buffer_occupancy == 0
