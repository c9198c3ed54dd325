"""
Tests for the Binance trade stream client.

The socket is faked by patching `websockets.connect`, so these tests drive
the reconnect state machine without any network access.
"""

import asyncio
import json

import pytest
from unittest.mock import patch

from ingestor.providers.base import ConnectionState
from ingestor.providers.binance_ws import (
    BinanceTradeStream,
    BinanceWsUnavailable,
    build_stream_url,
    compute_backoff,
)
from ingestor.streaming.metrics import MetricsCollector

from fakes import FakeFeed, FakeWebSocket, trade_frame, wait_until


def make_stream(feed_trades, statuses, fatals, **overrides):
    kwargs = dict(
        base_url="wss://example.test/stream",
        reconnect_delay=0.01,
        max_reconnect_delay=0.03,
        backoff_multiplier=2.0,
        max_reconnect_attempts=4,
        liveness_timeout=5.0,
    )
    kwargs.update(overrides)
    return BinanceTradeStream(
        ["btcusdt", "ETHUSDT", "btcusdt"],
        MetricsCollector(),
        on_trade=feed_trades.append,
        on_state_change=statuses.append,
        on_fatal=fatals.append,
        **kwargs,
    )


def reconnecting(statuses):
    return [(s.attempt, s.next_delay) for s in statuses if s.state == ConnectionState.RECONNECTING]


def test_backoff_sequence_is_capped_and_non_decreasing():
    delays = [compute_backoff(n, base=1.0, multiplier=2.0, max_delay=30.0) for n in range(8)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]
    assert delays == sorted(delays)


def test_stream_url_combined_endpoint():
    url = build_stream_url("wss://stream.binance.com:9443/stream", ["btcusdt", "ethusdt"])
    assert url == "wss://stream.binance.com:9443/stream?streams=btcusdt@trade/ethusdt@trade"


def test_stream_url_raw_endpoint():
    url = build_stream_url("wss://stream.binance.com:9443/ws/", ["BTCUSDT"])
    assert url == "wss://stream.binance.com:9443/ws/btcusdt@trade"


def test_symbols_are_normalized_and_deduplicated():
    stream = make_stream([], [], [])
    assert stream.symbols == ["btcusdt", "ethusdt"]
    assert stream.url == "wss://example.test/stream?streams=btcusdt@trade/ethusdt@trade"


@pytest.mark.asyncio
async def test_trades_dispatched_and_garbage_dropped():
    trades, statuses, fatals = [], [], []
    ws = FakeWebSocket([
        trade_frame(1),
        "{not json",
        json.dumps({"e": "depthUpdate", "s": "BTCUSDT"}),
        trade_frame(2, symbol="ETHUSDT", combined=False),
    ])
    feed = FakeFeed([ws])
    stream = make_stream(trades, statuses, fatals)

    with patch("ingestor.providers.binance_ws.websockets.connect", feed):
        await stream.connect()
        await wait_until(lambda: len(trades) == 2 and stream.malformed_messages == 2)

        assert stream.is_connected()
        assert [t.trade_id for t in trades] == [1, 2]
        assert [t.symbol for t in trades] == ["BTCUSDT", "ETHUSDT"]
        assert stream.metrics.malformed_messages == 2
        assert stream.metrics.trades_received == 2
        assert stream.messages_received == 4

        await stream.disconnect()

    assert not stream.is_connected()
    assert stream.status.state == ConnectionState.DISCONNECTED
    assert ws.closed
    assert [s.state for s in statuses][:2] == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
    assert fatals == []


@pytest.mark.asyncio
async def test_unexpected_close_schedules_reconnect_with_backoff():
    trades, statuses, fatals = [], [], []
    feed = FakeFeed([FakeWebSocket([trade_frame(1)], then_close=True)])
    stream = make_stream(trades, statuses, fatals, max_reconnect_attempts=10)

    with patch("ingestor.providers.binance_ws.websockets.connect", feed):
        await stream.connect()
        await wait_until(lambda: len(reconnecting(statuses)) >= 2)
        await stream.disconnect()

    # First failure reconnects after base delay, the next one after base * multiplier
    assert reconnecting(statuses)[:2] == [(1, pytest.approx(0.01)), (2, pytest.approx(0.02))]
    assert trades[0].trade_id == 1


@pytest.mark.asyncio
async def test_attempt_counter_resets_after_successful_connection():
    trades, statuses, fatals = [], [], []
    feed = FakeFeed([
        OSError("refused"),
        FakeWebSocket([trade_frame(1)], then_close=True),
        OSError("refused"),
    ])
    stream = make_stream(trades, statuses, fatals, max_reconnect_attempts=10)

    with patch("ingestor.providers.binance_ws.websockets.connect", feed):
        await stream.connect()
        await wait_until(lambda: len(reconnecting(statuses)) >= 3)
        await stream.disconnect()

    assert reconnecting(statuses)[:3] == [
        (1, pytest.approx(0.01)),
        # connected in between: fresh backoff window
        (1, pytest.approx(0.01)),
        (2, pytest.approx(0.02)),
    ]
    assert len(trades) == 1


@pytest.mark.asyncio
async def test_fatal_raised_once_after_max_attempts():
    trades, statuses, fatals = [], [], []
    feed = FakeFeed()  # every connection attempt is refused
    stream = make_stream(trades, statuses, fatals, max_reconnect_attempts=4)

    with patch("ingestor.providers.binance_ws.websockets.connect", feed):
        await stream.connect()
        await wait_until(lambda: len(fatals) == 1)
        calls_at_fatal = len(feed.calls)
        await asyncio.sleep(0.1)

        assert len(feed.calls) == calls_at_fatal == 5
        await stream.disconnect()

    assert len(fatals) == 1
    assert isinstance(fatals[0], BinanceWsUnavailable)
    assert reconnecting(statuses) == [
        (1, pytest.approx(0.01)),
        (2, pytest.approx(0.02)),
        (3, pytest.approx(0.03)),
        (4, pytest.approx(0.03)),
    ]
    assert stream.status.state == ConnectionState.DISCONNECTED
    assert stream.metrics.reconnect_attempts == 4
    assert all(url == stream.url for url in feed.calls)


@pytest.mark.asyncio
async def test_silent_socket_forces_reconnect():
    trades, statuses, fatals = [], [], []
    silent = FakeWebSocket()
    feed = FakeFeed([silent, FakeWebSocket()])
    stream = make_stream(trades, statuses, fatals, liveness_timeout=0.05, max_reconnect_attempts=10)

    with patch("ingestor.providers.binance_ws.websockets.connect", feed):
        await stream.connect()
        await wait_until(lambda: len(feed.calls) >= 2)
        await stream.disconnect()

    assert silent.closed
    assert stream.metrics.liveness_timeouts >= 1
    assert reconnecting(statuses)[0] == (1, pytest.approx(0.01))


@pytest.mark.asyncio
async def test_disconnect_cancels_pending_reconnect():
    trades, statuses, fatals = [], [], []
    feed = FakeFeed()
    stream = make_stream(trades, statuses, fatals, reconnect_delay=10.0, max_reconnect_delay=10.0)

    with patch("ingestor.providers.binance_ws.websockets.connect", feed):
        await stream.connect()
        await wait_until(lambda: stream.status.state == ConnectionState.RECONNECTING)
        await asyncio.wait_for(stream.disconnect(), timeout=1.0)

    assert len(feed.calls) == 1
    assert stream.status.state == ConnectionState.DISCONNECTED
    assert fatals == []


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_read_loop():
    statuses, fatals, seen = [], [], []

    def flaky_listener(trade):
        seen.append(trade.trade_id)
        if trade.trade_id == 1:
            raise RuntimeError("listener bug")

    stream = BinanceTradeStream(
        ["btcusdt"],
        MetricsCollector(),
        on_trade=flaky_listener,
        on_state_change=statuses.append,
        on_fatal=fatals.append,
        base_url="wss://example.test/stream",
    )
    feed = FakeFeed([FakeWebSocket([trade_frame(1), trade_frame(2)])])

    with patch("ingestor.providers.binance_ws.websockets.connect", feed):
        await stream.connect()
        await wait_until(lambda: seen == [1, 2])
        assert stream.is_connected()
        await stream.disconnect()


@pytest.mark.asyncio
async def test_connect_requires_symbols():
    stream = BinanceTradeStream([" "], MetricsCollector(), on_trade=lambda t: None)
    with pytest.raises(ValueError):
        await stream.connect()
