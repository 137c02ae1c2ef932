"""
End-to-end order lifecycle through TradingCore: raw Binance user-stream
JSON is stamped, queued, normalized, reconciled and applied to the ledgers.
"""
import json
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from usdm_core.config.config import Config, MonitoringConfig, ReconciliationConfig
from usdm_core.data.sequence_stamper import SequenceStamper
from usdm_core.domain.events import MARKET_STREAM, USER_STREAM, OrderChanged, PositionChanged
from usdm_core.domain.models import (
    ExchangeSnapshot,
    OrderIntent,
    OrderStatus,
    OrderType,
    Side,
    SnapshotOrder,
    SnapshotPosition,
    SubmitResult,
)
from usdm_core.exceptions import InvariantError, StreamDegraded, TransportFailure
from usdm_core.live.stream_processor import TradingCore
from usdm_core.reconciliation.cursor import StreamHealth


def _update(x: str, X: str, **fields) -> str:
    order = {
        "s": "BTCUSDT", "c": "C1", "S": "BUY", "o": "MARKET", "f": "GTC",
        "q": "10", "p": "0", "x": x, "X": X, "i": "E1",
        "l": "0", "z": "0", "L": "0", "n": "0", "N": "USDT", "t": 0, "m": False, "rp": "0",
    }
    order.update(fields)
    return json.dumps({"e": "ORDER_TRADE_UPDATE", "E": 1700000000000, "T": 1700000000000, "o": order})


ACK = _update("NEW", "NEW")
FILL_1 = _update("TRADE", "PARTIALLY_FILLED", l="6", L="100", z="6", t="F1", n="0.24")
FILL_2 = _update("TRADE", "FILLED", l="4", L="101", z="10", t="F2", n="0.16")


def _transport(*snapshots) -> AsyncMock:
    transport = AsyncMock()
    transport.submit_order.return_value = SubmitResult(accepted=True, exchange_order_id="E1")
    transport.fetch_snapshot.side_effect = list(snapshots) or [ExchangeSnapshot(sequence=0)]
    transport.fetch_order.return_value = None
    return transport


def _config(**reconciliation) -> Config:
    return Config(
        monitoring=MonitoringConfig(metrics_log_interval_seconds=None),
        reconciliation=ReconciliationConfig(**reconciliation),
    )


def _intent() -> OrderIntent:
    return OrderIntent(instrument="BTCUSDT", side=Side.BUY, quantity=Decimal("10"), order_type=OrderType.MARKET)


@pytest.mark.asyncio
async def test_submit_ack_two_fills():
    transport = _transport()
    core = TradingCore(transport, _config(), stamper=SequenceStamper())
    await core.start()
    seen = []
    core.gateway.subscribe(seen.append)

    try:
        order = await core.gateway.submit(_intent(), client_order_id="C1")
        assert order.status == OrderStatus.PENDING

        for payload in (ACK, FILL_1, FILL_2):
            await core.feed(USER_STREAM, payload)
        await core.drain()

        order = core.gateway.get_order("C1")
        assert order.status == OrderStatus.FILLED
        assert order.exchange_order_id == "E1"
        assert order.filled_quantity == Decimal("10")
        assert order.average_fill_price == Decimal("100.4")

        position = core.gateway.get_position("BTCUSDT")
        assert position.net_quantity == Decimal("10")
        assert position.average_entry_price == Decimal("100.4")
        assert position.fees_paid == Decimal("0.40")

        causes = [n.cause for n in seen if isinstance(n, OrderChanged)]
        assert causes == ["submit", "ACK", "FILL", "FILL"]
        assert [n.fill_id for n in seen if isinstance(n, PositionChanged)] == ["F1", "F2"]
        assert core.engine.cursor(USER_STREAM) == 3
        assert not core.halted
    finally:
        await core.stop()

    transport.fetch_snapshot.assert_awaited_once()


@pytest.mark.asyncio
async def test_lost_message_is_recovered_by_resync():
    snapshot_after_fill_1 = ExchangeSnapshot(
        sequence=2,
        orders=(SnapshotOrder(
            client_order_id="C1",
            exchange_order_id="E1",
            instrument="BTCUSDT",
            side=Side.BUY,
            order_type=OrderType.MARKET,
            quantity=Decimal("10"),
            filled_quantity=Decimal("6"),
            status=OrderStatus.PARTIALLY_FILLED,
            average_fill_price=Decimal("100"),
        ),),
        positions=(SnapshotPosition("BTCUSDT", Decimal("6"), Decimal("100")),),
    )
    transport = _transport(ExchangeSnapshot(sequence=0), snapshot_after_fill_1)
    core = TradingCore(transport, _config(), stamper=SequenceStamper())
    await core.start()

    try:
        await core.gateway.submit(_intent(), client_order_id="C1")
        await core.feed(USER_STREAM, ACK)
        core.stamper.stamp(USER_STREAM, FILL_1)  # lost in transit
        await core.feed(USER_STREAM, FILL_2)
        await core.drain()

        assert core.engine.health(USER_STREAM) == StreamHealth.HEALTHY
        assert core.engine.cursor(USER_STREAM) == 3
        order = core.gateway.get_order("C1")
        assert order.status == OrderStatus.FILLED
        assert order.average_fill_price == Decimal("100.4")
        position = core.gateway.get_position("BTCUSDT")
        assert position.net_quantity == Decimal("10")
        assert position.average_entry_price == Decimal("100.4")
        assert core.metrics.get("sequence_gaps", USER_STREAM) == 1
        assert core.metrics.get("resyncs", USER_STREAM) == 2
    finally:
        await core.stop()


@pytest.mark.asyncio
async def test_commands_refused_until_resync_succeeds():
    transport = _transport(ExchangeSnapshot(sequence=0))
    core = TradingCore(transport, _config(auto_resync=False), stamper=SequenceStamper())
    await core.start()

    try:
        await core.feed_raw(core.stamper.reconnected(USER_STREAM))
        await core.drain()
        assert core.engine.health(USER_STREAM) == StreamHealth.DEGRADED

        with pytest.raises(StreamDegraded):
            await core.gateway.submit(_intent(), client_order_id="C1")

        transport.fetch_snapshot.side_effect = None
        transport.fetch_snapshot.return_value = ExchangeSnapshot(sequence=core.stamper.current(USER_STREAM))
        assert await core.engine.resync(USER_STREAM) is True

        order = await core.gateway.submit(_intent(), client_order_id="C1")
        assert order.status == OrderStatus.PENDING
    finally:
        await core.stop()


@pytest.mark.asyncio
async def test_market_stream_feeds_unrealized_pnl():
    core = TradingCore(_transport(), _config(sync_on_start=False), stamper=SequenceStamper())
    await core.start()

    try:
        await core.gateway.submit(_intent(), client_order_id="C1")
        for payload in (ACK, FILL_1, FILL_2, {"e": "TRADE_LITE", "E": 1700000000000, "s": "BTCUSDT"}):
            await core.feed(USER_STREAM, payload)
        await core.feed(MARKET_STREAM, {"e": "markPriceUpdate", "E": 1700000000000, "s": "BTCUSDT", "p": "102.4"})
        await core.feed(MARKET_STREAM, "garbage")
        await core.drain()

        assert core.gateway.unrealized_pnl("BTCUSDT") == Decimal("20.0")
        assert core.metrics.get("decode_failures", MARKET_STREAM) == 1
        metrics = core.get_metrics()
        assert metrics["queues"][USER_STREAM]["processed"] == 4
        assert metrics["streams"][USER_STREAM] == {"health": "HEALTHY", "cursor": 4, "buffered": 0, "requires_snapshot": True, "reason": None}
        assert metrics["streams"][MARKET_STREAM]["cursor"] == 2
    finally:
        await core.stop()


@pytest.mark.asyncio
async def test_failed_snapshot_is_retried_until_healthy():
    transport = _transport(TransportFailure("snapshot: timeout"), ExchangeSnapshot(sequence=1))
    core = TradingCore(
        transport,
        _config(sync_on_start=False, resync_retry_seconds=0.01),
        stamper=SequenceStamper(),
    )
    await core.start()

    try:
        await core.feed_raw(core.stamper.reconnected(USER_STREAM))
        await core.drain()

        assert core.engine.health(USER_STREAM) == StreamHealth.HEALTHY
        assert transport.fetch_snapshot.await_count == 2
        assert core.metrics.get("resync_failures", USER_STREAM) == 1
        assert core.metrics.get("resyncs", USER_STREAM) == 2
        assert not core.halted
    finally:
        await core.stop()


@pytest.mark.asyncio
async def test_invariant_violation_halts_stream():
    core = TradingCore(_transport(), _config(sync_on_start=False), stamper=SequenceStamper())
    await core.start()
    core.engine.process = MagicMock(side_effect=InvariantError("filled 12 exceeds requested 10 for C1"))

    try:
        await core.feed(USER_STREAM, ACK)
        await core.feed(USER_STREAM, FILL_1)
        await core.drain()

        assert core.halted
        queues = core.get_metrics()["queues"][USER_STREAM]
        assert queues["halted"] is True
        assert queues["depth"] == 0
        assert queues["processed"] == 0
        core.engine.process.assert_called_once()

        with pytest.raises(RuntimeError):
            await core.feed(USER_STREAM, FILL_2)
    finally:
        await core.stop()
