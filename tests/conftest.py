"""
Pytest configuration and shared fixtures.
"""
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from usdm_core.data.orderbook import MarketBook
from usdm_core.domain.events import MARKET_STREAM, USER_STREAM, EventKind, NormalizedEvent
from usdm_core.domain.models import ExchangeSnapshot, SubmitResult
from usdm_core.execution.command_gateway import CommandGateway
from usdm_core.execution.notifier import ChangeNotifier
from usdm_core.execution.order_ledger import OrderLedger
from usdm_core.execution.position_ledger import PositionLedger
from usdm_core.monitoring.metrics import MetricsCollector
from usdm_core.reconciliation.engine import ReconciliationEngine

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


def _event(kind, sequence, client_order_id="C1", *, stream_id=USER_STREAM, instrument="BTCUSDT", **fields):
    return NormalizedEvent(
        stream_id=stream_id,
        sequence=sequence,
        kind=kind,
        instrument=instrument,
        timestamp=T0,
        client_order_id=client_order_id,
        **fields,
    )


def _fill(sequence, client_order_id, fill_id, quantity, price, **fields):
    return _event(
        EventKind.FILL,
        sequence,
        client_order_id,
        fill_id=fill_id,
        quantity=Decimal(quantity),
        price=Decimal(price),
        **fields,
    )


@pytest.fixture
def make_event():
    """make_event(kind, seq, client_order_id="C1", **fields) -> NormalizedEvent"""
    return _event


@pytest.fixture
def make_fill():
    """make_fill(seq, client_order_id, fill_id, qty, price, **fields) -> FILL event"""
    return _fill


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def notifier():
    return ChangeNotifier()


@pytest.fixture
def market_book():
    return MarketBook()


@pytest.fixture
def order_ledger():
    return OrderLedger()


@pytest.fixture
def position_ledger():
    return PositionLedger()


@pytest.fixture
def transport():
    """Transport double: accepts every order as E1, empty snapshot at seq 0, no order lookups."""
    transport = AsyncMock()
    transport.submit_order.return_value = SubmitResult(accepted=True, exchange_order_id="E1")
    transport.amend_order.return_value = SubmitResult(accepted=True, exchange_order_id="E1")
    transport.cancel_order.return_value = None
    transport.fetch_snapshot.return_value = ExchangeSnapshot(sequence=0)
    transport.fetch_order.return_value = None
    return transport


@pytest.fixture
def engine(order_ledger, position_ledger, transport, notifier, metrics, market_book):
    engine = ReconciliationEngine(
        order_ledger,
        position_ledger,
        transport,
        notifier=notifier,
        metrics=metrics,
        market_book=market_book,
    )
    engine.register_stream(USER_STREAM, requires_snapshot=True, instruments=["BTCUSDT", "ETHUSDT"])
    engine.register_stream(MARKET_STREAM, requires_snapshot=False)
    return engine


@pytest.fixture
def gateway(order_ledger, position_ledger, engine, transport, notifier, metrics, market_book):
    return CommandGateway(
        order_ledger,
        position_ledger,
        engine,
        transport,
        notifier=notifier,
        metrics=metrics,
        market_book=market_book,
        client_id_prefix="t-",
    )
