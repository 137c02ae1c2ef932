"""
Tests for the Order Ledger state machine.

Tests cover:
1. Registration and reads
2. Transitions driven by stream events
3. Idempotent event handling (stale sequence, seen fill id)
4. Terminal orders and invalid transitions
5. Snapshot merge and absent-order resolution
"""
import pytest
from datetime import timedelta
from decimal import Decimal

from usdm_core.domain.events import EventKind
from usdm_core.domain.models import (
    Order,
    OrderIntent,
    OrderStatus,
    OrderType,
    Side,
    SnapshotOrder,
    utc_now,
)
from usdm_core.exceptions import DuplicateClientId, InvariantError, OrphanEvent
from usdm_core.execution.order_ledger import ApplyOutcome, OrderLedger


def _order(client_order_id: str = "C1", quantity: str = "10", order_type=OrderType.MARKET, price=None, instrument="BTCUSDT") -> Order:
    intent = OrderIntent(
        instrument=instrument,
        side=Side.BUY,
        quantity=Decimal(quantity),
        order_type=order_type,
        price=Decimal(price) if price is not None else None,
    )
    return Order.from_intent(client_order_id, intent)


def _snap(client_order_id="C1", filled="0", status=OrderStatus.OPEN, quantity="10", average=None, exchange_order_id="E1", instrument="BTCUSDT"):
    return SnapshotOrder(
        client_order_id=client_order_id,
        exchange_order_id=exchange_order_id,
        instrument=instrument,
        side=Side.BUY,
        order_type=OrderType.MARKET,
        quantity=Decimal(quantity),
        filled_quantity=Decimal(filled),
        status=status,
        average_fill_price=Decimal(average) if average is not None else None,
    )


class TestRegistration:
    """Orders enter the ledger as PENDING through register()."""

    def test_register_creates_pending_order(self):
        ledger = OrderLedger()
        order = ledger.register(_order())

        assert order.status == OrderStatus.PENDING
        assert ledger.contains("C1")
        assert ledger.get("C1").filled_quantity == Decimal("0")
        history = ledger.history("C1")
        assert len(history) == 1
        assert history[0].cause == "submit"

    def test_register_duplicate_client_id_raises(self):
        ledger = OrderLedger()
        ledger.register(_order())

        with pytest.raises(DuplicateClientId):
            ledger.register(_order())

    def test_register_requires_pending(self):
        ledger = OrderLedger()
        order = _order()
        order.status = OrderStatus.OPEN

        with pytest.raises(InvariantError):
            ledger.register(order)

    def test_reads_return_copies(self):
        ledger = OrderLedger()
        ledger.register(_order())

        copy = ledger.get("C1")
        copy.status = OrderStatus.FILLED
        copy.filled_quantity = Decimal("10")

        assert ledger.get("C1").status == OrderStatus.PENDING
        assert ledger.get("C1").filled_quantity == Decimal("0")

    def test_open_orders_filters_by_instrument_and_terminal(self, make_event):
        ledger = OrderLedger()
        ledger.register(_order("C1"))
        ledger.register(_order("C2", instrument="ETHUSDT"))
        ledger.register(_order("C3"))
        ledger.apply(make_event(EventKind.REJECT, 1, "C3", reason="margin"))

        assert [o.client_order_id for o in ledger.open_orders("BTCUSDT")] == ["C1"]
        assert len(ledger.open_orders()) == 2
        assert len(ledger.all_orders()) == 3
        assert len(ledger.all_orders(include_terminal=False)) == 2


class TestTransitions:
    """Event-driven transitions."""

    def setup_method(self):
        self.ledger = OrderLedger()
        self.ledger.register(_order())

    def test_ack_binds_exchange_id(self, make_event):
        result = self.ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.previous_status == OrderStatus.PENDING
        assert result.order.status == OrderStatus.OPEN
        assert result.order.exchange_order_id == "E1"
        assert result.order.last_sequence == 1
        assert self.ledger.get_by_exchange_id("E1").client_order_id == "C1"

    def test_partial_then_full_fill(self, make_event, make_fill):
        self.ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))

        first = self.ledger.apply(make_fill(2, "C1", "F1", "6", "100"))
        assert first.order.status == OrderStatus.PARTIALLY_FILLED
        assert first.fill is not None
        assert first.fill.quantity == Decimal("6")

        second = self.ledger.apply(make_fill(3, "C1", "F2", "4", "101"))
        order = second.order
        assert order.status == OrderStatus.FILLED
        assert order.filled_quantity == Decimal("10")
        assert order.average_fill_price == Decimal("100.4")
        assert [f.fill_id for f in self.ledger.fills("C1")] == ["F1", "F2"]

    def test_fill_located_by_exchange_id(self, make_event, make_fill):
        self.ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))

        result = self.ledger.apply(make_fill(2, None, "F1", "1", "100", exchange_order_id="E1"))

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.client_order_id == "C1"

    def test_fill_on_pending_implicitly_acks(self, make_fill):
        result = self.ledger.apply(make_fill(1, "C1", "F1", "3", "100", exchange_order_id="E1"))

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.order.exchange_order_id == "E1"
        assert result.order.status == OrderStatus.PARTIALLY_FILLED

    def test_cancel_on_pending_implicitly_acks(self, make_event):
        result = self.ledger.apply(make_event(EventKind.CANCEL, 1, exchange_order_id="E1"))

        assert result.order.status == OrderStatus.CANCELLED
        assert result.order.exchange_order_id == "E1"

    def test_expire_keeps_partial_fill(self, make_event, make_fill):
        self.ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))
        self.ledger.apply(make_fill(2, "C1", "F1", "4", "100"))

        result = self.ledger.apply(make_event(EventKind.EXPIRE, 3, reason="EXPIRED"))

        assert result.order.status == OrderStatus.EXPIRED
        assert result.order.filled_quantity == Decimal("4")

    def test_reject_pending(self, make_event):
        result = self.ledger.apply(make_event(EventKind.REJECT, 1, reason="Margin is insufficient"))

        assert result.order.status == OrderStatus.REJECTED
        assert result.order.reject_reason == "Margin is insufficient"
        assert result.order.exchange_order_id is None

    def test_reject_after_ack_is_invalid(self, make_event):
        self.ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))

        result = self.ledger.apply(make_event(EventKind.REJECT, 2))

        assert result.outcome == ApplyOutcome.INVALID
        assert self.ledger.get("C1").status == OrderStatus.OPEN

    def test_second_ack_is_invalid(self, make_event):
        self.ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))

        result = self.ledger.apply(make_event(EventKind.ACK, 2, exchange_order_id="E1"))

        assert result.outcome == ApplyOutcome.INVALID
        assert result.detail == "ack in OPEN"

    def test_exchange_id_conflict_is_invalid(self, make_event, make_fill):
        self.ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))

        result = self.ledger.apply(make_fill(2, "C1", "F1", "1", "100", exchange_order_id="E2"))

        assert result.outcome == ApplyOutcome.INVALID
        assert result.detail == "exchange id conflict"
        assert self.ledger.get("C1").exchange_order_id == "E1"
        assert self.ledger.get("C1").filled_quantity == Decimal("0")

    def test_unknown_order_raises_orphan(self, make_event):
        with pytest.raises(OrphanEvent) as exc_info:
            self.ledger.apply(make_event(EventKind.ACK, 1, "C9", exchange_order_id="E9"))

        assert exc_info.value.client_order_id == "C9"

    def test_non_order_event_rejected(self, make_event):
        with pytest.raises(InvariantError):
            self.ledger.apply(make_event(EventKind.MARK_PRICE, 1, price=Decimal("100")))


class TestIdempotence:
    """Duplicates and replays never change an order twice."""

    def setup_method(self):
        self.ledger = OrderLedger()
        self.ledger.register(_order())

    def test_stale_sequence_is_duplicate(self, make_event, make_fill):
        self.ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))
        self.ledger.apply(make_fill(2, "C1", "F1", "6", "100"))

        result = self.ledger.apply(make_fill(2, "C1", "F1", "6", "100"))

        assert result.outcome == ApplyOutcome.DUPLICATE
        assert result.detail == "stale sequence"
        assert self.ledger.get("C1").filled_quantity == Decimal("6")

    def test_seen_fill_id_is_duplicate(self, make_event, make_fill):
        self.ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))
        self.ledger.apply(make_fill(2, "C1", "F1", "6", "100"))

        result = self.ledger.apply(make_fill(3, "C1", "F1", "6", "100"))

        assert result.outcome == ApplyOutcome.DUPLICATE
        assert result.detail == "fill id seen"
        assert result.fill is None
        assert self.ledger.get("C1").filled_quantity == Decimal("6")

    def test_fill_covered_by_cumulative_quantity(self, make_fill):
        self.ledger.merge_snapshot_order(_snap(filled="6", status=OrderStatus.PARTIALLY_FILLED, average="100"), 4)

        covered = self.ledger.apply(make_fill(5, "C1", "F1", "6", "100", cumulative_quantity=Decimal("6")))
        assert covered.outcome == ApplyOutcome.DUPLICATE
        assert covered.detail == "fill covered by snapshot"

        result = self.ledger.apply(make_fill(6, "C1", "F2", "4", "101", cumulative_quantity=Decimal("10")))
        assert result.outcome == ApplyOutcome.APPLIED
        assert result.order.filled_quantity == Decimal("10")

    def test_overfill_is_invalid_and_changes_nothing(self, make_event, make_fill):
        self.ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))
        self.ledger.apply(make_fill(2, "C1", "F1", "8", "100"))

        result = self.ledger.apply(make_fill(3, "C1", "F2", "5", "100"))

        assert result.outcome == ApplyOutcome.INVALID
        assert result.detail == "overfill"
        order = self.ledger.get("C1")
        assert order.filled_quantity == Decimal("8")
        assert order.status == OrderStatus.PARTIALLY_FILLED

    def test_events_for_terminal_order_are_noops(self, make_event, make_fill):
        self.ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))
        self.ledger.apply(make_fill(2, "C1", "F1", "10", "100"))

        result = self.ledger.apply(make_event(EventKind.CANCEL, 3))

        assert result.outcome == ApplyOutcome.TERMINAL_NOOP
        assert self.ledger.get("C1").status == OrderStatus.FILLED
        assert self.ledger.history("C1")[-1].outcome == ApplyOutcome.TERMINAL_NOOP

    def test_filled_quantity_never_decreases(self, make_event, make_fill):
        events = [
            make_event(EventKind.ACK, 1, exchange_order_id="E1"),
            make_fill(2, "C1", "F1", "2", "100"),
            make_fill(2, "C1", "F1", "2", "100"),
            make_fill(4, "C1", "F3", "3", "100"),
            make_fill(3, "C1", "F2", "1", "100"),
            make_fill(5, "C1", "F4", "9", "100"),
            make_fill(6, "C1", "F5", "5", "100"),
        ]
        observed = []
        for event in events:
            self.ledger.apply(event)
            observed.append(self.ledger.get("C1").filled_quantity)

        assert observed == sorted(observed)
        assert all(q <= Decimal("10") for q in observed)
        assert observed[-1] == Decimal("10")


class TestAmend:
    """Quantity and price changes reported by the exchange."""

    def setup_method(self):
        self.ledger = OrderLedger()
        self.ledger.register(_order(order_type=OrderType.LIMIT, price="100"))

    def test_amend_updates_quantity_and_price(self, make_event):
        self.ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))

        result = self.ledger.apply(make_event(EventKind.AMEND, 2, quantity=Decimal("12"), price=Decimal("99.5")))

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.order.quantity == Decimal("12")
        assert result.order.price == Decimal("99.5")

    def test_amend_down_to_filled_completes_order(self, make_event, make_fill):
        self.ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))
        self.ledger.apply(make_fill(2, "C1", "F1", "4", "100"))

        result = self.ledger.apply(make_event(EventKind.AMEND, 3, quantity=Decimal("4")))

        assert result.order.status == OrderStatus.FILLED

    def test_amend_below_filled_is_invalid(self, make_event, make_fill):
        self.ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))
        self.ledger.apply(make_fill(2, "C1", "F1", "4", "100"))

        result = self.ledger.apply(make_event(EventKind.AMEND, 3, quantity=Decimal("3")))

        assert result.outcome == ApplyOutcome.INVALID
        assert self.ledger.get("C1").quantity == Decimal("10")

    def test_amend_on_pending_is_invalid(self, make_event):
        result = self.ledger.apply(make_event(EventKind.AMEND, 1, quantity=Decimal("12")))

        assert result.outcome == ApplyOutcome.INVALID


class TestLocalReject:

    def test_mark_rejected_pending(self):
        ledger = OrderLedger()
        ledger.register(_order())

        result = ledger.mark_rejected("C1", "Price less than min")

        assert result.changed
        assert result.order.status == OrderStatus.REJECTED
        assert result.order.reject_reason == "Price less than min"

    def test_mark_rejected_after_ack_is_noop(self, make_event):
        ledger = OrderLedger()
        ledger.register(_order())
        ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))

        result = ledger.mark_rejected("C1", "late")

        assert result.outcome == ApplyOutcome.INVALID
        assert ledger.get("C1").status == OrderStatus.OPEN


class TestSnapshotMerge:
    """Snapshot truth replaces stale local state."""

    def test_unknown_order_is_adopted(self):
        ledger = OrderLedger()

        result = ledger.merge_snapshot_order(_snap("X1", filled="2", status=OrderStatus.PARTIALLY_FILLED, average="100"), 7)

        assert result.outcome == ApplyOutcome.ADOPTED
        order = ledger.get("X1")
        assert order.status == OrderStatus.PARTIALLY_FILLED
        assert order.exchange_order_id == "E1"
        assert order.last_sequence == 7
        assert ledger.get_by_exchange_id("E1").client_order_id == "X1"

    def test_stale_local_order_is_replaced(self):
        ledger = OrderLedger()
        ledger.register(_order())

        result = ledger.merge_snapshot_order(_snap(filled="6", status=OrderStatus.PARTIALLY_FILLED, average="100"), 4)

        assert result.outcome == ApplyOutcome.APPLIED
        order = ledger.get("C1")
        assert order.status == OrderStatus.PARTIALLY_FILLED
        assert order.filled_quantity == Decimal("6")
        assert order.average_fill_price == Decimal("100")
        assert order.exchange_order_id == "E1"
        assert order.last_sequence == 4

    def test_local_ahead_of_snapshot_is_kept(self, make_event, make_fill):
        ledger = OrderLedger()
        ledger.register(_order())
        ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))
        ledger.apply(make_fill(2, "C1", "F1", "6", "100"))

        result = ledger.merge_snapshot_order(_snap(filled="0", status=OrderStatus.OPEN), 3)

        assert result.outcome == ApplyOutcome.UNCHANGED
        assert ledger.get("C1").filled_quantity == Decimal("6")

    def test_absent_working_order_is_cancelled(self, make_event):
        ledger = OrderLedger()
        ledger.register(_order())
        ledger.apply(make_event(EventKind.ACK, 1, exchange_order_id="E1"))

        results = ledger.resolve_absent_from_snapshot([], [], 5)

        assert [r.order.status for r in results] == [OrderStatus.CANCELLED]
        assert ledger.get("C1").last_sequence == 5

    def test_absent_pending_order_within_grace_is_kept(self):
        ledger = OrderLedger()
        order = ledger.register(_order())

        results = ledger.resolve_absent_from_snapshot([], [], 5, pending_cutoff=order.created_at - timedelta(seconds=60))

        assert results == []
        assert ledger.get("C1").status == OrderStatus.PENDING

    def test_absent_pending_order_past_grace_is_rejected(self):
        ledger = OrderLedger()
        ledger.register(_order())

        results = ledger.resolve_absent_from_snapshot([], [], 5, pending_cutoff=utc_now() + timedelta(seconds=1))

        assert len(results) == 1
        order = ledger.get("C1")
        assert order.status == OrderStatus.REJECTED
        assert order.reject_reason == "NOT_FOUND_ON_EXCHANGE"

    def test_absent_resolution_respects_instrument_scope(self, make_event):
        ledger = OrderLedger()
        ledger.register(_order("C1"))
        ledger.register(_order("C2", instrument="ETHUSDT"))
        ledger.apply(make_event(EventKind.ACK, 1, "C1", exchange_order_id="E1"))
        ledger.apply(make_event(EventKind.ACK, 2, "C2", exchange_order_id="E2", instrument="ETHUSDT"))

        results = ledger.resolve_absent_from_snapshot([], ["ETHUSDT"], 5)

        assert [r.client_order_id for r in results] == ["C2"]
        assert ledger.get("C1").status == OrderStatus.OPEN
