"""
Order Ledger - per-order state machine.

Every order known to the session lives here, from PENDING creation by the
command gateway to its terminal status. Terminal orders are retained for
audit, never deleted.

Guarantees:
1. Status transitions follow the state machine in OrderStatus
2. filled_quantity never exceeds requested quantity, never decreases
3. exchange_order_id, once bound, never changes
4. Idempotent event handling: stale sequence / seen fill id = no-op
5. Events for terminal orders are audited, never applied
6. Events for unknown orders raise OrphanEvent

NO ORDER CAN CHANGE OUTSIDE THIS LEDGER.
"""
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set
import threading

from usdm_core.domain.events import EventKind, NormalizedEvent
from usdm_core.domain.models import (
    STATUS_RANK,
    Fill,
    Order,
    OrderStatus,
    SnapshotOrder,
    utc_now,
)
from usdm_core.exceptions import DuplicateClientId, InvariantError, OrphanEvent
from usdm_core.monitoring.logger import get_logger

logger = get_logger(__name__)


def check_invariant(condition: bool, message: str) -> None:
    """Assert a ledger invariant. Raises InvariantError if false."""
    if not condition:
        logger.critical("INVARIANT_VIOLATION", message=message)
        raise InvariantError(message)


class ApplyOutcome(str, Enum):
    """Result of offering an event to the ledger."""
    APPLIED = "applied"
    DUPLICATE = "duplicate"            # seq <= last applied, or fill id seen
    TERMINAL_NOOP = "terminal_noop"    # order already terminal, audited only
    INVALID = "invalid"                # illegal for current status, no change
    ADOPTED = "adopted"                # created from snapshot
    UNCHANGED = "unchanged"            # snapshot agreed with local state


@dataclass(frozen=True)
class ApplyResult:
    """
    Outcome of one ledger mutation attempt.

    ``order`` is a detached copy taken after the attempt; ``fill`` is set
    when a new fill was recorded and must be forwarded to the position ledger.
    """
    outcome: ApplyOutcome
    client_order_id: str
    previous_status: Optional[OrderStatus]
    order: Order
    fill: Optional[Fill] = None
    detail: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.outcome in (ApplyOutcome.APPLIED, ApplyOutcome.ADOPTED)


@dataclass(frozen=True)
class OrderAuditEntry:
    """One line of an order's history: what arrived and what it did."""
    recorded_at: datetime
    cause: str
    sequence: Optional[int]
    outcome: ApplyOutcome
    status_before: Optional[OrderStatus]
    status_after: OrderStatus
    fill_id: Optional[str] = None
    detail: Optional[str] = None


class OrderLedger:
    """
    Single source of truth for all orders of the session.

    Thread-safe; reads return copies so callers never observe a
    half-applied event.
    """

    def __init__(self):
        self._orders: Dict[str, Order] = {}  # client_order_id -> Order
        self._by_exchange_id: Dict[str, str] = {}  # exchange_order_id -> client_order_id
        self._applied_fill_ids: Dict[str, Set[str]] = {}  # client_order_id -> fill ids
        self._fills: Dict[str, List[Fill]] = {}
        self._history: Dict[str, List[OrderAuditEntry]] = {}
        self._lock = threading.RLock()

    # ========== REGISTRATION ==========

    def register(self, order: Order) -> Order:
        """
        Record a new PENDING order created by the command gateway.

        Raises:
            DuplicateClientId if the client order id is already known
        """
        with self._lock:
            if order.client_order_id in self._orders:
                raise DuplicateClientId(f"Client order id already in use: {order.client_order_id}")
            check_invariant(
                order.status == OrderStatus.PENDING,
                f"New order must start PENDING, got {order.status.value}",
            )
            self._orders[order.client_order_id] = order
            self._applied_fill_ids[order.client_order_id] = set()
            self._fills[order.client_order_id] = []
            self._history[order.client_order_id] = []
            self._audit(order, "submit", None, ApplyOutcome.APPLIED, None)
            logger.info(
                "Order registered",
                client_order_id=order.client_order_id,
                instrument=order.instrument,
                side=order.side.value,
                quantity=str(order.quantity),
            )
            return replace(order)

    # ========== READS ==========

    def contains(self, client_order_id: str) -> bool:
        with self._lock:
            return client_order_id in self._orders

    def get(self, client_order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(client_order_id)
            return replace(order) if order else None

    def get_by_exchange_id(self, exchange_order_id: str) -> Optional[Order]:
        with self._lock:
            client_order_id = self._by_exchange_id.get(exchange_order_id)
            return self.get(client_order_id) if client_order_id else None

    def all_orders(self, include_terminal: bool = True) -> List[Order]:
        with self._lock:
            return [
                replace(o) for o in self._orders.values()
                if include_terminal or not o.is_terminal
            ]

    def open_orders(self, instrument: Optional[str] = None) -> List[Order]:
        """Non-terminal orders, optionally for one instrument."""
        with self._lock:
            return [
                replace(o) for o in self._orders.values()
                if not o.is_terminal and (instrument is None or o.instrument == instrument)
            ]

    def history(self, client_order_id: str) -> List[OrderAuditEntry]:
        with self._lock:
            return list(self._history.get(client_order_id, []))

    def fills(self, client_order_id: str) -> List[Fill]:
        with self._lock:
            return list(self._fills.get(client_order_id, []))

    # ========== EVENT APPLICATION ==========

    def _locate(self, client_order_id: Optional[str], exchange_order_id: Optional[str]) -> Optional[Order]:
        """MUST be called under lock."""
        if client_order_id and client_order_id in self._orders:
            return self._orders[client_order_id]
        if exchange_order_id and exchange_order_id in self._by_exchange_id:
            return self._orders[self._by_exchange_id[exchange_order_id]]
        return None

    def apply(self, event: NormalizedEvent) -> ApplyResult:
        """
        Apply an order event.

        IDEMPOTENT: duplicates and events for terminal orders are no-ops.

        Raises:
            OrphanEvent if neither identifier matches a known order
        """
        check_invariant(event.kind.is_order_event, f"Not an order event: {event.kind.value}")
        with self._lock:
            order = self._locate(event.client_order_id, event.exchange_order_id)
            if order is None:
                logger.warning("Order event for unknown order", **event.describe())
                raise OrphanEvent(event.client_order_id, event.exchange_order_id, event.sequence)

            before = order.status
            cause = event.kind.value

            if order.is_terminal:
                logger.debug("Event for terminal order ignored", status=before.value, **event.describe())
                return self._result(order, cause, event, ApplyOutcome.TERMINAL_NOOP, before, "order terminal")

            if order.last_sequence is not None and event.sequence <= order.last_sequence:
                logger.debug("Stale order event ignored", last_sequence=order.last_sequence, **event.describe())
                return self._result(order, cause, event, ApplyOutcome.DUPLICATE, before, "stale sequence")

            if (
                event.exchange_order_id
                and order.exchange_order_id
                and event.exchange_order_id != order.exchange_order_id
            ):
                logger.error(
                    "Exchange order id conflict",
                    bound=order.exchange_order_id,
                    **event.describe(),
                )
                return self._result(order, cause, event, ApplyOutcome.INVALID, before, "exchange id conflict")

            if event.kind == EventKind.ACK:
                return self._handle_ack(order, event, before)
            if event.kind == EventKind.FILL:
                return self._handle_fill(order, event, before)
            if event.kind == EventKind.CANCEL:
                return self._handle_close(order, event, before, OrderStatus.CANCELLED)
            if event.kind == EventKind.EXPIRE:
                return self._handle_close(order, event, before, OrderStatus.EXPIRED)
            if event.kind == EventKind.REJECT:
                return self._handle_reject(order, event, before)
            return self._handle_amend(order, event, before)

    def _bind_exchange_id(self, order: Order, exchange_order_id: Optional[str]) -> None:
        """Bind once. MUST be called under lock."""
        if not exchange_order_id or order.exchange_order_id:
            return
        self._by_exchange_id[exchange_order_id] = order.client_order_id
        order.exchange_order_id = exchange_order_id

    def _implicit_ack(self, order: Order, event: NormalizedEvent) -> None:
        """Event proves the exchange accepted a PENDING order whose ack we missed."""
        self._bind_exchange_id(order, event.exchange_order_id)
        order.status = OrderStatus.OPEN
        logger.info("Order implicitly acknowledged", cause=event.kind.value, **event.describe())

    def _touch(self, order: Order, event: NormalizedEvent) -> None:
        order.last_sequence = event.sequence
        order.updated_at = event.timestamp

    def _handle_ack(self, order: Order, event: NormalizedEvent, before: OrderStatus) -> ApplyResult:
        if order.status != OrderStatus.PENDING:
            return self._result(order, "ACK", event, ApplyOutcome.INVALID, before, f"ack in {before.value}")
        self._bind_exchange_id(order, event.exchange_order_id)
        order.status = OrderStatus.OPEN
        self._touch(order, event)
        logger.info(
            "Order acknowledged",
            client_order_id=order.client_order_id,
            exchange_order_id=order.exchange_order_id,
            seq=event.sequence,
        )
        return self._result(order, "ACK", event, ApplyOutcome.APPLIED, before)

    def _handle_fill(self, order: Order, event: NormalizedEvent, before: OrderStatus) -> ApplyResult:
        if event.fill_id is None or event.quantity is None or event.price is None:
            return self._result(order, "FILL", event, ApplyOutcome.INVALID, before, "fill missing id/qty/price")

        seen = self._applied_fill_ids[order.client_order_id]
        if event.fill_id in seen:
            logger.debug("Duplicate fill ignored", **event.describe())
            return self._result(order, "FILL", event, ApplyOutcome.DUPLICATE, before, "fill id seen")

        # Already counted by a snapshot merge
        if event.cumulative_quantity is not None and event.cumulative_quantity <= order.filled_quantity:
            logger.debug("Fill already reflected in filled quantity", filled=str(order.filled_quantity), **event.describe())
            seen.add(event.fill_id)
            return self._result(order, "FILL", event, ApplyOutcome.DUPLICATE, before, "fill covered by snapshot")

        new_filled = order.filled_quantity + event.quantity
        if new_filled > order.quantity:
            logger.error(
                "Fill would exceed requested quantity",
                requested=str(order.quantity),
                filled=str(order.filled_quantity),
                fill_qty=str(event.quantity),
                **event.describe(),
            )
            return self._result(order, "FILL", event, ApplyOutcome.INVALID, before, "overfill")

        if order.status == OrderStatus.PENDING:
            self._implicit_ack(order, event)

        prior_notional = (order.average_fill_price or Decimal("0")) * order.filled_quantity
        order.average_fill_price = (prior_notional + event.price * event.quantity) / new_filled
        order.filled_quantity = new_filled
        order.status = OrderStatus.FILLED if new_filled == order.quantity else OrderStatus.PARTIALLY_FILLED
        self._touch(order, event)
        seen.add(event.fill_id)

        fill = Fill(
            fill_id=event.fill_id,
            instrument=order.instrument,
            side=order.side,
            quantity=event.quantity,
            price=event.price,
            client_order_id=order.client_order_id,
            exchange_order_id=order.exchange_order_id,
            fee=event.fee or Decimal("0"),
            fee_asset=event.fee_asset,
            sequence=event.sequence,
            timestamp=event.timestamp,
            is_maker=event.is_maker,
        )
        self._fills[order.client_order_id].append(fill)

        if event.status is not None and event.status != order.status:
            logger.warning(
                "STATUS_DRIFT",
                local=order.status.value,
                exchange=event.status.value,
                **event.describe(),
            )

        logger.info(
            "Order fill applied",
            client_order_id=order.client_order_id,
            fill_id=event.fill_id,
            fill_qty=str(event.quantity),
            fill_price=str(event.price),
            filled=str(order.filled_quantity),
            status=order.status.value,
        )
        return self._result(order, "FILL", event, ApplyOutcome.APPLIED, before, fill=fill)

    def _handle_close(
        self,
        order: Order,
        event: NormalizedEvent,
        before: OrderStatus,
        target: OrderStatus,
    ) -> ApplyResult:
        cause = event.kind.value
        if order.status == OrderStatus.PENDING:
            self._implicit_ack(order, event)
        order.status = target
        self._touch(order, event)
        logger.info(
            "Order closed",
            client_order_id=order.client_order_id,
            status=target.value,
            filled=str(order.filled_quantity),
            reason=event.reason,
        )
        return self._result(order, cause, event, ApplyOutcome.APPLIED, before)

    def _handle_reject(self, order: Order, event: NormalizedEvent, before: OrderStatus) -> ApplyResult:
        if order.status != OrderStatus.PENDING:
            return self._result(order, "REJECT", event, ApplyOutcome.INVALID, before, f"reject in {before.value}")
        order.status = OrderStatus.REJECTED
        order.reject_reason = event.reason
        self._touch(order, event)
        logger.warning("Order rejected", client_order_id=order.client_order_id, reason=event.reason)
        return self._result(order, "REJECT", event, ApplyOutcome.APPLIED, before)

    def _handle_amend(self, order: Order, event: NormalizedEvent, before: OrderStatus) -> ApplyResult:
        if not order.status.is_working:
            return self._result(order, "AMEND", event, ApplyOutcome.INVALID, before, f"amend in {before.value}")
        new_quantity = event.quantity if event.quantity is not None else order.quantity
        if new_quantity < order.filled_quantity:
            return self._result(order, "AMEND", event, ApplyOutcome.INVALID, before, "amend below filled")
        order.quantity = new_quantity
        if event.price is not None and event.price > 0:
            order.price = event.price
        if order.filled_quantity == order.quantity:
            order.status = OrderStatus.FILLED
        self._touch(order, event)
        logger.info(
            "Order amended",
            client_order_id=order.client_order_id,
            quantity=str(order.quantity),
            price=str(order.price) if order.price is not None else None,
        )
        return self._result(order, "AMEND", event, ApplyOutcome.APPLIED, before)

    def mark_rejected(self, client_order_id: str, reason: str) -> ApplyResult:
        """
        Synchronous rejection by the transport: PENDING → REJECTED.

        No exchange order id is bound. No-op for any other status (a
        stream event already moved the order on).
        """
        with self._lock:
            order = self._orders.get(client_order_id)
            check_invariant(order is not None, f"mark_rejected for unknown order {client_order_id}")
            before = order.status
            if before != OrderStatus.PENDING:
                return self._result(order, "local_reject", None, ApplyOutcome.INVALID, before, f"reject in {before.value}")
            order.status = OrderStatus.REJECTED
            order.reject_reason = reason
            order.updated_at = utc_now()
            logger.warning("Order rejected by transport", client_order_id=client_order_id, reason=reason)
            return self._result(order, "local_reject", None, ApplyOutcome.APPLIED, before, reason)

    # ========== SNAPSHOT MERGE ==========

    def merge_snapshot_order(self, snap: SnapshotOrder, sequence: int) -> ApplyResult:
        """
        Replace local state with snapshot truth where the local record is stale.

        Orders unknown locally are adopted. Local state that is ahead of the
        snapshot is kept.
        """
        with self._lock:
            order = self._locate(snap.client_order_id, snap.exchange_order_id)
            if order is None:
                order = Order(
                    client_order_id=snap.client_order_id,
                    instrument=snap.instrument,
                    side=snap.side,
                    order_type=snap.order_type,
                    quantity=snap.quantity,
                    price=snap.price,
                    time_in_force=snap.time_in_force,
                    status=snap.status,
                    filled_quantity=snap.filled_quantity,
                    average_fill_price=snap.average_fill_price,
                    last_sequence=sequence,
                )
                self._orders[order.client_order_id] = order
                self._applied_fill_ids[order.client_order_id] = set()
                self._fills[order.client_order_id] = []
                self._history[order.client_order_id] = []
                self._bind_exchange_id(order, snap.exchange_order_id)
                logger.warning(
                    "Order adopted from snapshot",
                    client_order_id=order.client_order_id,
                    exchange_order_id=order.exchange_order_id,
                    status=order.status.value,
                )
                return self._result(order, "snapshot", None, ApplyOutcome.ADOPTED, None)

            before = order.status
            self._bind_exchange_id(order, snap.exchange_order_id)
            stale = (
                snap.filled_quantity > order.filled_quantity
                or STATUS_RANK[snap.status] > STATUS_RANK[order.status]
                or (not order.is_terminal and (snap.quantity != order.quantity or snap.price != order.price))
            )
            ahead = (
                order.filled_quantity > snap.filled_quantity
                or STATUS_RANK[order.status] > STATUS_RANK[snap.status]
            )
            order.last_sequence = sequence

            if not stale or order.is_terminal:
                if ahead:
                    logger.warning(
                        "Local order ahead of snapshot, keeping local",
                        client_order_id=order.client_order_id,
                        local_status=order.status.value,
                        snapshot_status=snap.status.value,
                    )
                return self._result(order, "snapshot", None, ApplyOutcome.UNCHANGED, before)

            check_invariant(
                snap.filled_quantity <= snap.quantity,
                f"Snapshot overfill for {snap.client_order_id}: {snap.filled_quantity} > {snap.quantity}",
            )
            order.quantity = snap.quantity
            order.price = snap.price
            order.filled_quantity = max(order.filled_quantity, snap.filled_quantity)
            if snap.average_fill_price is not None:
                order.average_fill_price = snap.average_fill_price
            if STATUS_RANK[snap.status] >= STATUS_RANK[order.status]:
                order.status = snap.status
            order.updated_at = utc_now()
            logger.info(
                "Order replaced with snapshot truth",
                client_order_id=order.client_order_id,
                status_before=before.value,
                status_after=order.status.value,
                filled=str(order.filled_quantity),
            )
            return self._result(order, "snapshot", None, ApplyOutcome.APPLIED, before)

    def resolve_absent_from_snapshot(
        self,
        present_client_ids: Iterable[str],
        instruments: Iterable[str],
        sequence: int,
        pending_cutoff: Optional[datetime] = None,
        deferred_client_ids: Iterable[str] = (),
    ) -> List[ApplyResult]:
        """
        Close working orders that the snapshot no longer lists as open.

        Orders in ``deferred_client_ids`` have stream events past the snapshot
        marker; they are left as they are and the replay decides their outcome.

        PENDING orders are left alone, their submission may not have reached
        the exchange yet; those created before ``pending_cutoff`` never did and
        are closed as REJECTED. Working orders absent from the snapshot, whose
        outcome the exchange could not report either, are no longer on the
        book; they are closed as CANCELLED (fills, if any, are covered by the
        snapshot's positions).
        """
        present = set(present_client_ids)
        deferred = set(deferred_client_ids)
        scope = set(instruments)
        results = []
        with self._lock:
            for order in self._orders.values():
                if order.client_order_id in present or order.is_terminal:
                    continue
                if scope and order.instrument not in scope:
                    continue
                if order.client_order_id in deferred:
                    logger.info(
                        "Order absent from snapshot, left for replay",
                        client_order_id=order.client_order_id,
                        status=order.status.value,
                    )
                    continue
                order.last_sequence = sequence
                before = order.status
                if before == OrderStatus.PENDING:
                    if pending_cutoff is None or order.created_at >= pending_cutoff:
                        continue
                    order.status = OrderStatus.REJECTED
                    order.reject_reason = "NOT_FOUND_ON_EXCHANGE"
                else:
                    order.status = OrderStatus.CANCELLED
                order.updated_at = utc_now()
                logger.warning(
                    "Order absent from snapshot, closed",
                    status_after=order.status.value,
                    client_order_id=order.client_order_id,
                    status_before=before.value,
                    filled=str(order.filled_quantity),
                )
                results.append(self._result(order, "snapshot", None, ApplyOutcome.APPLIED, before, "absent from snapshot"))
        return results

    # ========== AUDIT ==========

    def _audit(
        self,
        order: Order,
        cause: str,
        event: Optional[NormalizedEvent],
        outcome: ApplyOutcome,
        before: Optional[OrderStatus],
        detail: Optional[str] = None,
    ) -> None:
        self._history[order.client_order_id].append(OrderAuditEntry(
            recorded_at=utc_now(),
            cause=cause,
            sequence=event.sequence if event else None,
            outcome=outcome,
            status_before=before,
            status_after=order.status,
            fill_id=event.fill_id if event else None,
            detail=detail,
        ))

    def _result(
        self,
        order: Order,
        cause: str,
        event: Optional[NormalizedEvent],
        outcome: ApplyOutcome,
        before: Optional[OrderStatus],
        detail: Optional[str] = None,
        fill: Optional[Fill] = None,
    ) -> ApplyResult:
        check_invariant(
            order.filled_quantity <= order.quantity,
            f"filled {order.filled_quantity} exceeds requested {order.quantity} for {order.client_order_id}",
        )
        self._audit(order, cause, event, outcome, before, detail)
        return ApplyResult(
            outcome=outcome,
            client_order_id=order.client_order_id,
            previous_status=before,
            order=replace(order),
            fill=fill,
            detail=detail,
        )
