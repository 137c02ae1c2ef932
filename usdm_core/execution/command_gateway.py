"""
Command Gateway - Single Command Entry Point.

CRITICAL: All strategy commands MUST flow through this gateway.

This ensures:
1. Every order gets a fresh, unique client order id
2. Commands are checked against current ledger state (no cancel of a filled order)
3. No command is sent for an instrument whose stream is under reconciliation
4. Network calls happen outside the ledger write path

The gateway never changes order status on its own account except for a
synchronous transport rejection; everything else re-enters as stream
events.
"""
from decimal import Decimal
from typing import AsyncIterator, Dict, List, Optional
import asyncio
import uuid

from usdm_core.data.orderbook import MarketBook
from usdm_core.domain.events import ChangeNotification, OrderChanged
from usdm_core.domain.models import Order, OrderIntent, OrderType, Position, SubmitResult
from usdm_core.domain.protocols import ChangeListener, Transport
from usdm_core.exceptions import (
    DuplicateClientId,
    InvalidTransition,
    OrderNotFound,
    StreamDegraded,
    TransportFailure,
)
from usdm_core.execution.notifier import ChangeNotifier
from usdm_core.execution.order_ledger import OrderLedger
from usdm_core.execution.position_ledger import PositionLedger
from usdm_core.monitoring.logger import get_logger
from usdm_core.monitoring.metrics import MetricsCollector
from usdm_core.reconciliation.cursor import StreamHealth
from usdm_core.reconciliation.engine import ReconciliationEngine

logger = get_logger(__name__)

# Binance accepts up to 36 chars matching ^[.A-Z:/a-z0-9_-]{1,36}$
MAX_CLIENT_ORDER_ID_LENGTH = 36


class CommandGateway:
    """
    Strategy-facing API: submit, cancel, amend, reads and subscriptions.

    Safe for concurrent callers: client order id generation and record
    creation are serialized, transport calls are not.
    """

    def __init__(
        self,
        order_ledger: OrderLedger,
        position_ledger: PositionLedger,
        engine: ReconciliationEngine,
        transport: Transport,
        *,
        notifier: Optional[ChangeNotifier] = None,
        metrics: Optional[MetricsCollector] = None,
        market_book: Optional[MarketBook] = None,
        client_id_prefix: str = "",
    ):
        if len(client_id_prefix) > MAX_CLIENT_ORDER_ID_LENGTH - 16:
            raise ValueError(f"client_id_prefix too long: {client_id_prefix!r}")
        self.order_ledger = order_ledger
        self.position_ledger = position_ledger
        self.engine = engine
        self.transport = transport
        self.notifier = notifier or engine.notifier
        self.metrics = metrics or engine.metrics
        self.market_book = market_book or engine.market_book
        self.client_id_prefix = client_id_prefix
        self._create_lock = asyncio.Lock()

    # ========== COMMANDS ==========

    def new_client_order_id(self) -> str:
        return f"{self.client_id_prefix}{uuid.uuid4().hex}"[:MAX_CLIENT_ORDER_ID_LENGTH]

    def _check_stream(self, instrument: str, command: str) -> None:
        """
        Raises:
            StreamDegraded if the instrument's stream is not HEALTHY
        """
        stream_id = self.engine.stream_for(instrument)
        if stream_id is None:
            return
        health = self.engine.health(stream_id)
        if health != StreamHealth.HEALTHY:
            self.metrics.increment("commands_refused_degraded")
            logger.warning("Command refused, stream degraded", command=command, instrument=instrument, stream_id=stream_id, health=health.value)
            raise StreamDegraded(instrument, stream_id, health.value)

    def _require_order(self, client_order_id: str) -> Order:
        order = self.order_ledger.get(client_order_id)
        if order is None:
            raise OrderNotFound(f"Unknown client order id: {client_order_id}")
        return order

    async def submit(self, intent: OrderIntent, client_order_id: Optional[str] = None) -> Order:
        """
        Create a PENDING order and forward it to the transport.

        Args:
            intent: What to trade
            client_order_id: Caller-chosen id; generated when omitted

        Returns:
            Copy of the order after the transport answered: PENDING when
            accepted (awaiting ack), REJECTED when refused synchronously

        Raises:
            StreamDegraded: instrument's stream under reconciliation
            DuplicateClientId: id already known to the ledger
            TransportFailure: transport call failed; the order stays PENDING
                until an event or a resync resolves it
        """
        async with self._create_lock:
            self._check_stream(intent.instrument, "submit")
            client_order_id = client_order_id or self.new_client_order_id()
            if self.order_ledger.contains(client_order_id):
                self.metrics.increment("duplicate_client_ids")
                raise DuplicateClientId(f"Client order id already in use: {client_order_id}")
            order = self.order_ledger.register(Order.from_intent(client_order_id, intent))

        self.metrics.increment("orders_submitted")
        self.notifier.publish(OrderChanged(order=order, previous_status=None, cause="submit"))

        try:
            result = await self.transport.submit_order(order)
        except TransportFailure as e:
            self.metrics.increment("transport_failures")
            logger.error("Order submit failed in transport", client_order_id=client_order_id, error=str(e))
            raise

        if not result.accepted:
            self.metrics.increment("orders_rejected")
            rejected = self.order_ledger.mark_rejected(client_order_id, result.reject_reason or "REJECTED")
            if rejected.changed:
                self.notifier.publish(OrderChanged(
                    order=rejected.order,
                    previous_status=rejected.previous_status,
                    cause="local_reject",
                ))
            return rejected.order

        logger.info(
            "Order submitted",
            client_order_id=client_order_id,
            exchange_order_id=result.exchange_order_id,
            instrument=intent.instrument,
        )
        return self.order_ledger.get(client_order_id)

    async def cancel(self, client_order_id: str) -> Order:
        """
        Request cancellation of a working order.

        The order moves to CANCELLED only when the exchange confirms.

        Raises:
            OrderNotFound, StreamDegraded, InvalidTransition, TransportFailure
        """
        order = self._require_order(client_order_id)
        self._check_stream(order.instrument, "cancel")
        if not order.status.is_working:
            self.metrics.increment("invalid_commands")
            raise InvalidTransition(client_order_id, order.status.value, "cancel")

        try:
            await self.transport.cancel_order(order)
        except TransportFailure as e:
            self.metrics.increment("transport_failures")
            logger.error("Order cancel failed in transport", client_order_id=client_order_id, error=str(e))
            raise

        self.metrics.increment("cancels_requested")
        logger.info("Cancel requested", client_order_id=client_order_id, exchange_order_id=order.exchange_order_id)
        return self.order_ledger.get(client_order_id)

    async def amend(
        self,
        client_order_id: str,
        quantity: Optional[Decimal] = None,
        price: Optional[Decimal] = None,
    ) -> SubmitResult:
        """
        Request a quantity/price change on a working LIMIT order.

        The ledger picks up the change from the AMEND event.

        Raises:
            OrderNotFound, StreamDegraded, InvalidTransition, TransportFailure
            ValueError: nothing to amend, or invalid values
        """
        if quantity is None and price is None:
            raise ValueError("amend requires quantity or price")
        order = self._require_order(client_order_id)
        self._check_stream(order.instrument, "amend")
        if not order.status.is_working or order.order_type != OrderType.LIMIT:
            self.metrics.increment("invalid_commands")
            raise InvalidTransition(client_order_id, order.status.value, "amend")
        if quantity is not None and quantity <= order.filled_quantity:
            raise ValueError(f"Amended quantity {quantity} must exceed filled {order.filled_quantity}")
        if price is not None and price <= 0:
            raise ValueError(f"Amended price must be positive: {price}")

        try:
            result = await self.transport.amend_order(order, quantity, price)
        except TransportFailure as e:
            self.metrics.increment("transport_failures")
            logger.error("Order amend failed in transport", client_order_id=client_order_id, error=str(e))
            raise

        if not result.accepted:
            self.metrics.increment("amends_rejected")
            logger.warning("Amend rejected", client_order_id=client_order_id, reason=result.reject_reason)
        else:
            self.metrics.increment("amends_requested")
        return result

    # ========== READS ==========

    def get_order(self, client_order_id: str) -> Optional[Order]:
        return self.order_ledger.get(client_order_id)

    def get_open_orders(self, instrument: Optional[str] = None) -> List[Order]:
        return self.order_ledger.open_orders(instrument)

    def get_position(self, instrument: str) -> Optional[Position]:
        return self.position_ledger.get_position(instrument)

    def unrealized_pnl(self, instrument: str, mark_price: Optional[Decimal] = None) -> Optional[Decimal]:
        """Unrealized P&L at ``mark_price`` or the last mark seen on the market stream."""
        if mark_price is None:
            mark_price = self.market_book.get_mark_price(instrument)
            if mark_price is None:
                return None
        return self.position_ledger.unrealized_pnl(instrument, mark_price)

    # ========== SUBSCRIPTIONS ==========

    def subscribe(self, callback: ChangeListener) -> None:
        self.notifier.subscribe(callback)

    def unsubscribe(self, callback: ChangeListener) -> None:
        self.notifier.unsubscribe(callback)

    def changes(self) -> AsyncIterator[ChangeNotification]:
        return self.notifier.changes()

    def get_metrics(self) -> Dict[str, int]:
        return self.metrics.snapshot()
