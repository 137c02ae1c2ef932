"""
Domain models for the order/position state core.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes; all prices and quantities
are Decimal.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Side(str, Enum):
    """Order side."""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def sign(self) -> int:
        return 1 if self is Side.BUY else -1


class OrderType(str, Enum):
    """Order type."""
    LIMIT = "LIMIT"
    MARKET = "MARKET"


class TimeInForce(str, Enum):
    """Time in force, exchange codes."""
    GTC = "GTC"  # Good until cancel
    GTD = "GTD"  # Good until date
    GTX = "GTX"  # Good till crossing (post only)
    FOK = "FOK"  # Fill or kill
    IOC = "IOC"  # Immediate or cancel


class OrderStatus(str, Enum):
    """
    Order lifecycle states.

    State Machine:
        PENDING → OPEN (ack, binds exchange order id)
        PENDING → REJECTED
        OPEN/PARTIALLY_FILLED → PARTIALLY_FILLED (fill, filled < requested)
        OPEN/PARTIALLY_FILLED → FILLED (fill, filled == requested)
        OPEN/PARTIALLY_FILLED → CANCELLED
        OPEN/PARTIALLY_FILLED → EXPIRED

    Terminal States: FILLED, CANCELLED, REJECTED, EXPIRED
    """
    PENDING = "PENDING"
    OPEN = "OPEN"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_working(self) -> bool:
        """Open on the book and cancellable."""
        return self in (OrderStatus.OPEN, OrderStatus.PARTIALLY_FILLED)


TERMINAL_STATUSES = frozenset({
    OrderStatus.FILLED,
    OrderStatus.CANCELLED,
    OrderStatus.REJECTED,
    OrderStatus.EXPIRED,
})

# Progress rank used when deciding whether a snapshot is ahead of local state.
STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.OPEN: 1,
    OrderStatus.PARTIALLY_FILLED: 2,
    OrderStatus.FILLED: 3,
    OrderStatus.CANCELLED: 3,
    OrderStatus.REJECTED: 3,
    OrderStatus.EXPIRED: 3,
}


@dataclass(frozen=True)
class OrderIntent:
    """
    Strategy's request to place an order, before a client order id exists.
    """
    instrument: str  # Exchange symbol, e.g. "BTCUSDT"
    side: Side
    quantity: Decimal
    order_type: OrderType = OrderType.MARKET
    price: Optional[Decimal] = None
    time_in_force: Optional[TimeInForce] = None
    good_till_date: Optional[int] = None  # epoch ms, GTD only
    reduce_only: bool = False

    def __post_init__(self):
        if self.quantity <= 0:
            raise ValueError(f"Order quantity must be positive: {self.quantity}")
        if self.order_type == OrderType.LIMIT:
            if self.price is None or self.price <= 0:
                raise ValueError("LIMIT order requires a positive price")
        elif self.price is not None:
            raise ValueError("MARKET order must not carry a price")
        if (self.time_in_force == TimeInForce.GTD) != (self.good_till_date is not None):
            raise ValueError("Unmatched time_in_force and good_till_date")


@dataclass
class Order:
    """
    Local record of an order.

    Identity is the client order id; the exchange order id is bound once on
    acknowledgement and never changes afterwards.
    """
    client_order_id: str
    instrument: str
    side: Side
    order_type: OrderType
    quantity: Decimal  # Requested quantity
    price: Optional[Decimal] = None
    time_in_force: Optional[TimeInForce] = None
    good_till_date: Optional[int] = None
    reduce_only: bool = False

    exchange_order_id: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    filled_quantity: Decimal = Decimal("0")
    average_fill_price: Optional[Decimal] = None
    last_sequence: Optional[int] = None
    reject_reason: Optional[str] = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_intent(cls, client_order_id: str, intent: OrderIntent) -> "Order":
        return cls(
            client_order_id=client_order_id,
            instrument=intent.instrument,
            side=intent.side,
            order_type=intent.order_type,
            quantity=intent.quantity,
            price=intent.price,
            time_in_force=intent.time_in_force,
            good_till_date=intent.good_till_date,
            reduce_only=intent.reduce_only,
        )

    @property
    def remaining_quantity(self) -> Decimal:
        return self.quantity - self.filled_quantity

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict:
        """Serialize for logging and notifications."""
        return {
            "client_order_id": self.client_order_id,
            "exchange_order_id": self.exchange_order_id,
            "instrument": self.instrument,
            "side": self.side.value,
            "order_type": self.order_type.value,
            "quantity": str(self.quantity),
            "price": str(self.price) if self.price is not None else None,
            "status": self.status.value,
            "filled_quantity": str(self.filled_quantity),
            "average_fill_price": str(self.average_fill_price) if self.average_fill_price is not None else None,
            "last_sequence": self.last_sequence,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class Fill:
    """
    Immutable execution record. ``fill_id`` is the deduplication key.
    """
    fill_id: str
    instrument: str
    side: Side
    quantity: Decimal
    price: Decimal
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[str] = None
    fee: Decimal = Decimal("0")
    fee_asset: Optional[str] = None
    sequence: Optional[int] = None
    timestamp: datetime = field(default_factory=utc_now)
    is_maker: bool = False

    def __post_init__(self):
        if self.quantity <= 0:
            raise ValueError(f"Fill quantity must be positive: {self.quantity}")
        if self.price <= 0:
            raise ValueError(f"Fill price must be positive: {self.price}")

    @property
    def signed_quantity(self) -> Decimal:
        return self.quantity * self.side.sign


@dataclass
class Position:
    """
    Net position for one instrument, derived from confirmed fills only.
    """
    instrument: str
    net_quantity: Decimal = Decimal("0")  # Signed: + long, - short
    average_entry_price: Optional[Decimal] = None
    realized_pnl: Decimal = Decimal("0")  # Gross of fees and funding
    fees_paid: Decimal = Decimal("0")
    funding: Decimal = Decimal("0")  # + received, - paid
    last_sequence: Optional[int] = None
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_flat(self) -> bool:
        return self.net_quantity == 0

    @property
    def net_realized_pnl(self) -> Decimal:
        return self.realized_pnl - self.fees_paid + self.funding

    def to_dict(self) -> dict:
        return {
            "instrument": self.instrument,
            "net_quantity": str(self.net_quantity),
            "average_entry_price": str(self.average_entry_price) if self.average_entry_price is not None else None,
            "realized_pnl": str(self.realized_pnl),
            "fees_paid": str(self.fees_paid),
            "funding": str(self.funding),
            "last_sequence": self.last_sequence,
        }


# ============ EXCHANGE SNAPSHOT (resync input) ============

@dataclass(frozen=True)
class SnapshotOrder:
    """Exchange truth for one order at snapshot time."""
    client_order_id: str
    exchange_order_id: Optional[str]
    instrument: str
    side: Side
    order_type: OrderType
    quantity: Decimal
    filled_quantity: Decimal
    status: OrderStatus
    price: Optional[Decimal] = None
    average_fill_price: Optional[Decimal] = None
    time_in_force: Optional[TimeInForce] = None


@dataclass(frozen=True)
class SnapshotPosition:
    """Exchange truth for one position at snapshot time."""
    instrument: str
    net_quantity: Decimal
    average_entry_price: Optional[Decimal] = None
    updated_at: Optional[datetime] = None  # Exchange time of the last change to this position


@dataclass(frozen=True)
class ExchangeSnapshot:
    """
    Full-state refetch used to recover from lost incremental updates.

    ``sequence`` is the stream sequence the snapshot is consistent with.
    ``fills`` is optional; when present positions are rebuilt by replay.

    ``recent_fills`` are trades fetched after the positions. A trade at or
    before its position's ``updated_at`` (``taken_at`` when the position is
    not reported) is already inside the reported quantity; a later one is
    applied on top. Either way its fill id counts as applied, so the same
    fill replayed from the stream buffer is not counted again.
    """
    sequence: int
    orders: Tuple[SnapshotOrder, ...] = ()
    positions: Tuple[SnapshotPosition, ...] = ()
    fills: Optional[Tuple[Fill, ...]] = None
    recent_fills: Tuple[Fill, ...] = ()
    taken_at: datetime = field(default_factory=utc_now)

    def instruments(self) -> List[str]:
        seen = {o.instrument for o in self.orders} | {p.instrument for p in self.positions}
        if self.fills:
            seen |= {f.instrument for f in self.fills}
        return sorted(seen)


@dataclass(frozen=True)
class SubmitResult:
    """
    Transport answer to a submit/amend call.

    ``accepted`` means acceptance-pending-confirmation: the ledger still
    waits for the ack event.
    """
    accepted: bool
    exchange_order_id: Optional[str] = None
    reject_reason: Optional[str] = None
