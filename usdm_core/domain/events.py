"""
Event schemas for the state core.

Defines the raw transport envelope, the closed set of normalized event
kinds produced by the normalizer, and the change notifications pushed to
strategy subscribers.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple, Union

from usdm_core.domain.models import OrderStatus, Order, Position, Side, utc_now


USER_STREAM = "user"
MARKET_STREAM = "market"


class EventKind(str, Enum):
    """Closed set of normalized event kinds."""
    ACK = "ACK"
    FILL = "FILL"
    CANCEL = "CANCEL"
    REJECT = "REJECT"
    EXPIRE = "EXPIRE"
    AMEND = "AMEND"
    ACCOUNT_UPDATE = "ACCOUNT_UPDATE"
    STREAM_RESET = "STREAM_RESET"
    MARK_PRICE = "MARK_PRICE"
    BOOK_TICKER = "BOOK_TICKER"

    @property
    def is_order_event(self) -> bool:
        return self in ORDER_EVENT_KINDS


ORDER_EVENT_KINDS = frozenset({
    EventKind.ACK,
    EventKind.FILL,
    EventKind.CANCEL,
    EventKind.REJECT,
    EventKind.EXPIRE,
    EventKind.AMEND,
})


@dataclass(frozen=True)
class RawMessage:
    """
    One message as delivered by the transport.

    The transport stamps ``sequence`` per stream: contiguous from 1 and
    never restarted, a reconnect is announced with a stream reset message.
    """
    stream_id: str
    sequence: int
    payload: Union[dict, str, bytes]
    received_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class PositionReport:
    """Position amount as reported by an account update."""
    instrument: str
    net_quantity: Decimal
    entry_price: Optional[Decimal] = None


@dataclass(frozen=True)
class NormalizedEvent:
    """
    Canonical event consumed by the ledgers.

    ``sequence`` and identifiers are carried verbatim from the exchange feed.
    For FILL events ``quantity``/``price`` are the last executed quantity and
    price; ``order_quantity``/``order_price`` echo the order's current
    requested quantity and limit price, ``cumulative_quantity`` its filled
    quantity including this event.
    """
    stream_id: str
    sequence: int
    kind: EventKind
    instrument: str
    timestamp: datetime
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[str] = None
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None
    fill_id: Optional[str] = None
    status: Optional[OrderStatus] = None

    side: Optional[Side] = None
    order_quantity: Optional[Decimal] = None
    order_price: Optional[Decimal] = None
    cumulative_quantity: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    fee_asset: Optional[str] = None
    realized_pnl: Optional[Decimal] = None
    is_maker: bool = False
    reason: Optional[str] = None
    positions: Tuple[PositionReport, ...] = ()

    def describe(self) -> dict:
        """Compact dict for structured log fields."""
        return {
            "stream_id": self.stream_id,
            "seq": self.sequence,
            "kind": self.kind.value,
            "instrument": self.instrument,
            "client_order_id": self.client_order_id,
            "exchange_order_id": self.exchange_order_id,
            "fill_id": self.fill_id,
        }


# ============ CHANGE NOTIFICATIONS ============

@dataclass(frozen=True)
class OrderChanged:
    """Pushed after an order record changes. ``order`` is a detached copy."""
    order: Order
    previous_status: Optional[OrderStatus]
    cause: str  # event kind, "submit", "snapshot" or "local_reject"
    sequence: Optional[int] = None


@dataclass(frozen=True)
class PositionChanged:
    """Pushed after a position changes. ``position`` is a detached copy."""
    position: Position
    cause: str  # "fill", "funding", "snapshot", "replay"
    fill_id: Optional[str] = None


@dataclass(frozen=True)
class StreamHealthChanged:
    """Pushed when a stream enters or leaves reconciliation."""
    stream_id: str
    health: str
    reason: Optional[str] = None


ChangeNotification = Union[OrderChanged, PositionChanged, StreamHealthChanged]
