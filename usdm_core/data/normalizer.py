"""
Event Normalizer.

Maps raw exchange messages into the closed set of ``NormalizedEvent``
kinds. One raw message yields zero or one event. Malformed or unknown
messages are dropped with a reported decode failure and never reach the
ledgers.

Normalization is deterministic: the transport's sequence number and every
exchange identifier are carried verbatim; the only conversion applied to
timestamps is epoch milliseconds → UTC datetime.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
import json

from usdm_core.domain.events import (
    EventKind,
    NormalizedEvent,
    PositionReport,
    RawMessage,
)
from usdm_core.domain.models import OrderStatus, Side
from usdm_core.exceptions import DecodeFailure
from usdm_core.monitoring.logger import get_logger
from usdm_core.monitoring.metrics import MetricsCollector

logger = get_logger(__name__)


def _ms_to_datetime(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError) as e:
        raise DecodeFailure(f"Invalid epoch-ms timestamp: {value!r}") from e


def _decimal(value: Any, field_name: str) -> Decimal:
    """Parse an exchange numeric string to Decimal without going through float."""
    if value is None or isinstance(value, bool):
        raise DecodeFailure(f"Missing numeric field '{field_name}'")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise DecodeFailure(f"Invalid decimal for '{field_name}': {value!r}") from e
    if not result.is_finite():
        raise DecodeFailure(f"Non-finite decimal for '{field_name}': {value!r}")
    return result


def _require(payload: Dict[str, Any], key: str) -> Any:
    if key not in payload or payload[key] is None:
        raise DecodeFailure(f"Missing field '{key}'")
    return payload[key]


class Normalizer(ABC):
    """
    Capability-set interface: one implementation per exchange.

    Subclasses implement ``decode``; this base handles payload parsing and
    decode-failure reporting so no exchange adapter can crash the pipeline.
    """

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.metrics = metrics or MetricsCollector()

    def normalize(self, raw: RawMessage) -> Optional[NormalizedEvent]:
        """Return the normalized event, or None when the message yields nothing."""
        try:
            return self.decode_raw(raw)
        except DecodeFailure as e:
            self.report_failure(raw, e)
            return None

    def decode_raw(self, raw: RawMessage) -> Optional[NormalizedEvent]:
        """
        Like ``normalize`` but lets the caller see why a message was dropped.

        Returns:
            None for recognised message types that carry nothing to apply

        Raises:
            DecodeFailure for malformed or unknown messages, tagged with the
            message's stream id and sequence
        """
        try:
            payload = self._parse_payload(raw.payload)
            return self.decode(raw.stream_id, raw.sequence, payload)
        except DecodeFailure as e:
            e.stream_id = raw.stream_id
            e.sequence = raw.sequence
            raise

    def report_failure(self, raw: RawMessage, error: DecodeFailure) -> None:
        self.metrics.record_decode_failure(str(error), stream_id=raw.stream_id)
        logger.debug("Raw message dropped", stream_id=raw.stream_id, seq=raw.sequence, error=str(error))

    @staticmethod
    def _parse_payload(payload: Any) -> Dict[str, Any]:
        if isinstance(payload, (bytes, bytearray)):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError as e:
                raise DecodeFailure("Payload is not valid UTF-8") from e
        if isinstance(payload, str):
            try:
                # parse_float keeps exchange numerics exact
                payload = json.loads(payload, parse_float=Decimal)
            except json.JSONDecodeError as e:
                raise DecodeFailure(f"Invalid JSON: {e.msg}") from e
        if not isinstance(payload, dict):
            raise DecodeFailure(f"Payload must be an object, got {type(payload).__name__}")
        # Combined-stream envelope: {"stream": "...", "data": {...}}
        if "data" in payload and "stream" in payload and isinstance(payload["data"], dict):
            payload = payload["data"]
        return payload

    @abstractmethod
    def decode(self, stream_id: str, sequence: int, payload: Dict[str, Any]) -> Optional[NormalizedEvent]:
        """Map one parsed payload. Raise DecodeFailure for malformed input."""


# Binance order status → ledger status
BINANCE_ORDER_STATUS = {
    "NEW": OrderStatus.OPEN,
    "PARTIALLY_FILLED": OrderStatus.PARTIALLY_FILLED,
    "FILLED": OrderStatus.FILLED,
    "CANCELED": OrderStatus.CANCELLED,
    "REJECTED": OrderStatus.REJECTED,
    "EXPIRED": OrderStatus.EXPIRED,
    "EXPIRED_IN_MATCH": OrderStatus.EXPIRED,
}

# Binance execution type → event kind
_BINANCE_EXEC_KIND = {
    "NEW": EventKind.ACK,
    "TRADE": EventKind.FILL,
    "CALCULATED": EventKind.FILL,  # liquidation / ADL execution
    "CANCELED": EventKind.CANCEL,
    "EXPIRED": EventKind.EXPIRE,
    "AMENDMENT": EventKind.AMEND,
}

# listenKeyExpired comes from the exchange; streamReconnected is injected by
# the transport when it re-opens a socket
_BINANCE_RESET_EVENTS = frozenset({"listenKeyExpired", "streamReconnected"})

# User-data / market events that are recognised but carry nothing the core uses
_BINANCE_IGNORED_EVENTS = frozenset({
    "TRADE_LITE",
    "MARGIN_CALL",
    "ACCOUNT_CONFIG_UPDATE",
    "STRATEGY_UPDATE",
    "GRID_UPDATE",
    "CONDITIONAL_ORDER_TRIGGER_REJECT",
    "aggTrade",
    "trade",
    "depthUpdate",
    "kline",
})


class BinanceUsdmNormalizer(Normalizer):
    """
    Binance USDⓈ-M futures user-data and market stream normalizer.

    Field codes follow the exchange payloads, e.g. ORDER_TRADE_UPDATE:
    ``s`` symbol, ``c`` client id, ``i`` order id, ``x`` execution type,
    ``X`` order status, ``l``/``L`` last filled qty/price, ``z`` cumulative
    filled, ``t`` trade id, ``n``/``N`` commission and asset, ``rp`` realized
    profit, ``m`` maker flag.
    """

    def decode(self, stream_id: str, sequence: int, payload: Dict[str, Any]) -> Optional[NormalizedEvent]:
        event_type = payload.get("e")
        if event_type is None:
            raise DecodeFailure("Missing event type 'e'")

        if event_type == "ORDER_TRADE_UPDATE":
            return self._order_trade_update(stream_id, sequence, payload)
        if event_type == "ACCOUNT_UPDATE":
            return self._account_update(stream_id, sequence, payload)
        if event_type in _BINANCE_RESET_EVENTS:
            return NormalizedEvent(
                stream_id=stream_id,
                sequence=sequence,
                kind=EventKind.STREAM_RESET,
                instrument="",
                timestamp=_ms_to_datetime(_require(payload, "E")),
                reason=event_type,
            )
        if event_type == "markPriceUpdate":
            return NormalizedEvent(
                stream_id=stream_id,
                sequence=sequence,
                kind=EventKind.MARK_PRICE,
                instrument=str(_require(payload, "s")),
                timestamp=_ms_to_datetime(_require(payload, "E")),
                price=_decimal(payload.get("p"), "p"),
            )
        if event_type == "bookTicker":
            return self._book_ticker(stream_id, sequence, payload)
        if event_type in _BINANCE_IGNORED_EVENTS:
            return None

        raise DecodeFailure(f"Unknown event type: {event_type}")

    def _order_trade_update(self, stream_id: str, sequence: int, payload: Dict[str, Any]) -> NormalizedEvent:
        update = _require(payload, "o")
        if not isinstance(update, dict):
            raise DecodeFailure("ORDER_TRADE_UPDATE 'o' must be an object")

        exec_type = str(_require(update, "x"))
        raw_status = str(_require(update, "X"))
        status = BINANCE_ORDER_STATUS.get(raw_status)
        if status is None:
            raise DecodeFailure(f"Unknown order status: {raw_status}")

        if status == OrderStatus.REJECTED:
            kind = EventKind.REJECT
        else:
            kind = _BINANCE_EXEC_KIND.get(exec_type)
            if kind is None:
                raise DecodeFailure(f"Unknown execution type: {exec_type}")

        side_raw = update.get("S")
        try:
            side = Side(side_raw) if side_raw is not None else None
        except ValueError as e:
            raise DecodeFailure(f"Unknown side: {side_raw}") from e

        client_order_id = update.get("c")
        exchange_order_id = update.get("i")
        if not client_order_id and exchange_order_id is None:
            raise DecodeFailure("Order update carries neither client nor exchange order id")

        timestamp = _ms_to_datetime(payload.get("T") or _require(payload, "E"))
        common = dict(
            stream_id=stream_id,
            sequence=sequence,
            kind=kind,
            instrument=str(_require(update, "s")),
            timestamp=timestamp,
            client_order_id=str(client_order_id) if client_order_id else None,
            exchange_order_id=str(exchange_order_id) if exchange_order_id is not None else None,
            status=status,
            side=side,
            order_quantity=_decimal(update.get("q"), "q") if update.get("q") is not None else None,
            order_price=_decimal(update.get("p"), "p") if update.get("p") is not None else None,
            cumulative_quantity=_decimal(update.get("z"), "z") if update.get("z") is not None else None,
        )

        if kind == EventKind.FILL:
            quantity = _decimal(update.get("l"), "l")
            price = _decimal(update.get("L"), "L")
            if quantity <= 0 or price <= 0:
                raise DecodeFailure(f"Trade execution without positive last fill: l={quantity} L={price}")
            return NormalizedEvent(
                **common,
                quantity=quantity,
                price=price,
                fill_id=str(_require(update, "t")),
                fee=_decimal(update.get("n", "0"), "n"),
                fee_asset=update.get("N"),
                realized_pnl=_decimal(update.get("rp", "0"), "rp"),
                is_maker=bool(update.get("m", False)),
            )

        if kind == EventKind.AMEND:
            return NormalizedEvent(
                **common,
                quantity=common["order_quantity"],
                price=common["order_price"],
            )

        reason = None
        if kind == EventKind.REJECT:
            reason = update.get("r") or "REJECTED"
        elif kind == EventKind.EXPIRE:
            reason = raw_status
        return NormalizedEvent(**common, reason=reason)

    def _account_update(self, stream_id: str, sequence: int, payload: Dict[str, Any]) -> NormalizedEvent:
        account = _require(payload, "a")
        if not isinstance(account, dict):
            raise DecodeFailure("ACCOUNT_UPDATE 'a' must be an object")

        reports = []
        for entry in account.get("P") or []:
            reports.append(PositionReport(
                instrument=str(_require(entry, "s")),
                net_quantity=_decimal(entry.get("pa"), "pa"),
                entry_price=_decimal(entry.get("ep"), "ep") if entry.get("ep") is not None else None,
            ))

        reason = account.get("m")
        quantity = None
        if reason == "FUNDING_FEE":
            quantity = sum(
                (_decimal(b.get("bc", "0"), "bc") for b in account.get("B") or []),
                Decimal("0"),
            )

        instrument = reports[0].instrument if len(reports) == 1 else ""
        return NormalizedEvent(
            stream_id=stream_id,
            sequence=sequence,
            kind=EventKind.ACCOUNT_UPDATE,
            instrument=instrument,
            timestamp=_ms_to_datetime(payload.get("T") or _require(payload, "E")),
            quantity=quantity,
            reason=reason,
            positions=tuple(reports),
        )

    def _book_ticker(self, stream_id: str, sequence: int, payload: Dict[str, Any]) -> NormalizedEvent:
        bid = _decimal(payload.get("b"), "b")
        ask = _decimal(payload.get("a"), "a")
        return NormalizedEvent(
            stream_id=stream_id,
            sequence=sequence,
            kind=EventKind.BOOK_TICKER,
            instrument=str(_require(payload, "s")),
            timestamp=_ms_to_datetime(payload.get("T") or _require(payload, "E")),
            price=bid,
            order_price=ask,
        )
