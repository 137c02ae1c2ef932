"""
Binance USDⓈ-M futures transport using CCXT.

Implements the ``Transport`` protocol: order submit / cancel / amend RPCs,
the snapshot fetch used by resync and the per-order lookup that settles
orders a snapshot no longer lists. Websocket connection management,
listen-key keepalive and signing stay with the feed that produces raw
messages; this client only stamps the snapshot with that feed's sequence.

Error mapping:
- ccxt.InvalidOrder / ccxt.InsufficientFunds → SubmitResult(accepted=False)
- any other ccxt error → TransportFailure
No retries here beyond ccxt's own rate limiting; the caller decides.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence
import asyncio

import ccxt
import ccxt.async_support as ccxt_async

from usdm_core.data.normalizer import BINANCE_ORDER_STATUS
from usdm_core.data.sequence_stamper import SequenceStamper
from usdm_core.domain.events import USER_STREAM
from usdm_core.domain.models import (
    ExchangeSnapshot,
    Fill,
    Order,
    OrderStatus,
    OrderType,
    Side,
    SnapshotOrder,
    SnapshotPosition,
    SubmitResult,
    TimeInForce,
    utc_now,
)
from usdm_core.exceptions import TransportFailure
from usdm_core.monitoring.logger import get_logger

logger = get_logger(__name__)

_QUOTE_ASSETS = ("USDT", "USDC", "BUSD")


def to_ccxt_symbol(instrument: str) -> str:
    """BTCUSDT → BTC/USDT:USDT (linear perpetual)."""
    for quote in _QUOTE_ASSETS:
        if instrument.endswith(quote) and len(instrument) > len(quote):
            base = instrument[: -len(quote)]
            return f"{base}/{quote}:{quote}"
    raise ValueError(f"Unsupported USDⓈ-M instrument: {instrument}")


def from_ccxt_symbol(symbol: str) -> str:
    """BTC/USDT:USDT → BTCUSDT."""
    pair = symbol.split(":")[0]
    return pair.replace("/", "")


def _dec(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _from_ms(value: Any) -> Optional[datetime]:
    if value is None or value == "" or int(value) <= 0:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class BinanceUsdmTransport:
    """
    Transport for Binance USDⓈ-M futures.

    Usage:
        transport = BinanceUsdmTransport(api_key, api_secret, stamper=stamper)
        await transport.initialize()
    """

    def __init__(
        self,
        api_key: Optional[str],
        api_secret: Optional[str],
        *,
        use_testnet: bool = True,
        stamper: Optional[SequenceStamper] = None,
        stream_id: str = USER_STREAM,
        recv_window_ms: int = 5000,
        request_timeout_ms: int = 10000,
        instruments: Optional[Sequence[str]] = None,
        trade_lookback_seconds: float = 300.0,
        exchange: Optional[Any] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.use_testnet = use_testnet
        self.stamper = stamper or SequenceStamper()
        self.stream_id = stream_id
        self.recv_window_ms = recv_window_ms
        self.request_timeout_ms = request_timeout_ms
        self.instruments = list(instruments or [])
        self.trade_lookback_seconds = trade_lookback_seconds
        self.exchange = exchange
        self._init_lock = asyncio.Lock()

    def has_valid_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret and not self.api_key.startswith("${"))

    async def initialize(self) -> None:
        """
        Lazy initialization of the CCXT exchange.
        MUST be called inside the running event loop of the target process.
        """
        async with self._init_lock:
            if self.exchange is not None:
                return
            exchange = ccxt_async.binanceusdm({
                "apiKey": self.api_key,
                "secret": self.api_secret,
                "enableRateLimit": True,
                "timeout": self.request_timeout_ms,
                "options": {
                    "recvWindow": self.recv_window_ms,
                    "warnOnFetchOpenOrdersWithoutSymbol": False,
                },
            })
            if self.use_testnet:
                try:
                    exchange.set_sandbox_mode(True)
                except ccxt.NotSupported:
                    # Newer ccxt routes futures testing through demo trading
                    exchange.enable_demo_trading(True)
            self.exchange = exchange
            logger.info("BinanceUsdmTransport initialized", testnet=self.use_testnet)

    async def close(self) -> None:
        if self.exchange is not None:
            await self.exchange.close()
            self.exchange = None

    async def _client(self):
        if self.exchange is None:
            await self.initialize()
        return self.exchange

    # ========== ORDER RPCs ==========

    @staticmethod
    def _order_params(order: Order) -> Dict[str, Any]:
        params: Dict[str, Any] = {"newClientOrderId": order.client_order_id}
        if order.reduce_only:
            params["reduceOnly"] = True
        if order.order_type == OrderType.LIMIT:
            params["timeInForce"] = (order.time_in_force or TimeInForce.GTC).value
            if order.time_in_force == TimeInForce.GTD:
                params["goodTillDate"] = order.good_till_date
        return params

    async def submit_order(self, order: Order) -> SubmitResult:
        exchange = await self._client()
        symbol = to_ccxt_symbol(order.instrument)
        try:
            response = await exchange.create_order(
                symbol,
                order.order_type.value.lower(),
                order.side.value.lower(),
                float(order.quantity),
                float(order.price) if order.price is not None else None,
                self._order_params(order),
            )
        except (ccxt.InvalidOrder, ccxt.InsufficientFunds) as e:
            logger.warning("Order rejected by exchange", client_order_id=order.client_order_id, error=str(e))
            return SubmitResult(accepted=False, reject_reason=str(e))
        except ccxt.BaseError as e:
            logger.error("Order submit failed", client_order_id=order.client_order_id, error=str(e), error_type=type(e).__name__)
            raise TransportFailure(f"submit {order.client_order_id}: {e}") from e

        exchange_order_id = response.get("id") if response else None
        logger.debug("Order accepted by exchange", client_order_id=order.client_order_id, exchange_order_id=exchange_order_id)
        return SubmitResult(accepted=True, exchange_order_id=str(exchange_order_id) if exchange_order_id else None)

    async def cancel_order(self, order: Order) -> None:
        exchange = await self._client()
        symbol = to_ccxt_symbol(order.instrument)
        params = {} if order.exchange_order_id else {"origClientOrderId": order.client_order_id}
        try:
            await exchange.cancel_order(order.exchange_order_id, symbol, params)
        except ccxt.OrderNotFound as e:
            # Already closed on the exchange; the stream or a resync reports the outcome
            logger.warning("Cancel target not found on exchange", client_order_id=order.client_order_id, error=str(e))
        except ccxt.BaseError as e:
            logger.error("Order cancel failed", client_order_id=order.client_order_id, error=str(e), error_type=type(e).__name__)
            raise TransportFailure(f"cancel {order.client_order_id}: {e}") from e

    async def amend_order(
        self,
        order: Order,
        quantity: Optional[Decimal] = None,
        price: Optional[Decimal] = None,
    ) -> SubmitResult:
        exchange = await self._client()
        symbol = to_ccxt_symbol(order.instrument)
        # Binance modify-order needs both quantity and price
        new_quantity = quantity if quantity is not None else order.quantity
        new_price = price if price is not None else order.price
        params = {} if order.exchange_order_id else {"origClientOrderId": order.client_order_id}
        try:
            response = await exchange.edit_order(
                order.exchange_order_id,
                symbol,
                order.order_type.value.lower(),
                order.side.value.lower(),
                float(new_quantity),
                float(new_price) if new_price is not None else None,
                params,
            )
        except (ccxt.InvalidOrder, ccxt.InsufficientFunds) as e:
            logger.warning("Amend rejected by exchange", client_order_id=order.client_order_id, error=str(e))
            return SubmitResult(accepted=False, reject_reason=str(e))
        except ccxt.BaseError as e:
            logger.error("Order amend failed", client_order_id=order.client_order_id, error=str(e), error_type=type(e).__name__)
            raise TransportFailure(f"amend {order.client_order_id}: {e}") from e
        exchange_order_id = (response or {}).get("id") or order.exchange_order_id
        return SubmitResult(accepted=True, exchange_order_id=str(exchange_order_id) if exchange_order_id else None)

    # ========== SNAPSHOT ==========

    async def fetch_snapshot(self) -> ExchangeSnapshot:
        """
        Open orders + positions, then recent trades, marked with the feed
        sequence taken before the fetch: everything up to the marker is
        reflected in the snapshot.

        Trades are read after the positions, so every trade a reported
        position already includes is in ``recent_fills``.
        """
        exchange = await self._client()
        sequence = self.stamper.current(self.stream_id)
        taken_at = utc_now()
        since = int((taken_at.timestamp() - self.trade_lookback_seconds) * 1000)
        try:
            raw_orders, raw_positions = await asyncio.gather(
                exchange.fetch_open_orders(),
                exchange.fetch_positions(),
            )
            raw_trades = await asyncio.gather(*(
                exchange.fetch_my_trades(to_ccxt_symbol(instrument), since)
                for instrument in self.instruments
            ))
        except ccxt.BaseError as e:
            logger.error("Snapshot fetch failed", error=str(e), error_type=type(e).__name__)
            raise TransportFailure(f"snapshot: {e}") from e

        orders = self.parse_orders(raw_orders)
        positions = self.parse_positions(raw_positions)
        fills = self.parse_trades([trade for batch in raw_trades for trade in batch])
        logger.info("Snapshot fetched", seq=sequence, orders=len(orders), positions=len(positions), trades=len(fills))
        return ExchangeSnapshot(
            sequence=sequence,
            orders=tuple(orders),
            positions=tuple(positions),
            recent_fills=tuple(fills),
            taken_at=taken_at,
        )

    async def fetch_order(self, order: Order) -> Optional[SnapshotOrder]:
        """Current exchange state of one order, looked up by client order id when no exchange id is known."""
        exchange = await self._client()
        symbol = to_ccxt_symbol(order.instrument)
        params = {} if order.exchange_order_id else {"origClientOrderId": order.client_order_id}
        try:
            raw = await exchange.fetch_order(order.exchange_order_id, symbol, params)
        except ccxt.OrderNotFound:
            logger.info("Order not found on exchange", client_order_id=order.client_order_id)
            return None
        except ccxt.BaseError as e:
            logger.error("Order lookup failed", client_order_id=order.client_order_id, error=str(e), error_type=type(e).__name__)
            raise TransportFailure(f"fetch order {order.client_order_id}: {e}") from e

        parsed = self.parse_orders([raw]) if raw else []
        if not parsed:
            return None
        logger.info(
            "Order looked up",
            client_order_id=order.client_order_id,
            status=parsed[0].status.value,
            filled=str(parsed[0].filled_quantity),
        )
        return parsed[0]

    @staticmethod
    def parse_orders(raw_orders: Sequence[Dict[str, Any]]) -> List[SnapshotOrder]:
        orders = []
        for raw in raw_orders:
            info = raw.get("info") or {}
            order_type = (raw.get("type") or info.get("type") or "").upper()
            if order_type not in (OrderType.LIMIT.value, OrderType.MARKET.value):
                logger.debug("Snapshot order type not tracked", type=order_type, id=raw.get("id"))
                continue
            filled = _dec(raw.get("filled")) or Decimal("0")
            status = BINANCE_ORDER_STATUS.get(info.get("status", ""))
            if status is None:
                status = OrderStatus.PARTIALLY_FILLED if filled > 0 else OrderStatus.OPEN
            instrument = info.get("symbol") or from_ccxt_symbol(raw["symbol"])
            tif = raw.get("timeInForce") or info.get("timeInForce")
            exchange_order_id = raw.get("id")
            orders.append(SnapshotOrder(
                client_order_id=raw.get("clientOrderId") or info.get("clientOrderId") or str(exchange_order_id),
                exchange_order_id=str(exchange_order_id) if exchange_order_id is not None else None,
                instrument=instrument,
                side=Side(str(raw.get("side") or info.get("side")).upper()),
                order_type=OrderType(order_type),
                quantity=_dec(raw.get("amount")) or _dec(info.get("origQty")),
                filled_quantity=filled,
                status=status,
                price=_dec(raw.get("price")) if order_type == OrderType.LIMIT.value else None,
                average_fill_price=_dec(raw.get("average")) if filled > 0 else None,
                time_in_force=TimeInForce(tif) if tif in TimeInForce.__members__ else None,
            ))
        return orders

    @staticmethod
    def parse_positions(raw_positions: Sequence[Dict[str, Any]]) -> List[SnapshotPosition]:
        positions = []
        for raw in raw_positions:
            info = raw.get("info") or {}
            amount = _dec(info.get("positionAmt"))
            if amount is None:
                contracts = _dec(raw.get("contracts")) or Decimal("0")
                amount = -contracts if raw.get("side") == "short" else contracts
            if amount == 0:
                continue
            positions.append(SnapshotPosition(
                instrument=info.get("symbol") or from_ccxt_symbol(raw["symbol"]),
                net_quantity=amount,
                average_entry_price=_dec(info.get("entryPrice")) or _dec(raw.get("entryPrice")),
                updated_at=_from_ms(info.get("updateTime") or raw.get("timestamp")),
            ))
        return positions

    @staticmethod
    def parse_trades(raw_trades: Sequence[Dict[str, Any]]) -> List[Fill]:
        fills = []
        for raw in raw_trades:
            info = raw.get("info") or {}
            fee = raw.get("fee") or {}
            order_id = raw.get("order") or info.get("orderId")
            fills.append(Fill(
                fill_id=str(raw.get("id") or info.get("id")),
                instrument=info.get("symbol") or from_ccxt_symbol(raw["symbol"]),
                side=Side(str(raw.get("side") or info.get("side")).upper()),
                quantity=_dec(raw.get("amount")) or _dec(info.get("qty")),
                price=_dec(raw.get("price")) or _dec(info.get("price")),
                exchange_order_id=str(order_id) if order_id is not None else None,
                fee=_dec(fee.get("cost")) or _dec(info.get("commission")) or Decimal("0"),
                fee_asset=fee.get("currency") or info.get("commissionAsset"),
                timestamp=_from_ms(raw.get("timestamp") or info.get("time")) or utc_now(),
                is_maker=raw.get("takerOrMaker") == "maker",
            ))
        return fills
