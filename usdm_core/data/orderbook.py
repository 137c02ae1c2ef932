"""
Mark price and best bid/ask tracking per instrument.

Last-value store fed by the market stream. Mark price is taken from the
exchange's mark price feed, never computed from bid/ask. This is not a
depth-of-book engine.
"""
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional
import threading

from usdm_core.domain.events import EventKind, NormalizedEvent
from usdm_core.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class QuoteSnapshot:
    """Latest market values for one instrument."""
    instrument: str
    mark_price: Optional[Decimal] = None
    best_bid: Optional[Decimal] = None
    best_ask: Optional[Decimal] = None
    updated_at: Optional[datetime] = None

    def mid_price(self) -> Optional[Decimal]:
        if self.best_bid is not None and self.best_ask is not None:
            return (self.best_bid + self.best_ask) / 2
        return None

    def spread_pct(self) -> Optional[Decimal]:
        if self.best_bid and self.best_ask and self.mark_price:
            return (self.best_ask - self.best_bid) / self.mark_price
        return None


class MarketBook:
    """
    Tracks mark price and top of book for every instrument on the market stream.
    """

    def __init__(self):
        self._quotes: Dict[str, QuoteSnapshot] = {}
        self._lock = threading.Lock()

    def _quote(self, instrument: str) -> QuoteSnapshot:
        quote = self._quotes.get(instrument)
        if quote is None:
            quote = QuoteSnapshot(instrument=instrument)
            self._quotes[instrument] = quote
        return quote

    def apply(self, event: NormalizedEvent) -> bool:
        """Apply a MARK_PRICE or BOOK_TICKER event. Returns False for other kinds."""
        if event.kind == EventKind.MARK_PRICE:
            self.update_mark_price(event.instrument, event.price, event.timestamp)
            return True
        if event.kind == EventKind.BOOK_TICKER:
            self.update_best_bid_ask(event.instrument, event.price, event.order_price, event.timestamp)
            return True
        return False

    def update_mark_price(self, instrument: str, mark_price: Decimal, timestamp: Optional[datetime] = None) -> None:
        with self._lock:
            quote = self._quote(instrument)
            quote.mark_price = mark_price
            quote.updated_at = timestamp
        logger.debug("Mark price updated", instrument=instrument, mark_price=str(mark_price))

    def update_best_bid_ask(
        self,
        instrument: str,
        best_bid: Decimal,
        best_ask: Decimal,
        timestamp: Optional[datetime] = None,
    ) -> None:
        if best_bid > best_ask:
            logger.warning("Crossed top of book ignored", instrument=instrument, bid=str(best_bid), ask=str(best_ask))
            return
        with self._lock:
            quote = self._quote(instrument)
            quote.best_bid = best_bid
            quote.best_ask = best_ask
            quote.updated_at = timestamp

    def get_mark_price(self, instrument: str) -> Optional[Decimal]:
        """Mark price, falling back to mid price when no mark has arrived yet."""
        with self._lock:
            quote = self._quotes.get(instrument)
            if quote is None:
                return None
            return quote.mark_price if quote.mark_price is not None else quote.mid_price()

    def get_snapshot(self, instrument: str) -> Optional[QuoteSnapshot]:
        with self._lock:
            quote = self._quotes.get(instrument)
            return replace(quote) if quote else None
