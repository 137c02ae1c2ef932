"""
Position Ledger - net position per instrument from confirmed fills.

Weighted-average-cost accounting:
- Same-direction fill: quantity grows, average entry blends by quantity.
- Opposite-direction fill: the closed portion books realized P&L at
  (fill price - average entry) * closed quantity * sign(prior position).
  Reducing keeps the average; a flip re-opens the residual at the fill price.

Fees accumulate in ``fees_paid`` and funding in ``funding``; neither is
folded into the average entry or into gross ``realized_pnl``.
"""
from dataclasses import replace
from decimal import Decimal, localcontext
from typing import Dict, Iterable, List, Optional, Set, Tuple
import threading

from usdm_core.domain.models import Fill, Position, utc_now
from usdm_core.monitoring.logger import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")


def _sign(value: Decimal) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


def apply_signed_quantity(
    net_quantity: Decimal,
    average_entry_price: Optional[Decimal],
    signed_quantity: Decimal,
    price: Decimal,
) -> Tuple[Decimal, Optional[Decimal], Decimal]:
    """
    Pure weighted-average-cost step.

    Returns:
        (new net quantity, new average entry price, realized P&L of this step)
    """
    if net_quantity == 0 or average_entry_price is None:
        return net_quantity + signed_quantity, price, ZERO

    prior_sign = _sign(net_quantity)
    new_net = net_quantity + signed_quantity

    if _sign(signed_quantity) == prior_sign:
        blended = (abs(net_quantity) * average_entry_price + abs(signed_quantity) * price) / abs(new_net)
        return new_net, blended, ZERO

    closed = min(abs(net_quantity), abs(signed_quantity))
    realized = (price - average_entry_price) * closed * prior_sign
    if new_net == 0:
        return new_net, None, realized
    if _sign(new_net) == prior_sign:
        return new_net, average_entry_price, realized
    return new_net, price, realized


class PositionLedger:
    """
    Net positions keyed by instrument.

    Every applied fill is kept in a per-instrument journal so the position
    can be recomputed and audited.
    """

    def __init__(self, decimal_precision: int = 34):
        self.decimal_precision = decimal_precision
        self._positions: Dict[str, Position] = {}
        self._applied_fill_ids: Dict[str, Set[str]] = {}
        self._journal: Dict[str, List[Fill]] = {}
        # (net, avg) the journal starts from: flat, or the last reset
        self._baseline: Dict[str, Tuple[Decimal, Optional[Decimal]]] = {}
        # Funding that could not be attributed to a single instrument
        self._account_funding = ZERO
        self._lock = threading.RLock()

    def _position(self, instrument: str) -> Position:
        """Get or lazily create. MUST be called under lock."""
        position = self._positions.get(instrument)
        if position is None:
            position = Position(instrument=instrument)
            self._positions[instrument] = position
            self._applied_fill_ids[instrument] = set()
            self._journal[instrument] = []
            self._baseline[instrument] = (ZERO, None)
        return position

    # ========== MUTATIONS ==========

    def apply_fill(self, fill: Fill) -> bool:
        """
        Apply one confirmed fill.

        IDEMPOTENT: a fill id already applied to the instrument is a no-op.

        Returns:
            True if the position changed
        """
        with self._lock:
            position = self._position(fill.instrument)
            applied = self._applied_fill_ids[fill.instrument]
            if fill.fill_id in applied:
                logger.debug("Duplicate fill ignored by position ledger", fill_id=fill.fill_id, instrument=fill.instrument)
                return False

            with localcontext() as ctx:
                ctx.prec = self.decimal_precision
                net, avg, realized = apply_signed_quantity(
                    position.net_quantity,
                    position.average_entry_price,
                    fill.signed_quantity,
                    fill.price,
                )
                position.realized_pnl += realized
                position.fees_paid += fill.fee

            position.net_quantity = net
            position.average_entry_price = avg
            position.last_sequence = fill.sequence
            position.updated_at = utc_now()
            applied.add(fill.fill_id)
            self._journal[fill.instrument].append(fill)

            logger.info(
                "Position updated",
                instrument=fill.instrument,
                fill_id=fill.fill_id,
                side=fill.side.value,
                fill_qty=str(fill.quantity),
                fill_price=str(fill.price),
                net_quantity=str(net),
                average_entry_price=str(avg) if avg is not None else None,
                realized=str(realized),
            )
            return True

    def apply_funding(self, amount: Decimal, instrument: Optional[str] = None) -> None:
        """
        Book a funding payment (+ received, - paid).

        Without an instrument the amount goes to the account-level accumulator.
        """
        with self._lock:
            if not instrument:
                self._account_funding += amount
                logger.info("Funding booked to account", amount=str(amount), total=str(self._account_funding))
                return
            position = self._position(instrument)
            position.funding += amount
            position.updated_at = utc_now()
            logger.info("Funding booked", instrument=instrument, amount=str(amount), total=str(position.funding))

    def reset(
        self,
        instrument: str,
        net_quantity: Decimal = ZERO,
        average_entry_price: Optional[Decimal] = None,
        sequence: Optional[int] = None,
        included_fill_ids: Iterable[str] = (),
    ) -> Position:
        """
        Accept external truth (snapshot) for one instrument.

        Net quantity and average are replaced; realized P&L, fees and funding
        are kept. The fill journal restarts from the reset point, applied
        fill ids are remembered so a replayed fill never counts twice.
        ``included_fill_ids`` are fills the new quantity already contains.
        """
        with self._lock:
            position = self._position(instrument)
            previous = position.net_quantity
            position.net_quantity = net_quantity
            position.average_entry_price = average_entry_price if net_quantity != 0 else None
            position.last_sequence = sequence
            position.updated_at = utc_now()
            self._journal[instrument] = []
            self._baseline[instrument] = (position.net_quantity, position.average_entry_price)
            self._applied_fill_ids[instrument].update(included_fill_ids)
            if previous != net_quantity:
                logger.warning(
                    "Position reset to snapshot",
                    instrument=instrument,
                    previous=str(previous),
                    net_quantity=str(net_quantity),
                )
            return replace(position)

    def replay(self, fills: Iterable[Fill], sequence: Optional[int] = None) -> List[str]:
        """
        Recompute positions from a complete fill history.

        Every instrument in ``fills`` is rebuilt from flat; realized P&L and
        fees are recomputed from the fills, booked funding is kept.

        Returns:
            Instruments that were rebuilt
        """
        fills = list(fills)
        instruments = sorted({f.instrument for f in fills})
        with self._lock:
            for instrument in instruments:
                funding = self._positions[instrument].funding if instrument in self._positions else ZERO
                self._positions[instrument] = Position(instrument=instrument, funding=funding)
                self._applied_fill_ids[instrument] = set()
                self._journal[instrument] = []
                self._baseline[instrument] = (ZERO, None)
            for fill in fills:
                self.apply_fill(fill)
            for instrument in instruments:
                self._positions[instrument].last_sequence = sequence
        logger.info("Positions replayed", instruments=instruments, fills=len(fills))
        return instruments

    # ========== READS ==========

    def has_fill(self, instrument: str, fill_id: str) -> bool:
        with self._lock:
            return fill_id in self._applied_fill_ids.get(instrument, ())

    def net_position(self, instrument: str) -> Decimal:
        with self._lock:
            position = self._positions.get(instrument)
            return position.net_quantity if position else ZERO

    def get_position(self, instrument: str) -> Optional[Position]:
        with self._lock:
            position = self._positions.get(instrument)
            return replace(position) if position else None

    def all_positions(self) -> List[Position]:
        with self._lock:
            return [replace(p) for p in self._positions.values()]

    def journal(self, instrument: str) -> List[Fill]:
        with self._lock:
            return list(self._journal.get(instrument, []))

    @property
    def account_funding(self) -> Decimal:
        with self._lock:
            return self._account_funding

    def unrealized_pnl(self, instrument: str, mark_price: Decimal) -> Decimal:
        """(mark - average entry) * signed net quantity; zero when flat."""
        with self._lock:
            position = self._positions.get(instrument)
            if position is None or position.is_flat or position.average_entry_price is None:
                return ZERO
            with localcontext() as ctx:
                ctx.prec = self.decimal_precision
                return (mark_price - position.average_entry_price) * position.net_quantity

    def audit(self, instrument: str) -> bool:
        """
        Recompute the position from its reset baseline through the fill
        journal and compare with stored state.

        Returns:
            True if consistent
        """
        with self._lock:
            position = self._positions.get(instrument)
            if position is None:
                return True
            net, avg = self._baseline[instrument]
            with localcontext() as ctx:
                ctx.prec = self.decimal_precision
                for fill in self._journal[instrument]:
                    net, avg, _ = apply_signed_quantity(net, avg, fill.signed_quantity, fill.price)
            consistent = net == position.net_quantity and avg == position.average_entry_price
            if not consistent:
                logger.critical(
                    "POSITION_AUDIT_MISMATCH",
                    instrument=instrument,
                    stored_net=str(position.net_quantity),
                    recomputed_net=str(net),
                    stored_avg=str(position.average_entry_price),
                    recomputed_avg=str(avg),
                )
            return consistent
