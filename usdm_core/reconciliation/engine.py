"""
Reconciliation engine.

Sits between the normalizer and the ledgers. Per stream it keeps a
sequence cursor and a health state:

- HEALTHY: events are applied in order, the cursor advances.
- DEGRADED: a gap, an orphan or a stream reset was seen. Events are
  buffered and a resync is requested.
- RESYNCING: the snapshot is being fetched. Events are buffered.

Resync merges the exchange snapshot into the ledgers, rebases the cursor
on the snapshot's sequence, then replays buffered events past the cursor.
Logs RECONCILE_SUMMARY with merge counts.
"""
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set
import asyncio
import threading

from usdm_core.data.orderbook import MarketBook
from usdm_core.domain.events import (
    EventKind,
    NormalizedEvent,
    OrderChanged,
    PositionChanged,
    StreamHealthChanged,
)
from usdm_core.domain.models import ExchangeSnapshot, Fill
from usdm_core.domain.protocols import Transport
from usdm_core.exceptions import DuplicateEvent, OrphanEvent, SequenceGap, SnapshotFetchError
from usdm_core.execution.notifier import ChangeNotifier
from usdm_core.execution.order_ledger import ApplyOutcome, ApplyResult, OrderLedger
from usdm_core.execution.position_ledger import ZERO, PositionLedger
from usdm_core.monitoring.logger import get_logger
from usdm_core.monitoring.metrics import MetricsCollector
from usdm_core.reconciliation.cursor import SequenceCursor, StreamHealth

logger = get_logger(__name__)

# Invalid order events that mean local state can no longer be trusted
_RESYNC_ON_INVALID = frozenset({"overfill", "exchange id conflict"})


class Disposition(str, Enum):
    """What the engine did with an event."""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    BUFFERED = "buffered"
    DEGRADED = "degraded"  # consumed, stream now needs a resync


@dataclass
class StreamState:
    stream_id: str
    cursor: SequenceCursor
    requires_snapshot: bool = True
    health: StreamHealth = StreamHealth.HEALTHY
    reason: Optional[str] = None
    buffer: Deque[NormalizedEvent] = field(default_factory=deque)
    skipped: Set[int] = field(default_factory=set)  # consumed sequences that carried no event
    lost: Set[int] = field(default_factory=set)  # undecodable sequences seen while resyncing
    instruments: Set[str] = field(default_factory=set)


class ReconciliationEngine:
    """
    Ordering, gap detection and snapshot resync for every registered stream.

    ``process`` is synchronous and never awaits, so one event is applied to
    both ledgers before anything else can observe them. ``resync`` awaits
    only the snapshot fetch; the merge itself is synchronous.
    """

    def __init__(
        self,
        order_ledger: OrderLedger,
        position_ledger: PositionLedger,
        transport: Optional[Transport] = None,
        *,
        notifier: Optional[ChangeNotifier] = None,
        metrics: Optional[MetricsCollector] = None,
        market_book: Optional[MarketBook] = None,
        max_buffered_events: int = 10000,
        snapshot_timeout_seconds: Optional[float] = None,
        pending_grace_seconds: Optional[float] = None,
    ):
        self.order_ledger = order_ledger
        self.position_ledger = position_ledger
        self.transport = transport
        self.notifier = notifier or ChangeNotifier()
        self.metrics = metrics or MetricsCollector()
        self.market_book = market_book or MarketBook()
        self.max_buffered_events = max_buffered_events
        self.snapshot_timeout_seconds = snapshot_timeout_seconds
        self.pending_grace_seconds = pending_grace_seconds

        self._streams: Dict[str, StreamState] = {}
        self._routes: Dict[str, str] = {}  # instrument -> stream_id
        self._default_stream: Optional[str] = None
        self._resync_handler: Optional[Callable[[str], Any]] = None
        self._lock = threading.RLock()

    # ========== STREAM REGISTRY ==========

    def register_stream(
        self,
        stream_id: str,
        *,
        requires_snapshot: bool = True,
        instruments: Optional[List[str]] = None,
    ) -> None:
        """
        Register a stream.

        Streams with ``requires_snapshot=False`` carry last-value market data:
        gaps are counted and skipped, never degrade the stream. The first
        snapshot stream registered owns every instrument not routed explicitly.
        """
        with self._lock:
            if stream_id in self._streams:
                return
            state = StreamState(stream_id=stream_id, cursor=SequenceCursor(stream_id), requires_snapshot=requires_snapshot)
            self._streams[stream_id] = state
            if requires_snapshot and self._default_stream is None:
                self._default_stream = stream_id
            for instrument in instruments or []:
                self.route_instrument(instrument, stream_id)
            logger.info(
                "Stream registered",
                stream_id=stream_id,
                requires_snapshot=requires_snapshot,
                instruments=sorted(state.instruments),
            )

    def route_instrument(self, instrument: str, stream_id: str) -> None:
        with self._lock:
            previous = self._routes.get(instrument)
            if previous and previous in self._streams:
                self._streams[previous].instruments.discard(instrument)
            self._routes[instrument] = stream_id
            self._streams[stream_id].instruments.add(instrument)

    def stream_for(self, instrument: str) -> Optional[str]:
        """Stream whose health gates commands on ``instrument``."""
        with self._lock:
            return self._routes.get(instrument, self._default_stream)

    def health(self, stream_id: str) -> StreamHealth:
        with self._lock:
            return self._streams[stream_id].health

    def is_healthy(self, stream_id: str) -> bool:
        return self.health(stream_id) == StreamHealth.HEALTHY

    def cursor(self, stream_id: str) -> int:
        with self._lock:
            return self._streams[stream_id].cursor.position

    def buffered(self, stream_id: str) -> List[NormalizedEvent]:
        with self._lock:
            return list(self._streams[stream_id].buffer)

    def needs_resync(self, stream_id: str) -> bool:
        with self._lock:
            return self._streams[stream_id].health == StreamHealth.DEGRADED

    def set_resync_handler(self, handler: Optional[Callable[[str], Any]]) -> None:
        """Called with the stream id whenever a stream becomes DEGRADED."""
        self._resync_handler = handler

    def _state(self, stream_id: str) -> StreamState:
        state = self._streams.get(stream_id)
        if state is None:
            self.register_stream(stream_id)
            state = self._streams[stream_id]
        return state

    # ========== EVENT PROCESSING ==========

    def process(self, event: NormalizedEvent) -> Disposition:
        """
        Offer one normalized event.

        Raises:
            InvariantError if a ledger invariant breaks (halt)
        """
        with self._lock:
            return self._process(self._state(event.stream_id), event)

    def skip(self, stream_id: str, sequence: int, *, lost: bool = False) -> Disposition:
        """
        Consume a stamped message that produced no event.

        Ignored message types only move the cursor. ``lost`` marks an
        undecodable message whose content is unknown: a snapshot stream
        degrades because it may have carried an order update.
        """
        with self._lock:
            state = self._state(stream_id)
            if sequence <= state.cursor.position or sequence in state.skipped:
                self.metrics.increment("duplicates", stream_id)
                return Disposition.DUPLICATE

            disposition = Disposition.APPLIED
            if state.health != StreamHealth.HEALTHY:
                state.skipped.add(sequence)
                disposition = Disposition.BUFFERED
            elif sequence == state.cursor.expected or not state.requires_snapshot:
                if sequence > state.cursor.expected:
                    self.metrics.increment("sequence_gaps", stream_id)
                state.cursor.advance(sequence)
                self._absorb_skipped(state)
            else:
                self.metrics.increment("sequence_gaps", stream_id)
                logger.warning("SEQUENCE_GAP_DETECTED", stream_id=stream_id, expected=state.cursor.expected, observed=sequence)
                state.skipped.add(sequence)
                self._degrade(state, "sequence_gap")
                disposition = Disposition.BUFFERED

            if lost and state.requires_snapshot:
                if state.health == StreamHealth.RESYNCING:
                    # May postdate the snapshot marker; checked after the merge
                    state.lost.add(sequence)
                    return disposition
                self._degrade(state, "decode_failure")
                return Disposition.DEGRADED
            return disposition

    def _absorb_skipped(self, state: StreamState) -> None:
        """Advance the cursor over consumed sequences that carried no event."""
        while state.cursor.expected in state.skipped:
            state.skipped.discard(state.cursor.expected)
            state.cursor.advance(state.cursor.expected)
        if state.skipped:
            state.skipped = {s for s in state.skipped if s > state.cursor.position}

    def _process(self, state: StreamState, event: NormalizedEvent) -> Disposition:
        if state.health != StreamHealth.HEALTHY:
            if event.sequence <= state.cursor.position:
                self.metrics.increment("duplicates", state.stream_id)
                return Disposition.DUPLICATE
            self._buffer(state, event)
            return Disposition.BUFFERED

        self._absorb_skipped(state)
        try:
            state.cursor.check(event.sequence)
        except DuplicateEvent as e:
            self.metrics.increment("duplicates", state.stream_id)
            logger.debug("Duplicate event dropped", cursor=e.cursor, **event.describe())
            return Disposition.DUPLICATE
        except SequenceGap as e:
            self.metrics.increment("sequence_gaps", state.stream_id)
            if not state.requires_snapshot:
                logger.info("Sequence gap skipped on last-value stream", expected=e.expected, observed=e.observed, stream_id=state.stream_id)
            else:
                logger.warning(
                    "SEQUENCE_GAP_DETECTED",
                    stream_id=state.stream_id,
                    expected=e.expected,
                    observed=e.observed,
                )
                self._buffer(state, event)
                self._degrade(state, "sequence_gap")
                return Disposition.BUFFERED

        try:
            return self._apply(state, event)
        except OrphanEvent as e:
            self.metrics.increment("orphans", state.stream_id)
            logger.warning(
                "ORPHAN_EVENT",
                stream_id=state.stream_id,
                seq=event.sequence,
                client_order_id=e.client_order_id,
                exchange_order_id=e.exchange_order_id,
            )
            self._buffer(state, event)
            self._degrade(state, "orphan_event")
            return Disposition.BUFFERED

    def _apply(self, state: StreamState, event: NormalizedEvent) -> Disposition:
        disposition = Disposition.APPLIED

        if event.kind.is_order_event:
            result = self.order_ledger.apply(event)
            state.cursor.advance(event.sequence)
            disposition = self._after_order_event(state, event, result)
        elif event.kind == EventKind.ACCOUNT_UPDATE:
            self._account_update(event)
            state.cursor.advance(event.sequence)
        elif event.kind == EventKind.STREAM_RESET:
            state.cursor.advance(event.sequence)
            logger.warning("STREAM_RESET", stream_id=state.stream_id, reason=event.reason, seq=event.sequence)
            self._degrade(state, "stream_reset")
            disposition = Disposition.DEGRADED
        else:
            self.market_book.apply(event)
            state.cursor.advance(event.sequence)
        return disposition

    def _after_order_event(self, state: StreamState, event: NormalizedEvent, result: ApplyResult) -> Disposition:
        if result.outcome == ApplyOutcome.DUPLICATE:
            self.metrics.increment("duplicates", state.stream_id)
            return Disposition.DUPLICATE
        if result.outcome == ApplyOutcome.TERMINAL_NOOP:
            self.metrics.increment("terminal_noops", state.stream_id)
            return Disposition.APPLIED
        if result.outcome == ApplyOutcome.INVALID:
            self.metrics.increment("invalid_transitions", state.stream_id)
            logger.warning("Invalid order transition", detail=result.detail, **event.describe())
            if result.detail in _RESYNC_ON_INVALID and state.requires_snapshot:
                self._degrade(state, result.detail.replace(" ", "_"))
                return Disposition.DEGRADED
            return Disposition.APPLIED

        self.notifier.publish(OrderChanged(
            order=result.order,
            previous_status=result.previous_status,
            cause=event.kind.value,
            sequence=event.sequence,
        ))
        if result.fill is not None and self.position_ledger.apply_fill(result.fill):
            self.notifier.publish(PositionChanged(
                position=self.position_ledger.get_position(result.fill.instrument),
                cause="fill",
                fill_id=result.fill.fill_id,
            ))
        return Disposition.APPLIED

    def _account_update(self, event: NormalizedEvent) -> None:
        if event.reason == "FUNDING_FEE" and event.quantity is not None:
            self.position_ledger.apply_funding(event.quantity, event.instrument or None)
            if event.instrument:
                self.notifier.publish(PositionChanged(
                    position=self.position_ledger.get_position(event.instrument),
                    cause="funding",
                ))

        for report in event.positions:
            local = self.position_ledger.net_position(report.instrument)
            if local != report.net_quantity:
                self.metrics.increment("position_drift", event.stream_id)
                logger.warning(
                    "POSITION_DRIFT",
                    instrument=report.instrument,
                    local=str(local),
                    exchange=str(report.net_quantity),
                    reason=event.reason,
                    seq=event.sequence,
                )

    def _buffer(self, state: StreamState, event: NormalizedEvent) -> None:
        if len(state.buffer) >= self.max_buffered_events:
            dropped = state.buffer.popleft()
            self.metrics.increment("buffer_overflow", state.stream_id)
            logger.warning(
                "Event buffer full, oldest event dropped",
                stream_id=state.stream_id,
                dropped_seq=dropped.sequence,
                max_buffered_events=self.max_buffered_events,
            )
        state.buffer.append(event)

    def _set_health(self, state: StreamState, health: StreamHealth, reason: Optional[str] = None) -> None:
        if state.health == health:
            return
        state.health = health
        state.reason = reason
        self.notifier.publish(StreamHealthChanged(stream_id=state.stream_id, health=health.value, reason=reason))

    def _degrade(self, state: StreamState, reason: str) -> None:
        if state.health == StreamHealth.HEALTHY:
            self._set_health(state, StreamHealth.DEGRADED, reason)
            self.metrics.increment("degradations", state.stream_id)
            logger.warning(
                "STREAM_DEGRADED",
                stream_id=state.stream_id,
                reason=reason,
                cursor=state.cursor.position,
            )
        if state.health == StreamHealth.DEGRADED:
            self._request_resync(state)

    def _request_resync(self, state: StreamState) -> None:
        logger.info("RESYNC_REQUESTED", stream_id=state.stream_id, reason=state.reason)
        if self._resync_handler is not None:
            self._resync_handler(state.stream_id)

    # ========== RESYNC ==========

    async def resync(self, stream_id: str) -> bool:
        """
        Fetch a snapshot and merge it. Exclusive per stream.

        Returns:
            True if the stream is HEALTHY afterwards, False if a resync was
            already running or the replay found a new gap

        Raises:
            SnapshotFetchError if the snapshot could not be fetched
            (stream stays DEGRADED; the caller decides when to retry)
        """
        with self._lock:
            state = self._state(stream_id)
            if state.health == StreamHealth.RESYNCING:
                logger.debug("Resync already running", stream_id=stream_id)
                return False
            if self.transport is None:
                raise SnapshotFetchError(stream_id, "no transport configured")
            self._set_health(state, StreamHealth.RESYNCING, state.reason)
            self.metrics.increment("resyncs", stream_id)
            logger.info("RESYNC_START", stream_id=stream_id, cursor=state.cursor.position, buffered=len(state.buffer))

        try:
            if self.snapshot_timeout_seconds:
                snapshot = await asyncio.wait_for(self._fetch_snapshot(state), timeout=self.snapshot_timeout_seconds)
            else:
                snapshot = await self._fetch_snapshot(state)
        except asyncio.CancelledError:
            with self._lock:
                self._set_health(state, StreamHealth.DEGRADED, state.reason)
            raise
        except Exception as e:
            with self._lock:
                self._set_health(state, StreamHealth.DEGRADED, "snapshot_fetch_failed")
            self.metrics.increment("resync_failures", stream_id)
            logger.error("RESYNC_FAILED", stream_id=stream_id, error=str(e), error_type=type(e).__name__)
            raise SnapshotFetchError(stream_id, str(e)) from e

        with self._lock:
            self.apply_snapshot(stream_id, snapshot)
            return state.health == StreamHealth.HEALTHY

    async def _fetch_snapshot(self, state: StreamState) -> ExchangeSnapshot:
        """
        Snapshot plus a lookup of every local open order it does not list.

        An order missing from the open orders may have filled, been cancelled
        or expired since; the per-order answer carries its real outcome.
        Orders with buffered events past the marker are left to the replay.
        """
        snapshot = await self.transport.fetch_snapshot()
        with self._lock:
            listed = {o.client_order_id for o in snapshot.orders}
            deferred = self._deferred_orders(state, snapshot.sequence)
            scope = self._scope(state)
            missing = [
                order for order in self.order_ledger.open_orders()
                if order.client_order_id not in listed
                and order.client_order_id not in deferred
                and (not scope or order.instrument in scope)
            ]
        if not missing:
            return snapshot

        answers = await asyncio.gather(*(self.transport.fetch_order(order) for order in missing))
        found = tuple(answer for answer in answers if answer is not None)
        logger.info("Absent orders looked up", stream_id=state.stream_id, looked_up=len(missing), found=len(found))
        return replace(snapshot, orders=snapshot.orders + found)

    def _deferred_orders(self, state: StreamState, sequence: int) -> Set[str]:
        """Client ids of orders with buffered events past ``sequence``."""
        deferred = set()
        for event in state.buffer:
            if event.sequence <= sequence or not event.kind.is_order_event:
                continue
            if event.client_order_id:
                deferred.add(event.client_order_id)
            elif event.exchange_order_id:
                order = self.order_ledger.get_by_exchange_id(event.exchange_order_id)
                if order is not None:
                    deferred.add(order.client_order_id)
        return deferred

    def apply_snapshot(self, stream_id: str, snapshot: ExchangeSnapshot) -> Dict[str, int]:
        """
        Merge snapshot truth, rebase the cursor, replay buffered events.

        Synchronous: nothing else touches the ledgers while it runs.
        """
        with self._lock:
            state = self._state(stream_id)
            sequence = snapshot.sequence
            summary = {
                "orders_adopted": 0,
                "orders_replaced": 0,
                "orders_closed": 0,
                "positions_reset": 0,
                "replayed": 0,
                "discarded": 0,
            }

            present = []
            for snap_order in snapshot.orders:
                result = self.order_ledger.merge_snapshot_order(snap_order, sequence)
                present.append(result.client_order_id)
                if result.outcome == ApplyOutcome.ADOPTED:
                    summary["orders_adopted"] += 1
                elif result.outcome == ApplyOutcome.APPLIED:
                    summary["orders_replaced"] += 1
                self._publish_snapshot_order(result)

            scope = self._scope(state)
            cutoff = None
            if self.pending_grace_seconds is not None:
                cutoff = snapshot.taken_at - timedelta(seconds=self.pending_grace_seconds)
            deferred = self._deferred_orders(state, sequence)
            for result in self.order_ledger.resolve_absent_from_snapshot(present, scope, sequence, cutoff, deferred):
                summary["orders_closed"] += 1
                self._publish_snapshot_order(result)

            summary["positions_reset"] = self._merge_positions(snapshot, scope)

            state.cursor.reset(sequence)
            state.skipped = {s for s in state.skipped if s > sequence}
            buffered = sorted(state.buffer, key=lambda e: e.sequence)
            state.buffer.clear()
            # Internal only: replay must run through the normal apply path.
            state.health = StreamHealth.HEALTHY
            for event in buffered:
                if state.health == StreamHealth.HEALTHY and event.sequence <= state.cursor.position:
                    summary["discarded"] += 1
                    continue
                disposition = self._process(state, event)
                if disposition in (Disposition.APPLIED, Disposition.DEGRADED):
                    summary["replayed"] += 1

            if state.health == StreamHealth.HEALTHY:
                self._absorb_skipped(state)
            late_losses = [s for s in state.lost if s > sequence]
            state.lost.clear()
            if late_losses and state.health == StreamHealth.HEALTHY:
                self._degrade(state, "decode_failure")

            if state.health == StreamHealth.HEALTHY:
                state.reason = None
                self.notifier.publish(StreamHealthChanged(stream_id=stream_id, health=StreamHealth.HEALTHY.value))
                logger.info("RESYNC_COMPLETE", stream_id=stream_id, cursor=state.cursor.position)
            else:
                logger.warning("RESYNC_INCOMPLETE", stream_id=stream_id, reason=state.reason, cursor=state.cursor.position)

            logger.info("RECONCILE_SUMMARY", stream_id=stream_id, snapshot_seq=sequence, **summary)
            return summary

    def _scope(self, state: StreamState) -> Set[str]:
        """Instruments covered by a stream's snapshot; empty means all."""
        if state.stream_id == self._default_stream:
            return set()
        return set(state.instruments)

    def _publish_snapshot_order(self, result: ApplyResult) -> None:
        if result.changed:
            self.notifier.publish(OrderChanged(
                order=result.order,
                previous_status=result.previous_status,
                cause="snapshot",
                sequence=result.order.last_sequence,
            ))

    def _merge_positions(self, snapshot: ExchangeSnapshot, scope: Set[str]) -> int:
        sequence = snapshot.sequence
        if snapshot.fills is not None:
            rebuilt = self.position_ledger.replay(
                [f for f in snapshot.fills if not scope or f.instrument in scope],
                sequence,
            )
            for instrument in rebuilt:
                self.notifier.publish(PositionChanged(position=self.position_ledger.get_position(instrument), cause="replay"))
            return len(rebuilt)

        reported = {p.instrument: p for p in snapshot.positions if not scope or p.instrument in scope}
        known = {p.instrument for p in self.position_ledger.all_positions() if not scope or p.instrument in scope}
        recent: Dict[str, List[Fill]] = {}
        for fill in snapshot.recent_fills:
            if not scope or fill.instrument in scope:
                recent.setdefault(fill.instrument, []).append(fill)

        reset = 0
        for instrument in sorted(known | set(reported) | set(recent)):
            snap = reported.get(instrument)
            as_of = snap.updated_at if snap is not None and snap.updated_at is not None else snapshot.taken_at
            trades = sorted(recent.get(instrument, []), key=lambda f: f.timestamp)
            before = self.position_ledger.get_position(instrument)
            position = self.position_ledger.reset(
                instrument,
                snap.net_quantity if snap else ZERO,
                snap.average_entry_price if snap else None,
                sequence,
                included_fill_ids=[f.fill_id for f in trades if f.timestamp <= as_of],
            )
            later = [f for f in trades if f.timestamp > as_of]
            for fill in later:
                self.position_ledger.apply_fill(replace(fill, sequence=sequence))
            if later:
                logger.info("Fills after position snapshot applied", instrument=instrument, fills=len(later))
                position = self.position_ledger.get_position(instrument)
            if before is None or before.net_quantity != position.net_quantity or before.average_entry_price != position.average_entry_price:
                reset += 1
                self.notifier.publish(PositionChanged(position=position, cause="snapshot"))
        return reset

    # ========== METRICS ==========

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            streams = {
                stream_id: {
                    "health": state.health.value,
                    "cursor": state.cursor.position,
                    "buffered": len(state.buffer),
                    "requires_snapshot": state.requires_snapshot,
                    "reason": state.reason,
                }
                for stream_id, state in self._streams.items()
            }
        return {"streams": streams, "counters": self.metrics.snapshot()}
