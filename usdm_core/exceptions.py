"""
Custom exception hierarchy for the order/position state core.

Hierarchy:

    TradingCoreError (base)
    ├── OperationalError      — transient/retryable by the caller (exchange, network)
    │   ├── TransportFailure  — submit/cancel/amend RPC failed
    │   └── SnapshotFetchError — resync snapshot could not be fetched
    ├── DataError             — bad input, drop the message
    │   └── DecodeFailure
    ├── StreamIntegrityError  — stream noise, absorbed by the reconciliation engine
    │   ├── DuplicateEvent
    │   ├── SequenceGap
    │   └── OrphanEvent
    ├── CommandRejected       — strategy command refused, surfaced to caller
    │   ├── InvalidTransition
    │   ├── StreamDegraded
    │   ├── DuplicateClientId
    │   └── OrderNotFound
    └── InvariantError        — ledger invariant violated, halt

Rules:
    - OperationalError: surfaced upward, the core never retries transport calls.
      Retry policy belongs to the transport / operator.
    - DataError: log, count, drop the message, keep the pipeline running.
    - StreamIntegrityError: handled inside the reconciliation engine
      (duplicates dropped, gaps and orphans trigger a resync).
    - CommandRejected: returned to the strategy caller, ledger untouched.
    - InvariantError: never caught and silently continued.
"""
from typing import Optional


class TradingCoreError(Exception):
    """Base exception for all state core errors."""
    pass


# ============ OPERATIONAL (transient, caller retries) ============

class OperationalError(TradingCoreError):
    """Transient error at the transport boundary."""
    pass


class TransportFailure(OperationalError):
    """Submit/cancel/amend call failed in transport.

    Does not mutate ledger state. Only a later event or a resync does.
    """
    pass


class SnapshotFetchError(OperationalError):
    """Snapshot fetch failed during resync. Stream stays degraded."""

    def __init__(self, stream_id: str, message: str):
        self.stream_id = stream_id
        super().__init__(f"Snapshot fetch failed for stream {stream_id}: {message}")


# ============ DATA (bad input, drop) ============

class DataError(TradingCoreError):
    """Bad data from the exchange feed."""
    pass


class DecodeFailure(DataError):
    """Raw message could not be decoded into a normalized event."""

    def __init__(self, message: str, *, stream_id: Optional[str] = None, sequence: Optional[int] = None):
        self.stream_id = stream_id
        self.sequence = sequence
        super().__init__(message)


# ============ STREAM INTEGRITY (absorbed internally) ============

class StreamIntegrityError(TradingCoreError):
    """Stream delivery problem detected by sequence or identity checks."""
    pass


class DuplicateEvent(StreamIntegrityError):
    """Event already represented in state (sequence or fill id seen)."""

    def __init__(self, stream_id: str, sequence: int, cursor: int):
        self.stream_id = stream_id
        self.sequence = sequence
        self.cursor = cursor
        super().__init__(f"Duplicate event on {stream_id}: seq={sequence} cursor={cursor}")


class SequenceGap(StreamIntegrityError):
    """Observed sequence skipped past cursor + 1."""

    def __init__(self, stream_id: str, expected: int, observed: int):
        self.stream_id = stream_id
        self.expected = expected
        self.observed = observed
        super().__init__(f"Sequence gap on {stream_id}: expected {expected}, observed {observed}")


class OrphanEvent(StreamIntegrityError):
    """Event references an order the ledger does not know.

    Implies missed state; the reconciliation engine degrades the stream.
    """

    def __init__(self, client_order_id: Optional[str], exchange_order_id: Optional[str], sequence: Optional[int] = None):
        self.client_order_id = client_order_id
        self.exchange_order_id = exchange_order_id
        self.sequence = sequence
        super().__init__(
            f"Orphan event: client_order_id={client_order_id} exchange_order_id={exchange_order_id} seq={sequence}"
        )


# ============ COMMANDS (surfaced to caller) ============

class CommandRejected(TradingCoreError):
    """Strategy command refused by the gateway."""
    pass


class InvalidTransition(CommandRejected):
    """Command not permitted in the order's current status."""

    def __init__(self, client_order_id: str, status: str, command: str):
        self.client_order_id = client_order_id
        self.status = status
        self.command = command
        super().__init__(f"Cannot {command} order {client_order_id} in status {status}")


class StreamDegraded(CommandRejected):
    """Instrument's stream is under reconciliation; commands refused."""

    def __init__(self, instrument: str, stream_id: str, health: str):
        self.instrument = instrument
        self.stream_id = stream_id
        self.health = health
        super().__init__(f"Stream {stream_id} for {instrument} is {health}; commands refused until resync")


class DuplicateClientId(CommandRejected):
    """Generated client order id collides with an existing order."""
    pass


class OrderNotFound(CommandRejected):
    """No order with the given client order id."""
    pass


# ============ INVARIANT (halt) ============

class InvariantError(TradingCoreError):
    """Ledger invariant violated. Halt immediately.

    This should never be caught and silently continued.
    """
    pass
