"""
Per-stream sequence cursor.

Tracks the last contiguous sequence applied on one stream and classifies
each incoming sequence as next, duplicate or gap.
"""
from enum import Enum

from usdm_core.exceptions import DuplicateEvent, SequenceGap


class StreamHealth(str, Enum):
    """Stream reconciliation state."""
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"      # gap/orphan seen, waiting for resync
    RESYNCING = "RESYNCING"    # snapshot fetch/merge in progress


class SequenceCursor:
    """
    Last contiguous sequence applied for one stream.

    Strictly increasing except on ``reset`` after a snapshot resync.
    Transports stamp from 1, so a fresh cursor sits at 0.
    """

    def __init__(self, stream_id: str, position: int = 0):
        self.stream_id = stream_id
        self.position = position

    @property
    def expected(self) -> int:
        return self.position + 1

    def check(self, sequence: int) -> None:
        """
        Raises:
            DuplicateEvent if sequence <= cursor
            SequenceGap if sequence > cursor + 1
        """
        if sequence <= self.position:
            raise DuplicateEvent(self.stream_id, sequence, self.position)
        if sequence > self.position + 1:
            raise SequenceGap(self.stream_id, self.position + 1, sequence)

    def advance(self, sequence: int) -> None:
        if sequence <= self.position:
            raise ValueError(f"Cursor for {self.stream_id} cannot move back: {self.position} -> {sequence}")
        self.position = sequence

    def reset(self, sequence: int) -> None:
        """Rebase on a snapshot sequence."""
        self.position = sequence

    def __repr__(self) -> str:
        return f"SequenceCursor(stream_id={self.stream_id!r}, position={self.position})"
