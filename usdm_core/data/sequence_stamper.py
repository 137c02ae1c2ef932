"""
Per-stream sequence stamping.

Binance user-data messages carry no contiguous sequence number, so the
transport numbers every message it delivers, per stream, from 1. A gap in
the stamped sequence can only come from the transport dropping a message;
a reconnect is announced with a stamped ``streamReconnected`` message so
the engine resyncs.
"""
from typing import Any, Dict
import threading
import time

from usdm_core.domain.events import RawMessage


class SequenceStamper:
    """Contiguous, never-restarting sequence numbers per stream."""

    def __init__(self):
        self._last: Dict[str, int] = {}
        self._lock = threading.Lock()

    def stamp(self, stream_id: str, payload: Any) -> RawMessage:
        with self._lock:
            sequence = self._last.get(stream_id, 0) + 1
            self._last[stream_id] = sequence
        return RawMessage(stream_id=stream_id, sequence=sequence, payload=payload)

    def current(self, stream_id: str) -> int:
        """Last sequence handed out; used as the snapshot marker."""
        with self._lock:
            return self._last.get(stream_id, 0)

    def reconnected(self, stream_id: str) -> RawMessage:
        """Stamp the reset message a transport emits after re-opening a socket."""
        return self.stamp(stream_id, {"e": "streamReconnected", "E": int(time.time() * 1000)})
