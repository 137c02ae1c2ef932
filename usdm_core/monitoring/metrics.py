"""
In-process counters for stream integrity and command outcomes.
"""
from collections import Counter
from typing import Dict, Optional
import threading

from usdm_core.monitoring.logger import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """
    Counter registry shared by the normalizer, engine and gateway.

    Counters are keyed by name and optionally by stream, e.g.
    ``decode_failures`` or ``sequence_gaps[user]``.
    """

    def __init__(self):
        self._counters: Counter = Counter()
        self._lock = threading.Lock()

    @staticmethod
    def _key(name: str, stream_id: Optional[str]) -> str:
        return f"{name}[{stream_id}]" if stream_id else name

    def increment(self, name: str, stream_id: Optional[str] = None, amount: int = 1) -> int:
        """Increment a counter and its stream-less total. Returns the new total."""
        with self._lock:
            if stream_id:
                self._counters[self._key(name, stream_id)] += amount
            self._counters[name] += amount
            return self._counters[name]

    def get(self, name: str, stream_id: Optional[str] = None) -> int:
        with self._lock:
            return self._counters.get(self._key(name, stream_id), 0)

    def snapshot(self) -> Dict[str, int]:
        """Copy of all counters."""
        with self._lock:
            return dict(self._counters)

    def record_decode_failure(self, reason: str, stream_id: Optional[str] = None) -> None:
        total = self.increment("decode_failures", stream_id)
        logger.warning("DECODE_FAILURE", stream_id=stream_id, reason=reason, total=total)

    def log_summary(self) -> None:
        logger.info("METRICS_SUMMARY", **self.snapshot())
