"""
Change notifier: pushes order/position/stream-health changes to strategy
subscribers after each applied mutation.

Publishing is synchronous (called from inside the stream consumer);
coroutine callbacks are scheduled on the running loop. A subscriber that
raises is logged and never interrupts ledger processing.
"""
from typing import AsyncIterator, List, Set
import asyncio

from usdm_core.domain.events import ChangeNotification
from usdm_core.domain.protocols import ChangeListener
from usdm_core.monitoring.logger import get_logger

logger = get_logger(__name__)


class ChangeNotifier:
    """Fan-out of change notifications to callbacks and async iterators."""

    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._listeners: List[ChangeListener] = []
        self._queues: List[asyncio.Queue] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, callback: ChangeListener) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    def unsubscribe(self, callback: ChangeListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners) + len(self._queues)

    def publish(self, notification: ChangeNotification) -> None:
        for callback in list(self._listeners):
            try:
                result = callback(notification)
                if asyncio.iscoroutine(result):
                    self._schedule(result, notification)
            except Exception as e:
                logger.error(
                    "Change subscriber failed (non-fatal)",
                    notification=type(notification).__name__,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        for queue in list(self._queues):
            if queue.full():
                # Slow consumer: drop its oldest notification
                queue.get_nowait()
                logger.warning("Change queue full, oldest notification dropped")
            queue.put_nowait(notification)

    def _schedule(self, coro, notification: ChangeNotification) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning(
                "Async subscriber skipped, no running loop",
                notification=type(notification).__name__,
            )
            return
        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Async change subscriber failed (non-fatal)",
                error=str(error),
                error_type=type(error).__name__,
            )

    async def changes(self) -> AsyncIterator[ChangeNotification]:
        """
        Async iterator over notifications published once iteration has started.

        Usage:
            async for change in notifier.changes():
                ...
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._queues.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.remove(queue)

    async def drain(self) -> None:
        """Wait for scheduled async callbacks to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
