"""
Stream processing and component wiring.

Each exchange stream gets one asyncio queue and one consumer task. The
consumer normalizes raw messages and hands them to the reconciliation
engine one at a time, so events of a stream are applied strictly in
arrival order and a ledger mutation never interleaves with another.

``TradingCore`` builds every component from a ``Config`` and exposes the
strategy-facing gateway.
"""
from typing import Any, Dict, Optional
import asyncio

from usdm_core.config.config import Config
from usdm_core.data.binance_client import BinanceUsdmTransport
from usdm_core.data.normalizer import BinanceUsdmNormalizer, Normalizer
from usdm_core.data.orderbook import MarketBook
from usdm_core.data.sequence_stamper import SequenceStamper
from usdm_core.domain.events import MARKET_STREAM, USER_STREAM, RawMessage
from usdm_core.domain.protocols import Transport
from usdm_core.exceptions import DecodeFailure, SnapshotFetchError
from usdm_core.execution.command_gateway import CommandGateway
from usdm_core.execution.notifier import ChangeNotifier
from usdm_core.execution.order_ledger import OrderLedger
from usdm_core.execution.position_ledger import PositionLedger
from usdm_core.monitoring.logger import get_logger, setup_logging
from usdm_core.monitoring.metrics import MetricsCollector
from usdm_core.reconciliation.engine import ReconciliationEngine

logger = get_logger(__name__)


class StreamProcessor:
    """Single consumer for one stream's raw messages."""

    def __init__(
        self,
        stream_id: str,
        normalizer: Normalizer,
        engine: ReconciliationEngine,
        *,
        queue_size: int = 10000,
    ):
        self.stream_id = stream_id
        self.normalizer = normalizer
        self.engine = engine
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.processed = 0
        self.error: Optional[BaseException] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"stream-{self.stream_id}")
        logger.info("Stream processor started", stream_id=self.stream_id)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        # A halted consumer already logged its error and kept it in self.error
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Stream processor stopped", stream_id=self.stream_id, processed=self.processed)

    async def put(self, raw: RawMessage) -> None:
        """Enqueue a raw message; waits when the queue is full (backpressure)."""
        if raw.stream_id != self.stream_id:
            raise ValueError(f"Message for stream {raw.stream_id} sent to {self.stream_id}")
        if self.error is not None:
            raise RuntimeError(f"Stream processor {self.stream_id} halted") from self.error
        await self.queue.put(raw)

    async def join(self) -> None:
        """Wait until every queued message has been processed."""
        if self.running:
            await self.queue.join()

    async def _run(self) -> None:
        while True:
            raw = await self.queue.get()
            try:
                try:
                    event = self.normalizer.decode_raw(raw)
                except DecodeFailure as e:
                    self.normalizer.report_failure(raw, e)
                    self.engine.skip(raw.stream_id, raw.sequence, lost=True)
                else:
                    if event is None:
                        self.engine.skip(raw.stream_id, raw.sequence)
                    else:
                        self.engine.process(event)
                self.processed += 1
            except Exception as e:
                self.error = e
                logger.critical(
                    "STREAM_PROCESSOR_HALTED",
                    stream_id=self.stream_id,
                    seq=raw.sequence,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                # Nothing more is applied; release waiters on queue.join()
                while not self.queue.empty():
                    self.queue.get_nowait()
                    self.queue.task_done()
                raise
            finally:
                self.queue.task_done()


class TradingCore:
    """
    Wires transport, normalizer, ledgers, reconciliation engine, gateway and
    one processor per stream.

    Usage:
        core = TradingCore.from_config(load_config())
        await core.start()
        await core.feed(USER_STREAM, raw_json)
        order = await core.gateway.submit(intent)
    """

    def __init__(
        self,
        transport: Transport,
        config: Optional[Config] = None,
        *,
        normalizer: Optional[Normalizer] = None,
        stamper: Optional[SequenceStamper] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or Config()
        self.transport = transport
        transport_stamper = getattr(transport, "stamper", None)
        if stamper is None:
            stamper = transport_stamper if isinstance(transport_stamper, SequenceStamper) else SequenceStamper()
        self.stamper = stamper
        self.metrics = metrics or MetricsCollector()
        self.normalizer = normalizer or BinanceUsdmNormalizer(self.metrics)

        recon = self.config.reconciliation
        monitoring = self.config.monitoring
        self.notifier = ChangeNotifier(queue_size=monitoring.notification_queue_size)
        self.market_book = MarketBook()
        self.order_ledger = OrderLedger()
        self.position_ledger = PositionLedger(decimal_precision=self.config.ledger.decimal_precision)
        self.engine = ReconciliationEngine(
            self.order_ledger,
            self.position_ledger,
            transport,
            notifier=self.notifier,
            metrics=self.metrics,
            market_book=self.market_book,
            max_buffered_events=recon.max_buffered_events,
            snapshot_timeout_seconds=recon.snapshot_timeout_seconds,
            pending_grace_seconds=recon.pending_grace_seconds,
        )
        self.engine.register_stream(USER_STREAM, requires_snapshot=True, instruments=self.config.exchange.instruments)
        self.engine.register_stream(MARKET_STREAM, requires_snapshot=False)
        self.gateway = CommandGateway(
            self.order_ledger,
            self.position_ledger,
            self.engine,
            transport,
            notifier=self.notifier,
            metrics=self.metrics,
            market_book=self.market_book,
            client_id_prefix=self.config.gateway.client_id_prefix,
        )
        self.processors: Dict[str, StreamProcessor] = {
            stream_id: StreamProcessor(stream_id, self.normalizer, self.engine, queue_size=monitoring.stream_queue_size)
            for stream_id in (USER_STREAM, MARKET_STREAM)
        }
        self._resync_tasks: Dict[str, asyncio.Task] = {}
        self._metrics_task: Optional[asyncio.Task] = None
        self.active = False

    @classmethod
    def from_config(cls, config: Config) -> "TradingCore":
        """Build with a Binance USDⓈ-M transport and configure logging."""
        setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
        stamper = SequenceStamper()
        transport = BinanceUsdmTransport(
            config.exchange.api_key,
            config.exchange.api_secret,
            use_testnet=config.exchange.use_testnet,
            stamper=stamper,
            recv_window_ms=config.exchange.recv_window_ms,
            request_timeout_ms=config.exchange.request_timeout_ms,
            instruments=config.exchange.instruments,
            trade_lookback_seconds=config.exchange.trade_lookback_seconds,
        )
        return cls(transport, config, stamper=stamper)

    # ========== LIFECYCLE ==========

    async def start(self) -> None:
        """
        Start stream consumers. With ``sync_on_start`` the user stream is
        resynced first so orders that predate the session are known.

        Raises:
            SnapshotFetchError if the startup snapshot cannot be fetched
        """
        if self.active:
            return
        if self.config.reconciliation.auto_resync:
            self.engine.set_resync_handler(self._schedule_resync)
        if self.config.reconciliation.sync_on_start:
            await self.engine.resync(USER_STREAM)
        for processor in self.processors.values():
            processor.start()
        interval = self.config.monitoring.metrics_log_interval_seconds
        if interval:
            self._metrics_task = asyncio.create_task(self._log_metrics(interval))
        self.active = True
        logger.info("TradingCore started", streams=list(self.processors))

    async def stop(self) -> None:
        self.active = False
        self.engine.set_resync_handler(None)
        tasks = list(self._resync_tasks.values())
        if self._metrics_task is not None:
            tasks.append(self._metrics_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._resync_tasks.clear()
        self._metrics_task = None
        for processor in self.processors.values():
            await processor.stop()
        await self.notifier.drain()
        self.metrics.log_summary()
        logger.info("TradingCore stopped")

    # ========== FEED ==========

    async def feed(self, stream_id: str, payload: Any) -> RawMessage:
        """Stamp and enqueue one raw exchange message."""
        raw = self.stamper.stamp(stream_id, payload)
        await self.feed_raw(raw)
        return raw

    async def feed_raw(self, raw: RawMessage) -> None:
        processor = self.processors.get(raw.stream_id)
        if processor is None:
            raise KeyError(f"Unknown stream: {raw.stream_id}")
        await processor.put(raw)

    async def drain(self) -> None:
        """Wait until queued messages, resyncs and async subscribers are done."""
        for processor in self.processors.values():
            await processor.join()
        while self._resync_tasks:
            await asyncio.gather(*list(self._resync_tasks.values()), return_exceptions=True)
            for processor in self.processors.values():
                await processor.join()
        await self.notifier.drain()

    # ========== RESYNC ==========

    def _schedule_resync(self, stream_id: str) -> None:
        task = self._resync_tasks.get(stream_id)
        if task is not None and not task.done():
            return
        task = asyncio.get_running_loop().create_task(self._run_resync(stream_id), name=f"resync-{stream_id}")
        self._resync_tasks[stream_id] = task
        task.add_done_callback(lambda t, sid=stream_id: self._resync_done(sid, t))

    def _resync_done(self, stream_id: str, task: asyncio.Task) -> None:
        if self._resync_tasks.get(stream_id) is task:
            del self._resync_tasks[stream_id]

    async def _run_resync(self, stream_id: str) -> None:
        retry = self.config.reconciliation.resync_retry_seconds
        while True:
            try:
                await self.engine.resync(stream_id)
            except SnapshotFetchError as e:
                if retry is None or not self.active:
                    logger.error("Resync abandoned, stream stays degraded", stream_id=stream_id, error=str(e))
                    return
                logger.warning("Resync failed, retrying", stream_id=stream_id, retry_in=retry, error=str(e))
                await asyncio.sleep(retry)
                continue
            # Replay may have found a new gap
            if not self.engine.needs_resync(stream_id):
                return

    async def _log_metrics(self, interval: int) -> None:
        while True:
            await asyncio.sleep(interval)
            self.metrics.log_summary()

    # ========== STATUS ==========

    @property
    def halted(self) -> bool:
        return any(p.error is not None for p in self.processors.values())

    def get_metrics(self) -> Dict[str, Any]:
        metrics = self.engine.get_metrics()
        metrics["queues"] = {
            stream_id: {"depth": p.queue.qsize(), "processed": p.processed, "halted": p.error is not None}
            for stream_id, p in self.processors.items()
        }
        return metrics
