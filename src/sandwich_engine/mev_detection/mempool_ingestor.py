"""
Mempool Ingestor.

Consumes the node feed and drives each pending swap through
decode -> evaluate -> screen -> execute on a fixed pool of worker tasks.
Reserve syncs go to the pool state cache, new heads cancel candidates whose
victim has been mined.
"""
import asyncio
import logging
import time
from collections import Counter, deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Set

from sandwich_engine.blockchain_connector.feed import FeedEvent, FeedEventKind, ReserveSync
from sandwich_engine.exceptions import DecodeError, FeedDisconnectedError, StaleStateError
from sandwich_engine.pool_state.cache import PoolStateCache
from .opportunity_evaluator import OpportunityEvaluator
from .opportunity_models import PendingSwapIntent, RawTransaction
from .swap_decoder import SwapDecoder

logger = logging.getLogger(__name__)


@dataclass
class IngestorConfig:
    """Candidate pipeline sizing."""
    worker_count: int = 8
    queue_capacity: int = 256

    # Candidates older than this are worthless
    horizon_seconds: float = 24.0

    # Interval between resyncs of stale pools
    resync_interval: float = 12.0

    mined_hash_memory: int = 20_000


class MempoolIngestor:
    """
    Bounded candidate pipeline.

    When the queue is full the oldest queued intent is shed to make room for
    the newest one.
    """

    def __init__(
        self,
        feed,
        decoder: SwapDecoder,
        cache: PoolStateCache,
        evaluator: OpportunityEvaluator,
        screener,
        coordinator,
        node,
        config: Optional[IngestorConfig] = None
    ):
        self.feed = feed
        self.decoder = decoder
        self.cache = cache
        self.evaluator = evaluator
        self.screener = screener
        self.coordinator = coordinator
        self.node = node
        self.config = config or IngestorConfig()

        self.queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.queue_capacity)
        self.in_flight: Dict[str, asyncio.Task] = {}
        self._intents: Dict[str, PendingSwapIntent] = {}
        self._mined: Set[str] = set()
        self._mined_order: Deque[str] = deque()
        self._tasks: List[asyncio.Task] = []
        self._head_tasks: Set[asyncio.Task] = set()
        self._saturated = False

        self.is_running = False
        self.fatal_error: Optional[BaseException] = None
        self.decode_rejects: Counter = Counter()
        self.stats = {
            "transactions_received": 0,
            "intents_decoded": 0,
            "candidates_shed": 0,
            "candidates_expired": 0,
            "candidates_mined": 0,
            "candidates_stale": 0,
            "opportunities_found": 0,
            "safety_rejections": 0,
            "bundles_dispatched": 0,
            "pools_resynced": 0
        }

    async def start(self):
        """Start the worker pool, the feed consumer and the stale-pool resync loop."""
        if self.is_running:
            logger.warning("Mempool ingestor already running")
            return

        self.is_running = True
        for index in range(self.config.worker_count):
            self._tasks.append(asyncio.create_task(self._worker(index)))
        self._tasks.append(asyncio.create_task(self._resync_loop()))
        self._tasks.append(asyncio.create_task(self.run_feed()))
        logger.info(f"Mempool ingestor started with {self.config.worker_count} workers")

    async def stop(self):
        self.is_running = False
        pending = list(self.in_flight.values()) + self._tasks + list(self._head_tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self.in_flight.clear()
        self._head_tasks.clear()
        self._tasks.clear()
        logger.info("Mempool ingestor stopped")

    async def run_feed(self):
        """
        Dispatch feed events until the feed is lost.

        Raises:
            FeedDisconnectedError: surfaced to the service layer
        """
        try:
            async for event in self.feed.events():
                await self.handle_event(event)
        except FeedDisconnectedError as e:
            self.fatal_error = e
            self.is_running = False
            logger.error(f"Pending-transaction feed disconnected: {e}")
            raise

    async def handle_event(self, event: FeedEvent):
        if event.kind == FeedEventKind.PENDING_TX:
            self.handle_pending_transaction(event.payload, event.received_at)
        elif event.kind == FeedEventKind.RESERVE_SYNC:
            self.handle_reserve_sync(event.payload)
        elif event.kind == FeedEventKind.NEW_HEAD:
            # Block reads run off the feed loop
            task = asyncio.create_task(self.handle_new_head(event.payload))
            self._head_tasks.add(task)
            task.add_done_callback(self._head_tasks.discard)

    def handle_pending_transaction(self, tx_data: Dict[str, Any], received_at: Optional[float] = None):
        self.stats["transactions_received"] += 1
        tx = RawTransaction.from_rpc(tx_data, observed_at=received_at)
        if tx.hash in self._mined or tx.hash in self._intents:
            return

        try:
            intent = self.decoder.decode(tx)
        except DecodeError as e:
            self.decode_rejects[e.reason] += 1
            return

        self.stats["intents_decoded"] += 1
        self.enqueue(intent)

    def enqueue(self, intent: PendingSwapIntent):
        """Queue an intent, shedding the oldest queued one when full."""
        if self.queue.full():
            shed = self.queue.get_nowait()
            self.queue.task_done()
            self._intents.pop(shed.tx_hash, None)
            self.stats["candidates_shed"] += 1
            if not self._saturated:
                self._saturated = True
                logger.warning(f"Worker pool saturated, shedding oldest candidates (capacity {self.config.queue_capacity})")
        elif self._saturated and self.queue.qsize() < self.config.queue_capacity // 2:
            self._saturated = False
            logger.info("Worker pool recovered from saturation")

        self._intents[intent.tx_hash] = intent
        self.queue.put_nowait(intent)

    def handle_reserve_sync(self, sync: ReserveSync):
        self.cache.enqueue_update(sync.pool_id, sync.reserve0, sync.reserve1)

    async def handle_new_head(self, block_number: int):
        """Cancel candidates mined in the new block and those past the horizon."""
        try:
            mined = await self.node.get_block_transaction_hashes(block_number)
        except Exception as e:
            logger.warning(f"Could not read transactions of block {block_number}: {e}")
            mined = []

        for tx_hash in mined:
            self._remember_mined(tx_hash.lower())
            task = self.in_flight.get(tx_hash.lower())
            if task is not None and not task.done():
                task.cancel()
                self.stats["candidates_mined"] += 1

        now = time.time()
        for tx_hash, task in list(self.in_flight.items()):
            intent = self._intents.get(tx_hash)
            if intent is not None and intent.is_expired(self.config.horizon_seconds, now) and not task.done():
                task.cancel()
                self.stats["candidates_expired"] += 1

    def _remember_mined(self, tx_hash: str):
        if tx_hash in self._mined:
            return
        self._mined.add(tx_hash)
        self._mined_order.append(tx_hash)
        while len(self._mined_order) > self.config.mined_hash_memory:
            self._mined.discard(self._mined_order.popleft())

    async def _worker(self, index: int):
        while True:
            intent = await self.queue.get()
            try:
                if intent.tx_hash in self._mined:
                    self.stats["candidates_mined"] += 1
                    continue

                task = asyncio.create_task(self.process(intent))
                self.in_flight[intent.tx_hash] = task
                try:
                    await task
                except asyncio.CancelledError:
                    # Candidate cancelled; the worker itself keeps running
                    if not self.is_running or not task.cancelled():
                        raise
                except Exception as e:
                    logger.error(f"Worker {index} failed on {intent.tx_hash[:10]}...: {e}")
            finally:
                self.in_flight.pop(intent.tx_hash, None)
                self._intents.pop(intent.tx_hash, None)
                self.queue.task_done()

    async def process(self, intent: PendingSwapIntent):
        """Run one candidate through evaluate -> screen -> execute."""
        if intent.is_expired(self.config.horizon_seconds):
            self.stats["candidates_expired"] += 1
            return

        try:
            opportunity = self.evaluator.evaluate(intent)
        except StaleStateError as e:
            self.stats["candidates_stale"] += 1
            logger.debug(f"Discarding {intent.tx_hash[:10]}...: {e}")
            return
        if opportunity is None:
            return
        self.stats["opportunities_found"] += 1

        snapshot = self.cache.get(intent.pool_id)
        verdict = await self.screener.screen(opportunity.target_token, opportunity.backrun_amount, snapshot)
        if not verdict.is_approved:
            self.stats["safety_rejections"] += 1
            return

        self.coordinator.submit(opportunity, verdict)
        self.stats["bundles_dispatched"] += 1

    async def _resync_loop(self):
        while True:
            await asyncio.sleep(self.config.resync_interval)
            await self.resync_stale_pools()

    async def resync_stale_pools(self):
        """Replace stale pools' reserves with authoritative node reads."""
        for pool_id in self.cache.stale_pools():
            try:
                reserve0, reserve1 = await self.node.get_reserves(pool_id)
                self.cache.resync(pool_id, reserve0, reserve1)
                self.stats["pools_resynced"] += 1
            except Exception as e:
                logger.warning(f"Resync of pool {pool_id} failed: {e}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "queue_depth": self.queue.qsize(),
            "in_flight": len(self.in_flight),
            "decode_rejects": dict(self.decode_rejects)
        }
