"""
Pool State Cache.

Single source of truth for the reserves of every tracked pool. Each pool has
exactly one writer task that drains that pool's update queue; readers get
immutable snapshots and never wait on I/O.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sandwich_engine.exceptions import CorruptFeedError, PoolNotTrackedError
from .models import PoolInfo, PoolKind, PoolReserves
from .registry import PoolRegistry

logger = logging.getLogger(__name__)


@dataclass
class PoolCacheConfig:
    """Configuration for the pool state cache."""

    # Relative change of reserve0 * reserve1 accepted from the sync feed
    invariant_tolerance: Decimal = Decimal("0.10")

    # Pending updates per pool before the writer falls behind
    max_pending_updates: int = 1000


class PoolStateCache:
    """
    Versioned reserve cache with single-writer-per-pool discipline.

    `apply` is synchronous, so on the event loop every write is atomic and the
    version sequence of a pool is linearizable. The sync feed does not call
    `apply` directly; it hands updates to `enqueue_update`, and the pool's
    dedicated writer task applies them in arrival order.
    """

    def __init__(self, registry: PoolRegistry, config: Optional[PoolCacheConfig] = None):
        self.registry = registry
        self.config = config or PoolCacheConfig()

        self._snapshots: Dict[str, PoolReserves] = {}
        self._queues: Dict[str, asyncio.Queue] = {}
        self._writers: Dict[str, asyncio.Task] = {}
        self.is_running = False

        self.stats = {
            "updates_applied": 0,
            "updates_rejected": 0,
            "resyncs": 0
        }

    # Read path

    def get(self, pool_id: str) -> PoolReserves:
        """Return the latest snapshot, or raise PoolNotTrackedError."""
        snapshot = self._snapshots.get(pool_id.lower())
        if snapshot is None:
            raise PoolNotTrackedError(pool_id)
        return snapshot

    def version(self, pool_id: str) -> int:
        return self.get(pool_id).version

    def is_tracked(self, pool_id: str) -> bool:
        return pool_id.lower() in self._snapshots

    def stale_pools(self) -> List[str]:
        return [pool_id for pool_id, snap in self._snapshots.items() if snap.stale]

    # Write path

    def seed(self, pool: PoolInfo, reserve0: int, reserve1: int) -> PoolReserves:
        """Start tracking a pool from an authoritative reserve read."""
        if reserve0 < 0 or reserve1 < 0:
            raise CorruptFeedError(pool.pool_id, "negative reserve")

        if self.registry.get(pool.pool_id) is None:
            self.registry.add(pool)

        snapshot = PoolReserves(
            pool_id=pool.pool_id,
            token0=pool.token0,
            token1=pool.token1,
            reserve0=reserve0,
            reserve1=reserve1,
            fee_bps=pool.fee_bps,
            version=0,
            kind=pool.kind
        )
        self._snapshots[pool.pool_id] = snapshot
        if self.is_running and pool.pool_id not in self._writers:
            self._start_writer(pool.pool_id)
        return snapshot

    def apply(self, pool_id: str, reserve0: int, reserve1: int) -> PoolReserves:
        """
        Apply a reserve update from the state-change feed.

        Bumps the version. An update with a negative reserve, or one that moves
        the constant product beyond the configured tolerance, marks the pool
        stale instead of updating it and raises CorruptFeedError.
        """
        current = self.get(pool_id)

        reason = self._validate_update(current, reserve0, reserve1)
        if reason is not None:
            self._snapshots[current.pool_id] = replace(
                current,
                version=current.version + 1,
                stale=True,
                last_updated_at=time.time()
            )
            self.stats["updates_rejected"] += 1
            logger.warning(f"Marking pool {current.pool_id} stale: {reason}")
            raise CorruptFeedError(current.pool_id, reason)

        snapshot = replace(
            current,
            reserve0=reserve0,
            reserve1=reserve1,
            version=current.version + 1,
            last_updated_at=time.time()
        )
        self._snapshots[current.pool_id] = snapshot
        self.stats["updates_applied"] += 1
        return snapshot

    def resync(self, pool_id: str, reserve0: int, reserve1: int) -> PoolReserves:
        """Replace reserves with an authoritative node read and clear the stale flag."""
        current = self.get(pool_id)
        if reserve0 < 0 or reserve1 < 0:
            raise CorruptFeedError(current.pool_id, "negative reserve")

        snapshot = replace(
            current,
            reserve0=reserve0,
            reserve1=reserve1,
            version=current.version + 1,
            stale=False,
            last_updated_at=time.time()
        )
        self._snapshots[current.pool_id] = snapshot
        self.stats["resyncs"] += 1
        logger.info(f"Resynced pool {current.pool_id} at version {snapshot.version}")
        return snapshot

    def _validate_update(self, current: PoolReserves, reserve0: int, reserve1: int) -> Optional[str]:
        if reserve0 < 0 or reserve1 < 0:
            return "negative reserve"

        # Only constant-product pools carry a k = x * y relationship
        if current.kind != PoolKind.CONSTANT_PRODUCT or current.stale:
            return None

        previous_k = current.invariant
        if previous_k == 0:
            return None

        change = abs(Decimal(reserve0 * reserve1) / Decimal(previous_k) - 1)
        if change > self.config.invariant_tolerance:
            return f"invariant moved {change:.2%}"
        return None

    # Writer tasks

    async def start(self):
        """Start one writer task per tracked pool."""
        if self.is_running:
            logger.warning("Pool state cache already running")
            return

        self.is_running = True
        for pool_id in self._snapshots:
            self._start_writer(pool_id)
        logger.info(f"Pool state cache started with {len(self._writers)} writers")

    async def stop(self):
        """Cancel all writer tasks."""
        self.is_running = False
        for task in self._writers.values():
            task.cancel()
        await asyncio.gather(*self._writers.values(), return_exceptions=True)
        self._writers.clear()
        self._queues.clear()
        logger.info("Pool state cache stopped")

    def enqueue_update(self, pool_id: str, reserve0: int, reserve1: int) -> bool:
        """Hand a feed update to the pool's writer. Returns False if the pool is not tracked."""
        queue = self._queues.get(pool_id.lower())
        if queue is None:
            return False
        try:
            queue.put_nowait((reserve0, reserve1))
        except asyncio.QueueFull:
            logger.warning(f"Update queue full for pool {pool_id}, dropping update")
            return False
        return True

    async def drain(self):
        """Wait until every writer has applied its queued updates."""
        await asyncio.gather(*(queue.join() for queue in self._queues.values()))

    def _start_writer(self, pool_id: str):
        queue: asyncio.Queue[Tuple[int, int]] = asyncio.Queue(maxsize=self.config.max_pending_updates)
        self._queues[pool_id] = queue
        self._writers[pool_id] = asyncio.create_task(self._pool_writer(pool_id, queue))

    async def _pool_writer(self, pool_id: str, queue: asyncio.Queue):
        """Sole writer for one pool."""
        while True:
            reserve0, reserve1 = await queue.get()
            try:
                self.apply(pool_id, reserve0, reserve1)
            except CorruptFeedError:
                # Pool is now stale; resync clears it
                pass
            finally:
                queue.task_done()

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "pools_tracked": len(self._snapshots),
            "pools_stale": len(self.stale_pools()),
            "writers_active": len(self._writers)
        }
