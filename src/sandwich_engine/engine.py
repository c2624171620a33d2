"""Sandwich engine assembly and lifecycle."""
import logging
from typing import Any, Dict, Optional

from .blockchain_connector import NodeClient, Web3SubscriptionFeed
from .cache import close_redis, get_redis
from .config.settings import EngineSettings
from .execution import (
    BuilderClient,
    ExecutionCoordinator,
    SettlementSigner,
    TokenCircuitBreaker,
)
from .mev_detection import MempoolIngestor, OpportunityEvaluator, SwapDecoder
from .pool_state import PoolRegistry, PoolStateCache
from .safety import RedisVerdictStore, TokenScreener

logger = logging.getLogger(__name__)


class SandwichEngine:
    """Wires node, cache, pipeline and execution together."""

    def __init__(self, settings: EngineSettings):
        self.settings = settings
        self.node: Optional[NodeClient] = None
        self.registry: Optional[PoolRegistry] = None
        self.cache: Optional[PoolStateCache] = None
        self.decoder: Optional[SwapDecoder] = None
        self.evaluator: Optional[OpportunityEvaluator] = None
        self.screener: Optional[TokenScreener] = None
        self.builder: Optional[BuilderClient] = None
        self.coordinator: Optional[ExecutionCoordinator] = None
        self.ingestor: Optional[MempoolIngestor] = None
        self.is_initialized = False

    async def initialize(self):
        """Discover pools, seed reserves and start the pipeline."""
        settings = self.settings
        logger.info("🚀 Initializing sandwich engine...")

        try:
            self.node = NodeClient(settings.node_http_url, request_timeout=settings.node_request_timeout)

            logger.info("🔍 Discovering tracked pools...")
            self.registry = await PoolRegistry.from_factory(
                self.node,
                settings.factory_address,
                settings.tracked_token_list,
                settings.native_token,
                fee_bps=settings.pool_fee_bps
            )

            logger.info(f"📊 Seeding reserves for {len(self.registry)} pools...")
            self.cache = PoolStateCache(self.registry, settings.pool_cache_config())
            for pool in self.registry:
                reserve0, reserve1 = await self.node.get_reserves(pool.pool_id)
                self.cache.seed(pool, reserve0, reserve1)
            await self.cache.start()

            self.decoder = SwapDecoder(self.registry, settings.decoder_config())
            self.evaluator = OpportunityEvaluator(self.cache, settings.evaluator_config())
            self.screener = TokenScreener(self.node, settings.screener_config(), await self._redis_store())

            logger.info("📡 Setting up builder client...")
            self.builder = BuilderClient(settings.builder_config())
            await self.builder.initialize()

            self.coordinator = ExecutionCoordinator(
                self.cache,
                self.evaluator,
                self.node,
                self.builder,
                SettlementSigner(settings.settlement_config()),
                TokenCircuitBreaker(settings.breaker_config()),
                settings.coordinator_config()
            )

            self.ingestor = MempoolIngestor(
                Web3SubscriptionFeed(settings.feed_config(), self.registry.pool_ids()),
                self.decoder,
                self.cache,
                self.evaluator,
                self.screener,
                self.coordinator,
                self.node,
                settings.ingestor_config()
            )
            await self.ingestor.start()

            self.is_initialized = True
            logger.info("✅ Sandwich engine initialized successfully")

        except Exception as e:
            logger.error(f"❌ Failed to initialize sandwich engine: {e}")
            await self.shutdown()
            raise

    async def _redis_store(self) -> Optional[RedisVerdictStore]:
        if not self.settings.redis_url:
            return None
        try:
            return RedisVerdictStore(await get_redis(self.settings.redis_url))
        except Exception as e:
            logger.warning(f"⚠️ Redis unavailable, verdicts will not persist: {e}")
            return None

    async def shutdown(self):
        """Stop components in reverse start order."""
        logger.info("🛑 Shutting down sandwich engine...")
        if self.ingestor:
            await self.ingestor.stop()
        if self.coordinator:
            await self.coordinator.stop()
        if self.builder:
            await self.builder.close()
        if self.cache:
            await self.cache.stop()
        await close_redis()
        self.is_initialized = False
        logger.info("✅ Sandwich engine shutdown complete")

    @property
    def is_ready(self) -> bool:
        return (
            self.is_initialized
            and self.ingestor is not None
            and self.ingestor.is_running
            and self.ingestor.fatal_error is None
        )

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"initialized": self.is_initialized}
        for name in ("cache", "evaluator", "screener", "builder", "coordinator", "ingestor"):
            component = getattr(self, name)
            if component is not None:
                stats[name] = component.get_stats()
        if self.ingestor is not None:
            stats["feed"] = dict(self.ingestor.feed.stats)
        return stats


# Global engine instance
_engine: Optional[SandwichEngine] = None


def get_engine() -> Optional[SandwichEngine]:
    """Get the global engine instance."""
    return _engine


async def initialize_engine(settings: EngineSettings) -> SandwichEngine:
    """Create and start the global engine."""
    global _engine
    if _engine is None:
        engine = SandwichEngine(settings)
        await engine.initialize()
        _engine = engine
    return _engine


async def shutdown_engine():
    """Stop the global engine."""
    global _engine
    if _engine is not None:
        await _engine.shutdown()
        _engine = None
