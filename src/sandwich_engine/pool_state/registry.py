"""Registry of tracked pools, keyed by pool id and by token pair."""
import logging
from typing import Dict, FrozenSet, Iterable, List, Optional, TYPE_CHECKING

from .models import PoolInfo, PoolKind

if TYPE_CHECKING:
    from sandwich_engine.blockchain_connector.node_client import NodeClient

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class PoolRegistry:
    """Tracked-pool registry used by the decoder and the cache."""

    def __init__(self, pools: Optional[Iterable[PoolInfo]] = None):
        self._pools: Dict[str, PoolInfo] = {}
        self._by_pair: Dict[FrozenSet[str], str] = {}
        for pool in pools or []:
            self.add(pool)

    def add(self, pool: PoolInfo) -> None:
        self._pools[pool.pool_id] = pool
        self._by_pair[frozenset((pool.token0, pool.token1))] = pool.pool_id

    def get(self, pool_id: str) -> Optional[PoolInfo]:
        return self._pools.get(pool_id.lower())

    def find_pair(self, token_a: str, token_b: str) -> Optional[PoolInfo]:
        pool_id = self._by_pair.get(frozenset((token_a.lower(), token_b.lower())))
        return self._pools.get(pool_id) if pool_id else None

    def is_tracked(self, pool_id: str) -> bool:
        return pool_id.lower() in self._pools

    def pool_ids(self) -> List[str]:
        return list(self._pools)

    def __len__(self) -> int:
        return len(self._pools)

    def __iter__(self):
        return iter(self._pools.values())

    @classmethod
    async def from_factory(
        cls,
        node: "NodeClient",
        factory_address: str,
        tokens: Iterable[str],
        quote_token: str,
        fee_bps: int = 30
    ) -> "PoolRegistry":
        """
        Discover UniswapV2-style pairs of each token against the quote token.

        Args:
            node: Node client used for factory and pair queries
            factory_address: Pair factory contract
            tokens: Tokens to track
            quote_token: Token every pair is quoted in (usually the wrapped native token)
            fee_bps: Swap fee applied to discovered pairs

        Returns:
            Registry populated with every pair that exists
        """
        registry = cls()
        for token in tokens:
            if token.lower() == quote_token.lower():
                continue
            pair = await node.get_pair(factory_address, token, quote_token)
            if not pair or pair.lower() == ZERO_ADDRESS:
                logger.warning(f"No pair for {token} against {quote_token}")
                continue
            token0, token1 = await node.get_pair_tokens(pair)
            registry.add(PoolInfo(
                pool_id=pair,
                token0=token0,
                token1=token1,
                fee_bps=fee_bps,
                kind=PoolKind.CONSTANT_PRODUCT
            ))
            logger.info(f"Tracking pair {pair} ({token0}/{token1})")
        return registry
