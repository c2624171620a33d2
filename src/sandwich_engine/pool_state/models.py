"""Pool data models shared by the cache, decoder and evaluator."""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Tuple


class PoolKind(str, Enum):
    """AMM variants the registry can tag a pool with."""
    CONSTANT_PRODUCT = "constant_product"
    CONCENTRATED_LIQUIDITY = "concentrated_liquidity"


@dataclass(frozen=True)
class PoolInfo:
    """Static description of a tracked pool."""
    pool_id: str
    token0: str
    token1: str
    fee_bps: int = 30
    kind: PoolKind = PoolKind.CONSTANT_PRODUCT

    def __post_init__(self):
        # Addresses are compared lowercase everywhere
        object.__setattr__(self, "pool_id", self.pool_id.lower())
        object.__setattr__(self, "token0", self.token0.lower())
        object.__setattr__(self, "token1", self.token1.lower())

    def has_token(self, token: str) -> bool:
        return token.lower() in (self.token0, self.token1)

    def other_token(self, token: str) -> str:
        token = token.lower()
        if token == self.token0:
            return self.token1
        if token == self.token1:
            return self.token0
        raise ValueError(f"Token {token} is not in pool {self.pool_id}")


@dataclass(frozen=True)
class PoolReserves:
    """Immutable, versioned snapshot of a pool's reserves."""
    pool_id: str
    token0: str
    token1: str
    reserve0: int
    reserve1: int
    fee_bps: int
    version: int
    last_updated_at: float = field(default_factory=time.time)
    kind: PoolKind = PoolKind.CONSTANT_PRODUCT
    stale: bool = False

    def reserves_for(self, token_in: str) -> Tuple[int, int]:
        """Return (reserve_in, reserve_out) for a swap selling token_in."""
        token_in = token_in.lower()
        if token_in == self.token0:
            return self.reserve0, self.reserve1
        if token_in == self.token1:
            return self.reserve1, self.reserve0
        raise ValueError(f"Token {token_in} is not in pool {self.pool_id}")

    @property
    def invariant(self) -> int:
        return self.reserve0 * self.reserve1
