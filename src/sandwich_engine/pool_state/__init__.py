"""Pool state tracking: registry, models and the versioned reserve cache."""
from .models import PoolInfo, PoolKind, PoolReserves
from .registry import PoolRegistry
from .cache import PoolStateCache, PoolCacheConfig

__all__ = [
    "PoolInfo",
    "PoolKind",
    "PoolReserves",
    "PoolRegistry",
    "PoolStateCache",
    "PoolCacheConfig",
]
