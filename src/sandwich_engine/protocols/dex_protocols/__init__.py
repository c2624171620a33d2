"""DEX protocol math implementations, keyed by pool kind."""
from sandwich_engine.pool_state.models import PoolKind
from .uniswap_v2_math import UniswapV2Math, SandwichSimulation

# Pool kinds without an entry are not evaluated
AMM_MATH_BY_KIND = {
    PoolKind.CONSTANT_PRODUCT: UniswapV2Math,
}

__all__ = [
    "UniswapV2Math",
    "SandwichSimulation",
    "AMM_MATH_BY_KIND",
]
