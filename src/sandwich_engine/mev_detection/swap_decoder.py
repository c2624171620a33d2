"""
Swap Decoder.

Classifies a raw pending transaction as a UniswapV2-router swap against a
tracked pool and normalizes it into a PendingSwapIntent. Pure function of the
calldata and the pool registry.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector

from sandwich_engine.exceptions import DecodeError
from sandwich_engine.pool_state.registry import PoolRegistry
from .opportunity_models import PendingSwapIntent, RawTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouterFunction:
    """ABI layout of one router swap function."""
    name: str
    signature: str
    arg_types: List[str]
    eth_in: bool = False
    exact_output: bool = False

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.signature)


ROUTER_FUNCTIONS = [
    RouterFunction(
        "swapExactTokensForTokens",
        "swapExactTokensForTokens(uint256,uint256,address[],address,uint256)",
        ["uint256", "uint256", "address[]", "address", "uint256"]
    ),
    RouterFunction(
        "swapExactTokensForETH",
        "swapExactTokensForETH(uint256,uint256,address[],address,uint256)",
        ["uint256", "uint256", "address[]", "address", "uint256"]
    ),
    RouterFunction(
        "swapTokensForExactTokens",
        "swapTokensForExactTokens(uint256,uint256,address[],address,uint256)",
        ["uint256", "uint256", "address[]", "address", "uint256"],
        exact_output=True
    ),
    RouterFunction(
        "swapTokensForExactETH",
        "swapTokensForExactETH(uint256,uint256,address[],address,uint256)",
        ["uint256", "uint256", "address[]", "address", "uint256"],
        exact_output=True
    ),
    RouterFunction(
        "swapExactETHForTokens",
        "swapExactETHForTokens(uint256,address[],address,uint256)",
        ["uint256", "address[]", "address", "uint256"],
        eth_in=True
    ),
    RouterFunction(
        "swapETHForExactTokens",
        "swapETHForExactTokens(uint256,address[],address,uint256)",
        ["uint256", "address[]", "address", "uint256"],
        eth_in=True,
        exact_output=True
    ),
]


@dataclass
class SwapDecoderConfig:
    """Configuration for swap decoding."""
    router_addresses: Set[str] = field(default_factory=set)
    native_token: str = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"  # WETH
    max_hops: int = 1

    def __post_init__(self):
        self.router_addresses = {address.lower() for address in self.router_addresses}
        self.native_token = self.native_token.lower()


class SwapDecoder:
    """Turns raw router calls into swap intents, or raises DecodeError."""

    def __init__(self, registry: PoolRegistry, config: SwapDecoderConfig):
        self.registry = registry
        self.config = config
        self.functions: Dict[bytes, RouterFunction] = {fn.selector: fn for fn in ROUTER_FUNCTIONS}

    def decode(self, tx: RawTransaction, now: Optional[float] = None) -> PendingSwapIntent:
        """
        Decode a pending transaction into a swap intent.

        Raises:
            DecodeError: the transaction is not a swap this engine can act on.
                Decode errors are discards, never retried.
        """
        if not tx.to or tx.to.lower() not in self.config.router_addresses:
            raise DecodeError("untracked-contract", tx.hash)

        calldata = tx.input[2:] if tx.input.startswith("0x") else tx.input
        if len(calldata) < 8:
            raise DecodeError("malformed-calldata", tx.hash)

        try:
            selector = bytes.fromhex(calldata[:8])
            args_data = bytes.fromhex(calldata[8:])
        except ValueError:
            raise DecodeError("malformed-calldata", tx.hash)

        function = self.functions.get(selector)
        if function is None:
            raise DecodeError("unsupported-function", tx.hash)

        try:
            args = decode(function.arg_types, args_data)
        except (DecodingError, OverflowError, ValueError):
            raise DecodeError("malformed-calldata", tx.hash)

        amount_in, amount_out_min, path, deadline = self._normalize_args(function, args, tx)
        path = tuple(address.lower() for address in path)

        if len(path) < 2:
            raise DecodeError("malformed-path", tx.hash)
        if function.eth_in and path[0] != self.config.native_token:
            raise DecodeError("malformed-path", tx.hash)

        hops = len(path) - 1
        if hops > self.config.max_hops:
            raise DecodeError("hop-limit", tx.hash)

        pools = []
        for token_a, token_b in zip(path, path[1:]):
            pool = self.registry.find_pair(token_a, token_b)
            if pool is None:
                raise DecodeError("untracked-pool", tx.hash)
            pools.append(pool)

        if amount_in <= 0:
            raise DecodeError("zero-amount", tx.hash)

        current_time = now if now is not None else time.time()
        if deadline < current_time:
            raise DecodeError("expired-deadline", tx.hash)

        # The declared minimum belongs to the final hop
        first_hop_min_out = amount_out_min if hops == 1 else 0

        intent = PendingSwapIntent(
            tx_hash=tx.hash,
            pool_id=pools[0].pool_id,
            token_in=path[0],
            token_out=path[1],
            amount_in=amount_in,
            amount_out_min=first_hop_min_out,
            gas_price=tx.gas_price,
            observed_at=tx.observed_at,
            pool_kind=pools[0].kind,
            function_name=function.name,
            path=path,
            deadline=deadline,
            exact_output=function.exact_output,
            sender=tx.from_address,
            raw_transaction=tx.raw
        )

        logger.debug(
            f"Decoded {function.name} {tx.hash[:10]}...: {amount_in} {path[0][:10]} -> {path[1][:10]}"
        )
        return intent

    @staticmethod
    def _normalize_args(function: RouterFunction, args: tuple, tx: RawTransaction):
        """Map router arguments onto (amount_in, amount_out_min, path, deadline)."""
        if function.eth_in:
            amount_out, path, _recipient, deadline = args
            return tx.value, amount_out, path, deadline

        first, second, path, _recipient, deadline = args
        if function.exact_output:
            # (amountOut, amountInMax): the victim pays at most amountInMax for amountOut
            return second, first, path, deadline
        return first, second, path, deadline
