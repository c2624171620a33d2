"""
Token Safety Screener.

Staged, fail-closed pipeline that rejects tokens engineered to trap a
counter-trader. Stages run cheapest first and stop at the first rejection:

1. denylist / allowlist lookup
2. static scan of the token's runtime bytecode for admin functions
3. dry-run buy-then-sell through a probe contract injected with a state override
4. liquidity depth of the pool for the planned exit size

Stages 1-3 yield a token-level verdict that is cached; stage 4 depends on the
candidate and is evaluated every time.
"""
import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Set

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address
from web3.exceptions import ContractLogicError

from sandwich_engine.pool_state.models import PoolReserves
from sandwich_engine.protocols.dex_protocols.uniswap_v2_math import UniswapV2Math
from .models import SafetyVerdict
from .verdict_cache import RedisVerdictStore, VerdictCache

logger = logging.getLogger(__name__)


# Admin functions that let a token owner block, pause or tax holders.
ADMIN_FUNCTION_SIGNATURES = {
    "blacklist(address)": "blacklist-function",
    "addBlackList(address)": "blacklist-function",
    "addToBlacklist(address)": "blacklist-function",
    "setBlacklist(address,bool)": "blacklist-function",
    "pause()": "pausable",
    "setTradingEnabled(bool)": "pausable",
    "setTaxFeePercent(uint256)": "fee-on-transfer",
    "setFee(uint256)": "fee-on-transfer",
    "setFees(uint256,uint256)": "fee-on-transfer",
    "setSellFee(uint256)": "fee-on-transfer",
    "setMaxTxAmount(uint256)": "max-tx-limit",
}

ADMIN_SELECTORS = {
    function_signature_to_4byte_selector(signature).hex(): reason
    for signature, reason in ADMIN_FUNCTION_SIGNATURES.items()
}

SELECTOR_SIGNATURES = {
    function_signature_to_4byte_selector(signature).hex(): signature
    for signature in ADMIN_FUNCTION_SIGNATURES
}

# PUSH4 opcode; a dispatcher compares calldata against PUSH4 <selector>
PUSH4 = "63"

# EIP-1167 minimal proxy runtime prefix
MINIMAL_PROXY_PREFIX = "363d3d373d3d3d363d73"

PROBE_SELECTOR = function_signature_to_4byte_selector("probe(address,address,address,uint256)")

# Failures that say nothing about the token itself
TRANSIENT_REASONS = {"simulation-unavailable", "static-scan-unavailable"}


@dataclass
class ScreenerConfig:
    """Configuration for token screening."""
    allowlist: Set[str] = field(default_factory=set)
    denylist: Set[str] = field(default_factory=set)

    # Shortfall accepted between theoretical and simulated amounts
    fee_tolerance: Decimal = Decimal("0.02")

    # Probe contract runtime bytecode, injected at probe_address for the dry run
    probe_bytecode: Optional[str] = None
    probe_address: str = "0x00000000000000000000000000000000005afe00"
    probe_amount: int = 10**15
    probe_max_pool_fraction: Decimal = Decimal("0.01")

    # Share of the token reserve the planned exit may consume
    max_exit_fraction: Decimal = Decimal("0.5")

    verdict_ttl: float = 300.0
    rejected_verdict_ttl: int = 3600
    stage_timeout: float = 5.0

    def __post_init__(self):
        self.allowlist = {token.lower() for token in self.allowlist}
        self.denylist = {token.lower() for token in self.denylist}
        self.fee_tolerance = Decimal(self.fee_tolerance)
        self.probe_max_pool_fraction = Decimal(self.probe_max_pool_fraction)
        self.max_exit_fraction = Decimal(self.max_exit_fraction)


class TokenScreener:
    """Fail-closed honeypot screener."""

    def __init__(
        self,
        node,
        config: ScreenerConfig,
        redis_store: Optional[RedisVerdictStore] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            node: NodeClient used for get_code and eth_call
            config: Screening thresholds
            redis_store: Optional Redis mirror for rejected verdicts
            clock: Monotonic clock for verdict expiry
        """
        self.node = node
        self.config = config
        self.redis_store = redis_store
        self.cache = VerdictCache(clock)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        self.stats = {
            "screened": 0,
            "cache_hits": 0,
            "approved": 0,
            "rejected": 0
        }
        self.rejection_reasons: Dict[str, int] = defaultdict(int)

    async def screen(
        self,
        token: str,
        planned_amount: int,
        pool_snapshot: PoolReserves
    ) -> SafetyVerdict:
        """
        Screen a token for a planned counter-trade.

        Args:
            token: Token the counter-trade buys and must resell
            planned_amount: Amount of `token` the back-run will sell
            pool_snapshot: Snapshot of the pool the trade runs through

        Returns:
            Approved verdict, or Rejected with the failing check as reason.
            Never raises for a failing check; an incomplete check is a rejection.
        """
        token = token.lower()
        self.stats["screened"] += 1

        verdict = await self._token_verdict(token, pool_snapshot)
        if verdict.is_approved:
            verdict = self._check_liquidity(token, planned_amount, pool_snapshot, verdict.evidence)

        if verdict.is_approved:
            self.stats["approved"] += 1
        else:
            self.stats["rejected"] += 1
            self.rejection_reasons[verdict.reason] += 1
            logger.info(f"Token {token} {verdict} at stage {verdict.stage}")
        return verdict

    async def _token_verdict(self, token: str, pool_snapshot: PoolReserves) -> SafetyVerdict:
        cached = self.cache.get(token)
        if cached is not None:
            self.stats["cache_hits"] += 1
            return cached

        # Concurrent candidates for one token share a single pipeline run; the
        # lock is dropped once the verdict is cached
        async with self._locks[token]:
            try:
                cached = self.cache.get(token)
                if cached is not None:
                    self.stats["cache_hits"] += 1
                    return cached

                if self.redis_store is not None:
                    persisted = await self.redis_store.get_rejection(token)
                    if persisted is not None:
                        self.cache.put(persisted, self.config.rejected_verdict_ttl)
                        return persisted

                verdict = await self._run_token_stages(token, pool_snapshot)
                await self._remember(verdict)
                return verdict
            finally:
                self._locks.pop(token, None)

    async def _remember(self, verdict: SafetyVerdict):
        if verdict.is_approved or verdict.reason in TRANSIENT_REASONS:
            self.cache.put(verdict, self.config.verdict_ttl)
            return

        self.cache.put(verdict, self.config.rejected_verdict_ttl)
        if self.redis_store is not None:
            await self.redis_store.put_rejection(verdict, self.config.rejected_verdict_ttl)

    async def _run_token_stages(self, token: str, pool_snapshot: PoolReserves) -> SafetyVerdict:
        # Stage 1
        if token in self.config.denylist:
            return SafetyVerdict.reject(token, "denylisted", stage="list", evidence={"list": "denylist"})
        if token in self.config.allowlist:
            return SafetyVerdict.approve(token, stage="list", evidence={"list": "allowlist"})

        # Stage 2
        try:
            verdict = await asyncio.wait_for(
                self._static_scan(token), timeout=self.config.stage_timeout
            )
        except Exception as e:
            logger.warning(f"Static scan failed for {token}: {e}")
            return SafetyVerdict.reject(
                token, "static-scan-unavailable", stage="static", evidence={"error": type(e).__name__}
            )
        if verdict is not None:
            return verdict

        # Stage 3
        try:
            return await asyncio.wait_for(
                self._simulate_round_trip(token, pool_snapshot), timeout=self.config.stage_timeout
            )
        except ContractLogicError as e:
            logger.debug(f"Probe reverted for {token}: {e}")
            return SafetyVerdict.reject(token, "simulation-revert", stage="simulation", evidence={"revert": str(e)})
        except Exception as e:
            logger.warning(f"Dry-run simulation failed for {token}: {e}")
            return SafetyVerdict.reject(
                token, "simulation-unavailable", stage="simulation", evidence={"error": type(e).__name__}
            )

    async def _static_scan(self, token: str) -> Optional[SafetyVerdict]:
        """Return a rejection if the bytecode exposes a trap, else None."""
        code = await self.node.get_code(token)
        code_hex = bytes(code).hex()

        if not code_hex:
            return SafetyVerdict.reject(token, "no-code", stage="static", evidence={"code_size": 0})
        if code_hex.startswith(MINIMAL_PROXY_PREFIX):
            return SafetyVerdict.reject(
                token, "proxy-token", stage="static", evidence={"implementation": "0x" + code_hex[20:60]}
            )

        for selector, reason in ADMIN_SELECTORS.items():
            if PUSH4 + selector in code_hex:
                return SafetyVerdict.reject(token, reason, stage="static", evidence={
                    "selector": "0x" + selector,
                    "signature": SELECTOR_SIGNATURES[selector]
                })
        return None

    async def _simulate_round_trip(self, token: str, pool_snapshot: PoolReserves) -> SafetyVerdict:
        """
        Buy a small amount of the token and sell it straight back.

        The probe reports (bought, proceeds); both are compared with the
        constant-product expectation for the snapshot.
        """
        config = self.config
        if not config.probe_bytecode:
            return SafetyVerdict.reject(token, "simulation-unavailable", stage="simulation", evidence={"probe": "missing"})

        quote_token = pool_snapshot.token1 if token == pool_snapshot.token0 else pool_snapshot.token0
        reserve_quote, reserve_token = (Decimal(r) for r in pool_snapshot.reserves_for(quote_token))

        amount_in = min(
            Decimal(config.probe_amount),
            reserve_quote * config.probe_max_pool_fraction
        ).to_integral_value()
        if amount_in <= 0:
            return SafetyVerdict.reject(
                token, "simulation-unavailable", stage="simulation", evidence={"reserve_quote": int(reserve_quote)}
            )

        amm = UniswapV2Math(pool_snapshot.fee_bps)
        expected_bought = amm.calculate_amount_out(amount_in, reserve_quote, reserve_token)

        calldata = PROBE_SELECTOR + encode(
            ["address", "address", "address", "uint256"],
            [
                to_checksum_address(pool_snapshot.pool_id),
                to_checksum_address(quote_token),
                to_checksum_address(token),
                int(amount_in)
            ]
        )
        probe = to_checksum_address(config.probe_address)
        result = await self.node.call(
            {"to": probe, "from": probe, "data": "0x" + calldata.hex()},
            state_override={probe: {"code": config.probe_bytecode, "balance": hex(int(amount_in) * 2)}}
        )
        bought, proceeds = decode(["uint256", "uint256"], bytes(result))
        bought, proceeds = Decimal(bought), Decimal(proceeds)

        expected_proceeds = amm.calculate_amount_out(
            bought,
            reserve_token - expected_bought,
            reserve_quote + amount_in
        )
        keep = Decimal("1") - config.fee_tolerance
        evidence = {
            "amount_in": int(amount_in),
            "bought": int(bought),
            "expected_bought": int(expected_bought),
            "proceeds": int(proceeds),
            "expected_proceeds": int(expected_proceeds)
        }

        if bought < keep * expected_bought:
            return SafetyVerdict.reject(token, "buy-tax", stage="simulation", evidence=evidence)
        if proceeds < keep * amount_in:
            return SafetyVerdict.reject(token, "sell-shortfall", stage="simulation", evidence=evidence)
        if proceeds < keep * expected_proceeds:
            return SafetyVerdict.reject(token, "sell-tax", stage="simulation", evidence=evidence)
        return SafetyVerdict.approve(token, stage="simulation", evidence=evidence)

    def _check_liquidity(
        self,
        token: str,
        planned_amount: int,
        pool_snapshot: PoolReserves,
        token_evidence: Mapping[str, str]
    ) -> SafetyVerdict:
        """Stage 4: the pool must absorb selling `planned_amount` of the token."""
        reserve_token, reserve_quote = pool_snapshot.reserves_for(token)
        evidence = {
            **token_evidence,
            "planned_exit": planned_amount,
            "reserve_token": reserve_token,
            "reserve_quote": reserve_quote,
            "pool_version": pool_snapshot.version
        }
        if planned_amount <= 0 or reserve_token <= 0 or reserve_quote <= 0:
            return SafetyVerdict.reject(token, "insufficient-liquidity", stage="liquidity", evidence=evidence)

        if Decimal(planned_amount) > Decimal(reserve_token) * self.config.max_exit_fraction:
            return SafetyVerdict.reject(token, "insufficient-liquidity", stage="liquidity", evidence=evidence)

        exit_out = UniswapV2Math(pool_snapshot.fee_bps).calculate_amount_out(
            planned_amount, reserve_token, reserve_quote
        )
        evidence["exit_out"] = int(exit_out)
        if exit_out < 1:
            return SafetyVerdict.reject(token, "insufficient-liquidity", stage="liquidity", evidence=evidence)
        return SafetyVerdict.approve(token, stage="liquidity", evidence=evidence)

    def invalidate(self, token: str):
        """Drop the cached verdict so the next candidate re-runs the pipeline."""
        self.cache.invalidate(token)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "cached_verdicts": len(self.cache),
            "rejection_reasons": dict(self.rejection_reasons)
        }
