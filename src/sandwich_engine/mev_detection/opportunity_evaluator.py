"""
Opportunity Evaluator.

Sizes the profit-maximizing front-run for a pending swap against a pool
snapshot and decides whether the sandwich clears every cost threshold.
"""
import logging
import math
from collections import Counter
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from sandwich_engine.exceptions import PoolNotTrackedError, StaleStateError
from sandwich_engine.pool_state.cache import PoolStateCache
from sandwich_engine.pool_state.models import PoolReserves
from sandwich_engine.protocols.dex_protocols import AMM_MATH_BY_KIND
from sandwich_engine.protocols.dex_protocols.uniswap_v2_math import BPS_DENOMINATOR
from .opportunity_models import Opportunity, PendingSwapIntent

logger = logging.getLogger(__name__)


@dataclass
class EvaluatorConfig:
    """
    Thresholds for opportunity evaluation.

    The safety margin and both thresholds have no canonical default and must
    be supplied by the caller.
    """

    # Required
    safety_margin: Decimal
    min_price_impact: Decimal
    min_profit: Decimal

    native_token: str = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"

    # Depth and capital limits
    max_pool_fraction: Decimal = Decimal("0.05")
    max_position: Optional[int] = None

    # Cost model
    flash_fee_bps: int = 9
    frontrun_gas_units: int = 150_000
    backrun_gas_units: int = 150_000
    gas_price_multiplier: Decimal = Decimal("1.2")

    # Share of net profit that the settlement contract must realize on-chain
    profit_floor_share: Decimal = Decimal("0.5")

    def __post_init__(self):
        self.safety_margin = Decimal(self.safety_margin)
        self.min_price_impact = Decimal(self.min_price_impact)
        self.min_profit = Decimal(self.min_profit)
        self.max_pool_fraction = Decimal(self.max_pool_fraction)
        self.gas_price_multiplier = Decimal(self.gas_price_multiplier)
        self.profit_floor_share = Decimal(self.profit_floor_share)
        self.native_token = self.native_token.lower()

        if not Decimal("0") < self.safety_margin <= Decimal("1"):
            raise ValueError("safety_margin must be in (0, 1]")
        if not Decimal("0") < self.max_pool_fraction <= Decimal("1"):
            raise ValueError("max_pool_fraction must be in (0, 1]")


class OpportunityEvaluator:
    """
    Evaluates pending swaps for sandwich profitability.

    The front-run search domain is bounded by the victim's declared slippage
    (closed-form square-root bound), a fraction of the pool's input reserve and
    the maximum position, all scaled by the safety margin. Inside that domain the size
    maximizing profit net of the flash-settlement fee is found numerically.
    """

    def __init__(self, cache: PoolStateCache, config: EvaluatorConfig):
        self.cache = cache
        self.config = config

        self.rejections: Counter = Counter()
        self.stats = {
            "evaluated": 0,
            "opportunities": 0,
            "stale_recomputes": 0,
            "stale_abandoned": 0
        }

    def evaluate(
        self,
        intent: PendingSwapIntent,
        snapshot: Optional[PoolReserves] = None
    ) -> Optional[Opportunity]:
        """
        Evaluate an intent against a pool snapshot.

        Args:
            intent: Decoded victim swap
            snapshot: Pool snapshot to evaluate against (latest if None)

        Returns:
            The sized Opportunity, or None when any threshold rejects it

        Raises:
            StaleStateError: the pool advanced during evaluation and again
                during the single recompute
        """
        self.stats["evaluated"] += 1

        try:
            if snapshot is None:
                snapshot = self.cache.get(intent.pool_id)
            opportunity = self._compute(intent, snapshot)

            if self.cache.version(intent.pool_id) == snapshot.version:
                return self._accept(opportunity)

            # One recompute against the newer snapshot, then give up
            self.stats["stale_recomputes"] += 1
            fresh = self.cache.get(intent.pool_id)
            opportunity = self._compute(intent, fresh)

            current_version = self.cache.version(intent.pool_id)
            if current_version != fresh.version:
                self.stats["stale_abandoned"] += 1
                raise StaleStateError(intent.pool_id, fresh.version, current_version)
            return self._accept(opportunity)

        except PoolNotTrackedError:
            return self._reject(intent, "untracked-pool")

    def _accept(self, opportunity: Optional[Opportunity]) -> Optional[Opportunity]:
        if opportunity is not None:
            self.stats["opportunities"] += 1
        return opportunity

    def _reject(self, intent: PendingSwapIntent, reason: str) -> None:
        self.rejections[reason] += 1
        logger.debug(f"Rejected {intent.tx_hash[:10]}...: {reason}")
        return None

    def _compute(self, intent: PendingSwapIntent, snapshot: PoolReserves) -> Optional[Opportunity]:
        config = self.config

        if snapshot.stale:
            return self._reject(intent, "stale-pool")

        math_class = AMM_MATH_BY_KIND.get(snapshot.kind)
        if math_class is None:
            return self._reject(intent, "unsupported-pool-kind")
        amm = math_class(snapshot.fee_bps)

        reserve_in, reserve_out = (Decimal(r) for r in snapshot.reserves_for(intent.token_in))
        victim_in = Decimal(intent.amount_in)
        if reserve_in <= 0 or reserve_out <= 0:
            return self._reject(intent, "empty-pool")

        # Exact-output victims pay only what the reserves require, up to amount_in
        exact_out = None
        victim_spend = victim_in
        if intent.exact_output and intent.amount_out_min > 0:
            exact_out = Decimal(intent.amount_out_min)
            victim_spend = amm.calculate_amount_in(exact_out, reserve_in, reserve_out)
            if victim_spend is None or victim_spend > victim_in:
                return self._reject(intent, "victim-would-revert")

        impact = amm.calculate_price_impact(victim_spend, reserve_in, reserve_out)
        if impact < config.min_price_impact:
            return self._reject(intent, "below-min-impact")

        # Search domain: pool depth, victim slippage and position limits
        cap = reserve_in * config.max_pool_fraction
        if cap * config.safety_margin < 1:
            return self._reject(intent, "insufficient-depth")
        slippage_bound = amm.max_frontrun_for_min_out(
            reserve_in, reserve_out, victim_in, Decimal(intent.amount_out_min)
        )
        if slippage_bound is not None:
            cap = min(cap, slippage_bound)
        if config.max_position is not None:
            cap = min(cap, Decimal(config.max_position))
        upper_bound = cap * config.safety_margin
        if upper_bound < 1:
            return self._reject(intent, "no-slippage-room")

        flash_rate = Decimal(config.flash_fee_bps) / BPS_DENOMINATOR
        frontrun = int(amm.optimize_frontrun(
            reserve_in, reserve_out, victim_in, upper_bound,
            cost_rate=flash_rate, victim_amount_out=exact_out
        ))
        if frontrun <= 0:
            return self._reject(intent, "no-profitable-size")

        simulation = amm.simulate_sandwich(reserve_in, reserve_out, Decimal(frontrun), victim_in, exact_out)
        if simulation.victim_out < intent.amount_out_min:
            return self._reject(intent, "victim-would-revert")

        gross = simulation.gross_profit
        if gross <= 0:
            return self._reject(intent, "unprofitable")

        gas_cost = self._gas_cost_in_token_in(intent, reserve_in, reserve_out)
        if gas_cost is None:
            return self._reject(intent, "gas-unpriceable")

        flash_fee = Decimal(frontrun) * flash_rate
        net = gross - flash_fee - gas_cost
        if net < config.min_profit:
            return self._reject(intent, "below-min-profit")

        # The on-chain floor covers gas plus a share of the expected net profit,
        # and never exceeds what the settlement call should realize
        floor = gas_cost + max(config.min_profit, net * config.profit_floor_share)
        minimum_acceptable_profit = min(math.ceil(floor), int(gross - flash_fee))

        opportunity = Opportunity(
            intent=intent,
            pool_version=snapshot.version,
            frontrun_amount=frontrun,
            expected_frontrun_output=simulation.frontrun_out,
            expected_backrun_output=simulation.backrun_out,
            expected_gross_profit=gross,
            expected_net_profit=net,
            minimum_acceptable_profit=minimum_acceptable_profit,
            gas_cost=gas_cost,
            flash_fee=flash_fee,
            victim_price_impact=impact
        )

        logger.info(
            f"Opportunity on {intent.tx_hash[:10]}...: front-run {frontrun}, "
            f"net {net:.6f} (gross {gross:.6f}, gas {gas_cost:.6f}, impact {impact:.4%})"
        )
        return opportunity

    def _gas_cost_in_token_in(
        self,
        intent: PendingSwapIntent,
        reserve_in: Decimal,
        reserve_out: Decimal
    ) -> Optional[Decimal]:
        """Estimated gas for both legs, converted to token-in units."""
        config = self.config
        gas_units = config.frontrun_gas_units + config.backrun_gas_units
        gas_cost_native = Decimal(gas_units) * Decimal(intent.gas_price) * config.gas_price_multiplier

        if gas_cost_native == 0 or intent.token_in == config.native_token:
            return gas_cost_native
        if intent.token_out == config.native_token:
            # token-in per native token at the current spot price
            return gas_cost_native * reserve_in / reserve_out
        return None

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "rejections": dict(self.rejections)
        }
