"""
Unit tests for the Opportunity Evaluator.

Exercises sizing, threshold rejections and the stale-snapshot recompute.
"""
import math
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from sandwich_engine.exceptions import CorruptFeedError, StaleStateError
from sandwich_engine.mev_detection import EvaluatorConfig, OpportunityEvaluator, PendingSwapIntent
from sandwich_engine.pool_state import PoolInfo, PoolKind, PoolRegistry, PoolStateCache
from sandwich_engine.protocols.dex_protocols import UniswapV2Math

WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"
TOKEN = "0x" + "11" * 20
OTHER = "0x" + "22" * 20
POOL = "0x" + "aa" * 20
RESERVE_IN = 1_000_000
RESERVE_OUT = 500


def make_config(**overrides):
    params = {
        "safety_margin": Decimal("0.9"),
        "min_price_impact": Decimal("0.001"),
        "min_profit": Decimal("0"),
    }
    params.update(overrides)
    return EvaluatorConfig(**params)


def make_intent(amount_in, amount_out_min=0, gas_price=0, pool_id=POOL, token_in=WETH, token_out=TOKEN,
                exact_output=False):
    return PendingSwapIntent(
        tx_hash="0x" + "ab" * 32,
        pool_id=pool_id,
        token_in=token_in,
        token_out=token_out,
        amount_in=amount_in,
        amount_out_min=amount_out_min,
        gas_price=gas_price,
        observed_at=0.0,
        exact_output=exact_output
    )


def realistic_min_out(victim_in, slippage=Decimal("0.01")):
    expected = UniswapV2Math().calculate_amount_out(victim_in, RESERVE_IN, RESERVE_OUT)
    return int(expected * (1 - slippage))


@pytest.fixture
def cache():
    cache = PoolStateCache(PoolRegistry())
    cache.seed(PoolInfo(POOL, WETH, TOKEN), RESERVE_IN, RESERVE_OUT)
    return cache


@pytest.fixture
def evaluator(cache):
    return OpportunityEvaluator(cache, make_config())


class TestSizing:
    """Front-run sizing on the reference pool."""

    def test_large_victim_is_profitable(self, evaluator):
        intent = make_intent(50_000, realistic_min_out(50_000))

        opportunity = evaluator.evaluate(intent)

        assert opportunity is not None
        assert 0 < opportunity.frontrun_amount < 50_000
        assert opportunity.expected_gross_profit > 0
        assert opportunity.expected_net_profit > 0
        assert opportunity.pool_version == 0
        assert opportunity.target_token == TOKEN
        assert opportunity.backrun_amount == int(opportunity.expected_frontrun_output)

    def test_negligible_victim_is_rejected(self, evaluator):
        assert evaluator.evaluate(make_intent(10)) is None
        assert evaluator.rejections["below-min-impact"] == 1

    def test_frontrun_stays_inside_victim_slippage(self, evaluator):
        victim_in = 50_000
        min_out = realistic_min_out(victim_in)
        bound = UniswapV2Math().max_frontrun_for_min_out(RESERVE_IN, RESERVE_OUT, victim_in, min_out)

        opportunity = evaluator.evaluate(make_intent(victim_in, min_out))

        assert opportunity.frontrun_amount <= bound * Decimal("0.9")
        simulation = UniswapV2Math().simulate_sandwich(
            RESERVE_IN, RESERVE_OUT, opportunity.frontrun_amount, victim_in
        )
        assert simulation.victim_out >= min_out

    def test_unbounded_victim_is_sized_inside_pool_depth(self, evaluator):
        opportunity = evaluator.evaluate(make_intent(50_000))

        assert opportunity is not None
        assert 0 < opportunity.frontrun_amount < 50_000
        assert opportunity.frontrun_amount <= RESERVE_IN * Decimal("0.05") * Decimal("0.9")
        assert opportunity.expected_gross_profit > 0

    def test_profit_grows_with_victim_size(self, evaluator):
        profits = [
            evaluator.evaluate(make_intent(victim_in)).expected_net_profit
            for victim_in in (20_000, 50_000, 100_000, 200_000, 400_000)
        ]

        assert profits == sorted(profits)
        assert evaluator.rejections == {}

    def test_max_position_caps_frontrun(self, cache):
        evaluator = OpportunityEvaluator(cache, make_config(max_position=1_000))

        opportunity = evaluator.evaluate(make_intent(50_000))

        assert opportunity.frontrun_amount <= 900

    def test_minimum_profit_floor_is_within_expected_profit(self, evaluator):
        opportunity = evaluator.evaluate(make_intent(50_000, realistic_min_out(50_000)))

        assert 0 < opportunity.minimum_acceptable_profit
        assert opportunity.minimum_acceptable_profit <= opportunity.expected_gross_profit - opportunity.flash_fee

    def test_flash_fee_is_charged(self, evaluator):
        opportunity = evaluator.evaluate(make_intent(50_000, realistic_min_out(50_000)))

        assert opportunity.flash_fee == Decimal(opportunity.frontrun_amount) * Decimal("0.0009")
        assert opportunity.expected_net_profit == (
            opportunity.expected_gross_profit - opportunity.flash_fee - opportunity.gas_cost
        )

    def test_exact_output_victim_is_modeled_at_required_input(self, evaluator):
        v2_math = UniswapV2Math()
        amount_out = 20
        amount_in_max = int(v2_math.calculate_amount_in(amount_out, RESERVE_IN, RESERVE_OUT) * Decimal("1.05"))

        opportunity = evaluator.evaluate(make_intent(amount_in_max, amount_out, exact_output=True))

        assert opportunity is not None
        frontrun = Decimal(opportunity.frontrun_amount)
        exact = v2_math.simulate_sandwich(RESERVE_IN, RESERVE_OUT, frontrun, amount_in_max, amount_out)
        assert exact.victim_out == amount_out
        assert exact.victim_in <= amount_in_max
        assert opportunity.expected_gross_profit == exact.gross_profit
        overstated = v2_math.simulate_sandwich(RESERVE_IN, RESERVE_OUT, frontrun, amount_in_max)
        assert overstated.gross_profit > opportunity.expected_gross_profit

    def test_exact_output_victim_without_headroom_is_rejected(self, evaluator):
        intent = make_intent(1_000, 20, exact_output=True)

        assert evaluator.evaluate(intent) is None
        assert evaluator.rejections["victim-would-revert"] == 1


class TestRejections:
    """Threshold and pool-state rejections."""

    def test_exhausted_slippage(self, evaluator):
        expected = UniswapV2Math().calculate_amount_out(50_000, RESERVE_IN, RESERVE_OUT)

        assert evaluator.evaluate(make_intent(50_000, math.ceil(expected))) is None
        assert evaluator.rejections["no-slippage-room"] == 1

    def test_pool_depth_caps_frontrun(self, cache):
        evaluator = OpportunityEvaluator(cache, make_config(max_pool_fraction=Decimal("0.001")))

        opportunity = evaluator.evaluate(make_intent(50_000))

        assert 0 < opportunity.frontrun_amount <= 900

    def test_shallow_pool_is_rejected(self):
        cache = PoolStateCache(PoolRegistry())
        cache.seed(PoolInfo(POOL, WETH, TOKEN), 10, 10)
        evaluator = OpportunityEvaluator(cache, make_config())

        assert evaluator.evaluate(make_intent(5)) is None
        assert evaluator.rejections["insufficient-depth"] == 1

    def test_min_profit_threshold(self, cache):
        evaluator = OpportunityEvaluator(cache, make_config(min_profit=Decimal("1000000")))

        assert evaluator.evaluate(make_intent(50_000, realistic_min_out(50_000))) is None
        assert evaluator.rejections["below-min-profit"] == 1

    def test_gas_cost_can_make_it_unprofitable(self, evaluator):
        intent = make_intent(50_000, realistic_min_out(50_000), gas_price=10**9)

        assert evaluator.evaluate(intent) is None
        assert evaluator.rejections["below-min-profit"] == 1

    def test_gas_unpriceable_without_native_leg(self):
        cache = PoolStateCache(PoolRegistry())
        cache.seed(PoolInfo(POOL, OTHER, TOKEN), RESERVE_IN, RESERVE_OUT)
        evaluator = OpportunityEvaluator(cache, make_config())

        intent = make_intent(50_000, gas_price=10, token_in=OTHER)

        assert evaluator.evaluate(intent) is None
        assert evaluator.rejections["gas-unpriceable"] == 1

    def test_untracked_pool(self, evaluator):
        assert evaluator.evaluate(make_intent(50_000, pool_id="0x" + "cc" * 20)) is None
        assert evaluator.rejections["untracked-pool"] == 1

    def test_stale_pool(self, cache, evaluator):
        with pytest.raises(CorruptFeedError):
            cache.apply(POOL, -1, RESERVE_OUT)

        assert evaluator.evaluate(make_intent(50_000)) is None
        assert evaluator.rejections["stale-pool"] == 1

    def test_concentrated_liquidity_not_evaluated(self):
        cache = PoolStateCache(PoolRegistry())
        cache.seed(PoolInfo(POOL, WETH, TOKEN, kind=PoolKind.CONCENTRATED_LIQUIDITY), RESERVE_IN, RESERVE_OUT)
        evaluator = OpportunityEvaluator(cache, make_config())

        assert evaluator.evaluate(make_intent(50_000)) is None
        assert evaluator.rejections["unsupported-pool-kind"] == 1


class TestStaleness:
    """Version checks around evaluation."""

    def test_recomputes_against_newer_snapshot(self, cache, evaluator):
        old_snapshot = cache.get(POOL)
        cache.apply(POOL, 1_001_000, 500)

        opportunity = evaluator.evaluate(make_intent(50_000), snapshot=old_snapshot)

        assert opportunity.pool_version == 1
        assert evaluator.stats["stale_recomputes"] == 1

    def test_second_version_change_raises(self, cache):
        snapshot = cache.get(POOL)
        moving_cache = MagicMock()
        moving_cache.get.return_value = snapshot
        moving_cache.version.side_effect = [1, 2]
        evaluator = OpportunityEvaluator(moving_cache, make_config())

        with pytest.raises(StaleStateError):
            evaluator.evaluate(make_intent(50_000))

        assert evaluator.stats["stale_abandoned"] == 1


class TestConfig:

    @pytest.mark.parametrize("margin", [Decimal("0"), Decimal("1.5")])
    def test_safety_margin_bounds(self, margin):
        with pytest.raises(ValueError):
            make_config(safety_margin=margin)

    def test_values_become_decimals(self):
        config = make_config(min_price_impact=0.01, min_profit=5)

        assert isinstance(config.min_price_impact, Decimal)
        assert config.min_profit == Decimal(5)
