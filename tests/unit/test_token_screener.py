"""
Unit tests for the Token Screener.

The node is mocked: get_code drives the static scan and call() returns the
probe contract's (bought, proceeds) pair for the dry run.
"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector
from redis.exceptions import RedisError
from web3.exceptions import ContractLogicError

from sandwich_engine.pool_state import PoolReserves
from sandwich_engine.protocols.dex_protocols import UniswapV2Math
from sandwich_engine.safety import (
    RedisVerdictStore,
    SafetyVerdict,
    ScreenerConfig,
    TokenScreener,
    VerdictCache,
    VerdictOutcome,
)
from sandwich_engine.safety.token_screener import ADMIN_SELECTORS, MINIMAL_PROXY_PREFIX, PUSH4, SELECTOR_SIGNATURES

TOKEN = "0x" + "11" * 20
WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"
POOL = "0x" + "aa" * 20
PROBE_CODE = "0x6080604052"
CLEAN_CODE = bytes.fromhex("608060405234801561001057600080fd5b50")


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def snapshot():
    return PoolReserves(
        pool_id=POOL,
        token0=TOKEN,
        token1=WETH,
        reserve0=10**24,
        reserve1=10**21,
        fee_bps=30,
        version=3
    )


def probe_result(snapshot, buy_keep=Decimal("1"), sell_keep=Decimal("1")):
    """Encode what the probe returns for a token taxing buys and sells by the given factors."""
    amm = UniswapV2Math(snapshot.fee_bps)
    amount_in = Decimal(10**15)
    reserve_quote, reserve_token = Decimal(snapshot.reserve1), Decimal(snapshot.reserve0)
    expected_bought = amm.calculate_amount_out(amount_in, reserve_quote, reserve_token)
    bought = int(expected_bought * buy_keep)
    proceeds = amm.calculate_amount_out(bought, reserve_token - expected_bought, reserve_quote + amount_in)
    return encode(["uint256", "uint256"], [bought, int(proceeds * sell_keep)])


@pytest.fixture
def node(snapshot):
    node = AsyncMock()
    node.get_code.return_value = CLEAN_CODE
    node.call.return_value = probe_result(snapshot)
    return node


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def screener(node, clock):
    return TokenScreener(node, ScreenerConfig(probe_bytecode=PROBE_CODE, stage_timeout=1.0), clock=clock)


class TestTokenScreener:
    """Staged screening pipeline."""

    async def test_clean_token_is_approved(self, screener, snapshot, node):
        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert verdict.is_approved
        assert verdict.outcome == VerdictOutcome.APPROVED
        node.get_code.assert_awaited_once()
        node.call.assert_awaited_once()

        transaction = node.call.await_args.args[0]
        overrides = node.call.await_args.kwargs["state_override"]
        assert transaction["data"].startswith("0x")
        assert list(overrides.values())[0]["code"] == PROBE_CODE

    async def test_reverting_sell_is_rejected(self, screener, snapshot, node):
        node.call.side_effect = ContractLogicError("execution reverted: TRANSFER_FAILED")

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert not verdict.is_approved
        assert verdict.reason == "simulation-revert"
        assert str(verdict) == 'Rejected("simulation-revert")'

    async def test_buy_tax_is_rejected(self, screener, snapshot, node):
        node.call.return_value = probe_result(snapshot, buy_keep=Decimal("0.9"))

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert verdict.reason == "buy-tax"

    async def test_sell_shortfall_is_rejected(self, screener, snapshot, node):
        node.call.return_value = probe_result(snapshot, sell_keep=Decimal("0.5"))

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert verdict.reason == "sell-shortfall"

    async def test_node_failure_fails_closed(self, screener, snapshot, node):
        node.call.side_effect = ConnectionError("node unreachable")

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert verdict.reason == "simulation-unavailable"

    async def test_missing_probe_fails_closed(self, node, snapshot):
        screener = TokenScreener(node, ScreenerConfig())

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert verdict.reason == "simulation-unavailable"
        node.call.assert_not_awaited()

    async def test_stage_timeout_fails_closed(self, node, snapshot):
        async def slow_code(token):
            await asyncio.sleep(1)
            return CLEAN_CODE

        node.get_code.side_effect = slow_code
        screener = TokenScreener(node, ScreenerConfig(probe_bytecode=PROBE_CODE, stage_timeout=0.01))

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert verdict.reason == "static-scan-unavailable"

    async def test_token_without_code(self, screener, snapshot, node):
        node.get_code.return_value = b""

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert verdict.reason == "no-code"
        node.call.assert_not_awaited()

    async def test_admin_function_in_bytecode(self, screener, snapshot, node):
        blacklist_selector = next(s for s, reason in ADMIN_SELECTORS.items() if reason == "blacklist-function")
        node.get_code.return_value = CLEAN_CODE + bytes.fromhex(PUSH4 + blacklist_selector + "14")

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert verdict.reason == "blacklist-function"
        assert verdict.stage == "static"

    async def test_minimal_proxy(self, screener, snapshot, node):
        node.get_code.return_value = bytes.fromhex(MINIMAL_PROXY_PREFIX + "22" * 20 + "5af43d82803e903d91602b57fd5bf3")

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert verdict.reason == "proxy-token"

    async def test_denylist_short_circuits(self, node, snapshot):
        screener = TokenScreener(node, ScreenerConfig(denylist={TOKEN.upper().replace("0X", "0x")}))

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert verdict.reason == "denylisted"
        node.get_code.assert_not_awaited()

    async def test_allowlist_skips_bytecode_checks(self, node, snapshot):
        screener = TokenScreener(node, ScreenerConfig(allowlist={TOKEN}))

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert verdict.is_approved
        node.get_code.assert_not_awaited()
        node.call.assert_not_awaited()


class TestLiquidityStage:
    """Stage 4 depends on the planned exit and is never cached."""

    async def test_exit_larger_than_pool_share(self, screener, snapshot):
        verdict = await screener.screen(TOKEN, snapshot.reserve0, snapshot)

        assert verdict.reason == "insufficient-liquidity"

    async def test_zero_exit(self, screener, snapshot):
        verdict = await screener.screen(TOKEN, 0, snapshot)

        assert verdict.reason == "insufficient-liquidity"

    async def test_liquidity_rejection_does_not_poison_token(self, screener, snapshot, node):
        await screener.screen(TOKEN, snapshot.reserve0, snapshot)

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert verdict.is_approved
        node.get_code.assert_awaited_once()


class TestVerdictEvidence:
    """Each stage records what it observed."""

    async def test_approval_carries_dry_run_and_liquidity_figures(self, screener, snapshot):
        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        evidence = verdict.evidence
        assert evidence["amount_in"] == str(10**15)
        assert evidence["bought"] == evidence["expected_bought"]
        assert evidence["planned_exit"] == str(10**18)
        assert evidence["reserve_token"] == str(snapshot.reserve0)
        assert evidence["pool_version"] == "3"
        assert int(evidence["exit_out"]) > 0

    async def test_sell_shortfall_records_proceeds(self, screener, snapshot, node):
        node.call.return_value = probe_result(snapshot, sell_keep=Decimal("0.5"))

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        evidence = verdict.evidence
        assert verdict.reason == "sell-shortfall"
        assert int(evidence["proceeds"]) * 2 < int(evidence["amount_in"])
        assert int(evidence["proceeds"]) < int(evidence["expected_proceeds"])

    async def test_matched_admin_selector_is_recorded(self, screener, snapshot, node):
        selector = next(s for s, reason in ADMIN_SELECTORS.items() if reason == "pausable")
        node.get_code.return_value = CLEAN_CODE + bytes.fromhex(PUSH4 + selector + "14")

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert verdict.evidence["selector"] == "0x" + selector
        assert verdict.evidence["signature"] == SELECTOR_SIGNATURES[selector]
        assert function_signature_to_4byte_selector(verdict.evidence["signature"]).hex() == selector

    async def test_revert_message_is_recorded(self, screener, snapshot, node):
        node.call.side_effect = ContractLogicError("execution reverted: TRANSFER_FAILED")

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert "TRANSFER_FAILED" in verdict.evidence["revert"]

    async def test_liquidity_rejection_keeps_token_evidence(self, screener, snapshot):
        verdict = await screener.screen(TOKEN, snapshot.reserve0, snapshot)

        assert verdict.reason == "insufficient-liquidity"
        assert verdict.evidence["planned_exit"] == str(snapshot.reserve0)
        assert "bought" in verdict.evidence

    def test_evidence_is_read_only(self):
        verdict = SafetyVerdict.reject(TOKEN, "buy-tax", evidence={"bought": 5})

        assert verdict.evidence == {"bought": "5"}
        with pytest.raises(TypeError):
            verdict.evidence["bought"] = "6"


class TestVerdictCaching:

    async def test_verdict_is_reused(self, screener, snapshot, node):
        await screener.screen(TOKEN, 10**18, snapshot)
        await screener.screen(TOKEN, 10**18, snapshot)

        node.get_code.assert_awaited_once()
        assert screener.get_stats()["cache_hits"] == 1

    async def test_verdict_expires(self, screener, snapshot, node, clock):
        await screener.screen(TOKEN, 10**18, snapshot)
        clock.now += 301

        await screener.screen(TOKEN, 10**18, snapshot)

        assert node.get_code.await_count == 2

    async def test_invalidate_forces_rescreen(self, screener, snapshot, node):
        await screener.screen(TOKEN, 10**18, snapshot)
        screener.invalidate(TOKEN)

        await screener.screen(TOKEN, 10**18, snapshot)

        assert node.get_code.await_count == 2

    async def test_concurrent_screens_share_one_run(self, screener, snapshot, node):
        verdicts = await asyncio.gather(*(screener.screen(TOKEN, 10**18, snapshot) for _ in range(5)))

        assert all(v.is_approved for v in verdicts)
        node.get_code.assert_awaited_once()
        assert len(screener._locks) == 0

    async def test_rejection_is_mirrored_to_redis(self, node, snapshot):
        client = AsyncMock()
        client.get.return_value = None
        node.call.side_effect = ContractLogicError("execution reverted")
        screener = TokenScreener(
            node,
            ScreenerConfig(probe_bytecode=PROBE_CODE, rejected_verdict_ttl=7200),
            redis_store=RedisVerdictStore(client)
        )

        await screener.screen(TOKEN, 10**18, snapshot)

        client.setex.assert_awaited_once_with(f"sandwich:verdict:{TOKEN}", 7200, "simulation-revert")

    async def test_transient_failure_is_not_persisted(self, node, snapshot):
        client = AsyncMock()
        client.get.return_value = None
        node.call.side_effect = TimeoutError()
        screener = TokenScreener(node, ScreenerConfig(probe_bytecode=PROBE_CODE), redis_store=RedisVerdictStore(client))

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert verdict.reason == "simulation-unavailable"
        client.setex.assert_not_awaited()

    async def test_persisted_rejection_skips_pipeline(self, node, snapshot):
        client = AsyncMock()
        client.get.return_value = "sell-tax"
        screener = TokenScreener(node, ScreenerConfig(probe_bytecode=PROBE_CODE), redis_store=RedisVerdictStore(client))

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert verdict.reason == "sell-tax"
        assert verdict.stage == "cache"
        assert verdict.evidence["source"] == "redis"
        node.get_code.assert_not_awaited()

    async def test_redis_errors_are_a_miss(self, node, snapshot):
        client = AsyncMock()
        client.get.side_effect = RedisError("down")
        screener = TokenScreener(node, ScreenerConfig(probe_bytecode=PROBE_CODE), redis_store=RedisVerdictStore(client))

        verdict = await screener.screen(TOKEN, 10**18, snapshot)

        assert verdict.is_approved


def test_verdict_cache_expiry():
    clock = FakeClock()
    cache = VerdictCache(clock)
    cache.put(SafetyVerdict.reject(TOKEN.upper().replace("0X", "0x"), "pausable"), ttl=10)

    assert cache.get(TOKEN).reason == "pausable"
    clock.now += 10
    assert cache.get(TOKEN) is None
    assert len(cache) == 0


def test_verdict_rendering():
    assert str(SafetyVerdict.approve(TOKEN)) == "Approved"
    assert str(SafetyVerdict.reject(TOKEN, "buy-tax")) == 'Rejected("buy-tax")'
