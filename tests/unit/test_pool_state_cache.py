"""
Unit tests for the pool state cache and registry.

Covers versioning, invariant validation, stale marking, resync and the
per-pool writer tasks.
"""
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from sandwich_engine.exceptions import CorruptFeedError, PoolNotTrackedError
from sandwich_engine.pool_state import PoolCacheConfig, PoolInfo, PoolKind, PoolRegistry, PoolStateCache
from sandwich_engine.pool_state.registry import ZERO_ADDRESS

POOL = "0x" + "aa" * 20
TOKEN_A = "0x" + "0a" * 20
WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"


@pytest.fixture
def pool():
    return PoolInfo(pool_id=POOL.upper().replace("0X", "0x"), token0=TOKEN_A, token1=WETH)


@pytest.fixture
def cache(pool):
    cache = PoolStateCache(PoolRegistry(), PoolCacheConfig(invariant_tolerance=Decimal("0.10")))
    cache.seed(pool, 1_000_000, 500)
    return cache


def test_pool_info_normalizes_addresses(pool):
    assert pool.pool_id == POOL
    assert pool.other_token(WETH) == TOKEN_A
    assert pool.has_token(TOKEN_A.upper().replace("0X", "0x"))

    with pytest.raises(ValueError):
        pool.other_token("0x" + "ff" * 20)


def test_seed_starts_at_version_zero(cache):
    snapshot = cache.get(POOL)

    assert snapshot.version == 0
    assert snapshot.reserve0 == 1_000_000
    assert snapshot.reserve1 == 500
    assert not snapshot.stale
    assert cache.registry.is_tracked(POOL)


def test_reserves_for_orients_by_token(cache):
    snapshot = cache.get(POOL)

    assert snapshot.reserves_for(TOKEN_A) == (1_000_000, 500)
    assert snapshot.reserves_for(WETH) == (500, 1_000_000)


def test_untracked_pool_raises(cache):
    with pytest.raises(PoolNotTrackedError):
        cache.get("0x" + "bb" * 20)

    assert not cache.is_tracked("0x" + "bb" * 20)


def test_apply_bumps_version_and_keeps_old_snapshot(cache):
    before = cache.get(POOL)

    after = cache.apply(POOL, 1_010_000, 496)

    assert after.version == before.version + 1
    assert cache.version(POOL) == 1
    # Snapshots are immutable; readers holding the old one are unaffected
    assert before.reserve0 == 1_000_000
    assert cache.get(POOL).reserve0 == 1_010_000


def test_versions_are_monotonic(cache):
    versions = [cache.apply(POOL, 1_000_000 + i, 500).version for i in range(1, 6)]

    assert versions == [1, 2, 3, 4, 5]


def test_negative_reserve_marks_pool_stale(cache):
    with pytest.raises(CorruptFeedError):
        cache.apply(POOL, -1, 500)

    snapshot = cache.get(POOL)
    assert snapshot.stale
    assert snapshot.reserve0 == 1_000_000
    assert cache.stale_pools() == [POOL]


def test_invariant_jump_marks_pool_stale(cache):
    with pytest.raises(CorruptFeedError) as exc_info:
        cache.apply(POOL, 2_000_000, 500)

    assert "invariant" in exc_info.value.reason
    assert cache.get(POOL).stale
    assert cache.get_stats()["updates_rejected"] == 1


def test_small_invariant_drift_is_accepted(cache):
    # Fees accrue, so k grows slightly on every swap
    snapshot = cache.apply(POOL, 1_050_000, 480)

    assert not snapshot.stale


def test_resync_clears_stale_flag(cache):
    with pytest.raises(CorruptFeedError):
        cache.apply(POOL, 5_000_000, 500)

    snapshot = cache.resync(POOL, 5_000_000, 500)

    assert not snapshot.stale
    assert snapshot.reserve0 == 5_000_000
    assert cache.stale_pools() == []
    assert cache.get_stats()["resyncs"] == 1


def test_concentrated_liquidity_skips_invariant_check():
    pool = PoolInfo(POOL, TOKEN_A, WETH, kind=PoolKind.CONCENTRATED_LIQUIDITY)
    cache = PoolStateCache(PoolRegistry())
    cache.seed(pool, 100, 100)

    snapshot = cache.apply(POOL, 1_000, 1_000)

    assert not snapshot.stale


@pytest.mark.asyncio
async def test_writer_applies_updates_in_order(cache):
    await cache.start()
    try:
        assert cache.enqueue_update(POOL, 1_001_000, 500)
        assert cache.enqueue_update(POOL, 1_002_000, 499)
        await cache.drain()

        snapshot = cache.get(POOL)
        assert snapshot.version == 2
        assert snapshot.reserve0 == 1_002_000
        assert snapshot.reserve1 == 499
    finally:
        await cache.stop()


@pytest.mark.asyncio
async def test_writer_survives_corrupt_update(cache):
    await cache.start()
    try:
        cache.enqueue_update(POOL, -5, 500)
        cache.enqueue_update(POOL, 1_000_100, 500)
        await cache.drain()

        # Still stale until a resync, but the writer kept running
        assert cache.get(POOL).stale
        assert cache.get(POOL).version == 2
    finally:
        await cache.stop()


def test_enqueue_for_untracked_pool_is_refused(cache):
    assert cache.enqueue_update("0x" + "bb" * 20, 1, 1) is False


@pytest.mark.asyncio
async def test_registry_from_factory():
    node = AsyncMock()
    good_token = "0x" + "01" * 20
    missing_token = "0x" + "02" * 20
    node.get_pair.side_effect = [POOL, ZERO_ADDRESS]
    node.get_pair_tokens.return_value = (good_token, WETH)

    registry = await PoolRegistry.from_factory(
        node, "0x" + "fa" * 20, [good_token, missing_token, WETH], WETH, fee_bps=25
    )

    assert len(registry) == 1
    pool = registry.find_pair(WETH, good_token)
    assert pool.pool_id == POOL
    assert pool.fee_bps == 25
    assert node.get_pair.await_count == 2


def test_registry_lookup_is_order_independent(pool):
    registry = PoolRegistry([pool])

    assert registry.find_pair(TOKEN_A, WETH) is registry.find_pair(WETH, TOKEN_A)
    assert registry.pool_ids() == [POOL]
    assert list(registry) == [pool]
