"""Engine settings and configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

from sandwich_engine.blockchain_connector.feed import FeedConfig
from sandwich_engine.execution.builder_client import BuilderConfig
from sandwich_engine.execution.circuit_breaker import CircuitBreakerConfig
from sandwich_engine.execution.coordinator import CoordinatorConfig
from sandwich_engine.execution.settlement import SettlementConfig
from sandwich_engine.mev_detection.mempool_ingestor import IngestorConfig
from sandwich_engine.mev_detection.opportunity_evaluator import EvaluatorConfig
from sandwich_engine.mev_detection.swap_decoder import SwapDecoderConfig
from sandwich_engine.pool_state.cache import PoolCacheConfig
from sandwich_engine.safety.token_screener import ScreenerConfig

UNISWAP_V2_ROUTER = "0x7a250d5630b4cf539739df2c5dacb4c659f2488d"
UNISWAP_V2_FACTORY = "0x5c69bee701ef814a2b6a3edd4b1652cb9cc5aa6f"
WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"


def _split(value: str) -> List[str]:
    return [item.strip().lower() for item in value.split(",") if item.strip()]


class EngineSettings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # Server settings
    host: str = Field(default="0.0.0.0", description="Host to bind the server")
    port: int = Field(default=8000, description="Port to bind the server")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level", alias="LOG_LEVEL")

    # Node settings
    node_http_url: str = Field(
        default="http://localhost:8545",
        description="Node JSON-RPC URL for queries and simulation",
        alias="NODE_HTTP_URL"
    )

    node_ws_url: str = Field(
        default="ws://localhost:8546",
        description="Node websocket URL for the pending-transaction feed",
        alias="NODE_WS_URL"
    )

    chain_id: int = Field(default=1, description="Chain id used for signing", alias="CHAIN_ID")

    node_request_timeout: float = Field(
        default=10.0,
        description="Timeout in seconds for every node query",
        alias="NODE_REQUEST_TIMEOUT"
    )

    feed_heartbeat_timeout: float = Field(
        default=30.0,
        description="Seconds without a feed message before reconnecting",
        alias="FEED_HEARTBEAT_TIMEOUT"
    )

    feed_max_reconnects: int = Field(
        default=5,
        description="Reconnect attempts before the feed is declared lost",
        alias="FEED_MAX_RECONNECTS"
    )

    # Redis settings
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL for persisting rejected token verdicts",
        alias="REDIS_URL"
    )

    # Market settings
    native_token: str = Field(default=WETH, description="Wrapped native token", alias="NATIVE_TOKEN")

    router_addresses: str = Field(
        default=UNISWAP_V2_ROUTER,
        description="Comma-separated UniswapV2-compatible router addresses",
        alias="ROUTER_ADDRESSES"
    )

    factory_address: str = Field(
        default=UNISWAP_V2_FACTORY,
        description="Pair factory used to discover tracked pools",
        alias="FACTORY_ADDRESS"
    )

    tracked_tokens: str = Field(
        default="",
        description="Comma-separated tokens whose native-token pairs are tracked",
        alias="TRACKED_TOKENS"
    )

    pool_fee_bps: int = Field(default=30, description="Swap fee of tracked pairs", alias="POOL_FEE_BPS")

    invariant_tolerance: Decimal = Field(
        default=Decimal("0.10"),
        description="Relative constant-product change accepted from the sync feed",
        alias="INVARIANT_TOLERANCE"
    )

    # Evaluation settings
    min_price_impact: Decimal = Field(
        description="Minimum victim price impact worth sandwiching (fraction)",
        alias="MIN_PRICE_IMPACT"
    )

    min_profit: Decimal = Field(
        description="Minimum expected net profit in token-in base units",
        alias="MIN_PROFIT"
    )

    safety_margin: Decimal = Field(
        default=Decimal("0.9"),
        description="Fraction of the optimal front-run actually used",
        alias="SAFETY_MARGIN"
    )

    max_pool_fraction: Decimal = Field(
        default=Decimal("0.05"),
        description="Largest front-run as a fraction of the input reserve",
        alias="MAX_POOL_FRACTION"
    )

    max_position: Optional[int] = Field(
        default=None,
        description="Largest front-run in token-in base units",
        alias="MAX_POSITION"
    )

    flash_fee_bps: int = Field(default=9, description="Flash settlement fee", alias="FLASH_FEE_BPS")

    gas_price_multiplier: Decimal = Field(
        default=Decimal("1.2"),
        description="Safety multiplier on the estimated gas cost",
        alias="GAS_PRICE_MULTIPLIER"
    )

    max_hops: int = Field(default=1, description="Longest router path accepted", alias="MAX_HOPS")

    # Screening settings
    token_allowlist: str = Field(default="", description="Comma-separated known-good tokens", alias="TOKEN_ALLOWLIST")
    token_denylist: str = Field(default="", description="Comma-separated known-bad tokens", alias="TOKEN_DENYLIST")

    fee_tolerance: Decimal = Field(
        default=Decimal("0.02"),
        description="Round-trip shortfall tolerated by the dry-run",
        alias="FEE_TOLERANCE"
    )

    probe_bytecode: Optional[str] = Field(
        default=None,
        description="Runtime bytecode of the honeypot probe contract",
        alias="PROBE_BYTECODE"
    )

    verdict_ttl_seconds: float = Field(default=300.0, description="Approved verdict TTL", alias="VERDICT_TTL_SECONDS")
    rejected_verdict_ttl_seconds: int = Field(
        default=3600,
        description="Rejected verdict TTL",
        alias="REJECTED_VERDICT_TTL_SECONDS"
    )
    screen_stage_timeout: float = Field(default=5.0, description="Timeout per screening stage", alias="SCREEN_STAGE_TIMEOUT")

    # Execution settings
    settlement_address: Optional[str] = Field(
        default=None,
        description="Flash settlement contract",
        alias="SETTLEMENT_ADDRESS"
    )

    signer_private_key: Optional[str] = Field(
        default=None,
        description="Searcher key that signs settlement calls",
        alias="SIGNER_PRIVATE_KEY"
    )

    builder_urls: str = Field(
        default="https://relay.flashbots.net",
        description="Comma-separated builder endpoints",
        alias="BUILDER_URLS"
    )

    builder_auth_key: Optional[str] = Field(
        default=None,
        description="Reputation key for the X-Flashbots-Signature header",
        alias="BUILDER_AUTH_KEY"
    )

    target_block_count: int = Field(default=2, description="Blocks each bundle targets", alias="TARGET_BLOCK_COUNT")
    fail_safe_marker: str = Field(
        default="InsufficientProfit",
        description="Revert reason of the on-chain profit floor",
        alias="FAIL_SAFE_MARKER"
    )

    breaker_threshold: int = Field(default=3, description="Reverts that open a token's breaker", alias="BREAKER_THRESHOLD")
    breaker_window_seconds: float = Field(default=600.0, description="Revert counting window", alias="BREAKER_WINDOW_SECONDS")
    breaker_cooldown_seconds: float = Field(default=1800.0, description="Breaker cooldown", alias="BREAKER_COOLDOWN_SECONDS")

    # Pipeline settings
    worker_count: int = Field(default=8, description="Candidate worker tasks", alias="WORKER_COUNT")
    queue_capacity: int = Field(default=256, description="Queued candidates before shedding", alias="QUEUE_CAPACITY")
    horizon_seconds: float = Field(default=24.0, description="Evaluation horizon", alias="HORIZON_SECONDS")
    resync_interval_seconds: float = Field(default=12.0, description="Stale pool resync interval", alias="RESYNC_INTERVAL_SECONDS")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }

    # Component configs

    def pool_cache_config(self) -> PoolCacheConfig:
        return PoolCacheConfig(invariant_tolerance=self.invariant_tolerance)

    def decoder_config(self) -> SwapDecoderConfig:
        return SwapDecoderConfig(
            router_addresses=set(_split(self.router_addresses)),
            native_token=self.native_token,
            max_hops=self.max_hops
        )

    def evaluator_config(self) -> EvaluatorConfig:
        return EvaluatorConfig(
            safety_margin=self.safety_margin,
            min_price_impact=self.min_price_impact,
            min_profit=self.min_profit,
            native_token=self.native_token,
            max_pool_fraction=self.max_pool_fraction,
            max_position=self.max_position,
            flash_fee_bps=self.flash_fee_bps,
            gas_price_multiplier=self.gas_price_multiplier
        )

    def screener_config(self) -> ScreenerConfig:
        return ScreenerConfig(
            allowlist=set(_split(self.token_allowlist)),
            denylist=set(_split(self.token_denylist)),
            fee_tolerance=self.fee_tolerance,
            probe_bytecode=self.probe_bytecode,
            verdict_ttl=self.verdict_ttl_seconds,
            rejected_verdict_ttl=self.rejected_verdict_ttl_seconds,
            stage_timeout=self.screen_stage_timeout
        )

    def feed_config(self) -> FeedConfig:
        return FeedConfig(
            ws_url=self.node_ws_url,
            heartbeat_timeout=self.feed_heartbeat_timeout,
            max_reconnects=self.feed_max_reconnects
        )

    def builder_config(self) -> BuilderConfig:
        return BuilderConfig(
            endpoints=_split(self.builder_urls),
            auth_private_key=self.builder_auth_key or ""
        )

    def settlement_config(self) -> SettlementConfig:
        if not self.settlement_address or not self.signer_private_key:
            raise ValueError("SETTLEMENT_ADDRESS and SIGNER_PRIVATE_KEY are required for execution")
        return SettlementConfig(
            contract_address=self.settlement_address,
            signer_private_key=self.signer_private_key,
            chain_id=self.chain_id,
            fail_safe_marker=self.fail_safe_marker
        )

    def breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            threshold=self.breaker_threshold,
            window_seconds=self.breaker_window_seconds,
            cooldown_seconds=self.breaker_cooldown_seconds
        )

    def coordinator_config(self) -> CoordinatorConfig:
        return CoordinatorConfig(
            target_block_count=self.target_block_count,
            horizon_seconds=self.horizon_seconds
        )

    def ingestor_config(self) -> IngestorConfig:
        return IngestorConfig(
            worker_count=self.worker_count,
            queue_capacity=self.queue_capacity,
            horizon_seconds=self.horizon_seconds,
            resync_interval=self.resync_interval_seconds
        )

    @property
    def tracked_token_list(self) -> List[str]:
        return _split(self.tracked_tokens)


@lru_cache()
def get_settings() -> EngineSettings:
    """Settings singleton; thresholds without defaults must be present in the environment."""
    return EngineSettings()
