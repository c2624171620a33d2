"""
Candidate Data Models.

Defines the immutable records that flow through the candidate pipeline:
raw pending transaction, decoded swap intent and sized opportunity.
"""
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from sandwich_engine.pool_state.models import PoolKind


def _to_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def _to_hex(value: Any) -> str:
    if value is None:
        return "0x"
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if hasattr(value, "hex") and not isinstance(value, str):
        text = value.hex()
        return text if text.startswith("0x") else "0x" + text
    return value if value.startswith("0x") else "0x" + value


@dataclass(frozen=True)
class RawTransaction:
    """Pending transaction as delivered by the feed."""
    hash: str
    from_address: str
    to: Optional[str]
    input: str
    value: int
    gas_price: int
    gas_limit: int
    nonce: int
    raw: Optional[str] = None  # Signed RLP, when the feed provides it
    observed_at: float = field(default_factory=time.time)

    @classmethod
    def from_rpc(cls, tx_data: Dict[str, Any], observed_at: Optional[float] = None) -> "RawTransaction":
        """Build from a JSON-RPC / web3 transaction object."""
        to = tx_data.get("to")
        gas_price = tx_data.get("gasPrice")
        if gas_price is None:
            gas_price = tx_data.get("maxFeePerGas")

        return cls(
            hash=_to_hex(tx_data.get("hash")).lower(),
            from_address=(tx_data.get("from") or "").lower(),
            to=to.lower() if to else None,
            input=_to_hex(tx_data.get("input", tx_data.get("data", "0x"))),
            value=_to_int(tx_data.get("value")),
            gas_price=_to_int(gas_price),
            gas_limit=_to_int(tx_data.get("gas")),
            nonce=_to_int(tx_data.get("nonce")),
            raw=_to_hex(tx_data["raw"]) if tx_data.get("raw") else None,
            observed_at=observed_at if observed_at is not None else time.time()
        )


@dataclass(frozen=True)
class PendingSwapIntent:
    """Normalized swap a pending transaction will perform against one tracked pool."""
    tx_hash: str
    pool_id: str
    token_in: str
    token_out: str
    amount_in: int
    amount_out_min: int
    gas_price: int
    observed_at: float

    # Decoding context
    pool_kind: PoolKind = PoolKind.CONSTANT_PRODUCT
    function_name: str = ""
    path: Tuple[str, ...] = ()
    deadline: Optional[int] = None
    exact_output: bool = False
    sender: str = ""
    raw_transaction: Optional[str] = None

    @property
    def hop_count(self) -> int:
        return max(1, len(self.path) - 1)

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.observed_at

    def is_expired(self, horizon_seconds: float, now: Optional[float] = None) -> bool:
        """True once the intent is older than the evaluation horizon."""
        return self.age(now) > horizon_seconds


@dataclass(frozen=True)
class Opportunity:
    """Sized sandwich against one intent and one pool snapshot version."""
    intent: PendingSwapIntent
    pool_version: int
    frontrun_amount: int
    expected_frontrun_output: Decimal
    expected_backrun_output: Decimal
    expected_gross_profit: Decimal
    expected_net_profit: Decimal
    minimum_acceptable_profit: int

    # Cost breakdown in token-in units
    gas_cost: Decimal = Decimal("0")
    flash_fee: Decimal = Decimal("0")
    victim_price_impact: Decimal = Decimal("0")
    created_at: float = field(default_factory=time.time)

    @property
    def pool_id(self) -> str:
        return self.intent.pool_id

    @property
    def target_token(self) -> str:
        """Token held between the front-run and the back-run."""
        return self.intent.token_out

    @property
    def backrun_amount(self) -> int:
        return int(self.expected_frontrun_output)
