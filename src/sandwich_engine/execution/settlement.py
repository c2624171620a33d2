"""
Settlement contract calls.

Encodes and signs the front-run and back-run calls of a bundle. The back-run
carries the opportunity's minimum acceptable profit; the settlement contract
reverts the whole call when its token-in gain falls below it.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict

from eth_abi import encode
from eth_account import Account
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from sandwich_engine.mev_detection.opportunity_models import Opportunity
from .models import SignedTransaction

logger = logging.getLogger(__name__)

FRONTRUN_SIGNATURE = "frontrun(address,address,address,uint256,uint256)"
BACKRUN_SIGNATURE = "backrun(address,address,address,uint256,uint256)"
SETTLEMENT_ARG_TYPES = ["address", "address", "address", "uint256", "uint256"]


@dataclass
class SettlementConfig:
    """Settlement contract and signer settings."""
    contract_address: str
    signer_private_key: str
    chain_id: int = 1
    frontrun_gas_limit: int = 250_000
    backrun_gas_limit: int = 250_000

    # Extra priority fee over the victim's, in wei per gas
    priority_fee_premium: int = 1_000_000_000

    # Revert-reason marker of the designed minimum-profit revert
    fail_safe_marker: str = "InsufficientProfit"


def encode_frontrun(opportunity: Opportunity, min_amount_out: int) -> bytes:
    """Calldata buying the target token ahead of the victim."""
    intent = opportunity.intent
    return function_signature_to_4byte_selector(FRONTRUN_SIGNATURE) + encode(
        SETTLEMENT_ARG_TYPES,
        [
            to_checksum_address(intent.pool_id),
            to_checksum_address(intent.token_in),
            to_checksum_address(intent.token_out),
            opportunity.frontrun_amount,
            min_amount_out
        ]
    )


def encode_backrun(opportunity: Opportunity) -> bytes:
    """Calldata selling the target token back with the on-chain profit floor."""
    intent = opportunity.intent
    return function_signature_to_4byte_selector(BACKRUN_SIGNATURE) + encode(
        SETTLEMENT_ARG_TYPES,
        [
            to_checksum_address(intent.pool_id),
            to_checksum_address(intent.token_out),
            to_checksum_address(intent.token_in),
            opportunity.backrun_amount,
            opportunity.minimum_acceptable_profit
        ]
    )


class SettlementSigner:
    """Builds and signs settlement transactions with the searcher key."""

    def __init__(self, config: SettlementConfig):
        self.config = config
        self.account = Account.from_key(config.signer_private_key)
        self.contract_address = to_checksum_address(config.contract_address)

    @property
    def address(self) -> str:
        return self.account.address

    def _sign(self, calldata: bytes, nonce: int, gas_limit: int, max_fee: int, priority_fee: int) -> SignedTransaction:
        tx: Dict[str, Any] = {
            "type": 2,
            "chainId": self.config.chain_id,
            "nonce": nonce,
            "to": self.contract_address,
            "value": 0,
            "data": "0x" + calldata.hex(),
            "gas": gas_limit,
            "maxFeePerGas": max_fee,
            "maxPriorityFeePerGas": min(priority_fee, max_fee),
        }
        signed = self.account.sign_transaction(tx)
        return SignedTransaction(
            raw="0x" + bytes(signed.raw_transaction).hex(),
            hash="0x" + bytes(signed.hash).hex(),
            nonce=nonce
        )

    def sign_pair(self, opportunity: Opportunity, nonce: int, base_fee: int):
        """
        Sign the front-run (nonce) and back-run (nonce + 1).

        The front-run outbids the victim's gas price; the back-run pays the
        victim's price so it lands right after it.

        Returns:
            (frontrun, backrun) signed transactions
        """
        victim_gas_price = opportunity.intent.gas_price
        frontrun_fee = max(victim_gas_price + self.config.priority_fee_premium, base_fee)
        backrun_fee = max(victim_gas_price, base_fee)

        # Exact expected output of the front-run; any slippage reverts it
        min_amount_out = opportunity.backrun_amount

        frontrun = self._sign(
            encode_frontrun(opportunity, min_amount_out),
            nonce,
            self.config.frontrun_gas_limit,
            max_fee=frontrun_fee,
            priority_fee=frontrun_fee - base_fee
        )
        backrun = self._sign(
            encode_backrun(opportunity),
            nonce + 1,
            self.config.backrun_gas_limit,
            max_fee=backrun_fee,
            priority_fee=backrun_fee - base_fee
        )
        return frontrun, backrun

    def is_fail_safe_revert(self, reason: str) -> bool:
        return bool(reason) and self.config.fail_safe_marker in reason
