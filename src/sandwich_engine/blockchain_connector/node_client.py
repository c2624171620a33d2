"""Async node query client for reserve reads, simulation and inclusion polling."""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address
from hexbytes import HexBytes
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TransactionNotFound
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)


def _selector(signature: str) -> bytes:
    return function_signature_to_4byte_selector(signature)


GET_RESERVES = _selector("getReserves()")
TOKEN0 = _selector("token0()")
TOKEN1 = _selector("token1()")
GET_PAIR = _selector("getPair(address,address)")
BALANCE_OF = _selector("balanceOf(address)")


class NodeClient:
    """
    Thin async wrapper over AsyncWeb3.

    Every call is bounded by `request_timeout`; a timed-out call raises
    asyncio.TimeoutError to the caller, which owns the retry policy.
    """

    def __init__(self, rpc_url: str, request_timeout: float = 10.0, w3: Optional[AsyncWeb3] = None):
        self.rpc_url = rpc_url
        self.request_timeout = request_timeout
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))

    async def _bounded(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.request_timeout)

    async def is_connected(self) -> bool:
        try:
            return await self._bounded(self.w3.is_connected())
        except Exception:
            return False

    async def block_number(self) -> int:
        return await self._bounded(self.w3.eth.block_number)

    async def get_block_transaction_hashes(self, block_identifier) -> List[str]:
        block = await self._bounded(self.w3.eth.get_block(block_identifier, full_transactions=False))
        return ["0x" + bytes(HexBytes(tx_hash)).hex() for tx_hash in block["transactions"]]

    async def get_base_fee(self, block_identifier="latest") -> int:
        block = await self._bounded(self.w3.eth.get_block(block_identifier))
        return int(block.get("baseFeePerGas", 0))

    async def get_nonce(self, address: str) -> int:
        return await self._bounded(
            self.w3.eth.get_transaction_count(to_checksum_address(address), "pending")
        )

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Transaction receipt, or None while the transaction is not mined."""
        try:
            return await self._bounded(self.w3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            return None

    async def get_raw_transaction(self, tx_hash: str) -> Optional[str]:
        """Signed RLP of a pending or mined transaction."""
        response = await self._bounded(
            self.w3.provider.make_request("eth_getRawTransactionByHash", [tx_hash])
        )
        return response.get("result")

    async def get_code(self, address: str) -> bytes:
        return bytes(await self._bounded(self.w3.eth.get_code(to_checksum_address(address))))

    async def call(
        self,
        transaction: Dict[str, Any],
        state_override: Optional[Dict[str, Any]] = None,
        block_identifier="latest"
    ) -> bytes:
        """eth_call, optionally against overridden account state."""
        tx = dict(transaction)
        tx["to"] = to_checksum_address(tx["to"])
        if "from" in tx:
            tx["from"] = to_checksum_address(tx["from"])

        if state_override:
            result = await self._bounded(self.w3.eth.call(tx, block_identifier, state_override))
        else:
            result = await self._bounded(self.w3.eth.call(tx, block_identifier))
        return bytes(result)

    async def _call_contract(self, address: str, calldata: bytes) -> bytes:
        return await self.call({"to": address, "data": "0x" + calldata.hex()})

    async def get_reserves(self, pair_address: str) -> Tuple[int, int]:
        result = await self._call_contract(pair_address, GET_RESERVES)
        reserve0, reserve1, _timestamp = decode(["uint112", "uint112", "uint32"], result)
        return reserve0, reserve1

    async def get_pair(self, factory_address: str, token_a: str, token_b: str) -> str:
        calldata = GET_PAIR + encode(
            ["address", "address"], [to_checksum_address(token_a), to_checksum_address(token_b)]
        )
        (pair,) = decode(["address"], await self._call_contract(factory_address, calldata))
        return pair.lower()

    async def get_pair_tokens(self, pair_address: str) -> Tuple[str, str]:
        token0_result, token1_result = await asyncio.gather(
            self._call_contract(pair_address, TOKEN0),
            self._call_contract(pair_address, TOKEN1)
        )
        (token0,) = decode(["address"], token0_result)
        (token1,) = decode(["address"], token1_result)
        return token0.lower(), token1.lower()

    async def get_token_balance(self, token: str, holder: str) -> int:
        calldata = BALANCE_OF + encode(["address"], [to_checksum_address(holder)])
        (balance,) = decode(["uint256"], await self._call_contract(token, calldata))
        return balance

    async def get_revert_reason(self, tx_hash: str, block_number: int) -> str:
        """
        Replay a mined transaction as eth_call to recover its revert reason.

        Best effort: the replay runs against the state at the end of the block,
        so an empty string means the reason could not be reproduced.
        """
        tx = await self._bounded(self.w3.eth.get_transaction(tx_hash))
        replay = {"from": tx["from"], "to": tx["to"], "data": tx["input"], "value": tx["value"], "gas": tx["gas"]}
        try:
            await self._bounded(self.w3.eth.call(replay, block_number))
        except ContractLogicError as e:
            return str(e.message or e)
        return ""

    async def get_health(self) -> Dict[str, Any]:
        try:
            block = await self.block_number()
            return {"status": "healthy", "connected": True, "block_number": block}
        except Exception as e:
            return {"status": "error", "connected": False, "error": str(e)}
