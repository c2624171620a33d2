"""
Block Builder Client.

Flashbots-style bundle simulation (`eth_callBundle`) and submission
(`eth_sendBundle`) over signed JSON-RPC, with fallback across builder endpoints.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak

from sandwich_engine.exceptions import SubmissionFailure
from .models import Bundle, BundleSimulation, BundleSubmission

logger = logging.getLogger(__name__)


@dataclass
class BuilderConfig:
    """Builder endpoints and request settings."""
    endpoints: List[str] = field(default_factory=lambda: ["https://relay.flashbots.net"])
    auth_private_key: str = ""
    request_timeout: float = 5.0
    attempts_per_endpoint: int = 1


class BuilderClient:
    """
    Signed JSON-RPC client for block builders.

    The first endpoint is used for simulation; submissions go to every
    endpoint and succeed when at least one accepts the bundle.
    """

    def __init__(self, config: BuilderConfig):
        """
        Initialize builder client.

        Args:
            config: Endpoints and the reputation key used for the
                X-Flashbots-Signature header (a burner key, not the searcher key)
        """
        if not config.endpoints:
            raise ValueError("At least one builder endpoint is required")

        self.config = config
        self.account = Account.from_key(config.auth_private_key) if config.auth_private_key else Account.create()
        self.session: Optional[aiohttp.ClientSession] = None
        self._request_id = 0

        self.stats = {
            "simulations": 0,
            "simulation_reverts": 0,
            "bundles_submitted": 0,
            "endpoint_failures": 0
        }

    async def initialize(self):
        """Open the HTTP session."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": "sandwich-engine/0.1"
                }
            )
            logger.info(f"Builder client initialized with {len(self.config.endpoints)} endpoints")

    async def close(self):
        """Close the HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None

    async def simulate_bundle(self, bundle: Bundle, state_block: int) -> BundleSimulation:
        """
        Dry-run the bundle on top of `state_block`.

        Returns a failed BundleSimulation for reverts and for transport errors
        alike; the caller aborts either way.
        """
        self.stats["simulations"] += 1
        params = {
            "txs": bundle.raw_transactions,
            "blockNumber": hex(bundle.first_block),
            "stateBlockNumber": hex(state_block)
        }

        try:
            response = await self._post(self.config.endpoints[0], "eth_callBundle", [params])
        except Exception as e:
            logger.warning(f"Bundle simulation request failed: {e}")
            return BundleSimulation(success=False, error=f"Simulation exception: {e}")

        simulation = self._parse_simulation_result(response)
        if not simulation.success:
            self.stats["simulation_reverts"] += 1
        return simulation

    async def send_bundle(self, bundle: Bundle) -> List[BundleSubmission]:
        """
        Submit the bundle for every target block on every endpoint.

        Raises:
            SubmissionFailure: no endpoint accepted the bundle for any block
        """
        submissions: List[BundleSubmission] = []
        errors: List[str] = []

        for endpoint in self.config.endpoints:
            for block in bundle.target_blocks:
                params = {"txs": bundle.raw_transactions, "blockNumber": hex(block)}
                submission = await self._send_with_retries(endpoint, block, params, errors)
                if submission is not None:
                    submissions.append(submission)

        if not submissions:
            raise SubmissionFailure(errors)

        self.stats["bundles_submitted"] += 1
        logger.info(
            f"Bundle for {bundle.victim_hash[:10]}... submitted to "
            f"{len({s.endpoint for s in submissions})} endpoints, blocks {bundle.first_block}-{bundle.last_block}"
        )
        return submissions

    async def _send_with_retries(
        self,
        endpoint: str,
        block: int,
        params: Dict[str, Any],
        errors: List[str]
    ) -> Optional[BundleSubmission]:
        for attempt in range(self.config.attempts_per_endpoint):
            try:
                response = await self._post(endpoint, "eth_sendBundle", [params])
            except Exception as e:
                self.stats["endpoint_failures"] += 1
                errors.append(f"{endpoint}: {e}")
                logger.warning(f"Submission to {endpoint} failed (attempt {attempt + 1}): {e}")
                continue

            if "error" in response:
                self.stats["endpoint_failures"] += 1
                message = response["error"].get("message", str(response["error"]))
                errors.append(f"{endpoint}: {message}")
                logger.warning(f"Builder {endpoint} rejected bundle: {message}")
                return None

            result = response.get("result") or {}
            bundle_hash = result.get("bundleHash", "") if isinstance(result, dict) else str(result)
            return BundleSubmission(endpoint=endpoint, target_block=block, bundle_hash=bundle_hash)
        return None

    async def _post(self, endpoint: str, method: str, params: List[Any]) -> Dict[str, Any]:
        if not self.session:
            raise RuntimeError("Client not initialized")

        self._request_id += 1
        body = json.dumps({
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params
        })

        async with self.session.post(endpoint, data=body, headers=self._signature_headers(body)) as response:
            if response.status != 200:
                error_text = await response.text()
                raise aiohttp.ClientResponseError(
                    response.request_info,
                    response.history,
                    status=response.status,
                    message=error_text
                )
            return await response.json(content_type=None)

    def _signature_headers(self, body: str) -> Dict[str, str]:
        """X-Flashbots-Signature: signer address and signature of keccak(body)."""
        message = encode_defunct(text="0x" + keccak(text=body).hex())
        signature = self.account.sign_message(message)
        return {
            "Content-Type": "application/json",
            "X-Flashbots-Signature": f"{self.account.address}:0x{bytes(signature.signature).hex()}"
        }

    @staticmethod
    def _parse_simulation_result(response: Dict[str, Any]) -> BundleSimulation:
        """Parse an eth_callBundle response."""
        if "error" in response:
            error = response["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            return BundleSimulation(success=False, error=message)

        result = response.get("result") or {}
        tx_results = result.get("results", [])

        for index, tx_result in enumerate(tx_results):
            if "error" in tx_result or "revert" in tx_result:
                reason = tx_result.get("revert") or tx_result.get("error")
                return BundleSimulation(
                    success=False,
                    error=tx_result.get("error"),
                    revert_reason=str(reason),
                    failed_tx_index=index,
                    results=tx_results
                )

        coinbase_diff = result.get("coinbaseDiff", "0")
        return BundleSimulation(
            success=True,
            total_gas_used=int(result.get("totalGasUsed", 0)),
            coinbase_diff=int(coinbase_diff) if str(coinbase_diff).isdigit() else int(coinbase_diff, 16),
            results=tx_results
        )

    async def health_check(self) -> Dict[str, Any]:
        return {
            "endpoints": len(self.config.endpoints),
            "session_open": self.session is not None and not self.session.closed
        }

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()


async def create_builder_client(config: BuilderConfig) -> BuilderClient:
    """Create and initialize a builder client."""
    client = BuilderClient(config)
    await client.initialize()
    return client
