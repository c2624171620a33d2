"""
Node subscription feed.

Multiplexes pending transactions, new block heads and UniswapV2 `Sync` logs of
tracked pools from one websocket connection into a single event stream.
"""
import asyncio
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from eth_abi import decode
from eth_utils import keccak, to_checksum_address
from web3 import AsyncWeb3
from web3.providers import WebSocketProvider

from sandwich_engine.exceptions import FeedDisconnectedError

logger = logging.getLogger(__name__)

SYNC_TOPIC = "0x" + keccak(text="Sync(uint112,uint112)").hex()


class FeedEventKind(str, Enum):
    PENDING_TX = "pending_tx"
    NEW_HEAD = "new_head"
    RESERVE_SYNC = "reserve_sync"


@dataclass(frozen=True)
class ReserveSync:
    pool_id: str
    reserve0: int
    reserve1: int


@dataclass(frozen=True)
class FeedEvent:
    kind: FeedEventKind
    payload: Any
    received_at: float = field(default_factory=time.time)


@dataclass
class FeedConfig:
    """Websocket feed settings."""
    ws_url: str
    heartbeat_timeout: float = 30.0
    max_reconnects: int = 5
    reconnect_delay: float = 1.0


class Web3SubscriptionFeed:
    """Websocket event source with bounded reconnects."""

    def __init__(self, config: FeedConfig, pool_addresses: Iterable[str]):
        self.config = config
        self.pool_addresses: List[str] = [address.lower() for address in pool_addresses]
        self.connected = False
        self.stats = {
            "pending_transactions": 0,
            "new_heads": 0,
            "reserve_syncs": 0,
            "reconnects": 0
        }

    async def events(self) -> AsyncIterator[FeedEvent]:
        """
        Yield feed events until the connection is lost beyond repair.

        Raises:
            FeedDisconnectedError: reconnect attempts exhausted
        """
        failures = 0
        while True:
            try:
                async with AsyncWeb3(WebSocketProvider(self.config.ws_url)) as w3:
                    subscriptions = await self._subscribe(w3)
                    self.connected = True
                    failures = 0
                    logger.info(f"Feed subscribed on {self.config.ws_url}")

                    messages = w3.socket.process_subscriptions().__aiter__()
                    while True:
                        # No message within the heartbeat window means a dead socket
                        message = await asyncio.wait_for(
                            messages.__anext__(), timeout=self.config.heartbeat_timeout
                        )
                        event = self._to_event(subscriptions, message)
                        if event is not None:
                            yield event

            except Exception as e:
                self.connected = False
                failures += 1
                if failures > self.config.max_reconnects:
                    logger.error(f"Feed lost after {self.config.max_reconnects} reconnect attempts: {e}")
                    raise FeedDisconnectedError(str(e)) from e

                self.stats["reconnects"] += 1
                delay = self.config.reconnect_delay * failures
                logger.warning(f"Feed connection error ({e}), reconnecting in {delay:.1f}s")
                await asyncio.sleep(delay)

    async def _subscribe(self, w3: AsyncWeb3) -> Dict[str, FeedEventKind]:
        subscriptions = {}

        pending_id = await w3.eth.subscribe("newPendingTransactions", True)
        subscriptions[str(pending_id)] = FeedEventKind.PENDING_TX

        heads_id = await w3.eth.subscribe("newHeads")
        subscriptions[str(heads_id)] = FeedEventKind.NEW_HEAD

        if self.pool_addresses:
            logs_id = await w3.eth.subscribe("logs", {
                "address": [to_checksum_address(address) for address in self.pool_addresses],
                "topics": [SYNC_TOPIC]
            })
            subscriptions[str(logs_id)] = FeedEventKind.RESERVE_SYNC

        return subscriptions

    def _to_event(self, subscriptions: Dict[str, FeedEventKind], message: Dict[str, Any]) -> Optional[FeedEvent]:
        kind = subscriptions.get(str(message.get("subscription")))
        result = message.get("result")
        if kind is None or result is None:
            return None

        if kind == FeedEventKind.PENDING_TX:
            # Nodes without full-body support send bare hashes
            if not isinstance(result, Mapping):
                return None
            self.stats["pending_transactions"] += 1
            return FeedEvent(kind, result)

        if kind == FeedEventKind.NEW_HEAD:
            self.stats["new_heads"] += 1
            number = result.get("number")
            return FeedEvent(kind, int(number, 16) if isinstance(number, str) else int(number))

        sync = decode_sync_log(result)
        if sync is None:
            return None
        self.stats["reserve_syncs"] += 1
        return FeedEvent(kind, sync)


def decode_sync_log(log: Dict[str, Any]) -> Optional[ReserveSync]:
    """Decode a UniswapV2 `Sync(uint112 reserve0, uint112 reserve1)` log."""
    data = log.get("data")
    if isinstance(data, str):
        data = bytes.fromhex(data[2:] if data.startswith("0x") else data)
    try:
        reserve0, reserve1 = decode(["uint112", "uint112"], bytes(data or b""))
    except Exception as e:
        logger.warning(f"Undecodable Sync log from {log.get('address')}: {e}")
        return None
    return ReserveSync(pool_id=str(log["address"]).lower(), reserve0=reserve0, reserve1=reserve1)
