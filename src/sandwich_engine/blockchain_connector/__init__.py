"""Node connectivity: query client and subscription feed."""
from .node_client import NodeClient
from .feed import FeedConfig, FeedEvent, FeedEventKind, ReserveSync, Web3SubscriptionFeed, decode_sync_log

__all__ = [
    "NodeClient",
    "FeedConfig",
    "FeedEvent",
    "FeedEventKind",
    "ReserveSync",
    "Web3SubscriptionFeed",
    "decode_sync_log",
]
