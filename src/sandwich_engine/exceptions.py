"""Error taxonomy for the candidate pipeline.

Everything here except FeedDisconnectedError is recovered locally inside the
pipeline; the classes exist so each stage can say precisely why a candidate
was discarded.
"""
from typing import Optional


class EngineError(Exception):
    """Base class for engine errors."""


class DecodeError(EngineError):
    """Raw transaction is not a recognised swap against a tracked pool."""

    def __init__(self, reason: str, tx_hash: Optional[str] = None):
        self.reason = reason
        self.tx_hash = tx_hash
        super().__init__(f"{reason} ({tx_hash})" if tx_hash else reason)


class PoolNotTrackedError(EngineError):
    """Pool id is not present in the pool state cache."""

    def __init__(self, pool_id: str):
        self.pool_id = pool_id
        super().__init__(f"Pool not tracked: {pool_id}")


class CorruptFeedError(EngineError):
    """Reserve update violates the pool invariants."""

    def __init__(self, pool_id: str, reason: str):
        self.pool_id = pool_id
        self.reason = reason
        super().__init__(f"Corrupt reserve update for {pool_id}: {reason}")


class StaleStateError(EngineError):
    """Pool version advanced while a result was being computed."""

    def __init__(self, pool_id: str, expected_version: int, current_version: int):
        self.pool_id = pool_id
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(
            f"Pool {pool_id} advanced from version {expected_version} to {current_version}"
        )


class SimulationRevert(EngineError):
    """Bundle simulation reported a reverting transaction."""

    def __init__(self, reason: str, tx_index: Optional[int] = None):
        self.reason = reason
        self.tx_index = tx_index
        super().__init__(f"Simulation reverted at tx {tx_index}: {reason}")


class BelowMinimumProfit(EngineError):
    """Expected or enforced profit is below the configured floor."""


class SafetyRejected(EngineError):
    """Token screening produced a Rejected verdict."""

    def __init__(self, token: str, reason: str):
        self.token = token
        self.reason = reason
        super().__init__(f"Token {token} rejected: {reason}")


class SubmissionFailure(EngineError):
    """No builder endpoint accepted the bundle."""

    def __init__(self, errors: list):
        self.errors = errors
        super().__init__(f"Bundle submission failed on all endpoints: {errors}")


class InclusionTimeout(EngineError):
    """Bundle was not included within its target block window."""

    def __init__(self, last_block: int):
        self.last_block = last_block
        super().__init__(f"Bundle not included by block {last_block}")


class FeedDisconnectedError(EngineError):
    """Pending-transaction feed is gone and reconnect attempts are exhausted."""
