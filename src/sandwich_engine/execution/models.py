"""Execution data models: bundles, builder responses and attempt results."""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ExecutionState(str, Enum):
    """Coordinator state machine states."""
    IDLE = "idle"
    BUILDING = "building"
    SIMULATING = "simulating"
    SUBMITTED = "submitted"
    INCLUDED = "included"
    REVERTED = "reverted"
    NOT_INCLUDED = "not_included"
    EXPIRED = "expired"
    ABORTED = "aborted"


@dataclass(frozen=True)
class SignedTransaction:
    """Locally signed settlement call."""
    raw: str
    hash: str
    nonce: int


@dataclass(frozen=True)
class Bundle:
    """
    Ordered [front-run, victim, back-run] bundle.

    `raw_transactions` is what the builder receives; the victim transaction is
    referenced by its original signed bytes and never modified.
    `submission_attempt` counts from 1 and grows with each resubmission.
    """
    frontrun: SignedTransaction
    victim_raw: str
    victim_hash: str
    backrun: SignedTransaction
    target_blocks: Tuple[int, ...]
    pool_version: int
    minimum_profit: int
    submission_attempt: int = 1

    @property
    def raw_transactions(self) -> List[str]:
        return [self.frontrun.raw, self.victim_raw, self.backrun.raw]

    @property
    def first_block(self) -> int:
        return self.target_blocks[0]

    @property
    def last_block(self) -> int:
        return self.target_blocks[-1]


@dataclass
class BundleSimulation:
    """Builder dry-run of a bundle."""
    success: bool
    error: Optional[str] = None
    revert_reason: Optional[str] = None
    failed_tx_index: Optional[int] = None
    total_gas_used: int = 0
    coinbase_diff: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class BundleSubmission:
    """Accepted submission on one builder endpoint for one block."""
    endpoint: str
    target_block: int
    bundle_hash: str
    submitted_at: float = field(default_factory=time.time)


class ExecutionOutcome(str, Enum):
    """Terminal result of one candidate."""
    INCLUDED = "included"
    REVERTED = "reverted"
    NOT_INCLUDED = "not_included"
    EXPIRED = "expired"
    ABORTED = "aborted"


@dataclass
class ExecutionResult:
    """
    Terminal record of one execution attempt.

    `fail_safe` marks a Reverted outcome caused by the on-chain minimum-profit
    floor, the expected protective path. `modeling_error` marks a bundle that
    simulated cleanly but reverted for any other reason. `bundle` is the last
    bundle built for the candidate and `bundle_hashes` the hashes the builders
    returned for it across every submission.
    """
    tx_hash: str
    token: str
    outcome: ExecutionOutcome
    states: Tuple[ExecutionState, ...]
    reason: Optional[str] = None
    included_block: Optional[int] = None
    realized_profit: Optional[int] = None
    fail_safe: bool = False
    modeling_error: bool = False
    attempts: int = 1
    bundle: Optional[Bundle] = None
    bundle_hashes: Tuple[str, ...] = ()
    finished_at: float = field(default_factory=time.time)

    @property
    def reached_building(self) -> bool:
        return ExecutionState.BUILDING in self.states
