"""
Execution Coordinator.

Turns one approved opportunity into a single monitored bundle attempt:

    Idle -> Building -> Simulating -> Submitted -> {Included | Reverted | NotIncluded}

plus Expired (victim settled or aged out) and Aborted (never submitted).
Each bundle runs as its own detached task so a slow confirmation never holds
up evaluation of new candidates.
"""
import asyncio
import logging
import time
from collections import Counter, deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from sandwich_engine.exceptions import (
    BelowMinimumProfit,
    InclusionTimeout,
    SafetyRejected,
    SimulationRevert,
    StaleStateError,
    SubmissionFailure,
)
from sandwich_engine.mev_detection.opportunity_evaluator import OpportunityEvaluator
from sandwich_engine.mev_detection.opportunity_models import Opportunity, PendingSwapIntent
from sandwich_engine.pool_state.cache import PoolStateCache
from sandwich_engine.safety.models import SafetyVerdict
from .builder_client import BuilderClient
from .circuit_breaker import TokenCircuitBreaker
from .models import Bundle, ExecutionOutcome, ExecutionResult, ExecutionState
from .settlement import SettlementSigner

logger = logging.getLogger(__name__)


@dataclass
class CoordinatorConfig:
    """Execution settings."""
    target_block_count: int = 2
    block_poll_interval: float = 1.0
    max_resubmissions: int = 1
    horizon_seconds: float = 24.0
    max_poll_errors: int = 3
    results_history: int = 1000


class _Settled(Exception):
    """The victim can no longer be sandwiched."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


_OUTCOME_STATE = {
    ExecutionOutcome.INCLUDED: ExecutionState.INCLUDED,
    ExecutionOutcome.REVERTED: ExecutionState.REVERTED,
    ExecutionOutcome.NOT_INCLUDED: ExecutionState.NOT_INCLUDED,
    ExecutionOutcome.EXPIRED: ExecutionState.EXPIRED,
    ExecutionOutcome.ABORTED: ExecutionState.ABORTED,
}


class ExecutionCoordinator:
    """Builds, simulates, submits and monitors sandwich bundles."""

    def __init__(
        self,
        cache: PoolStateCache,
        evaluator: OpportunityEvaluator,
        node,
        builder: BuilderClient,
        signer: SettlementSigner,
        breaker: TokenCircuitBreaker,
        config: Optional[CoordinatorConfig] = None
    ):
        self.cache = cache
        self.evaluator = evaluator
        self.node = node
        self.builder = builder
        self.signer = signer
        self.breaker = breaker
        self.config = config or CoordinatorConfig()

        self._tasks: Set[asyncio.Task] = set()
        self.results: Deque[ExecutionResult] = deque(maxlen=self.config.results_history)
        self.outcomes: Counter = Counter()
        self.stats = {
            "attempts": 0,
            "recomputes": 0,
            "fail_safe_reverts": 0,
            "modeling_errors": 0
        }

    def submit(self, opportunity: Opportunity, verdict: SafetyVerdict) -> asyncio.Task:
        """Run `execute` as a detached task."""
        task = asyncio.create_task(self.execute(opportunity, verdict))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def stop(self):
        """Cancel in-flight bundle tasks."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def execute(self, opportunity: Opportunity, verdict: SafetyVerdict) -> ExecutionResult:
        """
        Drive one candidate to a terminal outcome.

        Every failure mode is mapped onto an ExecutionResult; nothing is raised.
        """
        states: List[ExecutionState] = [ExecutionState.IDLE]
        intent = opportunity.intent
        token = opportunity.target_token
        attempts = 0
        bundle: Optional[Bundle] = None
        bundle_hashes: List[str] = []

        def finish(outcome: ExecutionOutcome, reason: Optional[str]) -> ExecutionResult:
            return self._result(
                opportunity, outcome, states, reason, attempts,
                bundle=bundle, bundle_hashes=tuple(bundle_hashes)
            )

        try:
            if not verdict.is_approved:
                raise SafetyRejected(verdict.token, verdict.reason or "rejected")
            if self.breaker.is_open(token):
                raise SafetyRejected(token, "circuit-open")

            balance_before = await self._settlement_balance(intent.token_in)
            current = opportunity

            while True:
                attempts += 1
                self.stats["attempts"] += 1
                await self._ensure_victim_pending(intent)

                current, bundle = await self._prepare(current, states, attempts)

                states.append(ExecutionState.SUBMITTED)
                submissions = await self.builder.send_bundle(bundle)
                for submission in submissions or []:
                    if submission.bundle_hash not in bundle_hashes:
                        bundle_hashes.append(submission.bundle_hash)

                try:
                    receipts = await self._await_inclusion(bundle)
                except InclusionTimeout:
                    if attempts > self.config.max_resubmissions:
                        raise
                    states.append(ExecutionState.NOT_INCLUDED)
                    logger.info(f"Bundle for {intent.tx_hash[:10]}... not included, recomputing")
                    current = self._recompute(current)
                    continue

                return await self._settle(
                    current, bundle, receipts, balance_before, states, attempts,
                    bundle_hashes=tuple(bundle_hashes)
                )

        except SafetyRejected as e:
            return finish(ExecutionOutcome.ABORTED, e.reason)
        except SimulationRevert as e:
            return finish(ExecutionOutcome.ABORTED, f"simulation-revert: {e.reason}")
        except StaleStateError:
            return finish(ExecutionOutcome.ABORTED, "stale-state")
        except BelowMinimumProfit:
            if ExecutionState.NOT_INCLUDED in states:
                if states[-1] == ExecutionState.NOT_INCLUDED:
                    states.pop()
                return finish(ExecutionOutcome.NOT_INCLUDED, "abandoned-unprofitable")
            return finish(ExecutionOutcome.ABORTED, "unprofitable")
        except SubmissionFailure:
            return finish(ExecutionOutcome.ABORTED, "submission-failure")
        except InclusionTimeout:
            return finish(ExecutionOutcome.NOT_INCLUDED, "inclusion-timeout")
        except _Settled as e:
            return finish(ExecutionOutcome.EXPIRED, e.reason)
        except Exception as e:
            logger.error(f"Execution of {intent.tx_hash[:10]}... failed: {e}")
            return finish(ExecutionOutcome.ABORTED, f"error: {e}")

    async def _prepare(
        self,
        current: Opportunity,
        states: List[ExecutionState],
        attempt: int = 1
    ) -> Tuple[Opportunity, Bundle]:
        """
        Build and simulate a bundle against the current pool version.

        The version is checked before Building and again after Simulating;
        one recompute is allowed, a second change raises StaleStateError.
        """
        pool_id = current.pool_id
        recomputed = False

        while True:
            version = self.cache.version(pool_id)
            if version != current.pool_version:
                if recomputed:
                    raise StaleStateError(pool_id, current.pool_version, version)
                current = self._recompute(current)
                recomputed = True

            states.append(ExecutionState.BUILDING)
            bundle = await self._build(current, attempt)

            states.append(ExecutionState.SIMULATING)
            await self._simulate(bundle, current)

            if self.cache.version(pool_id) == current.pool_version:
                return current, bundle

    def _recompute(self, current: Opportunity) -> Opportunity:
        self.stats["recomputes"] += 1
        fresh = self.evaluator.evaluate(current.intent)
        if fresh is None or fresh.expected_net_profit <= 0:
            raise BelowMinimumProfit(f"Recomputed opportunity for {current.intent.tx_hash} is unprofitable")
        return fresh

    async def _build(self, opportunity: Opportunity, attempt: int = 1) -> Bundle:
        intent = opportunity.intent
        victim_raw = intent.raw_transaction or await self.node.get_raw_transaction(intent.tx_hash)
        if not victim_raw:
            raise _Settled("victim-unavailable")

        nonce, base_fee, block = await asyncio.gather(
            self.node.get_nonce(self.signer.address),
            self.node.get_base_fee(),
            self.node.block_number()
        )
        frontrun, backrun = self.signer.sign_pair(opportunity, nonce, base_fee)

        return Bundle(
            frontrun=frontrun,
            victim_raw=victim_raw,
            victim_hash=intent.tx_hash,
            backrun=backrun,
            target_blocks=tuple(range(block + 1, block + 1 + self.config.target_block_count)),
            pool_version=opportunity.pool_version,
            minimum_profit=opportunity.minimum_acceptable_profit,
            submission_attempt=attempt
        )

    async def _simulate(self, bundle: Bundle, opportunity: Opportunity):
        simulation = await self.builder.simulate_bundle(bundle, state_block=bundle.first_block - 1)
        if simulation.success:
            return

        if simulation.revert_reason is not None:
            self.breaker.record_revert(opportunity.target_token)
        reason = simulation.revert_reason or simulation.error or "unknown"
        logger.info(f"Bundle for {bundle.victim_hash[:10]}... failed simulation: {reason}")
        raise SimulationRevert(reason, simulation.failed_tx_index)

    async def _ensure_victim_pending(self, intent: PendingSwapIntent):
        if intent.is_expired(self.config.horizon_seconds):
            raise _Settled("horizon")
        if await self.node.get_receipt(intent.tx_hash) is not None:
            raise _Settled("victim-mined")

    async def _await_inclusion(self, bundle: Bundle):
        """
        Poll for the front-run receipt until the last target block passes.

        Returns:
            (frontrun_receipt, backrun_receipt)

        Raises:
            InclusionTimeout: no receipt by the end of the target window
        """
        errors = 0
        while True:
            try:
                frontrun_receipt = await self.node.get_receipt(bundle.frontrun.hash)
                if frontrun_receipt is not None:
                    backrun_receipt = await self.node.get_receipt(bundle.backrun.hash)
                    return frontrun_receipt, backrun_receipt

                if await self.node.block_number() > bundle.last_block:
                    raise InclusionTimeout(bundle.last_block)
            except InclusionTimeout:
                raise
            except Exception as e:
                errors += 1
                logger.warning(f"Inclusion poll failed ({errors}/{self.config.max_poll_errors}): {e}")
                if errors >= self.config.max_poll_errors:
                    raise InclusionTimeout(bundle.last_block) from e

            await asyncio.sleep(self.config.block_poll_interval)

    async def _settle(
        self,
        opportunity: Opportunity,
        bundle: Bundle,
        receipts,
        balance_before: Optional[int],
        states: List[ExecutionState],
        attempts: int,
        bundle_hashes: Tuple[str, ...] = ()
    ) -> ExecutionResult:
        frontrun_receipt, backrun_receipt = receipts
        token = opportunity.target_token
        block = frontrun_receipt["blockNumber"]

        if frontrun_receipt["status"] == 1 and backrun_receipt is not None and backrun_receipt["status"] == 1:
            self.breaker.record_success(token)
            realized = None
            balance_after = await self._settlement_balance(opportunity.intent.token_in)
            if balance_before is not None and balance_after is not None:
                realized = balance_after - balance_before
            logger.info(
                f"Bundle for {bundle.victim_hash[:10]}... included in block {block}, "
                f"realized profit {realized} (expected {opportunity.expected_net_profit:.0f})"
            )
            return self._result(
                opportunity, ExecutionOutcome.INCLUDED, states, None, attempts,
                included_block=block, realized_profit=realized,
                bundle=bundle, bundle_hashes=bundle_hashes
            )

        failed = bundle.frontrun if frontrun_receipt["status"] != 1 else bundle.backrun
        reason = ""
        if failed is bundle.backrun and backrun_receipt is None:
            reason = "backrun-missing"
        else:
            try:
                reason = await self.node.get_revert_reason(failed.hash, block)
            except Exception as e:
                logger.warning(f"Could not replay {failed.hash}: {e}")

        self.breaker.record_revert(token)
        fail_safe = self.signer.is_fail_safe_revert(reason)
        if fail_safe:
            self.stats["fail_safe_reverts"] += 1
            logger.info(f"Bundle for {bundle.victim_hash[:10]}... hit the on-chain profit floor in block {block}")
        else:
            # Simulated cleanly, reverted on-chain for a reason other than the floor
            self.stats["modeling_errors"] += 1
            logger.error(
                f"Bundle for {bundle.victim_hash[:10]}... reverted in block {block} "
                f"after a clean simulation: {reason or 'unknown reason'}"
            )

        return self._result(
            opportunity, ExecutionOutcome.REVERTED, states, reason or None, attempts,
            included_block=block, fail_safe=fail_safe, modeling_error=not fail_safe,
            bundle=bundle, bundle_hashes=bundle_hashes
        )

    async def _settlement_balance(self, token: str) -> Optional[int]:
        try:
            return await self.node.get_token_balance(token, self.signer.contract_address)
        except Exception as e:
            logger.debug(f"Settlement balance read failed: {e}")
            return None

    def _result(
        self,
        opportunity: Opportunity,
        outcome: ExecutionOutcome,
        states: List[ExecutionState],
        reason: Optional[str],
        attempts: int,
        **kwargs
    ) -> ExecutionResult:
        states.append(_OUTCOME_STATE[outcome])
        result = ExecutionResult(
            tx_hash=opportunity.intent.tx_hash,
            token=opportunity.target_token,
            outcome=outcome,
            states=tuple(states),
            reason=reason,
            attempts=max(attempts, 1),
            finished_at=time.time(),
            **kwargs
        )
        self.results.append(result)
        self.outcomes[outcome.value] += 1
        if outcome == ExecutionOutcome.ABORTED:
            logger.debug(f"Aborted {opportunity.intent.tx_hash[:10]}...: {reason}")
        return result

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "in_flight": self.in_flight,
            "outcomes": dict(self.outcomes),
            "open_circuits": self.breaker.open_tokens()
        }
