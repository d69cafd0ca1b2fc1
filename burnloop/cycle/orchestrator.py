"""Cycle orchestrator — one guarded pass from pending fees to an executed cycle.

Pass:
1. Take the execution lock (already held -> quiet "locked" outcome)
2. Refresh asset configs
3. Let the DLQ expire stale entries and report retryable ones
4. Read pending fees and the operator balance, run pre-flight checks
5. Pick one eligible token; due retries go first
6. Hand it to the executor; success resolves the DLQ entry,
   failure appends one with full context
7. Release the lock, whatever happened
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Protocol

from pydantic import BaseModel, Field

from burnloop.chain.history import HistoryLedger
from burnloop.config import EngineConfig
from burnloop.cycle.allocator import FeeAllocator
from burnloop.cycle.dlq import DeadLetterQueue
from burnloop.cycle.lock import ExecutionLock
from burnloop.cycle.selector import TokenAllocation, TokenSelector
from burnloop.cycle.validator import CycleValidator

log = logging.getLogger("burnloop.orchestrator")

CYCLE_OPERATION = "ecosystem-cycle"


class Executor(Protocol):
    """Builds and submits the collect/buy/burn transactions for one token.

    Returns the transaction signatures; raises on failure.
    """

    async def execute(self, asset_id: str) -> list[str]: ...


class ChainReader(Protocol):
    async def get_balance(self, address: str) -> int: ...

    async def get_slot(self) -> int: ...


class PassStatus(str, Enum):
    LOCKED = "locked"
    INVALID = "invalid"
    IDLE = "idle"
    EXECUTED = "executed"
    FAILED = "failed"


class PassOutcome(BaseModel):
    status: PassStatus
    selected: str | None = None
    signatures: list[str] = Field(default_factory=list)
    error: str | None = None
    reasons: list[str] = Field(default_factory=list)
    slot: int | None = None
    pending_fees: int = 0
    allocation: int = 0
    retry_count: int = 0
    from_retry: bool = False


class CycleOrchestrator:
    def __init__(
        self,
        config_loader: Callable[[], EngineConfig],
        chain: ChainReader,
        allocator: FeeAllocator,
        selector: TokenSelector,
        validator: CycleValidator,
        dlq: DeadLetterQueue,
        lock: ExecutionLock,
        executor: Executor,
        history: HistoryLedger | None = None,
    ):
        self.config_loader = config_loader
        self.chain = chain
        self.allocator = allocator
        self.selector = selector
        self.validator = validator
        self.dlq = dlq
        self.lock = lock
        self.executor = executor
        self.history = history
        self.passes = 0
        self._pass_lock = asyncio.Lock()

    async def run_pass(self) -> PassOutcome:
        if self._pass_lock.locked():
            log.info("Pass already running in this process, skipping")
            return PassOutcome(status=PassStatus.LOCKED)

        async with self._pass_lock:
            if not await asyncio.to_thread(self.lock.acquire, CYCLE_OPERATION):
                log.info("Execution lock held elsewhere, skipping pass")
                return PassOutcome(status=PassStatus.LOCKED)
            try:
                self.passes += 1
                return await self._run_locked()
            finally:
                await asyncio.to_thread(self.lock.release)

    async def _run_locked(self) -> PassOutcome:
        config = await asyncio.to_thread(self.config_loader)
        assets = config.assets
        retry = await asyncio.to_thread(self.dlq.process)

        allocations = await self.allocator.query_pending_fees(assets)
        operator_balance = await self.chain.get_balance(config.operator_address) if config.operator_address else 0

        report = await self.validator.validate(operator_balance, assets)
        if not report.can_proceed:
            log.warning("Pre-flight validation failed, skipping pass: %s", "; ".join(report.reasons))
            return PassOutcome(status=PassStatus.INVALID, reasons=report.reasons)

        if self.validator.settings.wait_for_sync:
            sync = await self.validator.wait_for_sync(assets, self.allocator.query_pending_fees)
            if sync.allocations:
                allocations = sync.allocations

        secondaries = self.selector.get_secondaries(allocations)
        total_pending = sum(a.pending_fees for a in secondaries)
        ecosystem = self.validator.validate_minimum_ecosystem_fees(assets, total_pending)
        if not ecosystem.can_proceed:
            log.warning("%s", ecosystem.message)

        eligible = self.selector.get_eligible(allocations)
        retryable = set(retry.retryable)
        pending = await asyncio.to_thread(self.dlq.pending)
        backing_off = {e.asset_id for e in pending} - retryable

        retry_candidates = [a for a in eligible if a.asset_id in retryable]
        fresh = [a for a in eligible if a.asset_id not in retryable and a.asset_id not in backing_off]
        candidates = retry_candidates or fresh
        if backing_off:
            log.debug("%d token(s) backing off in the DLQ", len(backing_off))

        if not candidates:
            log.info("No eligible tokens this pass (%d below threshold or backing off)", len(secondaries))
            return PassOutcome(status=PassStatus.IDLE)

        slot = await self.chain.get_slot()
        selected = self.selector.select_for_cycle(candidates, slot)
        if selected is None:
            return PassOutcome(status=PassStatus.IDLE)

        allocation = await self._allocation_for(config, secondaries, selected)
        asset = next((a for a in assets if a.asset_id == selected.asset_id), None)
        retry_count = await asyncio.to_thread(self.dlq.retry_count_for, selected.asset_id)
        outcome = PassOutcome(
            status=PassStatus.EXECUTED,
            selected=selected.asset_id,
            slot=slot,
            pending_fees=selected.pending_fees,
            allocation=allocation,
            retry_count=retry_count,
            from_retry=bool(retry_candidates),
        )
        log.info(
            "Selected %s at slot %d (%d of %d candidate(s)%s)",
            selected.display_name or selected.asset_id[:8], slot,
            slot % len(candidates) + 1, len(candidates), ", retry" if retry_candidates else "",
        )

        try:
            signatures = await self.executor.execute(selected.asset_id)
        except Exception as e:
            await asyncio.to_thread(
                self.dlq.append,
                selected.asset_id,
                e,
                pending_fees=selected.pending_fees,
                allocation=allocation,
                retry_count=retry_count + 1,
                account_id=asset.causing_account if asset else "",
            )
            self._record_failure(selected, e)
            return outcome.model_copy(
                update={"status": PassStatus.FAILED, "error": str(e), "retry_count": retry_count + 1}
            )

        await asyncio.to_thread(self.dlq.mark_resolved, selected.asset_id)
        self._record_success(selected, signatures)
        log.info("Cycle executed for %s: %d signature(s)", selected.display_name or selected.asset_id[:8], len(signatures))
        return outcome.model_copy(update={"signatures": list(signatures)})

    async def _allocation_for(
        self, config: EngineConfig, secondaries: list[TokenAllocation], selected: TokenAllocation
    ) -> int:
        """The selected token's share of what the secondary vaults actually hold."""
        vaults = [v for v in config.vaults if v.kind == "secondary"] or config.vaults
        if not vaults:
            return selected.pending_fees
        vault_balance = 0
        for vault in vaults:
            vault_balance += await self.chain.get_balance(vault.account_id)
        shares = self.allocator.calculate_dynamic_allocation(vault_balance, secondaries)
        return next((s.allocation for s in shares if s.asset_id == selected.asset_id), 0)

    def _record_success(self, selected: TokenAllocation, signatures: list[str]) -> None:
        if self.history is None:
            return
        try:
            self.history.record_cycle_token_burn(selected.asset_id, list(signatures), selected.is_primary)
        except Exception as e:
            log.warning("History write failed (cycle_token_burn): %s", e)

    def _record_failure(self, selected: TokenAllocation, error: Exception) -> None:
        if self.history is None:
            return
        try:
            self.history.record_error(
                "cycle_failed",
                {"asset_id": selected.asset_id, "error": str(error), "pending_fees": selected.pending_fees},
            )
        except Exception as e:
            log.warning("History write failed (cycle_failed): %s", e)

    async def run_forever(self, interval: float, stop_event: asyncio.Event | None = None) -> None:
        """Run passes every `interval` seconds until `stop_event` is set.

        A pass that raises (RPC outage, bad config) is logged and the loop
        carries on; failures inside a cycle already went to the DLQ.
        """
        stop_event = stop_event or asyncio.Event()
        log.info("Orchestrator loop started (every %.0fs)", interval)
        while not stop_event.is_set():
            try:
                outcome = await self.run_pass()
                log.debug("Pass %d finished: %s", self.passes, outcome.status.value)
            except Exception as e:
                log.error("Cycle pass aborted: %s", e)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        log.info("Orchestrator loop stopped")
