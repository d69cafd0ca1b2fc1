"""Pre-flight validation for cycle execution.

Checks, before any cycle:
- Operator balance covers the operational buffer and transaction costs
- At least one asset is configured
- The root asset is configured and its stats account exists on-chain

Also exposes a bounded wait for pending fees to land on-chain, the one
place a pass is allowed to block.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Protocol

from pydantic import BaseModel, Field

from burnloop.config import LAMPORTS_PER_SOL, AssetConfig, ValidatorSettings
from burnloop.cycle.allocator import MIN_ALLOCATION_SECONDARY
from burnloop.cycle.selector import MIN_FEE_THRESHOLD, TokenAllocation

log = logging.getLogger("burnloop.validator")

PendingFetcher = Callable[[list[AssetConfig]], Awaitable[list[TokenAllocation]]]


class AccountInfoSource(Protocol):
    async def get_account_info(self, address: str) -> dict[str, Any] | None: ...


class ValidationReport(BaseModel):
    can_proceed: bool
    operator_balance: int = 0
    reasons: list[str] = Field(default_factory=list)


class SyncResult(BaseModel):
    """Partial readiness after a sync wait. Never an error."""

    synced: bool
    ready: list[str] = Field(default_factory=list)
    not_ready: list[str] = Field(default_factory=list)
    allocations: list[TokenAllocation] = Field(default_factory=list)


class EcosystemValidation(BaseModel):
    can_proceed: bool
    secondary_count: int
    min_required: int
    available: int
    message: str


def _sol(lamports: int) -> str:
    return f"{lamports / LAMPORTS_PER_SOL:.6f}"


class CycleValidator:
    def __init__(
        self,
        rpc: AccountInfoSource,
        settings: ValidatorSettings | None = None,
        min_fee_threshold: int = MIN_FEE_THRESHOLD,
    ):
        self.rpc = rpc
        self.settings = settings or ValidatorSettings()
        self.min_fee_threshold = min_fee_threshold

    async def validate(self, operator_balance: int, assets: list[AssetConfig]) -> ValidationReport:
        reasons: list[str] = []

        if operator_balance < self.settings.min_operator_balance:
            reasons.append(
                f"operator balance {_sol(operator_balance)} SOL < required "
                f"{_sol(self.settings.min_operator_balance)} SOL"
            )

        if not assets:
            reasons.append("no assets configured")
        else:
            primary = next((a for a in assets if a.is_primary), None)
            if primary is None:
                reasons.append("no root asset configured")
            elif not primary.stats_account:
                reasons.append(f"root asset {primary.asset_id[:8]} has no stats account configured")
            elif await self.rpc.get_account_info(primary.stats_account) is None:
                reasons.append(f"root asset stats account {primary.stats_account[:8]} not found on-chain")

        for reason in reasons:
            log.warning("Pre-flight check failed: %s", reason)
        return ValidationReport(can_proceed=not reasons, operator_balance=operator_balance, reasons=reasons)

    async def wait_for_sync(
        self,
        assets: list[AssetConfig],
        fetch_pending: PendingFetcher,
        poll_interval: float | None = None,
        timeout: float | None = None,
    ) -> SyncResult:
        """Poll until every secondary asset's pending fees reach the threshold.

        Returns whatever readiness was reached when the timeout elapses.
        A failed fetch counts as an empty poll.
        """
        poll_interval = self.settings.sync_poll_interval_seconds if poll_interval is None else poll_interval
        timeout = self.settings.sync_timeout_seconds if timeout is None else timeout
        secondary_ids = [a.asset_id for a in assets if not a.is_primary]
        deadline = time.monotonic() + timeout
        iteration = 0
        result = SyncResult(synced=False, not_ready=list(secondary_ids))

        while True:
            iteration += 1
            try:
                allocations = await fetch_pending(assets)
            except Exception as e:
                log.warning("Sync poll %d failed: %s", iteration, e)
                allocations = []

            pending = {a.asset_id: a.pending_fees for a in allocations}
            ready = [i for i in secondary_ids if pending.get(i, 0) >= self.min_fee_threshold]
            not_ready = [i for i in secondary_ids if i not in ready]
            result = SyncResult(
                synced=not not_ready,
                ready=ready,
                not_ready=not_ready,
                allocations=allocations or result.allocations,
            )

            if result.synced:
                log.info("All %d secondary token(s) synced (poll %d)", len(ready), iteration)
                return result

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            log.debug("Poll %d: %d/%d ready, waiting...", iteration, len(ready), len(secondary_ids))
            await asyncio.sleep(min(poll_interval, remaining))

        log.warning(
            "Sync timeout after %.0fs: %d ready, %d not ready",
            timeout, len(result.ready), len(result.not_ready),
        )
        return result

    def validate_minimum_ecosystem_fees(
        self, assets: list[AssetConfig], total_pending: int
    ) -> EcosystemValidation:
        """Early warning: are the pooled fees enough for every secondary token?"""
        secondary_count = sum(1 for a in assets if not a.is_primary)
        min_required = self.calculate_minimum_ecosystem_fees(secondary_count)

        if total_pending < min_required:
            return EcosystemValidation(
                can_proceed=False,
                secondary_count=secondary_count,
                min_required=min_required,
                available=total_pending,
                message=(
                    f"Pending fees ({_sol(total_pending)} SOL) < minimum required "
                    f"({_sol(min_required)} SOL) for {secondary_count} secondary tokens"
                ),
            )
        return EcosystemValidation(
            can_proceed=True,
            secondary_count=secondary_count,
            min_required=min_required,
            available=total_pending,
            message=f"OK: {_sol(total_pending)} SOL >= {_sol(min_required)} SOL minimum for {secondary_count} tokens",
        )

    @staticmethod
    def calculate_minimum_ecosystem_fees(secondary_count: int) -> int:
        return secondary_count * MIN_ALLOCATION_SECONDARY
