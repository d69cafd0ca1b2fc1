"""Fee allocation.

Handles:
- Reading each token's authoritative pending fees from its on-chain stats account
- Proportional distribution of a pooled amount (largest-remainder, exact sum)
- Capping the pool at what the vault actually holds
- Keep/forward split between a secondary token and the root token
"""

from __future__ import annotations

import logging
from typing import Protocol

from burnloop.config import AssetConfig
from burnloop.cycle.selector import TokenAllocation

log = logging.getLogger("burnloop.allocator")

# Secondary tokens keep 55.2% and forward 44.8% to the root token
SECONDARY_KEEP_BPS = 5_520
BPS_DENOMINATOR = 10_000
SECONDARY_KEEP_RATIO = SECONDARY_KEEP_BPS / BPS_DENOMINATOR

# Safety margins (lamports)
RENT_EXEMPT_MINIMUM = 890_880
SAFETY_BUFFER = 50_000
ATA_RENT_RESERVE = 2_100_000
MINIMUM_BUY_AMOUNT = 100_000

MIN_AFTER_SPLIT = RENT_EXEMPT_MINIMUM + SAFETY_BUFFER + ATA_RENT_RESERVE + MINIMUM_BUY_AMOUNT
# = 3,140,880 lamports

MIN_ALLOCATION_SECONDARY = -(-MIN_AFTER_SPLIT * BPS_DENOMINATOR // SECONDARY_KEEP_BPS)
# = ceil(3,140,880 / 0.552) = 5,690,000 lamports

MIN_ALLOCATION_PRIMARY = RENT_EXEMPT_MINIMUM + SAFETY_BUFFER + MINIMUM_BUY_AMOUNT
# = 1,040,880 lamports


class AccountDataSource(Protocol):
    async def get_account_data(self, address: str) -> bytes | None: ...


def decode_pending_fees(data: bytes, offset: int) -> int:
    """Little-endian u64 at `offset`."""
    if len(data) < offset + 8:
        raise ValueError(f"account data too short ({len(data)} bytes) for u64 at offset {offset}")
    return int.from_bytes(data[offset:offset + 8], "little")


def split_keep_forward(amount: int, keep_bps: int = SECONDARY_KEEP_BPS) -> tuple[int, int]:
    """Split `amount` into (kept by the token, forwarded to root). Sums exactly."""
    keep = amount * keep_bps // BPS_DENOMINATOR
    return keep, amount - keep


class FeeAllocator:
    def __init__(self, rpc: AccountDataSource | None = None):
        self.rpc = rpc

    async def query_pending_fees(self, assets: list[AssetConfig]) -> list[TokenAllocation]:
        """Read pending fees for each configured asset.

        The root token is reported with zero pending fees (it is funded by
        forwarded shares, not by its own counter). Tokens whose stats account
        is missing fall back to `pending_fees_fallback`, or are skipped.
        """
        if self.rpc is None:
            raise RuntimeError("FeeAllocator.query_pending_fees needs an RPC source")

        allocations: list[TokenAllocation] = []
        for asset in assets:
            name = asset.display_name or asset.asset_id[:8]
            if asset.is_primary:
                allocations.append(TokenAllocation(asset_id=asset.asset_id, display_name=name, is_primary=True))
                continue

            pending: int | None = None
            if asset.stats_account:
                data = await self.rpc.get_account_data(asset.stats_account)
                if data is not None:
                    try:
                        pending = decode_pending_fees(data, asset.pending_fees_offset)
                    except ValueError as e:
                        log.warning("%s: unreadable stats account: %s", name, e)

            if pending is None:
                if asset.pending_fees_fallback > 0:
                    log.info("%s: using fallback pending fees %d", name, asset.pending_fees_fallback)
                    pending = asset.pending_fees_fallback
                else:
                    log.warning("%s: no stats account and no fallback fees (skipping)", name)
                    continue

            allocations.append(TokenAllocation(asset_id=asset.asset_id, display_name=name, pending_fees=pending))
            log.debug("%s: %d lamports pending", name, pending)

        total = sum(a.pending_fees for a in allocations if not a.is_primary)
        log.info("Total pending fees: %d lamports across %d token(s)", total, len(allocations))
        return allocations

    def normalize_allocations(
        self, allocations: list[TokenAllocation], total_fees: int
    ) -> list[TokenAllocation]:
        """Distribute `total_fees` by pending-fee weight, summing exactly.

        Largest-remainder: floor shares first, then one lamport each to the
        largest fractional remainders, ties going to the earlier entry.
        With no weight at all the pool is split evenly the same way.
        """
        if total_fees < 0:
            raise ValueError("total_fees must be non-negative")
        if not allocations:
            return []

        weights = [max(0, a.pending_fees) for a in allocations]
        if sum(weights) == 0:
            weights = [1] * len(allocations)
        total_weight = sum(weights)

        shares: list[int] = []
        remainders: list[int] = []
        for w in weights:
            share, rem = divmod(w * total_fees, total_weight)
            shares.append(share)
            remainders.append(rem)

        leftover = total_fees - sum(shares)
        order = sorted(range(len(allocations)), key=lambda i: (-remainders[i], i))
        for i in order[:leftover]:
            shares[i] += 1

        return [a.model_copy(update={"allocation": s}) for a, s in zip(allocations, shares)]

    def calculate_dynamic_allocation(
        self, vault_balance: int, allocations: list[TokenAllocation]
    ) -> list[TokenAllocation]:
        """Normalize against min(requested total, what the vault holds)."""
        requested = sum(max(0, a.pending_fees) for a in allocations)
        pool = max(0, min(requested, vault_balance))
        if pool < requested:
            log.warning("Vault holds %d < %d pending; scaling allocations down", vault_balance, requested)
        return self.normalize_allocations(allocations, pool)

    def partition_viable(
        self, allocations: list[TokenAllocation], minimum: int = MIN_ALLOCATION_SECONDARY
    ) -> tuple[list[TokenAllocation], list[TokenAllocation]]:
        """(viable, deferred) by allocation against the per-token minimum."""
        viable = [a for a in allocations if a.allocation >= minimum]
        deferred = [a for a in allocations if a.allocation < minimum]
        return viable, deferred
