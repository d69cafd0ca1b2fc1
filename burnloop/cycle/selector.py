"""Token selection for cycle execution.

One token per cycle, chosen as eligible[slot % N]. The slot comes from the
caller (read once per pass), so every selection can be replayed against the
transaction it preceded. Each eligible token has probability exactly 1/N
over any N consecutive slots.
"""

from __future__ import annotations

from pydantic import BaseModel

# Minimum pending fees for a token to be worth a cycle (0.007 SOL)
MIN_FEE_THRESHOLD = 7_000_000


class TokenAllocation(BaseModel):
    """Per-pass view of one asset's pending fees. Never persisted."""

    asset_id: str
    display_name: str = ""
    pending_fees: int = 0
    allocation: int = 0
    is_primary: bool = False


class TokenSelector:
    def __init__(self, min_fee_threshold: int = MIN_FEE_THRESHOLD):
        self.min_fee_threshold = min_fee_threshold

    def get_eligible(self, allocations: list[TokenAllocation]) -> list[TokenAllocation]:
        """Secondary tokens at or above the fee threshold, input order kept."""
        return [
            a for a in allocations
            if not a.is_primary and a.pending_fees >= self.min_fee_threshold
        ]

    def select_for_cycle(
        self, eligible: list[TokenAllocation], current_slot: int
    ) -> TokenAllocation | None:
        if not eligible:
            return None
        return eligible[current_slot % len(eligible)]

    def get_secondaries(self, allocations: list[TokenAllocation]) -> list[TokenAllocation]:
        return [a for a in allocations if not a.is_primary]

    def get_primary(self, allocations: list[TokenAllocation]) -> TokenAllocation | None:
        return next((a for a in allocations if a.is_primary), None)
