"""Tests for pending-fee queries and proportional allocation."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from burnloop.config import AssetConfig
from burnloop.cycle.allocator import (
    MIN_ALLOCATION_PRIMARY,
    MIN_ALLOCATION_SECONDARY,
    SECONDARY_KEEP_BPS,
    FeeAllocator,
    decode_pending_fees,
    split_keep_forward,
)
from burnloop.cycle.selector import TokenAllocation
from tests.mocks.mock_solana_rpc import (
    ASSET_A,
    ASSET_B,
    ASSET_C,
    ROOT_ASSET,
    STATS_A,
    STATS_B,
    STATS_ROOT,
    token_stats_data,
)


def _allocs(*weights: int) -> list[TokenAllocation]:
    return [TokenAllocation(asset_id=f"T{i}", pending_fees=w) for i, w in enumerate(weights)]


class TestNormalizeAllocations:
    def test_equal_weights_remainder_goes_first(self):
        result = FeeAllocator().normalize_allocations(_allocs(1, 1, 1), 100)
        assert [a.allocation for a in result] == [34, 33, 33]

    @pytest.mark.parametrize(
        "weights,total",
        [
            ((1, 1, 1), 100),
            ((3, 7), 1),
            ((1, 2, 3, 4, 5, 6, 7), 999_999_937),
            ((5_000_000, 12_345_678, 1), 17_345_679),
            ((0, 0, 0), 10),
            ((10**15, 1), 10**9 + 7),
            ((7,), 0),
        ],
    )
    def test_sum_is_exact(self, weights, total):
        result = FeeAllocator().normalize_allocations(_allocs(*weights), total)
        assert sum(a.allocation for a in result) == total

    def test_proportional(self):
        result = FeeAllocator().normalize_allocations(_allocs(1, 3), 400)
        assert [a.allocation for a in result] == [100, 300]

    def test_zero_weights_split_evenly(self):
        result = FeeAllocator().normalize_allocations(_allocs(0, 0), 5)
        assert [a.allocation for a in result] == [3, 2]

    def test_inputs_not_mutated(self):
        inputs = _allocs(2, 2)
        FeeAllocator().normalize_allocations(inputs, 10)
        assert [a.allocation for a in inputs] == [0, 0]

    def test_empty(self):
        assert FeeAllocator().normalize_allocations([], 100) == []

    def test_negative_total_rejected(self):
        with pytest.raises(ValueError):
            FeeAllocator().normalize_allocations(_allocs(1), -1)


class TestDynamicAllocation:
    def test_capped_at_vault_balance(self):
        result = FeeAllocator().calculate_dynamic_allocation(50, _allocs(60, 40))
        assert [a.allocation for a in result] == [30, 20]

    def test_vault_surplus_not_distributed(self):
        result = FeeAllocator().calculate_dynamic_allocation(10_000, _allocs(60, 40))
        assert [a.allocation for a in result] == [60, 40]

    def test_empty_vault(self):
        result = FeeAllocator().calculate_dynamic_allocation(0, _allocs(60, 40))
        assert [a.allocation for a in result] == [0, 0]

    def test_partition_viable(self):
        allocs = FeeAllocator().normalize_allocations(_allocs(1, 1), 2 * MIN_ALLOCATION_SECONDARY - 1)
        viable, deferred = FeeAllocator().partition_viable(allocs)
        assert [a.asset_id for a in viable] == ["T0"]
        assert [a.asset_id for a in deferred] == ["T1"]


class TestKeepForwardSplit:
    @pytest.mark.parametrize("amount", [0, 1, 999, 10_000, 7_000_001, 123_456_789_011])
    def test_parts_sum_to_amount(self, amount):
        keep, forward = split_keep_forward(amount)
        assert keep + forward == amount

    def test_default_ratio(self):
        assert split_keep_forward(10_000) == (5_520, 4_480)

    def test_minimums_cover_the_split(self):
        keep, _ = split_keep_forward(MIN_ALLOCATION_SECONDARY, SECONDARY_KEEP_BPS)
        assert keep >= MIN_ALLOCATION_PRIMARY


class TestQueryPendingFees:
    @pytest.mark.asyncio
    async def test_reads_u64_from_stats_account(self):
        data = {
            STATS_A: token_stats_data(8_000_000),
            STATS_B: token_stats_data(12_500_000),
        }
        rpc = AsyncMock()
        rpc.get_account_data = AsyncMock(side_effect=lambda addr: data.get(addr))
        assets = [
            AssetConfig(asset_id=ROOT_ASSET, stats_account=STATS_ROOT, is_primary=True),
            AssetConfig(asset_id=ASSET_A, display_name="AAA", stats_account=STATS_A),
            AssetConfig(asset_id=ASSET_B, display_name="BBB", stats_account=STATS_B),
        ]

        result = await FeeAllocator(rpc).query_pending_fees(assets)

        assert [(a.asset_id, a.pending_fees, a.is_primary) for a in result] == [
            (ROOT_ASSET, 0, True),
            (ASSET_A, 8_000_000, False),
            (ASSET_B, 12_500_000, False),
        ]
        # Root token is never read
        assert STATS_ROOT not in [c.args[0] for c in rpc.get_account_data.call_args_list]

    @pytest.mark.asyncio
    async def test_missing_account_uses_fallback_or_skips(self):
        rpc = AsyncMock()
        rpc.get_account_data = AsyncMock(return_value=None)
        assets = [
            AssetConfig(asset_id=ASSET_A, stats_account=STATS_A, pending_fees_fallback=9_000_000),
            AssetConfig(asset_id=ASSET_B, stats_account=STATS_B),
            AssetConfig(asset_id=ASSET_C),
        ]

        result = await FeeAllocator(rpc).query_pending_fees(assets)

        assert [(a.asset_id, a.pending_fees) for a in result] == [(ASSET_A, 9_000_000)]

    @pytest.mark.asyncio
    async def test_truncated_account_data_is_skipped(self):
        rpc = AsyncMock()
        rpc.get_account_data = AsyncMock(return_value=b"\x00" * 40)
        result = await FeeAllocator(rpc).query_pending_fees([AssetConfig(asset_id=ASSET_A, stats_account=STATS_A)])
        assert result == []

    @pytest.mark.asyncio
    async def test_needs_rpc(self):
        with pytest.raises(RuntimeError):
            await FeeAllocator().query_pending_fees([])


class TestDecodePendingFees:
    def test_little_endian(self):
        assert decode_pending_fees(token_stats_data(0x0102030405060708), 114) == 0x0102030405060708

    def test_custom_offset(self):
        assert decode_pending_fees(token_stats_data(42, offset=8, size=16), 8) == 42

    def test_too_short(self):
        with pytest.raises(ValueError):
            decode_pending_fees(b"\x00" * 121, 114)
