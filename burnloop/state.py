"""Asset state for burnloop.

Holds the identity of every revenue-generating token seen so far and its
running attribution totals. Owned by the watcher/resolver pair; everything
else reads snapshots.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict

from pydantic import BaseModel

log = logging.getLogger("burnloop.state")


class AssetRecord(BaseModel):
    """Identity of a revenue-generating token."""

    asset_id: str
    display_name: str = ""
    causing_account: str = ""


class AssetFeeStats(BaseModel):
    """Attribution totals for one asset."""

    asset_id: str
    total_attributed: int = 0
    event_count: int = 0
    last_slot: int = 0
    last_seen_at: float = 0.0


class AssetRegistry:
    """Bounded asset store.

    Discovered assets are evicted oldest-first once `max_assets` is
    exceeded. Pre-registered assets are pinned and never evicted.
    """

    def __init__(self, max_assets: int = 1000):
        self.max_assets = max_assets
        self._records: OrderedDict[str, AssetRecord] = OrderedDict()
        self._stats: dict[str, AssetFeeStats] = {}
        self._pinned: set[str] = set()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, asset_id: object) -> bool:
        return asset_id in self._records

    def register(self, record: AssetRecord, pinned: bool = True) -> AssetRecord:
        """Register a known asset. Existing stats are kept."""
        self._records[record.asset_id] = record
        self._stats.setdefault(record.asset_id, AssetFeeStats(asset_id=record.asset_id))
        if pinned:
            self._pinned.add(record.asset_id)
        log.debug("Registered asset %s", record.display_name or record.asset_id[:8])
        return record

    def get(self, asset_id: str) -> AssetRecord | None:
        return self._records.get(asset_id)

    def resolve_or_create(self, asset_id: str, causing_account: str = "") -> tuple[AssetRecord, bool]:
        """Return (record, created). New records get a short display name."""
        record = self._records.get(asset_id)
        if record is not None:
            return record, False

        record = AssetRecord(
            asset_id=asset_id,
            display_name=asset_id[:4].upper(),
            causing_account=causing_account,
        )
        self.register(record, pinned=False)
        self._evict()
        log.info("Discovered new asset: %s (%s...)", record.display_name, asset_id[:8])
        return record, True

    def _evict(self) -> None:
        while len(self._records) > self.max_assets:
            victim = next((k for k in self._records if k not in self._pinned), None)
            if victim is None:
                return
            del self._records[victim]
            self._stats.pop(victim, None)
            log.debug("Evicted asset %s... from cache", victim[:8])

    def record_fee(self, asset_id: str, amount: int, slot: int, seen_at: float | None = None) -> AssetFeeStats:
        """Apply one attributed deposit to the asset's totals."""
        stats = self._stats.setdefault(asset_id, AssetFeeStats(asset_id=asset_id))
        stats.total_attributed += amount
        stats.event_count += 1
        stats.last_slot = slot
        stats.last_seen_at = seen_at if seen_at is not None else time.time()
        return stats

    def stats(self) -> dict[str, AssetFeeStats]:
        """Copy of all per-asset stats."""
        return {k: v.model_copy() for k, v in self._stats.items()}

    def stat(self, asset_id: str) -> AssetFeeStats | None:
        s = self._stats.get(asset_id)
        return s.model_copy() if s else None

    def records(self) -> list[AssetRecord]:
        return list(self._records.values())
