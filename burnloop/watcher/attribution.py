"""Attribution resolver — map a vault deposit to the token that caused it.

Flow:
1. Fetch the vault's most recent signatures (most-recent-first)
2. Take the first one whose slot is within tolerance of the deposit slot
3. Fetch that transaction, parsed
4. The first non-settlement mint in post (then pre) token balances wins

Anything that fails along the way makes the deposit orphaned: it is counted
and written to the history ledger, never retried.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Protocol

from burnloop.chain.history import HistoryLedger
from burnloop.clients.solana_rpc import SignatureInfo
from burnloop.config import WSOL_MINT, WatcherSettings
from burnloop.state import AssetRegistry
from burnloop.watcher.schema import AttributionOutcome, AttributionStatus, FeeEvent

log = logging.getLogger("burnloop.attribution")

AttributionListener = Callable[[AttributionOutcome], None]


class TransactionSource(Protocol):
    async def get_signatures_for_address(self, address: str, limit: int = 20) -> list[SignatureInfo]: ...

    async def get_parsed_transaction(self, signature: str) -> dict[str, Any] | None: ...


def find_matching_signature(
    signatures: list[SignatureInfo], slot: int, tolerance: int
) -> SignatureInfo | None:
    """First signature (in list order) within `tolerance` slots of `slot`."""
    for sig in signatures:
        if abs(sig.slot - slot) <= tolerance:
            return sig
    return None


def extract_asset_id(tx: dict[str, Any] | None, settlement_mint: str = WSOL_MINT) -> str | None:
    """First non-settlement mint in post, then pre, token balances."""
    if not tx:
        return None
    meta = tx.get("meta") or {}
    for key in ("postTokenBalances", "preTokenBalances"):
        for balance in meta.get(key) or []:
            mint = balance.get("mint")
            if mint and mint != settlement_mint:
                return mint
    return None


class AttributionResolver:
    """Resolves FeeEvents to assets; never raises into the watcher."""

    def __init__(
        self,
        rpc: TransactionSource,
        registry: AssetRegistry,
        history: HistoryLedger | None = None,
        settings: WatcherSettings | None = None,
        creator_address: str = "",
    ):
        self.rpc = rpc
        self.registry = registry
        self.history = history
        self.settings = settings or WatcherSettings()
        self.creator_address = creator_address
        self.total_attributed = 0
        self.total_orphaned = 0
        self.orphaned_count = 0
        self._listeners: list[AttributionListener] = []

    def add_listener(self, listener: AttributionListener) -> None:
        self._listeners.append(listener)

    async def resolve(self, event: FeeEvent) -> AttributionOutcome:
        try:
            signatures = await self.rpc.get_signatures_for_address(
                event.account_id, limit=self.settings.signature_limit
            )
            match = find_matching_signature(signatures, event.slot, self.settings.slot_tolerance)
            if match is None:
                return self._orphan(event, f"no signature within {self.settings.slot_tolerance} slots")

            tx = await self.rpc.get_parsed_transaction(match.signature)
            if tx is None:
                return self._orphan(event, f"transaction not found: {match.signature[:8]}...")

            asset_id = extract_asset_id(tx, self.settings.settlement_mint)
            if asset_id is None:
                return self._orphan(event, f"no asset mint in tx {match.signature[:8]}...")

            return self._attribute(event, asset_id, match.signature)
        except Exception as e:
            log.error("Error attributing fee at slot %d: %s", event.slot, e)
            return self._orphan(event, f"attribution error: {e}")

    def _attribute(self, event: FeeEvent, asset_id: str, signature: str) -> AttributionOutcome:
        record, _ = self.registry.resolve_or_create(
            asset_id, causing_account=self.creator_address or event.account_id
        )
        self.registry.record_fee(asset_id, event.amount, event.slot, seen_at=time.time())
        self.total_attributed += event.amount

        if self.history is not None:
            try:
                self.history.record_fee_detected(asset_id, event.amount, event.vault_kind.value, event.slot)
            except Exception as e:
                log.warning("History write failed (fee_detected): %s", e)

        log.info("Fee attributed: %s +%d lamports (sig %s...)", record.display_name, event.amount, signature[:8])
        outcome = AttributionOutcome(
            event=event,
            status=AttributionStatus.ATTRIBUTED,
            asset_id=asset_id,
            display_name=record.display_name,
            signature=signature,
        )
        self._notify(outcome)
        return outcome

    def _orphan(self, event: FeeEvent, reason: str) -> AttributionOutcome:
        self.total_orphaned += event.amount
        self.orphaned_count += 1
        log.warning("Orphaned fee %d lamports at slot %d: %s", event.amount, event.slot, reason)

        if self.history is not None:
            try:
                self.history.record_error(
                    "orphaned_fee",
                    {
                        "amount": event.amount,
                        "slot": event.slot,
                        "vault": event.vault_kind.value,
                        "reason": reason,
                    },
                )
            except Exception as e:
                log.warning("History write failed (orphaned_fee): %s", e)

        outcome = AttributionOutcome(event=event, status=AttributionStatus.ORPHANED, reason=reason)
        self._notify(outcome)
        return outcome

    def _notify(self, outcome: AttributionOutcome) -> None:
        for listener in self._listeners:
            try:
                listener(outcome)
            except Exception as e:
                log.warning("Attribution listener failed: %s", e)
