"""Balance watcher — real-time fee detection on creator vaults.

Flow:
1. Seed one snapshot per vault from a fresh balance read
2. Subscribe to account changes (one stream per vault)
3. delta = new balance - last balance; delta > 0 is an incoming fee
4. Hand the FeeEvent to the attribution resolver in its own task
5. Always move the snapshot forward, even when delta <= 0

Snapshot updates are applied synchronously in arrival order, so attribution
work can interleave without ever losing a balance update.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Callable, Protocol

from burnloop.chain.history import HistoryLedger
from burnloop.clients.subscriptions import AccountUpdate
from burnloop.config import VaultConfig
from burnloop.utils.retry import with_retry
from burnloop.watcher.attribution import AttributionResolver
from burnloop.watcher.schema import FeeEvent, VaultKind, VaultSnapshot

log = logging.getLogger("burnloop.watcher")

SubscribeFn = Callable[[str], AsyncIterator[AccountUpdate]]
FeeListener = Callable[[FeeEvent], None]


class BalanceSource(Protocol):
    async def get_balance(self, address: str) -> int: ...


class BalanceWatcher:
    """Watches a fixed set of vaults and emits one FeeEvent per deposit."""

    def __init__(
        self,
        vaults: list[VaultConfig],
        balances: BalanceSource,
        subscribe: SubscribeFn,
        resolver: AttributionResolver,
        history: HistoryLedger | None = None,
        restart_delay: float = 1.0,
    ):
        self.balances = balances
        self.restart_delay = restart_delay
        self.stream_restarts: dict[str, int] = {}
        self.subscribe = subscribe
        self.resolver = resolver
        self.history = history
        self.snapshots: dict[str, VaultSnapshot] = {
            v.account_id: VaultSnapshot(account_id=v.account_id, kind=VaultKind(v.kind))
            for v in vaults
        }
        self.fees_by_kind: dict[VaultKind, int] = {k: 0 for k in VaultKind}
        self.running = False
        self._listeners: list[FeeListener] = []
        self._stream_tasks: list[asyncio.Task] = []
        self._attribution_tasks: set[asyncio.Task] = set()

    def add_listener(self, listener: FeeListener) -> None:
        self._listeners.append(listener)

    async def start(self) -> None:
        if self.running:
            log.warning("Watcher already running")
            return

        log.info("Starting balance watcher for %d vault(s)", len(self.snapshots))
        self._record_lifecycle("start")

        for snapshot in self.snapshots.values():
            snapshot.last_balance = await self._read_balance(snapshot.account_id)
            log.debug("Initial %s vault balance: %d lamports", snapshot.kind.value, snapshot.last_balance)

        for account_id in self.snapshots:
            self._stream_tasks.append(asyncio.create_task(self._consume(account_id)))

        self.running = True
        log.info("Balance watcher started")

    async def stop(self) -> None:
        if not self.running:
            return

        log.info("Stopping balance watcher...")
        for task in self._stream_tasks:
            task.cancel()
        await asyncio.gather(*self._stream_tasks, return_exceptions=True)
        self._stream_tasks.clear()
        await self.drain()

        self._record_lifecycle("stop")
        self.running = False
        log.info("Balance watcher stopped")

    @with_retry(attempts=3)
    async def _read_balance(self, account_id: str) -> int:
        return await self.balances.get_balance(account_id)

    async def _consume(self, account_id: str) -> None:
        """Feed one vault's stream into handle_update; restart it if it ends or raises."""
        while True:
            try:
                async for update in self.subscribe(account_id):
                    self.handle_update(update)
                log.warning("Stream for %s... ended, resubscribing", account_id[:8])
            except Exception:
                log.exception("Stream for %s... failed, resubscribing", account_id[:8])
            self.stream_restarts[account_id] = self.stream_restarts.get(account_id, 0) + 1
            await asyncio.sleep(self.restart_delay)

    def handle_update(self, update: AccountUpdate) -> FeeEvent | None:
        """Apply one notification. Returns the FeeEvent if it was a deposit."""
        snapshot = self.snapshots.get(update.account_id)
        if snapshot is None:
            log.debug("Update for unwatched account %s...", update.account_id[:8])
            return None

        delta = update.lamports - snapshot.last_balance
        snapshot.last_balance = update.lamports
        snapshot.last_slot = update.slot

        if delta <= 0:
            return None

        event = FeeEvent(
            vault_kind=snapshot.kind,
            account_id=update.account_id,
            amount=delta,
            slot=update.slot,
            observed_at=update.timestamp or time.time(),
        )
        self.fees_by_kind[snapshot.kind] += delta
        log.info("%s fee detected: +%d lamports at slot %d", snapshot.kind.value, delta, update.slot)

        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                log.warning("Fee listener failed: %s", e)

        task = asyncio.create_task(self.resolver.resolve(event))
        self._attribution_tasks.add(task)
        task.add_done_callback(self._attribution_tasks.discard)
        return event

    async def drain(self) -> None:
        """Wait for in-flight attribution work."""
        if self._attribution_tasks:
            await asyncio.gather(*list(self._attribution_tasks), return_exceptions=True)

    def _record_lifecycle(self, phase: str) -> None:
        if self.history is None:
            return
        try:
            if phase == "start":
                self.history.record_daemon_start()
            else:
                self.history.record_daemon_stop()
        except Exception as e:
            log.warning("History write failed (daemon_%s): %s", phase, e)

    def totals(self) -> dict[str, int]:
        primary = self.fees_by_kind[VaultKind.PRIMARY]
        secondary = self.fees_by_kind[VaultKind.SECONDARY]
        return {
            "primary_fees": primary,
            "secondary_fees": secondary,
            "total_fees": primary + secondary,
            "attributed": self.resolver.total_attributed,
            "orphaned": self.resolver.total_orphaned,
        }

    def vault_balances(self) -> dict[str, VaultSnapshot]:
        return {k: v.model_copy() for k, v in self.snapshots.items()}
