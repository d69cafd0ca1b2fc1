#!/usr/bin/env python3
"""
Daemon — wire the watcher, resolver and cycle orchestrator into one process.

Usage:
    python3 -m burnloop.daemon            # config/engine.yaml
    BURNLOOP_CONFIG=/path/engine.yaml python3 -m burnloop.daemon

Environment: RPC_URL, WS_URL, HELIUS_API_KEY, OPERATOR_ADDRESS, LOG_LEVEL.
Without an executor command the daemon only watches and attributes fees.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from burnloop.chain.history import HistoryLedger, SqliteHistoryStore
from burnloop.clients.solana_rpc import SolanaRPC
from burnloop.clients.subscriptions import SubscriptionManager
from burnloop.config import EngineConfig, load_engine_config
from burnloop.cycle.allocator import FeeAllocator
from burnloop.cycle.dlq import DeadLetterQueue, JsonFileDLQStore
from burnloop.cycle.executor import CommandExecutor
from burnloop.cycle.lock import ExecutionLock
from burnloop.cycle.orchestrator import CycleOrchestrator, Executor
from burnloop.cycle.selector import TokenSelector
from burnloop.cycle.validator import CycleValidator
from burnloop.errors import BurnloopError
from burnloop.state import AssetRecord, AssetRegistry
from burnloop.watcher.attribution import AttributionResolver
from burnloop.watcher.balance import BalanceWatcher

log = logging.getLogger("burnloop.daemon")


def _config_path() -> Path | None:
    path = os.environ.get("BURNLOOP_CONFIG")
    return Path(path) if path else None


def build_registry(config: EngineConfig) -> AssetRegistry:
    registry = AssetRegistry(max_assets=config.watcher.max_assets_in_cache)
    for asset in config.assets:
        registry.register(AssetRecord(
            asset_id=asset.asset_id,
            display_name=asset.display_name or asset.asset_id[:4].upper(),
            causing_account=asset.causing_account,
        ))
    return registry


def build_orchestrator(
    config: EngineConfig,
    rpc: SolanaRPC,
    history: HistoryLedger | None,
    executor: Executor,
) -> CycleOrchestrator:
    path = _config_path()
    return CycleOrchestrator(
        config_loader=lambda: load_engine_config(path),
        chain=rpc,
        allocator=FeeAllocator(rpc),
        selector=TokenSelector(config.selection.min_fee_threshold),
        validator=CycleValidator(rpc, config.validator, config.selection.min_fee_threshold),
        dlq=DeadLetterQueue(JsonFileDLQStore(config.paths.dlq_file), config.dlq),
        lock=ExecutionLock(config.paths.lock_dir, config.orchestrator.lock_timeout_seconds),
        executor=executor,
        history=history,
    )


async def run_daemon(config: EngineConfig, executor: Executor | None = None) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    history = HistoryLedger(SqliteHistoryStore(config.paths.history_db))
    history.initialize()
    log.info("History ledger at sequence %d", history.attestation().sequence)

    rpc = SolanaRPC(config.rpc)
    subscriptions = SubscriptionManager(
        config.rpc.ws_url,
        commitment=config.rpc.commitment,
        reconnect_delay=config.watcher.reconnect_delay_seconds,
        max_reconnect_delay=config.watcher.max_reconnect_delay_seconds,
    )
    registry = build_registry(config)
    resolver = AttributionResolver(rpc, registry, history, config.watcher, config.creator_address)
    watcher = BalanceWatcher(
        config.vaults, rpc, subscriptions.subscribe, resolver, history,
        restart_delay=config.watcher.reconnect_delay_seconds,
    )

    if executor is None and config.orchestrator.executor_command:
        executor = CommandExecutor(
            config.orchestrator.executor_command,
            timeout=config.orchestrator.executor_timeout_seconds,
        )

    orchestrator_task: asyncio.Task | None = None
    try:
        await watcher.start()
        if executor is not None:
            orchestrator = build_orchestrator(config, rpc, history, executor)
            orchestrator_task = asyncio.create_task(
                orchestrator.run_forever(config.orchestrator.interval_seconds, stop_event)
            )
        else:
            log.warning("No executor configured, running in watch-only mode")

        await stop_event.wait()
        log.info("Shutdown requested")
    finally:
        stop_event.set()
        if orchestrator_task is not None:
            await orchestrator_task
        await watcher.stop()
        await subscriptions.close()
        await rpc.close()
        totals = watcher.totals()
        log.info(
            "Final totals: %d lamports detected, %d attributed, %d orphaned",
            totals["total_fees"], totals["attributed"], totals["orphaned"],
        )


def main() -> None:
    load_dotenv(override=False)
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    try:
        config = load_engine_config(_config_path())
    except BurnloopError as e:
        log.error("%s", e)
        sys.exit(1)

    if not config.vaults:
        log.error("No vaults configured in engine.yaml")
        sys.exit(1)

    try:
        asyncio.run(run_daemon(config))
    except BurnloopError as e:
        log.error("Daemon stopped: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
