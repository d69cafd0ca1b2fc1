"""Tests for the hash-chained history ledger."""

from __future__ import annotations

import json
import sqlite3

import pytest

from burnloop.chain.history import (
    CYCLE_TOKEN_BURN,
    FEE_DETECTED,
    GENESIS_HASH,
    HistoryLedger,
    JsonlHistoryStore,
    SqliteHistoryStore,
    compute_entry_hash,
    entry_hash,
    verify_entries,
)
from burnloop.errors import ChainCorruptionError


@pytest.fixture(params=["sqlite", "jsonl"])
def store(request, tmp_path):
    if request.param == "sqlite":
        return SqliteHistoryStore(tmp_path / "history.db")
    return JsonlHistoryStore(tmp_path / "history.jsonl")


class TestHashing:
    def test_deterministic(self):
        args = (1, GENESIS_HASH, "fee_detected", "2026-03-01T00:00:00+00:00", 10, {"b": 2, "a": 1})
        assert compute_entry_hash(*args) == compute_entry_hash(*args)
        assert len(compute_entry_hash(*args)) == 64

    def test_payload_key_order_irrelevant(self):
        h1 = compute_entry_hash(1, GENESIS_HASH, "x", "t", None, {"a": 1, "b": 2})
        h2 = compute_entry_hash(1, GENESIS_HASH, "x", "t", None, {"b": 2, "a": 1})
        assert h1 == h2

    def test_any_field_changes_hash(self):
        base = compute_entry_hash(1, GENESIS_HASH, "x", "t", None, {"a": 1})
        assert compute_entry_hash(2, GENESIS_HASH, "x", "t", None, {"a": 1}) != base
        assert compute_entry_hash(1, "f" * 64, "x", "t", None, {"a": 1}) != base
        assert compute_entry_hash(1, GENESIS_HASH, "x", "t", None, {"a": 2}) != base


class TestLedger:
    def test_first_entry_links_to_genesis(self, store):
        ledger = HistoryLedger(store)
        entry = ledger.record_daemon_start()
        assert entry.sequence == 1
        assert entry.prev_hash == GENESIS_HASH
        assert entry.payload_hash == entry_hash(entry)

    def test_chain_links(self, store):
        ledger = HistoryLedger(store)
        entries = [
            ledger.record_daemon_start(),
            ledger.record_fee_detected("ASSET1", 5_000, "primary", 1003),
            ledger.record_cycle_token_burn("ASSET1", ["sig1", "sig2"], is_primary=False),
        ]
        for prev, cur in zip(entries, entries[1:]):
            assert cur.prev_hash == prev.payload_hash
            assert cur.sequence == prev.sequence + 1
        assert ledger.verify()[0]
        assert ledger.verify(full=True)[0]

    def test_attestation_tracks_tip_and_fees(self, store):
        ledger = HistoryLedger(store)
        ledger.record_fee_detected("A", 100, "primary", 1)
        tip = ledger.record_fee_detected("B", 250, "secondary", 2)
        att = ledger.attestation()
        assert att.sequence == 2
        assert att.latest_hash == tip.payload_hash
        assert att.total_fees_detected == 350

    def test_reload_continues_chain(self, store):
        first = HistoryLedger(store)
        first.record_daemon_start()
        tip = first.record_fee_detected("A", 100, "primary", 1)

        second = HistoryLedger(store)
        second.initialize()
        assert second.attestation().latest_hash == tip.payload_hash
        assert second.attestation().total_fees_detected == 100
        nxt = second.record_daemon_stop()
        assert nxt.sequence == 3
        assert nxt.prev_hash == tip.payload_hash
        assert second.verify(full=True)[0]

    def test_bounded_memory_window(self, store):
        ledger = HistoryLedger(store, max_entries_in_memory=3)
        for i in range(5):
            ledger.record_fee_detected(f"A{i}", 1, "primary", i)
        assert [e.sequence for e in ledger.recent_entries()] == [3, 4, 5]
        assert ledger.verify()[0]
        assert len(store.entries()) == 5

    def test_window_reload_not_at_genesis(self, store):
        ledger = HistoryLedger(store)
        for i in range(5):
            ledger.record_fee_detected(f"A{i}", 1, "primary", i)
        reloaded = HistoryLedger(store, max_entries_in_memory=2)
        reloaded.initialize()
        assert reloaded.attestation().sequence == 5

    def test_queries(self, store):
        ledger = HistoryLedger(store)
        ledger.record_fee_detected("A", 1, "primary", 1)
        ledger.record_cycle_token_burn("A", ["s"], is_primary=False)
        ledger.record_fee_detected("B", 1, "primary", 2)
        assert [e.kind for e in ledger.entries_for_asset("A")] == [FEE_DETECTED, CYCLE_TOKEN_BURN]
        assert len(ledger.entries_by_kind(FEE_DETECTED)) == 2
        assert [e.sequence for e in ledger.recent_entries(1)] == [3]


class TestTamperDetection:
    def test_verify_entries_detects_edit(self, store):
        ledger = HistoryLedger(store)
        ledger.record_fee_detected("A", 100, "primary", 1)
        ledger.record_fee_detected("B", 200, "primary", 2)
        entries = store.entries()
        entries[0].payload["amount"] = 1_000_000
        valid, _ = verify_entries(entries, expected_prev=GENESIS_HASH)
        assert not valid

    def test_verify_entries_detects_broken_link(self, store):
        ledger = HistoryLedger(store)
        ledger.record_fee_detected("A", 100, "primary", 1)
        ledger.record_fee_detected("B", 200, "primary", 2)
        entries = store.entries()
        entries[1].prev_hash = "f" * 64
        assert not verify_entries(entries)[0]

    def test_tampered_sqlite_refuses_to_load(self, tmp_path):
        db = tmp_path / "history.db"
        ledger = HistoryLedger(SqliteHistoryStore(db))
        ledger.record_fee_detected("A", 100, "primary", 1)
        ledger.record_fee_detected("B", 200, "primary", 2)

        conn = sqlite3.connect(db)
        conn.execute(
            "UPDATE history_entries SET payload = ? WHERE sequence = 1",
            (json.dumps({"asset_id": "A", "amount": 999, "vault": "primary"}),),
        )
        conn.commit()
        conn.close()

        with pytest.raises(ChainCorruptionError):
            HistoryLedger(SqliteHistoryStore(db)).initialize()

    def test_tampered_jsonl_refuses_to_load(self, tmp_path):
        path = tmp_path / "history.jsonl"
        ledger = HistoryLedger(JsonlHistoryStore(path))
        ledger.record_fee_detected("A", 100, "primary", 1)
        ledger.record_fee_detected("B", 200, "primary", 2)

        lines = path.read_text().splitlines()
        first = json.loads(lines[0])
        first["payload"]["amount"] = 999
        lines[0] = json.dumps(first)
        path.write_text("\n".join(lines) + "\n")

        with pytest.raises(ChainCorruptionError):
            HistoryLedger(JsonlHistoryStore(path)).initialize()

    def test_garbage_jsonl_line(self, tmp_path):
        path = tmp_path / "history.jsonl"
        path.write_text("not json\n")
        with pytest.raises(ChainCorruptionError):
            HistoryLedger(JsonlHistoryStore(path)).initialize()
