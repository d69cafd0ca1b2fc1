"""Tests for the dead-letter queue — classification, backoff, expiry, persistence."""

from __future__ import annotations

import json
from datetime import timedelta

import pytest

from burnloop.config import DLQSettings
from burnloop.cycle.dlq import (
    DeadLetterQueue,
    EntryStatus,
    ErrorKind,
    JsonFileDLQStore,
    MemoryDLQStore,
    classify_error,
    is_cycle_too_soon_error,
    is_transient_error,
)
from tests.mocks.mock_clock import T0, FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dlq(clock):
    return DeadLetterQueue(MemoryDLQStore(), DLQSettings(), clock=clock)


class TestClassification:
    @pytest.mark.parametrize(
        "message",
        [
            "Request timeout after 30000ms",
            "read ECONNRESET",
            "getaddrinfo ENOTFOUND api.mainnet-beta.solana.com",
            "connect ETIMEDOUT 1.2.3.4:443",
            "TypeError: fetch failed",
            "429 Too Many Requests",
            "Server responded with rate limit",
            "503 Service Unavailable",
            "Blockhash not found",
            "block height exceeded",
        ],
    )
    def test_transient(self, message):
        assert is_transient_error(message)
        assert classify_error(message) is ErrorKind.TRANSIENT

    @pytest.mark.parametrize(
        "message",
        [
            "Error Code: CycleTooSoon. Error Number: 6012.",
            "cycle too soon, wait for next interval",
            "MIN_CYCLE_INTERVAL not elapsed",
        ],
    )
    def test_cycle_too_soon(self, message):
        assert is_cycle_too_soon_error(message)
        assert classify_error(message) is ErrorKind.CYCLE_TOO_SOON

    @pytest.mark.parametrize(
        "message",
        ["Invalid mint address", "custom program error: 0x1771", "InsufficientFunds"],
    )
    def test_permanent(self, message):
        assert classify_error(message) is ErrorKind.PERMANENT

    def test_accepts_exceptions(self):
        assert is_transient_error(TimeoutError("operation timeout"))


class TestBackoff:
    def test_schedule(self, dlq):
        minutes = [dlq.retry_delay(n).total_seconds() / 60 for n in range(1, 7)]
        assert minutes == [5, 10, 20, 40, 80, 80]

    def test_monotonic_until_cap(self, dlq):
        delays = [dlq.retry_delay(n) for n in range(1, 6)]
        assert all(a < b for a, b in zip(delays, delays[1:]))

    def test_zero_retry_count_clamped(self, dlq):
        assert dlq.retry_delay(0) == dlq.retry_delay(1)

    def test_next_retry_increases_with_retry_count(self, dlq):
        times = [dlq.append(f"ASSET{n}", "fetch failed", 0, 0, n).next_retry_at for n in range(1, 6)]
        assert all(a < b for a, b in zip(times, times[1:]))


class TestAppend:
    def test_transient_schedules_retry(self, dlq):
        entry = dlq.append("ASSET1", "read ECONNRESET", 8_000_000, 4_000_000, 1, account_id="CURVE1")
        assert entry.is_transient
        assert entry.next_retry_at == T0 + timedelta(minutes=5)
        assert entry.status is EntryStatus.PENDING
        assert entry.account_id == "CURVE1"
        assert entry.pending_fees_at_failure == 8_000_000
        assert entry.allocation_at_failure == 4_000_000

    def test_permanent_has_no_retry(self, dlq):
        entry = dlq.append("ASSET1", "Invalid mint address", 0, 0, 1)
        assert not entry.is_transient
        assert entry.next_retry_at is None

    def test_cycle_too_soon_is_retried(self, dlq):
        entry = dlq.append("ASSET1", "CycleTooSoon", 0, 0, 2)
        assert entry.error_kind is ErrorKind.CYCLE_TOO_SOON
        assert entry.is_transient
        assert entry.next_retry_at == T0 + timedelta(minutes=10)

    def test_repeat_failure_updates_in_place(self, dlq, clock):
        dlq.append("ASSET1", "fetch failed", 0, 0, 1)
        clock.advance(minutes=6)
        dlq.append("ASSET1", "fetch failed", 0, 0, 2)

        pending = dlq.pending()
        assert len(pending) == 1
        assert pending[0].retry_count == 2
        assert pending[0].timestamp == T0
        assert pending[0].next_retry_at == T0 + timedelta(minutes=16)

    def test_capped_oldest_dropped(self, clock):
        dlq = DeadLetterQueue(MemoryDLQStore(), DLQSettings(max_entries=100), clock=clock)
        for i in range(105):
            dlq.append(f"ASSET{i:03d}", "fetch failed", 0, 0, 1)
        entries = dlq.entries()
        assert len(entries) == 100
        assert entries[0].asset_id == "ASSET005"
        assert entries[-1].asset_id == "ASSET104"

    def test_next_retry_present_iff_transient(self, dlq):
        for i, message in enumerate(["timeout", "Invalid mint", "CycleTooSoon", "bad instruction data"]):
            dlq.append(f"A{i}", message, 0, 0, 1)
        for entry in dlq.entries():
            assert (entry.next_retry_at is not None) == entry.is_transient


class TestProcess:
    def test_not_due_yet(self, dlq, clock):
        dlq.append("ASSET1", "fetch failed", 0, 0, 1)
        clock.advance(minutes=4)
        result = dlq.process()
        assert result.retryable == []
        assert result.expired == []

    def test_due_becomes_retryable(self, dlq, clock):
        dlq.append("ASSET1", "fetch failed", 0, 0, 1)
        clock.advance(minutes=5)
        assert dlq.process().retryable == ["ASSET1"]

    def test_permanent_never_retryable(self, dlq, clock):
        dlq.append("ASSET1", "Invalid mint", 0, 0, 1)
        clock.advance(hours=2)
        assert dlq.process().retryable == []

    def test_max_retries_expires_even_when_young(self, dlq, clock):
        dlq.append("ASSET1", "fetch failed", 0, 0, 5)
        clock.advance(hours=1)
        result = dlq.process()
        assert result.expired == ["ASSET1"]
        assert result.retryable == []
        assert dlq.entries()[0].status is EntryStatus.EXPIRED

    def test_age_expiry(self, dlq, clock):
        dlq.append("ASSET1", "Invalid mint", 0, 0, 1)
        clock.advance(hours=24, seconds=1)
        assert dlq.process().expired == ["ASSET1"]

    def test_expired_is_terminal(self, dlq, clock):
        dlq.append("ASSET1", "fetch failed", 0, 0, 5)
        dlq.process()
        clock.advance(hours=3)
        result = dlq.process()
        assert result.retryable == []
        assert result.expired == []
        assert dlq.mark_resolved("ASSET1") is False
        assert dlq.entries()[0].status is EntryStatus.EXPIRED

    def test_unmodified_queue_not_rewritten(self, clock):
        store = MemoryDLQStore()
        dlq = DeadLetterQueue(store, clock=clock)
        dlq.append("ASSET1", "fetch failed", 0, 0, 1)
        saves = []
        original_save = store.save
        store.save = lambda entries: (saves.append(entries), original_save(entries))
        dlq.process()
        assert saves == []


class TestResolve:
    def test_resolve_is_idempotent(self, dlq):
        dlq.append("ASSET1", "fetch failed", 0, 0, 1)
        assert dlq.mark_resolved("ASSET1") is True
        snapshot = [e.model_dump() for e in dlq.entries()]
        assert dlq.mark_resolved("ASSET1") is False
        assert [e.model_dump() for e in dlq.entries()] == snapshot
        assert dlq.entries()[0].status is EntryStatus.RESOLVED

    def test_resolved_not_retried(self, dlq, clock):
        dlq.append("ASSET1", "fetch failed", 0, 0, 1)
        dlq.mark_resolved("ASSET1")
        clock.advance(hours=1)
        assert dlq.process().retryable == []

    def test_unknown_asset(self, dlq):
        assert dlq.mark_resolved("NOPE") is False

    def test_retry_count_for(self, dlq):
        assert dlq.retry_count_for("ASSET1") == 0
        dlq.append("ASSET1", "fetch failed", 0, 0, 3)
        assert dlq.retry_count_for("ASSET1") == 3
        dlq.mark_resolved("ASSET1")
        assert dlq.retry_count_for("ASSET1") == 0


class TestJsonFileStore:
    def test_persists_across_instances(self, tmp_path, clock):
        path = tmp_path / "dead-letter-tokens.json"
        DeadLetterQueue(JsonFileDLQStore(path), clock=clock).append("ASSET1", "fetch failed", 7, 3, 1)

        reopened = DeadLetterQueue(JsonFileDLQStore(path), clock=clock)
        entries = reopened.entries()
        assert len(entries) == 1
        assert entries[0].asset_id == "ASSET1"
        assert entries[0].next_retry_at == T0 + timedelta(minutes=5)

    def test_file_is_human_readable_json_array(self, tmp_path, clock):
        path = tmp_path / "dead-letter-tokens.json"
        DeadLetterQueue(JsonFileDLQStore(path), clock=clock).append("ASSET1", "fetch failed", 0, 0, 1)
        raw = json.loads(path.read_text())
        assert isinstance(raw, list)
        assert raw[0]["status"] == "pending"
        assert raw[0]["error_kind"] == "transient"
        assert "\n  " in path.read_text()

    def test_missing_file_is_empty(self, tmp_path):
        assert DeadLetterQueue(JsonFileDLQStore(tmp_path / "none.json")).entries() == []

    def test_corrupted_file_restored_from_backup(self, tmp_path, clock):
        path = tmp_path / "dead-letter-tokens.json"
        dlq = DeadLetterQueue(JsonFileDLQStore(path), clock=clock)
        dlq.append("ASSET1", "fetch failed", 0, 0, 1)
        dlq.append("ASSET2", "fetch failed", 0, 0, 1)
        path.write_text("{not json")
        assert [e.asset_id for e in dlq.entries()] == ["ASSET1"]
