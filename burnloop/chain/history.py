"""History ledger — append-only, hash-chained event log.

Each entry's hash covers its own fields plus the previous entry's hash, so
any retroactive edit breaks every later link. The chain is anchored at a
64-zero genesis hash.

Storage is pluggable: SQLite (`history_entries` table) or JSON Lines.
Only a bounded window of recent entries is kept in memory.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import sqlite3
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

from burnloop.errors import ChainCorruptionError

log = logging.getLogger("burnloop.history")

GENESIS_HASH = "0" * 64

# Entry kinds
DAEMON_START = "daemon_start"
DAEMON_STOP = "daemon_stop"
FEE_DETECTED = "fee_detected"
CYCLE_TOKEN_BURN = "cycle_token_burn"
ERROR = "error"


class HistoryEntry(BaseModel):
    """A single link in the history chain."""

    sequence: int
    prev_hash: str
    payload_hash: str = ""
    kind: str
    timestamp: str
    slot: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class Attestation(BaseModel):
    """Recoverable summary of the chain tip."""

    latest_hash: str = GENESIS_HASH
    sequence: int = 0
    timestamp: str = ""
    total_fees_detected: int = 0


def compute_entry_hash(
    sequence: int,
    prev_hash: str,
    kind: str,
    timestamp: str,
    slot: int | None,
    payload: dict[str, Any],
) -> str:
    """Deterministic SHA-256 over the canonical JSON of an entry.

    Canonical JSON: sorted keys, no spaces, ensure_ascii.
    """
    canonical = json.dumps(
        {
            "sequence": sequence,
            "prev_hash": prev_hash,
            "kind": kind,
            "timestamp": timestamp,
            "slot": slot,
            "payload": payload,
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def entry_hash(entry: HistoryEntry) -> str:
    return compute_entry_hash(
        entry.sequence, entry.prev_hash, entry.kind, entry.timestamp, entry.slot, entry.payload
    )


def verify_entries(entries: list[HistoryEntry], expected_prev: str | None = None) -> tuple[bool, str]:
    """Check hashes and prev-hash links of a contiguous run of entries.

    `expected_prev` is the hash the first entry must link to; None skips that
    check (used when verifying a window that does not start at genesis).
    """
    if not entries:
        return True, "No entries to verify"

    prev = expected_prev
    for entry in entries:
        if prev is not None and entry.prev_hash != prev:
            return False, f"Prev-hash chain break at sequence {entry.sequence}"
        computed = entry_hash(entry)
        if computed != entry.payload_hash:
            return False, (
                f"Hash mismatch at sequence {entry.sequence}: "
                f"stored={entry.payload_hash[:16]}... computed={computed[:16]}..."
            )
        prev = entry.payload_hash

    return True, f"Chain verified: {len(entries)} entries from {entries[0].sequence} to {entries[-1].sequence}"


class HistoryStore(Protocol):
    """Persistence contract for the ledger."""

    def append(self, entry: HistoryEntry) -> None: ...

    def tail(self, count: int) -> list[HistoryEntry]: ...

    def entries(self, kind: str | None = None) -> list[HistoryEntry]: ...


class SqliteHistoryStore:
    """History entries in a SQLite table."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS history_entries (
                sequence INTEGER PRIMARY KEY,
                prev_hash TEXT NOT NULL,
                payload_hash TEXT NOT NULL UNIQUE,
                kind TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                slot INTEGER,
                payload TEXT NOT NULL
            )
        """)
        conn.commit()
        conn.close()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    @staticmethod
    def _row(row: tuple) -> HistoryEntry:
        return HistoryEntry(
            sequence=row[0],
            prev_hash=row[1],
            payload_hash=row[2],
            kind=row[3],
            timestamp=row[4],
            slot=row[5],
            payload=json.loads(row[6]),
        )

    def append(self, entry: HistoryEntry) -> None:
        conn = self._connect()
        conn.execute(
            "INSERT INTO history_entries (sequence, prev_hash, payload_hash, kind, timestamp, slot, payload) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                entry.sequence,
                entry.prev_hash,
                entry.payload_hash,
                entry.kind,
                entry.timestamp,
                entry.slot,
                json.dumps(entry.payload, sort_keys=True),
            ),
        )
        conn.commit()
        conn.close()

    def tail(self, count: int) -> list[HistoryEntry]:
        conn = self._connect()
        rows = conn.execute(
            "SELECT sequence, prev_hash, payload_hash, kind, timestamp, slot, payload "
            "FROM history_entries ORDER BY sequence DESC LIMIT ?",
            (count,),
        ).fetchall()
        conn.close()
        return [self._row(r) for r in reversed(rows)]

    def entries(self, kind: str | None = None) -> list[HistoryEntry]:
        conn = self._connect()
        if kind is None:
            rows = conn.execute(
                "SELECT sequence, prev_hash, payload_hash, kind, timestamp, slot, payload "
                "FROM history_entries ORDER BY sequence ASC"
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT sequence, prev_hash, payload_hash, kind, timestamp, slot, payload "
                "FROM history_entries WHERE kind = ? ORDER BY sequence ASC",
                (kind,),
            ).fetchall()
        conn.close()
        return [self._row(r) for r in rows]


class JsonlHistoryStore:
    """History entries as JSON Lines, one entry per line."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def append(self, entry: HistoryEntry) -> None:
        with open(self.path, "a") as f:
            f.write(entry.model_dump_json() + "\n")

    def _read(self) -> list[HistoryEntry]:
        if not self.path.exists():
            return []
        entries = []
        with open(self.path) as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(HistoryEntry.model_validate_json(line))
                except ValueError as e:
                    raise ChainCorruptionError(f"Unparseable history entry at line {lineno}: {e}") from e
        return entries

    def tail(self, count: int) -> list[HistoryEntry]:
        return self._read()[-count:] if count > 0 else []

    def entries(self, kind: str | None = None) -> list[HistoryEntry]:
        entries = self._read()
        if kind is None:
            return entries
        return [e for e in entries if e.kind == kind]


class HistoryLedger:
    """Hash-chained event log with a bounded in-memory window."""

    def __init__(self, store: HistoryStore, max_entries_in_memory: int = 1000):
        self.store = store
        self.max_entries_in_memory = max_entries_in_memory
        self._recent: deque[HistoryEntry] = deque(maxlen=max_entries_in_memory)
        self._attestation = Attestation()
        self._initialized = False

    def initialize(self) -> None:
        """Load the recent window and verify it.

        Raises ChainCorruptionError if the stored window does not verify.
        """
        recent = self.store.tail(self.max_entries_in_memory)
        if recent:
            # Genesis link is only checkable when the window starts at entry 1
            expected = GENESIS_HASH if recent[0].sequence == 1 else None
            valid, msg = verify_entries(recent, expected_prev=expected)
            if not valid:
                log.error("History chain corruption detected: %s", msg)
                raise ChainCorruptionError(msg, sequence=recent[0].sequence)
            tip = recent[-1]
            self._attestation = Attestation(
                latest_hash=tip.payload_hash,
                sequence=tip.sequence,
                timestamp=tip.timestamp,
                total_fees_detected=sum(
                    int(e.payload.get("amount", 0)) for e in self.store.entries(FEE_DETECTED)
                ),
            )
            log.info("History loaded: %d entries, tip %s...", tip.sequence, tip.payload_hash[:12])
        self._recent.extend(recent)
        self._initialized = True

    def append(self, kind: str, payload: dict[str, Any], slot: int | None = None) -> HistoryEntry:
        """Append a new entry linked to the current tip."""
        if not self._initialized:
            self.initialize()

        sequence = self._attestation.sequence + 1
        prev_hash = self._attestation.latest_hash
        timestamp = datetime.now(timezone.utc).isoformat()
        entry = HistoryEntry(
            sequence=sequence,
            prev_hash=prev_hash,
            kind=kind,
            timestamp=timestamp,
            slot=slot,
            payload=payload,
        )
        entry.payload_hash = entry_hash(entry)
        self.store.append(entry)

        self._attestation.sequence = sequence
        self._attestation.latest_hash = entry.payload_hash
        self._attestation.timestamp = timestamp
        if kind == FEE_DETECTED:
            self._attestation.total_fees_detected += int(payload.get("amount", 0))
        self._recent.append(entry)

        log.debug("History #%d %s %s...", sequence, kind, entry.payload_hash[:12])
        return entry

    def verify(self, full: bool = False) -> tuple[bool, str]:
        """Verify the in-memory window, or the whole store from genesis."""
        if full:
            return verify_entries(self.store.entries(), expected_prev=GENESIS_HASH)
        entries = list(self._recent)
        if not entries:
            return True, "No entries to verify"
        expected = GENESIS_HASH if entries[0].sequence == 1 else None
        return verify_entries(entries, expected_prev=expected)

    def attestation(self) -> Attestation:
        return self._attestation.model_copy()

    def recent_entries(self, count: int | None = None) -> list[HistoryEntry]:
        entries = list(self._recent)
        return entries if not count else entries[-count:]

    def entries_by_kind(self, kind: str, count: int = 100) -> list[HistoryEntry]:
        return [e for e in self._recent if e.kind == kind][-count:]

    def entries_for_asset(self, asset_id: str, count: int = 100) -> list[HistoryEntry]:
        return [e for e in self._recent if e.payload.get("asset_id") == asset_id][-count:]

    # ── Typed recorders ──────────────────────────────────────────────

    def record_daemon_start(self) -> HistoryEntry:
        return self.append(DAEMON_START, {"message": "Daemon started", "pid": os.getpid()})

    def record_daemon_stop(self) -> HistoryEntry:
        return self.append(DAEMON_STOP, {"message": "Daemon stopped", "pid": os.getpid()})

    def record_fee_detected(self, asset_id: str, amount: int, vault: str, slot: int) -> HistoryEntry:
        return self.append(FEE_DETECTED, {"asset_id": asset_id, "amount": amount, "vault": vault}, slot=slot)

    def record_cycle_token_burn(self, asset_id: str, signatures: list[str], is_primary: bool) -> HistoryEntry:
        return self.append(
            CYCLE_TOKEN_BURN,
            {"asset_id": asset_id, "signatures": signatures, "is_primary": is_primary},
        )

    def record_error(self, message: str, details: dict[str, Any] | None = None) -> HistoryEntry:
        return self.append(ERROR, {"message": message, "details": details or {}})
