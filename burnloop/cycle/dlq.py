"""Dead-letter queue for failed token cycles.

Features:
- Transient / cycle-too-soon / permanent error classification
- Exponential backoff retry (5, 10, 20, 40, 80 min)
- Auto-expiry after 24 hours or 5 retries
- Bounded store (last 100 entries), JSON file by default

Entry lifecycle: pending -> resolved | expired. Both end states are final.
A token has at most one pending entry; a repeat failure updates it in place
so its age keeps counting from the first failure.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Protocol

from pydantic import BaseModel

from burnloop.config import DLQSettings
from burnloop.utils.file_lock import safe_read_json, safe_update_json

log = logging.getLogger("burnloop.dlq")

TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "etimedout",
    "econnreset",
    "connection reset",
    "connection error",
    "enotfound",
    "fetch failed",
    "429",
    "rate limit",
    "too many requests",
    "500",
    "502",
    "503",
    "blockhash not found",
    "block height exceeded",
)

CYCLE_TOO_SOON_PATTERNS = (
    "cycletoosoon",
    "cycle too soon",
    "min_cycle_interval",
)


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    CYCLE_TOO_SOON = "cycle_too_soon"
    PERMANENT = "permanent"


class EntryStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    EXPIRED = "expired"


def is_cycle_too_soon_error(error: BaseException | str) -> bool:
    """The on-chain minimum cycle interval has not elapsed yet."""
    message = str(error).lower()
    return any(p in message for p in CYCLE_TOO_SOON_PATTERNS)


def is_transient_error(error: BaseException | str) -> bool:
    """Network, timeout, rate-limit and stale-blockhash failures."""
    message = str(error).lower()
    return any(p in message for p in TRANSIENT_PATTERNS)


def classify_error(error: BaseException | str) -> ErrorKind:
    if is_cycle_too_soon_error(error):
        return ErrorKind.CYCLE_TOO_SOON
    if is_transient_error(error):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


class DeadLetterEntry(BaseModel):
    """One failed cycle attempt."""

    timestamp: datetime
    asset_id: str
    account_id: str = ""
    error_text: str
    is_transient: bool
    error_kind: ErrorKind = ErrorKind.PERMANENT
    pending_fees_at_failure: int = 0
    allocation_at_failure: int = 0
    retry_count: int = 0
    next_retry_at: datetime | None = None
    status: EntryStatus = EntryStatus.PENDING


class DLQProcessResult(BaseModel):
    retryable: list[str] = []
    expired: list[str] = []


class DLQStore(Protocol):
    """Persistence contract: plain JSON-able entry dicts, insertion order."""

    def load(self) -> list[dict[str, Any]]: ...

    def save(self, entries: list[dict[str, Any]]) -> None: ...

    def update(self, fn: Callable[[list[dict[str, Any]]], list[dict[str, Any]]]) -> list[dict[str, Any]]: ...


class JsonFileDLQStore:
    """Entries as a JSON array in one file, guarded by an fcntl lock."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> list[dict[str, Any]]:
        data = safe_read_json(self.path, default=[])
        return data if isinstance(data, list) else []

    def save(self, entries: list[dict[str, Any]]) -> None:
        self.update(lambda _: entries)

    def update(self, fn: Callable[[list[dict[str, Any]]], list[dict[str, Any]]]) -> list[dict[str, Any]]:
        return safe_update_json(
            self.path,
            lambda current: fn(current if isinstance(current, list) else []),
            default=[],
        )


class MemoryDLQStore:
    def __init__(self, entries: list[dict[str, Any]] | None = None):
        self._entries = list(entries or [])

    def load(self) -> list[dict[str, Any]]:
        return [dict(e) for e in self._entries]

    def save(self, entries: list[dict[str, Any]]) -> None:
        self._entries = [dict(e) for e in entries]

    def update(self, fn: Callable[[list[dict[str, Any]]], list[dict[str, Any]]]) -> list[dict[str, Any]]:
        self.save(fn(self.load()))
        return self.load()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeadLetterQueue:
    """Single funnel for failed cycles and the only place retries are decided."""

    def __init__(
        self,
        store: DLQStore,
        settings: DLQSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.settings = settings or DLQSettings()
        self.clock = clock

    # ── Backoff ──────────────────────────────────────────────────────

    def retry_delay(self, retry_count: int) -> timedelta:
        """base * 2^(retry_count-1), capped at the max interval."""
        exponent = max(retry_count, 1) - 1
        seconds = self.settings.base_delay_seconds * (2.0 ** exponent)
        return timedelta(seconds=min(seconds, self.settings.max_delay_seconds))

    # ── Mutations ────────────────────────────────────────────────────

    def append(
        self,
        asset_id: str,
        error: BaseException | str,
        pending_fees: int,
        allocation: int,
        retry_count: int,
        account_id: str = "",
    ) -> DeadLetterEntry:
        """Record a failed cycle, scheduling a retry if the error is transient."""
        now = self.clock()
        kind = classify_error(error)
        transient = kind is not ErrorKind.PERMANENT
        entry = DeadLetterEntry(
            timestamp=now,
            asset_id=asset_id,
            account_id=account_id,
            error_text=str(error),
            is_transient=transient,
            error_kind=kind,
            pending_fees_at_failure=pending_fees,
            allocation_at_failure=allocation,
            retry_count=retry_count,
            next_retry_at=now + self.retry_delay(retry_count) if transient else None,
        )

        def apply(raw: list[dict[str, Any]]) -> list[dict[str, Any]]:
            entries = [DeadLetterEntry.model_validate(e) for e in raw]
            existing = next(
                (e for e in entries if e.asset_id == asset_id and e.status is EntryStatus.PENDING),
                None,
            )
            if existing is not None:
                entry.timestamp = existing.timestamp
                entries = [entry if e is existing else e for e in entries]
            else:
                entries.append(entry)
            entries = entries[-self.settings.max_entries:]
            return [e.model_dump(mode="json") for e in entries]

        self.store.update(apply)

        if kind is ErrorKind.CYCLE_TOO_SOON:
            log.info("DLQ: %s cycle too soon, next attempt at %s", asset_id[:8], entry.next_retry_at)
        elif transient:
            log.warning(
                "DLQ: %s transient failure (retry %d), next attempt at %s: %s",
                asset_id[:8], retry_count, entry.next_retry_at, entry.error_text,
            )
        else:
            log.error("DLQ: %s permanent failure, no retry: %s", asset_id[:8], entry.error_text)
        return entry

    def process(self) -> DLQProcessResult:
        """Expire stale entries and list the ones due for retry."""
        now = self.clock()
        expiry = timedelta(seconds=self.settings.expiry_seconds)
        result = DLQProcessResult()
        modified = False

        entries = [DeadLetterEntry.model_validate(e) for e in self.store.load()]
        for entry in entries:
            if entry.status is not EntryStatus.PENDING:
                continue
            if now - entry.timestamp > expiry or entry.retry_count >= self.settings.max_retries:
                entry.status = EntryStatus.EXPIRED
                result.expired.append(entry.asset_id)
                modified = True
                continue
            if entry.is_transient and entry.next_retry_at is not None and entry.next_retry_at <= now:
                result.retryable.append(entry.asset_id)

        if modified:
            expired_ids = {(e.asset_id, e.timestamp) for e in entries if e.status is EntryStatus.EXPIRED}
            self.store.update(lambda raw: self._mark(raw, expired_ids, EntryStatus.EXPIRED))
            log.warning("DLQ: %d entr%s expired (manual review needed)",
                        len(result.expired), "y" if len(result.expired) == 1 else "ies")
        if result.retryable:
            log.info("DLQ: %d entr%s ready for retry",
                     len(result.retryable), "y" if len(result.retryable) == 1 else "ies")
        return result

    @staticmethod
    def _mark(
        raw: list[dict[str, Any]], keys: set[tuple[str, datetime]], status: EntryStatus
    ) -> list[dict[str, Any]]:
        entries = [DeadLetterEntry.model_validate(e) for e in raw]
        for e in entries:
            if e.status is EntryStatus.PENDING and (e.asset_id, e.timestamp) in keys:
                e.status = status
        return [e.model_dump(mode="json") for e in entries]

    def mark_resolved(self, asset_id: str) -> bool:
        """Resolve the asset's pending entry. Returns False if there was none."""
        resolved: list[bool] = []

        def apply(raw: list[dict[str, Any]]) -> list[dict[str, Any]]:
            entries = [DeadLetterEntry.model_validate(e) for e in raw]
            for e in entries:
                if e.asset_id == asset_id and e.status is EntryStatus.PENDING:
                    e.status = EntryStatus.RESOLVED
                    resolved.append(True)
                    break
            return [e.model_dump(mode="json") for e in entries]

        self.store.update(apply)
        if resolved:
            log.info("DLQ: marked %s as resolved", asset_id[:8])
        return bool(resolved)

    # ── Reads ────────────────────────────────────────────────────────

    def entries(self) -> list[DeadLetterEntry]:
        return [DeadLetterEntry.model_validate(e) for e in self.store.load()]

    def pending(self) -> list[DeadLetterEntry]:
        return [e for e in self.entries() if e.status is EntryStatus.PENDING]

    def retry_count_for(self, asset_id: str) -> int:
        """Retry count of the asset's pending entry, 0 if none."""
        entry = next((e for e in self.pending() if e.asset_id == asset_id), None)
        return entry.retry_count if entry else 0
