"""Execution lock — at most one cycle at a time on this host.

.cycle-lock.json in the lock directory records who holds the lock
(pid, hostname, operation, timestamp). A lock older than the timeout is
treated as left behind by a crashed run and may be overwritten.

Check-and-write happens under a non-blocking fcntl guard, so two processes
racing for a free lock cannot both win.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from pydantic import BaseModel, ValidationError

from burnloop.errors import LockError
from burnloop.utils.file_lock import exclusive_file_lock

log = logging.getLogger("burnloop.lock")

LOCK_FILE_NAME = ".cycle-lock.json"
DEFAULT_LOCK_TIMEOUT_SECONDS = 10 * 60


class LockInfo(BaseModel):
    pid: int
    timestamp: float
    operation: str
    hostname: str
    asset_id: str | None = None


class LockStatus(BaseModel):
    locked: bool
    info: LockInfo | None = None
    age_seconds: float = 0.0
    is_stale: bool = False


class ExecutionLock:
    def __init__(self, lock_dir: Path | str, timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS):
        self.path = Path(lock_dir) / LOCK_FILE_NAME
        self.timeout_seconds = timeout_seconds

    def status(self) -> LockStatus:
        if not self.path.exists():
            return LockStatus(locked=False)
        try:
            info = LockInfo.model_validate(json.loads(self.path.read_text()))
        except (OSError, ValueError, ValidationError) as e:
            log.warning("Unreadable lock file %s, treating as unlocked: %s", self.path, e)
            return LockStatus(locked=False)
        age = time.time() - info.timestamp
        return LockStatus(locked=True, info=info, age_seconds=age, is_stale=age > self.timeout_seconds)

    def is_locked(self) -> bool:
        status = self.status()
        return status.locked and not status.is_stale

    def acquire(self, operation: str, asset_id: str | None = None) -> bool:
        """Take the lock without waiting. False if someone else holds it."""
        with exclusive_file_lock(self.path, blocking=False) as held:
            if not held:
                return False

            status = self.status()
            if status.locked and not status.is_stale:
                return False
            if status.locked and status.info is not None:
                log.warning(
                    "Found stale lock from PID %d on %s (age %.0fs), overwriting",
                    status.info.pid, status.info.hostname, status.age_seconds,
                )

            info = LockInfo(
                pid=os.getpid(),
                timestamp=time.time(),
                operation=operation,
                hostname=socket.gethostname(),
                asset_id=asset_id,
            )
            tmp_path = self.path.with_suffix(f".tmp.{os.getpid()}")
            try:
                tmp_path.write_text(info.model_dump_json(indent=2))
                tmp_path.rename(self.path)
            except OSError as e:
                log.error("Failed to acquire lock: %s", e)
                return False
            return True

    def release(self, force: bool = False) -> bool:
        """Drop the lock. Only the owning PID may release unless forced."""
        status = self.status()
        if not status.locked:
            return True
        if not force and status.info is not None and status.info.pid != os.getpid():
            log.warning("Cannot release lock owned by PID %d (current PID %d)", status.info.pid, os.getpid())
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.error("Failed to release lock: %s", e)
            return False
        return True

    def clean_stale(self) -> bool:
        status = self.status()
        if status.locked and status.is_stale:
            return self.release(force=True)
        return False

    @contextmanager
    def held(self, operation: str, asset_id: str | None = None) -> Generator[LockInfo, None, None]:
        """Hold the lock for a block. Raises LockError if it is taken."""
        if not self.acquire(operation, asset_id):
            info = self.status().info
            owner = f"PID {info.pid} since {info.timestamp:.0f}" if info else "another process"
            raise LockError(f'Cannot acquire lock for "{operation}": held by {owner}')
        try:
            yield self.status().info
        finally:
            self.release()
