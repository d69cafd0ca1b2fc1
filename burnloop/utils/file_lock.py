"""File locking utilities for safe concurrent state updates."""
from __future__ import annotations

import fcntl
import json
import logging
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generator

log = logging.getLogger("burnloop.file_lock")


@contextmanager
def exclusive_file_lock(path: Path, blocking: bool = True) -> Generator[bool, None, None]:
    """Context manager for exclusive file locking.

    Yields True when the lock is held. With blocking=False, yields False
    immediately if another process holds it.

    Usage:
        with exclusive_file_lock(Path("data/dead-letter-tokens.json")):
            # Read, modify, write
            pass
    """
    lock_path = path.with_suffix(path.suffix + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    with open(lock_path, "w") as lock_file:
        flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
        try:
            fcntl.flock(lock_file.fileno(), flags)
        except BlockingIOError:
            yield False
            return
        try:
            yield True
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


def _read_json(path: Path, default: Any) -> Any:
    """Read JSON, restoring from .bak if the file is corrupted."""
    if not path.exists():
        return default
    try:
        with open(path, "r") as f:
            return json.load(f)
    except json.JSONDecodeError:
        backup_path = path.with_suffix(path.suffix + ".bak")
        if not backup_path.exists():
            raise
        log.warning("Corrupted state detected: %s, restoring from %s", path, backup_path)
        shutil.copy(backup_path, path)
        with open(path, "r") as f:
            return json.load(f)


def _write_json(path: Path, data: Any, indent: int) -> None:
    """Backup, write to tmp, atomic rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        shutil.copy(path, path.with_suffix(path.suffix + ".bak"))
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w") as f:
        json.dump(data, f, indent=indent)
    tmp_path.rename(path)


def safe_read_json(path: Path, default: Any = None) -> Any:
    """Read JSON with file locking and auto-recovery from backup on corruption."""
    with exclusive_file_lock(path):
        return _read_json(path, {} if default is None else default)


def safe_update_json(
    path: Path,
    update_fn: Callable[[Any], Any],
    default: Any = None,
    indent: int = 2,
) -> Any:
    """Atomically read-modify-write JSON under one lock.

    Args:
        path: Path to JSON file
        update_fn: Takes current data, returns updated data
        default: Value passed to update_fn when the file does not exist
        indent: JSON indent level

    Returns:
        Updated data
    """
    with exclusive_file_lock(path):
        current = _read_json(path, {} if default is None else default)
        updated = update_fn(current)
        _write_json(path, updated, indent)
        return updated
