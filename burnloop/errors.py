"""Exception hierarchy for burnloop."""

from __future__ import annotations


class BurnloopError(Exception):
    """Base class for all burnloop errors."""


class ConfigError(BurnloopError):
    """Invalid or incomplete engine configuration."""


class ChainCorruptionError(BurnloopError):
    """History ledger failed hash-chain verification."""

    def __init__(self, message: str, sequence: int = 0):
        super().__init__(message)
        self.sequence = sequence


class LockError(BurnloopError):
    """Execution lock could not be written or released."""


class ExecutorError(BurnloopError):
    """The cycle executor reported a failure. The message is what the DLQ classifies."""
