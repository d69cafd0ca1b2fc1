"""Command executor — runs the external collect/buy/burn program for one token.

The command gets the asset id as its last argument, prints one transaction
signature per line on success and exits non-zero on failure. Its stderr
becomes the error text the dead-letter queue classifies.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess

from burnloop.errors import ExecutorError

log = logging.getLogger("burnloop.executor")


class CommandExecutor:
    def __init__(self, command: list[str], timeout: float = 300.0, cwd: str | None = None):
        if not command:
            raise ValueError("CommandExecutor needs a non-empty command")
        self.command = list(command)
        self.timeout = timeout
        self.cwd = cwd

    async def execute(self, asset_id: str) -> list[str]:
        argv = [*self.command, asset_id]
        log.info("Executing cycle for %s...", asset_id[:8])
        try:
            result = await asyncio.to_thread(
                subprocess.run,
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                cwd=self.cwd,
            )
        except subprocess.TimeoutExpired:
            raise ExecutorError(f"Executor timeout after {self.timeout:.0f}s")
        except OSError as e:
            raise ExecutorError(f"Failed to spawn executor: {e}")

        if result.returncode != 0:
            error_msg = result.stderr.strip() if result.stderr else f"exit code {result.returncode}"
            raise ExecutorError(f"Executor failed: {error_msg}")

        signatures = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not signatures:
            raise ExecutorError("Executor returned no signatures")
        return signatures
