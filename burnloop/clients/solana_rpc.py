"""Solana JSON-RPC client — balances, signatures, parsed transactions.

Provides:
- Account balances and raw account data (with fallback chain)
- Recent signatures for an address
- Fully parsed transactions (jsonParsed, v0 supported)
- Current slot
"""

from __future__ import annotations

import base64
from typing import Any

from pydantic import BaseModel

from burnloop.clients.base import RPCFallbackClient
from burnloop.config import RPCSettings


class SignatureInfo(BaseModel):
    """One entry of getSignaturesForAddress."""

    signature: str
    slot: int
    err: Any = None
    block_time: int | None = None


class SolanaRPC:
    """Request/response access to the ledger."""

    def __init__(self, settings: RPCSettings | None = None, rpc: RPCFallbackClient | None = None):
        self.settings = settings or RPCSettings()
        endpoints = [
            {
                "provider": "primary",
                "url": self.settings.http_url,
                "rate_limit": self.settings.rate_limit,
                "timeout_seconds": self.settings.timeout_seconds,
                "max_retries": 2,
            }
        ]
        for i, url in enumerate(self.settings.fallback_urls, start=1):
            endpoints.append({
                "provider": f"fallback{i}",
                "url": url,
                "rate_limit": 5.0,
                "timeout_seconds": self.settings.timeout_seconds,
            })
        self._rpc = rpc or RPCFallbackClient(endpoints)

    @property
    def commitment(self) -> str:
        return self.settings.commitment

    async def get_balance(self, address: str) -> int:
        """Native balance in lamports."""
        result = await self._rpc.call("getBalance", [address, {"commitment": self.commitment}])
        return int((result or {}).get("value", 0))

    async def get_account_info(self, address: str) -> dict[str, Any] | None:
        """Raw account (base64 data). None if the account does not exist."""
        result = await self._rpc.call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self.commitment}],
        )
        return (result or {}).get("value")

    async def get_account_data(self, address: str) -> bytes | None:
        """Decoded account data bytes, or None if missing."""
        info = await self.get_account_info(address)
        if info is None:
            return None
        data = info.get("data") or ["", "base64"]
        return base64.b64decode(data[0]) if data[0] else b""

    async def get_signatures_for_address(self, address: str, limit: int = 20) -> list[SignatureInfo]:
        """Most-recent-first signature list for an address."""
        result = await self._rpc.call(
            "getSignaturesForAddress",
            [address, {"limit": limit, "commitment": self.commitment}],
        )
        return [
            SignatureInfo(
                signature=row["signature"],
                slot=int(row["slot"]),
                err=row.get("err"),
                block_time=row.get("blockTime"),
            )
            for row in result or []
        ]

    async def get_parsed_transaction(self, signature: str) -> dict[str, Any] | None:
        """Fully parsed transaction, or None if the node does not have it."""
        return await self._rpc.call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "maxSupportedTransactionVersion": 0,
                    "commitment": self.commitment,
                },
            ],
        )

    async def get_slot(self) -> int:
        return int(await self._rpc.call("getSlot", [{"commitment": self.commitment}]))

    async def close(self) -> None:
        await self._rpc.close()
