"""Websocket account subscriptions — accountSubscribe with auto-reconnect.

Each watched account gets its own stream. A dropped socket is reopened with
exponential backoff and the subscription is re-sent; callers just keep
iterating.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable

import aiohttp
from pydantic import BaseModel

log = logging.getLogger("burnloop.subscriptions")


class AccountUpdate(BaseModel):
    """One push notification for a watched account."""

    account_id: str
    lamports: int
    slot: int
    timestamp: float


def build_subscribe_request(request_id: int, account_id: str, commitment: str) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "accountSubscribe",
        "params": [account_id, {"encoding": "base64", "commitment": commitment}],
    }


def parse_notification(account_id: str, message: Any) -> AccountUpdate | None:
    """Turn an accountNotification frame into an AccountUpdate.

    Returns None for subscription confirmations and unrelated frames.
    Raises ValueError when a notification carries a malformed balance.
    """
    if not isinstance(message, dict) or message.get("method") != "accountNotification":
        return None
    params = message.get("params")
    result = params.get("result") if isinstance(params, dict) else None
    value = result.get("value") if isinstance(result, dict) else None
    if not isinstance(value, dict) or "lamports" not in value:
        return None
    context = result.get("context")
    try:
        lamports = int(value["lamports"])
        slot = int(context.get("slot", 0)) if isinstance(context, dict) else 0
    except (TypeError, ValueError) as e:
        raise ValueError(f"Malformed accountNotification for {account_id[:8]}...: {e}") from e
    return AccountUpdate(account_id=account_id, lamports=lamports, slot=slot, timestamp=time.time())


class SubscriptionManager:
    """Opens one resilient websocket subscription per account."""

    def __init__(
        self,
        ws_url: str,
        commitment: str = "confirmed",
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
        heartbeat: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ws_url = ws_url
        self._sleep = sleep
        self.commitment = commitment
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.heartbeat = heartbeat
        self.reconnects: dict[str, int] = {}
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def subscribe(self, account_id: str) -> AsyncIterator[AccountUpdate]:
        """Yield updates for `account_id` forever, resubscribing on loss."""
        delay = self.reconnect_delay
        self.reconnects.setdefault(account_id, 0)

        while True:
            try:
                session = await self._get_session()
                async with session.ws_connect(self.ws_url, heartbeat=self.heartbeat) as ws:
                    await ws.send_json(build_subscribe_request(1, account_id, self.commitment))
                    log.info("Subscribed to %s...", account_id[:8])
                    delay = self.reconnect_delay

                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            try:
                                update = parse_notification(account_id, json.loads(msg.data))
                            except ValueError as e:
                                log.warning("Skipping malformed frame on %s...: %s", account_id[:8], e)
                                continue
                            if update is not None:
                                yield update
                        elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                            break
                log.warning("Subscription to %s... closed, resubscribing", account_id[:8])
            except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as e:
                log.warning("Subscription to %s... lost: %s", account_id[:8], e)
            except Exception:
                log.exception("Subscription to %s... failed, resubscribing", account_id[:8])

            self.reconnects[account_id] += 1
            await self._sleep(delay)
            delay = min(delay * 2, self.max_reconnect_delay)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
