"""Async CDP WebSocket connection.

One connection talks to the browser-level debugger URL. Page commands are
multiplexed over it using flattened target sessions (`sessionId`).
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any

import websockets

from .errors import BridgeError

logger = logging.getLogger("mcp.bridge.cdp")


class CdpError(BridgeError):
    """A CDP command failed or the socket went away."""

    code = "cdp_error"


class CdpConnection:
    """Browser-level CDP connection with a background reader task."""

    def __init__(self, ws: Any, ws_url: str, timeout: float = 10.0) -> None:
        self.ws = ws
        self.ws_url = ws_url
        self.timeout = timeout
        self._next_id = 1
        self._pending: dict[int, asyncio.Future] = {}
        self._closed = False
        self._reader = asyncio.create_task(self._read_loop())

    @classmethod
    async def open(cls, ws_url: str, *, timeout: float = 10.0) -> CdpConnection:
        try:
            ws = await asyncio.wait_for(websockets.connect(ws_url, max_size=None), timeout=timeout)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
            raise CdpError(f"Cannot open CDP socket: {exc}", details={"wsUrl": ws_url}) from exc
        logger.info("cdp.open ws=%s", ws_url)
        return cls(ws, ws_url, timeout=timeout)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send a CDP command and wait for its response."""
        if self._closed:
            raise CdpError("CDP connection is closed")

        msg_id = self._next_id
        self._next_id += 1
        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            msg["params"] = params
        if session_id:
            msg["sessionId"] = session_id

        fut = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = fut
        try:
            await self.ws.send(json.dumps(msg))
            return await asyncio.wait_for(fut, timeout=timeout or self.timeout)
        except asyncio.TimeoutError as exc:
            raise CdpError(f"CDP response timed out: {method}") from exc
        except websockets.exceptions.ConnectionClosed as exc:
            self._closed = True
            raise CdpError(f"CDP socket closed during {method}") from exc
        finally:
            self._pending.pop(msg_id, None)

    async def _read_loop(self) -> None:
        try:
            async for raw in self.ws:
                try:
                    data = json.loads(raw)
                except (TypeError, ValueError):
                    continue
                if not isinstance(data, dict):
                    continue
                # Events carry no id; the bridge does not subscribe to any.
                if "id" not in data:
                    continue
                fut = self._pending.get(data.get("id"))
                if fut is None or fut.done():
                    continue
                if "error" in data:
                    err = data.get("error") or {}
                    fut.set_exception(CdpError(str(err.get("message") or err), details={"cdp": err}))
                else:
                    result = data.get("result")
                    fut.set_result(result if isinstance(result, dict) else {})
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self._closed = True
            self._fail_pending(CdpError("CDP socket closed"))

    def _fail_pending(self, exc: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(exc)

    async def close(self) -> None:
        """Close the socket. This drops the debugging session only; the browser keeps running."""
        if self._closed and self._reader.done():
            return
        self._closed = True
        with suppress(Exception):
            await self.ws.close()
        self._reader.cancel()
        with suppress(asyncio.CancelledError, Exception):
            await self._reader
        self._fail_pending(CdpError("CDP connection closed"))
        logger.info("cdp.close ws=%s", self.ws_url)
