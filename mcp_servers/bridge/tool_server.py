"""Client for an MCP tool-server subprocess.

Speaks newline-delimited JSON-RPC 2.0 over the child's stdin/stdout: one
request per line, responses matched by id through a pending-future map filled
by a background reader task.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import suppress
from typing import Any

from .errors import CallTimeout, PeerProtocolError, PeerUnavailable, ToolExecutionError
from .redaction import redact_tool_arguments, safe_stringify
from .server.types import ToolDescriptor

logger = logging.getLogger("mcp.bridge.tool_server")

PROTOCOL_VERSION = "2025-06-18"
CLIENT_INFO: dict[str, str] = {"name": "mcp-bridge", "version": "0.1.0"}

# Screenshots come back as one base64 line; the default 64 KiB limit is too small.
_LINE_LIMIT = 32 * 1024 * 1024


class ToolServerClient:
    """Owns the tool-server process and its JSON-RPC channel."""

    def __init__(
        self,
        command: list[str],
        *,
        env: dict[str, str] | None = None,
        init_timeout: float = 60.0,
    ) -> None:
        if not command:
            raise ValueError("tool-server command is empty")
        self.command = list(command)
        self.env = env
        self.init_timeout = init_timeout
        self.server_info: dict[str, Any] = {}
        self._proc: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._pending: dict[int, asyncio.Future] = {}
        self._next_id = 1
        self._initialized = False
        self._tools: list[ToolDescriptor] | None = None
        self._start_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._initialized and self._proc is not None and self._proc.returncode is None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    async def start(self) -> None:
        """Spawn the process and run the initialize handshake. No-op when already connected."""
        async with self._start_lock:
            if self.connected:
                return
            await self._teardown()
            env = {**os.environ, **self.env} if self.env else None
            try:
                self._proc = await asyncio.create_subprocess_exec(
                    *self.command,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=env,
                    limit=_LINE_LIMIT,
                )
            except OSError as exc:
                raise PeerUnavailable(
                    f"Cannot start tool-server: {exc}", details={"command": self.command}
                ) from exc

            logger.info("tool_server.spawn pid=%s cmd=%s", self._proc.pid, " ".join(self.command))
            self._reader = asyncio.create_task(self._read_loop(self._proc))
            self._stderr_task = asyncio.create_task(self._drain_stderr(self._proc))

            try:
                result = await self._request(
                    "initialize",
                    {
                        "protocolVersion": PROTOCOL_VERSION,
                        "capabilities": {},
                        "clientInfo": CLIENT_INFO,
                    },
                    timeout=self.init_timeout,
                )
                await self._notify("notifications/initialized")
            except Exception:
                await self._teardown()
                raise
            self.server_info = result.get("serverInfo") if isinstance(result.get("serverInfo"), dict) else {}
            self._initialized = True
            logger.info(
                "tool_server.ready pid=%s server=%s protocol=%s",
                self._proc.pid,
                self.server_info.get("name"),
                result.get("protocolVersion"),
            )

    async def stop(self) -> None:
        async with self._start_lock:
            await self._teardown()

    async def _teardown(self) -> None:
        proc = self._proc
        self._initialized = False
        self._tools = None
        self._proc = None
        if proc is not None and proc.returncode is None:
            if proc.stdin is not None:
                with suppress(Exception):
                    proc.stdin.close()
            with suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                with suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
            logger.info("tool_server.stop pid=%s code=%s", proc.pid, proc.returncode)
        for task in (self._reader, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError, Exception):
                    await task
        self._reader = None
        self._stderr_task = None
        self._fail_pending(PeerUnavailable("Tool-server stopped"))

    def _fail_pending(self, exc: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(exc)

    # ─────────────────────────────────────────────────────────────────────────
    # Wire
    # ─────────────────────────────────────────────────────────────────────────

    async def _write(self, payload: dict[str, Any]) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or proc.returncode is not None:
            raise PeerUnavailable("Tool-server is not running")
        line = (json.dumps(payload, ensure_ascii=False) + "\n").encode()
        try:
            proc.stdin.write(line)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise PeerUnavailable(f"Tool-server pipe closed: {exc}") from exc

    async def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        msg: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            msg["params"] = params
        await self._write(msg)

    async def _request(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        req_id = self._next_id
        self._next_id += 1
        fut = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        msg: dict[str, Any] = {"jsonrpc": "2.0", "id": req_id, "method": method}
        if params is not None:
            msg["params"] = params
        try:
            await self._write(msg)
            if timeout:
                return await asyncio.wait_for(fut, timeout=timeout)
            return await fut
        except asyncio.TimeoutError as exc:
            raise CallTimeout(f"Tool-server did not answer {method} within {timeout:g}s", details={"method": method}) from exc
        finally:
            self._pending.pop(req_id, None)

    async def _read_loop(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        try:
            while True:
                try:
                    line = await proc.stdout.readline()
                except ValueError:
                    # Line longer than the stream limit; the frame is lost.
                    logger.warning("tool_server.frame_too_large pid=%s", proc.pid)
                    continue
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    msg = json.loads(line.decode())
                except (UnicodeDecodeError, ValueError):
                    logger.debug("tool_server.non_json %s", safe_stringify(line.decode(errors="replace"), 200))
                    continue
                if isinstance(msg, dict):
                    await self._on_message(msg)
        finally:
            code = proc.returncode
            if code is None:
                with suppress(Exception):
                    code = await asyncio.wait_for(proc.wait(), timeout=1.0)
            if self._proc is proc:
                self._initialized = False
                logger.warning("tool_server.exit pid=%s code=%s", proc.pid, code)
            self._fail_pending(PeerUnavailable(f"Tool-server exited (code={code})"))

    async def _on_message(self, msg: dict[str, Any]) -> None:
        msg_id = msg.get("id")
        method = msg.get("method")

        if isinstance(method, str):
            # Server-initiated request or notification.
            if msg_id is None:
                logger.debug("tool_server.notification method=%s", method)
                return
            if method == "ping":
                await self._write({"jsonrpc": "2.0", "id": msg_id, "result": {}})
            elif method == "roots/list":
                await self._write({"jsonrpc": "2.0", "id": msg_id, "result": {"roots": []}})
            else:
                await self._write(
                    {"jsonrpc": "2.0", "id": msg_id, "error": {"code": -32601, "message": f"Unknown method: {method}"}}
                )
            return

        fut = self._pending.get(msg_id) if isinstance(msg_id, int) else None
        if fut is None or fut.done():
            return
        if "error" in msg:
            err = msg.get("error") if isinstance(msg.get("error"), dict) else {"message": str(msg.get("error"))}
            fut.set_exception(
                PeerProtocolError(str(err.get("message") or "JSON-RPC error"), details={"code": err.get("code"), "data": err.get("data")})
            )
            return
        result = msg.get("result")
        if not isinstance(result, dict):
            fut.set_exception(PeerProtocolError("Malformed response: result is not an object"))
            return
        fut.set_result(result)

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stderr is None:
            return
        while True:
            try:
                line = await proc.stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            logger.debug("tool_server.stderr %s", line.decode(errors="replace").rstrip())

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    async def list_tools(self, *, refresh: bool = False) -> list[ToolDescriptor]:
        if not self.connected:
            raise PeerUnavailable("Tool-server is not connected")
        if self._tools is not None and not refresh:
            return list(self._tools)

        tools: list[ToolDescriptor] = []
        cursor: str | None = None
        while True:
            result = await self._request("tools/list", {"cursor": cursor} if cursor else {})
            for raw in result.get("tools") or []:
                if isinstance(raw, dict) and raw.get("name"):
                    tools.append(ToolDescriptor.from_dict(raw))
            cursor = result.get("nextCursor")
            if not cursor:
                break
        self._tools = tools
        logger.info("tool_server.tools count=%d", len(tools))
        return list(tools)

    async def call_tool(self, name: str, args: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        """Run one tool. Raises ToolExecutionError when the peer reports isError."""
        if not self.connected:
            raise PeerUnavailable("Tool-server is not connected")
        arguments = args or {}
        logger.info("tool_server.call tool=%s args=%s", name, safe_stringify(redact_tool_arguments(name, arguments)))
        result = await self._request("tools/call", {"name": name, "arguments": arguments}, timeout=timeout)
        if result.get("isError"):
            raise ToolExecutionError(name, result)
        return result
