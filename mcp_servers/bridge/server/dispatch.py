"""
Tool dispatcher: one entry point, two backends.

Browser-category tools run on the live browser when one is attached; any
live failure falls through to the tool-server subprocess, which is also the
only source of the tool catalog.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..errors import BackendUnavailable, BridgeError, OperationError
from ..page_routines import get_routine
from ..redaction import redact_tool_arguments, redact_tool_result, safe_stringify
from .types import ToolDescriptor, ToolResult

if TYPE_CHECKING:
    from ..live_browser import LiveBrowserHandle
    from ..tool_server import ToolServerClient

logger = logging.getLogger("mcp.bridge.dispatch")


class BrowserOp(str, Enum):
    NAVIGATE = "navigate"
    CLICK = "click"
    FILL = "fill"
    TYPE = "type"
    EVALUATE = "evaluate"
    SCREENSHOT = "screenshot"
    SNAPSHOT = "snapshot"
    WAIT = "wait"


# Exact names only. Anything not listed here is subprocess-only.
TOOL_CATEGORIES: dict[str, BrowserOp] = {
    "browser_navigate": BrowserOp.NAVIGATE,
    "navigate": BrowserOp.NAVIGATE,
    "browser_click": BrowserOp.CLICK,
    "click": BrowserOp.CLICK,
    "browser_fill": BrowserOp.FILL,
    "fill": BrowserOp.FILL,
    "browser_type": BrowserOp.TYPE,
    "type": BrowserOp.TYPE,
    "browser_evaluate": BrowserOp.EVALUATE,
    "evaluate": BrowserOp.EVALUATE,
    "browser_take_screenshot": BrowserOp.SCREENSHOT,
    "browser_screenshot": BrowserOp.SCREENSHOT,
    "screenshot": BrowserOp.SCREENSHOT,
    "browser_snapshot": BrowserOp.SNAPSHOT,
    "snapshot": BrowserOp.SNAPSHOT,
    "browser_wait_for": BrowserOp.WAIT,
    "wait_for": BrowserOp.WAIT,
}


def tool_category(name: str) -> BrowserOp | None:
    if not isinstance(name, str):
        return None
    return TOOL_CATEGORIES.get(name.strip().lower())


# ─────────────────────────────────────────────────────────────────────────────
# Live handlers: tool arguments -> LiveBrowserHandle calls
# ─────────────────────────────────────────────────────────────────────────────

LiveHandler = Callable[["LiveBrowserHandle", dict[str, Any]], Awaitable[ToolResult]]

_TARGET_KEYS = ("selector", "ref", "target")


def _target(op: BrowserOp, args: dict[str, Any]) -> str:
    for key in _TARGET_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise OperationError("live_browser", op.value, "no selector/ref/target in arguments")


def _text(op: BrowserOp, args: dict[str, Any]) -> str:
    for key in ("text", "value"):
        value = args.get(key)
        if value is not None:
            return str(value)
    raise OperationError("live_browser", op.value, "no text in arguments")


def _page(args: dict[str, Any]) -> str | None:
    value = args.get("page") or args.get("pageId")
    return str(value) if value else None


async def _live_navigate(live: LiveBrowserHandle, args: dict[str, Any]) -> ToolResult:
    return ToolResult.json(await live.navigate(str(args.get("url") or ""), page=_page(args)))


async def _live_click(live: LiveBrowserHandle, args: dict[str, Any]) -> ToolResult:
    return ToolResult.json(await live.click(_target(BrowserOp.CLICK, args), page=_page(args)))


async def _live_fill(live: LiveBrowserHandle, args: dict[str, Any]) -> ToolResult:
    target = _target(BrowserOp.FILL, args)
    text = _text(BrowserOp.FILL, args)
    return ToolResult.json(await live.fill(target, text, submit=bool(args.get("submit")), page=_page(args)))


async def _live_type(live: LiveBrowserHandle, args: dict[str, Any]) -> ToolResult:
    target = _target(BrowserOp.TYPE, args)
    text = _text(BrowserOp.TYPE, args)
    return ToolResult.json(await live.type(target, text, submit=bool(args.get("submit")), page=_page(args)))


async def _live_evaluate(live: LiveBrowserHandle, args: dict[str, Any]) -> ToolResult:
    routine = args.get("routine")
    if not routine:
        raise OperationError("live_browser", "evaluate", "script text is not evaluated on the live browser")
    routine_args = args.get("args") if isinstance(args.get("args"), dict) else {}
    return ToolResult.json(await live.evaluate(str(routine), routine_args, page=_page(args)))


async def _live_screenshot(live: LiveBrowserHandle, args: dict[str, Any]) -> ToolResult:
    fmt = str(args.get("type") or args.get("format") or "png").lower()
    if fmt == "jpg":
        fmt = "jpeg"
    raw = await live.screenshot(full_page=bool(args.get("fullPage")), format=fmt, page=_page(args))
    return ToolResult.image(raw, mime_type=f"image/{fmt if fmt in {'png', 'jpeg', 'webp'} else 'png'}")


async def _live_snapshot(live: LiveBrowserHandle, args: dict[str, Any]) -> ToolResult:
    return ToolResult.json(await live.structural_snapshot(page=_page(args)))


async def _live_wait(live: LiveBrowserHandle, args: dict[str, Any]) -> ToolResult:
    seconds = args.get("time")
    timeout = args.get("timeout")
    return ToolResult.json(
        await live.wait_for(
            selector=args.get("selector"),
            text=args.get("text"),
            text_gone=args.get("textGone"),
            seconds=float(seconds) if seconds is not None else None,
            timeout=float(timeout) if timeout else 10.0,
            page=_page(args),
        )
    )


LIVE_HANDLERS: dict[BrowserOp, LiveHandler] = {
    BrowserOp.NAVIGATE: _live_navigate,
    BrowserOp.CLICK: _live_click,
    BrowserOp.FILL: _live_fill,
    BrowserOp.TYPE: _live_type,
    BrowserOp.EVALUATE: _live_evaluate,
    BrowserOp.SCREENSHOT: _live_screenshot,
    BrowserOp.SNAPSHOT: _live_snapshot,
    BrowserOp.WAIT: _live_wait,
}


def subprocess_arguments(op: BrowserOp | None, args: dict[str, Any], *, script_arg: str = "function") -> dict[str, Any]:
    """Arguments to send to the tool-server.

    A structured `{routine, args}` evaluate is rendered to function text; the
    tool-server has no notion of the routine catalogue.
    """
    if op is BrowserOp.EVALUATE and args.get("routine"):
        routine = get_routine(args.get("routine"))
        if routine is not None:
            out = {k: v for k, v in args.items() if k not in {"routine", "args"}}
            out[script_arg] = routine.render_function(args.get("args") if isinstance(args.get("args"), dict) else {})
            return out
    return args


_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def result_value(result: Any) -> Any:
    """Best-effort structured value from a tool result (first JSON object in its text)."""
    if not isinstance(result, dict):
        return None
    for item in result.get("content") or []:
        if not isinstance(item, dict) or item.get("type") != "text":
            continue
        text = str(item.get("text") or "")
        for candidate in (text, *(_JSON_OBJECT_RE.findall(text))):
            try:
                return json.loads(candidate)
            except ValueError:
                continue
    return None


class ToolDispatcher:
    """Routes a tool call to the live browser or the tool-server."""

    def __init__(
        self,
        client: ToolServerClient,
        live: LiveBrowserHandle | None = None,
        *,
        call_timeout: float = 60.0,
    ) -> None:
        self.client = client
        self.live = live
        self.call_timeout = call_timeout

    @property
    def live_connected(self) -> bool:
        return self.live is not None and self.live.connected

    async def list_tools(self) -> list[ToolDescriptor]:
        if not self.client.connected:
            raise BackendUnavailable("Tool-server is not connected; the tool catalog is unavailable")
        return await self.client.list_tools()

    async def _live_call(self, op: BrowserOp, args: dict[str, Any]) -> ToolResult:
        assert self.live is not None
        handler = LIVE_HANDLERS[op]
        if not self.call_timeout:
            return await handler(self.live, args)
        try:
            return await asyncio.wait_for(handler(self.live, args), timeout=self.call_timeout)
        except asyncio.TimeoutError as exc:
            raise OperationError("live_browser", op.value, f"timed out after {self.call_timeout:g}s") from exc

    async def call_tool(self, name: str, args: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute `name`; returns an MCP tools/call result dict."""
        args = dict(args or {})
        op = tool_category(name)

        if op is not None and self.live_connected:
            try:
                result = await self._live_call(op, args)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "dispatch.fallback tool=%s op=%s reason=%s args=%s",
                    name,
                    op.value,
                    exc.message if isinstance(exc, BridgeError) else repr(exc),
                    safe_stringify(redact_tool_arguments(name, args), 500),
                )
            else:
                payload = result.to_dict()
                payload["_meta"] = {"backend": "live"}
                logger.info("dispatch.live tool=%s op=%s", name, op.value)
                return payload

        if not self.client.connected:
            raise BackendUnavailable(f"No backend available for tool {name}", details={"tool": name})
        result = await self.client.call_tool(
            name,
            subprocess_arguments(op, args),
            timeout=self.call_timeout or None,
        )
        logger.debug("dispatch.subprocess tool=%s result=%s", name, safe_stringify(redact_tool_result(result), 500))
        return result

    async def run_routine(
        self,
        routine: str,
        args: dict[str, Any] | None = None,
        *,
        evaluate_tool: str | None = None,
        script_arg: str = "function",
    ) -> Any:
        """Run a catalogue routine on whichever backend can evaluate; returns its value.

        Live first; on failure the tool-server's evaluate tool gets the rendered
        function text. Returns None when neither path is usable.
        """
        if self.live_connected:
            assert self.live is not None
            try:
                return await asyncio.wait_for(self.live.evaluate(routine, args), timeout=self.call_timeout or None)
            except (BridgeError, asyncio.TimeoutError) as exc:
                logger.warning("dispatch.routine.fallback routine=%s reason=%s", routine, exc)

        if not evaluate_tool or not self.client.connected:
            return None
        payload = subprocess_arguments(
            BrowserOp.EVALUATE,
            {"routine": routine, "args": args or {}},
            script_arg=script_arg,
        )
        result = await self.client.call_tool(evaluate_tool, payload, timeout=self.call_timeout or None)
        return result_value(result)
