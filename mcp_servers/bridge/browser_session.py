"""Per-page CDP wrapper.

A PageSession is bound to one page target through a flattened CDP session on
the shared browser connection. It knows nothing about tool names; the live
handle maps tool arguments onto these primitives.
"""

from __future__ import annotations

import asyncio
import base64
import time
from typing import Any

from .page_routines import PageRoutine, get_routine
from .session_cdp import CdpConnection, CdpError

_KEY_CODES = {
    "Enter": 13,
    "Tab": 9,
    "Escape": 27,
    "Backspace": 8,
    "Delete": 46,
    "ArrowUp": 38,
    "ArrowDown": 40,
    "ArrowLeft": 37,
    "ArrowRight": 39,
}


class PageSession:
    """CDP primitives for a single page."""

    def __init__(self, conn: CdpConnection, target_id: str, session_id: str, key: str) -> None:
        self.conn = conn
        self.target_id = target_id
        self.session_id = session_id
        self.key = key
        self._enabled: set[str] = set()

    async def send(self, method: str, params: dict[str, Any] | None = None, **kwargs: Any) -> dict[str, Any]:
        return await self.conn.send(method, params, session_id=self.session_id, **kwargs)

    async def enable(self, domain: str) -> None:
        if domain in self._enabled:
            return
        await self.send(f"{domain}.enable")
        self._enabled.add(domain)

    # ─────────────────────────────────────────────────────────────────────────
    # Evaluation
    # ─────────────────────────────────────────────────────────────────────────

    async def eval_js(self, expression: str) -> Any:
        """Evaluate a catalogue-rendered expression and return its value."""
        await self.enable("Runtime")
        result = await self.send(
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True, "awaitPromise": True},
        )
        exc = result.get("exceptionDetails")
        if isinstance(exc, dict):
            text = (exc.get("exception") or {}).get("description") or exc.get("text") or "evaluation failed"
            raise CdpError(str(text), details={"exceptionDetails": exc})
        value = result.get("result")
        if not isinstance(value, dict):
            return None
        # undefined and null both normalize to None.
        if value.get("type") == "undefined":
            return None
        if value.get("type") == "object" and value.get("subtype") == "null":
            return None
        return value.get("value")

    async def run_routine(self, routine: PageRoutine | str, args: dict[str, Any] | None = None) -> Any:
        resolved = get_routine(routine) if isinstance(routine, str) else routine
        if resolved is None:
            raise CdpError(f"Unknown page routine: {routine}")
        return await self.eval_js(resolved.render_expression(args))

    # ─────────────────────────────────────────────────────────────────────────
    # Navigation
    # ─────────────────────────────────────────────────────────────────────────

    async def navigate(self, url: str, *, timeout: float = 15.0) -> dict[str, Any]:
        await self.enable("Page")
        result = await self.send("Page.navigate", {"url": url})
        if result.get("errorText"):
            raise CdpError(f"Navigation failed: {result['errorText']}", details={"url": url})
        return await self.wait_load(timeout=timeout)

    async def wait_load(self, *, timeout: float = 15.0) -> dict[str, Any]:
        """Poll readyState until the document is complete (or the deadline passes)."""
        deadline = time.monotonic() + timeout
        info: dict[str, Any] = {}
        while True:
            try:
                info = await self.run_routine("page_info") or {}
            except CdpError:
                # The execution context is torn down mid-navigation; retry.
                info = {}
            if info.get("readyState") == "complete" or time.monotonic() >= deadline:
                return info
            await asyncio.sleep(0.1)

    # ─────────────────────────────────────────────────────────────────────────
    # Input
    # ─────────────────────────────────────────────────────────────────────────

    async def click(self, x: float, y: float, button: str = "left", click_count: int = 1) -> None:
        for event_type in ("mouseMoved", "mousePressed", "mouseReleased"):
            await self.send(
                "Input.dispatchMouseEvent",
                {
                    "type": event_type,
                    "x": x,
                    "y": y,
                    "button": "none" if event_type == "mouseMoved" else button,
                    "clickCount": 0 if event_type == "mouseMoved" else click_count,
                },
            )

    async def type_text(self, text: str) -> None:
        if text:
            await self.send("Input.insertText", {"text": str(text)})

    async def press_key(self, key: str) -> None:
        code = _KEY_CODES.get(key, ord(key[0].upper()) if len(key) == 1 else 0)
        for event_type in ("keyDown", "keyUp"):
            params: dict[str, Any] = {
                "type": event_type,
                "key": key,
                "code": key,
                "windowsVirtualKeyCode": code,
                "nativeVirtualKeyCode": code,
            }
            if event_type == "keyDown" and key == "Enter":
                params["text"] = "\r"
            await self.send("Input.dispatchKeyEvent", params)

    # ─────────────────────────────────────────────────────────────────────────
    # Capture
    # ─────────────────────────────────────────────────────────────────────────

    async def screenshot(self, *, format: str = "png", full_page: bool = False) -> bytes:
        await self.enable("Page")
        params: dict[str, Any] = {"format": format, "fromSurface": True}
        if full_page:
            params["captureBeyondViewport"] = True
        result = await self.send("Page.captureScreenshot", params)
        data = result.get("data")
        if not isinstance(data, str) or not data:
            raise CdpError("Screenshot returned no data")
        return base64.b64decode(data)

    async def accessibility_tree(self) -> list[dict[str, Any]]:
        await self.enable("Accessibility")
        result = await self.send("Accessibility.getFullAXTree")
        nodes = result.get("nodes")
        return nodes if isinstance(nodes, list) else []
