"""Live-browser handle.

Attaches to a browser that somebody else launched (remote debugging port) and
runs page operations against it. The browser process is never closed from
here: disconnect only drops the socket and the local page map.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from .browser_session import PageSession
from .errors import ConnectionFailed, OperationError
from .page_routines import get_routine
from .session_cdp import CdpConnection, CdpError

logger = logging.getLogger("mcp.bridge.live")

Connector = Callable[[str], Awaitable[CdpConnection]]


class LiveState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def page_key(index: int) -> str:
    return f"page-{index}"


class LiveBrowserHandle:
    """One browser context plus a keyed collection of pages."""

    def __init__(self, *, connector: Connector | None = None, load_timeout: float = 15.0) -> None:
        self._connector = connector or CdpConnection.open
        self.load_timeout = load_timeout
        self.state = LiveState.DISCONNECTED
        self.endpoint: str | None = None
        self.context_id: str | None = None
        self._conn: CdpConnection | None = None
        self._pages: dict[str, PageSession] = {}
        self._page_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self.state is LiveState.CONNECTED and self._conn is not None and not self._conn.closed

    @property
    def page_keys(self) -> list[str]:
        return list(self._pages)

    async def connect(self, ws_url: str) -> None:
        if self.connected:
            return
        self.state = LiveState.CONNECTING
        conn: CdpConnection | None = None
        try:
            conn = await self._connector(ws_url)
            targets = (await conn.send("Target.getTargets")).get("targetInfos") or []
            pages = [t for t in targets if isinstance(t, dict) and t.get("type") == "page"]

            context_id = self._pick_context(pages)
            self._conn = conn
            self.context_id = context_id
            self._pages = {}

            own = [p for p in pages if context_id is None or p.get("browserContextId") == context_id]
            for index, info in enumerate(own):
                self._pages[page_key(index)] = await self._attach(info["targetId"], page_key(index))
            if not self._pages:
                self._pages[page_key(0)] = await self._create_page(page_key(0))
        except (CdpError, KeyError, TypeError) as exc:
            self._conn = None
            self._pages = {}
            self.context_id = None
            self.state = LiveState.DISCONNECTED
            if conn is not None:
                await conn.close()
            raise ConnectionFailed(f"Cannot attach to browser: {exc}", details={"wsUrl": ws_url}) from exc

        self.endpoint = ws_url
        self.state = LiveState.CONNECTED
        logger.info("live.connect ws=%s context=%s pages=%d", ws_url, context_id, len(self._pages))

    @staticmethod
    def _pick_context(pages: list[dict[str, Any]]) -> str | None:
        """Context of the first existing page; None selects the browser's default context."""
        for info in pages:
            ctx = info.get("browserContextId")
            if isinstance(ctx, str) and ctx:
                return ctx
        return None

    async def _attach(self, target_id: str, key: str) -> PageSession:
        assert self._conn is not None
        attached = await self._conn.send("Target.attachToTarget", {"targetId": target_id, "flatten": True})
        session_id = attached.get("sessionId")
        if not session_id:
            raise CdpError(f"attachToTarget returned no sessionId for {target_id}")
        return PageSession(self._conn, target_id, session_id, key)

    async def _create_page(self, key: str) -> PageSession:
        assert self._conn is not None
        params: dict[str, Any] = {"url": "about:blank"}
        if self.context_id:
            params["browserContextId"] = self.context_id
        created = await self._conn.send("Target.createTarget", params)
        return await self._attach(created["targetId"], key)

    async def get_page(self, key: str | None = None) -> PageSession:
        """Return the page for `key`, creating it on first reference."""
        if not self.connected:
            raise OperationError("live_browser", "get_page", "not connected")
        if key is None:
            key = next(iter(self._pages), page_key(0))
        page = self._pages.get(key)
        if page is not None:
            return page
        async with self._page_lock:
            page = self._pages.get(key)
            if page is None:
                try:
                    page = await self._create_page(key)
                except (CdpError, KeyError) as exc:
                    raise OperationError("live_browser", "get_page", str(exc), details={"page": key}) from exc
                self._pages[key] = page
                logger.info("live.page.create key=%s target=%s", key, page.target_id)
        return page

    async def _run(self, action: str, page_key_: str | None, fn: Callable[[PageSession], Awaitable[Any]]) -> Any:
        page = await self.get_page(page_key_)
        try:
            return await fn(page)
        except CdpError as exc:
            raise OperationError("live_browser", action, exc.message, details={"page": page.key}) from exc

    # ─────────────────────────────────────────────────────────────────────────
    # Operations
    # ─────────────────────────────────────────────────────────────────────────

    async def navigate(self, url: str, *, page: str | None = None) -> dict[str, Any]:
        if not isinstance(url, str) or not url.strip():
            raise OperationError("live_browser", "navigate", "missing url")

        async def op(p: PageSession) -> dict[str, Any]:
            info = await p.navigate(url.strip(), timeout=self.load_timeout)
            return {"url": info.get("url") or url, "title": info.get("title") or ""}

        return await self._run("navigate", page, op)

    async def _locate(self, p: PageSession, action: str, target: str) -> dict[str, Any]:
        box = await p.run_routine("element_center", {"selector": target}) or {}
        if not box.get("found"):
            raise OperationError("live_browser", action, f"element not found: {target}", details={"page": p.key})
        return box

    async def click(self, target: str, *, page: str | None = None) -> dict[str, Any]:
        async def op(p: PageSession) -> dict[str, Any]:
            box = await self._locate(p, "click", target)
            if not box.get("visible"):
                raise OperationError("live_browser", "click", f"element not visible: {target}")
            await p.click(float(box["x"]), float(box["y"]))
            return {"clicked": target, "x": box["x"], "y": box["y"]}

        return await self._run("click", page, op)

    async def _enter_text(
        self,
        action: str,
        target: str,
        text: str,
        *,
        clear: bool,
        submit: bool,
        page: str | None,
    ) -> dict[str, Any]:
        async def op(p: PageSession) -> dict[str, Any]:
            focus = await p.run_routine("focus_element", {"selector": target, "clear": clear}) or {}
            if not focus.get("found"):
                raise OperationError("live_browser", action, f"element not found: {target}", details={"page": p.key})
            await p.type_text(text)
            if submit:
                await p.press_key("Enter")
            return {action: target, "chars": len(text), "submitted": submit}

        return await self._run(action, page, op)

    async def fill(self, target: str, text: str, *, submit: bool = False, page: str | None = None) -> dict[str, Any]:
        """Replace the element's value with `text`."""
        return await self._enter_text("fill", target, text, clear=True, submit=submit, page=page)

    async def type(self, target: str, text: str, *, submit: bool = False, page: str | None = None) -> dict[str, Any]:
        """Append `text` at the element's caret."""
        return await self._enter_text("type", target, text, clear=False, submit=submit, page=page)

    async def evaluate(self, routine: str, args: dict[str, Any] | None = None, *, page: str | None = None) -> Any:
        """Run a catalogue routine. Arbitrary script text is rejected."""
        resolved = get_routine(routine)
        if resolved is None:
            raise OperationError("live_browser", "evaluate", f"unknown routine: {routine!r}")
        return await self._run("evaluate", page, lambda p: p.run_routine(resolved, args))

    async def screenshot(self, *, full_page: bool = False, format: str = "png", page: str | None = None) -> bytes:
        fmt = format if format in {"png", "jpeg", "webp"} else "png"
        return await self._run("screenshot", page, lambda p: p.screenshot(format=fmt, full_page=full_page))

    async def structural_snapshot(self, *, page: str | None = None) -> dict[str, Any]:
        async def op(p: PageSession) -> dict[str, Any]:
            nodes = await p.accessibility_tree()
            info = await p.run_routine("page_info") or {}
            return {"url": info.get("url"), "title": info.get("title"), "tree": build_ax_tree(nodes)}

        return await self._run("snapshot", page, op)

    async def wait_for(
        self,
        *,
        selector: str | None = None,
        text: str | None = None,
        text_gone: str | None = None,
        seconds: float | None = None,
        timeout: float = 10.0,
        page: str | None = None,
    ) -> dict[str, Any]:
        """Wait for a selector to be visible, text to appear/disappear, or a fixed delay."""

        async def op(p: PageSession) -> dict[str, Any]:
            if seconds is not None and not (selector or text or text_gone):
                await asyncio.sleep(max(0.0, float(seconds)))
                return {"waited": float(seconds)}

            deadline = time.monotonic() + timeout
            while True:
                if selector:
                    state = await p.run_routine("selector_state", {"selector": selector}) or {}
                    ok = bool(state.get("visible"))
                elif text:
                    ok = bool((await p.run_routine("text_present", {"text": text}) or {}).get("present"))
                else:
                    ok = not (await p.run_routine("text_present", {"text": text_gone}) or {}).get("present")
                if ok:
                    return {"satisfied": True, "selector": selector, "text": text, "textGone": text_gone}
                if time.monotonic() >= deadline:
                    raise OperationError("live_browser", "wait_for", "condition not met before timeout")
                await asyncio.sleep(0.2)

        return await self._run("wait_for", page, op)

    async def get_content(self, *, page: str | None = None) -> dict[str, Any]:
        return await self._run("get_content", page, lambda p: p.run_routine("page_content"))

    async def close_page(self, key: str) -> bool:
        page = self._pages.pop(key, None)
        if page is None or self._conn is None:
            return False
        try:
            await self._conn.send("Target.closeTarget", {"targetId": page.target_id})
        except CdpError as exc:
            raise OperationError("live_browser", "close_page", exc.message, details={"page": key}) from exc
        logger.info("live.page.close key=%s", key)
        return True

    async def disconnect(self) -> None:
        """Drop the debugging connection. Sends no Browser.close."""
        conn = self._conn
        self._conn = None
        self._pages = {}
        self.context_id = None
        self.state = LiveState.DISCONNECTED
        if conn is not None:
            await conn.close()
            logger.info("live.disconnect ws=%s", self.endpoint)
        self.endpoint = None


def build_ax_tree(nodes: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Fold a flat Accessibility.getFullAXTree node list into a nested tree.

    Ignored nodes are dropped and their children hoisted to the nearest kept
    ancestor.
    """
    by_id = {n.get("nodeId"): n for n in nodes if isinstance(n, dict)}
    if not by_id:
        return None
    root = next((n for n in by_id.values() if not n.get("parentId")), next(iter(by_id.values())))

    def value_of(node: dict[str, Any], key: str) -> Any:
        field = node.get(key)
        return field.get("value") if isinstance(field, dict) else None

    def build(node: dict[str, Any]) -> list[dict[str, Any]]:
        children: list[dict[str, Any]] = []
        for child_id in node.get("childIds") or []:
            child = by_id.get(child_id)
            if child is not None:
                children.extend(build(child))
        if node.get("ignored"):
            return children
        out: dict[str, Any] = {"role": value_of(node, "role") or "generic"}
        name = value_of(node, "name")
        if name:
            out["name"] = name
        if children:
            out["children"] = children
        return [out]

    built = build(root)
    if len(built) == 1:
        return built[0]
    return {"role": "root", "children": built}
