from __future__ import annotations

import asyncio
import base64
from typing import Any

import pytest


class FakeCdp:
    """Scripted browser-level CDP connection."""

    def __init__(
        self,
        targets: list[dict[str, Any]] | None = None,
        fail: set[str] | None = None,
    ) -> None:
        self.targets = targets or []
        self.fail = fail or set()
        self.routine_results: dict[str, Any] = {}
        self.calls: list[tuple[str, dict[str, Any] | None, str | None]] = []
        self.closed = False
        self._created = 0

    @property
    def methods(self) -> list[str]:
        return [c[0] for c in self.calls]

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
        timeout: float | None = None,  # noqa: ARG002
    ) -> dict[str, Any]:
        from mcp_servers.bridge.session_cdp import CdpError

        self.calls.append((method, params, session_id))
        if method in self.fail:
            raise CdpError(f"{method} failed")
        if method == "Target.getTargets":
            return {"targetInfos": self.targets}
        if method == "Target.createTarget":
            self._created += 1
            return {"targetId": f"new-{self._created}"}
        if method == "Target.attachToTarget":
            return {"sessionId": f"s-{(params or {})['targetId']}"}
        if method == "Runtime.evaluate":
            return {"result": {"type": "object", "value": self._routine_value((params or {})["expression"])}}
        if method == "Page.captureScreenshot":
            return {"data": base64.b64encode(b"png-bytes").decode()}
        if method == "Accessibility.getFullAXTree":
            return {
                "nodes": [
                    {"nodeId": "1", "role": {"value": "RootWebArea"}, "name": {"value": "Example"}, "childIds": ["2"]},
                    {"nodeId": "2", "parentId": "1", "ignored": True, "childIds": ["3"]},
                    {"nodeId": "3", "parentId": "2", "role": {"value": "link"}, "name": {"value": "More"}},
                ]
            }
        return {}

    def _routine_value(self, expression: str) -> Any:
        from mcp_servers.bridge.page_routines import ROUTINES

        for name, value in self.routine_results.items():
            if expression.startswith("(" + ROUTINES[name].source + ")"):
                return value
        return {"url": "about:blank", "title": "", "readyState": "complete"}

    async def close(self) -> None:
        self.closed = True


def _handle(fake: FakeCdp):
    from mcp_servers.bridge.live_browser import LiveBrowserHandle

    async def connector(ws_url: str) -> FakeCdp:  # noqa: ARG001
        return fake

    return LiveBrowserHandle(connector=connector)


def test_connect_indexes_existing_pages_of_the_reused_context() -> None:
    fake = FakeCdp(
        targets=[
            {"targetId": "t1", "type": "page", "browserContextId": "c1"},
            {"targetId": "sw", "type": "service_worker", "browserContextId": "c1"},
            {"targetId": "t2", "type": "page", "browserContextId": "c1"},
        ]
    )
    handle = _handle(fake)

    async def run() -> None:
        await handle.connect("ws://x")
        assert handle.connected
        assert handle.context_id == "c1"
        assert handle.page_keys == ["page-0", "page-1"]
        page = await handle.get_page()
        assert page.target_id == "t1"

    asyncio.run(run())
    assert "Target.createTarget" not in fake.methods
    assert "Target.createBrowserContext" not in fake.methods


def test_connect_creates_page_in_default_context_when_browser_has_no_pages() -> None:
    fake = FakeCdp(targets=[{"targetId": "sw", "type": "service_worker"}])
    handle = _handle(fake)
    asyncio.run(handle.connect("ws://x"))

    assert handle.page_keys == ["page-0"]
    assert handle.context_id is None
    created = [c for c in fake.calls if c[0] == "Target.createTarget"]
    assert created[0][1] == {"url": "about:blank"}
    assert "Target.createBrowserContext" not in fake.methods
    assert fake.methods == ["Target.getTargets", "Target.createTarget", "Target.attachToTarget"]


def test_lazy_page_reuses_context_of_existing_pages() -> None:
    fake = FakeCdp(targets=[{"targetId": "t1", "type": "page", "browserContextId": "c1"}])
    handle = _handle(fake)

    async def run() -> None:
        await handle.connect("ws://x")
        await handle.get_page("page-1")

    asyncio.run(run())
    created = [c for c in fake.calls if c[0] == "Target.createTarget"]
    assert created == [("Target.createTarget", {"url": "about:blank", "browserContextId": "c1"}, None)]


def test_connect_failure_leaves_handle_disconnected() -> None:
    from mcp_servers.bridge.errors import ConnectionFailed
    from mcp_servers.bridge.live_browser import LiveState

    fake = FakeCdp(fail={"Target.getTargets"})
    handle = _handle(fake)
    with pytest.raises(ConnectionFailed):
        asyncio.run(handle.connect("ws://x"))
    assert handle.state is LiveState.DISCONNECTED
    assert not handle.connected
    assert fake.closed is True


def test_disconnect_never_closes_the_browser() -> None:
    fake = FakeCdp(targets=[{"targetId": "t1", "type": "page", "browserContextId": "c1"}])
    handle = _handle(fake)

    async def run() -> None:
        await handle.connect("ws://x")
        await handle.disconnect()

    asyncio.run(run())
    assert not handle.connected
    assert handle.page_keys == []
    assert fake.closed is True
    assert "Browser.close" not in fake.methods
    assert "Target.closeTarget" not in fake.methods
    assert "Target.disposeBrowserContext" not in fake.methods


def test_unknown_page_key_creates_page_once() -> None:
    fake = FakeCdp(targets=[{"targetId": "t1", "type": "page", "browserContextId": "c1"}])
    handle = _handle(fake)

    async def run() -> None:
        await handle.connect("ws://x")
        first = await handle.get_page("page-7")
        second = await handle.get_page("page-7")
        assert first is second

    asyncio.run(run())
    assert fake.methods.count("Target.createTarget") == 1
    assert handle.page_keys == ["page-0", "page-7"]


def test_navigate_returns_url_and_title() -> None:
    fake = FakeCdp(targets=[{"targetId": "t1", "type": "page", "browserContextId": "c1"}])
    fake.routine_results["page_info"] = {"url": "https://example.com/", "title": "Example", "readyState": "complete"}
    handle = _handle(fake)

    async def run() -> dict[str, Any]:
        await handle.connect("ws://x")
        return await handle.navigate("https://example.com")

    assert asyncio.run(run()) == {"url": "https://example.com/", "title": "Example"}
    nav = [c for c in fake.calls if c[0] == "Page.navigate"][0]
    assert nav[1] == {"url": "https://example.com"}
    assert nav[2] == "s-t1"


def test_click_dispatches_mouse_at_element_center() -> None:
    fake = FakeCdp(targets=[{"targetId": "t1", "type": "page", "browserContextId": "c1"}])
    fake.routine_results["element_center"] = {"found": True, "visible": True, "x": 10, "y": 20}
    handle = _handle(fake)

    async def run() -> None:
        await handle.connect("ws://x")
        await handle.click("#go")

    asyncio.run(run())
    mouse = [c[1] for c in fake.calls if c[0] == "Input.dispatchMouseEvent"]
    assert [m["type"] for m in mouse] == ["mouseMoved", "mousePressed", "mouseReleased"]
    assert (mouse[1]["x"], mouse[1]["y"]) == (10.0, 20.0)


def test_failed_operation_raises_and_handle_stays_usable() -> None:
    from mcp_servers.bridge.errors import OperationError

    fake = FakeCdp(targets=[{"targetId": "t1", "type": "page", "browserContextId": "c1"}])
    fake.routine_results["element_center"] = {"found": False}
    handle = _handle(fake)

    async def run() -> None:
        await handle.connect("ws://x")
        with pytest.raises(OperationError, match="element not found"):
            await handle.click("#missing")
        assert handle.connected
        shot = await handle.screenshot()
        assert shot == b"png-bytes"

    asyncio.run(run())


def test_fill_focuses_clears_inserts_and_submits() -> None:
    fake = FakeCdp(targets=[{"targetId": "t1", "type": "page", "browserContextId": "c1"}])
    fake.routine_results["focus_element"] = {"found": True, "focused": True}
    handle = _handle(fake)

    async def run() -> dict[str, Any]:
        await handle.connect("ws://x")
        return await handle.fill("#q", "hello", submit=True)

    out = asyncio.run(run())
    assert out["submitted"] is True
    focus = [c for c in fake.calls if c[0] == "Runtime.evaluate" and '"clear": true' in c[1]["expression"]]
    assert focus
    assert ("Input.insertText", {"text": "hello"}, "s-t1") in fake.calls
    keys = [c[1]["key"] for c in fake.calls if c[0] == "Input.dispatchKeyEvent"]
    assert keys == ["Enter", "Enter"]


def test_evaluate_only_runs_catalogue_routines() -> None:
    from mcp_servers.bridge.errors import OperationError

    fake = FakeCdp(targets=[{"targetId": "t1", "type": "page", "browserContextId": "c1"}])
    fake.routine_results["text_present"] = {"present": True}
    handle = _handle(fake)

    async def run() -> None:
        await handle.connect("ws://x")
        assert await handle.evaluate("text_present", {"text": "hi"}) == {"present": True}
        with pytest.raises(OperationError, match="unknown routine"):
            await handle.evaluate("() => document.cookie")

    asyncio.run(run())


def test_structural_snapshot_folds_ignored_nodes() -> None:
    fake = FakeCdp(targets=[{"targetId": "t1", "type": "page", "browserContextId": "c1"}])
    handle = _handle(fake)

    async def run() -> dict[str, Any]:
        await handle.connect("ws://x")
        return await handle.structural_snapshot()

    snap = asyncio.run(run())
    assert snap["tree"] == {
        "role": "RootWebArea",
        "name": "Example",
        "children": [{"role": "link", "name": "More"}],
    }


def test_wait_for_selector_polls_until_visible() -> None:
    fake = FakeCdp(targets=[{"targetId": "t1", "type": "page", "browserContextId": "c1"}])
    fake.routine_results["selector_state"] = {"present": True, "visible": True}
    handle = _handle(fake)

    async def run() -> dict[str, Any]:
        await handle.connect("ws://x")
        return await handle.wait_for(selector="#ready", timeout=1.0)

    assert asyncio.run(run())["satisfied"] is True


def test_operations_require_connection() -> None:
    from mcp_servers.bridge.errors import OperationError
    from mcp_servers.bridge.live_browser import LiveBrowserHandle

    with pytest.raises(OperationError, match="not connected"):
        asyncio.run(LiveBrowserHandle().navigate("https://example.com"))


def test_get_content_and_close_page() -> None:
    fake = FakeCdp(targets=[{"targetId": "t1", "type": "page", "browserContextId": "c1"}])
    fake.routine_results["page_content"] = {"url": "https://a.test/", "title": "A", "html": "<html></html>"}
    handle = _handle(fake)

    async def run() -> None:
        await handle.connect("ws://x")
        content = await handle.get_content()
        assert content["html"] == "<html></html>"
        assert await handle.close_page("page-0") is True
        assert await handle.close_page("page-0") is False
        assert handle.page_keys == []

    asyncio.run(run())
    assert ("Target.closeTarget", {"targetId": "t1"}, None) in fake.calls
    assert "Browser.close" not in fake.methods
