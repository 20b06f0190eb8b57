from __future__ import annotations

import asyncio
from typing import Any


class FakeDispatcher:
    def __init__(self, value: Any = None, *, error: Exception | None = None) -> None:
        self.value = value
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def run_routine(self, routine: str, args: dict[str, Any] | None = None, *, evaluate_tool: str | None = None, script_arg: str = "function") -> Any:
        self.calls.append({"routine": routine, "args": args, "evaluate_tool": evaluate_tool, "script_arg": script_arg})
        if self.error is not None:
            raise self.error
        return self.value


def _catalog():
    from mcp_servers.bridge.server.types import ToolDescriptor

    return [
        ToolDescriptor(name="evaluate", input_schema={"properties": {"expression": {"type": "string"}}}),
        ToolDescriptor(name="browser_evaluate", input_schema={"properties": {"element": {}, "function": {}}}),
        ToolDescriptor(name="browser_click"),
    ]


def test_needs_resolution_only_without_concrete_target() -> None:
    from mcp_servers.bridge.targeting import needs_resolution

    assert needs_resolution({"element_hint": " search box "}) == "search box"
    assert needs_resolution({"element": "Submit", "ref": "e12"}) is None
    assert needs_resolution({"placeholder_hint": "Email", "selector": "  "}) == "Email"
    assert needs_resolution({"text": "hello"}) is None


def test_find_evaluate_tool_prefers_browser_evaluate() -> None:
    from mcp_servers.bridge.server.types import ToolDescriptor
    from mcp_servers.bridge.targeting import find_evaluate_tool

    assert find_evaluate_tool(_catalog()) == ("browser_evaluate", "function")
    only_plain = [ToolDescriptor(name="evaluate", input_schema={"properties": {"expression": {}}})]
    assert find_evaluate_tool(only_plain) == ("evaluate", "expression")
    assert find_evaluate_tool([ToolDescriptor(name="browser_click")]) is None


def test_target_kind() -> None:
    from mcp_servers.bridge.targeting import target_kind

    assert target_kind("browser_click") == "clickable"
    assert target_kind("browser_type") == "input"


def test_apply_resolution_merges_selector_into_ref() -> None:
    from mcp_servers.bridge.targeting import apply_resolution

    dispatcher = FakeDispatcher({"found": True, "selector": "#q", "via": "placeholder"})
    args = {"element_hint": "search", "text": "agentic ai"}
    merged = asyncio.run(apply_resolution(dispatcher, "browser_type", args, _catalog()))

    assert merged == {"element_hint": "search", "text": "agentic ai", "ref": "#q"}
    assert args == {"element_hint": "search", "text": "agentic ai"}
    assert dispatcher.calls == [
        {
            "routine": "resolve_target",
            "args": {"hint": "search", "kind": "input"},
            "evaluate_tool": "browser_evaluate",
            "script_arg": "function",
        }
    ]


def test_apply_resolution_skips_when_target_present() -> None:
    from mcp_servers.bridge.targeting import apply_resolution

    dispatcher = FakeDispatcher({"found": True, "selector": "#other"})
    args = {"element": "Submit", "ref": "e5"}
    assert asyncio.run(apply_resolution(dispatcher, "browser_click", args, _catalog())) == args
    assert dispatcher.calls == []


def test_apply_resolution_miss_and_error_keep_original_args() -> None:
    from mcp_servers.bridge.targeting import apply_resolution

    args = {"element_hint": "nowhere"}
    miss = FakeDispatcher({"found": False})
    assert asyncio.run(apply_resolution(miss, "browser_click", args, _catalog())) == args

    broken = FakeDispatcher(error=RuntimeError("evaluate exploded"))
    assert asyncio.run(apply_resolution(broken, "browser_click", args, _catalog())) == args


def test_apply_resolution_without_evaluate_tool_still_asks_dispatcher() -> None:
    from mcp_servers.bridge.targeting import apply_resolution

    dispatcher = FakeDispatcher({"found": True, "selector": "input[name='q']"})
    merged = asyncio.run(apply_resolution(dispatcher, "browser_type", {"element_hint": "q"}, []))
    assert merged["ref"] == "input[name='q']"
    assert dispatcher.calls[0]["evaluate_tool"] is None
