from __future__ import annotations

import asyncio
from typing import Any

import pytest
from aiohttp import test_utils, web


def test_parse_action_call_tool() -> None:
    from mcp_servers.bridge.planner import ActionKind, parse_action

    action = parse_action('{"action": "call_tool", "tool": "browser_navigate", "args": {"url": "https://a.test"}}')
    assert action.kind is ActionKind.CALL_TOOL
    assert action.tool == "browser_navigate"
    assert action.args == {"url": "https://a.test"}


def test_parse_action_finds_json_inside_prose() -> None:
    from mcp_servers.bridge.planner import ActionKind, parse_action

    text = 'Sure! Here is my plan:\n```json\n{"action": "done", "message": "All set"}\n```'
    action = parse_action(text)
    assert action.kind is ActionKind.DONE
    assert action.message == "All set"


def test_parse_action_malformed_text_becomes_respond() -> None:
    from mcp_servers.bridge.planner import ActionKind, parse_action

    action = parse_action("I think the page is already open {not json")
    assert action.kind is ActionKind.RESPOND
    assert action.message == "I think the page is already open {not json"


def test_parse_action_without_tag_is_respond() -> None:
    from mcp_servers.bridge.planner import ActionKind, parse_action

    action = parse_action('{"message": "hello"}')
    assert action.kind is ActionKind.RESPOND
    assert action.message == "hello"


def test_parse_action_unknown_tag_and_toolless_call() -> None:
    from mcp_servers.bridge.planner import ActionKind, parse_action

    unknown = parse_action('{"action": "dance"}')
    assert unknown.kind is ActionKind.UNKNOWN
    assert unknown.to_dict()["action"] == "dance"

    toolless = parse_action('{"action": "call_tool", "args": {}}')
    assert toolless.kind is ActionKind.UNKNOWN


def test_parse_action_chain_tools_keeps_valid_entries() -> None:
    from mcp_servers.bridge.planner import ActionKind, parse_action

    action = parse_action('{"action": "chain_tools", "tools": [{"tool": "a", "args": {}}, {"args": {}}, "x"]}')
    assert action.kind is ActionKind.CHAIN_TOOLS
    assert action.tools == [{"tool": "a", "args": {}}]


def test_system_prompt_lists_tools_and_routines() -> None:
    from mcp_servers.bridge.planner import build_system_prompt
    from mcp_servers.bridge.server.types import ToolDescriptor

    tools = [
        ToolDescriptor(
            name="browser_navigate",
            description="Open a URL",
            input_schema={"properties": {"url": {"type": "string", "description": "Target"}}},
        )
    ]
    prompt = build_system_prompt(tools)
    assert "- browser_navigate: Open a URL" in prompt
    assert "  - url: string (Target)" in prompt
    assert "- resolve_target" in prompt
    assert "No tools available." in build_system_prompt([])


def test_session_prompt_carries_previous_result_only_after_a_step() -> None:
    from mcp_servers.bridge.planner import build_session_prompt

    first = build_session_prompt("open example", None, has_result=False)
    assert "open example" in first
    assert "Previous tool result" not in first

    later = build_session_prompt("open example", {"ok": True}, has_result=True)
    assert 'Previous tool result: {"ok": true}' in later


def _planner_app(status: int, payload: Any, seen: list[dict[str, Any]]) -> web.Application:
    async def generate(request: web.Request) -> web.Response:
        seen.append({"path": request.path, "key": request.query.get("key"), "body": await request.json()})
        return web.json_response(payload, status=status)

    app = web.Application()
    app.router.add_post("/v1beta/models/{model}", generate)
    return app


def _run_against(status: int, payload: Any) -> tuple[Any, list[dict[str, Any]]]:
    from mcp_servers.bridge.planner import GeminiPlanner

    seen: list[dict[str, Any]] = []

    async def run() -> Any:
        server = test_utils.TestServer(_planner_app(status, payload, seen), host="127.0.0.1")
        await server.start_server()
        planner = GeminiPlanner("k-123", model="test-model", base_url=str(server.make_url("/v1beta")))
        try:
            return await planner.complete("go", system="SYSTEM", history=[{"role": "user", "content": "hi"}])
        except Exception as exc:  # noqa: BLE001
            return exc
        finally:
            await planner.close()
            await server.close()

    return asyncio.run(run()), seen


def test_gemini_planner_posts_generate_content() -> None:
    reply, seen = _run_against(200, {"candidates": [{"content": {"parts": [{"text": '  {"action":"done"}  '}]}}]})

    assert reply == '{"action":"done"}'
    assert seen[0]["path"] == "/v1beta/models/test-model:generateContent"
    assert seen[0]["key"] == "k-123"
    body = seen[0]["body"]
    assert body["generationConfig"]["maxOutputTokens"] == 2048
    text = body["contents"][0]["parts"][0]["text"]
    assert text.startswith("SYSTEM")
    assert "user: hi" in text
    assert text.endswith("User: go\n\nAssistant:")


def test_gemini_planner_http_error_is_planning_service_error() -> None:
    from mcp_servers.bridge.errors import PlanningServiceError

    exc, _ = _run_against(404, {"error": {"message": "model not found"}})
    assert isinstance(exc, PlanningServiceError)
    assert "404" in exc.message
    assert "(model: test-model)" in exc.message


def test_gemini_planner_malformed_body_is_planning_service_error() -> None:
    from mcp_servers.bridge.errors import PlanningServiceError

    exc, _ = _run_against(200, {"candidates": []})
    assert isinstance(exc, PlanningServiceError)
    assert "Invalid response" in exc.message


def test_gemini_planner_requires_api_key() -> None:
    from mcp_servers.bridge.errors import PlanningServiceError
    from mcp_servers.bridge.planner import GeminiPlanner

    planner = GeminiPlanner(None)
    assert planner.configured is False
    with pytest.raises(PlanningServiceError):
        asyncio.run(planner.complete("go", system="s", history=[]))
    planner.update_api_key("  new-key ")
    assert planner.configured is True
