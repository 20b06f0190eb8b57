from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

FAKE_SERVER = Path(__file__).with_name("fake_tool_server.py")


def _client():
    from mcp_servers.bridge.tool_server import ToolServerClient

    return ToolServerClient([sys.executable, str(FAKE_SERVER)], init_timeout=20.0)


def test_handshake_then_list_and_call_tools() -> None:
    async def run() -> None:
        client = _client()
        await client.start()
        try:
            assert client.connected
            assert client.server_info["name"] == "fake-tools"

            tools = await client.list_tools()
            assert [t.name for t in tools] == ["browser_navigate", "browser_evaluate", "echo"]
            assert tools[0].parameters["url"]["type"] == "string"

            result = await client.call_tool("browser_navigate", {"url": "https://example.com"})
            assert result["isError"] is False
            assert result["content"][0]["text"] == "navigated https://example.com"
        finally:
            await client.stop()
        assert not client.connected

    asyncio.run(run())


def test_start_is_idempotent() -> None:
    async def run() -> None:
        client = _client()
        await client.start()
        try:
            pid = client.pid
            await client.start()
            assert client.pid == pid
        finally:
            await client.stop()

    asyncio.run(run())


def test_tool_error_and_protocol_error_are_distinct() -> None:
    from mcp_servers.bridge.errors import PeerProtocolError, ToolExecutionError

    async def run() -> None:
        client = _client()
        await client.start()
        try:
            with pytest.raises(ToolExecutionError) as excinfo:
                await client.call_tool("fail")
            assert excinfo.value.payload["isError"] is True
            assert "tool blew up" in excinfo.value.message

            with pytest.raises(PeerProtocolError, match="boom"):
                await client.call_tool("boom")

            # The channel is still healthy after both failures.
            echoed = await client.call_tool("echo", {"a": 1})
            assert echoed["content"][0]["text"] == '{"a": 1}'
        finally:
            await client.stop()

    asyncio.run(run())


def test_calls_fail_fast_when_not_connected() -> None:
    from mcp_servers.bridge.errors import PeerUnavailable

    with pytest.raises(PeerUnavailable):
        asyncio.run(_client().call_tool("echo"))


def test_process_exit_fails_pending_call_and_allows_restart() -> None:
    from mcp_servers.bridge.errors import PeerUnavailable

    async def run() -> None:
        client = _client()
        await client.start()
        try:
            first_pid = client.pid
            with pytest.raises(PeerUnavailable):
                await client.call_tool("crash")
            for _ in range(50):
                if not client.connected:
                    break
                await asyncio.sleep(0.05)
            assert not client.connected

            await client.start()
            assert client.connected
            assert client.pid != first_pid
        finally:
            await client.stop()

    asyncio.run(run())


def test_call_timeout_is_enforced() -> None:
    from mcp_servers.bridge.errors import CallTimeout

    async def run() -> None:
        client = _client()
        await client.start()
        try:
            with pytest.raises(CallTimeout):
                await client.call_tool("sleep", {"seconds": 2}, timeout=0.2)
        finally:
            await client.stop()

    asyncio.run(run())


def test_missing_executable_is_peer_unavailable() -> None:
    from mcp_servers.bridge.errors import PeerUnavailable
    from mcp_servers.bridge.tool_server import ToolServerClient

    client = ToolServerClient(["/nonexistent/tool-server-binary"])
    with pytest.raises(PeerUnavailable, match="Cannot start"):
        asyncio.run(client.start())
