from __future__ import annotations

import pytest


def test_defaults_match_documented_values() -> None:
    from mcp_servers.bridge.config import BridgeConfig

    config = BridgeConfig()
    assert config.port == 8765
    assert config.cdp_ports == [9222, 9223, 9224, 9229]
    assert config.probe_timeout == 0.5
    assert config.tool_server_command == ["npx", "-y", "@playwright/mcp@latest"]
    assert config.max_iterations == 10
    assert config.candidate_endpoints() == [f"http://127.0.0.1:{p}" for p in (9222, 9223, 9224, 9229)]


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    from mcp_servers.bridge.config import BridgeConfig

    monkeypatch.setenv("BRIDGE_PORT", "9000")
    monkeypatch.setenv("BRIDGE_DISABLE_CDP", "true")
    monkeypatch.setenv("BRIDGE_CDP_PORTS", "9333, junk, 9333, 9444")
    monkeypatch.setenv("BRIDGE_TOOL_SERVER", "node server.js --headless")
    monkeypatch.setenv("GEMINI_API_KEY", "  secret-key  ")
    monkeypatch.setenv("BRIDGE_SESSION_TTL", "120")

    config = BridgeConfig.from_env()
    assert config.port == 9000
    assert config.cdp_disabled is True
    assert config.cdp_ports == [9333, 9444]
    assert config.tool_server_command == ["node", "server.js", "--headless"]
    assert config.planner_api_key == "secret-key"
    assert config.session_ttl == 120.0


def test_probe_timeout_is_clamped_and_bad_numbers_fall_back(monkeypatch: pytest.MonkeyPatch) -> None:
    from mcp_servers.bridge.config import BridgeConfig

    monkeypatch.setenv("BRIDGE_PROBE_TIMEOUT", "5")
    monkeypatch.setenv("BRIDGE_MAX_ITERATIONS", "many")
    monkeypatch.setenv("BRIDGE_CALL_TIMEOUT", "-3")

    config = BridgeConfig.from_env()
    assert config.probe_timeout == 0.5
    assert config.max_iterations == 10
    assert config.call_timeout == 0.0


def test_explicit_endpoint_is_the_only_candidate(monkeypatch: pytest.MonkeyPatch) -> None:
    from mcp_servers.bridge.config import BridgeConfig

    monkeypatch.setenv("BRIDGE_CDP_ENDPOINT", "http://10.0.0.5:9222/")
    config = BridgeConfig.from_env()
    assert config.candidate_endpoints() == ["http://10.0.0.5:9222"]
