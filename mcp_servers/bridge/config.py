from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field

DEFAULT_CDP_PORTS: list[int] = [9222, 9223, 9224, 9229]
DEFAULT_TOOL_SERVER_COMMAND = "npx -y @playwright/mcp@latest"
DEFAULT_PLANNER_MODEL = "gemini-2.5-flash"
DEFAULT_PLANNER_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

# Probes must stay short: detection runs on every /connect.
MAX_PROBE_TIMEOUT = 0.5


def _env_flag(name: str) -> bool:
    return (os.environ.get(name) or "").strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def parse_ports(raw: str | None) -> list[int]:
    """Parse a comma-separated port list, keeping order and dropping junk."""
    ports: list[int] = []
    for chunk in (raw or "").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            port = int(chunk)
        except ValueError:
            continue
        if 0 < port < 65536 and port not in ports:
            ports.append(port)
    return ports


@dataclass
class BridgeConfig:
    host: str = "127.0.0.1"
    port: int = 8765
    cdp_endpoint: str | None = None
    cdp_disabled: bool = False
    cdp_ports: list[int] = field(default_factory=lambda: list(DEFAULT_CDP_PORTS))
    probe_timeout: float = MAX_PROBE_TIMEOUT
    tool_server_command: list[str] = field(default_factory=lambda: shlex.split(DEFAULT_TOOL_SERVER_COMMAND))
    call_timeout: float = 60.0
    planner_api_key: str | None = None
    planner_model: str = DEFAULT_PLANNER_MODEL
    planner_base_url: str = DEFAULT_PLANNER_BASE_URL
    planner_timeout: float = 60.0
    max_iterations: int = 10
    session_ttl: float = 0.0

    def __post_init__(self) -> None:
        self.probe_timeout = max(0.05, min(float(self.probe_timeout), MAX_PROBE_TIMEOUT))
        self.call_timeout = max(0.0, float(self.call_timeout))
        self.max_iterations = max(1, int(self.max_iterations))
        if self.cdp_endpoint is not None:
            self.cdp_endpoint = self.cdp_endpoint.strip().rstrip("/") or None

    @classmethod
    def from_env(cls) -> BridgeConfig:
        ports = parse_ports(os.environ.get("BRIDGE_CDP_PORTS")) or list(DEFAULT_CDP_PORTS)
        command_raw = (os.environ.get("BRIDGE_TOOL_SERVER") or "").strip() or DEFAULT_TOOL_SERVER_COMMAND
        return cls(
            host=(os.environ.get("BRIDGE_HOST") or "127.0.0.1").strip(),
            port=_env_int("BRIDGE_PORT", 8765),
            cdp_endpoint=os.environ.get("BRIDGE_CDP_ENDPOINT") or None,
            cdp_disabled=_env_flag("BRIDGE_DISABLE_CDP"),
            cdp_ports=ports,
            probe_timeout=_env_float("BRIDGE_PROBE_TIMEOUT", MAX_PROBE_TIMEOUT),
            tool_server_command=shlex.split(command_raw),
            call_timeout=_env_float("BRIDGE_CALL_TIMEOUT", 60.0),
            planner_api_key=(os.environ.get("GEMINI_API_KEY") or "").strip() or None,
            planner_model=(os.environ.get("GEMINI_MODEL") or DEFAULT_PLANNER_MODEL).strip(),
            planner_base_url=(os.environ.get("GEMINI_BASE_URL") or DEFAULT_PLANNER_BASE_URL).strip().rstrip("/"),
            planner_timeout=_env_float("GEMINI_TIMEOUT", 60.0),
            max_iterations=_env_int("BRIDGE_MAX_ITERATIONS", 10),
            session_ttl=_env_float("BRIDGE_SESSION_TTL", 0.0),
        )

    def candidate_endpoints(self) -> list[str]:
        """Endpoints the detector should probe, in order."""
        if self.cdp_endpoint:
            return [self.cdp_endpoint]
        return [f"http://127.0.0.1:{port}" for port in self.cdp_ports]
