"""
Bridge HTTP server entry point.

Loads `.env` (without overriding the real environment), configures logging
and serves the aiohttp application until interrupted.
"""

from __future__ import annotations

import logging
import os

from aiohttp import web
from dotenv import load_dotenv

from .config import BridgeConfig
from .redaction import mask_secret
from .server.routes import create_app
from .state import BridgeState

logger = logging.getLogger("mcp.bridge")


def configure_logging() -> None:
    level_name = (os.environ.get("BRIDGE_LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )


def build_app(config: BridgeConfig | None = None) -> web.Application:
    config = config or BridgeConfig.from_env()
    return create_app(BridgeState.build(config))


def main() -> None:
    """Main entry point for the bridge server."""
    load_dotenv()
    configure_logging()
    config = BridgeConfig.from_env()
    logger.info(
        "bridge.start host=%s port=%d cdp=%s ports=%s tool_server=%s planner_key=%s",
        config.host,
        config.port,
        "disabled" if config.cdp_disabled else (config.cdp_endpoint or "detect"),
        ",".join(str(p) for p in config.cdp_ports),
        " ".join(config.tool_server_command),
        mask_secret(config.planner_api_key),
    )
    web.run_app(build_app(config), host=config.host, port=config.port, print=None)


if __name__ == "__main__":
    main()
