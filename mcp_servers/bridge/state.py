"""Owned bridge state: backends, dispatcher, sessions and planner in one object."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from .config import BridgeConfig
from .controller import TaskSessionController
from .detector import DetectionResult, detect
from .errors import BackendUnavailable, BridgeError, ConnectionFailed
from .live_browser import LiveBrowserHandle
from .planner import GeminiPlanner, Planner
from .server.dispatch import ToolDispatcher
from .session_store import SessionStore
from .tool_server import ToolServerClient

logger = logging.getLogger("mcp.bridge.state")


@dataclass
class BridgeState:
    config: BridgeConfig
    client: ToolServerClient
    live: LiveBrowserHandle
    dispatcher: ToolDispatcher
    store: SessionStore
    planner: Planner
    controller: TaskSessionController
    detection: DetectionResult | None = None
    _connect_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @classmethod
    def build(
        cls,
        config: BridgeConfig,
        *,
        client: ToolServerClient | None = None,
        live: LiveBrowserHandle | None = None,
        planner: Planner | None = None,
    ) -> BridgeState:
        client = client or ToolServerClient(config.tool_server_command)
        live = live or LiveBrowserHandle()
        planner = planner or GeminiPlanner(
            config.planner_api_key,
            model=config.planner_model,
            base_url=config.planner_base_url,
            timeout=config.planner_timeout,
        )
        dispatcher = ToolDispatcher(client, live, call_timeout=config.call_timeout)
        controller = TaskSessionController(dispatcher, planner, max_iterations=config.max_iterations)
        return cls(
            config=config,
            client=client,
            live=live,
            dispatcher=dispatcher,
            store=SessionStore(ttl=config.session_ttl),
            planner=planner,
            controller=controller,
        )

    @property
    def connected(self) -> bool:
        return self.client.connected or self.live.connected

    def backends(self) -> dict[str, Any]:
        return {
            "cdp": {
                "connected": self.live.connected,
                "endpoint": self.detection.endpoint if self.detection else None,
                "pages": self.live.page_keys,
            },
            "toolServer": {"connected": self.client.connected, "pid": self.client.pid},
        }

    async def connect(self) -> dict[str, Any]:
        """Bring both backends up. Idempotent; succeeds when at least one backend is up."""
        async with self._connect_lock:
            errors: dict[str, str] = {}

            if not self.client.connected:
                try:
                    await self.client.start()
                    self.controller.reset_catalog()
                except BridgeError as exc:
                    logger.warning("state.connect.tool_server_failed err=%s", exc.message)
                    errors["toolServer"] = exc.message

            if not self.live.connected and not self.config.cdp_disabled:
                self.detection = await detect(self.config)
                if self.detection.available and self.detection.ws_url:
                    try:
                        await self.live.connect(self.detection.ws_url)
                    except ConnectionFailed as exc:
                        logger.warning("state.connect.cdp_failed err=%s (continuing subprocess-only)", exc.message)
                        errors["cdp"] = exc.message
                elif self.detection.available:
                    errors["cdp"] = "endpoint did not report webSocketDebuggerUrl"

            if not self.connected:
                raise BackendUnavailable("No backend could be connected", details=errors)
            return {"connected": True, "backends": self.backends(), "errors": errors}

    async def ensure_connected(self) -> None:
        """Lazy connect for request handlers; a no-op while either backend is up.

        Respawning a dead tool-server next to a live browser is left to an
        explicit POST /connect.
        """
        if not self.connected:
            await self.connect()

    async def disconnect(self) -> None:
        """Release both backends. The live browser keeps running."""
        async with self._connect_lock:
            await self.live.disconnect()
            await self.client.stop()
            self.controller.reset_catalog()
            logger.info("state.disconnect")

    async def close(self) -> None:
        await self.controller.shutdown()
        await self.disconnect()
        close = getattr(self.planner, "close", None)
        if close is not None:
            await close()
