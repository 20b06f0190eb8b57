"""
HTTP boundary (aiohttp).

Every response is JSON with a `success` flag. BridgeErrors are rendered by the
error middleware; handlers only deal with the happy path and validation.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiohttp import web

from ..errors import BridgeError
from ..redaction import safe_stringify
from ..session_store import SessionStatus
from ..state import BridgeState

logger = logging.getLogger("mcp.bridge.http")
client_logger = logging.getLogger("mcp.bridge.client")

STATE_KEY = web.AppKey("bridge_state", BridgeState)
STARTUP_TASK_KEY = web.AppKey("bridge_startup_connect", asyncio.Task)

_CLIENT_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class RequestError(BridgeError):
    code = "bad_request"
    status = 400


class SessionNotFound(BridgeError):
    code = "not_found"
    status = 404


@web.middleware
async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except BridgeError as exc:
        status = getattr(exc, "status", 500)
        logger.warning("http.error path=%s status=%d err=%s", request.path, status, exc.message)
        return web.json_response({"success": False, **exc.to_dict()}, status=status)
    except Exception as exc:  # noqa: BLE001
        logger.exception("http.unhandled path=%s", request.path)
        return web.json_response({"success": False, "error": str(exc) or type(exc).__name__}, status=500)


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError as exc:
        raise RequestError("Request body must be JSON") from exc
    if not isinstance(body, dict):
        raise RequestError("Request body must be a JSON object")
    return body


def _state(request: web.Request) -> BridgeState:
    return request.app[STATE_KEY]


def _require_planner(state: BridgeState) -> None:
    if not state.planner.configured:
        raise RequestError("Planning service is not configured; set GEMINI_API_KEY or POST /planner/api-key")


async def _ensure_connected_for_session(state: BridgeState) -> None:
    try:
        await state.ensure_connected()
    except BridgeError as exc:
        # The planner may still answer without tools; tool calls will report the outage.
        logger.warning("http.session.connect_failed err=%s", exc.message)


# ─────────────────────────────────────────────────────────────────────────────
# Handlers
# ─────────────────────────────────────────────────────────────────────────────


async def health(request: web.Request) -> web.Response:
    state = _state(request)
    return web.json_response(
        {
            "success": True,
            "status": "ok",
            "connected": state.connected,
            "backends": state.backends(),
            "planner": state.planner.configured,
        }
    )


async def ingest_log(request: web.Request) -> web.Response:
    body = await _json_body(request)
    level = _CLIENT_LEVELS.get(str(body.get("level") or "info").lower(), logging.INFO)
    message = safe_stringify(body.get("message") or "")
    meta = body.get("meta")
    if meta is not None:
        client_logger.log(level, "%s meta=%s", message, safe_stringify(meta))
    else:
        client_logger.log(level, "%s", message)
    return web.json_response({"success": True})


async def connect(request: web.Request) -> web.Response:
    outcome = await _state(request).connect()
    return web.json_response({"success": True, **outcome})


async def list_tools(request: web.Request) -> web.Response:
    state = _state(request)
    await state.ensure_connected()
    tools = await state.dispatcher.list_tools()
    return web.json_response({"success": True, "tools": [t.to_dict() for t in tools]})


async def call_tool(request: web.Request) -> web.Response:
    state = _state(request)
    name = request.match_info["name"]
    body = await _json_body(request)
    args = body.get("args", body.get("arguments")) or {}
    if not isinstance(args, dict):
        raise RequestError("args must be an object")
    await state.ensure_connected()
    result = await state.dispatcher.call_tool(name, args)
    return web.json_response({"success": True, "tool": name, "result": result})


async def disconnect(request: web.Request) -> web.Response:
    await _state(request).disconnect()
    return web.json_response({"success": True, "connected": False})


def _start_session(
    state: BridgeState,
    task: str,
    context: dict[str, Any],
    options: dict[str, Any],
):
    max_iterations = options.get("maxIterations")
    if max_iterations is not None:
        try:
            max_iterations = int(max_iterations)
        except (TypeError, ValueError) as exc:
            raise RequestError("options.maxIterations must be an integer") from exc
        if max_iterations < 1:
            raise RequestError("options.maxIterations must be >= 1")
    session = state.store.create(task, context)
    return session, max_iterations


async def create_session(request: web.Request) -> web.Response:
    state = _state(request)
    body = await _json_body(request)
    task = body.get("task") or body.get("message")
    if not isinstance(task, str) or not task.strip():
        raise RequestError("task is required")
    context = body.get("context") if isinstance(body.get("context"), dict) else {}
    options = body.get("options") if isinstance(body.get("options"), dict) else {}
    _require_planner(state)

    session, max_iterations = _start_session(state, task.strip(), context, options)
    await _ensure_connected_for_session(state)

    if options.get("background") or options.get("autoSession") or body.get("autoSession"):
        state.controller.spawn(session, max_iterations=max_iterations)
        return web.json_response({"success": True, "sessionId": session.id}, status=202)

    await state.controller.run_session(session, max_iterations=max_iterations)
    return web.json_response(
        {"success": session.status is SessionStatus.FINISHED, "sessionId": session.id, "session": session.to_dict()}
    )


async def get_session(request: web.Request) -> web.Response:
    session_id = request.match_info["session_id"]
    session = _state(request).store.get(session_id)
    if session is None:
        raise SessionNotFound(f"Session not found: {session_id}")
    return web.json_response({"success": True, "session": session.to_dict()})


async def chat(request: web.Request) -> web.Response:
    state = _state(request)
    body = await _json_body(request)
    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        raise RequestError("message is required")
    context = body.get("context") if isinstance(body.get("context"), dict) else {}
    options = body.get("options") if isinstance(body.get("options"), dict) else {}
    _require_planner(state)
    await _ensure_connected_for_session(state)

    if body.get("autoSession") or options.get("runSession"):
        session, max_iterations = _start_session(state, message.strip(), context, options)
        state.controller.spawn(session, max_iterations=max_iterations)
        return web.json_response({"success": True, "autoSession": True, "sessionId": session.id}, status=202)

    reply = await state.controller.process_message(message.strip(), context)
    return web.json_response({"success": True, **reply})


async def clear_chat(request: web.Request) -> web.Response:
    _state(request).controller.clear_history()
    return web.json_response({"success": True})


async def update_api_key(request: web.Request) -> web.Response:
    body = await _json_body(request)
    api_key = body.get("apiKey")
    if not isinstance(api_key, str) or not api_key.strip():
        raise RequestError("apiKey is required")
    state = _state(request)
    state.planner.update_api_key(api_key.strip())
    return web.json_response({"success": True, "planner": state.planner.configured})


# ─────────────────────────────────────────────────────────────────────────────
# Application
# ─────────────────────────────────────────────────────────────────────────────


async def _connect_in_background(state: BridgeState) -> None:
    try:
        outcome = await state.connect()
        logger.info("http.startup.connected backends=%s", safe_stringify(outcome.get("backends"), 500))
    except BridgeError as exc:
        logger.warning("http.startup.connect_failed err=%s", exc.message)


async def _on_startup(app: web.Application) -> None:
    app[STARTUP_TASK_KEY] = asyncio.create_task(_connect_in_background(app[STATE_KEY]))


async def _on_cleanup(app: web.Application) -> None:
    task = app.get(STARTUP_TASK_KEY)
    if task is not None and not task.done():
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
    await app[STATE_KEY].close()


def create_app(state: BridgeState, *, connect_on_startup: bool = True) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[STATE_KEY] = state
    app.router.add_get("/health", health)
    app.router.add_post("/logs", ingest_log)
    app.router.add_post("/connect", connect)
    app.router.add_get("/tools", list_tools)
    app.router.add_post("/tools/{name}", call_tool)
    app.router.add_post("/disconnect", disconnect)
    app.router.add_post("/session", create_session)
    app.router.add_get("/session/{session_id}", get_session)
    app.router.add_post("/chat", chat)
    app.router.add_post("/chat/clear", clear_chat)
    app.router.add_post("/planner/api-key", update_api_key)
    if connect_on_startup:
        app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    return app
