"""Task-session controller: the plan -> act -> observe loop.

Each session asks the planner for one action, executes it through the
dispatcher, records a Step, and feeds the result back, until the planner says
it is done or a stop rule fires (repeated action, iteration cap, planner
failure, unknown action).
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Callable
from typing import Any

from .errors import BridgeError, IterationBudgetExhausted, LoopDetected, PlanningServiceError
from .planner import ActionKind, Planner, PlannedAction, build_session_prompt, build_system_prompt, parse_action
from .redaction import redact_tool_arguments, safe_stringify
from .server.dispatch import ToolDispatcher
from .server.types import ToolDescriptor
from .session_store import Session, Step
from .targeting import apply_resolution

logger = logging.getLogger("mcp.bridge.controller")

ProgressCallback = Callable[[dict[str, Any]], Any]

REPEATED_ACTION_MESSAGE = "Stopped: repeated action detected (no progress)."
# Identical consecutive call_tool actions allowed before the third is refused.
MAX_REPEATS = 2
HISTORY_OFFERED = 5
HISTORY_KEPT = 10


def action_signature(tool: str, args: dict[str, Any]) -> str:
    return f"{tool}|{json.dumps(args, sort_keys=True, default=str)}"


def context_suffix(context: dict[str, Any] | None) -> str:
    url = (context or {}).get("currentUrl")
    return f"\n\nCurrent page context: The user is on {url}" if url else ""


class TaskSessionController:
    def __init__(
        self,
        dispatcher: ToolDispatcher,
        planner: Planner,
        *,
        max_iterations: int = 10,
    ) -> None:
        self.dispatcher = dispatcher
        self.planner = planner
        self.max_iterations = max_iterations
        self.history: list[dict[str, str]] = []
        self._tools: list[ToolDescriptor] | None = None
        self._tasks: set[asyncio.Task] = set()

    async def tool_catalog(self, *, refresh: bool = False) -> list[ToolDescriptor]:
        """Catalog for the system prompt. Empty (and not cached) when the tool-server is unreachable."""
        if self._tools is not None and not refresh:
            return self._tools
        try:
            self._tools = await self.dispatcher.list_tools()
        except BridgeError as exc:
            logger.warning("controller.catalog.unavailable err=%s", exc.message)
            return []
        return self._tools

    def reset_catalog(self) -> None:
        self._tools = None

    async def _execute(self, tool: str, args: dict[str, Any]) -> Any:
        """Run one tool call; failures become a result the planner can read."""
        try:
            return await self.dispatcher.call_tool(tool, args)
        except BridgeError as exc:
            logger.warning("controller.tool.failed tool=%s err=%s", tool, exc.message)
            return {"success": False, "error": exc.message, "code": exc.code}

    # ─────────────────────────────────────────────────────────────────────────
    # Sessions
    # ─────────────────────────────────────────────────────────────────────────

    async def run_session(
        self,
        session: Session,
        *,
        max_iterations: int | None = None,
        on_update: ProgressCallback | None = None,
    ) -> Session:
        limit = max(1, int(max_iterations or self.max_iterations))
        session.start()
        logger.info("controller.session.start id=%s max=%d task=%s", session.id, limit, safe_stringify(session.message, 200))
        try:
            await self._loop(session, limit, on_update)
        except Exception as exc:  # noqa: BLE001
            logger.exception("controller.session.crash id=%s", session.id)
            session.fail(str(exc) or type(exc).__name__, stop_reason="internal_error")
        logger.info(
            "controller.session.end id=%s status=%s steps=%d reason=%s",
            session.id,
            session.status.value,
            len(session.trace),
            session.stop_reason,
        )
        return session

    async def _loop(self, session: Session, limit: int, on_update: ProgressCallback | None) -> None:
        catalog = await self.tool_catalog()
        system = build_system_prompt(catalog)
        suffix = context_suffix(session.context)

        previous_signature: str | None = None
        repeat_count = 0
        last_result: Any = None

        for iteration in range(1, limit + 1):
            prompt = build_session_prompt(session.message, last_result, has_result=bool(session.trace)) + suffix
            try:
                raw = await self.planner.complete(prompt, system=system, history=self.history[-HISTORY_OFFERED:])
            except PlanningServiceError as exc:
                session.fail(exc.message, stop_reason="planning_error")
                return

            action = parse_action(raw)
            session.last_action = action.to_dict()
            session.touch()

            if action.kind is ActionKind.CALL_TOOL:
                assert action.tool is not None
                signature = action_signature(action.tool, action.args)
                if signature == previous_signature:
                    repeat_count += 1
                else:
                    previous_signature = signature
                    repeat_count = 0
                if repeat_count >= MAX_REPEATS:
                    stop = LoopDetected(REPEATED_ACTION_MESSAGE, details={"signature": signature})
                    logger.warning("controller.loop id=%s signature=%s", session.id, safe_stringify(signature, 300))
                    session.fail(stop.message, stop_reason=stop.code)
                    return

                args = await apply_resolution(self.dispatcher, action.tool, action.args, catalog)
                logger.info(
                    "controller.step id=%s iteration=%d tool=%s args=%s",
                    session.id,
                    iteration,
                    action.tool,
                    safe_stringify(redact_tool_arguments(action.tool, args), 500),
                )
                result = await self._execute(action.tool, args)
                session.append_step(Step(iteration=iteration, tool=action.tool, args=args, result=result))
                last_result = result
                await self._notify(on_update, session, iteration, action, result)
                continue

            if action.kind in (ActionKind.DONE, ActionKind.RESPOND):
                session.finish(action.message or raw)
                return

            session.fail(f"Unknown action from planner: {safe_stringify(action.to_dict(), 500)}", stop_reason="unknown_action")
            return

        stop = IterationBudgetExhausted(f"Max iterations ({limit}) reached")
        session.fail(stop.message, stop_reason=stop.code)

    async def _notify(
        self,
        on_update: ProgressCallback | None,
        session: Session,
        iteration: int,
        action: PlannedAction,
        result: Any,
    ) -> None:
        if on_update is None:
            return
        update = {
            "status": session.status.value,
            "iteration": iteration,
            "action": action.to_dict(),
            "toolResult": result,
            "trace": [s.to_dict() for s in session.trace],
        }
        try:
            out = on_update(update)
            if inspect.isawaitable(out):
                await out
        except Exception as exc:  # noqa: BLE001
            # Progress listeners never affect the session.
            logger.debug("controller.on_update.failed err=%r", exc)

    def spawn(
        self,
        session: Session,
        *,
        max_iterations: int | None = None,
        on_update: ProgressCallback | None = None,
    ) -> asyncio.Task:
        """Run a session as a detached task."""
        task = asyncio.create_task(self.run_session(session, max_iterations=max_iterations, on_update=on_update))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ─────────────────────────────────────────────────────────────────────────
    # Single-shot chat
    # ─────────────────────────────────────────────────────────────────────────

    def clear_history(self) -> None:
        self.history = []

    def _remember(self, role: str, content: str) -> None:
        self.history.append({"role": role, "content": content})
        if len(self.history) > HISTORY_KEPT:
            self.history = self.history[-HISTORY_KEPT:]

    async def process_message(self, message: str, context: dict[str, Any] | None = None) -> dict[str, Any]:
        """One planning call; at most one tool call (or one chain) executed."""
        catalog = await self.tool_catalog()
        system = build_system_prompt(catalog)
        self._remember("user", message)

        raw = await self.planner.complete(
            message + context_suffix(context),
            system=system,
            history=self.history[-HISTORY_OFFERED:],
        )
        action = parse_action(raw)
        executed: list[dict[str, Any]] = []

        if action.kind is ActionKind.CALL_TOOL:
            assert action.tool is not None
            args = await apply_resolution(self.dispatcher, action.tool, action.args, catalog)
            try:
                result = await self.dispatcher.call_tool(action.tool, args)
            except BridgeError as exc:
                executed.append({"tool": action.tool, "success": False, "error": exc.message})
                reply = f"Failed to execute {action.tool}: {exc.message}. {action.reasoning or ''}".strip()
            else:
                executed.append({"tool": action.tool, "success": True, "result": result})
                reply = await self.planner.complete(
                    f'The tool "{action.tool}" was executed successfully. Result: {safe_stringify(result)}. '
                    "Provide a helpful, user-friendly explanation of what was done.",
                    system=system,
                    history=[],
                )
        elif action.kind is ActionKind.CHAIN_TOOLS:
            for call in action.tools:
                tool = call["tool"]
                args = call.get("args") if isinstance(call.get("args"), dict) else {}
                try:
                    result = await self.dispatcher.call_tool(tool, args)
                    executed.append({"tool": tool, "success": True, "result": result})
                except BridgeError as exc:
                    executed.append({"tool": tool, "success": False, "error": exc.message})
            summary = "\n".join(
                f"{r['tool']}: {'Success' if r['success'] else 'Failed - ' + r['error']}" for r in executed
            )
            reply = f"Executed {len(executed)} tool(s):\n{summary}\n\n{action.reasoning or ''}".strip()
        else:
            reply = action.message or raw

        self._remember("assistant", reply)
        return {"response": reply, "action": action.to_dict(), "toolCalls": executed}
