"""Target resolution: natural-language element hint -> CSS selector.

Runs the read-only `resolve_target` page routine through the dispatcher, so it
follows the same live-first, subprocess-fallback path as any evaluate call.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from .server.dispatch import BrowserOp, ToolDispatcher, tool_category
from .server.types import ToolDescriptor

logger = logging.getLogger("mcp.bridge.targeting")

TARGET_KEYS = ("ref", "selector", "target")
HINT_KEYS = ("element_hint", "placeholder_hint", "element")

_SCRIPT_ARG_RE = re.compile(r"function|script|expression|code", re.IGNORECASE)


def needs_resolution(args: dict[str, Any]) -> str | None:
    """Return the hint when args have no concrete target but do carry a hint."""
    if any(isinstance(args.get(k), str) and args[k].strip() for k in TARGET_KEYS):
        return None
    for key in HINT_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def target_kind(tool: str) -> str:
    op = tool_category(tool)
    if op is BrowserOp.CLICK or "click" in (tool or "").lower():
        return "clickable"
    return "input"


def find_evaluate_tool(tools: list[ToolDescriptor]) -> tuple[str, str] | None:
    """(tool name, script argument name) of the catalog's evaluate tool, if any."""
    candidates = [t for t in tools if tool_category(t.name) is BrowserOp.EVALUATE]
    if not candidates:
        return None
    tool = next((t for t in candidates if t.name == "browser_evaluate"), candidates[0])
    script_arg = next((p for p in tool.parameters if _SCRIPT_ARG_RE.search(p)), "function")
    return tool.name, script_arg


def _selector_from(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        if value.get("found") is False:
            return None
        selector = value.get("selector")
        if isinstance(selector, str) and selector.strip():
            return selector.strip()
        for key in ("result", "value"):
            nested = _selector_from(value.get(key))
            if nested:
                return nested
    return None


async def resolve_target(
    dispatcher: ToolDispatcher,
    tool: str,
    args: dict[str, Any],
    tools: list[ToolDescriptor],
) -> str | None:
    """Best-effort selector for the hinted element; None when nothing matched or no backend can evaluate."""
    hint = needs_resolution(args)
    if hint is None:
        return None
    evaluate = find_evaluate_tool(tools)
    evaluate_tool, script_arg = evaluate if evaluate else (None, "function")
    value = await dispatcher.run_routine(
        "resolve_target",
        {"hint": hint, "kind": target_kind(tool)},
        evaluate_tool=evaluate_tool,
        script_arg=script_arg,
    )
    selector = _selector_from(value)
    if selector:
        logger.info("targeting.resolved tool=%s hint=%r selector=%s", tool, hint, selector)
    else:
        logger.info("targeting.miss tool=%s hint=%r", tool, hint)
    return selector


async def apply_resolution(
    dispatcher: ToolDispatcher,
    tool: str,
    args: dict[str, Any],
    tools: list[ToolDescriptor],
) -> dict[str, Any]:
    """Return args with a resolved `ref` merged in; never overwrites an existing target.

    Resolution failures are logged and the original args are returned unchanged.
    """
    try:
        selector = await resolve_target(dispatcher, tool, args, tools)
    except Exception as exc:  # noqa: BLE001
        logger.warning("targeting.failed tool=%s err=%r", tool, exc)
        return args
    if not selector:
        return args
    merged = dict(args)
    if not merged.get("ref"):
        merged["ref"] = selector
    return merged
