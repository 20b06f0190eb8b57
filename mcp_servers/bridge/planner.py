"""Planning-service client and action parsing.

The planner is an opaque text-completion endpoint (Gemini `generateContent`).
This module builds the prompt, calls the endpoint, and turns the reply into a
PlannedAction.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import aiohttp

from .config import DEFAULT_PLANNER_BASE_URL, DEFAULT_PLANNER_MODEL
from .errors import PlanningServiceError
from .page_routines import describe_routines
from .redaction import safe_stringify
from .server.types import ToolDescriptor

logger = logging.getLogger("mcp.bridge.planner")

GENERATION_CONFIG: dict[str, Any] = {
    "temperature": 0.7,
    "topK": 40,
    "topP": 0.95,
    "maxOutputTokens": 2048,
}


class ActionKind(str, Enum):
    CALL_TOOL = "call_tool"
    CHAIN_TOOLS = "chain_tools"
    DONE = "done"
    RESPOND = "respond"
    UNKNOWN = "unknown"


@dataclass
class PlannedAction:
    kind: ActionKind
    raw: str = ""
    tool: str | None = None
    args: dict[str, Any] = field(default_factory=dict)
    message: str | None = None
    reasoning: str | None = None
    tools: list[dict[str, Any]] = field(default_factory=list)
    tag: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"action": self.tag if self.kind is ActionKind.UNKNOWN else self.kind.value}
        if self.tool is not None:
            out["tool"] = self.tool
            out["args"] = self.args
        if self.tools:
            out["tools"] = self.tools
        if self.message is not None:
            out["message"] = self.message
        if self.reasoning:
            out["reasoning"] = self.reasoning
        return out


def extract_json_object(text: str) -> dict[str, Any] | None:
    """First decodable JSON object embedded in `text`, or None."""
    if not isinstance(text, str):
        return None
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(text, start)
        except ValueError:
            start = text.find("{", start + 1)
            continue
        if isinstance(obj, dict):
            return obj
        start = text.find("{", start + 1)
    return None


def parse_action(text: str) -> PlannedAction:
    """Parse planner text. Anything without a JSON object becomes a `respond` with the raw text."""
    raw = text or ""
    data = extract_json_object(raw)
    if data is None:
        return PlannedAction(kind=ActionKind.RESPOND, raw=raw, message=raw)

    tag = data.get("action")
    message = data.get("message")
    message = str(message) if message is not None else None
    reasoning = data.get("reasoning") if isinstance(data.get("reasoning"), str) else None

    if tag is None or tag == "":
        return PlannedAction(kind=ActionKind.RESPOND, raw=raw, message=message or raw, reasoning=reasoning)
    if tag == ActionKind.CALL_TOOL.value:
        tool = data.get("tool")
        args = data.get("args")
        if not isinstance(tool, str) or not tool.strip():
            return PlannedAction(kind=ActionKind.UNKNOWN, raw=raw, tag=str(tag), message=message)
        return PlannedAction(
            kind=ActionKind.CALL_TOOL,
            raw=raw,
            tool=tool.strip(),
            args=dict(args) if isinstance(args, dict) else {},
            reasoning=reasoning,
            tag=str(tag),
        )
    if tag == ActionKind.CHAIN_TOOLS.value:
        tools = [t for t in data.get("tools") or [] if isinstance(t, dict) and isinstance(t.get("tool"), str)]
        return PlannedAction(kind=ActionKind.CHAIN_TOOLS, raw=raw, tools=tools, reasoning=reasoning, tag=str(tag))
    if tag in (ActionKind.DONE.value, ActionKind.RESPOND.value):
        return PlannedAction(kind=ActionKind(tag), raw=raw, message=message or raw, reasoning=reasoning, tag=str(tag))
    return PlannedAction(kind=ActionKind.UNKNOWN, raw=raw, tag=str(tag), message=message)


# ─────────────────────────────────────────────────────────────────────────────
# Prompt
# ─────────────────────────────────────────────────────────────────────────────


def format_tools(tools: list[ToolDescriptor]) -> str:
    if not tools:
        return "No tools available."
    blocks = []
    for tool in tools:
        params = "\n".join(
            f"  - {name}: {prop.get('type') or 'string'}" + (f" ({prop['description']})" if prop.get("description") else "")
            for name, prop in tool.parameters.items()
        )
        block = f"- {tool.name}: {tool.description or 'No description'}"
        if params:
            block += f"\n  Parameters:\n{params}"
        blocks.append(block)
    return "\n\n".join(blocks)


def build_system_prompt(tools: list[ToolDescriptor]) -> str:
    return f"""You plan and execute browser automation using ONLY the tools listed below.

Available tools:
{format_tools(tools)}

Rules:
1) Reply with a single JSON object and nothing else (no markdown, no surrounding text).
2) Allowed shapes:
   {{ "action": "call_tool", "tool": "<tool_name>", "args": {{ ... }}, "reasoning": "one short sentence" }}
   {{ "action": "done", "message": "short user-facing completion message" }}
   {{ "action": "respond", "message": "text reply or one clarifying question" }}
3) Return at most one call_tool per reply. The result is fed back to you; then return the next action.
4) When a tool needs an element but you have no stable CSS selector, pass a natural-language hint in
   "element_hint" (or "element" / "placeholder_hint") instead of guessing. The bridge resolves it.
5) Page scripts: evaluate tools also accept {{ "routine": "<name>", "args": {{ ... }} }} naming one of:
{describe_routines()}
6) If the previous tool result shows a failure, correct course or explain it with "respond".
7) Do not repeat an action that made no progress.

Examples:
  {{ "action": "call_tool", "tool": "browser_navigate", "args": {{ "url": "https://example.com" }}, "reasoning": "open target page" }}
  {{ "action": "call_tool", "tool": "browser_type", "args": {{ "element_hint": "search", "text": "agentic ai", "submit": true }}, "reasoning": "search the site" }}
  {{ "action": "done", "message": "Search performed and first result opened." }}"""


def build_session_prompt(task: str, last_tool_result: Any, *, has_result: bool) -> str:
    prompt = (
        f"You are executing a task on behalf of the user. The task: {task}.\n\n"
        "Respond with the next action as a single JSON object. Only request one tool invocation at a time; "
        'when the task is complete respond with {"action":"done","message":"..."}.'
    )
    if has_result:
        prompt += f"\n\nPrevious tool result: {safe_stringify(last_tool_result, 8000)}"
    return prompt


# ─────────────────────────────────────────────────────────────────────────────
# Client
# ─────────────────────────────────────────────────────────────────────────────


class Planner(Protocol):
    @property
    def configured(self) -> bool: ...

    def update_api_key(self, api_key: str) -> None: ...

    async def complete(self, prompt: str, *, system: str, history: list[dict[str, str]]) -> str: ...


class GeminiPlanner:
    """Gemini `generateContent` client."""

    def __init__(
        self,
        api_key: str | None,
        *,
        model: str = DEFAULT_PLANNER_MODEL,
        base_url: str = DEFAULT_PLANNER_BASE_URL,
        timeout: float = 60.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http: aiohttp.ClientSession | None = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def update_api_key(self, api_key: str) -> None:
        self.api_key = api_key.strip() or None
        logger.info("planner.api_key.updated configured=%s", self.configured)

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._http

    async def close(self) -> None:
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    async def complete(self, prompt: str, *, system: str, history: list[dict[str, str]]) -> str:
        if not self.api_key:
            raise PlanningServiceError("Planning service is not configured (GEMINI_API_KEY missing)")

        history_text = ""
        if history:
            history_text = "\n\nConversation History:\n" + "\n".join(
                f"{m.get('role')}: {m.get('content')}" for m in history
            )
        body = {
            "contents": [{"parts": [{"text": f"{system}{history_text}\n\nUser: {prompt}\n\nAssistant:"}]}],
            "generationConfig": GENERATION_CONFIG,
        }
        url = f"{self.base_url}/models/{self.model}:generateContent"

        try:
            async with self._session().post(url, params={"key": self.api_key}, json=body) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise PlanningServiceError(_http_error_message(resp.status, text, self.model), details={"status": resp.status})
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise PlanningServiceError(f"Planning service request failed: {exc!r}") from exc

        try:
            data = json.loads(text)
            reply = data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise PlanningServiceError(
                "Invalid response from planning service", details={"body": safe_stringify(text, 500)}
            ) from exc
        reply = str(reply).strip()
        logger.debug("planner.reply %s", safe_stringify(reply, 4000))
        return reply


def _http_error_message(status: int, body: str, model: str) -> str:
    message = f"Planning service error: {status}"
    try:
        details = json.loads(body).get("error")
    except (ValueError, AttributeError):
        details = None
    if isinstance(details, dict):
        detail_msg = str(details.get("message") or json.dumps(details))
        message += f" - {detail_msg}"
        if "not found" in detail_msg:
            message += f" (model: {model})"
    elif body:
        message += f" - {safe_stringify(body, 500)}"
    return message
