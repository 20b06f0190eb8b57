"""Redaction and truncation helpers for log lines.

Tool arguments, planner prompts and tool results pass through the bridge log.
Obvious secrets (typed text into password fields, tokens in URLs, API keys)
are masked and large payloads are cut before they reach a handler.
"""

from __future__ import annotations

import json
import re
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

MAX_LOG_CHARS = 2000
TRUNCATION_SUFFIX = "...[truncated]"

_SENSITIVE_KEYS = {
    "secret",
    "password",
    "pass",
    "pwd",
    "token",
    "auth",
    "authorization",
    "cookie",
    "set-cookie",
    "api-key",
    "api_key",
    "apikey",
    "x-api-key",
}

# Gemini-style `?key=` query params; as an argument name `key` is a keyboard key.
_SENSITIVE_QUERY_KEYS = _SENSITIVE_KEYS | {"key"}

_SENSITIVE_HINT_RE = re.compile(r"pass(word)?|secret|token|otp|cvv|pin", re.IGNORECASE)

# Tools whose free-text argument is what the user types into the page.
_TYPING_TOOLS = {"browser_type", "browser_fill", "browser_fill_form", "type", "fill"}


def _redacted_summary(value: Any) -> str:
    if value is None:
        return "<redacted>"
    if isinstance(value, (bytes, bytearray)):
        return f"<redacted bytes len={len(value)}>"
    if isinstance(value, str):
        return f"<redacted str len={len(value)}>"
    if isinstance(value, (list, tuple, set)):
        return f"<redacted list len={len(value)}>"
    if isinstance(value, dict):
        return f"<redacted dict keys={len(value)}>"
    return "<redacted>"


def redact_url(url: str) -> str:
    """Mask credential-like query params and userinfo, leaving the rest intact."""
    if not isinstance(url, str) or not url:
        return url
    try:
        parts = urlsplit(url)
    except ValueError:
        return url

    changed = False
    netloc = parts.netloc
    query = parts.query
    if "@" in netloc:
        netloc = netloc.split("@", 1)[1]
        changed = True

    if query:
        pairs = parse_qsl(query, keep_blank_values=True)
        out_pairs: list[tuple[str, str]] = []
        for k, v in pairs:
            if k.strip().lower() in _SENSITIVE_QUERY_KEYS and v:
                out_pairs.append((k, "<redacted>"))
                changed = True
            else:
                out_pairs.append((k, v))
        query = urlencode(out_pairs, doseq=True)

    if not changed:
        return url
    return urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


def _looks_sensitive_target(args: dict[str, Any]) -> bool:
    for key in ("element", "element_hint", "placeholder_hint", "selector", "ref"):
        value = args.get(key)
        if isinstance(value, str) and _SENSITIVE_HINT_RE.search(value):
            return True
    return False


def _redact_any(value: Any, *, tool: str, key: str | None, sensitive_target: bool) -> Any:
    if isinstance(value, dict):
        return {k: _redact_any(v, tool=tool, key=str(k), sensitive_target=sensitive_target) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact_any(v, tool=tool, key=key, sensitive_target=sensitive_target) for v in value]

    lk = (key or "").lower()
    if isinstance(value, str) and lk == "url":
        return redact_url(value)
    if tool in _TYPING_TOOLS and lk in {"text", "value"} and sensitive_target:
        return _redacted_summary(value)
    if lk in _SENSITIVE_KEYS:
        return _redacted_summary(value)
    return value


def redact_tool_arguments(tool: str, args: dict[str, Any]) -> dict[str, Any]:
    """Redact tool arguments for safe logging."""
    if not isinstance(args, dict):
        return {}
    return _redact_any(args, tool=tool, key=None, sensitive_target=_looks_sensitive_target(args))


def redact_tool_result(payload: Any) -> Any:
    """Replace inline image data with a placeholder."""
    if not isinstance(payload, dict) or not isinstance(payload.get("content"), list):
        return payload
    content = []
    for item in payload["content"]:
        if isinstance(item, dict) and item.get("type") == "image" and isinstance(item.get("data"), str):
            item = dict(item)
            item["data"] = f"<omitted image base64 len={len(item['data'])}>"
        content.append(item)
    out = dict(payload)
    out["content"] = content
    return out


def mask_secret(value: str | None) -> str:
    if not value:
        return "<unset>"
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}****"


def safe_stringify(value: Any, max_len: int = MAX_LOG_CHARS) -> str:
    """Serialize for a log line, never raising and never exceeding max_len (+suffix)."""
    if isinstance(value, str):
        text = value
    else:
        try:
            text = json.dumps(value, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            text = repr(value)
    if len(text) > max_len:
        return text[:max_len] + TRUNCATION_SUFFIX
    return text
