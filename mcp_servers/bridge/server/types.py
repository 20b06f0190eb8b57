"""
Type definitions for tool descriptors and tool results.

Both backends answer in the MCP `tools/call` result shape
(`{"content": [...], "isError": bool}`), so callers never need to know which
one ran the call.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class ToolContent:
    """Single content item in tool response."""

    type: str  # "text" or "image"
    text: str | None = None
    data: str | None = None  # base64 for images
    mime_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to MCP content format."""
        if self.type == "image":
            return {"type": "image", "data": self.data, "mimeType": self.mime_type}
        return {"type": "text", "text": self.text}


@dataclass(slots=True)
class ToolResult:
    """Result of a tool execution."""

    content: list[ToolContent] = field(default_factory=list)
    is_error: bool = False
    # Structured payload kept alongside the rendered text; not sent on the wire.
    data: Any | None = None

    @classmethod
    def text(cls, text: str) -> ToolResult:
        return cls(content=[ToolContent(type="text", text=text or "")])

    @classmethod
    def json(cls, data: Any) -> ToolResult:
        text = json.dumps(data, ensure_ascii=False, default=str)
        return cls(content=[ToolContent(type="text", text=text)], data=data)

    @classmethod
    def image(cls, raw: bytes, mime_type: str = "image/png") -> ToolResult:
        data_b64 = base64.b64encode(raw).decode("ascii")
        return cls(content=[ToolContent(type="image", data=data_b64, mime_type=mime_type)])

    @classmethod
    def error(cls, message: str, *, details: dict[str, Any] | None = None) -> ToolResult:
        payload: dict[str, Any] = {"ok": False, "error": message}
        if details:
            payload["details"] = details
        return cls(content=[ToolContent(type="text", text=message)], is_error=True, data=payload)

    def to_content_list(self) -> list[dict[str, Any]]:
        """Convert to MCP content list format."""
        return [c.to_dict() for c in self.content]

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.to_content_list(), "isError": self.is_error}


@dataclass(slots=True, frozen=True)
class ToolDescriptor:
    """A tool as advertised by the tool-server catalog."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ToolDescriptor:
        schema = raw.get("inputSchema")
        return cls(
            name=str(raw.get("name") or ""),
            description=str(raw.get("description") or ""),
            input_schema=schema if isinstance(schema, dict) else {},
        )

    @property
    def parameters(self) -> dict[str, dict[str, Any]]:
        props = self.input_schema.get("properties")
        if not isinstance(props, dict):
            return {}
        return {str(k): v if isinstance(v, dict) else {} for k, v in props.items()}

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}
