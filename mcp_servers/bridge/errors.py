"""
Error taxonomy for the bridge.

Every failure that crosses a component boundary is a BridgeError, so the HTTP
layer and the session controller can serialize it without guessing.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base error with a structured payload."""

    code = "bridge_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class BackendUnavailable(BridgeError):
    """Neither the live browser nor the tool-server can run the call."""

    code = "backend_unavailable"


class ConnectionFailed(BridgeError):
    """Attaching to a running browser failed."""

    code = "connection_failed"


class OperationError(BridgeError):
    """A live-browser operation failed; the dispatcher may fall back."""

    code = "operation_error"

    def __init__(
        self,
        tool: str,
        action: str,
        reason: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(f"[{tool}] {action} failed: {reason}", details=details)
        self.tool = tool
        self.action = action
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update({"tool": self.tool, "action": self.action, "reason": self.reason})
        return payload


class PeerUnavailable(BridgeError):
    """The tool-server subprocess is not connected."""

    code = "peer_unavailable"


class PeerProtocolError(BridgeError):
    """The tool-server answered with a JSON-RPC error or a malformed frame."""

    code = "peer_protocol_error"


class ToolExecutionError(BridgeError):
    """The tool-server ran the tool and reported failure."""

    code = "tool_execution_error"

    def __init__(self, tool: str, payload: Any) -> None:
        super().__init__(f"Tool {tool} failed: {_first_text(payload) or 'tool reported an error'}")
        self.tool = tool
        self.payload = payload

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update({"tool": self.tool, "payload": self.payload})
        return payload


class CallTimeout(BridgeError):
    """A backend call did not complete within the configured timeout."""

    code = "call_timeout"


class PlanningServiceError(BridgeError):
    """The planning service call failed."""

    code = "planning_service_error"


class LoopDetected(BridgeError):
    code = "repeated_action"


class IterationBudgetExhausted(BridgeError):
    code = "max_iterations"


def _first_text(payload: Any) -> str:
    if isinstance(payload, dict):
        for item in payload.get("content") or []:
            if isinstance(item, dict) and item.get("type") == "text" and item.get("text"):
                return str(item["text"])[:500]
    return ""


__all__ = [
    "BackendUnavailable",
    "BridgeError",
    "CallTimeout",
    "ConnectionFailed",
    "IterationBudgetExhausted",
    "LoopDetected",
    "OperationError",
    "PeerProtocolError",
    "PeerUnavailable",
    "PlanningServiceError",
    "ToolExecutionError",
]
