"""In-memory task sessions."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SessionStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    FINISHED = "finished"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in {SessionStatus.FINISHED, SessionStatus.ERROR}


@dataclass(frozen=True, slots=True)
class Step:
    """One executed tool call."""

    iteration: int
    tool: str
    args: dict[str, Any]
    result: Any

    def to_dict(self) -> dict[str, Any]:
        return {"iteration": self.iteration, "tool": self.tool, "args": self.args, "result": self.result}


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class Session:
    id: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.CREATED
    trace: list[Step] = field(default_factory=list)
    last_action: dict[str, Any] | None = None
    last_tool_result: Any = None
    result: Any = None
    error: str | None = None
    stop_reason: str | None = None
    created_at: float = field(default_factory=time.time)
    last_update: float = field(default_factory=time.time)

    def touch(self) -> None:
        self.last_update = time.time()

    def start(self) -> None:
        if self.status is SessionStatus.CREATED:
            self.status = SessionStatus.RUNNING
            self.touch()

    def append_step(self, step: Step) -> None:
        if self.status.terminal:
            raise RuntimeError(f"session {self.id} is {self.status.value}; trace is closed")
        self.trace.append(step)
        self.last_tool_result = step.result
        self.touch()

    def finish(self, result: Any) -> None:
        if self.status.terminal:
            return
        self.status = SessionStatus.FINISHED
        self.result = result
        self.touch()

    def fail(self, error: str, *, stop_reason: str | None = None) -> None:
        if self.status.terminal:
            return
        self.status = SessionStatus.ERROR
        self.error = error
        self.stop_reason = stop_reason
        self.touch()

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "message": self.message,
            "trace": [s.to_dict() for s in self.trace],
            "lastAction": self.last_action,
            "lastToolResult": self.last_tool_result,
            "createdAt": _iso(self.created_at),
            "lastUpdate": _iso(self.last_update),
        }
        if self.status is SessionStatus.FINISHED:
            out["result"] = self.result
        if self.status is SessionStatus.ERROR:
            out["error"] = self.error
            if self.stop_reason:
                out["stopReason"] = self.stop_reason
        return out


class SessionStore:
    """Keyed session map. With a TTL, stale terminal sessions are evicted on create()."""

    def __init__(self, ttl: float | None = None) -> None:
        self.ttl = ttl if ttl and ttl > 0 else None
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def create(self, message: str, context: dict[str, Any] | None = None) -> Session:
        self.evict_expired()
        session = Session(id=uuid.uuid4().hex, message=message, context=dict(context or {}))
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def evict_expired(self, now: float | None = None) -> int:
        if self.ttl is None:
            return 0
        now = time.time() if now is None else now
        stale = [
            sid
            for sid, s in self._sessions.items()
            if s.status.terminal and now - s.last_update > self.ttl
        ]
        for sid in stale:
            del self._sessions[sid]
        return len(stale)
