"""Turn recording hooks and the in-memory metrics store behind them."""

from __future__ import annotations

import re
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Protocol, Sequence

from .schemas.anthropic import MessagesRequest, TextBlock, ToolCallRecord, Usage
from .transform import json_loads_object

EDIT_TOOL_NAMES = frozenset({"Edit", "MultiEdit", "Write", "NotebookEdit"})
PREVIEW_CHARS = 100
ARGS_PREVIEW_CHARS = 200

_SENSITIVE_ARG_RE = re.compile(r'"(password|secret|token|key)"\s*:\s*"[^"]*"')


class TurnRecorder(Protocol):
    def begin_turn(self, user_id: str, request: MessagesRequest) -> str: ...

    def record_completion(
        self,
        user_id: str,
        turn_id: str,
        *,
        latency_ms: int,
        usage: Optional[Usage] = None,
        tool_calls: Optional[Sequence[ToolCallRecord]] = None,
        error: Optional[str] = None,
    ) -> None: ...


def truncate(text: str, max_length: int) -> str:
    text = (text or "").strip()
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


def args_preview(arguments: str, max_length: int = ARGS_PREVIEW_CHARS) -> str:
    if not arguments:
        return ""
    return truncate(_SENSITIVE_ARG_RE.sub(r'"\1":"[REDACTED]"', arguments), max_length)


def last_user_text(request: MessagesRequest) -> str:
    for m in reversed(request.messages):
        if m.role != "user":
            continue
        if isinstance(m.content, str):
            return m.content
        texts = [b.text for b in m.content if isinstance(b, TextBlock)]
        if texts:
            return "\n".join(texts)
    return ""



def count_lines(text: Any) -> int:
    if not isinstance(text, str) or not text:
        return 0
    return len(text.splitlines())


@dataclass(frozen=True)
class LinesModified:
    """Lines an edit-tool call writes (added) and replaces (removed)."""

    lines_added: int = 0
    lines_removed: int = 0
    file_path: Optional[str] = None

    @property
    def net_change(self) -> int:
        return self.lines_added - self.lines_removed


def lines_modified(name: str, arguments: str) -> LinesModified:
    """Derive line counts from the full arguments of an edit-tool call."""
    if name not in EDIT_TOOL_NAMES:
        return LinesModified()
    args = json_loads_object(arguments)
    path = args.get("file_path") or args.get("notebook_path") or args.get("path")
    path = path if isinstance(path, str) else None
    if name == "Write":
        return LinesModified(count_lines(args.get("content")), 0, path)
    if name == "Edit":
        return LinesModified(count_lines(args.get("new_string")), count_lines(args.get("old_string")), path)
    if name == "MultiEdit":
        edits = [e for e in args.get("edits") or [] if isinstance(e, dict)]
        added = sum(count_lines(e.get("new_string")) for e in edits)
        removed = sum(count_lines(e.get("old_string")) for e in edits)
        return LinesModified(added, removed, path)
    # NotebookEdit replaces one cell's source
    return LinesModified(count_lines(args.get("new_source")), 0, path)

@dataclass
class ToolCallLog:
    tool_call_id: str
    turn_id: str
    name: str
    args_preview: str
    timestamp: float
    lines_added: int = 0
    lines_removed: int = 0
    file_path: Optional[str] = None

    @property
    def lines_modified(self) -> int:
        return self.lines_added - self.lines_removed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_call_id": self.tool_call_id,
            "turn_id": self.turn_id,
            "name": self.name,
            "args_preview": self.args_preview,
            "timestamp": self.timestamp,
            "lines_added": self.lines_added,
            "lines_removed": self.lines_removed,
            "lines_modified": self.lines_modified,
            "file_path": self.file_path,
        }


@dataclass
class TurnLog:
    turn_id: str
    user_id: str
    session_id: str
    model: str
    stream: bool
    tools_offered: int
    message_preview: str
    timestamp: float = field(default_factory=time.time)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: Optional[int] = None
    completed: bool = False
    error: Optional[str] = None
    tool_calls: List[ToolCallLog] = field(default_factory=list)

    @property
    def edit_tool_calls(self) -> int:
        return sum(1 for c in self.tool_calls if c.name in EDIT_TOOL_NAMES)

    @property
    def lines_added(self) -> int:
        return sum(c.lines_added for c in self.tool_calls)

    @property
    def lines_removed(self) -> int:
        return sum(c.lines_removed for c in self.tool_calls)

    @property
    def lines_modified(self) -> int:
        return self.lines_added - self.lines_removed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "model": self.model,
            "stream": self.stream,
            "tools_offered": self.tools_offered,
            "message_preview": self.message_preview,
            "timestamp": self.timestamp,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "latency_ms": self.latency_ms,
            "completed": self.completed,
            "error": self.error,
            "tool_call_count": len(self.tool_calls),
            "edit_tool_call_count": self.edit_tool_calls,
            "lines_added": self.lines_added,
            "lines_removed": self.lines_removed,
            "lines_modified": self.lines_modified,
            "tool_calls": [c.to_dict() for c in self.tool_calls],
        }


@dataclass
class SessionInfo:
    session_id: str
    user_id: str
    start_time: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    turn_count: int = 0
    total_tool_calls: int = 0
    edit_tool_calls: int = 0
    total_lines_modified: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_latency_ms: int = 0
    error_count: int = 0
    tool_usage: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "start_time": self.start_time,
            "last_activity": self.last_activity,
            "turn_count": self.turn_count,
            "total_tool_calls": self.total_tool_calls,
            "edit_tool_calls": self.edit_tool_calls,
            "total_lines_modified": self.total_lines_modified,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "avg_latency_ms": round(self.total_latency_ms / self.turn_count, 1) if self.turn_count else 0.0,
            "avg_tool_calls_per_turn": round(self.total_tool_calls / self.turn_count, 2) if self.turn_count else 0.0,
            "error_count": self.error_count,
            "tool_usage": dict(self.tool_usage),
        }


@dataclass
class UserMetrics:
    user_id: str
    first_seen: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    total_requests: int = 0
    total_tool_calls: int = 0
    edit_tool_calls: int = 0
    lines_modified: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "total_requests": self.total_requests,
            "total_tool_calls": self.total_tool_calls,
            "edit_tool_calls": self.edit_tool_calls,
            "lines_modified": self.lines_modified,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "errors": self.errors,
        }


class MetricsStore:
    """Process-wide turn log, per-user totals and sessions.

    Created once at startup, mutated per request, emptied only by `clear()`.
    The turn log and each user's archived sessions are bounded and evict
    oldest first.
    """

    def __init__(
        self,
        max_recent_turns: int = 500,
        session_timeout_minutes: int = 30,
        max_sessions_per_user: int = 50,
        clock=time.time,
    ) -> None:
        self.max_recent_turns = max_recent_turns
        self.session_timeout_seconds = session_timeout_minutes * 60
        self.max_sessions_per_user = max_sessions_per_user
        self._clock = clock
        # Reentrant: completion finalizers can run during garbage collection on a thread holding it
        self._lock = threading.RLock()
        self._turns: Deque[TurnLog] = deque()
        self._turns_by_id: Dict[str, TurnLog] = {}
        self._users: Dict[str, UserMetrics] = {}
        self._active_sessions: Dict[str, SessionInfo] = {}
        self._session_history: Dict[str, Deque[SessionInfo]] = {}
        self._tool_calls_by_name: Dict[str, int] = {}

    # Recording hooks

    def begin_turn(self, user_id: str, request: MessagesRequest) -> str:
        now = self._clock()
        turn_id = f"turn_{uuid.uuid4().hex}"
        with self._lock:
            session = self._session_for(user_id, now)
            session.turn_count += 1
            user = self._users.get(user_id)
            if user is None:
                user = self._users[user_id] = UserMetrics(user_id=user_id, first_seen=now, last_seen=now)
            user.total_requests += 1
            user.last_seen = now
            turn = TurnLog(
                turn_id=turn_id,
                user_id=user_id,
                session_id=session.session_id,
                model=request.model,
                stream=bool(request.stream),
                tools_offered=len(request.tools or []),
                message_preview=truncate(last_user_text(request), PREVIEW_CHARS),
                timestamp=now,
            )
            self._turns.append(turn)
            self._turns_by_id[turn_id] = turn
            while len(self._turns) > self.max_recent_turns:
                evicted = self._turns.popleft()
                self._turns_by_id.pop(evicted.turn_id, None)
        return turn_id

    def record_completion(
        self,
        user_id: str,
        turn_id: str,
        *,
        latency_ms: int,
        usage: Optional[Usage] = None,
        tool_calls: Optional[Sequence[ToolCallRecord]] = None,
        error: Optional[str] = None,
    ) -> None:
        now = self._clock()
        calls = list(tool_calls or [])
        changes = [lines_modified(c.name, c.arguments) for c in calls]
        net_lines = sum(ch.net_change for ch in changes)
        with self._lock:
            turn = self._turns_by_id.get(turn_id)
            session = self._active_sessions.get(user_id)
            user = self._users.get(user_id)
            if turn is not None:
                if turn.completed:
                    return
                turn.completed = True
                turn.latency_ms = latency_ms
                turn.error = error
                if usage is not None:
                    turn.prompt_tokens = usage.input_tokens
                    turn.completion_tokens = usage.output_tokens
                for call, change in zip(calls, changes):
                    turn.tool_calls.append(
                        ToolCallLog(
                            tool_call_id=call.id,
                            turn_id=turn_id,
                            name=call.name,
                            args_preview=args_preview(call.arguments),
                            timestamp=now,
                            lines_added=change.lines_added,
                            lines_removed=change.lines_removed,
                            file_path=change.file_path,
                        )
                    )
            edits = sum(1 for c in calls if c.name in EDIT_TOOL_NAMES)
            n_calls = len(calls)
            for call in calls:
                self._tool_calls_by_name[call.name] = self._tool_calls_by_name.get(call.name, 0) + 1
            if session is not None and (turn is None or turn.session_id == session.session_id):
                session.last_activity = now
                session.total_latency_ms += latency_ms
                session.total_tool_calls += n_calls
                session.edit_tool_calls += edits
                session.total_lines_modified += net_lines
                for call in calls:
                    session.tool_usage[call.name] = session.tool_usage.get(call.name, 0) + 1
                if usage is not None:
                    session.prompt_tokens += usage.input_tokens
                    session.completion_tokens += usage.output_tokens
                if error:
                    session.error_count += 1
            if user is not None:
                user.last_seen = now
                user.total_tool_calls += n_calls
                user.edit_tool_calls += edits
                user.lines_modified += net_lines
                if usage is not None:
                    user.input_tokens += usage.input_tokens
                    user.output_tokens += usage.output_tokens
                if error:
                    user.errors += 1

    # Sessions

    def _session_for(self, user_id: str, now: float) -> SessionInfo:
        current = self._active_sessions.get(user_id)
        if current is not None and not self._expired(current, now):
            current.last_activity = now
            return current
        if current is not None:
            self._archive(current)
        short = user_id[:8]
        session = SessionInfo(
            session_id=f"{short}-{int(now * 1000)}-{uuid.uuid4().hex[:8]}",
            user_id=user_id,
            start_time=now,
            last_activity=now,
        )
        self._active_sessions[user_id] = session
        return session

    def _expired(self, session: SessionInfo, now: float) -> bool:
        return now - session.last_activity >= self.session_timeout_seconds

    def _archive(self, session: SessionInfo) -> None:
        history = self._session_history.setdefault(session.user_id, deque())
        history.append(session)
        while len(history) > self.max_sessions_per_user:
            history.popleft()

    def expire_sessions(self) -> int:
        """Archive every active session idle past the timeout; returns how many."""
        now = self._clock()
        with self._lock:
            expired = [uid for uid, s in self._active_sessions.items() if self._expired(s, now)]
            for uid in expired:
                self._archive(self._active_sessions.pop(uid))
        return len(expired)

    # Read side

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            users = list(self._users.values())
            return {
                "total_requests": sum(u.total_requests for u in users),
                "total_tool_calls": sum(u.total_tool_calls for u in users),
                "total_edit_tool_calls": sum(u.edit_tool_calls for u in users),
                "total_lines_modified": sum(u.lines_modified for u in users),
                "total_input_tokens": sum(u.input_tokens for u in users),
                "total_output_tokens": sum(u.output_tokens for u in users),
                "total_errors": sum(u.errors for u in users),
                "active_users": len(self._active_sessions),
                "tool_calls_by_name": dict(self._tool_calls_by_name),
            }

    def users(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [u.to_dict() for u in sorted(self._users.values(), key=lambda u: u.last_seen, reverse=True)]

    def recent_turns(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            return [t.to_dict() for t in list(reversed(self._turns))[: max(0, limit)]]

    def turns_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [t.to_dict() for t in reversed(self._turns) if t.user_id == user_id]

    def turns_for_session(self, session_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [t.to_dict() for t in reversed(self._turns) if t.session_id == session_id]

    def get_turn(self, turn_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            turn = self._turns_by_id.get(turn_id)
            return turn.to_dict() if turn is not None else None

    def user_sessions(self, user_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            sessions = list(self._session_history.get(user_id, ()))
            active = self._active_sessions.get(user_id)
            if active is not None:
                sessions.append(active)
            sessions.sort(key=lambda s: s.start_time, reverse=True)
            return [s.to_dict() for s in sessions]

    def recent_sessions(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            sessions = list(self._active_sessions.values())
            for history in self._session_history.values():
                sessions.extend(history)
            sessions.sort(key=lambda s: s.last_activity, reverse=True)
            return [s.to_dict() for s in sessions[: max(0, limit)]]

    def clear(self) -> None:
        with self._lock:
            self._turns.clear()
            self._turns_by_id.clear()
            self._users.clear()
            self._active_sessions.clear()
            self._session_history.clear()
            self._tool_calls_by_name.clear()
