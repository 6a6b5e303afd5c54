"""Data models shared by the task session, its collaborators and the CLI."""
from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Any, Dict, List, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


def _as_int(value: Any, default: Optional[int] = 0) -> Optional[int]:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# Valid task statuses
TASK_STATUSES = {"pending", "running", "completed", "failed"}

# Log entry kinds, in the order the terminal renders their badges
LOG_TYPES = ("user", "assistant", "tool_use", "tool_result", "system", "error")

# Inbound stream event types
STREAM_EVENT_TYPES = {"connected", "message", "tool_use", "tool_result", "result", "error"}
TERMINAL_EVENT_TYPES = {"result", "error"}


@dataclass
class Task:
    """A unit of queued work for the remote agent."""
    id: str
    prompt: str
    label: str = ""
    status: str = "pending"             # pending|running|completed|failed
    added_at: int = field(default_factory=now_ms)
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    module_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.status not in TASK_STATUSES:
            raise ValueError(f"invalid task status: {self.status}")
        if not self.label:
            self.label = self.prompt[:60]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "label": self.label,
            "status": self.status,
            "added_at": self.added_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "module_id": self.module_id,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Task":
        return cls(
            id=str(d["id"]),
            prompt=d["prompt"],
            label=d.get("label", ""),
            status=d.get("status", "pending"),
            added_at=d.get("added_at") or now_ms(),
            started_at=d.get("started_at"),
            completed_at=d.get("completed_at"),
            module_id=d.get("module_id"),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


@dataclass
class LogEntry:
    """One line of the session's visible log. Append-only."""
    id: str
    type: str           # see LOG_TYPES
    content: str
    timestamp: int
    tool_name: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None
    model: Optional[str] = None

    def format_line(self) -> str:
        if self.type == "tool_use":
            return f"[{self.type}] {self.tool_name or self.content}"
        return f"[{self.type}] {self.content}"


@dataclass
class FileChange:
    id: str
    session_id: str
    file_path: str
    change_type: str    # edit | write | read
    timestamp: int
    tool_use_id: Optional[str] = None


@dataclass
class ExecutionInfo:
    execution_id: Optional[str] = None
    session_id: Optional[str] = None
    model: Optional[str] = None
    tools: List[str] = field(default_factory=list)
    version: Optional[str] = None

    @classmethod
    def from_dict(cls, d: dict) -> "ExecutionInfo":
        tools = d.get("tools") or []
        return cls(
            execution_id=d.get("executionId"),
            session_id=d.get("sessionId"),
            model=d.get("model"),
            tools=[str(t) for t in tools] if isinstance(tools, list) else [],
            version=d.get("version"),
        )


@dataclass
class ExecutionResult:
    session_id: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: Optional[int] = None
    total_cost_usd: Optional[float] = None
    is_error: bool = False

    @classmethod
    def from_dict(cls, d: dict) -> "ExecutionResult":
        usage = d.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        cost = d.get("totalCostUsd")
        return cls(
            session_id=d.get("sessionId"),
            input_tokens=_as_int(usage.get("inputTokens")),
            output_tokens=_as_int(usage.get("outputTokens")),
            duration_ms=_as_int(d.get("durationMs"), None),
            total_cost_usd=cost if isinstance(cost, (int, float)) and not isinstance(cost, bool) else None,
            is_error=bool(d.get("isError", False)),
        )


@dataclass
class StreamEvent:
    """A decoded ``{type, data, timestamp}`` frame from the agent stream."""
    type: str
    data: Dict[str, Any]
    timestamp: int

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES


@dataclass
class StartResponse:
    """Reply to the task-start call."""
    execution_id: str
    stream_url: str
    log_file_path: Optional[str] = None


@dataclass
class RegistryRecord:
    task_id: str
    session_id: str
    status: str         # running | completed | failed
    started_at: int
    completed_at: Optional[int] = None
    requirement_name: Optional[str] = None
    is_stale: bool = False

    def to_dict(self) -> dict:
        return {
            "taskId": self.task_id,
            "sessionId": self.session_id,
            "status": self.status,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "requirementName": self.requirement_name,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "RegistryRecord":
        return cls(
            task_id=d.get("taskId", ""),
            session_id=d.get("sessionId", ""),
            status=d.get("status", "running"),
            started_at=d.get("startedAt") or 0,
            completed_at=d.get("completedAt"),
            requirement_name=d.get("requirementName"),
            is_stale=bool(d.get("isStale", False)),
        )


@dataclass
class RegistryStartResult:
    success: bool
    record: Optional[RegistryRecord] = None
    running_task: Optional[RegistryRecord] = None
    error: Optional[str] = None

    @property
    def is_conflict(self) -> bool:
        return not self.success and self.running_task is not None


@dataclass
class RegistryStatus:
    found: bool
    task_id: str
    status: Optional[str] = None
    is_stale: bool = False
    session_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.found and self.status is not None and self.status != "running"
