"""Maps inbound stream events onto the task session.

One handler per event type. Handlers never raise on malformed data:
missing fields fall back to empty values.
"""
from __future__ import annotations

from collections import OrderedDict
import json
import logging
from typing import TYPE_CHECKING, Callable, Dict, Generic, Optional, TypeVar

from taskrelay.core.models import ExecutionInfo, ExecutionResult, StreamEvent
from taskrelay.core.phase import SessionSeen, StreamConnected, StreamError, StreamResult, task_id_of

if TYPE_CHECKING:
    from taskrelay.core.session import TaskSession

logger = logging.getLogger("taskrelay.dispatcher")

# Tools whose input names a file the agent touched
FILE_TOOLS = {"Edit": "edit", "Write": "write", "Read": "read"}

K = TypeVar("K")
V = TypeVar("V")


class BoundedCache(Generic[K, V]):
    """Insertion-ordered map that evicts its oldest entry past ``capacity``."""

    def __init__(self, capacity: int) -> None:
        self.capacity = max(1, capacity)
        self._items: "OrderedDict[K, V]" = OrderedDict()

    def put(self, key: K, value: V) -> None:
        self._items[key] = value
        while len(self._items) > self.capacity:
            self._items.popitem(last=False)

    def get(self, key: K) -> Optional[V]:
        return self._items.get(key)

    def clear(self) -> None:
        self._items.clear()

    def keys(self) -> list[K]:
        return list(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)


class EventDispatcher:

    def __init__(self, session: "TaskSession") -> None:
        self._session = session
        self._handlers: Dict[str, Callable[[StreamEvent], None]] = {
            "connected": self._on_connected,
            "message": self._on_message,
            "tool_use": self._on_tool_use,
            "tool_result": self._on_tool_result,
            "result": self._on_result,
            "error": self._on_error,
        }

    def dispatch(self, event: StreamEvent) -> None:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug("Ignoring %s event", event.type)
            return
        handler(event)

    def _on_connected(self, event: StreamEvent) -> None:
        machine = self._session.machine
        session_id = event.data.get("sessionId") or None
        machine.send(StreamConnected(info=ExecutionInfo.from_dict(event.data), session_id=session_id))
        # The agent may announce its session id in a later "connected" frame
        if session_id:
            machine.send(SessionSeen(session_id))

    def _on_message(self, event: StreamEvent) -> None:
        data = event.data
        content = data.get("content")
        if data.get("type") != "assistant" or not content:
            return
        content = str(content)
        self._session.append_output(content)
        self._session.add_log("assistant", content, timestamp=event.timestamp, model=data.get("model"))

    def _on_tool_use(self, event: StreamEvent) -> None:
        data = event.data
        tool_name = str(data.get("toolName") or "")
        tool_input = data.get("toolInput")
        if not isinstance(tool_input, dict):
            tool_input = {}
        self._session.add_log(
            "tool_use",
            tool_name,
            timestamp=event.timestamp,
            tool_name=tool_name,
            tool_input=tool_input,
        )
        change_type = FILE_TOOLS.get(tool_name)
        file_path = tool_input.get("file_path")
        if change_type and isinstance(file_path, str) and file_path:
            self._session.record_file_change(
                file_path,
                change_type,
                tool_use_id=data.get("toolUseId"),
                timestamp=event.timestamp,
            )

    def _on_tool_result(self, event: StreamEvent) -> None:
        session = self._session
        content = event.data.get("content", "")
        full_content = content if isinstance(content, str) else json.dumps(content, default=str)
        log_id = session.next_id("result")
        try:
            parsed = session.build_parser(full_content)
        except Exception:  # noqa: BLE001
            logger.exception("Build output parser failed")
            parsed = None
        if parsed is not None and getattr(parsed, "is_build_output", False):
            session.build_cache.put(log_id, parsed)
        session.add_log(
            "tool_result",
            full_content[: session.timings.tool_result_preview_chars],
            timestamp=event.timestamp,
            entry_id=log_id,
        )

    def _on_result(self, event: StreamEvent) -> None:
        session = self._session
        prior = session.machine.phase
        result = ExecutionResult.from_dict(event.data)
        if not session.machine.send(StreamResult(result=result, session_id=result.session_id)):
            return
        session.settle_stream(task_id_of(prior), success=not result.is_error, run_callbacks=True)

    def _on_error(self, event: StreamEvent) -> None:
        session = self._session
        message = str(event.data.get("error") or "Unknown error")
        prior = session.machine.phase
        session.add_log("error", message, timestamp=event.timestamp)
        if not session.machine.send(StreamError(error=message)):
            return
        session.settle_stream(task_id_of(prior), success=False, run_callbacks=False)
