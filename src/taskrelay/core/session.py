"""Task session: the orchestrator behind one agent terminal.

Owns, for a single session instance, the state machine, the one live
stream connection, the heartbeat and stuck-check timers, the log
batcher, the output accumulator and the queue scheduler. Nothing outside
the session mutates any of them.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Coroutine, Dict, List, Optional, Protocol, Set

from taskrelay.core.batcher import LogBatcher
from taskrelay.core.callbacks import CallbackRegistry, extract_callback_payload
from taskrelay.core.constants import SessionTimings
from taskrelay.core.dispatcher import BoundedCache, EventDispatcher
from taskrelay.core.errors import AgentStartError
from taskrelay.core.models import (
    ExecutionInfo,
    ExecutionResult,
    FileChange,
    LogEntry,
    RegistryStartResult,
    RegistryStatus,
    StartResponse,
    StreamEvent,
    Task,
    now_ms,
)
from taskrelay.core.phase import (
    Abort,
    Clear,
    Connecting,
    Phase,
    SessionMachine,
    SetLogFile,
    StartFailed,
    Streaming,
    StuckResolved,
    SubmitStart,
    current_error,
    current_execution_info,
    is_streaming,
    last_result,
    task_id_of,
)
from taskrelay.core.scheduler import TaskQueueScheduler
from taskrelay.core.stream import EventSource, EventStreamConsumer, SSEEventSource
from taskrelay.core.timers import PeriodicTimer
from taskrelay.core.visibility import VisibilityManager
from taskrelay.integrations.build_parser import parse_build_output

logger = logging.getLogger("taskrelay.session")

# Background jobs that report an outcome and get to finish at close
REPORTING_JOB_PREFIXES = ("complete:", "callback:")


class Agent(Protocol):
    async def start_task(
        self, project_path: str, prompt: str, resume_session_id: Optional[str] = None,
    ) -> StartResponse: ...


class Registry(Protocol):
    async def start(self, task_id: str, session_id: str, label: str | None = None) -> RegistryStartResult: ...
    async def complete(self, task_id: str, session_id: str, success: bool) -> bool: ...
    async def heartbeat(self, task_id: str) -> bool: ...
    async def status(self, task_id: str) -> RegistryStatus: ...
    async def clear(self, session_id: str) -> int: ...


class TaskSession:

    def __init__(
        self,
        instance_id: str,
        project_path: str,
        agent: Agent,
        registry: Registry,
        *,
        source: Optional[EventSource] = None,
        timings: Optional[SessionTimings] = None,
        build_parser: Callable[[str], Any] = parse_build_output,
        callbacks: Optional[CallbackRegistry] = None,
        prompt_prefix: str = "",
        auto_start: bool = False,
        visible: bool = True,
        on_task_start: Optional[Callable[[str], None]] = None,
        on_task_complete: Optional[Callable[[str, bool], None]] = None,
        on_queue_empty: Optional[Callable[[], None]] = None,
        on_streaming_change: Optional[Callable[[bool], None]] = None,
        on_batch_flushed: Optional[Callable[[int], None]] = None,
        on_stream_lost: Optional[Callable[[Optional[str]], None]] = None,
    ) -> None:
        self.instance_id = instance_id
        self.project_path = project_path
        self.agent = agent
        self.registry = registry
        self.timings = timings or SessionTimings()
        self.build_parser = build_parser
        self.callbacks = callbacks
        self._auto_start = auto_start
        self._visible = visible

        self._on_task_start = on_task_start
        self._on_task_complete = on_task_complete
        self._on_queue_empty = on_queue_empty
        self._on_streaming_change = on_streaming_change
        self._on_stream_lost_hook = on_stream_lost

        self._ids = itertools.count(1)
        self._logs: List[LogEntry] = []
        self._file_changes: List[FileChange] = []
        self._file_change_keys: Set[tuple[str, Optional[str]]] = set()
        self._output: List[str] = []
        self._stream_url: Optional[str] = None
        self._background: Set[asyncio.Task] = set()

        self.machine = SessionMachine()
        self.machine.subscribe(self._on_phase_change)
        self.build_cache: BoundedCache[str, Any] = BoundedCache(self.timings.build_cache_capacity)
        self.batcher: LogBatcher[LogEntry] = LogBatcher(
            self._logs.extend,
            on_flushed=on_batch_flushed,
            window=self.timings.log_batch_window,
            max_size=self.timings.log_batch_max_size,
        )
        self.dispatcher = EventDispatcher(self)
        self.consumer = EventStreamConsumer(
            source or SSEEventSource(), self._on_stream_event, on_lost=self._on_stream_lost,
        )
        self.heartbeat = PeriodicTimer("heartbeat", self.timings.heartbeat_interval, self._send_heartbeat)
        self.stuck_check = PeriodicTimer("stuck-check", self.timings.stuck_check_interval, self._check_stuck)
        self.scheduler = TaskQueueScheduler(self, self.timings.next_task_delay, prompt_prefix)
        self.visibility = VisibilityManager(self)

    # ── Projections ──────────────────────────────────────────

    @property
    def phase(self) -> Phase:
        return self.machine.phase

    @property
    def is_streaming(self) -> bool:
        return is_streaming(self.machine.state)

    @property
    def current_task_id(self) -> Optional[str]:
        return task_id_of(self.machine.phase)

    @property
    def session_id(self) -> Optional[str]:
        return self.machine.state.session_id

    @property
    def log_file_path(self) -> Optional[str]:
        return self.machine.state.log_file_path

    @property
    def execution_info(self) -> Optional[ExecutionInfo]:
        return current_execution_info(self.machine.state)

    @property
    def last_result(self) -> Optional[ExecutionResult]:
        return last_result(self.machine.state)

    @property
    def error(self) -> Optional[str]:
        return current_error(self.machine.state)

    @property
    def logs(self) -> List[LogEntry]:
        return list(self._logs)

    def tail(self, limit: Optional[int] = None) -> List[LogEntry]:
        if limit is None:
            limit = self.timings.log_tail_limit
        if limit <= 0:
            return []
        return self._logs[-limit:]

    @property
    def file_changes(self) -> List[FileChange]:
        return list(self._file_changes)

    @property
    def stream_url(self) -> Optional[str]:
        return self._stream_url

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def auto_start(self) -> bool:
        return self._auto_start

    # ── Logs, output and file changes ────────────────────────

    def next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def add_log(
        self,
        kind: str,
        content: str,
        *,
        timestamp: Optional[int] = None,
        entry_id: Optional[str] = None,
        tool_name: Optional[str] = None,
        tool_input: Optional[Dict[str, Any]] = None,
        model: Optional[str] = None,
    ) -> LogEntry:
        entry = LogEntry(
            id=entry_id or self.next_id(kind),
            type=kind,
            content=content,
            timestamp=timestamp if timestamp is not None else now_ms(),
            tool_name=tool_name,
            tool_input=tool_input,
            model=model,
        )
        self.batcher.add(entry)
        return entry

    def append_output(self, text: str) -> None:
        self._output.append(text)

    def reset_output(self) -> None:
        self._output.clear()

    @property
    def output(self) -> str:
        return "".join(self._output)

    def record_file_change(
        self,
        file_path: str,
        change_type: str,
        *,
        tool_use_id: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> bool:
        key = (file_path, tool_use_id)
        if key in self._file_change_keys:
            return False
        self._file_change_keys.add(key)
        self._file_changes.append(FileChange(
            id=self.next_id("fc"),
            session_id=self.instance_id,
            file_path=file_path,
            change_type=change_type,
            timestamp=timestamp if timestamp is not None else now_ms(),
            tool_use_id=tool_use_id,
        ))
        return True

    # ── Hooks ────────────────────────────────────────────────

    def _call_hook(self, hook: Optional[Callable[..., None]], *args: Any) -> None:
        if hook is None:
            return
        try:
            hook(*args)
        except Exception:  # noqa: BLE001
            logger.exception("Session hook %s failed", getattr(hook, "__name__", hook))

    def notify_task_start(self, task_id: str) -> None:
        self._call_hook(self._on_task_start, task_id)

    def notify_queue_empty(self) -> None:
        self._call_hook(self._on_queue_empty)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        """Run *coro* in the background; failures are logged, never raised."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background job %s failed: %s", task.get_name(), exc, exc_info=exc)

    # ── Phase-driven resources ───────────────────────────────

    def _on_phase_change(self, previous: Phase, current: Phase) -> None:
        self.sync_timers()
        was = isinstance(previous, (Connecting, Streaming))
        now = isinstance(current, (Connecting, Streaming))
        if was != now:
            self._call_hook(self._on_streaming_change, now)
        self.scheduler.evaluate()

    def sync_timers(self) -> None:
        """Heartbeat runs iff streaming a task while visible; the stuck check also needs autonomous mode."""
        phase = self.machine.phase
        task_id = phase.task_id if isinstance(phase, Streaming) else None
        if task_id and self._visible:
            self.heartbeat.start()
        else:
            self.heartbeat.stop()
        if task_id and self._visible and self._auto_start:
            self.stuck_check.start()
        else:
            self.stuck_check.stop()

    def _on_stream_event(self, event: StreamEvent) -> None:
        self.dispatcher.dispatch(event)

    def _on_stream_lost(self) -> None:
        """The stream ended mid-task. The phase stays put; the stuck check reconciles queued tasks."""
        phase = self.machine.phase
        if not isinstance(phase, (Connecting, Streaming)):
            return
        logger.warning("Stream %s dropped before the task finished", self._stream_url)
        self.add_log("error", "Stream ended before the task finished")
        self._call_hook(self._on_stream_lost_hook, phase.task_id)

    async def _send_heartbeat(self) -> None:
        task_id = task_id_of(self.machine.phase)
        if task_id and isinstance(self.machine.phase, Streaming):
            if not await self.registry.heartbeat(task_id):
                logger.debug("Heartbeat for %s not acknowledged", task_id)

    async def _check_stuck(self) -> None:
        phase = self.machine.phase
        if not isinstance(phase, Streaming) or not phase.task_id:
            return
        task_id = phase.task_id
        status = await self.registry.status(task_id)
        current = self.machine.phase
        if not isinstance(current, Streaming) or current.task_id != task_id:
            return
        if status.is_terminal:
            success = status.status == "completed"
            logger.warning("Registry reports %s as %s while still streaming; resolving", task_id, status.status)
            self._detach_stream()
            self.machine.send(StuckResolved(success=success))
            self.add_log("system", f"Task finished while disconnected ({status.status})")
            self._finish_task(task_id, success, notify_registry=False)
        elif status.is_stale:
            logger.warning("Task %s has gone stale in the registry; presuming the agent dead", task_id)
            self._detach_stream()
            self.machine.send(StuckResolved(success=False))
            self.add_log("error", "Task timed out without a heartbeat")
            self._finish_task(task_id, False, notify_registry=True)

    # ── Lifecycle ────────────────────────────────────────────

    def connect(self, stream_url: str) -> int:
        self._stream_url = stream_url
        return self.consumer.open(stream_url)

    def _detach_stream(self) -> None:
        self.consumer.close()
        self._stream_url = None

    def _finish_task(self, task_id: str, success: bool, *, notify_registry: bool) -> None:
        if notify_registry:
            self.spawn(self.registry.complete(task_id, self.instance_id, success), name=f"complete:{task_id}")
        self.scheduler.task_finished(task_id, success)
        self._call_hook(self._on_task_complete, task_id, success)

    def settle_stream(self, task_id: Optional[str], *, success: bool, run_callbacks: bool) -> None:
        """Wrap up after a terminal stream event that the state machine accepted."""
        self._stream_url = None
        if run_callbacks:
            self._resolve_callback(self.output)
        self.reset_output()
        if task_id:
            self._finish_task(task_id, success, notify_registry=True)

    def _resolve_callback(self, output: str) -> None:
        if self.callbacks is None:
            return
        found = extract_callback_payload(output)
        if found is None:
            return
        callback_id, payload = found
        self.spawn(self._submit_callback(callback_id, payload), name=f"callback:{callback_id}")

    async def _submit_callback(self, callback_id: str, payload: str) -> None:
        outcome = await self.callbacks.resolve(callback_id, payload)
        if outcome.success:
            self.add_log("system", "Callback submitted successfully")
        else:
            self.add_log("error", f"Callback failed: {outcome.error}")

    def fail_start(self, error: str, task_id: Optional[str]) -> None:
        if not self.machine.send(StartFailed(error=error)):
            return
        logger.error("Start failed%s: %s", f" for {task_id}" if task_id else "", error)
        if task_id:
            self._finish_task(task_id, False, notify_registry=True)

    async def start_remote(self, prompt: str, task_id: Optional[str], resume_session_id: Optional[str]) -> bool:
        """Issue the task-start call for the connecting phase and open its stream."""
        if not self._still_connecting(task_id):
            return False
        try:
            response = await self.agent.start_task(self.project_path, prompt, resume_session_id)
        except AgentStartError as exc:
            self.fail_start(str(exc) or "Failed to start task", task_id)
            return False
        if not self._still_connecting(task_id):
            logger.info("Session moved on while starting; dropping %s", response.stream_url)
            return False
        if response.log_file_path:
            self.machine.send(SetLogFile(path=response.log_file_path))
        if not self._visible:
            # Attached by the visibility manager once the view is shown
            self._stream_url = response.stream_url
            logger.info("View hidden while starting; deferring %s", response.stream_url)
            return True
        self.connect(response.stream_url)
        return True

    def _still_connecting(self, task_id: Optional[str]) -> bool:
        phase = self.machine.phase
        return isinstance(phase, Connecting) and phase.task_id == task_id

    async def submit_prompt(self, prompt: str, resume: bool = True) -> bool:
        """Run an ad-hoc prompt outside the queue. Returns False if the session is busy."""
        if not self.machine.send(SubmitStart()):
            logger.warning("Session busy; prompt not submitted")
            return False
        self.reset_output()
        self.add_log("user", prompt)
        return await self.start_remote(prompt, None, self.session_id if resume else None)

    def abort(self) -> bool:
        """Stop following the active task and report it failed. Returns False if nothing streams."""
        phase = self.machine.phase
        if not isinstance(phase, Streaming):
            return False
        self._detach_stream()
        self.machine.send(Abort())
        self.reset_output()
        if phase.task_id:
            self._finish_task(phase.task_id, False, notify_registry=True)
        return True

    async def clear(self) -> None:
        """Forget everything about this session, including its registry records."""
        cleared = await self.registry.clear(self.instance_id)
        logger.info("Cleared %d registry record(s) for %s", cleared, self.instance_id)
        self.batcher.reset()
        self._logs.clear()
        self._file_changes.clear()
        self._file_change_keys.clear()
        self.build_cache.clear()
        self.reset_output()
        self.scheduler.reset()
        self._detach_stream()
        self.heartbeat.stop()
        self.stuck_check.stop()
        self.machine.send(Clear())

    def set_visible(self, visible: bool) -> None:
        if visible == self._visible:
            return
        self._visible = visible
        if visible:
            self.visibility.on_show()
        else:
            self.visibility.on_hide()

    def set_auto_start(self, auto_start: bool) -> None:
        self._auto_start = auto_start
        self.sync_timers()
        self.scheduler.evaluate()

    def set_queue(self, tasks: List[Task]) -> None:
        self.scheduler.set_queue(tasks)

    async def close(self) -> None:
        """Release every client-side resource. The remote task is left alone."""
        self.consumer.close()
        self.heartbeat.stop()
        self.stuck_check.stop()
        self.scheduler.cancel_pending()
        self.batcher.flush()
        # Registry completions and callback submissions get a short grace period
        reporting = [t for t in self._background if t.get_name().startswith(REPORTING_JOB_PREFIXES)]
        if reporting:
            _, unfinished = await asyncio.wait(reporting, timeout=self.timings.close_grace_period)
            if unfinished:
                logger.warning("Gave up on %d pending report(s) at close", len(unfinished))
        pending = list(self._background)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.batcher.flush()
