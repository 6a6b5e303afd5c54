from __future__ import annotations

import asyncio
import itertools
import json
from typing import Dict, List, Optional

import pytest

from taskrelay.core.constants import SessionTimings
from taskrelay.core.errors import AgentStartError
from taskrelay.core.models import (
    RegistryRecord,
    RegistryStartResult,
    RegistryStatus,
    StartResponse,
)
from taskrelay.core.session import TaskSession


class FakeAgent:
    """Answers task-start calls with sequential stream URLs."""

    def __init__(self) -> None:
        self.calls: List[dict] = []
        self.error: Optional[str] = None
        self._ids = itertools.count(1)

    async def start_task(self, project_path: str, prompt: str, resume_session_id: Optional[str] = None) -> StartResponse:
        self.calls.append({"project_path": project_path, "prompt": prompt, "resume_session_id": resume_session_id})
        if self.error:
            raise AgentStartError(self.error, status_code=500)
        n = next(self._ids)
        return StartResponse(
            execution_id=f"exec-{n}",
            stream_url=f"http://agent/stream/exec-{n}",
            log_file_path=f"/logs/exec-{n}.log",
        )


class FakeRegistry:
    """Records every call. ``start_results`` is consumed in order, then starts succeed."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.start_results: List[RegistryStartResult] = []
        self.status_result = RegistryStatus(found=True, task_id="", status="running")

    async def start(self, task_id: str, session_id: str, label: Optional[str] = None) -> RegistryStartResult:
        self.calls.append(("start", task_id))
        if self.start_results:
            return self.start_results.pop(0)
        return RegistryStartResult(success=True)

    async def complete(self, task_id: str, session_id: str, success: bool) -> bool:
        self.calls.append(("complete", task_id, success))
        return True

    async def heartbeat(self, task_id: str) -> bool:
        self.calls.append(("heartbeat", task_id))
        return True

    async def status(self, task_id: str) -> RegistryStatus:
        self.calls.append(("status", task_id))
        return self.status_result

    async def clear(self, session_id: str) -> int:
        self.calls.append(("clear", session_id))
        return 1

    def named(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]


def conflict(running_task_id: str) -> RegistryStartResult:
    return RegistryStartResult(
        success=False,
        running_task=RegistryRecord(task_id=running_task_id, session_id="terminal-1", status="running", started_at=0),
        error="Session already has a running task",
    )


class FakeSource:
    """Event source fed by the test. One queue per URL, so a reconnect resumes the same stream."""

    def __init__(self) -> None:
        self.queues: Dict[str, asyncio.Queue] = {}
        self.opened: List[str] = []
        self.closed: List[str] = []

    def _queue(self, url: str) -> asyncio.Queue:
        return self.queues.setdefault(url, asyncio.Queue())

    def push(self, url: str, event_type: str, /, **data) -> None:
        self._queue(url).put_nowait(json.dumps({"type": event_type, "data": data, "timestamp": 1000}))

    def push_raw(self, url: str, raw: str) -> None:
        self._queue(url).put_nowait(raw)

    def end(self, url: str) -> None:
        self._queue(url).put_nowait(None)

    async def frames(self, url: str):
        self.opened.append(url)
        queue = self._queue(url)
        try:
            while True:
                raw = await queue.get()
                if raw is None:
                    return
                yield raw
        finally:
            self.closed.append(url)


def fast_timings(**overrides) -> SessionTimings:
    values = dict(
        heartbeat_interval=0.02,
        stuck_check_interval=0.02,
        next_task_delay=0.01,
    )
    values.update(overrides)
    return SessionTimings(**values)


async def settle(seconds: float = 0.05) -> None:
    """Let scheduled callbacks and background tasks run."""
    await asyncio.sleep(seconds)


@pytest.fixture
def agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def make_session(agent, registry, source):
    """Build a TaskSession wired to the fakes. Must be called inside a running loop."""

    def _make(**kwargs) -> TaskSession:
        kwargs.setdefault("timings", fast_timings())
        kwargs.setdefault("source", source)
        return TaskSession("terminal-1", "/work/project", agent, registry, **kwargs)

    return _make
