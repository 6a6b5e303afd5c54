"""Single-flight scheduler for the task queue.

The caller hands over a (possibly changing) list of tasks. While the
session is idle, visible and in autonomous mode, the first pending task
is dispatched after a settle delay. Every task id is dispatched at most
once per session: the idempotency guard is only reset by ``reset()``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, List, Optional, Set

from taskrelay.core.models import Task, now_ms
from taskrelay.core.phase import TaskStart

if TYPE_CHECKING:
    from taskrelay.core.session import TaskSession

logger = logging.getLogger("taskrelay.scheduler")


class TaskQueueScheduler:

    def __init__(self, session: "TaskSession", delay: float, prompt_prefix: str = "") -> None:
        self._session = session
        self.delay = delay
        self.prompt_prefix = prompt_prefix
        self._queue: List[Task] = []
        self._dispatched: Set[str] = set()
        self._tasks: Dict[str, Task] = {}
        self._pending: Optional[asyncio.TimerHandle] = None
        self._pending_task_id: Optional[str] = None
        self._empty_notified = False

    @property
    def queue(self) -> List[Task]:
        return list(self._queue)

    @property
    def pending_task_id(self) -> Optional[str]:
        """Id of the task waiting out the settle delay, if any."""
        return self._pending_task_id

    def was_dispatched(self, task_id: str) -> bool:
        return task_id in self._dispatched

    def set_queue(self, tasks: List[Task]) -> None:
        self._queue = list(tasks)
        self.evaluate()

    def next_pending(self) -> Optional[Task]:
        for task in self._queue:
            if task.status == "pending" and task.id not in self._dispatched:
                return task
        return None

    def evaluate(self) -> None:
        """Re-plan the next dispatch from the current queue and session state."""
        self.cancel_pending()
        session = self._session
        if not session.visible or session.is_streaming or not self._queue:
            return
        if not session.auto_start:
            return
        task = self.next_pending()
        if task is not None:
            self._empty_notified = False
            self._pending_task_id = task.id
            self._pending = asyncio.get_running_loop().call_later(self.delay, self._fire, task)
            logger.debug("Task %s scheduled in %.3fs", task.id, self.delay)
        elif not self._empty_notified:
            self._empty_notified = True
            logger.info("Task queue has no pending tasks")
            session.notify_queue_empty()

    def cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        self._pending_task_id = None

    def _fire(self, task: Task) -> None:
        self._pending = None
        self._pending_task_id = None
        session = self._session
        if not session.visible or not session.auto_start:
            return
        session.spawn(self.dispatch(task), name=f"dispatch:{task.id}")

    async def dispatch(self, task: Task) -> bool:
        """Start *task* on the remote agent. Returns True once its stream is open."""
        if task.id in self._dispatched:
            logger.info("Task %s already dispatched; skipping", task.id)
            return False
        session = self._session
        if session.is_streaming:
            logger.debug("Session busy; task %s stays queued", task.id)
            return False
        self._dispatched.add(task.id)

        if not session.machine.send(TaskStart(task_id=task.id)):
            return False
        task.status = "running"
        task.started_at = now_ms()
        self._tasks[task.id] = task
        session.reset_output()
        session.notify_task_start(task.id)

        registry = session.registry
        started = await registry.start(task.id, session.instance_id, task.label)
        if started.is_conflict:
            stale_id = started.running_task.task_id
            logger.warning("Registry has %s running for this session; failing it before %s", stale_id, task.id)
            await registry.complete(stale_id, session.instance_id, False)
            started = await registry.start(task.id, session.instance_id, task.label)
            if started.is_conflict:
                session.fail_start(
                    started.error or f"Session already has a running task ({started.running_task.task_id})",
                    task.id,
                )
                return False
        elif not started.success:
            logger.warning("Registry start for %s failed (%s); continuing untracked", task.id, started.error)

        resume_id = session.session_id
        prefix = self.prompt_prefix if resume_id is None else ""
        session.add_log("system", f"Starting: {task.label}")
        return await session.start_remote(f"{prefix}{task.prompt}", task.id, resume_id)

    def task_finished(self, task_id: str, success: bool) -> None:
        task = self._tasks.get(task_id)
        if task is None:
            return
        task.status = "completed" if success else "failed"
        task.completed_at = now_ms()

    def reset(self) -> None:
        self.cancel_pending()
        self._dispatched.clear()
        self._tasks.clear()
        self._empty_notified = False
