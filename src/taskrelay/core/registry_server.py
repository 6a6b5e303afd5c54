"""In-memory task registry served over HTTP.

Tracks which task each session is running so a client can detect a
conflicting start, keep a liveness record fresh and ask whether a task it
lost track of has actually finished. Records live for ``RECORD_TTL`` and
are swept on every request; a running record older than ``TASK_TIMEOUT``
(measured from its last heartbeat) is stale.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from taskrelay import __version__
from taskrelay.core.constants import RECORD_TTL, TASK_TIMEOUT
from taskrelay.core.models import RegistryRecord

logger = logging.getLogger("taskrelay.registry")


def _success(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"success": True, "data": data}, status_code=status_code)


def _error(message: str, status_code: int = 500, details: Any = None) -> JSONResponse:
    body: Dict[str, Any] = {"success": False, "error": message}
    if details is not None:
        body["details"] = details
    return JSONResponse(body, status_code=status_code)


class TaskRegistryStore:
    """Registry records keyed by task id."""

    def __init__(
        self,
        *,
        record_ttl: float = RECORD_TTL,
        task_timeout: float = TASK_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.record_ttl_ms = int(record_ttl * 1000)
        self.task_timeout_ms = int(task_timeout * 1000)
        self._clock = clock
        self._records: Dict[str, RegistryRecord] = {}

    def now(self) -> int:
        return int(self._clock() * 1000)

    def cleanup(self) -> int:
        now = self.now()
        expired = [k for k, r in self._records.items() if now - r.started_at > self.record_ttl_ms]
        for key in expired:
            del self._records[key]
        if expired:
            logger.debug("Swept %d expired registry record(s)", len(expired))
        return len(expired)

    def is_stale(self, record: RegistryRecord) -> bool:
        return record.status == "running" and self.now() - record.started_at > self.task_timeout_ms

    def get(self, task_id: str) -> Optional[RegistryRecord]:
        return self._records.get(task_id)

    def for_session(self, session_id: str) -> List[RegistryRecord]:
        return [r for r in self._records.values() if r.session_id == session_id]

    def running_for_session(self, session_id: str) -> Optional[RegistryRecord]:
        for record in self._records.values():
            if record.session_id == session_id and record.status == "running":
                return record
        return None

    def put(self, record: RegistryRecord) -> None:
        self._records[record.task_id] = record

    def delete(self, task_id: str) -> bool:
        return self._records.pop(task_id, None) is not None

    def clear_session(self, session_id: str) -> int:
        keys = [k for k, r in self._records.items() if r.session_id == session_id]
        for key in keys:
            del self._records[key]
        return len(keys)

    def summary(self) -> Dict[str, int]:
        records = list(self._records.values())
        return {
            "totalTasks": len(records),
            "running": len([r for r in records if r.status == "running"]),
            "completed": len([r for r in records if r.status == "completed"]),
            "failed": len([r for r in records if r.status == "failed"]),
        }


class RegistryAction(BaseModel):
    action: Optional[str] = None
    taskId: Optional[str] = None
    sessionId: Optional[str] = None
    status: Optional[str] = None
    requirementName: Optional[str] = None


def create_registry_app(store: Optional[TaskRegistryStore] = None) -> FastAPI:
    store = store or TaskRegistryStore()
    app = FastAPI(title="taskrelay registry", version=__version__)
    app.state.store = store

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/cli-task-registry")
    def query(taskId: Optional[str] = None, sessionId: Optional[str] = None) -> JSONResponse:
        store.cleanup()
        if taskId:
            record = store.get(taskId)
            if record is None:
                return _success({"found": False, "taskId": taskId})
            return _success({"found": True, **record.to_dict(), "isStale": store.is_stale(record)})
        if sessionId:
            return _success({"sessionId": sessionId, "tasks": [r.to_dict() for r in store.for_session(sessionId)]})
        return _success(store.summary())

    @app.post("/api/cli-task-registry")
    def mutate(req: RegistryAction) -> JSONResponse:
        if not req.taskId:
            return _error("taskId is required", 400)
        store.cleanup()
        task_id = req.taskId

        if req.action == "start":
            if not req.sessionId:
                return _error("sessionId is required for start", 400)
            running = store.running_for_session(req.sessionId)
            if running is not None and running.task_id != task_id:
                if not store.is_stale(running):
                    logger.info("Rejecting start of %s: %s still running", task_id, running.task_id)
                    return _error("Session already has a running task", 409, {"runningTask": running.to_dict()})
                logger.warning("Replacing stale task %s with %s", running.task_id, task_id)
                running.status = "failed"
                running.completed_at = store.now()
            record = RegistryRecord(
                task_id=task_id,
                session_id=req.sessionId,
                status="running",
                started_at=store.now(),
                requirement_name=req.requirementName,
            )
            store.put(record)
            return _success({"record": record.to_dict()})

        if req.action == "complete":
            status = "failed" if req.status == "failed" else "completed"
            record = store.get(task_id)
            if record is None:
                now = store.now()
                record = RegistryRecord(
                    task_id=task_id,
                    session_id=req.sessionId or "unknown",
                    status=status,
                    started_at=now,
                    completed_at=now,
                )
                store.put(record)
                return _success({"record": record.to_dict(), "wasUntracked": True})
            record.status = status
            record.completed_at = store.now()
            return _success({"record": record.to_dict()})

        if req.action == "heartbeat":
            record = store.get(task_id)
            if record is not None and record.status == "running":
                record.started_at = store.now()
                return _success({"record": record.to_dict()})
            return _error("Task not found or not running")

        if req.action == "clear":
            if not req.sessionId:
                return _error("sessionId is required for clear", 400)
            cleared = store.clear_session(req.sessionId)
            logger.info("Cleared %d record(s) for session %s", cleared, req.sessionId)
            return _success({"cleared": cleared})

        return _error("Invalid action", 400)

    @app.delete("/api/cli-task-registry")
    def delete(taskId: Optional[str] = None) -> JSONResponse:
        if not taskId:
            return _error("taskId is required", 400)
        return _success({"deleted": store.delete(taskId), "taskId": taskId})

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Task registry error on %s %s", request.method, request.url.path)
        return _error(str(exc) or "Internal error")

    return app
