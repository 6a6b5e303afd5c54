"""HTTP client for the task registry.

The registry is bookkeeping only: every failure here is logged and turned
into a neutral default so it can never block the task the user sees.

Wire protocol::

    POST {action: "start", taskId, sessionId, requirementName}
    POST {action: "complete", taskId, sessionId, status: "completed"|"failed"}
    POST {action: "heartbeat", taskId}
    POST {action: "clear", taskId, sessionId}
    GET  ?taskId=...      -> {found, status, isStale, ...}
    GET  ?sessionId=...   -> {sessionId, tasks: [...]}

Responses use the ``{success, data}`` / ``{success: false, error, details}``
envelope.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Optional

import httpx

from taskrelay.core.constants import TASK_TIMEOUT
from taskrelay.core.logging_config import log_registry_call
from taskrelay.core.models import (
    RegistryRecord,
    RegistryStartResult,
    RegistryStatus,
    now_ms,
)

logger = logging.getLogger("taskrelay.registry_client")

REGISTRY_PATH = "/api/cli-task-registry"


class TaskRegistryClient:

    def __init__(
        self,
        base_url: str,
        *,
        path: str = REGISTRY_PATH,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.path = path
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        action: str,
        *,
        task_id: str | None = None,
        session_id: str | None = None,
        **kwargs: Any,
    ) -> Optional[dict]:
        """Send one request and return the decoded JSON body, or None on transport failure."""
        started = time.monotonic()
        try:
            resp = await self._client.request(method, self.path, **kwargs)
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Registry %s failed: %s", action, exc)
            log_registry_call(action, task_id=task_id, session_id=session_id, ok=False, error=str(exc))
            return None
        duration_ms = (time.monotonic() - started) * 1000
        if not isinstance(body, dict):
            logger.error("Registry %s returned a non-object body (HTTP %s)", action, resp.status_code)
            log_registry_call(action, task_id=task_id, session_id=session_id, ok=False, duration_ms=duration_ms)
            return None
        ok = bool(body.get("success"))
        if not ok:
            logger.debug("Registry %s rejected (HTTP %s): %s", action, resp.status_code, body.get("error"))
        log_registry_call(
            action,
            task_id=task_id,
            session_id=session_id,
            ok=ok,
            error=None if ok else str(body.get("error", "")),
            duration_ms=duration_ms,
        )
        return body

    @staticmethod
    def _data(body: dict) -> dict:
        data = body.get("data")
        return data if isinstance(data, dict) else body

    async def start(self, task_id: str, session_id: str, label: str | None = None) -> RegistryStartResult:
        body = await self._request(
            "POST",
            "start",
            task_id=task_id,
            session_id=session_id,
            json={"action": "start", "taskId": task_id, "sessionId": session_id, "requirementName": label},
        )
        if body is None:
            return RegistryStartResult(success=False, error="Network error")
        if body.get("success"):
            record = self._data(body).get("record")
            return RegistryStartResult(
                success=True,
                record=RegistryRecord.from_dict(record) if isinstance(record, dict) else None,
            )
        details = body.get("details")
        running = body.get("runningTask")
        if running is None and isinstance(details, dict):
            running = details.get("runningTask")
        return RegistryStartResult(
            success=False,
            running_task=RegistryRecord.from_dict(running) if isinstance(running, dict) else None,
            error=body.get("error"),
        )

    async def complete(self, task_id: str, session_id: str, success: bool) -> bool:
        body = await self._request(
            "POST",
            "complete",
            task_id=task_id,
            session_id=session_id,
            json={
                "action": "complete",
                "taskId": task_id,
                "sessionId": session_id,
                "status": "completed" if success else "failed",
            },
        )
        return bool(body and body.get("success"))

    async def heartbeat(self, task_id: str) -> bool:
        body = await self._request(
            "POST",
            "heartbeat",
            task_id=task_id,
            json={"action": "heartbeat", "taskId": task_id},
        )
        return bool(body and body.get("success"))

    async def status(self, task_id: str) -> RegistryStatus:
        body = await self._request("GET", "status", task_id=task_id, params={"taskId": task_id})
        if not body or not body.get("success"):
            return RegistryStatus(found=False, task_id=task_id)
        data = self._data(body)
        return RegistryStatus(
            found=bool(data.get("found")),
            task_id=task_id,
            status=data.get("status"),
            is_stale=bool(data.get("isStale", False)),
            session_id=data.get("sessionId"),
        )

    async def clear(self, session_id: str) -> int:
        # taskId is required by the wire protocol even for a session-wide clear
        body = await self._request(
            "POST",
            "clear",
            session_id=session_id,
            json={"action": "clear", "taskId": "*", "sessionId": session_id},
        )
        if not body or not body.get("success"):
            return 0
        return int(self._data(body).get("cleared", 0) or 0)

    async def session_tasks(self, session_id: str) -> list[RegistryRecord]:
        body = await self._request("GET", "session", session_id=session_id, params={"sessionId": session_id})
        if not body or not body.get("success"):
            return []
        tasks = self._data(body).get("tasks") or []
        return [RegistryRecord.from_dict(t) for t in tasks if isinstance(t, dict)]

    async def has_running_task(self, session_id: str) -> Optional[RegistryRecord]:
        """Return the session's running record (with ``is_stale`` filled in), if any."""
        for record in await self.session_tasks(session_id):
            if record.status == "running":
                record.is_stale = now_ms() - record.started_at > TASK_TIMEOUT * 1000
                return record
        return None
