"""Task-start call against the remote coding agent.

``POST /api/claude-terminal/query`` with ``{projectPath, prompt,
resumeSessionId?}`` answers ``{executionId, streamUrl, logFilePath?}``
inside the ``{success, data}`` envelope. The stream URL is usually
relative to the agent's base URL.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from taskrelay.core.errors import AgentStartError
from taskrelay.core.models import StartResponse

logger = logging.getLogger("taskrelay.agent_client")

QUERY_PATH = "/api/claude-terminal/query"


class AgentClient:

    def __init__(
        self,
        base_url: str,
        *,
        path: str = QUERY_PATH,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.path = path
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    def absolute_url(self, url: str) -> str:
        if url.startswith(("http://", "https://")):
            return url
        return f"{self.base_url}/{url.lstrip('/')}"

    async def start_task(
        self,
        project_path: str,
        prompt: str,
        resume_session_id: Optional[str] = None,
    ) -> StartResponse:
        payload: dict[str, Any] = {"projectPath": project_path, "prompt": prompt}
        if resume_session_id:
            payload["resumeSessionId"] = resume_session_id
        try:
            resp = await self._client.post(self.path, json=payload)
        except httpx.HTTPError as exc:
            raise AgentStartError(f"Failed to reach agent: {exc}") from exc
        try:
            body = resp.json()
        except ValueError:
            raise AgentStartError(f"Agent returned HTTP {resp.status_code}", status_code=resp.status_code) from None
        if not isinstance(body, dict) or not body.get("success"):
            message = body.get("error") if isinstance(body, dict) else None
            raise AgentStartError(message or f"Agent returned HTTP {resp.status_code}", status_code=resp.status_code)
        data = body.get("data") or {}
        stream_url = data.get("streamUrl")
        if not stream_url:
            raise AgentStartError("Agent response is missing streamUrl", status_code=resp.status_code)
        response = StartResponse(
            execution_id=str(data.get("executionId", "")),
            stream_url=self.absolute_url(stream_url),
            log_file_path=data.get("logFilePath") or None,
        )
        logger.info("Agent execution %s started", response.execution_id)
        return response
