"""Structured task callbacks.

A queued prompt can ask the agent to finish by printing a JSON block
between ``@@CALLBACK:<id>`` and ``@@END_CALLBACK`` markers. When the task
completes, the session scans the accumulated assistant output for that
block, merges the callback's static fields into the payload and submits
it to the callback's URL.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import itertools
import json
import logging
import re
from typing import Any, Dict, Optional, Tuple

import httpx

logger = logging.getLogger("taskrelay.callbacks")

_CALLBACK_BLOCK = re.compile(r"@@CALLBACK:(cb-\S+)\s*\n([\s\S]*?)\n\s*@@END_CALLBACK")


@dataclass
class TaskCallback:
    id: str
    url: str
    method: str = "POST"                # POST | PATCH
    static_fields: Dict[str, Any] = field(default_factory=dict)
    schema_hint: str = ""


@dataclass
class CallbackOutcome:
    success: bool
    error: Optional[str] = None
    data: Any = None


def extract_callback_payload(text: str) -> Optional[Tuple[str, str]]:
    """Return ``(callback_id, raw_payload)`` for the first callback block in *text*."""
    match = _CALLBACK_BLOCK.search(text)
    if not match:
        return None
    return match.group(1), match.group(2).strip()


class CallbackRegistry:
    """Callbacks registered by one session, keyed by id."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None, timeout: float = 15.0) -> None:
        self._callbacks: Dict[str, TaskCallback] = {}
        self._ids = itertools.count(1)
        self._transport = transport
        self._timeout = timeout

    def register(
        self,
        url: str,
        *,
        method: str = "POST",
        static_fields: Optional[Dict[str, Any]] = None,
        schema_hint: str = "",
    ) -> TaskCallback:
        callback = TaskCallback(
            id=f"cb-{next(self._ids)}",
            url=url,
            method=method.upper(),
            static_fields=dict(static_fields or {}),
            schema_hint=schema_hint,
        )
        self._callbacks[callback.id] = callback
        return callback

    def get(self, callback_id: str) -> Optional[TaskCallback]:
        return self._callbacks.get(callback_id)

    def remove(self, callback_id: str) -> None:
        self._callbacks.pop(callback_id, None)

    def __len__(self) -> int:
        return len(self._callbacks)

    @staticmethod
    def build_prompt_section(callback: TaskCallback) -> str:
        """Prompt text telling the agent how to submit structured results."""
        static_note = ""
        if callback.static_fields:
            lines = "\n".join(f"- `{k}`: `{json.dumps(v)}`" for k, v in callback.static_fields.items())
            static_note = f"\nThe following fields will be added automatically, do NOT include them:\n{lines}"
        return (
            "## Submission\n\n"
            "After completing your work, submit the results by outputting a JSON block "
            "wrapped in callback markers.\n\n"
            "**Format:**\n"
            "```\n"
            f"@@CALLBACK:{callback.id}\n"
            "{\n"
            f"{callback.schema_hint}\n"
            "}\n"
            "@@END_CALLBACK\n"
            "```\n"
            f"{static_note}\n\n"
            "**Rules:**\n"
            "- Output valid JSON between the markers, no comments, no trailing commas\n"
            "- The markers MUST appear on their own lines, exactly as shown\n"
            "- The system will automatically submit this to the API, do NOT use curl"
        )

    async def resolve(self, callback_id: str, raw_payload: str) -> CallbackOutcome:
        """Submit a payload for *callback_id*. The callback is removed on success."""
        callback = self._callbacks.get(callback_id)
        if callback is None:
            return CallbackOutcome(False, error=f"Unknown callback: {callback_id}")
        try:
            parsed = json.loads(raw_payload)
        except json.JSONDecodeError:
            return CallbackOutcome(False, error="Invalid JSON in callback payload")
        if not isinstance(parsed, dict):
            return CallbackOutcome(False, error="Callback payload must be a JSON object")

        # Static fields win so the agent cannot override ids like moduleId
        body = {**parsed, **callback.static_fields}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.request(callback.method, callback.url, json=body)
            result = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Callback %s submission failed: %s", callback_id, exc)
            return CallbackOutcome(False, error=str(exc) or "Network error")
        if isinstance(result, dict) and result.get("success"):
            self.remove(callback_id)
            return CallbackOutcome(True, data=result.get("data"))
        error = result.get("error") if isinstance(result, dict) else None
        return CallbackOutcome(False, error=error or "API returned failure")
