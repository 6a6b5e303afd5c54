"""Server-push event stream consumer.

The agent publishes progress as a ``text/event-stream`` where every
``data:`` payload is a JSON envelope ``{type, data, timestamp}``. The
consumer keeps at most one live connection, forwards decoded events in
arrival order and closes itself after a terminal ``result``/``error``.
"""
from __future__ import annotations

import asyncio
from contextlib import aclosing
import itertools
import json
import logging
from typing import AsyncGenerator, AsyncIterator, Callable, Optional, Protocol

import httpx

from taskrelay.core.models import StreamEvent, now_ms

logger = logging.getLogger("taskrelay.stream")


def decode_frame(raw: str) -> Optional[StreamEvent]:
    """Decode one SSE data payload. Returns None for anything malformed."""
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("Dropping non-JSON frame: %s", raw[:200])
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        logger.debug("Dropping frame without a type: %s", raw[:200])
        return None
    data = payload.get("data")
    timestamp = payload.get("timestamp")
    return StreamEvent(
        type=payload["type"],
        data=data if isinstance(data, dict) else {},
        timestamp=int(timestamp) if isinstance(timestamp, (int, float)) else now_ms(),
    )


class EventSource(Protocol):
    def frames(self, url: str) -> AsyncGenerator[str, None]:
        """Yield raw ``data:`` payloads from *url* until the server closes."""
        ...


class SSEEventSource:
    """Reads server-sent events over HTTP with httpx."""

    def __init__(
        self,
        base_url: str = "",
        *,
        connect_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.connect_timeout = connect_timeout
        self._transport = transport

    def resolve(self, url: str) -> str:
        if url.startswith(("http://", "https://")) or not self.base_url:
            return url
        return f"{self.base_url}/{url.lstrip('/')}"

    async def frames(self, url: str) -> AsyncGenerator[str, None]:
        # Reads can block for as long as the agent stays quiet
        timeout = httpx.Timeout(None, connect=self.connect_timeout)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            async with client.stream(
                "GET",
                self.resolve(url),
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
            ) as response:
                response.raise_for_status()
                data_lines: list[str] = []
                async for line in response.aiter_lines():
                    if line == "":
                        if data_lines:
                            yield "\n".join(data_lines)
                            data_lines = []
                        continue
                    if line.startswith("data:"):
                        data_lines.append(line[len("data:"):].lstrip())
                    # Comments (":") and event/id/retry fields carry nothing we use
                if data_lines:
                    yield "\n".join(data_lines)


class EventStreamConsumer:
    """Owns the session's single live stream connection.

    *on_lost* is called when the current connection ends without a
    terminal event, either because the server closed it or because the
    transport failed. Superseded or closed connections never report.
    """

    def __init__(
        self,
        source: EventSource,
        on_event: Callable[[StreamEvent], None],
        on_lost: Optional[Callable[[], None]] = None,
    ) -> None:
        self._source = source
        self._on_event = on_event
        self._on_lost = on_lost
        self._handles = itertools.count(1)
        self._handle: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        self._url: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    @property
    def handle(self) -> Optional[int]:
        return self._handle

    @property
    def url(self) -> Optional[str]:
        return self._url

    def open(self, url: str) -> int:
        """Open a connection to *url*, superseding any prior one."""
        self.close()
        handle = next(self._handles)
        self._handle = handle
        self._url = url
        self._task = asyncio.get_running_loop().create_task(
            self._pump(handle, url), name=f"stream:{handle}"
        )
        logger.info("Stream %d opened: %s", handle, url)
        return handle

    def close(self) -> None:
        task, handle = self._task, self._handle
        self._task = None
        self._handle = None
        if handle is not None:
            logger.debug("Stream %d closed", handle)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _pump(self, handle: int, url: str) -> None:
        finished = False
        try:
            async with aclosing(self._source.frames(url)) as frames:
                finished = await self._consume(handle, frames)
        except asyncio.CancelledError:
            raise
        except (httpx.HTTPError, OSError) as exc:
            logger.warning("Stream %d transport failure: %s", handle, exc)
        finally:
            current = self._handle == handle
            if current:
                self._handle = None
                self._task = None
        if current and not finished:
            self._report_lost(handle)

    async def _consume(self, handle: int, frames: AsyncIterator[str]) -> bool:
        """Forward frames until a terminal event. Returns False if the source ran dry first."""
        async for raw in frames:
            if self._handle != handle:
                return True
            event = decode_frame(raw)
            if event is None:
                continue
            try:
                self._on_event(event)
            except Exception:  # noqa: BLE001
                logger.exception("Stream event handler failed for %s", event.type)
            if event.is_terminal:
                if self._handle == handle:
                    self.close()
                return True
        logger.info("Stream %d ended without a terminal event", handle)
        return False

    def _report_lost(self, handle: int) -> None:
        if self._on_lost is None:
            return
        try:
            self._on_lost()
        except Exception:  # noqa: BLE001
            logger.exception("Stream %d loss handler failed", handle)
