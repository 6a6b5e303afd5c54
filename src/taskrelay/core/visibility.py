"""Suspends and restores client-side resources when the view is hidden.

Hiding never touches the registry: the remote task keeps running
unattended. Showing reconnects to the remembered stream if the session
still believes it is streaming, or attaches a stream whose start call
returned while hidden. The timers come back on their own since they
follow the phase.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from taskrelay.core.phase import Connecting, Streaming

if TYPE_CHECKING:
    from taskrelay.core.session import TaskSession

logger = logging.getLogger("taskrelay.visibility")


class VisibilityManager:

    def __init__(self, session: "TaskSession") -> None:
        self._session = session

    def on_hide(self) -> None:
        session = self._session
        if session.consumer.is_open:
            logger.info("View hidden; detaching from %s", session.stream_url)
        session.consumer.close()
        session.heartbeat.stop()
        session.stuck_check.stop()
        session.scheduler.cancel_pending()
        session.batcher.flush()

    def on_show(self) -> None:
        session = self._session
        url = session.stream_url
        if isinstance(session.phase, (Connecting, Streaming)) and url and not session.consumer.is_open:
            logger.info("View shown; reattaching to %s", url)
            session.consumer.open(url)
        session.sync_timers()
        session.scheduler.evaluate()
