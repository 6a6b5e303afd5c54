"""Tunable timings and limits for the task session.

All values in seconds unless noted otherwise.
"""
from __future__ import annotations

from dataclasses import dataclass

# Keep-alive ping for the active task while streaming
HEARTBEAT_INTERVAL = 2 * 60
# Poll of the registry's authoritative status while streaming autonomously
STUCK_CHECK_INTERVAL = 30
# Settle delay before dispatching the next queued task
NEXT_TASK_DELAY = 3
# Registry-side staleness: a running record with no heartbeat for this long is dead
TASK_TIMEOUT = 10 * 60
# Registry records older than this are dropped entirely
RECORD_TTL = 60 * 60

BUILD_CACHE_CAPACITY = 200          # entries
TOOL_RESULT_PREVIEW_CHARS = 200     # chars kept in the visible log entry
LOG_BATCH_MAX_SIZE = 500            # entries buffered before a forced flush
LOG_TAIL_LIMIT = 2000               # entries kept in the visible log list
CLOSE_GRACE_PERIOD = 2.0            # wait for pending registry reports on close


@dataclass
class SessionTimings:
    """Bundle of the tunables above, overridable per session."""
    heartbeat_interval: float = HEARTBEAT_INTERVAL
    stuck_check_interval: float = STUCK_CHECK_INTERVAL
    next_task_delay: float = NEXT_TASK_DELAY
    log_batch_window: float = 0.0
    log_batch_max_size: int = LOG_BATCH_MAX_SIZE
    log_tail_limit: int = LOG_TAIL_LIMIT
    build_cache_capacity: int = BUILD_CACHE_CAPACITY
    tool_result_preview_chars: int = TOOL_RESULT_PREVIEW_CHARS
    close_grace_period: float = CLOSE_GRACE_PERIOD
