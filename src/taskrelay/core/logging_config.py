"""Centralized logging configuration for taskrelay.

Sets up Python's logging system to write to both stdout and a rotating
log file in the configured log directory, plus a dedicated JSONL log of
every bookkeeping call made to the task registry.

Log directory structure::

    ~/.taskrelay/.logs/
    ├── taskrelay.log          # All Python logger output (rotating)
    └── registry-calls.log     # One JSON record per registry call
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
import time
from pathlib import Path
from typing import Optional

# Module-level log directory, set by setup_logging()
_log_dir: Optional[str] = None

registry_call_logger = logging.getLogger("taskrelay._registry_calls")


def get_log_dir() -> str:
    """Return the configured log directory, falling back to default."""
    if _log_dir:
        return _log_dir
    default = str(Path(os.path.expanduser("~")) / ".taskrelay" / ".logs")
    return os.getenv("TASKRELAY_LOG_DIR", default)


def clear_logs(log_dir: str) -> None:
    """Remove ``*.log`` files (and rotated backups) from the log directory.

    Called before any handlers are attached so there are no open-file
    conflicts.
    """
    if not os.path.isdir(log_dir):
        return
    for pattern in ("*.log", "*.log.*"):
        for path in glob.glob(os.path.join(log_dir, pattern)):
            try:
                os.remove(path)
            except OSError:
                pass


def setup_logging(log_dir: str, log_level: str = "info", *, clear_on_launch: bool = False) -> None:
    """Configure the logging system with both stdout and file handlers.

    This should be called once at application startup.
    """
    global _log_dir
    _log_dir = log_dir

    if clear_on_launch:
        clear_logs(log_dir)

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "taskrelay.log"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    _setup_jsonl_logger(
        registry_call_logger,
        os.path.join(log_dir, "registry-calls.log"),
    )

    logging.getLogger("taskrelay").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    """Configure a logger to write raw JSONL messages to a rotating file."""
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False
    logger_instance.handlers.clear()

    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger_instance.addHandler(handler)


def log_registry_call(
    action: str,
    *,
    task_id: str | None = None,
    session_id: str | None = None,
    ok: bool = True,
    error: str | None = None,
    duration_ms: float | None = None,
) -> None:
    """Record one registry bookkeeping call in the dedicated JSONL log."""
    record: dict[str, object] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "action": action,
        "ok": ok,
    }
    if task_id:
        record["task_id"] = task_id
    if session_id:
        record["session_id"] = session_id
    if duration_ms is not None:
        record["duration_ms"] = round(duration_ms, 1)
    if error:
        record["error"] = error[:2000]
    try:
        registry_call_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass
