from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
import uvicorn
from dotenv import load_dotenv

from taskrelay.core.config import Settings
from taskrelay.core.constants import SessionTimings
from taskrelay.core.errors import QueueFileError, TaskRelayError
from taskrelay.core.models import LogEntry, Task
from taskrelay.core.phase import SessionSeen
from taskrelay.core.session import TaskSession
from taskrelay.integrations.agent_client import AgentClient
from taskrelay.integrations.registry_client import TaskRegistryClient

logger = logging.getLogger("taskrelay.cli")

app = typer.Typer(add_completion=False)


def _load_env() -> None:
    load_dotenv()


def _setup_logging(settings: Settings) -> None:
    """Configure centralized logging to both stdout and log files."""
    from taskrelay.core.logging_config import setup_logging

    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)


def load_queue_file(path: Path) -> List[Task]:
    """Read tasks from a JSON file holding a list of tasks or ``{"tasks": [...]}``."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise QueueFileError(f"Cannot read queue file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise QueueFileError(f"Queue file {path} is not valid JSON: {exc}") from exc
    items = raw.get("tasks") if isinstance(raw, dict) else raw
    if not isinstance(items, list):
        raise QueueFileError(f"Queue file {path} must contain a list of tasks")
    tasks: List[Task] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise QueueFileError(f"Task #{index} in {path} is not an object")
        try:
            tasks.append(Task.from_dict(item))
        except (KeyError, ValueError) as exc:
            raise QueueFileError(f"Task #{index} in {path} is invalid: {exc}") from exc
    return tasks


def _echo_entries(entries: List[LogEntry]) -> None:
    for entry in entries:
        typer.echo(entry.format_line(), err=entry.type == "error")


class _Runner:
    """Wires a session to real clients and echoes its log as it grows."""

    def __init__(
        self,
        settings: Settings,
        *,
        auto_start: bool = False,
        delay: Optional[float] = None,
    ) -> None:
        self.agent = AgentClient(settings.agent_url)
        self.registry = TaskRegistryClient(settings.registry_url)
        self.done = asyncio.Event()
        self.stream_lost = False
        self._printed = 0
        timings = SessionTimings()
        if delay is not None:
            timings.next_task_delay = delay
        self.session = TaskSession(
            settings.instance_id,
            settings.project_path,
            self.agent,
            self.registry,
            timings=timings,
            prompt_prefix=settings.prompt_prefix,
            auto_start=auto_start,
            on_batch_flushed=self._on_flushed,
            on_streaming_change=self._on_streaming_change,
            on_queue_empty=self.done.set,
            on_stream_lost=self._on_stream_lost,
        )

    def _on_streaming_change(self, streaming: bool) -> None:
        if not streaming and not self.session.auto_start:
            self.done.set()

    def _on_stream_lost(self, task_id: Optional[str]) -> None:
        # Queued tasks are reconciled by the stuck check; an ad-hoc prompt has nothing to wait for
        if task_id is None:
            self.stream_lost = True
            self.done.set()

    def _on_flushed(self, _count: int) -> None:
        logs = self.session.logs
        _echo_entries(logs[self._printed:])
        self._printed = len(logs)

    async def aclose(self) -> None:
        await self.session.close()
        await self.agent.aclose()
        await self.registry.aclose()


async def _run_prompt(settings: Settings, prompt: str, resume_session_id: Optional[str]) -> bool:
    runner = _Runner(settings)
    session = runner.session
    try:
        if resume_session_id:
            session.machine.send(SessionSeen(resume_session_id))
        if await session.submit_prompt(prompt, resume=bool(resume_session_id)):
            await runner.done.wait()
        session.batcher.flush()
        result = session.last_result
        if result is not None:
            typer.echo(
                f"Done in {result.duration_ms} ms "
                f"({result.input_tokens} in / {result.output_tokens} out tokens)"
            )
        if session.error:
            typer.echo(f"Error: {session.error}", err=True)
        elif runner.stream_lost and result is None:
            typer.echo("Error: stream ended before the agent reported a result", err=True)
        return session.error is None and result is not None and not result.is_error
    finally:
        await runner.aclose()


async def _run_queue(settings: Settings, tasks: List[Task], delay: Optional[float]) -> List[Task]:
    runner = _Runner(settings, auto_start=True, delay=delay)
    session = runner.session
    try:
        session.set_queue(tasks)
        await runner.done.wait()
        session.batcher.flush()
        return tasks
    finally:
        await runner.aclose()


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Prompt to send to the agent"),
    project: Optional[str] = typer.Option(None, "--project", help="Project path the agent works in"),
    agent_url: Optional[str] = typer.Option(None, "--agent-url", help="Agent base URL"),
    registry_url: Optional[str] = typer.Option(None, "--registry-url", help="Task registry base URL"),
    resume: Optional[str] = typer.Option(None, "--resume", help="Agent session id to resume"),
) -> None:
    """Stream a single ad-hoc prompt and print its log."""
    _load_env()
    settings = Settings.from_env()
    if project:
        settings.project_path = project
    if agent_url:
        settings.agent_url = agent_url
    if registry_url:
        settings.registry_url = registry_url
    _setup_logging(settings)

    try:
        ok = asyncio.run(_run_prompt(settings, prompt, resume))
    except TaskRelayError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)
    if not ok:
        raise typer.Exit(code=1)


@app.command()
def queue(
    file: Path = typer.Argument(..., help="JSON file with the tasks to run"),
    project: Optional[str] = typer.Option(None, "--project", help="Project path the agent works in"),
    agent_url: Optional[str] = typer.Option(None, "--agent-url", help="Agent base URL"),
    registry_url: Optional[str] = typer.Option(None, "--registry-url", help="Task registry base URL"),
    delay: Optional[float] = typer.Option(None, "--delay", help="Seconds to wait between tasks"),
) -> None:
    """Run every pending task in a queue file, one after another."""
    _load_env()
    try:
        tasks = load_queue_file(file)
    except QueueFileError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)

    settings = Settings.from_env()
    if project:
        settings.project_path = project
    if agent_url:
        settings.agent_url = agent_url
    if registry_url:
        settings.registry_url = registry_url
    _setup_logging(settings)

    if not any(t.status == "pending" for t in tasks):
        typer.echo("No pending tasks.")
        return

    finished = asyncio.run(_run_queue(settings, tasks, delay))
    failed = [t for t in finished if t.status == "failed"]
    for task in finished:
        typer.echo(f"{task.status:>9}  {task.id}  {task.label}")
    if failed:
        raise typer.Exit(code=1)


@app.command()
def registry(
    host: Optional[str] = typer.Option(None, help="Bind host"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
) -> None:
    """Serve the task registry."""
    _load_env()
    settings = Settings.from_env()
    _setup_logging(settings)
    uvicorn.run(
        "taskrelay.core.registry_server:create_registry_app",
        host=host or settings.registry_host,
        port=port or settings.registry_port,
        factory=True,
    )


@app.command()
def version() -> None:
    from taskrelay import __version__

    typer.echo(__version__)


if __name__ == "__main__":
    app()
