import asyncio

from conftest import FakeAgent, FakeRegistry, conflict, fast_timings, settle
from taskrelay.core.models import RegistryStatus, StreamEvent, Task
from taskrelay.core.phase import Complete, Connecting, Error, Idle, Streaming
from taskrelay.core.session import TaskSession

URL1 = "http://agent/stream/exec-1"
URL2 = "http://agent/stream/exec-2"


async def _stream_first_task(make_session, source, **kwargs):
    """Queue t1 in autonomous mode and wait until its stream is connected."""
    session = make_session(auto_start=True, **kwargs)
    task = Task(id="t1", prompt="build")
    session.set_queue([task])
    await settle()
    source.push(URL1, "connected", sessionId="s1", executionId="exec-1", model="m1")
    await settle(0.01)
    return session, task


def test_queued_task_runs_to_completion(make_session, agent, registry, source) -> None:
    finished = []

    async def scenario():
        session, task = await _stream_first_task(
            make_session, source, on_task_complete=lambda tid, ok: finished.append((tid, ok)),
        )
        assert isinstance(session.phase, Streaming)
        assert session.current_task_id == "t1"
        assert session.execution_info.model == "m1"
        assert session.log_file_path == "/logs/exec-1.log"
        assert task.status == "running"
        source.push(URL1, "result", sessionId="s1", isError=False, durationMs=1200, usage={"inputTokens": 5})
        await settle()
        await session.close()
        return session, task

    session, task = asyncio.run(scenario())
    assert agent.calls == [{"project_path": "/work/project", "prompt": "build", "resume_session_id": None}]
    assert registry.named("start") == [("start", "t1")]
    assert registry.named("complete") == [("complete", "t1", True)]
    assert isinstance(session.phase, Complete)
    assert session.last_result.input_tokens == 5
    assert session.session_id == "s1"
    assert task.status == "completed"
    assert task.completed_at is not None
    assert finished == [("t1", True)]
    assert [e.content for e in session.logs if e.type == "system"] == ["Starting: build"]


def test_conflicting_start_is_resolved_and_retried(make_session, agent, registry, source) -> None:
    registry.start_results = [conflict("t0")]

    async def scenario():
        session, _ = await _stream_first_task(make_session, source)
        await session.close()
        return session

    session = asyncio.run(scenario())
    assert [c for c in registry.calls if c[0] in ("start", "complete")] == [
        ("start", "t1"),
        ("complete", "t0", False),
        ("start", "t1"),
    ]
    assert len(agent.calls) == 1
    assert isinstance(session.phase, Streaming)


def test_second_conflict_surfaces_as_start_failure(make_session, agent, registry, source) -> None:
    registry.start_results = [conflict("t0"), conflict("t0")]
    empty = []

    async def scenario():
        session = make_session(auto_start=True, on_queue_empty=lambda: empty.append(1))
        task = Task(id="t1", prompt="build")
        session.set_queue([task])
        await settle()
        await session.close()
        return session, task

    session, task = asyncio.run(scenario())
    assert isinstance(session.phase, Error)
    assert "running task" in session.error
    assert agent.calls == []
    assert registry.named("complete") == [("complete", "t0", False), ("complete", "t1", False)]
    assert task.status == "failed"
    assert empty == [1]


def test_registry_outage_does_not_block_dispatch(make_session, agent, registry, source) -> None:
    from taskrelay.core.models import RegistryStartResult

    registry.start_results = [RegistryStartResult(success=False, error="Network error")]

    async def scenario():
        session, _ = await _stream_first_task(make_session, source)
        await session.close()
        return session

    session = asyncio.run(scenario())
    assert len(agent.calls) == 1
    assert isinstance(session.phase, Streaming)


def test_start_call_failure(make_session, agent, registry, source) -> None:
    agent.error = "HTTP 500"

    async def scenario():
        session = make_session(auto_start=True)
        task = Task(id="t1", prompt="build")
        session.set_queue([task])
        await settle()
        await session.close()
        return session, task

    session, task = asyncio.run(scenario())
    assert session.phase == Error(message="HTTP 500", task_id="t1")
    assert registry.named("complete") == [("complete", "t1", False)]
    assert task.status == "failed"
    assert source.opened == []


def test_stream_error_event_fails_the_task(make_session, registry, source) -> None:
    async def scenario():
        session, task = await _stream_first_task(make_session, source)
        source.push(URL1, "error", error="agent crashed")
        await settle()
        await session.close()
        return session, task

    session, task = asyncio.run(scenario())
    assert session.error == "agent crashed"
    assert registry.named("complete") == [("complete", "t1", False)]
    assert task.status == "failed"
    assert session.logs[-1].type == "error"


def test_abort_reports_failure_exactly_once(make_session, registry, source) -> None:
    finished = []

    async def scenario():
        session, task = await _stream_first_task(
            make_session, source, on_task_complete=lambda tid, ok: finished.append((tid, ok)),
        )
        assert session.abort() is True
        assert session.abort() is False
        # The closed connection gets its result anyway, and a late frame reaches the dispatcher
        source.push(URL1, "result", isError=False)
        session.dispatcher.dispatch(StreamEvent(type="result", data={"isError": False}, timestamp=0))
        await settle()
        state = (session.phase, session.heartbeat.active, session.stuck_check.active, session.consumer.is_open)
        await session.close()
        return state, task

    (phase, heartbeat, stuck, stream_open), task = asyncio.run(scenario())
    assert phase == Idle()
    assert (heartbeat, stuck, stream_open) == (False, False, False)
    assert registry.named("complete") == [("complete", "t1", False)]
    assert finished == [("t1", False)]
    assert task.status == "failed"


def test_heartbeat_runs_while_streaming_a_task(make_session, registry, source) -> None:
    async def scenario():
        session, _ = await _stream_first_task(make_session, source)
        assert session.heartbeat.active
        await settle(0.07)
        source.push(URL1, "result", isError=False)
        await settle(0.01)
        beats = len(registry.named("heartbeat"))
        await settle(0.06)
        active = session.heartbeat.active
        await session.close()
        return beats, len(registry.named("heartbeat")), active

    beats, later, active = asyncio.run(scenario())
    assert beats >= 2
    assert later == beats
    assert active is False


def test_stuck_task_resolves_from_registry_verdict(make_session, registry, source) -> None:
    registry.status_result = RegistryStatus(found=True, task_id="t1", status="completed")
    finished = []

    async def scenario():
        session, task = await _stream_first_task(
            make_session, source, on_task_complete=lambda tid, ok: finished.append((tid, ok)),
        )
        await settle(0.06)
        await session.close()
        return session, task

    session, task = asyncio.run(scenario())
    assert session.phase == Idle()
    assert task.status == "completed"
    assert finished == [("t1", True)]
    # The registry already knows the outcome
    assert registry.named("complete") == []
    assert not session.consumer.is_open
    assert not session.stuck_check.active


def test_stale_task_is_failed_and_reported(make_session, registry, source) -> None:
    registry.status_result = RegistryStatus(found=True, task_id="t1", status="running", is_stale=True)

    async def scenario():
        session, task = await _stream_first_task(make_session, source)
        await settle(0.06)
        await session.close()
        return session, task

    session, task = asyncio.run(scenario())
    assert session.phase == Idle()
    assert task.status == "failed"
    assert registry.named("complete") == [("complete", "t1", False)]


def test_stuck_check_needs_autonomous_mode(make_session, registry, source) -> None:
    async def scenario():
        session, _ = await _stream_first_task(make_session, source)
        session.set_auto_start(False)
        state = (session.heartbeat.active, session.stuck_check.active)
        await session.close()
        return state

    assert asyncio.run(scenario()) == (True, False)


def test_hide_and_show_reattaches_to_the_same_stream(make_session, registry, source) -> None:
    async def scenario():
        session, _ = await _stream_first_task(make_session, source)
        session.set_visible(False)
        await settle(0.01)
        hidden = (session.consumer.is_open, session.heartbeat.active, session.stuck_check.active, session.stream_url)
        calls_while_hidden = list(registry.calls)
        await settle(0.05)
        assert registry.calls == calls_while_hidden
        session.set_visible(True)
        shown = (session.consumer.is_open, session.heartbeat.active, session.stuck_check.active)
        assert session.heartbeat.start() is False
        source.push(URL1, "result", isError=False)
        await settle()
        await session.close()
        return hidden, shown, session

    hidden, shown, session = asyncio.run(scenario())
    assert hidden == (False, False, False, URL1)
    assert shown == (True, True, True)
    assert source.opened == [URL1, URL1]
    assert isinstance(session.phase, Complete)
    assert registry.named("complete") == [("complete", "t1", True)]


def test_hidden_session_does_not_dispatch(make_session, agent, source) -> None:
    async def scenario():
        session = make_session(auto_start=True, visible=False)
        session.set_queue([Task(id="t1", prompt="build")])
        await settle()
        idle = session.phase
        session.set_visible(True)
        await settle()
        await session.close()
        return idle, session.phase

    idle, after = asyncio.run(scenario())
    assert idle == Idle()
    assert isinstance(after, (Connecting, Streaming))
    assert len(agent.calls) == 1


def test_hiding_cancels_pending_dispatch(make_session, agent) -> None:
    async def scenario():
        session = make_session(auto_start=True)
        session.set_queue([Task(id="t1", prompt="build")])
        assert session.scheduler.pending_task_id == "t1"
        session.set_visible(False)
        await settle()
        await session.close()
        return session.scheduler.pending_task_id

    assert asyncio.run(scenario()) is None
    assert agent.calls == []


def test_task_is_dispatched_at_most_once(make_session, agent, source) -> None:
    async def scenario():
        session = make_session(auto_start=True)
        session.set_queue([Task(id="t1", prompt="one"), Task(id="t2", prompt="two")])
        await settle()
        source.push(URL1, "connected")
        source.push(URL1, "result", isError=False)
        await settle()
        # The caller re-offers t1 as pending alongside t2
        session.set_queue([Task(id="t1", prompt="one"), Task(id="t2", prompt="two")])
        await settle()
        await session.close()

    asyncio.run(scenario())
    assert [c["prompt"] for c in agent.calls] == ["one", "two"]


def test_queue_runs_tasks_back_to_back_and_resumes(make_session, agent, source) -> None:
    empty = []

    async def scenario():
        session = make_session(auto_start=True, prompt_prefix="SKILLS\n", on_queue_empty=lambda: empty.append(1))
        tasks = [Task(id="t1", prompt="one"), Task(id="t2", prompt="two")]
        session.set_queue(tasks)
        await settle()
        source.push(URL1, "connected", sessionId="s1")
        source.push(URL1, "result", sessionId="s1", isError=False)
        await settle()
        source.push(URL2, "connected", sessionId="s1")
        source.push(URL2, "result", sessionId="s1", isError=True)
        await settle()
        await session.close()
        return tasks

    tasks = asyncio.run(scenario())
    assert [t.status for t in tasks] == ["completed", "failed"]
    assert agent.calls[0]["prompt"] == "SKILLS\none"
    assert agent.calls[0]["resume_session_id"] is None
    assert agent.calls[1]["prompt"] == "two"
    assert agent.calls[1]["resume_session_id"] == "s1"
    assert empty == [1]


def test_ad_hoc_prompt_has_no_heartbeat_and_resumes(make_session, agent, registry, source) -> None:
    async def scenario():
        session = make_session()
        assert await session.submit_prompt("hello") is True
        assert await session.submit_prompt("again") is False
        source.push(URL1, "connected", sessionId="s1")
        await settle(0.05)
        heartbeat = session.heartbeat.active
        source.push(URL1, "result", sessionId="s1", isError=False)
        await settle(0.01)
        assert await session.submit_prompt("follow up") is True
        await session.close()
        return session, heartbeat

    session, heartbeat = asyncio.run(scenario())
    assert heartbeat is False
    assert registry.calls == []
    assert [c["resume_session_id"] for c in agent.calls] == [None, "s1"]
    assert [e.content for e in session.logs if e.type == "user"] == ["hello", "follow up"]


def test_clear_forgets_everything(make_session, agent, registry, source) -> None:
    async def scenario():
        session = make_session(auto_start=True)
        session.set_queue([Task(id="t1", prompt="build")])
        await settle()
        source.push(URL1, "connected", sessionId="s1")
        source.push(URL1, "result", sessionId="s1", isError=False)
        await settle()
        await session.clear()
        state = (session.phase, session.session_id, session.logs, session.log_file_path)
        session.set_queue([Task(id="t1", prompt="build")])
        await settle()
        await session.close()
        return state

    phase, session_id, logs, log_file = asyncio.run(scenario())
    assert (phase, session_id, logs, log_file) == (Idle(), None, [], None)
    assert ("clear", "terminal-1") in registry.calls
    # The guard was reset, so t1 may run again
    assert len(agent.calls) == 2
    assert agent.calls[1]["resume_session_id"] is None


def test_log_batches_are_reported(make_session, source) -> None:
    flushed = []

    async def scenario():
        session, _ = await _stream_first_task(make_session, source, on_batch_flushed=flushed.append)
        source.push(URL1, "message", type="assistant", content="one")
        source.push(URL1, "message", type="assistant", content="two")
        await settle()
        await session.close()
        return session

    session = asyncio.run(scenario())
    assert sum(flushed) == len(session.logs)
    assert [e.content for e in session.logs if e.type == "assistant"] == ["one", "two"]
    assert session.tail(1)[0].content == "two"
    assert session.tail(0) == []
    assert session.tail() == session.logs


class SlowCompleteRegistry(FakeRegistry):
    async def complete(self, task_id: str, session_id: str, success: bool) -> bool:
        await asyncio.sleep(0.01)
        return await super().complete(task_id, session_id, success)


class GatedAgent(FakeAgent):
    """Holds every start call until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = None

    async def start_task(self, project_path, prompt, resume_session_id=None):
        await self.gate.wait()
        return await super().start_task(project_path, prompt, resume_session_id)


def test_close_waits_for_the_final_registry_report(agent, source) -> None:
    registry = SlowCompleteRegistry()

    async def scenario():
        emptied = asyncio.Event()
        session = TaskSession(
            "terminal-1", "/work/project", agent, registry,
            source=source, timings=fast_timings(), auto_start=True, on_queue_empty=emptied.set,
        )
        session.set_queue([Task(id="t1", prompt="build")])
        await settle()
        source.push(URL1, "connected", sessionId="s1")
        source.push(URL1, "result", isError=False)
        await emptied.wait()
        await session.close()

    asyncio.run(scenario())
    assert registry.named("complete") == [("complete", "t1", True)]


def test_start_returning_while_hidden_defers_the_stream(registry, source) -> None:
    agent = GatedAgent()

    async def scenario():
        agent.gate = asyncio.Event()
        session = TaskSession("terminal-1", "/work/project", agent, registry, source=source, timings=fast_timings())
        started = asyncio.get_running_loop().create_task(session.submit_prompt("hello"))
        await settle(0.01)
        session.set_visible(False)
        agent.gate.set()
        assert await started is True
        await settle(0.01)
        hidden = (list(source.opened), session.consumer.is_open, session.stream_url, session.phase)
        session.set_visible(True)
        source.push(URL1, "connected", sessionId="s1")
        await settle(0.01)
        shown = (list(source.opened), session.phase)
        await session.close()
        return hidden, shown

    (opened, is_open, url, phase), (reopened, after) = asyncio.run(scenario())
    assert (opened, is_open, url) == ([], False, URL1)
    assert isinstance(phase, Connecting)
    assert reopened == [URL1]
    assert isinstance(after, Streaming)


def test_stream_dropped_mid_task_is_reported(make_session, source) -> None:
    lost = []

    async def scenario():
        session = make_session(on_stream_lost=lost.append)
        await session.submit_prompt("hello")
        source.push(URL1, "connected", sessionId="s1")
        source.end(URL1)
        await settle()
        state = (session.phase, session.consumer.is_open)
        await session.close()
        return state, session

    (phase, stream_open), session = asyncio.run(scenario())
    assert lost == [None]
    assert isinstance(phase, Streaming)
    assert stream_open is False
    assert [e.content for e in session.logs if e.type == "error"] == ["Stream ended before the task finished"]


def test_stream_closed_by_result_is_not_reported_lost(make_session, source) -> None:
    lost = []

    async def scenario():
        session = make_session(on_stream_lost=lost.append)
        await session.submit_prompt("hello")
        source.push(URL1, "connected", sessionId="s1")
        source.push(URL1, "result", isError=False)
        source.end(URL1)
        await settle()
        await session.close()
        return session

    session = asyncio.run(scenario())
    assert lost == []
    assert isinstance(session.phase, Complete)
