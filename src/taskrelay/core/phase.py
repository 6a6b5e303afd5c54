"""Session state machine.

The session is always in exactly one phase::

    idle       -> connecting   (TaskStart / SubmitStart)
    connecting -> streaming    (StreamConnected)
    connecting -> error        (StartFailed)
    streaming  -> complete     (StreamResult)
    streaming  -> error        (StreamError)
    streaming  -> idle         (Abort)
    complete   -> connecting   (TaskStart / SubmitStart)
    error      -> connecting   (TaskStart / SubmitStart)
    *          -> idle         (StuckResolved, Clear)

An action arriving in a phase that does not list it leaves the state
untouched, so a stream callback firing after an abort is harmless.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
from typing import Callable, List, Optional, Union

from taskrelay.core.models import ExecutionInfo, ExecutionResult

logger = logging.getLogger("taskrelay.phase")


# ── Phases ───────────────────────────────────────────────────

@dataclass(frozen=True)
class Idle:
    name = "idle"


@dataclass(frozen=True)
class Connecting:
    task_id: Optional[str] = None
    name = "connecting"


@dataclass(frozen=True)
class Streaming:
    task_id: Optional[str] = None
    execution_info: ExecutionInfo = field(default_factory=ExecutionInfo)
    name = "streaming"


@dataclass(frozen=True)
class Complete:
    last_result: ExecutionResult = field(default_factory=ExecutionResult)
    name = "complete"


@dataclass(frozen=True)
class Error:
    message: str = ""
    task_id: Optional[str] = None
    name = "error"


Phase = Union[Idle, Connecting, Streaming, Complete, Error]


@dataclass(frozen=True)
class SessionState:
    current: Phase = field(default_factory=Idle)
    # Set once connected, kept across tasks for resume, cleared on Clear
    session_id: Optional[str] = None
    # Set on each task start, kept until Clear
    log_file_path: Optional[str] = None


# ── Actions ──────────────────────────────────────────────────

@dataclass(frozen=True)
class TaskStart:
    task_id: str


@dataclass(frozen=True)
class SubmitStart:
    pass


@dataclass(frozen=True)
class StreamConnected:
    info: ExecutionInfo
    session_id: Optional[str] = None


@dataclass(frozen=True)
class StartFailed:
    error: str


@dataclass(frozen=True)
class StreamResult:
    result: ExecutionResult
    session_id: Optional[str] = None


@dataclass(frozen=True)
class StreamError:
    error: str


@dataclass(frozen=True)
class Abort:
    pass


@dataclass(frozen=True)
class StuckResolved:
    success: bool


@dataclass(frozen=True)
class Clear:
    pass


@dataclass(frozen=True)
class SetLogFile:
    path: str


@dataclass(frozen=True)
class SessionSeen:
    session_id: str


Action = Union[
    TaskStart, SubmitStart, StreamConnected, StartFailed, StreamResult,
    StreamError, Abort, StuckResolved, Clear, SetLogFile, SessionSeen,
]


# ── Reducer ──────────────────────────────────────────────────

_STARTABLE = (Idle, Complete, Error)


def reduce(state: SessionState, action: Action) -> SessionState:
    """Return the next state, or *state* itself when the action is illegal."""
    current = state.current

    if isinstance(action, TaskStart):
        if isinstance(current, _STARTABLE):
            return replace(state, current=Connecting(task_id=action.task_id))
        return state

    if isinstance(action, SubmitStart):
        if isinstance(current, _STARTABLE):
            return replace(state, current=Connecting(task_id=None))
        return state

    if isinstance(action, StreamConnected):
        if isinstance(current, Connecting):
            return replace(
                state,
                current=Streaming(task_id=current.task_id, execution_info=action.info),
                session_id=action.session_id or state.session_id,
            )
        return state

    if isinstance(action, StartFailed):
        if isinstance(current, Connecting):
            return replace(state, current=Error(message=action.error, task_id=current.task_id))
        return state

    if isinstance(action, StreamResult):
        if isinstance(current, Streaming):
            return replace(
                state,
                current=Complete(last_result=action.result),
                session_id=action.session_id or state.session_id,
            )
        return state

    if isinstance(action, StreamError):
        if isinstance(current, Streaming):
            return replace(state, current=Error(message=action.error, task_id=current.task_id))
        return state

    if isinstance(action, Abort):
        if isinstance(current, Streaming):
            return replace(state, current=Idle())
        return state

    if isinstance(action, StuckResolved):
        return replace(state, current=Idle())

    if isinstance(action, Clear):
        return SessionState()

    if isinstance(action, SetLogFile):
        return replace(state, log_file_path=action.path)

    if isinstance(action, SessionSeen):
        if action.session_id == state.session_id:
            return state
        return replace(state, session_id=action.session_id)

    return state


# ── Selectors ────────────────────────────────────────────────

def task_id_of(phase: Phase) -> Optional[str]:
    """Task id carried by *phase*, if it carries one."""
    return getattr(phase, "task_id", None)


def is_streaming(state: SessionState) -> bool:
    return isinstance(state.current, (Connecting, Streaming))


def current_error(state: SessionState) -> Optional[str]:
    return state.current.message if isinstance(state.current, Error) else None


def current_execution_info(state: SessionState) -> Optional[ExecutionInfo]:
    return state.current.execution_info if isinstance(state.current, Streaming) else None


def last_result(state: SessionState) -> Optional[ExecutionResult]:
    return state.current.last_result if isinstance(state.current, Complete) else None


PhaseListener = Callable[[Phase, Phase], None]


class SessionMachine:
    """Holds the current SessionState and applies actions to it.

    Listeners are told about phase changes only; bookkeeping actions that
    leave the phase alone (SetLogFile, SessionSeen) are silent.
    """

    def __init__(self) -> None:
        self._state = SessionState()
        self._listeners: List[PhaseListener] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def phase(self) -> Phase:
        return self._state.current

    def subscribe(self, listener: PhaseListener) -> None:
        self._listeners.append(listener)

    def send(self, action: Action) -> bool:
        """Apply *action*. Returns True if the state changed."""
        previous = self._state
        nxt = reduce(previous, action)
        if nxt is previous:
            logger.debug("Ignored %s in phase %s", type(action).__name__, previous.current.name)
            return False
        self._state = nxt
        if nxt.current != previous.current:
            logger.debug("Phase %s -> %s (%s)", previous.current.name, nxt.current.name, type(action).__name__)
            for listener in list(self._listeners):
                listener(previous.current, nxt.current)
        return True
