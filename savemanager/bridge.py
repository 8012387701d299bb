"""
Background task bridge.

Every feature that must block (process invocation, HTTP fetch, archive
extraction) runs that work on one worker thread per operation and reports
back through a channel. The render loop polls the channel once per tick
without blocking and folds at most one message into the feature's state.

Sends are best-effort: once the receiving screen closes its end, sends
return False and the message is dropped. Workers are never killed; they
finish on their own, usually at their next failed send.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Union

from .errors import SaveError
from .monitor import log_event, start_monitored_thread

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Progress:
    """Intermediate message; zero or more per task."""
    payload: Any = None


@dataclass(frozen=True)
class Done:
    """Terminal success message carrying the worker's return value."""
    result: Any = None


@dataclass(frozen=True)
class Failed:
    """Terminal failure message."""
    reason: str


Message = Union[Progress, Done, Failed]


class ReceiverClosed(Exception):
    """Raised by a worker that wants to stop once nobody is listening."""


class _ChannelState:
    def __init__(self):
        self.queue: 'queue.SimpleQueue[Any]' = queue.SimpleQueue()
        self.closed = threading.Event()


class Sender:
    def __init__(self, state: _ChannelState):
        self._state = state

    @property
    def closed(self) -> bool:
        return self._state.closed.is_set()

    def send(self, message: Any) -> bool:
        if self._state.closed.is_set():
            logger.debug("Dropping %r: receiver closed", message)
            return False
        self._state.queue.put(message)
        return True

    def progress(self, payload: Any = None) -> bool:
        return self.send(Progress(payload))

    def progress_or_abort(self, payload: Any = None) -> None:
        """Send progress, raising ReceiverClosed if the screen has gone away."""
        if not self.progress(payload):
            raise ReceiverClosed("Receiver closed")


class Receiver:
    def __init__(self, state: _ChannelState):
        self._state = state

    @property
    def closed(self) -> bool:
        return self._state.closed.is_set()

    def try_recv(self) -> Optional[Any]:
        """Next message in send order, or None. Never blocks."""
        if self._state.closed.is_set():
            return None
        try:
            return self._state.queue.get_nowait()
        except queue.Empty:
            return None

    def close(self) -> None:
        self._state.closed.set()
        while True:
            try:
                self._state.queue.get_nowait()
            except queue.Empty:
                break


def channel() -> Tuple[Sender, Receiver]:
    state = _ChannelState()
    return Sender(state), Receiver(state)


def describe_failure(exc: BaseException) -> str:
    if isinstance(exc, SaveError):
        return str(exc)
    text = str(exc)
    return text or exc.__class__.__name__


class AsyncTask:
    """
    One worker thread plus the receiving end of its channel.

    ``work`` receives a Sender; its return value becomes ``Done(result)``
    and any exception becomes ``Failed(reason)``, so exactly one terminal
    message is sent per task.
    """

    def __init__(self, work: Callable[[Sender], Any], *, name: str = 'task'):
        self.name = name
        self._work = work
        self._sender, self.receiver = channel()
        self._thread: Optional[threading.Thread] = None
        self.finished = False

    def start(self) -> 'AsyncTask':
        self._thread = start_monitored_thread(self._run, name=f'task-{self.name}')
        return self

    def _run(self) -> None:
        try:
            result = self._work(self._sender)
        except ReceiverClosed:
            log_event('bridge.task.abandoned', self.name)
            return
        except Exception as e:
            logger.debug("Task %s failed", self.name, exc_info=True)
            log_event('bridge.task.failed', f'{self.name}: {describe_failure(e)}', logging.WARNING)
            self._sender.send(Failed(describe_failure(e)))
            return
        self._sender.send(Done(result))

    def poll(self) -> Optional[Message]:
        """Single non-blocking receive attempt."""
        if self.finished:
            return None
        message = self.receiver.try_recv()
        if isinstance(message, (Done, Failed)):
            self.finished = True
        return message

    def close(self) -> None:
        self.receiver.close()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker thread. Tests and CLI only."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()


def spawn_task(work: Callable[[Sender], Any], *, name: str = 'task') -> AsyncTask:
    return AsyncTask(work, name=name).start()


class BridgedScreen:
    """
    Base class for a feature state machine fed by at most one task at a time.

    Subclasses implement handle_message(); tick() applies at most one message.
    Starting a new task closes the previous one so stale results are dropped.
    """

    def __init__(self):
        self.task: Optional[AsyncTask] = None

    def run_task(self, work: Callable[[Sender], Any], name: str) -> AsyncTask:
        if self.task is not None:
            self.task.close()
        self.task = spawn_task(work, name=name)
        return self.task

    def tick(self) -> bool:
        """Poll once; return True if a message was applied."""
        applied = False
        if self.task is not None:
            message = self.task.poll()
            if message is not None:
                if self.task.finished:
                    self.task = None
                self.handle_message(message)
                applied = True
        self.after_tick()
        return applied

    def handle_message(self, message: Message) -> None:
        raise NotImplementedError

    def after_tick(self) -> None:
        """Hook run at the end of every tick (e.g. re-fetch when idle)."""

    def leave(self) -> None:
        """The user navigated away: stop listening, let the worker finish alone."""
        if self.task is not None:
            self.task.close()
            self.task = None
