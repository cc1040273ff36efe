# -*- coding: utf-8 -*-
"""
Task runtime: runs each task's traversal in its own worker, relays progress to
any number of sinks and lets a running task be cancelled.

At most one run per task name is live at a time. The session registry is the
only shared mutable state and is guarded by a single lock; a session is only
removed by whoever still finds that exact session registered.
"""

import multiprocessing
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .config import DEFAULT_PROGRESS_FORMAT, TERMINATE_GRACE_SECONDS, TaskConfig
from .core import TraversalResult, log_run_start, remove_links, traverse
from .errors import (
    ERRORS_BY_NAME,
    ConfigError,
    LinkSyncError,
    RunCancelledError,
    TaskAlreadyRunningError,
    TaskNotRunningError,
)
from .events import (
    CancelledEvent,
    CompletedEvent,
    FailedEvent,
    ProgressEvent,
    ProgressSink,
    QueueSink,
    RunSummary,
    is_terminal,
)
from .link_index import LinkRecord, LinkRecordStore
from .logger_utils import get_logger

logger = get_logger("linksync.runtime")


def _run_traversal(config: TaskConfig, previous: LinkRecord, events, progress_format: str, cancel_event=None):
    """Worker body: traverse and put progress events, then exactly one outcome, on ``events``."""
    try:
        log_run_start(config)
        result = traverse(config, previous, on_progress=events.put, cancel_event=cancel_event,
                          progress_format=progress_format)
        events.put(result)
    except LinkSyncError as e:
        logger.error(f"[{config.name}] Run failed: {e}")
        events.put(FailedEvent(reason=str(e), error=type(e).__name__))
    except Exception as e:
        logger.exception(f"[{config.name}] Unexpected error during run")
        events.put(FailedEvent(reason=f"Unexpected error: {e}"))


class ProcessWorker:
    """Runs a traversal in a separate OS process."""

    def __init__(self, config: TaskConfig, previous: LinkRecord, progress_format: str = DEFAULT_PROGRESS_FORMAT,
                 grace: float = TERMINATE_GRACE_SECONDS, context=None, target: Callable = _run_traversal):
        ctx = context or multiprocessing.get_context()
        self.grace = grace
        self.events = ctx.Queue()
        self._process = ctx.Process(
            target=target,
            args=(config, previous, self.events, progress_format),
            name=f"linksync-{config.name}",
            daemon=True,
        )

    @property
    def exitcode(self) -> Optional[int]:
        return self._process.exitcode

    def start(self):
        self._process.start()

    def is_alive(self) -> bool:
        return self._process.is_alive()

    def join(self, timeout: Optional[float] = None):
        self._process.join(timeout)

    def terminate(self) -> bool:
        """Ask the process to stop, kill it if it ignores that. Returns True once it is gone."""
        if self._process.pid is None or not self._process.is_alive():
            return True
        self._process.terminate()
        self._process.join(self.grace)
        if self._process.is_alive():
            logger.warning(f"Worker {self._process.name} ignored SIGTERM, killing it")
            self._process.kill()
            self._process.join(self.grace)
        logger.debug(f"Worker {self._process.name} exited with code {self._process.exitcode}")
        return not self._process.is_alive()


class ThreadWorker:
    """Runs a traversal on a thread; cancellation is cooperative between files."""

    def __init__(self, config: TaskConfig, previous: LinkRecord, progress_format: str = DEFAULT_PROGRESS_FORMAT,
                 grace: float = TERMINATE_GRACE_SECONDS):
        self.grace = grace
        self.events = queue.Queue()
        self.cancel_event = threading.Event()
        self._thread = threading.Thread(
            target=_run_traversal,
            args=(config, previous, self.events, progress_format, self.cancel_event),
            name=f"linksync-{config.name}",
            daemon=True,
        )

    def start(self):
        self._thread.start()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: Optional[float] = None):
        self._thread.join(timeout)

    def terminate(self) -> bool:
        self.cancel_event.set()
        if self._thread.ident is not None:
            self._thread.join(self.grace)
        return not self._thread.is_alive()


@dataclass
class RunSession:
    name: str
    worker: object
    sinks: List[ProgressSink] = field(default_factory=list)
    processed: int = 0
    total: int = 0
    cancelled: bool = False
    started_at: float = field(default_factory=time.monotonic)
    pump: Optional[threading.Thread] = None


class TaskRuntime:
    """
    Owns the live runs of every task.

    Args:
        tasks: Config collaborator; ``tasks.get(name)`` returns a TaskConfig
               or raises TaskNotFoundError.
        records: The LinkRecordStore that persists link records and holds
                 pending deletion sets.
        worker_factory: Callable ``(config, previous_record, progress_format)``
                        returning a worker with start/terminate/join/is_alive
                        and an ``events`` queue.
    """

    def __init__(self, tasks, records: LinkRecordStore, worker_factory: Callable = ProcessWorker,
                 progress_format: str = DEFAULT_PROGRESS_FORMAT, poll_interval: float = 0.1):
        self.tasks = tasks
        self.records = records
        self.worker_factory = worker_factory
        self.progress_format = progress_format
        self.poll_interval = poll_interval
        self._sessions: Dict[str, RunSession] = {}
        self._lock = threading.Lock()

    # -- lifecycle ---------------------------------------------------------

    def start(self, name: str) -> RunSummary:
        """Run a task to completion and return its summary."""
        sink = QueueSink()
        self._launch(name, [sink])
        while True:
            event = sink.get()
            if is_terminal(event):
                break
        if isinstance(event, CompletedEvent):
            return event.summary
        if isinstance(event, CancelledEvent):
            raise RunCancelledError(f"Task '{name}' was cancelled")
        raise ERRORS_BY_NAME.get(event.error, LinkSyncError)(event.reason)

    def run(self, name: str, sink: ProgressSink):
        """Launch a task in the background; its outcome arrives on ``sink``."""
        try:
            self._launch(name, [sink])
        except ConfigError as e:
            logger.error(f"[{name}] Invalid configuration: {e}")
            sink.on_event(FailedEvent(reason=str(e), error=type(e).__name__))

    def subscribe(self, name: str, sink: ProgressSink):
        """Attach another observer to a running task. Earlier events are not replayed."""
        with self._lock:
            session = self._sessions.get(name)
            if session is None:
                raise TaskNotRunningError(f"Task '{name}' is not running")
            session.sinks.append(sink)

    def cancel(self, name: str) -> bool:
        """
        Stop a running task. Links already created stay on disk and the
        previous link record stays authoritative.

        Returns:
            True if the worker stopped, False if it could not be terminated
            (the session is released either way).
        """
        with self._lock:
            session = self._sessions.get(name)
            if session is None:
                raise TaskNotRunningError(f"Task '{name}' is not running")
            session.cancelled = True
            del self._sessions[name]
        logger.info(f"[{name}] Cancelling run")
        stopped = session.worker.terminate()
        if not stopped:
            logger.error(f"[{name}] Worker could not be terminated")
        return stopped

    def is_running(self, name: str) -> bool:
        with self._lock:
            return name in self._sessions

    def running(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def progress(self, name: str):
        """(processed, total) of a running task, or None."""
        with self._lock:
            session = self._sessions.get(name)
            return None if session is None else (session.processed, session.total)

    def shutdown(self):
        for name in self.running():
            try:
                self.cancel(name)
            except TaskNotRunningError:
                pass

    # -- pending deletions ---------------------------------------------------

    def list_pending_deletions(self, name: str) -> List[str]:
        return self.records.pending(name)

    def confirm_deletion(self, name: str) -> bool:
        """Delete the pending stale links of a task and the directories they leave empty."""
        if self.is_running(name):
            raise TaskAlreadyRunningError(f"Task '{name}' is running")
        paths = self.records.pending(name)
        if not paths:
            self.records.clear_pending(name)
            return True
        config = self.tasks.get(name)
        failed = remove_links(paths, config.dest)
        self.records.clear_pending(name)
        if failed:
            logger.warning(f"[{name}] {len(failed)} stale links could not be removed")
        return not failed

    def cancel_deletion(self, name: str) -> bool:
        self.records.clear_pending(name)
        return True

    # -- internals -----------------------------------------------------------

    def _launch(self, name: str, sinks: List[ProgressSink]) -> RunSession:
        config = self.tasks.get(name)
        with self._lock:
            if name in self._sessions:
                raise TaskAlreadyRunningError(f"Task '{name}' is already running")
            config.validate()
            worker = self.worker_factory(config, self.records.get(name), self.progress_format)
            session = RunSession(name=name, worker=worker, sinks=list(sinks))
            # the session only becomes visible to cancel() once its worker exists
            worker.start()
            self._sessions[name] = session
        session.pump = threading.Thread(target=self._pump, args=(session,), name=f"linksync-pump-{name}",
                                        daemon=True)
        session.pump.start()
        logger.info(f"[{name}] Run started")
        return session

    def _release_locked(self, session: RunSession) -> bool:
        """Remove ``session`` only if it is still the registered one. Caller holds the lock."""
        if self._sessions.get(session.name) is session:
            del self._sessions[session.name]
            return True
        return False

    def _next_message(self, session: RunSession):
        """Next worker message; a FailedEvent if the worker died without reporting."""
        worker = session.worker
        while not session.cancelled:
            try:
                return worker.events.get(timeout=self.poll_interval)
            except queue.Empty:
                if worker.is_alive():
                    continue
            # the worker is gone; give anything still in flight one last chance
            try:
                return worker.events.get(timeout=self.poll_interval)
            except queue.Empty:
                return FailedEvent(reason=f"Worker for '{session.name}' exited without a result")
        return None

    def _pump(self, session: RunSession):
        outcome = None
        while outcome is None:
            message = self._next_message(session)
            if message is None or session.cancelled:
                break
            if isinstance(message, ProgressEvent):
                session.processed = message.current
                session.total = message.total
                self._fan_out(session, message)
            else:
                outcome = message
        self._finish(session, outcome)

    def _finish(self, session: RunSession, outcome):
        with self._lock:
            if session.cancelled:
                terminal = CancelledEvent()
            else:
                self._release_locked(session)
                terminal = self._commit(session.name, outcome)
        session.worker.join(self.poll_interval)
        logger.info(f"[{session.name}] Run finished: {terminal.type}")
        self._fan_out(session, terminal)

    def _commit(self, name: str, outcome):
        if not isinstance(outcome, TraversalResult):
            return outcome
        try:
            self.records.save(outcome.record)
            self.records.set_pending(name, outcome.stale)
        except OSError as e:
            logger.error(f"[{name}] Failed to persist link record: {e}")
            return FailedEvent(reason=f"Failed to persist link record: {e}")
        return CompletedEvent(summary=outcome.summary())

    def _fan_out(self, session: RunSession, event):
        with self._lock:
            sinks = list(session.sinks)
        for sink in sinks:
            try:
                sink.on_event(event)
            except Exception:
                logger.exception(f"[{session.name}] Progress sink {sink!r} failed")
