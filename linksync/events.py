# -*- coding: utf-8 -*-

"""Events delivered to progress sinks while a task runs."""

import queue
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional


@dataclass
class RunSummary:
    success_count: int = 0
    fail_count: int = 0
    skip_count: int = 0
    failures: Dict[str, List[str]] = field(default_factory=dict)
    stale_count: int = 0
    filtered_count: int = 0
    elapsed: float = 0.0

    @property
    def total(self) -> int:
        return self.success_count + self.fail_count + self.skip_count


@dataclass
class ProgressEvent:
    current: int
    total: int
    percent: int
    eta: float
    rate: float
    message: str
    elapsed: float = 0.0
    type: str = "progress"


@dataclass
class CompletedEvent:
    summary: RunSummary
    type: str = "completed"


@dataclass
class FailedEvent:
    reason: str
    error: str = "LinkSyncError"
    type: str = "failed"


@dataclass
class CancelledEvent:
    type: str = "cancelled"


TERMINAL_EVENTS = (CompletedEvent, FailedEvent, CancelledEvent)


def is_terminal(event) -> bool:
    return isinstance(event, TERMINAL_EVENTS)


class ProgressSink:
    """Receives the events of one run. Called from the runtime's pump thread."""

    def on_event(self, event):
        raise NotImplementedError


class CallbackSink(ProgressSink):
    def __init__(self, callback: Callable):
        self.callback = callback

    def on_event(self, event):
        self.callback(event)


class QueueSink(ProgressSink):
    """Buffers events for a consumer on another thread (e.g. a monitoring connection)."""

    def __init__(self, maxsize: int = 0):
        self.events = queue.Queue(maxsize)

    def on_event(self, event):
        self.events.put(event)

    def get(self, timeout: Optional[float] = None):
        return self.events.get(timeout=timeout)

    def drain(self, timeout: float = 30.0) -> list:
        """Collect events up to and including the terminal one."""
        collected = []
        while True:
            event = self.events.get(timeout=timeout)
            collected.append(event)
            if is_terminal(event):
                return collected
