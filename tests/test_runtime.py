from __future__ import annotations

import errno
import multiprocessing
import os
import queue
import signal
import threading
import time
from pathlib import Path

import pytest

from conftest import write_files
from linksync.errors import (
    ConfigError,
    LifecycleError,
    LinkSyncError,
    PlatformError,
    TaskExistsError,
    TaskAlreadyRunningError,
    TaskNotFoundError,
    TaskNotRunningError,
)
from linksync.events import CancelledEvent, CompletedEvent, FailedEvent, ProgressEvent, QueueSink, is_terminal
from linksync.link_index import LinkRecord, LinkRecordStore
from linksync.runtime import ProcessWorker, TaskRuntime, ThreadWorker
from linksync.task_store import TaskStore


class BlockingWorker:
    """Reports one progress event and then runs until terminated."""

    def __init__(self, config, previous, progress_format, stubborn: bool = False) -> None:
        self.events: queue.Queue = queue.Queue()
        self.stopped = threading.Event()
        self.stubborn = stubborn
        self.events.put(ProgressEvent(current=1, total=10, percent=10, eta=0.0, rate=0.0, message="1/10"))

    def start(self) -> None:
        pass

    def is_alive(self) -> bool:
        return not self.stopped.is_set()

    def join(self, timeout=None) -> None:
        self.stopped.wait(timeout)

    def terminate(self) -> bool:
        if self.stubborn:
            return False
        self.stopped.set()
        return True


class DeadWorker:
    """Exits immediately without reporting anything."""

    def __init__(self, config, previous, progress_format) -> None:
        self.events: queue.Queue = queue.Queue()

    def start(self) -> None:
        pass

    def is_alive(self) -> bool:
        return False

    def join(self, timeout=None) -> None:
        pass

    def terminate(self) -> bool:
        return True


class GatedWorker(BlockingWorker):
    """A worker whose start() waits for the test to open the gate."""

    def __init__(self, config, previous, progress_format, entered, gate) -> None:
        super().__init__(config, previous, progress_format)
        self.entered = entered
        self.gate = gate
        self.started = False
        self.started_before_terminate = None

    def start(self) -> None:
        self.entered.set()
        self.gate.wait(5)
        self.started = True

    def terminate(self) -> bool:
        self.started_before_terminate = self.started
        return super().terminate()


class ReportingWorker(DeadWorker):
    """Exits after reporting a failure of the given error type."""

    def __init__(self, config, previous, progress_format, error: str) -> None:
        super().__init__(config, previous, progress_format)
        self.events.put(FailedEvent(reason="boom", error=error))


def _sleepy_traversal(config, previous, events, progress_format) -> None:
    events.put(ProgressEvent(current=0, total=1, percent=0, eta=0.0, rate=0.0, message="scanning"))
    time.sleep(60)


def _sigterm_ignoring_traversal(config, previous, events, progress_format) -> None:
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    _sleepy_traversal(config, previous, events, progress_format)


def _runtime(task_store: TaskStore, record_store: LinkRecordStore, worker_factory) -> TaskRuntime:
    return TaskRuntime(task_store, record_store, worker_factory=worker_factory, poll_interval=0.01)


def test_second_run_is_rejected_while_active(make_config, task_store, record_store) -> None:
    task_store.add(make_config())
    runtime = _runtime(task_store, record_store, BlockingWorker)
    runtime.run("movies", QueueSink())

    with pytest.raises(TaskAlreadyRunningError):
        runtime.run("movies", QueueSink())
    with pytest.raises(TaskAlreadyRunningError):
        runtime.start("movies")

    runtime.cancel("movies")


def test_cancel_frees_the_task_name(make_config, task_store, record_store) -> None:
    task_store.add(make_config())
    runtime = _runtime(task_store, record_store, BlockingWorker)
    sink = QueueSink()
    runtime.run("movies", sink)

    assert runtime.cancel("movies") is True

    events = sink.drain(timeout=5)
    assert isinstance(events[-1], CancelledEvent)
    assert sum(isinstance(e, CancelledEvent) for e in events) == 1
    assert not runtime.is_running("movies")
    assert record_store.get("movies") == LinkRecord(name="movies")

    runtime.run("movies", QueueSink())
    assert runtime.is_running("movies")
    runtime.cancel("movies")


def test_cancel_reports_worker_that_will_not_stop(make_config, task_store, record_store) -> None:
    task_store.add(make_config())
    runtime = _runtime(task_store, record_store, lambda c, p, f: BlockingWorker(c, p, f, stubborn=True))
    runtime.run("movies", QueueSink())

    assert runtime.cancel("movies") is False
    assert not runtime.is_running("movies")


def test_cancel_without_run(make_config, task_store, record_store) -> None:
    task_store.add(make_config())
    runtime = _runtime(task_store, record_store, BlockingWorker)

    with pytest.raises(TaskNotRunningError):
        runtime.cancel("movies")


def test_unknown_task(task_store, record_store) -> None:
    runtime = _runtime(task_store, record_store, BlockingWorker)

    with pytest.raises(TaskNotFoundError):
        runtime.run("nope", QueueSink())
    with pytest.raises(TaskNotFoundError):
        runtime.start("nope")


def test_late_subscriber_sees_only_later_events(make_config, task_store, record_store) -> None:
    task_store.add(make_config())
    runtime = _runtime(task_store, record_store, BlockingWorker)
    first = QueueSink()
    runtime.run("movies", first)
    assert isinstance(first.get(timeout=5), ProgressEvent)

    late = QueueSink()
    runtime.subscribe("movies", late)
    runtime.cancel("movies")

    assert [type(e) for e in late.drain(timeout=5)] == [CancelledEvent]
    with pytest.raises(TaskNotRunningError):
        runtime.subscribe("movies", QueueSink())


def test_config_error_is_reported_as_failed(make_config, task_store, record_store, dest: Path) -> None:
    task_store.add(make_config(max_find_level=9))
    runtime = _runtime(task_store, record_store, BlockingWorker)
    sink = QueueSink()

    runtime.run("movies", sink)

    [event] = sink.drain(timeout=1)
    assert isinstance(event, FailedEvent)
    assert event.error == "ConfigError"
    assert not runtime.is_running("movies")
    assert not dest.exists()
    with pytest.raises(ConfigError):
        runtime.start("movies")


def test_worker_exiting_without_result_fails_the_run(make_config, task_store, record_store) -> None:
    task_store.add(make_config())
    runtime = _runtime(task_store, record_store, DeadWorker)

    with pytest.raises(LinkSyncError):
        runtime.start("movies")
    assert not runtime.is_running("movies")


def test_thread_worker_run_streams_progress_and_commits(make_config, task_store, record_store, source, dest) -> None:
    write_files(source, "movies/A/a.mkv", "movies/B/b.mkv")
    task_store.add(make_config())
    runtime = _runtime(task_store, record_store, ThreadWorker)
    sink = QueueSink()

    runtime.run("movies", sink)
    events = sink.drain(timeout=10)

    assert isinstance(events[-1], CompletedEvent)
    assert all(isinstance(e, ProgressEvent) for e in events[:-1])
    assert events[-2].current == 2
    assert events[-1].summary.success_count == 2
    assert (dest / "movies" / "A" / "a.mkv").is_file()
    assert len(record_store.get("movies").links) == 2
    assert not runtime.is_running("movies")


def test_platform_error_fails_run_and_keeps_previous_record(
    make_config, task_store, record_store, source, monkeypatch: pytest.MonkeyPatch
) -> None:
    write_files(source, "movies/A/a.mkv")
    task_store.add(make_config())
    previous = LinkRecord(name="movies", links={"/old/src": "/old/dest"})
    record_store.save(previous)
    runtime = _runtime(task_store, record_store, ThreadWorker)

    def cross_device(src, dst, *args, **kwargs):
        raise OSError(errno.EXDEV, "Invalid cross-device link")

    monkeypatch.setattr(os, "link", cross_device)

    with pytest.raises(PlatformError):
        runtime.start("movies")
    assert record_store.get("movies") == previous


def test_stale_links_wait_for_confirmation(make_config, task_store, record_store, source, dest) -> None:
    _, gone = write_files(source, "movies/A/a.mkv", "movies/B/b.mkv")
    write_files(dest, "unrelated/keep.txt")
    task_store.add(make_config())
    runtime = _runtime(task_store, record_store, ThreadWorker)
    runtime.start("movies")
    gone.unlink()

    summary = runtime.start("movies")

    stale = str(dest / "movies" / "B" / "b.mkv")
    assert summary.stale_count == 1
    assert runtime.list_pending_deletions("movies") == [stale]
    assert os.path.exists(stale)

    assert runtime.confirm_deletion("movies") is True

    assert not (dest / "movies" / "B").exists()
    assert (dest / "movies" / "A" / "a.mkv").is_file()
    assert (dest / "unrelated" / "keep.txt").is_file()
    assert runtime.list_pending_deletions("movies") == []
    assert runtime.confirm_deletion("movies") is True


def test_cancel_deletion_keeps_files(make_config, task_store, record_store, source, dest) -> None:
    _, gone = write_files(source, "movies/A/a.mkv", "movies/B/b.mkv")
    task_store.add(make_config())
    runtime = _runtime(task_store, record_store, ThreadWorker)
    runtime.start("movies")
    gone.unlink()
    runtime.start("movies")

    assert runtime.cancel_deletion("movies") is True

    assert runtime.list_pending_deletions("movies") == []
    assert (dest / "movies" / "B" / "b.mkv").is_file()


def test_confirm_deletion_rejected_while_running(make_config, task_store, record_store) -> None:
    task_store.add(make_config())
    runtime = _runtime(task_store, record_store, BlockingWorker)
    runtime.run("movies", QueueSink())

    with pytest.raises(TaskAlreadyRunningError):
        runtime.confirm_deletion("movies")

    runtime.cancel("movies")


def test_process_worker_start_is_idempotent_with_cache(make_config, task_store, tmp_path, source, dest) -> None:
    write_files(source, "movies/A/a.mkv", "movies/A/b.mkv", "c.mkv")
    task_store.add(make_config(open_cache=True))
    records_path = tmp_path / "home" / "records.json"
    runtime = _runtime(task_store, LinkRecordStore(str(records_path)), ProcessWorker)

    first = runtime.start("movies")
    record_after_first = LinkRecordStore(str(records_path)).get("movies")
    second = TaskRuntime(task_store, LinkRecordStore(str(records_path)), poll_interval=0.01).start("movies")

    assert first.success_count == 3
    assert second.success_count == 0
    assert second.skip_count == 3
    assert (dest / "c" / "c.mkv").is_file()
    assert LinkRecordStore(str(records_path)).get("movies") == record_after_first


def test_cancel_during_worker_start_waits_for_the_worker(make_config, task_store, record_store) -> None:
    task_store.add(make_config())
    entered, gate = threading.Event(), threading.Event()
    workers: list[GatedWorker] = []

    def factory(config, previous, progress_format):
        workers.append(GatedWorker(config, previous, progress_format, entered, gate))
        return workers[-1]

    runtime = _runtime(task_store, record_store, factory)
    sink = QueueSink()
    launcher = threading.Thread(target=runtime.run, args=("movies", sink))
    launcher.start()
    assert entered.wait(5)

    results: list = []
    canceller = threading.Thread(target=lambda: results.append(runtime.cancel("movies")))
    canceller.start()
    canceller.join(0.2)
    assert canceller.is_alive()

    gate.set()
    launcher.join(5)
    canceller.join(5)

    assert results == [True]
    assert workers[0].started_before_terminate is True
    assert not workers[0].is_alive()
    assert isinstance(sink.drain(timeout=5)[-1], CancelledEvent)
    assert not runtime.is_running("movies")


def _process_factory(target, grace: float, workers: list):
    fork = multiprocessing.get_context("fork")

    def factory(config, previous, progress_format):
        workers.append(ProcessWorker(config, previous, progress_format, grace=grace, context=fork, target=target))
        return workers[-1]

    return factory


def test_cancel_terminates_a_live_process_worker(make_config, task_store, record_store) -> None:
    task_store.add(make_config())
    previous = LinkRecord(name="movies", links={"/old/src": "/old/dest"})
    record_store.save(previous)
    workers: list[ProcessWorker] = []
    runtime = _runtime(task_store, record_store, _process_factory(_sleepy_traversal, 5.0, workers))
    sink = QueueSink()
    runtime.run("movies", sink)
    assert isinstance(sink.get(timeout=10), ProgressEvent)

    assert runtime.cancel("movies") is True

    assert isinstance(sink.drain(timeout=5)[-1], CancelledEvent)
    assert not runtime.is_running("movies")
    assert record_store.get("movies") == previous
    assert workers[0].exitcode == -signal.SIGTERM


def test_cancel_kills_a_process_worker_ignoring_sigterm(make_config, task_store, record_store) -> None:
    task_store.add(make_config())
    workers: list[ProcessWorker] = []
    runtime = _runtime(task_store, record_store, _process_factory(_sigterm_ignoring_traversal, 0.5, workers))
    sink = QueueSink()
    runtime.run("movies", sink)
    assert isinstance(sink.get(timeout=10), ProgressEvent)

    assert runtime.cancel("movies") is True

    assert isinstance(sink.drain(timeout=5)[-1], CancelledEvent)
    assert not workers[0].is_alive()
    assert workers[0].exitcode == -signal.SIGKILL
    runtime.run("movies", QueueSink())
    assert runtime.is_running("movies")
    runtime.cancel("movies")


def test_cancel_stops_a_thread_worker_between_files(
    make_config, task_store, record_store, source, dest, monkeypatch: pytest.MonkeyPatch
) -> None:
    write_files(source, "movies/A/a.mkv", "movies/A/b.mkv", "movies/A/c.mkv")
    task_store.add(make_config())
    workers: list[ThreadWorker] = []

    def factory(config, previous, progress_format):
        workers.append(ThreadWorker(config, previous, progress_format))
        return workers[-1]

    linking = threading.Event()
    real_link = os.link

    def held_link(src, dst, *args, **kwargs):
        linking.set()
        workers[0].cancel_event.wait(5)
        real_link(src, dst, *args, **kwargs)

    monkeypatch.setattr(os, "link", held_link)
    runtime = _runtime(task_store, record_store, factory)
    sink = QueueSink()
    runtime.run("movies", sink)
    assert linking.wait(5)

    assert runtime.cancel("movies") is True

    assert isinstance(sink.drain(timeout=5)[-1], CancelledEvent)
    assert (dest / "movies" / "A" / "a.mkv").is_file()
    assert not (dest / "movies" / "A" / "b.mkv").exists()
    assert record_store.get("movies") == LinkRecord(name="movies")
    assert not runtime.is_running("movies")


def test_completion_racing_cancel_has_one_consistent_outcome(make_config, task_store, source) -> None:
    write_files(source, "movies/A/a.mkv", "movies/B/b.mkv")
    task_store.add(make_config())

    for _ in range(20):
        records = LinkRecordStore()
        runtime = _runtime(task_store, records, ThreadWorker)
        sink = QueueSink()
        runtime.run("movies", sink)
        try:
            stopped = runtime.cancel("movies")
        except TaskNotRunningError:
            stopped = None

        terminals = [e for e in sink.drain(timeout=10) if is_terminal(e)]

        assert len(terminals) == 1
        if stopped is None:
            assert isinstance(terminals[0], CompletedEvent)
            assert len(records.get("movies").links) == 2
        else:
            assert stopped is True
            assert isinstance(terminals[0], CancelledEvent)
            assert records.get("movies").links == {}
        assert not runtime.is_running("movies")


@pytest.mark.parametrize("error", [TaskExistsError, LifecycleError, TaskNotRunningError])
def test_start_reraises_the_reported_error_type(make_config, task_store, record_store, error) -> None:
    task_store.add(make_config())
    runtime = _runtime(task_store, record_store, lambda c, p, f: ReportingWorker(c, p, f, error.__name__))

    with pytest.raises(error) as excinfo:
        runtime.start("movies")

    assert type(excinfo.value) is error
