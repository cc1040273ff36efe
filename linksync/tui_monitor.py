#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Monitor TUI for linksync using Textual: lists the configured tasks, runs and
cancels them, streams their progress and handles pending stale-link deletions.

Usage: linksync [tasks.json]
       linksync backup PATH
       linksync restore PATH
"""

import sys
import threading
from typing import Optional

from rich.text import Text
from textual.app import App, ComposeResult
from textual.widgets import DataTable, Footer, Header, Log

from .config import RECORDS_PATH, TASKS_PATH, TUI_KEYBINDS
from .errors import LinkSyncError
from .events import CallbackSink, CancelledEvent, CompletedEvent, FailedEvent, ProgressEvent
from .link_index import LinkRecordStore
from .logger_utils import get_logger
from .runtime import TaskRuntime
from .task_store import TaskStore, backup, restore

logger = get_logger("linksync.tui")

STATE_STYLES = {
    "running": "bold yellow",
    "completed": "green",
    "failed": "bold red",
    "cancelled": "magenta",
}


class LinkerMonitor(App):
    CSS_PATH = None
    BINDINGS = TUI_KEYBINDS

    def __init__(self, runtime: TaskRuntime, tasks: TaskStore, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.runtime = runtime
        self.tasks = tasks
        self.task_names = []
        self.states = {}
        self.progress = {}
        self.cursor_index = 0
        self._ui_thread = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        yield DataTable(id="tasktable")
        yield Log(id="eventlog", highlight=False)
        yield Footer()

    async def on_mount(self) -> None:
        self._ui_thread = threading.get_ident()
        table = self.query_one(DataTable)
        table.add_columns("#", "Task", "Source", "Dest", "State", "Progress", "Pending")
        self.load_tasks()
        table.focus()

    def load_tasks(self):
        """Reload task definitions into the table, keeping the cursor where it was."""
        table = self.query_one(DataTable)
        table.clear()
        try:
            configs = self.tasks.list()
        except LinkSyncError as e:
            logger.error(f"Error listing tasks: {e}")
            configs = []
        self.task_names = [c.name for c in configs]
        for idx, config in enumerate(configs):
            state = self.states.get(config.name, "running" if self.runtime.is_running(config.name) else "idle")
            pending = len(self.runtime.list_pending_deletions(config.name))
            table.add_row(
                str(idx + 1),
                Text(config.name, style="bold blue"),
                config.source,
                config.dest,
                Text(state, style=STATE_STYLES.get(state, "")),
                self.progress.get(config.name, ""),
                str(pending) if pending else "",
            )
        if self.cursor_index >= len(configs):
            self.cursor_index = max(0, len(configs) - 1)
        if configs:
            table.move_cursor(row=self.cursor_index)
        self.query_one(Header).sub_title = f"{len(configs)} tasks"

    def selected_task(self) -> Optional[str]:
        if not self.task_names or self.cursor_index >= len(self.task_names):
            return None
        return self.task_names[self.cursor_index]

    def write_log(self, line: str):
        self.query_one(Log).write_line(line)

    def _deliver(self, name: str, event):
        # sinks are called from the runtime's pump thread, except for
        # configuration failures which are reported synchronously
        if threading.get_ident() == self._ui_thread:
            self.on_task_event(name, event)
        else:
            self.call_from_thread(self.on_task_event, name, event)

    def on_task_event(self, name: str, event):
        if isinstance(event, ProgressEvent):
            self.progress[name] = f"{event.current}/{event.total} ({event.percent}%)"
            self.write_log(f"[{name}] {event.message}")
        elif isinstance(event, CompletedEvent):
            summary = event.summary
            self.states[name] = "completed"
            self.write_log(f"[{name}] Completed. Linked: {summary.success_count}, "
                           f"Failed: {summary.fail_count}, Skipped: {summary.skip_count}")
            for reason, paths in summary.failures.items():
                self.write_log(f"[{name}]   {reason}: {len(paths)} files")
            if summary.stale_count:
                self.write_log(f"[{name}] {summary.stale_count} stale links pending deletion (p to list)")
        elif isinstance(event, FailedEvent):
            self.states[name] = "failed"
            self.write_log(f"[{name}] Failed ({event.error}): {event.reason}")
            self.bell()
        elif isinstance(event, CancelledEvent):
            self.states[name] = "cancelled"
            self.write_log(f"[{name}] Cancelled")
        self.load_tasks()

    def action_move_up(self):
        if self.cursor_index > 0:
            self.cursor_index -= 1
            self.query_one(DataTable).move_cursor(row=self.cursor_index)

    def action_move_down(self):
        if self.cursor_index < len(self.task_names) - 1:
            self.cursor_index += 1
            self.query_one(DataTable).move_cursor(row=self.cursor_index)

    def action_run_task(self):
        name = self.selected_task()
        if name is None:
            self.bell()
            return
        sink = CallbackSink(lambda event: self._deliver(name, event))
        try:
            self.runtime.run(name, sink)
        except LinkSyncError as e:
            logger.error(f"Cannot run '{name}': {e}")
            self.write_log(f"[{name}] {e}")
            self.bell()
            return
        if self.runtime.is_running(name):
            self.states[name] = "running"
            self.progress.pop(name, None)
            self.write_log(f"[{name}] Started")
        self.load_tasks()

    def action_cancel_task(self):
        name = self.selected_task()
        if name is None:
            self.bell()
            return
        try:
            stopped = self.runtime.cancel(name)
        except LinkSyncError as e:
            self.write_log(f"[{name}] {e}")
            self.bell()
            return
        if not stopped:
            self.write_log(f"[{name}] Worker did not stop cleanly")

    def action_show_pending(self):
        name = self.selected_task()
        if name is None:
            self.bell()
            return
        paths = self.runtime.list_pending_deletions(name)
        if not paths:
            self.write_log(f"[{name}] No pending deletions")
            return
        self.write_log(f"[{name}] Pending deletions (y to confirm, n to discard):")
        for path in paths:
            self.write_log(f"[{name}]   {path}")

    def action_confirm_deletion(self):
        name = self.selected_task()
        if name is None:
            self.bell()
            return
        count = len(self.runtime.list_pending_deletions(name))
        try:
            ok = self.runtime.confirm_deletion(name)
        except LinkSyncError as e:
            self.write_log(f"[{name}] {e}")
            self.bell()
            return
        self.write_log(f"[{name}] Deleted {count} stale links" if ok else f"[{name}] Some stale links could not be deleted")
        self.load_tasks()

    def action_discard_deletion(self):
        name = self.selected_task()
        if name is None:
            self.bell()
            return
        self.runtime.cancel_deletion(name)
        self.write_log(f"[{name}] Pending deletions discarded")
        self.load_tasks()

    def action_quit(self):
        self.exit()

    def on_unmount(self) -> None:
        self.runtime.shutdown()
        logger.info("Linksync monitor session ended.")

    def on_data_table_row_highlighted(self, event) -> None:
        self.cursor_index = event.cursor_row


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if argv and argv[0] in ("backup", "restore"):
        action = backup if argv[0] == "backup" else restore
        try:
            print(action(argv[1] if len(argv) > 1 else ""))
        except LinkSyncError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        return 0
    tasks = TaskStore(argv[0] if argv else TASKS_PATH)
    runtime = TaskRuntime(tasks, LinkRecordStore(RECORDS_PATH))
    LinkerMonitor(runtime, tasks).run()


if __name__ == "__main__":
    sys.exit(main())
