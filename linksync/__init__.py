# -*- coding: utf-8 -*-

from .config import FilterMode, SaveMode, TaskConfig
from .core import link_file, remove_links, traverse
from .errors import (
    ConfigError,
    ConflictError,
    LifecycleError,
    LinkSyncError,
    PlatformError,
    RunCancelledError,
    TaskExistsError,
    TaskAlreadyRunningError,
    TaskNotFoundError,
    TaskNotRunningError,
)
from .events import CallbackSink, QueueSink, RunSummary
from .link_index import LinkRecord, LinkRecordStore
from .logger_utils import get_logger
from .path_policy import find_common_ancestor, resolve_destination
from .progress import ProgressBar
from .runtime import ProcessWorker, TaskRuntime, ThreadWorker
from .task_store import TaskStore, backup, restore

__all__ = [
    'TaskConfig', 'SaveMode', 'FilterMode',
    'resolve_destination', 'find_common_ancestor',
    'link_file', 'traverse', 'remove_links',
    'LinkRecord', 'LinkRecordStore',
    'ProgressBar', 'RunSummary', 'CallbackSink', 'QueueSink',
    'TaskRuntime', 'ProcessWorker', 'ThreadWorker', 'TaskStore', 'backup', 'restore',
    'LinkSyncError', 'ConfigError', 'ConflictError', 'PlatformError', 'LifecycleError',
    'TaskNotFoundError', 'TaskAlreadyRunningError', 'TaskNotRunningError', 'RunCancelledError', 'TaskExistsError',
    'get_logger',
]
