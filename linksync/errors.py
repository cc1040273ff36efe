# -*- coding: utf-8 -*-
"""Exceptions raised by the linksync engine and task runtime."""


class LinkSyncError(Exception):
    """Base class for linksync errors."""


class ConfigError(LinkSyncError):
    """Task configuration is invalid; raised before any filesystem mutation."""


class ConflictError(LinkSyncError):
    """Destination already exists and is not a link to the source file."""


class PlatformError(LinkSyncError):
    """Hardlinks are not possible between source and destination."""


class RunCancelledError(LinkSyncError):
    pass


class TaskExistsError(LinkSyncError):
    pass


class LifecycleError(LinkSyncError):
    """Request does not fit the current state of the task."""


class TaskNotFoundError(LifecycleError):
    pass


class TaskAlreadyRunningError(LifecycleError):
    pass


class TaskNotRunningError(LifecycleError):
    pass


ERRORS_BY_NAME = {
    cls.__name__: cls
    for cls in (
        LinkSyncError,
        ConfigError,
        ConflictError,
        PlatformError,
        RunCancelledError,
        TaskExistsError,
        LifecycleError,
        TaskNotFoundError,
        TaskAlreadyRunningError,
        TaskNotRunningError,
    )
}
