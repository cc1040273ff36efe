# -*- coding: utf-8 -*-
"""
Task definitions stored as a JSON object keyed by task name, e.g.

    {"movies": {"source": "/mnt/nas/downloads/complete", "dest": "/mnt/nas/media/movies",
                "save_mode": 1, "extensions": ["mkv", "mp4"], "filter_mode": "whitelist"}}
"""

import json
import os
import shutil
import threading
from typing import Dict, List, Optional

from .config import LINKSYNC_HOME, TASKS_PATH, TaskConfig
from .errors import ConfigError, TaskExistsError, TaskNotFoundError
from .logger_utils import get_logger

logger = get_logger("linksync.tasks")


class TaskStore:
    def __init__(self, path: Optional[str] = TASKS_PATH):
        self.path = path
        self._lock = threading.Lock()
        self._tasks: Dict[str, dict] = {}
        if path and os.path.isfile(path):
            with open(path, "r", encoding="utf-8") as f:
                self._tasks = json.load(f)
            logger.debug(f"Loaded {len(self._tasks)} tasks from {path}")

    def _write(self):
        if not self.path:
            return
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._tasks, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)

    def exists(self, name: str) -> bool:
        if not name:
            raise ConfigError("A task name is required")
        with self._lock:
            return name in self._tasks

    def get(self, name: str) -> TaskConfig:
        if not self.exists(name):
            raise TaskNotFoundError(f"Task '{name}' does not exist")
        with self._lock:
            return TaskConfig.from_dict(name, self._tasks[name])

    def list(self) -> List[TaskConfig]:
        with self._lock:
            return [TaskConfig.from_dict(name, data) for name, data in self._tasks.items()]

    def add(self, config: TaskConfig):
        if self.exists(config.name):
            raise TaskExistsError(f"Task '{config.name}' already exists")
        with self._lock:
            self._tasks[config.name] = config.to_dict()
            self._write()
        logger.info(f"Added task '{config.name}'")

    def update(self, prev_name: str, config: TaskConfig):
        """Replace a task definition, renaming it if ``config.name`` differs."""
        if not self.exists(prev_name):
            raise TaskNotFoundError(f"Task '{prev_name}' does not exist")
        if prev_name != config.name and self.exists(config.name):
            raise TaskExistsError(f"Task '{config.name}' already exists")
        with self._lock:
            self._tasks.pop(prev_name)
            self._tasks[config.name] = config.to_dict()
            self._write()
        logger.info(f"Updated task '{prev_name}' -> '{config.name}'")

    def remove(self, name: str):
        if not self.exists(name):
            raise TaskNotFoundError(f"Task '{name}' does not exist")
        with self._lock:
            self._tasks.pop(name)
            self._write()
        logger.info(f"Removed task '{name}'")


def backup(target: str, home: str = LINKSYNC_HOME) -> str:
    """
    Copy the linksync home directory (task definitions and link records) into ``target``.

    Returns:
        Path of the copy, ``target/<home dir name>``.
    """
    if not target:
        raise ConfigError("A backup path is required")
    if not os.path.isdir(home):
        raise ConfigError(f"Nothing to back up: '{home}' does not exist")
    copy = os.path.join(os.path.abspath(target), os.path.basename(os.path.normpath(home)))
    shutil.copytree(home, copy, dirs_exist_ok=True)
    logger.info(f"Backed up {home} to {copy}")
    return copy


def restore(source: str, home: str = LINKSYNC_HOME) -> str:
    """
    Copy a backup made by :func:`backup` back over the linksync home directory.

    ``source`` may be the backed up directory itself or the directory it was
    backed up into.
    """
    if not source:
        raise ConfigError("A backup path is required")
    name = os.path.basename(os.path.normpath(home))
    if os.path.basename(os.path.normpath(source)) != name:
        source = os.path.join(source, name)
    if not os.path.isdir(source):
        raise ConfigError(f"No backup found at '{source}'")
    shutil.copytree(source, home, dirs_exist_ok=True)
    logger.info(f"Restored {home} from {source}")
    return home
