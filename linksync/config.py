# -*- coding: utf-8 -*-
"""
Central configuration for linksync.
Contains static paths, keybinds, defaults and the per-task configuration model.
"""

import getpass
import os
from dataclasses import dataclass, field, asdict
from enum import Enum, IntEnum
from typing import Optional

from .errors import ConfigError

# Home directory for task definitions and link records
LINKSYNC_HOME = os.path.expanduser(os.environ.get("LINKSYNC_HOME", "~/.linksync"))
TASKS_PATH = os.path.join(LINKSYNC_HOME, "tasks.json")
RECORDS_PATH = os.path.join(LINKSYNC_HOME, "records.json")

# Log file path (read by logger_utils.py)
LOG_PATH = os.environ.get("LINKSYNC_LOG_PATH", f"/tmp/linksync_{getpass.getuser()}.log")
LOG_LEVEL = os.environ.get("LINKSYNC_LOG_LEVEL", "DEBUG").upper()

# Traversal depth bounds
DEFAULT_MAX_FIND_LEVEL = 4
MIN_FIND_LEVEL = 1
MAX_FIND_LEVEL = 6

# Progress / worker lifecycle
DEFAULT_RENDER_THROTTLE_MS = 16
DEFAULT_PROGRESS_FORMAT = ":bar :percent :current/:total eta :etas :file"
TERMINATE_GRACE_SECONDS = 5.0

# Keybinds for the monitor TUI
TUI_KEYBINDS = [
    ("j", "move_down", "Move down"),
    ("k", "move_up", "Move up"),
    ("r", "run_task", "Run"),
    ("c", "cancel_task", "Cancel"),
    ("p", "show_pending", "Pending deletions"),
    ("y", "confirm_deletion", "Confirm deletion"),
    ("n", "discard_deletion", "Discard deletion"),
    ("q", "quit", "Quit"),
]


class SaveMode(IntEnum):
    """How many trailing segments of the relative source dir are kept under dest."""

    FULL_TREE = 0
    TOP_LEVEL_ONLY = 1


class FilterMode(str, Enum):
    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"


def normalize_extension(ext: str) -> str:
    return ext.strip().lstrip(".").lower()


@dataclass(frozen=True)
class TaskConfig:
    name: str
    source: str
    dest: str
    save_mode: int = SaveMode.FULL_TREE
    max_find_level: int = DEFAULT_MAX_FIND_LEVEL
    extensions: frozenset = field(default_factory=frozenset)
    filter_mode: FilterMode = FilterMode.BLACKLIST
    open_cache: bool = False
    mkdir_if_single: bool = True
    schedule: Optional[str] = None

    def accepts(self, filename: str) -> bool:
        """Return True if the extension filter lets ``filename`` through."""
        ext = normalize_extension(os.path.splitext(filename)[1])
        if self.filter_mode == FilterMode.WHITELIST:
            return ext in self.extensions
        return ext not in self.extensions

    def validate(self):
        """
        Check the configuration before a run and create dest if it is missing.

        Raises:
            ConfigError: invalid save mode or depth, missing source, or dest equal
                to or inside source.
        """
        if self.save_mode not in (SaveMode.FULL_TREE, SaveMode.TOP_LEVEL_ONLY):
            raise ConfigError(f"save_mode must be 0 or 1, got {self.save_mode!r}")
        if isinstance(self.max_find_level, bool) or not isinstance(self.max_find_level, int):
            raise ConfigError(f"max_find_level must be an integer, got {self.max_find_level!r}")
        if not MIN_FIND_LEVEL <= self.max_find_level <= MAX_FIND_LEVEL:
            raise ConfigError(
                f"max_find_level must be between {MIN_FIND_LEVEL} and {MAX_FIND_LEVEL}, "
                f"got {self.max_find_level}"
            )
        if not self.source or not os.path.isdir(self.source):
            raise ConfigError(f"Source directory '{self.source}' does not exist.")
        if not self.dest:
            raise ConfigError("Destination directory is required.")
        source = os.path.realpath(self.source)
        dest = os.path.realpath(self.dest)
        if source == dest:
            raise ConfigError("Source and destination must be different directories.")
        if dest.startswith(os.path.join(source, "")):
            raise ConfigError(f"Destination '{self.dest}' must not be inside source '{self.source}'.")
        try:
            os.makedirs(self.dest, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"Cannot create destination '{self.dest}': {e}") from e

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "TaskConfig":
        try:
            return cls(
                name=name,
                source=os.path.abspath(os.path.expanduser(data["source"])),
                dest=os.path.abspath(os.path.expanduser(data["dest"])),
                save_mode=int(data.get("save_mode", SaveMode.FULL_TREE)),
                max_find_level=int(data.get("max_find_level", DEFAULT_MAX_FIND_LEVEL)),
                extensions=frozenset(normalize_extension(e) for e in data.get("extensions", []) if e),
                filter_mode=FilterMode(data.get("filter_mode", FilterMode.BLACKLIST.value)),
                open_cache=bool(data.get("open_cache", False)),
                mkdir_if_single=bool(data.get("mkdir_if_single", True)),
                schedule=data.get("schedule"),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ConfigError(f"Invalid configuration for task '{name}': {e}") from e

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("name")
        data["save_mode"] = int(self.save_mode)
        data["extensions"] = sorted(self.extensions)
        data["filter_mode"] = self.filter_mode.value
        return data
