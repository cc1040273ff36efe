"""Shared test fixtures."""

from __future__ import annotations

import os
import tempfile

os.environ.setdefault("LINKSYNC_LOG_PATH", os.path.join(tempfile.gettempdir(), "linksync_tests.log"))

from pathlib import Path  # noqa: E402

import pytest  # noqa: E402

from linksync.config import FilterMode, TaskConfig  # noqa: E402
from linksync.link_index import LinkRecordStore  # noqa: E402
from linksync.task_store import TaskStore  # noqa: E402


def write_files(root: Path, *relative: str) -> list[Path]:
    """Create small files under ``root``; content is the relative path itself."""
    created = []
    for rel in relative:
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(rel, encoding="utf-8")
        created.append(path)
    return created


@pytest.fixture()
def source(tmp_path: Path) -> Path:
    path = tmp_path / "src"
    path.mkdir()
    return path


@pytest.fixture()
def dest(tmp_path: Path) -> Path:
    return tmp_path / "out"


@pytest.fixture()
def make_config(source: Path, dest: Path):
    def _make(**overrides) -> TaskConfig:
        values = {
            "name": "movies",
            "source": str(source),
            "dest": str(dest),
            "save_mode": 0,
            "max_find_level": 4,
            "extensions": frozenset(),
            "filter_mode": FilterMode.BLACKLIST,
            "open_cache": False,
            "mkdir_if_single": True,
        }
        values.update(overrides)
        return TaskConfig(**values)

    return _make


@pytest.fixture()
def task_store(tmp_path: Path) -> TaskStore:
    return TaskStore(str(tmp_path / "home" / "tasks.json"))


@pytest.fixture()
def record_store(tmp_path: Path) -> LinkRecordStore:
    return LinkRecordStore(str(tmp_path / "home" / "records.json"))
