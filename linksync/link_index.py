#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Link records: which source files each task has hardlinked, and where."""

import json
import os
import tempfile
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .logger_utils import get_logger

logger = get_logger("linksync.link_index")

RECORDS_FORMAT_VERSION = 1

Signature = Tuple[int, int]


def file_signature(stat_result) -> Signature:
    """(mtime_ns, size) of a stat result, used to detect unchanged sources."""
    return (stat_result.st_mtime_ns, stat_result.st_size)


@dataclass
class LinkRecord:
    name: str
    links: Dict[str, str] = field(default_factory=dict)
    signatures: Dict[str, Signature] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "links": dict(self.links),
            "signatures": {src: list(sig) for src, sig in self.signatures.items()},
        }

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "LinkRecord":
        return cls(
            name=name,
            links=dict(data.get("links", {})),
            signatures={src: (int(sig[0]), int(sig[1])) for src, sig in data.get("signatures", {}).items()},
        )


def diff_records(previous: LinkRecord, candidate: LinkRecord, attempted: Optional[set] = None) -> List[str]:
    """
    Destination paths recorded by ``previous`` that the candidate no longer maps.

    A source that was attempted in this run but failed keeps its old mapping
    (it still qualifies). A source whose destination moved leaves its old
    destination stale. Only destinations that still exist on disk are returned.
    """
    attempted = attempted or set()
    stale = []
    for src, old_dest in previous.links.items():
        new_dest = candidate.links.get(src)
        if new_dest is None and src in attempted:
            continue
        if new_dest == old_dest:
            continue
        if os.path.lexists(old_dest):
            stale.append(old_dest)
    return stale


class LinkRecordStore:
    """
    JSON-file backed store of LinkRecords keyed by task name.

    Also holds each task's pending deletion set. Pending sets live in memory
    only; link records are written atomically on every save.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.Lock()
        self._records: Dict[str, LinkRecord] = {}
        self._pending: Dict[str, List[str]] = {}
        if path:
            self._load()

    def _load(self):
        if not os.path.isfile(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load link records from {self.path}: {e}")
            raise
        for name, record in data.get("tasks", {}).items():
            self._records[name] = LinkRecord.from_dict(name, record)
        logger.debug(f"Loaded {len(self._records)} link records from {self.path}")

    def _write(self):
        if not self.path:
            return
        payload = {
            "version": RECORDS_FORMAT_VERSION,
            "tasks": {name: record.to_dict() for name, record in self._records.items()},
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".records-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, name: str) -> LinkRecord:
        """Return a copy of the task's record, or an empty one if it never ran."""
        with self._lock:
            record = self._records.get(name)
            if record is None:
                return LinkRecord(name=name)
            return LinkRecord(name=name, links=dict(record.links), signatures=dict(record.signatures))

    def save(self, record: LinkRecord):
        with self._lock:
            self._records[record.name] = record
            self._write()
        logger.info(f"Saved link record for '{record.name}' ({len(record.links)} links)")

    def remove(self, name: str):
        with self._lock:
            self._records.pop(name, None)
            self._pending.pop(name, None)
            self._write()

    def names(self) -> List[str]:
        with self._lock:
            return list(self._records)

    def set_pending(self, name: str, paths: List[str]):
        with self._lock:
            if paths:
                self._pending[name] = list(dict.fromkeys(paths))
            else:
                self._pending.pop(name, None)

    def pending(self, name: str) -> List[str]:
        with self._lock:
            return list(self._pending.get(name, []))

    def clear_pending(self, name: str):
        with self._lock:
            self._pending.pop(name, None)
