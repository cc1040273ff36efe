#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Core hardlinking logic: per-file links, the task traversal and stale link cleanup."""

import errno
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .config import DEFAULT_PROGRESS_FORMAT, FilterMode, SaveMode, TaskConfig
from .errors import ConflictError, PlatformError, RunCancelledError
from .events import RunSummary
from .link_index import LinkRecord, diff_records, file_signature
from .logger_utils import get_logger
from .path_policy import resolve_destination
from .progress import ProgressBar

logger = get_logger("linksync.core")

LINKED = "linked"
EXISTS = "exists"

# errno values meaning the filesystem pair cannot hold hardlinks at all
PLATFORM_ERRNOS = {errno.EXDEV, errno.EOPNOTSUPP, errno.ENOTSUP}


@dataclass
class TraversalStats:
    linked: int = 0
    cached: int = 0
    existing: int = 0
    failed: int = 0
    filtered: int = 0
    total: int = 0

    @property
    def skipped(self) -> int:
        return self.cached + self.existing


@dataclass
class TraversalResult:
    record: LinkRecord
    failures: Dict[str, List[str]] = field(default_factory=dict)
    stats: TraversalStats = field(default_factory=TraversalStats)
    stale: List[str] = field(default_factory=list)
    elapsed: float = 0.0

    def summary(self) -> RunSummary:
        return RunSummary(
            success_count=self.stats.linked,
            fail_count=self.stats.failed,
            skip_count=self.stats.skipped,
            failures={reason: list(paths) for reason, paths in self.failures.items()},
            stale_count=len(self.stale),
            filtered_count=self.stats.filtered,
            elapsed=self.elapsed,
        )


def link_file(source: str, destination_dir: str) -> Tuple[str, str]:
    """
    Creates a hardlink to ``source`` with the same name inside ``destination_dir``.

    Args:
        source: The source file path.
        destination_dir: Directory the link goes into. Created if missing.

    Returns:
        (outcome, link_path) where outcome is LINKED for a new link or EXISTS
        when the destination already is a link to the same file.

    Raises:
        ConflictError: the destination exists and is a different file.
        PlatformError: hardlinks are not supported between source and destination.
        OSError: any other failure creating the directory or the link.
    """
    link_path = os.path.join(destination_dir, os.path.basename(source))
    os.makedirs(destination_dir, exist_ok=True)

    if os.path.lexists(link_path):
        if not os.path.islink(link_path) and os.path.samefile(source, link_path):
            return EXISTS, link_path
        raise ConflictError(f"Destination '{link_path}' already exists and is not a link to the source")

    try:
        os.link(source, link_path)
    except OSError as e:
        if e.errno in PLATFORM_ERRNOS:
            raise PlatformError(
                f"Cannot hardlink '{source}' -> '{link_path}': {e.strerror}. "
                f"Source and destination must be on the same filesystem."
            ) from e
        raise
    logger.debug(f"Created hardlink: '{source}' -> '{link_path}'")
    return LINKED, link_path


def iter_source_files(config: TaskConfig, stats: Optional[TraversalStats] = None,
                      cancel_event=None) -> Iterator[str]:
    """
    Yield the regular files under ``config.source`` that pass the extension filter.

    Files directly in the source root are level 1; deeper subtrees beyond
    ``max_find_level`` are pruned.

    Raises:
        RunCancelledError: ``cancel_event`` was set while walking.
    """
    root = os.path.realpath(config.source)
    for current, dirs, files in os.walk(root):
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelledError(f"Task '{config.name}' was cancelled while scanning")
        rel = os.path.relpath(current, root)
        depth = 0 if rel == os.curdir else len(rel.split(os.sep))
        dirs.sort()
        if depth + 1 >= config.max_find_level:
            dirs[:] = []
        for name in sorted(files):
            path = os.path.join(current, name)
            if os.path.islink(path) or not os.path.isfile(path) or not config.accepts(name):
                if stats is not None:
                    stats.filtered += 1
                continue
            yield path


def _cache_hit(previous: LinkRecord, source: str, signature, dest_path: str) -> bool:
    return previous.signatures.get(source) == signature and previous.links.get(source) == dest_path


def traverse(config: TaskConfig, previous: LinkRecord, on_progress: Optional[Callable] = None,
             cancel_event=None, progress_format: str = DEFAULT_PROGRESS_FORMAT) -> TraversalResult:
    """
    Link every qualifying source file of a task and build its candidate record.

    Per-file problems are collected in ``failures`` (reason -> source paths)
    and do not stop the run. The previous record is never modified.

    Raises:
        PlatformError: hardlinks are impossible for this source/dest pair.
        RunCancelledError: ``cancel_event`` was set.
    """
    started = time.monotonic()
    stats = TraversalStats()
    candidate = LinkRecord(name=config.name)
    failures: Dict[str, List[str]] = {}
    attempted = set()
    source_root = os.path.realpath(config.source)

    sources = list(iter_source_files(config, stats, cancel_event))
    stats.total = len(sources)
    bar = ProgressBar(progress_format, stats.total, emit=on_progress)
    logger.info(f"[{config.name}] {stats.total} files to process, {stats.filtered} filtered out")

    for source in sources:
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelledError(f"Task '{config.name}' was cancelled")
        attempted.add(source)
        dest_dir = resolve_destination(source, source_root, config.dest, config.save_mode, config.mkdir_if_single)
        dest_path = os.path.join(dest_dir, os.path.basename(source))
        try:
            signature = file_signature(os.stat(source))
            if config.open_cache and _cache_hit(previous, source, signature, dest_path):
                stats.cached += 1
            else:
                outcome, dest_path = link_file(source, dest_dir)
                if outcome == LINKED:
                    stats.linked += 1
                else:
                    stats.existing += 1
            candidate.links[source] = dest_path
            if config.open_cache:
                candidate.signatures[source] = signature
        except ConflictError as e:
            stats.failed += 1
            failures.setdefault("ConflictError: destination exists with a different identity", []).append(source)
            logger.warning(f"[{config.name}] {e}")
        except OSError as e:
            stats.failed += 1
            failures.setdefault(e.strerror or str(e), []).append(source)
            logger.error(f"[{config.name}] Failed to link '{source}': {e}")
        if source not in candidate.links and source in previous.links:
            # failed this time; the earlier link is still ours to track
            candidate.links[source] = previous.links[source]
        bar.tick(1, {"file": os.path.basename(source)})

    stale = diff_records(previous, candidate, attempted)
    result = TraversalResult(
        record=candidate,
        failures=failures,
        stats=stats,
        stale=stale,
        elapsed=time.monotonic() - started,
    )
    log_run_end(config.name, result.summary())
    return result


def remove_links(paths: List[str], dest_root: str) -> List[str]:
    """
    Delete the given destination files, then prune directories left empty,
    walking up to but not including ``dest_root``.

    Returns:
        The paths that could not be removed.
    """
    root = os.path.abspath(dest_root)
    failed = []
    parents = set()
    for path in dict.fromkeys(paths):
        try:
            os.unlink(path)
            logger.info(f"Deleted stale link: {path}")
        except FileNotFoundError:
            logger.debug(f"Stale link already gone: {path}")
        except OSError as e:
            logger.error(f"Error deleting {path}: {e}")
            failed.append(path)
            continue
        parents.add(os.path.dirname(os.path.abspath(path)))

    # deepest first so parents see their children removed
    for directory in sorted(parents, key=lambda d: d.count(os.sep), reverse=True):
        current = directory
        while current != root and current.startswith(os.path.join(root, "")):
            try:
                if os.listdir(current):
                    break
                os.rmdir(current)
                logger.info(f"Removed empty directory: {current}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error(f"Error removing directory {current}: {e}")
                break
            current = os.path.dirname(current)
    return failed


def log_run_start(config: TaskConfig):
    save_mode = "keep full tree" if config.save_mode == SaveMode.FULL_TREE else "keep one directory level"
    ext_label = "included extensions" if config.filter_mode == FilterMode.WHITELIST else "excluded extensions"
    logger.info(f"[{config.name}] Configuration checked. Current configuration:")
    logger.info(f"[{config.name}]   source: {config.source}")
    logger.info(f"[{config.name}]   dest: {config.dest}")
    logger.info(f"[{config.name}]   mode: {config.filter_mode.value}")
    if config.extensions:
        logger.info(f"[{config.name}]   {ext_label}: {','.join(sorted(config.extensions))}")
    logger.info(f"[{config.name}]   save mode: {save_mode}")
    logger.info(f"[{config.name}]   max find level: {config.max_find_level}")
    logger.info(f"[{config.name}]   cache: {'on' if config.open_cache else 'off'}")


def log_run_end(name: str, summary: RunSummary):
    if summary.total:
        logger.info(f"[{name}] Done. Total {summary.total}: {summary.success_count} linked, "
                    f"{summary.fail_count} failed, {summary.skip_count} skipped in {summary.elapsed:.1f}s")
    for reason, paths in summary.failures.items():
        logger.warning(f"[{name}] {reason}")
        for path in paths:
            logger.warning(f"[{name}]     {path}")
    if summary.stale_count:
        logger.info(f"[{name}] {summary.stale_count} stale links awaiting deletion")
