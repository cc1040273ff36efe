# -*- coding: utf-8 -*-

"""Pure path mapping from source files to destination directories."""

import os
from typing import Iterable


def resolve_destination(source_file: str, source_root: str, dest_root: str, save_mode: int, mkdir_if_single: bool) -> str:
    """
    Map a source file to the destination directory its hardlink goes into.

    Args:
        source_file: Full path of the source file.
        source_root: The task's source directory.
        dest_root: The task's destination directory.
        save_mode: Number of trailing segments of the relative source directory
                   to keep. 0 keeps all of them (mirror the full tree).
        mkdir_if_single: Give files sitting directly in source_root their own
                         folder named after the file without its extension.

    Returns:
        Absolute path of the destination directory.
    """
    current_dir = os.path.dirname(source_file)
    relative_path = os.path.relpath(os.path.abspath(current_dir), os.path.abspath(source_root))
    if relative_path == os.curdir:
        relative_path = ""
    if mkdir_if_single and not relative_path:
        relative_path = os.path.splitext(os.path.basename(source_file))[0]

    segments = [s for s in relative_path.split(os.sep) if s]
    if save_mode:
        segments = segments[-save_mode:]
    return os.path.abspath(os.path.join(dest_root, *segments))


def _as_dir(path: str) -> str:
    return os.path.join(path, "")


def find_common_ancestor(paths: Iterable[str]) -> str:
    """
    Return the deepest directory (with a trailing separator) shared by every path.

    ['/a/c/d/e', '/a/b/c/d/e'] -> '/a/'
    """
    remaining = sorted(paths, key=lambda p: len(p.split(os.sep)))
    if not remaining:
        return ""
    shortest = remaining.pop(0)
    parent = os.path.dirname(shortest)
    while not all(p.startswith(_as_dir(parent)) for p in remaining):
        upper = os.path.dirname(parent)
        if upper == parent:
            break
        parent = upper
    return _as_dir(parent)
