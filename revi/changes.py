"""
Turn raw filesystem-watcher paths into ChangeEvents.

The watcher itself is external; it hands over batches of changed paths.
Paths inside the review data directory, VCS internals (except HEAD and
refs), dependency/build directories and editor scratch files are dropped.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Iterable

from .models import ChangeEvent

LOG = logging.getLogger(__name__)

IGNORED_DIRS = frozenset(
    {
        ".revi",
        ".git",
        "node_modules",
        ".next",
        "target",
        "dist",
        "build",
        "__pycache__",
        ".pytest_cache",
        ".venv",
        "venv",
        ".idea",
        ".vscode",
        ".turbo",
        ".cache",
        "coverage",
    }
)
IGNORED_FILES = frozenset({".DS_Store", "Thumbs.db"})
IGNORED_SUFFIXES = (".swp", ".swo", "~", ".tmp", ".temp", ".log", ".lock")
IGNORED_PREFIXES = ("#",)


def relative_path(repo_root: Path, path: str | Path) -> str | None:
    candidate = Path(path)
    if not candidate.is_absolute():
        return PurePosixPath(*candidate.parts).as_posix()
    try:
        return candidate.relative_to(repo_root).as_posix()
    except ValueError:
        return None


def is_git_ref_path(rel_path: str) -> bool:
    if rel_path == ".git/HEAD":
        return True
    return rel_path.startswith(".git/refs/") and not rel_path.endswith(".lock")


def should_ignore(rel_path: str) -> bool:
    if is_git_ref_path(rel_path):
        return False
    parts = PurePosixPath(rel_path).parts
    if not parts:
        return True
    if any(part in IGNORED_DIRS for part in parts[:-1]) or parts[-1] in IGNORED_DIRS:
        return True
    name = parts[-1]
    if name in IGNORED_FILES:
        return True
    if name.endswith(IGNORED_SUFFIXES) or name.startswith(IGNORED_PREFIXES):
        return True
    return False


def classify_paths(
    repo_root: Path,
    paths: Iterable[str | Path],
    *,
    previous_head: str | None = None,
    current_head: str | None = None,
) -> list[ChangeEvent]:
    """Group a batch of changed paths into at most one ref event and one file event.

    A ref change that moved HEAD to a different commit is reported as
    ``commit_added`` with the new head; other ref changes as ``ref_changed``.
    """

    root = str(repo_root)
    ref_paths: set[str] = set()
    file_paths: set[str] = set()
    for path in paths:
        rel_path = relative_path(repo_root, path)
        if rel_path is None:
            continue
        if is_git_ref_path(rel_path):
            ref_paths.add(rel_path)
        elif not should_ignore(rel_path):
            file_paths.add(rel_path)

    events: list[ChangeEvent] = []
    if ref_paths:
        if current_head is not None and previous_head is not None and current_head != previous_head:
            events.append(
                ChangeEvent(type="commit_added", repo_root=root, paths=tuple(sorted(ref_paths)), new_head_sha=current_head)
            )
        else:
            events.append(ChangeEvent(type="ref_changed", repo_root=root, paths=tuple(sorted(ref_paths))))
    if file_paths:
        events.append(ChangeEvent(type="file_changed", repo_root=root, paths=tuple(sorted(file_paths))))
    if events:
        LOG.debug("Classified %d path(s) into %s", len(ref_paths) + len(file_paths), [event.type for event in events])
    return events
