"""
Review manifests: the list of changed files for a comparison.

A manifest is produced before any per-file diff is computed. It records
the resolved refs and one FileEntry per changed path, built from
``git diff --numstat`` and ``git diff --name-status`` output. Manifests are
stored under ``<repo>/.revi/sessions/<session_id>.json``.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import secrets
from pathlib import Path
from typing import Any

from . import git
from .errors import StateLoadFailed, StateSaveFailed
from .models import WORKING_TREE, FileEntry, ReviewManifest

LOG = logging.getLogger(__name__)

SESSION_ID_BYTES = 9
GITIGNORE_BLOCK = "\n# Revi local review data\n.revi/\n"


def iso_utc_now() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def new_session_id() -> str:
    return secrets.token_urlsafe(SESSION_ID_BYTES)


def revi_dir(repo_root: Path) -> Path:
    return repo_root / ".revi"


def sessions_dir(repo_root: Path) -> Path:
    return revi_dir(repo_root) / "sessions"


def parse_rename_path(path: str) -> tuple[str, str | None]:
    """Split numstat rename notation into (new_path, old_path).

    Handles both ``src/{old => new}/file.py`` and ``old.py => new.py``.
    """

    start = path.find("{")
    end = path.find("}", start + 1)
    if start != -1 and end != -1:
        inner = path[start + 1 : end]
        if " => " in inner:
            old_part, new_part = inner.split(" => ", 1)
            prefix = path[:start]
            suffix = path[end + 1 :]
            old_path = (prefix + old_part + suffix).replace("//", "/")
            new_path = (prefix + new_part + suffix).replace("//", "/")
            return new_path, old_path
    if " => " in path:
        old_path, new_path = path.split(" => ", 1)
        return new_path, old_path
    return path, None


def parse_name_status(output: str) -> dict[str, tuple[str, str | None]]:
    statuses: dict[str, tuple[str, str | None]] = {}
    for line in output.splitlines():
        if not line:
            continue
        parts = line.split("\t")
        if len(parts) < 2:
            continue
        code = parts[0][:1]
        if code == "R" and len(parts) >= 3:
            statuses[parts[2]] = ("renamed", parts[1])
            continue
        if code == "C" and len(parts) >= 3:
            statuses[parts[2]] = ("added", None)
            continue
        status = {"A": "added", "D": "deleted"}.get(code, "modified")
        statuses[parts[-1]] = (status, None)
    return statuses


def parse_numstat(output: str) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for line in output.splitlines():
        if not line:
            continue
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        added_raw, deleted_raw = parts[0], parts[1]
        path, renamed_from = parse_rename_path("\t".join(parts[2:]).strip())
        binary = added_raw == "-" and deleted_raw == "-"
        rows.append(
            {
                "path": path,
                "renamedFrom": renamed_from,
                "additions": 0 if binary else int(added_raw or 0),
                "deletions": 0 if binary else int(deleted_raw or 0),
                "binary": binary,
            }
        )
    return rows


def build_file_entries(numstat_output: str, name_status_output: str) -> list[FileEntry]:
    statuses = parse_name_status(name_status_output)
    entries: list[FileEntry] = []
    seen: set[str] = set()
    for row in parse_numstat(numstat_output):
        path = row["path"]
        status, renamed_from = statuses.get(path, ("modified", None))
        if row["renamedFrom"] is not None:
            status = "renamed"
            renamed_from = row["renamedFrom"]
        entries.append(
            FileEntry(
                path=path,
                status=status,
                additions=row["additions"],
                deletions=row["deletions"],
                renamed_from=renamed_from,
                binary=row["binary"],
            )
        )
        seen.add(path)
    # Pure renames with no content change can be missing from numstat.
    for path, (status, renamed_from) in statuses.items():
        if path not in seen:
            entries.append(FileEntry(path=path, status=status, renamed_from=renamed_from))
    entries.sort(key=lambda entry: entry.path)
    return entries


def changed_files(repo: Path, base_sha: str, head_sha: str, *, timeout: float = git.DEFAULT_TIMEOUT) -> list[FileEntry]:
    return build_file_entries(
        git.numstat(repo, base_sha, head_sha, timeout=timeout),
        git.name_status(repo, base_sha, head_sha, timeout=timeout),
    )


def uncommitted_files(repo: Path, base_sha: str, *, timeout: float = git.DEFAULT_TIMEOUT) -> list[FileEntry]:
    entries = build_file_entries(
        git.numstat(repo, base_sha, WORKING_TREE, timeout=timeout),
        git.name_status(repo, base_sha, WORKING_TREE, timeout=timeout),
    )
    known = {entry.path for entry in entries}
    for path in git.untracked_files(repo, timeout=timeout):
        if path in known:
            continue
        full_path = repo / path
        binary = git.is_binary_file(full_path)
        additions = 0
        if not binary:
            content = git.read_working_tree_file(repo, path)
            additions = len(content.splitlines()) if content else 0
        entries.append(FileEntry(path=path, status="added", additions=additions, binary=binary))
    entries.sort(key=lambda entry: entry.path)
    return entries


def ensure_gitignore(repo_root: Path) -> None:
    gitignore = repo_root / ".gitignore"
    try:
        content = gitignore.read_text(encoding="utf-8")
    except FileNotFoundError:
        content = None
    except OSError as error:
        LOG.warning("Cannot read %s: %s", gitignore, error)
        return
    if content is not None and ".revi" in content:
        return
    try:
        with gitignore.open("a", encoding="utf-8") as handle:
            handle.write(GITIGNORE_BLOCK if content else GITIGNORE_BLOCK.lstrip("\n"))
    except OSError as error:
        LOG.warning("Cannot update %s: %s", gitignore, error)


def manifest_path(repo_root: Path, session_id: str) -> Path:
    return sessions_dir(repo_root) / f"{session_id}.json"


def write_manifest(manifest: ReviewManifest) -> Path:
    repo_root = Path(manifest.repo_root)
    output = manifest_path(repo_root, manifest.session_id)
    try:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(json.dumps(manifest.to_dict(), ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    except OSError as error:
        raise StateSaveFailed(f"Failed to write manifest {output}: {error}") from error
    ensure_gitignore(repo_root)
    return output


def load_manifest(path: Path) -> ReviewManifest:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return ReviewManifest.from_dict(raw)
    except FileNotFoundError as error:
        raise StateLoadFailed(f"Session file not found: {path}") from error
    except (OSError, json.JSONDecodeError, ValueError, TypeError) as error:
        raise StateLoadFailed(f"Failed to parse session file {path}: {error}") from error


def list_manifests(repo_root: Path) -> list[ReviewManifest]:
    directory = sessions_dir(repo_root)
    if not directory.is_dir():
        return []
    manifests: list[ReviewManifest] = []
    for path in sorted(directory.glob("*.json")):
        try:
            manifests.append(load_manifest(path))
        except StateLoadFailed as error:
            LOG.warning("Skipping unreadable session %s: %s", path.name, error)
    manifests.sort(key=lambda item: item.created_at, reverse=True)
    return manifests


def clean_manifests(repo_root: Path) -> int:
    directory = sessions_dir(repo_root)
    if not directory.is_dir():
        return 0
    removed = 0
    for path in directory.glob("*.json"):
        path.unlink()
        removed += 1
    return removed
