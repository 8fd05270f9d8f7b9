"""
On-disk review-state snapshots.

One JSON blob per (base_sha, head_sha) pair, stored as
``<repo>/.revi/state/<base_sha>..<head_sha>.json``. Writes go to a temporary
file in the same directory and are moved into place so a reader never sees
a half-written blob.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .errors import RecoveryFailed, StateLoadFailed, StateSaveFailed
from .manifest import ensure_gitignore, iso_utc_now, revi_dir
from .models import PersistedState

LOG = logging.getLogger(__name__)

STATE_SUFFIX = ".json"
PAIR_SEPARATOR = ".."


def _safe_component(value: str) -> str:
    return value.replace("/", "_").replace("\\", "_")


@dataclass(frozen=True)
class SnapshotInfo:
    path: Path
    base_sha: str
    head_sha: str
    mtime: float


class StateStorage:
    def __init__(self, repo_root: Path) -> None:
        self.repo_root = Path(repo_root)

    @property
    def state_dir(self) -> Path:
        return revi_dir(self.repo_root) / "state"

    def state_path(self, base_sha: str, head_sha: str) -> Path:
        name = f"{_safe_component(base_sha)}{PAIR_SEPARATOR}{_safe_component(head_sha)}{STATE_SUFFIX}"
        return self.state_dir / name

    def load(self, base_sha: str, head_sha: str) -> PersistedState | None:
        path = self.state_path(base_sha, head_sha)
        if not path.is_file():
            return None
        return self._read(path)

    def _read(self, path: Path) -> PersistedState:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return PersistedState.from_dict(raw)
        except (OSError, json.JSONDecodeError, ValueError, TypeError) as error:
            raise StateLoadFailed(f"Failed to read review state {path.name}: {error}") from error

    def save(self, state: PersistedState) -> Path:
        state.saved_at = iso_utc_now()
        path = self.state_path(state.base_sha, state.head_sha)
        tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        payload = json.dumps(state.to_dict(), ensure_ascii=False, indent=2) + "\n"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as error:
            tmp_path.unlink(missing_ok=True)
            raise StateSaveFailed(f"Failed to write review state {path.name}: {error}") from error
        ensure_gitignore(self.repo_root)
        LOG.debug("Saved review state %s", path.name)
        return path

    def list_snapshots(self) -> list[SnapshotInfo]:
        directory = self.state_dir
        if not directory.is_dir():
            return []
        snapshots: list[SnapshotInfo] = []
        for path in directory.iterdir():
            if path.name.startswith(".") or not path.name.endswith(STATE_SUFFIX):
                continue
            stem = path.name[: -len(STATE_SUFFIX)]
            if PAIR_SEPARATOR not in stem:
                continue
            base_sha, head_sha = stem.split(PAIR_SEPARATOR, 1)
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            snapshots.append(SnapshotInfo(path=path, base_sha=base_sha, head_sha=head_sha, mtime=mtime))
        return snapshots

    def find_predecessor(self, base_sha: str, head_sha: str) -> SnapshotInfo | None:
        """Pick the snapshot to reconcile against when no exact blob applies.

        The exact (base_sha, head_sha) blob is never its own predecessor.
        Snapshots sharing the base are preferred; among equals the most
        recently written wins.
        """

        exact = self.state_path(base_sha, head_sha)
        try:
            candidates = [snapshot for snapshot in self.list_snapshots() if snapshot.path != exact]
        except OSError as error:
            raise RecoveryFailed(f"Cannot list review states: {error}") from error
        if not candidates:
            return None
        safe_base = _safe_component(base_sha)
        candidates.sort(key=lambda snapshot: (snapshot.base_sha == safe_base, snapshot.mtime), reverse=True)
        return candidates[0]

    def read_snapshot(self, snapshot: SnapshotInfo) -> PersistedState:
        try:
            return self._read(snapshot.path)
        except StateLoadFailed as error:
            raise RecoveryFailed(str(error)) from error

