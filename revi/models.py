from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

WORKING_TREE = "WORKING_TREE"
STATE_VERSION = 1
MANIFEST_VERSION = 1

FILE_STATUSES = ("added", "modified", "deleted", "renamed")
DIFF_MODES = ("split", "unified")


def is_working_tree(sha: str | None) -> bool:
    return sha == WORKING_TREE


def _require_int(data: dict[str, Any], key: str, default: int | None = None) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {value!r}")
    return value


def _require_str(data: dict[str, Any], key: str, default: str | None = None) -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {value!r}")
    return value


def _require_bool(data: dict[str, Any], key: str, default: bool | None = None) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be a boolean, got {value!r}")
    return value


@dataclass(frozen=True)
class DiffStats:
    additions: int = 0
    deletions: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"additions": self.additions, "deletions": self.deletions}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DiffStats:
        return cls(additions=_require_int(data, "additions", 0), deletions=_require_int(data, "deletions", 0))

    def label(self) -> str:
        return f"+{self.additions}/-{self.deletions}"


@dataclass(frozen=True)
class HighlightSpan:
    start: int
    end: int
    scope: str

    def to_dict(self) -> dict[str, Any]:
        return {"start": self.start, "end": self.end, "scope": self.scope}


@dataclass(frozen=True)
class DiffLine:
    type: str
    content: str
    old_line_num: int | None = None
    new_line_num: int | None = None
    highlights: tuple[HighlightSpan, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "content": self.content,
            "oldLineNum": self.old_line_num,
            "newLineNum": self.new_line_num,
            "highlights": [span.to_dict() for span in self.highlights],
        }


@dataclass(frozen=True)
class Hunk:
    header: str
    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    lines: tuple[DiffLine, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "header": self.header,
            "oldStart": self.old_start,
            "oldLines": self.old_lines,
            "newStart": self.new_start,
            "newLines": self.new_lines,
            "lines": [line.to_dict() for line in self.lines],
        }


@dataclass(frozen=True)
class FileDiff:
    path: str
    hunks: tuple[Hunk, ...]
    content_hash: str
    stats: DiffStats

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "hunks": [hunk.to_dict() for hunk in self.hunks],
            "contentHash": self.content_hash,
            "stats": self.stats.to_dict(),
        }


@dataclass(frozen=True)
class LinePair:
    old_line: DiffLine | None
    new_line: DiffLine | None


@dataclass(frozen=True)
class FileEntry:
    path: str
    status: str
    additions: int = 0
    deletions: int = 0
    renamed_from: str | None = None
    binary: bool = False

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "path": self.path,
            "status": self.status,
            "additions": self.additions,
            "deletions": self.deletions,
            "binary": self.binary,
        }
        if self.renamed_from is not None:
            out["renamedFrom"] = self.renamed_from
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileEntry:
        status = _require_str(data, "status", "modified")
        if status not in FILE_STATUSES:
            status = "modified"
        renamed_from = data.get("renamedFrom")
        return cls(
            path=_require_str(data, "path"),
            status=status,
            additions=_require_int(data, "additions", 0),
            deletions=_require_int(data, "deletions", 0),
            renamed_from=str(renamed_from) if renamed_from is not None else None,
            binary=_require_bool(data, "binary", False),
        )


@dataclass
class CollapseState:
    file: bool = False
    hunks: set[int] = field(default_factory=set)

    def copy(self) -> CollapseState:
        return CollapseState(file=self.file, hunks=set(self.hunks))

    def to_dict(self) -> dict[str, Any]:
        return {"file": self.file, "hunks": sorted(self.hunks)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CollapseState:
        hunks = data.get("hunks", [])
        if not isinstance(hunks, list):
            raise ValueError(f"collapseState.hunks must be a list, got {hunks!r}")
        indexes: set[int] = set()
        for value in hunks:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"hunk index must be an integer, got {value!r}")
            indexes.add(value)
        return cls(file=_require_bool(data, "file", False), hunks=indexes)


@dataclass
class FileState:
    viewed: bool = False
    last_viewed_sha: str = ""
    content_hash: str = ""
    diff_stats: DiffStats = field(default_factory=DiffStats)
    collapse_state: CollapseState = field(default_factory=CollapseState)
    scroll_position: int = 0

    def copy(self) -> FileState:
        return FileState(
            viewed=self.viewed,
            last_viewed_sha=self.last_viewed_sha,
            content_hash=self.content_hash,
            diff_stats=self.diff_stats,
            collapse_state=self.collapse_state.copy(),
            scroll_position=self.scroll_position,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "viewed": self.viewed,
            "lastViewedSha": self.last_viewed_sha,
            "contentHash": self.content_hash,
            "diffStats": self.diff_stats.to_dict(),
            "collapseState": self.collapse_state.to_dict(),
            "scrollPosition": self.scroll_position,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileState:
        if not isinstance(data, dict):
            raise ValueError(f"file state must be an object, got {data!r}")
        stats = data.get("diffStats", {})
        collapse = data.get("collapseState", {})
        if not isinstance(stats, dict) or not isinstance(collapse, dict):
            raise ValueError("diffStats and collapseState must be objects")
        return cls(
            viewed=_require_bool(data, "viewed", False),
            last_viewed_sha=_require_str(data, "lastViewedSha", ""),
            content_hash=_require_str(data, "contentHash", ""),
            diff_stats=DiffStats.from_dict(stats),
            collapse_state=CollapseState.from_dict(collapse),
            scroll_position=_require_int(data, "scrollPosition", 0),
        )


@dataclass(frozen=True)
class FileRecovery:
    changed_since_viewed: bool
    old_stats: DiffStats
    new_stats: DiffStats

    def to_dict(self) -> dict[str, Any]:
        return {
            "changedSinceViewed": self.changed_since_viewed,
            "oldStats": self.old_stats.to_dict(),
            "newStats": self.new_stats.to_dict(),
        }


@dataclass(frozen=True)
class UIState:
    mode: str = "split"
    sidebar_width: int = 280
    sidebar_visible: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"mode": self.mode, "sidebarWidth": self.sidebar_width, "sidebarVisible": self.sidebar_visible}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UIState:
        mode = _require_str(data, "mode", "split")
        if mode not in DIFF_MODES:
            mode = "split"
        return cls(
            mode=mode,
            sidebar_width=_require_int(data, "sidebarWidth", 280),
            sidebar_visible=_require_bool(data, "sidebarVisible", True),
        )


@dataclass
class PersistedState:
    session_id: str
    base_sha: str
    head_sha: str
    files: dict[str, FileState] = field(default_factory=dict)
    ui: UIState = field(default_factory=UIState)
    saved_at: str | None = None
    version: int = STATE_VERSION

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "version": self.version,
            "sessionId": self.session_id,
            "baseSha": self.base_sha,
            "headSha": self.head_sha,
            "files": {path: state.to_dict() for path, state in sorted(self.files.items())},
            "ui": self.ui.to_dict(),
        }
        if self.saved_at is not None:
            out["savedAt"] = self.saved_at
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PersistedState:
        if not isinstance(data, dict):
            raise ValueError("review state must be a JSON object")
        version = _require_int(data, "version")
        if version != STATE_VERSION:
            raise ValueError(f"Unsupported review state version: {version}")
        files = data.get("files", {})
        if not isinstance(files, dict):
            raise ValueError("files must be an object")
        ui = data.get("ui", {})
        if not isinstance(ui, dict):
            raise ValueError("ui must be an object")
        saved_at = data.get("savedAt")
        return cls(
            session_id=_require_str(data, "sessionId", ""),
            base_sha=_require_str(data, "baseSha"),
            head_sha=_require_str(data, "headSha"),
            files={str(path): FileState.from_dict(state) for path, state in files.items()},
            ui=UIState.from_dict(ui),
            saved_at=str(saved_at) if saved_at is not None else None,
            version=version,
        )


@dataclass(frozen=True)
class KnownFile:
    """A path in the current comparison together with its freshly computed diff identity."""

    path: str
    content_hash: str
    stats: DiffStats


@dataclass(frozen=True)
class RefInfo:
    ref: str
    sha: str

    def to_dict(self) -> dict[str, Any]:
        return {"ref": self.ref, "sha": self.sha}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RefInfo:
        return cls(ref=_require_str(data, "ref"), sha=_require_str(data, "sha"))


@dataclass(frozen=True)
class WorktreeInfo:
    path: str
    branch: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "branch": self.branch}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorktreeInfo:
        return cls(path=_require_str(data, "path"), branch=_require_str(data, "branch"))


@dataclass(frozen=True)
class UncommittedMode:
    """HEAD against the working tree: staged, unstaged and untracked changes."""


@dataclass(frozen=True)
class BranchMode:
    """merge-base(base_branch, HEAD) against HEAD."""

    base_branch: str


@dataclass(frozen=True)
class CustomMode:
    base_ref: str
    head_ref: str


ComparisonMode = Union[UncommittedMode, BranchMode, CustomMode]


def comparison_mode_to_dict(mode: ComparisonMode) -> dict[str, Any]:
    if isinstance(mode, UncommittedMode):
        return {"type": "uncommitted"}
    if isinstance(mode, BranchMode):
        return {"type": "branch", "baseBranch": mode.base_branch}
    if isinstance(mode, CustomMode):
        return {"type": "custom", "baseRef": mode.base_ref, "headRef": mode.head_ref}
    raise TypeError(f"Unknown comparison mode: {mode!r}")


def comparison_mode_from_dict(data: dict[str, Any]) -> ComparisonMode:
    kind = data.get("type")
    if kind == "uncommitted":
        return UncommittedMode()
    if kind == "branch":
        return BranchMode(base_branch=_require_str(data, "baseBranch"))
    if kind == "custom":
        return CustomMode(base_ref=_require_str(data, "baseRef"), head_ref=_require_str(data, "headRef"))
    raise ValueError(f"Unknown comparison mode type: {kind!r}")


def describe_comparison_mode(mode: ComparisonMode) -> str:
    if isinstance(mode, UncommittedMode):
        return "uncommitted changes"
    if isinstance(mode, BranchMode):
        return f"branch vs {mode.base_branch}"
    if isinstance(mode, CustomMode):
        return f"{mode.base_ref}...{mode.head_ref}"
    raise TypeError(f"Unknown comparison mode: {mode!r}")


@dataclass(frozen=True)
class ReviewManifest:
    session_id: str
    repo_root: str
    base: RefInfo
    head: RefInfo
    files: tuple[FileEntry, ...]
    created_at: str
    worktree: WorktreeInfo | None = None
    comparison_mode: ComparisonMode | None = None
    version: int = MANIFEST_VERSION

    def file_entry(self, path: str) -> FileEntry | None:
        for entry in self.files:
            if entry.path == path:
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "version": self.version,
            "sessionId": self.session_id,
            "repoRoot": self.repo_root,
            "base": self.base.to_dict(),
            "head": self.head.to_dict(),
            "files": [entry.to_dict() for entry in self.files],
            "createdAt": self.created_at,
        }
        if self.worktree is not None:
            out["worktree"] = self.worktree.to_dict()
        if self.comparison_mode is not None:
            out["comparisonMode"] = comparison_mode_to_dict(self.comparison_mode)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewManifest:
        if not isinstance(data, dict):
            raise ValueError("manifest must be a JSON object")
        version = _require_int(data, "version")
        if version != MANIFEST_VERSION:
            raise ValueError(f"Unsupported manifest version: {version}")
        files = data.get("files", [])
        if not isinstance(files, list):
            raise ValueError("files must be an array")
        worktree = data.get("worktree")
        mode = data.get("comparisonMode")
        return cls(
            session_id=_require_str(data, "sessionId"),
            repo_root=_require_str(data, "repoRoot"),
            base=RefInfo.from_dict(data.get("base") or {}),
            head=RefInfo.from_dict(data.get("head") or {}),
            files=tuple(FileEntry.from_dict(item) for item in files),
            created_at=_require_str(data, "createdAt", ""),
            worktree=WorktreeInfo.from_dict(worktree) if isinstance(worktree, dict) else None,
            comparison_mode=comparison_mode_from_dict(mode) if isinstance(mode, dict) else None,
            version=version,
        )


@dataclass(frozen=True)
class ChangeEvent:
    type: str
    repo_root: str
    paths: tuple[str, ...] | None = None
    new_head_sha: str | None = None
