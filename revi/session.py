"""
Review sessions: comparison selection, manifest creation and the API the
front ends drive.

A ReviewSession owns everything that is per-session: its manifest, its
review-state store (and with it the save timer), the diff fetcher and the
refresh runner. Blocking git and disk work runs in worker threads; state
is only touched from the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence, Union

from . import git
from . import recovery
from .config import ReviConfig, load_config
from .diff_builder import Highlighter, build_file_diff
from .diff_cache import DiffCache, DiffCacheKey
from .diff_fetch import DiffFetcher, FetchResult
from .errors import DiffComputationFailed, GitOperationFailed
from .line_pairing import pair_lines
from .manifest import changed_files, iso_utc_now, new_session_id, uncommitted_files, write_manifest
from .models import (
    WORKING_TREE,
    BranchMode,
    ChangeEvent,
    ComparisonMode,
    CustomMode,
    DiffLine,
    DiffStats,
    FileDiff,
    FileState,
    KnownFile,
    LinePair,
    RefInfo,
    ReviewManifest,
    UIState,
    UncommittedMode,
    WorktreeInfo,
    is_working_tree,
)
from .persistence import CoalescingRunner
from .recovery import RecoveryResult
from .review_state import ReviewStateStore
from .storage import StateStorage

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarkViewed:
    path: str


@dataclass(frozen=True)
class MarkUnviewed:
    path: str


@dataclass(frozen=True)
class ToggleViewed:
    path: str


@dataclass(frozen=True)
class SetFileCollapsed:
    path: str
    collapsed: bool


@dataclass(frozen=True)
class SetHunkCollapsed:
    path: str
    hunk_index: int
    collapsed: bool


@dataclass(frozen=True)
class SetScrollPosition:
    path: str
    position: int


@dataclass(frozen=True)
class DismissRecovery:
    path: str


ReviewStateOp = Union[
    MarkViewed,
    MarkUnviewed,
    ToggleViewed,
    SetFileCollapsed,
    SetHunkCollapsed,
    SetScrollPosition,
    DismissRecovery,
]


def resolve_comparison_mode(
    repo_root: Path,
    mode: ComparisonMode | None,
    base_ref: str | None,
    config: ReviConfig,
) -> ComparisonMode:
    if mode is not None:
        return mode
    timeout = config.git_timeout_seconds
    if base_ref:
        return BranchMode(base_branch=base_ref)
    if git.has_uncommitted_changes(repo_root, timeout=timeout):
        return UncommittedMode()
    return BranchMode(base_branch=config.default_base or git.detect_default_branch(repo_root, timeout=timeout))


def create_manifest(
    repo_path: str | Path,
    mode: ComparisonMode | None = None,
    base_ref: str | None = None,
    *,
    config: ReviConfig | None = None,
    session_id: str | None = None,
    write: bool = True,
) -> ReviewManifest:
    """Resolve the comparison for ``repo_path`` and list its changed files.

    Without an explicit mode, a dirty working tree reviews uncommitted
    changes and a clean one reviews the current branch against the default
    base branch. Raises GitOperationFailed when refs cannot be resolved.
    """

    root = git.repo_root(Path(repo_path))
    config = config or load_config(root)
    timeout = config.git_timeout_seconds
    mode = resolve_comparison_mode(root, mode, base_ref, config)

    if isinstance(mode, UncommittedMode):
        sha = git.head_sha(root, timeout=timeout)
        if sha is None:
            raise GitOperationFailed(f"Repository {root} has no commits yet")
        base = RefInfo(ref="HEAD", sha=sha)
        head = RefInfo(ref=WORKING_TREE, sha=WORKING_TREE)
        files = uncommitted_files(root, base.sha, timeout=timeout)
    elif isinstance(mode, BranchMode):
        base = RefInfo(ref=mode.base_branch, sha=git.merge_base(root, mode.base_branch, timeout=timeout))
        head = git.resolve_ref(root, "HEAD", timeout=timeout)
        files = changed_files(root, base.sha, head.sha, timeout=timeout)
    elif isinstance(mode, CustomMode):
        base = git.resolve_ref(root, mode.base_ref, timeout=timeout)
        head = git.resolve_ref(root, mode.head_ref, timeout=timeout)
        files = changed_files(root, base.sha, head.sha, timeout=timeout)
    else:
        raise TypeError(f"Unknown comparison mode: {mode!r}")

    kept = [entry for entry in files if not config.is_excluded(entry.path)]
    if len(kept) != len(files):
        LOG.info("Excluded %d file(s) by config", len(files) - len(kept))

    manifest = ReviewManifest(
        session_id=session_id or new_session_id(),
        repo_root=str(root),
        base=base,
        head=head,
        files=tuple(kept),
        created_at=iso_utc_now(),
        worktree=WorktreeInfo(path=str(root), branch=git.current_branch(root, timeout=timeout) or "HEAD"),
        comparison_mode=mode,
    )
    if write:
        write_manifest(manifest)
    return manifest


def manifest_comparison_mode(manifest: ReviewManifest) -> ComparisonMode:
    if manifest.comparison_mode is not None:
        return manifest.comparison_mode
    if is_working_tree(manifest.head.sha):
        return UncommittedMode()
    return CustomMode(base_ref=manifest.base.ref, head_ref=manifest.head.ref)


class ReviewSession:
    def __init__(
        self,
        manifest: ReviewManifest,
        *,
        config: ReviConfig | None = None,
        cache: DiffCache | None = None,
        highlighter: Highlighter | None = None,
        ignore_whitespace: bool = False,
    ) -> None:
        self.manifest = manifest
        self.repo_root = Path(manifest.repo_root)
        self.config = config or ReviConfig()
        self.cache = cache if cache is not None else DiffCache(self.config.diff_cache_size)
        self.highlighter = highlighter
        self.ignore_whitespace = ignore_whitespace
        self.store = self._new_store(manifest)
        self.fetcher = DiffFetcher(self.compute_diff)
        self._refresh_runner = CoalescingRunner(self._refresh_once, name="refresh")
        self._closed = False

    @classmethod
    async def open(
        cls,
        repo_path: str | Path,
        mode: ComparisonMode | None = None,
        base_ref: str | None = None,
        **kwargs,
    ) -> ReviewSession:
        root = await asyncio.to_thread(git.repo_root, Path(repo_path))
        config = kwargs.pop("config", None) or await asyncio.to_thread(load_config, root)
        manifest = await asyncio.to_thread(create_manifest, root, mode, base_ref, config=config)
        session = cls(manifest, config=config, **kwargs)
        await session.load_review_state()
        return session

    def _new_store(self, manifest: ReviewManifest) -> ReviewStateStore:
        return ReviewStateStore(
            StateStorage(self.repo_root),
            manifest.session_id,
            manifest.base.sha,
            manifest.head.sha,
            save_delay=self.config.save_debounce_seconds,
            default_ui=UIState(mode=self.config.default_diff_mode),
        )

    @property
    def session_id(self) -> str:
        return self.manifest.session_id

    @property
    def base_sha(self) -> str:
        return self.manifest.base.sha

    @property
    def head_sha(self) -> str:
        return self.manifest.head.sha

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def refresh_count(self) -> int:
        return self._refresh_runner.runs

    # Diffs

    def _build_diff(self, path: str) -> FileDiff:
        entry = self.manifest.file_entry(path)
        status = entry.status if entry is not None else "modified"
        if entry is not None and entry.binary:
            return build_file_diff(path, "", status=status, binary=True)
        timeout = self.config.git_timeout_seconds
        diff_text = git.file_diff_text(
            self.repo_root,
            self.base_sha,
            self.head_sha,
            path,
            ignore_whitespace=self.ignore_whitespace,
            timeout=timeout,
        )
        file_content = None
        if status in {"added", "deleted"} and "@@" not in diff_text:
            ref = self.head_sha if status == "added" else self.base_sha
            file_content = git.file_content(self.repo_root, ref, path, timeout=timeout)
        return build_file_diff(
            path,
            diff_text,
            status=status,
            file_content=file_content,
            highlighter=self.highlighter,
        )

    def compute_diff(self, path: str) -> FileDiff:
        """Blocking; call from a worker thread when on the event loop."""

        key = DiffCacheKey(
            repo_root=str(self.repo_root),
            base_sha=self.base_sha,
            head_sha=self.head_sha,
            file_path=path,
            ignore_whitespace=self.ignore_whitespace,
        )
        return self.cache.get_or_compute(key, lambda: self._build_diff(path))

    def pair_for_split_view(self, lines: Sequence[DiffLine]) -> list[LinePair]:
        return pair_lines(lines)

    def known_files(self) -> list[KnownFile]:
        known: list[KnownFile] = []
        for entry in self.manifest.files:
            try:
                diff = self.compute_diff(entry.path)
            except (DiffComputationFailed, GitOperationFailed) as error:
                LOG.warning("Cannot hash %s, it will not match earlier reviews: %s", entry.path, error)
                known.append(KnownFile(entry.path, "", DiffStats(entry.additions, entry.deletions)))
                continue
            known.append(KnownFile(entry.path, diff.content_hash, diff.stats))
        return known

    async def fetch_diff(self, path: str) -> FetchResult | None:
        return await self.fetcher.fetch(path)

    def invalidate_diff_cache(self) -> int:
        return self.cache.invalidate(str(self.repo_root))

    def clear_diff_cache(self) -> None:
        self.cache.clear()

    # Review state

    async def load_review_state(self, known_files: Sequence[KnownFile] | None = None) -> RecoveryResult:
        store = self.store
        store.begin_load()
        if known_files is None:
            known_files = await asyncio.to_thread(self.known_files)
        result = await asyncio.to_thread(
            recovery.load_review_state,
            self.repo_root,
            store.session_id,
            store.base_sha,
            store.head_sha,
            known_files,
        )
        store.apply_recovery(result)
        return result

    async def _current_identity(self, path: str) -> tuple[str | None, DiffStats | None]:
        while True:
            manifest = self.manifest
            try:
                diff = await asyncio.to_thread(self.compute_diff, path)
            except (DiffComputationFailed, GitOperationFailed) as error:
                LOG.warning("Marking %s viewed without a content hash: %s", path, error)
                return None, None
            # A refresh may have moved the comparison while the diff was computed.
            if self.manifest is manifest:
                return diff.content_hash, diff.stats

    async def mutate_review_state(self, op: ReviewStateOp) -> FileState | None:
        if isinstance(op, MarkViewed):
            content_hash, stats = await self._current_identity(op.path)
            self.store.mark_viewed(op.path, content_hash, stats)
        elif isinstance(op, MarkUnviewed):
            self.store.mark_unviewed(op.path)
        elif isinstance(op, ToggleViewed):
            if self.store.is_viewed(op.path):
                self.store.mark_unviewed(op.path)
            else:
                content_hash, stats = await self._current_identity(op.path)
                self.store.mark_viewed(op.path, content_hash, stats)
        elif isinstance(op, SetFileCollapsed):
            self.store.set_file_collapsed(op.path, op.collapsed)
        elif isinstance(op, SetHunkCollapsed):
            self.store.set_hunk_collapsed(op.path, op.hunk_index, op.collapsed)
        elif isinstance(op, SetScrollPosition):
            self.store.set_scroll_position(op.path, op.position)
        elif isinstance(op, DismissRecovery):
            self.store.dismiss_recovery(op.path)
        else:
            raise TypeError(f"Unknown review state operation: {op!r}")
        return self.store.get_file_state(op.path)

    # Refresh

    def refresh(self) -> asyncio.Task[None]:
        """Request a refresh; concurrent requests coalesce into one follow-up run."""

        return self._refresh_runner.request()

    async def _refresh_once(self) -> None:
        previous = self.manifest
        manifest = await asyncio.to_thread(
            create_manifest,
            self.repo_root,
            manifest_comparison_mode(previous),
            config=self.config,
            session_id=previous.session_id,
        )
        if (manifest.base.sha, manifest.head.sha) != (previous.base.sha, previous.head.sha):
            LOG.info(
                "Comparison moved from %s..%s to %s..%s",
                previous.base.sha[:12],
                previous.head.sha[:12],
                manifest.base.sha[:12],
                manifest.head.sha[:12],
            )
            # Changes made while the old store flushes are written to its
            # snapshot, which the new store then recovers from. The swap must
            # not yield, and changes made during recovery are replayed.
            await self.store.close()
            self.manifest = manifest
            self.store = self._new_store(manifest)
            await self.load_review_state()
            return

        self.manifest = manifest
        paths = [entry.path for entry in manifest.files]
        self.store.retain_paths(paths)
        if is_working_tree(manifest.head.sha):
            known = await asyncio.to_thread(self.known_files)
            self.store.reconcile_with(known)

    def handle_change_event(self, event: ChangeEvent) -> asyncio.Task[None] | None:
        if self._closed:
            return None
        if Path(event.repo_root) != self.repo_root:
            LOG.debug("Ignoring change event for %s", event.repo_root)
            return None
        if event.type == "file_changed":
            if not is_working_tree(self.head_sha):
                return None
            return self.refresh()
        if event.type in {"ref_changed", "commit_added"}:
            return self.refresh()
        raise ValueError(f"Unknown change event type: {event.type!r}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.fetcher.cancel()
        await self._refresh_runner.wait()
        await self.store.close()
