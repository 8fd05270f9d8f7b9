from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Sequence

from .errors import StateSaveFailed
from .models import DiffStats, FileRecovery, FileState, KnownFile, PersistedState, UIState
from .persistence import DEFAULT_SAVE_DELAY, SaveScheduler
from .recovery import RecoveryResult, reconcile, recover_review_state
from .storage import StateStorage

LOG = logging.getLogger(__name__)


class ReviewStateStore:
    """Authoritative review progress for one session.

    Every mutation schedules a debounced save; the save serializes whatever
    the store holds when the write starts, so a mutation made during a write
    is picked up by the follow-up write.
    """

    def __init__(
        self,
        storage: StateStorage,
        session_id: str,
        base_sha: str,
        head_sha: str,
        *,
        save_delay: float = DEFAULT_SAVE_DELAY,
        default_ui: UIState | None = None,
    ) -> None:
        self.storage = storage
        self.session_id = session_id
        self.base_sha = base_sha
        self.head_sha = head_sha
        self.ui = default_ui or UIState()
        self.outcome: str | None = None
        self.recovered_from: str | None = None
        self._files: dict[str, FileState] = {}
        self._recovery: dict[str, FileRecovery] = {}
        self._dirty = False
        self._last_save_failed = False
        self._held_ops: list[tuple[str, tuple]] | None = None
        self._scheduler = SaveScheduler(self._write, delay=save_delay)

    # Loading

    def begin_load(self) -> None:
        """Record mutations until the next apply_recovery replays them.

        Recovery reads disk and hashes diffs off the event loop; anything the
        user does meanwhile must survive the recovered state replacing ours.
        """

        if self._held_ops is None:
            self._held_ops = []

    def _hold(self, name: str, *args) -> None:
        if self._held_ops is not None:
            self._held_ops.append((name, args))

    def apply_recovery(self, result: RecoveryResult) -> None:
        held, self._held_ops = self._held_ops or [], None
        self._files = {path: state.copy() for path, state in result.files.items()}
        self._recovery = dict(result.recovery_info)
        if result.ui is not None:
            self.ui = result.ui
        self.outcome = result.outcome
        self.recovered_from = result.recovered_from
        for name, args in held:
            getattr(self, name)(*args)
        if held:
            LOG.debug("Replayed %d change(s) made while loading review state", len(held))

    def load(self, known_files: Sequence[KnownFile] | None) -> RecoveryResult:
        result = recover_review_state(self.storage, self.base_sha, self.head_sha, known_files)
        self.apply_recovery(result)
        return result

    # Queries

    @property
    def files(self) -> dict[str, FileState]:
        return {path: state.copy() for path, state in self._files.items()}

    @property
    def recovery_info(self) -> dict[str, FileRecovery]:
        return dict(self._recovery)

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def writes(self) -> int:
        return self._scheduler.writes

    def get_file_state(self, path: str) -> FileState | None:
        state = self._files.get(path)
        return state.copy() if state is not None else None

    def get_recovery(self, path: str) -> FileRecovery | None:
        return self._recovery.get(path)

    def is_viewed(self, path: str) -> bool:
        state = self._files.get(path)
        return state is not None and state.viewed

    def viewed_count(self, paths: Iterable[str] | None = None) -> int:
        if paths is None:
            return sum(1 for state in self._files.values() if state.viewed)
        return sum(1 for path in paths if self.is_viewed(path))

    # Mutations

    def _entry(self, path: str) -> FileState:
        state = self._files.get(path)
        if state is None:
            state = FileState()
            self._files[path] = state
        return state

    def _changed(self) -> None:
        self._dirty = True
        self._scheduler.schedule()

    def mark_viewed(self, path: str, content_hash: str | None = None, stats: DiffStats | None = None) -> None:
        self._hold("mark_viewed", path, content_hash, stats)
        state = self._entry(path)
        state.viewed = True
        state.last_viewed_sha = self.head_sha
        if content_hash is not None:
            state.content_hash = content_hash
        if stats is not None:
            state.diff_stats = stats
        self._recovery.pop(path, None)
        self._changed()

    def mark_unviewed(self, path: str) -> None:
        self._hold("mark_unviewed", path)
        state = self._entry(path)
        state.viewed = False
        self._changed()

    def toggle_viewed(self, path: str, content_hash: str | None = None, stats: DiffStats | None = None) -> bool:
        if self.is_viewed(path):
            self.mark_unviewed(path)
            return False
        self.mark_viewed(path, content_hash, stats)
        return True

    def set_file_collapsed(self, path: str, collapsed: bool) -> None:
        self._hold("set_file_collapsed", path, collapsed)
        self._entry(path).collapse_state.file = collapsed
        self._changed()

    def set_hunk_collapsed(self, path: str, hunk_index: int, collapsed: bool) -> None:
        if hunk_index < 0:
            raise ValueError(f"hunk index must be >= 0, got {hunk_index}")
        self._hold("set_hunk_collapsed", path, hunk_index, collapsed)
        hunks = self._entry(path).collapse_state.hunks
        if collapsed:
            hunks.add(hunk_index)
        else:
            hunks.discard(hunk_index)
        self._changed()

    def set_scroll_position(self, path: str, position: int) -> None:
        self._hold("set_scroll_position", path, position)
        self._entry(path).scroll_position = max(0, position)
        self._changed()

    def dismiss_recovery(self, path: str) -> bool:
        self._hold("dismiss_recovery", path)
        return self._recovery.pop(path, None) is not None

    def set_ui_state(self, ui: UIState) -> None:
        self._hold("set_ui_state", ui)
        self.ui = ui
        self._changed()

    def retain_paths(self, paths: Iterable[str]) -> list[str]:
        keep = set(paths)
        removed = sorted(path for path in self._files if path not in keep)
        for path in removed:
            del self._files[path]
        for path in [path for path in self._recovery if path not in keep]:
            del self._recovery[path]
        if removed:
            LOG.debug("Pruned review state for %d removed file(s)", len(removed))
            self._changed()
        return removed

    def reconcile_with(self, known_files: Sequence[KnownFile]) -> dict[str, FileRecovery]:
        """Re-check viewed files against freshly computed diffs.

        Used on refresh when the head does not pin content. Returns the
        recovery entries added by this call.
        """

        files, recovery_info = reconcile(self._files, known_files)
        changed = files != self._files
        self._files = files
        known_paths = {known.path for known in known_files}
        self._recovery = {path: info for path, info in self._recovery.items() if path in known_paths}
        self._recovery.update(recovery_info)
        if changed:
            self._changed()
        return recovery_info

    # Persistence

    def snapshot(self) -> PersistedState:
        return PersistedState(
            session_id=self.session_id,
            base_sha=self.base_sha,
            head_sha=self.head_sha,
            files=self.files,
            ui=self.ui,
        )

    async def _write(self) -> None:
        state = self.snapshot()
        self._dirty = False
        try:
            await asyncio.to_thread(self.storage.save, state)
        except StateSaveFailed as error:
            self._dirty = True
            self._last_save_failed = True
            LOG.error("Failed to save review state: %s", error)
        else:
            self._last_save_failed = False

    async def save_now(self) -> None:
        await self._scheduler.flush()

    async def close(self) -> None:
        # Mutations may land while a flush is writing; keep flushing until a
        # write finishes with nothing left over, or the storage refuses it.
        while True:
            if self._scheduler.scheduled or self._dirty:
                await self._scheduler.flush()
                if self._last_save_failed:
                    break
            elif self._scheduler.running:
                await self._scheduler.wait()
            else:
                break
        await self._scheduler.close()
