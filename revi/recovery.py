"""
Carry review progress across commit-identifier changes.

When the exact (base_sha, head_sha) snapshot exists it is used as is. When
it does not (amend, rebase, force-push, new commits) the most relevant
earlier snapshot is reconciled against the current file list by content
hash: a file is still "viewed" only if its diff is byte-for-byte the diff
that was reviewed.

States:
- exact: the snapshot for this pair was loaded
- recovered: a predecessor was reconciled
- fresh: nothing to recover from
- failed: a snapshot could not be read; the review starts fresh
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from .errors import RecoveryFailed, StateLoadFailed
from .models import FileRecovery, FileState, KnownFile, UIState, is_working_tree
from .storage import StateStorage

LOG = logging.getLogger(__name__)

OUTCOME_EXACT = "exact"
OUTCOME_RECOVERED = "recovered"
OUTCOME_FRESH = "fresh"
OUTCOME_FAILED = "failed"


@dataclass
class RecoveryResult:
    files: dict[str, FileState] = field(default_factory=dict)
    recovery_info: dict[str, FileRecovery] = field(default_factory=dict)
    outcome: str = OUTCOME_FRESH
    recovered_from: str | None = None
    ui: UIState | None = None

    @property
    def recovered_count(self) -> int:
        return sum(1 for state in self.files.values() if state.viewed)


def reconcile(
    previous: dict[str, FileState],
    known_files: Sequence[KnownFile],
) -> tuple[dict[str, FileState], dict[str, FileRecovery]]:
    files: dict[str, FileState] = {}
    recovery_info: dict[str, FileRecovery] = {}
    for known in known_files:
        old = previous.get(known.path)
        if old is None:
            continue
        state = old.copy()
        state.content_hash = known.content_hash
        state.diff_stats = known.stats
        hashable = bool(old.content_hash) and bool(known.content_hash)
        if hashable and old.content_hash == known.content_hash:
            files[known.path] = state
            continue
        state.viewed = False
        files[known.path] = state
        if old.viewed and hashable:
            recovery_info[known.path] = FileRecovery(
                changed_since_viewed=True,
                old_stats=old.diff_stats,
                new_stats=known.stats,
            )
    return files, recovery_info


def _prune(files: dict[str, FileState], known_files: Sequence[KnownFile] | None) -> dict[str, FileState]:
    if known_files is None:
        return {path: state.copy() for path, state in files.items()}
    known_paths = {known.path for known in known_files}
    return {path: state.copy() for path, state in files.items() if path in known_paths}


def recover_review_state(
    storage: StateStorage,
    base_sha: str,
    head_sha: str,
    known_files: Sequence[KnownFile] | None,
) -> RecoveryResult:
    """Load or reconstruct the review state for (base_sha, head_sha).

    Never raises for unreadable snapshots; those degrade to a fresh state.
    ``known_files`` of None loads the exact snapshot without pruning and
    skips predecessor matching.
    """

    try:
        exact = storage.load(base_sha, head_sha)
    except StateLoadFailed as error:
        LOG.warning("Ignoring corrupt review state for %s..%s: %s", base_sha[:12], head_sha[:12], error)
        return RecoveryResult(outcome=OUTCOME_FAILED)

    if exact is not None:
        if is_working_tree(head_sha) and known_files is not None:
            # The working tree identifier does not pin content.
            files, recovery_info = reconcile(exact.files, known_files)
            return RecoveryResult(files=files, recovery_info=recovery_info, outcome=OUTCOME_EXACT, ui=exact.ui)
        return RecoveryResult(files=_prune(exact.files, known_files), outcome=OUTCOME_EXACT, ui=exact.ui)

    if known_files is None:
        return RecoveryResult(outcome=OUTCOME_FRESH)

    try:
        snapshot = storage.find_predecessor(base_sha, head_sha)
        if snapshot is None:
            return RecoveryResult(outcome=OUTCOME_FRESH)
        previous = storage.read_snapshot(snapshot)
    except RecoveryFailed as error:
        LOG.warning("Review state recovery failed, starting fresh: %s", error)
        return RecoveryResult(outcome=OUTCOME_FAILED)

    files, recovery_info = reconcile(previous.files, known_files)
    recovered_from = f"{previous.base_sha}..{previous.head_sha}"
    result = RecoveryResult(
        files=files,
        recovery_info=recovery_info,
        outcome=OUTCOME_RECOVERED,
        recovered_from=recovered_from,
        ui=previous.ui,
    )
    LOG.info(
        "Recovered review state from %s: %d viewed, %d changed since viewed",
        recovered_from,
        result.recovered_count,
        len(recovery_info),
    )
    return result


def load_review_state(
    repo_root: Path,
    session_id: str,
    base_sha: str,
    head_sha: str,
    known_files: Sequence[KnownFile] | None,
) -> RecoveryResult:
    LOG.debug("Loading review state for session %s", session_id)
    return recover_review_state(StateStorage(repo_root), base_sha, head_sha, known_files)
