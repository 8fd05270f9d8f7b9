"""
Exception types used across revi.

Callers distinguish failures that degrade silently (state load, recovery,
save) from failures that are reported for a single file (diff computation)
or to the user (git, config).
"""

from __future__ import annotations


class ReviError(Exception):
    """Base class for all revi specific errors."""


class GitOperationFailed(ReviError):
    """Raised when a git command cannot be run or exits non-zero."""


class DiffComputationFailed(ReviError):
    """Raised when hunk text is malformed or a diff cannot be built."""


class StateLoadFailed(ReviError):
    """Raised when a persisted review-state blob is unreadable or corrupt."""


class RecoveryFailed(ReviError):
    """Raised when a predecessor review-state blob cannot be located or parsed."""


class StateSaveFailed(ReviError):
    """Raised when a review-state snapshot cannot be written."""


class ConfigError(ReviError):
    """Raised when .revi/config.json is invalid."""
