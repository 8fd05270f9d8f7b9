"""
Thin wrapper over the git CLI.

Every call goes through run_git so that logging, timeouts and error
translation happen in one place. Nothing here interprets diff text; that is
the job of manifest.py and diff_builder.py.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from .errors import GitOperationFailed
from .models import WORKING_TREE, RefInfo, is_working_tree

LOG = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_BRANCH_CANDIDATES = ("main", "master", "origin/main", "origin/master")
BINARY_SNIFF_BYTES = 8192


def run_git(repo: Path, args: list[str], *, timeout: float = DEFAULT_TIMEOUT) -> str:
    cmd = ["git", "-C", str(repo), *args]
    LOG.debug("Running git command: %s", " ".join(cmd))
    try:
        process = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as error:
        raise GitOperationFailed(f"git {' '.join(args)} timed out after {timeout:g}s") from error
    except OSError as error:
        raise GitOperationFailed(f"failed to execute git: {error}") from error
    if process.returncode != 0:
        message = process.stderr.strip() or process.stdout.strip()
        LOG.debug("git stderr: %s", process.stderr)
        raise GitOperationFailed(f"git {' '.join(args)} failed: {message}")
    return process.stdout


def repo_root(path: Path, *, timeout: float = DEFAULT_TIMEOUT) -> Path:
    return Path(run_git(path, ["rev-parse", "--show-toplevel"], timeout=timeout).strip())


def current_branch(repo: Path, *, timeout: float = DEFAULT_TIMEOUT) -> str | None:
    try:
        name = run_git(repo, ["rev-parse", "--abbrev-ref", "HEAD"], timeout=timeout).strip()
    except GitOperationFailed:
        return None
    return None if not name or name == "HEAD" else name


def resolve_ref(repo: Path, ref: str, *, timeout: float = DEFAULT_TIMEOUT) -> RefInfo:
    try:
        sha = run_git(repo, ["rev-parse", "--verify", f"{ref}^{{commit}}"], timeout=timeout).strip()
    except GitOperationFailed as error:
        raise GitOperationFailed(f"Unknown ref: {ref}") from error
    return RefInfo(ref=ref, sha=sha)


def head_sha(repo: Path, *, timeout: float = DEFAULT_TIMEOUT) -> str | None:
    try:
        return run_git(repo, ["rev-parse", "HEAD"], timeout=timeout).strip()
    except GitOperationFailed:
        return None


def merge_base(repo: Path, ref: str, *, timeout: float = DEFAULT_TIMEOUT) -> str:
    return run_git(repo, ["merge-base", "HEAD", ref], timeout=timeout).strip()


def detect_default_branch(repo: Path, *, timeout: float = DEFAULT_TIMEOUT) -> str:
    for candidate in DEFAULT_BRANCH_CANDIDATES:
        try:
            merge_base(repo, candidate, timeout=timeout)
        except GitOperationFailed:
            continue
        return candidate
    try:
        remote_head = run_git(repo, ["symbolic-ref", "refs/remotes/origin/HEAD"], timeout=timeout).strip()
    except GitOperationFailed:
        return "main"
    return remote_head.replace("refs/remotes/origin/", "", 1)


def has_uncommitted_changes(repo: Path, *, timeout: float = DEFAULT_TIMEOUT) -> bool:
    return bool(run_git(repo, ["status", "--porcelain"], timeout=timeout).strip())


def _range_args(base_sha: str, head: str) -> list[str]:
    if is_working_tree(head):
        return [base_sha]
    return [f"{base_sha}...{head}"]


def numstat(repo: Path, base_sha: str, head: str, *, timeout: float = DEFAULT_TIMEOUT) -> str:
    return run_git(repo, ["diff", "--numstat", "--find-renames", *_range_args(base_sha, head)], timeout=timeout)


def name_status(repo: Path, base_sha: str, head: str, *, timeout: float = DEFAULT_TIMEOUT) -> str:
    return run_git(
        repo, ["diff", "--name-status", "--find-renames", *_range_args(base_sha, head)], timeout=timeout
    )


def untracked_files(repo: Path, *, timeout: float = DEFAULT_TIMEOUT) -> list[str]:
    output = run_git(repo, ["ls-files", "--others", "--exclude-standard"], timeout=timeout)
    return [line for line in output.splitlines() if line]


def file_diff_text(
    repo: Path,
    base_sha: str,
    head: str,
    file_path: str,
    *,
    ignore_whitespace: bool = False,
    timeout: float = DEFAULT_TIMEOUT,
) -> str:
    args = ["diff", "--no-color", "--no-ext-diff"]
    if ignore_whitespace:
        args.append("-w")
    args.extend(_range_args(base_sha, head))
    args.extend(["--", file_path])
    return run_git(repo, args, timeout=timeout)


def file_at_ref(repo: Path, ref: str, file_path: str, *, timeout: float = DEFAULT_TIMEOUT) -> str | None:
    try:
        return run_git(repo, ["show", f"{ref}:{file_path}"], timeout=timeout)
    except GitOperationFailed:
        return None


def read_working_tree_file(repo: Path, file_path: str) -> str | None:
    root = repo.resolve()
    target = (root / file_path).resolve()
    if target != root and root not in target.parents:
        LOG.warning("Refusing to read %s: path escapes the repository root", file_path)
        return None
    try:
        return target.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def file_content(repo: Path, ref: str, file_path: str, *, timeout: float = DEFAULT_TIMEOUT) -> str | None:
    if ref == WORKING_TREE:
        return read_working_tree_file(repo, file_path)
    return file_at_ref(repo, ref, file_path, timeout=timeout)


def is_binary_file(path: Path) -> bool:
    try:
        with path.open("rb") as handle:
            sample = handle.read(BINARY_SNIFF_BYTES)
    except OSError:
        return False
    if b"\0" in sample:
        return True
    try:
        sample.decode("utf-8")
    except UnicodeDecodeError as error:
        # A multi-byte sequence cut at the sample boundary is still text.
        return error.start < len(sample) - 3
    return False
