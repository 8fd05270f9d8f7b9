from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from rich.console import Console

from . import git
from .config import ReviConfig, load_config
from .errors import ReviError
from .logging_utils import configure_logging
from .manifest import clean_manifests, list_manifests
from .models import BranchMode, ComparisonMode, CustomMode, UncommittedMode
from .render import render_file_list, render_sessions, render_split, render_summary, render_unified
from .session import MarkUnviewed, MarkViewed, ReviewSession

MODE_CHOICES = ("auto", "uncommitted", "branch", "custom")


def _add_comparison_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--mode",
        choices=MODE_CHOICES,
        default="auto",
        help="Comparison to review (default: auto; uncommitted when the tree is dirty, else branch).",
    )
    parser.add_argument("--base", help="Base ref (branch mode: branch to diff against; custom mode: base ref).")
    parser.add_argument("--head", help="Head ref for custom mode.")
    parser.add_argument("-w", "--ignore-whitespace", action="store_true", help="Ignore whitespace changes.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Review local git changes and track per-file review progress.")
    parser.add_argument("-C", "--repo", default=".", help="Repository path (default: current directory).")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase log verbosity (-v, -vv).")
    subparsers = parser.add_subparsers(dest="command", required=True)

    review = subparsers.add_parser("review", help="Show the changed files and their review status.")
    _add_comparison_args(review)
    review.add_argument("--json", dest="as_json", action="store_true", help="Output manifest and state as JSON.")

    diff = subparsers.add_parser("diff", help="Show the diff of one file.")
    diff.add_argument("path", help="File path relative to the repository root.")
    _add_comparison_args(diff)
    diff.add_argument("--view", choices=["split", "unified"], help="Diff layout (default: last used, else config).")
    diff.add_argument("--max-lines", type=int, default=None, help="Max lines in unified view.")
    diff.add_argument("--json", dest="as_json", action="store_true", help="Output the structured diff as JSON.")

    mark = subparsers.add_parser("mark", help="Mark files as viewed.")
    mark.add_argument("paths", nargs="+", help="File paths relative to the repository root.")
    _add_comparison_args(mark)
    mark.add_argument("--unviewed", action="store_true", help="Mark as not viewed instead.")

    sessions = subparsers.add_parser("sessions", help="List or remove stored session manifests.")
    sessions.add_argument("action", choices=["list", "clean"])
    sessions.add_argument("--json", dest="as_json", action="store_true", help="Output session list as JSON.")
    return parser


def parse_cli_args(argv: list[str]) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def comparison_mode_from_args(args: argparse.Namespace, repo_root: Path, config: ReviConfig) -> ComparisonMode | None:
    if args.mode == "auto":
        return BranchMode(base_branch=args.base) if args.base else None
    if args.mode == "uncommitted":
        return UncommittedMode()
    if args.mode == "branch":
        base = args.base or config.default_base or git.detect_default_branch(repo_root, timeout=config.git_timeout_seconds)
        return BranchMode(base_branch=base)
    if args.mode == "custom":
        if not args.base or not args.head:
            raise LookupError("custom mode requires --base and --head")
        return CustomMode(base_ref=args.base, head_ref=args.head)
    raise ValueError(f"Unknown mode: {args.mode}")


async def open_session(args: argparse.Namespace) -> ReviewSession:
    repo_root = await asyncio.to_thread(git.repo_root, Path(args.repo))
    config = await asyncio.to_thread(load_config, repo_root)
    mode = await asyncio.to_thread(comparison_mode_from_args, args, repo_root, config)
    return await ReviewSession.open(repo_root, mode, config=config, ignore_whitespace=args.ignore_whitespace)


def _require_paths(session: ReviewSession, paths: list[str]) -> None:
    for path in paths:
        if session.manifest.file_entry(path) is None:
            raise LookupError(f"File not in review: {path}")


async def run_review(args: argparse.Namespace, console: Console) -> int:
    session = await open_session(args)
    try:
        store = session.store
        if args.as_json:
            payload = {
                "manifest": session.manifest.to_dict(),
                "state": store.snapshot().to_dict(),
                "recovery": {path: info.to_dict() for path, info in store.recovery_info.items()},
                "outcome": store.outcome,
            }
            print(json.dumps(payload, ensure_ascii=False, indent=2))
            return 0
        paths = [entry.path for entry in session.manifest.files]
        render_summary(console, session.manifest, store.viewed_count(paths), store.outcome, store.recovered_from)
        if not paths:
            console.print("[yellow]No changes to review.[/yellow]")
            return 0
        render_file_list(console, session.manifest, store.files, store.recovery_info, session.config.is_danger_zone)
        return 0
    finally:
        await session.close()


async def run_diff(args: argparse.Namespace, console: Console) -> int:
    session = await open_session(args)
    try:
        _require_paths(session, [args.path])
        result = await session.fetch_diff(args.path)
        if result is None:
            print(f"[error] Diff request for {args.path} was superseded.", file=sys.stderr)
            return 1
        if not result.ok or result.diff is None:
            print(f"[error] {result.error}", file=sys.stderr)
            return 1
        if args.as_json:
            print(json.dumps(result.diff.to_dict(), ensure_ascii=False, indent=2))
            return 0
        state = session.store.get_file_state(args.path)
        collapse = state.collapse_state if state is not None else None
        recovery = session.store.get_recovery(args.path)
        if recovery is not None:
            console.print(
                f"[yellow]changed since viewed:[/yellow] was {recovery.old_stats.label()}, now {recovery.new_stats.label()}"
            )
        view = args.view or session.store.ui.mode
        if view == "split":
            render_split(console, result.diff, collapse, session.pair_for_split_view)
        else:
            render_unified(console, result.diff, collapse, args.max_lines)
        return 0
    finally:
        await session.close()


async def run_mark(args: argparse.Namespace, console: Console) -> int:
    session = await open_session(args)
    try:
        _require_paths(session, args.paths)
        for path in args.paths:
            op = MarkUnviewed(path) if args.unviewed else MarkViewed(path)
            await session.mutate_review_state(op)
        label = "not viewed" if args.unviewed else "viewed"
        console.print(f"[green]Marked {len(args.paths)} file(s) as {label}.[/green]")
        return 0
    finally:
        await session.close()


def run_sessions(args: argparse.Namespace, console: Console) -> int:
    repo_root = git.repo_root(Path(args.repo))
    if args.action == "clean":
        removed = clean_manifests(repo_root)
        console.print(f"Removed {removed} session file(s).")
        return 0
    manifests = list_manifests(repo_root)
    if args.as_json:
        print(json.dumps([manifest.to_dict() for manifest in manifests], ensure_ascii=False, indent=2))
        return 0
    render_sessions(console, manifests)
    return 0


def run_cli(argv: list[str]) -> int:
    args = parse_cli_args(argv)
    configure_logging(args.verbose)
    console = Console()
    try:
        if args.command == "review":
            return asyncio.run(run_review(args, console))
        if args.command == "diff":
            return asyncio.run(run_diff(args, console))
        if args.command == "mark":
            return asyncio.run(run_mark(args, console))
        if args.command == "sessions":
            return run_sessions(args, console)
    except LookupError as error:
        print(f"[error] {error}", file=sys.stderr)
        return 2
    except ReviError as error:
        print(f"[error] {error}", file=sys.stderr)
        return 1
    print(f"[error] Unknown command: {args.command}", file=sys.stderr)
    return 2


def main() -> int:
    return run_cli(sys.argv[1:])
