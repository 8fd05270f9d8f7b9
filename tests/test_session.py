import asyncio
import io
import json
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from revi.cli import run_cli  # noqa: E402
from revi.config import ReviConfig  # noqa: E402
from revi.errors import GitOperationFailed  # noqa: E402
from revi.git import run_git  # noqa: E402
from revi.models import WORKING_TREE, BranchMode, ChangeEvent, CustomMode, UncommittedMode  # noqa: E402
from revi.session import (  # noqa: E402
    DismissRecovery,
    MarkViewed,
    ReviewSession,
    SetHunkCollapsed,
    SetScrollPosition,
    ToggleViewed,
    create_manifest,
    resolve_comparison_mode,
)


def init_repo(repo: Path) -> str:
    run_git(repo, ["init"])
    run_git(repo, ["symbolic-ref", "HEAD", "refs/heads/main"])
    run_git(repo, ["config", "user.email", "ut@example.com"])
    run_git(repo, ["config", "user.name", "UT"])
    run_git(repo, ["config", "commit.gpgsign", "false"])
    (repo / ".gitignore").write_text(".revi/\n", encoding="utf-8")
    (repo / "a.py").write_text("def total(price, qty):\n    return price * qty\n", encoding="utf-8")
    (repo / "old.txt").write_text("first\nsecond\n", encoding="utf-8")
    return commit_all(repo, "base")


def commit_all(repo: Path, message: str, amend: bool = False) -> str:
    run_git(repo, ["add", "-A"])
    args = ["commit", "-m", message]
    if amend:
        args.append("--amend")
    run_git(repo, args)
    return run_git(repo, ["rev-parse", "HEAD"]).strip()


def make_feature_branch(repo: Path) -> str:
    run_git(repo, ["checkout", "-b", "feature"])
    (repo / "a.py").write_text("def total(price, quantity):\n    return price * quantity\n", encoding="utf-8")
    (repo / "new.py").write_text("print('hello')\nprint('world')\n", encoding="utf-8")
    (repo / "old.txt").unlink()
    return commit_all(repo, "feature work")


class TestCreateManifest(unittest.TestCase):
    def test_branch_mode_lists_changed_files(self):
        with tempfile.TemporaryDirectory() as tmp:
            repo = Path(tmp).resolve()
            base = init_repo(repo)
            head = make_feature_branch(repo)
            manifest = create_manifest(repo, BranchMode("main"))
            self.assertEqual(manifest.base.sha, base)
            self.assertEqual(manifest.head.sha, head)
            self.assertEqual(
                [(entry.path, entry.status) for entry in manifest.files],
                [("a.py", "modified"), ("new.py", "added"), ("old.txt", "deleted")],
            )
            self.assertEqual(manifest.worktree.branch, "feature")
            self.assertTrue((repo / ".revi" / "sessions" / f"{manifest.session_id}.json").is_file())

    def test_custom_mode_and_exclude(self):
        with tempfile.TemporaryDirectory() as tmp:
            repo = Path(tmp).resolve()
            init_repo(repo)
            make_feature_branch(repo)
            config = ReviConfig(exclude=["*.txt"])
            manifest = create_manifest(repo, CustomMode("main", "feature"), config=config, write=False)
            self.assertEqual([entry.path for entry in manifest.files], ["a.py", "new.py"])
            self.assertFalse((repo / ".revi" / "sessions").exists())

    def test_auto_mode_follows_working_tree(self):
        with tempfile.TemporaryDirectory() as tmp:
            repo = Path(tmp).resolve()
            init_repo(repo)
            make_feature_branch(repo)
            config = ReviConfig()
            self.assertEqual(resolve_comparison_mode(repo, None, None, config), BranchMode("main"))
            self.assertEqual(resolve_comparison_mode(repo, None, "develop", config), BranchMode("develop"))
            (repo / "scratch.md").write_text("todo\n", encoding="utf-8")
            self.assertEqual(resolve_comparison_mode(repo, None, None, config), UncommittedMode())

    def test_unknown_ref_raises(self):
        with tempfile.TemporaryDirectory() as tmp:
            repo = Path(tmp).resolve()
            init_repo(repo)
            with self.assertRaises(GitOperationFailed):
                create_manifest(repo, CustomMode("main", "no-such-branch"), write=False)


class TestReviewSession(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.repo = Path(self.tmp.name).resolve()
        init_repo(self.repo)

    def tearDown(self):
        self.tmp.cleanup()

    async def test_diff_and_split_view(self):
        make_feature_branch(self.repo)
        session = await ReviewSession.open(self.repo, BranchMode("main"))
        try:
            hits = session.cache.hits
            diff = await asyncio.to_thread(session.compute_diff, "a.py")
            self.assertEqual(session.cache.hits, hits + 1)
            self.assertEqual(diff.stats.label(), "+2/-2")
            pairs = session.pair_for_split_view(diff.hunks[0].lines)
            self.assertEqual(pairs[0].old_line.content, "def total(price, qty):")
            self.assertEqual(pairs[0].new_line.content, "def total(price, quantity):")
            self.assertTrue(any(span.scope == "word-added" for span in pairs[0].new_line.highlights))
            self.assertEqual(session.invalidate_diff_cache(), len(session.manifest.files))
        finally:
            await session.close()

    async def test_review_progress_survives_amend(self):
        make_feature_branch(self.repo)
        session = await ReviewSession.open(self.repo, BranchMode("main"))
        await session.mutate_review_state(MarkViewed("a.py"))
        await session.mutate_review_state(MarkViewed("new.py"))
        await session.close()

        (self.repo / "new.py").write_text("print('hello')\nprint('world')\nprint('again')\n", encoding="utf-8")
        commit_all(self.repo, "feature work", amend=True)

        session = await ReviewSession.open(self.repo, BranchMode("main"))
        try:
            self.assertEqual(session.store.outcome, "recovered")
            self.assertTrue(session.store.is_viewed("a.py"))
            self.assertFalse(session.store.is_viewed("new.py"))
            recovery = session.store.get_recovery("new.py")
            self.assertEqual(recovery.old_stats.label(), "+2/-0")
            self.assertEqual(recovery.new_stats.label(), "+3/-0")
            self.assertIsNone(session.store.get_recovery("a.py"))
            self.assertIsNone(session.store.get_file_state("old.txt"))
            await session.mutate_review_state(DismissRecovery("new.py"))
            self.assertIsNone(session.store.get_recovery("new.py"))
        finally:
            await session.close()

    async def test_exact_match_on_reopen(self):
        make_feature_branch(self.repo)
        session = await ReviewSession.open(self.repo, BranchMode("main"))
        await session.mutate_review_state(ToggleViewed("a.py"))
        state = await session.mutate_review_state(SetHunkCollapsed("a.py", 0, True))
        self.assertEqual(state.collapse_state.hunks, {0})
        await session.close()

        session = await ReviewSession.open(self.repo, BranchMode("main"))
        try:
            self.assertEqual(session.store.outcome, "exact")
            self.assertTrue(session.store.get_file_state("a.py").viewed)
            self.assertEqual(session.store.get_file_state("a.py").collapse_state.hunks, {0})
        finally:
            await session.close()

    async def test_untracked_file_is_synthesized_and_not_cached(self):
        (self.repo / "notes.md").write_text("one\ntwo\n", encoding="utf-8")
        session = await ReviewSession.open(self.repo, UncommittedMode())
        try:
            self.assertEqual(session.head_sha, WORKING_TREE)
            entry = session.manifest.file_entry("notes.md")
            self.assertEqual((entry.status, entry.additions), ("added", 2))
            result = await session.fetch_diff("notes.md")
            self.assertTrue(result.ok)
            self.assertEqual(result.diff.hunks[0].header, "@@ -0,0 +1,2 @@ New file")
            self.assertEqual(len(session.cache), 0)
        finally:
            await session.close()

    async def test_superseded_fetch_returns_none(self):
        make_feature_branch(self.repo)
        session = await ReviewSession.open(self.repo, BranchMode("main"))
        try:
            first, second = await asyncio.gather(session.fetch_diff("a.py"), session.fetch_diff("new.py"))
            self.assertIsNone(first)
            self.assertEqual(second.path, "new.py")
            missing = await session.fetch_diff("does-not-exist.py")
            self.assertTrue(missing.ok)
            self.assertEqual(missing.diff.hunks, ())
        finally:
            await session.close()

    async def test_refresh_requests_coalesce(self):
        (self.repo / "a.py").write_text("changed\n", encoding="utf-8")
        session = await ReviewSession.open(self.repo, UncommittedMode())
        try:
            (self.repo / "extra.py").write_text("x = 1\n", encoding="utf-8")
            first = session.refresh()
            await asyncio.sleep(0)
            session.refresh()
            session.refresh()
            await first
            self.assertEqual(session.refresh_count, 2)
            self.assertIsNotNone(session.manifest.file_entry("extra.py"))
        finally:
            await session.close()

    async def test_working_tree_edit_resets_viewed_on_refresh(self):
        (self.repo / "a.py").write_text("def total(price, qty):\n    return price * qty * 2\n", encoding="utf-8")
        session = await ReviewSession.open(self.repo, UncommittedMode())
        try:
            await session.mutate_review_state(MarkViewed("a.py"))
            (self.repo / "a.py").write_text("def total(price, qty):\n    return price * qty * 3\n", encoding="utf-8")
            task = session.handle_change_event(
                ChangeEvent(type="file_changed", repo_root=str(session.repo_root), paths=("a.py",))
            )
            await task
            self.assertFalse(session.store.is_viewed("a.py"))
            self.assertIsNotNone(session.store.get_recovery("a.py"))
        finally:
            await session.close()

    async def test_commit_moves_the_comparison(self):
        (self.repo / "a.py").write_text("changed\n", encoding="utf-8")
        session = await ReviewSession.open(self.repo, UncommittedMode())
        try:
            old_base = session.base_sha
            await session.mutate_review_state(MarkViewed("a.py"))
            new_head = commit_all(self.repo, "commit the change")
            await session.handle_change_event(
                ChangeEvent(type="commit_added", repo_root=str(session.repo_root), new_head_sha=new_head)
            )
            self.assertNotEqual(session.base_sha, old_base)
            self.assertEqual(session.base_sha, new_head)
            self.assertEqual(session.manifest.files, ())
        finally:
            await session.close()

    async def test_changes_during_head_move_are_kept(self):
        make_feature_branch(self.repo)
        session = await ReviewSession.open(self.repo, BranchMode("main"))
        try:
            await session.mutate_review_state(MarkViewed("new.py"))
            old_store = session.store
            (self.repo / "later.py").write_text("x = 2\n", encoding="utf-8")
            new_head = commit_all(self.repo, "more work")
            refresh = session.refresh()

            async def wait_for_swap():
                while session.store is old_store:
                    await asyncio.sleep(0.001)

            await asyncio.wait_for(wait_for_swap(), timeout=10)
            await session.mutate_review_state(SetScrollPosition("a.py", 123))
            await refresh
            self.assertEqual(session.head_sha, new_head)
            state = session.store.get_file_state("a.py")
            self.assertIsNotNone(state)
            self.assertEqual(state.scroll_position, 123)
            self.assertTrue(session.store.is_viewed("new.py"))
        finally:
            await session.close()

    async def test_change_events_for_other_repos_are_ignored(self):
        session = await ReviewSession.open(self.repo, UncommittedMode())
        try:
            event = ChangeEvent(type="ref_changed", repo_root="/some/other/repo")
            self.assertIsNone(session.handle_change_event(event))
            with self.assertRaises(ValueError):
                session.handle_change_event(ChangeEvent(type="exploded", repo_root=str(session.repo_root)))
        finally:
            await session.close()

    async def test_unknown_operation_raises(self):
        session = await ReviewSession.open(self.repo, UncommittedMode())
        try:
            with self.assertRaises(TypeError):
                await session.mutate_review_state("mark a.py")
        finally:
            await session.close()


class TestCli(unittest.TestCase):
    def test_mark_then_review_json(self):
        with tempfile.TemporaryDirectory() as tmp:
            repo = Path(tmp).resolve()
            init_repo(repo)
            make_feature_branch(repo)
            with redirect_stdout(io.StringIO()), redirect_stderr(io.StringIO()):
                code = run_cli(["-C", str(repo), "mark", "a.py", "--mode", "branch", "--base", "main"])
            self.assertEqual(code, 0)

            stdout = io.StringIO()
            with redirect_stdout(stdout), redirect_stderr(io.StringIO()):
                code = run_cli(["-C", str(repo), "review", "--mode", "branch", "--base", "main", "--json"])
            self.assertEqual(code, 0)
            payload = json.loads(stdout.getvalue())
            self.assertEqual(payload["outcome"], "exact")
            self.assertTrue(payload["state"]["files"]["a.py"]["viewed"])
            self.assertEqual(len(payload["manifest"]["files"]), 3)

    def test_diff_and_sessions_commands(self):
        with tempfile.TemporaryDirectory() as tmp:
            repo = Path(tmp).resolve()
            init_repo(repo)
            make_feature_branch(repo)
            stdout = io.StringIO()
            with redirect_stdout(stdout), redirect_stderr(io.StringIO()):
                code = run_cli(["-C", str(repo), "diff", "new.py", "--mode", "custom", "--base", "main", "--head", "feature", "--json"])
            self.assertEqual(code, 0)
            self.assertEqual(json.loads(stdout.getvalue())["stats"], {"additions": 2, "deletions": 0})

            with redirect_stdout(io.StringIO()), redirect_stderr(io.StringIO()):
                code = run_cli(["-C", str(repo), "diff", "a.py", "--mode", "branch", "--base", "main", "--view", "split"])
            self.assertEqual(code, 0)

            stdout = io.StringIO()
            with redirect_stdout(stdout), redirect_stderr(io.StringIO()):
                code = run_cli(["-C", str(repo), "sessions", "list", "--json"])
            self.assertEqual(code, 0)
            self.assertEqual(len(json.loads(stdout.getvalue())), 2)

            with redirect_stdout(io.StringIO()), redirect_stderr(io.StringIO()):
                code = run_cli(["-C", str(repo), "sessions", "clean"])
            self.assertEqual(code, 0)
            self.assertEqual(list((repo / ".revi" / "sessions").glob("*.json")), [])

    def test_errors_map_to_exit_codes(self):
        with tempfile.TemporaryDirectory() as tmp:
            repo = Path(tmp).resolve()
            init_repo(repo)
            make_feature_branch(repo)
            stderr = io.StringIO()
            with redirect_stdout(io.StringIO()), redirect_stderr(stderr):
                code = run_cli(["-C", str(repo), "mark", "nope.py", "--mode", "branch", "--base", "main"])
            self.assertEqual(code, 2)
            self.assertIn("[error] File not in review: nope.py", stderr.getvalue())

            with redirect_stdout(io.StringIO()), redirect_stderr(io.StringIO()):
                code = run_cli(["-C", str(repo), "review", "--mode", "custom", "--base", "main"])
            self.assertEqual(code, 2)

            with redirect_stdout(io.StringIO()), redirect_stderr(io.StringIO()):
                code = run_cli(["-C", str(repo), "review", "--mode", "branch", "--base", "no-such-branch"])
            self.assertEqual(code, 1)


if __name__ == "__main__":
    unittest.main()
