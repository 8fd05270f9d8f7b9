import asyncio
import json
import sys
import tempfile
import time
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from revi.errors import StateSaveFailed  # noqa: E402
from revi.models import DiffStats, FileRecovery, FileState, KnownFile, UIState  # noqa: E402
from revi.persistence import CoalescingRunner, SaveScheduler  # noqa: E402
from revi.recovery import OUTCOME_RECOVERED, RecoveryResult  # noqa: E402
from revi.review_state import ReviewStateStore  # noqa: E402
from revi.storage import StateStorage  # noqa: E402


class GatedAction:
    """Async action that blocks on a gate so tests can overlap requests with a run."""

    def __init__(self):
        self.calls = 0
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def __call__(self):
        self.calls += 1
        self.started.set()
        await self.gate.wait()


class TestCoalescingRunner(unittest.IsolatedAsyncioTestCase):
    async def test_requests_during_a_run_collapse_into_one_more_run(self):
        action = GatedAction()
        runner = CoalescingRunner(action)
        task = runner.request()
        await action.started.wait()
        for _ in range(5):
            runner.request()
        self.assertTrue(runner.pending)
        action.gate.set()
        await task
        self.assertEqual(action.calls, 2)
        self.assertFalse(runner.running)

    async def test_failure_does_not_stop_later_requests(self):
        calls = []

        async def flaky():
            calls.append(len(calls))
            if len(calls) == 1:
                raise RuntimeError("boom")

        runner = CoalescingRunner(flaky, name="flaky")
        with self.assertLogs("revi.persistence", level="ERROR"):
            await runner.request()
        await runner.request()
        self.assertEqual(calls, [0, 1])


class TestSaveScheduler(unittest.IsolatedAsyncioTestCase):
    async def test_burst_of_schedules_writes_once(self):
        writes = []

        async def save():
            writes.append(1)

        scheduler = SaveScheduler(save, delay=0.2)
        for _ in range(5):
            scheduler.schedule()
            await asyncio.sleep(0.02)
        self.assertEqual(writes, [])
        await asyncio.sleep(0.4)
        self.assertEqual(len(writes), 1)
        await scheduler.close()
        self.assertEqual(scheduler.writes, 1)

    async def test_schedule_during_write_causes_exactly_one_more_write(self):
        action = GatedAction()
        scheduler = SaveScheduler(action, delay=0.01)
        scheduler.schedule()
        await action.started.wait()
        scheduler.schedule()
        await asyncio.sleep(0.05)
        action.gate.set()
        await asyncio.sleep(0.05)
        await scheduler.close()
        self.assertEqual(action.calls, 2)

    async def test_flush_writes_immediately(self):
        writes = []

        async def save():
            writes.append(1)

        scheduler = SaveScheduler(save, delay=10)
        scheduler.schedule()
        await scheduler.flush()
        self.assertEqual(len(writes), 1)
        self.assertFalse(scheduler.scheduled)

    async def test_close_cancels_pending_timer(self):
        writes = []

        async def save():
            writes.append(1)

        scheduler = SaveScheduler(save, delay=0.05)
        scheduler.schedule()
        await scheduler.close()
        with self.assertLogs("revi.persistence", level="WARNING"):
            scheduler.schedule()
        await asyncio.sleep(0.1)
        self.assertEqual(writes, [])
        self.assertTrue(scheduler.closed)


class SlowStorage(StateStorage):
    def __init__(self, repo_root, delay: float):
        super().__init__(repo_root)
        self.delay = delay
        self.saved = []

    def save(self, state):
        time.sleep(self.delay)
        self.saved.append(state)
        return super().save(state)


class FailingStorage(StateStorage):
    def save(self, state):
        raise StateSaveFailed("disk full")


class TestReviewStateStore(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    async def test_mutation_burst_is_persisted_once(self):
        storage = SlowStorage(self.root, delay=0)
        store = ReviewStateStore(storage, "s1", "b1", "h1", save_delay=0.2)
        for path in ["a", "b", "c", "d", "e"]:
            store.mark_viewed(path, content_hash=f"hash-{path}", stats=DiffStats(1, 0))
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.4)
        self.assertEqual(len(storage.saved), 1)
        self.assertEqual(sorted(storage.saved[0].files), ["a", "b", "c", "d", "e"])
        await store.close()
        self.assertEqual(len(storage.saved), 1)

    async def test_mutation_during_write_is_not_lost(self):
        storage = SlowStorage(self.root, delay=0.2)
        store = ReviewStateStore(storage, "s1", "b1", "h1", save_delay=0.01)
        store.mark_viewed("a.ts", content_hash="A")
        await asyncio.sleep(0.05)
        store.mark_viewed("b.ts", content_hash="B")
        await store.close()
        self.assertEqual(len(storage.saved), 2)
        self.assertEqual(sorted(storage.saved[-1].files), ["a.ts", "b.ts"])
        blob = json.loads(storage.state_path("b1", "h1").read_text(encoding="utf-8"))
        self.assertTrue(blob["files"]["b.ts"]["viewed"])
        self.assertEqual(blob["files"]["b.ts"]["lastViewedSha"], "h1")

    async def test_mutation_during_closing_flush_is_written(self):
        storage = SlowStorage(self.root, delay=0.2)
        store = ReviewStateStore(storage, "s1", "b1", "h1", save_delay=10)
        store.mark_viewed("a.ts", content_hash="A")
        closing = asyncio.create_task(store.close())
        await asyncio.sleep(0.05)
        store.mark_viewed("b.ts", content_hash="B")
        await closing
        self.assertFalse(store.dirty)
        blob = json.loads(storage.state_path("b1", "h1").read_text(encoding="utf-8"))
        self.assertEqual(sorted(blob["files"]), ["a.ts", "b.ts"])

    async def test_mutation_while_close_waits_on_timer_write_is_written(self):
        storage = SlowStorage(self.root, delay=0.2)
        store = ReviewStateStore(storage, "s1", "b1", "h1", save_delay=0.01)
        store.mark_viewed("a.ts", content_hash="A")
        await asyncio.sleep(0.05)
        self.assertFalse(store.dirty)
        closing = asyncio.create_task(store.close())
        await asyncio.sleep(0.05)
        store.set_scroll_position("a.ts", 40)
        await closing
        loaded = storage.load("b1", "h1")
        self.assertEqual(loaded.files["a.ts"].scroll_position, 40)

    async def test_save_failure_is_logged_and_store_stays_dirty(self):
        store = ReviewStateStore(FailingStorage(self.root), "s1", "b1", "h1", save_delay=10)
        store.mark_viewed("a.ts")
        with self.assertLogs("revi.review_state", level="ERROR"):
            await store.save_now()
            self.assertTrue(store.dirty)
            await store.close()

    async def test_mutators_and_queries(self):
        store = ReviewStateStore(StateStorage(self.root), "s1", "b1", "h1", save_delay=10)
        self.assertIsNone(store.get_file_state("a.ts"))
        self.assertTrue(store.toggle_viewed("a.ts", "H", DiffStats(2, 1)))
        store.set_hunk_collapsed("a.ts", 2, True)
        store.set_file_collapsed("a.ts", True)
        store.set_scroll_position("a.ts", -5)
        state = store.get_file_state("a.ts")
        self.assertTrue(state.viewed)
        self.assertEqual(state.content_hash, "H")
        self.assertEqual(state.collapse_state.hunks, {2})
        self.assertTrue(state.collapse_state.file)
        self.assertEqual(state.scroll_position, 0)
        state.viewed = False
        self.assertTrue(store.is_viewed("a.ts"))
        self.assertFalse(store.toggle_viewed("a.ts"))
        self.assertEqual(store.viewed_count(), 0)
        with self.assertRaises(ValueError):
            store.set_hunk_collapsed("a.ts", -1, True)
        await store.close()
        self.assertEqual(store.writes, 1)

    async def test_retain_paths_prunes_state_and_recovery(self):
        store = ReviewStateStore(StateStorage(self.root), "s1", "b1", "h1", save_delay=10)
        store.mark_viewed("keep.ts", "K")
        store.mark_viewed("drop.ts", "D")
        store.reconcile_with([KnownFile("keep.ts", "K2", DiffStats(3, 0)), KnownFile("drop.ts", "D", DiffStats())])
        self.assertIsNotNone(store.get_recovery("keep.ts"))
        self.assertEqual(store.retain_paths(["keep.ts"]), ["drop.ts"])
        self.assertIsNone(store.get_file_state("drop.ts"))
        self.assertFalse(store.is_viewed("keep.ts"))
        self.assertTrue(store.dismiss_recovery("keep.ts"))
        self.assertFalse(store.dismiss_recovery("keep.ts"))
        await store.close()

    async def test_changes_made_while_loading_survive_recovery(self):
        store = ReviewStateStore(StateStorage(self.root), "s1", "b1", "h2", save_delay=10)
        store.begin_load()
        store.set_scroll_position("a.ts", 123)
        store.mark_viewed("c.ts", content_hash="C")
        recovered = RecoveryResult(
            files={"a.ts": FileState(viewed=True, content_hash="A"), "b.ts": FileState(viewed=True)},
            recovery_info={"b.ts": FileRecovery(True, DiffStats(1, 0), DiffStats(2, 0))},
            outcome=OUTCOME_RECOVERED,
            recovered_from="b1..h1",
        )
        store.apply_recovery(recovered)
        state = store.get_file_state("a.ts")
        self.assertTrue(state.viewed)
        self.assertEqual(state.scroll_position, 123)
        self.assertTrue(store.is_viewed("c.ts"))
        self.assertIsNotNone(store.get_recovery("b.ts"))
        self.assertEqual(store.outcome, OUTCOME_RECOVERED)

        store.set_scroll_position("a.ts", 5)
        store.apply_recovery(RecoveryResult())
        self.assertIsNone(store.get_file_state("a.ts"))
        await store.close()

    async def test_ui_state_is_persisted(self):
        storage = StateStorage(self.root)
        store = ReviewStateStore(storage, "s1", "b1", "h1", save_delay=10, default_ui=UIState(mode="unified"))
        store.set_ui_state(UIState(mode="split", sidebar_width=400))
        await store.close()
        loaded = storage.load("b1", "h1")
        self.assertEqual(loaded.ui, UIState(mode="split", sidebar_width=400))


if __name__ == "__main__":
    unittest.main()
