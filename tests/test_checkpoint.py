"""Tests for checkpoint transitions and resume positions."""

import unittest
from types import SimpleNamespace

from forumcrawl.checkpoint import CheckpointStore, CrawlState, Phase, resume_index
from tests.fakes import TempDatabaseMixin


class TestCrawlStatePhase(unittest.TestCase):

    def test_phase(self):
        self.assertEqual(CrawlState().phase, Phase.NOT_STARTED)
        self.assertEqual(CrawlState("S").phase, Phase.IN_PROGRESS)
        self.assertEqual(CrawlState("S", "T").phase, Phase.IN_PROGRESS)
        self.assertEqual(CrawlState(completed=True).phase, Phase.COMPLETED)


class TestCheckpointStore(TempDatabaseMixin, unittest.TestCase):

    def setUp(self):
        super().setUp()
        self.store = CheckpointStore(self.db)

    def test_fresh_database_is_not_started(self):
        self.assertEqual(self.store.load().phase, Phase.NOT_STARTED)

    def test_transitions(self):
        self.store.start_subforum("S")
        state = self.store.load()
        self.assertEqual((state.subforum_url, state.thread_url, state.completed), ("S", None, False))
        self.store.start_thread("S", "T")
        state = self.store.load()
        self.assertEqual((state.subforum_url, state.thread_url), ("S", "T"))
        self.assertEqual(state.phase, Phase.IN_PROGRESS)
        self.store.finish_subforum("S")
        state = self.store.load()
        self.assertEqual((state.subforum_url, state.thread_url), ("S", None))
        self.store.complete()
        state = self.store.load()
        self.assertEqual(state.phase, Phase.COMPLETED)
        self.assertIsNone(state.subforum_url)
        self.store.reset()
        self.assertEqual(self.store.load().phase, Phase.NOT_STARTED)


class TestResumeIndex(unittest.TestCase):

    def test_resume_index(self):
        items = [SimpleNamespace(url=u) for u in ("a", "b", "c")]
        self.assertEqual(resume_index(items, "b"), 1)
        self.assertEqual(resume_index(items, "zzz"), 0)
        self.assertEqual(resume_index(items, None), 0)
        self.assertEqual(resume_index([], "a"), 0)


if __name__ == "__main__":
    unittest.main()
