"""
Frontier ordering, dedup, held entries and admission filters
"""

import unittest

from crawler.models import FrontierEntry, EntryKind
from crawler.policy import URLPolicy
from frontier.filters import default_priority
from frontier.queue import FrontierQueue, ACCEPTED, DEDUPED, FILTERED


def entry(url, priority=10.0, kind=EntryKind.ARTICLE, depth=0, lane="newest"):
    return FrontierEntry(url=url, depth=depth, kind=kind, priority=priority, lane=lane)


class TestFrontierQueue(unittest.TestCase):
    def setUp(self):
        self.queue = FrontierQueue(URLPolicy(max_depth=3))

    def test_priority_order_with_fifo_ties(self):
        self.queue.enqueue(entry("https://news.example.com/b", 20))
        self.queue.enqueue(entry("https://news.example.com/a1", 10))
        self.queue.enqueue(entry("https://news.example.com/a2", 10))
        order = [self.queue.dequeue().url for _ in range(3)]
        self.assertEqual(order, ["https://news.example.com/a1",
                                 "https://news.example.com/a2",
                                 "https://news.example.com/b"])
        self.assertIsNone(self.queue.dequeue())

    def test_dedup_uses_normalized_url(self):
        first = self.queue.enqueue(entry("https://News.Example.com/story/?utm_source=x#top"))
        second = self.queue.enqueue(entry("https://news.example.com/story"))
        self.assertEqual(first.status, ACCEPTED)
        self.assertEqual(second.status, DEDUPED)
        self.assertEqual(len(self.queue), 1)

    def test_dispatched_url_is_never_readmitted(self):
        self.queue.enqueue(entry("https://news.example.com/x"))
        e = self.queue.dequeue()
        self.queue.mark_done(e)
        self.assertEqual(self.queue.enqueue(entry("https://news.example.com/x")).status, DEDUPED)
        self.assertTrue(self.queue.is_exhausted())

    def test_policy_rejections(self):
        self.assertEqual(self.queue.enqueue(entry("https://news.example.com/logo.png")).reason, "blocked_asset")
        self.assertEqual(self.queue.enqueue(entry("https://news.example.com/feed")).reason, "blocked_path_system")
        deep = self.queue.enqueue(entry("https://news.example.com/deep", depth=4))
        self.assertEqual(deep.status, FILTERED)
        self.assertEqual(deep.reason, "blocked_too_deep")
        self.assertEqual(self.queue.get_stats()["rejections"]["blocked_asset"], 1)

    def test_geography_mode_filters_other_kind(self):
        queue = FrontierQueue(mode="geography-only")
        self.assertFalse(queue.enqueue(entry("https://news.example.com/about", kind=EntryKind.OTHER)).accepted)
        self.assertTrue(queue.enqueue(entry("https://news.example.com/world", kind=EntryKind.HUB)).accepted)

    def test_locked_out_host_entries_are_held_then_released(self):
        self.queue.enqueue(entry("https://locked.example.com/1", 1))
        self.queue.enqueue(entry("https://open.example.com/1", 2))
        locked = {"locked.example.com"}

        got = self.queue.dequeue(lambda host: host not in locked)
        self.assertEqual(got.url, "https://open.example.com/1")
        self.assertEqual(self.queue.held_hosts(), ["locked.example.com"])
        self.assertEqual(self.queue.depth(), {"queued": 0, "held": 1, "in_flight": 1})
        self.assertFalse(self.queue.is_exhausted())

        locked.clear()
        released = self.queue.dequeue(lambda host: host not in locked)
        self.assertEqual(released.url, "https://locked.example.com/1")
        self.assertEqual(released.priority, 1)

    def test_each_entry_delivered_once(self):
        for i in range(20):
            self.queue.enqueue(entry(f"https://news.example.com/{i}", i % 3))
        urls = []
        while True:
            e = self.queue.dequeue()
            if e is None:
                break
            urls.append(e.url)
        self.assertEqual(len(urls), 20)
        self.assertEqual(len(set(urls)), 20)

    def test_reprioritize(self):
        self.queue.enqueue(entry("https://news.example.com/hist", 5, lane="historical"))
        self.queue.enqueue(entry("https://news.example.com/new", 6))
        changed = self.queue.reprioritize(lambda e: e.priority + 10 if e.lane == "historical" else e.priority)
        self.assertEqual(changed, 1)
        self.assertEqual(self.queue.dequeue().url, "https://news.example.com/new")
        self.assertEqual(self.queue.dequeue().url, "https://news.example.com/hist")
        self.assertIsNone(self.queue.dequeue())

    def test_snapshot_and_restore(self):
        self.queue.enqueue(entry("https://news.example.com/done"))
        self.queue.enqueue(entry("https://news.example.com/pending", 20))
        done = self.queue.dequeue()
        self.queue.mark_done(done)

        snap = self.queue.snapshot()
        restored = FrontierQueue(URLPolicy(max_depth=3))
        restored.restore(snap)
        self.assertEqual([e.url for e in restored.pending_entries()], ["https://news.example.com/pending"])
        self.assertFalse(restored.enqueue(entry("https://news.example.com/done")).accepted)

    def test_default_priority(self):
        self.assertLess(default_priority(EntryKind.HUB, 0), default_priority(EntryKind.ARTICLE, 0))
        self.assertLess(default_priority(EntryKind.PAGINATION, 1),
                        default_priority(EntryKind.PAGINATION, 1, "historical"))


if __name__ == "__main__":
    unittest.main()
