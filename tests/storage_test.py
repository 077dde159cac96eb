"""
Storage: guarded degradation, MySQL statements against a mocked connection, memory store queries
"""

import unittest
from unittest.mock import MagicMock

import pymysql

from crawler.models import FetchOutcome, PatternSignature, SourceMethod
from crawler.storage.guarded import GuardedStore
from crawler.storage.memory import MemoryCrawlStore
from crawler.storage.mysql import MySQLCrawlStore, REQUIRED_TABLES, SCHEMA


class TestGuardedStore(unittest.TestCase):
    def setUp(self):
        self.inner = MagicMock()
        self.telemetry = MagicMock()
        self.store = GuardedStore(self.inner, telemetry=self.telemetry)

    def test_forwards_while_healthy(self):
        self.inner.known_dead_urls.return_value = {"https://a.com/x"}
        self.assertEqual(self.store.known_dead_urls("a.com"), {"https://a.com/x"})
        self.store.mark_dead("https://a.com/y", 404)
        self.inner.mark_dead.assert_called_once_with("https://a.com/y", 404)
        self.assertFalse(self.store.degraded)

    def test_first_failure_degrades_once(self):
        self.inner.record_page_analysis.side_effect = pymysql.OperationalError(2006, "MySQL server has gone away")
        self.store.record_page_analysis("https://a.com/x", "abc", 0.5)
        self.store.record_page_analysis("https://a.com/y", "abc", 0.5)

        self.assertTrue(self.store.degraded)
        self.telemetry.emit.assert_called_once()
        event_type, data = self.telemetry.emit.call_args.args
        self.assertEqual(event_type, "crawl:storage:degraded")
        self.assertEqual(data["operation"], "record_page_analysis")

    def test_degraded_store_skips_writes_and_returns_empty_reads(self):
        self.inner.save_hub.side_effect = RuntimeError("down")
        self.store.save_hub("a.com", "https://a.com/world", "planner", 0.9)
        self.inner.reset_mock()

        self.store.save_decision_trace({"kind": "k"})
        self.store.mark_dead("https://a.com/z", 410)
        self.assertEqual(self.store.skipped_writes, 2)
        self.assertEqual(self.store.hub_candidates("a.com"), [])
        self.assertEqual(self.store.known_dead_urls("a.com"), set())
        self.assertEqual(self.store.pages_needing_reanalysis("a.com", 0.6, 10), [])
        self.assertEqual(self.inner.method_calls, [])

    def test_works_without_telemetry(self):
        inner = MagicMock()
        inner.load_signatures.side_effect = RuntimeError("down")
        store = GuardedStore(inner)
        self.assertEqual(store.load_signatures("a.com"), [])
        self.assertTrue(store.degraded)


class TestMySQLCrawlStore(unittest.TestCase):
    def setUp(self):
        self.pool = MagicMock()
        self.cursor = self.pool.cursor.return_value.__enter__.return_value
        self.store = MySQLCrawlStore(self.pool)

    def test_write_commits(self):
        self.store.mark_dead("https://news.example.com/gone", 404)
        sql, params = self.cursor.execute.call_args.args
        self.assertIn("INSERT INTO crawl_dead_urls", sql)
        self.assertEqual(params[:3], ("https://news.example.com/gone", "news.example.com", 404))
        self.pool.commit.assert_called_once()

    def test_failed_write_rolls_back_and_raises(self):
        self.cursor.execute.side_effect = pymysql.IntegrityError(1062, "Duplicate entry")
        with self.assertRaises(pymysql.IntegrityError):
            self.store.save_decision_trace({"kind": "k", "message": "m"})
        self.pool.rollback.assert_called_once()
        self.pool.commit.assert_not_called()

    def test_record_fetch_stores_source_method(self):
        outcome = FetchOutcome(url="https://news.example.com/a", http_status=200,
                               source_method=SourceMethod.HEADLESS, duration_ms=120, attempts=3)
        self.store.record_fetch(outcome)
        params = self.cursor.execute.call_args.args[1]
        self.assertEqual(params[3], "headless")
        self.assertEqual(params[7], 3)

    def test_reads_map_rows(self):
        self.cursor.fetchall.return_value = [("https://news.example.com/world", "pattern-discovery", 0.8)]
        hubs = self.store.hub_candidates("news.example.com", limit=5)
        self.assertEqual(hubs, [{"url": "https://news.example.com/world", "source": "pattern-discovery",
                                 "confidence": 0.8}])
        self.assertEqual(self.cursor.execute.call_args.args[1], ("news.example.com", 5))

    def test_load_signatures(self):
        self.cursor.fetchall.return_value = [("abcd", 0.5, 4, '["https://news.example.com/a"]')]
        sigs = self.store.load_signatures("news.example.com")
        self.assertEqual(len(sigs), 1)
        self.assertEqual(sigs[0].hash, "abcd")
        self.assertEqual(sigs[0].observed_count, 4)
        self.assertEqual(sigs[0].example_urls, ["https://news.example.com/a"])

    def test_create_tables_runs_schema(self):
        self.store.create_tables()
        self.assertEqual(self.cursor.execute.call_count, len(SCHEMA))
        self.pool.commit.assert_called_once()

    def test_missing_tables(self):
        self.cursor.fetchall.return_value = [("crawl_fetches",), ("crawl_hubs",)]
        missing = self.store.missing_tables()
        self.assertNotIn("crawl_fetches", missing)
        self.assertIn("crawl_dead_urls", missing)
        self.assertEqual(len(missing), len(REQUIRED_TABLES) - 2)


class TestMemoryCrawlStore(unittest.TestCase):

    def test_hub_candidates_keep_best_confidence(self):
        store = MemoryCrawlStore()
        store.save_hub("a.com", "https://a.com/world", "pattern-discovery", 0.6)
        store.save_hub("a.com", "https://a.com/world", "hub-gap-analysis", 0.8)
        store.save_hub("a.com", "https://a.com/sport", "pattern-discovery", 0.9)
        store.save_hub("a.com", "https://a.com/world", "pattern-discovery", 0.5)
        hubs = store.hub_candidates("a.com")
        self.assertEqual([h["url"] for h in hubs], ["https://a.com/sport", "https://a.com/world"])
        self.assertEqual(hubs[1]["source"], "hub-gap-analysis")

    def test_pages_needing_reanalysis(self):
        store = MemoryCrawlStore()
        store.record_page_analysis("https://a.com/1", "s1", 0.2)
        store.record_page_analysis("https://a.com/2", "s1", 0.9)
        store.record_page_analysis("https://a.com/3", "s2", 0.1)
        store.record_page_analysis("https://b.com/1", "s3", 0.1)
        self.assertEqual(store.pages_needing_reanalysis("a.com", 0.6, 10), ["https://a.com/3", "https://a.com/1"])
        self.assertEqual(store.pages_needing_reanalysis("a.com", 0.6, 1), ["https://a.com/3"])

    def test_signatures_are_copied(self):
        store = MemoryCrawlStore()
        sig = PatternSignature(hash="abcd")
        sig.observe("https://a.com/1")
        store.upsert_signature("a.com", sig)
        sig.observe("https://a.com/2")
        self.assertEqual(store.load_signatures("a.com")[0].observed_count, 1)


if __name__ == "__main__":
    unittest.main()
