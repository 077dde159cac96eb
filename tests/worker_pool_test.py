"""
Worker pool: download caps, exit reasons and host lockout handling
"""

import threading
import time
import unittest
from unittest.mock import MagicMock

import requests

from crawler.config import load_config
from crawler.context import CrawlContext
from crawler.models import ExitReason, FrontierEntry, HostStatus
from crawler.worker import WorkerPool

EMPTY_PAGE = "<html><body><p>no links here</p></body></html>"


def make_response(status=200, text=EMPTY_PAGE, url="https://news.example.com/"):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    resp.content = text.encode("utf-8")
    resp.headers = {"Content-Type": "text/html"}
    resp.url = url
    return resp


def make_context(session, **options):
    base = {"rateLimitMs": 0, "headlessEnabled": False, "workers": 2,
            "retry": {"baseDelayMs": 1, "maxDelayMs": 5}}
    base.update(options)
    return CrawlContext(load_config(base, environ={}), session=session)


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class TestWorkerPool(unittest.TestCase):
    def setUp(self):
        self.session = MagicMock()

    def test_max_downloads_is_never_exceeded(self):
        self.session.get.return_value = make_response()
        ctx = make_context(self.session)
        seeds = [f"https://news.example.com/section-{c}" for c in "abcde"]

        summary = WorkerPool(ctx, max_downloads=3).run(seeds)

        self.assertEqual(summary.reason, ExitReason.MAX_DOWNLOADS_REACHED)
        self.assertEqual(summary.stats["downloaded"], 3)
        self.assertEqual(self.session.get.call_count, 3)
        self.assertEqual(ctx.frontier.depth()["queued"], 2)

    def test_queue_exhausted_after_success(self):
        self.session.get.return_value = make_response()
        ctx = make_context(self.session)
        summary = WorkerPool(ctx).run(["news.example.com"])
        self.assertEqual(summary.reason, ExitReason.QUEUE_EXHAUSTED)
        self.assertEqual(summary.stats["downloaded"], 1)

    def test_all_fetches_failing_is_failed(self):
        self.session.get.return_value = make_response(404)
        ctx = make_context(self.session)
        summary = WorkerPool(ctx).run(["https://news.example.com/a", "https://news.example.com/b"])
        self.assertEqual(summary.reason, ExitReason.FAILED)
        self.assertEqual(summary.stats["downloaded"], 0)
        self.assertEqual(summary.stats["errors"], 2)

    def test_cache_only_run_is_not_failed(self):
        ctx = make_context(self.session)
        ctx.cache.put("https://news.example.com/a", EMPTY_PAGE)
        summary = WorkerPool(ctx).run(["https://news.example.com/a"])
        self.assertEqual(summary.reason, ExitReason.QUEUE_EXHAUSTED)
        self.assertEqual(summary.stats["cache_hits"], 1)
        self.assertEqual(summary.stats["downloaded"], 0)
        self.session.get.assert_not_called()

    def test_invalid_seeds_fail_before_workers_start(self):
        ctx = make_context(self.session)
        pool = WorkerPool(ctx)
        summary = pool.run(["not a domain", ""])
        self.assertEqual(summary.reason, ExitReason.FAILED)
        self.assertEqual(pool._workers, [])
        self.session.get.assert_not_called()

    def test_links_are_followed_and_pages_sunk(self):
        pages = {
            "https://news.example.com/": "<html><body><a href='/world'>World</a>"
                                         "<a href='https://other.org/x'>Elsewhere</a></body></html>",
            "https://news.example.com/world": EMPTY_PAGE,
        }
        self.session.get.side_effect = lambda url, **kw: make_response(200, pages[url], url)
        ctx = make_context(self.session)
        sunk = []
        summary = WorkerPool(ctx, page_sink=lambda entry, outcome: sunk.append(entry.url)).run(["news.example.com"])

        self.assertEqual(summary.reason, ExitReason.QUEUE_EXHAUSTED)
        self.assertEqual(sorted(sunk), ["https://news.example.com/", "https://news.example.com/world"])
        self.assertEqual(summary.stats["saved"], 2)

    def test_lockout_holds_remaining_entries_until_abort(self):
        self.session.get.side_effect = requests.exceptions.ConnectionError(
            ConnectionResetError(104, "Connection reset by peer"))
        ctx = make_context(self.session, workers=1, maxRetries=0)
        seeds = [f"https://flaky.example.com/section-{c}" for c in "abcd"]
        progress = []
        ctx.telemetry.subscribe(lambda e: progress.append(e) if e["type"] == "crawl:progress" else None)
        pool = WorkerPool(ctx)
        result = {}
        runner = threading.Thread(target=lambda: result.setdefault("summary", pool.run(seeds)))
        runner.start()

        self.assertTrue(wait_for(lambda: ctx.frontier.depth()["held"] == 1))
        self.assertTrue(wait_for(lambda: any(s["held"] == 1 for s in ctx.stats.to_dict()["queue_depth_history"])))
        self.assertEqual(ctx.retry.status("flaky.example.com"), HostStatus.LOCKED_OUT)
        self.assertEqual(self.session.get.call_count, 3)
        self.assertTrue(runner.is_alive())

        ctx.request_abort()
        runner.join(10)
        summary = result["summary"]
        self.assertEqual(summary.reason, ExitReason.ABORT_REQUESTED)
        self.assertEqual(summary.stats["errors"], 3)
        self.assertEqual(ctx.frontier.held_hosts(), ["flaky.example.com"])
        self.assertTrue(any(s["held"] == 1 for s in summary.stats["queue_depth_history"]))
        ctx.telemetry.flush()
        self.assertEqual(progress[-1]["data"]["queue"]["held"], 1)
        self.assertEqual(progress[-1]["data"]["held_hosts"], ["flaky.example.com"])

    def test_exit_precedence(self):
        ctx = make_context(self.session)
        pool = WorkerPool(ctx, max_downloads=1)
        ctx.stats.downloaded = 1
        ctx.abort.set()
        self.assertEqual(pool.evaluate_exit(time.monotonic())[0], ExitReason.ABORT_REQUESTED)
        ctx.abort.clear()
        # Exhausted queue and cap reached at once: the cap wins
        self.assertEqual(pool.evaluate_exit(time.monotonic())[0], ExitReason.MAX_DOWNLOADS_REACHED)
        pool.max_downloads = None
        self.assertEqual(pool.evaluate_exit(time.monotonic())[0], ExitReason.QUEUE_EXHAUSTED)
        ctx.stats.downloaded = 0
        ctx.stats.errors = 2
        self.assertEqual(pool.evaluate_exit(time.monotonic())[0], ExitReason.FAILED)

    def test_duration_cap_completes(self):
        ctx = make_context(self.session)
        ctx.frontier.enqueue(FrontierEntry(url="https://news.example.com/x", priority=1.0))
        pool = WorkerPool(ctx, max_duration_s=0)
        self.assertEqual(pool.evaluate_exit(time.monotonic() - 1)[0], ExitReason.COMPLETED)

    def test_pause_blocks_dispatch(self):
        self.session.get.return_value = make_response()
        ctx = make_context(self.session)
        ctx.pause()
        pool = WorkerPool(ctx)
        result = {}
        runner = threading.Thread(target=lambda: result.setdefault("summary", pool.run(["news.example.com"])))
        runner.start()
        time.sleep(0.3)
        self.session.get.assert_not_called()
        ctx.resume()
        runner.join(10)
        self.assertEqual(result["summary"].reason, ExitReason.QUEUE_EXHAUSTED)


if __name__ == "__main__":
    unittest.main()
