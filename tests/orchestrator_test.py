"""
Multi-modal orchestrator: phase cycle, caps, checkpoint/resume and drift handling
"""

import os
import tempfile
import unittest
from unittest.mock import MagicMock

from crawler.config import load_config
from crawler.context import CrawlContext
from crawler.models import ExitReason, FrontierEntry, PatternSignature, Phase
from crawler.storage.memory import MemoryCrawlStore
from multimodal.analysis import PageAnalysis
from multimodal.checkpoint import CheckpointStore
from multimodal.orchestrator import MultiModalOrchestrator

HOST = "news.example.com"
EMPTY_PAGE = "<html><body><p>no links here</p></body></html>"


def make_response(url, status=200, text=EMPTY_PAGE):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    resp.content = text.encode("utf-8")
    resp.headers = {"Content-Type": "text/html"}
    resp.url = url
    return resp


def make_session(status=200):
    session = MagicMock()
    session.get.side_effect = lambda url, **kw: make_response(url, status)
    return session


def make_context(session, store=None, **options):
    base = {"rateLimitMs": 0, "headlessEnabled": False, "workers": 2, "batchSize": 4,
            "pauseBetweenBatchesS": 0, "retry": {"baseDelayMs": 1, "maxDelayMs": 5}}
    base.update(options)
    return CrawlContext(load_config(base, environ={}), store=store, session=session)


class TestOrchestratorRun(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.checkpoints = CheckpointStore(os.path.join(self.tmp.name, "checkpoint.json"))

    def tearDown(self):
        self.tmp.cleanup()

    def collect(self, ctx):
        events = []
        ctx.telemetry.subscribe(events.append)
        return events

    def test_one_full_cycle(self):
        session = make_session()
        ctx = make_context(session, maxTotalBatches=1)
        events = self.collect(ctx)

        summary = MultiModalOrchestrator(ctx, HOST, checkpoints=self.checkpoints).run()
        ctx.telemetry.flush()

        self.assertEqual(summary.reason, ExitReason.COMPLETED)
        # Front page (newest lane) plus its first archive page (historical lane)
        self.assertEqual(summary.stats["downloaded"], 2)
        self.assertEqual(summary.stats["pages_analyzed"], 2)
        fetched = sorted(c.args[0] for c in session.get.call_args_list)
        self.assertEqual(fetched, [f"https://{HOST}/", f"https://{HOST}/page/2"])

        phases = [e["data"]["to"] for e in events if e["type"] == "crawl:phase:changed"]
        self.assertEqual(phases, ["download", "analyze", "learn", "discover"])
        types = [e["type"] for e in events]
        self.assertIn("crawl:budget:updated", types)
        self.assertIn("crawl:checkpoint:saved", types)
        self.assertEqual(types[-1], "crawl:completed")

        state = self.checkpoints.load()
        self.assertEqual(state["batch_number"], 1)
        self.assertEqual(state["totals"]["downloaded"], 2)

    def test_failed_checkpoint_write_keeps_running(self):
        ctx = make_context(make_session(), maxTotalBatches=2)
        events = self.collect(ctx)
        checkpoints = MagicMock()
        checkpoints.save.side_effect = OSError("disk full")

        summary = MultiModalOrchestrator(ctx, HOST, checkpoints=checkpoints).run()
        ctx.telemetry.flush()

        self.assertEqual(summary.reason, ExitReason.COMPLETED)
        self.assertEqual(checkpoints.save.call_count, 2)
        types = [e["type"] for e in events]
        self.assertNotIn("crawl:checkpoint:saved", types)
        decisions = [e["data"]["kind"] for e in events if e["type"] == "crawl:decision"]
        self.assertIn("checkpoint-failed", decisions)
        self.assertEqual(types[-1], "crawl:completed")

    def test_resume_continues_from_checkpoint(self):
        ctx = make_context(make_session(), maxTotalBatches=1)
        MultiModalOrchestrator(ctx, HOST, checkpoints=self.checkpoints).run()

        session = make_session()
        resumed_ctx = make_context(session, maxTotalBatches=2)
        orchestrator = MultiModalOrchestrator(resumed_ctx, HOST, checkpoints=self.checkpoints)
        summary = orchestrator.run(resume=True)

        self.assertEqual(summary.reason, ExitReason.COMPLETED)
        self.assertEqual(orchestrator.batch_number, 2)
        self.assertEqual(summary.stats["downloaded"], 3)
        # Already planned URLs are not fetched again
        self.assertEqual([c.args[0] for c in session.get.call_args_list], [f"https://{HOST}/page/3"])

    def test_page_cap_ends_with_max_downloads(self):
        session = make_session()
        ctx = make_context(session, maxTotalPages=1)
        summary = MultiModalOrchestrator(ctx, HOST).run()
        self.assertEqual(summary.reason, ExitReason.MAX_DOWNLOADS_REACHED)
        self.assertEqual(summary.stats["downloaded"], 1)
        self.assertEqual(session.get.call_count, 1)

    def test_failed_first_batch_fails_run(self):
        ctx = make_context(make_session(404), maxTotalBatches=3)
        summary = MultiModalOrchestrator(ctx, HOST).run()
        self.assertEqual(summary.reason, ExitReason.FAILED)
        self.assertEqual(summary.reason.exit_code, 1)

    def test_invalid_domain_fails_without_fetching(self):
        session = make_session()
        ctx = make_context(session)
        summary = MultiModalOrchestrator(ctx, "not a domain").run()
        self.assertEqual(summary.reason, ExitReason.FAILED)
        session.get.assert_not_called()

    def test_stored_signatures_are_the_drift_baseline(self):
        store = MemoryCrawlStore()
        for sig in ("aaa", "bbb", "ccc"):
            store.upsert_signature(HOST, PatternSignature(hash=sig, observed_count=5))
        ctx = make_context(make_session(), store=store)
        ctx.request_abort()
        orchestrator = MultiModalOrchestrator(ctx, HOST)
        orchestrator.run()

        self.assertEqual(orchestrator.tracker.get("aaa").observed_count, 5)
        # Layouts already known from storage are not drift
        tracker = orchestrator.tracker
        tracker.begin_batch()
        for sig in ("aaa", "bbb", "ccc"):
            tracker.observe(f"https://{HOST}/{sig}", sig)
        self.assertFalse(tracker.learn().drift)

    def test_abort_stops_before_download(self):
        session = make_session()
        ctx = make_context(session)
        ctx.request_abort()
        summary = MultiModalOrchestrator(ctx, HOST).run()
        self.assertEqual(summary.reason, ExitReason.ABORT_REQUESTED)
        session.get.assert_not_called()


class TestOrchestratorPhases(unittest.TestCase):
    def setUp(self):
        self.ctx = make_context(make_session(), hubDiscoveryEnabled=False, batchSize=10)
        self.analyzer = MagicMock()
        self.orchestrator = MultiModalOrchestrator(self.ctx, HOST, analyzer=self.analyzer)

    def test_learn_without_drift_goes_back_to_download(self):
        self.orchestrator.tracker.begin_batch()
        self.assertIs(self.orchestrator.learn(), Phase.DOWNLOAD)

    def test_drift_triggers_reanalysis(self):
        tracker = self.orchestrator.tracker
        tracker.begin_batch()
        for sig in ("aaa", "bbb", "ccc"):
            for i in range(3):
                tracker.observe(f"https://{HOST}/{sig}/{i}", sig)
        self.assertIs(self.orchestrator.learn(), Phase.REANALYZE)

        low = f"https://{HOST}/world"
        self.ctx.cache.put(low, EMPTY_PAGE)
        self.orchestrator._confidence.update({low: 0.1, f"https://{HOST}/uncached": 0.2,
                                              f"https://{HOST}/solid": 0.9})
        self.analyzer.analyze.side_effect = lambda pages: [PageAnalysis(p.url, "zzz", 0.8) for p in pages]
        events = []
        self.ctx.telemetry.subscribe(events.append)

        self.assertIs(self.orchestrator.step(Phase.REANALYZE), Phase.DOWNLOAD)
        self.ctx.telemetry.flush()

        self.assertEqual(self.orchestrator.reanalyzed, 1)
        self.assertEqual(self.orchestrator._confidence[low], 0.8)
        analyzed = [p.url for p in self.analyzer.analyze.call_args.args[0]]
        self.assertEqual(analyzed, [low])
        triggered = [e for e in events if e["type"] == "crawl:reanalysis:triggered"]
        self.assertEqual(triggered[0]["data"]["pages"], 2)

    def test_reanalysis_is_capped_at_half_a_batch(self):
        for i in range(20):
            self.orchestrator._confidence[f"https://{HOST}/p/{i}"] = 0.1
        self.analyzer.analyze.return_value = []
        events = []
        self.ctx.telemetry.subscribe(events.append)
        self.orchestrator.reanalyze()
        self.ctx.telemetry.flush()
        triggered = [e for e in events if e["type"] == "crawl:reanalysis:triggered"]
        self.assertEqual(triggered[0]["data"]["pages"], 5)
        # Nothing was cached, so nothing was re-analyzed
        self.assertEqual(self.orchestrator.reanalyzed, 0)

    def test_hub_discovery_schedule(self):
        clock = MagicMock(return_value=1000.0)
        ctx = make_context(make_session(), hubRefreshIntervalMs=60000, hubDiscoveryPriorityBatches=1)
        orchestrator = MultiModalOrchestrator(ctx, HOST, clock=clock)
        orchestrator.batch_number = 1
        self.assertTrue(orchestrator._hub_discovery_due())
        orchestrator.batch_number = 2
        orchestrator.last_hub_refresh = 1000.0
        self.assertFalse(orchestrator._hub_discovery_due())
        clock.return_value = 1060.0
        self.assertTrue(orchestrator._hub_discovery_due())

    def test_balance_pushes_historical_entries_back(self):
        self.ctx.frontier.enqueue(FrontierEntry(url=f"https://{HOST}/page/2", priority=10.0, lane="historical"))
        self.ctx.frontier.enqueue(FrontierEntry(url=f"https://{HOST}/world", priority=15.0, lane="newest"))
        self.orchestrator._apply_balance(0.0)
        self.assertEqual(self.ctx.frontier.dequeue().url, f"https://{HOST}/world")
        self.orchestrator._apply_balance(1.0)
        self.assertEqual(self.ctx.frontier.dequeue().url, f"https://{HOST}/page/2")

    def test_statistics(self):
        stats = self.orchestrator.get_statistics()
        self.assertEqual(stats["domain"], HOST)
        self.assertEqual(stats["batch"], 0)
        self.assertIn("queue", stats)


if __name__ == "__main__":
    unittest.main()
