"""
Telemetry bridge: ordering, URL batching, progress coalescing, history replay and trace caps
"""

import json
import os
import queue
import tempfile
import threading
import unittest
from unittest.mock import MagicMock

from crawler.telemetry import (
    TelemetryBridge, JsonLinesSink, cap_decision_trace, category_of, SCHEMA_VERSION, URL_BATCH_TYPE,
)


class InterleavingQueue(queue.Queue):
    """Runs `on_put` once, right before the first item is stored."""

    def __init__(self, on_put):
        super().__init__()
        self.on_put = on_put

    def put_nowait(self, item):
        hook, self.on_put = self.on_put, None
        if hook is not None:
            hook()
        super().put_nowait(item)


class TestTelemetryBridge(unittest.TestCase):
    def setUp(self):
        self.bridge = TelemetryBridge(job_id="job-1", history_limit=5, url_batch_size=3)
        self.received = []
        self.bridge.subscribe(self.received.append)

    def types(self):
        return [e["type"] for e in self.received]

    def test_event_envelope(self):
        event = self.bridge.emit("crawl:started", {"workers": 2})
        for key in ("schemaVersion", "id", "type", "jobId", "timestamp", "timestampMs", "severity", "source", "data"):
            self.assertIn(key, event)
        self.assertEqual(event["schemaVersion"], SCHEMA_VERSION)
        self.assertEqual(event["jobId"], "job-1")
        self.assertEqual(self.bridge.emit("crawl:failed")["severity"], "error")

    def test_emission_order_is_preserved_across_channels(self):
        self.bridge.emit("crawl:started")
        self.bridge.emit("crawl:decision", {"kind": "x"})
        self.bridge.emit("crawl:host:locked", {"host": "a.com"})
        self.bridge.emit("crawl:completed")
        self.bridge.flush()
        self.assertEqual(self.types(), ["crawl:started", "crawl:decision", "crawl:host:locked", "crawl:completed"])

    def test_concurrent_emitters_keep_sequence_order(self):
        def interleave():
            other = threading.Thread(target=lambda: (self.bridge.emit("crawl:host:locked", {"n": 2}),
                                                     self.bridge.flush()))
            other.start()
            other.join(0.2)
            self.others.append(other)

        self.others = []
        self.bridge._channels["lifecycle"] = InterleavingQueue(interleave)
        self.bridge.emit("crawl:host:locked", {"n": 1})
        self.others[0].join()
        self.bridge.flush()
        self.assertEqual([e["data"]["n"] for e in self.received], [1, 2])

    def test_url_events_are_batched_in_place(self):
        self.bridge.emit("crawl:started")
        for i in range(4):
            self.bridge.emit("crawl:url:visited", {"url": f"https://a.com/{i}"})
        self.bridge.emit("crawl:completed")
        self.bridge.flush()

        self.assertEqual(self.types(), ["crawl:started", URL_BATCH_TYPE, URL_BATCH_TYPE, "crawl:completed"])
        first, second = self.received[1], self.received[2]
        self.assertEqual(first["data"]["count"], 3)
        self.assertEqual(second["data"]["count"], 1)
        self.assertEqual([e["data"]["url"] for e in first["data"]["events"]],
                         ["https://a.com/0", "https://a.com/1", "https://a.com/2"])

    def test_batching_can_be_disabled(self):
        bridge = TelemetryBridge(batch_url_events=False)
        got = []
        bridge.subscribe(got.append)
        bridge.emit("crawl:url:visited", {"url": "https://a.com/"})
        bridge.flush()
        self.assertEqual([e["type"] for e in got], ["crawl:url:visited"])

    def test_progress_is_coalesced(self):
        for i in range(10):
            self.bridge.progress({"visited": i})
        self.bridge.flush()
        progress = [e for e in self.received if e["type"] == "crawl:progress"]
        self.assertEqual(len(progress), 1)
        self.assertEqual(progress[0]["data"]["visited"], 9)

    def test_history_is_bounded_and_replayed(self):
        for i in range(8):
            self.bridge.emit("crawl:phase:changed", {"i": i})
        self.bridge.flush()
        self.assertEqual([e["data"]["i"] for e in self.bridge.history()], [3, 4, 5, 6, 7])

        late = []
        self.bridge.subscribe(late.append)
        self.assertEqual(len(late), 5)
        quiet = []
        self.bridge.subscribe(quiet.append, replay_history=False)
        self.assertEqual(quiet, [])

    def test_failing_subscriber_does_not_block_others(self):
        bad = MagicMock(side_effect=RuntimeError("boom"))
        self.bridge.subscribe(bad)
        self.bridge.emit("crawl:started")
        self.bridge.flush()
        bad.assert_called_once()
        self.assertEqual(self.types(), ["crawl:started"])

    def test_unsubscribe(self):
        got = []
        unsubscribe = self.bridge.subscribe(got.append)
        unsubscribe()
        self.bridge.emit("crawl:started")
        self.bridge.flush()
        self.assertEqual(got, [])

    def test_decision_traces_persist_only_when_enabled(self):
        store = MagicMock()
        TelemetryBridge(store=store).decision("k", "m", {"a": 1})
        store.save_decision_trace.assert_not_called()

        TelemetryBridge(job_id="j", store=store, persist_decision_traces=True).decision("k", "m", {"a": 1})
        store.save_decision_trace.assert_called_once_with({"kind": "k", "message": "m", "details": {"a": 1},
                                                           "jobId": "j"})

    def test_background_thread_delivers(self):
        bridge = TelemetryBridge(flush_interval=0.01)
        got = []
        bridge.subscribe(got.append)
        bridge.start()
        bridge.emit("crawl:started")
        bridge.stop()
        self.assertEqual([e["type"] for e in got], ["crawl:started"])


class TestDecisionTraceCap(unittest.TestCase):

    def test_small_trace_untouched(self):
        trace = cap_decision_trace("kind", "msg", {"a": 1})
        self.assertEqual(trace["details"], {"a": 1})

    def test_large_trace_is_truncated(self):
        details = {"urls": [f"https://news.example.com/{i}" for i in range(2000)]}
        trace = cap_decision_trace("kind", "msg", details, max_bytes=4096)
        self.assertLessEqual(len(json.dumps(trace).encode("utf-8")), 4096)
        self.assertTrue(trace["details"]["truncated"])
        self.assertGreater(trace["details"]["original_bytes"], 4096)


class TestHelpers(unittest.TestCase):

    def test_category_of(self):
        self.assertEqual(category_of("crawl:progress"), "progress")
        self.assertEqual(category_of("crawl:url:error"), "url")
        self.assertEqual(category_of("crawl:decision"), "decision")
        self.assertEqual(category_of("crawl:started"), "lifecycle")

    def test_json_lines_sink(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "events", "events.jsonl")
            sink = JsonLinesSink(path)
            sink({"type": "crawl:started"})
            sink({"type": "crawl:completed"})
            with open(path, encoding="utf-8") as fh:
                lines = [json.loads(line) for line in fh]
        self.assertEqual([e["type"] for e in lines], ["crawl:started", "crawl:completed"])


if __name__ == "__main__":
    unittest.main()
