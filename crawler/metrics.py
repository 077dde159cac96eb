"""
Run statistics and terminal summary formatting for the crawler.
"""

import os
import time
from threading import Lock
from typing import Dict, Any, List

import psutil
from tabulate import tabulate

from crawler.models import FetchOutcome, SourceMethod

QUEUE_DEPTH_SAMPLES = 1000


class RunStats:
    """
    Thread-safe counters for one run.

    INVARIANT: `downloaded` only counts successful network or headless fetches.
    Cache hits are tracked separately and never inflate it.
    """

    def __init__(self):
        self.lock = Lock()
        self.start_time = time.time()
        self.visited = 0
        self.downloaded = 0
        self.saved = 0
        self.errors = 0
        self.cache_hits = 0
        self.headless = 0
        self.skipped = 0
        self.bytes = 0
        self.queue_depth_history: List[Dict[str, Any]] = []
        self.status_counts: Dict[str, int] = {}

        self.process = psutil.Process(os.getpid())
        self.peak_memory_mb = self._memory_mb()

    def _memory_mb(self) -> float:
        try:
            return self.process.memory_info().rss / 1024 / 1024
        except psutil.Error:
            return 0.0

    def record_outcome(self, outcome: FetchOutcome) -> bool:
        """Returns True when the outcome counted as a download."""
        with self.lock:
            self.visited += 1
            key = str(outcome.http_status) if outcome.http_status is not None else (outcome.error_kind or "error")
            self.status_counts[key] = self.status_counts.get(key, 0) + 1
            if outcome.source_method is SourceMethod.CACHE:
                self.cache_hits += 1
                return False
            if outcome.ok:
                self.downloaded += 1
                self.bytes += outcome.bytes
                if outcome.source_method is SourceMethod.HEADLESS:
                    self.headless += 1
                return True
            self.errors += 1
            return False

    def record_saved(self, n: int = 1):
        with self.lock:
            self.saved += n

    def record_skipped(self, n: int = 1):
        with self.lock:
            self.skipped += n

    def record_error(self, n: int = 1):
        with self.lock:
            self.errors += n

    def sample_queue_depth(self, depth: Dict[str, int]):
        sample = dict(depth, t=round(time.time() - self.start_time, 3))
        mem = self._memory_mb()
        with self.lock:
            self.queue_depth_history.append(sample)
            if len(self.queue_depth_history) > QUEUE_DEPTH_SAMPLES:
                del self.queue_depth_history[0]
            self.peak_memory_mb = max(self.peak_memory_mb, mem)

    def get_downloaded(self) -> int:
        with self.lock:
            return self.downloaded

    def to_dict(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "visited": self.visited,
                "downloaded": self.downloaded,
                "saved": self.saved,
                "errors": self.errors,
                "cache_hits": self.cache_hits,
                "headless": self.headless,
                "skipped": self.skipped,
                "bytes": self.bytes,
                "elapsed_s": round(time.time() - self.start_time, 2),
                "peak_memory_mb": round(self.peak_memory_mb, 1),
                "queue_depth_history": list(self.queue_depth_history),
                "status_counts": dict(self.status_counts),
            }


def format_summary(summary: Dict[str, Any]) -> str:
    """Renders an ExitSummary dict as the final terminal table."""
    stats = summary.get("stats", {})
    rows = [
        ["Exit reason", summary.get("reason")],
        ["Detail", summary.get("detail") or "-"],
        ["Visited", stats.get("visited", 0)],
        ["Downloaded", stats.get("downloaded", 0)],
        ["Cache hits", stats.get("cache_hits", 0)],
        ["Headless", stats.get("headless", 0)],
        ["Saved", stats.get("saved", 0)],
        ["Errors", stats.get("errors", 0)],
        ["Elapsed (s)", stats.get("elapsed_s", 0)],
        ["Peak memory (MB)", stats.get("peak_memory_mb", 0)],
    ]
    if "batches" in summary:
        rows.append(["Batches", summary["batches"]])
    table = tabulate(rows, headers=["Metric", "Value"], tablefmt="grid")

    statuses = stats.get("status_counts") or {}
    if statuses:
        status_rows = sorted(statuses.items(), key=lambda kv: -kv[1])
        table += "\n" + tabulate(status_rows, headers=["Status", "Count"], tablefmt="grid")
    return table
