"""
FILE DESCRIPTION: Worker threads and the pool controller that decides how a run ends.
KEY FUNCTIONS/CLASSES: WorkerPool, CrawlWorker

Exit reasons, first qualifying condition wins:
    abort-requested > max-downloads-reached > failed > queue-exhausted > completed
"""

import threading
import time
import logging
from typing import Callable, Iterable, List, Optional

from crawler.context import CrawlContext
from crawler.models import ExitReason, ExitSummary, FetchOutcome, FrontierEntry, EntryKind
from crawler.processor import LinkExtractor
from crawler.url_utils import seed_to_url
from frontier.filters import default_priority

logger = logging.getLogger(__name__)

IDLE_WAIT = 0.05
TICK_INTERVAL = 0.1
PROGRESS_INTERVAL = 0.5

PageSink = Callable[[FrontierEntry, FetchOutcome], None]


class CrawlWorker(threading.Thread):
    """
    Runs in a loop: wait while paused -> reserve a download slot -> dequeue -> fetch ->
    hand off -> enqueue discovered links -> mark done.
    """

    def __init__(self, pool: "WorkerPool", name: str):
        super().__init__(name=name, daemon=True)
        self.pool = pool
        self.ctx = pool.ctx
        self.log_extra = {"context": name}

    def run(self):
        logger.debug("worker started", extra=self.log_extra)
        while not self.pool.stopping.is_set():
            if not self.ctx.running.is_set():
                self.ctx.running.wait(TICK_INTERVAL)
                continue
            if not self.pool.reserve_slot():
                self.pool.stopping.wait(IDLE_WAIT)
                continue

            entry = self.ctx.frontier.dequeue(self.ctx.retry.is_dispatchable)
            if entry is None:
                self.pool.release_slot()
                self.pool.stopping.wait(IDLE_WAIT)
                continue

            try:
                self.process(entry)
            except Exception as e:
                logger.exception(f"Unhandled error while processing {entry.url}: {e}", extra=self.log_extra)
                self.ctx.stats.record_error()
            finally:
                self.ctx.frontier.mark_done(entry)
                self.pool.release_slot()
        logger.debug("worker stopped", extra=self.log_extra)

    def process(self, entry: FrontierEntry):
        outcome = self.ctx.fetcher.fetch(entry.url, cancel=self.ctx.abort,
                                         referer=entry.source if entry.source.startswith("http") else None)
        self.ctx.stats.record_outcome(outcome)
        if outcome.content is None or outcome.error_kind is not None:
            return

        if self.pool.page_sink is not None:
            self.pool.page_sink(entry, outcome)
            self.ctx.stats.record_saved()

        if self.pool.follow_links and entry.depth < self.ctx.config.max_depth:
            self.enqueue_links(entry, outcome)

    def enqueue_links(self, entry: FrontierEntry, outcome: FetchOutcome):
        base = outcome.final_url or entry.url
        accepted = 0
        for url, kind in LinkExtractor.extract_links(outcome.content, base):
            depth = entry.depth + 1
            lane = "historical" if kind is EntryKind.PAGINATION else entry.lane
            child = FrontierEntry(url=url, depth=depth, kind=kind,
                                  priority=default_priority(kind, depth, lane),
                                  lane=lane, source=entry.url)
            if self.ctx.frontier.enqueue(child).accepted:
                accepted += 1
        if accepted:
            logger.debug(f"enqueued {accepted} links from {entry.url}", extra=self.log_extra)


class WorkerPool:
    """
    FLOW: Seeds the frontier (fatal problems end the run as `failed` before any worker starts) ->
    starts N CrawlWorker threads -> the controller loop samples queue depth and evaluates exit
    conditions every tick -> the first qualifying reason is recorded once -> workers drain their
    in-flight fetch and stop.

    INVARIANT: a download slot is reserved before dequeue, so
    downloaded + in-flight never exceeds max_downloads and surplus entries stay queued.
    """

    def __init__(self, ctx: CrawlContext, workers: Optional[int] = None, max_downloads: Optional[int] = None,
                 max_duration_s: Optional[float] = None, page_sink: Optional[PageSink] = None,
                 follow_links: bool = True):
        self.ctx = ctx
        self.num_workers = workers or ctx.config.workers
        self.max_downloads = ctx.config.max_downloads if max_downloads is None else max_downloads
        self.max_duration_s = ctx.config.max_batch_duration_s if max_duration_s is None else max_duration_s
        self.page_sink = page_sink
        self.follow_links = follow_links

        self.stopping = threading.Event()
        self._slot_lock = threading.Lock()
        self._reserved = 0
        self._summary: Optional[ExitSummary] = None
        self._summary_lock = threading.Lock()
        self._workers: List[CrawlWorker] = []

    # -------------------------------
    # DOWNLOAD SLOTS
    # -------------------------------
    def reserve_slot(self) -> bool:
        with self._slot_lock:
            if self.ctx.abort.is_set():
                return False
            if self.max_downloads is not None:
                if self.ctx.stats.get_downloaded() + self._reserved >= self.max_downloads:
                    return False
            self._reserved += 1
            return True

    def release_slot(self):
        with self._slot_lock:
            self._reserved = max(0, self._reserved - 1)

    def reserved(self) -> int:
        with self._slot_lock:
            return self._reserved

    # -------------------------------
    # RUN
    # -------------------------------
    def seed(self, seeds: Iterable) -> int:
        """Enqueues seeds (URLs, bare domains or FrontierEntry). Returns the number accepted."""
        accepted = 0
        for seed in seeds:
            if isinstance(seed, FrontierEntry):
                entry = seed
            else:
                url = seed_to_url(seed)
                if not url:
                    logger.warning(f"[POOL] Ignoring invalid seed {seed!r}")
                    continue
                entry = FrontierEntry(url=url, depth=0, kind=EntryKind.HUB,
                                      priority=default_priority(EntryKind.HUB, 0), source="seed")
            if self.ctx.frontier.enqueue(entry).accepted:
                accepted += 1
        return accepted

    def run(self, seeds: Iterable = ()) -> ExitSummary:
        seeds = list(seeds)
        if seeds:
            accepted = self.seed(seeds)
            if accepted == 0 and self.ctx.frontier.is_exhausted():
                return self._finish(ExitReason.FAILED, "no valid seed could be enqueued")

        self.ctx.telemetry.emit("crawl:started", {"workers": self.num_workers, "max_downloads": self.max_downloads,
                                                  "queued": self.ctx.frontier.depth()["queued"]})
        self.stopping.clear()
        self._workers = [CrawlWorker(self, f"Worker-{i}") for i in range(self.num_workers)]
        for w in self._workers:
            w.start()
        logger.info(f"[POOL] Started {self.num_workers} workers (max_downloads={self.max_downloads})")

        started = time.monotonic()
        last_progress = 0.0
        reason, detail = None, ""
        try:
            while reason is None:
                depth = self.ctx.frontier.depth()
                self.ctx.stats.sample_queue_depth(depth)
                now = time.monotonic()
                if now - last_progress >= PROGRESS_INTERVAL:
                    self._emit_progress(depth)
                    last_progress = now
                reason, detail = self.evaluate_exit(started)
                if reason is None:
                    self.ctx.abort.wait(TICK_INTERVAL)
        finally:
            self.stopping.set()
            for w in self._workers:
                w.join(timeout=max(5.0, self.ctx.config.request_timeout_s * 2))

        self._emit_progress(self.ctx.frontier.depth())
        return self._finish(reason, detail)

    def evaluate_exit(self, started: float):
        """Returns (ExitReason, detail) for the first qualifying condition, or (None, "")."""
        stats = self.ctx.stats
        if self.ctx.abort.is_set():
            return ExitReason.ABORT_REQUESTED, "abort requested"
        downloaded = stats.get_downloaded()
        if self.max_downloads is not None and downloaded >= self.max_downloads:
            return ExitReason.MAX_DOWNLOADS_REACHED, f"downloaded {downloaded} of {self.max_downloads}"
        if self.ctx.frontier.is_exhausted() and self.reserved() == 0:
            snapshot = stats.to_dict()
            if downloaded == 0 and snapshot["errors"] > 0 and snapshot["cache_hits"] == 0:
                return ExitReason.FAILED, f"queue drained with no successful downloads ({snapshot['errors']} errors)"
            return ExitReason.QUEUE_EXHAUSTED, "no queued, held or in-flight entries"
        if self.max_duration_s is not None and time.monotonic() - started >= self.max_duration_s:
            return ExitReason.COMPLETED, f"duration cap of {self.max_duration_s}s elapsed"
        if self._workers and not any(w.is_alive() for w in self._workers):
            return ExitReason.COMPLETED, "all workers stopped"
        return None, ""

    def _emit_progress(self, depth):
        stats = self.ctx.stats.to_dict()
        stats.pop("queue_depth_history", None)
        stats.pop("status_counts", None)
        self.ctx.telemetry.progress(dict(stats, queue=depth, held_hosts=self.ctx.frontier.held_hosts()))

    def _finish(self, reason: ExitReason, detail: str = "") -> ExitSummary:
        with self._summary_lock:
            if self._summary is not None:
                return self._summary
            self._summary = ExitSummary(reason=reason, stats=self.ctx.stats.to_dict(), detail=detail)

        if reason is ExitReason.FAILED:
            logger.error(f"[POOL] Run failed: {detail}")
            self.ctx.telemetry.emit("crawl:failed", self._summary.to_dict(), message=detail)
        elif reason is ExitReason.ABORT_REQUESTED:
            logger.warning(f"[POOL] Run aborted: {detail}")
            self.ctx.telemetry.emit("crawl:stopped", self._summary.to_dict(), message=detail)
        else:
            logger.info(f"[POOL] Run finished: {reason.value} ({detail})")
            if reason is ExitReason.MAX_DOWNLOADS_REACHED:
                self.ctx.telemetry.emit("crawl:goal:satisfied", {"max_downloads": self.max_downloads})
            self.ctx.telemetry.emit("crawl:completed", self._summary.to_dict(), message=detail)
        return self._summary

    @property
    def summary(self) -> Optional[ExitSummary]:
        return self._summary
