"""
FILE DESCRIPTION: Multi-modal crawl orchestrator.
KEY FUNCTIONS/CLASSES: MultiModalOrchestrator

An explicit state machine; every phase method does its work and returns the next phase:

    download -> analyze -> learn -> [discover] -> [reanalyze] -> download ...

`discover` runs when hub discovery is due, `reanalyze` when learning detected layout drift.
After each completed cycle a checkpoint is written before the next download starts.
The loop never stops on its own: only batch/page caps, a stop command or an abort end it.
"""

import threading
import time
import logging
from typing import Callable, Dict, Any, List, Optional

from crawler.context import CrawlContext
from crawler.models import ExitReason, ExitSummary, FetchOutcome, FrontierEntry, Phase
from crawler.url_utils import host_of, seed_to_url
from crawler.worker import WorkerPool
from multimodal.analysis import Analyzer, FetchedPage, SkeletonAnalyzer
from multimodal.balancer import CrawlBalancer
from multimodal.checkpoint import CheckpointStore
from multimodal.control import ControlChannel, ControlWatcher
from multimodal.patterns import PatternTracker
from multimodal.planner import HubGapAnalyzer, PlanRequest, SeedPlanner, discover_hubs_from_patterns

logger = logging.getLogger(__name__)

ANALYSIS_PROGRESS_EVERY = 50
CONTROL_POLL_INTERVAL = 0.5
# Historical entries are pushed back by up to this much when the balance favours newest
HISTORICAL_PENALTY = 10.0

_TOTAL_KEYS = ("visited", "downloaded", "saved", "errors", "cache_hits", "headless", "skipped", "bytes")


class MultiModalOrchestrator:

    def __init__(self, ctx: CrawlContext, domain: str, analyzer: Optional[Analyzer] = None,
                 planner: Optional[SeedPlanner] = None, balancer: Optional[CrawlBalancer] = None,
                 checkpoints: Optional[CheckpointStore] = None, control: Optional[ControlChannel] = None,
                 place_names=(), clock: Callable[[], float] = time.monotonic):
        self.ctx = ctx
        self.config = ctx.config
        self.seed_url = seed_to_url(domain)
        self.host = host_of(self.seed_url) if self.seed_url else ""
        self.scheme = self.seed_url.split("://", 1)[0] if self.seed_url else "https"
        self.analyzer = analyzer or SkeletonAnalyzer()
        self.planner = planner or SeedPlanner(
            self.host, ctx.store, dead_urls=ctx.dead_urls,
            gap_analyzer=HubGapAnalyzer(place_names),
            persistent_mode=self.config.persistent_mode,
            quota_skip_threshold=self.config.quota_skip_threshold,
            quota_ceiling=self.config.quota_ceiling,
            hub_confidence_threshold=self.config.hub_confidence_threshold,
            telemetry=ctx.telemetry,
        )
        self.balancer = balancer or CrawlBalancer(self.config.balancing_strategy, self.config.historical_ratio)
        self.tracker = PatternTracker(self.config.min_new_signatures_to_learn)
        self.checkpoints = checkpoints
        self.control = control
        self.clock = clock

        self.phase: Optional[Phase] = None
        self.batch_number = 0
        self.totals: Dict[str, int] = {k: 0 for k in _TOTAL_KEYS}
        self.pages_analyzed = 0
        self.patterns_learned = 0
        self.hubs_discovered = 0
        self.reanalyzed = 0
        self.last_hub_refresh: Optional[float] = None
        self.batch_history: List[Dict[str, Any]] = []

        self._batch_pages: List[FetchedPage] = []
        self._pages_lock = threading.Lock()
        self._link_rows: List[Dict[str, Any]] = []
        self._confidence: Dict[str, float] = {}
        self._drift = False
        self._last_download: Optional[ExitSummary] = None
        self._stop: Optional[ExitReason] = None
        self._stop_detail = ""
        self._summary: Optional[ExitSummary] = None
        self._watcher: Optional[ControlWatcher] = None
        self._done = threading.Event()

    # -------------------------------
    # LIFECYCLE
    # -------------------------------
    def run(self, resume: bool = False) -> ExitSummary:
        if not self.seed_url:
            return self._finish(ExitReason.FAILED, "invalid seed domain")

        # Layouts learned by earlier runs are the baseline for drift detection
        self.tracker.load(self.ctx.store.load_signatures(self.host))
        if resume:
            self._restore()
        logger.info(f"[MULTIMODAL] Starting multi-modal crawl for {self.host} (batch size {self.config.batch_size})")
        self.ctx.telemetry.emit("crawl:started", {"domain": self.host, "mode": "multi-modal",
                                                  "resumed_from_batch": self.batch_number})
        self._start_control_watcher()

        phase = Phase.DOWNLOAD
        try:
            while True:
                if self.ctx.abort.is_set():
                    self._request_stop(ExitReason.ABORT_REQUESTED, "abort requested")
                if self._stop is None and phase is Phase.DOWNLOAD:
                    self._check_caps()
                if self._stop is not None:
                    break
                if self.ctx.paused:
                    self.ctx.running.wait(CONTROL_POLL_INTERVAL)
                    continue
                phase = self.step(phase)
        finally:
            self._done.set()
            if self._watcher is not None:
                self._watcher.stop()
        return self._finish(self._stop, self._stop_detail)

    def step(self, phase: Phase) -> Phase:
        """Runs one phase and returns the next one."""
        self._set_phase(phase)
        if phase is Phase.DOWNLOAD:
            next_phase = self.download()
        elif phase is Phase.ANALYZE:
            next_phase = self.analyze()
        elif phase is Phase.LEARN:
            next_phase = self.learn()
        elif phase is Phase.DISCOVER:
            next_phase = self.discover()
        else:
            next_phase = self.reanalyze()

        if next_phase is Phase.DOWNLOAD and phase is not Phase.DOWNLOAD:
            self._complete_cycle()
        return next_phase

    def _check_caps(self):
        cfg = self.config
        if cfg.max_total_batches is not None and self.batch_number >= cfg.max_total_batches:
            self._request_stop(ExitReason.COMPLETED, f"completed {self.batch_number} batches")
        elif cfg.max_total_pages is not None and self.totals["downloaded"] >= cfg.max_total_pages:
            self._request_stop(ExitReason.MAX_DOWNLOADS_REACHED,
                               f"downloaded {self.totals['downloaded']} of {cfg.max_total_pages} pages")

    def _request_stop(self, reason: ExitReason, detail: str):
        if self._stop is None:
            self._stop = reason
            self._stop_detail = detail

    def stop(self):
        logger.info("[MULTIMODAL] Stop requested")
        self.ctx.request_abort()

    def pause(self):
        logger.info("[MULTIMODAL] Pause requested")
        self.ctx.pause()

    def resume(self):
        logger.info("[MULTIMODAL] Resume requested")
        self.ctx.resume()

    # -------------------------------
    # PHASES
    # -------------------------------
    def download(self) -> Phase:
        self.batch_number += 1
        cfg = self.config
        batch_limit = cfg.batch_size
        if cfg.max_total_pages is not None:
            batch_limit = max(0, min(batch_limit, cfg.max_total_pages - self.totals["downloaded"]))

        backlog = self._lane_backlog()
        if self.planner.historical_supply():
            # Live hub archives can always fill the historical share
            backlog["historical"] += batch_limit
        balance = self.balancer.get_balance(self.batch_number, backlog["newest"], backlog["historical"], batch_limit)
        quotas = balance.quotas(batch_limit)

        plan = self.planner.plan_batch(PlanRequest(self.batch_number, quotas["newest"], quotas["historical"],
                                                   scheme=self.scheme))
        accepted = sum(1 for entry in plan.entries if self.ctx.frontier.enqueue(entry).accepted)
        self._apply_balance(balance.historical)
        self.ctx.telemetry.emit("crawl:budget:updated", {
            "batch": self.batch_number, "balance": balance.to_dict(), "quotas": plan.quotas,
            "planned": len(plan.entries), "accepted": accepted, "skipped_dead": plan.skipped_dead,
        })

        with self._pages_lock:
            self._batch_pages = []
        self.ctx.new_stats()
        pool = WorkerPool(self.ctx, max_downloads=batch_limit, max_duration_s=cfg.max_batch_duration_s,
                          page_sink=self._collect_page)
        summary = pool.run()
        self._last_download = summary
        for key in _TOTAL_KEYS:
            self.totals[key] += int(summary.stats.get(key, 0))

        logger.info(f"[MULTIMODAL] Batch {self.batch_number} download finished: {summary.reason.value}, "
                    f"{summary.stats.get('downloaded', 0)} downloaded")

        if summary.reason is ExitReason.ABORT_REQUESTED:
            self._request_stop(ExitReason.ABORT_REQUESTED, summary.detail)
        elif summary.reason is ExitReason.FAILED and self.batch_number == 1 and self.totals["downloaded"] == 0:
            self._request_stop(ExitReason.FAILED, f"first batch failed: {summary.detail}")
        elif summary.reason is ExitReason.QUEUE_EXHAUSTED and cfg.stop_on_exhaustion and not plan.entries:
            self._request_stop(ExitReason.QUEUE_EXHAUSTED, "frontier and planner exhausted")
        return Phase.ANALYZE

    def _collect_page(self, entry: FrontierEntry, outcome: FetchOutcome):
        page = FetchedPage(url=entry.url, content=outcome.content or "", kind=entry.kind,
                           lane=entry.lane, depth=entry.depth)
        with self._pages_lock:
            self._batch_pages.append(page)

    def analyze(self) -> Phase:
        with self._pages_lock:
            pages = list(self._batch_pages)
        self.tracker.begin_batch()
        self._link_rows = []
        analyzed = 0
        for result in self.analyzer.analyze(pages):
            self.tracker.observe(result.url, result.signature_hash)
            self._confidence[result.url] = result.confidence
            self.ctx.store.record_page_analysis(result.url, result.signature_hash, result.confidence)
            self._link_rows.append({"url": result.url, "link_count": result.link_count})
            analyzed += 1
            if analyzed % ANALYSIS_PROGRESS_EVERY == 0:
                self.ctx.telemetry.progress({"phase": Phase.ANALYZE.value, "batch": self.batch_number,
                                             "analyzed": analyzed, "total": len(pages)})
            if self.ctx.abort.is_set():
                break
        for sig in self.tracker.signatures():
            self.ctx.store.upsert_signature(self.host, sig)
        self.pages_analyzed += analyzed
        self.ctx.telemetry.progress({"phase": Phase.ANALYZE.value, "batch": self.batch_number,
                                     "analyzed": analyzed, "total": len(pages)})
        logger.info(f"[MULTIMODAL] Batch {self.batch_number}: analyzed {analyzed} pages")
        return Phase.LEARN

    def learn(self) -> Phase:
        result = self.tracker.learn()
        self._drift = result.drift
        if result.drift:
            self.patterns_learned += len(result.new_signatures)
            self.ctx.telemetry.decision("layout-drift", f"{len(result.new_signatures)} new layout signatures",
                                        {"batch": self.batch_number,
                                         "signatures": [s.to_dict() for s in result.new_signatures[:10]]})
            logger.info(f"[MULTIMODAL] Learned {len(result.new_signatures)} new layout signatures")
        if self._hub_discovery_due():
            return Phase.DISCOVER
        if self._drift:
            return Phase.REANALYZE
        return Phase.DOWNLOAD

    def _hub_discovery_due(self) -> bool:
        cfg = self.config
        if not cfg.hub_discovery_enabled:
            return False
        if self._drift or self.batch_number <= cfg.hub_discovery_priority_batches:
            return True
        if self.last_hub_refresh is None:
            return True
        return (self.clock() - self.last_hub_refresh) * 1000 >= cfg.hub_refresh_interval_ms

    def discover(self) -> Phase:
        pattern_hubs = discover_hubs_from_patterns(self._link_rows)
        added = self.planner.add_candidates(pattern_hubs)
        gap_hubs = self.planner.run_gap_analysis(scheme=self.scheme)
        self.hubs_discovered += added + len(gap_hubs)
        self.last_hub_refresh = self.clock()
        if added or gap_hubs:
            self.ctx.telemetry.decision("hubs-discovered", f"{added} pattern hubs, {len(gap_hubs)} gap hubs",
                                        {"batch": self.batch_number,
                                         "hubs": [h["url"] for h in (pattern_hubs + gap_hubs)[:20]]})
        return Phase.REANALYZE if self._drift else Phase.DOWNLOAD

    def reanalyze(self) -> Phase:
        limit = max(0, self.config.batch_size // 2)
        threshold = self.config.reanalysis_confidence_threshold
        candidates = sorted((c, u) for u, c in self._confidence.items() if c < threshold)
        urls = [u for _, u in candidates][:limit]
        if len(urls) < limit:
            for url in self.ctx.store.pages_needing_reanalysis(self.host, threshold, limit):
                if url not in urls:
                    urls.append(url)
                if len(urls) >= limit:
                    break
        if not urls:
            return Phase.DOWNLOAD

        self.ctx.telemetry.emit("crawl:reanalysis:triggered", {"batch": self.batch_number, "pages": len(urls),
                                                               "reason": "significant-patterns-learned"})
        pages = []
        for url in urls:
            cached = self.ctx.cache.get(url, max_age=float("inf"))
            if cached is not None:
                pages.append(FetchedPage(url=url, content=cached.content))
        done = 0
        for result in self.analyzer.analyze(pages):
            self._confidence[result.url] = result.confidence
            self.ctx.store.record_page_analysis(result.url, result.signature_hash, result.confidence)
            done += 1
            if self.ctx.abort.is_set():
                break
        self.reanalyzed += done
        logger.info(f"[MULTIMODAL] Re-analyzed {done} of {len(urls)} pages ({len(urls) - len(pages)} not cached)")
        return Phase.DOWNLOAD

    # -------------------------------
    # HELPERS
    # -------------------------------
    def _lane_backlog(self) -> Dict[str, int]:
        backlog = {"newest": 0, "historical": 0}
        for entry in self.ctx.frontier.pending_entries():
            backlog["historical" if entry.lane == "historical" else "newest"] += 1
        return backlog

    def _apply_balance(self, historical_ratio: float):
        penalty = (1.0 - historical_ratio) * HISTORICAL_PENALTY

        def priority(entry: FrontierEntry) -> float:
            base = entry.meta.get("base_priority")
            if base is None:
                base = entry.priority
                entry.meta["base_priority"] = base
            return base + penalty if entry.lane == "historical" else base

        self.ctx.frontier.reprioritize(priority)

    def _set_phase(self, phase: Phase):
        previous = self.phase
        self.phase = phase
        self.ctx.telemetry.emit("crawl:phase:changed", {"from": previous.value if previous else None,
                                                        "to": phase.value, "batch": self.batch_number})

    def _complete_cycle(self):
        record = {
            "batch": self.batch_number,
            "downloaded": self.totals["downloaded"],
            "analyzed": self.pages_analyzed,
            "patterns_learned": self.patterns_learned,
            "hubs_discovered": self.hubs_discovered,
            "reanalyzed": self.reanalyzed,
            "exit": self._last_download.reason.value if self._last_download else None,
        }
        self.batch_history.append(record)
        if self.checkpoints is not None:
            try:
                path = self.checkpoints.save(self.checkpoint_state())
            except OSError as e:
                # The previous checkpoint stays in place; the crawl goes on
                logger.error(f"[MULTIMODAL] Checkpoint after batch {self.batch_number} failed: {e}")
                self.ctx.telemetry.decision("checkpoint-failed", f"checkpoint not written: {e}",
                                            {"batch": self.batch_number})
            else:
                self.ctx.telemetry.emit("crawl:checkpoint:saved", {"batch": self.batch_number, "path": str(path)})
        self._check_caps()
        if self._stop is None and self.config.pause_between_batches_s > 0:
            self.ctx.abort.wait(self.config.pause_between_batches_s)

    def checkpoint_state(self) -> Dict[str, Any]:
        return {
            "domain": self.host,
            "batch_number": self.batch_number,
            "totals": dict(self.totals),
            "pages_analyzed": self.pages_analyzed,
            "patterns_learned": self.patterns_learned,
            "hubs_discovered": self.hubs_discovered,
            "reanalyzed": self.reanalyzed,
            "frontier": self.ctx.frontier.snapshot(),
            "dead_urls": self.ctx.dead_urls.snapshot(),
            "signatures": self.tracker.to_list(),
            "balancer": self.balancer.state(),
            "confidence": dict(self._confidence),
            "planner": self.planner.state(),
            "batch_history": self.batch_history[-10:],
        }

    def _restore(self):
        state = self.checkpoints.load() if self.checkpoints is not None else None
        if not state:
            logger.info("[MULTIMODAL] No checkpoint to resume from, starting fresh")
            return
        if state.get("domain") and state["domain"] != self.host:
            logger.warning(f"[MULTIMODAL] Checkpoint belongs to {state['domain']}, ignoring it")
            return
        self.batch_number = int(state.get("batch_number", 0))
        for key, value in (state.get("totals") or {}).items():
            if key in self.totals:
                self.totals[key] = int(value)
        self.pages_analyzed = int(state.get("pages_analyzed", 0))
        self.patterns_learned = int(state.get("patterns_learned", 0))
        self.hubs_discovered = int(state.get("hubs_discovered", 0))
        self.reanalyzed = int(state.get("reanalyzed", 0))
        self.ctx.dead_urls.update(state.get("dead_urls") or [])
        self.ctx.frontier.restore(state.get("frontier") or {})
        self.tracker.load(state.get("signatures") or [])
        self.balancer.restore(state.get("balancer"))
        self._confidence.update(state.get("confidence") or {})
        self.planner.restore(state.get("planner"))
        self.batch_history = list(state.get("batch_history") or [])
        logger.info(f"[MULTIMODAL] Resumed {self.host} after batch {self.batch_number}")

    # -------------------------------
    # CONTROL & STATUS
    # -------------------------------
    def _start_control_watcher(self):
        if self.control is None:
            return
        self._done.clear()
        self._watcher = ControlWatcher(self.control, {"pause": self.pause, "resume": self.resume, "stop": self.stop},
                                       self.get_statistics, interval=CONTROL_POLL_INTERVAL)
        self._watcher.start()

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "domain": self.host,
            "job_id": self.ctx.job_id,
            "phase": self.phase.value if self.phase else None,
            "running": not self._done.is_set(),
            "paused": self.ctx.paused,
            "batch": self.batch_number,
            "totals": dict(self.totals),
            "pages_analyzed": self.pages_analyzed,
            "patterns_learned": self.patterns_learned,
            "hubs_discovered": self.hubs_discovered,
            "reanalyzed": self.reanalyzed,
            "queue": self.ctx.frontier.get_stats(),
            "held_hosts": self.ctx.frontier.held_hosts(),
            "hosts": self.ctx.hosts.snapshot(),
            "headless_learned": self.ctx.headless_domains.learned(),
        }

    def _finish(self, reason: ExitReason, detail: str) -> ExitSummary:
        if self._summary is not None:
            return self._summary
        stats = dict(self.totals, pages_analyzed=self.pages_analyzed, patterns_learned=self.patterns_learned,
                     hubs_discovered=self.hubs_discovered, reanalyzed=self.reanalyzed)
        if self._last_download is not None:
            stats["queue_depth_history"] = self._last_download.stats.get("queue_depth_history", [])
        self._summary = ExitSummary(reason=reason, stats=stats, detail=detail)
        payload = dict(self._summary.to_dict(), batches=self.batch_number)
        if reason is ExitReason.FAILED:
            logger.error(f"[MULTIMODAL] Run failed: {detail}")
            self.ctx.telemetry.emit("crawl:failed", payload, message=detail)
        elif reason is ExitReason.ABORT_REQUESTED:
            logger.warning(f"[MULTIMODAL] Run stopped: {detail}")
            self.ctx.telemetry.emit("crawl:stopped", payload, message=detail)
        else:
            logger.info(f"[MULTIMODAL] Run finished: {reason.value} ({detail})")
            self.ctx.telemetry.emit("crawl:completed", payload, message=detail)
        return self._summary
