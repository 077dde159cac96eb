"""
Wiring for one crawl run.

CrawlContext owns every shared component so the worker pool and the
orchestrator receive a single object instead of a dozen collaborators.
"""

import threading
import time
import uuid
from typing import Optional, Callable

import requests

from crawler.cache import PageCache
from crawler.config import RunConfig
from crawler.fetcher import FetchPipeline, FetchPolicy, DeadUrlRegistry
from crawler.hosts import HostTable
from crawler.js_engine import BrowserRenderer, HeadlessDomainManager
from crawler.metrics import RunStats
from crawler.policy import URLPolicy
from crawler.retry import RetryCoordinator
from crawler.storage.base import CrawlStore
from crawler.storage.guarded import GuardedStore
from crawler.storage.memory import MemoryCrawlStore
from crawler.telemetry import TelemetryBridge
from crawler.throttle import DomainThrottle
from frontier.queue import FrontierQueue


class CrawlContext:

    def __init__(self, config: RunConfig, store: Optional[CrawlStore] = None,
                 session: Optional[requests.Session] = None, renderer=None,
                 telemetry: Optional[TelemetryBridge] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.job_id = config.job_id or uuid.uuid4().hex[:12]

        self.telemetry = telemetry or TelemetryBridge(
            job_id=self.job_id,
            history_limit=config.history_limit,
            url_batch_size=config.url_batch_size,
            persist_decision_traces=config.persist_decision_traces,
        )
        self.store = GuardedStore(store or MemoryCrawlStore(), telemetry=self.telemetry)
        if self.telemetry.store is None:
            self.telemetry.store = self.store

        self.abort = threading.Event()
        self.running = threading.Event()
        self.running.set()

        self.hosts = HostTable(clock=clock)
        self.throttle = DomainThrottle(self.hosts, config.rate_limit_ms, config.max_concurrent_per_host)
        self.retry = RetryCoordinator(self.hosts, config.retry, telemetry=self.telemetry)
        self.cache = PageCache(ttl_seconds=config.cache_ttl_s)
        self.headless_domains = HeadlessDomainManager(config.headless_allowlist,
                                                      config.headless_auto_learn_threshold, clock=clock)
        if renderer is None and config.headless_enabled:
            renderer = BrowserRenderer()
        self.renderer = renderer
        self.dead_urls = DeadUrlRegistry()
        self.fetcher = FetchPipeline(
            self.throttle, self.retry, cache=self.cache, renderer=renderer,
            headless_domains=self.headless_domains, telemetry=self.telemetry, store=self.store,
            session=session, timeout=config.request_timeout_s, headless_timeout=config.headless_timeout_s,
            headless_reset_threshold=config.headless_reset_threshold, headless_enabled=config.headless_enabled,
            dead_urls=self.dead_urls, default_policy=FetchPolicy(prefer_cache=config.prefer_cache),
        )
        self.policy = URLPolicy(max_depth=config.max_depth)
        self.frontier = FrontierQueue(self.policy, mode=config.prioritization_mode)
        self.stats = RunStats()

    def new_stats(self) -> RunStats:
        """Fresh counters for the next batch; the frontier and host state carry over."""
        self.stats = RunStats()
        return self.stats

    def request_abort(self):
        self.abort.set()
        self.running.set()  # wake anything blocked on pause

    def pause(self):
        if self.running.is_set():
            self.running.clear()
            self.telemetry.emit("crawl:paused", {})

    def resume(self):
        if not self.running.is_set():
            self.running.set()
            self.telemetry.emit("crawl:resumed", {})

    @property
    def paused(self) -> bool:
        return not self.running.is_set()

    def close(self):
        if self.renderer is not None and hasattr(self.renderer, "shutdown"):
            self.renderer.shutdown()
        self.telemetry.flush()
