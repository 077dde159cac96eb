"""
FILE DESCRIPTION: The fetch pipeline: cache -> throttled network request -> headless fallback.
KEY FUNCTIONS/CLASSES: FetchPipeline, FetchPolicy, DeadUrlRegistry
"""

import threading
import time
import logging
from dataclasses import dataclass
from typing import Optional, Set

import requests
import urllib3

from crawler.cache import PageCache
from crawler.core import BROWSER_HEADERS, REQUEST_TIMEOUT, RenderError
from crawler.js_engine import BlockDetector, HeadlessDomainManager
from crawler.models import FetchOutcome, SourceMethod
from crawler.retry import (
    RetryCoordinator, RetryDecision, SUCCESS, BLOCKED, CONNECTION_RESET, RATE_LIMITED, DEAD_STATUSES,
)
from crawler.throttle import DomainThrottle
from crawler.url_utils import host_of

logger = logging.getLogger(__name__)

ABORTED = "aborted"
HOST_LOCKED_OUT = "host-locked-out"

# Statuses that often carry an anti-bot interstitial instead of an error page
_CHALLENGE_STATUSES = {403, 429, 503}


@dataclass(frozen=True)
class FetchPolicy:
    prefer_cache: bool = True
    max_age_s: Optional[float] = None
    allow_headless: bool = True


class DeadUrlRegistry:
    """URLs that returned 404/410 during this run (plus any preloaded from storage)."""

    def __init__(self, urls=()):
        self._urls: Set[str] = set(urls)
        self._lock = threading.Lock()

    def add(self, url: str):
        with self._lock:
            self._urls.add(url)

    def update(self, urls):
        with self._lock:
            self._urls.update(urls)

    def __contains__(self, url) -> bool:
        with self._lock:
            return url in self._urls

    def __len__(self):
        with self._lock:
            return len(self._urls)

    def snapshot(self):
        with self._lock:
            return sorted(self._urls)


class FetchPipeline:
    """
    FLOW: Fresh cache hit? -> return it (no throttle, no retry bookkeeping) ->
    Acquire throttle permit -> direct request with browser-like headers -> release ->
    report attempt to the Retry Coordinator -> back off and retry while retryable ->
    repeated resets or a challenge page on an allow-listed host -> headless engine ->
    otherwise an outcome with error_kind set.
    """

    def __init__(self, throttle: DomainThrottle, retry: RetryCoordinator, cache: Optional[PageCache] = None,
                 renderer=None, headless_domains: Optional[HeadlessDomainManager] = None,
                 telemetry=None, store=None, session: Optional[requests.Session] = None,
                 timeout: float = REQUEST_TIMEOUT, headless_timeout: float = 30,
                 headless_reset_threshold: int = 2, headless_enabled: bool = True,
                 dead_urls: Optional[DeadUrlRegistry] = None, verify_ssl: bool = True,
                 default_policy: Optional[FetchPolicy] = None):
        self.throttle = throttle
        self.retry = retry
        self.cache = cache
        self.renderer = renderer
        self.headless_domains = headless_domains or HeadlessDomainManager()
        self.telemetry = telemetry
        self.store = store
        self.session = session or requests.Session()
        self.timeout = timeout
        self.headless_timeout = headless_timeout
        self.headless_reset_threshold = max(1, headless_reset_threshold)
        self.headless_enabled = headless_enabled
        self.dead_urls = dead_urls if dead_urls is not None else DeadUrlRegistry()
        self.verify_ssl = verify_ssl
        self.default_policy = default_policy or FetchPolicy()
        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    # -------------------------------
    # PUBLIC
    # -------------------------------
    def fetch(self, url: str, policy: Optional[FetchPolicy] = None,
              cancel: Optional[threading.Event] = None, referer: Optional[str] = None) -> FetchOutcome:
        policy = policy or self.default_policy
        start = time.monotonic()
        host = host_of(url)

        if policy.prefer_cache and self.cache is not None:
            hit = self.cache.get(url, policy.max_age_s)
            if hit is not None:
                return self._finish(FetchOutcome(
                    url=url, http_status=hit.http_status, source_method=SourceMethod.CACHE,
                    duration_ms=self._elapsed_ms(start), bytes=len(hit.content.encode("utf-8")),
                    final_url=hit.final_url, content=hit.content, content_type=hit.content_type,
                    attempts=0,
                ))

        headers = dict(BROWSER_HEADERS)
        if referer:
            headers["Referer"] = referer

        attempts = 0
        resets = 0
        last_status = None
        last_kind = None
        escalate = False
        max_attempts = self.retry.config.max_retries + 1

        for attempt in range(max_attempts):
            if cancel is not None and cancel.is_set():
                last_kind = last_kind or ABORTED
                break
            if not self.retry.is_dispatchable(host):
                logger.info(f"[FETCH] {host} is locked out, giving up on {url}")
                last_kind = last_kind or HOST_LOCKED_OUT
                break

            permit = self.throttle.acquire(host, cancel=cancel)
            if permit is None:
                last_kind = last_kind or ABORTED
                break
            attempts += 1

            try:
                response = self.session.get(url, headers=headers, timeout=self.timeout,
                                            allow_redirects=True, verify=self.verify_ssl)
            except (requests.RequestException, OSError) as e:
                self.throttle.release(permit)
                decision = self.retry.classify(error=e, attempt=attempt)
                self.retry.record_outcome(host, decision)
                last_kind = decision.kind
                last_status = None
                if decision.kind == CONNECTION_RESET:
                    resets += 1
                    self.headless_domains.record_reset(host)
                    if resets >= self.headless_reset_threshold and self._can_escalate(host, policy):
                        escalate = True
                        break
                if not self._retry_after(decision, attempt, url, cancel):
                    break
                continue

            self.throttle.release(permit)
            status = response.status_code
            body = response.text if self._is_text(response) else ""
            last_status = status

            if 200 <= status < 300 and not BlockDetector.is_challenge(body):
                self.retry.record_outcome(host, SUCCESS)
                content_type = response.headers.get("Content-Type", "")
                if self.cache is not None:
                    self.cache.put(url, body, status, content_type, response.url)
                return self._finish(FetchOutcome(
                    url=url, http_status=status, source_method=SourceMethod.NETWORK,
                    duration_ms=self._elapsed_ms(start), bytes=len(response.content or b""),
                    final_url=response.url, content=body, content_type=content_type, attempts=attempts,
                ))

            if BlockDetector.is_challenge(body) and (200 <= status < 300 or status in _CHALLENGE_STATUSES):
                decision = RetryDecision(False, 0, BLOCKED, f"challenge page (status {status})", status)
            else:
                decision = self.retry.classify(response=response, attempt=attempt)
            self.retry.record_outcome(host, decision)
            last_kind = decision.kind

            if status in DEAD_STATUSES:
                self._mark_dead(url, status)
                break
            if decision.kind == BLOCKED:
                if self._can_escalate(host, policy):
                    escalate = True
                break
            if decision.kind == RATE_LIMITED:
                self.throttle.pause_host(host, decision.delay_ms / 1000.0)
                if self.telemetry:
                    self.telemetry.emit("crawl:rate:limited", {"host": host, "url": url,
                                                               "delay_ms": decision.delay_ms})
            if not self._retry_after(decision, attempt, url, cancel):
                break

        if escalate:
            return self._fetch_headless(url, host, start, attempts, resets, last_kind, cancel)

        return self._finish(FetchOutcome(
            url=url, http_status=last_status, source_method=SourceMethod.NETWORK,
            duration_ms=self._elapsed_ms(start), error_kind=last_kind or "unknown", attempts=attempts,
        ))

    # -------------------------------
    # INTERNALS
    # -------------------------------
    def _retry_after(self, decision: RetryDecision, attempt: int, url: str, cancel) -> bool:
        """Waits out the backoff; returns False when the fetch should stop retrying."""
        if not self.retry.should_retry(decision, attempt):
            return False
        logger.warning(f"[RETRY {attempt + 1}/{self.retry.config.max_retries}] {decision.kind} for {url}. "
                       f"Waiting {decision.delay_ms}ms...")
        return self.retry.wait_ms(decision.delay_ms, cancel)

    def _can_escalate(self, host: str, policy: FetchPolicy) -> bool:
        return (self.headless_enabled and policy.allow_headless and self.renderer is not None
                and self.headless_domains.is_allowed(host))

    def _fetch_headless(self, url, host, start, attempts, resets, trigger_kind, cancel) -> FetchOutcome:
        reason = "connection resets" if trigger_kind == CONNECTION_RESET else "challenge page"
        logger.info(f"[JS-ENGINE] Escalating {url} to headless rendering ({reason})")
        if self.telemetry:
            self.telemetry.emit("crawl:fallback:headless", {"url": url, "host": host, "reason": reason,
                                                            "resets": resets, "attempts": attempts})
            self.telemetry.decision("headless-fallback", f"{host}: {reason}",
                                    {"url": url, "resets": resets, "attempts": attempts})

        permit = self.throttle.acquire(host, cancel=cancel)
        if permit is None:
            return self._finish(FetchOutcome(url=url, http_status=None, source_method=SourceMethod.HEADLESS,
                                             duration_ms=self._elapsed_ms(start), error_kind=ABORTED,
                                             attempts=attempts))
        attempts += 1
        try:
            result = self.renderer.render(url, timeout=self.headless_timeout)
        except RenderError as e:
            self.throttle.release(permit)
            logger.error(f"[JS-ENGINE] Headless fetch failed for {url}: {e}")
            self.retry.record_outcome(host, BLOCKED)
            return self._finish(FetchOutcome(url=url, http_status=None, source_method=SourceMethod.HEADLESS,
                                             duration_ms=self._elapsed_ms(start), error_kind="render-failed",
                                             attempts=attempts))
        self.throttle.release(permit)

        status = result.status_code
        content = result.content or ""
        if status and 200 <= status < 300 and not BlockDetector.is_challenge(content):
            self.retry.record_outcome(host, SUCCESS)
            if self.cache is not None:
                self.cache.put(url, content, status, "text/html", result.final_url)
            return self._finish(FetchOutcome(
                url=url, http_status=status, source_method=SourceMethod.HEADLESS,
                duration_ms=self._elapsed_ms(start), bytes=len(content.encode("utf-8")),
                final_url=result.final_url or url, content=content, content_type="text/html", attempts=attempts,
            ))

        kind = BLOCKED if BlockDetector.is_challenge(content) else self.retry.classify(response=result).kind
        self.retry.record_outcome(host, kind)
        if status in DEAD_STATUSES:
            self._mark_dead(url, status)
        return self._finish(FetchOutcome(url=url, http_status=status or None, source_method=SourceMethod.HEADLESS,
                                         duration_ms=self._elapsed_ms(start), error_kind=kind, attempts=attempts))

    def _mark_dead(self, url: str, status: int):
        self.dead_urls.add(url)
        if self.store is not None:
            self.store.mark_dead(url, status)

    def _finish(self, outcome: FetchOutcome) -> FetchOutcome:
        if outcome.error_kind is None:
            logger.debug(f"[FETCH] {outcome.source_method.value} {outcome.http_status} {outcome.url} ({outcome.duration_ms}ms)")
        else:
            logger.info(f"[FETCH] FAILED {outcome.url}: {outcome.error_kind} (status={outcome.http_status}, attempts={outcome.attempts})")
        if self.telemetry:
            event = "crawl:url:visited" if outcome.error_kind is None else "crawl:url:error"
            self.telemetry.emit(event, outcome.to_dict())
        if self.store is not None and outcome.source_method is not SourceMethod.CACHE:
            self.store.record_fetch(outcome)
        return outcome

    @staticmethod
    def _is_text(response) -> bool:
        content_type = (response.headers.get("Content-Type") or "").lower()
        return not content_type or "html" in content_type or "text" in content_type or "xml" in content_type

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
