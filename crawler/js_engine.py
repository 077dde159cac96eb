"""
FILE DESCRIPTION: Headless browser operations for hosts that block plain HTTP clients.
KEY FUNCTIONS/CLASSES: BlockDetector, HeadlessDomainManager, BrowserRenderer, RenderResult
"""

import threading
import queue
import time
import logging
from collections import defaultdict, deque
from typing import Iterable, Optional, Callable

from playwright.sync_api import sync_playwright

from crawler.core import JS_GOTO_TIMEOUT, JS_WAIT_TIMEOUT, USER_AGENT, RenderError

logger = logging.getLogger(__name__)


# === BLOCK DETECTION ===

class BlockDetector:
    """
    FLOW: Scans an HTML body for anti-bot interstitials (Sucuri, Cloudflare, generic WAF pages) ->
    Returns True when the page is a challenge rather than real content.
    """
    CHALLENGE_MARKERS = (
        "sucuri_cloudproxy_js",
        "sucuri.net/using-firewall",
        "cloudproxy",
        "cf-browser-verification",
        "cf_chl_opt",
        "just a moment...",
        "checking your browser before accessing",
        "attention required! | cloudflare",
        "please enable javascript and cookies to continue",
        "request unsuccessful. incapsula",
    )

    @classmethod
    def is_challenge(cls, html: Optional[str]) -> bool:
        if not html:
            return False
        h = html[:20000].lower()
        return any(marker in h for marker in cls.CHALLENGE_MARKERS)


# === HEADLESS DOMAIN MANAGER ===

class HeadlessDomainManager:
    """
    Allow-list of hosts that may be fetched through the headless engine.

    Hosts come from configuration or are auto-learned after repeated connection resets
    within a rolling window (default 3 resets in 5 minutes).
    """

    def __init__(self, allowlist: Iterable[str] = (), auto_learn_threshold: int = 3,
                 window_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self._configured = {h.lower() for h in allowlist if h}
        self._learned = set()
        self.auto_learn_threshold = auto_learn_threshold
        self.window_seconds = window_seconds
        self.clock = clock
        self._resets = defaultdict(deque)
        self._lock = threading.Lock()

    @staticmethod
    def _matches(host: str, domains) -> bool:
        return any(host == d or host.endswith("." + d) for d in domains)

    def is_allowed(self, host: str) -> bool:
        host = (host or "").lower()
        with self._lock:
            return self._matches(host, self._configured) or self._matches(host, self._learned)

    def record_reset(self, host: str) -> bool:
        """Counts a connection reset; returns True when the host was just auto-learned."""
        if self.auto_learn_threshold <= 0:
            return False
        host = (host or "").lower()
        now = self.clock()
        with self._lock:
            if self._matches(host, self._configured) or host in self._learned:
                return False
            times = self._resets[host]
            times.append(now)
            while times and times[0] < now - self.window_seconds:
                times.popleft()
            if len(times) >= self.auto_learn_threshold:
                self._learned.add(host)
                times.clear()
                logger.warning(f"[JS-ENGINE] Auto-learned headless host {host} after repeated connection resets")
                return True
        return False

    def learned(self):
        with self._lock:
            return sorted(self._learned)


# === BROWSER RENDERER ===

class RenderResult:
    def __init__(self, content=None, final_url=None, status_code=200, error=None):
        self.content = content
        self.final_url = final_url
        self.status_code = status_code
        self.error = error


class _RenderRequest:
    def __init__(self, url):
        self.url = url
        self.done = threading.Event()
        self.result: Optional[RenderResult] = None


class BrowserRenderer:
    """
    FLOW: Spawns dedicated Playwright threads on first use -> Each owns its own browser context ->
    Processes URLs from a shared queue -> render() waits with a timeout and returns a RenderResult.

    Playwright's sync API is not thread-safe, so pages are only ever touched by the render threads.
    """

    def __init__(self, num_threads: int = 1, user_agent: str = USER_AGENT):
        self.num_threads = max(1, num_threads)
        self.user_agent = user_agent
        self._requests = queue.Queue()
        self._init_lock = threading.Lock()
        self._threads = []

    def _render_loop(self, worker_id: int):
        try:
            with sync_playwright() as p:
                browser = p.chromium.launch(
                    headless=True,
                    args=["--disable-gpu", "--no-sandbox", "--disable-dev-shm-usage"]
                )
                context = browser.new_context(
                    user_agent=self.user_agent,
                    viewport={"width": 1280, "height": 900}
                )
                logger.info(f"[JS-ENGINE] Render Worker-{worker_id} ready.")

                while True:
                    req = self._requests.get()
                    if req is None:
                        self._requests.put(None)  # pass shutdown on to the other workers
                        break
                    req.result = self._render_one(context, req.url)
                    req.done.set()

                browser.close()
        except Exception as e:
            logger.critical(f"[JS-ENGINE] Worker-{worker_id} fatal error: {e}")
            # Fail any queued requests instead of leaving callers blocked
            while True:
                try:
                    req = self._requests.get_nowait()
                except queue.Empty:
                    break
                if req is None:
                    continue
                req.result = RenderResult(error=RenderError(f"render worker crashed: {e}"))
                req.done.set()

    @staticmethod
    def _render_one(context, url) -> RenderResult:
        page = context.new_page()
        try:
            def route_intercept(route):
                if route.request.resource_type in ("image", "font", "media"):
                    return route.abort()
                return route.continue_()
            page.route("**/*", route_intercept)

            response = page.goto(url, wait_until="commit", timeout=JS_GOTO_TIMEOUT * 1000)
            status_code = response.status if response else 0
            if 200 <= status_code <= 299:
                try:
                    page.wait_for_load_state("domcontentloaded", timeout=JS_WAIT_TIMEOUT * 1000)
                except Exception as e:
                    logger.debug(f"[JS-ENGINE] DOM wait incomplete for {url}: {e}")
            return RenderResult(page.content(), page.url, status_code)
        except Exception as e:
            return RenderResult(error=e)
        finally:
            page.close()

    def _ensure_running(self):
        if self._threads and all(t.is_alive() for t in self._threads):
            return
        with self._init_lock:
            if self._threads and all(t.is_alive() for t in self._threads):
                return
            self._threads = []
            for i in range(self.num_threads):
                t = threading.Thread(target=self._render_loop, args=(i,), daemon=True, name=f"RenderWorker-{i}")
                t.start()
                self._threads.append(t)

    def render(self, url: str, timeout: float = 30) -> RenderResult:
        """Raises RenderError on timeout or browser failure."""
        self._ensure_running()
        req = _RenderRequest(url)
        self._requests.put(req)
        if not req.done.wait(timeout=timeout):
            raise RenderError(f"headless rendering timed out after {timeout}s for {url}")
        result = req.result
        if result is None or result.error is not None:
            raise RenderError(f"headless rendering failed for {url}: {result.error if result else 'no result'}")
        return result

    def shutdown(self):
        if self._threads:
            self._requests.put(None)
