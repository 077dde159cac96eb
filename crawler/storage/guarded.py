import logging
import threading
from typing import List, Set, Dict, Any

from crawler.models import FetchOutcome, PatternSignature
from crawler.storage.base import CrawlStore

logger = logging.getLogger(__name__)


class GuardedStore(CrawlStore):
    """
    FLOW: Forwards every call to the wrapped store -> On the first exception logs it,
    flips to degraded mode and emits one `crawl:storage:degraded` event ->
    While degraded, writes are skipped and reads return empty results.

    The crawl never fails because storage is down.
    """

    def __init__(self, inner: CrawlStore, telemetry=None):
        self.inner = inner
        self.telemetry = telemetry
        self.degraded = False
        self.skipped_writes = 0
        self._lock = threading.Lock()

    def _fail(self, op: str, error: Exception):
        with self._lock:
            first = not self.degraded
            self.degraded = True
        if first:
            logger.error(f"[STORAGE] {op} failed, switching to degraded mode: {error}")
            if self.telemetry is not None:
                self.telemetry.emit("crawl:storage:degraded", {"operation": op, "error": str(error)})
        else:
            logger.debug(f"[STORAGE] {op} failed while degraded: {error}")

    def _call(self, op: str, default, *args):
        if self.degraded:
            if default is None:
                with self._lock:
                    self.skipped_writes += 1
            return default
        try:
            return getattr(self.inner, op)(*args)
        except Exception as e:
            self._fail(op, e)
            return default

    def record_fetch(self, outcome: FetchOutcome) -> None:
        self._call("record_fetch", None, outcome)

    def mark_dead(self, url: str, http_status: int) -> None:
        self._call("mark_dead", None, url, http_status)

    def known_dead_urls(self, host: str) -> Set[str]:
        return self._call("known_dead_urls", set(), host)

    def save_hub(self, host: str, url: str, source: str, confidence: float) -> None:
        self._call("save_hub", None, host, url, source, confidence)

    def hub_candidates(self, host: str, limit: int = 100) -> List[Dict[str, Any]]:
        return self._call("hub_candidates", [], host, limit)

    def upsert_signature(self, host: str, signature: PatternSignature) -> None:
        self._call("upsert_signature", None, host, signature)

    def load_signatures(self, host: str) -> List[PatternSignature]:
        return self._call("load_signatures", [], host)

    def record_page_analysis(self, url: str, signature_hash: str, confidence: float) -> None:
        self._call("record_page_analysis", None, url, signature_hash, confidence)

    def pages_needing_reanalysis(self, host: str, max_confidence: float, limit: int) -> List[str]:
        return self._call("pages_needing_reanalysis", [], host, max_confidence, limit)

    def save_decision_trace(self, trace: Dict[str, Any]) -> None:
        self._call("save_decision_trace", None, trace)
