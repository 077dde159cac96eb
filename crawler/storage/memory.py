import threading
from typing import List, Set, Dict, Any

from crawler.models import FetchOutcome, PatternSignature
from crawler.storage.base import CrawlStore
from crawler.url_utils import host_of


class MemoryCrawlStore(CrawlStore):
    """In-process store used by default and in tests. Everything lives for one process."""

    def __init__(self):
        self._lock = threading.Lock()
        self.fetches: List[Dict[str, Any]] = []
        self.dead: Dict[str, int] = {}
        self.hubs: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.signatures: Dict[str, Dict[str, PatternSignature]] = {}
        self.analysis: Dict[str, Dict[str, Any]] = {}
        self.traces: List[Dict[str, Any]] = []

    def record_fetch(self, outcome: FetchOutcome) -> None:
        with self._lock:
            self.fetches.append(outcome.to_dict())

    def mark_dead(self, url: str, http_status: int) -> None:
        with self._lock:
            self.dead[url] = http_status

    def known_dead_urls(self, host: str) -> Set[str]:
        with self._lock:
            return {u for u in self.dead if host_of(u) == host}

    def save_hub(self, host: str, url: str, source: str, confidence: float) -> None:
        with self._lock:
            hubs = self.hubs.setdefault(host, {})
            current = hubs.get(url)
            if current is None or confidence > current["confidence"]:
                hubs[url] = {"url": url, "source": source, "confidence": confidence}

    def hub_candidates(self, host: str, limit: int = 100) -> List[Dict[str, Any]]:
        with self._lock:
            hubs = list(self.hubs.get(host, {}).values())
        hubs.sort(key=lambda h: -h["confidence"])
        return hubs[:limit]

    def upsert_signature(self, host: str, signature: PatternSignature) -> None:
        with self._lock:
            self.signatures.setdefault(host, {})[signature.hash] = PatternSignature.from_dict(signature.to_dict())

    def load_signatures(self, host: str) -> List[PatternSignature]:
        with self._lock:
            return [PatternSignature.from_dict(s.to_dict()) for s in self.signatures.get(host, {}).values()]

    def record_page_analysis(self, url: str, signature_hash: str, confidence: float) -> None:
        with self._lock:
            self.analysis[url] = {"url": url, "signature_hash": signature_hash, "confidence": confidence}

    def pages_needing_reanalysis(self, host: str, max_confidence: float, limit: int) -> List[str]:
        with self._lock:
            rows = [r for r in self.analysis.values()
                    if host_of(r["url"]) == host and r["confidence"] < max_confidence]
        rows.sort(key=lambda r: r["confidence"])
        return [r["url"] for r in rows[:limit]]

    def save_decision_trace(self, trace: Dict[str, Any]) -> None:
        with self._lock:
            self.traces.append(dict(trace))
