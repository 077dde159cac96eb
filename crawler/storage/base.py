from abc import ABC, abstractmethod
from typing import List, Set, Dict, Any

from crawler.models import FetchOutcome, PatternSignature


class CrawlStore(ABC):
    """
    Abstract interface for the persistent side of a crawl.
    The engine only ever talks to this contract; schema and migrations live elsewhere.
    """

    @abstractmethod
    def record_fetch(self, outcome: FetchOutcome) -> None:
        """Persist fetch metadata (never the body)."""
        pass

    @abstractmethod
    def mark_dead(self, url: str, http_status: int) -> None:
        """Remember a URL that returned 404/410."""
        pass

    @abstractmethod
    def known_dead_urls(self, host: str) -> Set[str]:
        pass

    @abstractmethod
    def save_hub(self, host: str, url: str, source: str, confidence: float) -> None:
        pass

    @abstractmethod
    def hub_candidates(self, host: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Known hubs for a host as dicts with url, source and confidence, best first."""
        pass

    @abstractmethod
    def upsert_signature(self, host: str, signature: PatternSignature) -> None:
        pass

    @abstractmethod
    def load_signatures(self, host: str) -> List[PatternSignature]:
        pass

    @abstractmethod
    def record_page_analysis(self, url: str, signature_hash: str, confidence: float) -> None:
        pass

    @abstractmethod
    def pages_needing_reanalysis(self, host: str, max_confidence: float, limit: int) -> List[str]:
        """URLs previously analyzed with confidence below `max_confidence`, lowest first."""
        pass

    @abstractmethod
    def save_decision_trace(self, trace: Dict[str, Any]) -> None:
        pass
