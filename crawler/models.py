import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Any, List


class EntryKind(Enum):
    ARTICLE = "article"
    HUB = "hub"
    PAGINATION = "pagination"
    OTHER = "other"


class HostStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    LOCKED_OUT = "locked-out"
    RECOVERING = "recovering"


class SourceMethod(Enum):
    CACHE = "cache"
    NETWORK = "network"
    HEADLESS = "headless"


class ExitReason(Enum):
    MAX_DOWNLOADS_REACHED = "max-downloads-reached"
    QUEUE_EXHAUSTED = "queue-exhausted"
    ABORT_REQUESTED = "abort-requested"
    FAILED = "failed"
    COMPLETED = "completed"

    @property
    def exit_code(self) -> int:
        if self is ExitReason.FAILED:
            return 1
        if self is ExitReason.ABORT_REQUESTED:
            return 2
        return 0


class Phase(Enum):
    DOWNLOAD = "download"
    ANALYZE = "analyze"
    LEARN = "learn"
    DISCOVER = "discover"
    REANALYZE = "reanalyze"


@dataclass
class FrontierEntry:
    """
    A unit of crawl work owned by the Frontier Queue.
    Lower priority values are dispatched sooner.
    """
    url: str
    depth: int = 0
    kind: EntryKind = EntryKind.OTHER
    priority: float = 0.0
    discovered_at: float = field(default_factory=time.time)
    lane: str = "newest"
    source: str = "seed"
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url, "depth": self.depth, "kind": self.kind.value,
            "priority": self.priority, "discovered_at": self.discovered_at,
            "lane": self.lane, "source": self.source, "meta": dict(self.meta),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FrontierEntry":
        return cls(
            url=data["url"], depth=int(data.get("depth", 0)),
            kind=EntryKind(data.get("kind", "other")),
            priority=float(data.get("priority", 0.0)),
            discovered_at=float(data.get("discovered_at", time.time())),
            lane=data.get("lane", "newest"), source=data.get("source", "seed"),
            meta=dict(data.get("meta") or {}),
        )


@dataclass(frozen=True)
class FetchOutcome:
    """
    Result of one fetch through the pipeline.

    INVARIANT: Created exactly once per fetch and never mutated.
    `content` is transient: stores record the metadata, not the body.
    """
    url: str
    http_status: Optional[int]
    source_method: SourceMethod
    duration_ms: int
    bytes: int = 0
    error_kind: Optional[str] = None
    final_url: Optional[str] = None
    content: Optional[str] = None
    content_type: str = ""
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.error_kind is None and self.http_status is not None and 200 <= self.http_status < 300

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url, "http_status": self.http_status,
            "source_method": self.source_method.value, "duration_ms": self.duration_ms,
            "bytes": self.bytes, "error_kind": self.error_kind,
            "final_url": self.final_url, "attempts": self.attempts,
        }


@dataclass
class ExitSummary:
    reason: ExitReason
    stats: Dict[str, Any]
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"reason": self.reason.value, "stats": dict(self.stats), "detail": self.detail}


@dataclass
class PatternSignature:
    """A structural page signature learned during analysis."""
    hash: str
    confidence: float = 0.0
    observed_count: int = 0
    example_urls: List[str] = field(default_factory=list)

    MAX_EXAMPLES = 5

    def observe(self, url: str):
        self.observed_count += 1
        self.confidence = min(1.0, self.observed_count / 10)
        if url and url not in self.example_urls and len(self.example_urls) < self.MAX_EXAMPLES:
            self.example_urls.append(url)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash, "confidence": self.confidence,
            "observed_count": self.observed_count, "example_urls": list(self.example_urls),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatternSignature":
        return cls(
            hash=data["hash"], confidence=float(data.get("confidence", 0.0)),
            observed_count=int(data.get("observed_count", 0)),
            example_urls=list(data.get("example_urls") or []),
        )
