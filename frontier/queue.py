"""
FILE DESCRIPTION: Priority frontier for one crawl run.
KEY FUNCTIONS/CLASSES: FrontierQueue, EnqueueResult

INVARIANTS:
- at most one entry per normalized URL for the whole run (queued, held or dispatched)
- dequeue order is ascending priority, ties broken FIFO by discovery sequence
- every entry is delivered to at most one worker
- entries of a locked-out host are held, never dropped, and return with their
  original priority and sequence once the host is dispatchable again
"""

import heapq
import itertools
import threading
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from crawler.models import FrontierEntry
from crawler.policy import URLPolicy
from crawler.url_utils import normalize_url, host_of
from frontier.filters import AdmissionFilter, build_filters

logger = logging.getLogger(__name__)

ACCEPTED = "accepted"
DEDUPED = "deduped"
FILTERED = "filtered"


@dataclass(frozen=True)
class EnqueueResult:
    status: str
    reason: str
    url: str

    @property
    def accepted(self) -> bool:
        return self.status == ACCEPTED


class FrontierQueue:
    """
    FLOW: enqueue() normalizes -> dedups against every URL seen this run -> runs URL policy and
    mode filters -> pushes (priority, seq) on a heap. dequeue() pops under one lock, parking
    entries whose host is not dispatchable in a per-host held list.
    """

    def __init__(self, policy: Optional[URLPolicy] = None, mode: str = "default",
                 filters: Optional[List[AdmissionFilter]] = None):
        self.policy = policy or URLPolicy()
        self.mode = mode
        self.filters = build_filters(mode) if filters is None else list(filters)
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self._heap: List[Tuple[float, int, str]] = []
        self._queued: Dict[str, Tuple[float, int, FrontierEntry]] = {}
        self._held: Dict[str, List[Tuple[float, int, FrontierEntry]]] = defaultdict(list)
        self._in_flight: Dict[str, FrontierEntry] = {}
        self._seen = set()
        self._rejections: Dict[str, int] = defaultdict(int)

    # -------------------------------
    # ADMISSION
    # -------------------------------
    def enqueue(self, entry: FrontierEntry) -> EnqueueResult:
        url = normalize_url(entry.url)
        if not url:
            return self._reject(entry.url, "invalid-url")
        entry.url = url

        allowed, reason = self.policy.eval(url, entry.depth)
        if not allowed:
            return self._reject(url, reason)
        for admission in self.filters:
            reason = admission(entry)
            if reason:
                return self._reject(url, reason)

        with self._lock:
            if url in self._seen:
                return EnqueueResult(DEDUPED, "already-seen", url)
            self._seen.add(url)
            seq = next(self._seq)
            self._queued[url] = (entry.priority, seq, entry)
            heapq.heappush(self._heap, (entry.priority, seq, url))
        return EnqueueResult(ACCEPTED, "accepted", url)

    def _reject(self, url: str, reason: str) -> EnqueueResult:
        with self._lock:
            self._rejections[reason] += 1
        logger.debug(f"[FRONTIER] Rejected {url}: {reason}")
        return EnqueueResult(FILTERED, reason, url)

    # -------------------------------
    # DISPATCH
    # -------------------------------
    def dequeue(self, is_dispatchable: Optional[Callable[[str], bool]] = None) -> Optional[FrontierEntry]:
        with self._lock:
            if is_dispatchable is not None:
                self._release_held(is_dispatchable)
            while self._heap:
                priority, seq, url = heapq.heappop(self._heap)
                item = self._queued.get(url)
                if item is None or item[1] != seq or item[0] != priority:
                    continue  # stale heap slot left by reprioritize()
                del self._queued[url]
                entry = item[2]
                host = host_of(url)
                if is_dispatchable is not None and not is_dispatchable(host):
                    self._held[host].append(item)
                    logger.info(f"[FRONTIER] Holding {url} while {host} is locked out")
                    continue
                self._in_flight[url] = entry
                return entry
            return None

    def _release_held(self, is_dispatchable):
        for host in list(self._held):
            if is_dispatchable(host):
                items = self._held.pop(host)
                for priority, seq, entry in items:
                    self._queued[entry.url] = (priority, seq, entry)
                    heapq.heappush(self._heap, (priority, seq, entry.url))
                logger.info(f"[FRONTIER] Restored {len(items)} held entries for {host}")

    def mark_done(self, entry: FrontierEntry):
        with self._lock:
            self._in_flight.pop(entry.url, None)

    def reprioritize(self, fn: Callable[[FrontierEntry], float]) -> int:
        """Recomputes priorities of entries not yet dispatched. Returns how many changed."""
        changed = 0
        with self._lock:
            for url, (priority, seq, entry) in list(self._queued.items()):
                new_priority = float(fn(entry))
                if new_priority != priority:
                    entry.priority = new_priority
                    self._queued[url] = (new_priority, seq, entry)
                    heapq.heappush(self._heap, (new_priority, seq, url))
                    changed += 1
            for host, items in self._held.items():
                updated = []
                for priority, seq, entry in items:
                    new_priority = float(fn(entry))
                    if new_priority != priority:
                        entry.priority = new_priority
                        changed += 1
                    updated.append((new_priority, seq, entry))
                self._held[host] = updated
            if changed and len(self._heap) > 2 * max(1, len(self._queued)):
                self._heap = [(p, s, u) for u, (p, s, _) in self._queued.items()]
                heapq.heapify(self._heap)
        return changed

    # -------------------------------
    # INTROSPECTION
    # -------------------------------
    def depth(self) -> Dict[str, int]:
        with self._lock:
            return {
                "queued": len(self._queued),
                "held": sum(len(v) for v in self._held.values()),
                "in_flight": len(self._in_flight),
            }

    def is_exhausted(self) -> bool:
        d = self.depth()
        return d["queued"] == 0 and d["held"] == 0 and d["in_flight"] == 0

    def held_hosts(self) -> List[str]:
        with self._lock:
            return [h for h, items in self._held.items() if items]

    def pending_entries(self) -> List[FrontierEntry]:
        """Queued and held entries in dispatch order."""
        with self._lock:
            items = list(self._queued.values()) + [i for items in self._held.values() for i in items]
        items.sort(key=lambda i: (i[0], i[1]))
        return [i[2] for i in items]

    def get_stats(self) -> Dict[str, object]:
        d = self.depth()
        with self._lock:
            d["seen"] = len(self._seen)
            d["rejections"] = dict(self._rejections)
        return d

    def __len__(self):
        with self._lock:
            return len(self._queued)

    # -------------------------------
    # CHECKPOINTS
    # -------------------------------
    def snapshot(self) -> Dict[str, object]:
        """In-flight entries are saved as pending so a resumed run fetches them again."""
        with self._lock:
            pending = list(self._queued.values()) + [i for items in self._held.values() for i in items]
            pending.sort(key=lambda i: (i[0], i[1]))
            entries = [i[2].to_dict() for i in pending] + [e.to_dict() for e in self._in_flight.values()]
            pending_urls = {i[2].url for i in pending} | set(self._in_flight)
            visited = sorted(u for u in self._seen if u not in pending_urls)
        return {"entries": entries, "visited": visited}

    def restore(self, snapshot: Dict[str, object]):
        with self._lock:
            self._seen.update(snapshot.get("visited") or [])
        for data in snapshot.get("entries") or []:
            self.enqueue(FrontierEntry.from_dict(data))
