"""
FILE DESCRIPTION: Seed planning and hub gap analysis for the multi-modal loop.
KEY FUNCTIONS/CLASSES: SeedPlanner, HubGapAnalyzer, discover_hubs_from_patterns, PlanRequest

FLOW: Known hubs (storage + in-run discoveries) -> drop known-dead URLs ->
newest lane gets hubs/front pages, historical lane gets the next pagination page of each hub ->
anything already emitted this run is skipped -> FrontierEntry list.
"""

import re
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlparse

from crawler.models import FrontierEntry, EntryKind
from crawler.url_utils import normalize_url
from frontier.filters import default_priority

logger = logging.getLogger(__name__)

HUB_MIN_LINKS = 5
HUB_MAX_DEPTH = 2
HUB_MAX_SEGMENT_LENGTH = 40
HUB_MAX_CONFIDENCE = 0.95
GAP_PREDICTIONS_PER_NAME = 3
GAP_MAX_NAMES = 10

_YEAR = re.compile(r"^\d{4}$")
_MONTH_DAY = re.compile(r"^\d{2}$")
_FILE_EXT = re.compile(r"\.[a-z0-9]+$", re.IGNORECASE)
_SLUG_CHARS = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    return _SLUG_CHARS.sub("-", (name or "").lower()).strip("-")


def _segments(url: str) -> List[str]:
    return [s for s in (urlparse(url).path or "").split("/") if s]


def is_article_like(segments: List[str]) -> bool:
    has_year = any(_YEAR.match(s) for s in segments)
    has_month_day = any(_MONTH_DAY.match(s) for s in segments)
    has_file_ext = any(_FILE_EXT.search(s) for s in segments)
    has_long_numeric = any(any(c.isdigit() for c in s) and len(s) > 3 for s in segments)
    return (has_year and has_month_day) or has_file_ext or has_long_numeric


def discover_hubs_from_patterns(rows: Iterable[dict], min_link_count: int = HUB_MIN_LINKS,
                                max_depth: int = HUB_MAX_DEPTH,
                                max_segment_length: int = HUB_MAX_SEGMENT_LENGTH) -> List[dict]:
    """
    Turns analyzed pages ({url, link_count}) into hub candidates: shallow, non-article paths
    with many outbound links. Confidence rises with link count and drops with depth.
    """
    hubs = []
    for row in rows:
        url = row.get("url")
        if not url:
            continue
        link_count = int(row.get("link_count") or 0)
        if link_count < min_link_count:
            continue
        segments = _segments(url)
        if not segments or len(segments) > max_depth:
            continue
        if any(len(s) > max_segment_length for s in segments):
            continue
        if any(s.lower() == "amp" for s in segments) or is_article_like(segments):
            continue
        depth_penalty = 1 - min(0.2, (len(segments) - 1) * 0.1)
        confidence = min(HUB_MAX_CONFIDENCE, (0.45 + link_count / 50) * depth_penalty)
        hubs.append({"url": url, "confidence": round(confidence, 4), "link_count": link_count,
                     "source": "pattern-discovery"})
    return hubs


class HubGapAnalyzer:
    """
    Learns hub URL templates from known hubs (e.g. `/world/{slug}` from `/world/france`,
    `/world/spain`) and predicts hub URLs for place or topic names that have no hub yet.
    """

    def __init__(self, names: Iterable[str] = ()):
        self.names = [n for n in names if n]

    @staticmethod
    def learn_templates(hub_urls: Iterable[str]) -> Dict[str, int]:
        support = defaultdict(int)
        for url in hub_urls:
            segments = _segments(url)
            if not segments or len(segments) > 3 or is_article_like(segments):
                continue
            prefix = "/".join(segments[:-1])
            template = ("/" + prefix if prefix else "") + "/{slug}"
            support[template] += 1
        return dict(support)

    def predict(self, host: str, known_hubs: Iterable[str], scheme: str = "https") -> List[dict]:
        known = [normalize_url(u) for u in known_hubs]
        known_slugs = {s.lower() for u in known for s in _segments(u)[-1:]}
        templates = self.learn_templates(known)
        if not templates:
            return []
        ranked = sorted(templates.items(), key=lambda kv: (-kv[1], kv[0]))[:GAP_PREDICTIONS_PER_NAME]

        predictions = []
        gaps = [n for n in self.names if slugify(n) and slugify(n) not in known_slugs][:GAP_MAX_NAMES]
        for name in gaps:
            slug = slugify(name)
            for template, count in ranked:
                confidence = min(HUB_MAX_CONFIDENCE, 0.5 + 0.1 * count)
                predictions.append({
                    "url": normalize_url(f"{scheme}://{host}{template.replace('{slug}', slug)}"),
                    "confidence": round(confidence, 4),
                    "place_name": name,
                    "source": "hub-gap-analysis",
                })
        return predictions


@dataclass
class PlanRequest:
    batch_number: int
    newest_quota: int
    historical_quota: int
    scheme: str = "https"


@dataclass
class PlanResult:
    entries: List[FrontierEntry] = field(default_factory=list)
    skipped_dead: Dict[str, int] = field(default_factory=dict)
    skipped_emitted: int = 0
    quotas: Dict[str, int] = field(default_factory=dict)


class SeedPlanner:
    """
    INVARIANT: plan_batch() never emits a URL it has emitted before in this run. Repeated calls
    only yield hubs learned since the last call and the next archive page of each live hub.
    """

    def __init__(self, host: str, store, dead_urls=None, gap_analyzer: Optional[HubGapAnalyzer] = None,
                 persistent_mode: bool = False, quota_skip_threshold: float = 0.2, quota_ceiling: int = 500,
                 hub_confidence_threshold: float = 0.7, telemetry=None):
        self.host = host
        self.store = store
        self.dead_urls = dead_urls
        self.gap_analyzer = gap_analyzer
        self.persistent_mode = persistent_mode
        self.quota_skip_threshold = quota_skip_threshold
        self.quota_ceiling = quota_ceiling
        self.hub_confidence_threshold = hub_confidence_threshold
        self.telemetry = telemetry

        self._lock = threading.Lock()
        self._emitted = set()
        self._candidates: Dict[str, dict] = {}
        self._page_cursor: Dict[str, int] = {}
        self._last_page: Dict[str, str] = {}
        self.scheme = "https"
        self._skip_ratio = {"newest": 0.0, "historical": 0.0}
        self._archive_ended = set()

    # -------------------------------
    # KNOWLEDGE
    # -------------------------------
    def add_candidates(self, hubs: Iterable[dict]) -> int:
        """Registers hub candidates; returns how many were new or improved."""
        hubs = list(hubs)
        added = 0
        with self._lock:
            for hub in hubs:
                url = normalize_url(hub.get("url", ""))
                if not url:
                    continue
                current = self._candidates.get(url)
                if current is None or hub.get("confidence", 0) > current.get("confidence", 0):
                    self._candidates[url] = dict(hub, url=url)
                    added += 1
        for hub in hubs:
            if hub.get("url"):
                self.store.save_hub(self.host, normalize_url(hub["url"]), hub.get("source", "unknown"),
                                    float(hub.get("confidence", 0.0)))
        return added

    def run_gap_analysis(self, scheme: str = "https") -> List[dict]:
        """Predicts missing hubs; only predictions at or above the confidence threshold are kept."""
        if self.gap_analyzer is None:
            return []
        known = [h["url"] for h in self._known_hubs()]
        predictions = self.gap_analyzer.predict(self.host, known, scheme=scheme)
        hubs = [p for p in predictions if p["confidence"] >= self.hub_confidence_threshold]
        if hubs:
            self.add_candidates(hubs)
        logger.info(f"[PLANNER] Gap analysis for {self.host}: {len(predictions)} predictions, {len(hubs)} accepted")
        return hubs

    def _known_hubs(self) -> List[dict]:
        hubs = {h["url"]: h for h in self.store.hub_candidates(self.host, limit=1000)}
        with self._lock:
            for url, hub in self._candidates.items():
                if url not in hubs or hub.get("confidence", 0) > hubs[url].get("confidence", 0):
                    hubs[url] = hub
        return sorted(hubs.values(), key=lambda h: (-float(h.get("confidence", 0)), h["url"]))

    def _dead(self) -> set:
        dead = set(self.store.known_dead_urls(self.host))
        if self.dead_urls is not None:
            dead.update(self.dead_urls.snapshot())
        return {normalize_url(u) for u in dead}

    # -------------------------------
    # PLANNING
    # -------------------------------
    def scaled_quota(self, category: str, quota: int) -> int:
        ratio = self._skip_ratio.get(category, 0.0)
        if not self.persistent_mode or ratio <= self.quota_skip_threshold:
            return quota
        scaled = min(self.quota_ceiling, int(quota * (1 + ratio)))
        if scaled != quota:
            logger.info(f"[PLANNER] Scaling {category} quota {quota} -> {scaled} (dead-skip ratio {ratio:.2f})")
            if self.telemetry:
                self.telemetry.decision("quota-scaled", f"{category} quota {quota} -> {scaled}",
                                        {"category": category, "ratio": ratio, "ceiling": self.quota_ceiling})
        return max(quota, scaled)

    def plan_batch(self, request: PlanRequest) -> PlanResult:
        result = PlanResult()
        self.scheme = request.scheme
        dead = self._dead()
        hubs = self._known_hubs()
        front_page = normalize_url(f"{request.scheme}://{self.host}/")

        newest_quota = self.scaled_quota("newest", request.newest_quota)
        historical_quota = self.scaled_quota("historical", request.historical_quota)
        result.quotas = {"newest": newest_quota, "historical": historical_quota}

        considered = {"newest": 0, "historical": 0}
        skipped = {"newest": 0, "historical": 0}

        # Newest lane: front page then hubs, best confidence first
        newest = 0
        for hub in [{"url": front_page, "confidence": 1.0}] + hubs:
            if newest >= newest_quota:
                break
            url = hub["url"]
            considered["newest"] += 1
            if url in dead:
                skipped["newest"] += 1
                continue
            if not self._claim(url):
                result.skipped_emitted += 1
                continue
            priority = default_priority(EntryKind.HUB, 0) - float(hub.get("confidence", 0.5)) * 5
            result.entries.append(FrontierEntry(url=url, depth=0, kind=EntryKind.HUB, priority=priority,
                                                lane="newest", source=hub.get("source", "planner"),
                                                meta={"batch": request.batch_number}))
            newest += 1

        # Archive pages emitted earlier that turned out dead end their hub
        with self._lock:
            for hub_url, page_url in self._last_page.items():
                if hub_url not in self._archive_ended and page_url in dead:
                    self._archive_ended.add(hub_url)
                    considered["historical"] += 1
                    skipped["historical"] += 1
                    logger.info(f"[PLANNER] Archive of {hub_url} ended at dead page {page_url}")

        # Historical lane: next pagination page of each hub, round robin
        live_hubs = [h["url"] for h in [{"url": front_page}] + hubs
                     if h["url"] not in dead and h["url"] not in self._archive_ended]
        historical = 0
        rounds = 0
        while historical < historical_quota and live_hubs and rounds < historical_quota + len(live_hubs):
            rounds += 1
            progressed = False
            for hub_url in list(live_hubs):
                if historical >= historical_quota:
                    break
                url = self._next_page(hub_url)
                considered["historical"] += 1
                if url in dead:
                    skipped["historical"] += 1
                    # A dead page ends that hub's archive
                    live_hubs.remove(hub_url)
                    with self._lock:
                        self._archive_ended.add(hub_url)
                    continue
                if not self._claim(url):
                    result.skipped_emitted += 1
                    continue
                with self._lock:
                    page_no = self._page_cursor[hub_url] - 1
                    self._last_page[hub_url] = url
                result.entries.append(FrontierEntry(
                    url=url, depth=1, kind=EntryKind.PAGINATION,
                    priority=default_priority(EntryKind.PAGINATION, 1, "historical") + page_no * 0.1,
                    lane="historical", source=hub_url,
                    meta={"batch": request.batch_number, "page": page_no},
                ))
                historical += 1
                progressed = True
            if not progressed:
                break

        for category in ("newest", "historical"):
            self._skip_ratio[category] = skipped[category] / considered[category] if considered[category] else 0.0
        result.skipped_dead = skipped
        logger.info(f"[PLANNER] Batch {request.batch_number}: {len(result.entries)} entries "
                    f"(newest={newest}, historical={historical}), "
                    f"dead-skipped={skipped}")
        return result

    def historical_supply(self) -> int:
        """Number of hubs (front page included) whose archive has not hit a dead page yet."""
        dead = self._dead()
        hubs = [normalize_url(f"{self.scheme}://{self.host}/")] + [h["url"] for h in self._known_hubs()]
        with self._lock:
            ended = self._archive_ended | {h for h, page in self._last_page.items() if page in dead}
            return sum(1 for u in hubs if u not in dead and u not in ended)

    def _claim(self, url: str) -> bool:
        with self._lock:
            if url in self._emitted:
                return False
            self._emitted.add(url)
            return True

    def _next_page(self, hub_url: str) -> str:
        with self._lock:
            page = self._page_cursor.get(hub_url, 2)
            self._page_cursor[hub_url] = page + 1
        base = hub_url.rstrip("/")
        return normalize_url(f"{base}/page/{page}")

    def state(self) -> dict:
        with self._lock:
            return {
                "scheme": self.scheme,
                "emitted": sorted(self._emitted),
                "candidates": list(self._candidates.values()),
                "page_cursor": dict(self._page_cursor),
                "last_page": dict(self._last_page),
                "skip_ratio": dict(self._skip_ratio),
                "archive_ended": sorted(self._archive_ended),
            }

    def restore(self, state: dict):
        if not state:
            return
        with self._lock:
            self._emitted.update(state.get("emitted") or [])
            for hub in state.get("candidates") or []:
                self._candidates[hub["url"]] = hub
            self.scheme = state.get("scheme") or self.scheme
            self._page_cursor.update(state.get("page_cursor") or {})
            self._last_page.update(state.get("last_page") or {})
            self._skip_ratio.update(state.get("skip_ratio") or {})
            self._archive_ended.update(state.get("archive_ended") or [])
