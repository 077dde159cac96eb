"""
FILE DESCRIPTION: Analysis collaborator contract and the default structural analyzer.
KEY FUNCTIONS/CLASSES: Analyzer, SkeletonAnalyzer, FetchedPage, PageAnalysis

The crawl engine treats analysis as a black box: pages go in, one PageAnalysis per
page comes out (possibly streamed from a generator so progress can be reported).
"""

import hashlib
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from bs4 import BeautifulSoup, Tag

from crawler.models import EntryKind


@dataclass(frozen=True)
class FetchedPage:
    url: str
    content: str
    kind: EntryKind = EntryKind.OTHER
    lane: str = "newest"
    depth: int = 0


@dataclass(frozen=True)
class PageAnalysis:
    url: str
    signature_hash: str
    confidence: float
    link_count: int = 0
    kind: Optional[EntryKind] = None


class Analyzer(ABC):

    @abstractmethod
    def analyze(self, pages: Iterable[FetchedPage]) -> Iterable[PageAnalysis]:
        pass


class SkeletonAnalyzer(Analyzer):
    """
    FLOW: Parses HTML with BeautifulSoup/lxml -> Walks the tag tree down to `max_depth`
    keeping tag names and class tokens only (text and dynamic ids are noise) -> SHA256 of the
    skeleton is the page signature -> confidence grows with the number of pages sharing it.
    """

    IGNORED_TAGS = {"script", "style", "noscript", "svg", "iframe"}

    def __init__(self, max_depth: int = 6, saturation: int = 10):
        self.max_depth = max_depth
        self.saturation = max(1, saturation)
        self._counts = defaultdict(int)
        self._lock = threading.Lock()

    def skeleton(self, html: str) -> str:
        return self._skeleton_of(BeautifulSoup(html or "", "lxml"))

    def _skeleton_of(self, soup) -> str:
        lines = []

        def walk(node, depth: int):
            if depth > self.max_depth or not isinstance(node, Tag) or node.name in self.IGNORED_TAGS:
                return
            classes = node.get("class") or []
            if isinstance(classes, str):
                classes = classes.split()
            # Digits in class names are usually generated
            classes = sorted(c for c in classes if not any(ch.isdigit() for ch in c))
            lines.append("  " * depth + node.name + ("." + ".".join(classes) if classes else ""))
            for child in node.children:
                walk(child, depth + 1)

        root = soup.body or soup
        for child in root.children:
            walk(child, 0)
        return "\n".join(lines)

    def signature(self, html: str) -> str:
        return hashlib.sha256(self.skeleton(html).encode("utf-8")).hexdigest()[:16]

    def analyze(self, pages: Iterable[FetchedPage]) -> Iterator[PageAnalysis]:
        for page in pages:
            soup = BeautifulSoup(page.content or "", "lxml")
            sig = hashlib.sha256(self._skeleton_of(soup).encode("utf-8")).hexdigest()[:16]
            with self._lock:
                self._counts[sig] += 1
                seen = self._counts[sig]
            link_count = len(soup.find_all("a", href=True))
            yield PageAnalysis(
                url=page.url,
                signature_hash=sig,
                confidence=min(1.0, seen / self.saturation),
                link_count=link_count,
                kind=page.kind,
            )
