"""
FILE DESCRIPTION: Page processing: link extraction and news URL classification.
KEY FUNCTIONS/CLASSES: LinkExtractor, UrlClassifier
"""

import re
import logging
from typing import List, Tuple
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from crawler.models import EntryKind
from crawler.url_utils import normalize_url, same_site, is_http

logger = logging.getLogger(__name__)


class UrlClassifier:
    """
    FLOW: Looks at the URL path only -> pagination markers win -> dated or long-slug paths are
    articles -> shallow word-only paths are hubs -> everything else is `other`.
    """
    _PAGINATION = re.compile(r"(/page/\d+/?$)|([?&](page|p|paged)=\d+)|(/\d+/?$)", re.IGNORECASE)
    _DATED = re.compile(r"/(19|20)\d{2}/(0?[1-9]|1[0-2])(/(0?[1-9]|[12]\d|3[01]))?/[^/]+", re.IGNORECASE)
    _FILE_EXT = re.compile(r"\.(s?html?|php|aspx?)$", re.IGNORECASE)
    _LONG_NUMBER = re.compile(r"\d{6,}")
    _WORD_SEGMENT = re.compile(r"^[a-z][a-z\-]*[a-z]$", re.IGNORECASE)

    # Segments that mark geography/topic listings on news sites
    HUB_SEGMENTS = {
        "world", "news", "region", "regions", "country", "countries", "topic", "topics",
        "section", "sections", "place", "places", "city", "cities", "uk", "us", "europe",
        "africa", "asia", "americas", "australia", "middle-east", "politics", "business",
        "sport", "sports", "science", "technology", "culture", "opinion", "local",
    }

    @classmethod
    def classify(cls, url: str) -> EntryKind:
        parsed = urlparse(url)
        path = parsed.path or "/"
        path_q = path + ("?" + parsed.query if parsed.query else "")
        segments = [s for s in path.split("/") if s]

        if not segments:
            return EntryKind.HUB
        if cls._PAGINATION.search(path_q) and not cls._DATED.search(path):
            return EntryKind.PAGINATION
        if cls.is_article_like(path):
            return EntryKind.ARTICLE
        if len(segments) <= 3 and all(cls._WORD_SEGMENT.match(s) for s in segments):
            if len(segments) <= 2 or segments[0].lower() in cls.HUB_SEGMENTS:
                return EntryKind.HUB
        return EntryKind.OTHER

    @classmethod
    def is_article_like(cls, path: str) -> bool:
        segments = [s for s in path.split("/") if s]
        if not segments:
            return False
        last = segments[-1]
        if cls._DATED.search(path) or cls._FILE_EXT.search(last) or cls._LONG_NUMBER.search(last):
            return True
        # Long hyphenated slugs are headlines
        return last.count("-") >= 4


class LinkExtractor:
    """
    FLOW: Parses HTML using BeautifulSoup -> Collects anchors -> Applies same-site boundary ->
    Normalizes and de-duplicates -> Returns (url, kind) pairs in document order.
    """

    @staticmethod
    def extract_links(html: str, base_url: str, same_site_only: bool = True) -> List[Tuple[str, EntryKind]]:
        if not html:
            return []
        soup = BeautifulSoup(html, "lxml")
        seen = set()
        links = []
        for a in soup.find_all("a", href=True):
            href = a["href"].strip()
            if not href or href.startswith(("#", "mailto:", "tel:", "javascript:")):
                continue
            url = normalize_url(href, base=base_url)
            if not url or url in seen or not is_http(url):
                continue
            if same_site_only and not same_site(url, base_url):
                continue
            seen.add(url)
            links.append((url, UrlClassifier.classify(url)))
        return links
