"""
URL admission policy for the frontier.

All extension and path-based rules live here. Other modules should use
URLPolicy instead of duplicating extension lists or ad-hoc checks.
"""

from urllib.parse import urlparse
import re
from typing import Iterable, Dict, Tuple
from threading import Lock


class URLPolicy:
    """
    Per-run policy for URL filtering.

    Methods:
    - is_http(url): True for http/https
    - is_asset(url): True for asset/doc/media/script/style/font extensions
    - is_system_path(url): True for feeds, APIs, admin/login and search pages
    - eval(url): single gate used by the frontier, returns (allowed, reason)
    """

    ASSET_EXTENSIONS = {
        # Images
        ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico", ".bmp", ".tiff",
        # Video/Audio
        ".mp4", ".mp3", ".avi", ".mov", ".mkv", ".webm",
        # Archives
        ".zip", ".rar", ".tar", ".gz", ".7z",
        # Documents
        ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
        # Styles/Scripts
        ".css", ".js", ".json", ".xml",
        # Fonts
        ".woff", ".woff2", ".ttf", ".eot",
        # Executables/Installers
        ".exe", ".msi",
    }

    # Pagination stays crawlable: it feeds the historical lane
    _SYSTEM_PATTERNS: Iterable[str] = (
        r"/(feed|rss|atom)(/|$)",        # feeds
        r"/(wp-json|api)(/|$)",          # APIs
        r"/(wp-admin|wp-login|login|signin|logout)(/|$)",
        r"/(cart|checkout|account|subscribe)(/|$)",
        r"[?&](s|q|search)=[^&#]+",      # search query params
        r"[?&](share|replytocom|print)=", # share/print variants
    )
    _SYSTEM_REGEX = re.compile("(" + ")|(".join(_SYSTEM_PATTERNS) + ")", re.IGNORECASE)

    REASONS = (
        "allowed",
        "blocked_non_http",
        "blocked_asset",
        "blocked_path_system",
        "blocked_too_deep",
    )

    def __init__(self, max_depth: int | None = None):
        self.max_depth = max_depth
        self._lock = Lock()
        self._stats: Dict[str, int] = {"evaluations": 0, **{r: 0 for r in self.REASONS}}

    @staticmethod
    def is_http(url: str) -> bool:
        return urlparse(url).scheme in ("http", "https")

    @classmethod
    def is_asset(cls, url: str) -> bool:
        path = urlparse(url).path.lower()
        return any(path.endswith(ext) for ext in cls.ASSET_EXTENSIONS)

    @classmethod
    def is_system_path(cls, url: str) -> bool:
        parsed = urlparse(url)
        path_and_query = (parsed.path or "") + ("?" + parsed.query if parsed.query else "")
        return bool(cls._SYSTEM_REGEX.search(path_and_query))

    def eval(self, url: str, depth: int = 0) -> Tuple[bool, str]:
        """
        Evaluate a URL and return (allowed: bool, reason: str).
        Always updates counters exactly once per call.
        """
        if not self.is_http(url):
            reason = "blocked_non_http"
        elif self.is_asset(url):
            reason = "blocked_asset"
        elif self.is_system_path(url):
            reason = "blocked_path_system"
        elif self.max_depth is not None and depth > self.max_depth:
            reason = "blocked_too_deep"
        else:
            reason = "allowed"

        with self._lock:
            self._stats["evaluations"] += 1
            self._stats[reason] += 1
        return reason == "allowed", reason

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats)
