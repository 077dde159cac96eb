"""
Admission filters for the frontier, selected by the run's prioritization mode.

A filter takes a FrontierEntry and returns a rejection reason, or None to admit it.
"""

from typing import Callable, List, Optional

from crawler.core import ConfigError
from crawler.models import FrontierEntry, EntryKind

AdmissionFilter = Callable[[FrontierEntry], Optional[str]]


def geography_only(entry: FrontierEntry) -> Optional[str]:
    """Only hubs, pagination and articles reachable from geography/topic listings are admitted."""
    if entry.kind is EntryKind.OTHER:
        return "not-geography-linked"
    return None


def build_filters(mode: str) -> List[AdmissionFilter]:
    if mode == "default":
        return []
    if mode == "geography-only":
        return [geography_only]
    raise ConfigError(f"unknown prioritization mode '{mode}'")


# Base priorities per kind; lower is sooner
KIND_PRIORITY = {
    EntryKind.HUB: 10.0,
    EntryKind.ARTICLE: 20.0,
    EntryKind.PAGINATION: 30.0,
    EntryKind.OTHER: 50.0,
}


def default_priority(kind: EntryKind, depth: int, lane: str = "newest") -> float:
    """Depth pushes an entry back; the historical lane sorts behind newest at equal depth."""
    priority = KIND_PRIORITY.get(kind, 50.0) + depth * 5.0
    if lane == "historical":
        priority += 2.5
    return priority
