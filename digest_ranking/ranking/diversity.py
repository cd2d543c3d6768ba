"""Diversity-constrained selection.

Walks a ranked pool once, best first, and keeps an item unless it scores
below the threshold, repeats an already-selected URL, or its source has
reached the per-source cap. Constraints are never loosened to fill the
target; a short list is a normal outcome.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, Set
from urllib.parse import urlsplit

import structlog

from ..common.metrics import MetricsCollector
from ..models import Rejection, RejectionReason, SelectionRecord, entry_id, entry_item, entry_score

logger = structlog.get_logger("ranking.diversity")

# Trailing segments that say nothing about which story a URL points to
GENERIC_SEGMENTS = {
    "index.html",
    "index.htm",
    "index.php",
    "index",
    "default.aspx",
    "amp",
    "feed",
    "rss",
    "news",
}

# Shorter trailing segments are too common to identify a story across hosts
MIN_MIRROR_SEGMENT_CHARS = 5


def is_story_segment(segment: str) -> bool:
    """Whether a trailing path segment can identify one story on any host.

    Generic names, bare numeric ids and short segments are host-specific.
    """
    return (
        len(segment) >= MIN_MIRROR_SEGMENT_CHARS
        and not segment.isdigit()
        and segment not in GENERIC_SEGMENTS
    )


def normalize_url_key(url: Optional[str]) -> List[str]:
    """Duplicate keys for ``url``.

    The canonical key is the lowercased host without ``www.`` plus the path
    without a trailing slash. A trailing path segment that looks like a story
    slug is a second key so that the same story mirrored on another host
    collapses. Unparseable or empty URLs have no keys and are never
    duplicates.
    """
    if not url or not url.strip():
        return []

    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return []

    host = (parts.hostname or "").lower()
    if not host:
        return []
    if host.startswith("www."):
        host = host[4:]

    path = parts.path.rstrip("/").lower()
    keys = [f"{host}{path}"]

    segment = path.rsplit("/", 1)[-1]
    if is_story_segment(segment):
        keys.append(f"segment:{segment}")

    return keys


class DiversitySelector:
    """Greedy selector enforcing URL uniqueness and a per-source cap.

    Parameters
    - per_source_cap: Default maximum selected items per source
    - url_key: Function returning the duplicate keys of a URL
    - metrics: Optional collector for rejection counts
    """

    def __init__(
        self,
        per_source_cap: int = 2,
        url_key: Optional[Callable[[Optional[str]], List[str]]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.per_source_cap = per_source_cap
        self.url_key = url_key or normalize_url_key
        self.metrics = metrics

    def select(
        self,
        ranked_pool: Sequence[Any],
        target_size: int,
        per_source_cap: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> SelectionRecord:
        """Select up to ``target_size`` entries from ``ranked_pool`` in order."""
        record = SelectionRecord()
        if target_size <= 0:
            return record

        cap = self.per_source_cap if per_source_cap is None else per_source_cap
        seen_urls: Set[str] = set()
        source_counts: Dict[str, int] = {}
        seen_ids: Set[str] = set()

        for entry in ranked_pool:
            if len(record.selected) >= target_size:
                break

            item = entry_item(entry)
            item_id = entry_id(entry)
            if item_id in seen_ids:
                continue
            seen_ids.add(item_id)

            score = entry_score(entry)
            if min_score is not None and score is not None and score < min_score:
                self._reject(record, item_id, RejectionReason.BELOW_THRESHOLD)
                continue

            keys = self.url_key(item.url)
            if any(key in seen_urls for key in keys):
                self._reject(record, item_id, RejectionReason.DUPLICATE_URL)
                continue

            if source_counts.get(item.source, 0) >= cap:
                self._reject(record, item_id, RejectionReason.SOURCE_CAP_EXCEEDED)
                continue

            record.selected.append(entry)
            seen_urls.update(keys)
            source_counts[item.source] = source_counts.get(item.source, 0) + 1

        if len(record.selected) < target_size:
            logger.info(
                "Selection short of target",
                selected=len(record.selected),
                target_size=target_size,
                rejected=len(record.rejected)
            )
        else:
            logger.debug("Selection completed", selected=len(record.selected), rejected=len(record.rejected))

        return record

    def _reject(self, record: SelectionRecord, item_id: str, reason: RejectionReason) -> None:
        record.rejected.append(Rejection(item_id=item_id, reason=reason))
        if self.metrics:
            self.metrics.record_selection_rejection(reason.value)
