"""
Spread detection between two adjacent pages.

Two checks run on the strips where the pages would touch:
- a narrow probe: if both edges are near-white (or both near-black) the
  shared margin says nothing about continuity, so the pair stays separate;
- a wider comparison: a low dissimilarity score means an illustration runs
  across the boundary, so the pages are merged.

Each decision depends only on its own two images.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .catalog import Page
from .config import Thresholds
from .stats import Region, StatsProvider
from .utils import UnreadableImage


PagePair = Tuple[Page, Page]

CONTINUOUS = "continuous"
DISCONTINUOUS = "discontinuous"
BRIGHT_EDGES = "bright_edges"
DARK_EDGES = "dark_edges"
UNREADABLE = "unreadable"


@dataclass(frozen=True)
class MergeDecision:
    merge: bool
    reason: str
    left_mean: Optional[float] = None
    right_mean: Optional[float] = None
    score: Optional[float] = None
    error: Optional[str] = None


def pair_pages(content_pages: List[Page]) -> Tuple[List[PagePair], Optional[Page]]:
    """Group content pages two at a time; an odd last page is returned alone."""

    pairs = [
        (content_pages[i], content_pages[i + 1])
        for i in range(0, len(content_pages) - 1, 2)
    ]
    singleton = content_pages[-1] if len(content_pages) % 2 == 1 else None
    return pairs, singleton


def touching_sides(right_to_left: bool) -> Tuple[str, str]:
    """
    Return the edge of the earlier page and of the later page that meet.

    In left-to-right books the earlier page sits on the left, so its east
    edge meets the later page's west edge. Manga order flips this.
    """

    if right_to_left:
        return "west", "east"
    return "east", "west"


def decide_merge(
    left: Page,
    right: Page,
    provider: StatsProvider,
    thresholds: Thresholds,
    right_to_left: bool = False,
) -> MergeDecision:
    """
    Decide whether two consecutive content pages are halves of one spread.

    ``left`` is the earlier page in catalog order. Unreadable images never
    merge.
    """

    first_side, second_side = touching_sides(right_to_left)
    try:
        left_probe = provider.region_stats(
            left.path,
            Region(first_side, thresholds.probe_strip_width, thresholds.probe_strip_height),
        )
        right_probe = provider.region_stats(
            right.path,
            Region(second_side, thresholds.probe_strip_width, thresholds.probe_strip_height),
        )
        left_mean = left_probe.mean
        right_mean = right_probe.mean

        if left_mean > thresholds.edge_bright_min and right_mean > thresholds.edge_bright_min:
            return MergeDecision(False, BRIGHT_EDGES, left_mean, right_mean)
        if left_mean < thresholds.edge_dark_max and right_mean < thresholds.edge_dark_max:
            return MergeDecision(False, DARK_EDGES, left_mean, right_mean)

        score = provider.region_dissimilarity(
            left.path,
            Region(first_side, thresholds.compare_strip_width, thresholds.compare_strip_height),
            right.path,
            Region(second_side, thresholds.compare_strip_width, thresholds.compare_strip_height),
        )
    except UnreadableImage as exc:
        return MergeDecision(False, UNREADABLE, error=str(exc))

    if score < thresholds.continuity_max:
        return MergeDecision(True, CONTINUOUS, left_mean, right_mean, score)
    return MergeDecision(False, DISCONTINUOUS, left_mean, right_mean, score)


def decide_pairs(
    pairs: List[PagePair],
    provider: StatsProvider,
    thresholds: Thresholds,
    right_to_left: bool = False,
    workers: int = 1,
) -> List[MergeDecision]:
    """
    Decide every pair, returning decisions in pair order.

    With ``workers > 1`` pairs run on a thread pool. On interrupt, queued
    pairs are cancelled and only the in-flight ones finish.
    """

    def _decide(pair: PagePair) -> MergeDecision:
        return decide_merge(pair[0], pair[1], provider, thresholds, right_to_left)

    if workers <= 1 or len(pairs) <= 1:
        return [_decide(pair) for pair in pairs]

    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="manga-prep-pair")
    try:
        return list(executor.map(_decide, pairs))
    finally:
        executor.shutdown(wait=True, cancel_futures=True)
