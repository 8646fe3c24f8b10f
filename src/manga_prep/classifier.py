"""
Blank page detection.

A page is blank when it is both near-white and near-uniform. A uniform dark
page (a black title card, say) is content.
"""

from __future__ import annotations

from typing import List, Optional

from .catalog import BLANK, CONTENT, Page
from .config import Thresholds
from .manifest import ManifestRecorder
from .stats import RegionStats, StatsProvider
from .utils import UnreadableImage


def is_blank(stats: RegionStats, thresholds: Thresholds) -> bool:
    return stats.mean > thresholds.blank_mean_min and stats.stddev < thresholds.blank_stddev_max


def classify_page(
    page: Page,
    provider: StatsProvider,
    thresholds: Thresholds,
    recorder: Optional[ManifestRecorder] = None,
) -> str:
    """
    Measure the whole page and decide content vs blank.

    Unreadable pages are kept as content so they never silently disappear.
    The source file is only read.
    """

    try:
        stats = provider.region_stats(page.path)
    except UnreadableImage as exc:
        if recorder is not None:
            recorder.warning(f"Keeping unreadable page as content: {exc}")
            recorder.add_action(
                action="classify_page",
                status="unreadable",
                input=str(page.path),
                verdict=CONTENT,
                error=str(exc),
            )
        return CONTENT

    verdict = BLANK if is_blank(stats, thresholds) else CONTENT
    if recorder is not None:
        if verdict == BLANK:
            recorder.log(f"Skipping blank page: {page.name}")
        recorder.add_action(
            action="classify_page",
            status=verdict,
            input=str(page.path),
            mean=round(stats.mean, 2),
            stddev=round(stats.stddev, 2),
        )
    return verdict


def classify_pages(
    pages: List[Page],
    provider: StatsProvider,
    thresholds: Thresholds,
    recorder: Optional[ManifestRecorder] = None,
) -> List[Page]:
    """Classify every page in catalog order and return the content pages."""

    for page in pages:
        page.mark(classify_page(page, provider, thresholds, recorder))
    return [page for page in pages if page.is_content]
