"""
Tests for blank page classification.
"""

from __future__ import annotations

import io
import unittest

from helpers_pages import FakeStatsProvider, make_pages

from manga_prep.catalog import BLANK, CONTENT
from manga_prep.classifier import classify_page, classify_pages, is_blank
from manga_prep.config import Thresholds
from manga_prep.manifest import ManifestRecorder
from manga_prep.stats import RegionStats


def _recorder() -> ManifestRecorder:
    return ManifestRecorder(
        command="manga-prep prepare",
        options={},
        inputs={},
        outputs={},
        dry_run=True,
        console_stream=io.StringIO(),
    )


class IsBlankTests(unittest.TestCase):
    def setUp(self) -> None:
        self.thresholds = Thresholds()

    def test_near_white_uniform_page_is_blank(self) -> None:
        self.assertTrue(is_blank(RegionStats(65200, 100), self.thresholds))

    def test_both_conditions_are_required(self) -> None:
        self.assertFalse(is_blank(RegionStats(65200, 600), self.thresholds))
        self.assertFalse(is_blank(RegionStats(60000, 100), self.thresholds))

    def test_uniform_dark_page_is_content(self) -> None:
        self.assertFalse(is_blank(RegionStats(0, 0), self.thresholds))

    def test_boundaries_are_strict(self) -> None:
        self.assertFalse(is_blank(RegionStats(65000, 100), self.thresholds))
        self.assertFalse(is_blank(RegionStats(65200, 500), self.thresholds))


class ClassifyPageTests(unittest.TestCase):
    def test_classification_is_repeatable(self) -> None:
        provider = FakeStatsProvider(page_stats={"1.png": (65300, 50)})
        page = make_pages(["1.png"])[0]
        first = classify_page(page, provider, Thresholds())
        second = classify_page(page, provider, Thresholds())
        self.assertEqual(first, BLANK)
        self.assertEqual(first, second)

    def test_whole_page_is_measured(self) -> None:
        provider = FakeStatsProvider()
        classify_page(make_pages(["1.png"])[0], provider, Thresholds())
        self.assertEqual(provider.stat_calls, [("1.png", None)])

    def test_unreadable_page_fails_open(self) -> None:
        provider = FakeStatsProvider(unreadable={"1.png"})
        recorder = _recorder()
        verdict = classify_page(make_pages(["1.png"])[0], provider, Thresholds(), recorder)
        self.assertEqual(verdict, CONTENT)
        self.assertEqual(recorder.count_actions("classify_page", "unreadable"), 1)

    def test_classify_pages_keeps_catalog_order(self) -> None:
        provider = FakeStatsProvider(page_stats={"3.png": (65200, 100)})
        pages = make_pages(["1.png", "2.png", "3.png", "4.png", "5.png"])
        recorder = _recorder()

        content = classify_pages(pages, provider, Thresholds(), recorder)

        self.assertEqual([page.name for page in content], ["1.png", "2.png", "4.png", "5.png"])
        self.assertEqual([page.content_flag for page in pages][2], BLANK)
        self.assertEqual(recorder.count_actions("classify_page", BLANK), 1)
        self.assertEqual(recorder.count_actions("classify_page", CONTENT), 4)


if __name__ == "__main__":
    unittest.main()
