"""
Tests for the image statistics backends.

Pillow tests use real synthetic images. The ImageMagick backend is tested
with a stubbed subprocess so no binary is needed.
"""

from __future__ import annotations

import subprocess
import unittest
from pathlib import Path
from unittest.mock import patch

from PIL import Image, ImageDraw

from helpers_pages import workspace_temp_dir, write_page

from manga_prep.stats import (
    MagickStatsProvider,
    PillowStatsProvider,
    Region,
    get_provider,
    region_box,
)
from manga_prep.utils import ProviderUnavailable, UnreadableImage


class RegionBoxTests(unittest.TestCase):
    def test_east_strip_is_vertically_centred(self) -> None:
        self.assertEqual(region_box((400, 600), Region("east", 5, 100)), (395, 250, 400, 350))

    def test_west_strip_starts_at_zero(self) -> None:
        self.assertEqual(region_box((400, 600), Region("west", 10, 200)), (0, 200, 10, 400))

    def test_strip_is_clipped_to_small_images(self) -> None:
        self.assertEqual(region_box((4, 50), Region("east", 10, 200)), (0, 0, 4, 50))

    def test_full_image_without_region(self) -> None:
        self.assertEqual(region_box((40, 60), None), (0, 0, 40, 60))

    def test_invalid_regions_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            Region("north", 5, 100)
        with self.assertRaises(ValueError):
            Region("east", 0, 100)


class PillowProviderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = PillowStatsProvider()

    def test_white_page_measures_full_scale(self) -> None:
        with workspace_temp_dir() as root:
            path = write_page(root, "white.png", (255, 255, 255))
            stats = self.provider.region_stats(path)
            self.assertAlmostEqual(stats.mean, 65535, places=3)
            self.assertAlmostEqual(stats.stddev, 0, places=3)

    def test_black_page_measures_zero(self) -> None:
        with workspace_temp_dir() as root:
            stats = self.provider.region_stats(write_page(root, "black.png", (0, 0, 0)))
            self.assertEqual(stats.mean, 0)

    def test_edge_region_only_sees_its_strip(self) -> None:
        with workspace_temp_dir() as root:
            image = Image.new("L", (100, 100), 0)
            ImageDraw.Draw(image).rectangle((95, 0, 99, 99), fill=255)
            path = root / "edge.png"
            image.save(path)

            east = self.provider.region_stats(path, Region("east", 5, 100))
            west = self.provider.region_stats(path, Region("west", 5, 100))
            self.assertAlmostEqual(east.mean, 65535, places=3)
            self.assertEqual(west.mean, 0)

    def test_transparent_pixels_count_as_white(self) -> None:
        with workspace_temp_dir() as root:
            path = root / "clear.png"
            Image.new("RGBA", (20, 20), (0, 0, 0, 0)).save(path)
            self.assertAlmostEqual(self.provider.region_stats(path).mean, 65535, places=3)

    def test_sixteen_bit_grey_keeps_its_brightness(self) -> None:
        with workspace_temp_dir() as root:
            for value in (1000, 30000):
                with self.subTest(value=value):
                    path = root / f"deep_{value}.png"
                    Image.new("I;16", (40, 60), value).save(path)
                    stats = self.provider.region_stats(path)
                    self.assertAlmostEqual(stats.mean, value, delta=300)
                    self.assertAlmostEqual(stats.stddev, 0, places=3)

    def test_concat_sixteen_bit_page_is_not_whited_out(self) -> None:
        with workspace_temp_dir() as root:
            deep = root / "deep.png"
            Image.new("I;16", (20, 30), 30000).save(deep)
            plain = write_page(root, "plain.png", (10, 10, 10), size=(20, 30))
            out = self.provider.concat_horizontal([deep, plain], root / "spread.png")
            with Image.open(out) as merged:
                rgb = merged.convert("RGB")
                self.assertEqual(merged.size, (40, 30))
                self.assertEqual(rgb.getpixel((0, 0)), (117, 117, 117))
                self.assertEqual(rgb.getpixel((20, 0)), (10, 10, 10))

    def test_dissimilarity_range(self) -> None:
        with workspace_temp_dir() as root:
            black = write_page(root, "black.png", (0, 0, 0))
            white = write_page(root, "white.png", (255, 255, 255))
            gray = write_page(root, "gray.png", (128, 128, 128))
            east = Region("east", 10, 200)
            west = Region("west", 10, 200)

            self.assertEqual(self.provider.region_dissimilarity(gray, east, gray, west), 0.0)
            self.assertAlmostEqual(
                self.provider.region_dissimilarity(black, east, white, west), 1.0
            )

    def test_dissimilarity_handles_different_page_heights(self) -> None:
        with workspace_temp_dir() as root:
            tall = write_page(root, "tall.png", (90, 90, 90), size=(40, 300))
            short = write_page(root, "short.png", (90, 90, 90), size=(40, 60))
            score = self.provider.region_dissimilarity(
                tall, Region("east", 10, 200), short, Region("west", 10, 200)
            )
            self.assertEqual(score, 0.0)

    def test_concat_places_pages_side_by_side_at_full_size(self) -> None:
        with workspace_temp_dir() as root:
            left = write_page(root, "l.png", (255, 0, 0), size=(30, 50))
            right = write_page(root, "r.png", (0, 0, 255), size=(20, 60))
            out = self.provider.concat_horizontal([left, right], root / "spread.png")

            with Image.open(out) as merged:
                self.assertEqual(merged.size, (50, 60))
                rgb = merged.convert("RGB")
                self.assertEqual(rgb.getpixel((0, 0)), (255, 0, 0))
                self.assertEqual(rgb.getpixel((30, 0)), (0, 0, 255))

    def test_concat_mixed_modes_to_jpeg(self) -> None:
        with workspace_temp_dir() as root:
            left = root / "l.png"
            Image.new("L", (10, 10), 200).save(left)
            right = root / "r.png"
            Image.new("RGBA", (10, 10), (0, 0, 0, 255)).save(right)
            out = self.provider.concat_horizontal([left, right], root / "spread.jpg")
            with Image.open(out) as merged:
                self.assertEqual(merged.format, "JPEG")
                self.assertEqual(merged.size, (20, 10))

    def test_corrupt_file_is_unreadable(self) -> None:
        with workspace_temp_dir() as root:
            path = root / "broken.jpg"
            path.write_bytes(b"not really a jpeg")
            with self.assertRaises(UnreadableImage):
                self.provider.region_stats(path)


def _completed(args, returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=args, returncode=returncode, stdout=stdout, stderr=stderr)


class MagickProviderTests(unittest.TestCase):
    def test_missing_binary_is_unavailable(self) -> None:
        provider = MagickStatsProvider(binary="manga-prep-no-such-magick")
        with self.assertRaises(ProviderUnavailable):
            provider.check()

    def test_region_stats_command_and_scaling(self) -> None:
        provider = MagickStatsProvider()
        with patch("manga_prep.stats.subprocess.run") as run:
            run.return_value = _completed([], stdout="200 10 255")
            stats = provider.region_stats(Path("p.png"), Region("east", 5, 100))

        command = run.call_args.args[0]
        self.assertEqual(command[:2], ["magick", "p.png"])
        self.assertIn("East", command)
        self.assertIn("5x100+0+0", command)
        self.assertAlmostEqual(stats.mean, 200 * 257)
        self.assertAlmostEqual(stats.stddev, 10 * 257)

    def test_failed_command_is_unreadable(self) -> None:
        provider = MagickStatsProvider()
        with patch("manga_prep.stats.subprocess.run") as run:
            run.return_value = _completed([], returncode=1, stderr="no decode delegate")
            with self.assertRaises(UnreadableImage):
                provider.region_stats(Path("p.xyz"))

    def test_timeout_is_unreadable(self) -> None:
        provider = MagickStatsProvider(timeout_s=0.5)
        with patch("manga_prep.stats.subprocess.run") as run:
            run.side_effect = subprocess.TimeoutExpired(cmd="magick", timeout=0.5)
            with self.assertRaises(UnreadableImage):
                provider.region_stats(Path("p.png"))

    def test_dissimilarity_parses_normalised_mae_and_cleans_up(self) -> None:
        provider = MagickStatsProvider()
        strip_dirs = []

        def fake_run(command, **kwargs):
            if command[1] == "compare":
                strip_dirs.append(Path(command[4]).parent)
                return _completed(command, returncode=1, stderr="1234.5 (0.0188)")
            if "%w %h" in command:
                return _completed(command, stdout="10 200")
            return _completed(command)

        with patch("manga_prep.stats.subprocess.run", side_effect=fake_run):
            score = provider.region_dissimilarity(
                Path("a.png"), Region("east", 10, 200), Path("b.png"), Region("west", 10, 200)
            )

        self.assertAlmostEqual(score, 0.0188)
        self.assertEqual(len(strip_dirs), 1)
        self.assertFalse(strip_dirs[0].exists())

    def test_compare_error_cleans_up_strips(self) -> None:
        provider = MagickStatsProvider()
        strip_dirs = []

        def fake_run(command, **kwargs):
            if command[1] == "compare":
                strip_dirs.append(Path(command[4]).parent)
                return _completed(command, returncode=2, stderr="image widths differ")
            if "%w %h" in command:
                return _completed(command, stdout="10 200")
            return _completed(command)

        with patch("manga_prep.stats.subprocess.run", side_effect=fake_run):
            with self.assertRaises(UnreadableImage):
                provider.region_dissimilarity(
                    Path("a.png"), Region("east", 10, 200), Path("b.png"), Region("west", 10, 200)
                )
        self.assertFalse(strip_dirs[0].exists())


class GetProviderTests(unittest.TestCase):
    def test_known_names(self) -> None:
        self.assertIsInstance(get_provider("pillow"), PillowStatsProvider)
        magick = get_provider("magick", timeout_s=3)
        self.assertIsInstance(magick, MagickStatsProvider)
        self.assertEqual(magick.timeout_s, 3)

    def test_unknown_name(self) -> None:
        with self.assertRaises(ProviderUnavailable):
            get_provider("gimp")


if __name__ == "__main__":
    unittest.main()
