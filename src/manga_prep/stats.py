"""
Image statistics backends.

Why this module exists:
- Blank detection and spread matching only need three questions answered:
  region mean/stddev, region dissimilarity, and horizontal concatenation.
- Putting them behind one small interface keeps the decision code testable
  with a fake provider, and lets the same rules run on Pillow or on an
  ImageMagick binary.

All statistics are reported on a 0..65535 scale (ImageMagick's Q16 quantum),
and dissimilarity is a normalised mean absolute error in [0, 1].
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import re
import shutil
import subprocess
import tempfile
from typing import List, Optional, Sequence, Tuple

from PIL import Image, ImageChops, ImageStat

from .config import QUANTUM_MAX
from .utils import ProviderUnavailable, UnreadableImage, WriteFailure


BBox = Tuple[int, int, int, int]
EDGE_SIDES = {"east", "west"}
JPEG_SUFFIXES = {".jpg", ".jpeg"}
# Greyscale modes holding 16-bit samples (0..65535).
HIGH_BIT_MODES = {"I", "I;16", "I;16B", "I;16L", "I;16N"}
# 8-bit channel value -> 16-bit quantum.
_QUANTUM_SCALE = QUANTUM_MAX / 255.0


@dataclass(frozen=True)
class Region:
    """
    A strip along one vertical edge of an image.

    The strip is vertically centred, like ``-gravity East -crop WxH+0+0``.
    """

    side: str
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.side not in EDGE_SIDES:
            raise ValueError(f"Region side must be one of {sorted(EDGE_SIDES)}: {self.side}")
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Region width and height must be positive.")


@dataclass(frozen=True)
class RegionStats:
    mean: float
    stddev: float


def region_box(size: Tuple[int, int], region: Optional[Region]) -> BBox:
    """Resolve a region against an image size, clipping it to the image."""

    width, height = size
    if region is None:
        return (0, 0, width, height)
    strip_w = min(region.width, width)
    strip_h = min(region.height, height)
    top = (height - strip_h) // 2
    left = width - strip_w if region.side == "east" else 0
    return (left, top, left + strip_w, top + strip_h)


class StatsProvider:
    """Interface shared by the statistics backends."""

    name = "base"

    def check(self) -> None:
        """Raise ProviderUnavailable when the backend cannot run at all."""

    def region_stats(self, path: Path, region: Optional[Region] = None) -> RegionStats:
        raise NotImplementedError

    def region_dissimilarity(
        self,
        path_a: Path,
        region_a: Optional[Region],
        path_b: Path,
        region_b: Optional[Region],
    ) -> float:
        raise NotImplementedError

    def concat_horizontal(self, paths: Sequence[Path], out_path: Path) -> Path:
        raise NotImplementedError


def open_image(path: Path) -> Image.Image:
    """Decode an image fully and detach it from the file handle."""

    try:
        with Image.open(path) as opened:
            opened.load()
            return opened.copy()
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise UnreadableImage(f"Failed to read image {path}: {exc}") from exc


def to_eight_bit(image: Image.Image) -> Image.Image:
    """
    Scale 16-bit greyscale down to 8-bit ``L``.

    A plain ``convert("L")`` or ``convert("RGB")`` clips every sample above
    255, so a mid-grey 16-bit scan would read as solid white.
    """

    return image.convert("I").point(lambda value: value * (1 / 256)).convert("L")


def flatten(image: Image.Image) -> Image.Image:
    """Composite transparency onto white and return an RGB image."""

    if image.mode in HIGH_BIT_MODES:
        return to_eight_bit(image).convert("RGB")
    if image.mode in {"RGBA", "LA", "PA"} or (
        image.mode == "P" and "transparency" in image.info
    ):
        rgba = image.convert("RGBA")
        background = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        return Image.alpha_composite(background, rgba).convert("RGB")
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def save_image(image: Image.Image, out_path: Path) -> Path:
    """
    Save with a format picked from the suffix.

    JPEG output is flattened. 16-bit greyscale is kept only for PNG, which is
    the one output format that stores it.
    """

    suffix = out_path.suffix.lower()
    try:
        if suffix in JPEG_SUFFIXES:
            flatten(image).save(out_path, quality=95)
        elif image.mode in HIGH_BIT_MODES and suffix != ".png":
            to_eight_bit(image).save(out_path)
        else:
            image.save(out_path)
    except (OSError, ValueError) as exc:
        raise WriteFailure(f"Failed to write image {out_path}: {exc}") from exc
    return out_path


class PillowStatsProvider(StatsProvider):
    """Native backend built on Pillow's ImageStat and ImageChops."""

    name = "pillow"

    def region_stats(self, path: Path, region: Optional[Region] = None) -> RegionStats:
        image = open_image(path)
        gray = flatten(image).crop(region_box(image.size, region)).convert("L")
        stat = ImageStat.Stat(gray)
        return RegionStats(
            mean=stat.mean[0] * _QUANTUM_SCALE,
            stddev=stat.stddev[0] * _QUANTUM_SCALE,
        )

    def region_dissimilarity(
        self,
        path_a: Path,
        region_a: Optional[Region],
        path_b: Path,
        region_b: Optional[Region],
    ) -> float:
        image_a = open_image(path_a)
        image_b = open_image(path_b)
        strip_a = flatten(image_a).crop(region_box(image_a.size, region_a))
        strip_b = flatten(image_b).crop(region_box(image_b.size, region_b))

        # Pages of different heights give strips of different sizes.
        common = (min(strip_a.width, strip_b.width), min(strip_a.height, strip_b.height))
        if strip_a.size != common:
            strip_a = strip_a.crop((0, 0, *common))
        if strip_b.size != common:
            strip_b = strip_b.crop((0, 0, *common))

        diff = ImageStat.Stat(ImageChops.difference(strip_a, strip_b))
        score = sum(diff.mean) / len(diff.mean) / 255.0
        return min(1.0, max(0.0, score))

    def concat_horizontal(self, paths: Sequence[Path], out_path: Path) -> Path:
        images = [open_image(path) for path in paths]
        modes = {image.mode for image in images}
        if len(modes) != 1 or modes & ({"P", "1"} | HIGH_BIT_MODES):
            images = [flatten(image) for image in images]
        mode = images[0].mode

        width = sum(image.width for image in images)
        height = max(image.height for image in images)
        canvas = Image.new(mode, (width, height), "white")
        offset_x = 0
        for image in images:
            canvas.paste(image, (offset_x, 0))
            offset_x += image.width
        return save_image(canvas, out_path)


_MAE_PATTERN = re.compile(r"\(([0-9.eE+-]+)\)")


class MagickStatsProvider(StatsProvider):
    """
    Backend that shells out to an ImageMagick 7 ``magick`` binary.

    Each call is one blocking process; ``timeout_s`` bounds a stalled call.
    """

    name = "magick"

    def __init__(self, binary: str = "magick", timeout_s: Optional[float] = None) -> None:
        self.binary = binary
        self.timeout_s = timeout_s

    def check(self) -> None:
        if shutil.which(self.binary) is None:
            raise ProviderUnavailable(
                f"ImageMagick binary '{self.binary}' was not found on PATH."
            )
        result = self._run(["-version"], subject=self.binary)
        if result.returncode != 0:
            raise ProviderUnavailable(
                f"ImageMagick binary '{self.binary}' failed: {result.stderr.strip()}"
            )

    def _run(self, args: List[str], subject: object) -> subprocess.CompletedProcess:
        command = [self.binary, *args]
        try:
            return subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ProviderUnavailable(f"Failed to execute {self.binary}: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise UnreadableImage(
                f"{self.binary} timed out after {self.timeout_s}s on {subject}"
            ) from exc

    @staticmethod
    def _crop_args(region: Optional[Region]) -> List[str]:
        if region is None:
            return []
        gravity = "East" if region.side == "east" else "West"
        return ["-gravity", gravity, "-crop", f"{region.width}x{region.height}+0+0", "+repage"]

    def region_stats(self, path: Path, region: Optional[Region] = None) -> RegionStats:
        result = self._run(
            [
                str(path),
                *self._crop_args(region),
                "-colorspace",
                "Gray",
                "-format",
                "%[mean] %[standard-deviation] %[fx:QuantumRange]",
                "info:",
            ],
            subject=path,
        )
        if result.returncode != 0:
            raise UnreadableImage(f"Failed to measure {path}: {result.stderr.strip()}")
        try:
            mean, stddev, quantum = (float(value) for value in result.stdout.split()[:3])
        except ValueError as exc:
            raise UnreadableImage(
                f"Unexpected statistics output for {path}: {result.stdout!r}"
            ) from exc
        scale = QUANTUM_MAX / quantum if quantum > 0 else 1.0
        return RegionStats(mean=mean * scale, stddev=stddev * scale)

    def _size(self, path: Path) -> Tuple[int, int]:
        result = self._run([str(path), "-format", "%w %h", "info:"], subject=path)
        if result.returncode != 0:
            raise UnreadableImage(f"Failed to read size of {path}: {result.stderr.strip()}")
        width, height = (int(value) for value in result.stdout.split()[:2])
        return width, height

    def _extract(self, path: Path, region: Optional[Region], out_path: Path) -> None:
        result = self._run([str(path), *self._crop_args(region), str(out_path)], subject=path)
        if result.returncode != 0:
            raise UnreadableImage(f"Failed to crop {path}: {result.stderr.strip()}")

    def _extract_common(self, strip: Path, geometry: str) -> None:
        result = self._run([str(strip), "-crop", geometry, "+repage", str(strip)], subject=strip)
        if result.returncode != 0:
            raise UnreadableImage(f"Failed to trim {strip}: {result.stderr.strip()}")

    def region_dissimilarity(
        self,
        path_a: Path,
        region_a: Optional[Region],
        path_b: Path,
        region_b: Optional[Region],
    ) -> float:
        with tempfile.TemporaryDirectory(prefix="manga_prep_strips_") as tmp:
            strip_a = Path(tmp) / "a.png"
            strip_b = Path(tmp) / "b.png"
            self._extract(path_a, region_a, strip_a)
            self._extract(path_b, region_b, strip_b)

            size_a = self._size(strip_a)
            size_b = self._size(strip_b)
            if size_a != size_b:
                common = f"{min(size_a[0], size_b[0])}x{min(size_a[1], size_b[1])}+0+0"
                for strip in (strip_a, strip_b):
                    self._extract_common(strip, common)

            # compare exits 1 when the images differ; only 2 is an error.
            result = self._run(
                ["compare", "-metric", "MAE", str(strip_a), str(strip_b), "null:"],
                subject=f"{path_a} / {path_b}",
            )
            if result.returncode > 1:
                raise UnreadableImage(
                    f"Failed to compare {path_a} and {path_b}: {result.stderr.strip()}"
                )
        match = _MAE_PATTERN.search(result.stderr) or _MAE_PATTERN.search(result.stdout)
        if match is None:
            raise UnreadableImage(
                f"Unexpected compare output for {path_a} and {path_b}: {result.stderr!r}"
            )
        return min(1.0, max(0.0, float(match.group(1))))

    def concat_horizontal(self, paths: Sequence[Path], out_path: Path) -> Path:
        args = [str(path) for path in paths]
        args.append("+append")
        if out_path.suffix.lower() in JPEG_SUFFIXES:
            args.extend(["-quality", "95"])
        args.append(str(out_path))
        result = self._run(args, subject=", ".join(str(path) for path in paths))
        if result.returncode != 0:
            raise UnreadableImage(
                f"Failed to append {', '.join(str(p) for p in paths)}: {result.stderr.strip()}"
            )
        return out_path


def get_provider(name: str, timeout_s: Optional[float] = None) -> StatsProvider:
    """Build a provider by config name."""

    if name == "pillow":
        return PillowStatsProvider()
    if name == "magick":
        return MagickStatsProvider(timeout_s=timeout_s)
    raise ProviderUnavailable(f"Unknown image statistics provider: {name}")
