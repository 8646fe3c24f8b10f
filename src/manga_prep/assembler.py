"""
Write output pages: merged spreads, separate pages and the odd last page.

Why this module exists:
- Output order must survive a plain lexical sort of filenames, so names are
  zero-padded counters sized to the real output count.
- A run either commits its whole output set or leaves nothing behind. Units
  are written into a staging directory next to the output directory and the
  staging directory is renamed into place at the end.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import os
import shutil
import tempfile
from typing import List, Optional, Sequence, Tuple
from uuid import uuid4

from .analyzer import MergeDecision, pair_pages
from .catalog import Page
from .stats import StatsProvider, open_image, save_image
from .utils import UnreadableImage, UserError, WriteFailure


MERGED = "merged"
SEPARATE = "separate"
SINGLETON = "singleton"
_STAGE_SUBDIR = ".units"
_FORMAT_ALIASES = {".jpeg": ".jpg"}


@dataclass(frozen=True)
class OutputUnit:
    """One planned output image; ``slot`` is its position in reading order."""

    kind: str
    pages: Tuple[Page, ...]
    slot: int


@dataclass
class UnitResult:
    unit: OutputUnit
    staged: List[Path] = field(default_factory=list)
    fell_back: bool = False
    error: Optional[str] = None


def output_digits(count: int) -> int:
    """
    Zero-padding width for output names.

    Wide enough for the largest counter, never below 3 so small books still
    get names like 001.jpg.
    """

    return max(3, len(str(max(count, 0))))


def plan_output_units(
    content_pages: List[Page],
    decisions: Sequence[MergeDecision],
) -> List[OutputUnit]:
    """
    Turn content pages and per-pair decisions into ordered output units.

    ``decisions[i]`` belongs to the i-th consecutive pair. Slots come from
    position alone, so units can be written in any order.
    """

    pairs, singleton = pair_pages(content_pages)
    if len(decisions) != len(pairs):
        raise ValueError(f"Expected {len(pairs)} decisions, got {len(decisions)}.")

    units: List[OutputUnit] = []
    for pair_index, (left, right) in enumerate(pairs):
        if decisions[pair_index].merge:
            units.append(OutputUnit(MERGED, (left, right), len(units)))
        else:
            units.append(OutputUnit(SEPARATE, (left,), len(units)))
            units.append(OutputUnit(SEPARATE, (right,), len(units)))
    if singleton is not None:
        units.append(OutputUnit(SINGLETON, (singleton,), len(units)))
    return units


def plan_passthrough_units(content_pages: List[Page]) -> List[OutputUnit]:
    """One separate unit per content page, used when spread detection is off."""

    return [OutputUnit(SEPARATE, (page,), slot) for slot, page in enumerate(content_pages)]


def _normalized_suffix(suffix: str) -> str:
    lowered = suffix.lower()
    return _FORMAT_ALIASES.get(lowered, lowered)


def _output_suffix(page: Page, output_format: Optional[str]) -> str:
    if output_format:
        return f".{output_format}"
    return _normalized_suffix(page.path.suffix)


def _byte_copy(source: Path, out_path: Path) -> Path:
    try:
        shutil.copyfile(source, out_path)
    except OSError as exc:
        raise WriteFailure(f"Failed to copy {source} to {out_path}: {exc}") from exc
    return out_path


def _copy_page(page: Page, out_path: Path) -> Path:
    """
    Byte copy when the format is unchanged, otherwise re-encode.

    A page that cannot be decoded is still copied as-is, keeping its own
    suffix, so it does not vanish from the output.
    """

    source_suffix = _normalized_suffix(page.path.suffix)
    if source_suffix == out_path.suffix:
        return _byte_copy(page.path, out_path)
    try:
        image = open_image(page.path)
    except UnreadableImage:
        return _byte_copy(page.path, out_path.with_suffix(source_suffix))
    return save_image(image, out_path)


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def create_staging_dir(out_dir: Path) -> Path:
    """Create an empty staging directory on the same filesystem as out_dir."""

    try:
        out_dir.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(
            tempfile.mkdtemp(prefix=f".{out_dir.name}.staging-", dir=str(out_dir.parent))
        )
        # mkdtemp is always 0700; the committed folder gets normal permissions.
        os.chmod(staging, 0o777 & ~_current_umask())
        (staging / _STAGE_SUBDIR).mkdir()
    except OSError as exc:
        raise WriteFailure(f"Cannot create staging area next to {out_dir}: {exc}") from exc
    return staging


def write_output_unit(
    unit: OutputUnit,
    provider: StatsProvider,
    staging_dir: Path,
    right_to_left: bool = False,
    output_format: Optional[str] = None,
) -> UnitResult:
    """
    Write one unit into the staging area.

    A merge whose images cannot be decoded falls back to two separate pages.
    Write errors propagate as WriteFailure.
    """

    stage = staging_dir / _STAGE_SUBDIR
    first = unit.pages[0]
    suffix = _output_suffix(first, output_format)
    result = UnitResult(unit=unit)

    if unit.kind == MERGED:
        out_path = stage / f"{unit.slot:08d}-0{suffix}"
        ordered = list(reversed(unit.pages)) if right_to_left else list(unit.pages)
        try:
            provider.concat_horizontal([page.path for page in ordered], out_path)
        except UnreadableImage as exc:
            out_path.unlink(missing_ok=True)
            result.fell_back = True
            result.error = str(exc)
        else:
            result.staged.append(out_path)
            return result

    for part, page in enumerate(unit.pages, start=1):
        page_suffix = _output_suffix(page, output_format)
        out_path = stage / f"{unit.slot:08d}-{part}{page_suffix}"
        result.staged.append(_copy_page(page, out_path))
    return result


def finalize_names(
    results: Sequence[UnitResult],
    staging_dir: Path,
    prefix: str = "",
) -> List[Path]:
    """
    Give staged files their final gapless names, in slot order.

    Returns the final paths relative to the staging directory root.
    """

    staged = [path for result in sorted(results, key=lambda r: r.unit.slot) for path in result.staged]
    digits = output_digits(len(staged))
    final_paths: List[Path] = []
    try:
        for number, path in enumerate(staged, start=1):
            target = staging_dir / f"{prefix}{number:0{digits}d}{path.suffix}"
            path.rename(target)
            final_paths.append(target)
        (staging_dir / _STAGE_SUBDIR).rmdir()
    except OSError as exc:
        raise WriteFailure(f"Failed to name output files in {staging_dir}: {exc}") from exc
    return final_paths


def check_output_dir(out_dir: Path, overwrite: bool) -> None:
    """An existing, non-empty output directory is only replaced on request."""

    if out_dir.exists() and any(out_dir.iterdir()) and not overwrite:
        raise UserError(
            f"Output directory is not empty: {out_dir}. Use --overwrite to replace it."
        )


def promote_staging(staging_dir: Path, out_dir: Path, overwrite: bool) -> Path:
    """
    Move the finished staging directory onto out_dir with directory renames.

    A previous out_dir is swapped aside first and only deleted once the new
    output is in place.
    """

    check_output_dir(out_dir, overwrite)
    backup: Optional[Path] = None
    try:
        if out_dir.exists():
            backup = out_dir.with_name(f".{out_dir.name}.old-{uuid4().hex}")
            out_dir.rename(backup)
        try:
            staging_dir.rename(out_dir)
        except OSError:
            if backup is not None:
                backup.rename(out_dir)
                backup = None
            raise
    except OSError as exc:
        raise WriteFailure(f"Failed to commit output to {out_dir}: {exc}") from exc

    if backup is not None:
        shutil.rmtree(backup, ignore_errors=True)
    return out_dir


def discard_staging(staging_dir: Optional[Path]) -> None:
    """Remove a staging directory and everything in it."""

    if staging_dir is not None and staging_dir.exists():
        shutil.rmtree(staging_dir, ignore_errors=True)
