"""
Shared utility helpers.

This module keeps the "sharp edges" (errors and path validation) in one place
so the rest of the code can stay focused on page images.
"""

from __future__ import annotations

from pathlib import Path


class UserError(Exception):
    """Raised for user-facing problems that should show a clear message."""


class UnreadableImage(UserError):
    """A single page image could not be decoded or measured."""


class WriteFailure(UserError):
    """The output location could not be written. Always fatal for a run."""


class ProviderUnavailable(UserError):
    """The image statistics backend cannot be used at all."""


def normalize_path(value: str) -> Path:
    """
    Convert user input to a Path.

    We do not resolve() here because we want to preserve relative paths in
    manifests and error messages.
    """

    return Path(value).expanduser()


def ensure_file_exists(path: Path, label: str) -> Path:
    """Validate that a path exists and is a file."""

    if not path.exists():
        raise UserError(f"{label} not found: {path}")
    if not path.is_file():
        raise UserError(f"{label} is not a file: {path}")
    return path


def ensure_input_dir(path: Path) -> Path:
    """Validate that the page source directory exists."""

    if not path.exists() or not path.is_dir():
        raise UserError(f"Input directory not found: {path}")
    return path


def ensure_dir(path: Path, dry_run: bool) -> None:
    """Create a directory if needed, unless this is a dry-run."""

    if dry_run:
        return
    path.mkdir(parents=True, exist_ok=True)


def ensure_dir_path(path: Path, label: str) -> None:
    """Ensure a path is either a directory or does not exist yet."""

    if path.exists() and not path.is_dir():
        raise UserError(f"{label} is not a directory: {path}")


def ensure_separate_dirs(in_dir: Path, out_dir: Path) -> None:
    """
    Refuse output locations that overlap the source pages.

    The output directory is replaced wholesale on commit, so it must never be
    the input directory or live inside it.
    """

    source = in_dir.resolve()
    target = out_dir.resolve()
    if target == source:
        raise UserError("Output directory is the same as input.")
    if source in target.parents:
        raise UserError(f"Output directory must not be inside the input directory: {out_dir}")
    if target in source.parents:
        raise UserError(f"Input directory must not be inside the output directory: {in_dir}")


def validate_positive_int(value: int, label: str) -> int:
    """Common validation for options like --workers or strip sizes."""

    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise UserError(f"{label} must be a positive integer.")
    return value


def validate_range(value: float, label: str, low: float, high: float) -> float:
    """Require a number inside the inclusive range [low, high]."""

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise UserError(f"{label} must be a number.")
    if value < low or value > high:
        raise UserError(f"{label} must be in the range [{low}, {high}].")
    return value
