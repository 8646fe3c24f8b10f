"""
Command-line interface for manga-prep.

This file focuses on parsing arguments and dispatching to the real work.
Keeping this separate makes the code easier to read and test.
"""

from __future__ import annotations

import argparse
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict

from . import __version__
from .config import (
    DEFAULT_PREPARE,
    Thresholds,
    deep_merge,
    dump_default_prepare_yaml,
    load_yaml,
    validate_keys,
    validate_prepare_options,
)
from .utils import UserError, ensure_file_exists, normalize_path


TOP_LEVEL_EXAMPLES = """Examples:
  python -m manga_prep prepare --in_dir "work/pages" --out_dir "work/merged"
  python -m manga_prep prepare --in_dir "work/pages" --out_dir "work/pages_clean" --no-spreads
  python -m manga_prep check-pair --left "work/pages/012.jpg" --right "work/pages/013.jpg"
"""

PREPARE_EXAMPLES = """Examples:
  python -m manga_prep prepare --in_dir "work/pages" --out_dir "work/merged"
  python -m manga_prep prepare --in_dir "work/pages" --out_dir "work/merged" --right-to-left --workers 4
  python -m manga_prep prepare --in_dir "work/pages" --out_dir "work/merged" --provider magick --dry-run
  python -m manga_prep prepare --dump-default-config
  python -m manga_prep prepare --in_dir "work/pages" --out_dir "work/merged" --config "prepare.yaml"
"""

CHECK_PAIR_EXAMPLES = """Examples:
  python -m manga_prep check-pair --left "p12.jpg" --right "p13.jpg"
  python -m manga_prep check-pair --left "p12.jpg" --right "p13.jpg" --right-to-left --provider magick
"""

PREPARE_TOP_LEVEL_KEYS = set(DEFAULT_PREPARE.keys())


def _require_bool(value: Any, key: str) -> bool:
    """Require a strict boolean value from config/CLI merge output."""

    if isinstance(value, bool):
        return value
    raise UserError(f"{key} must be true or false.")


def _extract_prepare_section(loaded: Dict[str, Any]) -> Dict[str, Any]:
    """Support either root config keys or a prepare wrapper."""

    if "prepare" in loaded:
        raw_section = loaded["prepare"]
        if not isinstance(raw_section, dict):
            raise UserError("config.prepare must be a mapping/object.")
        section = raw_section
        validate_keys(section, PREPARE_TOP_LEVEL_KEYS, "config.prepare")
    else:
        section = loaded
        validate_keys(section, PREPARE_TOP_LEVEL_KEYS, "config")

    return section


def _build_prepare_effective_config(
    args: argparse.Namespace,
) -> tuple[Dict[str, Any], Path | None]:
    """Resolve defaults < YAML config < explicit CLI flags."""

    effective = deep_merge(DEFAULT_PREPARE, {})
    config_path: Path | None = None
    if hasattr(args, "config"):
        config_path = normalize_path(args.config)
        loaded = load_yaml(config_path)
        yaml_section = _extract_prepare_section(loaded)
        effective = deep_merge(effective, yaml_section)

    raw_args = vars(args)
    cli_top_overrides: Dict[str, Any] = {}
    for key in PREPARE_TOP_LEVEL_KEYS:
        if key in raw_args:
            cli_top_overrides[key] = raw_args[key]

    effective = deep_merge(effective, cli_top_overrides)
    return effective, config_path


def _verbosity_from_args(args: argparse.Namespace) -> str:
    """Resolve global verbosity mode from top-level flags."""

    if getattr(args, "quiet", False):
        return "quiet"
    if getattr(args, "verbose", False):
        return "verbose"
    return "normal"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="manga-prep",
        description="Drop blank pages and merge double-page spreads in page image folders.",
        epilog=TOP_LEVEL_EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=__version__)
    verbosity_group = parser.add_mutually_exclusive_group()
    verbosity_group.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress non-error console logs.",
    )
    verbosity_group.add_argument(
        "--verbose",
        action="store_true",
        help="Show debug-level console logs.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    prepare = subparsers.add_parser(
        "prepare",
        help="Filter blank pages and merge spreads into a new folder.",
        epilog=PREPARE_EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    prepare.add_argument(
        "--in_dir",
        default=argparse.SUPPRESS,
        help="Folder of page images (required unless --dump-default-config).",
    )
    prepare.add_argument(
        "--out_dir",
        default=argparse.SUPPRESS,
        help="Output folder, replaced as a whole (required unless --dump-default-config).",
    )
    prepare.add_argument(
        "--config",
        default=argparse.SUPPRESS,
        help="Optional YAML config for prepare settings.",
    )
    prepare.add_argument(
        "--dump-default-config",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Print default prepare YAML config and exit.",
    )
    prepare.add_argument(
        "--no-spreads",
        dest="spread_detection",
        action="store_false",
        default=argparse.SUPPRESS,
        help="Only drop blank pages; never merge.",
    )
    prepare.add_argument(
        "--provider",
        choices=["pillow", "magick"],
        default=argparse.SUPPRESS,
        help="Image statistics backend (default: pillow).",
    )
    prepare.add_argument(
        "--provider-timeout",
        dest="provider_timeout_s",
        type=float,
        default=argparse.SUPPRESS,
        help="Per-call timeout in seconds for the magick provider.",
    )
    prepare.add_argument(
        "--workers",
        type=int,
        default=argparse.SUPPRESS,
        help="Threads used to compare page pairs (default: 1).",
    )
    prepare.add_argument(
        "--right-to-left",
        dest="right_to_left",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Manga order: the later page goes on the left of a merged spread.",
    )
    prepare.add_argument(
        "--output-format",
        dest="output_format",
        choices=["jpg", "png", "webp"],
        default=argparse.SUPPRESS,
        help="Re-encode outputs to this format (default: keep source format).",
    )
    prepare.add_argument(
        "--prefix",
        default=argparse.SUPPRESS,
        help="Filename prefix for output pages.",
    )
    prepare.add_argument(
        "--overwrite",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Replace a non-empty output folder.",
    )
    prepare.add_argument(
        "--dry-run",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Classify and compare without writing files.",
    )
    prepare.add_argument(
        "--manifest",
        default=argparse.SUPPRESS,
        help="Manifest path (default: <out_dir>.manifest.json).",
    )

    check_pair = subparsers.add_parser(
        "check-pair",
        help="Show the spread decision for two page images.",
        epilog=CHECK_PAIR_EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    check_pair.add_argument("--left", required=True, help="Earlier page in reading order.")
    check_pair.add_argument("--right", required=True, help="Later page in reading order.")
    check_pair.add_argument(
        "--provider",
        choices=["pillow", "magick"],
        default="pillow",
        help="Image statistics backend (default: pillow).",
    )
    check_pair.add_argument(
        "--right-to-left",
        action="store_true",
        help="Compare the edges that touch in manga order.",
    )

    return parser


def _command_string(argv: list[str]) -> str:
    """Reconstruct a command string for the manifest."""

    return subprocess.list2cmdline(argv)


def _command_argv_for_manifest(argv: list[str] | None) -> list[str]:
    """Choose argv used to record manifest command faithfully."""

    if argv is None:
        return list(sys.argv)
    return [sys.argv[0], *argv]


def _default_manifest_path(out_dir: Path) -> Path:
    """Keep the manifest beside the output so the folder holds only pages."""

    return out_dir.with_name(f"{out_dir.name}.manifest.json")


def _print_report(report: Any, verbosity: str) -> None:
    if verbosity == "quiet":
        return
    print(
        f"pages={report.total_pages} blank_skipped={report.blank_skipped} "
        f"merged={report.pairs_merged} separated={report.pairs_separated} "
        f"singleton={report.singleton_emitted} copied={report.pages_copied} "
        f"status={report.status}"
    )


def _run_prepare(args: argparse.Namespace, command_string: str, verbosity: str) -> int:
    if getattr(args, "dump_default_config", False):
        print(dump_default_prepare_yaml())
        return 0

    if not hasattr(args, "in_dir") or not hasattr(args, "out_dir"):
        raise UserError(
            "prepare requires --in_dir and --out_dir unless --dump-default-config is used."
        )

    effective_cfg, config_path = _build_prepare_effective_config(args)
    validate_prepare_options(effective_cfg)
    thresholds = Thresholds.from_config(effective_cfg)

    in_dir = normalize_path(args.in_dir)
    out_dir = normalize_path(args.out_dir)
    manifest_value = effective_cfg.get("manifest")
    manifest_path = (
        normalize_path(str(manifest_value))
        if manifest_value
        else _default_manifest_path(out_dir)
    )

    options = deep_merge(effective_cfg, {})
    options["version"] = __version__
    options["verbosity"] = verbosity
    if config_path is not None:
        options["config_path"] = str(config_path)

    from .pipeline import run_pipeline
    from .stats import get_provider

    provider = get_provider(
        str(effective_cfg["provider"]),
        timeout_s=effective_cfg["provider_timeout_s"],
    )
    report = run_pipeline(
        in_dir,
        out_dir,
        provider=provider,
        thresholds=thresholds,
        spread_detection=_require_bool(effective_cfg["spread_detection"], "config.spread_detection"),
        right_to_left=_require_bool(effective_cfg["right_to_left"], "config.right_to_left"),
        workers=int(effective_cfg["workers"]),
        output_format=effective_cfg["output_format"],
        prefix=str(effective_cfg["prefix"]),
        overwrite=_require_bool(effective_cfg["overwrite"], "config.overwrite"),
        dry_run=_require_bool(effective_cfg["dry_run"], "config.dry_run"),
        manifest_path=manifest_path,
        command_string=command_string,
        options=options,
    )
    _print_report(report, verbosity)
    return 0


def _run_check_pair(args: argparse.Namespace) -> int:
    from .analyzer import decide_merge
    from .catalog import IMAGE_SUFFIXES, build_catalog
    from .stats import get_provider

    left_path = ensure_file_exists(normalize_path(args.left), "Left page")
    right_path = ensure_file_exists(normalize_path(args.right), "Right page")
    for label, path in (("Left page", left_path), ("Right page", right_path)):
        if path.suffix.lower() not in IMAGE_SUFFIXES:
            allowed = ", ".join(sorted(IMAGE_SUFFIXES))
            raise UserError(f"{label} is not a supported image ({allowed}): {path}")
    left, right = (build_catalog([path])[0] for path in (left_path, right_path))

    provider = get_provider(args.provider)
    provider.check()
    decision = decide_merge(left, right, provider, Thresholds(), args.right_to_left)
    verdict = "merge" if decision.merge else "separate"
    details = [f"reason={decision.reason}"]
    if decision.left_mean is not None:
        details.append(f"left_mean={decision.left_mean:.1f}")
        details.append(f"right_mean={decision.right_mean:.1f}")
    if decision.score is not None:
        details.append(f"score={decision.score:.4f}")
    if decision.error:
        details.append(f"error={decision.error}")
    print(f"{verdict} {' '.join(details)}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        command_string = _command_string(_command_argv_for_manifest(argv))
        verbosity = _verbosity_from_args(args)

        if args.command == "prepare":
            return _run_prepare(args, command_string, verbosity)

        if args.command == "check-pair":
            return _run_check_pair(args)

        raise UserError("Unknown command. Use --help for usage.")
    except UserError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130
