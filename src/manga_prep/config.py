"""
Configuration helpers for YAML-backed command options.

The decision thresholds live here too. They were tuned by eye on real scans,
so the defaults are kept exactly as found and only change through a config
file or flag.
"""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .utils import UserError, ensure_file_exists, validate_positive_int, validate_range


QUANTUM_MAX = 65535
OUTPUT_FORMATS = {None, "jpg", "png", "webp"}
PROVIDERS = {"pillow", "magick"}

DEFAULT_PREPARE: dict[str, Any] = {
    "spread_detection": True,
    "provider": "pillow",
    "provider_timeout_s": None,
    "workers": 1,
    "right_to_left": False,
    "output_format": None,
    "prefix": "",
    "blank_mean_min": 65000,
    "blank_stddev_max": 500,
    "edge_bright_min": 65000,
    "edge_dark_max": 500,
    "continuity_max": 0.4,
    "probe_strip_width": 5,
    "probe_strip_height": 100,
    "compare_strip_width": 10,
    "compare_strip_height": 200,
    "overwrite": False,
    "dry_run": False,
    "manifest": None,
}

THRESHOLD_KEYS = (
    "blank_mean_min",
    "blank_stddev_max",
    "edge_bright_min",
    "edge_dark_max",
    "continuity_max",
    "probe_strip_width",
    "probe_strip_height",
    "compare_strip_width",
    "compare_strip_height",
)


@dataclass(frozen=True)
class Thresholds:
    """Fixed decision constants for blank detection and spread matching."""

    blank_mean_min: float = 65000
    blank_stddev_max: float = 500
    edge_bright_min: float = 65000
    edge_dark_max: float = 500
    continuity_max: float = 0.4
    probe_strip_width: int = 5
    probe_strip_height: int = 100
    compare_strip_width: int = 10
    compare_strip_height: int = 200

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> "Thresholds":
        """Build thresholds from a merged config, validating every value."""

        for key in ("blank_mean_min", "blank_stddev_max", "edge_bright_min", "edge_dark_max"):
            validate_range(cfg[key], f"config.{key}", 0, QUANTUM_MAX)
        validate_range(cfg["continuity_max"], "config.continuity_max", 0.0, 1.0)
        for key in (
            "probe_strip_width",
            "probe_strip_height",
            "compare_strip_width",
            "compare_strip_height",
        ):
            validate_positive_int(cfg[key], f"config.{key}")
        return cls(**{key: cfg[key] for key in THRESHOLD_KEYS})


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file into a dictionary."""

    ensure_file_exists(path, "Config file")
    try:
        with path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise UserError(f"Failed to parse YAML config {path}: {exc}") from exc
    except OSError as exc:
        raise UserError(f"Failed to read config {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise UserError(f"Config {path} must contain a YAML mapping/object at top level.")
    return loaded


def deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """
    Recursively merge dictionaries where overlay values win.
    """

    merged = deepcopy(base)
    for key, value in overlay.items():
        if (
            key in merged
            and isinstance(merged[key], dict)
            and isinstance(value, dict)
        ):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


def validate_keys(cfg: dict[str, Any], allowed: set[str], ctx: str) -> None:
    """
    Validate dictionary keys and fail fast on unknown entries.
    """

    unknown = sorted(key for key in cfg.keys() if key not in allowed)
    if unknown:
        allowed_list = ", ".join(sorted(allowed))
        unknown_list = ", ".join(unknown)
        raise UserError(
            f"Unknown keys in {ctx}: {unknown_list}. Allowed keys: {allowed_list}."
        )


def validate_prepare_options(cfg: dict[str, Any]) -> None:
    """Check the non-threshold prepare options."""

    if cfg["provider"] not in PROVIDERS:
        raise UserError("config.provider must be one of: magick, pillow.")
    if cfg["output_format"] not in OUTPUT_FORMATS:
        raise UserError("config.output_format must be one of: jpg, png, webp (or null).")
    validate_positive_int(cfg["workers"], "config.workers")
    timeout = cfg["provider_timeout_s"]
    if timeout is not None and (
        isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
    ):
        raise UserError("config.provider_timeout_s must be a positive number (or null).")
    if not isinstance(cfg["prefix"], str) or any(sep in cfg["prefix"] for sep in "/\\"):
        raise UserError("config.prefix must be a plain filename prefix.")


def dump_default_prepare_yaml() -> str:
    """Serialize wrapped prepare defaults as YAML."""

    return yaml.safe_dump({"prepare": DEFAULT_PREPARE}, sort_keys=False).rstrip()
