"""
Prepare a folder of page images: drop blank pages, merge spreads.

The run is two-phase. Every page is classified first, so pairing only ever
sees content pages. Then pairs are decided and the output set is written into
a staging area that replaces the output directory in one step.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .analyzer import UNREADABLE, decide_pairs, pair_pages
from .assembler import (
    MERGED,
    UnitResult,
    check_output_dir,
    create_staging_dir,
    discard_staging,
    finalize_names,
    plan_output_units,
    plan_passthrough_units,
    promote_staging,
    write_output_unit,
)
from .catalog import catalog_directory
from .classifier import classify_pages
from .config import Thresholds
from .manifest import ManifestRecorder
from .stats import StatsProvider
from .utils import (
    UserError,
    WriteFailure,
    ensure_dir_path,
    ensure_input_dir,
    ensure_separate_dirs,
)


@dataclass
class PipelineReport:
    """Aggregate counts for one run."""

    total_pages: int = 0
    blank_skipped: int = 0
    pairs_merged: int = 0
    pairs_separated: int = 0
    singleton_emitted: int = 0
    pages_copied: int = 0
    unreadable_pages: int = 0
    failed_pairs: int = 0
    output_files: List[str] = field(default_factory=list)
    status: str = "ok"

    @property
    def content_pages(self) -> int:
        return self.total_pages - self.blank_skipped

    @property
    def output_units(self) -> int:
        return (
            self.pairs_merged
            + 2 * self.pairs_separated
            + self.singleton_emitted
            + self.pages_copied
        )

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["content_pages"] = self.content_pages
        data["output_units"] = self.output_units
        return data


def run_pipeline(
    in_dir: Path,
    out_dir: Path,
    *,
    provider: StatsProvider,
    thresholds: Optional[Thresholds] = None,
    spread_detection: bool = True,
    right_to_left: bool = False,
    workers: int = 1,
    output_format: Optional[str] = None,
    prefix: str = "",
    overwrite: bool = False,
    dry_run: bool = False,
    manifest_path: Optional[Path] = None,
    command_string: str = "",
    options: Optional[Dict[str, Any]] = None,
    recorder: Optional[ManifestRecorder] = None,
) -> PipelineReport:
    """
    Run the whole blank-filter and spread-merge pass over one directory.

    Per-page and per-pair problems degrade to the safe default (keep the page,
    keep the pair separate) and are counted. Directory-level problems raise a
    UserError and leave no output behind.
    """

    thresholds = thresholds or Thresholds()
    options = options or {}
    if recorder is None:
        recorder = ManifestRecorder(
            command=command_string,
            options=options,
            inputs={"in_dir": str(in_dir), "spread_detection": spread_detection},
            outputs={"out_dir": str(out_dir), "manifest": str(manifest_path)},
            dry_run=dry_run,
            tool_version=str(options.get("version", "0.0.0")),
            verbosity=str(options.get("verbosity", "normal")),
        )

    report = PipelineReport()
    staging_dir: Optional[Path] = None
    error_message: str | None = None

    try:
        ensure_input_dir(in_dir)
        ensure_dir_path(out_dir, "Output directory")
        ensure_separate_dirs(in_dir, out_dir)
        if not dry_run:
            check_output_dir(out_dir, overwrite)

        provider.check()
        recorder.inputs["provider"] = provider.name

        pages = catalog_directory(in_dir)
        report.total_pages = len(pages)
        recorder.inputs["files_found"] = len(pages)
        if not pages:
            recorder.log(f"No page images found in {in_dir}")
            report.status = "no-matches"
            return report

        recorder.log(f"Classifying {len(pages)} page(s) with {provider.name}.")
        content = classify_pages(pages, provider, thresholds, recorder)
        report.blank_skipped = len(pages) - len(content)
        report.unreadable_pages = recorder.count_actions("classify_page", "unreadable")

        if spread_detection:
            pairs, singleton = pair_pages(content)
            recorder.log(f"Checking {len(pairs)} page pair(s) for spreads.")
            decisions = decide_pairs(pairs, provider, thresholds, right_to_left, workers)
            for (left, right), decision in zip(pairs, decisions):
                if decision.merge:
                    report.pairs_merged += 1
                    recorder.log(f"Merging pages {left.name} and {right.name}")
                else:
                    report.pairs_separated += 1
                if decision.reason == UNREADABLE:
                    report.failed_pairs += 1
                    recorder.warning(f"Keeping pair separate: {decision.error}")
                recorder.add_action(
                    action="decide_pair",
                    status="merge" if decision.merge else "separate",
                    left=str(left.path),
                    right=str(right.path),
                    reason=decision.reason,
                    left_mean=decision.left_mean,
                    right_mean=decision.right_mean,
                    score=decision.score,
                )
            report.singleton_emitted = 1 if singleton is not None else 0
            units = plan_output_units(content, decisions)
        else:
            recorder.log("Spread detection disabled; copying content pages through.")
            report.pages_copied = len(content)
            units = plan_passthrough_units(content)

        if dry_run:
            recorder.log(f"[dry-run] Would write {len(units)} output unit(s) to {out_dir}")
            for unit in units:
                recorder.add_action(
                    action="write_unit",
                    status="dry-run",
                    kind=unit.kind,
                    slot=unit.slot,
                    inputs=[str(page.path) for page in unit.pages],
                )
            report.status = "dry-run"
            return report

        staging_dir = create_staging_dir(out_dir)
        results: List[UnitResult] = []
        for unit in units:
            result = write_output_unit(
                unit,
                provider,
                staging_dir,
                right_to_left=right_to_left,
                output_format=output_format,
            )
            results.append(result)
            if unit.kind == MERGED and result.fell_back:
                report.pairs_merged -= 1
                report.pairs_separated += 1
                report.failed_pairs += 1
                recorder.warning(f"Merge failed, writing pages separately: {result.error}")
            recorder.add_action(
                action="write_unit",
                status="fallback" if result.fell_back else "written",
                kind=unit.kind,
                slot=unit.slot,
                inputs=[str(page.path) for page in unit.pages],
            )

        final_paths = finalize_names(results, staging_dir, prefix)
        promote_staging(staging_dir, out_dir, overwrite)
        staging_dir = None
        report.output_files = [str(out_dir / path.name) for path in final_paths]
        recorder.add_action(
            action="commit",
            status="written",
            out_dir=str(out_dir),
            files=len(final_paths),
        )
        recorder.log(f"Wrote {len(final_paths)} page image(s) to {out_dir}")
    except KeyboardInterrupt:
        error_message = "Interrupted; no output was written."
        report.status = "interrupted"
        recorder.log(error_message, level="error")
        raise
    except Exception as exc:  # pragma: no cover - includes validation and runtime errors
        if isinstance(exc, UserError):
            error_message = str(exc)
        else:
            error_message = f"Failed to prepare pages in {in_dir}: {exc}"
        report.status = "error"
        recorder.log(error_message, level="error")
        recorder.add_action(action="prepare", status="error", error=error_message)
        if isinstance(exc, UserError):
            raise
        raise UserError(error_message) from exc
    finally:
        discard_staging(staging_dir)
        summary = report.as_dict()
        if error_message is not None:
            summary["error"] = error_message
        # The page output is already settled here, committed or not.
        try:
            recorder.write_manifest(manifest_path, summary)
        except WriteFailure as exc:
            recorder.log(str(exc), level="error")

    return report
