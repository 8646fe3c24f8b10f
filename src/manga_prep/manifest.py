"""
Run manifest recording and logging.

Why this exists:
- Every prepare run writes a JSON manifest with inputs, per-page verdicts,
  per-pair decisions and the final report.
- Logging goes through one place so messages are consistent and captured.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from pathlib import Path
import sys
from typing import Any, Dict, List, Optional, TextIO

from .utils import WriteFailure, ensure_dir


TOOL_NAME = "manga-prep"


def _iso_now() -> str:
    """Return an ISO-8601 timestamp in UTC."""

    return datetime.now(timezone.utc).isoformat()


@dataclass
class ManifestRecorder:
    """
    Collect logs and actions, then write a single manifest JSON file.

    Actions are recorded in reading order: one ``classify_page`` per source
    page, one ``decide_pair`` per pair, one ``write_unit`` per output unit.
    """

    command: str
    options: Dict[str, Any]
    inputs: Dict[str, Any]
    outputs: Dict[str, Any]
    dry_run: bool
    tool_name: str = TOOL_NAME
    tool_version: str = "0.0.0"
    verbosity: str = "normal"
    console_stream: TextIO = field(default_factory=lambda: sys.stderr)
    started_at: str = field(default_factory=_iso_now)
    logs: List[Dict[str, Any]] = field(default_factory=list)
    actions: List[Dict[str, Any]] = field(default_factory=list)

    def log(self, message: str, level: str = "info") -> None:
        """Record a log message and also print it to the console."""

        entry = {"timestamp": _iso_now(), "level": level, "message": message}
        self.logs.append(entry)

        if self.verbosity == "quiet":
            should_print = level == "error"
        elif self.verbosity == "verbose":
            should_print = True
        else:
            should_print = level in {"info", "warning", "error"}

        if should_print:
            rendered = f"[{level}] {message}" if self.verbosity == "verbose" else message
            print(rendered, file=self.console_stream)

    def debug(self, message: str) -> None:
        self.log(message, level="debug")

    def warning(self, message: str) -> None:
        self.log(message, level="warning")

    def add_action(self, action: str, status: str, **details: Any) -> None:
        """
        Add an action record.

        Action types: classify_page, decide_pair, write_unit, commit, prepare.
        """

        entry: Dict[str, Any] = {
            "timestamp": _iso_now(),
            "action": action,
            "status": status,
        }
        entry.update(details)
        self.actions.append(entry)

    def count_actions(self, action: str, status: Optional[str] = None) -> int:
        """Count recorded actions of one type, optionally with one status."""

        return sum(
            1
            for entry in self.actions
            if entry["action"] == action and (status is None or entry["status"] == status)
        )

    def _summarize_actions(self) -> Dict[str, int]:
        """Count actions by status (content, blank, merged, written, ...)."""

        counts: Dict[str, int] = {}
        for action in self.actions:
            status = action.get("status", "unknown")
            counts[status] = counts.get(status, 0) + 1
        return counts

    def build_manifest(self, summary: Dict[str, Any]) -> Dict[str, Any]:
        """Assemble the final manifest structure."""

        return {
            "tool": self.tool_name,
            "version": self.tool_version,
            "command": self.command,
            "started_at": self.started_at,
            "ended_at": _iso_now(),
            "options": self.options,
            "inputs": self.inputs,
            "outputs": self.outputs,
            "summary": summary,
            "action_counts": self._summarize_actions(),
            "actions": self.actions,
            "logs": self.logs,
        }

    def write_manifest(self, path: Optional[Path], summary: Dict[str, Any]) -> None:
        """
        Write the manifest JSON, unless this is a dry-run or no path is set.

        The manifest is treated as output, so dry-run avoids writing it.
        """

        if path is None:
            return
        if self.dry_run:
            self.log(f"[dry-run] Would write manifest to {path}")
            return

        manifest = self.build_manifest(summary)
        try:
            ensure_dir(path.parent, dry_run=False)
            with path.open("w", encoding="utf-8") as handle:
                json.dump(manifest, handle, indent=2, ensure_ascii=True, default=str)
        except OSError as exc:
            raise WriteFailure(f"Failed to write manifest {path}: {exc}") from exc
