"""Structured logging and verbosity levels for Kiln runs."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Any

from rich.console import Console


class Verbosity(IntEnum):
    """Verbosity levels for console output."""

    DEFAULT = 0   # Nothing per target; the caller prints a summary
    VERBOSE = 1   # + per-target status
    DEBUG = 2     # + staleness reasons, timing


@dataclass
class TargetLog:
    """Per-target outcome within one run."""

    name: str
    state: str = "pending"
    seconds: float = 0.0
    reasons: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state,
            "seconds": self.seconds,
            "reasons": list(self.reasons),
            "error": self.error,
        }


@dataclass
class RunLog:
    """Structured log of a complete run.

    The dict format is::

        {
            "run_id": "20260101T120000Z",
            "targets": {
                "data": {"state": "done", "seconds": 0.4, "reasons": [...], ...},
                ...
            },
            "total_built": 3,
            "total_skipped": 1,
            "total_failed": 0,
            "total_blocked": 0,
            "total_time": 1.2,
        }
    """

    run_id: str = ""
    targets: dict[str, TargetLog] = field(default_factory=dict)
    total_time: float = 0.0
    total_built: int = 0
    total_skipped: int = 0
    total_failed: int = 0
    total_blocked: int = 0

    def get_or_create(self, name: str) -> TargetLog:
        """Get existing target log or create a new one."""
        if name not in self.targets:
            self.targets[name] = TargetLog(name=name)
        return self.targets[name]

    def finalize(self) -> None:
        """Compute totals from target data."""
        states = [t.state for t in self.targets.values()]
        self.total_built = states.count("done")
        self.total_skipped = states.count("up_to_date")
        self.total_failed = states.count("failed")
        self.total_blocked = states.count("blocked")

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "targets": {name: t.to_dict() for name, t in self.targets.items()},
            "total_built": self.total_built,
            "total_skipped": self.total_skipped,
            "total_failed": self.total_failed,
            "total_blocked": self.total_blocked,
            "total_time": self.total_time,
        }


class KilnLogger:
    """Structured logger for Kiln runs.

    Writes JSONL log files to log_dir/ and optionally emits console
    output via Rich based on verbosity level. Called only from the
    coordinating thread.
    """

    def __init__(
        self,
        verbosity: Verbosity = Verbosity.DEFAULT,
        log_dir: Path | None = None,
        console: Console | None = None,
    ):
        self.verbosity = verbosity
        self.console = console or Console(stderr=True)
        self.run_log = RunLog(
            run_id=datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ"),
        )
        self._log_file = None
        self._log_path: Path | None = None
        self._starts: dict[str, float] = {}

        if log_dir is not None:
            log_dir = Path(log_dir)
            log_dir.mkdir(parents=True, exist_ok=True)
            self._log_path = log_dir / f"{self.run_log.run_id}.jsonl"
            self._log_file = open(self._log_path, "a")

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def _write_event(self, event: dict[str, Any]) -> None:
        """Write a JSON event to the JSONL log file."""
        if self._log_file is not None:
            event["timestamp"] = datetime.now(timezone.utc).isoformat()
            self._log_file.write(json.dumps(event) + "\n")
            self._log_file.flush()

    def _console_print(self, message: str, min_verbosity: Verbosity) -> None:
        if self.verbosity >= min_verbosity:
            self.console.print(message)

    # -- Run lifecycle --

    def run_start(self, plan_name: str, target_count: int, workers: int = 1) -> None:
        self._write_event({
            "event": "run_start",
            "plan": plan_name,
            "target_count": target_count,
            "workers": workers,
        })
        self._console_print(
            f"[bold]Plan:[/bold] {plan_name} ({target_count} targets, {workers} workers)",
            Verbosity.VERBOSE,
        )

    def run_finish(self, total_time: float) -> None:
        """Log the completion of a run and finalize stats."""
        self.run_log.total_time = total_time
        self.run_log.finalize()

        self._write_event({
            "event": "run_finish",
            "total_time": round(total_time, 3),
            "built": self.run_log.total_built,
            "skipped": self.run_log.total_skipped,
            "failed": self.run_log.total_failed,
            "blocked": self.run_log.total_blocked,
        })
        self.close()

    # -- Target events --

    def target_start(self, name: str, reasons: list[str]) -> None:
        self._starts[name] = time.time()
        entry = self.run_log.get_or_create(name)
        entry.state = "running"
        entry.reasons = list(reasons)

        self._write_event({"event": "target_start", "target": name, "reasons": reasons})
        self._console_print(f"  [yellow]>[/yellow] {name}", Verbosity.VERBOSE)
        self._console_print(f"    [dim]{', '.join(reasons)}[/dim]", Verbosity.DEBUG)

    def target_built(self, name: str, seconds: float) -> None:
        entry = self.run_log.get_or_create(name)
        entry.state = "done"
        entry.seconds = seconds

        self._write_event({"event": "target_built", "target": name, "seconds": round(seconds, 3)})
        self._console_print(f"  [green]+[/green] {name}", Verbosity.VERBOSE)
        self._console_print(f"    [dim]{seconds:.2f}s[/dim]", Verbosity.DEBUG)

    def target_skipped(self, name: str) -> None:
        entry = self.run_log.get_or_create(name)
        entry.state = "up_to_date"

        self._write_event({"event": "target_skipped", "target": name})
        self._console_print(f"  [cyan]=[/cyan] {name} (up to date)", Verbosity.VERBOSE)

    def target_failed(self, name: str, error: str, seconds: float = 0.0) -> None:
        entry = self.run_log.get_or_create(name)
        entry.state = "failed"
        entry.error = error
        entry.seconds = seconds

        self._write_event({"event": "target_failed", "target": name, "error": error})
        self._console_print(f"  [red]x[/red] {name}: {error}", Verbosity.VERBOSE)

    def target_blocked(self, name: str, failed_upstream: str) -> None:
        entry = self.run_log.get_or_create(name)
        entry.state = "blocked"
        entry.reasons = [f"upstream {failed_upstream} failed"]

        self._write_event({"event": "target_blocked", "target": name, "upstream": failed_upstream})
        self._console_print(
            f"  [magenta]-[/magenta] {name} (blocked by {failed_upstream})",
            Verbosity.VERBOSE,
        )

    def close(self) -> None:
        """Close the log file if open."""
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None
