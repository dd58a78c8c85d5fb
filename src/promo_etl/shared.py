"""promo_etl.shared

Shared utilities used by the import pipeline and the CLI.
Includes the exception taxonomy, RejectWriter, ImportStats counters,
header normalization, and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from promo_etl.normalize import normalize_header


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RowValidationError(ValueError):
    """Raised when a single CSV record fails validation.

    Recovered locally by the controller: the row is skipped and the message
    is appended to ImportStats.errors.
    """

    def __init__(self, line_number: int, field_name: str, message: str) -> None:
        super().__init__(f"line {line_number}: {field_name}: {message}")
        self.line_number = line_number
        self.field_name = field_name
        self.message = message


class BatchError(RuntimeError):
    """Base class for failures that roll back exactly one batch."""

    stage = "batch"

    def __init__(
        self,
        batch_index: int,
        cause: BaseException,
        step: str | None = None,
    ) -> None:
        where = f"{self.stage}/{step}" if step else self.stage
        super().__init__(f"batch {batch_index}: {where} failed: {cause}")
        self.batch_index = batch_index
        self.cause = cause
        self.step = step


class StagingError(BatchError):
    """Raised when the multi-row staging INSERT for a batch fails."""

    stage = "staging"


class MergeError(BatchError):
    """Raised when one of the four merge steps for a batch fails."""

    stage = "merge"


class BatchOverflowError(RuntimeError):
    """Raised when a row is added to an accumulator that is already full."""


class ImportFileError(Exception):
    """Fatal, file-level failure: the whole import is aborted."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    @property
    def path(self) -> Path:
        return self._path

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None
            self._writer = None


# ---------------------------------------------------------------------------
# ImportStats
# ---------------------------------------------------------------------------

@dataclass
class ImportStats:
    filename: str = ""
    # Caller-facing totals
    total_rows: int = 0
    processed_rows: int = 0
    new_users: int = 0
    new_promotions: int = 0
    new_user_promotions: int = 0
    errors: list[str] = field(default_factory=list)
    # Supplemental counters
    rows_rejected: int = 0
    updated_users: int = 0
    updated_promotions: int = 0
    updated_user_promotions: int = 0
    history_rows_inserted: int = 0
    batches_committed: int = 0
    batches_failed: int = 0
    peak_buffered_rows: int = 0

    @property
    def succeeded(self) -> bool:
        """True only when every row landed and no error was recorded."""
        return not self.errors and self.processed_rows == self.total_rows

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "errors"}
        d["succeeded"] = self.succeeded
        d["errors"] = list(self.errors)
        return d


# ---------------------------------------------------------------------------
# Header normalization
# ---------------------------------------------------------------------------

def normalize_headers(raw: dict[str | None, Any]) -> dict[str, Any]:
    """Return a new dict with header keys trimmed and lower-cased.

    Extra unnamed values (DictReader's restkey ``None``) are dropped.
    """
    return {normalize_header(k): v for k, v in raw.items() if k is not None}


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    stats: ImportStats,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "stats": stats.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
