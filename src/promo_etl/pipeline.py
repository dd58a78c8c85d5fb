"""promo_etl.pipeline

Entry points consumed by outer layers (CLI, upload handlers):

  import_csv_stream - binary stream positioned at the start of a CSV
  import_csv_file   - uploaded file on disk; validated, imported, removed

Both return ImportStats.  Row and batch failures are reported in
``stats.errors``; only file-level failures raise (ImportFileError).
"""

from __future__ import annotations

import csv
import io
import logging
from datetime import datetime
from pathlib import Path
from typing import BinaryIO

import psycopg
from psycopg.pq import TransactionStatus

from promo_etl.cleanup import remove_source_file
from promo_etl.config import ImportSettings
from promo_etl.controller import ImportController
from promo_etl.normalize import normalize_header
from promo_etl.rows import REQUIRED_HEADERS
from promo_etl.shared import ImportFileError, ImportStats, RejectWriter

log = logging.getLogger(__name__)

ALLOWED_SUFFIXES = {".csv"}


def validate_upload(path: Path, settings: ImportSettings) -> None:
    """Reject missing, non-CSV or oversized uploads before any parsing."""
    if not path.is_file():
        raise ImportFileError(f"file not found: {path}")
    if path.suffix.lower() not in ALLOWED_SUFFIXES:
        raise ImportFileError(f"only .csv files are accepted, got {path.name!r}")
    size = path.stat().st_size
    if size > settings.max_file_size:
        raise ImportFileError(
            f"file too large: {size} bytes exceeds limit of {settings.max_file_size}"
        )


def _check_headers(fieldnames: list[str] | None) -> None:
    if not fieldnames:
        raise ImportFileError("CSV is empty or has no header row")
    present = {normalize_header(h) for h in fieldnames}
    missing = REQUIRED_HEADERS - present
    if missing:
        raise ImportFileError(f"missing required headers: {sorted(missing)}")


def _raise_field_size_limit(max_file_size: int) -> None:
    # One cell may be as large as the whole upload.
    if csv.field_size_limit() < max_file_size:
        csv.field_size_limit(max_file_size)


def import_csv_stream(
    conn: psycopg.Connection | None,
    stream: BinaryIO,
    filename: str,
    *,
    settings: ImportSettings | None = None,
    rejects: RejectWriter | None = None,
    dry_run: bool = False,
    controller: ImportController | None = None,
    now: datetime | None = None,
    promotion_name: str | None = None,
) -> ImportStats:
    """Stream-import one CSV.  Each batch commits in its own transaction.

    ``conn`` must not have a transaction open: batches are committed
    independently, so a surrounding transaction would swallow them.
    The caller's stream is left open.  A non-blank ``promotion_name``
    overrides promocao_nome on every row.
    """
    settings = settings or ImportSettings()
    if conn is not None and conn.info.transaction_status != TransactionStatus.IDLE:
        raise ValueError(
            "import_csv_stream needs an idle connection; commit or roll back first"
        )
    _raise_field_size_limit(settings.max_file_size)
    text = io.TextIOWrapper(stream, encoding="utf-8-sig", newline="")
    try:
        reader = csv.DictReader(text)
        try:
            _check_headers(reader.fieldnames)
        except (UnicodeDecodeError, csv.Error) as exc:
            raise ImportFileError(f"cannot read CSV header: {exc}") from exc

        if controller is None:
            controller = ImportController(
                conn,
                filename,
                batch_size=settings.batch_size,
                policy=settings.merge_policy,
                rejects=rejects,
                dry_run=dry_run,
                now=now,
                promotion_name=promotion_name,
            )

        log.info(
            "Importing %s (batch_size=%d, policy=%s, dry_run=%s, promotion=%s)",
            filename, settings.batch_size, settings.merge_policy.value, dry_run,
            promotion_name or "<from file>",
        )
        try:
            return controller.run(reader)
        except (UnicodeDecodeError, csv.Error) as exc:
            raise ImportFileError(
                f"cannot read CSV after {controller.stats.total_rows} rows: {exc}"
            ) from exc
    finally:
        text.detach()


def import_csv_file(
    conn: psycopg.Connection | None,
    path: Path,
    *,
    settings: ImportSettings | None = None,
    filename: str | None = None,
    rejects: RejectWriter | None = None,
    dry_run: bool = False,
    keep_file: bool = False,
    now: datetime | None = None,
    promotion_name: str | None = None,
) -> ImportStats:
    """Validate and import an uploaded CSV, then delete it.

    The file is removed on success and on every failure path unless
    ``keep_file`` is set.
    """
    settings = settings or ImportSettings()
    try:
        validate_upload(path, settings)
        with path.open("rb") as fh:
            return import_csv_stream(
                conn,
                fh,
                filename or path.name,
                settings=settings,
                rejects=rejects,
                dry_run=dry_run,
                now=now,
                promotion_name=promotion_name,
            )
    except OSError as exc:
        raise ImportFileError(f"cannot read {path}: {exc}") from exc
    finally:
        if not keep_file:
            remove_source_file(path)
