"""promo_etl.import_promotions_csv

Unified CLI entrypoint for promotion CSV ingestion.

Modes (--mode):
  import          - stream a users/promotions CSV into the database (default)
  list_imports    - summarize filenames present in staging_import
  import_details  - dump staged rows for one --filename
  sweep_uploads   - delete upload-dir files older than --max-age-hours
  upload_status   - report files and sizes in the upload dir
  purge_uploads   - delete every file in the upload dir

Usage (import):
    python -m promo_etl.import_promotions_csv \\
        --mode import \\
        --db-dsn "$DB_DSN" \\
        --csv-path "uploads/users_2025_10.csv" \\
        --batch-size 5000 \\
        --merge-policy first_write_wins

Settings not given on the command line come from the environment
(UPLOAD_PATH, MAX_FILE_SIZE, IMPORT_BATCH_SIZE, IMPORT_MERGE_POLICY,
CLEANUP_MAX_AGE_HOURS).
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg

from promo_etl.cleanup import (
    purge_upload_dir,
    remove_source_file,
    sweep_upload_dir,
    upload_dir_status,
)
from promo_etl.config import ImportSettings
from promo_etl.merge import MergePolicy
from promo_etl.pipeline import import_csv_file
from promo_etl.shared import ImportFileError, RejectWriter, write_run_report
from promo_etl.staging import get_import_details, list_imports

MODES = [
    "import",
    "list_imports",
    "import_details",
    "sweep_uploads",
    "upload_status",
    "purge_uploads",
]
DB_MODES = {"import", "list_imports", "import_details"}


# ---------------------------------------------------------------------------
# Flag validation
# ---------------------------------------------------------------------------

def _validate_db_flags(mode: str, db_dsn: str | None, run_id: str) -> None:
    if mode in DB_MODES and not db_dsn:
        click.echo(f"[{run_id}] FATAL: {mode} mode requires: --db-dsn", err=True)
        sys.exit(1)


def _validate_import_flags(csv_path: str | None, run_id: str) -> None:
    if not csv_path:
        click.echo(f"[{run_id}] FATAL: import mode requires: --csv-path", err=True)
        sys.exit(1)


def _validate_import_details_flags(filename: str | None, run_id: str) -> None:
    if not filename:
        click.echo(f"[{run_id}] FATAL: import_details mode requires: --filename", err=True)
        sys.exit(1)


def _resolve_settings(
    batch_size: int | None,
    merge_policy: str | None,
    upload_dir: str | None,
    max_age_hours: float | None,
    run_id: str,
) -> ImportSettings:
    try:
        return ImportSettings.from_env().with_overrides(
            batch_size=batch_size,
            merge_policy=merge_policy,
            upload_dir=upload_dir,
            cleanup_max_age_hours=max_age_hours,
        )
    except ValueError as exc:
        click.echo(f"[{run_id}] FATAL: invalid settings: {exc}", err=True)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Unified CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="import",
    type=click.Choice(MODES),
    show_default=True,
    help="Operation to run",
)
@click.option("--db-dsn", default=None, help="PostgreSQL DSN")
# import flags
@click.option("--csv-path", default=None, type=click.Path(), help="[import] Input CSV")
@click.option(
    "--filename",
    default=None,
    help="[import|import_details] Staging tag; defaults to the CSV file name",
)
@click.option("--batch-size", default=None, type=click.IntRange(min=1), help="[import] Rows per staging+merge transaction")
@click.option(
    "--merge-policy",
    default=None,
    type=click.Choice([p.value for p in MergePolicy]),
    help="[import] User conflict rule and staging retention",
)
@click.option(
    "--keep-file/--remove-file",
    default=False,
    show_default=True,
    help="[import] Keep the source CSV after the run",
)
# upload-dir flags
@click.option("--upload-dir", default=None, type=click.Path(), help="[sweep_uploads|upload_status|purge_uploads] Upload directory")
@click.option("--max-age-hours", default=None, type=float, help="[sweep_uploads] Remove files older than this")
@click.option(
    "--promotion-name",
    default=None,
    help="[import] Link every row to this promotion instead of the CSV promocao_nome",
)
@click.option("--limit", default=None, type=click.IntRange(min=1), help="[import_details] Max rows to print")
# shared flags
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/promotion_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging")
def main(
    mode: str,
    db_dsn: str | None,
    csv_path: str | None,
    filename: str | None,
    batch_size: int | None,
    merge_policy: str | None,
    keep_file: bool,
    upload_dir: str | None,
    max_age_hours: float | None,
    promotion_name: str | None,
    limit: int | None,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    verbose: bool,
) -> None:
    """Unified promotion import CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    settings = _resolve_settings(batch_size, merge_policy, upload_dir, max_age_hours, run_id)
    _validate_db_flags(mode, db_dsn, run_id)

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "sweep_uploads":
        removed = sweep_upload_dir(settings.upload_dir, settings.cleanup_max_age_hours)
        click.echo(
            f"[{run_id}] Removed {len(removed)} file(s) older than "
            f"{settings.cleanup_max_age_hours}h from {settings.upload_dir}"
        )
        return

    if mode == "upload_status":
        click.echo(json.dumps(upload_dir_status(settings.upload_dir), indent=2, default=str))
        return

    if mode == "purge_uploads":
        removed, freed = purge_upload_dir(settings.upload_dir)
        click.echo(
            f"[{run_id}] Purged {removed} file(s), "
            f"{freed / (1024 * 1024):.2f} MB freed from {settings.upload_dir}"
        )
        return

    if mode == "list_imports":
        with psycopg.connect(db_dsn, autocommit=True) as conn:
            summaries = list_imports(conn)
        click.echo(json.dumps([s.__dict__ for s in summaries], indent=2, default=str))
        return

    if mode == "import_details":
        _validate_import_details_flags(filename, run_id)
        with psycopg.connect(db_dsn, autocommit=True) as conn:
            rows = get_import_details(conn, filename, limit=limit)
        click.echo(json.dumps(rows, indent=2, default=str))
        return

    # mode == "import"
    _validate_import_flags(csv_path, run_id)
    _run_import(
        run_id=run_id,
        started_at=started_at,
        db_dsn=db_dsn,
        csv_path=Path(csv_path),
        filename=filename,
        settings=settings,
        rejects=RejectWriter(Path(rejects_path)),
        dry_run=dry_run,
        keep_file=keep_file,
        promotion_name=promotion_name,
    )


def _run_import(
    run_id: str,
    started_at: str,
    db_dsn: str,
    csv_path: Path,
    filename: str | None,
    settings: ImportSettings,
    rejects: RejectWriter,
    dry_run: bool,
    keep_file: bool,
    promotion_name: str | None,
) -> None:
    click.echo(
        f"[{run_id}] Importing {csv_path} "
        f"(batch_size={settings.batch_size}, policy={settings.merge_policy.value})"
    )
    if promotion_name:
        click.echo(f"[{run_id}] Linking all rows to promotion {promotion_name!r}")
    try:
        with psycopg.connect(db_dsn, autocommit=True) as conn:
            stats = import_csv_file(
                conn,
                csv_path,
                settings=settings,
                filename=filename,
                rejects=rejects,
                dry_run=dry_run,
                keep_file=keep_file,
                promotion_name=promotion_name,
            )
    except (ImportFileError, ValueError) as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    except psycopg.OperationalError as exc:
        click.echo(f"[{run_id}] FATAL: database unavailable: {exc}", err=True)
        sys.exit(1)
    finally:
        rejects.close()
        # import_csv_file already cleans up; this covers a failed connect.
        if not keep_file:
            remove_source_file(csv_path)

    if dry_run:
        click.echo(f"[{run_id}] [dry-run] All changes rolled back.")

    report_path = write_run_report(
        run_id, started_at, "import", dry_run,
        {"csv_path": str(csv_path), "rejects_path": str(rejects.path)},
        stats,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    click.echo(json.dumps(stats.to_dict(), indent=2, default=str))

    if stats.batches_failed > 0:
        click.echo(
            f"[{run_id}] {stats.batches_failed} batch(es) rolled back - exiting non-zero",
            err=True,
        )
        sys.exit(1)
    click.echo(
        f"[{run_id}] Done: {stats.processed_rows}/{stats.total_rows} rows processed, "
        f"{stats.rows_rejected} rejected."
    )


if __name__ == "__main__":
    main()
