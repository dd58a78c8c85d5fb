"""promo_etl.staging

Staging writer: lands one batch of ValidatedRows in staging_import with a
multi-row INSERT, tagged by filename.  Also read helpers over staged
imports (listing and per-file details).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

import psycopg
from psycopg.rows import dict_row

from promo_etl.rows import ValidatedRow
from promo_etl.shared import StagingError

STAGING_COLUMNS = (
    "smartico_user_id",
    "user_ext_id",
    "core_sm_brand_id",
    "crm_brand_id",
    "ext_brand_id",
    "crm_brand_name",
    "promocao_nome",
    "regras",
    "data_inicio",
    "data_fim",
    "filename",
)

# PostgreSQL's wire protocol caps bind parameters per statement at 65535.
MAX_BIND_PARAMS = 65535
MAX_ROWS_PER_STATEMENT = MAX_BIND_PARAMS // len(STAGING_COLUMNS)

_ROW_PLACEHOLDER = "(" + ", ".join(["%s"] * len(STAGING_COLUMNS)) + ")"


@dataclass(frozen=True)
class ImportSummary:
    filename: str
    total_records: int
    import_date: datetime | None
    all_processed: bool


def build_staging_insert(row_count: int) -> str:
    """Return a single INSERT with ``row_count`` positional VALUES tuples."""
    if row_count < 1:
        raise ValueError("row_count must be >= 1")
    values = ",\n  ".join([_ROW_PLACEHOLDER] * row_count)
    return (
        f"INSERT INTO staging_import ({', '.join(STAGING_COLUMNS)})\n"
        f"VALUES\n  {values}"
    )


def _flatten(rows: Sequence[ValidatedRow], filename: str) -> list[Any]:
    params: list[Any] = []
    for row in rows:
        params.extend(row.as_staging_params())
        params.append(filename)
    return params


def insert_staging_batch(
    conn: psycopg.Connection,
    rows: Sequence[ValidatedRow],
    filename: str,
    batch_index: int,
) -> int:
    """Insert ``rows`` into staging_import; return the number inserted.

    One statement per batch.  Batches wider than the bind-parameter limit
    are split into several statements; the caller's transaction keeps the
    batch all-or-nothing.  Any database error is raised as StagingError
    carrying ``batch_index``.
    """
    if not rows:
        return 0
    inserted = 0
    try:
        for start in range(0, len(rows), MAX_ROWS_PER_STATEMENT):
            chunk = rows[start:start + MAX_ROWS_PER_STATEMENT]
            cur = conn.execute(build_staging_insert(len(chunk)), _flatten(chunk, filename))
            inserted += cur.rowcount
    except psycopg.Error as exc:
        raise StagingError(batch_index, exc) from exc
    return inserted


# ---------------------------------------------------------------------------
# Read helpers
# ---------------------------------------------------------------------------

def list_imports(conn: psycopg.Connection) -> list[ImportSummary]:
    """One summary per filename still present in staging, newest first."""
    rows = conn.execute(
        """
        SELECT filename,
               count(*)          AS total_records,
               min(import_date)  AS import_date,
               bool_and(processed) AS all_processed
        FROM staging_import
        GROUP BY filename
        ORDER BY min(import_date) DESC, filename ASC
        """
    ).fetchall()
    return [
        ImportSummary(
            filename=r[0],
            total_records=int(r[1]),
            import_date=r[2],
            all_processed=bool(r[3]),
        )
        for r in rows
    ]


def get_import_details(
    conn: psycopg.Connection,
    filename: str,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Staged rows for one filename, in insertion order."""
    query = """
        SELECT id, smartico_user_id, user_ext_id, core_sm_brand_id,
               crm_brand_id, ext_brand_id, crm_brand_name, promocao_nome,
               regras, data_inicio, data_fim, filename, processed, import_date
        FROM staging_import
        WHERE filename = %s
        ORDER BY id ASC
    """
    params: list[Any] = [filename]
    if limit is not None:
        query += " LIMIT %s"
        params.append(limit)
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(query, params)
        return cur.fetchall()
