"""promo_etl.merge

Merge engine: propagates the unprocessed staging rows of one filename into
usuarios_final, promocoes, usuario_promocao and usuario_promocao_historico.

All steps run on the caller's connection and inside the caller's
transaction; nothing here commits.  Steps:

  1. users       - upsert by smartico_user_id (policy-dependent conflict rule)
  2. promotions  - upsert by nome; only non-null incoming values overwrite
  3. links       - upsert by (smartico_user_id, promocao_id)
  4. history     - append one 'insert' row per (staging row, promotion)
  5. staging     - flag processed, or delete (policy-dependent)

New vs. updated counts come from ``RETURNING (xmax = 0)``: a freshly
inserted tuple has no deleting transaction, an updated one does.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, fields

import psycopg

from promo_etl.shared import MergeError

log = logging.getLogger(__name__)


class MergePolicy(str, enum.Enum):
    """How an import resolves user conflicts and retires staging rows.

    FIRST_WRITE_WINS  existing users are left untouched; staging rows are
                      flagged processed and kept for audit.
    LAST_WRITE_WINS   non-null incoming user fields overwrite existing ones;
                      staging rows are deleted once merged.
    """

    FIRST_WRITE_WINS = "first_write_wins"
    LAST_WRITE_WINS = "last_write_wins"

    @property
    def purges_staging(self) -> bool:
        return self is MergePolicy.LAST_WRITE_WINS


@dataclass
class MergeResult:
    new_users: int = 0
    updated_users: int = 0
    new_promotions: int = 0
    updated_promotions: int = 0
    new_user_promotions: int = 0
    updated_user_promotions: int = 0
    history_rows_inserted: int = 0
    staging_rows_retired: int = 0

    def __iadd__(self, other: MergeResult) -> MergeResult:
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))
        return self


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

_COUNT_UPSERTED = """
SELECT count(*) FILTER (WHERE inserted),
       count(*) FILTER (WHERE NOT inserted)
FROM upserted
"""

_USERS_KEEP_EXISTING = """
WITH src AS (
  SELECT DISTINCT ON (smartico_user_id)
    smartico_user_id, user_ext_id, core_sm_brand_id,
    crm_brand_id, ext_brand_id, crm_brand_name
  FROM staging_import
  WHERE filename = %s AND processed = false
  ORDER BY smartico_user_id, id ASC
), upserted AS (
  INSERT INTO usuarios_final
    (smartico_user_id, user_ext_id, core_sm_brand_id,
     crm_brand_id, ext_brand_id, crm_brand_name)
  SELECT smartico_user_id, user_ext_id, core_sm_brand_id,
         crm_brand_id, ext_brand_id, crm_brand_name
  FROM src
  ON CONFLICT (smartico_user_id) DO NOTHING
  RETURNING (xmax = 0) AS inserted
)
""" + _COUNT_UPSERTED

_USERS_COALESCE_INCOMING = """
WITH src AS (
  SELECT DISTINCT ON (smartico_user_id)
    smartico_user_id, user_ext_id, core_sm_brand_id,
    crm_brand_id, ext_brand_id, crm_brand_name
  FROM staging_import
  WHERE filename = %s AND processed = false
  ORDER BY smartico_user_id, id DESC
), upserted AS (
  INSERT INTO usuarios_final
    (smartico_user_id, user_ext_id, core_sm_brand_id,
     crm_brand_id, ext_brand_id, crm_brand_name)
  SELECT smartico_user_id, user_ext_id, core_sm_brand_id,
         crm_brand_id, ext_brand_id, crm_brand_name
  FROM src
  ON CONFLICT (smartico_user_id) DO UPDATE SET
    user_ext_id      = COALESCE(EXCLUDED.user_ext_id, usuarios_final.user_ext_id),
    core_sm_brand_id = COALESCE(EXCLUDED.core_sm_brand_id, usuarios_final.core_sm_brand_id),
    crm_brand_id     = COALESCE(EXCLUDED.crm_brand_id, usuarios_final.crm_brand_id),
    ext_brand_id     = COALESCE(EXCLUDED.ext_brand_id, usuarios_final.ext_brand_id),
    crm_brand_name   = COALESCE(EXCLUDED.crm_brand_name, usuarios_final.crm_brand_name),
    updated_at       = now()
  RETURNING (xmax = 0) AS inserted
)
""" + _COUNT_UPSERTED

_PROMOTIONS = """
WITH src AS (
  SELECT promocao_nome     AS nome,
         (array_agg(regras ORDER BY id DESC)
            FILTER (WHERE regras IS NOT NULL))[1] AS regras,
         min(data_inicio)  AS data_inicio,
         max(data_fim)     AS data_fim
  FROM staging_import
  WHERE filename = %s AND processed = false
    AND promocao_nome IS NOT NULL AND promocao_nome <> ''
  GROUP BY promocao_nome
), upserted AS (
  INSERT INTO promocoes (nome, regras, data_inicio, data_fim, status)
  SELECT nome, regras, data_inicio, data_fim, 'active'
  FROM src
  ON CONFLICT (nome) DO UPDATE SET
    regras      = COALESCE(EXCLUDED.regras, promocoes.regras),
    data_inicio = COALESCE(EXCLUDED.data_inicio, promocoes.data_inicio),
    data_fim    = COALESCE(EXCLUDED.data_fim, promocoes.data_fim),
    updated_at  = now()
  RETURNING (xmax = 0) AS inserted
)
""" + _COUNT_UPSERTED

_LINKS = """
WITH src AS (
  SELECT s.smartico_user_id,
         p.promocao_id,
         min(s.data_inicio) AS data_inicio,
         max(s.data_fim)    AS data_fim,
         (array_agg(s.regras ORDER BY s.id DESC)
            FILTER (WHERE s.regras IS NOT NULL))[1] AS regras
  FROM staging_import s
  JOIN promocoes p ON p.nome = s.promocao_nome
  WHERE s.filename = %s AND s.processed = false
  GROUP BY s.smartico_user_id, p.promocao_id
), upserted AS (
  INSERT INTO usuario_promocao
    (smartico_user_id, promocao_id, data_inicio, data_fim, regras, status)
  SELECT smartico_user_id, promocao_id, data_inicio, data_fim, regras, 'active'
  FROM src
  ON CONFLICT (smartico_user_id, promocao_id) DO UPDATE SET
    data_inicio = COALESCE(EXCLUDED.data_inicio, usuario_promocao.data_inicio),
    data_fim    = COALESCE(EXCLUDED.data_fim, usuario_promocao.data_fim),
    regras      = COALESCE(EXCLUDED.regras, usuario_promocao.regras),
    status      = 'active',
    updated_at  = now()
  RETURNING (xmax = 0) AS inserted
)
""" + _COUNT_UPSERTED

_HISTORY = """
INSERT INTO usuario_promocao_historico
  (smartico_user_id, promocao_id, filename, status, regras,
   data_inicio, data_fim, operation_type)
SELECT s.smartico_user_id, p.promocao_id, s.filename, 'active', s.regras,
       s.data_inicio, s.data_fim, 'insert'
FROM staging_import s
JOIN promocoes p ON p.nome = s.promocao_nome
WHERE s.filename = %s AND s.processed = false
ORDER BY s.id ASC
"""

_FLAG_PROCESSED = """
UPDATE staging_import SET processed = true
WHERE filename = %s AND processed = false
"""

_DELETE_STAGED = """
DELETE FROM staging_import
WHERE filename = %s AND processed = false
"""


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def _upsert_counts(conn: psycopg.Connection, query: str, filename: str) -> tuple[int, int]:
    row = conn.execute(query, (filename,)).fetchone()
    return int(row[0] or 0), int(row[1] or 0)


def merge_users(
    conn: psycopg.Connection, filename: str, policy: MergePolicy
) -> tuple[int, int]:
    """Return (inserted, updated) user counts."""
    query = (
        _USERS_COALESCE_INCOMING
        if policy is MergePolicy.LAST_WRITE_WINS
        else _USERS_KEEP_EXISTING
    )
    return _upsert_counts(conn, query, filename)


def merge_promotions(conn: psycopg.Connection, filename: str) -> tuple[int, int]:
    """Return (inserted, updated) promotion counts."""
    return _upsert_counts(conn, _PROMOTIONS, filename)


def merge_links(conn: psycopg.Connection, filename: str) -> tuple[int, int]:
    """Return (inserted, updated) user-promotion link counts."""
    return _upsert_counts(conn, _LINKS, filename)


def append_history(conn: psycopg.Connection, filename: str) -> int:
    return conn.execute(_HISTORY, (filename,)).rowcount


def retire_staging(conn: psycopg.Connection, filename: str, policy: MergePolicy) -> int:
    query = _DELETE_STAGED if policy.purges_staging else _FLAG_PROCESSED
    return conn.execute(query, (filename,)).rowcount


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def merge_staged_batch(
    conn: psycopg.Connection,
    filename: str,
    policy: MergePolicy,
    batch_index: int = 0,
) -> MergeResult:
    """Run all merge steps for the unprocessed staging rows of ``filename``.

    Caller owns the transaction.  Any database error is raised as MergeError
    naming the failed step; the caller's rollback leaves every destination
    table untouched.
    """
    result = MergeResult()
    step = "users"
    try:
        result.new_users, result.updated_users = merge_users(conn, filename, policy)
        step = "promotions"
        result.new_promotions, result.updated_promotions = merge_promotions(conn, filename)
        step = "links"
        (
            result.new_user_promotions,
            result.updated_user_promotions,
        ) = merge_links(conn, filename)
        step = "history"
        result.history_rows_inserted = append_history(conn, filename)
        step = "staging"
        result.staging_rows_retired = retire_staging(conn, filename, policy)
    except psycopg.Error as exc:
        raise MergeError(batch_index, exc, step=step) from exc

    log.debug(
        "batch %d merged for %s: users +%d/~%d promotions +%d/~%d links +%d/~%d history %d",
        batch_index, filename,
        result.new_users, result.updated_users,
        result.new_promotions, result.updated_promotions,
        result.new_user_promotions, result.updated_user_promotions,
        result.history_rows_inserted,
    )
    return result
