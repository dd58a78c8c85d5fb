"""promo_etl.rows

Row parser: turns one CSV record into a ValidatedRow or raises
RowValidationError.  Pure; ``now`` is injectable so default validity
windows are deterministic under test.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping

from promo_etl.normalize import normalize_space, parse_int, parse_ts, trim
from promo_etl.shared import RowValidationError

# ---------------------------------------------------------------------------
# Column layout
# ---------------------------------------------------------------------------

IDENTITY_COLUMNS = (
    "smartico_user_id",
    "user_ext_id",
    "core_sm_brand_id",
    "crm_brand_id",
    "ext_brand_id",
    "crm_brand_name",
)
PROMOTION_COLUMNS = ("promocao_nome", "regras", "data_inicio", "data_fim")
COLUMNS = IDENTITY_COLUMNS + PROMOTION_COLUMNS

REQUIRED_HEADERS = set(IDENTITY_COLUMNS)
INTEGER_COLUMNS = ("smartico_user_id", "core_sm_brand_id", "crm_brand_id")

DEFAULT_PROMOTION_PREFIX = "Promoção Padrão"
DEFAULT_PROMOTION_RULES = "Promoção padrão para usuários da marca"
DEFAULT_VALIDITY = timedelta(days=365)
MAX_PROMOTION_NAME_LENGTH = 255
BIGINT_MIN = -(2**63)
BIGINT_MAX = 2**63 - 1


@dataclass(frozen=True)
class ValidatedRow:
    line_number: int
    smartico_user_id: int
    user_ext_id: str
    core_sm_brand_id: int
    crm_brand_id: int
    ext_brand_id: str
    crm_brand_name: str
    promocao_nome: str
    regras: str | None
    data_inicio: datetime | None
    data_fim: datetime | None

    def as_staging_params(self) -> tuple:
        """Positional values in staging_import column order (minus filename)."""
        return (
            self.smartico_user_id,
            self.user_ext_id,
            self.core_sm_brand_id,
            self.crm_brand_id,
            self.ext_brand_id,
            self.crm_brand_name,
            self.promocao_nome,
            self.regras,
            self.data_inicio,
            self.data_fim,
        )


def default_promotion_name(crm_brand_name: str) -> str:
    return f"{DEFAULT_PROMOTION_PREFIX} {crm_brand_name}"


def _parse_date_field(
    row: Mapping[str, str | None], name: str, line_number: int
) -> datetime | None:
    raw = trim(row.get(name))
    if raw is None:
        return None
    ts = parse_ts(raw)
    if ts is None:
        raise RowValidationError(line_number, name, f"invalid timestamp {raw!r}")
    return ts


def parse_row(
    row: Mapping[str, str | None],
    line_number: int,
    now: datetime | None = None,
    promotion_name: str | None = None,
) -> ValidatedRow:
    """Validate one header-normalized CSV record.

    ``line_number`` is 1-based with the header on line 1, so the first data
    record is line 2.  Raises RowValidationError naming the first failing
    field.

    A non-blank ``promotion_name`` replaces the record's promocao_nome, so a
    whole file can be linked to one caller-chosen promotion.
    """
    for name in COLUMNS:
        raw = row.get(name)
        if raw is not None and "\x00" in raw:
            # PostgreSQL text columns cannot store NUL.
            raise RowValidationError(line_number, name, "contains NUL byte")

    values: dict[str, str] = {}
    for name in IDENTITY_COLUMNS:
        v = trim(row.get(name))
        if v is None:
            raise RowValidationError(line_number, name, "required field is missing or empty")
        values[name] = v

    ints: dict[str, int] = {}
    for name in INTEGER_COLUMNS:
        parsed = parse_int(values[name])
        if parsed is None:
            raise RowValidationError(
                line_number, name, f"must be an integer, got {values[name]!r}"
            )
        if not BIGINT_MIN <= parsed <= BIGINT_MAX:
            raise RowValidationError(line_number, name, "out of BIGINT range")
        ints[name] = parsed
    if ints["smartico_user_id"] <= 0:
        raise RowValidationError(line_number, "smartico_user_id", "must be a positive integer")

    data_inicio = _parse_date_field(row, "data_inicio", line_number)
    data_fim = _parse_date_field(row, "data_fim", line_number)
    regras = trim(row.get("regras"))
    promocao_nome = normalize_space(promotion_name) or normalize_space(row.get("promocao_nome"))

    if promocao_nome is None:
        # Every imported user lands in at least one promotion.
        anchor = now or datetime.now(timezone.utc)
        promocao_nome = default_promotion_name(values["crm_brand_name"])
        regras = regras or DEFAULT_PROMOTION_RULES
        data_inicio = data_inicio or anchor
        data_fim = data_fim or anchor + DEFAULT_VALIDITY
    elif len(promocao_nome) > MAX_PROMOTION_NAME_LENGTH:
        raise RowValidationError(
            line_number,
            "promocao_nome",
            f"longer than {MAX_PROMOTION_NAME_LENGTH} characters",
        )

    return ValidatedRow(
        line_number=line_number,
        smartico_user_id=ints["smartico_user_id"],
        user_ext_id=values["user_ext_id"],
        core_sm_brand_id=ints["core_sm_brand_id"],
        crm_brand_id=ints["crm_brand_id"],
        ext_brand_id=values["ext_brand_id"],
        crm_brand_name=values["crm_brand_name"],
        promocao_nome=promocao_nome[:MAX_PROMOTION_NAME_LENGTH],
        regras=regras,
        data_inicio=data_inicio,
        data_fim=data_fim,
    )
