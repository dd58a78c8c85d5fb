"""Normalization functions for promotion CSV ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

_SENTINEL_TS = "0000-00-00 00:00:00"
_TS_FORMAT = "%Y-%m-%d %H:%M:%S"
_INT_RE = re.compile(r"^[+-]?\d+$")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_header
# ---------------------------------------------------------------------------

def normalize_header(value: str | None) -> str:
    """Lowercase a CSV header and strip whitespace and a leading BOM."""
    if value is None:
        return ""
    return value.lstrip("﻿").strip().lower()


# ---------------------------------------------------------------------------
# Rule 4: parse_int
# ---------------------------------------------------------------------------

def parse_int(value: str | None) -> int | None:
    """Parse a base-10 integer, returning None on blank or malformed input.

    Unlike ``int()``, rejects floats ("12.0") and embedded underscores.
    """
    v = trim(value)
    if v is None or not _INT_RE.match(v):
        return None
    return int(v)


# ---------------------------------------------------------------------------
# Rule 5: parse_ts
# ---------------------------------------------------------------------------

def parse_ts(value: str | None) -> datetime | None:
    """Parse a timestamp into an aware UTC datetime.

    Accepts '%Y-%m-%d %H:%M:%S' and ISO-8601 (with 'T', fractional seconds,
    'Z' or a numeric offset).  Values without a timezone marker are taken
    as UTC.  Sentinel '0000-00-00 00:00:00' → None.  Unparseable → None.
    """
    v = trim(value)
    if v is None or v == _SENTINEL_TS:
        return None
    try:
        ts = datetime.strptime(v, _TS_FORMAT)
    except ValueError:
        iso = v[:-1] + "+00:00" if v.endswith(("Z", "z")) else v
        try:
            ts = datetime.fromisoformat(iso)
        except ValueError:
            return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def is_blank(value: str | None) -> bool:
    return trim(value) is None
