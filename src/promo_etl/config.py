"""promo_etl.config

Import settings resolved from the environment.  CLI flags override
individual fields via ``ImportSettings.with_overrides``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping

from promo_etl.batching import DEFAULT_BATCH_SIZE
from promo_etl.merge import MergePolicy

DEFAULT_UPLOAD_DIR = "./uploads"
DEFAULT_MAX_FILE_SIZE = 104_857_600  # 100 MiB
DEFAULT_CLEANUP_MAX_AGE_HOURS = 1.0


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class ImportSettings:
    upload_dir: Path = Path(DEFAULT_UPLOAD_DIR)
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    batch_size: int = DEFAULT_BATCH_SIZE
    merge_policy: MergePolicy = MergePolicy.FIRST_WRITE_WINS
    cleanup_max_age_hours: float = DEFAULT_CLEANUP_MAX_AGE_HOURS

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_file_size < 1:
            raise ValueError(f"max_file_size must be >= 1, got {self.max_file_size}")
        if self.cleanup_max_age_hours < 0:
            raise ValueError("cleanup_max_age_hours must be >= 0")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> ImportSettings:
        """Build settings from UPLOAD_PATH, MAX_FILE_SIZE, IMPORT_BATCH_SIZE,
        IMPORT_MERGE_POLICY and CLEANUP_MAX_AGE_HOURS."""
        env = os.environ if env is None else env
        policy_raw = (env.get("IMPORT_MERGE_POLICY") or "").strip().lower()
        try:
            policy = MergePolicy(policy_raw) if policy_raw else MergePolicy.FIRST_WRITE_WINS
        except ValueError as exc:
            allowed = sorted(p.value for p in MergePolicy)
            raise ValueError(
                f"IMPORT_MERGE_POLICY {policy_raw!r} is not valid; allowed: {allowed}"
            ) from exc
        return cls(
            upload_dir=Path(env.get("UPLOAD_PATH") or DEFAULT_UPLOAD_DIR),
            max_file_size=_get_int(env, "MAX_FILE_SIZE", DEFAULT_MAX_FILE_SIZE),
            batch_size=_get_int(env, "IMPORT_BATCH_SIZE", DEFAULT_BATCH_SIZE),
            merge_policy=policy,
            cleanup_max_age_hours=_get_float(
                env, "CLEANUP_MAX_AGE_HOURS", DEFAULT_CLEANUP_MAX_AGE_HOURS
            ),
        )

    def with_overrides(self, **overrides: object) -> ImportSettings:
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if isinstance(changes.get("merge_policy"), str):
            changes["merge_policy"] = MergePolicy(changes["merge_policy"])
        if isinstance(changes.get("upload_dir"), str):
            changes["upload_dir"] = Path(changes["upload_dir"])
        return replace(self, **changes)
