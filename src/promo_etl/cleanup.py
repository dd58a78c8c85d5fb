"""promo_etl.cleanup

Upload-directory housekeeping: delete the source file after an import,
sweep stale uploads, report and purge the upload directory.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

_BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True)
class UploadFileInfo:
    name: str
    size_bytes: int
    modified_at: float
    age_hours: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "size_mb": round(self.size_bytes / _BYTES_PER_MB, 2),
            "modified_at": self.modified_at,
            "age_hours": round(self.age_hours, 1),
        }


def remove_source_file(path: Path) -> bool:
    """Delete the uploaded file.  Missing file → False; never raises OSError."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        log.warning("Could not remove source file %s: %s", path, exc)
        return False
    log.debug("Removed source file %s", path)
    return True


def _iter_files(upload_dir: Path):
    if not upload_dir.is_dir():
        return
    for entry in upload_dir.iterdir():
        if entry.is_file():
            yield entry


def sweep_upload_dir(
    upload_dir: Path,
    max_age_hours: float,
    now: float | None = None,
) -> list[Path]:
    """Remove files whose mtime is older than ``max_age_hours``.

    Returns the removed paths.  Files that vanish or cannot be removed
    mid-sweep are skipped.
    """
    now = time.time() if now is None else now
    cutoff = now - max_age_hours * 3600
    removed: list[Path] = []
    for path in _iter_files(upload_dir):
        try:
            if path.stat().st_mtime >= cutoff:
                continue
        except FileNotFoundError:
            continue
        if remove_source_file(path):
            removed.append(path)
    if removed:
        log.info("Swept %d stale upload(s) from %s", len(removed), upload_dir)
    return removed


def upload_dir_status(upload_dir: Path, now: float | None = None) -> dict[str, Any]:
    """File count, total size and per-file ages, newest first."""
    now = time.time() if now is None else now
    files: list[UploadFileInfo] = []
    for path in _iter_files(upload_dir):
        try:
            st = path.stat()
        except FileNotFoundError:
            continue
        files.append(
            UploadFileInfo(
                name=path.name,
                size_bytes=st.st_size,
                modified_at=st.st_mtime,
                age_hours=max(0.0, (now - st.st_mtime) / 3600),
            )
        )
    files.sort(key=lambda f: f.modified_at, reverse=True)
    total = sum(f.size_bytes for f in files)
    return {
        "upload_dir": str(upload_dir),
        "total_files": len(files),
        "total_size_mb": round(total / _BYTES_PER_MB, 2),
        "files": [f.to_dict() for f in files],
    }


def purge_upload_dir(upload_dir: Path) -> tuple[int, int]:
    """Remove every file in the upload directory.

    Returns (files_removed, bytes_freed).
    """
    removed = 0
    freed = 0
    for path in _iter_files(upload_dir):
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            continue
        if remove_source_file(path):
            removed += 1
            freed += size
    log.info("Purged %d file(s), %d bytes from %s", removed, freed, upload_dir)
    return removed, freed
