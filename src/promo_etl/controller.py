"""promo_etl.controller

Stream controller: drives parser → accumulator → staging → merge over an
iterable of CSV records and aggregates ImportStats.

The loop is pull-based.  While a batch is being staged and merged the
controller does not ask the reader for another record, so at most
``batch_size`` parsed rows are ever held in memory regardless of file size.

States:
  reading   → parsing records into the accumulator
  paused    → accumulator full; source reads suspended
  merging   → one batch's staging + merge transaction in flight
  draining  → end of stream; flushing the partial remainder
  done      → stats final
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Callable, Iterable, Mapping

import psycopg

from promo_etl.batching import DEFAULT_BATCH_SIZE, BatchAccumulator
from promo_etl.merge import MergePolicy, MergeResult, merge_staged_batch
from promo_etl.normalize import normalize_space
from promo_etl.rows import MAX_PROMOTION_NAME_LENGTH, ValidatedRow, parse_row
from promo_etl.shared import (
    BatchError,
    ImportStats,
    RejectWriter,
    RowValidationError,
    normalize_headers,
)
from promo_etl.staging import insert_staging_batch

log = logging.getLogger(__name__)

# Record numbering counts the header as line 1.
FIRST_DATA_LINE = 2

BatchHandler = Callable[[list[ValidatedRow], int], MergeResult]


class ImportState(str, enum.Enum):
    READING = "reading"
    PAUSED = "paused"
    MERGING = "merging"
    DRAINING = "draining"
    DONE = "done"


def _check_promotion_name(name: str | None) -> str | None:
    """Normalize a caller-supplied promotion override; blank means none."""
    name = normalize_space(name)
    if name is None:
        return None
    if "\x00" in name:
        raise ValueError("promotion_name contains a NUL byte")
    if len(name) > MAX_PROMOTION_NAME_LENGTH:
        raise ValueError(
            f"promotion_name is longer than {MAX_PROMOTION_NAME_LENGTH} characters"
        )
    return name


class ImportController:
    """Runs one import of one filename.  Not reusable across runs.

    ``handler`` replaces the default staging + merge step; it must apply a
    batch atomically and raise BatchError (or psycopg.Error) on failure.
    ``promotion_name`` links every row of the file to that promotion.
    """

    def __init__(
        self,
        conn: psycopg.Connection | None,
        filename: str,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        policy: MergePolicy = MergePolicy.FIRST_WRITE_WINS,
        rejects: RejectWriter | None = None,
        dry_run: bool = False,
        handler: BatchHandler | None = None,
        now: datetime | None = None,
        promotion_name: str | None = None,
    ) -> None:
        if handler is None and conn is None:
            raise ValueError("a connection is required unless a batch handler is given")
        self._conn = conn
        self._filename = filename
        self._policy = policy
        self._rejects = rejects
        self._dry_run = dry_run
        self._handler = handler or self._stage_and_merge
        self._now = now
        self._promotion_name = _check_promotion_name(promotion_name)
        self._accumulator = BatchAccumulator(batch_size)
        self._batch_index = 0
        self._state = ImportState.READING
        self._history: list[ImportState] = [ImportState.READING]
        self.stats = ImportStats(filename=filename)

    @property
    def state(self) -> ImportState:
        return self._state

    @property
    def state_history(self) -> list[ImportState]:
        return list(self._history)

    @property
    def buffered_rows(self) -> int:
        return len(self._accumulator)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self, records: Iterable[Mapping[str | None, str | None]]) -> ImportStats:
        if self._state is not ImportState.READING or self._batch_index:
            raise RuntimeError("ImportController.run() may only be called once")

        for line_number, raw in enumerate(records, start=FIRST_DATA_LINE):
            self.stats.total_rows += 1
            row = normalize_headers(raw)
            try:
                validated = parse_row(
                    row, line_number, now=self._now, promotion_name=self._promotion_name
                )
            except RowValidationError as exc:
                self._reject(row, exc)
                continue
            if self._accumulator.add(validated):
                self._transition(ImportState.PAUSED)
                self._flush()
                self._transition(ImportState.READING)

        self._transition(ImportState.DRAINING)
        if self._accumulator:
            self._flush()
        self.stats.peak_buffered_rows = self._accumulator.peak
        self._transition(ImportState.DONE)
        log.info(
            "Import %s done: %d/%d rows processed, %d batch(es) committed, %d failed",
            self._filename,
            self.stats.processed_rows,
            self.stats.total_rows,
            self.stats.batches_committed,
            self.stats.batches_failed,
        )
        return self.stats

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, state: ImportState) -> None:
        log.debug("%s: %s -> %s", self._filename, self._state.value, state.value)
        self._state = state
        self._history.append(state)

    def _reject(self, row: dict[str, str | None], exc: RowValidationError) -> None:
        self.stats.rows_rejected += 1
        self.stats.errors.append(str(exc))
        if self._rejects is not None:
            self._rejects.write(
                {k: (v if v is not None else "") for k, v in row.items()},
                f"{exc.field_name}: {exc.message}",
            )

    def _flush(self) -> None:
        rows = self._accumulator.drain()
        previous = self._state
        self._batch_index += 1
        batch_index = self._batch_index
        self._transition(ImportState.MERGING)
        try:
            result = self._handler(rows, batch_index)
        except BatchError as exc:
            self._record_batch_failure(batch_index, len(rows), str(exc))
        except psycopg.Error as exc:
            # Failures outside the wrapped steps, e.g. COMMIT or a lost connection.
            self._record_batch_failure(batch_index, len(rows), f"batch {batch_index}: {exc}")
        else:
            self._record_batch_success(batch_index, len(rows), result)
        self._transition(previous)

    def _record_batch_failure(self, batch_index: int, size: int, message: str) -> None:
        self.stats.batches_failed += 1
        self.stats.errors.append(message)
        log.warning("Import %s batch %d (%d rows) rolled back: %s",
                    self._filename, batch_index, size, message)

    def _record_batch_success(self, batch_index: int, size: int, result: MergeResult) -> None:
        s = self.stats
        s.batches_committed += 1
        s.processed_rows += size
        s.new_users += result.new_users
        s.updated_users += result.updated_users
        s.new_promotions += result.new_promotions
        s.updated_promotions += result.updated_promotions
        s.new_user_promotions += result.new_user_promotions
        s.updated_user_promotions += result.updated_user_promotions
        s.history_rows_inserted += result.history_rows_inserted
        log.info(
            "Import %s batch %d committed%s: %d rows (users +%d, promotions +%d, links +%d)",
            self._filename, batch_index, " (dry-run)" if self._dry_run else "", size,
            result.new_users, result.new_promotions, result.new_user_promotions,
        )

    def _stage_and_merge(self, rows: list[ValidatedRow], batch_index: int) -> MergeResult:
        """Default handler: one transaction per batch."""
        result = MergeResult()
        with self._conn.transaction():
            insert_staging_batch(self._conn, rows, self._filename, batch_index)
            result = merge_staged_batch(self._conn, self._filename, self._policy, batch_index)
            if self._dry_run:
                raise psycopg.Rollback()
        return result
