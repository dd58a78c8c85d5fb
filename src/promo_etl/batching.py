"""promo_etl.batching

Bounded row buffer owned by one ImportController.
"""

from __future__ import annotations

from promo_etl.rows import ValidatedRow
from promo_etl.shared import BatchOverflowError

DEFAULT_BATCH_SIZE = 5000


class BatchAccumulator:
    """Buffer ValidatedRows until ``batch_size`` is reached.

    The buffer never holds more than ``batch_size`` rows: ``add`` on a full
    accumulator raises BatchOverflowError, so callers must ``drain`` as soon
    as ``is_full`` turns true.
    """

    def __init__(self, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._batch_size = batch_size
        self._rows: list[ValidatedRow] = []
        self._peak = 0
        self._batches_drained = 0

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def peak(self) -> int:
        """Largest number of rows ever held at once."""
        return self._peak

    @property
    def batches_drained(self) -> int:
        return self._batches_drained

    @property
    def is_full(self) -> bool:
        return len(self._rows) >= self._batch_size

    def __len__(self) -> int:
        return len(self._rows)

    def __bool__(self) -> bool:
        return bool(self._rows)

    def add(self, row: ValidatedRow) -> bool:
        """Append a row; return True when the buffer is now full."""
        if self.is_full:
            raise BatchOverflowError(
                f"accumulator already holds {self._batch_size} rows; drain before adding"
            )
        self._rows.append(row)
        if len(self._rows) > self._peak:
            self._peak = len(self._rows)
        return self.is_full

    def drain(self) -> list[ValidatedRow]:
        """Hand over the buffered rows and reset to empty."""
        rows, self._rows = self._rows, []
        if rows:
            self._batches_drained += 1
        return rows
