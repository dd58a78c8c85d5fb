"""Unit tests for promo_etl.controller.

The database step is replaced by an injected batch handler so the
read/pause/merge sequencing can be observed without PostgreSQL.
"""

from __future__ import annotations

from datetime import datetime, timezone

import psycopg
import pytest

from promo_etl.controller import ImportController, ImportState
from promo_etl.merge import MergeResult
from promo_etl.shared import MergeError, RejectWriter, StagingError

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _record(user_id, promo="Promo A", **overrides):
    rec = {
        "smartico_user_id": str(user_id),
        "user_ext_id": f"ext-{user_id}",
        "core_sm_brand_id": "1",
        "crm_brand_id": "2",
        "ext_brand_id": "b",
        "crm_brand_name": "Brand",
        "promocao_nome": promo,
        "regras": "",
        "data_inicio": "",
        "data_fim": "",
    }
    rec.update(overrides)
    return rec


class RecordingHandler:
    """Fake batch handler; logs every call and optionally fails some batches."""

    def __init__(self, events, fail_batches=(), exc_factory=None):
        self.events = events
        self.fail_batches = set(fail_batches)
        self.exc_factory = exc_factory or (lambda i: MergeError(i, RuntimeError("boom"), step="links"))
        self.batches = []

    def __call__(self, rows, batch_index):
        self.events.append(("merge", batch_index, len(rows)))
        self.batches.append([r.smartico_user_id for r in rows])
        if batch_index in self.fail_batches:
            raise self.exc_factory(batch_index)
        return MergeResult(
            new_users=len(rows),
            new_promotions=1 if batch_index == 1 else 0,
            new_user_promotions=len(rows),
            history_rows_inserted=len(rows),
        )


def _tracked(records, events):
    for i, rec in enumerate(records):
        events.append(("read", i))
        yield rec


def _controller(handler, batch_size=2, rejects=None):
    return ImportController(
        None, "users.csv", batch_size=batch_size, handler=handler, rejects=rejects, now=NOW
    )


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

class TestConstruction:
    def test_connection_required_without_handler(self):
        with pytest.raises(ValueError):
            ImportController(None, "users.csv")

    def test_run_only_once(self):
        ctl = _controller(RecordingHandler([]))
        ctl.run([])
        with pytest.raises(RuntimeError):
            ctl.run([])


# ---------------------------------------------------------------------------
# Batching and backpressure
# ---------------------------------------------------------------------------

class TestBackpressure:
    def test_no_read_while_batch_in_flight(self):
        events = []
        handler = RecordingHandler(events)
        ctl = _controller(handler, batch_size=2)
        ctl.run(_tracked([_record(i) for i in range(1, 6)], events))
        assert events == [
            ("read", 0), ("read", 1), ("merge", 1, 2),
            ("read", 2), ("read", 3), ("merge", 2, 2),
            ("read", 4), ("merge", 3, 1),
        ]

    def test_batches_preserve_input_order(self):
        handler = RecordingHandler([])
        _controller(handler, batch_size=2).run([_record(i) for i in range(1, 6)])
        assert handler.batches == [[1, 2], [3, 4], [5]]

    def test_peak_buffer_bounded_by_batch_size(self):
        handler = RecordingHandler([])
        stats = _controller(handler, batch_size=3).run([_record(i) for i in range(1, 11)])
        assert stats.peak_buffered_rows == 3
        assert stats.batches_committed == 4

    def test_empty_input_never_calls_handler(self):
        handler = RecordingHandler([])
        stats = _controller(handler).run([])
        assert handler.batches == []
        assert stats.total_rows == 0
        assert stats.succeeded

    def test_exact_multiple_has_no_trailing_batch(self):
        handler = RecordingHandler([])
        _controller(handler, batch_size=2).run([_record(i) for i in range(1, 5)])
        assert len(handler.batches) == 2


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------

class TestStateTransitions:
    def test_full_batch_then_remainder(self):
        ctl = _controller(RecordingHandler([]), batch_size=2)
        ctl.run([_record(i) for i in range(1, 4)])
        assert ctl.state is ImportState.DONE
        assert ctl.state_history == [
            ImportState.READING,
            ImportState.PAUSED,
            ImportState.MERGING,
            ImportState.PAUSED,
            ImportState.READING,
            ImportState.DRAINING,
            ImportState.MERGING,
            ImportState.DRAINING,
            ImportState.DONE,
        ]
        assert ctl.buffered_rows == 0

    def test_handler_sees_merging_state(self):
        seen = []

        def handler(rows, batch_index):
            seen.append(ctl.state)
            return MergeResult()

        ctl = _controller(handler, batch_size=1)
        ctl.run([_record(1)])
        assert seen == [ImportState.MERGING]


# ---------------------------------------------------------------------------
# Row-level failures
# ---------------------------------------------------------------------------

class TestRowRejects:
    def test_invalid_row_skipped_others_processed(self):
        handler = RecordingHandler([])
        records = [_record(1), _record("abc"), _record(3)]
        stats = _controller(handler, batch_size=10).run(records)
        assert stats.total_rows == 3
        assert stats.processed_rows == 2
        assert stats.rows_rejected == 1
        assert stats.errors == ["line 3: smartico_user_id: must be an integer, got 'abc'"]
        assert handler.batches == [[1, 3]]
        assert not stats.succeeded

    def test_line_numbers_count_header_as_line_one(self):
        stats = _controller(RecordingHandler([])).run([_record(1, user_ext_id="")])
        assert stats.errors[0].startswith("line 2: user_ext_id")

    def test_headers_normalized_before_parsing(self):
        handler = RecordingHandler([])
        rec = {k.upper(): v for k, v in _record(9).items()}
        stats = _controller(handler).run([rec])
        assert stats.processed_rows == 1

    def test_rejects_written(self, tmp_path):
        path = tmp_path / "rejects.csv"
        writer = RejectWriter(path)
        _controller(RecordingHandler([]), rejects=writer).run([_record(-5)])
        writer.close()
        text = path.read_text(encoding="utf-8")
        assert "_reject_reason" in text
        assert "smartico_user_id: must be a positive integer" in text


# ---------------------------------------------------------------------------
# Batch-level failures
# ---------------------------------------------------------------------------

class TestBatchFailures:
    def test_failed_batch_does_not_stop_import(self):
        handler = RecordingHandler([], fail_batches={2})
        stats = _controller(handler, batch_size=2).run([_record(i) for i in range(1, 7)])
        assert len(handler.batches) == 3
        assert stats.batches_committed == 2
        assert stats.batches_failed == 1
        assert stats.processed_rows == 4
        assert stats.new_users == 4
        assert stats.errors == ["batch 2: merge/links failed: boom"]

    def test_staging_error_recorded(self):
        handler = RecordingHandler(
            [], fail_batches={1}, exc_factory=lambda i: StagingError(i, RuntimeError("disk full"))
        )
        stats = _controller(handler, batch_size=5).run([_record(1)])
        assert stats.processed_rows == 0
        assert stats.errors == ["batch 1: staging failed: disk full"]

    def test_raw_database_error_recorded(self):
        handler = RecordingHandler(
            [], fail_batches={1}, exc_factory=lambda i: psycopg.OperationalError("gone")
        )
        stats = _controller(handler, batch_size=5).run([_record(1)])
        assert stats.batches_failed == 1
        assert stats.errors == ["batch 1: gone"]

    def test_unexpected_error_propagates(self):
        def handler(rows, batch_index):
            raise KeyError("bug")

        with pytest.raises(KeyError):
            _controller(handler).run([_record(1)])


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

class TestAggregation:
    def test_counters_summed_across_batches(self):
        handler = RecordingHandler([])
        stats = _controller(handler, batch_size=2).run([_record(i) for i in range(1, 6)])
        assert stats.total_rows == 5
        assert stats.processed_rows == 5
        assert stats.new_users == 5
        assert stats.new_promotions == 1
        assert stats.new_user_promotions == 5
        assert stats.history_rows_inserted == 5
        assert stats.succeeded
        assert stats.to_dict()["succeeded"] is True


# ---------------------------------------------------------------------------
# Promotion name override
# ---------------------------------------------------------------------------

class TestPromotionNameOverride:
    def test_every_row_linked_to_override(self):
        seen = []

        def handler(rows, batch_index):
            seen.extend(r.promocao_nome for r in rows)
            return MergeResult()

        ctl = ImportController(
            None, "users.csv", batch_size=2, handler=handler, promotion_name="  Natal   2025 "
        )
        ctl.run([_record(1, promo="A"), _record(2, promo=""), _record(3, promo="B")])
        assert seen == ["Natal 2025"] * 3

    def test_overlong_override_rejected(self):
        with pytest.raises(ValueError, match="longer than"):
            ImportController(
                None, "users.csv", handler=RecordingHandler([]), promotion_name="x" * 256
            )

    def test_nul_row_rejected_rest_of_batch_kept(self):
        handler = RecordingHandler([])
        stats = _controller(handler, batch_size=10).run(
            [_record(1), _record(2, user_ext_id="bad\x00id")]
        )
        assert handler.batches == [[1]]
        assert stats.processed_rows == 1
        assert stats.rows_rejected == 1
        assert stats.errors == ["line 3: user_ext_id: contains NUL byte"]
