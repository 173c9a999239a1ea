"""Unit tests for the batched upsert driver and TimeBudget."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import pytest

from mixpanel_engagement._internal.storage import WarehouseStorage
from mixpanel_engagement._internal.upsert import (
    MAX_BATCH_SIZE,
    TimeBudget,
    upsert_batches,
)
from mixpanel_engagement.exceptions import SinkError
from mixpanel_engagement.types import CreatorPair

KEY = ["distinct_id", "creator_id"]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class DictSink:
    """In-memory sink keyed by conflict key.

    Calls listed in fail_calls (1-based) raise instead of writing. The
    optional on_call hook runs before every call.
    """

    def __init__(
        self,
        fail_calls: Sequence[int] = (),
        on_call: Any = None,
    ) -> None:
        self.rows: dict[tuple[Any, ...], dict[str, Any]] = {}
        self.calls = 0
        self.batch_sizes: list[int] = []
        self._fail_calls = set(fail_calls)
        self._on_call = on_call

    def upsert_rows(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        conflict_key: Sequence[str],
    ) -> int:
        self.calls += 1
        if self._on_call is not None:
            self._on_call(self.calls)
        self.batch_sizes.append(len(rows))
        if self.calls in self._fail_calls:
            raise SinkError("write rejected", table=table)
        for row in rows:
            self.rows[tuple(row[c] for c in conflict_key)] = dict(row)
        return len(rows)


def _rows(count: int) -> list[dict[str, Any]]:
    return [
        {"distinct_id": f"u{i}", "creator_id": "c1", "profile_view_count": 1}
        for i in range(count)
    ]


class TestUpsertBatches:
    """Tests for upsert_batches."""

    def test_batches_are_consecutive_chunks(self) -> None:
        """Rows are sent in order, batch_size at a time."""
        sink = DictSink()
        result = upsert_batches(sink, "t", _rows(12), KEY, batch_size=5)

        assert sink.batch_sizes == [5, 5, 2]
        assert result.inserted == 12
        assert result.attempted_batches == result.total_batches == 3
        assert result.failed_batches == 0
        assert not result.partial

    def test_failed_batch_does_not_stop_later_batches(self) -> None:
        """A rejected batch is counted and the next one is still attempted."""
        sink = DictSink(fail_calls=[2])
        result = upsert_batches(sink, "t", _rows(12_000), KEY, batch_size=5000)

        assert result.inserted == 7000
        assert result.failed_batches == 1
        assert result.attempted_batches == 3
        assert len(sink.rows) == 7000

    def test_rerun_converges_to_all_rows(self) -> None:
        """Re-running after a partial failure completes the set, no duplicates."""
        sink = DictSink(fail_calls=[2])
        rows = _rows(12_000)
        upsert_batches(sink, "t", rows, KEY, batch_size=5000)
        second = upsert_batches(sink, "t", rows, KEY, batch_size=5000)

        assert second.failed_batches == 0
        assert len(sink.rows) == 12_000

    def test_two_of_five_batches_fail(self) -> None:
        """Inserted counts only the committed batches."""
        sink = DictSink(fail_calls=[2, 4])
        result = upsert_batches(sink, "t", _rows(50), KEY, batch_size=10)

        assert result.inserted == 30
        assert result.failed_batches == 2
        assert result.attempted_batches == 5

    def test_deadline_stops_before_next_batch(self) -> None:
        """Once the budget is nearly spent no further batch is attempted."""
        clock = FakeClock()
        budget = TimeBudget(150, 10, clock=clock)

        def advance(call: int) -> None:
            # the second batch finishes inside the safety margin
            if call == 2:
                clock.now = 145.0

        sink = DictSink(on_call=advance)
        result = upsert_batches(
            sink, "t", _rows(50), KEY, batch_size=10, budget=budget
        )

        assert sink.calls == 2
        assert result.attempted_batches == 2
        assert result.total_batches == 5
        assert result.skipped_batches == 3
        assert result.inserted == 20
        assert result.partial

    def test_expired_budget_attempts_nothing(self) -> None:
        """A budget already past its margin writes no batch."""
        clock = FakeClock()
        budget = TimeBudget(10, 1, clock=clock)
        clock.now = 9.5
        sink = DictSink()

        result = upsert_batches(sink, "t", _rows(3), KEY, batch_size=1, budget=budget)
        assert sink.calls == 0
        assert result.partial
        assert result.inserted == 0

    def test_records_with_to_row_are_accepted(self) -> None:
        """Record objects are converted through to_row()."""
        sink = DictSink()
        pair = CreatorPair("u1", "c1", "alice", profile_view_count=2)
        upsert_batches(sink, "t", [pair], KEY, batch_size=10)
        assert sink.rows[("u1", "c1")]["creator_username"] == "alice"

    def test_unsupported_record_type(self) -> None:
        """Objects without to_row() are rejected up front."""
        with pytest.raises(TypeError, match="to_row"):
            upsert_batches(DictSink(), "t", [object()], KEY, batch_size=10)

    @pytest.mark.parametrize("batch_size", [0, -1, MAX_BATCH_SIZE + 1])
    def test_batch_size_out_of_range(self, batch_size: int) -> None:
        """batch_size must lie in 1..5000."""
        with pytest.raises(ValueError, match="batch_size"):
            upsert_batches(DictSink(), "t", _rows(1), KEY, batch_size=batch_size)

    def test_empty_input(self) -> None:
        """No records means no batches."""
        sink = DictSink()
        result = upsert_batches(sink, "t", [], KEY, batch_size=10)
        assert sink.calls == 0
        assert result.total_batches == 0
        assert result.to_dict()["skipped_batches"] == 0


class TestUpsertIntoWarehouse:
    """upsert_batches against a real DuckDB sink."""

    def test_repeat_upsert_is_idempotent(self, storage: WarehouseStorage) -> None:
        """Upserting the same records twice leaves one row per key."""
        records = [
            CreatorPair(f"u{i}", "c1", "alice", profile_view_count=i + 1)
            for i in range(25)
        ]
        for _ in range(2):
            result = upsert_batches(
                storage,
                "user_creator_engagement",
                records,
                KEY,
                batch_size=10,
            )
            assert result.inserted == 25

        assert storage.count_rows("user_creator_engagement") == 25

    def test_duplicate_key_batch_is_rejected(self, storage: WarehouseStorage) -> None:
        """A batch repeating a key fails as a whole; others still commit."""
        records = [
            CreatorPair("u1", "c1", "alice", profile_view_count=1),
            CreatorPair("u1", "c1", "alice", profile_view_count=2),
            CreatorPair("u2", "c1", "alice", profile_view_count=3),
        ]
        result = upsert_batches(
            storage, "user_creator_engagement", records, KEY, batch_size=2
        )

        assert result.failed_batches == 1
        assert result.inserted == 1
        assert storage.count_rows("user_creator_engagement") == 1


class TestTimeBudget:
    """Tests for TimeBudget."""

    def test_remaining_and_deadline(self) -> None:
        """The deadline is reported once within the margin."""
        clock = FakeClock()
        budget = TimeBudget(150, 10, clock=clock)

        assert budget.remaining == 150
        assert not budget.is_approaching_deadline()
        clock.now = 139.9
        assert not budget.is_approaching_deadline()
        clock.now = 140.0
        assert budget.is_approaching_deadline()
        assert budget.elapsed == 140.0

    @pytest.mark.parametrize(
        ("budget_seconds", "margin"),
        [(0, 0), (-1, 0), (10, -1), (10, 10), (10, 20)],
    )
    def test_invalid_budget(self, budget_seconds: float, margin: float) -> None:
        """Non-positive budgets and out-of-range margins are rejected."""
        with pytest.raises(ValueError):
            TimeBudget(budget_seconds, margin)

    def test_repr_mentions_budget(self) -> None:
        """repr shows the configured values."""
        assert "budget_seconds=60" in repr(TimeBudget(60, 5, clock=FakeClock()))
