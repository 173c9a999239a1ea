"""Batched, time-boxed upserts into the warehouse.

upsert_batches splits a record list into consecutive chunks and hands each
to a WarehouseSink. A rejected chunk is logged and counted, and the next
chunk is still attempted. Before every chunk the TimeBudget is checked; once
the run is within its safety margin of the deadline the driver stops and
returns a partial result instead of raising.

The driver never deduplicates: idempotence comes from the sink's conflict
key, and reshapers hand over one record per key.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any, Protocol

from mixpanel_engagement.types import UpsertResult

_logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 5000
"""Largest batch a sink call may carry."""


class WarehouseSink(Protocol):
    """Anything that can insert-or-update a batch of rows by conflict key."""

    def upsert_rows(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        conflict_key: Sequence[str],
    ) -> int:
        """Write rows, returning how many were written."""
        ...


class TimeBudget:
    """Wall-clock budget with a safety margin.

    The budget starts when the object is created. Callers check
    is_approaching_deadline() between units of work; nothing is interrupted
    preemptively.

    Example:
        ```python
        budget = TimeBudget(budget_seconds=150, safety_margin_seconds=10)
        for chunk in chunks:
            if budget.is_approaching_deadline():
                break
            write(chunk)
        ```
    """

    def __init__(
        self,
        budget_seconds: float = 150.0,
        safety_margin_seconds: float = 10.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Start the budget.

        Args:
            budget_seconds: Total wall-clock time available.
            safety_margin_seconds: Stop this long before the budget runs out.
            clock: Monotonic clock returning seconds; injectable for tests.

        Raises:
            ValueError: If the budget is not positive or the margin is
                negative or not smaller than the budget.
        """
        if budget_seconds <= 0:
            raise ValueError("budget_seconds must be positive")
        if safety_margin_seconds < 0 or safety_margin_seconds >= budget_seconds:
            raise ValueError(
                "safety_margin_seconds must be >= 0 and smaller than budget_seconds"
            )
        self._budget = budget_seconds
        self._margin = safety_margin_seconds
        self._clock = clock
        self._start = clock()

    @property
    def budget_seconds(self) -> float:
        """Total budget in seconds."""
        return self._budget

    @property
    def safety_margin_seconds(self) -> float:
        """Margin kept free before the deadline."""
        return self._margin

    @property
    def elapsed(self) -> float:
        """Seconds since the budget started."""
        return self._clock() - self._start

    @property
    def remaining(self) -> float:
        """Seconds left before the hard deadline (may be negative)."""
        return self._budget - self.elapsed

    def is_approaching_deadline(self) -> bool:
        """Whether the run is within the safety margin of the deadline."""
        return self.remaining <= self._margin

    def __repr__(self) -> str:
        return (
            f"TimeBudget(budget_seconds={self._budget}, "
            f"safety_margin_seconds={self._margin}, elapsed={self.elapsed:.1f})"
        )


def _as_row(record: Any) -> Mapping[str, Any]:
    if isinstance(record, Mapping):
        return record
    to_row = getattr(record, "to_row", None)
    if to_row is None:
        raise TypeError(
            f"Cannot upsert {type(record).__name__}: expected a mapping or to_row()"
        )
    row: Mapping[str, Any] = to_row()
    return row


def upsert_batches(
    sink: WarehouseSink,
    table: str,
    records: Iterable[Any],
    conflict_key: Sequence[str],
    *,
    batch_size: int,
    budget: TimeBudget | None = None,
) -> UpsertResult:
    """Upsert records in consecutive batches under a time budget.

    Args:
        sink: Warehouse sink receiving each batch.
        table: Target table name.
        records: Row mappings or records exposing to_row().
        conflict_key: Columns identifying a row.
        batch_size: Rows per sink call, 1 to 5000.
        budget: Optional time budget checked before every batch.

    Returns:
        UpsertResult with rows inserted, failed and attempted batch counts,
        and partial=True when the budget stopped the run early.

    Raises:
        ValueError: If batch_size is out of range.
        TypeError: If a record is neither a mapping nor has to_row().

    Example:
        ```python
        result = upsert_batches(
            storage,
            "user_creator_engagement",
            creator_pairs,
            ["distinct_id", "creator_id"],
            batch_size=5000,
            budget=TimeBudget(),
        )
        print(result.inserted, result.failed_batches, result.partial)
        ```
    """
    if batch_size <= 0 or batch_size > MAX_BATCH_SIZE:
        raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")

    key = list(conflict_key)
    rows = [_as_row(record) for record in records]
    total_batches = math.ceil(len(rows) / batch_size)
    started = time.perf_counter()

    inserted = 0
    failed_batches = 0
    attempted = 0
    partial = False

    for index, offset in enumerate(range(0, len(rows), batch_size)):
        if budget is not None and budget.is_approaching_deadline():
            partial = True
            _logger.warning(
                "Approaching deadline after %.1fs; stopping %s upsert at batch "
                "%d/%d (%d rows written)",
                budget.elapsed,
                table,
                index + 1,
                total_batches,
                inserted,
            )
            break

        chunk = rows[offset : offset + batch_size]
        attempted += 1
        try:
            inserted += sink.upsert_rows(table, chunk, key)
        except Exception as e:
            failed_batches += 1
            _logger.warning(
                "Batch %d/%d for %s failed (%d rows): %s",
                index + 1,
                total_batches,
                table,
                len(chunk),
                e,
            )
            continue

        _logger.debug(
            "Batch %d/%d for %s committed (%d rows)",
            index + 1,
            total_batches,
            table,
            len(chunk),
        )

    result = UpsertResult(
        table=table,
        inserted=inserted,
        failed_batches=failed_batches,
        attempted_batches=attempted,
        total_batches=total_batches,
        partial=partial,
        duration_seconds=time.perf_counter() - started,
    )
    _logger.info(
        "Upserted %d rows into %s (%d/%d batches, %d failed%s)",
        inserted,
        table,
        attempted,
        total_batches,
        failed_batches,
        ", partial" if partial else "",
    )
    return result
