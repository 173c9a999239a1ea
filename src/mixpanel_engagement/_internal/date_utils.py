"""Date utilities for funnel and event export windows."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta


def lookback_range(days: int, *, today: date | None = None) -> tuple[str, str]:
    """Return the (from_date, to_date) window ending today.

    Args:
        days: Length of the window in days, today included.
        today: Override for the current UTC date.

    Returns:
        Tuple of YYYY-MM-DD strings.

    Raises:
        ValueError: If days is not positive.

    Example:
        ```python
        lookback_range(30, today=date(2025, 1, 30))
        # ("2025-01-01", "2025-01-30")
        ```
    """
    if days <= 0:
        raise ValueError("days must be positive")
    end = today or datetime.now(UTC).date()
    start = end - timedelta(days=days - 1)
    return start.isoformat(), end.isoformat()


def validate_date_range(from_date: str, to_date: str) -> tuple[str, str]:
    """Validate a YYYY-MM-DD range.

    Raises:
        ValueError: If a date is malformed or from_date is after to_date.
    """
    try:
        start = date.fromisoformat(from_date)
        end = date.fromisoformat(to_date)
    except ValueError as e:
        raise ValueError(
            f"Invalid date format. Expected YYYY-MM-DD, got from_date={from_date!r}, "
            f"to_date={to_date!r}"
        ) from e

    if start > end:
        raise ValueError(
            f"from_date ({from_date}) must be on or before to_date ({to_date})"
        )
    return start.isoformat(), end.isoformat()


def previous_day_range(*, today: date | None = None) -> tuple[str, str]:
    """Return (yesterday, yesterday): the last complete UTC day.

    Example:
        ```python
        previous_day_range(today=date(2025, 1, 30))
        # ("2025-01-29", "2025-01-29")
        ```
    """
    day = (today or datetime.now(UTC).date()) - timedelta(days=1)
    return day.isoformat(), day.isoformat()
