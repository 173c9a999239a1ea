"""Record and result types for mixpanel_engagement.

All types are immutable frozen dataclasses with:
- JSON serialization via the `to_dict()` method (all values JSON-serializable)
- Warehouse row conversion via `to_row()` on record types
- Lazy DataFrame conversion via the `df` property on result containers
  (computed once, then cached)

Immutability: a reshape pass produces records once; nothing downstream may
alter them. If you need a different value, create a new instance.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any

import pandas as pd

from mixpanel_engagement._literal_types import SyncStatus

CompoundKey = tuple[str, ...]
"""Ordered tuple of dimension values used to join metric trees."""


# =============================================================================
# Engagement Records
# =============================================================================


@dataclass(frozen=True)
class CreatorPair:
    """One user's engagement with one creator.

    Built from the profile-views and subscriptions charts. Keyed by
    (distinct_id, creator_id) where creator_id is canonical.
    """

    distinct_id: str
    """User identifier."""

    creator_id: str
    """Canonical creator identifier."""

    creator_username: str
    """Resolved display name of the creator."""

    profile_view_count: int = 0
    """Creator profile views by this user."""

    subscription_count: int = 0
    """Subscriptions to this creator by this user."""

    synced_at: datetime | None = None
    """Sync timestamp attached by the reshaper."""

    CONFLICT_KEY = ("distinct_id", "creator_id")

    @property
    def did_subscribe(self) -> bool:
        """Whether the user subscribed to the creator at least once."""
        return self.subscription_count > 0

    @property
    def key(self) -> CompoundKey:
        """Compound key of this record."""
        return (self.distinct_id, self.creator_id)

    def to_row(self) -> dict[str, Any]:
        """Convert to a warehouse row."""
        return {
            "distinct_id": self.distinct_id,
            "creator_id": self.creator_id,
            "creator_username": self.creator_username,
            "profile_view_count": self.profile_view_count,
            "did_subscribe": self.did_subscribe,
            "subscription_count": self.subscription_count,
            "synced_at": self.synced_at,
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        row = self.to_row()
        row["synced_at"] = self.synced_at.isoformat() if self.synced_at else None
        return row


@dataclass(frozen=True)
class PortfolioCreatorPair:
    """One user's engagement with one portfolio of one creator.

    Built from the PDP views, copies and liquidations charts. Keyed by
    (distinct_id, portfolio_ticker, creator_id) where the ticker carries its
    `$` sigil and creator_id is canonical.
    """

    distinct_id: str
    """User identifier."""

    portfolio_ticker: str
    """Portfolio ticker, always `$`-prefixed."""

    creator_id: str
    """Canonical creator identifier."""

    creator_username: str
    """Resolved display name of the creator."""

    pdp_view_count: int = 0
    """Portfolio detail page views."""

    copy_count: int = 0
    """Portfolio copies."""

    liquidation_count: int = 0
    """Portfolio liquidations."""

    synced_at: datetime | None = None
    """Sync timestamp attached by the reshaper."""

    CONFLICT_KEY = ("distinct_id", "portfolio_ticker", "creator_id")

    @property
    def did_copy(self) -> bool:
        """Whether the user copied the portfolio at least once."""
        return self.copy_count > 0

    @property
    def key(self) -> CompoundKey:
        """Compound key of this record."""
        return (self.distinct_id, self.portfolio_ticker, self.creator_id)

    def to_row(self) -> dict[str, Any]:
        """Convert to a warehouse row."""
        return {
            "distinct_id": self.distinct_id,
            "portfolio_ticker": self.portfolio_ticker,
            "creator_id": self.creator_id,
            "creator_username": self.creator_username,
            "pdp_view_count": self.pdp_view_count,
            "did_copy": self.did_copy,
            "copy_count": self.copy_count,
            "liquidation_count": self.liquidation_count,
            "synced_at": self.synced_at,
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        row = self.to_row()
        row["synced_at"] = self.synced_at.isoformat() if self.synced_at else None
        return row


@dataclass(frozen=True)
class FunnelCompletion:
    """Elapsed time from funnel start to the final step for one user."""

    distinct_id: str
    """User (or bare device) identifier."""

    funnel_type: str
    """Funnel tag, e.g. time_to_first_copy."""

    time_in_seconds: float
    """Average time from funnel start to the final step, in seconds."""

    synced_at: datetime | None = None
    """Sync timestamp attached by the reshaper."""

    CONFLICT_KEY = ("distinct_id", "funnel_type")

    @property
    def time_in_days(self) -> float:
        """Elapsed time as a fraction of days."""
        return self.time_in_seconds / 86400

    def to_row(self) -> dict[str, Any]:
        """Convert to a warehouse row."""
        return {
            "distinct_id": self.distinct_id,
            "funnel_type": self.funnel_type,
            "time_in_seconds": self.time_in_seconds,
            "time_in_days": self.time_in_days,
            "synced_at": self.synced_at,
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        row = self.to_row()
        row["synced_at"] = self.synced_at.isoformat() if self.synced_at else None
        return row


@dataclass(frozen=True)
class UserCreatorCopy:
    """Copies of any portfolio of one creator by one user."""

    distinct_id: str
    creator_username: str
    copy_count: int
    synced_at: datetime | None = None

    CONFLICT_KEY = ("distinct_id", "creator_username")

    def to_row(self) -> dict[str, Any]:
        """Convert to a warehouse row."""
        return {
            "distinct_id": self.distinct_id,
            "creator_username": self.creator_username,
            "copy_count": self.copy_count,
            "synced_at": self.synced_at,
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        row = self.to_row()
        row["synced_at"] = self.synced_at.isoformat() if self.synced_at else None
        return row


@dataclass(frozen=True)
class FirstEventTime:
    """Earliest occurrence of a tracked event for one user."""

    distinct_id: str
    event_type: str
    first_event_time: datetime

    CONFLICT_KEY = ("distinct_id", "event_type")

    def to_row(self) -> dict[str, Any]:
        """Convert to a warehouse row."""
        return {
            "distinct_id": self.distinct_id,
            "event_type": self.event_type,
            "first_event_time": self.first_event_time,
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "distinct_id": self.distinct_id,
            "event_type": self.event_type,
            "first_event_time": self.first_event_time.isoformat(),
        }


@dataclass(frozen=True)
class UserProfile:
    """Per-user activity and survey answers built from exported events.

    Counters cover the events of one export window. Profile properties hold
    the most recent non-empty value seen in that window.
    """

    distinct_id: str
    first_event_time: datetime
    last_event_time: datetime
    events_processed: int = 0

    income: str | None = None
    net_worth: str | None = None
    investing_activity: str | None = None
    investing_experience_years: int | None = None
    investing_objective: str | None = None
    investment_type: str | None = None
    acquisition_survey: str | None = None

    linked_bank_account: bool = False
    available_copy_credits: float = 0.0
    buying_power: float = 0.0
    active_created_portfolios: int = 0
    lifetime_created_portfolios: int = 0

    total_copies: int = 0
    total_pdp_views: int = 0
    total_creator_profile_views: int = 0
    total_ach_transfers: int = 0
    paywall_views: int = 0
    total_subscriptions: int = 0
    app_sessions: int = 0
    discover_tab_views: int = 0
    stripe_modal_views: int = 0
    creator_card_taps: int = 0
    portfolio_card_taps: int = 0

    synced_at: datetime | None = None

    CONFLICT_KEY = ("distinct_id",)

    def to_row(self) -> dict[str, Any]:
        """Convert to a warehouse row."""
        return asdict(self)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        row = self.to_row()
        for name in ("first_event_time", "last_event_time", "synced_at"):
            value = row[name]
            row[name] = value.isoformat() if value else None
        return row


# =============================================================================
# Reshape Results
# =============================================================================


@dataclass(frozen=True)
class PairReshapeResult:
    """Output of one pair-reshape pass.

    Holds both record families plus the counters needed to diagnose skipped
    input without re-running with verbose logging.
    """

    portfolio_pairs: list[PortfolioCreatorPair] = field(default_factory=list)
    """One record per (user, ticker, creator) with activity."""

    creator_pairs: list[CreatorPair] = field(default_factory=list)
    """One record per (user, creator) with activity."""

    dropped_unnamed: int = 0
    """Keys dropped because no display name could be resolved."""

    skipped_branches: int = 0
    """Invalid or malformed tree branches skipped while walking."""

    _df_cache: pd.DataFrame | None = field(default=None, repr=False)

    @property
    def df(self) -> pd.DataFrame:
        """Portfolio pairs as a DataFrame (one row per pair)."""
        if self._df_cache is not None:
            return self._df_cache

        columns = [
            "distinct_id",
            "portfolio_ticker",
            "creator_id",
            "creator_username",
            "pdp_view_count",
            "did_copy",
            "copy_count",
            "liquidation_count",
            "synced_at",
        ]
        rows = [pair.to_row() for pair in self.portfolio_pairs]
        result_df = pd.DataFrame(rows) if rows else pd.DataFrame(columns=columns)

        object.__setattr__(self, "_df_cache", result_df)
        return result_df

    @property
    def creators_df(self) -> pd.DataFrame:
        """Creator pairs as a DataFrame (not cached)."""
        rows = [pair.to_row() for pair in self.creator_pairs]
        return pd.DataFrame(rows)

    def to_dict(self) -> dict[str, Any]:
        """Serialize summary counts for JSON output."""
        return {
            "portfolio_pairs": len(self.portfolio_pairs),
            "creator_pairs": len(self.creator_pairs),
            "dropped_unnamed": self.dropped_unnamed,
            "skipped_branches": self.skipped_branches,
        }


@dataclass(frozen=True)
class FunnelReshapeResult:
    """Output of one funnel-reshape pass."""

    funnel_type: str
    completions: list[FunnelCompletion] = field(default_factory=list)
    incomplete: int = 0
    """Users whose final step had no positive count or elapsed time."""

    _df_cache: pd.DataFrame | None = field(default=None, repr=False)

    @property
    def df(self) -> pd.DataFrame:
        """Convert to DataFrame with one row per completion."""
        if self._df_cache is not None:
            return self._df_cache

        rows = [c.to_row() for c in self.completions]
        result_df = (
            pd.DataFrame(rows)
            if rows
            else pd.DataFrame(
                columns=[
                    "distinct_id",
                    "funnel_type",
                    "time_in_seconds",
                    "time_in_days",
                    "synced_at",
                ]
            )
        )
        object.__setattr__(self, "_df_cache", result_df)
        return result_df

    def to_dict(self) -> dict[str, Any]:
        """Serialize summary counts for JSON output."""
        return {
            "funnel_type": self.funnel_type,
            "completions": len(self.completions),
            "incomplete": self.incomplete,
        }


@dataclass(frozen=True)
class ProfileReshapeResult:
    """Output of grouping exported events into user profiles."""

    profiles: list[UserProfile] = field(default_factory=list)
    events_seen: int = 0
    skipped_events: int = 0
    """Events with no usable user id (device-only included) or timestamp."""

    _df_cache: pd.DataFrame | None = field(default=None, repr=False)

    @property
    def df(self) -> pd.DataFrame:
        """Convert to DataFrame with one row per profile."""
        if self._df_cache is not None:
            return self._df_cache

        result_df = pd.DataFrame(
            [p.to_row() for p in self.profiles],
            columns=[f.name for f in fields(UserProfile)],
        )
        object.__setattr__(self, "_df_cache", result_df)
        return result_df

    def to_dict(self) -> dict[str, Any]:
        """Serialize summary counts for JSON output."""
        return {
            "profiles": len(self.profiles),
            "events_seen": self.events_seen,
            "skipped_events": self.skipped_events,
        }


# =============================================================================
# Upsert / Sync Results
# =============================================================================


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of a batched upsert into one table."""

    table: str
    """Target table."""

    inserted: int
    """Rows committed by successful batches."""

    failed_batches: int
    """Batches the warehouse rejected."""

    attempted_batches: int
    """Batches issued before finishing or stopping at the deadline."""

    total_batches: int
    """Batches the input would have produced."""

    partial: bool = False
    """True when the time budget stopped the driver early."""

    duration_seconds: float = 0.0
    """Wall-clock time spent upserting."""

    @property
    def skipped_batches(self) -> int:
        """Batches never attempted because of the deadline."""
        return self.total_batches - self.attempted_batches

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "table": self.table,
            "inserted": self.inserted,
            "failed_batches": self.failed_batches,
            "attempted_batches": self.attempted_batches,
            "total_batches": self.total_batches,
            "skipped_batches": self.skipped_batches,
            "partial": self.partial,
            "duration_seconds": self.duration_seconds,
        }


@dataclass(frozen=True)
class SyncAttempt:
    """Bookkeeping row for one sync run (stored in sync_logs)."""

    id: str
    source: str
    status: SyncStatus
    started_at: datetime
    completed_at: datetime | None = None
    records_inserted: int = 0
    error_message: str | None = None

    def to_row(self) -> dict[str, Any]:
        """Convert to a warehouse row."""
        return {
            "id": self.id,
            "source": self.source,
            "sync_status": self.status,
            "sync_started_at": self.started_at,
            "sync_completed_at": self.completed_at,
            "total_records_inserted": self.records_inserted,
            "error_message": self.error_message,
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "id": self.id,
            "source": self.source,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "records_inserted": self.records_inserted,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class SyncResult:
    """Structured success-or-failure result of a sync entry point.

    Failures carry the stage that failed and a message; partial runs carry
    the upsert results that did complete.
    """

    source: str
    success: bool
    message: str
    attempt_id: str | None = None
    stage: str | None = None
    rate_limited: bool = False
    partial: bool = False
    upserts: list[UpsertResult] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)

    @property
    def records_inserted(self) -> int:
        """Rows committed across all upserts."""
        return sum(u.inserted for u in self.upserts)

    @property
    def failed_batches(self) -> int:
        """Rejected batches across all upserts."""
        return sum(u.failed_batches for u in self.upserts)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "source": self.source,
            "success": self.success,
            "message": self.message,
            "attempt_id": self.attempt_id,
            "stage": self.stage,
            "rate_limited": self.rate_limited,
            "partial": self.partial,
            "records_inserted": self.records_inserted,
            "failed_batches": self.failed_batches,
            "upserts": [u.to_dict() for u in self.upserts],
            "stats": self.stats,
        }


# =============================================================================
# Query Results
# =============================================================================


@dataclass(frozen=True)
class SQLResult:
    """Result of a SQL query against the warehouse, with column names.

    Example:
        ```python
        result = storage.execute_rows(
            "SELECT creator_username, COUNT(*) FROM user_creator_engagement "
            "GROUP BY 1"
        )
        for row in result.to_dicts():
            print(row)
        ```
    """

    columns: list[str]
    """Column names from the query."""

    rows: list[tuple[Any, ...]]
    """Row tuples containing the data."""

    def to_dicts(self) -> list[dict[str, Any]]:
        """Convert rows to dicts keyed by column name."""
        return [dict(zip(self.columns, row, strict=True)) for row in self.rows]

    def to_dict(self) -> dict[str, Any]:
        """Serialize result for JSON output."""
        return {
            "columns": self.columns,
            "rows": [list(row) for row in self.rows],
            "row_count": len(self.rows),
        }

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[tuple[Any, ...]]:
        return iter(self.rows)
