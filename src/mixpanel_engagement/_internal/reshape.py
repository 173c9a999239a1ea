"""Reshape Mixpanel metric trees into engagement records.

Five reshapers live here:

- PairReshaper merges the engagement charts (profile views, PDP views,
  subscriptions, copies, liquidations) into one record per compound key.
- reshape_funnel extracts per-user completion times from a Funnels response.
- reshape_user_creator_copies and reshape_first_events handle the two
  single-metric charts used for copy attribution and first-event times.
- reshape_user_profiles groups Export API events into per-user profiles.

All reshapers are pure: they read their input once and return new records.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from mixpanel_engagement._internal.identity import (
    IdentityNormalizer,
    normalize_ticker,
)
from mixpanel_engagement._internal.walker import (
    SENTINEL,
    CompoundKey,
    Dimension,
    WalkStats,
    collect_metric,
    first_label,
    is_valid_key,
)
from mixpanel_engagement._literal_types import MetricRole
from mixpanel_engagement.types import (
    CreatorPair,
    FirstEventTime,
    FunnelCompletion,
    FunnelReshapeResult,
    PairReshapeResult,
    PortfolioCreatorPair,
    ProfileReshapeResult,
    UserCreatorCopy,
    UserProfile,
)

_logger = logging.getLogger(__name__)

CREATOR_DIMENSIONS = (Dimension("distinct_id"), Dimension("creator_id"))
"""user -> creator_id; the username level is resolved as the count node."""

PORTFOLIO_DIMENSIONS = (
    Dimension("distinct_id"),
    Dimension("portfolio_ticker", min_length=2),
    Dimension("creator_id"),
)
"""user -> portfolio_ticker -> creator_id; username resolved as count node."""

CREATOR_ROLES: tuple[MetricRole, ...] = ("profile_views", "subscriptions")
PORTFOLIO_ROLES: tuple[MetricRole, ...] = ("pdp_views", "copies", "liquidations")

DEVICE_PREFIX = "$device:"
SECONDS_PER_DAY = 86400


def _now() -> datetime:
    return datetime.now(UTC)


def _collect_full(
    tree: Any,
    dimensions: Sequence[Dimension],
    sentinel: str,
    stats: WalkStats | None,
) -> dict[CompoundKey, int]:
    """collect_metric restricted to keys with a value for every dimension."""
    counts = collect_metric(tree, dimensions, sentinel=sentinel, stats=stats)
    partial = [key for key in counts if len(key) != len(dimensions)]
    for key in partial:
        _logger.debug(
            "Ignoring sentinel-only total %d under %r", counts.pop(key), key
        )
    return counts


class PairReshaper:
    """Merge engagement metric trees into creator and portfolio pairs.

    Trees shaped user -> creator_id -> creator_username -> count
    (profile_views, subscriptions) become CreatorPair records; trees shaped
    user -> portfolio_ticker -> creator_id -> creator_username -> count
    (pdp_views, copies, liquidations) become PortfolioCreatorPair records.
    Creator ids are normalized through the IdentityNormalizer and tickers
    get their `$` sigil before keys are compared, so raw variants of the
    same logical pair merge into one record.

    Example:
        ```python
        reshaper = PairReshaper(IdentityNormalizer())
        result = reshaper.reshape(
            {"profile_views": {"u1": {"c1": {"alice": {"all": 5}}}}},
        )
        result.creator_pairs[0].profile_view_count  # 5
        ```
    """

    def __init__(
        self,
        normalizer: IdentityNormalizer | None = None,
        *,
        sentinel: str = SENTINEL,
    ) -> None:
        """Initialize the reshaper.

        Args:
            normalizer: Creator id normalizer. Defaults to one built from
                the default alias table.
            sentinel: Aggregate sentinel key used by the trees.
        """
        self._normalizer = normalizer or IdentityNormalizer()
        self._sentinel = sentinel

    @property
    def normalizer(self) -> IdentityNormalizer:
        """Creator id normalizer in use."""
        return self._normalizer

    def reshape(
        self,
        metric_trees: Mapping[str, Any],
        synced_at: datetime | None = None,
    ) -> PairReshapeResult:
        """Reshape a set of metric trees into engagement pairs.

        Args:
            metric_trees: Role -> raw metric tree. Any role may be missing;
                unknown roles are ignored with a warning.
            synced_at: Timestamp attached to every record. Defaults to now.

        Returns:
            PairReshapeResult with portfolio pairs, creator pairs and the
            counts of dropped keys and skipped branches.
        """
        synced_at = synced_at or _now()
        known = set(CREATOR_ROLES) | set(PORTFOLIO_ROLES)
        for role in metric_trees:
            if role not in known:
                _logger.warning("Ignoring unknown metric role %r", role)

        trees = {
            role: tree
            for role, tree in metric_trees.items()
            if role in known and isinstance(tree, Mapping)
        }
        stats = WalkStats()

        creator_counts = {
            role: _collect_full(
                trees.get(role, {}), CREATOR_DIMENSIONS, self._sentinel, stats
            )
            for role in CREATOR_ROLES
        }
        names = self._build_name_map(
            trees.get("profile_views", {}), creator_counts["profile_views"]
        )

        portfolio_pairs, dropped_portfolio = self._portfolio_pairs(
            trees, names, synced_at, stats
        )
        creator_pairs, dropped_creator = self._creator_pairs(
            trees, creator_counts, names, synced_at
        )

        result = PairReshapeResult(
            portfolio_pairs=portfolio_pairs,
            creator_pairs=creator_pairs,
            dropped_unnamed=dropped_portfolio + dropped_creator,
            skipped_branches=stats.skipped,
        )
        _logger.info(
            "Reshaped %d portfolio pairs and %d creator pairs "
            "(%d unnamed dropped, %d branches skipped)",
            len(portfolio_pairs),
            len(creator_pairs),
            result.dropped_unnamed,
            result.skipped_branches,
        )
        return result

    def _build_name_map(
        self,
        profile_views: Mapping[str, Any],
        view_counts: Mapping[CompoundKey, int],
    ) -> dict[str, str]:
        """Map canonical creator id to display name, first seen wins."""
        names: dict[str, str] = {}
        for raw_key in view_counts:
            canonical = self._normalizer.normalize(raw_key[1])
            if canonical in names:
                continue
            label = first_label(profile_views, raw_key, sentinel=self._sentinel)
            if label is not None:
                names[canonical] = label
        return names

    def _fallback_name(
        self,
        trees: Mapping[str, Any],
        roles: Sequence[MetricRole],
        raw_keys: Sequence[CompoundKey],
    ) -> str | None:
        for role in roles:
            tree = trees.get(role)
            if tree is None:
                continue
            for raw_key in raw_keys:
                label = first_label(tree, raw_key, sentinel=self._sentinel)
                if label is not None:
                    return label
        return None

    def _portfolio_pairs(
        self,
        trees: Mapping[str, Any],
        names: dict[str, str],
        synced_at: datetime,
        stats: WalkStats,
    ) -> tuple[list[PortfolioCreatorPair], int]:
        raw_counts = {
            role: _collect_full(
                trees.get(role, {}), PORTFOLIO_DIMENSIONS, self._sentinel, stats
            )
            for role in PORTFOLIO_ROLES
        }

        # normalized key -> raw keys that collapsed into it (ordered set)
        variants: dict[CompoundKey, dict[CompoundKey, None]] = {}
        for role in PORTFOLIO_ROLES:
            for raw_key in raw_counts[role]:
                user, ticker, creator = raw_key
                key = (
                    user,
                    normalize_ticker(ticker),
                    self._normalizer.normalize(creator),
                )
                variants.setdefault(key, {})[raw_key] = None

        pairs: list[PortfolioCreatorPair] = []
        dropped = 0
        for key, raw_set in variants.items():
            raw_keys = list(raw_set)
            pdp, copies, liquidations = (
                sum(raw_counts[role].get(raw_key, 0) for raw_key in raw_keys)
                for role in PORTFOLIO_ROLES
            )
            if pdp == 0 and copies == 0 and liquidations == 0:
                continue

            user, ticker, creator_id = key
            name = names.get(creator_id)
            if name is None:
                name = self._fallback_name(trees, PORTFOLIO_ROLES, raw_keys)
                if name is None:
                    dropped += 1
                    _logger.warning(
                        "Dropping portfolio pair %r: no creator username", key
                    )
                    continue
                names[creator_id] = name

            pairs.append(
                PortfolioCreatorPair(
                    distinct_id=user,
                    portfolio_ticker=ticker,
                    creator_id=creator_id,
                    creator_username=name,
                    pdp_view_count=pdp,
                    copy_count=copies,
                    liquidation_count=liquidations,
                    synced_at=synced_at,
                )
            )
        return pairs, dropped

    def _creator_pairs(
        self,
        trees: Mapping[str, Any],
        creator_counts: Mapping[MetricRole, Mapping[CompoundKey, int]],
        names: dict[str, str],
        synced_at: datetime,
    ) -> tuple[list[CreatorPair], int]:
        merged: dict[CompoundKey, dict[str, int]] = {}
        raw_variants: dict[CompoundKey, list[CompoundKey]] = {}
        for role in CREATOR_ROLES:
            for raw_key, count in creator_counts[role].items():
                user, creator = raw_key
                key = (user, self._normalizer.normalize(creator))
                entry = merged.get(key)
                if entry is None:
                    entry = merged[key] = dict.fromkeys(CREATOR_ROLES, 0)
                    raw_variants[key] = []
                entry[role] += count
                raw_variants[key].append(raw_key)

        pairs: list[CreatorPair] = []
        dropped = 0
        for key, entry in merged.items():
            views = entry["profile_views"]
            subscriptions = entry["subscriptions"]
            if views == 0 and subscriptions == 0:
                continue

            user, creator_id = key
            name = names.get(creator_id)
            if name is None:
                name = self._fallback_name(trees, CREATOR_ROLES, raw_variants[key])
                if name is None:
                    dropped += 1
                    _logger.warning("Dropping creator pair %r: no creator username", key)
                    continue
                names[creator_id] = name

            pairs.append(
                CreatorPair(
                    distinct_id=user,
                    creator_id=creator_id,
                    creator_username=name,
                    profile_view_count=views,
                    subscription_count=subscriptions,
                    synced_at=synced_at,
                )
            )
        return pairs, dropped


# =============================================================================
# Funnels
# =============================================================================


def extract_funnel_tree(response: Any) -> dict[str, Any]:
    """Return the date -> user -> steps tree of a Funnels response."""
    if not isinstance(response, Mapping):
        return {}
    data = response.get("data")
    return dict(data) if isinstance(data, Mapping) else {}


def _parse_seconds(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(seconds) or seconds <= 0:
        return None
    return seconds


def _step_count(step: Mapping[str, Any]) -> float:
    try:
        return float(step.get("count") or 0)
    except (TypeError, ValueError):
        return 0.0


def reshape_funnel(
    tree: Mapping[str, Any],
    funnel_type: str,
    synced_at: datetime | None = None,
    *,
    sentinel: str = SENTINEL,
) -> FunnelReshapeResult:
    """Extract per-user completion times from a funnel tree.

    The tree is grouped date -> user-or-device key -> ordered step list. The
    last step is the conversion: a completion is emitted only when its
    count is positive and its avg_time_from_start is a positive number.
    Users are deduplicated across dates, the last date seen wins.

    Args:
        tree: Funnel tree (see extract_funnel_tree).
        funnel_type: Tag stored with each completion.
        synced_at: Timestamp attached to every record. Defaults to now.
        sentinel: Aggregate key to skip.

    Returns:
        FunnelReshapeResult with one completion per converted user.

    Example:
        ```python
        tree = {
            "2025-01-01": {
                "u1": [
                    {"count": 0, "avg_time_from_start": 120},
                    {"count": 3, "avg_time_from_start": 7200},
                ]
            }
        }
        result = reshape_funnel(tree, "time_to_first_copy")
        result.completions[0].time_in_days  # 0.0833...
        ```
    """
    synced_at = synced_at or _now()
    completions: dict[str, FunnelCompletion] = {}
    incomplete = 0

    for date_key, users in tree.items():
        if not isinstance(users, Mapping):
            _logger.warning("Skipping funnel date %r: expected object", date_key)
            continue
        for user_key, steps in users.items():
            if user_key == sentinel:
                continue
            distinct_id = str(user_key).removeprefix(DEVICE_PREFIX)
            if not distinct_id:
                continue
            if not isinstance(steps, list) or not steps:
                _logger.warning(
                    "Skipping funnel entry %r on %r: no steps", user_key, date_key
                )
                continue
            final_step = steps[-1]
            if not isinstance(final_step, Mapping):
                incomplete += 1
                continue
            seconds = _parse_seconds(final_step.get("avg_time_from_start"))
            if _step_count(final_step) <= 0 or seconds is None:
                incomplete += 1
                continue
            completions.pop(distinct_id, None)
            completions[distinct_id] = FunnelCompletion(
                distinct_id=distinct_id,
                funnel_type=funnel_type,
                time_in_seconds=seconds,
                synced_at=synced_at,
            )

    _logger.info(
        "Processed %d %s completions (%d incomplete)",
        len(completions),
        funnel_type,
        incomplete,
    )
    return FunnelReshapeResult(
        funnel_type=funnel_type,
        completions=list(completions.values()),
        incomplete=incomplete,
    )


# =============================================================================
# Single-metric charts
# =============================================================================


def reshape_user_creator_copies(
    tree: Mapping[str, Any],
    synced_at: datetime | None = None,
    *,
    sentinel: str = SENTINEL,
    stats: WalkStats | None = None,
) -> list[UserCreatorCopy]:
    """Reshape a user -> creator_username -> count chart into copy rows.

    Args:
        tree: Raw metric tree.
        synced_at: Timestamp attached to every record. Defaults to now.
        sentinel: Aggregate sentinel key.
        stats: Optional walk counters.

    Returns:
        One UserCreatorCopy per (user, creator_username) with copies.
    """
    synced_at = synced_at or _now()
    counts = _collect_full(
        tree,
        (Dimension("distinct_id"), Dimension("creator_username")),
        sentinel,
        stats,
    )
    return [
        UserCreatorCopy(
            distinct_id=user,
            creator_username=username,
            copy_count=count,
            synced_at=synced_at,
        )
        for (user, username), count in counts.items()
        if count > 0
    ]


def _parse_timestamp(raw: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def reshape_first_events(
    tree: Mapping[str, Any],
    event_type: str,
    *,
    sentinel: str = SENTINEL,
) -> tuple[list[FirstEventTime], int]:
    """Reshape a user -> timestamp -> count chart into first-event rows.

    Args:
        tree: Raw metric tree, one timestamp key per occurrence bucket.
        event_type: Tag stored with each row (e.g. "first_copy").
        sentinel: Aggregate sentinel key.

    Returns:
        Tuple of (rows, unparseable). Each user gets the earliest valid
        timestamp; unparseable timestamp keys are counted and skipped.
    """
    earliest: dict[str, datetime] = {}
    unparseable = 0
    user_dim = Dimension("distinct_id")
    timestamp_dim = Dimension("timestamp")

    for user, buckets in tree.items():
        if not is_valid_key(user, user_dim, sentinel):
            continue
        if not isinstance(buckets, Mapping):
            _logger.warning("Skipping first-event entry %r: expected object", user)
            continue
        for raw_timestamp in buckets:
            if not is_valid_key(raw_timestamp, timestamp_dim, sentinel):
                continue
            parsed = _parse_timestamp(raw_timestamp)
            if parsed is None:
                unparseable += 1
                _logger.warning(
                    "Skipping unparseable %s timestamp %r for %r",
                    event_type,
                    raw_timestamp,
                    user,
                )
                continue
            current = earliest.get(user)
            if current is None or parsed < current:
                earliest[user] = parsed

    rows = [
        FirstEventTime(distinct_id=user, event_type=event_type, first_event_time=ts)
        for user, ts in earliest.items()
    ]
    return rows, unparseable


# =============================================================================
# Exported events
# =============================================================================

EVENT_COUNTERS: dict[str, str] = {
    "DubAutoCopyInitiated": "total_copies",
    "Viewed Portfolio Details": "total_pdp_views",
    "Viewed Creator Profile": "total_creator_profile_views",
    "AchTransferInitiated": "total_ach_transfers",
    "Viewed Creator Paywall": "paywall_views",
    "SubscriptionCreated": "total_subscriptions",
    "$ae_session": "app_sessions",
    "Viewed Discover Tab": "discover_tab_views",
    "Viewed Stripe Modal": "stripe_modal_views",
    "Tapped Creator Card": "creator_card_taps",
    "Tapped Portfolio Card": "portfolio_card_taps",
}
"""Event name -> UserProfile counter incremented once per event."""

BANK_LINKED_EVENT = "BankAccountLinked"

TRACKED_EVENTS: tuple[str, ...] = (BANK_LINKED_EVENT, *EVENT_COUNTERS)
"""Events requested from the Export API for user profiles."""

MAX_EVENT_TIME = 253402300799
"""Last second of year 9999; event times past it are rejected."""

USER_ID_PROPERTIES = (
    "distinct_id",
    "$distinct_id",
    "user_id",
    "$user_id",
    "identified_id",
    "$identified_id",
)

TEXT_PROPERTIES: dict[str, tuple[str, ...]] = {
    "income": ("income",),
    "net_worth": ("netWorth", "net_worth"),
    "investing_activity": ("investingActivity", "investing_activity"),
    "investing_objective": ("investingObjective", "investing_objective"),
    "investment_type": ("investmentType", "investment_type"),
    "acquisition_survey": ("acquisitionSurvey", "acquisition_survey"),
}
"""Profile field -> event property spellings, camelCase first."""

INT_PROPERTIES: dict[str, tuple[str, ...]] = {
    "investing_experience_years": (
        "investingExperienceYears",
        "investing_experience_years",
    ),
    "active_created_portfolios": (
        "activeCreatedPortfolios",
        "active_created_portfolios",
    ),
    "lifetime_created_portfolios": (
        "lifetimeCreatedPortfolios",
        "lifetime_created_portfolios",
    ),
}

FLOAT_PROPERTIES: dict[str, tuple[str, ...]] = {
    "available_copy_credits": ("availableCopyCredits", "available_copy_credits"),
    "buying_power": ("buyingPower", "buying_power"),
}


def _event_user(properties: Mapping[str, Any]) -> str | None:
    for name in USER_ID_PROPERTIES:
        value = properties.get(name)
        if value is None or value == "":
            continue
        user = str(value)
        return None if user.startswith(DEVICE_PREFIX) else user
    return None


def _event_time(properties: Mapping[str, Any]) -> float | None:
    raw = properties.get("time")
    if isinstance(raw, bool) or not isinstance(raw, int | float | str):
        return None
    try:
        seconds = float(raw)
    except ValueError:
        return None
    return seconds if 0 <= seconds <= MAX_EVENT_TIME else None


def _property_value(
    properties: Mapping[str, Any], names: Sequence[str], convert: type
) -> Any:
    """First present spelling of a property, converted, or None."""
    for name in names:
        value = properties.get(name)
        if value is None or value == "":
            continue
        if convert is str:
            return str(value)
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(number):
            return None
        return int(number) if convert is int else number
    return None


class _ProfileBuilder:
    """Accumulates one user's events in any order."""

    def __init__(self) -> None:
        self.counters: dict[str, int] = dict.fromkeys(EVENT_COUNTERS.values(), 0)
        self.linked_bank_account = False
        self.events = 0
        self.first_seen = math.inf
        self.last_seen = -math.inf
        # field -> (event time, value); the newest event wins
        self.latest: dict[str, tuple[float, Any]] = {}

    def add(self, event_name: Any, properties: Mapping[str, Any], when: float) -> None:
        self.events += 1
        self.first_seen = min(self.first_seen, when)
        self.last_seen = max(self.last_seen, when)

        if isinstance(event_name, str):
            counter = EVENT_COUNTERS.get(event_name)
            if counter is not None:
                self.counters[counter] += 1
            elif event_name == BANK_LINKED_EVENT:
                self.linked_bank_account = True

        for table, convert in (
            (TEXT_PROPERTIES, str),
            (INT_PROPERTIES, int),
            (FLOAT_PROPERTIES, float),
        ):
            for field_name, names in table.items():
                value = _property_value(properties, names, convert)
                if value is None:
                    continue
                seen = self.latest.get(field_name)
                if seen is None or when >= seen[0]:
                    self.latest[field_name] = (when, value)

    def build(self, distinct_id: str, synced_at: datetime) -> UserProfile:
        values = {name: value for name, (_, value) in self.latest.items()}
        return UserProfile(
            distinct_id=distinct_id,
            first_event_time=datetime.fromtimestamp(self.first_seen, UTC),
            last_event_time=datetime.fromtimestamp(self.last_seen, UTC),
            events_processed=self.events,
            linked_bank_account=self.linked_bank_account,
            synced_at=synced_at,
            **self.counters,
            **values,
        )


def reshape_user_profiles(
    events: Iterable[Any],
    synced_at: datetime | None = None,
) -> ProfileReshapeResult:
    """Group exported events into one profile per user.

    Events are attributed to the first non-empty id among distinct_id,
    user_id and identified_id (with or without the ``$`` prefix). Device-only
    ids (``$device:...``), events with no id and events without a usable
    ``time`` are skipped. Tracked events increment their counter; a
    BankAccountLinked event sets linked_bank_account. Profile properties take
    the value from the user's most recent event that carries one.

    Consumes ``events`` once, so a streaming export iterator can be passed
    directly.

    Args:
        events: Export API events, each ``{"event": name, "properties": {...}}``.
        synced_at: Timestamp attached to every profile. Defaults to now.

    Returns:
        ProfileReshapeResult with profiles in first-seen user order.

    Example:
        ```python
        result = reshape_user_profiles(
            [{"event": "$ae_session", "properties": {"distinct_id": "u1", "time": 1}}]
        )
        result.profiles[0].app_sessions  # 1
        ```
    """
    synced_at = synced_at or _now()
    builders: dict[str, _ProfileBuilder] = {}
    seen = 0
    skipped = 0

    for event in events:
        seen += 1
        properties = event.get("properties") if isinstance(event, Mapping) else None
        if not isinstance(properties, Mapping):
            skipped += 1
            continue
        user = _event_user(properties)
        when = _event_time(properties)
        if user is None or when is None:
            skipped += 1
            continue
        builder = builders.get(user)
        if builder is None:
            builder = builders[user] = _ProfileBuilder()
        builder.add(event.get("event"), properties, when)

    profiles = [builder.build(user, synced_at) for user, builder in builders.items()]
    _logger.info(
        "Built %d user profiles from %d events (%d skipped)",
        len(profiles),
        seen,
        skipped,
    )
    return ProfileReshapeResult(
        profiles=profiles, events_seen=seen, skipped_events=skipped
    )
