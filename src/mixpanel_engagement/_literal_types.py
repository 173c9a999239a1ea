"""Literal type aliases shared across the public API."""

from __future__ import annotations

from typing import Literal

MetricRole = Literal[
    "profile_views",
    "subscriptions",
    "pdp_views",
    "copies",
    "liquidations",
]
"""Named input trees accepted by the pair reshaper.

profile_views and subscriptions are keyed user -> creator_id -> username;
pdp_views, copies and liquidations are keyed user -> portfolio_ticker ->
creator_id -> username.
"""

FunnelType = Literal[
    "time_to_first_copy",
    "time_to_funded_account",
    "time_to_linked_bank",
]
"""Conversion funnels tracked in the time_funnels table."""

SyncStatus = Literal["in_progress", "completed", "failed", "rate_limited"]
"""Lifecycle states of a sync attempt."""
