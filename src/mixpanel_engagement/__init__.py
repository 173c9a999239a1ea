"""
mixpanel_engagement - Mixpanel engagement reshaping and sync engine.

Reads nested Mixpanel Insights and Funnels responses, flattens them into
one record per user/creator (or user/portfolio/creator) key, and upserts
them into a local DuckDB warehouse in time-boxed batches. Export API events
are grouped into per-user profiles and stored alongside them.
"""

from mixpanel_engagement._internal.config import SyncSettings
from mixpanel_engagement._internal.identity import IdentityNormalizer
from mixpanel_engagement._internal.reshape import (
    PairReshaper,
    reshape_funnel,
    reshape_user_profiles,
)
from mixpanel_engagement._internal.upsert import TimeBudget, upsert_batches
from mixpanel_engagement._internal.walker import Dimension, WalkStats, walk_metric
from mixpanel_engagement._literal_types import FunnelType, MetricRole, SyncStatus
from mixpanel_engagement.exceptions import (
    AccountExistsError,
    AccountNotFoundError,
    APIError,
    AuthenticationError,
    ConfigError,
    DatabaseLockedError,
    EngagementSyncError,
    QueryError,
    RateLimitError,
    ReshapeError,
    ServerError,
    SinkError,
)
from mixpanel_engagement.types import (
    CreatorPair,
    FirstEventTime,
    FunnelCompletion,
    FunnelReshapeResult,
    PairReshapeResult,
    PortfolioCreatorPair,
    ProfileReshapeResult,
    SQLResult,
    SyncAttempt,
    SyncResult,
    UpsertResult,
    UserCreatorCopy,
    UserProfile,
)
from mixpanel_engagement.workspace import EngagementWorkspace

__version__ = "0.1.0"

__all__ = [
    # Core
    "EngagementWorkspace",
    "SyncSettings",
    # Engine
    "IdentityNormalizer",
    "Dimension",
    "WalkStats",
    "walk_metric",
    "PairReshaper",
    "reshape_funnel",
    "reshape_user_profiles",
    "TimeBudget",
    "upsert_batches",
    # Type aliases
    "FunnelType",
    "MetricRole",
    "SyncStatus",
    # Exceptions
    "EngagementSyncError",
    "APIError",
    "ConfigError",
    "AccountNotFoundError",
    "AccountExistsError",
    "AuthenticationError",
    "RateLimitError",
    "QueryError",
    "ServerError",
    "ReshapeError",
    "SinkError",
    "DatabaseLockedError",
    # Records
    "CreatorPair",
    "PortfolioCreatorPair",
    "FunnelCompletion",
    "UserCreatorCopy",
    "FirstEventTime",
    "UserProfile",
    # Results
    "PairReshapeResult",
    "FunnelReshapeResult",
    "ProfileReshapeResult",
    "UpsertResult",
    "SyncAttempt",
    "SyncResult",
    "SQLResult",
]
