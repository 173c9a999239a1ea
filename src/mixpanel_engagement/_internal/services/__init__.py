"""Service layer for mixpanel_engagement.

The sync service orchestrates the API client, the reshapers and the
warehouse for each sync entry point.
"""

from mixpanel_engagement._internal.services.sync import EngagementSyncService

__all__ = ["EngagementSyncService"]
