"""Internal implementation modules. Not part of the public API."""

from mixpanel_engagement._internal.api_client import MixpanelAPIClient
from mixpanel_engagement._internal.config import ConfigManager, Credentials
from mixpanel_engagement._internal.storage import WarehouseStorage

__all__ = ["ConfigManager", "Credentials", "MixpanelAPIClient", "WarehouseStorage"]
