"""Workspace facade for engagement syncs.

EngagementWorkspace wires credentials, settings, the Mixpanel client and the
warehouse together and exposes the sync entry points plus local SQL access.

Example:
    ```python
    with EngagementWorkspace(path="engagement.duckdb") as ws:
        result = ws.sync_engagement()
        print(result.message)
        df = ws.sql("SELECT * FROM creator_engagement_summary")
    ```
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pandas as pd

from mixpanel_engagement._internal.api_client import MixpanelAPIClient
from mixpanel_engagement._internal.config import (
    ConfigManager,
    Credentials,
    SyncSettings,
)
from mixpanel_engagement._internal.services.sync import (
    DownstreamJob,
    EngagementSyncService,
)
from mixpanel_engagement._internal.storage import TABLES, WarehouseStorage
from mixpanel_engagement.exceptions import ConfigError
from mixpanel_engagement.types import SQLResult, SyncResult


class EngagementWorkspace:
    """Unified entry point for engagement syncs and warehouse queries.

    Examples:
        Sync with credentials from config:

        ```python
        ws = EngagementWorkspace()
        ws.sync_funnels(from_date="2025-01-01", to_date="2025-01-31")
        ws.close()
        ```

        Query-only access to an existing warehouse:

        ```python
        ws = EngagementWorkspace.open("engagement.duckdb")
        rows = ws.sql_rows("SELECT * FROM sync_logs")
        ```
    """

    def __init__(
        self,
        account: str | None = None,
        path: str | Path | None = None,
        *,
        offline: bool = False,
        downstream: Sequence[DownstreamJob] | None = None,
        # Dependency injection for testing
        _config_manager: ConfigManager | None = None,
        _api_client: MixpanelAPIClient | None = None,
        _storage: WarehouseStorage | None = None,
        _settings: SyncSettings | None = None,
    ) -> None:
        """Create a workspace with resolved credentials and settings.

        Args:
            account: Named account from the config file.
            path: Warehouse file. Defaults to ~/.mpe/data/{project_id}.duckdb.
            offline: Skip credential resolution; only process_raw_file and
                local queries are available.
            downstream: Jobs started after successful engagement syncs.
            _config_manager: Injected ConfigManager for testing.
            _api_client: Injected MixpanelAPIClient for testing.
            _storage: Injected WarehouseStorage for testing.
            _settings: Injected SyncSettings for testing.

        Raises:
            ConfigError: If no credentials can be resolved or the sync
                settings are invalid.
            AccountNotFoundError: If the named account doesn't exist.
        """
        self._config_manager = _config_manager or ConfigManager()
        self._settings = _settings or self._config_manager.load_sync_settings()
        self._credentials: Credentials | None = None
        if _api_client is None and not offline:
            self._credentials = self._config_manager.resolve_credentials(account)

        if _storage is not None:
            self._storage = _storage
        else:
            if path is not None:
                db_path = Path(path)
            else:
                project_id = (
                    self._credentials.project_id
                    if self._credentials is not None
                    else "default"
                )
                db_path = Path.home() / ".mpe" / "data" / f"{project_id}.duckdb"
            self._storage = WarehouseStorage(path=db_path)

        self._api_client: MixpanelAPIClient | None = _api_client
        self._downstream = list(downstream or [])
        self._sync: EngagementSyncService | None = None

    @classmethod
    def open(cls, path: str | Path) -> EngagementWorkspace:
        """Open a warehouse for query-only access (no credentials needed).

        Raises:
            FileNotFoundError: If the database file doesn't exist.
        """
        db_path = Path(path)
        if not db_path.exists():
            raise FileNotFoundError(f"Database not found: {db_path}")

        instance = object.__new__(cls)
        instance._config_manager = ConfigManager()
        instance._settings = SyncSettings()
        instance._credentials = None
        instance._storage = WarehouseStorage(path=db_path)
        instance._api_client = None
        instance._downstream = []
        instance._sync = None
        return instance

    def __enter__(self) -> EngagementWorkspace:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the warehouse, the HTTP client and the downstream pool.

        Safe to call multiple times.
        """
        if self._sync is not None:
            self._sync.close()
            self._sync = None
        if self._api_client is not None:
            self._api_client.close()
            self._api_client = None
        self._storage.close()

    @property
    def settings(self) -> SyncSettings:
        """Sync settings in use."""
        return self._settings

    @property
    def storage(self) -> WarehouseStorage:
        """Underlying warehouse."""
        return self._storage

    # =========================================================================
    # PRIVATE HELPERS
    # =========================================================================

    def _require_api_client(self) -> MixpanelAPIClient:
        if self._api_client is None:
            if self._credentials is None:
                raise ConfigError(
                    "Syncing requires credentials. Use EngagementWorkspace() "
                    "instead of EngagementWorkspace.open()."
                )
            self._api_client = MixpanelAPIClient(
                self._credentials,
                max_retries=self._settings.rate_limit_retries,
                server_error_retries=self._settings.server_error_retries,
                server_error_delay=self._settings.server_error_delay_seconds,
            )
        return self._api_client

    def _api_client_or_none(self) -> MixpanelAPIClient | None:
        if self._credentials is None and self._api_client is None:
            return None
        return self._require_api_client()

    @property
    def _sync_service(self) -> EngagementSyncService:
        if self._sync is None:
            self._sync = EngagementSyncService(
                self._api_client_or_none(),
                self._storage,
                self._settings,
                downstream=self._downstream,
            )
        return self._sync

    # =========================================================================
    # SYNC METHODS
    # =========================================================================

    def sync_engagement(self) -> SyncResult:
        """Sync creator and portfolio engagement pairs."""
        return self._sync_service.sync_engagement()

    def sync_funnels(
        self,
        from_date: str | None = None,
        to_date: str | None = None,
    ) -> SyncResult:
        """Sync funnel completion times over a date range.

        Raises:
            ValueError: If the dates are malformed or out of order.
        """
        return self._sync_service.sync_funnels(from_date, to_date)

    def sync_user_creator_copies(self) -> SyncResult:
        """Sync per-user copy counts by creator."""
        return self._sync_service.sync_user_creator_copies()

    def sync_first_events(self) -> SyncResult:
        """Sync first-copy and KYC-approved times."""
        return self._sync_service.sync_first_events()

    def sync_user_profiles(
        self,
        from_date: str | None = None,
        to_date: str | None = None,
    ) -> SyncResult:
        """Sync per-user profiles built from exported events (default: yesterday).

        Raises:
            ValueError: If the dates are malformed or out of order.
        """
        return self._sync_service.sync_user_profiles(from_date, to_date)

    def process_raw_file(self, path: str | Path) -> SyncResult:
        """Reshape and upsert a saved raw engagement payload.

        Needs no Mixpanel credentials.
        """
        return self._sync_service.process_raw_file(Path(path))

    # =========================================================================
    # LOCAL QUERY METHODS
    # =========================================================================

    def sql(self, query: str) -> pd.DataFrame:
        """Execute SQL and return a DataFrame.

        Raises:
            QueryError: If the query is invalid.
        """
        return self._storage.execute_df(query)

    def sql_rows(self, query: str, params: list[Any] | None = None) -> SQLResult:
        """Execute SQL and return rows with column names.

        Raises:
            QueryError: If the query is invalid.
        """
        return self._storage.execute_rows(query, params)

    def table_counts(self) -> dict[str, int]:
        """Row count of every engagement table."""
        return {name: self._storage.count_rows(name) for name in TABLES}

    def recent_syncs(self, limit: int = 10) -> SQLResult:
        """Most recent sync attempts, newest first."""
        return self._storage.execute_rows(
            "SELECT * FROM sync_logs ORDER BY sync_started_at DESC LIMIT ?",
            [limit],
        )

    # =========================================================================
    # CREDENTIALS
    # =========================================================================

    @staticmethod
    def test_credentials(
        account: str | None = None,
        *,
        _config_manager: ConfigManager | None = None,
        _transport: Any = None,
    ) -> dict[str, Any]:
        """Test credentials by querying the profile views chart.

        Returns:
            Dict with success, account, project_id and region.

        Raises:
            AccountNotFoundError: If the named account doesn't exist.
            AuthenticationError: If the credentials are rejected.
            ConfigError: If no credentials can be resolved.
        """
        config_manager = _config_manager or ConfigManager()
        credentials = config_manager.resolve_credentials(account)
        settings = config_manager.load_sync_settings()

        account_name = account
        if account_name is None:
            account_name = next(
                (a.name for a in config_manager.list_accounts() if a.is_default),
                None,
            )

        with MixpanelAPIClient(credentials, _transport=_transport) as client:
            client.query_saved_report(settings.profile_views_chart, limit=1)

        return {
            "success": True,
            "account": account_name,
            "project_id": credentials.project_id,
            "region": credentials.region,
        }

