"""Unit tests for EngagementWorkspace."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from mixpanel_engagement import EngagementWorkspace
from mixpanel_engagement._internal.api_client import MixpanelAPIClient
from mixpanel_engagement._internal.config import ConfigManager, SyncSettings
from mixpanel_engagement._internal.storage import TABLES, WarehouseStorage
from mixpanel_engagement.exceptions import AuthenticationError, ConfigError

PROFILE_VIEWS = {
    "series": {"Total Profile Views": {"u1": {"c1": {"alice": {"all": 5}}}}}
}


def _mock_client(reports: dict[int, Any]) -> MagicMock:
    client = MagicMock(spec=MixpanelAPIClient)
    client.query_saved_report.side_effect = lambda bookmark_id, **_: reports.get(
        bookmark_id, {}
    )
    return client


@pytest.fixture
def workspace_factory(
    config_manager: ConfigManager, storage: WarehouseStorage
) -> Any:
    """Build workspaces with injected dependencies."""

    def factory(**kwargs: Any) -> EngagementWorkspace:
        kwargs.setdefault("_config_manager", config_manager)
        kwargs.setdefault("_storage", storage)
        return EngagementWorkspace(**kwargs)

    return factory


@pytest.mark.usefixtures("clean_env")
class TestConstruction:
    """Workspace construction."""

    def test_requires_credentials(self, workspace_factory: Any) -> None:
        """Without credentials a syncing workspace cannot be built."""
        with pytest.raises(ConfigError, match="No credentials"):
            workspace_factory()

    def test_offline_needs_no_credentials(self, workspace_factory: Any) -> None:
        """Offline workspaces skip credential resolution."""
        ws = workspace_factory(offline=True)
        assert ws.settings == SyncSettings()

    def test_settings_come_from_config(
        self, config_path: Path, storage: WarehouseStorage
    ) -> None:
        """[sync] values in the config file are applied."""
        config_path.write_text("[sync]\nbatch_size = 100\n")
        ws = EngagementWorkspace(
            offline=True,
            _config_manager=ConfigManager(config_path),
            _storage=storage,
        )
        assert ws.settings.batch_size == 100
        assert ws.storage is storage

    def test_default_path_uses_project_id(
        self,
        config_manager: ConfigManager,
        sample_credentials: dict[str, str],
        monkeypatch: pytest.MonkeyPatch,
        temp_dir: Path,
    ) -> None:
        """The warehouse defaults to ~/.mpe/data/{project_id}.duckdb."""
        monkeypatch.setattr(Path, "home", classmethod(lambda cls: temp_dir))
        config_manager.add_account(**sample_credentials)

        with EngagementWorkspace(_config_manager=config_manager) as ws:
            assert ws.storage.path == temp_dir / ".mpe" / "data" / "12345.duckdb"

    def test_explicit_path(self, config_manager: ConfigManager, temp_dir: Path) -> None:
        """An explicit path is used as-is."""
        path = temp_dir / "custom.duckdb"
        with EngagementWorkspace(
            path=path, offline=True, _config_manager=config_manager
        ) as ws:
            assert ws.storage.path == path


class TestSyncDelegation:
    """Sync methods delegate to the sync service."""

    def test_sync_engagement(
        self, workspace_factory: Any, storage: WarehouseStorage
    ) -> None:
        """An injected client is used for engagement syncs."""
        settings = SyncSettings()
        client = _mock_client({settings.profile_views_chart: PROFILE_VIEWS})
        ws = workspace_factory(_api_client=client, _settings=settings)

        result = ws.sync_engagement()

        assert result.success
        assert ws.table_counts()["user_creator_engagement"] == 1
        assert set(ws.table_counts()) == set(TABLES)

    def test_offline_sync_fails_without_client(self, workspace_factory: Any) -> None:
        """Offline workspaces report a config failure for API syncs."""
        result = workspace_factory(offline=True).sync_user_creator_copies()
        assert not result.success
        assert result.stats["error"]["code"] == "CONFIG_ERROR"

    def test_process_raw_file_offline(
        self, workspace_factory: Any, temp_dir: Path
    ) -> None:
        """Raw files are processed without credentials."""
        path = temp_dir / "raw.json"
        path.write_text(json.dumps({"profileViewsData": PROFILE_VIEWS}))
        ws = workspace_factory(offline=True)

        result = ws.process_raw_file(str(path))

        assert result.success
        assert ws.sql_rows("SELECT creator_username FROM user_creator_engagement").rows == [
            ("alice",)
        ]

    def test_sync_funnels_passes_range(self, workspace_factory: Any) -> None:
        """The date range reaches the client."""
        client = MagicMock(spec=MixpanelAPIClient)
        client.funnel.return_value = {"data": {}}
        ws = workspace_factory(_api_client=client, _settings=SyncSettings())

        assert ws.sync_funnels("2025-01-01", "2025-01-05").success
        client.funnel.assert_any_call(
            84999271, "2025-01-01", "2025-01-05", users=True
        )

    def test_close_closes_client(self, workspace_factory: Any) -> None:
        """close() releases the client and is repeatable."""
        client = _mock_client({})
        ws = workspace_factory(_api_client=client, _settings=SyncSettings())
        ws.sync_first_events()
        ws.close()
        ws.close()
        client.close.assert_called_once()


class TestQueries:
    """Local query helpers."""

    def test_sql_and_recent_syncs(
        self, workspace_factory: Any, temp_dir: Path
    ) -> None:
        """Recent syncs list the newest attempt first."""
        path = temp_dir / "raw.json"
        path.write_text(json.dumps({"profileViewsData": PROFILE_VIEWS}))
        ws = workspace_factory(offline=True)
        first = ws.process_raw_file(path)
        second = ws.process_raw_file(path)

        recent = ws.recent_syncs(limit=5).to_dicts()
        assert [r["id"] for r in recent] == [second.attempt_id, first.attempt_id]
        assert ws.sql("SELECT COUNT(*) AS n FROM sync_logs")["n"].tolist() == [2]

    def test_open_existing_database(self, temp_dir: Path) -> None:
        """open() gives query access to an existing file."""
        path = temp_dir / "existing.duckdb"
        WarehouseStorage(path=path).close()

        with EngagementWorkspace.open(path) as ws:
            assert ws.table_counts()["sync_logs"] == 0

    def test_open_missing_database(self, temp_dir: Path) -> None:
        """open() refuses missing files."""
        with pytest.raises(FileNotFoundError):
            EngagementWorkspace.open(temp_dir / "missing.duckdb")

    def test_open_workspace_cannot_sync(self, temp_dir: Path) -> None:
        """Query-only workspaces fail API syncs with a config error."""
        path = temp_dir / "existing.duckdb"
        WarehouseStorage(path=path).close()
        with EngagementWorkspace.open(path) as ws:
            result = ws.sync_user_creator_copies()
        assert not result.success
        assert result.stage == "fetch"


@pytest.mark.usefixtures("clean_env")
class TestCredentialCheck:
    """EngagementWorkspace.test_credentials."""

    def test_success(
        self, config_manager: ConfigManager, sample_credentials: dict[str, str]
    ) -> None:
        """A successful query reports the account details."""
        config_manager.add_account(**sample_credentials)
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"series": {}})

        result = EngagementWorkspace.test_credentials(
            _config_manager=config_manager,
            _transport=httpx.MockTransport(handler),
        )

        assert result == {
            "success": True,
            "account": "test_account",
            "project_id": "12345",
            "region": "us",
        }
        assert seen[0].url.params["limit"] == "1"

    def test_rejected_credentials(
        self, config_manager: ConfigManager, sample_credentials: dict[str, str]
    ) -> None:
        """A 401 surfaces as AuthenticationError."""
        config_manager.add_account(**sample_credentials)
        with pytest.raises(AuthenticationError):
            EngagementWorkspace.test_credentials(
                "test_account",
                _config_manager=config_manager,
                _transport=httpx.MockTransport(lambda r: httpx.Response(401)),
            )
