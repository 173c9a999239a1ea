"""Shared fixtures for CLI integration tests."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from typer.testing import CliRunner

from mixpanel_engagement._internal.config import AccountInfo
from mixpanel_engagement.types import SyncResult, UpsertResult


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a CLI runner for testing commands."""
    return CliRunner()


@pytest.fixture
def mock_config_manager() -> MagicMock:
    """Create a mock ConfigManager with two accounts."""
    config = MagicMock()
    config.list_accounts.return_value = [
        AccountInfo(
            name="production",
            username="prod_user",
            project_id="12345",
            region="us",
            is_default=True,
        ),
        AccountInfo(
            name="staging",
            username="staging_user",
            project_id="67890",
            region="eu",
            is_default=False,
        ),
    ]
    return config


@pytest.fixture
def engagement_result() -> SyncResult:
    """A successful engagement sync."""
    return SyncResult(
        source="mixpanel_engagement",
        success=True,
        message="Synced 2 portfolio and 3 creator pairs",
        attempt_id="attempt-1",
        upserts=[
            UpsertResult("user_portfolio_creator_engagement", 2, 0, 1, 1),
            UpsertResult("user_creator_engagement", 3, 0, 1, 1),
        ],
    )


@pytest.fixture
def mock_workspace(engagement_result: SyncResult) -> MagicMock:
    """Create a mock workspace whose syncs succeed."""
    workspace = MagicMock()
    workspace.sync_engagement.return_value = engagement_result
    workspace.sync_funnels.return_value = SyncResult(
        source="mixpanel_funnels", success=True, message="Synced 0 funnel rows"
    )
    workspace.sync_user_creator_copies.return_value = SyncResult(
        source="mixpanel_user_creator_copies", success=True, message="ok"
    )
    workspace.sync_first_events.return_value = SyncResult(
        source="mixpanel_first_events", success=True, message="ok"
    )
    workspace.sync_user_profiles.return_value = SyncResult(
        source="mixpanel_user_profiles", success=True, message="ok"
    )
    return workspace
