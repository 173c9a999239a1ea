"""Fixtures shared by unit and integration tests."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Generator
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import pytest
from hypothesis import settings
from pydantic import SecretStr

# HYPOTHESIS_PROFILE=ci gives more, reproducible examples.
settings.register_profile("default", max_examples=100)
settings.register_profile("ci", max_examples=300, derandomize=True)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))

if TYPE_CHECKING:
    from mixpanel_engagement._internal.api_client import MixpanelAPIClient
    from mixpanel_engagement._internal.config import ConfigManager, Credentials
    from mixpanel_engagement._internal.storage import WarehouseStorage


@pytest.fixture
def synced_at() -> datetime:
    """The timestamp reshaped rows are stamped with."""
    return datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    """Not-yet-existing config file."""
    return tmp_path / "config.toml"


@pytest.fixture
def config_manager(config_path: Path) -> ConfigManager:
    from mixpanel_engagement._internal.config import ConfigManager

    return ConfigManager(config_path=config_path)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Hide any MP_* credentials of the developer running the suite."""
    from mixpanel_engagement._internal.config import ENV_VARS

    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def sample_credentials() -> dict[str, str]:
    """Keyword arguments for ConfigManager.add_account."""
    return {
        "name": "test_account",
        "username": "sa_test_user",
        "secret": "test_secret_12345",
        "project_id": "12345",
        "region": "us",
    }


@pytest.fixture
def storage() -> Generator[WarehouseStorage, None, None]:
    """In-memory warehouse with the schema applied."""
    from mixpanel_engagement._internal.storage import WarehouseStorage

    with WarehouseStorage.memory() as store:
        yield store


@pytest.fixture
def mock_credentials() -> Credentials:
    from mixpanel_engagement._internal.config import Credentials

    return Credentials(
        username="test_user",
        secret=SecretStr("test_secret"),
        project_id="12345",
        region="us",
    )


@pytest.fixture
def mock_client_factory(
    mock_credentials: Credentials,
) -> Callable[..., MixpanelAPIClient]:
    """Build API clients whose requests are answered by a handler function.

    Extra keyword arguments go to MixpanelAPIClient, e.g. ``max_retries=2``.
    """
    from mixpanel_engagement._internal.api_client import MixpanelAPIClient

    def build(
        handler: Callable[[httpx.Request], httpx.Response], **kwargs: Any
    ) -> MixpanelAPIClient:
        return MixpanelAPIClient(
            mock_credentials, _transport=httpx.MockTransport(handler), **kwargs
        )

    return build


@pytest.fixture
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    """Replace retry sleeps with a list that records each delay."""
    delays: list[float] = []
    monkeypatch.setattr(
        "mixpanel_engagement._internal.api_client.time.sleep", delays.append
    )
    return delays


@pytest.fixture(autouse=True)
def reset_package_logger() -> Generator[None, None, None]:
    """Drop handlers added by configure_logging so caplog keeps working."""
    yield
    package_logger = logging.getLogger("mixpanel_engagement")
    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)
