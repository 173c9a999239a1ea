"""Shared fixtures for CLI unit tests."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import typer


@pytest.fixture
def mock_context() -> MagicMock:
    """A Typer context with the global options unset."""
    ctx = MagicMock(spec=typer.Context)
    ctx.obj = {
        "account": None,
        "config_path": None,
        "quiet": False,
        "verbose": False,
        "workspace": None,
        "config": None,
    }
    return ctx
