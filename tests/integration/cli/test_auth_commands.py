"""Integration tests for auth CLI commands."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from mixpanel_engagement._internal.config import ConfigManager
from mixpanel_engagement.cli.main import app
from mixpanel_engagement.exceptions import (
    AccountExistsError,
    AccountNotFoundError,
    AuthenticationError,
    ConfigError,
)
from mixpanel_engagement.workspace import EngagementWorkspace


class TestAuthList:
    """Tests for mpe auth list command."""

    def test_list_accounts_json_format(
        self, cli_runner: CliRunner, mock_config_manager: MagicMock
    ) -> None:
        """Accounts are listed as JSON by default."""
        with patch(
            "mixpanel_engagement.cli.commands.auth.get_config",
            return_value=mock_config_manager,
        ):
            result = cli_runner.invoke(app, ["auth", "list"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [a["name"] for a in data] == ["production", "staging"]
        assert data[0]["is_default"] is True
        assert "secret" not in data[0]

    def test_list_accounts_table_format(
        self, cli_runner: CliRunner, mock_config_manager: MagicMock
    ) -> None:
        """The table format shows every account."""
        with patch(
            "mixpanel_engagement.cli.commands.auth.get_config",
            return_value=mock_config_manager,
        ):
            result = cli_runner.invoke(app, ["auth", "list", "--format", "table"])

        assert result.exit_code == 0
        assert "production" in result.stdout
        assert "staging" in result.stdout


class TestAuthAdd:
    """Tests for mpe auth add command, against a real config file."""

    @pytest.fixture(autouse=True)
    def _no_env_credentials(self, clean_env: None) -> None:
        """Start without MP_* variables."""

    def test_add_with_env_secret(
        self, cli_runner: CliRunner, config_path: Path
    ) -> None:
        """MP_SECRET supplies the secret."""
        result = cli_runner.invoke(
            app,
            ["--config", str(config_path), "auth", "add", "prod", "-u", "sa", "-p", "1"],
            env={"MP_SECRET": "s3cret"},
        )

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"added": "prod", "is_default": False}
        creds = ConfigManager(config_path).resolve_credentials("prod")
        assert creds.secret.get_secret_value() == "s3cret"

    def test_add_with_stdin_secret(
        self, cli_runner: CliRunner, config_path: Path
    ) -> None:
        """--secret-stdin reads the piped secret."""
        result = cli_runner.invoke(
            app,
            [
                "--config",
                str(config_path),
                "auth",
                "add",
                "eu_prod",
                "-u",
                "sa",
                "-p",
                "2",
                "-r",
                "eu",
                "--default",
                "--secret-stdin",
            ],
            input="piped\n",
        )

        assert result.exit_code == 0
        creds = ConfigManager(config_path).resolve_credentials()
        assert creds.region == "eu"
        assert creds.secret.get_secret_value() == "piped"

    def test_add_duplicate(self, cli_runner: CliRunner) -> None:
        """An existing account name exits with code 1."""
        config = MagicMock()
        config.add_account.side_effect = AccountExistsError("prod")
        with patch(
            "mixpanel_engagement.cli.commands.auth.get_config", return_value=config
        ):
            result = cli_runner.invoke(
                app,
                ["auth", "add", "prod", "-u", "sa", "-p", "1"],
                env={"MP_SECRET": "x"},
            )

        assert result.exit_code == 1
        assert "Account exists" in result.stderr


class TestAuthRemove:
    """Tests for mpe auth remove command."""

    def test_remove_with_force(
        self, cli_runner: CliRunner, mock_config_manager: MagicMock
    ) -> None:
        """--force skips confirmation."""
        with patch(
            "mixpanel_engagement.cli.commands.auth.get_config",
            return_value=mock_config_manager,
        ):
            result = cli_runner.invoke(app, ["auth", "remove", "staging", "--force"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"removed": "staging"}
        mock_config_manager.remove_account.assert_called_once_with("staging")

    def test_remove_cancelled(
        self, cli_runner: CliRunner, mock_config_manager: MagicMock
    ) -> None:
        """Declining the prompt leaves the account alone."""
        with patch(
            "mixpanel_engagement.cli.commands.auth.get_config",
            return_value=mock_config_manager,
        ):
            result = cli_runner.invoke(app, ["auth", "remove", "staging"], input="n\n")

        assert result.exit_code == 2
        mock_config_manager.remove_account.assert_not_called()

    def test_remove_unknown(self, cli_runner: CliRunner) -> None:
        """Unknown accounts exit with code 4 and list the alternatives."""
        config = MagicMock()
        config.remove_account.side_effect = AccountNotFoundError(
            "nope", available_accounts=["production"]
        )
        with patch(
            "mixpanel_engagement.cli.commands.auth.get_config", return_value=config
        ):
            result = cli_runner.invoke(app, ["auth", "remove", "nope", "--force"])

        assert result.exit_code == 4
        assert "production" in result.stderr


class TestAuthDefault:
    """Tests for mpe auth default command."""

    def test_set_default(
        self, cli_runner: CliRunner, mock_config_manager: MagicMock
    ) -> None:
        """The named account becomes the default."""
        with patch(
            "mixpanel_engagement.cli.commands.auth.get_config",
            return_value=mock_config_manager,
        ):
            result = cli_runner.invoke(app, ["auth", "default", "staging"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"default": "staging"}
        mock_config_manager.set_default.assert_called_once_with("staging")


class TestAuthAlias:
    """Tests for mpe auth alias command."""

    def test_alias_written_to_config(
        self, cli_runner: CliRunner, config_path: Path
    ) -> None:
        """The alias lands in [identity.aliases]."""
        result = cli_runner.invoke(
            app, ["--config", str(config_path), "auth", "alias", "119", "c-1"]
        )

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"alias": "119", "canonical": "c-1"}
        aliases = ConfigManager(config_path).load_sync_settings().creator_aliases
        assert aliases["119"] == "c-1"

    def test_alias_chain_rejected(
        self, cli_runner: CliRunner, mock_config_manager: MagicMock
    ) -> None:
        """A chained alias is a configuration error."""
        mock_config_manager.set_creator_alias.side_effect = ConfigError(
            "Alias would create a chain"
        )
        with patch(
            "mixpanel_engagement.cli.commands.auth.get_config",
            return_value=mock_config_manager,
        ):
            result = cli_runner.invoke(app, ["auth", "alias", "x", "118"])

        assert result.exit_code == 1
        assert "chain" in result.stderr


class TestAuthTest:
    """Tests for mpe auth test command."""

    def test_success(
        self, cli_runner: CliRunner, mock_config_manager: MagicMock
    ) -> None:
        """A working account reports success."""
        report = {
            "success": True,
            "account": "production",
            "project_id": "12345",
            "region": "us",
        }
        with (
            patch(
                "mixpanel_engagement.cli.commands.auth.get_config",
                return_value=mock_config_manager,
            ),
            patch.object(
                EngagementWorkspace, "test_credentials", return_value=report
            ) as test_credentials,
        ):
            result = cli_runner.invoke(app, ["auth", "test", "production"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == report
        assert test_credentials.call_args.args == ("production",)

    def test_rejected(
        self, cli_runner: CliRunner, mock_config_manager: MagicMock
    ) -> None:
        """Rejected credentials exit with code 2."""
        with (
            patch(
                "mixpanel_engagement.cli.commands.auth.get_config",
                return_value=mock_config_manager,
            ),
            patch.object(
                EngagementWorkspace,
                "test_credentials",
                side_effect=AuthenticationError("Invalid credentials"),
            ),
        ):
            result = cli_runner.invoke(app, ["auth", "test"])

        assert result.exit_code == 2
        assert "Invalid credentials" in result.stderr
