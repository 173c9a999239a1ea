"""Accounts, credentials and sync settings, persisted as TOML.

The config file (``~/.mpe/config.toml`` unless overridden) holds named
service accounts, the default account name, a ``[sync]`` table of
``SyncSettings`` overrides and the ``[identity.aliases]`` creator id table.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Literal

import tomli_w
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

from mixpanel_engagement._internal.identity import DEFAULT_CREATOR_ALIASES
from mixpanel_engagement.exceptions import (
    AccountExistsError,
    AccountNotFoundError,
    ConfigError,
)

VALID_REGIONS = ("us", "eu", "in")
RegionType = Literal["us", "eu", "in"]

MAX_BATCH_SIZE = 5000

ENV_VARS = ("MP_USERNAME", "MP_SECRET", "MP_PROJECT_ID", "MP_REGION")


def normalize_region(region: Any) -> str:
    """Lower-case ``region`` and check it is a Mixpanel data residency region.

    Raises:
        ValueError: For anything other than us, eu or in (any case).
    """
    normalized = region.lower() if isinstance(region, str) else region
    if normalized not in VALID_REGIONS:
        raise ValueError(
            f"Region must be one of: {', '.join(VALID_REGIONS)}. Got: {region}"
        )
    return str(normalized)


class Credentials(BaseModel):
    """Service account credentials for one project.

    Frozen; the secret is a SecretStr so it stays masked in repr and logs.
    """

    model_config = ConfigDict(frozen=True)

    username: str
    secret: SecretStr
    project_id: str
    region: RegionType

    @field_validator("region", mode="before")
    @classmethod
    def _region(cls, v: Any) -> str:
        return normalize_region(v)

    @field_validator("username", "project_id")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Field cannot be empty")
        return v


class SyncSettings(BaseModel):
    """Validated settings for sync runs.

    Defaults reproduce the production setup: 1500-row portfolio batches,
    5000-row batches elsewhere, a 150 second budget with a 10 second safety
    margin and at most 4 concurrent Mixpanel requests.

    Example:
        ```python
        settings = SyncSettings(portfolio_batch_size=1000)
        settings.time_budget_seconds  # 150.0
        ```
    """

    model_config = ConfigDict(frozen=True)

    portfolio_batch_size: int = Field(default=1500, ge=1, le=MAX_BATCH_SIZE)
    """Rows per upsert into user_portfolio_creator_engagement."""

    batch_size: int = Field(default=5000, ge=1, le=MAX_BATCH_SIZE)
    """Rows per upsert for every other table."""

    time_budget_seconds: float = Field(default=150.0, gt=0)
    """Wall-clock budget of one sync run."""

    safety_margin_seconds: float = Field(default=10.0, ge=0)
    """Stop issuing batches once this close to the budget."""

    max_concurrent_requests: int = Field(default=4, ge=1)
    """Concurrent Mixpanel requests admitted by the rate limiter."""

    rate_limit_retries: int = Field(default=3, ge=0)
    """Retries on HTTP 429 before raising RateLimitError."""

    server_error_retries: int = Field(default=2, ge=0)
    """Retries on HTTP 502/503/504 before raising ServerError."""

    server_error_delay_seconds: float = Field(default=2.0, ge=0)
    """Fixed delay between server-error retries."""

    lookback_days: int = Field(default=30, ge=1)
    """Days of funnel data fetched when no range is given."""

    profile_views_chart: int = 85165851
    portfolio_chart: int = 85165580
    subscriptions_chart: int = 85165590
    user_creator_copies_chart: int = 85313040
    first_copy_chart: int = 86612901
    kyc_approved_chart: int = 87036512

    funnels: dict[str, int] = Field(
        default_factory=lambda: {
            "time_to_first_copy": 84999271,
            "time_to_funded_account": 84999267,
            "time_to_linked_bank": 84999265,
        }
    )
    """Funnel type -> Mixpanel funnel id."""

    creator_aliases: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_CREATOR_ALIASES)
    )
    """Duplicate creator id -> canonical creator id."""

    @model_validator(mode="after")
    def validate_margin(self) -> SyncSettings:
        """Ensure the safety margin leaves part of the budget usable."""
        if self.safety_margin_seconds >= self.time_budget_seconds:
            raise ValueError(
                "safety_margin_seconds must be smaller than time_budget_seconds"
            )
        return self


@dataclass(frozen=True)
class AccountInfo:
    """A configured account as shown by ``mpe auth list``; no secret."""

    name: str
    username: str
    project_id: str
    region: str
    is_default: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ConfigManager:
    """Reads and writes the mpe config file.

    The file is chosen by, in order: the ``config_path`` argument, the
    ``MPE_CONFIG_PATH`` environment variable, ``~/.mpe/config.toml``.

    ```toml
    default = "production"

    [accounts.production]
    username = "sa_user"
    secret = "..."
    project_id = "2599235"
    region = "us"

    [sync]
    portfolio_batch_size = 1500
    time_budget_seconds = 150

    [identity.aliases]
    "118" = "211855351476994048"
    ```

    Every method re-reads the file, so several managers (or processes) see
    each other's writes.
    """

    DEFAULT_CONFIG_PATH = Path.home() / ".mpe" / "config.toml"

    def __init__(self, config_path: Path | None = None) -> None:
        env_path = os.environ.get("MPE_CONFIG_PATH")
        self._config_path = config_path or (
            Path(env_path) if env_path else self.DEFAULT_CONFIG_PATH
        )

    @property
    def config_path(self) -> Path:
        return self._config_path

    def _load(self) -> dict[str, Any]:
        try:
            raw = self._config_path.read_bytes()
        except FileNotFoundError:
            return {}
        try:
            return tomllib.loads(raw.decode())
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(
                f"Invalid TOML in config file: {e}",
                details={"path": str(self._config_path)},
            ) from e

    def _save(self, config: dict[str, Any]) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        self._config_path.write_text(tomli_w.dumps(config))

    @staticmethod
    def _require(accounts: dict[str, Any], name: str) -> dict[str, Any]:
        if name not in accounts:
            raise AccountNotFoundError(name, available_accounts=list(accounts))
        entry: dict[str, Any] = accounts[name]
        return entry

    # -- credentials ----------------------------------------------------------

    def resolve_credentials(self, account: str | None = None) -> Credentials:
        """Credentials for the next Mixpanel call.

        A complete set of ``MP_USERNAME``, ``MP_SECRET``, ``MP_PROJECT_ID``
        and ``MP_REGION`` wins over the file. Otherwise ``account`` is used,
        then the file's default, then the first account listed.

        Raises:
            ConfigError: Nothing configured, or MP_REGION is invalid.
            AccountNotFoundError: ``account`` is not in the file.
        """
        from_env = self._credentials_from_env()
        if from_env is not None:
            return from_env

        config = self._load()
        accounts: dict[str, Any] = config.get("accounts", {})
        if not accounts:
            raise ConfigError(
                "No credentials configured. Set "
                + ", ".join(ENV_VARS)
                + " or add an account with 'mpe auth add'."
            )

        default = config.get("default")
        if account is None:
            account = default if isinstance(default, str) else next(iter(accounts))
        entry = self._require(accounts, account)
        return Credentials(
            username=entry["username"],
            secret=SecretStr(entry["secret"]),
            project_id=entry["project_id"],
            region=entry["region"],
        )

    @staticmethod
    def _credentials_from_env() -> Credentials | None:
        values = [os.environ.get(var) for var in ENV_VARS]
        if not all(values):
            return None
        username, secret, project_id, region = values
        try:
            region = normalize_region(region)
        except ValueError as e:
            raise ConfigError(
                f"Invalid MP_REGION: '{region}'. Must be 'us', 'eu', or 'in'."
            ) from e
        return Credentials.model_validate(
            {
                "username": username,
                "secret": secret,
                "project_id": project_id,
                "region": region,
            }
        )

    # -- accounts -------------------------------------------------------------

    def list_accounts(self) -> list[AccountInfo]:
        """Configured accounts in file order, secrets omitted."""
        config = self._load()
        default = config.get("default")
        return [
            AccountInfo(
                name=name,
                username=entry.get("username", ""),
                project_id=entry.get("project_id", ""),
                region=entry.get("region", ""),
                is_default=name == default,
            )
            for name, entry in config.get("accounts", {}).items()
        ]

    def add_account(
        self,
        name: str,
        username: str,
        secret: str,
        project_id: str,
        region: str,
    ) -> None:
        """Store a new account; the first one stored becomes the default.

        Raises:
            AccountExistsError: ``name`` is taken.
            ValueError: ``region`` is not us, eu or in.
        """
        region = normalize_region(region)
        config = self._load()
        accounts = config.setdefault("accounts", {})
        if name in accounts:
            raise AccountExistsError(name)

        accounts[name] = {
            "username": username,
            "secret": secret,
            "project_id": project_id,
            "region": region,
        }
        config.setdefault("default", name)
        self._save(config)

    def remove_account(self, name: str) -> None:
        """Delete an account; if it was the default, the next one takes over.

        Raises:
            AccountNotFoundError: No such account.
        """
        config = self._load()
        accounts = config.get("accounts", {})
        self._require(accounts, name)
        del accounts[name]

        if config.get("default") == name:
            config.pop("default")
            if accounts:
                config["default"] = next(iter(accounts))
        self._save(config)

    def set_default(self, name: str) -> None:
        """Make ``name`` the default account.

        Raises:
            AccountNotFoundError: No such account.
        """
        config = self._load()
        self._require(config.get("accounts", {}), name)
        config["default"] = name
        self._save(config)

    # -- sync settings --------------------------------------------------------

    def load_sync_settings(self) -> SyncSettings:
        """Build SyncSettings from the [sync] and [identity.aliases] tables.

        Returns:
            Validated settings; defaults apply for anything not configured.

        Raises:
            ConfigError: If a configured value fails validation.
        """
        config = self._load()
        values: dict[str, Any] = dict(config.get("sync", {}))
        aliases = config.get("identity", {}).get("aliases")
        if aliases is not None:
            values["creator_aliases"] = {str(k): str(v) for k, v in aliases.items()}

        try:
            return SyncSettings(**values)
        except ValidationError as e:
            raise ConfigError(
                f"Invalid sync settings: {e}",
                details={
                    "path": str(self._config_path),
                    "errors": e.errors(include_context=False, include_input=False),
                },
            ) from e

    def set_creator_alias(self, alias: str, canonical: str) -> None:
        """Record that creator id alias refers to canonical.

        Raises:
            ConfigError: If the change would create an alias chain.
        """
        config = self._load()
        aliases = config.setdefault("identity", {}).setdefault(
            "aliases", dict(DEFAULT_CREATOR_ALIASES)
        )
        if canonical in aliases or alias in aliases.values() or alias == canonical:
            raise ConfigError(
                f"Alias '{alias}' -> '{canonical}' would create a chain",
                details={"alias": alias, "canonical": canonical},
            )
        aliases[alias] = canonical
        self._save(config)
