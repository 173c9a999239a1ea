"""Errors raised by mixpanel_engagement.

Everything derives from EngagementSyncError, so ``except EngagementSyncError``
is enough for callers that only need to know a sync did not happen. Each
error also carries a stable ``code`` and a JSON-safe ``details`` dict; the
sync service writes ``to_dict()`` into sync_logs, so a failed run can be
diagnosed from the log row alone.

Hierarchy::

    EngagementSyncError
    ├── ConfigError
    │   ├── AccountNotFoundError
    │   └── AccountExistsError
    ├── APIError
    │   ├── AuthenticationError   (401)
    │   ├── RateLimitError        (429)
    │   ├── QueryError            (400/403/404, bad SQL)
    │   └── ServerError           (5xx)
    ├── ReshapeError
    ├── SinkError
    └── DatabaseLockedError
"""

from __future__ import annotations

from typing import Any


class EngagementSyncError(Exception):
    """Base class for every mixpanel_engagement error."""

    default_code = "UNKNOWN_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self._message = message
        self._code = code or self.default_code
        self._details = dict(details or {})

    @property
    def code(self) -> str:
        """Stable machine-readable identifier, e.g. ``RATE_LIMITED``."""
        return self._code

    @property
    def message(self) -> str:
        return self._message

    @property
    def details(self) -> dict[str, Any]:
        """Structured context; safe to pass to ``json.dumps``."""
        return self._details

    def to_dict(self) -> dict[str, Any]:
        """Return ``{"code", "message", "details"}`` for logs and CLI output."""
        return {"code": self._code, "message": self._message, "details": self._details}

    def __str__(self) -> str:
        return self._message

    def __repr__(self) -> str:
        return f"{type(self).__name__}(message={self._message!r}, code={self._code!r})"


# Configuration


class ConfigError(EngagementSyncError):
    """Bad config file, environment, credentials or sync settings."""

    default_code = "CONFIG_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details=details)


class AccountNotFoundError(ConfigError):
    """No configured account has the requested name."""

    default_code = "ACCOUNT_NOT_FOUND"

    def __init__(
        self, account_name: str, available_accounts: list[str] | None = None
    ) -> None:
        available = list(available_accounts or [])
        if available:
            names = ", ".join(f"'{name}'" for name in available)
            hint = f"Available accounts: {names}"
        else:
            hint = "No accounts configured."
        super().__init__(
            f"Account '{account_name}' not found. {hint}",
            details={"account_name": account_name, "available_accounts": available},
        )

    @property
    def account_name(self) -> str:
        return str(self._details["account_name"])

    @property
    def available_accounts(self) -> list[str]:
        """Names that do exist, for "did you mean" output."""
        return list(self._details["available_accounts"])


class AccountExistsError(ConfigError):
    """``mpe auth add`` was given a name that is already taken."""

    default_code = "ACCOUNT_EXISTS"

    def __init__(self, account_name: str) -> None:
        super().__init__(
            f"Account '{account_name}' already exists.",
            details={"account_name": account_name},
        )

    @property
    def account_name(self) -> str:
        return str(self._details["account_name"])


# Mixpanel HTTP


class APIError(EngagementSyncError):
    """A Mixpanel request failed with an HTTP status.

    Subclasses differ only in their default message, status and code. The
    request context is optional; when given it lands in ``details`` next to
    the status and response body.

    Example:
        ```python
        try:
            client.query_saved_report(85165851)
        except APIError as e:
            print(e.status_code, e.request_url, e.response_body)
        ```
    """

    default_code = "API_ERROR"
    default_message = "Mixpanel API request failed"
    default_status = 0

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        response_body: str | dict[str, Any] | None = None,
        request_method: str | None = None,
        request_url: str | None = None,
        request_params: dict[str, Any] | None = None,
        code: str | None = None,
    ) -> None:
        status = self.default_status if status_code is None else status_code
        optional = {
            "response_body": response_body,
            "request_method": request_method,
            "request_url": request_url,
            "request_params": request_params,
        }
        details: dict[str, Any] = {"status_code": status}
        details.update({k: v for k, v in optional.items() if v is not None})
        super().__init__(message or self.default_message, code=code, details=details)

    @property
    def status_code(self) -> int:
        return int(self._details["status_code"])

    @property
    def response_body(self) -> str | dict[str, Any] | None:
        """Parsed JSON body when the response had one, else the raw text."""
        return self._details.get("response_body")

    @property
    def request_method(self) -> str | None:
        return self._details.get("request_method")

    @property
    def request_url(self) -> str | None:
        """URL without the query string; see ``request_params``."""
        return self._details.get("request_url")

    @property
    def request_params(self) -> dict[str, Any] | None:
        return self._details.get("request_params")


class AuthenticationError(APIError):
    """Service account rejected (HTTP 401)."""

    default_code = "AUTH_FAILED"
    default_message = "Authentication failed"
    default_status = 401


class RateLimitError(APIError):
    """Still rate limited (HTTP 429) after the client's own retries.

    The sync service treats this as a soft failure: the run is logged as
    ``rate_limited`` and whatever is already in the warehouse is kept.
    """

    default_code = "RATE_LIMITED"
    default_message = "Rate limit exceeded"
    default_status = 429

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after: int | None = None,
        **kwargs: Any,
    ) -> None:
        text = message or self.default_message
        if retry_after is not None:
            text = f"{text}. Retry after {retry_after} seconds."
        super().__init__(text, **kwargs)
        if retry_after is not None:
            self._details["retry_after"] = retry_after

    @property
    def retry_after(self) -> int | None:
        """Seconds from the Retry-After header, if Mixpanel sent one."""
        return self._details.get("retry_after")


class QueryError(APIError):
    """Request rejected (HTTP 400/403/404) or a warehouse query failed.

    Warehouse failures use status code 0.
    """

    default_code = "QUERY_FAILED"
    default_message = "Query failed"
    default_status = 400


class ServerError(APIError):
    """HTTP 5xx that outlived the gateway retries."""

    default_code = "SERVER_ERROR"
    default_message = "Server error"
    default_status = 500


# Reshaping and warehouse


class ReshapeError(EngagementSyncError):
    """A whole payload cannot be reshaped.

    Malformed branches inside a tree are skipped with a warning instead; this
    is for input such as a saved raw file that is not a JSON object.
    """

    default_code = "RESHAPE_FAILED"

    def __init__(
        self, message: str, *, stage: str, details: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message, details={"stage": stage, **(details or {})})

    @property
    def stage(self) -> str:
        """Where it failed, e.g. ``load`` or ``reshape``."""
        return str(self._details["stage"])


class SinkError(EngagementSyncError):
    """DuckDB refused an upsert batch."""

    default_code = "SINK_ERROR"

    def __init__(
        self,
        message: str,
        *,
        table: str,
        conflict_key: list[str] | None = None,
        rows: int = 0,
    ) -> None:
        super().__init__(
            message,
            details={"table": table, "conflict_key": conflict_key or [], "rows": rows},
        )

    @property
    def table(self) -> str:
        return str(self._details["table"])


class DatabaseLockedError(EngagementSyncError):
    """Another process holds the DuckDB write lock on the warehouse file."""

    default_code = "DATABASE_LOCKED"

    def __init__(self, db_path: str, holding_pid: int | None = None) -> None:
        details: dict[str, Any] = {"db_path": db_path}
        message = f"Database '{db_path}' is locked by another process"
        if holding_pid is not None:
            details["holding_pid"] = holding_pid
            message += f" (PID {holding_pid})"
        super().__init__(message, details=details)

    @property
    def db_path(self) -> str:
        return str(self._details["db_path"])

    @property
    def holding_pid(self) -> int | None:
        """PID parsed from DuckDB's lock message, when it named one."""
        pid = self._details.get("holding_pid")
        return None if pid is None else int(pid)
