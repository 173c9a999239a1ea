"""Unit tests for the mixpanel_engagement exception hierarchy."""

from __future__ import annotations

import json

import pytest

from mixpanel_engagement.exceptions import (
    AccountExistsError,
    AccountNotFoundError,
    APIError,
    AuthenticationError,
    ConfigError,
    DatabaseLockedError,
    EngagementSyncError,
    QueryError,
    RateLimitError,
    ReshapeError,
    ServerError,
    SinkError,
)


class TestEngagementSyncError:
    """Tests for the base exception class."""

    def test_basic_initialization(self) -> None:
        """Test basic exception creation."""
        exc = EngagementSyncError("Something went wrong")
        assert str(exc) == "Something went wrong"
        assert exc.message == "Something went wrong"
        assert exc.code == "UNKNOWN_ERROR"
        assert exc.details == {}

    def test_to_dict_serializable(self) -> None:
        """to_dict output is JSON serializable."""
        exc = EngagementSyncError(
            "Test error", code="TEST_ERROR", details={"nested": {"data": [1, 2]}}
        )
        result = exc.to_dict()
        assert result["code"] == "TEST_ERROR"
        assert json.loads(json.dumps(result)) == result

    def test_repr(self) -> None:
        """repr names the class and code."""
        assert repr(EngagementSyncError("x", code="C")) == (
            "EngagementSyncError(message='x', code='C')"
        )

    @pytest.mark.parametrize(
        "exc",
        [
            ConfigError("x"),
            AccountNotFoundError("a"),
            AccountExistsError("a"),
            AuthenticationError(),
            RateLimitError(),
            QueryError(),
            ServerError(),
            ReshapeError("x", stage="load"),
            SinkError("x", table="t"),
            DatabaseLockedError("/tmp/db"),
        ],
    )
    def test_everything_inherits_from_base(self, exc: EngagementSyncError) -> None:
        """One except clause catches every library error."""
        assert isinstance(exc, EngagementSyncError)


class TestConfigErrors:
    """Account related errors."""

    def test_account_not_found_lists_available(self) -> None:
        """The message lists the configured accounts."""
        exc = AccountNotFoundError("prod", available_accounts=["dev", "staging"])
        assert "'dev', 'staging'" in str(exc)
        assert exc.code == "ACCOUNT_NOT_FOUND"
        assert exc.account_name == "prod"
        assert isinstance(exc, ConfigError)

    def test_account_not_found_without_accounts(self) -> None:
        """The message says nothing is configured."""
        exc = AccountNotFoundError("prod")
        assert "No accounts configured" in str(exc)
        assert exc.available_accounts == []

    def test_account_exists(self) -> None:
        """AccountExistsError carries the name."""
        exc = AccountExistsError("prod")
        assert exc.code == "ACCOUNT_EXISTS"
        assert exc.account_name == "prod"


class TestAPIErrors:
    """HTTP related errors."""

    def test_request_context_in_details(self) -> None:
        """Status, body and request context are kept."""
        exc = QueryError(
            "bad",
            status_code=404,
            response_body={"error": "bad"},
            request_method="GET",
            request_url="https://mixpanel.com/api/query/insights",
            request_params={"bookmark_id": 1},
        )
        assert isinstance(exc, APIError)
        assert exc.status_code == 404
        assert exc.response_body == {"error": "bad"}
        assert exc.request_url is not None
        assert exc.details["request_params"] == {"bookmark_id": 1}

    def test_rate_limit_retry_after(self) -> None:
        """Retry-After is exposed and mentioned in the message."""
        exc = RateLimitError(retry_after=60)
        assert exc.retry_after == 60
        assert "Retry after 60 seconds" in str(exc)
        assert exc.code == "RATE_LIMITED"

    def test_codes(self) -> None:
        """Each HTTP error type has its code."""
        assert AuthenticationError().code == "AUTH_FAILED"
        assert QueryError().code == "QUERY_FAILED"
        assert ServerError().code == "SERVER_ERROR"


class TestProcessingErrors:
    """Reshape and warehouse errors."""

    def test_reshape_error_stage(self) -> None:
        """The failing stage is kept in details."""
        exc = ReshapeError("bad file", stage="load", details={"path": "x.json"})
        assert exc.stage == "load"
        assert exc.details == {"stage": "load", "path": "x.json"}
        assert exc.code == "RESHAPE_FAILED"

    def test_sink_error(self) -> None:
        """SinkError records table, key and batch size."""
        exc = SinkError("rejected", table="time_funnels", conflict_key=["a"], rows=3)
        assert exc.table == "time_funnels"
        assert exc.details == {"table": "time_funnels", "conflict_key": ["a"], "rows": 3}

    def test_database_locked(self) -> None:
        """The holding PID is reported when known."""
        exc = DatabaseLockedError("/data/db.duckdb", holding_pid=42)
        assert "PID 42" in str(exc)
        assert exc.holding_pid == 42
        assert exc.db_path == "/data/db.duckdb"
        assert DatabaseLockedError("/x").holding_pid is None
