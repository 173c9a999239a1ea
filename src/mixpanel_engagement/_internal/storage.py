"""DuckDB-based warehouse sink for engagement records.

WarehouseStorage owns the engagement tables, applies conflict-key upserts in
one transaction per batch and exposes the query helpers used by the CLI.
Every table's primary key equals the conflict key its records are upserted
on, so re-running a sync converges to the same rows.
"""

from __future__ import annotations

import atexit
import logging
import re
import shutil
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import duckdb
import pandas as pd

from mixpanel_engagement.exceptions import (
    DatabaseLockedError,
    QueryError,
    SinkError,
)
from mixpanel_engagement.types import SQLResult

_logger = logging.getLogger(__name__)


def _quote_identifier(name: str) -> str:
    """Double-quote a table or column name for interpolation into SQL."""
    return '"' + name.replace('"', '""') + '"'


@dataclass(frozen=True)
class TableSpec:
    """Column layout and primary key of one warehouse table."""

    name: str
    columns: tuple[tuple[str, str], ...]
    primary_key: tuple[str, ...]

    @property
    def column_names(self) -> list[str]:
        """Column names in declaration order."""
        return [name for name, _ in self.columns]

    def create_sql(self) -> str:
        """CREATE TABLE IF NOT EXISTS statement for this table."""
        cols = ",\n                ".join(
            f"{_quote_identifier(name)} {sql_type}" for name, sql_type in self.columns
        )
        key = ", ".join(_quote_identifier(c) for c in self.primary_key)
        return f"""
            CREATE TABLE IF NOT EXISTS {_quote_identifier(self.name)} (
                {cols},
                PRIMARY KEY ({key})
            )
        """


TABLES: dict[str, TableSpec] = {
    spec.name: spec
    for spec in (
        TableSpec(
            "user_portfolio_creator_engagement",
            (
                ("distinct_id", "VARCHAR NOT NULL"),
                ("portfolio_ticker", "VARCHAR NOT NULL"),
                ("creator_id", "VARCHAR NOT NULL"),
                ("creator_username", "VARCHAR"),
                ("pdp_view_count", "BIGINT DEFAULT 0"),
                ("did_copy", "BOOLEAN DEFAULT FALSE"),
                ("copy_count", "BIGINT DEFAULT 0"),
                ("liquidation_count", "BIGINT DEFAULT 0"),
                ("synced_at", "TIMESTAMP"),
            ),
            ("distinct_id", "portfolio_ticker", "creator_id"),
        ),
        TableSpec(
            "user_creator_engagement",
            (
                ("distinct_id", "VARCHAR NOT NULL"),
                ("creator_id", "VARCHAR NOT NULL"),
                ("creator_username", "VARCHAR"),
                ("profile_view_count", "BIGINT DEFAULT 0"),
                ("did_subscribe", "BOOLEAN DEFAULT FALSE"),
                ("subscription_count", "BIGINT DEFAULT 0"),
                ("synced_at", "TIMESTAMP"),
            ),
            ("distinct_id", "creator_id"),
        ),
        TableSpec(
            "time_funnels",
            (
                ("distinct_id", "VARCHAR NOT NULL"),
                ("funnel_type", "VARCHAR NOT NULL"),
                ("time_in_seconds", "DOUBLE"),
                ("time_in_days", "DOUBLE"),
                ("synced_at", "TIMESTAMP"),
            ),
            ("distinct_id", "funnel_type"),
        ),
        TableSpec(
            "user_creator_copies",
            (
                ("distinct_id", "VARCHAR NOT NULL"),
                ("creator_username", "VARCHAR NOT NULL"),
                ("copy_count", "BIGINT DEFAULT 0"),
                ("synced_at", "TIMESTAMP"),
            ),
            ("distinct_id", "creator_username"),
        ),
        TableSpec(
            "user_first_events",
            (
                ("distinct_id", "VARCHAR NOT NULL"),
                ("event_type", "VARCHAR NOT NULL"),
                ("first_event_time", "TIMESTAMP"),
            ),
            ("distinct_id", "event_type"),
        ),
        TableSpec(
            "user_profiles",
            (
                ("distinct_id", "VARCHAR NOT NULL"),
                ("first_event_time", "TIMESTAMP"),
                ("last_event_time", "TIMESTAMP"),
                ("events_processed", "BIGINT DEFAULT 0"),
                ("income", "VARCHAR"),
                ("net_worth", "VARCHAR"),
                ("investing_activity", "VARCHAR"),
                ("investing_experience_years", "INTEGER"),
                ("investing_objective", "VARCHAR"),
                ("investment_type", "VARCHAR"),
                ("acquisition_survey", "VARCHAR"),
                ("linked_bank_account", "BOOLEAN DEFAULT FALSE"),
                ("available_copy_credits", "DOUBLE DEFAULT 0"),
                ("buying_power", "DOUBLE DEFAULT 0"),
                ("active_created_portfolios", "BIGINT DEFAULT 0"),
                ("lifetime_created_portfolios", "BIGINT DEFAULT 0"),
                ("total_copies", "BIGINT DEFAULT 0"),
                ("total_pdp_views", "BIGINT DEFAULT 0"),
                ("total_creator_profile_views", "BIGINT DEFAULT 0"),
                ("total_ach_transfers", "BIGINT DEFAULT 0"),
                ("paywall_views", "BIGINT DEFAULT 0"),
                ("total_subscriptions", "BIGINT DEFAULT 0"),
                ("app_sessions", "BIGINT DEFAULT 0"),
                ("discover_tab_views", "BIGINT DEFAULT 0"),
                ("stripe_modal_views", "BIGINT DEFAULT 0"),
                ("creator_card_taps", "BIGINT DEFAULT 0"),
                ("portfolio_card_taps", "BIGINT DEFAULT 0"),
                ("synced_at", "TIMESTAMP"),
            ),
            ("distinct_id",),
        ),
        TableSpec(
            "sync_logs",
            (
                ("id", "VARCHAR NOT NULL"),
                ("source", "VARCHAR"),
                ("sync_status", "VARCHAR"),
                ("sync_started_at", "TIMESTAMP"),
                ("sync_completed_at", "TIMESTAMP"),
                ("total_records_inserted", "BIGINT DEFAULT 0"),
                ("error_message", "VARCHAR"),
            ),
            ("id",),
        ),
    )
}

VIEWS: dict[str, str] = {
    "creator_engagement_summary": """
        SELECT
            creator_id,
            any_value(creator_username) AS creator_username,
            COUNT(DISTINCT distinct_id) AS unique_viewers,
            SUM(profile_view_count) AS total_profile_views,
            COUNT(*) FILTER (WHERE did_subscribe) AS unique_subscribers,
            SUM(subscription_count) AS total_subscriptions
        FROM user_creator_engagement
        GROUP BY creator_id
    """,
    "portfolio_engagement_summary": """
        SELECT
            portfolio_ticker,
            creator_id,
            any_value(creator_username) AS creator_username,
            COUNT(DISTINCT distinct_id) AS unique_users,
            SUM(pdp_view_count) AS total_pdp_views,
            COUNT(*) FILTER (WHERE did_copy) AS unique_copiers,
            SUM(copy_count) AS total_copies,
            SUM(liquidation_count) AS total_liquidations
        FROM user_portfolio_creator_engagement
        GROUP BY portfolio_ticker, creator_id
    """,
}


def _db_value(value: Any) -> Any:
    """Convert a record value to what the warehouse column stores.

    Aware datetimes are stored as naive UTC in TIMESTAMP columns.
    """
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(UTC).replace(tzinfo=None)
    return value


def _open_file(path: Path) -> duckdb.DuckDBPyConnection:
    """Connect to a database file, creating its directory if needed.

    Raises:
        DatabaseLockedError: Another process holds DuckDB's write lock.
        OSError: The file cannot be created or opened.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        return duckdb.connect(str(path))
    except duckdb.IOException as e:
        if "Could not set lock" not in str(e):
            raise OSError(f"Cannot open warehouse at {path}: {e}") from e
        pid = re.search(r"PID (\d+)", str(e))
        raise DatabaseLockedError(str(path), int(pid.group(1)) if pid else None) from e


class WarehouseStorage:
    """DuckDB warehouse holding the engagement tables.

    Opening a warehouse creates any missing tables and (re)creates the
    summary views, so a fresh file is ready for upserts.

    Example:
        ```python
        with WarehouseStorage(path=Path("engagement.duckdb")) as storage:
            storage.upsert_rows(
                "user_creator_engagement", rows, ["distinct_id", "creator_id"]
            )
            df = storage.execute_df("SELECT * FROM creator_engagement_summary")
        ```

    ``WarehouseStorage.memory()`` and ``WarehouseStorage.ephemeral()`` give
    throwaway warehouses for tests and dry runs.
    """

    def __init__(
        self,
        path: Path | None = None,
        *,
        _ephemeral: bool = False,
        _in_memory: bool = False,
    ) -> None:
        """Open the warehouse.

        Args:
            path: Database file. Ignored when _in_memory is set.
            _ephemeral: Delete the file on close; see ephemeral().
            _in_memory: No file at all; see memory().

        Raises:
            ValueError: No path for a file-backed warehouse.
            DatabaseLockedError: Another process holds the write lock.
            OSError: The database file cannot be created.
        """
        if path is None and not _in_memory:
            raise ValueError(
                "A database path is required; use WarehouseStorage.ephemeral() "
                "or WarehouseStorage.memory() for scratch warehouses"
            )
        self._path = None if _in_memory else path
        self._delete_on_close = _ephemeral and not _in_memory
        self._conn: duckdb.DuckDBPyConnection | None = (
            duckdb.connect(":memory:") if self._path is None else _open_file(self._path)
        )
        if self._delete_on_close:
            atexit.register(self.close)
        self._create_schema()

    @classmethod
    def ephemeral(cls) -> WarehouseStorage:
        """File-backed warehouse in a private temp directory, removed on close."""
        directory = Path(tempfile.mkdtemp(prefix="mpe-"))
        return cls(path=directory / "scratch.duckdb", _ephemeral=True)

    @classmethod
    def memory(cls) -> WarehouseStorage:
        return cls(_in_memory=True)

    @property
    def path(self) -> Path | None:
        """Database file, or None for an in-memory warehouse."""
        return self._path

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        """The underlying DuckDB connection.

        Raises:
            RuntimeError: After close().
        """
        if self._conn is None:
            raise RuntimeError(
                "Warehouse connection is closed; open a new WarehouseStorage"
            )
        return self._conn

    def _create_schema(self) -> None:
        for spec in TABLES.values():
            self.connection.execute(spec.create_sql())
        self.refresh_views()

    def refresh_views(self) -> None:
        """(Re)create the engagement summary views."""
        for name, body in VIEWS.items():
            self.connection.execute(
                f"CREATE OR REPLACE VIEW {_quote_identifier(name)} AS {body}"
            )

    # =========================================================================
    # Upserts
    # =========================================================================

    def upsert_rows(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        conflict_key: Sequence[str],
    ) -> int:
        """Insert-or-update a batch of rows in one transaction.

        Rows whose conflict-key values already exist replace the stored
        non-key columns; new keys are inserted. A batch that repeats a key
        is rejected as a whole.

        Args:
            table: Target table name.
            rows: Row mappings; missing columns are stored as NULL.
            conflict_key: Columns that identify a row. Must equal the
                table's primary key.

        Returns:
            Number of rows written.

        Raises:
            SinkError: If the table is unknown, the conflict key does not
                match, or DuckDB rejects the batch (the batch is rolled back).
        """
        key = list(conflict_key)
        spec = TABLES.get(table)
        if spec is None:
            raise SinkError(f"Unknown table '{table}'", table=table, conflict_key=key)
        if tuple(key) != spec.primary_key:
            raise SinkError(
                f"Conflict key {key} does not match primary key "
                f"{list(spec.primary_key)} of '{table}'",
                table=table,
                conflict_key=key,
                rows=len(rows),
            )
        if not rows:
            return 0

        columns = spec.column_names
        frame = pd.DataFrame(
            [[_db_value(row.get(c)) for c in columns] for row in rows],
            columns=columns,
        )
        # pin types that NULLs or NaN would otherwise leave ambiguous
        for name, sql_type in spec.columns:
            if sql_type.startswith("TIMESTAMP"):
                frame[name] = pd.to_datetime(frame[name])
            elif sql_type.startswith("INTEGER"):
                frame[name] = frame[name].astype("Int64")
        column_list = ", ".join(_quote_identifier(c) for c in columns)
        key_list = ", ".join(_quote_identifier(c) for c in key)
        updates = ", ".join(
            f"{_quote_identifier(c)} = EXCLUDED.{_quote_identifier(c)}"
            for c in columns
            if c not in key
        )
        sql = (
            f"INSERT INTO {_quote_identifier(table)} ({column_list}) "
            f"SELECT {column_list} FROM _upsert_batch "
            f"ON CONFLICT ({key_list}) DO UPDATE SET {updates}"
        )

        conn = self.connection
        conn.register("_upsert_batch", frame)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute(sql)
            conn.execute("COMMIT")
        except duckdb.Error as e:
            conn.execute("ROLLBACK")
            raise SinkError(
                f"Upsert into '{table}' failed: {e}",
                table=table,
                conflict_key=key,
                rows=len(rows),
            ) from e
        finally:
            conn.unregister("_upsert_batch")

        _logger.debug("Upserted %d rows into %s", len(rows), table)
        return len(rows)

    # =========================================================================
    # Queries
    # =========================================================================

    def _execute(
        self, sql: str, params: list[Any] | None = None
    ) -> duckdb.DuckDBPyConnection:
        try:
            return self.connection.execute(sql, params or [])
        except duckdb.Error as e:
            body: dict[str, Any] = {"query": sql, "error": str(e)}
            if params:
                body["params"] = params
            raise QueryError(
                f"Query execution failed: {e}", status_code=0, response_body=body
            ) from e

    def execute_df(self, sql: str) -> pd.DataFrame:
        """Run SQL and return the result as a DataFrame.

        Raises:
            QueryError: DuckDB rejected the statement.
        """
        return self._execute(sql).df()

    def execute_rows(self, sql: str, params: list[Any] | None = None) -> SQLResult:
        """Run SQL with optional ``?`` parameters; return columns and tuples.

        Example:
            ```python
            result = storage.execute_rows(
                "SELECT * FROM time_funnels WHERE funnel_type = ?",
                ["time_to_first_copy"],
            )
            ```

        Raises:
            QueryError: DuckDB rejected the statement.
        """
        cursor = self._execute(sql, params)
        return SQLResult(
            columns=[column[0] for column in cursor.description],
            rows=cursor.fetchall(),
        )

    def count_rows(self, table: str) -> int:
        """Row count of ``table``; QueryError if it does not exist."""
        result = self.execute_rows(f"SELECT COUNT(*) FROM {_quote_identifier(table)}")
        return int(result.rows[0][0])

    def table_exists(self, name: str) -> bool:
        """True for an existing table or view."""
        found = self.execute_rows(
            "SELECT 1 FROM information_schema.tables WHERE table_name = ? LIMIT 1",
            [name],
        )
        return bool(found.rows)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        """Close the connection and remove ephemeral files. Idempotent."""
        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()
        if self._delete_on_close and self._path is not None:
            self._delete_on_close = False
            shutil.rmtree(self._path.parent, ignore_errors=True)
            _logger.debug("Removed ephemeral warehouse %s", self._path)

    def __enter__(self) -> WarehouseStorage:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
