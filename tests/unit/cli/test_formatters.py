"""Unit tests for CLI formatters."""

from __future__ import annotations

import json
from datetime import UTC, date, datetime
from pathlib import Path

from rich.console import Console
from rich.table import Table

from mixpanel_engagement.cli.formatters import format_json, format_table


def _render(table: Table) -> str:
    console = Console(width=120)
    with console.capture() as capture:
        console.print(table)
    return capture.get()


class TestFormatJson:
    """Tests for format_json function."""

    def test_format_dict(self) -> None:
        """Dicts round through json.loads."""
        data = {"name": "test", "count": 123}
        assert json.loads(format_json(data)) == data

    def test_format_with_datetime(self) -> None:
        """Datetimes and dates render as ISO strings."""
        data = {
            "synced_at": datetime(2025, 1, 15, 12, 0, tzinfo=UTC),
            "day": date(2025, 1, 15),
        }
        parsed = json.loads(format_json(data))
        assert parsed == {"synced_at": "2025-01-15T12:00:00+00:00", "day": "2025-01-15"}

    def test_unknown_types_use_str(self) -> None:
        """Other values fall back to str()."""
        parsed = json.loads(format_json({"path": Path("/tmp/x.duckdb")}))
        assert parsed["path"] == "/tmp/x.duckdb"

    def test_pretty_printed(self) -> None:
        """Output uses two-space indentation."""
        assert '\n  "key": "value"' in format_json({"key": "value"})

    def test_unicode_kept(self) -> None:
        """Non-ASCII usernames are not escaped."""
        assert "josé" in format_json({"creator_username": "josé"})


class TestFormatTable:
    """Tests for format_table function."""

    def test_list_of_dicts(self) -> None:
        """Each dict becomes a row; headers are upper-cased."""
        table = format_table(
            [
                {"table": "time_funnels", "rows": 3},
                {"table": "sync_logs", "rows": 1},
            ]
        )
        assert table.row_count == 2
        assert [c.header for c in table.columns] == ["TABLE", "ROWS"]

    def test_single_dict(self) -> None:
        """A dict renders as one row."""
        assert format_table({"alias": "118", "canonical": "c1"}).row_count == 1

    def test_explicit_columns(self) -> None:
        """Only the requested columns are shown, in order."""
        table = format_table(
            [{"name": "prod", "region": "us", "username": "sa"}],
            columns=["region", "name"],
        )
        assert [c.header for c in table.columns] == ["REGION", "NAME"]

    def test_empty(self) -> None:
        """Empty data gives an empty table."""
        table = format_table([])
        assert table.row_count == 0
        assert not table.columns

    def test_cell_formatting(self) -> None:
        """Booleans read Yes/No; None is blank; nested values are JSON."""
        output = _render(
            format_table(
                [
                    {
                        "is_default": True,
                        "did_copy": False,
                        "error_message": None,
                        "stats": {"skipped": 2},
                    }
                ]
            )
        )
        assert "Yes" in output
        assert "No" in output
        assert '{"skipped": 2}' in output

    def test_scalar_items(self) -> None:
        """Non-dict items go in a single value column."""
        table = format_table(["a", "b"])
        assert [c.header for c in table.columns] == ["VALUE"]
        assert table.row_count == 2
