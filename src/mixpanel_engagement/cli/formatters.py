"""Rendering of command results as JSON text or Rich tables."""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any

from rich.table import Table

Rows = dict[str, Any] | list[Any]


def _fallback(value: Any) -> str:
    # json.dumps hook: timestamps from sync_logs, Paths, Decimals from DuckDB.
    if isinstance(value, datetime | date):
        return value.isoformat()
    return str(value)


def _dumps(data: Any, **kwargs: Any) -> str:
    return json.dumps(data, default=_fallback, ensure_ascii=False, **kwargs)


def format_json(data: Rows) -> str:
    """Indented JSON; non-JSON values become ISO dates or ``str()``."""
    return _dumps(data, indent=2)


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if value is True or value is False:
        return "Yes" if value else "No"
    if isinstance(value, dict | list):
        return _dumps(value)
    return _fallback(value)


def format_table(data: Rows, columns: list[str] | None = None) -> Table:
    """Build a Rich table from one record or a list of records.

    Args:
        data: A dict, a list of dicts, or a list of scalars (shown in a
            single VALUE column).
        columns: Keys to show, in order. Defaults to the first record's keys.

    Returns:
        Table with upper-cased headers; empty when ``data`` is empty.
    """
    records = [data] if isinstance(data, dict) else list(data)
    table = Table(show_header=True, header_style="bold")
    if not records:
        return table

    scalar = not isinstance(records[0], dict)
    if columns is None:
        columns = ["value"] if scalar else list(records[0])
    for name in columns:
        table.add_column(name.replace("_", " ").upper())

    for record in records:
        if isinstance(record, dict):
            table.add_row(*(_cell(record.get(name)) for name in columns))
        else:
            table.add_row(_cell(record))
    return table
