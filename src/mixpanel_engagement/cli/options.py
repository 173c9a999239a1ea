"""Shared CLI option definitions."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal

import typer

OutputFormat = Literal["json", "table"]

FormatOption = Annotated[
    OutputFormat,
    typer.Option(
        "--format",
        "-f",
        help="Output format: json or table.",
    ),
]

DbOption = Annotated[
    Path | None,
    typer.Option(
        "--db",
        help="Warehouse file (default: ~/.mpe/data/<project_id>.duckdb).",
        dir_okay=False,
    ),
]
