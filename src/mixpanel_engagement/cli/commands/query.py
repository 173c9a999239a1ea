"""Local warehouse query commands.

- sql: Run SQL against the warehouse
- tables: Row counts per engagement table
- syncs: Recent sync attempts
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer

from mixpanel_engagement.cli.options import DbOption, FormatOption
from mixpanel_engagement.cli.utils import get_workspace, handle_errors, output_result

if TYPE_CHECKING:
    from mixpanel_engagement.workspace import EngagementWorkspace

query_app = typer.Typer(
    name="query",
    help="Query the local warehouse.",
    no_args_is_help=True,
    rich_markup_mode="markdown",
)


def _open(ctx: typer.Context, db: Path | None) -> EngagementWorkspace:
    """Open --db without credentials, else the account's default warehouse."""
    if db is None:
        return get_workspace(ctx)

    from mixpanel_engagement.workspace import EngagementWorkspace

    workspace = EngagementWorkspace.open(db)
    ctx.call_on_close(workspace.close)
    return workspace


@query_app.command("sql")
@handle_errors
def query_sql(
    ctx: typer.Context,
    query: Annotated[str, typer.Argument(help="SQL to run.")],
    db: DbOption = None,
    format: FormatOption = "json",
) -> None:
    """Run SQL against the warehouse.

    Examples:

        mpe query sql "SELECT * FROM creator_engagement_summary" --db engagement.duckdb
        mpe query sql "SELECT COUNT(*) AS n FROM time_funnels" --format table
    """
    result = _open(ctx, db).sql_rows(query)
    output_result(ctx, result.to_dicts(), columns=result.columns, format=format)


@query_app.command("tables")
@handle_errors
def query_tables(
    ctx: typer.Context,
    db: DbOption = None,
    format: FormatOption = "json",
) -> None:
    """Show row counts for every engagement table."""
    counts = _open(ctx, db).table_counts()
    data = [{"table": name, "rows": rows} for name, rows in counts.items()]
    output_result(ctx, data, columns=["table", "rows"], format=format)


@query_app.command("syncs")
@handle_errors
def query_syncs(
    ctx: typer.Context,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", min=1, help="Number of attempts to show."),
    ] = 10,
    db: DbOption = None,
    format: FormatOption = "json",
) -> None:
    """Show the most recent sync attempts."""
    result = _open(ctx, db).recent_syncs(limit)
    output_result(ctx, result.to_dicts(), columns=result.columns, format=format)
