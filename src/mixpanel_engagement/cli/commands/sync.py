"""Sync commands.

- engagement: creator and portfolio engagement pairs
- funnels: funnel completion times
- copies: per-user copy counts by creator
- first-events: first copy and KYC approval times
- profiles: per-user profiles from Export API events

Plus `process`, registered at the top level, for saved raw payloads.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from mixpanel_engagement.cli.options import DbOption, FormatOption
from mixpanel_engagement.cli.utils import (
    finish_sync,
    get_workspace,
    handle_errors,
    status_spinner,
)

sync_app = typer.Typer(
    name="sync",
    help="Sync Mixpanel charts into the warehouse.",
    no_args_is_help=True,
    rich_markup_mode="markdown",
)


@sync_app.command("engagement")
@handle_errors
def sync_engagement(
    ctx: typer.Context,
    db: DbOption = None,
    format: FormatOption = "json",
) -> None:
    """Sync creator and portfolio engagement pairs.

    Examples:

        mpe sync engagement --db engagement.duckdb
    """
    workspace = get_workspace(ctx, db)
    with status_spinner(ctx, "Syncing engagement..."):
        result = workspace.sync_engagement()
    finish_sync(ctx, result, format=format)


@sync_app.command("funnels")
@handle_errors
def sync_funnels(
    ctx: typer.Context,
    from_date: Annotated[
        str | None,
        typer.Option("--from", help="Start date (YYYY-MM-DD)."),
    ] = None,
    to_date: Annotated[
        str | None,
        typer.Option("--to", help="End date (YYYY-MM-DD)."),
    ] = None,
    db: DbOption = None,
    format: FormatOption = "json",
) -> None:
    """Sync funnel completion times (default: the configured lookback window).

    Examples:

        mpe sync funnels
        mpe sync funnels --from 2025-01-01 --to 2025-01-31
    """
    workspace = get_workspace(ctx, db)
    with status_spinner(ctx, "Syncing funnels..."):
        result = workspace.sync_funnels(from_date, to_date)
    finish_sync(ctx, result, format=format)


@sync_app.command("copies")
@handle_errors
def sync_copies(
    ctx: typer.Context,
    db: DbOption = None,
    format: FormatOption = "json",
) -> None:
    """Sync per-user copy counts by creator."""
    workspace = get_workspace(ctx, db)
    with status_spinner(ctx, "Syncing user-creator copies..."):
        result = workspace.sync_user_creator_copies()
    finish_sync(ctx, result, format=format)


@sync_app.command("first-events")
@handle_errors
def sync_first_events(
    ctx: typer.Context,
    db: DbOption = None,
    format: FormatOption = "json",
) -> None:
    """Sync first copy and KYC approval times."""
    workspace = get_workspace(ctx, db)
    with status_spinner(ctx, "Syncing first events..."):
        result = workspace.sync_first_events()
    finish_sync(ctx, result, format=format)


@sync_app.command("profiles")
@handle_errors
def sync_profiles(
    ctx: typer.Context,
    from_date: Annotated[
        str | None,
        typer.Option("--from", help="Start date (YYYY-MM-DD)."),
    ] = None,
    to_date: Annotated[
        str | None,
        typer.Option("--to", help="End date (YYYY-MM-DD)."),
    ] = None,
    db: DbOption = None,
    format: FormatOption = "json",
) -> None:
    """Build user profiles from exported events (default: yesterday).

    Examples:

        mpe sync profiles
        mpe sync profiles --from 2025-01-01 --to 2025-01-07
    """
    workspace = get_workspace(ctx, db)
    with status_spinner(ctx, "Exporting events..."):
        result = workspace.sync_user_profiles(from_date, to_date)
    finish_sync(ctx, result, format=format)


@handle_errors
def process_file(
    ctx: typer.Context,
    path: Annotated[
        Path,
        typer.Argument(
            help="Saved raw engagement payload (JSON).",
            exists=True,
            dir_okay=False,
        ),
    ],
    db: DbOption = None,
    format: FormatOption = "json",
) -> None:
    """Reshape and upsert a saved raw engagement payload (no API calls).

    Examples:

        mpe process payload.json --db engagement.duckdb
    """
    workspace = get_workspace(ctx, db, offline=True)
    with status_spinner(ctx, f"Processing {path.name}..."):
        result = workspace.process_raw_file(path)
    finish_sync(ctx, result, format=format)
