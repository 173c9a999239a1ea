"""``mpe`` command-line entry point.

Examples:
    mpe auth add production --username sa --project 12345
    mpe --account production sync engagement --db engagement.duckdb
    mpe process saved_payload.json --db engagement.duckdb
    mpe query sql "SELECT * FROM creator_engagement_summary" --format table
"""

from __future__ import annotations

import signal
import sys
from pathlib import Path
from typing import Annotated

import typer

import mixpanel_engagement
from mixpanel_engagement.cli.commands.auth import auth_app
from mixpanel_engagement.cli.commands.query import query_app
from mixpanel_engagement.cli.commands.sync import process_file, sync_app
from mixpanel_engagement.cli.utils import ExitCode, configure_logging, err_console

app = typer.Typer(
    name="mpe",
    help="Reshape Mixpanel engagement charts into a local DuckDB warehouse.",
    epilog="[dim]Getting started:[/dim] mpe auth add --help",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
app.add_typer(auth_app, name="auth", help="Manage service accounts and aliases.")
app.add_typer(sync_app, name="sync", help="Fetch charts and upsert them.")
app.add_typer(query_app, name="query", help="Inspect the local warehouse.")
app.command("process")(process_file)


def _on_sigint(_signum: int, _frame: object) -> None:
    err_console.print("\n[yellow]Interrupted[/yellow]")
    sys.exit(ExitCode.INTERRUPTED)


signal.signal(signal.SIGINT, _on_sigint)


def _print_version(value: bool) -> None:
    if not value:
        return
    print(f"mpe version {mixpanel_engagement.__version__}")
    raise typer.Exit()


AccountOption = Annotated[
    str | None,
    typer.Option(
        "--account", "-a", envvar="MP_ACCOUNT", help="Configured account to use."
    ),
]
ConfigOption = Annotated[
    Path | None,
    typer.Option(
        "--config",
        "-c",
        envvar="MPE_CONFIG_PATH",
        help="Config file (default: ~/.mpe/config.toml).",
    ),
]


@app.callback()
def main(
    ctx: typer.Context,
    account: AccountOption = None,
    config: ConfigOption = None,
    quiet: Annotated[
        bool, typer.Option("--quiet", "-q", help="Only log errors.")
    ] = False,
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Log at DEBUG level.")
    ] = False,
    _version: Annotated[
        bool,
        typer.Option(
            "--version", callback=_print_version, is_eager=True, help="Print version."
        ),
    ] = False,
) -> None:
    """Reshape Mixpanel engagement charts into a local DuckDB warehouse."""
    ctx.ensure_object(dict)
    ctx.obj.update(
        account=account,
        config_path=config,
        quiet=quiet,
        verbose=verbose,
        workspace=None,
        config=None,
    )
    configure_logging(verbose=verbose, quiet=quiet)


if __name__ == "__main__":
    app()
