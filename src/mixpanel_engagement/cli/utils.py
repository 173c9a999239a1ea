"""Shared plumbing for mpe commands.

Results go to stdout through ``console``; logs, spinners and error
messages go to stderr through ``err_console``. ``handle_errors`` turns
library exceptions into the exit codes in ``ExitCode``.
"""

from __future__ import annotations

import functools
import logging
import os
import sys
from collections.abc import Callable, Generator
from contextlib import contextmanager
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler

from mixpanel_engagement.exceptions import (
    AccountExistsError,
    AccountNotFoundError,
    AuthenticationError,
    ConfigError,
    DatabaseLockedError,
    EngagementSyncError,
    QueryError,
    RateLimitError,
    ReshapeError,
    SinkError,
)

if TYPE_CHECKING:
    from mixpanel_engagement._internal.config import ConfigManager
    from mixpanel_engagement.types import SyncResult
    from mixpanel_engagement.workspace import EngagementWorkspace

console = Console()
err_console = Console(stderr=True, no_color=bool(os.environ.get("NO_COLOR")))


class ExitCode(IntEnum):
    """Process exit codes; 130 matches a shell's SIGINT convention."""

    SUCCESS = 0
    GENERAL_ERROR = 1
    AUTH_ERROR = 2
    INVALID_ARGS = 3
    NOT_FOUND = 4
    RATE_LIMIT = 5
    INTERRUPTED = 130


F = TypeVar("F", bound=Callable[..., Any])


def configure_logging(*, verbose: bool = False, quiet: bool = False) -> None:
    """Attach a single RichHandler on stderr to the package logger.

    ``verbose`` wins over ``quiet``; with neither the level is INFO.
    """
    level = logging.DEBUG if verbose else logging.ERROR if quiet else logging.INFO
    package_logger = logging.getLogger("mixpanel_engagement")
    for existing in [h for h in package_logger.handlers if isinstance(h, RichHandler)]:
        package_logger.removeHandler(existing)

    handler = RichHandler(console=err_console, show_path=verbose, markup=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    package_logger.addHandler(handler)
    package_logger.setLevel(level)


def _query_lines(e: QueryError) -> list[str]:
    lines = [f"[red]Query error:[/red] {e.message}"]
    params = {k: v for k, v in (e.request_params or {}).items() if k != "project_id"}
    lines += [f"  [dim]{k}:[/dim] {v}" for k, v in params.items()]
    if e.status_code == 403:
        lines.append("[yellow]Hint:[/yellow] Check service account permissions.")
    return lines


def _not_found_lines(e: AccountNotFoundError) -> list[str]:
    lines = [f"[red]Account not found:[/red] {e.account_name}"]
    if e.available_accounts:
        lines.append(f"Available accounts: {', '.join(e.available_accounts)}")
    return lines


def _rate_limit_lines(e: RateLimitError) -> list[str]:
    lines = [f"[yellow]Rate limited:[/yellow] {e.message}"]
    if e.retry_after:
        lines.append(f"[cyan]Wait {e.retry_after} seconds before retrying.[/cyan]")
    return lines


# First match wins, so subclasses come before their bases.
_ERROR_RULES: list[tuple[type[Exception], ExitCode, Callable[[Any], list[str]]]] = [
    (
        AuthenticationError,
        ExitCode.AUTH_ERROR,
        lambda e: [f"[red]Authentication error:[/red] {e.message}"],
    ),
    (AccountNotFoundError, ExitCode.NOT_FOUND, _not_found_lines),
    (
        AccountExistsError,
        ExitCode.GENERAL_ERROR,
        lambda e: [f"[red]Account exists:[/red] {e.account_name}"],
    ),
    (
        DatabaseLockedError,
        ExitCode.GENERAL_ERROR,
        lambda e: [
            f"[yellow]Database locked:[/yellow] {e.db_path}",
            "Another mpe command may be running. Try again shortly.",
        ],
    ),
    (RateLimitError, ExitCode.RATE_LIMIT, _rate_limit_lines),
    (QueryError, ExitCode.INVALID_ARGS, _query_lines),
    (
        ReshapeError,
        ExitCode.INVALID_ARGS,
        lambda e: [f"[red]Unusable payload ({e.stage}):[/red] {e.message}"],
    ),
    (
        SinkError,
        ExitCode.GENERAL_ERROR,
        lambda e: [f"[red]Warehouse error ({e.table}):[/red] {e.message}"],
    ),
    (
        ConfigError,
        ExitCode.GENERAL_ERROR,
        lambda e: [f"[red]Configuration error:[/red] {e.message}"],
    ),
    (
        EngagementSyncError,
        ExitCode.GENERAL_ERROR,
        lambda e: [f"[red]Error:[/red] {e.message}"],
    ),
    (FileNotFoundError, ExitCode.NOT_FOUND, lambda e: [f"[red]Not found:[/red] {e}"]),
    # malformed dates and other argument validation
    (
        ValueError,
        ExitCode.INVALID_ARGS,
        lambda e: [f"[red]Invalid argument:[/red] {e}"],
    ),
]

_HANDLED = tuple(rule[0] for rule in _ERROR_RULES)


def handle_errors(func: F) -> F:
    """Print known errors to stderr and exit with their code.

    Anything not listed in ``_ERROR_RULES`` propagates with its traceback.
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except _HANDLED as e:
            for error_type, exit_code, render in _ERROR_RULES:
                if isinstance(e, error_type):
                    for line in render(e):
                        err_console.print(line)
                    raise typer.Exit(exit_code) from None
            raise

    return wrapper  # type: ignore[return-value]


def get_config(ctx: typer.Context) -> ConfigManager:
    """ConfigManager for ``--config``, created on first use."""
    from mixpanel_engagement._internal.config import ConfigManager

    if ctx.obj.get("config") is None:
        ctx.obj["config"] = ConfigManager(ctx.obj.get("config_path"))
    manager: ConfigManager = ctx.obj["config"]
    return manager


def get_workspace(
    ctx: typer.Context,
    db: Path | None = None,
    *,
    offline: bool = False,
) -> EngagementWorkspace:
    """Workspace for this invocation, closed when the command ends.

    Args:
        ctx: Typer context carrying the global options.
        db: Warehouse file from ``--db``.
        offline: Do not resolve credentials (``mpe process``).

    Raises:
        AccountNotFoundError: ``--account`` names an unknown account.
        ConfigError: No credentials could be resolved.
    """
    from mixpanel_engagement.workspace import EngagementWorkspace

    if ctx.obj.get("workspace") is None:
        workspace = EngagementWorkspace(
            account=ctx.obj.get("account"),
            path=db,
            offline=offline,
            _config_manager=get_config(ctx),
        )
        ctx.obj["workspace"] = workspace
        ctx.call_on_close(workspace.close)
    current: EngagementWorkspace = ctx.obj["workspace"]
    return current


def output_result(
    ctx: typer.Context,
    data: dict[str, Any] | list[Any],
    columns: list[str] | None = None,
    *,
    format: str = "json",
) -> None:
    """Write ``data`` to stdout in the requested format."""
    from mixpanel_engagement.cli.formatters import format_json, format_table

    if format == "table":
        console.print(format_table(data, columns))
        return
    console.print(format_json(data), highlight=False)


def finish_sync(ctx: typer.Context, result: SyncResult, *, format: str) -> None:
    """Report a sync run; exit 1 unless it succeeded."""
    if format != "table":
        output_result(ctx, result.to_dict(), format=format)
    else:
        rows = [upsert.to_dict() for upsert in result.upserts]
        columns = ["table", "inserted", "failed_batches", "skipped_batches"]
        output_result(ctx, rows, columns=columns, format=format)
        err_console.print(result.message)

    if result.rate_limited:
        err_console.print(f"[yellow]{result.message}[/yellow]")
    if result.success:
        return
    err_console.print(f"[red]Sync failed during {result.stage}:[/red] {result.message}")
    raise typer.Exit(ExitCode.GENERAL_ERROR)


@contextmanager
def status_spinner(ctx: typer.Context, message: str) -> Generator[None, None, None]:
    """Spinner on stderr; skipped under ``--quiet`` or without a TTY."""
    quiet = bool(ctx.obj and ctx.obj.get("quiet"))
    if quiet or not sys.stderr.isatty():
        yield
        return
    with err_console.status(message):
        yield
