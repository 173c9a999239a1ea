"""``mpe auth``: service accounts and creator id aliases."""

from __future__ import annotations

import os
import sys
from typing import Annotated

import typer

from mixpanel_engagement.cli.options import FormatOption
from mixpanel_engagement.cli.utils import (
    ExitCode,
    err_console,
    get_config,
    handle_errors,
    output_result,
)

auth_app = typer.Typer(
    name="auth",
    help="Manage service accounts and aliases.",
    no_args_is_help=True,
    rich_markup_mode="markdown",
)

ACCOUNT_COLUMNS = ["name", "username", "project_id", "region", "is_default"]


def _fail(message: str) -> typer.Exit:
    err_console.print(f"[red]Error:[/red] {message}")
    return typer.Exit(ExitCode.INVALID_ARGS)


def _read_secret(from_stdin: bool) -> str:
    """Secret from piped stdin, then MP_SECRET, then a hidden prompt."""
    if from_stdin:
        if sys.stdin.isatty():
            raise _fail("--secret-stdin requires piped input")
        secret = sys.stdin.read().strip()
    else:
        secret = os.environ.get("MP_SECRET") or typer.prompt(
            "Service account secret", hide_input=True
        )
    if not secret:
        raise _fail("Secret is required")
    return str(secret)


@auth_app.command("list")
@handle_errors
def list_accounts(ctx: typer.Context, format: FormatOption = "json") -> None:
    """Show configured accounts. Secrets are never printed.

    Examples:

        mpe auth list --format table
    """
    accounts = [account.to_dict() for account in get_config(ctx).list_accounts()]
    output_result(ctx, accounts, columns=ACCOUNT_COLUMNS, format=format)


@auth_app.command("add")
@handle_errors
def add_account(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Name to store the account under.")],
    username: Annotated[
        str, typer.Option("--username", "-u", help="Service account username.")
    ],
    project: Annotated[str, typer.Option("--project", "-p", help="Project ID.")],
    region: Annotated[
        str, typer.Option("--region", "-r", help="Data residency: us, eu or in.")
    ] = "us",
    default: Annotated[
        bool, typer.Option("--default", "-d", help="Make this the default account.")
    ] = False,
    secret_stdin: Annotated[
        bool, typer.Option("--secret-stdin", help="Read the secret from stdin.")
    ] = False,
    format: FormatOption = "json",
) -> None:
    """Store a service account.

    The secret is read from stdin with --secret-stdin, else from MP_SECRET,
    else prompted for without echo.

    Examples:

        mpe auth add production -u sa_user -p 2599235
        echo "$SECRET" | mpe auth add eu -u sa_user -p 2599235 -r eu --secret-stdin
    """
    secret = _read_secret(secret_stdin)
    config = get_config(ctx)
    config.add_account(
        name=name, username=username, secret=secret, project_id=project, region=region
    )
    if default:
        config.set_default(name)
    output_result(ctx, {"added": name, "is_default": default}, format=format)


@auth_app.command("remove")
@handle_errors
def remove_account(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Account to delete.")],
    force: Annotated[bool, typer.Option("--force", help="Do not ask first.")] = False,
    format: FormatOption = "json",
) -> None:
    """Delete a stored account."""
    if not (force or typer.confirm(f"Remove account '{name}'?")):
        err_console.print("[yellow]Cancelled[/yellow]")
        raise typer.Exit(ExitCode.AUTH_ERROR)
    get_config(ctx).remove_account(name)
    output_result(ctx, {"removed": name}, format=format)


@auth_app.command("default")
@handle_errors
def set_default_account(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Account to use by default.")],
    format: FormatOption = "json",
) -> None:
    """Choose the account used when --account is not given."""
    get_config(ctx).set_default(name)
    output_result(ctx, {"default": name}, format=format)


@auth_app.command("test")
@handle_errors
def test_account(
    ctx: typer.Context,
    name: Annotated[
        str | None, typer.Argument(help="Account to check; the default if omitted.")
    ] = None,
    format: FormatOption = "json",
) -> None:
    """Check credentials with one request for the profile views chart."""
    from mixpanel_engagement.workspace import EngagementWorkspace

    report = EngagementWorkspace.test_credentials(name, _config_manager=get_config(ctx))
    output_result(ctx, report, format=format)


@auth_app.command("alias")
@handle_errors
def add_creator_alias(
    ctx: typer.Context,
    alias: Annotated[str, typer.Argument(help="Duplicate creator id.")],
    canonical: Annotated[str, typer.Argument(help="Id it should merge into.")],
    format: FormatOption = "json",
) -> None:
    """Merge a duplicate creator id into a canonical one on future syncs.

    Examples:

        mpe auth alias 118 211855351476994048
    """
    get_config(ctx).set_creator_alias(alias, canonical)
    output_result(ctx, {"alias": alias, "canonical": canonical}, format=format)
