"""Typer application and CLI entry point for ssologin.

Every command signs in first (browser authorization code flow by default,
``--device`` for the device code flow), keeps the token in memory for the
duration of the command, and never writes it to disk.

Commands::

    ssologin login
    ssologin accounts
    ssologin roles ACCOUNT_ID
    ssologin credentials ACCOUNT_ID ROLE_NAME

:func:`main` is the console-script entry point declared in
``pyproject.toml``. :class:`~ssologin.exceptions.SsoLoginError` exits with
its ``exit_code``; anything else writes a crash log under the data directory.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import traceback
import webbrowser
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
from rich.logging import RichHandler

from ssologin import __version__
from ssologin.auth.flows import AuthorizationCodeFlow, DeviceCodeFlow, LoginSession
from ssologin.auth.tokens import MemoryTokenProvider
from ssologin.client.oidc import OidcClient
from ssologin.client.sso import SsoClient
from ssologin.config import get_data_dir, resolve_settings
from ssologin.exceptions import ConfigError, SsoLoginError
from ssologin.exit_codes import EXIT_CANCELLED, EXIT_GENERIC_FAILURE
from ssologin.models import (
    GetRoleCredentialsRequest,
    ListAccountRolesRequest,
    Settings,
)
from ssologin.output import OutputFormat, OutputManager, error, get_output, set_output

T = TypeVar("T")

app = typer.Typer(
    name="ssologin",
    help="Sign in through single sign-on and list accounts, roles and credentials.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"ssologin {__version__}")
        raise typer.Exit()


def _configure_logging(output: OutputManager, verbose: bool) -> None:
    """Send ``ssologin`` log records to stderr through Rich when verbose."""
    logger = logging.getLogger("ssologin")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    if verbose:
        logger.addHandler(
            RichHandler(console=output.stderr_console, show_path=False, markup=False)
        )
        logger.setLevel(logging.DEBUG)
    else:
        # Failures are reported through the output manager instead.
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.WARNING)


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit."
    ),
    start_url: Optional[str] = typer.Option(
        None, "--start-url", "-s", help="Portal start URL."
    ),
    region: Optional[str] = typer.Option(None, "--region", "-r", help="Identity provider region."),
    device: bool = typer.Option(
        False, "--device", help="Sign in with a device code instead of a browser redirect."
    ),
    json_output: bool = typer.Option(False, "--json", help="JSON output format."),
    no_color: bool = typer.Option(False, "--no-color", help="Disable color output."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-essential output."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Install the output manager and logging, and stash shared options."""
    output = OutputManager(
        format=OutputFormat.JSON if json_output else OutputFormat.AUTO,
        no_color=no_color,
        quiet=quiet,
        verbose=verbose,
    )
    set_output(output)
    _configure_logging(output, verbose)

    ctx.ensure_object(dict)
    ctx.obj["start_url"] = start_url
    ctx.obj["region"] = region
    ctx.obj["device"] = device


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _settings(ctx: typer.Context) -> Settings:
    return resolve_settings(region=ctx.obj["region"], start_url=ctx.obj["start_url"])


def _require_start_url(settings: Settings) -> str:
    if not settings.start_url:
        raise ConfigError(
            "No start URL configured. Pass --start-url or set SSOLOGIN_START_URL."
        )
    return settings.start_url


def _open_browser(url: str) -> None:
    if not webbrowser.open(url):
        get_output().info(f"Open this URL in a browser to continue:\n{url}")


async def _login(oidc: OidcClient, settings: Settings, device: bool) -> LoginSession:
    start_url = _require_start_url(settings)
    out = get_output()
    if device:
        flow: Any = DeviceCodeFlow(
            oidc,
            settings,
            open_url=_open_browser,
            notify=lambda authz: out.user_code(authz.verification_uri, authz.user_code),
        )
    else:
        flow = AuthorizationCodeFlow(oidc, settings, open_url=_open_browser)
        out.info("Opening your browser to sign in...")
    session = await flow.run(start_url)
    out.success(f"Signed in to {start_url}")
    out.debug(f"Token expires at {_iso(session.token.expires_at)}")
    return session


def _run_with_portal(
    ctx: typer.Context, action: Callable[[SsoClient], Awaitable[T]]
) -> T:
    """Sign in, then run *action* against a portal client using the new token."""
    settings = _settings(ctx)

    async def _go() -> T:
        async with OidcClient.create(settings) as oidc:
            session = await _login(oidc, settings, ctx.obj["device"])
            provider = MemoryTokenProvider(
                session.token, registration=session.registration, oidc=oidc
            )
            async with SsoClient.create(settings, provider) as sso:
                return await action(sso)

    return asyncio.run(_go())


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #


@app.command("login")
def login_command(ctx: typer.Context) -> None:
    """Sign in and show when the session expires. The token is not printed."""
    settings = _settings(ctx)

    async def _go() -> LoginSession:
        async with OidcClient.create(settings) as oidc:
            return await _login(oidc, settings, ctx.obj["device"])

    session = asyncio.run(_go())
    get_output().print_table(
        ["Start URL", "Region", "Scopes", "Expires"],
        [
            [
                session.registration.start_url,
                settings.region,
                ",".join(session.registration.scopes or []),
                _iso(session.token.expires_at),
            ]
        ],
        title="Session",
    )


@app.command("accounts")
def accounts_command(ctx: typer.Context) -> None:
    """List the accounts assigned to you."""

    async def _list(sso: SsoClient) -> list[Any]:
        return await sso.list_accounts().flatten()

    accounts = _run_with_portal(ctx, _list)
    get_output().print_table(
        ["Account ID", "Name", "Email"],
        [[a.account_id, a.account_name or "", a.email_address or ""] for a in accounts],
        title="Accounts",
    )


@app.command("roles")
def roles_command(
    ctx: typer.Context,
    account_id: str = typer.Argument(help="Account to list roles for."),
) -> None:
    """List the roles you can assume in ACCOUNT_ID."""

    async def _list(sso: SsoClient) -> list[Any]:
        return await sso.list_account_roles(
            ListAccountRolesRequest(account_id=account_id)
        ).flatten()

    roles = _run_with_portal(ctx, _list)
    get_output().print_table(
        ["Role", "Account ID"],
        [[r.role_name, r.account_id] for r in roles],
        title=f"Roles in {account_id}",
    )


@app.command("credentials")
def credentials_command(
    ctx: typer.Context,
    account_id: str = typer.Argument(help="Account that owns the role."),
    role_name: str = typer.Argument(help="Role to get credentials for."),
) -> None:
    """Print short-term credentials for ROLE_NAME in ACCOUNT_ID as JSON."""

    async def _get(sso: SsoClient) -> Any:
        return await sso.get_role_credentials(
            GetRoleCredentialsRequest(role_name=role_name, account_id=account_id)
        )

    credentials = _run_with_portal(ctx, _get)
    out = get_output()
    out.warning("The output below contains secret credentials.")
    out.print_json(credentials.model_dump(mode="json", by_alias=True))


# ------------------------------------------------------------------ #
# Entry point
# ------------------------------------------------------------------ #


def _write_crash_log() -> str:
    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / f"crash-{datetime.now().strftime('%Y%m%d-%H%M%S')}.log"
    log_path.write_text(traceback.format_exc())
    return str(log_path)


def main() -> None:
    """Console-script entry point.

    Raises:
        SystemExit: Always; with the error's exit code on failure.
    """
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(EXIT_CANCELLED)
    except SsoLoginError as exc:
        error(str(exc))
        sys.exit(exc.exit_code)
    except Exception:
        log_path = _write_crash_log()
        error(f"Unexpected error. Debug log: {log_path}")
        sys.exit(EXIT_GENERIC_FAILURE)
