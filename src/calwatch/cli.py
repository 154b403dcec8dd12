"""CLI for calwatch: run the service and manage subscriptions."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click

from calwatch import __version__
from calwatch.config import ConfigError, load_config
from calwatch.models import Subscription, SubscriptionKind

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(".")

_config_option = click.option(
    "--config",
    "config_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    show_default=True,
    help="Directory containing calwatch.toml",
)


def _subscription_options(func):
    func = click.option("--target", required=True, help="Delivery target (e.g. conversation id)")(
        func
    )
    func = click.option(
        "--kind",
        required=True,
        type=click.Choice([kind.value for kind in SubscriptionKind]),
        help="Subscription kind",
    )(func)
    func = click.option("--calendar", "calendar_id", required=True, help="Calendar id")(func)
    func = click.option("--account", "account_id", required=True, help="Account id")(func)
    return func


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """calwatch: calendar watch channels, reminders and invite prompts."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")


@cli.command()
@_config_option
def serve(config_dir: Path) -> None:
    """Run the webhook server and the channel renewal loop."""
    click.echo(f"Starting calwatch from {config_dir}")
    asyncio.run(_serve(config_dir))


@cli.command()
@_config_option
def migrate(config_dir: Path) -> None:
    """Upgrade the database schema to the latest revision."""
    asyncio.run(_migrate(config_dir))
    click.echo("Migrations complete")


@cli.command()
@_config_option
@_subscription_options
def subscribe(config_dir: Path, account_id: str, calendar_id: str, kind: str, target: str) -> None:
    """Add a subscription, opening a watch channel if needed."""
    subscription = Subscription(
        account_id=account_id,
        calendar_id=calendar_id,
        kind=SubscriptionKind(kind),
        target=target,
    )
    created = asyncio.run(_with_daemon(config_dir, _add(subscription)))
    click.echo("Subscription added" if created else "Subscription already exists")


@cli.command()
@_config_option
@_subscription_options
def unsubscribe(
    config_dir: Path, account_id: str, calendar_id: str, kind: str, target: str
) -> None:
    """Remove a subscription, releasing the watch channel when it was the last one."""
    subscription = Subscription(
        account_id=account_id,
        calendar_id=calendar_id,
        kind=SubscriptionKind(kind),
        target=target,
    )
    removed = asyncio.run(_with_daemon(config_dir, _remove(subscription)))
    click.echo("Subscription removed" if removed else "Subscription not found")


@cli.command("set-token")
@_config_option
@click.option("--account", "account_id", required=True, help="Account id")
@click.option(
    "--refresh-token",
    prompt=True,
    hide_input=True,
    envvar="CALWATCH_REFRESH_TOKEN",
    help="Google OAuth refresh token for the account",
)
def set_token(config_dir: Path, account_id: str, refresh_token: str) -> None:
    """Store the Google refresh token used to act on behalf of an account."""
    refresh_token = refresh_token.strip()
    if not refresh_token:
        raise click.BadParameter("must not be empty", param_hint="--refresh-token")
    asyncio.run(_with_daemon(config_dir, _store_token(account_id, refresh_token)))
    click.echo(f"Refresh token stored for {account_id}")


@cli.command()
@_config_option
def renew(config_dir: Path) -> None:
    """Run one renewal scan for channels nearing expiry."""
    renewed = asyncio.run(_with_daemon(config_dir, _renew_once))
    click.echo(f"Renewed {renewed} channel(s)")


def _load_or_exit(config_dir: Path) -> None:
    try:
        load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Invalid configuration: {exc}", err=True)
        sys.exit(1)


async def _serve(config_dir: Path) -> None:
    from calwatch.daemon import CalwatchDaemon

    _load_or_exit(config_dir)

    loop = asyncio.get_event_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    daemon = CalwatchDaemon(config_dir)
    await daemon.start()
    click.echo(f"calwatch running on port {daemon.config.port}")

    await shutdown_event.wait()
    await daemon.shutdown()


async def _migrate(config_dir: Path) -> None:
    from calwatch.db import Database
    from calwatch.migrations import run_migrations

    _load_or_exit(config_dir)
    config = load_config(config_dir)
    db = Database.from_env(config.db_name, schema=config.db_schema)
    await run_migrations(db.sqlalchemy_url, schema=config.db_schema)


async def _with_daemon(config_dir: Path, action):
    """Run *action* against a daemon started without its background parts."""
    from calwatch.daemon import CalwatchDaemon

    _load_or_exit(config_dir)
    daemon = CalwatchDaemon(config_dir)
    try:
        await daemon.start(serve=False)
        return await action(daemon)
    finally:
        await daemon.shutdown()


def _add(subscription: Subscription):
    async def action(daemon) -> bool:
        return await daemon.subscriptions.add_subscription(subscription)

    return action


def _remove(subscription: Subscription):
    async def action(daemon) -> bool:
        return await daemon.subscriptions.remove_subscription(subscription)

    return action


def _store_token(account_id: str, refresh_token: str):
    async def action(daemon) -> None:
        await daemon.store.set_refresh_token(account_id, refresh_token)
        # Drop any cached client still holding the previous token.
        daemon.gateways.forget_account(account_id)

    return action


async def _renew_once(daemon) -> int:
    return await daemon.renewal.scan_once()
