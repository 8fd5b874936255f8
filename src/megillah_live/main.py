#!/usr/bin/env python3
"""Megillah Live - CLI entry point."""

import asyncio
import json
import logging
import os
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click
import redis.asyncio as redis
import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration

from megillah_live import __version__
from megillah_live.config import LiveSyncConfig, load_config
from megillah_live.controller import LiveSession, SessionCallbacks, SessionController
from megillah_live.crypto import cipher_for
from megillah_live.exceptions import LiveSyncError, TransportError
from megillah_live.links import parse_join_link, share_url
from megillah_live.persistence import LocalStorage, PendingSessionPersistence
from megillah_live.redis_client import RedisConnection
from megillah_live.store import RedisSessionStore
from megillah_live.transport import RedisChannelTransport


def _init_sentry() -> bool:
    """Initialize Sentry error tracking if SENTRY_DSN is set."""
    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=f"megillah-live@{__version__}",
        traces_sample_rate=1.0 if environment == "development" else 0.2,
        integrations=[AsyncioIntegration()],
        send_default_pii=False,
        ignore_errors=[redis.ConnectionError, redis.TimeoutError, KeyboardInterrupt],
    )

    sentry_sdk.set_tag("service", "megillah-live")
    return True


_sentry_enabled = _init_sentry()

structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="%H:%M:%S"),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
)

logger = structlog.get_logger()

LEADER_HELP = """Leader commands:
  scroll <verse>          broadcast reading position (e.g. scroll 3:7)
  verse <verse>           highlight a whole verse
  word <word-id>          highlight a single word (e.g. word 3:7-5)
  time <minutes>          broadcast the reading-time estimate
  setting <key> <value>   mirror a display setting (value as JSON or text)
  quit                    end the session"""


class ConsoleViewport:
    """Prints where a follower's reader would scroll to."""

    def sticky_header_height(self) -> float:
        return 0

    def scroll_to(self, verse_key: str, offset: float, smooth: bool = True) -> bool:
        click.echo(click.style("  -> ", fg="cyan") + f"scroll to {verse_key}")
        return True


def _parse_setting_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


async def execute_leader_command(session: LiveSession, line: str) -> bool | None:
    """Run one leader command line.

    Returns whether the message went out, or None for ``quit``.

    Raises:
        click.UsageError: If the command is unknown or malformed.
    """
    parts = line.strip().split(maxsplit=2)
    if not parts:
        return False

    command, args = parts[0].lower(), parts[1:]
    if command in ("quit", "exit", "leave"):
        return None

    if command == "scroll" and len(args) == 1:
        return await session.broadcast(args[0])
    if command == "verse" and len(args) == 1:
        return await session.highlight_verse(args[0])
    if command == "word" and len(args) == 1:
        return await session.broadcast_word(args[0], force=True)
    if command == "time" and len(args) == 1:
        try:
            minutes = float(args[0])
        except ValueError as e:
            raise click.UsageError(f"Invalid minutes: {args[0]}") from e
        return await session.broadcast_time(minutes)
    if command == "setting" and len(args) == 2:
        return await session.broadcast_setting(args[0], _parse_setting_value(args[1]))

    raise click.UsageError(f"Unknown command: {line.strip()}")


def _console_callbacks(shutdown_event: asyncio.Event) -> SessionCallbacks:
    def on_transport_error(error: TransportError) -> None:
        click.echo(click.style("Connection lost: ", fg="red", bold=True) + error.message, err=True)
        shutdown_event.set()

    return SessionCallbacks(
        on_time_update=lambda minutes: click.echo(f"  Reading time: {minutes:g} min"),
        on_word_highlight=lambda word_id: click.echo(f"  Highlight word {word_id}"),
        on_verse_highlight=lambda verse: click.echo(f"  Highlight verse {verse}"),
        on_setting_change=lambda key, value: click.echo(f"  Setting {key} = {value!r}"),
        on_transport_error=on_transport_error,
    )


async def _lead(
    controller: SessionController, session: LiveSession, shutdown_event: asyncio.Event
) -> None:
    click.echo(LEADER_HELP)
    loop = asyncio.get_running_loop()
    while not shutdown_event.is_set():
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            break
        controller.error = None
        try:
            sent = await execute_leader_command(session, line)
        except click.UsageError as e:
            click.echo(click.style("Error: ", fg="red") + e.message, err=True)
            continue
        if sent is None:
            break
        if controller.error:
            click.echo(click.style("Error: ", fg="red") + controller.error, err=True)
        elif line.strip():
            click.echo("  sent" if sent else "  dropped")


async def _follow(session: LiveSession, shutdown_event: asyncio.Event) -> None:
    if session.initial_settings:
        click.echo(f"  Shared settings: {json.dumps(session.initial_settings)}")
    click.echo("Following the live broadcast. Press Ctrl+C to leave.")
    await shutdown_event.wait()


SessionAction = Callable[[SessionController], Awaitable[LiveSession | None]]


def _run_session(config: LiveSyncConfig, action: SessionAction) -> None:
    """Connect, run ``action`` to obtain a session, then lead or follow it."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        click.echo("\nLeaving...")
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    secret = config.record_encryption_key
    connection = RedisConnection(
        config.redis_url, cipher_for(secret.get_secret_value() if secret else None)
    )
    controller = SessionController(
        store=RedisSessionStore(connection, config.record_key_prefix),
        transport=RedisChannelTransport(connection),
        viewport=ConsoleViewport(),
        callbacks=_console_callbacks(shutdown_event),
        pending=PendingSessionPersistence(LocalStorage(config.storage_path)),
        config=config,
    )

    async def run() -> None:
        await connection.open()
        session = await action(controller)
        if session is None:
            click.echo(click.style("No pending session to resume.", fg="yellow"))
            return

        click.echo(
            click.style("Session ", fg="cyan", bold=True)
            + click.style(session.code, fg="cyan")
            + f"  ({session.role.value})"
        )
        click.echo(f"  Share: {session.share_url}")
        click.echo()

        if session.is_leader:
            await _lead(controller, session, shutdown_event)
        else:
            await _follow(session, shutdown_event)

    exit_code = 0
    try:
        loop.run_until_complete(run())
    except LiveSyncError as e:
        logger.warning("Live session failed", error=e.message)
        click.echo(click.style("Error: ", fg="red", bold=True) + e.message, err=True)
        exit_code = 1
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(controller.close())
        loop.run_until_complete(connection.close())
        if _sentry_enabled:
            sentry_sdk.flush(timeout=2.0)
        loop.close()

    if exit_code:
        sys.exit(exit_code)


@click.group()
@click.version_option(version=__version__, prog_name="megillah-live")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, path_type=Path),
    help="Path to config file",
)
@click.pass_context
def cli(ctx: click.Context, config_file: Path | None) -> None:
    """Megillah Live - lead or follow a live Megillah reading."""
    ctx.obj = load_config(config_file)
    level = getattr(logging, ctx.obj.log_level.upper(), logging.INFO)
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(level))


@cli.command()
@click.option(
    "--password",
    prompt=True,
    hide_input=True,
    confirmation_prompt=True,
    help="Leader password for the new session",
)
@click.pass_obj
def create(config: LiveSyncConfig, password: str) -> None:
    """Create a session and lead it."""
    _run_session(config, lambda controller: controller.create(password.strip()))


@cli.command()
@click.argument("code")
@click.option("--password", default=None, help="Leader password (leave empty to follow)")
@click.pass_obj
def join(config: LiveSyncConfig, code: str, password: str | None) -> None:
    """Join a session by code or invite link."""
    if "/" in code:
        parsed = parse_join_link(code)
        if parsed is None:
            raise click.BadParameter("Link does not contain a session code", param_hint="CODE")
        code = parsed
    _run_session(config, lambda controller: controller.join(code, password or None))


@cli.command()
@click.pass_obj
def resume(config: LiveSyncConfig) -> None:
    """Resume the session created last, before broadcasting started."""
    _run_session(config, lambda controller: controller.resume_pending())


@cli.command()
@click.argument("code")
@click.pass_obj
def share(config: LiveSyncConfig, code: str) -> None:
    """Print the invite link for a session code."""
    click.echo(share_url(code, config.share_base_url))


@cli.command()
def version() -> None:
    """Show version information."""
    click.echo(f"megillah-live v{__version__}")


# =============================================================================
# PENDING SESSION COMMANDS
# =============================================================================


@cli.group()
def pending() -> None:
    """Inspect the session created but not yet broadcast."""
    pass


@pending.command("show")
@click.pass_obj
def pending_show(config: LiveSyncConfig) -> None:
    """Show the pending session."""
    saved = PendingSessionPersistence(LocalStorage(config.storage_path)).load()
    if saved is None:
        click.echo(click.style("No pending session.", fg="yellow"))
        return

    click.echo(click.style("Pending session", fg="cyan", bold=True))
    click.echo(f"  Code: {saved.code}")
    click.echo(f"  Share: {share_url(saved.code, config.share_base_url)}")
    click.echo("\nRun 'megillah-live resume' to start broadcasting.")


@pending.command("clear")
@click.pass_obj
def pending_clear(config: LiveSyncConfig) -> None:
    """Abandon the pending session."""
    PendingSessionPersistence(LocalStorage(config.storage_path)).clear()
    click.echo(click.style("Pending session cleared.", fg="green"))


if __name__ == "__main__":
    cli()
