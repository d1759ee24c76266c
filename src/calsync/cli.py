"""CLI for calsync: connect to Google Calendar, sync, and manage reminders."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click

from calsync import __version__
from calsync.app import CalsyncApp
from calsync.config import CalsyncConfig, load_config
from calsync.core.logging import configure_logging
from calsync.errors import CalsyncError, ConfigError, user_message
from calsync.models import CalendarEvent, Reminder
from calsync.modules import reminders as reminder_ops
from calsync.modules.sync import SyncResult

logger = logging.getLogger(__name__)

_DATE = click.DateTime(formats=["%Y-%m-%d"])
_TIME = click.DateTime(formats=["%H:%M"])


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to calsync.toml (or a directory containing it)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calsync: keep a local calendar in step with Google Calendar."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)

    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
        user=config.user,
    )
    ctx.obj = config


def _run(config: CalsyncConfig, action: Callable[[CalsyncApp], Awaitable[Any]]) -> Any:
    """Run *action* against a started app, mapping errors to exit codes."""

    async def _main() -> Any:
        app = CalsyncApp(config, on_prompt=_echo_consent_url)
        async with app:
            return await action(app)

    try:
        return asyncio.run(_main())
    except CalsyncError as exc:
        logger.debug("Command failed", exc_info=True)
        click.echo(user_message(exc), err=True)
        sys.exit(1)
    except ValueError as exc:
        click.echo(str(exc), err=True)
        sys.exit(1)


def _echo_consent_url(url: str) -> None:
    click.echo("Opening your browser for Google sign-in. If it does not open, visit:")
    click.echo(f"  {url}")


def _echo_sync_result(result: SyncResult) -> None:
    if result.discarded:
        click.echo("Sync results discarded (disconnected during sync).")
        return
    click.echo(
        f"Synced: {result.fetched} from Google, {result.local_only} local-only, "
        f"{result.total} total."
    )


def _format_event(event: CalendarEvent) -> str:
    marker = "G" if event.is_synced else "L"
    return (
        f"[{marker}] {event.id:<32} {event.date.isoformat()} "
        f"{event.start_time:%H:%M}-{event.end_time:%H:%M}  {event.title}"
    )


def _format_reminder(reminder: Reminder) -> str:
    flags = "".join(
        (
            "x" if reminder.is_complete else " ",
            "s" if reminder.notification_sent else " ",
            "E" if reminder.email_notification else " ",
            "S" if reminder.sms_notification else " ",
        )
    )
    return (
        f"[{flags}] {reminder.id:<32} {reminder.date.isoformat()} "
        f"{reminder.time:%H:%M}  {reminder.title}"
    )


# ---------------------------------------------------------------------------
# Connection and sync
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--force-consent", is_flag=True, help="Always show the Google consent screen")
@click.pass_obj
def connect(config: CalsyncConfig, force_consent: bool) -> None:
    """Connect to Google Calendar and run the initial sync."""
    result = _run(config, lambda app: app.sync_service.connect(force_consent=force_consent))
    click.echo("Connected to Google Calendar.")
    _echo_sync_result(result)


@cli.command()
@click.pass_obj
def disconnect(config: CalsyncConfig) -> None:
    """Disconnect from Google Calendar and revoke access."""
    _run(config, lambda app: app.sync_service.disconnect())
    click.echo("Disconnected from Google Calendar.")


@cli.command()
@click.pass_obj
def sync(config: CalsyncConfig) -> None:
    """Sync the local calendar with Google Calendar."""
    _echo_sync_result(_run(config, lambda app: app.sync_service.sync()))


@cli.command()
@click.argument("event_id")
@click.pass_obj
def publish(config: CalsyncConfig, event_id: str) -> None:
    """Push a local-only event to Google Calendar."""
    event = _run(config, lambda app: app.sync_service.publish(event_id))
    click.echo(f"Published {event.id} as Google event {event.external_id}.")


@cli.command()
@click.pass_obj
def status(config: CalsyncConfig) -> None:
    """Show connection and integration status."""

    async def _status(app: CalsyncApp) -> None:
        credentials = app.credentials
        click.echo(f"User:        {config.user}")
        google = "configured" if credentials.is_configured else "not configured"
        click.echo(f"Google:      {google}")
        click.echo(f"Connection:  {app.sync_service.state} ({credentials.state})")
        if credentials.expires_at is not None:
            click.echo(f"Token until: {credentials.expires_at.isoformat()}")
        click.echo(f"Email:       {'configured' if config.email else 'not configured'}")
        click.echo(f"SMS:         {'configured' if config.sms else 'not configured'}")

    _run(config, _status)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@cli.group()
def events() -> None:
    """Manage local calendar events."""


@events.command("list")
@click.pass_obj
def events_list(config: CalsyncConfig) -> None:
    """List local calendar events."""
    items = _run(config, lambda app: app.sync_service.list_events())
    if not items:
        click.echo("No events.")
        return
    for event in items:
        click.echo(_format_event(event))


@events.command("add")
@click.option("--title", required=True)
@click.option("--date", "event_date", type=_DATE, required=True, help="YYYY-MM-DD")
@click.option("--start", "start_time", type=_TIME, required=True, help="HH:MM")
@click.option("--end", "end_time", type=_TIME, required=True, help="HH:MM")
@click.option("--description", default="")
@click.pass_obj
def events_add(
    config: CalsyncConfig,
    title: str,
    event_date: Any,
    start_time: Any,
    end_time: Any,
    description: str,
) -> None:
    """Add a local-only event."""
    event = _run(
        config,
        lambda app: app.sync_service.add_event(
            title=title,
            date=event_date.date(),
            start_time=start_time.time(),
            end_time=end_time.time(),
            description=description,
        ),
    )
    click.echo(f"Added event {event.id}.")


@events.command("edit")
@click.argument("event_id")
@click.option("--title", default=None)
@click.option("--date", "event_date", type=_DATE, default=None, help="YYYY-MM-DD")
@click.option("--start", "start_time", type=_TIME, default=None, help="HH:MM")
@click.option("--end", "end_time", type=_TIME, default=None, help="HH:MM")
@click.option("--description", default=None)
@click.pass_obj
def events_edit(
    config: CalsyncConfig,
    event_id: str,
    title: str | None,
    event_date: Any,
    start_time: Any,
    end_time: Any,
    description: str | None,
) -> None:
    """Edit a local event. Edits to synced events last until the next sync."""
    fields: dict[str, Any] = {}
    if title is not None:
        fields["title"] = title
    if event_date is not None:
        fields["date"] = event_date.date()
    if start_time is not None:
        fields["start_time"] = start_time.time()
    if end_time is not None:
        fields["end_time"] = end_time.time()
    if description is not None:
        fields["description"] = description
    if not fields:
        raise click.UsageError("Nothing to change")

    event = _run(config, lambda app: app.sync_service.update_event(event_id, **fields))
    click.echo(f"Updated event {event.id}.")


@events.command("delete")
@click.argument("event_id")
@click.pass_obj
def events_delete(config: CalsyncConfig, event_id: str) -> None:
    """Delete a local event."""
    _run(config, lambda app: app.sync_service.delete_event(event_id))
    click.echo(f"Deleted event {event_id}.")


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


@cli.group()
def reminders() -> None:
    """Manage reminders."""


@reminders.command("list")
@click.pass_obj
def reminders_list(config: CalsyncConfig) -> None:
    """List reminders, incomplete first."""
    items = _run(config, lambda app: reminder_ops.list_reminders(app.store, config.user))
    if not items:
        click.echo("No reminders.")
        return
    for reminder in items:
        click.echo(_format_reminder(reminder))


@reminders.command("add")
@click.option("--title", required=True)
@click.option("--date", "due_date", type=_DATE, required=True, help="YYYY-MM-DD")
@click.option("--time", "due_time", type=_TIME, required=True, help="HH:MM")
@click.option("--description", default=None)
@click.option("--email", "email_notification", is_flag=True, help="Also notify by email")
@click.option("--sms", "phone_number", default=None, help="Also notify by SMS to this number")
@click.pass_obj
def reminders_add(
    config: CalsyncConfig,
    title: str,
    due_date: Any,
    due_time: Any,
    description: str | None,
    email_notification: bool,
    phone_number: str | None,
) -> None:
    """Add a reminder."""
    reminder = _run(
        config,
        lambda app: reminder_ops.add_reminder(
            app.store,
            config.user,
            title=title,
            date=due_date.date(),
            time=due_time.time(),
            description=description,
            email_notification=email_notification,
            sms_notification=phone_number is not None,
            phone_number=phone_number,
        ),
    )
    click.echo(f"Added reminder {reminder.id}.")


@reminders.command("edit")
@click.argument("reminder_id")
@click.option("--title", default=None)
@click.option("--date", "due_date", type=_DATE, default=None, help="YYYY-MM-DD")
@click.option("--time", "due_time", type=_TIME, default=None, help="HH:MM")
@click.option("--description", default=None)
@click.option("--email/--no-email", "email_notification", default=None)
@click.option("--sms", "phone_number", default=None, help="Notify by SMS to this number")
@click.option("--no-sms", is_flag=True, help="Stop SMS notifications")
@click.pass_obj
def reminders_edit(
    config: CalsyncConfig,
    reminder_id: str,
    title: str | None,
    due_date: Any,
    due_time: Any,
    description: str | None,
    email_notification: bool | None,
    phone_number: str | None,
    no_sms: bool,
) -> None:
    """Edit a reminder. Changing date or time re-arms it."""
    fields: dict[str, Any] = {}
    if title is not None:
        fields["title"] = title
    if due_date is not None:
        fields["date"] = due_date.date()
    if due_time is not None:
        fields["time"] = due_time.time()
    if description is not None:
        fields["description"] = description
    if email_notification is not None:
        fields["email_notification"] = email_notification
    if phone_number is not None:
        fields["sms_notification"] = True
        fields["phone_number"] = phone_number
    if no_sms:
        fields["sms_notification"] = False
    if not fields:
        raise click.UsageError("Nothing to change")

    reminder = _run(
        config,
        lambda app: reminder_ops.update_reminder(app.store, config.user, reminder_id, **fields),
    )
    click.echo(f"Updated reminder {reminder.id}.")


@reminders.command("complete")
@click.argument("reminder_id")
@click.pass_obj
def reminders_complete(config: CalsyncConfig, reminder_id: str) -> None:
    """Toggle a reminder's completion flag."""
    reminder = _run(
        config, lambda app: reminder_ops.toggle_complete(app.store, config.user, reminder_id)
    )
    state = "complete" if reminder.is_complete else "incomplete"
    click.echo(f"Reminder {reminder.id} marked {state}.")


@reminders.command("delete")
@click.argument("reminder_id")
@click.pass_obj
def reminders_delete(config: CalsyncConfig, reminder_id: str) -> None:
    """Delete a reminder."""
    _run(config, lambda app: reminder_ops.delete_reminder(app.store, config.user, reminder_id))
    click.echo(f"Deleted reminder {reminder_id}.")


# ---------------------------------------------------------------------------
# Long-running
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_obj
def run(config: CalsyncConfig) -> None:
    """Run the reminder scheduler (and sync poller) until interrupted."""

    async def _serve(app: CalsyncApp) -> None:
        loop = asyncio.get_running_loop()
        shutdown_event = asyncio.Event()

        def _signal_handler() -> None:
            click.echo("\nShutting down...")
            shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

        app.start_background()
        click.echo(f"calsync running for {config.user}. Press Ctrl+C to stop.")
        await shutdown_event.wait()

    _run(config, _serve)
