#!/usr/bin/env python3
"""
ParkStay Bot - Main Entry Point

Usage:
    python main.py run --config config/config.yaml
    python main.py watch add --name "Easter" --campground 31 --arrival 2030-04-01 --departure 2030-04-05
    python main.py stq add --booking-ref PS123 --campground 31 --arrival 2030-04-01 --departure 2030-04-05
"""
import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from parkstay_bot.app import ParkStayApp
from parkstay_bot.common.config import load_config, parse_date
from parkstay_bot.common.events import EventType
from parkstay_bot.common.models import JobType, NotificationChannel
from parkstay_bot.common.timing import format_wait

console = Console()


def setup_logging(level: str = "INFO", log_file: str = None):
    """Configure logging"""
    handlers = [RichHandler(console=console, rich_tracebacks=True)]

    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(message)s",
        handlers=handlers
    )


def run_command(ctx, call):
    """Run one CommandService call against a fresh app and return its data"""
    cfg = ctx.obj["config"]

    async def run():
        async with ParkStayApp(cfg, console=console) as app:
            return await call(app)

    result = asyncio.run(run())
    if not result.success:
        console.print(Panel(f"[bold red]❌ {result.error}[/bold red]", style="red"))
        sys.exit(1)
    return result.data


def fmt_date(value) -> str:
    return value.strftime("%d/%m/%Y") if value else "-"


def fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def print_execution(result):
    colour = {"success": "green", "failure": "yellow", "error": "red"}[result.job_status.value]
    body = f"[bold]{result.outcome.value}[/bold]\n\n{result.message}"
    if result.booking_reference:
        body += f"\n\nBooking: {result.booking_reference}"
    if result.error_details:
        body += f"\n\n[dim]{result.error_details}[/dim]"
    console.print(Panel(body, style=colour))


@click.group()
@click.option("--config", "-c", default=None, help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx, config, verbose):
    """
    ParkStay Bot

    Watch campgrounds for availability and grow bookings as the
    booking window moves.
    """
    ctx.ensure_object(dict)

    try:
        cfg = load_config(config)
        ctx.obj["config"] = cfg
        setup_logging(
            level="DEBUG" if verbose else cfg.logging.level,
            log_file=cfg.logging.file
        )
    except FileNotFoundError:
        console.print(f"[red]Config file not found: {config}[/red]")
        console.print("Create a config file from config/config.example.yaml")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        sys.exit(1)


# ============================================================
# ENGINE
# ============================================================

@cli.command()
@click.pass_context
def run(ctx):
    """Run the scheduler until Ctrl+C"""
    cfg = ctx.obj["config"]

    async def main():
        async with ParkStayApp(cfg, console=console) as app:
            app.events.subscribe(EventType.WATCH_FOUND, lambda e: console.print(
                f"[green]🏕️  Watch '{e.watch_name}': {len(e.sites)} sites available[/green]"
            ))
            app.events.subscribe(EventType.STQ_SUCCESS, lambda e: console.print(
                f"[green]🎉 Rebooked {e.old_reference} -> {e.new_reference}[/green]"
            ))
            app.events.subscribe(EventType.QUEUE_STATUS_UPDATE, lambda e: console.print(
                f"[dim]Queue: {e.status.value if e.status else 'none'}"
                f"{f', position {e.position}' if e.position else ''}[/dim]"
            ))

            await app.start()
            status = app.scheduler.status()
            console.print(Panel(
                f"🚀 ParkStay Bot running\n\n"
                f"Due watches: {status['due_watches']}\n"
                f"Due STQ entries: {status['due_stq']}\n"
                f"Max concurrent jobs: {status['max_concurrent']}\n\n"
                f"Press Ctrl+C to stop",
                style="blue"
            ))
            await app.scheduler.wait()

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


@cli.command()
@click.pass_context
def resume(ctx):
    """Resume watches paused by a rejected login, after refreshing the cookies"""
    resumed = run_command(ctx, lambda app: app.commands.credentials_refreshed())
    console.print(f"[green]✓ {resumed} watches resumed[/green]")


# ============================================================
# WATCHES
# ============================================================

@cli.group()
def watch():
    """Availability watches"""
    pass


@watch.command("add")
@click.option("--name", required=True, help="Name for the watch")
@click.option("--campground", "campground_id", required=True, help="Campground id")
@click.option("--campground-name", default="", help="Display name of the campground")
@click.option("--arrival", required=True, help="Arrival date")
@click.option("--departure", required=True, help="Departure date")
@click.option("--guests", default=2, show_default=True, help="Number of guests")
@click.option("--site", "sites", multiple=True, help="Preferred site (repeatable)")
@click.option("--site-type", default=None, help="Site type, e.g. tent or caravan")
@click.option("--max-price", type=float, default=None, help="Highest nightly price")
@click.option("--interval", default=5, show_default=True, help="Minutes between checks")
@click.option("--auto-book", is_flag=True, help="Book the best match automatically")
@click.option("--notes", default=None)
@click.pass_context
def watch_add(ctx, name, campground_id, campground_name, arrival, departure, guests,
              sites, site_type, max_price, interval, auto_book, notes):
    """Create a watch"""
    try:
        data = {
            "name": name,
            "campground_id": campground_id,
            "campground_name": campground_name,
            "arrival_date": parse_date(arrival),
            "departure_date": parse_date(departure),
            "num_guests": guests,
            "preferred_sites": list(sites),
            "site_type": site_type,
            "max_price": max_price,
            "check_interval_minutes": interval,
            "auto_book": auto_book,
            "notify_only": not auto_book,
            "notes": notes,
        }
    except (ValueError, OverflowError) as e:
        raise click.BadParameter(f"Unrecognised date: {e}")

    created = run_command(ctx, lambda app: app.commands.create_watch(data))
    console.print(f"[green]✓ Watch {created.id} created: {created.name}[/green]")


@watch.command("list")
@click.option("--active", is_flag=True, help="Only active watches")
@click.pass_context
def watch_list(ctx, active):
    """List watches"""
    watches = run_command(ctx, lambda app: app.commands.list_watches(active_only=active))
    if not watches:
        console.print("[yellow]No watches[/yellow]")
        return

    table = Table(title=f"Watches ({len(watches)})")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Campground")
    table.add_column("Stay")
    table.add_column("Active")
    table.add_column("Last Result")
    table.add_column("Last Checked")

    for w in watches:
        active_text = "[green]yes[/green]" if w.schedulable else (
            f"[red]halted ({w.halted_reason})[/red]" if w.halted_reason else "no"
        )
        table.add_row(
            str(w.id),
            w.name,
            w.campground_name or w.campground_id,
            f"{fmt_date(w.arrival_date)} - {fmt_date(w.departure_date)}",
            active_text,
            w.last_result.value if w.last_result else "-",
            fmt_time(w.last_checked_at),
        )
    console.print(table)


@watch.command("activate")
@click.argument("watch_id", type=int)
@click.pass_context
def watch_activate(ctx, watch_id):
    """Activate a watch"""
    run_command(ctx, lambda app: app.commands.activate_watch(watch_id))
    console.print(f"[green]✓ Watch {watch_id} activated[/green]")


@watch.command("deactivate")
@click.argument("watch_id", type=int)
@click.pass_context
def watch_deactivate(ctx, watch_id):
    """Deactivate a watch"""
    run_command(ctx, lambda app: app.commands.deactivate_watch(watch_id))
    console.print(f"[yellow]Watch {watch_id} deactivated[/yellow]")


@watch.command("delete")
@click.argument("watch_id", type=int)
@click.pass_context
def watch_delete(ctx, watch_id):
    """Delete a watch"""
    run_command(ctx, lambda app: app.commands.delete_watch(watch_id))
    console.print(f"[yellow]Watch {watch_id} deleted[/yellow]")


@watch.command("check")
@click.argument("watch_id", type=int)
@click.pass_context
def watch_check(ctx, watch_id):
    """Check a watch now"""
    print_execution(run_command(ctx, lambda app: app.commands.execute_watch_now(watch_id)))


# ============================================================
# SKIP THE QUEUE
# ============================================================

@cli.group()
def stq():
    """Skip The Queue (Beat the Crowd) rebooking"""
    pass


@stq.command("add")
@click.option("--booking-ref", required=True, help="Current booking reference")
@click.option("--campground", "campground_id", required=True, help="Campground id")
@click.option("--arrival", required=True, help="Arrival date of the booking")
@click.option("--departure", required=True, help="Departure date of the booking")
@click.option("--target-departure", default=None, help="Departure to grow the stay into")
@click.option("--site", "site_id", default=None, help="Site currently booked")
@click.option("--site-type", default=None)
@click.option("--guests", default=2, show_default=True)
@click.option("--interval", default=2, show_default=True, help="Minutes between checks")
@click.option("--max-attempts", default=1000, show_default=True)
@click.option("--notes", default=None)
@click.pass_context
def stq_add(ctx, booking_ref, campground_id, arrival, departure, target_departure, site_id,
            site_type, guests, interval, max_attempts, notes):
    """Create an STQ entry for an existing booking"""
    try:
        data = {
            "booking_reference": booking_ref,
            "campground_id": campground_id,
            "arrival_date": parse_date(arrival),
            "departure_date": parse_date(departure),
            "target_departure_date": parse_date(target_departure) if target_departure else None,
            "site_id": site_id,
            "site_type": site_type,
            "num_guests": guests,
            "check_interval_minutes": interval,
            "max_attempts": max_attempts,
            "notes": notes,
        }
    except (ValueError, OverflowError) as e:
        raise click.BadParameter(f"Unrecognised date: {e}")

    created = run_command(ctx, lambda app: app.commands.create_stq(data))
    console.print(f"[green]✓ STQ entry {created.id} created for {created.booking_reference}[/green]")


@stq.command("list")
@click.option("--active", is_flag=True, help="Only active entries")
@click.pass_context
def stq_list(ctx, active):
    """List STQ entries"""
    entries = run_command(ctx, lambda app: app.commands.list_stq(active_only=active))
    if not entries:
        console.print("[yellow]No STQ entries[/yellow]")
        return

    table = Table(title=f"Skip The Queue ({len(entries)})")
    table.add_column("ID")
    table.add_column("Booking")
    table.add_column("Campground")
    table.add_column("Stay")
    table.add_column("Target")
    table.add_column("State")
    table.add_column("Attempts")

    styles = {"success": "green", "anomaly": "bold red", "error": "red", "exhausted": "yellow"}
    for e in entries:
        style = styles.get(e.state.value)
        state = f"[{style}]{e.state.value}[/{style}]" if style else e.state.value
        table.add_row(
            str(e.id),
            e.booking_reference,
            e.campground_id,
            f"{fmt_date(e.arrival_date)} - {fmt_date(e.departure_date)}",
            fmt_date(e.target_departure_date),
            state,
            f"{e.attempts_count}/{e.max_attempts}",
        )
    console.print(table)

    for e in entries:
        if e.anomaly_details:
            console.print(Panel(e.anomaly_details, title=f"STQ {e.id}: action required", style="red"))


@stq.command("activate")
@click.argument("stq_id", type=int)
@click.pass_context
def stq_activate(ctx, stq_id):
    """Activate an STQ entry"""
    run_command(ctx, lambda app: app.commands.activate_stq(stq_id))
    console.print(f"[green]✓ STQ entry {stq_id} activated[/green]")


@stq.command("deactivate")
@click.argument("stq_id", type=int)
@click.pass_context
def stq_deactivate(ctx, stq_id):
    """Deactivate an STQ entry"""
    run_command(ctx, lambda app: app.commands.deactivate_stq(stq_id))
    console.print(f"[yellow]STQ entry {stq_id} deactivated[/yellow]")


@stq.command("delete")
@click.argument("stq_id", type=int)
@click.pass_context
def stq_delete(ctx, stq_id):
    """Delete an STQ entry"""
    run_command(ctx, lambda app: app.commands.delete_stq(stq_id))
    console.print(f"[yellow]STQ entry {stq_id} deleted[/yellow]")


@stq.command("run")
@click.argument("stq_id", type=int)
@click.pass_context
def stq_run(ctx, stq_id):
    """Run one rebook check now"""
    print_execution(run_command(ctx, lambda app: app.commands.execute_stq_now(stq_id)))


@stq.command("resolve")
@click.argument("stq_id", type=int)
@click.pass_context
def stq_resolve(ctx, stq_id):
    """Re-check both bookings of an interrupted or anomalous rebook"""
    print_execution(run_command(ctx, lambda app: app.commands.resolve_stq_anomaly(stq_id)))


# ============================================================
# QUEUE
# ============================================================

@cli.group()
def queue():
    """Portal waiting room"""
    pass


@queue.command("status")
@click.pass_context
def queue_status(ctx):
    """Show the saved queue session"""
    async def call(app):
        app.queue.restore()
        return await app.commands.queue_status()

    status = run_command(ctx, call)
    if not status.get("status"):
        console.print("[yellow]No queue session[/yellow]")
        return

    table = Table(show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Status", status["status"])
    table.add_row("Position", str(status["position"]))
    table.add_row("Estimated Wait", status["estimated_wait"])
    table.add_row("Expires In", status["expiry_remaining"])
    console.print(table)


# ============================================================
# NOTIFICATIONS AND LOGS
# ============================================================

@cli.group()
def notifications():
    """In-app notifications and providers"""
    pass


@notifications.command("list")
@click.option("--unread", is_flag=True, help="Only unread notifications")
@click.option("--limit", default=20, show_default=True)
@click.pass_context
def notifications_list(ctx, unread, limit):
    """List notifications, newest first"""
    items = run_command(ctx, lambda app: app.commands.list_notifications(unread_only=unread, limit=limit))
    if not items:
        console.print("[yellow]No notifications[/yellow]")
        return

    table = Table(title="Notifications")
    table.add_column("ID")
    table.add_column("When")
    table.add_column("Type")
    table.add_column("Title")
    table.add_column("Message")
    for n in items:
        title = n.title if n.is_read else f"[bold]{n.title}[/bold]"
        if n.priority == "high":
            title = f"[red]{title}[/red]"
        table.add_row(str(n.id), fmt_time(n.created_at), n.type.value, title, n.message)
    console.print(table)


@notifications.command("read")
@click.argument("notification_id", type=int, required=False)
@click.option("--all", "all_", is_flag=True, help="Mark every notification read")
@click.pass_context
def notifications_read(ctx, notification_id, all_):
    """Mark a notification (or all of them) read"""
    if all_:
        count = run_command(ctx, lambda app: app.commands.mark_all_notifications_read())
        console.print(f"[green]✓ {count} notifications marked read[/green]")
        return
    if notification_id is None:
        raise click.UsageError("Give a notification id or --all")
    run_command(ctx, lambda app: app.commands.mark_notification_read(notification_id))
    console.print(f"[green]✓ Notification {notification_id} marked read[/green]")


@notifications.command("delete")
@click.argument("notification_id", type=int)
@click.pass_context
def notifications_delete(ctx, notification_id):
    """Delete a notification"""
    run_command(ctx, lambda app: app.commands.delete_notification(notification_id))
    console.print(f"[yellow]Notification {notification_id} deleted[/yellow]")


@notifications.command("providers")
@click.pass_context
def notifications_providers(ctx):
    """List configured notification providers"""
    async def call(app):
        app.load_providers()
        return await app.commands.list_providers()

    records = run_command(ctx, call)
    table = Table(title="Notification Providers")
    table.add_column("Channel")
    table.add_column("Enabled")
    table.add_column("Status")
    table.add_column("Last Tested")
    table.add_column("Last Error")
    for r in records:
        table.add_row(
            r.display_name,
            "yes" if r.enabled else "no",
            r.status.value,
            fmt_time(r.last_tested_at),
            r.last_error or "-",
        )
    console.print(table)


@notifications.command("test")
@click.argument("channel", type=click.Choice([c.value for c in NotificationChannel]))
@click.pass_context
def notifications_test(ctx, channel):
    """Send a test message through one provider"""
    async def call(app):
        app.load_providers()
        return await app.commands.test_provider(NotificationChannel(channel))

    result = run_command(ctx, call)
    if result.success:
        console.print(f"[green]✓ Test notification sent via {channel}[/green]")
    else:
        console.print(f"[red]✗ {channel}: {result.error}[/red]")
        sys.exit(1)


@cli.command()
@click.option("--type", "job_type", type=click.Choice([t.value for t in JobType]), default=None)
@click.option("--id", "job_id", type=int, default=None, help="Watch or STQ id")
@click.option("--limit", default=50, show_default=True)
@click.pass_context
def logs(ctx, job_type, job_id, limit):
    """Show recent job executions"""
    entries = run_command(ctx, lambda app: app.commands.list_job_logs(
        job_type=JobType(job_type) if job_type else None, job_id=job_id, limit=limit
    ))
    if not entries:
        console.print("[yellow]No job logs[/yellow]")
        return

    table = Table(title="Job Log")
    table.add_column("When")
    table.add_column("Job")
    table.add_column("Status")
    table.add_column("Outcome")
    table.add_column("Message")
    table.add_column("ms", justify="right")
    colours = {"success": "green", "failure": "yellow", "error": "red"}
    for entry in entries:
        colour = colours[entry.status.value]
        table.add_row(
            fmt_time(entry.created_at),
            f"{entry.job_type.value} #{entry.job_id}",
            f"[{colour}]{entry.status.value}[/{colour}]",
            entry.outcome or "-",
            entry.message or "",
            str(entry.duration_ms),
        )
    console.print(table)


@cli.command()
@click.pass_context
def info(ctx):
    """Show current configuration"""
    cfg = ctx.obj["config"]

    console.print(Panel("📋 Current Configuration", style="blue"))

    table = Table(show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    table.add_row("Account", cfg.credentials.email)
    table.add_row("Session Cookie", "set" if cfg.credentials.session_id else "[red]missing[/red]")
    table.add_row("Portal", cfg.portal.base_url)
    table.add_row("Queue Group", cfg.portal.queue_group)
    table.add_row("Timezone", cfg.scheduler.timezone)
    table.add_row("Tick", f"{cfg.scheduler.tick_seconds:g}s")
    table.add_row("Max Concurrent Jobs", str(cfg.scheduler.max_concurrent))
    table.add_row("Max Queue Wait", format_wait(cfg.queue.max_wait_seconds))
    table.add_row("Booking Window", f"{cfg.booking.booking_window_days} days")
    table.add_row(
        "Max Stay",
        f"{cfg.booking.max_stay_peak_nights} nights peak / {cfg.booking.max_stay_off_peak_nights} off-peak"
    )
    table.add_row("Data File", cfg.storage.path or "(memory only)")
    table.add_row("Desktop Notifications", str(cfg.notifications.desktop_enabled))
    table.add_row("Other Providers", ", ".join(p.channel for p in cfg.notifications.providers) or "None")

    console.print(table)


if __name__ == "__main__":
    cli()
