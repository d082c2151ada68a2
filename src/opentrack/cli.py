import click
from tabulate import tabulate

from .config import LoggingConfig, load_settings
from .database import Database
from .exceptions import ConflictError, ValidationError
from .logging import setup_logging
from .pixel import build_tracking_html, build_tracking_url, new_tracking_id
from .query import TrackingQueryService
from .validators import require_recipient, require_tracking_id


def _short(value, width=19):
    if value is None:
        return '-'
    text = value.isoformat() if hasattr(value, 'isoformat') else str(value)
    return text[:width]


def _location(event):
    if not event.location:
        return '-'
    parts = [event.location.city, event.location.region, event.location.country]
    return ', '.join(p for p in parts if p) or '-'


@click.group()
@click.option('--db', default=None, help='Path to SQLite event log (overrides configuration)')
@click.option('--config', 'config_file', default=None, help='Path to YAML/JSON configuration file')
@click.pass_context
def cli(ctx, db, config_file):
    """Email open tracking CLI tool."""
    ctx.ensure_object(dict)
    settings = load_settings(config_file=config_file)
    if db:
        settings = settings.model_copy(
            update={'database': settings.database.model_copy(update={'path': db})}
        )
    ctx.obj['settings'] = settings


def _open_db(ctx) -> Database:
    if 'db' not in ctx.obj:
        settings = ctx.obj['settings']
        database = Database(settings.database.path, timeout=settings.database.timeout).open()
        ctx.obj['db'] = database
        ctx.call_on_close(database.close)
    return ctx.obj['db']


@cli.command('serve')
@click.option('--host', default=None, help='Interface to bind')
@click.option('--port', type=int, default=None, help='Port to listen on')
@click.pass_context
def serve(ctx, host, port):
    """Run the tracking server."""
    from .server import run

    settings = ctx.obj['settings']
    server = settings.server.model_copy(update={
        k: v for k, v in {'host': host, 'port': port}.items() if v is not None
    })
    run(settings.model_copy(update={'server': server}))


@cli.command('generate-id')
def generate_id():
    """Print a fresh tracking id."""
    click.echo(new_tracking_id())


@cli.command('create')
@click.option('--email', 'recipient', required=True, help='Recipient email')
@click.option('--subject', default='', help='Message subject')
@click.option('--token', help='Tracking id (auto-generated if not provided)')
@click.option('--parent', help='Tracking id of the message this one was forwarded from')
@click.option('--base-url', default=None, help='Public base URL of the tracking server')
@click.pass_context
def create_message(ctx, recipient, subject, token, parent, base_url):
    """Register a message and print its tracking pixel."""
    db = _open_db(ctx)
    settings = ctx.obj['settings']

    try:
        recipient = require_recipient(recipient)
        tracking_id = require_tracking_id(token) if token else new_tracking_id()
        if parent:
            require_tracking_id(parent, field='parent')
        db.create_message(tracking_id, recipient, subject=subject, parent_tracking_id=parent)
    except (ValidationError, ConflictError) as e:
        raise click.ClickException(e.message)

    base = base_url or settings.server.base_url or f"http://localhost:{settings.server.port}"
    tracking_url = build_tracking_url(base, tracking_id, recipient)
    click.echo(f"Tracking id: {tracking_id}")
    click.echo(f"Tracking URL: {tracking_url}")
    click.echo(f"HTML: {build_tracking_html(tracking_url)}")


@cli.command('emails')
@click.pass_context
def list_emails(ctx):
    """List tracked messages."""
    queries = TrackingQueryService(_open_db(ctx))
    messages = queries.list_messages()

    if not messages:
        click.echo("No tracked emails found.")
        return

    table_data = [
        [
            msg['tracking_id'],
            msg['original_recipient'],
            msg['subject'] or '-',
            msg['open_count'],
            'yes' if msg['ever_forwarded'] else 'no',
            _short(msg['sent_at']),
        ]
        for msg in messages
    ]
    headers = ['Tracking ID', 'Recipient', 'Subject', 'Opens', 'Forwarded', 'Sent']
    click.echo(tabulate(table_data, headers=headers, tablefmt='grid'))


@cli.command('history')
@click.argument('tracking_id')
@click.pass_context
def show_history(ctx, tracking_id):
    """Show the anchor open and every later event for a tracking id."""
    queries = TrackingQueryService(_open_db(ctx))
    history = queries.get_history(tracking_id)

    if history is None:
        click.echo(f"No events recorded for {tracking_id}.")
        return

    if history.message:
        click.echo(f"\n=== {tracking_id}: {history.message.original_recipient} ===")
    else:
        click.echo(f"\n=== {tracking_id} (unregistered) ===")

    table_data = []
    for position, event in enumerate(history.events):
        device = event.device_info
        table_data.append([
            'anchor' if position == 0 else position,
            _short(event.observed_at),
            event.event_kind.value,
            'yes' if event.classified_forwarded else 'no',
            event.forwarded_by or '-',
            event.ip or '-',
            f"{device.browser}/{device.os}/{device.device}" if device else '-',
            _location(event),
        ])
    headers = ['#', 'Observed', 'Kind', 'Forwarded', 'Claimed by', 'IP', 'Device', 'Location']
    click.echo(tabulate(table_data, headers=headers, tablefmt='grid'))


@cli.command('stats')
@click.pass_context
def show_stats(ctx):
    """Show open counts per tracking id."""
    queries = TrackingQueryService(_open_db(ctx))
    rows = queries.get_statistics()

    if not rows:
        click.echo("No events recorded.")
        return

    table_data = [
        [row.tracking_id, row.open_count, _short(row.first_open), _short(row.last_open)]
        for row in rows
    ]
    headers = ['Tracking ID', 'Events', 'First', 'Last']
    click.echo(tabulate(table_data, headers=headers, tablefmt='grid'))


@cli.command('summary')
@click.argument('tracking_id')
@click.option('--depth', default=1, type=click.IntRange(min=0), help='How many forward levels to expand')
@click.pass_context
def show_summary(ctx, tracking_id, depth):
    """Show a message with the messages forwarded from it."""
    queries = TrackingQueryService(_open_db(ctx))
    summary = queries.get_email_summary(tracking_id, max_depth=depth)

    if summary is None:
        click.echo(f"Email {tracking_id} not found.")
        return

    click.echo(f"\n=== {tracking_id}: {summary.email.original_recipient} ===")
    click.echo(f"Opens: {summary.open_count}")
    click.echo(f"Forwards: {summary.forward_count}")

    if summary.forwarded_emails:
        table_data = [
            [child.email.tracking_id, child.email.original_recipient, child.open_count, child.forward_count]
            for child in summary.forwarded_emails
        ]
        headers = ['Tracking ID', 'Recipient', 'Opens', 'Forwards']
        click.echo(tabulate(table_data, headers=headers, tablefmt='grid'))


def main():
    setup_logging(LoggingConfig(level="WARNING"))
    cli(obj={})


if __name__ == '__main__':
    main()
