"""
Operational commands.

    flask --app walletcore transfers run-scheduled
    flask --app walletcore transfers scheduler-status
"""

import click
from flask import current_app
from flask.cli import AppGroup

transfers_cli = AppGroup('transfers', help='Scheduled transfer operations.')


def _job():
    return current_app.extensions['scheduled_transfer_job']


@transfers_cli.command('run-scheduled')
def run_scheduled():
    """Execute every scheduled transfer that is due now."""
    result = _job().run_now()
    if not result.get('success'):
        raise click.ClickException(result.get('error', 'Scheduled transfer run failed'))

    click.echo(f"Executed {result['executed_count']} scheduled transfer(s)")
    for reference in result['executed_transfers']:
        click.echo(f"  {reference}")
    for failure in result['failures']:
        retry = 'will retry' if failure['retry'] else 'marked failed'
        click.echo(f"  #{failure['scheduled_transfer_id']} {retry}: {failure['error']}")


@transfers_cli.command('scheduler-status')
def scheduler_status():
    """Show whether a scheduled transfer run is in progress."""
    job = _job()
    click.echo(f"Status: {job.get_status()}")
    next_run = job.next_run_time()
    if next_run is not None:
        click.echo(f"Next run: {next_run.isoformat()}")
