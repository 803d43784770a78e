"""`flask murmurations ...` maintenance commands."""

import click
from firebase_admin import firestore
from flask.cli import AppGroup

from .services import MurmurationService
from .services.tasks import reconcile_all, sweep_expired

murmurations_cli = AppGroup("murmurations", help="Murmuration maintenance jobs.")


@murmurations_cli.command("reconcile")
@click.option("--id", "murmuration_id", default=None, help="Only this murmuration.")
def reconcile_command(murmuration_id):
    """Recount member_count from membership documents."""
    db = firestore.client()
    if murmuration_id:
        count = MurmurationService(db).membership.reconcile_member_count(
            murmuration_id
        )
        click.echo(f"{murmuration_id}: {count} members")
        return
    corrected = reconcile_all(db)
    for mid, count in corrected.items():
        click.echo(f"{mid}: corrected to {count} members")
    click.echo(f"Reconciled {len(corrected)} murmuration(s).")


@murmurations_cli.command("sweep")
def sweep_command():
    """Expire stale invites and challenges, clear lapsed cooldowns."""
    result = sweep_expired(firestore.client())
    for kind, count in result.items():
        click.echo(f"{kind}: {count}")


@murmurations_cli.command("reset-season")
@click.confirmation_option(prompt="Zero season coins for every murmuration?")
def reset_season_command():
    """Start a new season of the coin leaderboard."""
    count = MurmurationService(firestore.client()).ledger.reset_season()
    click.echo(f"Season reset for {count} murmuration(s).")
