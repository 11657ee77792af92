"""CLI tools for scheduling maintenance."""

import asyncio
import logging
from uuid import UUID

import click

from medbook.db.session import SessionLocal
from medbook.services import availability_service, calendar_sync_service, slot_blocking_service
from medbook.services.calendar_provider import GoogleCalendarClient
from medbook.types import OrganizationLocationOwner, ProviderOwner


@click.group()
@click.option("--verbose", is_flag=True, help="Log at DEBUG level")
def cli(verbose: bool):
    """Medbook scheduling CLI tools."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@cli.command()
def sync_calendars():
    """
    Sync every due calendar integration once.

    Example:
        medbook sync-calendars
    """
    db = SessionLocal()
    try:
        result = asyncio.run(
            calendar_sync_service.run_scheduled_syncs(db, GoogleCalendarClient())
        )
        click.echo(
            f"✓ Synced {result['succeeded']}/{result['processed']} integrations "
            f"({result['failed']} failed, {result['disabled']} disabled)"
        )
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise click.exceptions.Exit(1)
    finally:
        db.close()


@cli.command()
@click.option("--provider-id", type=click.UUID, help="Only this provider")
@click.option("--organization-id", type=click.UUID, help="Only this organization (needs --location-id)")
@click.option("--location-id", type=click.UUID, help="Location of --organization-id")
def regenerate_slots(
    provider_id: UUID | None,
    organization_id: UUID | None,
    location_id: UUID | None,
):
    """
    Re-derive slot blocking from stored calendar events.

    Without options every owner with sync enabled is processed.
    """
    if organization_id and not location_id:
        click.echo("❌ --organization-id requires --location-id")
        raise click.exceptions.Exit(2)

    db = SessionLocal()
    try:
        if provider_id:
            owner = ProviderOwner(provider_id=provider_id)
        elif organization_id:
            owner = OrganizationLocationOwner(
                organization_id=organization_id, location_id=location_id
            )
        else:
            owner = None

        if owner is None:
            totals = slot_blocking_service.regenerate_slots_for_all_owners(db)
            click.echo(
                f"✓ Regenerated {totals['owners_processed']} owners "
                f"({totals['owners_failed']} failed), {totals['slots_blocked']} slots blocked"
            )
        else:
            result = slot_blocking_service.regenerate_slots_for_owner(db, owner)
            click.echo(
                f"✓ {owner}: {result.events_processed} events, "
                f"{result.slots_blocked} blocked, {result.slots_released} released, "
                f"{result.conflicts} conflicts"
            )
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise click.exceptions.Exit(1)
    finally:
        db.close()


@cli.command()
def expand_windows():
    """Materialize slots for every live window up to the expansion horizon."""
    db = SessionLocal()
    try:
        totals = availability_service.expand_all_windows(db)
        click.echo(
            f"✓ Expanded {totals['windows_processed']} windows "
            f"({totals['windows_failed']} failed), {totals['slots_created']} new slots"
        )
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise click.exceptions.Exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    cli()
