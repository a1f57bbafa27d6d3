"""CLI commands for BallotGate API."""

import json

import click

from ballotgate_api.auth.api_key import compute_key_digest, compute_key_prefix, generate_api_key
from ballotgate_api.auth.scopes import format_scopes, validate_scopes
from ballotgate_api.db.seed import seed_all
from ballotgate_api.db.session import SessionLocal
from ballotgate_api.models import ApiClient
from ballotgate_api.sharding.router import get_router
from ballotgate_api.storage.partition import TRANSIENT_ERRORS, get_partition_registry


@click.group()
def cli():
    """BallotGate API CLI."""
    pass


@cli.command()
def seed():
    """Seed a demo election and API clients."""
    click.echo("Seeding initial data...")
    db = SessionLocal()
    try:
        seed_all(db)
        click.echo("✓ Seed data created.")
    except Exception as e:
        db.rollback()
        click.echo(f"✗ Error seeding data: {e}", err=True)
        raise SystemExit(1)
    finally:
        db.close()


@cli.command("create-client")
@click.argument("label")
@click.option("--scope", "scopes", multiple=True, required=True, help="tokens:issue or admin")
def create_client(label, scopes):
    """Create an API client and print its key once."""
    try:
        validated = validate_scopes(list(scopes))
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--scope")

    api_key = generate_api_key()
    db = SessionLocal()
    try:
        db.add(
            ApiClient(
                label=label,
                prefix=compute_key_prefix(api_key),
                digest=compute_key_digest(api_key),
                scopes=format_scopes(validated),
                is_active=True,
            )
        )
        db.commit()
    finally:
        db.close()
    click.echo(f"✓ Created API client {label}")
    click.echo(f"  API Key: {api_key}")


@cli.group()
def partitions():
    """Ballot partition commands."""
    pass


@partitions.command("init")
def partitions_init():
    """Create the ballots table on every configured partition."""
    failed = False
    for store in get_partition_registry().stores():
        try:
            store.ensure_schema()
            click.echo(f"✓ Partition {store.partition_id} ready")
        except TRANSIENT_ERRORS as e:
            failed = True
            click.echo(f"✗ Partition {store.partition_id} unreachable: {e}", err=True)
    if failed:
        raise SystemExit(1)


@cli.group()
def topology():
    """Shard topology commands."""
    pass


@topology.command("show")
def topology_show():
    """Print the configured topology and partition health."""
    description = get_router().describe()
    description["partition_health"] = {
        store.partition_id: store.ping() for store in get_partition_registry().stores()
    }
    click.echo(json.dumps(description, indent=2, sort_keys=True))


if __name__ == "__main__":
    cli()
