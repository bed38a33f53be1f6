"""
CLI subcommands for tenant administration (users, API keys, instances).

These talk to the database directly, so they work while the server is down.

Usage:
    wagate users create <name> <email>
    wagate keys create <user_id> [--name NAME] [--expires-days N] [--limit N]
    wagate keys list [--user USER_ID]
    wagate keys revoke <key_id>
    wagate instances add <user_id> <instance_id> [--name NAME]
    wagate instances list
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import typer

users_app = typer.Typer(help="Manage tenant users")
keys_app = typer.Typer(help="Manage tenant API keys")
instances_app = typer.Typer(help="Manage tenant WhatsApp instances")


def _db():
    from wagate.database import get_database

    return get_database()


@users_app.command("create")
def users_create(
    name: str = typer.Argument(help="User name"),
    email: str = typer.Argument(help="User email"),
):
    """Create a tenant user."""
    user = _db().create_user(name, email)
    typer.echo(f"✅ Created user {user.id}: {user.name} <{user.email}>")


@keys_app.command("create")
def keys_create(
    user_id: int = typer.Argument(help="Owner user ID"),
    name: str = typer.Option("", "--name", "-n", help="Label for the key"),
    expires_days: Optional[int] = typer.Option(
        None, "--expires-days", help="Expire the key after N days"
    ),
    limit: Optional[int] = typer.Option(None, "--limit", help="Maximum number of requests"),
):
    """Issue a new API key. The key is shown once."""
    expires_at = None
    if expires_days:
        expires_at = datetime.now(timezone.utc) + timedelta(days=expires_days)

    try:
        record, plaintext = _db().create_api_key(
            user_id, name=name, expires_at=expires_at, usage_limit=limit
        )
    except ValueError as e:
        typer.echo(f"❌ {e}")
        raise typer.Exit(code=1)

    typer.echo(f"🔑 API key {record.id} for user {user_id}:")
    typer.echo(f"   {plaintext}")
    typer.echo("   Store it now, it cannot be shown again.")


@keys_app.command("list")
def keys_list(
    user: Optional[int] = typer.Option(None, "--user", "-u", help="Filter by user ID"),
):
    """List API keys (prefix only)."""
    keys = _db().list_api_keys(user_id=user)
    if not keys:
        typer.echo("No API keys.")
        return

    for key in keys:
        state = "active" if key.is_active else "revoked"
        if key.is_active and key.is_expired:
            state = "expired"
        limit = f"/{key.usage_limit}" if key.usage_limit else ""
        typer.echo(
            f"  {key.id}: {key.key_prefix}... user={key.user_id} "
            f"{state} used={key.usage_count}{limit} {key.name}"
        )


@keys_app.command("revoke")
def keys_revoke(
    key_id: int = typer.Argument(help="API key ID"),
):
    """Deactivate an API key."""
    if not _db().revoke_api_key(key_id):
        typer.echo(f"❌ API key {key_id} not found")
        raise typer.Exit(code=1)
    typer.echo(f"🚫 API key {key_id} revoked")


@instances_app.command("add")
def instances_add(
    user_id: int = typer.Argument(help="Owner user ID"),
    instance_id: str = typer.Argument(help="Device ID of the instance"),
    name: str = typer.Option("", "--name", "-n", help="Display name"),
):
    """Assign a device to a tenant as a WhatsApp instance."""
    from wagate.validation import ValidationError, validate_device_id

    try:
        validate_device_id(instance_id)
    except ValidationError as e:
        typer.echo(f"❌ {e}")
        raise typer.Exit(code=1)

    instance = _db().create_instance(user_id, instance_id, name=name)
    typer.echo(f"✅ Instance '{instance.instance_id}' added for user {user_id}")


@instances_app.command("list")
def instances_list():
    """List all tenant instances."""
    instances = _db().list_instances()
    if not instances:
        typer.echo("No instances.")
        return

    for inst in instances:
        icon = "🟢" if inst.status == "connected" else "🔴"
        typer.echo(f"  {icon} {inst.instance_id} ({inst.name}) user={inst.user_id} {inst.status}")
