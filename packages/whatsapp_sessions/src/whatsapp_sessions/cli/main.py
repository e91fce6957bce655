"""
WhatsApp Gateway CLI

Command-line interface for session gateway administration.

Commands:
- init-db: Create the gateway tables
- seed: Create the default tenants
- register-tenant: Create or rename a tenant
- list-instances: List a tenant's instances
- list-messages: List messages sent by a tenant
- inspect-tenant: Show a tenant with per-instance message counts
- serve: Run the HTTP gateway
"""

from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from gatewaycore.settings import get_settings
from whatsapp_sessions.exceptions import GatewayError
from whatsapp_sessions.keys import validate_instance_id, validate_token
from whatsapp_sessions.persistence.repo import SessionStore

app = typer.Typer(
    name="whatsapp-gateway-cli",
    help="WhatsApp session gateway CLI",
)

console = Console()


def get_store() -> SessionStore:
    """Get the Session Store bound to DATABASE_URL."""
    from gatewaycore.db import get_sessionmaker

    return SessionStore(get_sessionmaker())


def _fail(error: GatewayError) -> None:
    rprint(f"[red]{error.message}[/red]")
    raise typer.Exit(1)


@app.command()
def init_db():
    """Create the gateway tables if they do not exist."""
    try:
        get_store().create_schema()
    except GatewayError as e:
        _fail(e)
    rprint("[green]Database schema ready[/green]")


@app.command()
def seed(
    token: Optional[str] = typer.Option(None, help="Extra tenant token to create"),
    name: Optional[str] = typer.Option(None, help="Name for --token"),
):
    """
    Create the default tenants from SEED_TENANTS.

    Existing tenants are left untouched.
    """
    tenants = dict(get_settings().SEED_TENANTS)
    if token:
        tenants[token] = name or get_settings().DEFAULT_TENANT_NAME

    store = get_store()
    try:
        store.create_schema()
        for seed_token, seed_name in tenants.items():
            seed_token = validate_token(seed_token)
            if store.get_tenant_by_token(seed_token):
                rprint(f"[yellow]Tenant already exists: {seed_token}[/yellow]")
                continue
            store.upsert_tenant(seed_token, seed_name)
            rprint(f"[green]Created tenant {seed_token}[/green] ({seed_name})")
    except GatewayError as e:
        _fail(e)


@app.command()
def register_tenant(
    token: str = typer.Argument(..., help="Tenant token"),
    name: Optional[str] = typer.Option(None, help="Display name"),
):
    """Create a tenant, or rename it when --name is given."""
    try:
        token = validate_token(token)
        store = get_store()
        existing = store.get_tenant_by_token(token)
        if existing and not name:
            rprint(f"[yellow]Tenant already exists: {token}[/yellow] ({existing.name})")
            return
        tenant = store.upsert_tenant(token, name or get_settings().DEFAULT_TENANT_NAME)
    except GatewayError as e:
        _fail(e)
    rprint(f"[green]Tenant {tenant.token} saved[/green] ({tenant.name})")


@app.command()
def list_instances(
    token: str = typer.Argument(..., help="Tenant token"),
):
    """List a tenant's instances with their last persisted status."""
    try:
        instances = get_store().get_instances_for_tenant(validate_token(token))
    except GatewayError as e:
        _fail(e)

    if not instances:
        rprint(f"[yellow]No instances for tenant {token}[/yellow]")
        return

    table = Table(title=f"Instances for {token}")
    table.add_column("Instance ID", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Created")
    table.add_column("Updated")

    for instance in instances:
        table.add_row(
            instance.instance_id,
            instance.status,
            instance.created_at.strftime("%Y-%m-%d %H:%M"),
            instance.updated_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@app.command()
def list_messages(
    token: str = typer.Argument(..., help="Tenant token"),
    instance_id: Optional[str] = typer.Option(None, help="Only this instance"),
    limit: int = typer.Option(50, help="Max messages to show"),
    offset: int = typer.Option(0, help="Messages to skip"),
):
    """List messages sent by a tenant, newest first."""
    try:
        token = validate_token(token)
        if instance_id:
            instance_id = validate_instance_id(instance_id, tenant_token=token)
        messages = get_store().get_messages(token, instance_id=instance_id, limit=limit, offset=offset)
    except GatewayError as e:
        _fail(e)

    if not messages:
        rprint(f"[yellow]No messages for tenant {token}[/yellow]")
        return

    table = Table(title=f"Messages for {token}")
    table.add_column("When")
    table.add_column("Instance", style="cyan")
    table.add_column("To", style="green")
    table.add_column("Message")

    for msg in messages:
        text = msg.message[:50] + ("..." if len(msg.message) > 50 else "")
        table.add_row(msg.timestamp.strftime("%Y-%m-%d %H:%M:%S"), msg.instance_id, msg.to_user, text)

    console.print(table)


@app.command()
def inspect_tenant(
    token: str = typer.Argument(..., help="Tenant token"),
):
    """Show a tenant, its instances and how many messages each one sent."""
    try:
        token = validate_token(token)
        store = get_store()
        tenant = store.get_tenant_by_token(token)
        if tenant is None:
            rprint(f"[red]Tenant not found: {token}[/red]")
            raise typer.Exit(1)
        instances = store.get_instances_for_tenant(token)
        counts = {i.instance_id: store.count_messages(i.id) for i in instances}
    except GatewayError as e:
        _fail(e)

    rprint(f"[bold]Tenant:[/bold] {tenant.token}")
    rprint(f"  Name: {tenant.name}")
    rprint(f"  Created: {tenant.created_at.strftime('%Y-%m-%d %H:%M')}")
    rprint(f"  Instances: {len(instances)}")

    for instance in instances:
        rprint(f"  - {instance.instance_id}: {instance.status} ({counts[instance.instance_id]} messages)")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address (default HOST)"),
    port: Optional[int] = typer.Option(None, help="Port (default PORT)"),
):
    """Run the HTTP gateway."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "whatsapp_gateway.main:app",
        host=host or settings.HOST,
        port=port or settings.PORT,
    )


if __name__ == "__main__":
    app()
