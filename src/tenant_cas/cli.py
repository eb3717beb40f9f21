"""CLI for tenant-cas.

Commands:
    init-db                    - Create the metadata tables
    provision <id>             - Provision a tenant's storage namespace
    deprovision <id>           - Tear down an empty tenant
    tenants                    - List tenants
    put <tenant> <path>        - Store a file
    get <tenant> <hash>        - Fetch content by hash
    exists <tenant> <hash>     - Check whether content is stored
    delete <tenant> <hash>     - Drop one reference
    stats <tenant>             - Show storage statistics
    reclaim <tenant>           - Purge what interrupted deletes left behind
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
from typing import Annotated, Any, TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from tenant_cas.app import CASApp, build_app
from tenant_cas.config import settings
from tenant_cas.errors import CASError
from tenant_cas.models import TenantStatus

app = typer.Typer(
    name="tenant-cas",
    help="tenant-cas: multi-tenant content-addressable storage",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


def run_async(coro):
    """Run an async coroutine in sync context."""
    return asyncio.run(coro)


async def read_stdin(block_size: int = 1 << 20) -> AsyncIterator[bytes]:
    """Yield stdin in blocks, reading in a worker thread."""
    while True:
        block = await asyncio.to_thread(sys.stdin.buffer.read, block_size)
        if not block:
            break
        yield block


def with_app(fn: Callable[[CASApp], Awaitable[T]]) -> T:
    """Build the components from settings, run ``fn`` and dispose the engine.

    CAS errors are reported on stderr with exit code 1.
    """

    async def _run() -> T:
        cas_app = build_app(settings)
        try:
            return await fn(cas_app)
        finally:
            await cas_app.close()

    try:
        return run_async(_run())
    except CASError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


@app.callback()
def main_callback(
    log_level: Annotated[
        str | None, typer.Option("--log-level", help="Override TENANT_CAS log level")
    ] = None,
):
    """Configure logging for every command."""
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.command("init-db")
def init_db_command():
    """Initialize the database schema (creates tables if they don't exist)."""

    async def _init(cas_app: CASApp) -> None:
        await cas_app.init_db()

    with_app(_init)
    console.print("[green]Database initialized.[/green]")


@app.command()
def provision(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id")],
    name: Annotated[str | None, typer.Option(help="Display name")] = None,
    slug: Annotated[str | None, typer.Option(help="Namespace slug (derived from name)")] = None,
    email: Annotated[str | None, typer.Option(help="Contact email")] = None,
    plan: Annotated[str, typer.Option(help="Plan name")] = "free",
):
    """Provision (or re-provision) a tenant. Safe to repeat."""

    async def _provision(cas_app: CASApp) -> Any:
        return await cas_app.provisioner.provision(
            {"id": tenant_id, "name": name, "slug": slug, "email": email, "plan": plan}
        )

    tenant = with_app(_provision)
    console.print(
        f"[green]Provisioned[/green] {tenant.tenant_id} "
        f"(slug [cyan]{tenant.slug}[/cyan], namespace {tenant.storage_namespace})"
    )


@app.command()
def deprovision(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id")],
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Skip confirmation prompt")
    ] = False,
):
    """Tear down an empty tenant's namespace and registry entry."""
    if not force:
        confirm = typer.confirm(f"Deprovision tenant {tenant_id}?", default=False)
        if not confirm:
            console.print("[yellow]Aborted.[/yellow]")
            raise typer.Exit(0)

    async def _deprovision(cas_app: CASApp) -> None:
        await cas_app.provisioner.deprovision(tenant_id)

    with_app(_deprovision)
    console.print(f"[green]Deprovisioned[/green] {tenant_id}")


@app.command()
def tenants(
    status: Annotated[
        str | None, typer.Option(help="Filter by status (active, deprovisioning)")
    ] = None,
    plan: Annotated[str | None, typer.Option(help="Filter by plan")] = None,
):
    """List provisioned tenants."""
    status_enum = None
    if status:
        try:
            status_enum = TenantStatus(status)
        except ValueError:
            err_console.print("[red]Error:[/red] Invalid status. Use: active, deprovisioning")
            raise typer.Exit(1) from None

    async def _list(cas_app: CASApp) -> Any:
        return await cas_app.provisioner.list_tenants(status=status_enum, plan=plan)

    rows = with_app(_list)
    if not rows:
        console.print("[yellow]No tenants found.[/yellow]")
        return

    table = Table(title="Tenants")
    table.add_column("ID", style="cyan")
    table.add_column("Slug")
    table.add_column("Name")
    table.add_column("Plan")
    table.add_column("Status")
    for t in rows:
        status_style = "green" if t.status is TenantStatus.ACTIVE else "yellow"
        table.add_row(
            t.tenant_id,
            t.slug,
            t.name or "-",
            t.plan,
            f"[{status_style}]{t.status.value}[/{status_style}]",
        )
    console.print(table)


@app.command()
def put(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id")],
    path: Annotated[Path, typer.Argument(help="File to store, or - for stdin")],
    mime_type: Annotated[str | None, typer.Option("--mime-type", help="MIME type")] = None,
    filename: Annotated[str | None, typer.Option(help="Filename to record")] = None,
):
    """Store a file and print its content hash."""

    async def _put(cas_app: CASApp) -> Any:
        if str(path) == "-":
            return await cas_app.cas.put_stream(
                tenant_id, read_stdin(), mime_type=mime_type, filename=filename
            )
        return await cas_app.cas.put_file(tenant_id, path, mime_type=mime_type, filename=filename)

    ref = with_app(_put)
    console.print(ref.hash)
    console.print(
        f"[dim]{ref.size} bytes, {ref.mime_type or 'unknown type'}, "
        f"stored {ref.stored_at.isoformat()}[/dim]"
    )


@app.command()
def get(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id")],
    content_hash: Annotated[str, typer.Argument(help="Content hash")],
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Write to file instead of stdout")
    ] = None,
):
    """Fetch content by hash."""

    async def _get(cas_app: CASApp) -> bytes:
        return await cas_app.cas.get(tenant_id, content_hash)

    data = with_app(_get)
    if output is None:
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()
    else:
        output.write_bytes(data)
        console.print(f"[green]Wrote[/green] {len(data)} bytes to {output}")


@app.command()
def exists(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id")],
    content_hash: Annotated[str, typer.Argument(help="Content hash")],
):
    """Exit 0 if the content is stored for the tenant, 1 otherwise."""

    async def _exists(cas_app: CASApp) -> bool:
        return await cas_app.cas.exists(tenant_id, content_hash)

    found = with_app(_exists)
    console.print("[green]yes[/green]" if found else "[yellow]no[/yellow]")
    if not found:
        raise typer.Exit(1)


@app.command()
def delete(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id")],
    content_hash: Annotated[str, typer.Argument(help="Content hash")],
):
    """Drop one reference; the bytes are purged when none remain."""

    async def _delete(cas_app: CASApp) -> int:
        return await cas_app.cas.delete(tenant_id, content_hash)

    remaining = with_app(_delete)
    if remaining:
        console.print(f"[green]Released[/green] ({remaining} references remain)")
    else:
        console.print("[green]Purged[/green]")


@app.command()
def stats(tenant_id: Annotated[str, typer.Argument(help="Tenant id")]):
    """Show storage statistics for a tenant."""

    async def _stats(cas_app: CASApp) -> Any:
        return await cas_app.cas.stats(tenant_id)

    report = with_app(_stats)
    console.print(Panel(
        f"[bold]Objects:[/bold] {report.total_objects}\n"
        f"[bold]Bytes:[/bold] {report.total_bytes}\n"
        f"[bold]Average size:[/bold] {report.avg_size:.1f}\n"
        f"[bold]References:[/bold] {report.total_references}\n"
        f"[bold]Dedup ratio:[/bold] {report.deduplication_ratio:.2f}",
        title=f"Storage for {tenant_id}",
    ))

    if report.by_storage_type:
        table = Table(title="Objects by Storage Type")
        table.add_column("Storage")
        table.add_column("Count", justify="right")
        for storage_type, count in sorted(report.by_storage_type.items(), key=lambda x: -x[1]):
            table.add_row(storage_type, str(count))
        console.print(table)


@app.command()
def reclaim(tenant_id: Annotated[str, typer.Argument(help="Tenant id")]):
    """Purge unreferenced content and stale in-flight rows for a tenant."""

    async def _reclaim(cas_app: CASApp) -> Any:
        return await cas_app.cas.reclaim(tenant_id)

    report = with_app(_reclaim)
    console.print(
        f"[green]Reclaimed[/green] {report.purged_objects} objects "
        f"({report.purged_blobs} blobs), cleared {report.cleared_stale_objects} stale objects "
        f"and {report.cleared_stale_blobs} stale blobs"
    )


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
