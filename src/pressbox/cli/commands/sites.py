import asyncio
import json

from rich.console import Console
from rich.table import Table
import typer

from pressbox.errors import PressboxError
from pressbox.models import CreateSiteRequest, DatabaseEngine, Site, SiteStatus
from pressbox.orchestrator import SiteOrchestrator, build_orchestrator

app = typer.Typer(no_args_is_help=True)
console = Console()

STATUS_STYLES = {
    SiteStatus.RUNNING: "green",
    SiteStatus.STOPPED: "dim",
    SiteStatus.ERROR: "red",
}


async def _with_orchestrator(action):
    orchestrator = build_orchestrator()
    await orchestrator.initialize()
    try:
        return await action(orchestrator)
    finally:
        await orchestrator.shutdown()


def _run(action):
    """Run an orchestrator action and turn PressBox errors into exit code 1."""
    try:
        return asyncio.run(_with_orchestrator(action))
    except PressboxError as e:
        console.print(f"[bold red]Error[/bold red] during [yellow]{e.step}[/yellow]: {e.message}")
        raise typer.Exit(code=1) from None


def _resolve(orchestrator: SiteOrchestrator, site: str) -> Site:
    """Look a site up by ID or by name."""
    for candidate in orchestrator.list_sites():
        if site in (candidate.id, candidate.slug, candidate.name):
            return candidate
    return orchestrator.get_site(site)


def _site_summary(site: Site) -> dict:
    return site.model_dump(mode="json", exclude={"admin": {"password"}, "database": {"password"}})


@app.command("list")
def list_sites(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List registered sites"""

    async def action(orchestrator: SiteOrchestrator):
        return orchestrator.list_sites()

    sites = _run(action)

    if json_output:
        typer.echo(json.dumps([_site_summary(s) for s in sites], indent=2))
        return

    if not sites:
        console.print("No sites yet. Create one with [cyan]pressbox sites create NAME[/cyan].")
        return

    table = Table(title="Sites")
    table.add_column("Name", style="magenta")
    table.add_column("Status")
    table.add_column("URL", style="cyan")
    table.add_column("Database")
    table.add_column("WordPress")
    table.add_column("ID", style="dim")
    for site in sites:
        style = STATUS_STYLES.get(site.status, "yellow")
        table.add_row(
            site.name,
            f"[{style}]{site.status.value}[/{style}]",
            site.url,
            site.database.engine.value,
            site.wordpress_version,
            site.id,
        )
    console.print(table)
    for site in sites:
        if site.status is SiteStatus.ERROR and site.last_error:
            console.print(f"[red]{site.name}:[/red] {site.last_error}")


@app.command()
def create(
    name: str = typer.Argument(..., help="Site name"),
    domain: str | None = typer.Option(None, "--domain", "-d"),
    wordpress_version: str | None = typer.Option(None, "--wp-version"),
    php_version: str | None = typer.Option(None, "--php-version"),
    database: DatabaseEngine = typer.Option(
        DatabaseEngine.MYSQL, "--database", case_sensitive=False
    ),
    admin_user: str | None = typer.Option(None, "--admin-user"),
    admin_email: str | None = typer.Option(None, "--admin-email"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Create a new site"""
    try:
        request = CreateSiteRequest(
            name=name,
            domain=domain,
            wordpress_version=wordpress_version,
            php_version=php_version,
            database_engine=database,
            admin_user=admin_user,
            admin_email=admin_email,
        )
    except ValueError as e:
        console.print(f"[bold red]Error[/bold red] during [yellow]validate[/yellow]: {e}")
        raise typer.Exit(code=1) from None

    async def action(orchestrator: SiteOrchestrator):
        return await orchestrator.create_site(request)

    site = _run(action)

    if json_output:
        typer.echo(json.dumps(_site_summary(site), indent=2))
        return

    console.print("[bold green]✓ Site created successfully![/bold green]")
    console.print(f"ID: [cyan]{site.id}[/cyan]")
    console.print(f"Name: [magenta]{site.name}[/magenta]")
    console.print(f"Path: {site.paths.root}")
    console.print(f"URL: [cyan]{site.url}[/cyan] (port {site.port})")
    console.print(f"Admin: {site.admin.user} / {site.admin.password}")


@app.command()
def run(
    site: str = typer.Argument(..., help="Site ID or name"),
):
    """Start a site and keep it running until Ctrl+C"""

    async def action(orchestrator: SiteOrchestrator):
        started = await orchestrator.start_site(_resolve(orchestrator, site).id)
        if started.database.engine is not DatabaseEngine.SQLITE:
            engine = f"{started.database.engine.value} {started.database.version or ''}".strip()
        else:
            engine = "sqlite"
        console.print(
            f"[bold green]✓ {started.name} is running[/bold green] at [cyan]{started.url}[/cyan]"
        )
        console.print(f"Database: {engine}")
        console.print("Press Ctrl+C to stop.")

        handle = orchestrator.supervisor.get_handle(started.id)
        try:
            await orchestrator.supervisor.wait(handle)
        except asyncio.CancelledError:
            await orchestrator.stop_site(started.id)
            raise

        return orchestrator.get_site(started.id)

    try:
        result = _run(action)
    except KeyboardInterrupt:
        console.print("Stopped.")
        return

    if result.status is SiteStatus.ERROR:
        console.print(f"[bold red]Error:[/bold red] {result.last_error}")
        raise typer.Exit(code=1)


@app.command()
def delete(
    site: str = typer.Argument(..., help="Site ID or name"),
    force: bool = typer.Option(False, "--force", "-f", help="Stop the site first if it is running"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete a site and its files"""
    if not yes:
        typer.confirm(f"Delete site {site} and all its files?", abort=True)

    async def action(orchestrator: SiteOrchestrator):
        target = _resolve(orchestrator, site)
        await orchestrator.delete_site(target.id, force=force)
        return target

    target = _run(action)
    console.print(f"[bold green]✓ Deleted[/bold green] {target.name}")


@app.command()
def prune():
    """Remove site directories that have no valid PressBox record"""

    async def action(orchestrator: SiteOrchestrator):
        return await orchestrator.prune_sites()

    cleaned, kept = _run(action)
    for name in cleaned:
        console.print(f"[yellow]removed[/yellow] {name}")
    console.print(f"Cleaned {len(cleaned)} directories, kept {len(kept)}.")
