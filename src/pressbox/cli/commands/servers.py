import asyncio
import json

from rich.console import Console
from rich.table import Table
import typer

from pressbox.config import get_settings
from pressbox.db_servers import DatabaseServerManager

app = typer.Typer(no_args_is_help=True)
console = Console()


@app.command("list")
def list_servers(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List MySQL/MariaDB installations found on this machine"""
    manager = DatabaseServerManager(get_settings())
    records = asyncio.run(manager.statuses())

    if json_output:
        typer.echo(json.dumps([r.model_dump(mode="json") for r in records], indent=2))
        return

    if not records:
        console.print("No MySQL or MariaDB installation found. Sites will use SQLite.")
        return

    table = Table(title="Database servers")
    table.add_column("Engine", style="magenta")
    table.add_column("Version")
    table.add_column("Port")
    table.add_column("Status")
    table.add_column("Path", style="dim")
    for record in records:
        status = "[dim]stopped[/dim]"
        if record.is_running:
            status = f"[green]running[/green] (pid {record.pid})"
        table.add_row(
            record.engine.value,
            record.version,
            str(record.listen_port),
            status,
            str(record.install_path),
        )
    console.print(table)
