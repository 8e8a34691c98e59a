import typer

from pressbox.cli.commands import servers, sites
from pressbox.config import get_settings
from pressbox.logging_config import setup_logging

app = typer.Typer(no_args_is_help=True)


@app.callback()
def callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """
    PressBox - local WordPress sites
    """
    settings = get_settings()
    setup_logging(
        service_name=settings.service_name,
        log_format=settings.log_format,
        log_level="DEBUG" if verbose else settings.log_level,
    )


app.add_typer(sites.app, name="sites", help="Manage WordPress sites")
app.add_typer(servers.app, name="servers", help="Inspect database engines")
