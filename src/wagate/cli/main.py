"""
Top-level CLI commands: start.
"""

import os
from typing import Optional

import typer


def configure_logging(verbose: bool = False):
    """Configure logging for the CLI."""
    from wagate.logger import setup_logging

    log_level = "DEBUG" if verbose else "WARNING"
    setup_logging(level=log_level)

    if not verbose:
        os.environ["LOGURU_LEVEL"] = "WARNING"


def register_commands(app: typer.Typer) -> None:
    @app.command()
    def start(
        host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
        port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to listen on"),
        restore: bool = typer.Option(
            False, "--restore", help="Reconnect every device with stored credentials"
        ),
        debug: bool = typer.Option(False, "--debug", help="Enable DEBUG logging"),
    ):
        """Start the gateway server."""
        from wagate.config import CONFIG

        # Server logging is configured from the config, not the CLI default
        os.environ.pop("LOGURU_LEVEL", None)
        if debug:
            CONFIG.log_level = "DEBUG"
        if restore:
            CONFIG.restore_sessions = True

        from wagate.server import run

        typer.echo(f"🚀 Starting wagate on http://{host or CONFIG.host}:{port or CONFIG.port}")
        run(host=host, port=port)
