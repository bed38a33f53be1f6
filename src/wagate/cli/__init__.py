"""
wagate CLI.

This package splits CLI commands into focused modules:
- main:    start
- devices: list, status, start, remove, send (running server)
- keys:    users, keys and instances (database)
"""

import typer

from wagate.cli._http import _http_delete, _http_get, _http_post  # noqa: F401 — re-export for test patching
from wagate.cli.devices import devices_app
from wagate.cli.keys import instances_app, keys_app, users_app
from wagate.cli.main import configure_logging, register_commands

app = typer.Typer(help="wagate - multi-device WhatsApp gateway")


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging (DEBUG level)"
    ),
):
    """
    wagate - multi-device WhatsApp gateway.
    """
    configure_logging(verbose)


register_commands(app)

app.add_typer(devices_app, name="devices")
app.add_typer(keys_app, name="keys")
app.add_typer(users_app, name="users")
app.add_typer(instances_app, name="instances")

if __name__ == "__main__":
    app()
