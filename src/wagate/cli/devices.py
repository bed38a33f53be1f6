"""
CLI subcommands for managing device sessions on a running server.

Usage:
    wagate devices list
    wagate devices status <device>
    wagate devices start <device>
    wagate devices remove <device>
    wagate devices send <device> <to> <message>
"""

import typer

from wagate.cli._http import _http_delete, _http_get, _http_post

devices_app = typer.Typer(help="Manage WhatsApp device sessions")

STATUS_ICONS = {
    "connected": "🟢",
    "waiting_for_scan": "📷",
    "connecting": "🟡",
    "starting": "🟡",
    "reconnecting": "🔄",
    "disconnected": "🔴",
}


def _icon(status: str) -> str:
    return STATUS_ICONS.get(status, "⚪")


@devices_app.command("list")
def devices_list():
    """List all devices and their status."""
    data = _http_get("/api/devices")

    if not data:
        typer.echo("No devices.")
        return

    connected = sum(1 for d in data.values() if d.get("status") == "connected")
    typer.echo(f"📱 Devices: {connected}/{len(data)} connected\n")
    for device_id, info in sorted(data.items()):
        status = info.get("status", "unknown")
        typer.echo(f"  {_icon(status)} {device_id}: {status} (updated {info.get('lastUpdate')})")


@devices_app.command("status")
def devices_status(
    device: str = typer.Argument(help="Device ID"),
):
    """Show the status of one device."""
    data = _http_get(f"/api/devices/{device}/status")
    status = data.get("status", "unknown")

    typer.echo(f"📱 Device: {device}")
    typer.echo(f"   Status: {_icon(status)} {status}")
    typer.echo(f"   Last update: {data.get('lastUpdate')}")
    if data.get("qrCode"):
        typer.echo("   QR code ready: open the dashboard or GET the status route to scan it.")


@devices_app.command("start")
def devices_start(
    device: str = typer.Argument(help="Device ID"),
):
    """Start a device session (pairing continues in the background)."""
    _http_post(f"/api/devices/{device}/start")
    typer.echo(f"✅ Device '{device}' starting. Check `wagate devices status {device}`.")


@devices_app.command("remove")
def devices_remove(
    device: str = typer.Argument(help="Device ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Remove a device and delete its stored credentials."""
    if not yes:
        typer.confirm(
            f"Remove '{device}'? It will have to scan a QR code again.", abort=True
        )
    _http_delete(f"/api/devices/{device}")
    typer.echo(f"🗑️  Device '{device}' removed.")


@devices_app.command("send")
def devices_send(
    device: str = typer.Argument(help="Device ID"),
    to: str = typer.Argument(help="Recipient number or JID"),
    message: str = typer.Argument(help="Message text"),
):
    """Send a text message through a device."""
    _http_post(f"/api/devices/{device}/send", data={"to": to, "message": message})
    typer.echo(f"✅ Message sent to {to}")
