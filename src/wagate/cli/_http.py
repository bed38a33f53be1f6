"""
Shared HTTP helpers for CLI commands that talk to the running server.
"""

import os

import typer


def get_server_url() -> str:
    """Get the server URL from environment or config."""
    explicit = os.getenv("WAGATE_SERVER_URL")
    if explicit:
        return explicit.rstrip("/")

    from wagate.config import CONFIG

    host = os.getenv("WAGATE_CLIENT_HOST", "localhost")
    return f"http://{host}:{CONFIG.port}"


def _error_detail(response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"{response.status_code}"
    detail = body.get("error", str(response.status_code))
    if body.get("details"):
        detail = f"{detail} ({body['details']})"
    return detail


def _request(method: str, path: str, timeout: float = 10.0, **kwargs) -> dict:
    import httpx

    url = f"{get_server_url()}{path}"
    try:
        resp = httpx.request(method, url, timeout=timeout, **kwargs)
        resp.raise_for_status()
        return resp.json()
    except httpx.ConnectError:
        typer.echo("❌ Cannot connect to wagate server. Is it running?")
        raise typer.Exit(code=1)
    except httpx.HTTPStatusError as e:
        typer.echo(f"❌ Server error: {_error_detail(e.response)}")
        raise typer.Exit(code=1)
    except Exception as e:
        typer.echo(f"❌ Error: {e}")
        raise typer.Exit(code=1)


def _http_get(path: str) -> dict:
    """Make a GET request to the running server."""
    return _request("GET", path)


def _http_post(path: str, data: dict = None) -> dict:
    """Make a POST request to the running server."""
    return _request("POST", path, timeout=30.0, json=data or {})


def _http_delete(path: str) -> dict:
    """Make a DELETE request to the running server."""
    return _request("DELETE", path)
