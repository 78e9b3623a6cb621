"""CLI for running and managing the rootfs MCP server."""

from __future__ import annotations

from dataclasses import asdict, replace
import json
import os
from pathlib import Path
import time
from typing import Any

import httpx
import humanize
from rich.console import Console
from rich.markup import escape
from rich.table import Table
import typer

app = typer.Typer(
    name="rootfs-mcp",
    help="rootfs MCP server - one directory subtree over MCP Streamable HTTP",
    add_completion=False,
)
console = Console()

DEFAULT_URL = "http://127.0.0.1:3333"

UrlOption = typer.Option(
    DEFAULT_URL, "--url", "-u", envvar="ROOTFS_URL", help="Base URL of a running server"
)

ConfigOption = typer.Option(None, "--config", "-c", help="Path to rootfs.toml")


def _admin_headers(config_path: Path | None) -> dict[str, str]:
    """Send the shared token under the header named by ``[rootfs.auth]``, if the token is set."""
    auth = _load(config_path, validate=False).auth
    token = os.getenv(auth.token_env)
    return {auth.header: token} if token else {}


def _request(method: str, url: str, config_path: Path | None = None) -> httpx.Response:
    headers = _admin_headers(config_path)
    try:
        return httpx.request(method, url, headers=headers, timeout=5)
    except httpx.HTTPError as e:
        console.print(f"[red]✗[/] Request to {url} failed: {escape(str(e))}")
        raise typer.Exit(1) from None


def _load(config_path: Path | None, validate: bool = True) -> Any:
    from rootfs_mcp.config import load_config

    try:
        return load_config(config_path, validate=validate)
    except ValueError as e:
        console.print(f"[red]✗[/] Invalid configuration: {escape(str(e))}")
        raise typer.Exit(1) from None


@app.command()
def serve(
    root: str = typer.Option(
        None, "--root", "-r", help="Allowed base directory (overrides ALLOWED_BASE)"
    ),
    host: str = typer.Option(None, "--host", "-H", help="Bind address"),
    port: int = typer.Option(None, "--port", "-p", help="HTTP port"),
    config_path: Path = ConfigOption,
    log_level: str = typer.Option(
        None, "--log-level", "-l", help="Override log level (debug/info/warning/error)"
    ),
) -> None:
    """Run the server in the foreground."""
    from rootfs_mcp.observability import setup_logging
    from rootfs_mcp.server import RootFsMcpServer
    from rootfs_mcp.transport import MCPHttpServer

    # CLI flags beat ENV, which beats TOML
    if root:
        os.environ["ROOTFS_ALLOWED_BASE"] = root
    if port:
        os.environ["ROOTFS_PORT"] = str(port)
    if host:
        os.environ["ROOTFS_HOST"] = host
    if log_level:
        os.environ["ROOTFS_LOG_LEVEL"] = log_level

    config = _load(config_path)
    obs = config.observability
    if not obs.enabled:
        obs = replace(obs, log_level=config.server.log_level)
    logger = setup_logging(obs, "rootfs-mcp")

    logger.info(f"Config loaded: version={config.config_version}")
    logger.info(f"Allowed base: {config.fs.allowed_base}")
    logger.info(
        f"Sessions: create_on_stream_open={config.sessions.create_on_stream_open}, "
        f"idle_timeout_s={config.sessions.idle_timeout_s}"
    )
    logger.info(
        f"Observability: enabled={config.observability.enabled}, "
        f"log_format={config.observability.log_format}"
    )

    mcp_server = RootFsMcpServer(config)
    MCPHttpServer(mcp_server, config).run()


@app.command()
def status(url: str = UrlOption, config_path: Path = ConfigOption) -> None:
    """Show server health (exit code 0 = healthy)."""
    r = _request("GET", f"{url.rstrip('/')}/health", config_path)
    if r.status_code != 200:
        console.print(f"[red]✗[/] Health check failed (HTTP {r.status_code})")
        raise typer.Exit(1)

    data = r.json()
    console.print(f"[green]●[/] rootfs MCP server is [bold]running[/] at {url}")
    table = Table(show_header=False)
    table.add_row("Sessions:", str(data.get("sessions", 0)))
    table.add_row("Tools:", str(data.get("tools", 0)))
    table.add_row("Transport:", str(data.get("transport", "?")))
    console.print(table)


@app.command()
def sessions(url: str = UrlOption, config_path: Path = ConfigOption) -> None:
    """List live sessions."""
    r = _request("GET", f"{url.rstrip('/')}/admin/sessions", config_path)
    if r.status_code != 200:
        console.print(f"[red]✗[/] Could not list sessions (HTTP {r.status_code})")
        raise typer.Exit(1)

    data = r.json()
    if not data.get("sessions"):
        console.print("[yellow]No active sessions[/]")
        return

    now = time.time()
    table = Table(title=f"{data['count']} session(s)")
    table.add_column("Session")
    table.add_column("Origin")
    table.add_column("Created")
    table.add_column("Last seen")
    table.add_column("Requests", justify="right")
    for s in data["sessions"]:
        table.add_row(
            s["session_id"],
            s["origin"],
            humanize.naturaltime(now - s["created_at"]),
            humanize.naturaltime(now - s["last_seen"]),
            str(s["requests"]),
        )
    console.print(table)


@app.command(name="clear-sessions")
def clear_sessions(url: str = UrlOption, config_path: Path = ConfigOption) -> None:
    """Close every session on a running server."""
    r = _request("POST", f"{url.rstrip('/')}/admin/clear-sessions", config_path)
    if r.status_code != 200:
        console.print(f"[red]✗[/] Clear failed (HTTP {r.status_code})")
        raise typer.Exit(1)
    console.print("[green]✓[/] Sessions cleared")


@app.command(name="show-config")
def show_config(
    config_path: Path = ConfigOption,
) -> None:
    """Print the effective configuration (ENV → TOML → defaults)."""
    config = _load(config_path)
    console.print_json(json.dumps(asdict(config)))


def main() -> None:
    """Entry point for rootfs-mcp CLI."""
    app()


if __name__ == "__main__":
    main()
