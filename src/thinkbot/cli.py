"""Command-line entry point: load config, check DNS, serve the relay."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
import uvicorn
from dotenv import load_dotenv
from rich.console import Console

from thinkbot import __version__
from thinkbot.config import RelayConfig, load_config
from thinkbot.diagnostics import BASELINE_HOST, check_dns, host_of
from thinkbot.server import create_app

console = Console()


def _print_banner(config: RelayConfig, config_path: object) -> None:
    server = config.server
    local = f"http://localhost:{server.port}"
    console.print(f"[bold green]Thinkbot relay v{__version__}[/bold green]")
    console.print(f"[dim]Config: {config_path or 'built-in defaults'}[/dim]")
    console.print(f"Server running on {server.host}:{server.port}")
    console.print(f"WebSocket:  ws://localhost:{server.port}/ws")
    console.print(f"Health:     {local}/health")
    console.print(f"API test:   {local}/test-api")
    if not config.upstream.api_key and config.upstream.api_type == "openai":
        console.print(
            "[yellow]No upstream API key set (UPSTREAM_API_KEY / "
            "OPENROUTER_API_KEY); chat requests will be rejected.[/yellow]"
        )


@click.command()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to thinkbot.yaml")
@click.option("--host", default=None, help="Bind address (default 0.0.0.0)")
@click.option("--port", "-p", type=int, default=None, help="Listening port (default 5000)")
@click.option("--no-dns-check", is_flag=True, help="Skip the startup DNS check")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__, prog_name="thinkbot")
def main(config_path: str | None, host: str | None, port: int | None,
         no_dns_check: bool, verbose: bool) -> None:
    """Run the Thinkbot chat relay."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s - %(message)s",
    )
    load_dotenv()

    try:
        config, resolved = load_config(config_path)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        sys.exit(1)

    if host is not None:
        config.server.host = host
    if port is not None:
        config.server.port = port

    if config.diagnostics.dns_check and not no_dns_check:
        console.print("[dim]Testing DNS resolution...[/dim]")
        asyncio.run(check_dns([host_of(config.upstream.base_url), BASELINE_HOST]))

    try:
        app = create_app(config)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    _print_banner(config, resolved)
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level="debug" if verbose else "info",
    )


if __name__ == "__main__":
    main()
