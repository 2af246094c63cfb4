#!/usr/bin/env python3
"""
toolgate Server
---------------
Runs the FastAPI service bus under uvicorn.

Usage:
    toolgate-server --config config.yaml --port 8000
    python -m infra.server --no-demo-tools --log-level DEBUG
"""

from typing import List, Optional
import argparse
import logging

import uvicorn
from rich.console import Console

from infra.config import load_settings
from infra.logging import configure_logging, get_log_file_path
from infra.service_bus import create_app

console = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="toolgate tool invocation server")
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    parser.add_argument("--host", default=None, help="Host to bind to")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    parser.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-file", action="store_true", help="Also write JSON logs to the log dir")
    parser.add_argument("--no-demo-tools", action="store_true", help="Start with an empty registry")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    settings = load_settings(args.config)
    server = settings.server
    if args.host:
        server.host = args.host
    if args.port:
        server.port = args.port
    if args.log_level:
        server.log_level = args.log_level
    if args.log_file:
        server.log_file = True
    if args.no_demo_tools:
        server.demo_tools = False

    configure_logging(
        level=getattr(logging, server.log_level.upper(), logging.INFO),
        log_dir=server.log_dir,
        file=server.log_file,
    )

    app = create_app(settings=settings)

    console.print("\n[bold green]toolgate[/bold green]")
    console.print(f"Running on http://{server.host}:{server.port}")
    console.print(f"API docs: http://{server.host}:{server.port}/docs")
    console.print(
        f"[dim]execute limit {settings.execute_rate_limit.max_requests}/"
        f"{settings.execute_rate_limit.window_seconds:g}s, confirm limit "
        f"{settings.confirm_rate_limit.max_requests}/{settings.confirm_rate_limit.window_seconds:g}s[/dim]"
    )
    log_file = get_log_file_path()
    if log_file is not None:
        console.print(f"[dim]JSON logs: {log_file}[/dim]")
    if not server.demo_tools:
        console.print("[yellow]No demo tools registered[/yellow]")
    console.print("[dim]Press Ctrl+C to stop[/dim]\n")

    uvicorn.run(
        app,
        host=server.host,
        port=server.port,
        log_level=server.log_level.lower()
    )


if __name__ == "__main__":
    main()
