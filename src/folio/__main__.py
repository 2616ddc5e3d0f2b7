"""CLI entry point for Folio."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import uvicorn

from . import __version__
from .config import AppConfig, _get_config_path, load_config


def _print_setup_guide(config_path: Path) -> None:
    print(f"No configuration file found at {config_path}", file=sys.stderr)
    print("Create it with at least:", file=sys.stderr)
    print("", file=sys.stderr)
    print("  backend:", file=sys.stderr)
    print("    base_url: https://your-backend.example.com", file=sys.stderr)
    print("    api_key: your-api-key", file=sys.stderr)
    print("", file=sys.stderr)
    print("or set FOLIO_BASE_URL and FOLIO_API_KEY.", file=sys.stderr)


def _load_config_or_exit(config_path: Path | None = None) -> AppConfig:
    path = config_path or _get_config_path()
    try:
        return load_config(path)
    except ValueError as e:
        if not path.exists():
            _print_setup_guide(path)
        else:
            print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)


def _run_serve(config: AppConfig) -> None:
    from .app import create_app

    app = create_app(config)
    url = f"http://{config.app.host}:{config.app.port}"
    print(f"\nStarting Folio companion API at {url}")
    if config.app.host in ("0.0.0.0", "::"):
        print("  WARNING: Binding to all interfaces. The API is accessible from the network.", file=sys.stderr)
    uvicorn.run(app, host=config.app.host, port=config.app.port, log_level="info")


def _run_chat(config: AppConfig, prompt: str, apply_all: bool = False) -> None:
    from .cli.chat import run_chat

    try:
        exit_code = asyncio.run(run_chat(config, prompt, apply_all=apply_all))
    except KeyboardInterrupt:
        exit_code = 130
    if exit_code:
        sys.exit(exit_code)


def main() -> None:
    parser = argparse.ArgumentParser(prog="folio", description="Folio - research assistant for your reference library")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", dest="config_path", default=None, help="Path to config.yaml")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    # `folio chat` subcommand
    chat_parser = subparsers.add_parser("chat", help="Send one message and render the reply")
    chat_parser.add_argument("prompt", help="Message to send")
    chat_parser.add_argument(
        "--apply-all",
        dest="apply_all",
        action="store_true",
        help="Apply every proposed action once the reply is complete",
    )

    # `folio serve` subcommand
    serve_parser = subparsers.add_parser("serve", help="Run the local companion API")
    serve_parser.add_argument("--host", default=None, help="Override app.host")
    serve_parser.add_argument("--port", type=int, default=None, help="Override app.port")

    args = parser.parse_args()
    _configure_logging(args.debug)

    config = _load_config_or_exit(Path(args.config_path).expanduser() if args.config_path else None)

    if args.command == "chat":
        _run_chat(config, args.prompt, apply_all=args.apply_all)
        return

    if getattr(args, "host", None):
        config.app.host = args.host
    if getattr(args, "port", None):
        config.app.port = args.port
    _run_serve(config)


if __name__ == "__main__":
    main()
