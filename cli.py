#!/usr/bin/env python3
"""
Command-line interface for the drop notifier.

Usage:
    python cli.py [command] [options]

Commands:
    serve       Start the API server
    publish     Publish a drop to its store's subscribers
    parse       Show how a chat message would be parsed
    link        Print a store's subscribe deep link
    test        Run the test suite

Examples:
    python cli.py serve --reload
    python cli.py publish drop-001 --dry-run
    python cli.py parse "/subscribe lunargear"
    python cli.py link lunargear
"""

import argparse
import asyncio
import json
import logging
import subprocess
import sys

from api.main import LOG_FORMAT, build_channels
from fanout.dispatcher import FanoutDispatcher
from shared.channels import NotificationChannels, RecordingChannel
from shared.config import Settings
from shared.data_store import DataStore
from shared.errors import NotFoundError, PersistenceError
from shared.templates import deep_link_url
from subscriptions.commands import parse_command


def run_publish(drop_id: str, dry_run: bool) -> None:
    """Publish a drop and print the fan-out summary."""
    settings = Settings()
    data_store = DataStore(data_dir=settings.data_dir)
    channels = NotificationChannels(RecordingChannel()) if dry_run else build_channels(settings)
    dispatcher = FanoutDispatcher(
        stores=data_store,
        ledger=data_store,
        drops=data_store,
        channels=channels,
        max_concurrency=settings.fanout_max_concurrency,
        timeout_seconds=settings.fanout_timeout_seconds,
        prune_invalid_recipients=settings.prune_invalid_recipients,
    )

    async def publish():
        try:
            return await dispatcher.publish_drop(drop_id)
        finally:
            await channels.aclose()

    try:
        outcome = asyncio.run(publish())
    except NotFoundError as e:
        print(e)
        sys.exit(1)

    print(json.dumps(outcome.model_dump(mode="json"), indent=2))
    if not outcome.ok:
        sys.exit(2)


def run_parse(text: str) -> None:
    """Print the intent a message body parses to."""
    intent = parse_command(text)
    print(f"{intent.kind}: {intent}")


def run_link(slug: str) -> None:
    settings = Settings()
    try:
        store = DataStore(data_dir=settings.data_dir).find_store_by_slug(slug)
    except PersistenceError as e:
        print(e)
        sys.exit(2)
    if not store:
        print(f"Store not found: {slug}")
        sys.exit(1)
    try:
        print(deep_link_url(settings.telegram_bot_username, store.slug))
    except ValueError as e:
        print(f"{e} (set DROPS_TELEGRAM_BOT_USERNAME)")
        sys.exit(1)


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = [sys.executable, "-m", "pytest"] + args
    subprocess.run(cmd)


def run_server(host: str, port: int, reload: bool) -> None:
    """Start the API server."""
    cmd = [
        sys.executable, "-m", "uvicorn", "api.main:create_app", "--factory",
        f"--host={host}", f"--port={port}",
    ]
    if reload:
        cmd.append("--reload")

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    subprocess.run(cmd)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Drop Notifier CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s serve --reload
  %(prog)s publish drop-001 --dry-run
  %(prog)s parse "/start subscribe_lunargear"
  %(prog)s link lunargear
  %(prog)s test -v
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    # Publish command
    publish_parser = subparsers.add_parser("publish", help="Publish a drop to subscribers")
    publish_parser.add_argument("drop_id", help="Drop to publish")
    publish_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log messages instead of sending them to Telegram",
    )

    # Parse command
    parse_parser = subparsers.add_parser("parse", help="Parse a chat message")
    parse_parser.add_argument("text", help="Message body, e.g. '/subscribe lunargear'")

    # Link command
    link_parser = subparsers.add_parser("link", help="Print a store's subscribe deep link")
    link_parser.add_argument("slug", help="Store slug")

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt="%H:%M:%S")

    if args.command == "serve":
        run_server(args.host, args.port, args.reload)
    elif args.command == "publish":
        run_publish(args.drop_id, args.dry_run)
    elif args.command == "parse":
        run_parse(args.text)
    elif args.command == "link":
        run_link(args.slug)
    elif args.command == "test":
        run_tests(args.pytest_args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
