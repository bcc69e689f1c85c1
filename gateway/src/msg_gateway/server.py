"""Command line entry point for the messaging gateway."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import TextIO

from aiohttp import web

from .config import GatewayConfig
from .directory import SQLiteUserDirectory
from .http_api import create_app
from .logging_config import setup_logging
from .sqlite_backend import SQLiteBackend

logger = logging.getLogger(__name__)


def _run_serve(args: argparse.Namespace) -> int:
    config = GatewayConfig(upload_dir=args.upload_dir, log_level=args.log_level)
    setup_logging(config.log_level)
    if args.db is None:
        logger.warning("no --db given; conversations live in memory only")
    app = create_app(db_path=args.db, config=config)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def _run_add_user(args: argparse.Namespace, output: TextIO) -> int:
    backend = SQLiteBackend(args.db)
    try:
        user = SQLiteUserDirectory(backend).add_user(
            args.user_id, handle=args.handle, display_name=args.display_name
        )
    finally:
        backend.close()
    output.write(f"{user.user_id}\t{user.label}\n")
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Messaging gateway CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp gateway server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument("--upload-dir", default="uploads", help="Directory for uploaded images")
    serve_parser.add_argument("--log-level", default="INFO", help="Root log level")

    user_parser = subparsers.add_parser("add-user", help="Provision or update a user record")
    user_parser.add_argument("user_id", help="Stable user id")
    user_parser.add_argument("--handle", default=None, help="Unique handle, used as the display label")
    user_parser.add_argument("--display-name", default=None, help="Fallback label when no handle is set")
    user_parser.add_argument("--db", type=str, required=True, help="Path to SQLite database")

    args = parser.parse_args(argv)

    if args.command == "serve":
        return _run_serve(args)
    return _run_add_user(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
