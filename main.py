"""Command-line interface for the blog backend."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from blogapi.config import ConfigurationError, Settings, load_settings
from blogapi.database import Database, StorageError

logger = logging.getLogger("blogapi.main")


def _leading_options_length(args_list: Sequence[str]) -> int:
    """Count the leading ``--config`` arguments given before any subcommand."""

    index = 0
    while index < len(args_list):
        current = args_list[index]
        if current == "--config" and index + 1 < len(args_list):
            index += 2
        elif current.startswith("--config="):
            index += 1
        else:
            break
    return index


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    config_help = "Path to the YAML configuration file (default: BLOG_CONFIG or config/blog.yaml)"

    # Subcommands share the option but must not reset a value given before them.
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=argparse.SUPPRESS, help=config_help)

    parser = argparse.ArgumentParser(description="Blog backend utilities")
    parser.add_argument("--config", default=None, help=config_help)
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", parents=[common], help="Initialise the blog database")
    subparsers.add_parser("users", parents=[common], help="List synchronised users")

    purge_parser = subparsers.add_parser(
        "purge-orphans",
        parents=[common],
        help="Delete posts and comments whose user or post no longer exists",
    )
    purge_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report orphaned content without deleting it",
    )

    serve_parser = subparsers.add_parser("serve", parents=[common], help="Start the HTTP service")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=5000,
        help="Port for the HTTP API (default: 5000)",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "users", "purge-orphans"}

    position = _leading_options_length(args_list)
    remaining = args_list[position:]
    if not remaining:
        args_list = [*args_list, "serve"]
    else:
        first = remaining[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            args_list = [*args_list[:position], "serve", *remaining]

    return parser.parse_args(args_list)


def _initialise_database(settings: Settings) -> Database:
    database = Database(settings.database_path)
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def _serve(*, settings: Settings, database: Database, host: str, port: int) -> None:
    from blogapi.service import create_app
    import uvicorn

    try:
        settings.require_webhook_secret()
    except ConfigurationError as exc:
        raise SystemExit(str(exc)) from exc

    logger.info("Starting blog backend on http://%s:%s", host, port)

    app = create_app(settings=settings, database=database)
    uvicorn.run(app, host=host, port=port, log_level="info")


def _list_users(database: Database) -> None:
    users = database.list_users()
    if not users:
        print("No users are currently synchronised.")
        return

    print(f"{len(users)} user(s) found:")
    print(f"{'ID':>4}  {'External ID':<32}  {'Username':<24}  Created")
    print("-" * 88)
    for user in users:
        created = user.created_at.strftime("%Y-%m-%d %H:%M:%S %Z")
        print(f"{user.id:>4}  {user.external_id:<32}  {user.username:<24}  {created}")


def _purge_orphans(database: Database, *, dry_run: bool) -> int:
    if dry_run:
        report = database.find_orphans()
        verb = "Found"
    else:
        try:
            report = database.purge_orphans()
        except StorageError as exc:
            print(f"Failed to purge orphaned content: {exc}", file=sys.stderr)
            return 1
        verb = "Deleted"

    if report.empty:
        print("No orphaned posts or comments.")
        return 0

    print(f"{verb} {len(report.post_ids)} orphaned post(s) and {len(report.comment_ids)} orphaned comment(s).")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    try:
        settings = load_settings(Path(args.config) if args.config else None)
    except ConfigurationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    database = _initialise_database(settings)

    if args.command == "serve":
        _serve(settings=settings, database=database, host=args.host, port=args.port)
    elif args.command == "users":
        _list_users(database)
    elif args.command == "purge-orphans":
        return _purge_orphans(database, dry_run=args.dry_run)
    elif args.command == "init-db":
        print("Database initialisation complete.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
