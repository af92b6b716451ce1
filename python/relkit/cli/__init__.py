"""relkit CLI - inspect a database and create the tables of a model module."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from relkit.errors import RelkitError

if TYPE_CHECKING:
    from relkit.config import DatabaseConfig
    from relkit.registry import Registry


def main(args: list[str] | None = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Command-line arguments (defaults to sys.argv)

    Returns:
        Exit code (0 for success)
    """
    parser = argparse.ArgumentParser(
        prog="relkit",
        description="relkit - async ORM core for SQLite and PostgreSQL",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def add_connection_arguments(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument(
            "--url",
            help="Database URL (overrides config)",
        )
        subparser.add_argument(
            "-c", "--config",
            help="Path to relkit.ini",
        )

    tables_parser = subparsers.add_parser("tables", help="List the tables of the database")
    add_connection_arguments(tables_parser)

    describe_parser = subparsers.add_parser("describe", help="Show the columns of a table")
    describe_parser.add_argument("table", help="Table name")
    describe_parser.add_argument(
        "-s", "--schema",
        help="Schema the table lives in (PostgreSQL)",
    )
    add_connection_arguments(describe_parser)

    version_parser = subparsers.add_parser("version", help="Show the database server version")
    add_connection_arguments(version_parser)

    sync_parser = subparsers.add_parser("sync", help="Create the tables of every model in a module")
    sync_parser.add_argument(
        "-m", "--models",
        required=True,
        help="Python module containing models (e.g., 'app.models')",
    )
    sync_parser.add_argument(
        "--force",
        action="store_true",
        help="Drop the tables before creating them",
    )
    add_connection_arguments(sync_parser)

    parsed = parser.parse_args(args)

    if parsed.command is None:
        parser.print_help()
        return 1

    try:
        return asyncio.run(_handle(parsed))
    except RelkitError as e:
        print(f"Error: {e}")
        return 1


async def _handle(args: Any) -> int:
    config = _load_config(args)
    if config is None:
        return 1

    registry = None
    if args.command == "sync":
        registry = _load_registry(args.models)
        if registry is None:
            return 1

    from relkit.database import database_context

    async with database_context(config, registry=registry) as db:
        if args.command == "tables":
            for table in sorted(await db.query_interface.show_all_tables()):
                print(table)

        elif args.command == "describe":
            columns = await db.query_interface.describe_table(args.table, schema=args.schema)
            for name, info in columns.items():
                flags = []
                if info["primary_key"]:
                    flags.append("PRIMARY KEY")
                if not info["allow_null"]:
                    flags.append("NOT NULL")
                if info["default_value"] is not None:
                    flags.append(f"DEFAULT {info['default_value']}")
                print(f"  {name}: {info['type']} {' '.join(flags)}".rstrip())

        elif args.command == "version":
            print(await db.query_interface.database_version())

        elif args.command == "sync":
            await db.sync(force=args.force)
            models = db.registry.models()
            print(f"Synced {len(models)} models:")
            for model in models:
                print(f"  {model.__name__} -> {model.__tablename__}")

    return 0


def _load_config(args: Any) -> DatabaseConfig | None:
    """Config from --url, then -c / ./relkit.ini, then the environment."""
    from relkit.config import DatabaseConfig

    if getattr(args, "url", None):
        return DatabaseConfig.from_url(args.url)

    if getattr(args, "config", None):
        config_path = Path(args.config)
        if not config_path.exists():
            print(f"Error: Config file not found: {config_path}")
            return None
        return DatabaseConfig.from_ini(config_path)

    default_path = Path.cwd() / "relkit.ini"
    if default_path.exists():
        return DatabaseConfig.from_ini(default_path)

    try:
        return DatabaseConfig.from_env()
    except RelkitError as e:
        print(f"Error: {e}. Use --url or -c relkit.ini")
        return None


def _load_registry(models_path: str) -> Registry | None:
    """Import a models module and return the registry its models belong to."""
    import importlib

    try:
        module = importlib.import_module(models_path)
    except ImportError as e:
        print(f"Error importing models: {e}")
        return None

    from relkit.base import Base

    for name in dir(module):
        obj = getattr(module, name)
        if isinstance(obj, type) and issubclass(obj, Base) and not obj.__dict__.get("__abstract__"):
            return obj.__registry__

    print(f"Error: No models found in {models_path}")
    return None


if __name__ == "__main__":
    sys.exit(main())
