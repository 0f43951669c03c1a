"""CLI entry point: migrate, one, client-secret."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from scripts.sso_transfer.client_secret import ClientSecretSigner
from scripts.sso_transfer.config import MigrationConfig, load_config, load_transfer_config
from scripts.sso_transfer.logging_config import configure_logging
from scripts.sso_transfer.runner import (
    DEFAULT_END_ID,
    DEFAULT_OUTPUT,
    DEFAULT_START_ID,
    MigrationContext,
    RunOptions,
    RunSummary,
    run_migration,
)

logger = logging.getLogger("sso_transfer.cli")


def build_options(args: argparse.Namespace) -> RunOptions:
    if args.command == "one":
        start = end = args.id
    else:
        start, end = args.start, args.end
    return RunOptions(
        start=start,
        end=end,
        output=args.output,
        skip_provision=args.skip_provision,
        skip_output=args.skip_output,
    )


async def _run(config: MigrationConfig, options: RunOptions) -> RunSummary:
    context = MigrationContext.open(config, provision=not options.skip_provision)
    try:
        return await run_migration(context, options)
    finally:
        context.close()


def cmd_migrate(args: argparse.Namespace) -> None:
    """Run the pipeline over a range (``migrate``) or a single id (``one``)."""
    options = build_options(args)
    logger.info("Run options: %s", options)
    config = load_config()
    asyncio.run(_run(config, options))


def cmd_client_secret(args: argparse.Namespace) -> None:
    """Print a freshly signed client assertion for manual API calls."""
    transfer = load_transfer_config()
    if transfer is None:
        raise ValueError("SSO_CLIENT_ID environment variable is required")
    print(ClientSecretSigner(transfer).issue())


def _add_run_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--output", "-o",
        default=DEFAULT_OUTPUT,
        help=f"File to append CSV rows to (default: {DEFAULT_OUTPUT})",
    )
    parser.add_argument(
        "--skip-provision",
        action="store_true",
        help="Only generate CSV, driven by transfer_migration table contents",
    )
    parser.add_argument(
        "--skip-output",
        action="store_true",
        help="Only populate the transfer_migration table, skip writing CSV",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sso-transfer",
        description=(
            "Provision Sign-In transfer identifiers and write the CSV that "
            "drives the account migration"
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate_parser = subparsers.add_parser("migrate", help="Process an id range")
    migrate_parser.add_argument(
        "--start", "-s",
        type=int,
        default=DEFAULT_START_ID,
        help="First id, inclusive: user_providers.id, or user_id with --skip-provision",
    )
    migrate_parser.add_argument(
        "--end", "-e",
        type=int,
        default=DEFAULT_END_ID,
        help=f"Last id, inclusive (default: {DEFAULT_END_ID})",
    )
    _add_run_flags(migrate_parser)
    migrate_parser.set_defaults(func=cmd_migrate)

    one_parser = subparsers.add_parser("one", help="Process a single id")
    one_parser.add_argument(
        "id",
        type=int,
        help="user_providers.id, or user_id with --skip-provision",
    )
    _add_run_flags(one_parser)
    one_parser.set_defaults(func=cmd_migrate)

    secret_parser = subparsers.add_parser(
        "client-secret", help="Print a signed client assertion"
    )
    secret_parser.set_defaults(func=cmd_client_secret)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))
    args = build_parser().parse_args(argv)
    try:
        args.func(args)
    except KeyboardInterrupt:
        logger.warning(
            "Interrupted; in-flight records were not persisted. "
            "Rerun from the last logged batch id."
        )
        sys.exit(130)
    except Exception as exc:
        logger.error("Run failed: %s", exc, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
