"""CLI command for retrying outstanding NFT fetch failures.

Usage:
    python -m suchmarket.cli.retry_failed [OPTIONS]

Examples:
    # Retry up to 50 ledger rows
    python -m suchmarket.cli.retry_failed

    # Retry up to 200 ledger rows
    python -m suchmarket.cli.retry_failed --limit 200

    # Verbose logging
    python -m suchmarket.cli.retry_failed -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from suchmarket.core import timezone  # noqa: F401
from suchmarket.core.config import Settings, configure_logging
from suchmarket.core.database import setup_db_session
from suchmarket.services.indexer.alchemy_client import AlchemyClient
from suchmarket.services.sync.retry import RetryResult, RetryService
from suchmarket.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Retry NFT metadata fetches recorded in the error ledger",
        epilog="Rows that reached MAX_FETCH_RETRY_COUNT are skipped",
    )

    parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum number of ledger rows to retry (default: 50)",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


def exit_code_for(result: RetryResult) -> int:
    """Map a retry result to an exit code: 0 success, 2 partial, 1 failure."""
    if result.failed == 0:
        return 0
    if result.succeeded > 0:
        return 2
    return 1


def print_summary(result: RetryResult) -> None:
    print("\n" + "=" * 60)
    print("Fetch Retry Summary")
    print("=" * 60)
    print(f"Ledger rows attempted: {result.attempted}")
    print(f"Recovered: {result.succeeded}")
    print(f"Still failing: {result.failed}")

    if result.errors:
        print(f"\nErrors encountered: {len(result.errors)}")
        for error in result.errors[:5]:
            print(f"  - {error}")
        if len(result.errors) > 5:
            print(f"  ... and {len(result.errors) - 5} more errors")

    print("=" * 60 + "\n")


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (partial success), 130 (interrupted)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", limit=args.limit, network=settings.network)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    indexer = AlchemyClient(settings.alchemy_nft_api_url, timeout=settings.indexer_timeout_seconds)
    service = RetryService(uow_factory, indexer, max_retry_count=settings.max_fetch_retry_count)

    try:
        result = await service.retry_failed(limit=args.limit)
        print_summary(result)

        code = exit_code_for(result)
        if code == 0:
            logger.info("cli.success", attempted=result.attempted)
        elif code == 2:
            logger.warning("cli.partial_success", failed=result.failed)
        else:
            logger.error("cli.failure", failed=result.failed)
        return code

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nRetry interrupted by user", file=sys.stderr)
        return 130  # Standard exit code for SIGINT

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await indexer.aclose()


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
