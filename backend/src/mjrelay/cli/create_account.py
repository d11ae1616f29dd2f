"""CLI command for provisioning an API account.

Usage:
    python -m mjrelay.cli.create_account --email EMAIL --server-id ID \
        --channel-id ID --token TOKEN [OPTIONS]

Examples:
    # Regular account with the default monthly limit
    python -m mjrelay.cli.create_account --email a@example.com \
        --server-id 1111 --channel-id 2222 --token "$DISCORD_TOKEN"

    # Bootstrap the first admin (unlimited)
    python -m mjrelay.cli.create_account --email admin@example.com \
        --server-id 1111 --channel-id 2222 --token "$DISCORD_TOKEN" --admin
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from mjrelay.core import timezone  # noqa: F401
from mjrelay.core.config import Settings, configure_logging
from mjrelay.core.database import init_db, setup_db_session
from mjrelay.models.account import Account, AccountRole
from mjrelay.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: Optional[list[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Create an API account bound to a Discord server/channel",
        epilog="Prints the generated API key; the Discord token is stored but never printed",
    )
    parser.add_argument("--email", required=True, help="Account owner email")
    parser.add_argument("--server-id", required=True, help="Discord guild ID")
    parser.add_argument("--channel-id", required=True, help="Discord channel ID")
    parser.add_argument("--token", required=True, help="Discord user token")
    parser.add_argument(
        "--limit",
        type=int,
        help="Monthly generation limit, -1 for unlimited (default: DEFAULT_MONTHLY_LIMIT)",
    )
    parser.add_argument(
        "--admin",
        action="store_true",
        help="Create an admin account (unlimited, may call /admin endpoints)",
    )
    return parser.parse_args(argv)


async def async_main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    account = Account.provision(
        email=args.email,
        server_id=args.server_id,
        channel_id=args.channel_id,
        salai_token=args.token,
        monthly_limit=args.limit if args.limit is not None else settings.default_monthly_limit,
        role=AccountRole.ADMIN if args.admin else AccountRole.USER,
    )

    try:
        await init_db(session_factory)
        async with await uow_factory() as uow:
            await uow.accounts.add(account)
    except SQLAlchemyError as e:
        logger.error("cli.create_account_failed", error=str(e), error_type=type(e).__name__)
        print(f"\nError: {e}", file=sys.stderr)
        return 1
    finally:
        await session_factory.kw["bind"].dispose()

    logger.info("cli.account_created", account=account.email, role=account.role.value)
    print(f"API key: {account.api_key}")
    print(f"Role: {account.role.value}, monthly limit: {account.monthly_limit}")
    return 0


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
