"""Account repository for mjrelay.

Provides data access methods for Account entities (the credential store).
"""

from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mjrelay.core.timezone import utcnow
from mjrelay.models.account import Account


class AccountRepository:
    """Repository for Account entities.

    Methods:
    - get_by_api_key: Retrieve account by API key
    - add: Persist new account
    - list_all: All accounts ordered by creation time
    - increment_usage: Atomically bump the monthly usage counter
    - reset_usage_if_due: Zero the counter when a new calendar month started
    - reset_usage: Zero the counter unconditionally (admin action)
    - delete: Remove an account
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_api_key(self, api_key: str) -> Account | None:
        """Retrieve account by API key.

        Args:
            api_key: Caller's API key

        Returns:
            Account if found, None otherwise
        """
        result = await self.session.execute(
            select(Account).where(Account.api_key == api_key)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def add(self, account: Account) -> Account:
        """Persist new account to database.

        Args:
            account: Account entity to persist

        Returns:
            Persisted account
        """
        self.session.add(account)
        await self.session.flush()
        return account

    async def list_all(self) -> list[Account]:
        """Retrieve all accounts ordered by creation time (oldest first)."""
        result = await self.session.execute(
            select(Account).order_by(Account.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def increment_usage(self, api_key: str) -> None:
        """Increment usage counter with a single UPDATE (safe under concurrent completions).

        Args:
            api_key: Account to charge
        """
        await self.session.execute(
            update(Account)
            .where(Account.api_key == api_key)  # type: ignore[arg-type]
            .values(usage_count=Account.usage_count + 1)
        )

    async def reset_usage_if_due(self, account: Account, now: datetime | None = None) -> bool:
        """Reset monthly usage when the stored reset date is in an earlier month.

        Args:
            account: Account attached to this repository's session
            now: Current time (defaults to UTC now)

        Returns:
            True if the counter was reset
        """
        now = now or utcnow()
        if not account.usage_reset_due(now):
            return False
        await self.reset_usage(account, now)
        return True

    async def reset_usage(self, account: Account, now: datetime | None = None) -> None:
        """Zero the usage counter and move the reset date to now."""
        account.usage_count = 0
        account.usage_reset_at = now or utcnow()
        self.session.add(account)
        await self.session.flush()

    async def delete(self, api_key: str) -> bool:
        """Delete an account.

        Args:
            api_key: Account to delete

        Returns:
            True if the account existed
        """
        result = await self.session.execute(
            delete(Account).where(Account.api_key == api_key)  # type: ignore[arg-type]
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]
