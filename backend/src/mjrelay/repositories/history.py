"""HistoryEntry repository for mjrelay.

Append-only access to the generation history (the durable record store).
"""

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from mjrelay.models.history import HistoryAction, HistoryEntry


class HistoryRepository:
    """Repository for HistoryEntry entities.

    Entries are never updated; they are only removed together with their account.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def append(self, entry: HistoryEntry) -> HistoryEntry:
        """Persist a new history entry.

        Args:
            entry: HistoryEntry to persist

        Returns:
            Persisted entry with generated ID
        """
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_for_account(self, api_key: str, limit: int = 10) -> list[HistoryEntry]:
        """Retrieve the most recent entries for an account (newest first)."""
        result = await self.session.execute(
            select(HistoryEntry)
            .where(HistoryEntry.api_key == api_key)  # type: ignore[arg-type]
            .order_by(HistoryEntry.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_recent(self, limit: int = 100) -> list[HistoryEntry]:
        """Retrieve the most recent entries across all accounts (newest first)."""
        result = await self.session.execute(
            select(HistoryEntry)
            .order_by(HistoryEntry.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_generation(self, api_key: str, reference: str) -> HistoryEntry | None:
        """Find a generate entry by internal task ID or Discord message ID.

        Used to upscale images whose in-memory task has already been evicted.

        Args:
            api_key: Owner of the entry
            reference: Internal task ID ("task_...") or Discord message snowflake

        Returns:
            Latest matching generate entry, None if not found
        """
        result = await self.session.execute(
            select(HistoryEntry)
            .where(
                HistoryEntry.api_key == api_key,  # type: ignore[arg-type]
                HistoryEntry.action == HistoryAction.GENERATE,  # type: ignore[arg-type]
                or_(
                    HistoryEntry.task_id == reference,  # type: ignore[arg-type]
                    HistoryEntry.message_id == reference,  # type: ignore[arg-type]
                ),
            )
            .order_by(HistoryEntry.created_at.desc())  # type: ignore[attr-defined]
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def delete_for_account(self, api_key: str) -> int:
        """Delete every entry of an account; returns the number removed."""
        result = await self.session.execute(
            delete(HistoryEntry).where(HistoryEntry.api_key == api_key)  # type: ignore[arg-type]
        )
        await self.session.flush()
        return result.rowcount  # type: ignore[attr-defined]
