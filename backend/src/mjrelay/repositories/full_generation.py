"""FullGeneration repository for mjrelay.

Provides data access methods for FullGeneration records.
"""

from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from mjrelay.models.full_generation import FullGeneration


class FullGenerationRepository:
    """Repository for FullGeneration entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, record: FullGeneration) -> FullGeneration:
        """Persist new record to database.

        Args:
            record: FullGeneration entity to persist

        Returns:
            Persisted record
        """
        self.session.add(record)
        await self.session.flush()
        return record

    async def save(self, record: FullGeneration) -> FullGeneration:
        """Write the current state of a (possibly detached) record.

        The pipeline keeps its record in memory across many short transactions,
        so the instance is merged into this session rather than re-queried.

        Args:
            record: FullGeneration with updated fields

        Returns:
            Session-attached instance
        """
        merged = await self.session.merge(record)
        await self.session.flush()
        return merged

    async def get_by_id(self, record_id: UUID) -> FullGeneration | None:
        """Retrieve record by UUID.

        Args:
            record_id: Record's unique identifier

        Returns:
            FullGeneration if found, None otherwise
        """
        result = await self.session.execute(
            select(FullGeneration).where(FullGeneration.id == record_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def delete_for_account(self, api_key: str) -> int:
        """Delete every record owned by an account; returns the number removed."""
        result = await self.session.execute(
            delete(FullGeneration).where(
                FullGeneration.api_key == api_key  # type: ignore[arg-type]
            )
        )
        await self.session.flush()
        return result.rowcount  # type: ignore[attr-defined]
