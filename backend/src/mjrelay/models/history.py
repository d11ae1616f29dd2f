"""HistoryEntry entity - immutable log of completed generations and upscales."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from mjrelay.core.timezone import utcnow


class HistoryAction(str, Enum):
    """What produced the history entry."""

    GENERATE = "generate"
    UPSCALE = "upscale"


class HistoryEntry(SQLModel, table=True):
    """HistoryEntry records one successful backend side effect for an account.

    Entries are append-only; repositories expose no update path.
    """

    __tablename__ = "history_entries"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    api_key: str = Field(index=True, max_length=64)
    action: HistoryAction = Field(default=HistoryAction.GENERATE)
    prompt: Optional[str] = Field(default=None)
    image_url: str
    message_id: Optional[str] = Field(default=None, index=True, max_length=32)
    content_hash: Optional[str] = Field(default=None, max_length=64)
    task_id: Optional[str] = Field(default=None, index=True, max_length=64)
    variant_index: Optional[int] = Field(default=None, ge=1, le=4)
    created_at: datetime = Field(default_factory=utcnow)
