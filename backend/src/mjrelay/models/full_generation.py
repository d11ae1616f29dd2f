"""FullGeneration entity - generate + upscale(xN) record with lifecycle tracking."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from mjrelay.core.timezone import utcnow
from mjrelay.models.errors import InvalidStateTransition


class FullGenerationStatus(str, Enum):
    """FullGeneration lifecycle status."""

    GENERATING = "generating"
    GENERATED = "generated"
    UPSCALING = "upscaling"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionMode(str, Enum):
    """How variant upscales are scheduled."""

    SEQUENTIAL = "sequential"
    CONCURRENT = "concurrent"


TERMINAL_STATUSES = (FullGenerationStatus.COMPLETED, FullGenerationStatus.FAILED)


class FullGeneration(SQLModel, table=True):
    """FullGeneration chains one generation with upscales of the requested variants.

    original and upscaled hold ImageReference / UpscaleOutcome dictionaries.
    """

    __tablename__ = "full_generations"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    api_key: str = Field(index=True, max_length=64)
    prompt: str
    mode: ExecutionMode = Field(default=ExecutionMode.SEQUENTIAL)
    variants: Optional[list] = Field(default=None, sa_column=Column(JSON))
    status: FullGenerationStatus = Field(default=FullGenerationStatus.GENERATING, index=True)
    task_id: Optional[str] = Field(default=None, max_length=64)
    original: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    upscaled: Optional[list] = Field(default=None, sa_column=Column(JSON))
    stats: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None, max_length=2000)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark_generated(self, original: dict) -> None:
        """Transition from generating to generated.

        Args:
            original: ImageReference dictionary of the generated grid image

        Raises:
            InvalidStateTransition: If current status is not generating
        """
        if self.status != FullGenerationStatus.GENERATING:
            raise InvalidStateTransition(
                f"Cannot mark generated from {self.status.value}. "
                "Record must be in generating state."
            )
        self.original = original
        self.status = FullGenerationStatus.GENERATED

    def mark_upscaling(self) -> None:
        """Transition from generated to upscaling.

        Raises:
            InvalidStateTransition: If current status is not generated
        """
        if self.status != FullGenerationStatus.GENERATED:
            raise InvalidStateTransition(
                f"Cannot mark upscaling from {self.status.value}. "
                "Record must be in generated state."
            )
        self.status = FullGenerationStatus.UPSCALING

    def mark_completed(self, upscaled: list[dict], stats: dict) -> None:
        """Transition from generated (no variants) or upscaling to completed.

        Raises:
            InvalidStateTransition: If current status is neither generated nor upscaling
        """
        if self.status not in (FullGenerationStatus.GENERATED, FullGenerationStatus.UPSCALING):
            raise InvalidStateTransition(
                f"Cannot mark completed from {self.status.value}. "
                "Record must be in generated or upscaling state."
            )
        self.upscaled = upscaled
        self.stats = stats
        self.completed_at = utcnow()
        self.status = FullGenerationStatus.COMPLETED

    def mark_failed(self, error: str) -> None:
        """Transition from any non-terminal state to failed.

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark failed from terminal state {self.status.value}."
            )
        self.error = error[:2000]
        self.completed_at = utcnow()
        self.status = FullGenerationStatus.FAILED
