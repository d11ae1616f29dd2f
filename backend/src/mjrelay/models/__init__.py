"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for table creation.
"""

from mjrelay.models.account import Account, AccountRole, AccountStatus
from mjrelay.models.errors import InvalidStateTransition
from mjrelay.models.full_generation import ExecutionMode, FullGeneration, FullGenerationStatus
from mjrelay.models.history import HistoryAction, HistoryEntry

__all__ = [
    "Account",
    "AccountRole",
    "AccountStatus",
    "ExecutionMode",
    "FullGeneration",
    "FullGenerationStatus",
    "HistoryAction",
    "HistoryEntry",
    "InvalidStateTransition",
]
