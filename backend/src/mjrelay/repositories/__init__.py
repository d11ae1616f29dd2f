"""Repository layer for mjrelay.

Provides data access abstractions for all persisted entities.
No base classes - each repository is self-contained.
"""

from mjrelay.repositories.account import AccountRepository
from mjrelay.repositories.full_generation import FullGenerationRepository
from mjrelay.repositories.history import HistoryRepository

__all__ = [
    "AccountRepository",
    "FullGenerationRepository",
    "HistoryRepository",
]
