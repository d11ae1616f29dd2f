"""In-memory registry of generation tasks.

Tasks live here from submit until task_ttl_seconds after they finish. The
registry is not durable: the history table keeps the durable summary of every
successful generation.
"""

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

import structlog

from mjrelay.core.timezone import utcnow
from mjrelay.models.errors import InvalidStateTransition
from mjrelay.services.exceptions import NotFoundError
from mjrelay.services.image_reference import ImageReference

logger = structlog.get_logger(__name__)


class TaskStatus(str, Enum):
    """Generation task lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_TASK_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)


def new_task_id() -> str:
    return f"task_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass
class GenerationTask:
    """One /imagine request tracked from submit to completion."""

    prompt: str
    api_key: str
    owner: str = ""
    id: str = field(default_factory=new_task_id)
    status: TaskStatus = TaskStatus.PENDING
    progress: Optional[int] = None
    result: Optional[ImageReference] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def mark_processing(self) -> None:
        """Transition from pending to processing.

        Raises:
            InvalidStateTransition: If current status is not pending
        """
        if self.status != TaskStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot mark processing from {self.status.value}. Task must be in pending state."
            )
        self.started_at = utcnow()
        self.status = TaskStatus.PROCESSING

    def update_progress(self, progress: int) -> None:
        """Record the latest progress percentage (last value wins; ignored once terminal)."""
        if self.is_terminal:
            return
        self.progress = max(0, min(100, int(progress)))

    def mark_completed(self, result: ImageReference) -> None:
        """Transition from processing to completed.

        Raises:
            InvalidStateTransition: If current status is not processing
        """
        if self.status != TaskStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot mark completed from {self.status.value}. "
                "Task must be in processing state."
            )
        self.result = result
        self.progress = 100
        self.completed_at = utcnow()
        self.status = TaskStatus.COMPLETED

    def mark_failed(self, error: str) -> None:
        """Transition from any non-terminal state to failed.

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark failed from terminal state {self.status.value}."
            )
        self.error = error
        self.completed_at = utcnow()
        self.status = TaskStatus.FAILED


class TaskRegistry:
    """Credential-scoped map of task ID to GenerationTask."""

    def __init__(self, ttl_seconds: float = 300.0):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._tasks: dict[str, GenerationTask] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def add(self, task: GenerationTask) -> GenerationTask:
        self._tasks[task.id] = task
        return task

    def get(self, task_id: str, api_key: str, is_admin: bool = False) -> GenerationTask:
        """Return a task visible to the caller.

        Tasks owned by someone else are reported as missing, not forbidden, so
        task IDs cannot be guessed across accounts.

        Raises:
            NotFoundError: Unknown, evicted, or foreign task
        """
        task = self._tasks.get(task_id)
        if task is None or (task.api_key != api_key and not is_admin):
            raise NotFoundError(
                f"Task {task_id} not found",
                hint="Finished tasks are kept for a few minutes; see /api/history afterwards",
            )
        return task

    def find(self, task_id: str, api_key: str, is_admin: bool = False) -> Optional[GenerationTask]:
        """Like get(), but returns None instead of raising."""
        try:
            return self.get(task_id, api_key, is_admin)
        except NotFoundError:
            return None

    def list_tasks(
        self, api_key: Optional[str] = None, is_admin: bool = False
    ) -> list[GenerationTask]:
        """Tasks owned by api_key (all tasks for admins), oldest first."""
        tasks = sorted(self._tasks.values(), key=lambda t: t.created_at)
        if is_admin:
            return tasks
        return [t for t in tasks if t.api_key == api_key]

    def evict_expired(self, now: Optional[datetime] = None) -> int:
        """Drop terminal tasks that finished more than ttl ago.

        Returns:
            Number of evicted tasks
        """
        now = now or utcnow()
        expired = [
            task_id
            for task_id, task in self._tasks.items()
            if task.is_terminal
            and task.completed_at is not None
            and task.completed_at + self.ttl <= now
        ]
        for task_id in expired:
            del self._tasks[task_id]
        if expired:
            logger.debug("task_registry.evicted", count=len(expired), remaining=len(self._tasks))
        return len(expired)
