"""Generation API endpoints.

This module implements the caller-facing task API:
- POST /api/generate - Start an /imagine job, returns a task ID immediately
- GET /api/task/{task_id} - Poll task status, progress and result
- GET /api/tasks - List all in-memory tasks (admin only)
- POST /api/upscale - Upscale one variant of a finished generation
- GET /api/history - Caller's most recent history entries
"""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from mjrelay.api.dependencies import (
    get_current_account,
    get_executor,
    get_orchestrator,
    get_registry,
    get_settings,
    get_uow_factory,
    require_admin,
)
from mjrelay.models.account import Account
from mjrelay.services.exceptions import NotFoundError, ValidationError
from mjrelay.services.image_reference import ImageReference, extract_content_hash
from mjrelay.services.task_registry import GenerationTask, TaskStatus

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api", tags=["generation"])


# Request/Response Models


class GenerateRequest(BaseModel):
    """Request model for starting a generation."""

    prompt: str = Field(..., description="Midjourney prompt (parameters such as --ar allowed)")

    model_config = {"json_schema_extra": {"example": {"prompt": "beautiful sunset over mountains"}}}


class GenerateResponse(BaseModel):
    success: bool = True
    task_id: str
    status: TaskStatus
    message: str = "Generation started"


class TaskView(BaseModel):
    """Response model for a single task."""

    task_id: str
    status: TaskStatus
    prompt: str
    owner: str | None = None
    progress: int | None = None
    image_url: str | None = None
    message_id: str | None = Field(default=None, description="Discord message ID of the grid")
    hash: str | None = Field(default=None, description="Job hash used for upscaling")
    ephemeral: bool | None = None
    error: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_task(cls, task: GenerationTask, include_owner: bool = False) -> "TaskView":
        view = cls(
            task_id=task.id,
            status=task.status,
            prompt=task.prompt,
            progress=task.progress,
            error=task.error,
            created_at=task.created_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
        )
        if include_owner:
            view.owner = task.owner
        if task.result is not None:
            view.image_url = task.result.url
            view.message_id = task.result.message_id
            view.hash = task.result.content_hash
            view.ephemeral = task.result.ephemeral
        return view


class TaskListResponse(BaseModel):
    tasks: list[TaskView]
    total: int


class UpscaleRequest(BaseModel):
    """Request model for upscaling one variant."""

    task_id: str = Field(..., description="Internal task ID or Discord message ID of the grid")
    index: int = Field(
        ..., description="1 = top left, 2 = top right, 3 = bottom left, 4 = bottom right"
    )

    model_config = {
        "json_schema_extra": {"example": {"task_id": "task_1234567890_abc123", "index": 1}}
    }


class UpscaleResponse(BaseModel):
    success: bool = True
    image_url: str
    message_id: str
    hash: str | None = None
    original_task_id: str
    selected_index: int


class HistoryItem(BaseModel):
    action: str
    prompt: str | None = None
    image_url: str
    message_id: str | None = None
    hash: str | None = None
    task_id: str | None = None
    variant_index: int | None = None
    created_at: datetime


class HistoryResponse(BaseModel):
    history: list[HistoryItem]
    total: int


# API Endpoints


@router.post("/generate", response_model=GenerateResponse, status_code=status.HTTP_200_OK)
async def generate(
    request: GenerateRequest,
    account: Account = Depends(get_current_account),
    orchestrator=Depends(get_orchestrator),
) -> GenerateResponse:
    """Start a generation and return its task ID without waiting for the backend.

    Example:
        POST /api/generate
        {"prompt": "beautiful sunset over mountains"}

        Response 200:
        {"success": true, "task_id": "task_1718000000000_9f2c1a7b", "status": "pending", ...}
    """
    task = orchestrator.submit(request.prompt, account)
    return GenerateResponse(task_id=task.id, status=task.status)


@router.get("/task/{task_id}", response_model=TaskView)
async def get_task(
    task_id: str,
    account: Account = Depends(get_current_account),
    registry=Depends(get_registry),
) -> TaskView:
    """Return the caller's task. Foreign tasks are reported as not found."""
    task = registry.get(task_id, account.api_key, is_admin=account.is_admin)
    return TaskView.from_task(task)


@router.get("/tasks", response_model=TaskListResponse)
async def list_tasks(
    admin: Account = Depends(require_admin),
    registry=Depends(get_registry),
) -> TaskListResponse:
    tasks = registry.list_tasks(is_admin=True)
    return TaskListResponse(
        tasks=[TaskView.from_task(t, include_owner=True) for t in tasks], total=len(tasks)
    )


async def find_upscale_source(
    reference: str, account: Account, registry, uow_factory, ephemeral_marker: str
) -> ImageReference:
    """Locate the grid to upscale: live task first, then generation history.

    Raises:
        NotFoundError: No completed generation matches reference
    """
    task = registry.find(reference, account.api_key, is_admin=account.is_admin)
    if task is not None and task.status == TaskStatus.COMPLETED and task.result is not None:
        return task.result

    async with await uow_factory() as uow:
        entry = await uow.history.find_generation(account.api_key, reference)
    if entry is None:
        raise NotFoundError(
            f"No completed generation found for {reference}",
            hint="Use the task_id returned by /api/generate, or check it via /api/task/{task_id}",
        )
    return ImageReference.derive(
        url=entry.image_url,
        message_id=entry.message_id,
        backend_hash=entry.content_hash,
        ephemeral_marker=ephemeral_marker,
    )


@router.post("/upscale", response_model=UpscaleResponse)
async def upscale(
    request: UpscaleRequest,
    account: Account = Depends(get_current_account),
    registry=Depends(get_registry),
    executor=Depends(get_executor),
    orchestrator=Depends(get_orchestrator),
    uow_factory=Depends(get_uow_factory),
    settings=Depends(get_settings),
) -> UpscaleResponse:
    """Upscale one variant and wait for the result.

    Raises:
        ValidationError: Index outside 1-4, or the grid has no usable job hash
        NotFoundError: Unknown task_id
        EligibilityExpiredError / ProtocolMismatchError / UpscaleTimeoutError: Upscale failed
    """
    source = await find_upscale_source(
        request.task_id, account, registry, uow_factory, settings.ephemeral_marker
    )
    content_hash = source.content_hash or extract_content_hash(source.url)
    if not source.message_id or not content_hash:
        raise ValidationError(
            "Not enough data to upscale this image",
            hint=(
                f"message_id present: {bool(source.message_id)}, "
                f"hash present: {bool(content_hash)}"
            ),
        )

    logger.info(
        "upscale.requested",
        account=account.email,
        task_id=request.task_id,
        variant_index=request.index,
    )
    image = await executor.upscale(
        source.message_id, request.index, content_hash, account, message_flags=source.flags
    )
    await orchestrator.record_upscale(account, image, request.index)

    return UpscaleResponse(
        image_url=image.url,
        message_id=image.message_id,
        hash=image.content_hash,
        original_task_id=request.task_id,
        selected_index=request.index,
    )


@router.get("/history", response_model=HistoryResponse)
async def get_history(
    limit: int | None = Query(default=None, ge=1, le=100),
    account: Account = Depends(get_current_account),
    uow_factory=Depends(get_uow_factory),
    settings=Depends(get_settings),
) -> HistoryResponse:
    async with await uow_factory() as uow:
        entries = await uow.history.list_for_account(
            account.api_key, limit=limit or settings.history_page_size
        )
    items = [
        HistoryItem(
            action=e.action.value,
            prompt=e.prompt,
            image_url=e.image_url,
            message_id=e.message_id,
            hash=e.content_hash,
            task_id=e.task_id,
            variant_index=e.variant_index,
            created_at=e.created_at,
        )
        for e in entries
    ]
    return HistoryResponse(history=items, total=len(items))
