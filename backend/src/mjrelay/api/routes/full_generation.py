"""Full-generation API endpoints.

- POST /api/generate-full - Generate and upscale the requested variants in one job
- GET /api/full-generation/{record_id} - Current state of a full-generation record

POST returns as soon as the record is persisted unless wait_seconds is given,
in which case it blocks up to that long (capped by FULL_GENERATION_MAX_WAIT_SECONDS)
and returns whatever state the record reached.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from mjrelay.api.dependencies import (
    get_current_account,
    get_pipeline,
    get_registry,
    get_settings,
)
from mjrelay.models.account import Account
from mjrelay.models.full_generation import ExecutionMode, FullGeneration, FullGenerationStatus

router = APIRouter(prefix="/api", tags=["full-generation"])


class FullGenerationRequest(BaseModel):
    """Request model for a generate + upscale job."""

    prompt: str = Field(..., description="Midjourney prompt")
    variants: list[int] = Field(default_factory=list, description="Variant indexes 1-4 to upscale")
    mode: str = Field(default="sequential", description="'sequential' or 'concurrent'")
    wait_seconds: float | None = Field(
        default=None, ge=0, description="Block up to this many seconds for completion"
    )

    model_config = {
        "json_schema_extra": {
            "example": {"prompt": "a lighthouse at dusk", "variants": [1, 3], "mode": "concurrent"}
        }
    }


class FullGenerationView(BaseModel):
    """Response model for a full-generation record."""

    full_generation_id: UUID
    task_id: str | None = None
    status: FullGenerationStatus
    prompt: str
    mode: ExecutionMode
    variants: list[int]
    progress: int | None = Field(default=None, description="Progress of the generation step")
    original: dict[str, Any] | None = None
    upscaled: list[dict[str, Any]] = Field(default_factory=list)
    stats: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


def build_view(record: FullGeneration, registry, account: Account) -> FullGenerationView:
    task = (
        registry.find(record.task_id, account.api_key, is_admin=account.is_admin)
        if record.task_id
        else None
    )
    return FullGenerationView(
        full_generation_id=record.id,
        task_id=record.task_id,
        status=record.status,
        prompt=record.prompt,
        mode=record.mode,
        variants=list(record.variants or []),
        progress=task.progress if task is not None else None,
        original=record.original,
        upscaled=list(record.upscaled or []),
        stats=record.stats,
        error=record.error,
        created_at=record.created_at,
        completed_at=record.completed_at,
    )


@router.post("/generate-full", response_model=FullGenerationView)
async def generate_full(
    request: FullGenerationRequest,
    account: Account = Depends(get_current_account),
    pipeline=Depends(get_pipeline),
    registry=Depends(get_registry),
    settings=Depends(get_settings),
) -> FullGenerationView:
    """Start a full generation.

    Example:
        POST /api/generate-full
        {"prompt": "a lighthouse at dusk", "variants": [1, 3], "mode": "concurrent",
         "wait_seconds": 120}

        Response 200:
        {"full_generation_id": "...", "status": "completed", "upscaled": [...], "stats": {...}}
    """
    record, _ = await pipeline.start(request.prompt, request.variants, request.mode, account)

    if request.wait_seconds:
        timeout = min(request.wait_seconds, settings.full_generation_max_wait_seconds)
        await pipeline.wait(record.id, timeout)
        record = await pipeline.get(record.id, account)

    return build_view(record, registry, account)


@router.get("/full-generation/{record_id}", response_model=FullGenerationView)
async def get_full_generation(
    record_id: UUID,
    account: Account = Depends(get_current_account),
    pipeline=Depends(get_pipeline),
    registry=Depends(get_registry),
) -> FullGenerationView:
    record = await pipeline.get(record_id, account)
    return build_view(record, registry, account)
