"""FastAPI dependencies for request authentication and shared services.

This module provides reusable FastAPI dependencies for:
- Settings and UnitOfWork factory access
- Core services stored on app.state by the lifespan
- API key authentication with monthly quota enforcement
"""

from typing import Annotated, Callable

import structlog
from fastapi import Depends, Header, Request

from mjrelay.core.config import Settings
from mjrelay.models.account import Account, AccountStatus
from mjrelay.services.discord.sessions import SessionRegistry
from mjrelay.services.exceptions import AuthError
from mjrelay.services.task_registry import TaskRegistry
from mjrelay.services.upscale.executor import UpscaleExecutor
from mjrelay.uow import UnitOfWork
from mjrelay.workers.full_generation_pipeline import FullGenerationPipeline
from mjrelay.workers.job_orchestrator import JobOrchestrator

logger = structlog.get_logger(__name__)


def get_settings(request: Request) -> Settings:
    """Get the settings instance loaded by the app lifespan."""
    return request.app.state.settings


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.accounts.get_by_api_key(api_key)
    """
    return request.app.state.uow_factory


def get_registry(request: Request) -> TaskRegistry:
    return request.app.state.registry


def get_sessions(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def get_pipeline(request: Request) -> FullGenerationPipeline:
    return request.app.state.pipeline


def get_executor(request: Request) -> UpscaleExecutor:
    return request.app.state.executor


def extract_api_key(x_api_key: str | None, authorization: str | None) -> str | None:
    """Pick the API key from X-API-Key, falling back to an Authorization bearer token."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[len("bearer ") :].strip() or None
    return None


async def get_current_account(
    x_api_key: Annotated[str | None, Header()] = None,
    authorization: Annotated[str | None, Header()] = None,
    uow_factory=Depends(get_uow_factory),
) -> Account:
    """Authenticate the caller and enforce the monthly quota.

    The usage counter is reset first when a new calendar month has started
    since the last reset, so the quota comparison always sees this month's usage.

    Raises:
        AuthError: 401 missing/unknown key, 403 blocked account, 429 quota exhausted
    """
    api_key = extract_api_key(x_api_key, authorization)
    if not api_key:
        raise AuthError(
            "API key required",
            hint="Send the key in the X-API-Key header or as 'Authorization: Bearer <key>'",
        )

    async with await uow_factory() as uow:
        account = await uow.accounts.get_by_api_key(api_key)
        if account is None:
            logger.warning("auth.unknown_key", key_prefix=api_key[:6])
            raise AuthError("Invalid API key")

        if account.status == AccountStatus.BLOCKED:
            logger.warning("auth.blocked", account=account.email)
            raise AuthError("Account is blocked", status_code=403)

        if not account.unlimited:
            if await uow.accounts.reset_usage_if_due(account):
                logger.info("auth.usage_reset", account=account.email)

    if account.quota_exceeded:
        raise AuthError(
            f"Monthly limit reached ({account.usage_count}/{account.monthly_limit})",
            hint="Usage resets at the start of next month; contact an admin to raise the limit",
            status_code=429,
        )
    return account


async def require_admin(account: Account = Depends(get_current_account)) -> Account:
    """Restrict an endpoint to admin accounts.

    Raises:
        AuthError: 403 for non-admin callers
    """
    if not account.is_admin:
        raise AuthError("Admin access required", status_code=403)
    return account
