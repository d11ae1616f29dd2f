"""Admin API endpoints for account management.

All endpoints require an admin API key.
- POST /admin/users - Provision an account, returns its API key
- GET /admin/users - List accounts with usage
- GET /admin/users/{api_key} - One account with its recent history
- PUT /admin/users/{api_key} - Change limit, role, status, email or Discord binding
- DELETE /admin/users/{api_key} - Remove an account with its history and records
- POST /admin/users/{api_key}/reset - Zero the monthly usage counter
- POST /admin/users/{api_key}/toggle-block - Block or unblock an account
- GET /admin/history - Latest history entries across all accounts
"""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from mjrelay.api.dependencies import get_sessions, get_settings, get_uow_factory, require_admin
from mjrelay.models.account import Account, AccountRole, AccountStatus
from mjrelay.services.exceptions import NotFoundError

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

ADMIN_HISTORY_LIMIT = 100


class CreateAccountRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    server_id: str = Field(..., min_length=1, description="Discord guild ID")
    channel_id: str = Field(..., min_length=1, description="Discord channel ID")
    salai_token: str = Field(..., min_length=1, description="Discord user token")
    monthly_limit: int | None = Field(default=None, ge=-1)
    role: AccountRole = AccountRole.USER


class UpdateAccountRequest(BaseModel):
    """Fields to change; omitted fields keep their value."""

    email: str | None = Field(default=None, min_length=3, max_length=255)
    server_id: str | None = Field(default=None, min_length=1)
    channel_id: str | None = Field(default=None, min_length=1)
    salai_token: str | None = Field(default=None, min_length=1)
    monthly_limit: int | None = Field(default=None, ge=-1)
    role: AccountRole | None = None
    status: AccountStatus | None = None


class AccountView(BaseModel):
    """Account as shown to admins. The Discord token is never returned."""

    api_key: str
    email: str
    server_id: str
    channel_id: str
    monthly_limit: int
    usage_count: int
    usage_reset_at: datetime
    role: AccountRole
    status: AccountStatus
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountView":
        return cls(
            api_key=account.api_key,
            email=account.email,
            server_id=account.server_id,
            channel_id=account.channel_id,
            monthly_limit=account.monthly_limit,
            usage_count=account.usage_count,
            usage_reset_at=account.usage_reset_at,
            role=account.role,
            status=account.status,
            created_at=account.created_at,
        )


class CreateAccountResponse(BaseModel):
    success: bool = True
    api_key: str
    account: AccountView


class AccountResponse(BaseModel):
    success: bool = True
    account: AccountView


class AccountListResponse(BaseModel):
    users: list[AccountView]
    total: int


class AdminHistoryItem(BaseModel):
    api_key_prefix: str
    action: str
    prompt: str | None = None
    image_url: str
    message_id: str | None = None
    task_id: str | None = None
    variant_index: int | None = None
    created_at: datetime


class AccountDetailResponse(BaseModel):
    account: AccountView
    history: list[AdminHistoryItem]


class AdminHistoryResponse(BaseModel):
    history: list[AdminHistoryItem]


class StatusResponse(BaseModel):
    success: bool = True
    status: AccountStatus | None = None
    message: str | None = None


def history_item(entry) -> AdminHistoryItem:
    return AdminHistoryItem(
        api_key_prefix=f"{entry.api_key[:8]}...",
        action=entry.action.value,
        prompt=entry.prompt,
        image_url=entry.image_url,
        message_id=entry.message_id,
        task_id=entry.task_id,
        variant_index=entry.variant_index,
        created_at=entry.created_at,
    )


async def load_account(uow, api_key: str) -> Account:
    account = await uow.accounts.get_by_api_key(api_key)
    if account is None:
        raise NotFoundError(f"Account {api_key[:8]}... not found")
    return account


@router.post("/users", response_model=CreateAccountResponse)
async def create_account(
    request: CreateAccountRequest,
    uow_factory=Depends(get_uow_factory),
    settings=Depends(get_settings),
) -> CreateAccountResponse:
    account = Account.provision(
        email=request.email,
        server_id=request.server_id,
        channel_id=request.channel_id,
        salai_token=request.salai_token,
        monthly_limit=(
            request.monthly_limit
            if request.monthly_limit is not None
            else settings.default_monthly_limit
        ),
        role=request.role,
    )
    async with await uow_factory() as uow:
        await uow.accounts.add(account)

    logger.info("admin.account_created", account=account.email, role=account.role.value)
    return CreateAccountResponse(api_key=account.api_key, account=AccountView.from_account(account))


@router.get("/users", response_model=AccountListResponse)
async def list_accounts(uow_factory=Depends(get_uow_factory)) -> AccountListResponse:
    async with await uow_factory() as uow:
        accounts = await uow.accounts.list_all()
    return AccountListResponse(
        users=[AccountView.from_account(a) for a in accounts], total=len(accounts)
    )


@router.get("/users/{api_key}", response_model=AccountDetailResponse)
async def get_account(
    api_key: str,
    uow_factory=Depends(get_uow_factory),
    settings=Depends(get_settings),
) -> AccountDetailResponse:
    async with await uow_factory() as uow:
        account = await load_account(uow, api_key)
        entries = await uow.history.list_for_account(api_key, limit=settings.history_page_size)
    return AccountDetailResponse(
        account=AccountView.from_account(account),
        history=[history_item(e) for e in entries],
    )


@router.put("/users/{api_key}", response_model=AccountResponse)
async def update_account(
    api_key: str,
    request: UpdateAccountRequest,
    uow_factory=Depends(get_uow_factory),
    sessions=Depends(get_sessions),
) -> AccountResponse:
    changes = request.model_dump(exclude_none=True)
    async with await uow_factory() as uow:
        account = await load_account(uow, api_key)
        account.apply_changes(changes)
        uow.session.add(account)

    # The cached Discord session may hold the old token or channel
    sessions.evict(api_key)
    logger.info("admin.account_updated", account=account.email, fields=sorted(changes))
    return AccountResponse(account=AccountView.from_account(account))


@router.delete("/users/{api_key}", response_model=StatusResponse)
async def delete_account(
    api_key: str,
    uow_factory=Depends(get_uow_factory),
    sessions=Depends(get_sessions),
) -> StatusResponse:
    async with await uow_factory() as uow:
        account = await load_account(uow, api_key)
        history_removed = await uow.history.delete_for_account(api_key)
        records_removed = await uow.full_generations.delete_for_account(api_key)
        await uow.accounts.delete(api_key)

    sessions.evict(api_key)
    logger.info(
        "admin.account_deleted",
        account=account.email,
        history_entries=history_removed,
        full_generations=records_removed,
    )
    return StatusResponse(message="Account deleted")


@router.post("/users/{api_key}/reset", response_model=StatusResponse)
async def reset_usage(api_key: str, uow_factory=Depends(get_uow_factory)) -> StatusResponse:
    async with await uow_factory() as uow:
        account = await load_account(uow, api_key)
        await uow.accounts.reset_usage(account)

    logger.info("admin.usage_reset", account=account.email)
    return StatusResponse(status=account.status, message="Usage counter reset")


@router.post("/users/{api_key}/toggle-block", response_model=StatusResponse)
async def toggle_block(
    api_key: str,
    uow_factory=Depends(get_uow_factory),
    sessions=Depends(get_sessions),
) -> StatusResponse:
    async with await uow_factory() as uow:
        account = await load_account(uow, api_key)
        new_status = account.toggle_block()
        uow.session.add(account)

    if new_status == AccountStatus.BLOCKED:
        sessions.evict(api_key)

    logger.info("admin.account_status_changed", account=account.email, status=new_status.value)
    return StatusResponse(status=new_status)


@router.get("/history", response_model=AdminHistoryResponse)
async def recent_history(uow_factory=Depends(get_uow_factory)) -> AdminHistoryResponse:
    async with await uow_factory() as uow:
        entries = await uow.history.list_recent(limit=ADMIN_HISTORY_LIMIT)
    return AdminHistoryResponse(history=[history_item(e) for e in entries])
