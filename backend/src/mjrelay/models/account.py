"""Account entity - API credential bound to a Discord user session."""

import secrets
from datetime import datetime
from enum import Enum

from sqlmodel import Field, SQLModel

from mjrelay.core.timezone import utcnow

UNLIMITED = -1


def generate_api_key() -> str:
    return f"mj_{secrets.token_hex(16)}"


class AccountRole(str, Enum):
    """Account privilege level."""

    USER = "user"
    ADMIN = "admin"


class AccountStatus(str, Enum):
    """Account availability."""

    ACTIVE = "active"
    BLOCKED = "blocked"


class Account(SQLModel, table=True):
    """Account maps an API key to the Discord guild/channel/token used for generation."""

    __tablename__ = "accounts"  # type: ignore[assignment]

    api_key: str = Field(primary_key=True, max_length=64)
    email: str = Field(index=True, max_length=255)
    server_id: str = Field(max_length=32)
    channel_id: str = Field(max_length=32)
    salai_token: str = Field(max_length=255)
    monthly_limit: int = Field(default=100)
    usage_count: int = Field(default=0, ge=0)
    usage_reset_at: datetime = Field(default_factory=utcnow)
    role: AccountRole = Field(default=AccountRole.USER)
    status: AccountStatus = Field(default=AccountStatus.ACTIVE)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == AccountRole.ADMIN

    @property
    def unlimited(self) -> bool:
        """Admins and accounts with monthly_limit=-1 are never counted or capped."""
        return self.is_admin or self.monthly_limit == UNLIMITED

    @property
    def quota_exceeded(self) -> bool:
        return not self.unlimited and self.usage_count >= self.monthly_limit

    def usage_reset_due(self, now: datetime) -> bool:
        """Return True if the usage counter belongs to an earlier calendar month."""
        return (now.year, now.month) != (self.usage_reset_at.year, self.usage_reset_at.month)

    def apply_changes(self, changes: dict) -> None:
        """Overwrite the given fields. Promotion to admin also lifts the limit."""
        for name, value in changes.items():
            setattr(self, name, value)
        if self.role == AccountRole.ADMIN:
            self.monthly_limit = UNLIMITED

    def toggle_block(self) -> AccountStatus:
        """Flip between active and blocked; returns the new status."""
        self.status = (
            AccountStatus.ACTIVE if self.status == AccountStatus.BLOCKED else AccountStatus.BLOCKED
        )
        return self.status

    @classmethod
    def provision(
        cls,
        email: str,
        server_id: str,
        channel_id: str,
        salai_token: str,
        monthly_limit: int = 100,
        role: AccountRole = AccountRole.USER,
    ) -> "Account":
        """Build a new account with a fresh API key. Admins are always unlimited."""
        return cls(
            api_key=generate_api_key(),
            email=email,
            server_id=server_id,
            channel_id=channel_id,
            salai_token=salai_token,
            monthly_limit=UNLIMITED if role == AccountRole.ADMIN else monthly_limit,
            role=role,
        )
