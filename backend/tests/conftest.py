"""pytest fixtures for mjrelay backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- settings: Test settings with zero poll intervals and pipeline delays
- session_factory: Fresh SQLite database per test (tables created)
- session / uow_factory: Database access on top of session_factory
- account / other_account / admin_account: Persisted accounts
- fake_client / sessions: Scripted Discord backend behind a real SessionRegistry
"""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from fakes import FakeDiscordClient
from mjrelay.core.config import Settings
from mjrelay.core.database import init_db, setup_db_session
from mjrelay.models.account import UNLIMITED, Account, AccountRole
from mjrelay.services.discord.sessions import SessionRegistry
from mjrelay.uow import create_uow_factory


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with every poll interval and pipeline delay at zero.

    Each test gets its own SQLite file so concurrent jobs use separate connections.
    """
    return Settings(
        _env_file=None,
        APP_ENV="test",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'mjrelay.db'}",
        IMAGINE_POLL_INTERVAL_SECONDS=0,
        RESOLVE_POLL_INTERVAL_SECONDS=0,
        RESOLVE_MAX_ATTEMPTS=3,
        RESOLVE_TIMEOUT_SECONDS=5,
        UPSCALE_POLL_INTERVAL_SECONDS=0,
        UPSCALE_MAX_ATTEMPTS=3,
        UPSCALE_MAX_RATE_LIMIT_RETRIES=2,
        SETTLE_DELAY_SECONDS=0,
        SETTLE_DELAY_EPHEMERAL_SECONDS=0,
        SEQUENTIAL_DELAY_SECONDS=0,
        CONCURRENT_STAGGER_SECONDS=0,
    )


@pytest_asyncio.fixture
async def session_factory(settings):
    """Fresh database per test."""
    factory = setup_db_session(settings.database_url)
    await init_db(factory)
    yield factory
    await factory.kw["bind"].dispose()


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def uow_factory(session_factory):
    return create_uow_factory(session_factory)


async def _persist(uow_factory, account: Account) -> Account:
    async with await uow_factory() as uow:
        await uow.accounts.add(account)
    return account


@pytest_asyncio.fixture
async def account(uow_factory) -> Account:
    return await _persist(
        uow_factory,
        Account(
            api_key="mj_test_user",
            email="user@example.com",
            server_id="1111",
            channel_id="2222",
            salai_token="token-user",
            monthly_limit=10,
        ),
    )


@pytest_asyncio.fixture
async def other_account(uow_factory) -> Account:
    return await _persist(
        uow_factory,
        Account(
            api_key="mj_test_other",
            email="other@example.com",
            server_id="1111",
            channel_id="3333",
            salai_token="token-other",
            monthly_limit=10,
        ),
    )


@pytest_asyncio.fixture
async def admin_account(uow_factory) -> Account:
    return await _persist(
        uow_factory,
        Account(
            api_key="mj_test_admin",
            email="admin@example.com",
            server_id="1111",
            channel_id="4444",
            salai_token="token-admin",
            monthly_limit=UNLIMITED,
            role=AccountRole.ADMIN,
        ),
    )


@pytest.fixture
def fake_client() -> FakeDiscordClient:
    return FakeDiscordClient()


@pytest.fixture
def sessions(settings, fake_client) -> SessionRegistry:
    """Real SessionRegistry whose every session is fake_client."""
    return SessionRegistry(settings, client_factory=lambda account, settings: fake_client)
