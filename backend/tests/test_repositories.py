"""Repository layer tests for mjrelay.

Tests focus on logic beyond plain CRUD:
- Atomic usage increments under concurrent completions
- Calendar-month usage reset
- History lookup by task ID or message ID (upscale of evicted tasks)
- Saving a detached FullGeneration record across transactions

Simple CRUD operations are not tested (trust SQLAlchemy).
"""

import asyncio
from datetime import UTC, datetime

import pytest

from fakes import load_account
from mjrelay.models.full_generation import FullGeneration, FullGenerationStatus
from mjrelay.models.history import HistoryAction, HistoryEntry
from mjrelay.repositories.account import AccountRepository
from mjrelay.repositories.history import HistoryRepository


@pytest.mark.asyncio
async def test_concurrent_usage_increments_are_not_lost(uow_factory, account):
    """Test AccountRepository.increment_usage under concurrent completions.

    Scenario:
    1. Five generations finish at the same time for one account
    2. Each charges usage in its own transaction
    3. Assert the counter went up by exactly five

    increment_usage issues a single UPDATE ... SET usage_count = usage_count + 1,
    so no read-modify-write race is possible.
    """

    async def charge():
        async with await uow_factory() as uow:
            await uow.accounts.increment_usage(account.api_key)

    await asyncio.gather(*(charge() for _ in range(5)))

    reloaded = await load_account(uow_factory, account.api_key)
    assert reloaded.usage_count == 5


@pytest.mark.asyncio
async def test_usage_reset_only_when_month_changed(session, account):
    """Test AccountRepository.reset_usage_if_due.

    Scenario:
    1. Account used 7 generations, last reset on Jan 31st
    2. Check again later on Jan 31st: no reset
    3. Check on Feb 1st: counter zeroed and reset date moved
    """
    repo = AccountRepository(session)
    stored = await repo.get_by_api_key(account.api_key)
    stored.usage_count = 7
    stored.usage_reset_at = datetime(2026, 1, 31, 8, 0, tzinfo=UTC)

    later_same_day = datetime(2026, 1, 31, 23, 0, tzinfo=UTC)
    assert await repo.reset_usage_if_due(stored, now=later_same_day) is False
    assert stored.usage_count == 7

    february = datetime(2026, 2, 1, 0, 5, tzinfo=UTC)
    assert await repo.reset_usage_if_due(stored, now=february) is True
    assert stored.usage_count == 0
    assert stored.usage_reset_at == february


@pytest.mark.asyncio
async def test_find_generation_by_task_or_message_id(session, account, other_account):
    """Test HistoryRepository.find_generation.

    Scenario:
    1. Account has a generate entry and an upscale entry for the same grid
    2. Another account has a generate entry with the same message ID
    3. Lookup by task ID and by message ID returns only the caller's generate entry
    """
    repo = HistoryRepository(session)
    generate = HistoryEntry(
        api_key=account.api_key,
        action=HistoryAction.GENERATE,
        prompt="a cat",
        image_url="https://cdn.discordapp.com/attachments/1/2/a.png",
        message_id="5000",
        task_id="task_1_abc",
    )
    await repo.append(generate)
    await repo.append(
        HistoryEntry(
            api_key=account.api_key,
            action=HistoryAction.UPSCALE,
            image_url="https://cdn.discordapp.com/attachments/1/2/b.png",
            message_id="5000",
            variant_index=1,
        )
    )
    await repo.append(
        HistoryEntry(
            api_key=other_account.api_key,
            action=HistoryAction.GENERATE,
            image_url="https://cdn.discordapp.com/attachments/1/2/c.png",
            message_id="5000",
        )
    )

    by_task = await repo.find_generation(account.api_key, "task_1_abc")
    by_message = await repo.find_generation(account.api_key, "5000")

    assert by_task.id == generate.id
    assert by_message.id == generate.id
    assert await repo.find_generation(account.api_key, "task_unknown") is None


@pytest.mark.asyncio
async def test_history_listing_is_newest_first_and_limited(session, account):
    """Test HistoryRepository.list_for_account ordering and limit."""
    repo = HistoryRepository(session)
    for minute in range(5):
        await repo.append(
            HistoryEntry(
                api_key=account.api_key,
                image_url=f"https://cdn.discordapp.com/attachments/1/2/{minute}.png",
                created_at=datetime(2026, 3, 1, 12, minute, tzinfo=UTC),
            )
        )

    entries = await repo.list_for_account(account.api_key, limit=3)

    assert [e.image_url[-5:] for e in entries] == ["4.png", "3.png", "2.png"]
    assert len(await repo.list_recent(limit=100)) == 5


@pytest.mark.asyncio
async def test_detached_full_generation_is_saved_across_transactions(uow_factory, account):
    """Test FullGenerationRepository.save with a record kept in memory.

    Scenario:
    1. Persist a record in one transaction
    2. Advance its status outside any session
    3. Save in a second transaction and reload in a third
    """
    record = FullGeneration(api_key=account.api_key, prompt="a cat", variants=[1, 3])
    async with await uow_factory() as uow:
        await uow.full_generations.add(record)

    record.mark_generated({"url": "https://x/a.png", "message_id": "5000"})
    async with await uow_factory() as uow:
        await uow.full_generations.save(record)

    async with await uow_factory() as uow:
        stored = await uow.full_generations.get_by_id(record.id)

    assert stored.status == FullGenerationStatus.GENERATED
    assert stored.original["message_id"] == "5000"
    assert stored.variants == [1, 3]
