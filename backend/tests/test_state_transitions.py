"""State transition tests for FullGeneration and Account.

Tests focus on validating the full-generation lifecycle state machine:
- Valid transitions between states
- Invalid transitions are rejected with clear error messages
- Failed state is reachable from any non-terminal state
"""

from datetime import UTC, datetime

import pytest

from mjrelay.models.account import UNLIMITED, Account, AccountRole, AccountStatus
from mjrelay.models.errors import InvalidStateTransition
from mjrelay.models.full_generation import FullGeneration, FullGenerationStatus

ORIGINAL = {"url": "https://cdn.discordapp.com/attachments/1/2/a.png", "message_id": "5000"}
STATS = {"total_images": 2, "successful_upscales": 1, "failed_upscales": 0}


def make_record() -> FullGeneration:
    return FullGeneration(api_key="mj_a", prompt="a cat", variants=[1])


@pytest.mark.asyncio
async def test_valid_state_transitions(uow_factory, account):
    """Test all valid transitions of a persisted record.

    Validates the happy path: generating -> generated -> upscaling -> completed
    """
    record = FullGeneration(api_key=account.api_key, prompt="a cat", variants=[1])
    async with await uow_factory() as uow:
        await uow.full_generations.add(record)
    assert record.status == FullGenerationStatus.GENERATING

    record.mark_generated(ORIGINAL)
    assert record.status == FullGenerationStatus.GENERATED
    assert record.original == ORIGINAL

    record.mark_upscaling()
    assert record.status == FullGenerationStatus.UPSCALING

    record.mark_completed([{"variant_index": 1, "success": True}], STATS)
    assert record.status == FullGenerationStatus.COMPLETED
    assert record.completed_at is not None

    async with await uow_factory() as uow:
        await uow.full_generations.save(record)
        stored = await uow.full_generations.get_by_id(record.id)
    assert stored.status == FullGenerationStatus.COMPLETED
    assert stored.stats == STATS


def test_generated_record_can_complete_without_upscaling():
    record = make_record()
    record.mark_generated(ORIGINAL)
    record.mark_completed([], {"total_images": 1})
    assert record.status == FullGenerationStatus.COMPLETED


def test_invalid_state_transition_raises_exception():
    """Test that invalid transitions raise InvalidStateTransition.

    Cases:
    - generating -> upscaling (skipping generated)
    - generating -> completed
    - completed -> generated
    """
    record = make_record()

    with pytest.raises(InvalidStateTransition, match="generated state"):
        record.mark_upscaling()

    with pytest.raises(InvalidStateTransition, match="generated or upscaling"):
        record.mark_completed([], {})

    record.mark_generated(ORIGINAL)
    record.mark_completed([], {})
    with pytest.raises(InvalidStateTransition, match="generating state"):
        record.mark_generated(ORIGINAL)


@pytest.mark.parametrize("steps", [0, 1, 2])
def test_failed_reachable_from_any_non_terminal_state(steps):
    record = make_record()
    if steps >= 1:
        record.mark_generated(ORIGINAL)
    if steps >= 2:
        record.mark_upscaling()

    record.mark_failed("Imagine command rejected")

    assert record.status == FullGenerationStatus.FAILED
    assert record.error == "Imagine command rejected"
    assert record.completed_at is not None


def test_terminal_record_cannot_fail():
    record = make_record()
    record.mark_failed("first")

    with pytest.raises(InvalidStateTransition, match="terminal"):
        record.mark_failed("second")
    assert record.error == "first"


def test_failure_text_is_truncated():
    record = make_record()
    record.mark_failed("x" * 5000)
    assert len(record.error) == 2000


def test_account_toggle_block():
    account = Account.provision("a@example.com", "1", "2", "token")
    assert account.toggle_block() == AccountStatus.BLOCKED
    assert account.toggle_block() == AccountStatus.ACTIVE


def test_account_apply_changes():
    account = Account.provision("a@example.com", "1", "2", "token", monthly_limit=25)

    account.apply_changes({"channel_id": "9", "monthly_limit": 40})
    assert account.channel_id == "9"
    assert account.monthly_limit == 40

    account.apply_changes({"role": AccountRole.ADMIN, "monthly_limit": 40})
    assert account.monthly_limit == UNLIMITED


def test_account_provision():
    user = Account.provision("a@example.com", "1", "2", "token", monthly_limit=25)
    admin = Account.provision("b@example.com", "1", "2", "token", role=AccountRole.ADMIN)

    assert user.api_key.startswith("mj_") and len(user.api_key) == 35
    assert user.api_key != admin.api_key
    assert user.monthly_limit == 25
    assert admin.monthly_limit == UNLIMITED
    assert admin.unlimited and admin.is_admin


def test_account_quota():
    account = Account.provision("a@example.com", "1", "2", "token", monthly_limit=2)
    account.usage_count = 2
    assert account.quota_exceeded

    account.monthly_limit = UNLIMITED
    assert not account.quota_exceeded


def test_account_usage_reset_due():
    account = Account.provision("a@example.com", "1", "2", "token")
    account.usage_reset_at = datetime(2025, 12, 15, tzinfo=UTC)

    assert account.usage_reset_due(datetime(2026, 1, 1, tzinfo=UTC))
    assert not account.usage_reset_due(datetime(2025, 12, 31, 23, 59, tzinfo=UTC))
