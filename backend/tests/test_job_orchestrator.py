"""Tests for JobOrchestrator (submit -> generate -> resolve -> history)."""

import asyncio

import httpx
import pytest

from fakes import BOT_ID, RecordingSleep, bot_message, drain, image_url, load_account, snowflake
from mjrelay.models.history import HistoryAction
from mjrelay.services.attachment_resolver import AttachmentResolver
from mjrelay.services.discord.client import DiscordClient, GenerationResult
from mjrelay.services.discord.sessions import SessionRegistry
from mjrelay.services.exceptions import AuthError, BackendSubmissionError, ValidationError
from mjrelay.services.image_reference import ImageReference
from mjrelay.services.task_registry import GenerationTask, TaskRegistry, TaskStatus
from mjrelay.workers.job_orchestrator import JobOrchestrator

HASH = "0f8e6a3c-1b2d-4e5f-8a9b-0c1d2e3f4a5b"


@pytest.fixture
def registry():
    return TaskRegistry()


@pytest.fixture
def orchestrator(registry, sessions, uow_factory, settings):
    resolver = AttachmentResolver(sessions, settings, sleep=RecordingSleep())
    return JobOrchestrator(registry, sessions, resolver, uow_factory, settings)


@pytest.fixture
def grid_id():
    return snowflake()


@pytest.fixture
def finished_grid(fake_client, grid_id):
    fake_client.imagine_result = GenerationResult(
        message_id=grid_id, url=image_url(HASH), content_hash=HASH
    )
    return fake_client.imagine_result


async def history_of(uow_factory, api_key):
    async with await uow_factory() as uow:
        return await uow.history.list_for_account(api_key, limit=50)


@pytest.mark.asyncio
async def test_submit_returns_pending_task_before_backend_call(
    orchestrator, registry, fake_client, finished_grid, account, uow_factory
):
    fake_client.imagine_gate = asyncio.Event()
    fake_client.progress_steps = [10, 55]

    task = orchestrator.submit("  a cat  ", account)

    assert task.status == TaskStatus.PENDING
    assert task.prompt == "a cat"
    assert registry.get(task.id, account.api_key) is task
    assert fake_client.imagine_prompts == []

    for _ in range(5):
        await asyncio.sleep(0)
    assert task.status == TaskStatus.PROCESSING
    assert task.progress == 55
    assert (await load_account(uow_factory, account.api_key)).usage_count == 0

    fake_client.imagine_gate.set()
    await drain(orchestrator)

    assert task.status == TaskStatus.COMPLETED
    assert task.result.message_id == finished_grid.message_id
    assert task.result.content_hash == HASH
    assert (await load_account(uow_factory, account.api_key)).usage_count == 1

    history = await history_of(uow_factory, account.api_key)
    assert len(history) == 1
    assert history[0].action == HistoryAction.GENERATE
    assert history[0].task_id == task.id
    assert history[0].message_id == finished_grid.message_id


@pytest.mark.asyncio
async def test_generation_failure_is_terminal_and_not_retried(
    orchestrator, fake_client, account, uow_factory
):
    fake_client.imagine_error = BackendSubmissionError("Imagine command rejected (400)")

    task = orchestrator.submit("a cat", account)
    await drain(orchestrator)

    assert task.status == TaskStatus.FAILED
    assert "rejected" in task.error
    assert fake_client.imagine_prompts == ["a cat"]
    assert (await load_account(uow_factory, account.api_key)).usage_count == 0
    assert await history_of(uow_factory, account.api_key) == []


@pytest.mark.asyncio
async def test_session_failure_fails_task(orchestrator, registry, fake_client, account):
    fake_client.connect_error = AuthError("Discord rejected the account token", status_code=403)
    task = orchestrator.submit("a cat", account)

    await drain(orchestrator)

    assert task.status == TaskStatus.FAILED
    assert task.error == "Discord rejected the account token"


@pytest.mark.asyncio
async def test_run_wraps_unexpected_errors(orchestrator, registry, fake_client, account):
    fake_client.imagine_error = RuntimeError("socket closed")
    task = registry.add(GenerationTask(prompt="a cat", api_key=account.api_key))

    with pytest.raises(BackendSubmissionError, match="socket closed"):
        await orchestrator.run(task, account)
    assert task.status == TaskStatus.FAILED


@pytest.mark.asyncio
async def test_ephemeral_attachment_is_resolved(
    orchestrator, fake_client, account, grid_id, uow_factory
):
    fake_client.imagine_result = GenerationResult(
        message_id=grid_id, url=image_url(HASH, ephemeral=True)
    )
    fake_client.message_states = [
        bot_message("grid", url=image_url(HASH, ephemeral=True), message_id=grid_id),
        bot_message("grid", url=image_url(HASH), message_id=grid_id),
    ]

    task = orchestrator.submit("a cat", account)
    await drain(orchestrator)

    assert task.status == TaskStatus.COMPLETED
    assert task.result.ephemeral is False
    assert task.result.url == image_url(HASH)
    assert task.result.content_hash == HASH
    history = await history_of(uow_factory, account.api_key)
    assert history[0].image_url == image_url(HASH)


@pytest.mark.asyncio
async def test_unresolved_attachment_keeps_ephemeral_url(
    orchestrator, fake_client, account, grid_id, settings, uow_factory
):
    ephemeral_url = image_url(HASH, ephemeral=True)
    fake_client.imagine_result = GenerationResult(message_id=grid_id, url=ephemeral_url)
    fake_client.message_states = [bot_message("grid", url=ephemeral_url, message_id=grid_id)]

    task = orchestrator.submit("a cat", account)
    await drain(orchestrator)

    assert task.status == TaskStatus.COMPLETED
    assert task.result.ephemeral is True
    assert task.result.url == ephemeral_url
    assert fake_client.fetch_message_calls == settings.resolve_max_attempts
    assert (await load_account(uow_factory, account.api_key)).usage_count == 1


@pytest.mark.asyncio
async def test_resolution_is_bounded_by_wall_clock(
    registry, sessions, uow_factory, settings, fake_client, account, grid_id
):
    settings.resolve_timeout_seconds = 0.05
    settings.resolve_poll_interval_seconds = 5.0
    resolver = AttachmentResolver(sessions, settings)
    orchestrator = JobOrchestrator(registry, sessions, resolver, uow_factory, settings)
    fake_client.imagine_result = GenerationResult(
        message_id=grid_id, url=image_url(HASH, ephemeral=True)
    )

    task = orchestrator.submit("a cat", account)
    await asyncio.wait_for(drain(orchestrator), timeout=2)

    assert task.status == TaskStatus.COMPLETED
    assert task.result.ephemeral is True


@pytest.mark.asyncio
async def test_unlimited_account_is_not_charged(
    orchestrator, finished_grid, admin_account, uow_factory
):
    task = orchestrator.submit("a cat", admin_account)
    await drain(orchestrator)

    assert task.status == TaskStatus.COMPLETED
    assert (await load_account(uow_factory, admin_account.api_key)).usage_count == 0
    assert len(await history_of(uow_factory, admin_account.api_key)) == 1


@pytest.mark.asyncio
async def test_empty_prompt_registers_nothing(orchestrator, registry, account):
    with pytest.raises(ValidationError, match="empty"):
        orchestrator.submit("   ", account)

    assert len(registry) == 0
    assert orchestrator.active_jobs == 0


@pytest.mark.asyncio
async def test_record_upscale_appends_history(orchestrator, account, uow_factory):
    image = ImageReference.derive(url=image_url(HASH), message_id=snowflake())

    await orchestrator.record_upscale(account, image, 3, prompt="a cat")

    history = await history_of(uow_factory, account.api_key)
    assert len(history) == 1
    assert history[0].action == HistoryAction.UPSCALE
    assert history[0].variant_index == 3
    assert history[0].content_hash == HASH


@pytest.mark.asyncio
async def test_shutdown_cancels_in_flight_jobs(orchestrator, fake_client, account):
    fake_client.imagine_gate = asyncio.Event()
    orchestrator.submit("a cat", account)
    await asyncio.sleep(0)
    assert orchestrator.active_jobs == 1

    await orchestrator.shutdown()

    assert orchestrator.active_jobs == 0


def discord_handler(grid_url: str):
    """Discord API whose single-message window answers with a proxy error page."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/users/@me"):
            return httpx.Response(200, json={"id": "1"})
        if request.url.path.endswith("/interactions"):
            return httpx.Response(204)
        if "around" in request.url.params:
            return httpx.Response(200, text="<html>cloudflare</html>")
        grid = {
            "id": snowflake(),
            "author": {"id": BOT_ID},
            "content": "**a cat** - <@1> (fast)",
            "attachments": [{"url": grid_url}],
        }
        return httpx.Response(200, json=[grid])

    return handler


@pytest.mark.asyncio
async def test_unreadable_resolve_polls_still_complete_task(
    registry, uow_factory, settings, account
):
    ephemeral_url = image_url(HASH, ephemeral=True)
    transport = httpx.MockTransport(discord_handler(ephemeral_url))
    sessions = SessionRegistry(
        settings,
        client_factory=lambda account, settings: DiscordClient(
            account.server_id,
            account.channel_id,
            account.salai_token,
            settings,
            transport=transport,
            sleep=RecordingSleep(),
        ),
    )
    resolver = AttachmentResolver(sessions, settings, sleep=RecordingSleep())
    orchestrator = JobOrchestrator(registry, sessions, resolver, uow_factory, settings)

    task = orchestrator.submit("a cat", account)
    await asyncio.wait_for(drain(orchestrator), timeout=5)
    await sessions.close_all()

    assert task.status == TaskStatus.COMPLETED
    assert task.result.ephemeral is True
    assert task.result.url == ephemeral_url
    assert task.result.content_hash == HASH
    assert (await load_account(uow_factory, account.api_key)).usage_count == 1


@pytest.mark.asyncio
async def test_resolver_crash_keeps_ephemeral_reference(
    orchestrator, fake_client, account, grid_id, monkeypatch
):
    ephemeral_url = image_url(HASH, ephemeral=True)
    fake_client.imagine_result = GenerationResult(message_id=grid_id, url=ephemeral_url)

    async def broken_resolve(reference, account, max_attempts=None):
        raise KeyError("attachments")

    monkeypatch.setattr(orchestrator.resolver, "resolve", broken_resolve)

    task = orchestrator.submit("a cat", account)
    await drain(orchestrator)

    assert task.status == TaskStatus.COMPLETED
    assert task.result.url == ephemeral_url


@pytest.mark.asyncio
async def test_crash_after_generation_still_finalizes_task(
    orchestrator, finished_grid, account, monkeypatch
):
    async def broken_history(entry):
        raise RuntimeError("history table missing")

    monkeypatch.setattr(orchestrator, "_append_history", broken_history)

    task = orchestrator.submit("a cat", account)
    await drain(orchestrator)

    assert task.status == TaskStatus.FAILED
    assert task.error == "Internal error: history table missing"
    assert task.completed_at is not None
