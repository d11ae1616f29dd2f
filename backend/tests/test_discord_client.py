"""Tests for DiscordClient against a mocked Discord HTTP API."""

import json

import httpx
import pytest

from fakes import BOT_ID, RecordingSleep, image_url, snowflake
from mjrelay.services.discord.client import DiscordClient, Message, prompt_key
from mjrelay.services.exceptions import (
    AuthError,
    BackendSubmissionError,
    BackendTransientError,
    RateLimitedError,
)

HASH = "0f8e6a3c-1b2d-4e5f-8a9b-0c1d2e3f4a5b"
MESSAGES_PATH = "/api/v9/channels/2222/messages"


def message_payload(content: str, message_id=None, attachment: bool = True, buttons=True) -> dict:
    payload = {
        "id": message_id or snowflake(),
        "author": {"id": BOT_ID},
        "content": content,
        "attachments": [],
        "components": [],
        "flags": 0,
    }
    if attachment:
        url = image_url(HASH)
        payload["attachments"] = [
            {"url": url, "proxy_url": url.replace("cdn.", "media."), "filename": "grid.png"}
        ]
    if buttons:
        payload["components"] = [
            {
                "type": 1,
                "components": [
                    {"type": 2, "custom_id": f"MJ::JOB::upsample::{i}::{HASH}"} for i in (1, 2)
                ],
            }
        ]
    return payload


class DiscordStub:
    """Routes requests to canned answers and records them."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.interaction_status = 204
        self.interaction_body = ""
        self.message_pages: list = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/api/v9/users/@me":
            return httpx.Response(200, json={"id": "1"})
        if request.url.path == "/api/v9/interactions":
            if self.interaction_status == 429:
                return httpx.Response(429, json={"retry_after": 3.5})
            return httpx.Response(self.interaction_status, text=self.interaction_body)
        if request.url.path == MESSAGES_PATH:
            pages = self.message_pages
            page = pages.pop(0) if len(pages) > 1 else pages[0]
            if isinstance(page, httpx.Response):
                return page
            return httpx.Response(200, json=page)
        return httpx.Response(404)


@pytest.fixture
def stub():
    return DiscordStub()


@pytest.fixture
def client(settings, stub):
    settings.imagine_poll_interval_seconds = 1.0
    settings.imagine_timeout_seconds = 5.0
    return DiscordClient(
        server_id="1111",
        channel_id="2222",
        token="secret-token",
        settings=settings,
        transport=httpx.MockTransport(stub),
        sleep=RecordingSleep(),
    )


def test_message_from_payload():
    payload = message_payload("**a cat** - <@1> (fast)")
    payload["message_reference"] = {"message_id": "99"}

    message = Message.from_payload(payload)

    assert message.author_id == BOT_ID
    assert message.reference_id == "99"
    assert message.job_hash == HASH
    assert message.attachments[0].filename == "grid.png"
    assert message.progress is None


def test_message_progress_marker():
    message = Message.from_payload(message_payload("**a cat** - <@1> (62%) (fast)"))
    assert message.progress == 62


def test_prompt_key_strips_parameters():
    assert prompt_key("a cat --ar 16:9 --v 6") == "a cat"
    assert prompt_key("  plain prompt ") == "plain prompt"


@pytest.mark.asyncio
async def test_connect_rejected_token_is_auth_error(settings):
    transport = httpx.MockTransport(lambda request: httpx.Response(401))
    client = DiscordClient("1111", "2222", "bad", settings, transport=transport)

    with pytest.raises(AuthError) as exc_info:
        await client.connect()
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_requests_carry_user_token(client, stub):
    await client.connect()
    assert stub.requests[0].headers["Authorization"] == "secret-token"


@pytest.mark.asyncio
async def test_transport_failure_marks_session_unhealthy(settings):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = DiscordClient("1111", "2222", "t", settings, transport=httpx.MockTransport(handler))

    with pytest.raises(BackendTransientError):
        await client.fetch_recent_messages()
    assert client.healthy is False


@pytest.mark.asyncio
async def test_fetch_message_reads_window_around_id(client, stub):
    target = message_payload("grid", message_id="5000")
    stub.message_pages = [[target]]

    message = await client.fetch_message("5000")

    assert message.id == "5000"
    params = stub.requests[0].url.params
    assert params["around"] == "5000"
    assert params["limit"] == "1"


@pytest.mark.asyncio
async def test_fetch_message_missing(client, stub):
    stub.message_pages = [[message_payload("neighbour", message_id="4999")]]
    assert await client.fetch_message("5000") is None

    stub.message_pages = [httpx.Response(404)]
    assert await client.fetch_message("5000") is None


@pytest.mark.asyncio
async def test_fetch_rate_limited(client, stub):
    stub.message_pages = [httpx.Response(429, json={"retry_after": 2.0})]

    with pytest.raises(RateLimitedError) as exc_info:
        await client.fetch_recent_messages()
    assert exc_info.value.retry_after == 2.0


@pytest.mark.asyncio
async def test_submit_interaction_payload(client, stub):
    response = await client.submit_interaction("MJ::JOB::upsample::1::x", "5000", message_flags=64)

    assert response.accepted
    body = json.loads(stub.requests[0].content)
    assert body["type"] == 3
    assert body["message_id"] == "5000"
    assert body["message_flags"] == 64
    assert body["data"] == {"component_type": 2, "custom_id": "MJ::JOB::upsample::1::x"}
    assert body["channel_id"] == "2222"


@pytest.mark.asyncio
async def test_submit_interaction_reports_retry_after(client, stub):
    stub.interaction_status = 429

    response = await client.submit_interaction("x", "5000")

    assert not response.accepted
    assert response.retry_after == 3.5


@pytest.mark.asyncio
async def test_imagine_reports_progress_and_returns_grid(client, stub):
    progress = []
    stub.message_pages = [
        [message_payload("**a cat --ar 1:1** - <@1> (Waiting to start)", attachment=False)],
        [message_payload("**a cat --ar 1:1** - <@1> (41%) (fast)", buttons=False)],
        [message_payload("**a cat --ar 1:1** - <@1> (41%) (fast)", buttons=False)],
        [message_payload("**a cat --ar 1:1** - <@1> (fast)", message_id=snowflake())],
    ]

    result = await client.imagine("a cat --ar 1:1", on_progress=progress.append)

    assert progress == [0, 41]
    assert result.content_hash == HASH
    assert result.url == image_url(HASH)
    command = json.loads(stub.requests[0].content)
    assert command["type"] == 2
    assert command["data"]["name"] == "imagine"
    assert command["data"]["options"][0]["value"] == "a cat --ar 1:1"


@pytest.mark.asyncio
async def test_imagine_ignores_other_prompts(client, stub):
    stub.message_pages = [[message_payload("**a dog** - <@1> (fast)")]]

    with pytest.raises(BackendSubmissionError, match="Timed out"):
        await client.imagine("a cat")

    assert len(stub.requests) == 1 + 5


@pytest.mark.asyncio
async def test_imagine_rejected_command(client, stub):
    stub.interaction_status = 400
    stub.interaction_body = "Invalid Form Body"

    with pytest.raises(BackendSubmissionError, match="400"):
        await client.imagine("a cat")


@pytest.mark.asyncio
async def test_unreadable_message_list_is_transient(client, stub):
    stub.message_pages = [httpx.Response(200, text="<html>cloudflare</html>")]

    with pytest.raises(BackendTransientError, match="Unreadable"):
        await client.fetch_recent_messages()
    with pytest.raises(BackendTransientError, match="Unreadable"):
        await client.fetch_message("5000")


@pytest.mark.parametrize(
    "body",
    [
        {"message": "Unknown Channel"},
        [{"author": {"id": BOT_ID}, "content": "no id"}],
        ["not a message"],
    ],
)
@pytest.mark.asyncio
async def test_malformed_message_payload_is_transient(client, stub, body):
    stub.message_pages = [httpx.Response(200, json=body)]

    with pytest.raises(BackendTransientError):
        await client.fetch_recent_messages()


@pytest.mark.asyncio
async def test_imagine_survives_unreadable_poll(client, stub):
    stub.message_pages = [
        httpx.Response(200, text="<html>502 Bad Gateway</html>"),
        [message_payload("**a cat** - <@1> (fast)", message_id=snowflake())],
    ]

    result = await client.imagine("a cat")

    assert result.content_hash == HASH
    assert len(stub.requests) == 1 + 2
