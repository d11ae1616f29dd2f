"""Discord client for driving the Midjourney bot through the interactions API.

Midjourney has no public API and no webhooks. Jobs are started by posting
interactions (slash commands, button presses) as a Discord user, and every result
is discovered by reading channel messages back.
"""

import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx
import structlog

from mjrelay.core.config import Settings
from mjrelay.services.discord.snowflake import generate_nonce, snowflake_to_ms
from mjrelay.services.exceptions import (
    AuthError,
    BackendSubmissionError,
    BackendTransientError,
    RateLimitedError,
)
from mjrelay.services.image_reference import UUID_PATTERN
from mjrelay.services.polling import POLL_TIMEOUT, RetryPolicy, Sleep, poll

logger = structlog.get_logger(__name__)

PROGRESS_PATTERN = re.compile(r"\((\d{1,3})%\)")
WAITING_MARKER = "(Waiting to start)"

# Interaction types (Discord API)
APPLICATION_COMMAND = 2
MESSAGE_COMPONENT = 3
BUTTON = 2
CHAT_INPUT = 1
STRING_OPTION = 3

# Results can be stamped slightly before our local clock says we submitted
CLOCK_SKEW_MS = 5000

ProgressCallback = Callable[[int], None]


@dataclass(frozen=True)
class Attachment:
    """Media attached to a message."""

    url: str
    proxy_url: Optional[str] = None
    filename: Optional[str] = None


@dataclass(frozen=True)
class Message:
    """The subset of a Discord message the relay reads."""

    id: str
    author_id: str
    content: str = ""
    attachments: list[Attachment] = field(default_factory=list)
    reference_id: Optional[str] = None
    custom_ids: list[str] = field(default_factory=list)
    flags: int = 0

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Message":
        """Parse a Discord message object."""
        custom_ids = [
            component["custom_id"]
            for row in payload.get("components") or []
            for component in row.get("components") or []
            if component.get("custom_id")
        ]
        reference = payload.get("message_reference") or {}
        return cls(
            id=str(payload["id"]),
            author_id=str((payload.get("author") or {}).get("id", "")),
            content=payload.get("content") or "",
            attachments=[
                Attachment(
                    url=item["url"],
                    proxy_url=item.get("proxy_url"),
                    filename=item.get("filename"),
                )
                for item in payload.get("attachments") or []
                if item.get("url")
            ],
            reference_id=str(reference["message_id"]) if reference.get("message_id") else None,
            custom_ids=custom_ids,
            flags=int(payload.get("flags") or 0),
        )

    @property
    def progress(self) -> Optional[int]:
        """Percentage shown in an in-progress job message, if any."""
        match = PROGRESS_PATTERN.search(self.content)
        return int(match.group(1)) if match else None

    @property
    def job_hash(self) -> Optional[str]:
        """Job hash embedded in the message's button custom_ids, if any."""
        for custom_id in self.custom_ids:
            match = UUID_PATTERN.search(custom_id)
            if match:
                return match.group(1)
        return None


@dataclass(frozen=True)
class InteractionResponse:
    """Outcome of posting an interaction (204 means accepted)."""

    status_code: int
    body: str = ""
    retry_after: Optional[float] = None

    @property
    def accepted(self) -> bool:
        return self.status_code == 204


@dataclass(frozen=True)
class GenerationResult:
    """Finished /imagine job as found in the channel."""

    message_id: str
    url: str
    content_hash: Optional[str] = None
    proxy_url: Optional[str] = None
    flags: int = 0


def prompt_key(prompt: str) -> str:
    """Part of a prompt the bot echoes verbatim (parameters may be rewritten)."""
    return prompt.split(" --", 1)[0].strip()


def parse_messages(response: httpx.Response) -> list[Message]:
    """Decode a message-list body.

    Raises:
        BackendTransientError: Body is not a JSON list of message objects (proxy
            error pages, truncated bodies, payloads missing required fields)
    """
    try:
        payload = response.json()
        if not isinstance(payload, list):
            raise TypeError(f"expected a list, got {type(payload).__name__}")
        return [Message.from_payload(item) for item in payload]
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise BackendTransientError(
            f"Unreadable message list from Discord ({type(e).__name__}: {e}): "
            f"{response.text[:200]}"
        ) from e


def parse_retry_after(response: httpx.Response) -> float:
    """Read the rate-limit delay from a 429 body or Retry-After header."""
    try:
        body = response.json()
        if isinstance(body, dict) and body.get("retry_after") is not None:
            return float(body["retry_after"])
    except ValueError:
        pass
    header = response.headers.get("Retry-After")
    try:
        return float(header) if header else 1.0
    except ValueError:
        return 1.0


class DiscordClient:
    """User-session client for one Discord account (guild + channel + token)."""

    def __init__(
        self,
        server_id: str,
        channel_id: str,
        token: str,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        """Initialize Discord client.

        Args:
            server_id: Guild the Midjourney bot lives in
            channel_id: Channel used for commands and results
            token: Discord user token (never logged)
            settings: Application settings (protocol constants, timeouts)
            transport: Optional httpx transport (tests use httpx.MockTransport)
            sleep: Sleep implementation for poll loops
        """
        self.server_id = server_id
        self.channel_id = channel_id
        self.settings = settings
        self.sleep = sleep
        self.healthy = True
        self._http = httpx.AsyncClient(
            base_url=settings.discord_api_base,
            timeout=settings.discord_http_timeout,
            transport=transport,
            headers={
                "Authorization": token,
                "Content-Type": "application/json",
                "User-Agent": settings.discord_user_agent,
                "Accept": "*/*",
                "Origin": "https://discord.com",
                "Referer": "https://discord.com/channels/@me",
            },
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request, marking the session unhealthy on transport failure.

        Raises:
            BackendTransientError: Network timeout or connection failure
        """
        try:
            return await self._http.request(method, path, **kwargs)
        except httpx.TransportError as e:
            self.healthy = False
            raise BackendTransientError(f"Discord transport error: {type(e).__name__}: {e}")

    async def connect(self) -> None:
        """Validate the token before the session is cached.

        Raises:
            AuthError: Discord rejected the token
            BackendTransientError: Discord unreachable
        """
        response = await self._request("GET", "/users/@me")
        if response.status_code in (401, 403):
            raise AuthError(
                "Discord rejected the account token",
                hint="Update the account's Discord token",
                status_code=403,
            )
        if response.status_code >= 400:
            raise BackendTransientError(
                f"Discord session check failed ({response.status_code}): {response.text}"
            )
        logger.debug("discord.session.connected", channel_id=self.channel_id)

    async def close(self) -> None:
        await self._http.aclose()

    async def fetch_recent_messages(self, limit: Optional[int] = None) -> list[Message]:
        """Fetch the newest messages in the channel (newest first).

        Raises:
            RateLimitedError: Discord answered 429
            BackendTransientError: Non-200 answer, unreadable body or network failure
        """
        response = await self._request(
            "GET",
            f"/channels/{self.channel_id}/messages",
            params={"limit": limit or self.settings.recent_messages_limit},
        )
        if response.status_code == 429:
            raise RateLimitedError("Rate limited reading messages", parse_retry_after(response))
        if response.status_code != 200:
            raise BackendTransientError(
                f"Fetching messages failed ({response.status_code}): {response.text}"
            )
        return parse_messages(response)

    async def fetch_message(self, message_id: str) -> Optional[Message]:
        """Fetch one message by ID.

        User sessions cannot read single messages directly, so this reads the
        one-message window around the ID.

        Returns:
            Message, or None if it no longer exists

        Raises:
            RateLimitedError: Discord answered 429
            BackendTransientError: Unexpected answer, unreadable body or network failure
        """
        response = await self._request(
            "GET",
            f"/channels/{self.channel_id}/messages",
            params={"around": message_id, "limit": 1},
        )
        if response.status_code == 404:
            return None
        if response.status_code == 429:
            raise RateLimitedError("Rate limited reading message", parse_retry_after(response))
        if response.status_code != 200:
            raise BackendTransientError(
                f"Fetching message {message_id} failed ({response.status_code}): {response.text}"
            )
        for message in parse_messages(response):
            if message.id == str(message_id):
                return message
        return None

    async def _post_interaction(self, payload: dict[str, Any]) -> InteractionResponse:
        response = await self._request("POST", "/interactions", json=payload)
        retry_after = parse_retry_after(response) if response.status_code == 429 else None
        return InteractionResponse(
            status_code=response.status_code, body=response.text, retry_after=retry_after
        )

    async def submit_interaction(
        self, custom_id: str, message_id: str, message_flags: int = 0
    ) -> InteractionResponse:
        """Press a button (component interaction) on a bot message.

        Args:
            custom_id: Component token identifying the button
            message_id: Message the button belongs to
            message_flags: Flags of that message

        Returns:
            InteractionResponse (never raises on HTTP status)

        Raises:
            BackendTransientError: Network failure
        """
        payload = {
            "type": MESSAGE_COMPONENT,
            "nonce": generate_nonce(),
            "guild_id": self.server_id,
            "channel_id": self.channel_id,
            "message_flags": message_flags,
            "message_id": message_id,
            "application_id": self.settings.midjourney_bot_id,
            "session_id": self.settings.discord_session_id,
            "data": {"component_type": BUTTON, "custom_id": custom_id},
        }
        return await self._post_interaction(payload)

    async def imagine(
        self, prompt: str, on_progress: Optional[ProgressCallback] = None
    ) -> GenerationResult:
        """Run /imagine and wait for the finished grid image.

        Progress percentages found in the bot's in-progress message are reported
        through on_progress as they change.

        Args:
            prompt: Generation prompt
            on_progress: Called with each new percentage (0-100)

        Returns:
            GenerationResult for the finished message

        Raises:
            BackendSubmissionError: Command rejected, or no result within the timeout
        """
        started_ms = int(time.time() * 1000)
        payload = {
            "type": APPLICATION_COMMAND,
            "nonce": generate_nonce(started_ms),
            "guild_id": self.server_id,
            "channel_id": self.channel_id,
            "application_id": self.settings.midjourney_bot_id,
            "session_id": self.settings.discord_session_id,
            "data": {
                "version": self.settings.imagine_command_version,
                "id": self.settings.imagine_command_id,
                "name": "imagine",
                "type": CHAT_INPUT,
                "options": [{"type": STRING_OPTION, "name": "prompt", "value": prompt}],
                "attachments": [],
            },
        }

        try:
            response = await self._post_interaction(payload)
        except BackendTransientError as e:
            raise BackendSubmissionError(f"Imagine command could not be sent: {e}") from e
        if not response.accepted:
            raise BackendSubmissionError(
                f"Imagine command rejected ({response.status_code}): {response.body}"
            )

        logger.info("discord.imagine.accepted", channel_id=self.channel_id)

        key = prompt_key(prompt)
        last_progress: list[Optional[int]] = [None]

        async def check(attempt: int) -> Optional[GenerationResult]:
            message = next(
                (
                    m
                    for m in await self.fetch_recent_messages()
                    if m.author_id == self.settings.midjourney_bot_id
                    and key in m.content
                    and snowflake_to_ms(m.id) >= started_ms - CLOCK_SKEW_MS
                ),
                None,
            )
            if message is None:
                return None

            waiting = WAITING_MARKER in message.content
            progress = message.progress
            if message.attachments and progress is None and not waiting:
                attachment = message.attachments[0]
                return GenerationResult(
                    message_id=message.id,
                    url=attachment.url,
                    content_hash=message.job_hash,
                    proxy_url=attachment.proxy_url,
                    flags=message.flags,
                )

            if progress is None and waiting:
                progress = 0
            if progress is not None and progress != last_progress[0]:
                last_progress[0] = progress
                if on_progress is not None:
                    on_progress(progress)
            return None

        policy = RetryPolicy.for_budget(
            self.settings.imagine_timeout_seconds,
            self.settings.imagine_poll_interval_seconds,
            delay_first=True,
        )
        result = await poll(check, policy, sleep=self.sleep, label="discord.imagine.poll")
        if result is POLL_TIMEOUT:
            raise BackendSubmissionError(
                "Timed out waiting for the generation result",
                hint="The job may still finish in Discord; submit a new task to retry",
            )
        return result
