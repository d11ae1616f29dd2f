"""Upscale executor: press a variant's U-button and wait for the upscaled image.

Lifecycle of one call:

    Eligible -> Submitting -> AwaitingResult -> Resolved
                    |                |
                    +-> Exhausted <--+

- Eligible: variant index, hash and message age are checked locally. Discord
  refuses component interactions on messages older than 15 minutes, so an old
  message fails fast with no network call.
- Submitting: candidate custom_id encodings are tried in order. 204 moves on;
  429 sleeps for the advertised delay and retries the same candidate; any other
  answer is remembered and the next candidate is tried.
- AwaitingResult: recent channel messages are polled for the bot's reply,
  matched by reply reference or by the "Image #<n>" marker.

Nothing caller-visible is written before the call succeeds, so a failed call
can simply be retried.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from mjrelay.core.config import Settings
from mjrelay.models.account import Account
from mjrelay.services.discord.client import (
    CLOCK_SKEW_MS,
    DiscordClient,
    InteractionResponse,
    Message,
)
from mjrelay.services.discord.sessions import SessionRegistry
from mjrelay.services.discord.snowflake import snowflake_to_ms
from mjrelay.services.exceptions import (
    BackendTransientError,
    EligibilityExpiredError,
    PermanentError,
    ProtocolMismatchError,
    RateLimitedError,
    ServiceError,
    UpscaleTimeoutError,
    ValidationError,
)
from mjrelay.services.image_reference import ImageReference
from mjrelay.services.polling import POLL_TIMEOUT, RetryPolicy, Sleep, poll
from mjrelay.services.upscale.tokens import CandidateToken, build_candidates

logger = structlog.get_logger(__name__)

UPSCALE_VALIDITY_MS = 15 * 60 * 1000
VARIANT_INDEXES = (1, 2, 3, 4)
IMAGE_MARKER = re.compile(r"Image #(\d)")


@dataclass(frozen=True)
class UpscaleOutcome:
    """Result of upscaling one variant of a generation."""

    variant_index: int
    success: bool
    image: Optional[ImageReference] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def succeeded(cls, variant_index: int, image: ImageReference) -> "UpscaleOutcome":
        return cls(variant_index=variant_index, success=True, image=image)

    @classmethod
    def failed(cls, variant_index: int, error: BaseException) -> "UpscaleOutcome":
        kind = error.kind if isinstance(error, ServiceError) else type(error).__name__
        return cls(variant_index=variant_index, success=False, error=str(error), error_kind=kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "variant_index": self.variant_index,
            "success": self.success,
            "image": self.image.to_dict() if self.image else None,
            "error": self.error,
            "error_kind": self.error_kind,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UpscaleOutcome":
        return cls(
            variant_index=int(data["variant_index"]),
            success=bool(data["success"]),
            image=ImageReference.from_dict(data["image"]) if data.get("image") else None,
            error=data.get("error"),
            error_kind=data.get("error_kind"),
        )


def classify_rejection(response: InteractionResponse) -> ServiceError:
    """Turn a non-204 interaction answer into the error remembered for the candidate."""
    body = response.body[:300]
    if response.status_code == 404:
        return PermanentError(f"Message not found or button expired (404): {body}")
    if response.status_code == 400:
        return PermanentError(f"Bad Request (400): {body}")
    if response.status_code in (401, 403):
        return PermanentError(
            f"Unauthorized ({response.status_code}): check the account's Discord token"
        )
    if response.status_code == 429:
        return RateLimitedError(
            "Rate limit persisted after retries", retry_after=response.retry_after or 1.0
        )
    return PermanentError(f"Discord API error: {response.status_code} - {body}")


class UpscaleExecutor:
    """Negotiates the upscale interaction and polls for its result."""

    def __init__(
        self,
        sessions: SessionRegistry,
        settings: Settings,
        candidates: Optional[list[CandidateToken]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Sleep = asyncio.sleep,
    ):
        """Initialize executor.

        Args:
            sessions: Discord session registry
            settings: Application settings (poll budget, rate-limit retries, formats)
            candidates: Ordered encoders (defaults to UPSCALE_TOKEN_FORMATS)
            clock: Wall clock in Unix seconds (eligibility checks)
            sleep: Sleep implementation (rate-limit backoff and polling)
        """
        self.sessions = sessions
        self.settings = settings
        self.candidates = (
            candidates
            if candidates is not None
            else build_candidates(settings.upscale_token_formats)
        )
        self.clock = clock
        self.sleep = sleep

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def check_eligibility(self, message_id: str, variant_index: int, content_hash: str) -> None:
        """Validate inputs and the message age without touching the network.

        Raises:
            ValidationError: Bad index, missing hash or malformed message ID
            EligibilityExpiredError: Message is 15 minutes old or older
        """
        if variant_index not in VARIANT_INDEXES:
            raise ValidationError(
                f"Variant index must be 1-4 (got {variant_index})",
                hint="1 = top left, 2 = top right, 3 = bottom left, 4 = bottom right",
            )
        if not content_hash:
            raise ValidationError("Job hash is required to upscale")
        try:
            created_ms = snowflake_to_ms(message_id)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid message ID: {message_id!r}")

        age_ms = self._now_ms() - created_ms
        if age_ms >= UPSCALE_VALIDITY_MS:
            raise EligibilityExpiredError(
                f"Message {message_id} is {age_ms // 1000}s old; "
                "upscale buttons expire after 15 minutes",
                hint="Generate a new image and upscale it within 15 minutes",
            )

    async def upscale(
        self,
        message_id: str,
        variant_index: int,
        content_hash: str,
        account: Account,
        message_flags: int = 0,
    ) -> ImageReference:
        """Upscale one variant of a finished generation.

        Args:
            message_id: Snowflake of the grid message with the U-buttons
            variant_index: Which quadrant to upscale (1-4)
            content_hash: Job hash of the grid
            account: Account whose Discord session is used
            message_flags: Flags of the grid message

        Returns:
            ImageReference of the upscaled image

        Raises:
            ValidationError / EligibilityExpiredError: Rejected before any network call
            ProtocolMismatchError: No candidate encoding was accepted
            UpscaleTimeoutError: Accepted, but no result appeared within the poll budget
        """
        self.check_eligibility(message_id, variant_index, content_hash)

        log = logger.bind(message_id=message_id, variant_index=variant_index)
        client = await self.sessions.get(account)

        submitted_ms = self._now_ms()
        custom_id = await self._submit(
            client, message_id, variant_index, content_hash, message_flags
        )
        log.info("upscale.accepted", custom_id=custom_id)

        image = await self._await_result(client, message_id, variant_index, submitted_ms)
        log.info("upscale.completed", result_message_id=image.message_id)
        return image

    async def _submit(
        self,
        client: DiscordClient,
        message_id: str,
        variant_index: int,
        content_hash: str,
        message_flags: int,
    ) -> str:
        """Try candidates in order; return the accepted custom_id."""
        last_error: Optional[ServiceError] = None

        for position, encode in enumerate(self.candidates, start=1):
            custom_id = encode(variant_index, content_hash)
            rate_limit_retries = 0

            while True:
                try:
                    response = await client.submit_interaction(custom_id, message_id, message_flags)
                except BackendTransientError as e:
                    last_error = e
                    logger.warning(
                        "upscale.candidate.failed",
                        candidate=position,
                        custom_id=custom_id,
                        error_message=str(e),
                    )
                    break

                if response.accepted:
                    return custom_id

                if (
                    response.status_code == 429
                    and rate_limit_retries < self.settings.upscale_max_rate_limit_retries
                ):
                    rate_limit_retries += 1
                    delay = response.retry_after if response.retry_after is not None else 1.0
                    logger.info(
                        "upscale.candidate.rate_limited",
                        candidate=position,
                        retry_after=delay,
                        retry=rate_limit_retries,
                    )
                    await self.sleep(delay)
                    continue

                last_error = classify_rejection(response)
                logger.info(
                    "upscale.candidate.rejected",
                    candidate=position,
                    custom_id=custom_id,
                    status_code=response.status_code,
                    not_found=response.status_code == 404,
                )
                break

        raise ProtocolMismatchError(
            f"No upscale encoding accepted after {len(self.candidates)} candidates; "
            f"last error: {last_error}",
            hint="The bot's button format may have changed; update UPSCALE_TOKEN_FORMATS",
        )

    def _is_result(
        self, message: Message, message_id: str, variant_index: int, submitted_ms: int
    ) -> bool:
        if message.author_id != self.settings.midjourney_bot_id or not message.attachments:
            return False
        if message.id == message_id:
            return False
        if snowflake_to_ms(message.id) < submitted_ms - CLOCK_SKEW_MS:
            return False
        if message.reference_id is not None and message.reference_id != message_id:
            return False
        # Every upscale of a grid replies to the same message; the marker tells them apart
        marker = IMAGE_MARKER.search(message.content)
        if marker is not None:
            return int(marker.group(1)) == variant_index
        return message.reference_id == message_id

    async def _await_result(
        self, client: DiscordClient, message_id: str, variant_index: int, submitted_ms: int
    ) -> ImageReference:
        policy = RetryPolicy(
            max_attempts=self.settings.upscale_max_attempts,
            interval_seconds=self.settings.upscale_poll_interval_seconds,
            delay_first=True,
        )

        async def check(attempt: int) -> Optional[ImageReference]:
            for message in await client.fetch_recent_messages():
                if self._is_result(message, message_id, variant_index, submitted_ms):
                    attachment = message.attachments[0]
                    return ImageReference.derive(
                        url=attachment.url,
                        message_id=message.id,
                        backend_hash=message.job_hash,
                        proxy_url=attachment.proxy_url,
                        flags=message.flags,
                        ephemeral_marker=self.settings.ephemeral_marker,
                    )
            return None

        result = await poll(
            check,
            policy,
            sleep=self.sleep,
            label="upscale.result",
            message_id=message_id,
            variant_index=variant_index,
        )
        if result is POLL_TIMEOUT:
            raise UpscaleTimeoutError(
                f"Timeout waiting for upscale result of image #{variant_index}",
                hint="The upscale may still appear in Discord; retry the upscale request",
            )
        return result
