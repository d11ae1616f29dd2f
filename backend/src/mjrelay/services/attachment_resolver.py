"""Attachment resolver: wait for an ephemeral attachment URL to become permanent.

Discord first serves fresh bot output through short-lived
``ephemeral-attachments`` links and later swaps in a permanent CDN URL on the
same message. Nothing notifies us of the swap, so we re-read the message.
"""

import asyncio
from typing import Optional, Union

import structlog

from mjrelay.core.config import Settings
from mjrelay.models.account import Account
from mjrelay.services.discord.sessions import SessionRegistry
from mjrelay.services.image_reference import ImageReference, is_ephemeral_url
from mjrelay.services.polling import POLL_TIMEOUT, PollTimeout, RetryPolicy, Sleep, poll

logger = structlog.get_logger(__name__)

RESOLVE_TIMEOUT = POLL_TIMEOUT


class AttachmentResolver:
    """Polls a message until its first attachment has a permanent URL."""

    def __init__(self, sessions: SessionRegistry, settings: Settings, sleep: Sleep = asyncio.sleep):
        self.sessions = sessions
        self.settings = settings
        self.sleep = sleep

    async def resolve(
        self,
        reference: ImageReference,
        account: Account,
        max_attempts: Optional[int] = None,
    ) -> Union[ImageReference, PollTimeout]:
        """Resolve reference to its permanent form.

        Exactly max_attempts reads are made at most. A failed read still uses up
        its attempt.

        Args:
            reference: Reference whose message carries the ephemeral attachment
            account: Owner of the Discord session
            max_attempts: Poll budget (defaults to RESOLVE_MAX_ATTEMPTS)

        Returns:
            Promoted ImageReference, or RESOLVE_TIMEOUT if the URL never became permanent
        """
        client = await self.sessions.get(account)
        policy = RetryPolicy(
            max_attempts=max_attempts or self.settings.resolve_max_attempts,
            interval_seconds=self.settings.resolve_poll_interval_seconds,
        )

        async def check(attempt: int) -> Optional[ImageReference]:
            message = await client.fetch_message(reference.message_id)
            if message is None or not message.attachments:
                return None
            attachment = message.attachments[0]
            if is_ephemeral_url(attachment.url, self.settings.ephemeral_marker):
                return None
            return reference.promoted(attachment.url, attachment.proxy_url)

        result = await poll(
            check,
            policy,
            sleep=self.sleep,
            label="attachment.resolve",
            message_id=reference.message_id,
        )
        if result is not RESOLVE_TIMEOUT:
            logger.info(
                "attachment.resolved",
                message_id=reference.message_id,
                content_hash=result.content_hash,
            )
        return result
