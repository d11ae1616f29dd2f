"""Job orchestrator: drive one /imagine request from submit to a finished task.

submit() registers the task and returns it before any network call is made; the
rest runs as a spawned asyncio task that writes back into the TaskRegistry.

Workflow of run():
1. Mark task processing
2. Send /imagine through the account's Discord session, applying progress updates
3. On failure: mark task failed with the error text (never resubmitted, each
   submission is a separate paid job on the backend)
4. On success: charge usage (unless unlimited), derive the ImageReference
5. If the attachment is ephemeral: resolve it, bounded by RESOLVE_TIMEOUT_SECONDS;
   on timeout keep the ephemeral reference
6. Append one history entry, mark task completed

Usage is charged as soon as the backend has produced the image (step 4), before
attachment resolution, because the backend job has been consumed at that point
whatever happens afterwards.
"""

import asyncio
import time
from typing import Callable, Coroutine, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from mjrelay.core.config import Settings
from mjrelay.models.account import Account
from mjrelay.models.history import HistoryAction, HistoryEntry
from mjrelay.services.attachment_resolver import RESOLVE_TIMEOUT, AttachmentResolver
from mjrelay.services.discord.sessions import SessionRegistry
from mjrelay.services.exceptions import BackendSubmissionError, ServiceError
from mjrelay.services.image_reference import ImageReference
from mjrelay.services.prompt_validator import validate_prompt
from mjrelay.services.task_registry import GenerationTask, TaskRegistry

logger = structlog.get_logger(__name__)


class JobOrchestrator:
    """Runs generation tasks in the background and finalizes them in the registry."""

    def __init__(
        self,
        registry: TaskRegistry,
        sessions: SessionRegistry,
        resolver: AttachmentResolver,
        uow_factory: Callable,
        settings: Settings,
    ):
        self.registry = registry
        self.sessions = sessions
        self.resolver = resolver
        self.uow_factory = uow_factory
        self.settings = settings
        # Strong references so spawned jobs are not garbage collected mid-flight
        self._jobs: set[asyncio.Task] = set()

    @property
    def active_jobs(self) -> int:
        return len(self._jobs)

    def spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        """Start detached work and keep it referenced until it finishes."""
        job = asyncio.create_task(coro, name=name)
        self._jobs.add(job)
        job.add_done_callback(self._jobs.discard)
        return job

    def submit(self, prompt: str, account: Account) -> GenerationTask:
        """Register a task and start generating in the background.

        Args:
            prompt: Generation prompt
            account: Authenticated caller

        Returns:
            The registered task (status pending)

        Raises:
            ValidationError: Prompt rejected (nothing registered)
        """
        prompt = validate_prompt(prompt)
        task = self.registry.add(
            GenerationTask(prompt=prompt, api_key=account.api_key, owner=account.email)
        )
        logger.info("task.generation.submitted", task_id=task.id, account=account.email)
        self.spawn(self._run_detached(task, account), name=f"generation:{task.id}")
        return task

    async def _run_detached(self, task: GenerationTask, account: Account) -> None:
        try:
            await self.run(task, account)
        except BackendSubmissionError:
            # Already recorded on the task and logged by run()
            pass
        except Exception as e:
            logger.error(
                "task.generation.crashed",
                task_id=task.id,
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            if not task.is_terminal:
                task.mark_failed(f"Internal error: {e}")

    async def run(self, task: GenerationTask, account: Account) -> ImageReference:
        """Generate the image for task and finalize it.

        Args:
            task: Registered pending task
            account: Owner of the task

        Returns:
            Final ImageReference (permanent, or ephemeral if resolution timed out)

        Raises:
            BackendSubmissionError: Generation failed (task already marked failed)
        """
        start_time = time.time()
        log = logger.bind(task_id=task.id, account=account.email)

        task.mark_processing()
        log.info("task.generation.started")

        try:
            client = await self.sessions.get(account)
            result = await client.imagine(task.prompt, on_progress=task.update_progress)
        except Exception as e:
            task.mark_failed(str(e))
            log.error(
                "task.generation.failed",
                error_type=type(e).__name__,
                error_message=str(e),
                duration_seconds=time.time() - start_time,
            )
            if isinstance(e, BackendSubmissionError):
                raise
            raise BackendSubmissionError(str(e)) from e

        reference = ImageReference.derive(
            url=result.url,
            message_id=result.message_id,
            backend_hash=result.content_hash,
            proxy_url=result.proxy_url,
            flags=result.flags,
            ephemeral_marker=self.settings.ephemeral_marker,
        )
        await self._charge_usage(account, task)

        if reference.ephemeral:
            reference = await self._resolve_bounded(reference, account, task)

        await self._append_history(
            HistoryEntry(
                api_key=account.api_key,
                action=HistoryAction.GENERATE,
                prompt=task.prompt,
                image_url=reference.url,
                message_id=reference.message_id,
                content_hash=reference.content_hash,
                task_id=task.id,
            )
        )
        task.mark_completed(reference)

        log.info(
            "task.generation.succeeded",
            message_id=reference.message_id,
            content_hash=reference.content_hash,
            ephemeral=reference.ephemeral,
            duration_seconds=time.time() - start_time,
        )
        return reference

    async def _resolve_bounded(
        self, reference: ImageReference, account: Account, task: GenerationTask
    ) -> ImageReference:
        """Swap an ephemeral reference for its permanent form within the time budget."""
        try:
            resolved = await asyncio.wait_for(
                self.resolver.resolve(reference, account),
                timeout=self.settings.resolve_timeout_seconds,
            )
        except TimeoutError:
            resolved = RESOLVE_TIMEOUT
        except Exception as e:
            # The image already exists; the task completes with the ephemeral URL
            logger.warning(
                "task.generation.resolve_failed",
                task_id=task.id,
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=not isinstance(e, ServiceError),
            )
            resolved = RESOLVE_TIMEOUT

        if resolved is RESOLVE_TIMEOUT:
            logger.warning(
                "task.generation.resolve_timeout",
                task_id=task.id,
                message_id=reference.message_id,
            )
            return reference
        return resolved

    async def _charge_usage(self, account: Account, task: GenerationTask) -> None:
        if account.unlimited:
            return
        try:
            async with await self.uow_factory() as uow:
                await uow.accounts.increment_usage(account.api_key)
        except SQLAlchemyError as e:
            # The image exists; a bookkeeping failure must not fail the task
            logger.error(
                "task.usage.increment_failed",
                task_id=task.id,
                error_message=str(e),
                exc_info=True,
            )

    async def record_upscale(
        self,
        account: Account,
        image: ImageReference,
        variant_index: int,
        prompt: Optional[str] = None,
    ) -> None:
        """Append the history entry for a successful upscale."""
        await self._append_history(
            HistoryEntry(
                api_key=account.api_key,
                action=HistoryAction.UPSCALE,
                prompt=prompt,
                image_url=image.url,
                message_id=image.message_id,
                content_hash=image.content_hash,
                variant_index=variant_index,
            )
        )

    async def _append_history(self, entry: HistoryEntry) -> None:
        try:
            async with await self.uow_factory() as uow:
                await uow.history.append(entry)
        except SQLAlchemyError as e:
            logger.error(
                "history.append_failed",
                action=entry.action.value,
                message_id=entry.message_id,
                error_message=str(e),
                exc_info=True,
            )

    async def shutdown(self) -> None:
        """Cancel in-flight jobs (application shutdown only)."""
        jobs = list(self._jobs)
        for job in jobs:
            job.cancel()
        await asyncio.gather(*jobs, return_exceptions=True)
        logger.info("orchestrator.shutdown", cancelled_jobs=len(jobs))
