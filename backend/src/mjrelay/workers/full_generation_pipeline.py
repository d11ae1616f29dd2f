"""Full-generation pipeline: generate once, then upscale the requested variants.

Workflow of run():
1. Generate through the JobOrchestrator (record: generating -> generated)
2. No variants requested: record completed with just the original
3. Otherwise (record: upscaling) wait the settle delay, longer if the original
   attachment is still ephemeral, then upscale every variant:
   - sequential: one after another with SEQUENTIAL_DELAY_SECONDS in between
   - concurrent: all at once, launches staggered by CONCURRENT_STAGGER_SECONDS
4. Collect exactly one outcome per requested variant, sorted by variant index,
   and mark the record completed with stats

A failed upscale never fails the record; only a failed generation does.
"""

import asyncio
import time
from typing import Callable, Optional
from uuid import UUID

import structlog

from mjrelay.core.config import Settings
from mjrelay.models.account import Account
from mjrelay.models.full_generation import ExecutionMode, FullGeneration
from mjrelay.services.exceptions import (
    BackendSubmissionError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from mjrelay.services.image_reference import ImageReference
from mjrelay.services.polling import Sleep
from mjrelay.services.prompt_validator import validate_prompt
from mjrelay.services.task_registry import GenerationTask
from mjrelay.services.upscale.executor import VARIANT_INDEXES, UpscaleExecutor, UpscaleOutcome
from mjrelay.workers.job_orchestrator import JobOrchestrator

logger = structlog.get_logger(__name__)


def validate_variants(variants) -> list[int]:
    """Normalize the requested variant list.

    Raises:
        ValidationError: Not a list, index outside 1-4, or duplicates
    """
    if variants is None:
        return []
    if not isinstance(variants, (list, tuple)):
        raise ValidationError("variants must be a list of variant indexes")
    result = []
    for value in variants:
        if isinstance(value, bool) or not isinstance(value, int) or value not in VARIANT_INDEXES:
            raise ValidationError(
                f"Invalid variant {value!r}; variants must be integers 1-4",
                hint='Example: {"prompt": "a cat", "variants": [1, 3]}',
            )
        if value in result:
            raise ValidationError(f"Variant {value} requested more than once")
        result.append(value)
    return result


def build_stats(outcomes: list[UpscaleOutcome], duration_seconds: float) -> dict:
    successful = sum(1 for o in outcomes if o.success)
    return {
        "total_images": 1 + successful,
        "successful_upscales": successful,
        "failed_upscales": len(outcomes) - successful,
        "duration_seconds": round(duration_seconds, 2),
    }


class FullGenerationPipeline:
    """Chains one generation with upscales of its variants, persisting progress."""

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        executor: UpscaleExecutor,
        uow_factory: Callable,
        settings: Settings,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.orchestrator = orchestrator
        self.executor = executor
        self.uow_factory = uow_factory
        self.settings = settings
        self.sleep = sleep
        self.clock = clock
        self._runs: dict[UUID, asyncio.Task] = {}

    async def start(
        self, prompt: str, variants, mode: str, account: Account
    ) -> tuple[FullGeneration, GenerationTask]:
        """Persist a new record and run the pipeline in the background.

        Raises:
            ValidationError: Bad prompt, variants or mode (nothing persisted)
        """
        prompt = validate_prompt(prompt)
        variants = validate_variants(variants)
        try:
            mode = ExecutionMode(mode)
        except ValueError:
            raise ValidationError(
                f"Unknown mode {mode!r}", hint="Use 'sequential' or 'concurrent'"
            )

        task = self.orchestrator.registry.add(
            GenerationTask(prompt=prompt, api_key=account.api_key, owner=account.email)
        )
        record = FullGeneration(
            api_key=account.api_key,
            prompt=prompt,
            mode=mode,
            variants=variants,
            task_id=task.id,
        )
        async with await self.uow_factory() as uow:
            await uow.full_generations.add(record)

        logger.info(
            "full_generation.started",
            record_id=str(record.id),
            task_id=task.id,
            variants=variants,
            mode=mode.value,
        )
        job = self.orchestrator.spawn(
            self._run_detached(record, task, account), name=f"full-generation:{record.id}"
        )
        self._runs[record.id] = job
        job.add_done_callback(lambda _: self._runs.pop(record.id, None))
        return record, task

    async def _run_detached(
        self, record: FullGeneration, task: GenerationTask, account: Account
    ) -> None:
        try:
            await self.run(record, task, account)
        except Exception as e:
            logger.error(
                "full_generation.crashed",
                record_id=str(record.id),
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            if not task.is_terminal:
                task.mark_failed(f"Internal error: {e}")
            if not record.is_terminal:
                record.mark_failed(f"Internal error: {e}")
                await self._save(record)

    async def run(
        self, record: FullGeneration, task: GenerationTask, account: Account
    ) -> FullGeneration:
        """Drive record to a terminal state.

        Args:
            record: Persisted record in generating state
            task: Registered pending task for the generation step
            account: Owner of the record

        Returns:
            The record, completed or failed
        """
        started = self.clock()
        log = logger.bind(record_id=str(record.id), task_id=task.id)

        try:
            original = await self.orchestrator.run(task, account)
        except BackendSubmissionError as e:
            record.mark_failed(str(e))
            await self._save(record)
            log.warning("full_generation.failed", stage="generate", error_message=str(e))
            return record

        record.mark_generated(original.to_dict())
        await self._save(record)

        variants = list(record.variants or [])
        if not variants:
            record.mark_completed([], build_stats([], self.clock() - started))
            await self._save(record)
            log.info("full_generation.completed", upscales=0)
            return record

        record.mark_upscaling()
        await self._save(record)

        settle = (
            self.settings.settle_delay_ephemeral_seconds
            if original.ephemeral
            else self.settings.settle_delay_seconds
        )
        log.debug("full_generation.settling", delay_seconds=settle, ephemeral=original.ephemeral)
        await self.sleep(settle)

        if record.mode == ExecutionMode.CONCURRENT:
            outcomes = await self._upscale_concurrent(variants, original, record.prompt, account)
        else:
            outcomes = await self._upscale_sequential(variants, original, record.prompt, account)
        outcomes.sort(key=lambda o: o.variant_index)

        stats = build_stats(outcomes, self.clock() - started)
        record.mark_completed([o.to_dict() for o in outcomes], stats)
        await self._save(record)
        log.info("full_generation.completed", **stats)
        return record

    async def _upscale_variant(
        self, variant_index: int, original: ImageReference, prompt: str, account: Account
    ) -> UpscaleOutcome:
        try:
            image = await self.executor.upscale(
                original.message_id,
                variant_index,
                original.content_hash,
                account,
                message_flags=original.flags,
            )
        except ServiceError as e:
            logger.warning(
                "full_generation.variant.failed",
                message_id=original.message_id,
                variant_index=variant_index,
                error_kind=e.kind,
                error_message=str(e),
            )
            return UpscaleOutcome.failed(variant_index, e)
        except Exception as e:
            # Confined to this variant's slot; the record still completes
            logger.error(
                "full_generation.variant.crashed",
                message_id=original.message_id,
                variant_index=variant_index,
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            return UpscaleOutcome.failed(variant_index, e)
        await self.orchestrator.record_upscale(account, image, variant_index, prompt)
        return UpscaleOutcome.succeeded(variant_index, image)

    async def _upscale_sequential(
        self, variants: list[int], original: ImageReference, prompt: str, account: Account
    ) -> list[UpscaleOutcome]:
        outcomes = []
        for position, variant_index in enumerate(variants):
            if position:
                await self.sleep(self.settings.sequential_delay_seconds)
            outcomes.append(await self._upscale_variant(variant_index, original, prompt, account))
        return outcomes

    async def _upscale_concurrent(
        self, variants: list[int], original: ImageReference, prompt: str, account: Account
    ) -> list[UpscaleOutcome]:
        # Slots are addressed by position, so completion order cannot misattribute outcomes
        slots: list[Optional[UpscaleOutcome]] = [None] * len(variants)

        async def fill(position: int, variant_index: int) -> None:
            if position:
                await self.sleep(self.settings.concurrent_stagger_seconds * position)
            slots[position] = await self._upscale_variant(variant_index, original, prompt, account)

        results = await asyncio.gather(
            *(fill(position, index) for position, index in enumerate(variants)),
            return_exceptions=True,
        )
        for position, (variant_index, result) in enumerate(zip(variants, results)):
            if isinstance(result, BaseException):
                slots[position] = UpscaleOutcome.failed(variant_index, result)
        return [slot for slot in slots if slot is not None]

    async def _save(self, record: FullGeneration) -> None:
        async with await self.uow_factory() as uow:
            await uow.full_generations.save(record)

    async def wait(self, record_id: UUID, timeout: float) -> None:
        """Wait up to timeout seconds for an in-flight run to finish."""
        job = self._runs.get(record_id)
        if job is None or timeout <= 0:
            return
        try:
            await asyncio.wait_for(asyncio.shield(job), timeout=timeout)
        except TimeoutError:
            pass

    async def get(self, record_id: UUID, account: Account) -> FullGeneration:
        """Load a record visible to account.

        Raises:
            NotFoundError: Unknown or foreign record
        """
        async with await self.uow_factory() as uow:
            record = await uow.full_generations.get_by_id(record_id)
        if record is None or (record.api_key != account.api_key and not account.is_admin):
            raise NotFoundError(f"Full generation {record_id} not found")
        return record
