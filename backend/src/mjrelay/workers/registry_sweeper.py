"""Registry sweeper: drop finished tasks once their retention window has passed."""

import asyncio

import structlog

from mjrelay.core.config import Settings
from mjrelay.services.task_registry import TaskRegistry

logger = structlog.get_logger(__name__)


async def run_registry_sweeper(registry: TaskRegistry, settings: Settings) -> None:
    """Main sweeper loop.

    Args:
        registry: Task registry to sweep
        settings: Application settings (sweep interval)
    """
    logger.info(
        "worker.started",
        worker_type="registry_sweeper",
        sweep_interval=settings.registry_sweep_interval_seconds,
        task_ttl=settings.task_ttl_seconds,
    )

    try:
        while True:
            evicted = registry.evict_expired()
            if evicted:
                logger.info("registry_sweeper.evicted", count=evicted, remaining=len(registry))
            await asyncio.sleep(settings.registry_sweep_interval_seconds)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker_type="registry_sweeper")
        raise
