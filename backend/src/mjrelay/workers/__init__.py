"""Background workers for generation and upscale processing."""

from mjrelay.workers.full_generation_pipeline import FullGenerationPipeline
from mjrelay.workers.job_orchestrator import JobOrchestrator
from mjrelay.workers.registry_sweeper import run_registry_sweeper

__all__ = [
    "FullGenerationPipeline",
    "JobOrchestrator",
    "run_registry_sweeper",
]
