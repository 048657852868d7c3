"""Project collection, orchestrator, scheduler and runtime wiring."""

from scriptlift.pipeline.orchestrator import PipelineOrchestrator
from scriptlift.pipeline.projects import ProjectCollection, ProjectWorkspace
from scriptlift.pipeline.runtime import Runtime, build_runtime
from scriptlift.pipeline.scheduler import QueueScheduler

__all__ = [
    "PipelineOrchestrator",
    "ProjectCollection",
    "ProjectWorkspace",
    "QueueScheduler",
    "Runtime",
    "build_runtime",
]
