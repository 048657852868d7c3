"""Wire a session into a ready-to-run pipeline.

WHY: The server and the CLI need the same object graph: backend chosen
by session, one collection, one workspace, one speech worker, one
orchestrator, one scheduler. Building it in one place keeps the two
entry points from drifting apart.

HOW: build_runtime() constructs everything (any piece can be injected,
which is how tests substitute fakes). Runtime.start() loads existing
projects and starts the scheduler; Runtime.aclose() stops the scheduler,
shuts the worker thread down and closes the backend.

RULES:
- The session is fixed for the runtime's lifetime
- A missing GEMINI_API_KEY disables attribution (fallback only), it is
  not an error
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from scriptlift.config import PipelineSettings
from scriptlift.core.session import SessionContext
from scriptlift.inference.attribution import SpeakerAttributionClient
from scriptlift.inference.worker import SpeechEngine, SpeechToTextGateway
from scriptlift.pipeline.orchestrator import PipelineOrchestrator
from scriptlift.pipeline.projects import ProjectCollection, ProjectWorkspace
from scriptlift.pipeline.scheduler import QueueScheduler, StatusCallback
from scriptlift.storage import StorageBackend, select_backend

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything needed to accept uploads and process them."""

    session: SessionContext
    backend: StorageBackend
    collection: ProjectCollection
    workspace: ProjectWorkspace
    speech: SpeechToTextGateway
    orchestrator: PipelineOrchestrator
    scheduler: QueueScheduler

    async def start(self) -> None:
        await self.workspace.refresh()
        self.scheduler.start()

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await asyncio.to_thread(self.speech.close)
        await self.backend.aclose()


def build_runtime(
    session: Optional[SessionContext] = None,
    backend: Optional[StorageBackend] = None,
    engine: Optional[SpeechEngine] = None,
    speech: Optional[SpeechToTextGateway] = None,
    attribution: Optional[SpeakerAttributionClient] = None,
    use_attribution: bool = True,
    settings: Optional[PipelineSettings] = None,
    data_dir: Optional[Path] = None,
    on_status: Optional[StatusCallback] = None,
) -> Runtime:
    """Build a Runtime for a session (default: from the environment)."""
    session = session or SessionContext.from_env()
    settings = settings or PipelineSettings()
    backend = backend or select_backend(session, data_dir=data_dir)

    if use_attribution and attribution is None:
        try:
            attribution = SpeakerAttributionClient(preview_chars=settings.preview_chars)
        except ValueError as exc:
            logger.warning("Speaker attribution disabled: %s", exc)
    elif not use_attribution:
        attribution = None

    collection = ProjectCollection()
    workspace = ProjectWorkspace(backend, collection, session=session)
    speech = speech or SpeechToTextGateway(engine=engine)
    orchestrator = PipelineOrchestrator(workspace, speech, attribution=attribution, settings=settings)
    scheduler = QueueScheduler(collection, orchestrator, on_status=on_status)

    logger.info(
        "Runtime ready: %s storage, attribution %s",
        session.mode, "enabled" if attribution is not None else "disabled",
    )
    return Runtime(
        session=session,
        backend=backend,
        collection=collection,
        workspace=workspace,
        speech=speech,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )
