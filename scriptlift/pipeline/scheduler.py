"""Single-concurrency queue scheduler over the live project collection.

WHY: Speech-to-text saturates the CPU and the speech worker holds one
model; running two jobs at once would only make both slower and risk
interleaving worker messages. There is also no separate queue to keep in
sync: a project is "in the queue" exactly when its status is queued.

HOW: The scheduler subscribes to ProjectCollection changes. Each change
calls notify(), which starts a drain task unless one is already running.
The drain task repeatedly picks the oldest queued project and awaits
PipelineOrchestrator.run() for it, until no eligible project is left.
The final "nothing left" check and the task's completion happen without
an intervening await, so a change that arrives during a run is always
seen either by the running drain or by a fresh one.

RULES:
- At most one orchestrator run is active at any time
- Scan order: oldest created_at first, ties in collection order
- An exception escaping a run is logged; the scheduler keeps going
- A project still queued after its run (marking processing failed) is
  skipped by later scans, so a broken backend cannot cause a hot loop
- stop() waits for the in-flight run; it never cancels it
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Set

from scriptlift.core.ir import Project, ProjectStatus
from scriptlift.pipeline.orchestrator import PipelineOrchestrator
from scriptlift.pipeline.projects import ProjectCollection

logger = logging.getLogger(__name__)

StatusCallback = Callable[[Project, str], None]


class QueueScheduler:
    """Processes queued projects one at a time, oldest first.

    RULES:
    - start() must be called from within the running event loop
    - on_status(project, message) receives every progress message
    - Progress text is also recorded on the collection for the API
    """

    def __init__(
        self,
        collection: ProjectCollection,
        orchestrator: PipelineOrchestrator,
        on_status: Optional[StatusCallback] = None,
    ) -> None:
        self._collection = collection
        self._orchestrator = orchestrator
        self._on_status = on_status
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._active_id: Optional[str] = None
        self._skipped: Set[str] = set()
        self._stopping = False

    @property
    def active_project_id(self) -> Optional[str]:
        return self._active_id

    @property
    def running(self) -> bool:
        return self._loop is not None and not self._stopping

    @property
    def skipped(self) -> Set[str]:
        """Ids of projects that could not be started and will not be retried."""
        return set(self._skipped)

    def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._stopping = False
        self._unsubscribe = self._collection.subscribe(self._on_change)
        logger.info("Queue scheduler started")
        self.notify()

    async def stop(self) -> None:
        self._stopping = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        task = self._drain_task
        if task is not None and not task.done():
            logger.info("Waiting for active project %s to finish", self._active_id)
            await asyncio.wait({task})
        self._loop = None
        logger.info("Queue scheduler stopped")

    def notify(self) -> None:
        """Start draining the queue if nothing is running and work exists."""
        if not self.running:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        if self._next_project() is None:
            return
        self._drain_task = self._loop.create_task(self._drain())

    async def wait_idle(self) -> None:
        """Return once no run is active and no eligible project remains."""
        while True:
            # Let change notifications queued via call_soon_threadsafe run.
            await asyncio.sleep(0)
            task = self._drain_task
            if task is not None and not task.done():
                await asyncio.wait({task})
                continue
            if not self.running or self._next_project() is None:
                return
            self.notify()
            if self._drain_task is task:
                return

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _on_change(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        # Listeners may fire from any thread; hop onto the scheduler's loop.
        loop.call_soon_threadsafe(self.notify)

    def _next_project(self) -> Optional[Project]:
        for project in self._collection.queued():
            if project.id not in self._skipped:
                return project
        return None

    async def _drain(self) -> None:
        while not self._stopping:
            project = self._next_project()
            if project is None:
                return
            await self._run_one(project)

    async def _run_one(self, project: Project) -> None:
        self._active_id = project.id
        logger.info("Starting project %s (%s)", project.id, project.file_name)

        def report(message: str) -> None:
            self._collection.set_progress(project.id, message)
            if self._on_status is not None:
                self._on_status(project, message)

        try:
            await self._orchestrator.run(project, on_progress=report)
        except Exception:
            logger.exception("Run for project %s ended with an error", project.id)
        finally:
            self._active_id = None
            self._collection.set_progress(project.id, None)
            current = self._collection.get(project.id)
            if current is not None and current.status == ProjectStatus.QUEUED:
                logger.warning(
                    "Project %s is still queued after its run; skipping it from now on",
                    project.id,
                )
                self._skipped.add(project.id)
