"""Live in-memory project collection and its write-through workspace.

WHY: The scheduler, the HTTP API and the CLI all need a current view of
every project, and the scheduler needs to hear about every change so it
can pick up new work. At the same time nothing may appear to have
happened in memory that did not happen in storage, or a crash would
leave the two disagreeing.

HOW: Two components work together:
  ProjectCollection — thread-safe dict of projects with change listeners
                      and per-project progress text (not persisted)
  ProjectWorkspace  — pairs a StorageBackend with the collection; every
                      mutation goes to storage first and only then to
                      memory (write-through)

RULES:
- All collection mutations acquire self._lock; listeners run after release
- put() ignores ids the collection no longer holds (late write after delete)
- list_projects() is newest first; queued() is oldest first
- Workspace writes: storage first, memory second; a storage failure
  leaves memory untouched
- Alias edits are last-write-wins and survive concurrent status changes
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from scriptlift.config import RETENTION_SECONDS, SUPPORTED_MEDIA_PREFIXES
from scriptlift.core.errors import UnsupportedMediaType
from scriptlift.core.ir import Project, ProjectStatus, Transcript, advance, new_project
from scriptlift.core.session import SessionContext
from scriptlift.storage.base import PlayableUrl, StorageBackend

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class ProjectCollection:
    """Thread-safe in-memory view of all known projects.

    WHY: The queue is not a separate structure; it is the predicate
    status == queued over this collection. Listeners are how the
    scheduler learns that the predicate may have changed.

    RULES:
    - get() returns None for unknown ids (no exceptions)
    - Every add/put/remove/replace_all notifies listeners once
    - Progress text is cleared when a project is removed
    """

    def __init__(self) -> None:
        self._projects: Dict[str, Project] = {}
        self._progress: Dict[str, str] = {}
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._projects)

    def __contains__(self, project_id: object) -> bool:
        with self._lock:
            return project_id in self._projects

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, project_id: str) -> Optional[Project]:
        with self._lock:
            return self._projects.get(project_id)

    def list_projects(self) -> List[Project]:
        """Snapshot of all projects, newest created_at first."""
        with self._lock:
            projects = list(self._projects.values())
        return sorted(projects, key=lambda p: p.created_at, reverse=True)

    def queued(self) -> List[Project]:
        """Projects waiting to be processed, oldest created_at first."""
        with self._lock:
            waiting = [p for p in self._projects.values() if p.status == ProjectStatus.QUEUED]
        return sorted(waiting, key=lambda p: p.created_at)

    def progress(self, project_id: str) -> Optional[str]:
        with self._lock:
            return self._progress.get(project_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, project: Project) -> None:
        with self._lock:
            self._projects[project.id] = project
        self._notify()

    def put(self, project: Project) -> bool:
        """Replace a known project; return False (and do nothing) if unknown."""
        with self._lock:
            if project.id not in self._projects:
                known = False
            else:
                self._projects[project.id] = project
                known = True
        if not known:
            logger.debug("Ignoring write for project %s no longer in collection", project.id)
            return False
        self._notify()
        return True

    def remove(self, project_id: str) -> Optional[Project]:
        with self._lock:
            project = self._projects.pop(project_id, None)
            self._progress.pop(project_id, None)
        if project is not None:
            self._notify()
        return project

    def replace_all(self, projects: List[Project]) -> None:
        with self._lock:
            self._projects = {p.id: p for p in projects}
            self._progress = {
                k: v for k, v in self._progress.items() if k in self._projects
            }
        self._notify()

    def set_progress(self, project_id: str, text: Optional[str]) -> None:
        """Record the latest progress text; does not notify listeners."""
        with self._lock:
            if text is None:
                self._progress.pop(project_id, None)
            elif project_id in self._projects:
                self._progress[project_id] = text

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Project change listener failed")


class ProjectWorkspace:
    """Write-through pairing of a StorageBackend and a ProjectCollection.

    WHY: Callers should not have to remember the storage-then-memory
    ordering. Every operation that changes a project lives here.

    RULES:
    - submit() raises UnsupportedMediaType for non audio/video MIME types,
      and lets QuotaExceeded / PersistenceFailure from the backend propagate
    - transition() validates the edge via advance() before any write
    - transition() and rename_speaker() hold _write_lock across the
      storage write and the collection update, re-reading the latest copy
      inside it; a rename never rewrites status or transcript
    - delete() of an unknown id returns False and never raises
    """

    def __init__(
        self,
        backend: StorageBackend,
        collection: Optional[ProjectCollection] = None,
        session: Optional[SessionContext] = None,
        retention_seconds: int = RETENTION_SECONDS,
    ) -> None:
        self.backend = backend
        self.collection = collection if collection is not None else ProjectCollection()
        self.session = session or SessionContext.anonymous()
        self._retention_seconds = retention_seconds
        # Serialises each storage write with its matching collection update.
        self._write_lock = asyncio.Lock()

    async def submit(
        self,
        file_name: str,
        file_type: str,
        data: bytes,
        now: Optional[float] = None,
    ) -> Project:
        """Durably store a new upload and add it to the queue."""
        if not is_supported_media(file_type):
            raise UnsupportedMediaType(
                "Unsupported file type {!r} for {}: only audio and video files "
                "can be transcribed".format(file_type, file_name)
            )

        project = new_project(
            file_name, file_type, now=now, retention_seconds=self._retention_seconds
        )
        stored = await self.backend.create(project, data)
        self.collection.add(stored)
        logger.info("Queued project %s for %s (%d bytes)", stored.id, file_name, len(data))
        return stored

    async def transition(
        self,
        project: Project,
        status: ProjectStatus,
        transcript: Optional[Transcript] = None,
        error: Optional[str] = None,
    ) -> Project:
        """Advance a project's status, persisting before updating memory."""
        async with self._write_lock:
            # Aliases may have been edited while the pipeline held an older copy.
            latest = self.collection.get(project.id)
            if latest is not None:
                project = replace(project, speaker_aliases=dict(latest.speaker_aliases))

            updated = advance(project, status, transcript=transcript, error=error)
            await self.backend.update(updated)
            self.collection.put(updated)
        logger.info("Project %s: %s -> %s", project.id, project.status.value, status.value)
        return updated

    async def rename_speaker(self, project_id: str, label: str, name: str) -> Project:
        """Set (or clear, with a blank name) the display name for a label.

        Only the alias map is written; status and transcript stay whatever
        the pipeline last persisted. Raises KeyError if the project is unknown.
        """
        async with self._write_lock:
            project = self.collection.get(project_id)
            if project is None:
                raise KeyError(project_id)
            aliases = project.with_alias(label, name).speaker_aliases
            await self.backend.update_aliases(project_id, aliases)

            latest = self.collection.get(project_id)
            if latest is None:
                # Deleted while the write was in flight.
                return replace(project, speaker_aliases=aliases)
            updated = replace(latest, speaker_aliases=dict(aliases))
            self.collection.put(updated)
        return updated

    async def delete(self, project_id: str) -> bool:
        project = self.collection.get(project_id)
        if project is None:
            return False
        await self.backend.delete(project)
        self.collection.remove(project_id)
        return True

    async def refresh(self) -> List[Project]:
        """Reload the collection from the backend."""
        owner = self.session.user.id if self.session.user else None
        projects = await self.backend.list_projects(owner_scope=owner)
        self.collection.replace_all(projects)
        logger.info("Loaded %d project(s) from %s storage", len(projects), self.session.mode)
        return projects

    async def sweep_expired(self, now: Optional[float] = None) -> int:
        """Run the backend's retention sweep and drop swept projects from memory."""
        now = time.time() if now is None else now
        removed = await self.backend.sweep_expired(now)
        if removed:
            for project in self.collection.list_projects():
                if project.expires_at < now:
                    self.collection.remove(project.id)
            logger.info("Retention sweep removed %d project(s)", removed)
        return removed

    async def storage_footprint(self) -> Optional[int]:
        return await self.backend.storage_footprint()

    async def playable_url(self, project_id: str) -> PlayableUrl:
        """Raises KeyError if the project is unknown."""
        project = self.collection.get(project_id)
        if project is None:
            raise KeyError(project_id)
        return await self.backend.resolve_playable_url(project)


def is_supported_media(file_type: Optional[str]) -> bool:
    return bool(file_type) and file_type.lower().startswith(SUPPORTED_MEDIA_PREFIXES)
