"""On-device storage backend: JSON metadata and raw bytes on the local disk.

WHY: Anonymous users keep everything on their own machine. The backend
must be safe to use from the event loop, survive a crash mid-write
without exposing half-created projects, cap total usage, and forget old
projects after the retention window.

HOW: Two directories under the data root:
  projects/<id>.json — project metadata (Project.to_dict())
  files/<id>.bin     — the uploaded media bytes
Every file is written to a sibling temp file and moved into place with
os.replace(). create() writes the bytes first and the metadata last, so a
project only becomes visible once both exist. Blocking file I/O runs in
asyncio.to_thread(); a threading.Lock serialises writers.

RULES:
- create() raises QuotaExceeded when used + incoming > quota_bytes
- Bytes are addressed by project id; source_locator is always None here
- update() and update_aliases() of an unknown id are no-ops
- update_aliases() is a read-modify-write under the lock; it never touches
  status or transcript
- The quota counts stored media (*.bin) only, not in-flight temp files
- delete(): metadata removal failure raises PersistenceFailure; byte
  removal failure is only logged
- sweep_expired() removes projects whose expires_at is in the past
- Corrupt metadata files are skipped (logged), never fatal to list
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

from scriptlift.config import DATA_DIR, LOCAL_QUOTA_BYTES
from scriptlift.core.errors import PersistenceFailure, QuotaExceeded, SourceUnavailable
from scriptlift.core.ir import Project
from scriptlift.storage.base import PlayableUrl

logger = logging.getLogger(__name__)

_METADATA_SUFFIX = ".json"
_BYTES_SUFFIX = ".bin"


class LocalStorageBackend:
    """Filesystem-backed project store with quota and retention.

    RULES:
    - root: data directory; created on construction if missing
    - quota_bytes: cap on the total size of stored media
    - All public methods are coroutines; disk work happens off the loop
    """

    def __init__(
        self,
        root: Optional[Path] = None,
        quota_bytes: int = LOCAL_QUOTA_BYTES,
    ) -> None:
        self._root = Path(root) if root is not None else DATA_DIR
        self._projects_dir = self._root / "projects"
        self._files_dir = self._root / "files"
        self._projects_dir.mkdir(parents=True, exist_ok=True)
        self._files_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.quota_bytes = quota_bytes

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # StorageBackend protocol
    # ------------------------------------------------------------------

    async def create(self, project: Project, data: bytes) -> Project:
        return await asyncio.to_thread(self._create_sync, project, data)

    async def update(self, project: Project) -> None:
        await asyncio.to_thread(self._update_sync, project)

    async def update_aliases(self, project_id: str, aliases: Dict[str, str]) -> None:
        await asyncio.to_thread(self._update_aliases_sync, project_id, dict(aliases))

    async def list_projects(self, owner_scope: Optional[str] = None) -> List[Project]:
        # Everything on this device belongs to the local user; scope is ignored.
        return await asyncio.to_thread(self._list_sync)

    async def fetch_bytes(self, locator: str) -> bytes:
        return await asyncio.to_thread(self._fetch_sync, locator)

    async def delete(self, project: Project) -> None:
        await asyncio.to_thread(self._delete_sync, project.id)

    async def storage_footprint(self) -> Optional[int]:
        return await asyncio.to_thread(self._footprint_sync)

    async def resolve_playable_url(self, project: Project) -> PlayableUrl:
        return await asyncio.to_thread(self._playable_sync, project.id)

    async def sweep_expired(self, now: Optional[float] = None) -> int:
        return await asyncio.to_thread(self._sweep_sync, time.time() if now is None else now)

    async def aclose(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------

    def _create_sync(self, project: Project, data: bytes) -> Project:
        stored = replace(project, source_locator=None)
        bytes_path = self._bytes_path(project.id)
        meta_path = self._metadata_path(project.id)

        with self._lock:
            used = self._footprint_sync()
            if used + len(data) > self.quota_bytes:
                raise QuotaExceeded(used=used, incoming=len(data), limit=self.quota_bytes)

            try:
                _atomic_write(bytes_path, data)
            except OSError as exc:
                raise PersistenceFailure(
                    "Failed to store media for project {}: {}".format(project.id, exc)
                ) from exc

            try:
                _atomic_write(meta_path, _encode(stored))
            except OSError as exc:
                _remove_quietly(bytes_path)
                raise PersistenceFailure(
                    "Failed to store metadata for project {}: {}".format(project.id, exc)
                ) from exc

        logger.info(
            "Stored project %s (%s, %d bytes) locally", project.id, project.file_name, len(data)
        )
        return stored

    def _update_sync(self, project: Project) -> None:
        meta_path = self._metadata_path(project.id)
        with self._lock:
            if not meta_path.exists():
                logger.debug("Ignoring update for missing project %s", project.id)
                return
            try:
                _atomic_write(meta_path, _encode(replace(project, source_locator=None)))
            except OSError as exc:
                raise PersistenceFailure(
                    "Failed to update project {}: {}".format(project.id, exc)
                ) from exc

    def _update_aliases_sync(self, project_id: str, aliases: Dict[str, str]) -> None:
        meta_path = self._metadata_path(project_id)
        with self._lock:
            current = self._load_metadata(meta_path)
            if current is None:
                logger.debug("Ignoring alias update for missing project %s", project_id)
                return
            try:
                _atomic_write(meta_path, _encode(replace(current, speaker_aliases=aliases)))
            except OSError as exc:
                raise PersistenceFailure(
                    "Failed to update speaker names for project {}: {}".format(project_id, exc)
                ) from exc

    def _list_sync(self) -> List[Project]:
        projects: List[Project] = []
        for meta_path in self._projects_dir.glob("*" + _METADATA_SUFFIX):
            project = self._load_metadata(meta_path)
            if project is not None:
                projects.append(project)
        projects.sort(key=lambda p: p.created_at, reverse=True)
        return projects

    def _fetch_sync(self, locator: str) -> bytes:
        path = self._bytes_path(locator)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise SourceUnavailable("No stored media for {}".format(locator)) from exc
        except OSError as exc:
            raise SourceUnavailable("Failed to read media for {}: {}".format(locator, exc)) from exc

    def _delete_sync(self, project_id: str) -> None:
        with self._lock:
            try:
                self._metadata_path(project_id).unlink(missing_ok=True)
            except OSError as exc:
                raise PersistenceFailure(
                    "Failed to delete project {}: {}".format(project_id, exc)
                ) from exc
            _remove_quietly(self._bytes_path(project_id))
        logger.info("Deleted local project %s", project_id)

    def _footprint_sync(self) -> int:
        total = 0
        for path in self._files_dir.glob("*" + _BYTES_SUFFIX):
            try:
                total += path.stat().st_size
            except OSError:
                continue
        return total

    def _playable_sync(self, project_id: str) -> PlayableUrl:
        path = self._bytes_path(project_id)
        if not path.exists():
            raise SourceUnavailable("No stored media for project {}".format(project_id))
        return PlayableUrl(url=path.resolve().as_uri(), expires_at=None)

    def _sweep_sync(self, now: float) -> int:
        expired: List[Project] = []
        with self._lock:
            for meta_path in self._projects_dir.glob("*" + _METADATA_SUFFIX):
                project = self._load_metadata(meta_path)
                if project is None or project.expires_at >= now:
                    continue
                try:
                    meta_path.unlink(missing_ok=True)
                except OSError:
                    logger.warning("Failed to remove expired metadata: %s", meta_path)
                    continue
                _remove_quietly(self._bytes_path(project.id))
                expired.append(project)

        for project in expired:
            logger.info(
                "Expired project %s (%s, %.0fs past retention)",
                project.id, project.file_name, now - project.expires_at,
            )
        return len(expired)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _metadata_path(self, project_id: str) -> Path:
        return self._projects_dir / (_safe_key(project_id) + _METADATA_SUFFIX)

    def _bytes_path(self, locator: str) -> Path:
        return self._files_dir / (_safe_key(locator) + _BYTES_SUFFIX)

    @staticmethod
    def _load_metadata(meta_path: Path) -> Optional[Project]:
        try:
            return Project.from_dict(json.loads(meta_path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError) as exc:
            logger.warning("Skipping unreadable project metadata %s: %s", meta_path, exc)
            return None


def _safe_key(key: str) -> str:
    """Reject keys that could escape the storage directories."""
    if not key or "/" in key or "\\" in key or key.startswith("."):
        raise SourceUnavailable("Invalid storage key: {!r}".format(key))
    return key


def _encode(project: Project) -> bytes:
    return json.dumps(project.to_dict(), ensure_ascii=False, indent=2).encode("utf-8")


def _atomic_write(path: Path, data: bytes) -> None:
    """Write data to a temp sibling, then move it into place."""
    tmp = path.with_name(path.name + ".tmp")
    try:
        tmp.write_bytes(data)
        os.replace(tmp, path)
    except OSError:
        _remove_quietly(tmp)
        raise


def _remove_quietly(path: Path) -> None:
    """Best-effort unlink — logs on failure, never raises."""
    try:
        path.unlink(missing_ok=True)
    except OSError:
        logger.warning("Failed to remove %s", path)
