"""Networked storage backend: Supabase Postgres rows plus Storage objects.

WHY: Signed-in users get their projects on any device and are not bound
by the on-device quota. Supabase exposes both halves (a PostgREST table
for metadata, an object bucket for bytes) over plain HTTP, so the backend
is an httpx client with no SDK.

HOW: One httpx.AsyncClient with the anon key as `apikey` and the user's
access token as the Bearer credential. Row-level security on the server
scopes every query to that user; we filter by user_id explicitly too.
  create()  — upload object, then insert row (object removed if insert fails)
  update()  — PATCH ?id=eq.<id>; zero matching rows is a no-op by nature
  update_aliases() — PATCH of speaker_map alone, so it cannot undo a status
  delete()  — DELETE the row (authoritative), then remove the object
  resolve_playable_url() — POST /object/sign, valid SIGNED_URL_TTL_SECONDS

RULES:
- Use as: async with CloudStorageBackend(session) as backend: ...
  (or call aclose() when done)
- Object path: <user_id>/<epoch_ms>_<sanitised file name>
- Non-2xx on any write raises PersistenceFailure
- fetch_bytes(): 4xx/5xx or transport error raises SourceUnavailable
- Object-removal failures after a row delete are logged, never raised
- storage_footprint() is None; sweep_expired() is 0 (no retention here)
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

import httpx

from scriptlift.config import SIGNED_URL_TTL_SECONDS, SupabaseSettings, load_supabase_settings
from scriptlift.core.errors import PersistenceFailure, SourceUnavailable
from scriptlift.core.ir import Project, ProjectStatus, Transcript
from scriptlift.core.session import SessionContext
from scriptlift.storage.base import PlayableUrl

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class CloudStorageBackend:
    """Supabase-backed project store for an authenticated session.

    RULES:
    - session must be authenticated; raises ValueError otherwise
    - settings default to load_supabase_settings() from .env
    - client may be injected (tests pass one built on httpx.MockTransport);
      an injected client is not closed by aclose()
    """

    def __init__(
        self,
        session: SessionContext,
        settings: SupabaseSettings | None = None,
        client: httpx.AsyncClient | None = None,
        signed_url_ttl_s: int = SIGNED_URL_TTL_SECONDS,
    ) -> None:
        if session.user is None:
            raise ValueError("CloudStorageBackend requires a signed-in session")
        self._user = session.user
        self._settings = settings or load_supabase_settings()
        self._base_url = self._settings.url.rstrip("/")
        self._signed_url_ttl_s = signed_url_ttl_s
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(300.0, connect=30.0),
        )
        self._headers = {
            "apikey": self._settings.anon_key,
            "Authorization": f"Bearer {self._user.access_token}",
        }

    async def __aenter__(self) -> CloudStorageBackend:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        await self.aclose()

    # ------------------------------------------------------------------
    # URLs
    # ------------------------------------------------------------------

    @property
    def _table_url(self) -> str:
        return f"{self._base_url}/rest/v1/{self._settings.table}"

    def _object_url(self, path: str) -> str:
        return f"{self._base_url}/storage/v1/object/{self._settings.bucket}/{path}"

    def object_path(self, file_name: str, now: float | None = None) -> str:
        """Build the bucket path for a new upload."""
        epoch_ms = int((time.time() if now is None else now) * 1000)
        safe_name = _UNSAFE_NAME_CHARS.sub("_", file_name).strip("_") or "upload"
        return f"{self._user.id}/{epoch_ms}_{safe_name}"

    # ------------------------------------------------------------------
    # StorageBackend protocol
    # ------------------------------------------------------------------

    async def create(self, project: Project, data: bytes) -> Project:
        path = self.object_path(project.file_name, now=project.created_at)
        await self._upload(path, data, project.file_type)

        stored = replace(project, source_locator=path)

        try:
            resp = await self._client.post(
                self._table_url,
                json=self._to_row(stored),
                headers={**self._headers, "Prefer": "return=minimal"},
            )
        except httpx.HTTPError as exc:
            await self._remove_object(path)
            raise PersistenceFailure(f"Failed to insert project {project.id}: {exc}") from exc

        if resp.status_code not in (200, 201, 204):
            await self._remove_object(path)
            raise PersistenceFailure(
                f"Failed to insert project {project.id}: {resp.status_code} {resp.text}"
            )

        logger.info("Stored project %s in cloud at %s", project.id, path)
        return stored

    async def update(self, project: Project) -> None:
        body = {
            "status": project.status.value,
            "transcription": project.transcript.to_dict() if project.transcript else None,
            "speaker_map": dict(project.speaker_aliases),
            "error": project.error,
        }
        try:
            resp = await self._client.patch(
                self._table_url,
                params={"id": f"eq.{project.id}"},
                json=body,
                headers={**self._headers, "Prefer": "return=minimal"},
            )
        except httpx.HTTPError as exc:
            raise PersistenceFailure(f"Failed to update project {project.id}: {exc}") from exc

        if resp.status_code not in (200, 204):
            raise PersistenceFailure(
                f"Failed to update project {project.id}: {resp.status_code} {resp.text}"
            )

    async def update_aliases(self, project_id: str, aliases: dict[str, str]) -> None:
        try:
            resp = await self._client.patch(
                self._table_url,
                params={"id": f"eq.{project_id}"},
                json={"speaker_map": dict(aliases)},
                headers={**self._headers, "Prefer": "return=minimal"},
            )
        except httpx.HTTPError as exc:
            raise PersistenceFailure(
                f"Failed to update speaker names for project {project_id}: {exc}"
            ) from exc

        if resp.status_code not in (200, 204):
            raise PersistenceFailure(
                f"Failed to update speaker names for project {project_id}: "
                f"{resp.status_code} {resp.text}"
            )

    async def list_projects(self, owner_scope: str | None = None) -> list[Project]:
        user_id = owner_scope or self._user.id
        try:
            resp = await self._client.get(
                self._table_url,
                params={
                    "select": "*",
                    "user_id": f"eq.{user_id}",
                    "order": "created_at.desc",
                },
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            raise PersistenceFailure(f"Failed to list projects: {exc}") from exc

        if resp.status_code != 200:
            raise PersistenceFailure(f"Failed to list projects: {resp.status_code} {resp.text}")

        projects = [self._from_row(row) for row in resp.json()]
        projects.sort(key=lambda p: p.created_at, reverse=True)
        return projects

    async def fetch_bytes(self, locator: str) -> bytes:
        try:
            resp = await self._client.get(
                self._object_url(locator),
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            raise SourceUnavailable(f"Failed to download {locator}: {exc}") from exc

        if resp.status_code != 200:
            raise SourceUnavailable(f"Failed to download {locator}: HTTP {resp.status_code}")
        return resp.content

    async def delete(self, project: Project) -> None:
        try:
            resp = await self._client.delete(
                self._table_url,
                params={"id": f"eq.{project.id}"},
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            raise PersistenceFailure(f"Failed to delete project {project.id}: {exc}") from exc

        if resp.status_code not in (200, 204):
            raise PersistenceFailure(
                f"Failed to delete project {project.id}: {resp.status_code} {resp.text}"
            )

        if project.source_locator:
            await self._remove_object(project.source_locator)
        logger.info("Deleted cloud project %s", project.id)

    async def storage_footprint(self) -> int | None:
        return None

    async def resolve_playable_url(self, project: Project) -> PlayableUrl:
        sign_url = (
            f"{self._base_url}/storage/v1/object/sign/{self._settings.bucket}/{project.locator}"
        )
        try:
            resp = await self._client.post(
                sign_url,
                json={"expiresIn": self._signed_url_ttl_s},
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            raise SourceUnavailable(f"Failed to sign URL for {project.id}: {exc}") from exc

        if resp.status_code != 200:
            raise SourceUnavailable(
                f"Failed to sign URL for {project.id}: HTTP {resp.status_code}"
            )

        body = resp.json()
        signed = body.get("signedURL") or body.get("signedUrl")
        if not signed:
            raise SourceUnavailable(f"No signed URL returned for {project.id}")
        if signed.startswith("/"):
            signed = f"{self._base_url}/storage/v1{signed}"
        return PlayableUrl(url=signed, expires_at=time.time() + self._signed_url_ttl_s)

    async def sweep_expired(self, now: float | None = None) -> int:
        return 0

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Object helpers
    # ------------------------------------------------------------------

    async def _upload(self, path: str, data: bytes, content_type: str) -> None:
        try:
            resp = await self._client.post(
                self._object_url(path),
                content=data,
                headers={
                    **self._headers,
                    "Content-Type": content_type or "application/octet-stream",
                    "x-upsert": "false",
                },
            )
        except httpx.HTTPError as exc:
            raise PersistenceFailure(f"Failed to upload {path}: {exc}") from exc

        if resp.status_code not in (200, 201):
            raise PersistenceFailure(f"Failed to upload {path}: {resp.status_code} {resp.text}")

    async def _remove_object(self, path: str) -> None:
        """Best-effort object removal — logs on failure, never raises."""
        try:
            resp = await self._client.request(
                "DELETE",
                f"{self._base_url}/storage/v1/object/{self._settings.bucket}",
                json={"prefixes": [path]},
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            logger.warning("Failed to remove stored object %s: %s", path, exc)
            return
        if resp.status_code not in (200, 204):
            logger.warning(
                "Failed to remove stored object %s: HTTP %d", path, resp.status_code
            )

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _to_row(self, project: Project) -> dict[str, Any]:
        return {
            "id": project.id,
            "user_id": self._user.id,
            "file_name": project.file_name,
            "file_type": project.file_type,
            "storage_path": project.source_locator,
            "status": project.status.value,
            "created_at": _to_iso(project.created_at),
            "expires_at": _to_iso(project.expires_at),
            "speaker_map": dict(project.speaker_aliases),
            "transcription": project.transcript.to_dict() if project.transcript else None,
            "error": project.error,
        }

    @staticmethod
    def _from_row(row: dict[str, Any]) -> Project:
        transcript = row.get("transcription")
        return Project(
            id=row["id"],
            file_name=row["file_name"],
            file_type=row.get("file_type") or "",
            created_at=_from_iso(row["created_at"]),
            expires_at=_from_iso(row["expires_at"]) if row.get("expires_at") else 0.0,
            status=ProjectStatus(row["status"]),
            source_locator=row.get("storage_path"),
            transcript=Transcript.from_dict(transcript) if transcript else None,
            speaker_aliases=dict(row.get("speaker_map") or {}),
            error=row.get("error"),
        )


def _to_iso(epoch_s: float) -> str:
    return datetime.fromtimestamp(epoch_s, tz=timezone.utc).isoformat()


def _from_iso(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    # PostgREST returns "+00:00" offsets; older servers may send "Z".
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
