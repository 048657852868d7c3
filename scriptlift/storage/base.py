"""The storage backend contract shared by the local and networked backends.

WHY: The pipeline must behave identically whether a project's bytes sit
on this machine or in a remote bucket. Callers program against one
capability interface; the only observable differences are the
backend-specific source_locator and the local quota/retention rules.

HOW: StorageBackend is a typing.Protocol, not a base class — the two
implementations share no code and must not be told apart by isinstance
checks in the pipeline. PlayableUrl is the small value type returned by
resolve_playable_url().

RULES:
- create(): metadata and bytes succeed together or the caller sees neither
- update(): unknown id is a silent no-op (late write after delete)
- update_aliases(): rewrites only the alias map, leaving status and
  transcript as stored; unknown id is a no-op
- list_projects(): newest created_at first
- fetch_bytes(): SourceUnavailable when absent or unfetchable
- delete(): metadata removal is authoritative; byte-removal failures are
  logged, never raised; deleting twice never raises
- storage_footprint(): None when the backend is not metered
- sweep_expired(): 0 when the backend has no retention policy
- Write failures raise PersistenceFailure
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from scriptlift.core.ir import Project


@dataclass(frozen=True)
class PlayableUrl:
    """A direct-access reference to a project's media.

    RULES:
    - url: https signed URL (networked) or file:// URI (local)
    - expires_at: epoch seconds, or None when the reference does not expire
    """

    url: str
    expires_at: Optional[float] = None


class StorageBackend(Protocol):
    """Capability interface implemented by every storage backend."""

    async def create(self, project: Project, data: bytes) -> Project:
        """Persist a new project and its bytes; return the stored project."""
        ...

    async def update(self, project: Project) -> None:
        """Replace the mutable metadata of an existing project."""
        ...

    async def update_aliases(self, project_id: str, aliases: Dict[str, str]) -> None:
        """Replace only the speaker alias map of an existing project."""
        ...

    async def list_projects(self, owner_scope: Optional[str] = None) -> List[Project]:
        """Return every project visible to the scope, newest first."""
        ...

    async def fetch_bytes(self, locator: str) -> bytes:
        """Return the raw bytes behind a locator."""
        ...

    async def delete(self, project: Project) -> None:
        """Remove a project's metadata and bytes."""
        ...

    async def storage_footprint(self) -> Optional[int]:
        """Total bytes consumed, or None when not metered."""
        ...

    async def resolve_playable_url(self, project: Project) -> PlayableUrl:
        """Return a direct reference to the project's media."""
        ...

    async def sweep_expired(self, now: Optional[float] = None) -> int:
        """Delete every expired project; return how many were removed."""
        ...

    async def aclose(self) -> None:
        """Release any held resources."""
        ...
