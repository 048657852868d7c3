"""Storage backends and session-based backend selection.

WHY: The pipeline never decides where bytes live; the session does.
select_backend() is the one place that turns a SessionContext into a
concrete StorageBackend.

RULES:
- Anonymous session → LocalStorageBackend (quota + retention)
- Authenticated session → CloudStorageBackend (signed URLs, no quota)
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from scriptlift.config import LOCAL_QUOTA_BYTES, SupabaseSettings
from scriptlift.core.session import SessionContext
from scriptlift.storage.base import PlayableUrl, StorageBackend
from scriptlift.storage.cloud import CloudStorageBackend
from scriptlift.storage.local import LocalStorageBackend

__all__ = [
    "CloudStorageBackend",
    "LocalStorageBackend",
    "PlayableUrl",
    "StorageBackend",
    "select_backend",
]


def select_backend(
    session: SessionContext,
    data_dir: Optional[Path] = None,
    supabase_settings: Optional[SupabaseSettings] = None,
    quota_bytes: int = LOCAL_QUOTA_BYTES,
) -> StorageBackend:
    """Return the storage backend for a session."""
    if session.is_authenticated:
        return CloudStorageBackend(session, settings=supabase_settings)
    return LocalStorageBackend(root=data_dir, quota_bytes=quota_bytes)
