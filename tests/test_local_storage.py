"""Tests for the on-device storage backend.

WHY: The local backend enforces the storage cap and the retention window
and must never expose a half-created project. A regression here either
loses user data or lets the disk fill up.

HOW: Each test gets its own backend under tmp_path (see conftest).
Coroutines are driven with asyncio.run() inside synchronous tests.
Organized by class:
  - TestCreate: round trip, locator, quota
  - TestUpdate: replace metadata, no-op for unknown ids
  - TestDelete: idempotency, late writes
  - TestRetention: sweep boundaries
  - TestReads: fetch_bytes, footprint, playable URL, corrupt metadata
"""

from __future__ import annotations

import asyncio
import os

import pytest

from scriptlift.core.errors import PersistenceFailure, QuotaExceeded, SourceUnavailable
from scriptlift.core.ir import ProjectStatus, Transcript, TranscriptSegment, advance, new_project
from scriptlift.storage.local import LocalStorageBackend

MIB = 1024 * 1024


def _run(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# TestCreate
# ---------------------------------------------------------------------------


class TestCreate:

    def test_create_then_list_and_fetch(self, local_backend):
        project = new_project("talk.mp3", "audio/mpeg", now=100.0)
        stored = _run(local_backend.create(project, b"abc"))

        assert stored.id == project.id
        assert stored.source_locator is None
        assert _run(local_backend.list_projects()) == [stored]
        assert _run(local_backend.fetch_bytes(stored.locator)) == b"abc"

    def test_files_laid_out_by_id(self, local_backend):
        project = new_project("talk.mp3", "audio/mpeg")
        _run(local_backend.create(project, b"abc"))
        assert (local_backend.root / "projects" / (project.id + ".json")).is_file()
        assert (local_backend.root / "files" / (project.id + ".bin")).is_file()

    def test_list_is_newest_first(self, local_backend):
        old = _run(local_backend.create(new_project("old.mp3", "audio/mpeg", now=1.0), b"a"))
        new = _run(local_backend.create(new_project("new.mp3", "audio/mpeg", now=2.0), b"b"))
        assert [p.id for p in _run(local_backend.list_projects())] == [new.id, old.id]

    @pytest.mark.slow
    def test_260_mib_upload_exceeds_250_mib_cap(self, local_backend):
        project = new_project("huge.wav", "audio/wav")
        with pytest.raises(QuotaExceeded) as excinfo:
            _run(local_backend.create(project, bytes(260 * MIB)))

        assert excinfo.value.incoming == 260 * MIB
        assert excinfo.value.limit == 250 * MIB
        assert _run(local_backend.list_projects()) == []
        assert _run(local_backend.storage_footprint()) == 0

    def test_quota_counts_existing_usage(self, tmp_path):
        backend = LocalStorageBackend(root=tmp_path, quota_bytes=10)
        _run(backend.create(new_project("a.mp3", "audio/mpeg"), b"123456"))
        with pytest.raises(QuotaExceeded) as excinfo:
            _run(backend.create(new_project("b.mp3", "audio/mpeg"), b"12345"))
        assert excinfo.value.used == 6
        # exactly at the cap is allowed
        _run(backend.create(new_project("c.mp3", "audio/mpeg"), b"1234"))
        assert _run(backend.storage_footprint()) == 10

    def test_metadata_failure_rolls_back_bytes(self, local_backend, monkeypatch):
        project = new_project("a.mp3", "audio/mpeg")
        real_replace = os.replace

        def failing_replace(src, dst):
            if str(dst).endswith(".json"):
                raise OSError("disk full")
            return real_replace(src, dst)

        monkeypatch.setattr("scriptlift.storage.local.os.replace", failing_replace)
        with pytest.raises(PersistenceFailure):
            _run(local_backend.create(project, b"abc"))

        monkeypatch.setattr("scriptlift.storage.local.os.replace", real_replace)
        assert _run(local_backend.list_projects()) == []
        assert _run(local_backend.storage_footprint()) == 0


# ---------------------------------------------------------------------------
# TestUpdate
# ---------------------------------------------------------------------------


class TestUpdate:

    def test_update_persists_status_and_transcript(self, local_backend):
        stored = _run(local_backend.create(new_project("a.mp3", "audio/mpeg"), b"x"))
        processing = advance(stored, ProjectStatus.PROCESSING)
        transcript = Transcript.from_segments([TranscriptSegment(0.0, "hi", "Speaker 1")])
        done = advance(processing, ProjectStatus.COMPLETED, transcript=transcript)

        _run(local_backend.update(done))
        [loaded] = _run(local_backend.list_projects())
        assert loaded.status == ProjectStatus.COMPLETED
        assert loaded.transcript.raw_text == "hi"

    def test_update_unknown_id_is_noop(self, local_backend):
        _run(local_backend.update(new_project("ghost.mp3", "audio/mpeg")))
        assert _run(local_backend.list_projects()) == []

    def test_update_aliases_leaves_status_and_transcript(self, local_backend):
        stored = _run(local_backend.create(new_project("a.mp3", "audio/mpeg"), b"x"))
        processing = advance(stored, ProjectStatus.PROCESSING)
        transcript = Transcript.from_segments([TranscriptSegment(0.0, "hi", "Speaker 1")])
        _run(local_backend.update(advance(processing, ProjectStatus.COMPLETED, transcript=transcript)))

        _run(local_backend.update_aliases(stored.id, {"Speaker 1": "Alice"}))

        [loaded] = _run(local_backend.list_projects())
        assert loaded.status == ProjectStatus.COMPLETED
        assert loaded.transcript.raw_text == "hi"
        assert loaded.speaker_aliases == {"Speaker 1": "Alice"}

    def test_update_aliases_unknown_id_is_noop(self, local_backend):
        _run(local_backend.update_aliases("ghost", {"Speaker 1": "Alice"}))
        assert _run(local_backend.list_projects()) == []


# ---------------------------------------------------------------------------
# TestDelete
# ---------------------------------------------------------------------------


class TestDelete:

    def test_delete_removes_metadata_and_bytes(self, local_backend):
        stored = _run(local_backend.create(new_project("a.mp3", "audio/mpeg"), b"x"))
        _run(local_backend.delete(stored))
        assert _run(local_backend.list_projects()) == []
        with pytest.raises(SourceUnavailable):
            _run(local_backend.fetch_bytes(stored.locator))

    def test_delete_twice_does_not_raise(self, local_backend):
        stored = _run(local_backend.create(new_project("a.mp3", "audio/mpeg"), b"x"))
        _run(local_backend.delete(stored))
        _run(local_backend.delete(stored))

    def test_late_write_after_delete_stays_deleted(self, local_backend):
        stored = _run(local_backend.create(new_project("a.mp3", "audio/mpeg"), b"x"))
        processing = advance(stored, ProjectStatus.PROCESSING)
        _run(local_backend.delete(stored))
        _run(local_backend.update(advance(processing, ProjectStatus.ERROR, error="late")))
        assert _run(local_backend.list_projects()) == []


# ---------------------------------------------------------------------------
# TestRetention
# ---------------------------------------------------------------------------


class TestRetention:

    def test_sweep_removes_only_expired(self, local_backend):
        old = _run(local_backend.create(new_project("old.mp3", "audio/mpeg", now=0.0), b"a"))
        fresh = _run(local_backend.create(
            new_project("fresh.mp3", "audio/mpeg", now=10 * 24 * 3600.0), b"b"
        ))

        removed = _run(local_backend.sweep_expired(now=15 * 24 * 3600.0))

        assert removed == 1
        assert [p.id for p in _run(local_backend.list_projects())] == [fresh.id]
        with pytest.raises(SourceUnavailable):
            _run(local_backend.fetch_bytes(old.locator))

    def test_sweep_boundary_is_exclusive(self, local_backend):
        project = _run(local_backend.create(new_project("a.mp3", "audio/mpeg", now=0.0), b"a"))
        assert _run(local_backend.sweep_expired(now=project.expires_at)) == 0
        assert _run(local_backend.sweep_expired(now=project.expires_at + 1)) == 1

    def test_sweep_uses_current_time_by_default(self, local_backend, monkeypatch):
        _run(local_backend.create(new_project("a.mp3", "audio/mpeg", now=0.0), b"a"))
        monkeypatch.setattr("scriptlift.storage.local.time.time", lambda: 10**10)
        assert _run(local_backend.sweep_expired()) == 1


# ---------------------------------------------------------------------------
# TestReads
# ---------------------------------------------------------------------------


class TestReads:

    def test_fetch_missing_raises_source_unavailable(self, local_backend):
        with pytest.raises(SourceUnavailable):
            _run(local_backend.fetch_bytes("does-not-exist"))

    def test_fetch_rejects_path_traversal(self, local_backend):
        with pytest.raises(SourceUnavailable):
            _run(local_backend.fetch_bytes("../secrets"))

    def test_playable_url_is_file_uri(self, local_backend):
        stored = _run(local_backend.create(new_project("a.mp3", "audio/mpeg"), b"x"))
        playable = _run(local_backend.resolve_playable_url(stored))
        assert playable.url.startswith("file://")
        assert playable.url.endswith(stored.id + ".bin")
        assert playable.expires_at is None

    def test_playable_url_missing_media_raises(self, local_backend):
        stored = _run(local_backend.create(new_project("a.mp3", "audio/mpeg"), b"x"))
        (local_backend.root / "files" / (stored.id + ".bin")).unlink()
        with pytest.raises(SourceUnavailable):
            _run(local_backend.resolve_playable_url(stored))

    def test_footprint_ignores_leftover_temp_files(self, local_backend):
        _run(local_backend.create(new_project("a.mp3", "audio/mpeg"), b"12345"))
        (local_backend.root / "files" / "interrupted.bin.tmp").write_bytes(b"x" * 100)
        assert _run(local_backend.storage_footprint()) == 5

    def test_corrupt_metadata_is_skipped(self, local_backend):
        stored = _run(local_backend.create(new_project("a.mp3", "audio/mpeg"), b"x"))
        (local_backend.root / "projects" / "broken.json").write_text("{not json")
        assert [p.id for p in _run(local_backend.list_projects())] == [stored.id]
