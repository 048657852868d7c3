"""Tests for the in-memory project collection and the write-through workspace.

HOW: Organized by class:
  - TestCollection: ordering, listeners, late writes after removal
  - TestWorkspace: submit, transitions, aliases, delete, refresh, sweep
The workspace tests use a real LocalStorageBackend under tmp_path.
"""

from __future__ import annotations

import asyncio

import pytest

from scriptlift.core.errors import InvalidTransition, QuotaExceeded, UnsupportedMediaType
from scriptlift.core.ir import ProjectStatus, Transcript, TranscriptSegment, new_project
from scriptlift.pipeline.projects import ProjectCollection, ProjectWorkspace, is_supported_media
from scriptlift.storage.local import LocalStorageBackend


def _run(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# TestCollection
# ---------------------------------------------------------------------------


class TestCollection:

    def test_list_newest_first_and_queue_oldest_first(self):
        collection = ProjectCollection()
        a = new_project("a.mp3", "audio/mpeg", now=1.0)
        b = new_project("b.mp3", "audio/mpeg", now=2.0)
        collection.add(a)
        collection.add(b)
        assert [p.id for p in collection.list_projects()] == [b.id, a.id]
        assert [p.id for p in collection.queued()] == [a.id, b.id]

    def test_listeners_notified_on_every_change(self):
        collection = ProjectCollection()
        calls = []
        collection.subscribe(lambda: calls.append("changed"))
        project = new_project("a.mp3", "audio/mpeg")

        collection.add(project)
        collection.put(project)
        collection.remove(project.id)
        collection.replace_all([])

        assert len(calls) == 4

    def test_unsubscribe_stops_notifications(self):
        collection = ProjectCollection()
        calls = []
        unsubscribe = collection.subscribe(lambda: calls.append(1))
        unsubscribe()
        collection.add(new_project("a.mp3", "audio/mpeg"))
        assert calls == []

    def test_failing_listener_does_not_block_others(self):
        collection = ProjectCollection()
        calls = []

        def broken():
            raise RuntimeError("listener bug")

        collection.subscribe(broken)
        collection.subscribe(lambda: calls.append(1))
        collection.add(new_project("a.mp3", "audio/mpeg"))
        assert calls == [1]

    def test_put_unknown_id_is_ignored(self):
        collection = ProjectCollection()
        calls = []
        collection.subscribe(lambda: calls.append(1))
        assert collection.put(new_project("ghost.mp3", "audio/mpeg")) is False
        assert len(collection) == 0
        assert calls == []

    def test_progress_is_cleared_on_remove(self):
        collection = ProjectCollection()
        project = new_project("a.mp3", "audio/mpeg")
        collection.add(project)
        collection.set_progress(project.id, "Transcribing...")
        assert collection.progress(project.id) == "Transcribing..."
        collection.remove(project.id)
        assert collection.progress(project.id) is None

    def test_progress_ignored_for_unknown_project(self):
        collection = ProjectCollection()
        collection.set_progress("ghost", "Transcribing...")
        assert collection.progress("ghost") is None


# ---------------------------------------------------------------------------
# TestWorkspace
# ---------------------------------------------------------------------------


class TestWorkspace:

    def test_submit_stores_then_queues(self, local_backend):
        workspace = ProjectWorkspace(local_backend)
        project = _run(workspace.submit("talk.mp3", "audio/mpeg", b"abc"))

        assert project.status == ProjectStatus.QUEUED
        assert workspace.collection.get(project.id) == project
        assert [p.id for p in _run(local_backend.list_projects())] == [project.id]

    def test_submit_rejects_non_media(self, local_backend):
        workspace = ProjectWorkspace(local_backend)
        with pytest.raises(UnsupportedMediaType):
            _run(workspace.submit("notes.txt", "text/plain", b"abc"))
        assert len(workspace.collection) == 0
        assert _run(local_backend.list_projects()) == []

    def test_quota_failure_leaves_memory_untouched(self, tmp_path):
        workspace = ProjectWorkspace(LocalStorageBackend(root=tmp_path, quota_bytes=2))
        with pytest.raises(QuotaExceeded):
            _run(workspace.submit("big.wav", "audio/wav", b"abc"))
        assert len(workspace.collection) == 0

    def test_transition_persists_before_memory(self, local_backend):
        workspace = ProjectWorkspace(local_backend)
        project = _run(workspace.submit("a.mp3", "audio/mpeg", b"x"))

        processing = _run(workspace.transition(project, ProjectStatus.PROCESSING))

        assert workspace.collection.get(project.id).status == ProjectStatus.PROCESSING
        [stored] = _run(local_backend.list_projects())
        assert stored == processing

    def test_illegal_transition_writes_nothing(self, local_backend):
        workspace = ProjectWorkspace(local_backend)
        project = _run(workspace.submit("a.mp3", "audio/mpeg", b"x"))
        with pytest.raises(InvalidTransition):
            _run(workspace.transition(project, ProjectStatus.COMPLETED))
        [stored] = _run(local_backend.list_projects())
        assert stored.status == ProjectStatus.QUEUED

    def test_alias_edit_survives_status_change_from_stale_copy(self, local_backend):
        workspace = ProjectWorkspace(local_backend)
        project = _run(workspace.submit("a.mp3", "audio/mpeg", b"x"))
        stale = _run(workspace.transition(project, ProjectStatus.PROCESSING))

        _run(workspace.rename_speaker(project.id, "Speaker 1", "Alice"))
        transcript = Transcript.from_segments([TranscriptSegment(0.0, "hi", "Speaker 1")])
        done = _run(workspace.transition(stale, ProjectStatus.COMPLETED, transcript=transcript))

        assert done.display_name("Speaker 1") == "Alice"
        [stored] = _run(local_backend.list_projects())
        assert stored.speaker_aliases == {"Speaker 1": "Alice"}

    def test_rename_unknown_project(self, local_backend):
        workspace = ProjectWorkspace(local_backend)
        with pytest.raises(KeyError):
            _run(workspace.rename_speaker("ghost", "Speaker 1", "Alice"))

    def test_delete(self, local_backend):
        workspace = ProjectWorkspace(local_backend)
        project = _run(workspace.submit("a.mp3", "audio/mpeg", b"x"))

        assert _run(workspace.delete(project.id)) is True
        assert _run(workspace.delete(project.id)) is False
        assert workspace.collection.get(project.id) is None
        assert _run(local_backend.list_projects()) == []

    def test_refresh_loads_from_storage(self, local_backend):
        _run(local_backend.create(new_project("a.mp3", "audio/mpeg"), b"x"))
        workspace = ProjectWorkspace(local_backend)
        assert len(workspace.collection) == 0
        _run(workspace.refresh())
        assert len(workspace.collection) == 1

    def test_sweep_drops_expired_from_memory(self, local_backend):
        workspace = ProjectWorkspace(local_backend)
        old = _run(workspace.submit("old.mp3", "audio/mpeg", b"x", now=0.0))
        fresh = _run(workspace.submit("new.mp3", "audio/mpeg", b"y", now=10 * 24 * 3600.0))

        assert _run(workspace.sweep_expired(now=15 * 24 * 3600.0)) == 1
        assert workspace.collection.get(old.id) is None
        assert workspace.collection.get(fresh.id) is not None

    def test_footprint_and_playable_url(self, local_backend):
        workspace = ProjectWorkspace(local_backend)
        project = _run(workspace.submit("a.mp3", "audio/mpeg", b"12345"))
        assert _run(workspace.storage_footprint()) == 5
        assert _run(workspace.playable_url(project.id)).url.startswith("file://")
        with pytest.raises(KeyError):
            _run(workspace.playable_url("ghost"))


@pytest.mark.parametrize(
    "file_type,supported",
    [
        ("audio/mpeg", True),
        ("video/mp4", True),
        ("Audio/WAV", True),
        ("text/plain", False),
        ("application/octet-stream", False),
        ("", False),
        (None, False),
    ],
)
def test_is_supported_media(file_type, supported):
    assert is_supported_media(file_type) is supported
