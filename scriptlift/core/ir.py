"""Project and transcript dataclasses plus the project state machine.

WHY: Every layer — storage backends, orchestrator, scheduler, HTTP API —
passes projects around. A single well-typed representation with one
place that decides which status changes are legal keeps the
"transcript present iff completed" invariant from leaking out through
some forgotten code path.

HOW: Four pieces:
  ProjectStatus     — str enum of the four lifecycle states
  TranscriptSegment — one time-stamped, speaker-labelled span of text
  Transcript        — ordered segments + derived raw_text + generated_at
  Project           — the unit of work and its result
advance() is the state machine: it validates the edge and the invariant
and returns a new Project value; the input is never mutated.

RULES:
- queued is the only initial state; completed and error are terminal
- There is no processing → queued edge (no automatic retry)
- transcript is not None ⇔ status is completed
- error is set only when status is error
- Transcript segments are kept in non-decreasing timestamp order
- All times are float epoch seconds; segment timestamps are seconds from
  the start of the media
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional

from scriptlift.config import RETENTION_SECONDS
from scriptlift.core.errors import InvalidTransition


class ProjectStatus(str, enum.Enum):
    """Lifecycle states of a transcription project.

    HOW: Inherits from str so values serialise cleanly to JSON and to the
    networked backend's status column.
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


_TRANSITIONS = {
    ProjectStatus.QUEUED: frozenset({ProjectStatus.PROCESSING}),
    ProjectStatus.PROCESSING: frozenset({ProjectStatus.COMPLETED, ProjectStatus.ERROR}),
    ProjectStatus.COMPLETED: frozenset(),
    ProjectStatus.ERROR: frozenset(),
}

TERMINAL_STATUSES = frozenset({ProjectStatus.COMPLETED, ProjectStatus.ERROR})


@dataclass
class TranscriptSegment:
    """One time-stamped span of transcript text attributed to a speaker.

    RULES:
    - timestamp_s: start of the span, seconds from the start of the media
    - text: stripped segment text
    - speaker: raw label such as "Speaker 1" (display names live on Project)
    """

    timestamp_s: float
    text: str
    speaker: str

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp_s, "text": self.text, "speaker": self.speaker}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TranscriptSegment:
        return cls(
            timestamp_s=float(data["timestamp"]),
            text=data["text"],
            speaker=data["speaker"],
        )


@dataclass
class Transcript:
    """The pipeline's output for one project.

    WHY: Playback highlighting and the fallback diarizer both rely on the
    segment order being the temporal order, and exports rely on raw_text
    matching the segments exactly. Building transcripts only through
    from_segments() guarantees both.

    RULES:
    - segments: non-decreasing timestamp_s
    - raw_text: segment texts joined by single spaces, in order
    - generated_at: epoch seconds when the transcript was assembled
    """

    segments: List[TranscriptSegment]
    raw_text: str
    generated_at: float

    @classmethod
    def from_segments(
        cls,
        segments: Iterable[TranscriptSegment],
        generated_at: Optional[float] = None,
    ) -> Transcript:
        """Build a transcript, sorting segments stably by timestamp."""
        ordered = sorted(segments, key=lambda s: s.timestamp_s)
        return cls(
            segments=ordered,
            raw_text=" ".join(s.text for s in ordered),
            generated_at=time.time() if generated_at is None else generated_at,
        )

    def speakers(self) -> List[str]:
        """Distinct speaker labels in order of first appearance."""
        seen: List[str] = []
        for seg in self.segments:
            if seg.speaker not in seen:
                seen.append(seg.speaker)
        return seen

    def to_dict(self) -> Dict[str, Any]:
        return {
            "segments": [s.to_dict() for s in self.segments],
            "raw_text": self.raw_text,
            "generated_at": self.generated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Transcript:
        segments = [TranscriptSegment.from_dict(s) for s in data.get("segments", [])]
        raw_text = data.get("raw_text")
        if raw_text is None:
            raw_text = " ".join(s.text for s in segments)
        return cls(
            segments=segments,
            raw_text=raw_text,
            generated_at=float(data.get("generated_at", 0.0)),
        )


@dataclass
class Project:
    """One user-submitted media item and its processing state/result.

    WHY: The project is the unit of work, the unit of storage and the unit
    of selection. Its id is the only identity used anywhere — storage keys,
    deduplication, the scheduler's selection, the HTTP API.

    HOW: Created by new_project() in QUEUED state. Status, transcript and
    error change only through advance(); aliases change through
    with_alias(). Both return copies, so a value that failed to persist can
    simply be dropped.

    RULES:
    - id: UUID4 string, immutable
    - file_name / file_type: captured at ingestion, immutable
    - created_at / expires_at: epoch seconds; expires_at used by the local
      retention sweep only
    - source_locator: backend-specific byte reference, or None when bytes
      are addressed by id
    - speaker_aliases: raw label → display name, editable in any state
    """

    id: str
    file_name: str
    file_type: str
    created_at: float
    expires_at: float
    status: ProjectStatus = ProjectStatus.QUEUED
    source_locator: Optional[str] = None
    transcript: Optional[Transcript] = None
    speaker_aliases: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def locator(self) -> str:
        """The reference used to fetch bytes: source_locator, else id."""
        return self.source_locator or self.id

    def display_name(self, label: str) -> str:
        """Return the user-supplied alias for a raw label, or the label itself."""
        return self.speaker_aliases.get(label) or label

    def with_alias(self, label: str, name: str) -> Project:
        """Return a copy with one alias set (a blank name clears it)."""
        aliases = dict(self.speaker_aliases)
        name = name.strip()
        if name:
            aliases[label] = name
        else:
            aliases.pop(label, None)
        return replace(self, speaker_aliases=aliases)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "file_name": self.file_name,
            "file_type": self.file_type,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "status": self.status.value,
            "source_locator": self.source_locator,
            "transcript": self.transcript.to_dict() if self.transcript else None,
            "speaker_aliases": dict(self.speaker_aliases),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Project:
        transcript = data.get("transcript")
        return cls(
            id=data["id"],
            file_name=data["file_name"],
            file_type=data.get("file_type", ""),
            created_at=float(data["created_at"]),
            expires_at=float(data.get("expires_at") or 0.0),
            status=ProjectStatus(data["status"]),
            source_locator=data.get("source_locator"),
            transcript=Transcript.from_dict(transcript) if transcript else None,
            speaker_aliases=dict(data.get("speaker_aliases") or {}),
            error=data.get("error"),
        )


def new_project(
    file_name: str,
    file_type: str,
    now: Optional[float] = None,
    retention_seconds: int = RETENTION_SECONDS,
) -> Project:
    """Create a fresh QUEUED project with a new UUID and retention deadline."""
    created = time.time() if now is None else now
    return Project(
        id=str(uuid.uuid4()),
        file_name=file_name,
        file_type=file_type,
        created_at=created,
        expires_at=created + retention_seconds,
    )


def check_invariant(project: Project) -> None:
    """Raise InvalidTransition if the transcript/status invariant is broken.

    RULES:
    - transcript present ⇔ status is COMPLETED
    - error message present only when status is ERROR
    """
    has_transcript = project.transcript is not None
    if has_transcript != (project.status == ProjectStatus.COMPLETED):
        raise InvalidTransition(
            "Project {} has status {} but transcript is {}".format(
                project.id,
                project.status.value,
                "present" if has_transcript else "absent",
            )
        )
    if project.error is not None and project.status != ProjectStatus.ERROR:
        raise InvalidTransition(
            "Project {} carries an error message in status {}".format(
                project.id, project.status.value
            )
        )


def can_transition(current: ProjectStatus, target: ProjectStatus) -> bool:
    return target in _TRANSITIONS[current]


def advance(
    project: Project,
    status: ProjectStatus,
    transcript: Optional[Transcript] = None,
    error: Optional[str] = None,
) -> Project:
    """Apply one state-machine transition and return the new project value.

    WHY: The orchestrator is the only writer of status, but it writes from
    several places (start, success, every failure path). Funnelling all of
    them through one validated function keeps the invariant in one place.

    HOW: Checks the edge against the transition table, builds the new
    value with dataclasses.replace (the transcript is dropped on every
    non-completed target), then re-checks the invariant.

    RULES:
    - Raises InvalidTransition for an edge not in the table
    - COMPLETED requires a transcript; ERROR keeps only the error message
    - The input project is never mutated
    """
    if not can_transition(project.status, status):
        raise InvalidTransition(
            "Illegal transition for project {}: {} -> {}".format(
                project.id, project.status.value, status.value
            )
        )

    updated = replace(
        project,
        status=status,
        transcript=transcript if status == ProjectStatus.COMPLETED else None,
        error=error if status == ProjectStatus.ERROR else None,
    )
    check_invariant(updated)
    return updated
