"""Pydantic request/response models for the HTTP API.

WHY: The FastAPI endpoints need typed schemas for request validation,
response serialization, and automatic OpenAPI documentation. Keeping
them separate from the core dataclasses means the wire format can stay
stable while the internals change.

HOW: Response models are built from core Project/Transcript values by the
from_* classmethods. All models include Field descriptions for the
/docs UI.

RULES:
- All models use Field(description=...) for OpenAPI documentation
- status values are the lowercase ProjectStatus values
- transcript is only present on completed projects
- Response models never expose source_locator (a backend detail)
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from scriptlift.core.ir import Project, Transcript


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SpeakerAliasRequest(BaseModel):
    """New display name for a raw speaker label.

    RULES:
    - A blank name clears the alias
    """

    name: str = Field(description="Display name for the speaker. Blank clears the alias.")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SegmentResponse(BaseModel):
    """One speaker-labelled transcript segment."""

    timestamp: float = Field(description="Start of the segment, seconds from media start.")
    text: str = Field(description="Segment text.")
    speaker: str = Field(description="Raw speaker label (e.g. 'Speaker 1').")
    display_speaker: str = Field(description="User alias for the speaker, or the raw label.")


class TranscriptResponse(BaseModel):
    """A completed project's transcript."""

    segments: List[SegmentResponse] = Field(description="Segments in temporal order.")
    raw_text: str = Field(description="All segment texts joined by single spaces.")
    generated_at: float = Field(description="Completion timestamp (Unix epoch seconds).")
    speakers: List[str] = Field(description="Distinct raw labels in order of first appearance.")

    @classmethod
    def from_transcript(cls, transcript: Transcript, project: Project) -> TranscriptResponse:
        return cls(
            segments=[
                SegmentResponse(
                    timestamp=seg.timestamp_s,
                    text=seg.text,
                    speaker=seg.speaker,
                    display_speaker=project.display_name(seg.speaker),
                )
                for seg in transcript.segments
            ],
            raw_text=transcript.raw_text,
            generated_at=transcript.generated_at,
            speakers=transcript.speakers(),
        )


class ProjectSummary(BaseModel):
    """Project metadata without the transcript body.

    WHY: Listing every project with full transcripts would make the
    dashboard poll expensive. Clients fetch a single project for its text.
    """

    id: str = Field(description="Unique project identifier (UUID).")
    file_name: str = Field(description="Original uploaded file name.")
    file_type: str = Field(description="MIME type captured at upload.")
    status: str = Field(description="queued, processing, completed or error.")
    created_at: float = Field(description="Upload timestamp (Unix epoch seconds).")
    expires_at: float = Field(description="Local retention deadline (Unix epoch seconds).")
    speaker_aliases: Dict[str, str] = Field(description="Raw speaker label → display name.")
    error: Optional[str] = Field(
        default=None,
        description="Failure reason, only present when status is 'error'.",
    )
    progress: Optional[str] = Field(
        default=None,
        description="Latest progress message while the project is processing.",
    )

    model_config = {"json_schema_extra": {
        "examples": [
            {
                "id": "0b7c8f0e-4a7e-4c1d-9a53-2f4f3f0a1c11",
                "file_name": "interview.mp3",
                "file_type": "audio/mpeg",
                "status": "processing",
                "created_at": 1760745600.0,
                "expires_at": 1761955200.0,
                "speaker_aliases": {"Speaker 1": "Alice"},
                "error": None,
                "progress": "Transcribing interview.mp3...",
            }
        ]
    }}

    @classmethod
    def from_project(cls, project: Project, progress: Optional[str] = None) -> ProjectSummary:
        return cls(
            id=project.id,
            file_name=project.file_name,
            file_type=project.file_type,
            status=project.status.value,
            created_at=project.created_at,
            expires_at=project.expires_at,
            speaker_aliases=dict(project.speaker_aliases),
            error=project.error,
            progress=progress,
        )


class ProjectResponse(ProjectSummary):
    """Full project including its transcript when completed."""

    transcript: Optional[TranscriptResponse] = Field(
        default=None,
        description="Transcript, only present when status is 'completed'.",
    )

    @classmethod
    def from_project(cls, project: Project, progress: Optional[str] = None) -> ProjectResponse:
        summary = ProjectSummary.from_project(project, progress)
        transcript = (
            TranscriptResponse.from_transcript(project.transcript, project)
            if project.transcript is not None
            else None
        )
        return cls(**summary.model_dump(), transcript=transcript)


class MediaUrlResponse(BaseModel):
    """Direct reference to a project's media for playback."""

    url: str = Field(description="Signed https URL (cloud) or file:// URI (local).")
    expires_at: Optional[float] = Field(
        default=None,
        description="When the URL stops working (Unix epoch seconds); null if it does not expire.",
    )


class QueueResponse(BaseModel):
    """Scheduler state."""

    active_project_id: Optional[str] = Field(
        default=None,
        description="Project currently being processed, if any.",
    )
    active_progress: Optional[str] = Field(
        default=None,
        description="Latest progress message of the active project.",
    )
    queued: List[str] = Field(description="Queued project ids in processing order.")


class StorageResponse(BaseModel):
    """Storage usage for the current session."""

    mode: str = Field(description="'local' (on-device) or 'cloud'.")
    used_bytes: Optional[int] = Field(
        default=None,
        description="Bytes used by stored media; null when the backend is not metered.",
    )
    limit_bytes: Optional[int] = Field(
        default=None,
        description="Storage cap in bytes; null when there is no cap.",
    )


class SweepResponse(BaseModel):
    """Result of a retention sweep."""

    removed: int = Field(description="Number of expired projects deleted.")


class ErrorResponse(BaseModel):
    """Standard error response body.

    RULES:
    - detail is always a human-readable error message
    """

    detail: str = Field(description="Human-readable error description.")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service health status.", json_schema_extra={"example": "ok"})
    version: str = Field(description="API version string.", json_schema_extra={"example": "0.1.0"})
    storage: str = Field(description="Active storage mode.", json_schema_extra={"example": "local"})
