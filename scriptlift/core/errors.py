"""Error taxonomy for the transcription pipeline.

WHY: The orchestrator must tell apart failures that end a job
(missing bytes, failed transcription), failures it recovers from
(speaker attribution), and failures that are not pipeline errors at all
(quota rejections at upload time). Typed exceptions make that decision
explicit at every except clause.

HOW: Every error derives from ScriptLiftError so callers at the outer
edges (HTTP API, CLI) can catch the family in one place.

RULES:
- SourceUnavailable, TranscriptionFailure: fatal to one job only
- AttributionFailure: always recovered via the fallback diarizer
- PersistenceFailure: in-memory state must not advance past storage
- QuotaExceeded, UnsupportedMediaType: rejected before anything is queued
"""

from __future__ import annotations


class ScriptLiftError(Exception):
    """Base class for all ScriptLift errors."""


class SourceUnavailable(ScriptLiftError):
    """Raised when a project's raw bytes are missing or cannot be fetched."""


class TranscriptionFailure(ScriptLiftError):
    """Raised when the speech-to-text stage fails."""


class AudioDecodeError(TranscriptionFailure):
    """Raised when input media cannot be decoded into 16 kHz PCM.

    WHY: Decoding is a pre-processing step of transcription; a file that
    cannot be decoded can never be transcribed, so it is fatal in the same
    way.
    """


class AttributionFailure(ScriptLiftError):
    """Raised when speaker attribution errors or returns an invalid shape."""


class PersistenceFailure(ScriptLiftError):
    """Raised when a write-through to the storage backend fails."""


class QuotaExceeded(ScriptLiftError):
    """Raised when a local upload would push usage past the storage cap.

    RULES:
    - used, incoming and limit are all byte counts
    - Nothing has been persisted when this is raised
    """

    def __init__(self, used: int, incoming: int, limit: int) -> None:
        self.used = used
        self.incoming = incoming
        self.limit = limit
        super().__init__(
            "Local storage limit exceeded: {:,} bytes used + {:,} incoming "
            "> {:,} byte limit. Sign in for cloud storage or delete files.".format(
                used, incoming, limit
            )
        )


class UnsupportedMediaType(ScriptLiftError, ValueError):
    """Raised when an uploaded file is neither audio nor video."""


class InvalidTransition(ScriptLiftError):
    """Raised for an illegal project state change or broken invariant."""
