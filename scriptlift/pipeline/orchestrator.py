"""Drive one queued project through fetch → transcribe → attribute → persist.

WHY: This is the only place that knows the pipeline's stage order and
which failures end a job versus which are recovered. Keeping that logic
in one function makes "attribution never loses a transcript" and
"a failed job never halts the queue" easy to check.

HOW: run() marks the project processing, then _process() does the work:
  1. fetch_bytes(source_locator or id) from the storage backend
  2. decode to 16 kHz mono PCM on a worker thread
  3. load the speech worker (idempotent) and transcribe
  4. attribute speakers, or fall back to pause-based detection
  5. assemble the Transcript and transition to completed
Any exception from steps 1-5 moves the job to error with the message.
Progress strings are passed to the caller's on_progress callback.

RULES:
- Attribution failure is never fatal: the fallback diarizer takes over
- A single attributed speaker over more than fallback_min_segments
  provisional segments is treated as failed attribution
- An empty transcription completes with an empty transcript and skips
  attribution
- run() returns the last successfully persisted project value
- Failure to mark processing is re-raised to the caller after logging;
  the project is still queued in storage and in memory
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

import numpy as np

from scriptlift.config import PLACEHOLDER_SPEAKER, PipelineSettings
from scriptlift.core.errors import PersistenceFailure
from scriptlift.core.fallback import detect_speakers_from_pauses
from scriptlift.core.ir import Project, ProjectStatus, Transcript, TranscriptSegment
from scriptlift.inference.attribution import SpeakerAttributionClient
from scriptlift.inference.audio import decode_audio
from scriptlift.inference.worker import SpeechToTextGateway
from scriptlift.pipeline.projects import ProjectWorkspace

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]
Decoder = Callable[[bytes], np.ndarray]


def _ignore_progress(message: str) -> None:
    pass


class PipelineOrchestrator:
    """Runs the transcription pipeline for one project at a time.

    RULES:
    - workspace: write-through storage + collection
    - speech: speech-to-text gateway (owns the worker thread)
    - attribution: Gemini client, or None to always use the fallback
    - settings: thresholds for the fallback trigger and the diarizer
    - decoder: bytes → float32 16 kHz samples (decode_audio by default)
    """

    def __init__(
        self,
        workspace: ProjectWorkspace,
        speech: SpeechToTextGateway,
        attribution: Optional[SpeakerAttributionClient] = None,
        settings: Optional[PipelineSettings] = None,
        decoder: Decoder = decode_audio,
    ) -> None:
        self._workspace = workspace
        self._speech = speech
        self._attribution = attribution
        self._settings = settings or PipelineSettings()
        self._decoder = decoder

    @property
    def settings(self) -> PipelineSettings:
        return self._settings

    async def run(
        self,
        project: Project,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Project:
        """Process one queued project to completed or error."""
        progress = on_progress or _ignore_progress

        try:
            current = await self._workspace.transition(project, ProjectStatus.PROCESSING)
        except Exception as exc:
            logger.exception("Could not start processing project %s", project.id)
            progress("Error: could not start {}: {}".format(project.file_name, exc))
            raise

        try:
            return await self._process(current, progress)
        except Exception as exc:
            logger.exception("Pipeline failed for project %s (%s)", current.id, current.file_name)
            return await self._fail(current, exc, progress)

    async def _process(self, project: Project, progress: ProgressCallback) -> Project:
        name = project.file_name

        progress("Downloading {}...".format(name))
        data = await self._workspace.backend.fetch_bytes(project.locator)

        progress("Decoding audio...")
        samples = await asyncio.to_thread(self._decoder, data)

        if not self._speech.loaded:
            progress("Loading speech model...")
        await self._speech.load(on_progress=progress)

        progress("Transcribing {}...".format(name))
        chunks = await self._speech.transcribe(
            samples, language=self._settings.language, on_progress=progress
        )
        provisional = [
            TranscriptSegment(timestamp_s=c.start_s, text=c.text, speaker=PLACEHOLDER_SPEAKER)
            for c in chunks
        ]
        logger.info("Transcribed %s into %d segment(s)", name, len(provisional))

        if provisional:
            labelled = await self._attribute(project, data, provisional, progress)
        else:
            labelled = []

        progress("Saving transcript...")
        transcript = Transcript.from_segments(labelled)
        return await self._workspace.transition(
            project, ProjectStatus.COMPLETED, transcript=transcript
        )

    async def _attribute(
        self,
        project: Project,
        data: bytes,
        provisional: List[TranscriptSegment],
        progress: ProgressCallback,
    ) -> List[TranscriptSegment]:
        if self._attribution is None:
            return self._fallback(provisional, progress)

        progress("Identifying speakers for {}...".format(project.file_name))
        try:
            async with self._attribution as client:
                labelled = await client.identify_speakers(data, project.file_type, provisional)
        except Exception as exc:
            logger.warning("Speaker attribution failed for project %s: %s", project.id, exc)
            return self._fallback(provisional, progress)

        speakers = {seg.speaker for seg in labelled}
        if len(speakers) == 1 and len(provisional) > self._settings.fallback_min_segments:
            logger.warning(
                "Speaker attribution found one speaker over %d segments for project %s",
                len(provisional), project.id,
            )
            return self._fallback(provisional, progress)
        return labelled

    def _fallback(
        self,
        provisional: List[TranscriptSegment],
        progress: ProgressCallback,
    ) -> List[TranscriptSegment]:
        progress("Using pause-based speaker detection...")
        return detect_speakers_from_pauses(
            provisional,
            pause_threshold_s=self._settings.pause_threshold_s,
            seconds_per_word=self._settings.seconds_per_word,
        )

    async def _fail(self, project: Project, exc: Exception, progress: ProgressCallback) -> Project:
        message = str(exc) or exc.__class__.__name__
        progress("Error: {}".format(message))
        try:
            return await self._workspace.transition(project, ProjectStatus.ERROR, error=message)
        except PersistenceFailure:
            logger.exception("Could not record failure for project %s", project.id)
            return project
