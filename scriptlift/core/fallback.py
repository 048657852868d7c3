"""Pause-based two-speaker fallback diarization.

WHY: Speaker attribution depends on a network model that can fail, be
unconfigured, or degenerate into "everyone is one speaker". A transcript
that took minutes to produce must never be thrown away for that, so we
need an offline, deterministic labeller to fall back on.

HOW: Walk the segments in temporal order keeping a running estimate of
where the previous segment ended (start + words × seconds_per_word). A gap
longer than the pause threshold before a segment is taken as a change of
speaker, toggling between "Speaker 1" and "Speaker 2".

RULES:
- Deterministic: same input, same labels
- Never more than two distinct labels
- The first segment is always "Speaker 1"; it never toggles
- Word count is a whitespace split of the segment text
- Input segments are never mutated; a new list is returned
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import List, Sequence

from scriptlift.core.ir import TranscriptSegment

logger = logging.getLogger(__name__)

DEFAULT_PAUSE_THRESHOLD_S = 2.0
DEFAULT_SECONDS_PER_WORD = 0.4


def speaker_label(number: int) -> str:
    return "Speaker {}".format(number)


def estimate_end(segment: TranscriptSegment, seconds_per_word: float) -> float:
    """Estimated end time of a segment from its word count."""
    return segment.timestamp_s + len(segment.text.split()) * seconds_per_word


def detect_speakers_from_pauses(
    segments: Sequence[TranscriptSegment],
    pause_threshold_s: float = DEFAULT_PAUSE_THRESHOLD_S,
    seconds_per_word: float = DEFAULT_SECONDS_PER_WORD,
) -> List[TranscriptSegment]:
    """Label segments by toggling between two speakers at long pauses.

    Args:
        segments: Segments in temporal order.
        pause_threshold_s: A gap strictly longer than this toggles speaker.
        seconds_per_word: Per-word duration used to estimate segment ends.

    Returns:
        New segments carrying "Speaker 1" / "Speaker 2" labels.
    """
    logger.info("Using pause-based speaker detection for %d segments", len(segments))

    current = 1
    previous_end = 0.0
    labelled: List[TranscriptSegment] = []

    for idx, seg in enumerate(segments):
        if idx > 0 and seg.timestamp_s - previous_end > pause_threshold_s:
            current = 2 if current == 1 else 1
        labelled.append(replace(seg, speaker=speaker_label(current)))
        previous_end = estimate_end(seg, seconds_per_word)

    return labelled
