"""Inference gateway: audio decoding, speech-to-text and speaker attribution."""

from scriptlift.inference.attribution import SpeakerAttributionClient
from scriptlift.inference.worker import (
    FasterWhisperEngine,
    SpeechChunk,
    SpeechEngine,
    SpeechToTextGateway,
    SpeechWorker,
)

__all__ = [
    "FasterWhisperEngine",
    "SpeakerAttributionClient",
    "SpeechChunk",
    "SpeechEngine",
    "SpeechToTextGateway",
    "SpeechWorker",
]
