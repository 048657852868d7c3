"""Shared test fixtures for the scriptlift test suite.

WHY: Storage, orchestrator, scheduler and API tests all need the same
building blocks: a local backend in a temp directory, a speech engine
that answers instantly, an attribution stand-in, and small WAV files.
Centralizing them keeps every test module short and consistent.

HOW: Fakes are plain classes configured through attributes after the
fixture hands them out (e.g. engine.chunks = [...]). wav_bytes is a
factory fixture so tests can choose duration, rate and channel count.

RULES:
- No test talks to a real model, Gemini or Supabase
- Every backend lives under pytest's tmp_path
- The default engine output is the three-segment conversation used by
  the pause-detection example (0.0 / 1.5 / 6.0 seconds)
"""

from __future__ import annotations

import io
import wave
from dataclasses import replace
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np
import pytest

from scriptlift.core.errors import AttributionFailure
from scriptlift.core.ir import TranscriptSegment
from scriptlift.storage.local import LocalStorageBackend


CONVERSATION: List[Tuple[float, str]] = [
    (0.0, "Hello there"),
    (1.5, "How are you"),
    (6.0, "I am fine, thanks"),
]


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeEngine:
    """SpeechEngine stand-in returning canned chunks.

    RULES:
    - fail_loads: number of upcoming load() calls that raise
    - transcribe_error: exception raised by transcribe(), if set
    """

    def __init__(self, chunks: Optional[Sequence[Tuple[float, str]]] = None) -> None:
        self.chunks = list(CONVERSATION if chunks is None else chunks)
        self.fail_loads = 0
        self.transcribe_error: Optional[Exception] = None
        self.load_calls = 0
        self.transcribe_calls: List[Tuple[int, str]] = []

    def load(self, on_progress) -> None:  # noqa: ANN001
        self.load_calls += 1
        on_progress("Loading speech model: 50%")
        if self.fail_loads > 0:
            self.fail_loads -= 1
            raise RuntimeError("model download failed")

    def transcribe(self, samples, language: str):  # noqa: ANN001
        self.transcribe_calls.append((len(samples), language))
        if self.transcribe_error is not None:
            raise self.transcribe_error
        return list(self.chunks)


class FakeAttribution:
    """Speaker attribution stand-in usable as an async context manager.

    RULES:
    - labels: speaker per segment index (None entries keep the prior label)
    - error: exception raised by identify_speakers(), if set
    """

    def __init__(self, labels: Optional[Sequence[Optional[str]]] = None) -> None:
        self.labels = list(labels or [])
        self.error: Optional[Exception] = None
        self.calls: List[Tuple[bytes, str, int]] = []

    async def __aenter__(self) -> "FakeAttribution":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        return None

    async def identify_speakers(
        self,
        media: bytes,
        mime_type: str,
        segments: Sequence[TranscriptSegment],
    ) -> List[TranscriptSegment]:
        self.calls.append((media, mime_type, len(segments)))
        if self.error is not None:
            raise self.error
        out = []
        for i, seg in enumerate(segments):
            label = self.labels[i] if i < len(self.labels) else None
            out.append(replace(seg, speaker=label) if label else seg)
        return out


def _wav(seconds: float = 0.5, rate: int = 16000, channels: int = 1, freq: float = 440.0) -> bytes:
    t = np.arange(int(seconds * rate)) / float(rate)
    tone = (0.5 * np.sin(2 * np.pi * freq * t) * 32767).astype(np.int16)
    frames = np.repeat(tone[:, None], channels, axis=1) if channels > 1 else tone
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(2)
        wav.setframerate(rate)
        wav.writeframes(frames.tobytes())
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def wav_bytes():
    """Factory building a PCM16 sine-tone WAV file in memory."""
    return _wav


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def attribution() -> FakeAttribution:
    return FakeAttribution()


@pytest.fixture
def failing_attribution() -> FakeAttribution:
    fake = FakeAttribution()
    fake.error = AttributionFailure("Speaker attribution has invalid shape")
    return fake


@pytest.fixture
def local_backend(tmp_path) -> LocalStorageBackend:
    return LocalStorageBackend(root=tmp_path / "data")


@pytest.fixture
def segments() -> List[TranscriptSegment]:
    """The three-segment conversation, all labelled with the placeholder."""
    return [TranscriptSegment(timestamp_s=t, text=text, speaker="Speaker 1") for t, text in CONVERSATION]


@pytest.fixture
def make_segments():
    """Factory for n evenly spaced placeholder segments."""

    def _make(n: int, gap: float = 1.0, text: str = "word word") -> List[TranscriptSegment]:
        return [
            TranscriptSegment(timestamp_s=i * gap, text=text, speaker="Speaker 1")
            for i in range(n)
        ]

    return _make


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "slow: tests that allocate large buffers")
