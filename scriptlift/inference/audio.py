"""Decode uploaded media into 16 kHz mono float32 PCM.

WHY: The speech model only accepts 16 kHz mono samples, but users upload
whatever their recorder produced: stereo WAV at 44.1 kHz, MP3, M4A, video
containers. Decoding has to happen once, before the worker sees the
audio, and it must not block the event loop.

HOW: Two paths:
  PCM WAV  — decoded natively with the stdlib wave module and numpy,
             down-mixed by averaging channels, resampled by linear
             interpolation (fast, no external process)
  anything else — piped through ffmpeg on stdin/stdout as raw f32le mono
             at 16 kHz
Callers run decode_audio() via asyncio.to_thread().

RULES:
- Output is a 1-D float32 numpy array in [-1.0, 1.0] at SAMPLE_RATE
- ffmpeg missing or failing raises AudioDecodeError
- WAV variants the wave module cannot read fall through to ffmpeg
- Empty input raises AudioDecodeError
"""

from __future__ import annotations

import io
import logging
import shutil
import subprocess
import wave

import numpy as np

from scriptlift.config import SAMPLE_RATE
from scriptlift.core.errors import AudioDecodeError

logger = logging.getLogger(__name__)

# Full-scale divisors for the integer PCM widths the wave module returns
_PCM_SCALE = {2: 32768.0, 4: 2147483648.0}


def decode_audio(data: bytes, target_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Decode media bytes to mono float32 PCM at target_rate.

    Args:
        data: Raw bytes of an audio or video file.
        target_rate: Output sample rate in Hz.

    Returns:
        1-D float32 array of samples.
    """
    if not data:
        raise AudioDecodeError("Cannot decode empty media")

    if is_wav(data):
        try:
            samples = decode_wav(data, target_rate)
            logger.debug("Decoded WAV natively: %d samples", samples.size)
            return samples
        except (wave.Error, EOFError, ValueError) as exc:
            logger.debug("Native WAV decode failed (%s); trying ffmpeg", exc)

    return decode_with_ffmpeg(data, target_rate)


def is_wav(data: bytes) -> bool:
    return len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WAVE"


def decode_wav(data: bytes, target_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Decode integer PCM WAV bytes, downmix and resample."""
    with wave.open(io.BytesIO(data), "rb") as wav:
        channels = wav.getnchannels()
        width = wav.getsampwidth()
        rate = wav.getframerate()
        frames = wav.readframes(wav.getnframes())

    if width == 1:
        # 8-bit WAV is unsigned, centred on 128
        pcm = (np.frombuffer(frames, dtype=np.uint8).astype(np.float32) - 128.0) / 128.0
    elif width in _PCM_SCALE:
        dtype = np.int16 if width == 2 else np.int32
        pcm = np.frombuffer(frames, dtype=dtype).astype(np.float32) / _PCM_SCALE[width]
    else:
        raise ValueError("Unsupported WAV sample width: {} bytes".format(width))

    if channels > 1:
        pcm = downmix(pcm.reshape(-1, channels))
    return resample(pcm, rate, target_rate)


def downmix(frames: np.ndarray) -> np.ndarray:
    """Average a (n_frames, n_channels) array down to mono."""
    if frames.ndim == 1:
        return frames.astype(np.float32)
    return frames.mean(axis=1).astype(np.float32)


def resample(samples: np.ndarray, source_rate: int, target_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Linear-interpolation resample of mono samples.

    RULES:
    - Same rate returns the input as float32 unchanged
    - Output length is round(len × target / source)
    """
    samples = np.asarray(samples, dtype=np.float32)
    if source_rate == target_rate or samples.size == 0:
        return samples

    out_len = int(round(samples.size * target_rate / source_rate))
    if out_len == 0:
        return np.zeros(0, dtype=np.float32)

    src_times = np.arange(samples.size) / float(source_rate)
    dst_times = np.arange(out_len) / float(target_rate)
    return np.interp(dst_times, src_times, samples).astype(np.float32)


def decode_with_ffmpeg(data: bytes, target_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Decode any container ffmpeg understands via stdin/stdout pipes."""
    ffmpeg = shutil.which("ffmpeg")
    if ffmpeg is None:
        raise AudioDecodeError(
            "ffmpeg not found on PATH. Install ffmpeg to transcribe non-WAV media."
        )

    cmd = [
        ffmpeg,
        "-hide_banner",
        "-loglevel", "error",
        "-i", "pipe:0",
        "-vn",
        "-f", "f32le",
        "-ac", "1",
        "-ar", str(target_rate),
        "pipe:1",
    ]

    try:
        proc = subprocess.run(cmd, input=data, capture_output=True, check=False)
    except OSError as exc:
        raise AudioDecodeError("Failed to start ffmpeg: {}".format(exc)) from exc

    if proc.returncode != 0:
        stderr = proc.stderr.decode("utf-8", errors="replace").strip()
        raise AudioDecodeError("ffmpeg failed decoding audio:\n{}".format(stderr))

    samples = np.frombuffer(proc.stdout, dtype=np.float32)
    if samples.size == 0:
        raise AudioDecodeError("ffmpeg produced no audio samples")
    return samples.copy()
