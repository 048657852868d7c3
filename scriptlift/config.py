"""Configuration constants, pipeline tuning knobs, and .env loading.

WHY: Storage limits, retention windows, model names, service URLs and the
diarization heuristics' thresholds all need to be easy to find and easy to
override. Keeping them as plain module-level data (not buried in logic)
lets both humans and deployment scripts adjust them confidently.

HOW: python-dotenv loads the .env file on import. Constants read
os.getenv() with sensible defaults. Secrets are only read through loader
functions that raise a clear ValueError when missing. Tunables for the
pipeline are grouped in the PipelineSettings dataclass so tests and
callers can override them per orchestrator.

RULES:
- Secrets (Gemini key, Supabase key, access token) are never hardcoded
- LOCAL_QUOTA_BYTES defaults to 250 MiB; RETENTION_DAYS defaults to 14
- Speech-to-text input is always 16 kHz mono (SAMPLE_RATE)
- Fallback thresholds are tunable defaults, not invariants
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env from the working directory (where the server/CLI is started)
load_dotenv()

# ---------------------------------------------------------------------------
# Local (on-device) storage
# ---------------------------------------------------------------------------

DATA_DIR = Path(os.getenv("SCRIPTLIFT_DATA_DIR", "~/.scriptlift")).expanduser()
"""Root directory of the local storage backend."""

LOCAL_QUOTA_BYTES = int(os.getenv("LOCAL_QUOTA_BYTES", str(250 * 1024 * 1024)))
RETENTION_DAYS = int(os.getenv("RETENTION_DAYS", "14"))
RETENTION_SECONDS = RETENTION_DAYS * 24 * 60 * 60

# How often the server sweeps expired local projects (seconds)
SWEEP_INTERVAL_SECONDS = 300

# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

SUPPORTED_MEDIA_PREFIXES = ("audio/", "video/")
"""MIME type prefixes accepted for new projects."""

# ---------------------------------------------------------------------------
# Speech-to-text
# ---------------------------------------------------------------------------

SAMPLE_RATE = 16000
DEFAULT_LANGUAGE = os.getenv("DEFAULT_LANGUAGE", "en")
WHISPER_MODEL = os.getenv("WHISPER_MODEL", "base.en")
WHISPER_DEVICE = os.getenv("WHISPER_DEVICE", "cpu")
WHISPER_COMPUTE_TYPE = os.getenv("WHISPER_COMPUTE_TYPE", "int8")

PLACEHOLDER_SPEAKER = "Speaker 1"
"""Uniform label given to every segment before speaker attribution."""

# ---------------------------------------------------------------------------
# Speaker attribution (Gemini REST API)
# ---------------------------------------------------------------------------

GEMINI_BASE_URL = os.getenv(
    "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
)
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")

# ---------------------------------------------------------------------------
# Networked storage (Supabase)
# ---------------------------------------------------------------------------

SUPABASE_BUCKET = os.getenv("SUPABASE_BUCKET", "files")
SUPABASE_TABLE = os.getenv("SUPABASE_TABLE", "projects")
SIGNED_URL_TTL_SECONDS = int(os.getenv("SIGNED_URL_TTL_SECONDS", "3600"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


@dataclass
class PipelineSettings:
    """Tunable constants for one orchestrator.

    WHY: The fallback trigger (one speaker over more than 10 segments), the
    2.0 s pause threshold and the 0.4 s/word duration estimate were tuned
    by hand. They must stay adjustable without code changes.

    RULES:
    - pause_threshold_s: gap (seconds) that toggles the fallback speaker
    - seconds_per_word: duration estimate per whitespace-separated word
    - fallback_min_segments: a single-speaker attribution is rejected only
      when the provisional segment count is strictly greater than this
    - preview_chars: per-segment text truncation sent to attribution
    - language: language hint passed to speech-to-text
    """

    pause_threshold_s: float = 2.0
    seconds_per_word: float = 0.4
    fallback_min_segments: int = 10
    preview_chars: int = 100
    language: str = DEFAULT_LANGUAGE


@dataclass
class SupabaseSettings:
    """Connection settings for the networked backend."""

    url: str
    anon_key: str
    bucket: str = SUPABASE_BUCKET
    table: str = SUPABASE_TABLE


def load_gemini_api_key() -> str:
    """Load the Gemini API key from the environment.

    WHY: Speaker attribution calls the Gemini API, which needs a key.
    Keeping it in .env keeps it out of source control.

    RULES:
    - Raises ValueError if GEMINI_API_KEY is missing or empty
    - Never returns a placeholder value
    """
    key = os.getenv("GEMINI_API_KEY", "").strip()
    if not key:
        raise ValueError(
            "Gemini API key not configured. "
            "Add GEMINI_API_KEY to the .env file to enable speaker attribution."
        )
    return key


def load_supabase_settings() -> SupabaseSettings:
    """Load Supabase URL and anon key from the environment.

    RULES:
    - Raises ValueError if either SUPABASE_URL or SUPABASE_ANON_KEY is missing
    - The URL is returned without a trailing slash
    """
    url = os.getenv("SUPABASE_URL", "").strip().rstrip("/")
    anon_key = os.getenv("SUPABASE_ANON_KEY", "").strip()
    if not url or not anon_key:
        raise ValueError(
            "Supabase not configured. "
            "Add SUPABASE_URL and SUPABASE_ANON_KEY to the .env file."
        )
    return SupabaseSettings(url=url, anon_key=anon_key)


def load_session_credentials() -> Optional[tuple]:
    """Return (user_id, access_token) from the environment, or None.

    WHY: The server and CLI are handed an already-authenticated session
    (signing in is not their job). When both values are present the
    networked backend is used; otherwise everything stays on-device.
    """
    user_id = os.getenv("SCRIPTLIFT_USER_ID", "").strip()
    token = os.getenv("SCRIPTLIFT_ACCESS_TOKEN", "").strip()
    if user_id and token:
        return user_id, token
    return None
