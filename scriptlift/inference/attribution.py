"""Speaker attribution: ask Gemini who said each transcript segment.

WHY: Whisper gives accurate timing but no speaker information. A
multimodal model that hears the audio and reads the provisional segments
can label them, combining Whisper's timing with the model's listening.
Its output is untrusted, so it is validated before anything uses it.

HOW: SpeakerAttributionClient is an async context manager over
httpx.AsyncClient, calling the Gemini generateContent REST endpoint with:
  - the media as base64 inlineData
  - a compact {index, timestamp, text[:100]} summary per segment
  - an instruction prompt (reuse labels, few speakers, alternation prior)
  - a JSON response schema {segments: [{index, speaker}]}
The response text is stripped of markdown fences, parsed, and validated
with jsonschema. apply_attribution() maps the labels back onto segments.

RULES:
- Use as: async with SpeakerAttributionClient() as client: ...
- api_key defaults to load_gemini_api_key() from .env
- Any HTTP error, non-2xx status, empty text, bad JSON or schema
  violation raises AttributionFailure
- Indices absent from the response keep their prior label
- Out-of-range indices are ignored
- Input segments are never mutated
"""

from __future__ import annotations

import base64
import json
import logging
import re
from dataclasses import replace
from typing import Any, Sequence

import httpx
import jsonschema

from scriptlift.config import GEMINI_BASE_URL, GEMINI_MODEL, load_gemini_api_key
from scriptlift.core.errors import AttributionFailure
from scriptlift.core.ir import TranscriptSegment

logger = logging.getLogger(__name__)

DEFAULT_PREVIEW_CHARS = 100

RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "segments": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "index": {"type": "integer"},
                    "speaker": {"type": "string", "minLength": 1},
                },
                "required": ["index", "speaker"],
            },
        },
    },
    "required": ["segments"],
}

# Same contract in the OpenAPI subset Gemini's responseSchema accepts
_GEMINI_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "segments": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "index": {"type": "INTEGER"},
                    "speaker": {"type": "STRING"},
                },
                "required": ["index", "speaker"],
            },
        },
    },
    "required": ["segments"],
}

_PROMPT_TEMPLATE = """\
You are an expert at speaker diarization for podcasts and interviews.

TASK:
1. Listen to the audio and analyze the transcript.
2. Assign a speaker label (e.g., "Speaker 1", "Speaker 2") to each segment.

RULES FOR ACCURACY:
1. REUSE LABELS: The most common error is creating new labels for the same person.
   - If Speaker 1 talks, then Speaker 2 talks, then Speaker 1 talks again, label the third segment "Speaker 1".
   - Do NOT just increment numbers (Speaker 1, Speaker 2, Speaker 3, Speaker 4...).
2. LIMIT SPEAKERS: Most files only have 2 or 3 distinct speakers.
   - Be extremely skeptical of finding more than 4 speakers.
   - If you are unsure, assign the segment to the most likely existing speaker.
3. CONTEXT: If the text reads like a back-and-forth conversation, it is likely two people alternating.

TRANSCRIPT SEGMENTS:
{segments}

OUTPUT:
Return a JSON object with a "segments" array containing the "index" and the "speaker".
"""

_CODE_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


class SpeakerAttributionClient:
    """Async client for Gemini-based speaker attribution.

    RULES:
    - api_key defaults to load_gemini_api_key() (raises ValueError if unset)
    - base_url / model default to GEMINI_BASE_URL / GEMINI_MODEL
    - transport is passed to httpx (tests use httpx.MockTransport)
    - The context manager can be entered again after it has exited
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        preview_chars: int = DEFAULT_PREVIEW_CHARS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key or load_gemini_api_key()
        self._base_url = (base_url or GEMINI_BASE_URL).rstrip("/")
        self._model = model or GEMINI_MODEL
        self._preview_chars = preview_chars
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> SpeakerAttributionClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"x-goog-api-key": self._api_key},
            timeout=httpx.Timeout(300.0, connect=30.0),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._client:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(
                "SpeakerAttributionClient must be used as an async context manager: "
                "async with SpeakerAttributionClient() as client: ..."
            )
        return self._client

    async def identify_speakers(
        self,
        media: bytes,
        mime_type: str,
        segments: Sequence[TranscriptSegment],
    ) -> list[TranscriptSegment]:
        """Label segments with speakers identified from the audio.

        Args:
            media: Original uploaded bytes (audio or video).
            mime_type: MIME type of media.
            segments: Provisional segments in temporal order.

        Returns:
            New segments with speaker labels applied.
        """
        client = self._ensure_client()
        logger.info("Identifying speakers for %d segments with %s", len(segments), self._model)

        body = build_request(media, mime_type, segments, self._preview_chars)
        try:
            resp = await client.post(f"/models/{self._model}:generateContent", json=body)
        except httpx.HTTPError as exc:
            raise AttributionFailure(f"Speaker attribution request failed: {exc}") from exc

        if resp.status_code != 200:
            raise AttributionFailure(
                f"Speaker attribution API error {resp.status_code}: {resp.text[:500]}"
            )

        try:
            text = response_text(resp.json())
        except ValueError as exc:
            raise AttributionFailure(f"Speaker attribution returned invalid JSON: {exc}") from exc

        labelled = apply_attribution(segments, parse_attribution(text))
        speakers = {seg.speaker for seg in labelled}
        logger.info("Speaker attribution identified %d speaker(s): %s", len(speakers), sorted(speakers))
        return labelled


# ---------------------------------------------------------------------------
# Request / response helpers (module-level so tests can use them directly)
# ---------------------------------------------------------------------------


def segment_summary(
    segments: Sequence[TranscriptSegment],
    preview_chars: int = DEFAULT_PREVIEW_CHARS,
) -> list[dict[str, Any]]:
    """Compact per-segment summary sent with the prompt."""
    return [
        {"index": i, "timestamp": seg.timestamp_s, "text": seg.text[:preview_chars]}
        for i, seg in enumerate(segments)
    ]


def build_prompt(
    segments: Sequence[TranscriptSegment],
    preview_chars: int = DEFAULT_PREVIEW_CHARS,
) -> str:
    summary = json.dumps(segment_summary(segments, preview_chars), indent=2, ensure_ascii=False)
    return _PROMPT_TEMPLATE.format(segments=summary)


def build_request(
    media: bytes,
    mime_type: str,
    segments: Sequence[TranscriptSegment],
    preview_chars: int = DEFAULT_PREVIEW_CHARS,
) -> dict[str, Any]:
    """Build the generateContent request body."""
    return {
        "contents": [
            {
                "parts": [
                    {
                        "inlineData": {
                            "mimeType": mime_type or "audio/mpeg",
                            "data": base64.b64encode(media).decode("ascii"),
                        }
                    },
                    {"text": build_prompt(segments, preview_chars)},
                ]
            }
        ],
        "generationConfig": {
            "responseMimeType": "application/json",
            "responseSchema": _GEMINI_RESPONSE_SCHEMA,
        },
    }


def response_text(payload: dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate.

    Raises AttributionFailure when there is no text at all.
    """
    candidates = payload.get("candidates") or []
    if not candidates:
        raise AttributionFailure("Speaker attribution returned no candidates")
    parts = (candidates[0].get("content") or {}).get("parts") or []
    text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
    if not text.strip():
        raise AttributionFailure("Speaker attribution returned no text")
    return text


def parse_attribution(text: str) -> list[dict[str, Any]]:
    """Parse and validate the model's JSON answer.

    RULES:
    - Markdown code fences around the JSON are tolerated
    - Returns the validated "segments" list
    - Raises AttributionFailure on invalid JSON or schema violations
    """
    cleaned = _CODE_FENCE.sub("", text).strip()
    try:
        payload = json.loads(cleaned)
    except ValueError as exc:
        raise AttributionFailure(f"Speaker attribution is not valid JSON: {exc}") from exc

    try:
        jsonschema.validate(instance=payload, schema=RESPONSE_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise AttributionFailure(f"Speaker attribution has invalid shape: {exc.message}") from exc

    return payload["segments"]


def apply_attribution(
    segments: Sequence[TranscriptSegment],
    items: Sequence[dict[str, Any]],
) -> list[TranscriptSegment]:
    """Relabel segments by index; unlisted indices keep their label."""
    labels = {item["index"]: item["speaker"] for item in items}
    return [
        replace(seg, speaker=labels.get(i, seg.speaker))
        for i, seg in enumerate(segments)
    ]
