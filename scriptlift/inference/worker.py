"""Speech-to-text worker thread and its asyncio facade.

WHY: Loading and running a Whisper model is slow, blocking, CPU-bound
work. Running it on the event loop would freeze scheduling, storage I/O
and the HTTP API for minutes. The model also must be loaded once and
reused, and only one inference may run at a time.

HOW: Three layers:
  SpeechEngine          — protocol: load(on_progress), transcribe(samples, language)
  SpeechWorker          — owns a daemon thread and an inbox queue; handles
                          load / transcribe / shutdown requests one at a time
                          and answers with WorkerMessage values
  SpeechToTextGateway   — async facade: posts a request, bridges replies into
                          the event loop with loop.call_soon_threadsafe(),
                          forwards progress, resolves on the terminal message
The engine lives on the worker thread; nothing else touches it.

RULES:
- Messages are the ONLY channel between the loop and the worker thread
- load is idempotent: a loaded engine answers "ready" immediately
- A failed load is not remembered; the next load retries
- transcribe before a successful load answers "error"
- Every request ends in exactly one terminal message
  (ready / complete / error)
- Chunks with empty text are dropped; results are sorted by start time
- At most one transcribe outstanding (asyncio.Lock in the gateway)
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Protocol, Tuple

import numpy as np

from scriptlift.config import (
    DEFAULT_LANGUAGE,
    WHISPER_COMPUTE_TYPE,
    WHISPER_DEVICE,
    WHISPER_MODEL,
)
from scriptlift.core.errors import TranscriptionFailure

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

# Message kinds sent from the worker thread
PROGRESS = "progress"
READY = "ready"
COMPLETE = "complete"
ERROR = "error"

# Request kinds sent to the worker thread
LOAD = "load"
TRANSCRIBE = "transcribe"
SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class SpeechChunk:
    """One time-stamped piece of recognised speech."""

    start_s: float
    text: str


@dataclass(frozen=True)
class WorkerMessage:
    """A reply from the worker thread.

    RULES:
    - kind: progress | ready | complete | error
    - text: progress message or error description
    - chunks: set only on complete
    """

    kind: str
    text: Optional[str] = None
    chunks: Optional[List[SpeechChunk]] = None


@dataclass
class WorkerRequest:
    """A request posted to the worker's inbox."""

    kind: str
    reply: Callable[[WorkerMessage], None] = field(default=lambda msg: None)
    samples: Optional[np.ndarray] = None
    language: Optional[str] = None


class SpeechEngine(Protocol):
    """A speech-to-text model that runs on the worker thread."""

    def load(self, on_progress: ProgressCallback) -> None:
        ...

    def transcribe(self, samples: np.ndarray, language: str) -> Iterable[Tuple[float, str]]:
        ...


# ---------------------------------------------------------------------------
# Default engine: faster-whisper
# ---------------------------------------------------------------------------


class FasterWhisperEngine:
    """faster-whisper WhisperModel behind the SpeechEngine protocol.

    HOW: faster_whisper is imported inside load() so that importing
    ScriptLift (and running the tests) never requires the model runtime.
    """

    def __init__(
        self,
        model_name: str = WHISPER_MODEL,
        device: str = WHISPER_DEVICE,
        compute_type: str = WHISPER_COMPUTE_TYPE,
    ) -> None:
        self.model_name = model_name
        self.device = device
        self.compute_type = compute_type
        self._model = None

    def load(self, on_progress: ProgressCallback) -> None:
        from faster_whisper import WhisperModel

        on_progress("Loading speech model ({})...".format(self.model_name))
        self._model = WhisperModel(
            self.model_name,
            device=self.device,
            compute_type=self.compute_type,
        )
        on_progress("Loading speech model: 100%")

    def transcribe(self, samples: np.ndarray, language: str) -> Iterable[Tuple[float, str]]:
        if self._model is None:
            raise RuntimeError("Model not loaded yet.")
        segments, _info = self._model.transcribe(
            samples,
            language=language or None,
            beam_size=5,
            vad_filter=True,
        )
        for seg in segments:
            yield float(seg.start), seg.text


# ---------------------------------------------------------------------------
# Worker thread
# ---------------------------------------------------------------------------


class SpeechWorker:
    """Runs a SpeechEngine on a dedicated daemon thread.

    WHY: The engine is not thread-safe and loading it twice wastes minutes.
    Confining it to one thread and feeding it requests through a queue
    gives exclusive ownership without locks around the model.

    RULES:
    - The thread starts lazily on the first post()
    - Requests are handled strictly in arrival order
    - shutdown() stops the thread after the current request
    """

    def __init__(self, engine: SpeechEngine) -> None:
        self._engine = engine
        self._inbox: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def post(self, request: WorkerRequest) -> None:
        self._ensure_thread()
        self._inbox.put(request)

    def shutdown(self, timeout: Optional[float] = None) -> None:
        if not self.running:
            return
        self._inbox.put(WorkerRequest(kind=SHUTDOWN))
        self._thread.join(timeout)

    def _ensure_thread(self) -> None:
        with self._start_lock:
            if self.running:
                return
            self._thread = threading.Thread(
                target=self._run,
                name="scriptlift-speech-worker",
                daemon=True,
            )
            self._thread.start()

    def _run(self) -> None:
        while True:
            request = self._inbox.get()
            if request.kind == SHUTDOWN:
                logger.debug("Speech worker shutting down")
                return
            if request.kind == LOAD:
                self._handle_load(request)
            elif request.kind == TRANSCRIBE:
                self._handle_transcribe(request)
            else:
                request.reply(WorkerMessage(ERROR, text="Unknown request: {}".format(request.kind)))

    def _handle_load(self, request: WorkerRequest) -> None:
        if self._loaded:
            request.reply(WorkerMessage(READY))
            return

        def progress(text: str) -> None:
            request.reply(WorkerMessage(PROGRESS, text=text))

        try:
            self._engine.load(progress)
        except Exception as exc:
            logger.exception("Speech model failed to load")
            request.reply(WorkerMessage(ERROR, text=str(exc) or exc.__class__.__name__))
            return

        self._loaded = True
        request.reply(WorkerMessage(READY))

    def _handle_transcribe(self, request: WorkerRequest) -> None:
        if not self._loaded:
            request.reply(WorkerMessage(ERROR, text="Model not loaded yet."))
            return

        request.reply(WorkerMessage(PROGRESS, text="Transcribing..."))
        try:
            raw = list(self._engine.transcribe(request.samples, request.language or DEFAULT_LANGUAGE))
        except Exception as exc:
            logger.exception("Speech transcription failed")
            request.reply(WorkerMessage(ERROR, text=str(exc) or exc.__class__.__name__))
            return

        chunks = [
            SpeechChunk(start_s=float(start), text=text.strip())
            for start, text in raw
            if text and text.strip()
        ]
        chunks.sort(key=lambda c: c.start_s)
        request.reply(WorkerMessage(COMPLETE, chunks=chunks))


# ---------------------------------------------------------------------------
# Async facade
# ---------------------------------------------------------------------------


class SpeechToTextGateway:
    """Async interface to the speech worker.

    RULES:
    - load() raises TranscriptionFailure on an error reply
    - transcribe() raises TranscriptionFailure on an error reply
    - progress messages go to on_progress, on the event loop thread
    """

    def __init__(
        self,
        engine: Optional[SpeechEngine] = None,
        worker: Optional[SpeechWorker] = None,
    ) -> None:
        self._worker = worker or SpeechWorker(engine or FasterWhisperEngine())
        self._lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._worker.loaded

    async def load(self, on_progress: Optional[ProgressCallback] = None) -> None:
        await self._request(WorkerRequest(kind=LOAD), on_progress)

    async def transcribe(
        self,
        samples: np.ndarray,
        language: str = DEFAULT_LANGUAGE,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[SpeechChunk]:
        async with self._lock:
            message = await self._request(
                WorkerRequest(kind=TRANSCRIBE, samples=samples, language=language),
                on_progress,
            )
        return list(message.chunks or [])

    def close(self, timeout: Optional[float] = 5.0) -> None:
        self._worker.shutdown(timeout)

    async def _request(
        self,
        request: WorkerRequest,
        on_progress: Optional[ProgressCallback],
    ) -> WorkerMessage:
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def deliver(message: WorkerMessage) -> None:
            if message.kind == PROGRESS:
                if on_progress is not None and message.text:
                    on_progress(message.text)
                return
            if future.done():
                return
            if message.kind == ERROR:
                future.set_exception(TranscriptionFailure(message.text or "Speech worker error"))
            else:
                future.set_result(message)

        def reply(message: WorkerMessage) -> None:
            try:
                loop.call_soon_threadsafe(deliver, message)
            except RuntimeError:
                # Event loop already closed; nobody is waiting any more.
                logger.debug("Dropping %s message for a closed event loop", message.kind)

        request.reply = reply
        self._worker.post(request)
        return await future
