"""Tests for the speech worker thread and its async gateway.

WHY: The worker thread owns the model. Loading it twice, running two
inferences at once, or hanging on a lost reply would each stall the
whole queue, so the message protocol is tested end to end.

HOW: The real SpeechWorker thread runs with a FakeEngine (see conftest),
driven through SpeechToTextGateway inside asyncio.run(). Each test shuts
the worker down in a finally block.
"""

from __future__ import annotations

import asyncio
import threading

import numpy as np
import pytest

from scriptlift.core.errors import TranscriptionFailure
from scriptlift.inference.worker import (
    COMPLETE,
    ERROR,
    LOAD,
    PROGRESS,
    READY,
    TRANSCRIBE,
    SpeechChunk,
    SpeechToTextGateway,
    SpeechWorker,
    WorkerRequest,
)

SILENCE = np.zeros(1600, dtype=np.float32)


def _run_gateway(engine, fn):
    gateway = SpeechToTextGateway(engine=engine)

    async def go():
        return await fn(gateway)

    try:
        return asyncio.run(go())
    finally:
        gateway.close()


# ---------------------------------------------------------------------------
# TestLoad
# ---------------------------------------------------------------------------


class TestLoad:

    def test_load_is_idempotent(self, engine):
        async def go(gateway):
            await gateway.load()
            await gateway.load()
            return gateway.loaded

        assert _run_gateway(engine, go) is True
        assert engine.load_calls == 1

    def test_failed_load_is_retried(self, engine):
        engine.fail_loads = 1

        async def go(gateway):
            with pytest.raises(TranscriptionFailure, match="model download failed"):
                await gateway.load()
            assert gateway.loaded is False
            await gateway.load()
            return gateway.loaded

        assert _run_gateway(engine, go) is True
        assert engine.load_calls == 2

    def test_load_progress_forwarded(self, engine):
        messages = []

        async def go(gateway):
            await gateway.load(on_progress=messages.append)

        _run_gateway(engine, go)
        assert messages == ["Loading speech model: 50%"]


# ---------------------------------------------------------------------------
# TestTranscribe
# ---------------------------------------------------------------------------


class TestTranscribe:

    def test_transcribe_before_load_fails(self, engine):
        async def go(gateway):
            await gateway.transcribe(SILENCE)

        with pytest.raises(TranscriptionFailure, match="Model not loaded yet"):
            _run_gateway(engine, go)
        assert engine.transcribe_calls == []

    def test_chunks_returned_in_order(self, engine):
        engine.chunks = [(6.0, " third "), (0.0, "first"), (1.5, "second")]

        async def go(gateway):
            await gateway.load()
            return await gateway.transcribe(SILENCE, language="en")

        chunks = _run_gateway(engine, go)
        assert chunks == [
            SpeechChunk(0.0, "first"),
            SpeechChunk(1.5, "second"),
            SpeechChunk(6.0, "third"),
        ]
        assert engine.transcribe_calls == [(1600, "en")]

    def test_blank_chunks_dropped(self, engine):
        engine.chunks = [(0.0, "  "), (1.0, ""), (2.0, "kept")]

        async def go(gateway):
            await gateway.load()
            return await gateway.transcribe(SILENCE)

        assert _run_gateway(engine, go) == [SpeechChunk(2.0, "kept")]

    def test_engine_error_becomes_transcription_failure(self, engine):
        engine.transcribe_error = RuntimeError("decoder exploded")

        async def go(gateway):
            await gateway.load()
            await gateway.transcribe(SILENCE)

        with pytest.raises(TranscriptionFailure, match="decoder exploded"):
            _run_gateway(engine, go)

    def test_transcribe_progress_forwarded(self, engine):
        messages = []

        async def go(gateway):
            await gateway.load()
            await gateway.transcribe(SILENCE, on_progress=messages.append)

        _run_gateway(engine, go)
        assert messages == ["Transcribing..."]

    def test_model_survives_across_event_loops(self, engine):
        gateway = SpeechToTextGateway(engine=engine)
        try:
            asyncio.run(gateway.load())
            chunks = asyncio.run(gateway.transcribe(SILENCE))
        finally:
            gateway.close()
        assert len(chunks) == 3
        assert engine.load_calls == 1


# ---------------------------------------------------------------------------
# TestWorkerThread
# ---------------------------------------------------------------------------


class TestWorkerThread:

    def test_every_request_ends_with_one_terminal_message(self, engine):
        worker = SpeechWorker(engine)
        replies = []
        done = threading.Event()

        def reply(message):
            replies.append(message)
            if message.kind != PROGRESS and len([m for m in replies if m.kind != PROGRESS]) == 3:
                done.set()

        try:
            worker.post(WorkerRequest(kind=TRANSCRIBE, reply=reply, samples=SILENCE))
            worker.post(WorkerRequest(kind=LOAD, reply=reply))
            worker.post(WorkerRequest(kind=TRANSCRIBE, reply=reply, samples=SILENCE))
            assert done.wait(5.0)
        finally:
            worker.shutdown(timeout=5.0)

        terminal = [m.kind for m in replies if m.kind != PROGRESS]
        assert terminal == [ERROR, READY, COMPLETE]

    def test_thread_starts_lazily_and_stops(self, engine):
        worker = SpeechWorker(engine)
        assert worker.running is False
        worker.post(WorkerRequest(kind=LOAD))
        assert worker.running is True
        worker.shutdown(timeout=5.0)
        assert worker.running is False
