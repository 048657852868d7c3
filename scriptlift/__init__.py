"""ScriptLift — speaker-labelled transcripts for uploaded audio and video.

WHY: Users drop in recordings (interviews, podcasts, meetings) and want a
time-aligned transcript with speakers told apart. The hard part is not any
single model call but running a slow, fallible, multi-stage job against
shared project state without corrupting it.

HOW: Four layers — core (project model, state machine, fallback
diarization), storage (local and networked backends behind one protocol),
inference (speech-to-text worker thread, speaker attribution client), and
pipeline (orchestrator + single-concurrency scheduler). The server and CLI
are thin shells over the pipeline runtime.

RULES:
- Every project write goes to storage first, then to the in-memory view
- At most one pipeline run is active per process
- Speaker attribution never fails a job; the pause-based fallback takes over
"""

__version__ = "0.1.0"
