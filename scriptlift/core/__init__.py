"""Core project model, state machine, session and fallback diarizer.

WHY: These are the pieces every other layer depends on and that depend on
nothing but config — the stable heart of the pipeline.

HOW: ir.py defines Project/Transcript and advance(); errors.py the
exception taxonomy; session.py the explicit session context; fallback.py
the offline pause-based diarizer.

RULES:
- No I/O in this package
- IR dataclasses are the contract between storage and pipeline
"""
