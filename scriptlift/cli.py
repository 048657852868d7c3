"""Command-line interface for ScriptLift.

WHY: Users need a way to transcribe a file from the terminal, run the
HTTP server, and trigger the retention sweep without writing code.

HOW: argparse with three sub-commands:
  transcribe FILE  — store the file, run the scheduler until the queue is
                     idle, print "[mm:ss] Speaker: text" lines to stdout
  serve            — run the FastAPI server with uvicorn
  sweep            — delete expired local projects now
Logging is configured with logging.basicConfig on stderr; status
messages also go to stderr so stdout carries only the transcript.

RULES:
- Status output goes to stderr (not stdout)
- Exit code 1 on any error, 130 on Ctrl-C
- The backend is chosen by the session from the environment
  (SCRIPTLIFT_USER_ID / SCRIPTLIFT_ACCESS_TOKEN), local otherwise
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import mimetypes
import sys
from pathlib import Path
from typing import List, Optional

from scriptlift.config import DEFAULT_LANGUAGE, LOG_LEVEL, PipelineSettings
from scriptlift.core.errors import ScriptLiftError
from scriptlift.core.ir import Project, ProjectStatus
from scriptlift.core.session import SessionContext
from scriptlift.pipeline.runtime import build_runtime
from scriptlift.storage import select_backend


def _status(msg: str) -> None:
    """Print a status message to stderr.

    WHY: Status output must not pollute stdout so the CLI can be piped.
    """
    print(msg, file=sys.stderr, flush=True)


def format_timestamp(seconds: float) -> str:
    """Format seconds as mm:ss (minutes keep counting past 59)."""
    total = int(seconds)
    return "{:02d}:{:02d}".format(total // 60, total % 60)


def format_transcript(project: Project) -> List[str]:
    """Render a completed project's transcript as display lines."""
    if project.transcript is None:
        return []
    return [
        "[{}] {}: {}".format(
            format_timestamp(seg.timestamp_s), project.display_name(seg.speaker), seg.text
        )
        for seg in project.transcript.segments
    ]


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------


async def _run_transcribe(args: argparse.Namespace) -> int:
    input_path = Path(args.input_file).resolve()
    if not input_path.is_file():
        _status("Error: File not found: {}".format(input_path))
        return 1

    file_type = args.mime_type or mimetypes.guess_type(input_path.name)[0] or ""
    settings = PipelineSettings(language=args.language)
    runtime = build_runtime(
        session=SessionContext.from_env(),
        use_attribution=not args.no_attribution,
        settings=settings,
        data_dir=Path(args.data_dir).expanduser() if args.data_dir else None,
        on_status=lambda project, message: _status(message),
    )

    try:
        await runtime.start()
        project = await runtime.workspace.submit(
            input_path.name, file_type, input_path.read_bytes()
        )
        _status("Queued {} ({})".format(project.file_name, project.id))
        await runtime.scheduler.wait_idle()
        result = runtime.collection.get(project.id) or project
    finally:
        await runtime.aclose()

    if result.status == ProjectStatus.ERROR:
        _status("Error: {}".format(result.error))
        return 1
    if result.status != ProjectStatus.COMPLETED:
        _status("Error: project {} ended in status {}".format(result.id, result.status.value))
        return 1

    for line in format_transcript(result):
        print(line)
    speakers = result.transcript.speakers() if result.transcript else []
    _status("Done: {} segment(s), {} speaker(s).".format(
        len(result.transcript.segments) if result.transcript else 0, len(speakers)
    ))
    return 0


async def _run_sweep(args: argparse.Namespace) -> int:
    backend = select_backend(
        SessionContext.from_env(),
        data_dir=Path(args.data_dir).expanduser() if args.data_dir else None,
    )
    try:
        removed = await backend.sweep_expired()
    finally:
        await backend.aclose()
    _status("Removed {} expired project(s).".format(removed))
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    from scriptlift.server.app import run_api

    run_api(host=args.host, port=args.port)
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the CLI.

    WHY: Separating parser construction from main() makes the CLI
    testable; tests can inspect the parser without running the pipeline.
    """
    parser = argparse.ArgumentParser(
        prog="scriptlift",
        description="Speaker-labelled transcripts for audio and video files.",
    )
    parser.add_argument(
        "--log-level",
        default=LOG_LEVEL,
        help="Logging level (default: %(default)s).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    transcribe = sub.add_parser("transcribe", help="Transcribe a file and print the transcript.")
    transcribe.add_argument("input_file", help="Path to the audio or video file to transcribe.")
    transcribe.add_argument(
        "--language",
        default=DEFAULT_LANGUAGE,
        help="Language hint for speech-to-text (default: %(default)s).",
    )
    transcribe.add_argument(
        "--mime-type",
        default=None,
        help="MIME type of the file (default: guessed from the extension).",
    )
    transcribe.add_argument(
        "--data-dir",
        default=None,
        help="Local storage directory (default: SCRIPTLIFT_DATA_DIR or ~/.scriptlift).",
    )
    transcribe.add_argument(
        "--no-attribution",
        action="store_true",
        help="Skip Gemini speaker attribution and use pause-based detection.",
    )

    serve = sub.add_parser("serve", help="Run the HTTP API server.")
    serve.add_argument("--host", default="0.0.0.0", help="Bind address (default: %(default)s).")
    serve.add_argument("--port", type=int, default=8000, help="Port (default: %(default)s).")

    sweep = sub.add_parser("sweep", help="Delete expired local projects.")
    sweep.add_argument(
        "--data-dir",
        default=None,
        help="Local storage directory (default: SCRIPTLIFT_DATA_DIR or ~/.scriptlift).",
    )

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI.

    RULES:
    - argv=None means use sys.argv (normal CLI invocation)
    - Explicit argv is for testing
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=str(args.log_level).upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "serve":
            code = _run_serve(args)
        elif args.command == "sweep":
            code = asyncio.run(_run_sweep(args))
        else:
            code = asyncio.run(_run_transcribe(args))
    except KeyboardInterrupt:
        _status("\nCancelled by user.")
        sys.exit(130)
    except (ScriptLiftError, ValueError) as e:
        # Quota, unsupported type, storage failures, missing configuration
        _status("Error: {}".format(e))
        sys.exit(1)

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
