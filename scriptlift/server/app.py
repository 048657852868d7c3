"""FastAPI application exposing uploads, project state and the queue.

WHY: Clients (a web dashboard, curl, automation) need to submit media,
watch projects move through the queue, read transcripts, rename speakers
and delete projects. The pipeline itself runs in-process, driven by the
scheduler, so the API only ever reads and writes through the workspace.

HOW: create_app() returns a FastAPI app whose lifespan builds (or takes)
a Runtime, loads existing projects, starts the scheduler, sweeps expired
local projects at start-up and every SWEEP_INTERVAL_SECONDS, and closes
the runtime on shutdown. Routes live on a module-level APIRouter and
reach the runtime through request.app.state.runtime.

RULES:
- All endpoints have OpenAPI descriptions on every response
- Error responses use the ErrorResponse schema
- Upload errors: 413 quota exceeded, 415 unsupported type, 502 storage
- Uploads return immediately; processing happens in the scheduler
- Uploaded file names are reduced to their base name
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, List, Optional

from fastapi import APIRouter, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import Response

from scriptlift import __version__
from scriptlift.config import SWEEP_INTERVAL_SECONDS
from scriptlift.core.errors import (
    PersistenceFailure,
    QuotaExceeded,
    SourceUnavailable,
    UnsupportedMediaType,
)
from scriptlift.core.ir import Project
from scriptlift.pipeline.runtime import Runtime, build_runtime
from scriptlift.server.models import (
    ErrorResponse,
    HealthResponse,
    MediaUrlResponse,
    ProjectResponse,
    ProjectSummary,
    QueueResponse,
    SpeakerAliasRequest,
    StorageResponse,
    SweepResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------


async def _periodic_sweep(runtime: Runtime, interval_s: float) -> None:
    """Run the retention sweep every interval_s seconds."""
    while True:
        await asyncio.sleep(interval_s)
        try:
            await runtime.workspace.sweep_expired()
        except PersistenceFailure:
            logger.exception("Periodic retention sweep failed")


def create_app(
    runtime: Optional[Runtime] = None,
    sweep_interval_s: float = SWEEP_INTERVAL_SECONDS,
) -> FastAPI:
    """Build the API app around a runtime (default: build_runtime())."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = runtime or build_runtime()
        app.state.runtime = rt
        await rt.start()
        await rt.workspace.sweep_expired()
        task = asyncio.create_task(_periodic_sweep(rt, sweep_interval_s))
        yield
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await rt.aclose()

    app = FastAPI(
        lifespan=lifespan,
        title="ScriptLift Transcription API",
        description=(
            "Upload audio or video files and receive time-aligned, "
            "speaker-labelled transcripts. Uploads are queued and processed "
            "one at a time; poll a project for its status and transcript."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.include_router(router)
    return app


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _get_project(runtime: Runtime, project_id: str) -> Project:
    project = runtime.collection.get(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found: {}".format(project_id))
    return project


def _guess_type(filename: str, declared: Optional[str]) -> str:
    if declared and declared != "application/octet-stream":
        return declared
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or declared or ""


# ---------------------------------------------------------------------------
# Endpoints: Projects
# ---------------------------------------------------------------------------


@router.post(
    "/projects",
    response_model=ProjectSummary,
    status_code=201,
    tags=["projects"],
    summary="Upload a file for transcription",
    description=(
        "Upload an audio or video file. The file is stored and queued "
        "immediately; transcription runs in the background. Poll "
        "GET /projects/{id} for status and the transcript."
    ),
    responses={
        413: {"model": ErrorResponse, "description": "Local storage limit exceeded"},
        415: {"model": ErrorResponse, "description": "Not an audio or video file"},
        502: {"model": ErrorResponse, "description": "Storage backend failure"},
    },
)
async def create_project(
    request: Request,
    file: Annotated[UploadFile, File(description="Audio or video file to transcribe")],
) -> ProjectSummary:
    runtime = _runtime(request)
    # Sanitize filename to prevent path traversal
    filename = Path(file.filename or "upload").name
    file_type = _guess_type(filename, file.content_type)
    data = await file.read()

    try:
        project = await runtime.workspace.submit(filename, file_type, data)
    except UnsupportedMediaType as exc:
        raise HTTPException(status_code=415, detail=str(exc))
    except QuotaExceeded as exc:
        raise HTTPException(status_code=413, detail=str(exc))
    except PersistenceFailure as exc:
        raise HTTPException(status_code=502, detail=str(exc))

    return ProjectSummary.from_project(project)


@router.get(
    "/projects",
    response_model=List[ProjectSummary],
    tags=["projects"],
    summary="List projects",
    description="All projects of the current session, newest first, without transcripts.",
)
async def list_projects(request: Request) -> List[ProjectSummary]:
    runtime = _runtime(request)
    return [
        ProjectSummary.from_project(p, runtime.collection.progress(p.id))
        for p in runtime.collection.list_projects()
    ]


@router.get(
    "/projects/{project_id}",
    response_model=ProjectResponse,
    tags=["projects"],
    summary="Get a project",
    description="Project status, and the transcript once the project is completed.",
    responses={404: {"model": ErrorResponse, "description": "Project not found"}},
)
async def get_project(request: Request, project_id: str) -> ProjectResponse:
    runtime = _runtime(request)
    project = _get_project(runtime, project_id)
    return ProjectResponse.from_project(project, runtime.collection.progress(project_id))


@router.put(
    "/projects/{project_id}/speakers/{label}",
    response_model=ProjectResponse,
    tags=["projects"],
    summary="Rename a speaker",
    description=(
        "Set the display name for a raw speaker label such as 'Speaker 1'. "
        "Allowed in any project state. A blank name restores the raw label."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Project not found"},
        502: {"model": ErrorResponse, "description": "Storage backend failure"},
    },
)
async def rename_speaker(
    request: Request,
    project_id: str,
    label: str,
    body: SpeakerAliasRequest,
) -> ProjectResponse:
    runtime = _runtime(request)
    _get_project(runtime, project_id)
    try:
        project = await runtime.workspace.rename_speaker(project_id, label, body.name)
    except KeyError:
        raise HTTPException(status_code=404, detail="Project not found: {}".format(project_id))
    except PersistenceFailure as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return ProjectResponse.from_project(project, runtime.collection.progress(project_id))


@router.delete(
    "/projects/{project_id}",
    status_code=204,
    tags=["projects"],
    summary="Delete a project",
    description=(
        "Delete a project's metadata and media. Deleting a project that is "
        "being processed does not interrupt the run; its result is discarded."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Project not found"},
        502: {"model": ErrorResponse, "description": "Storage backend failure"},
    },
)
async def delete_project(request: Request, project_id: str) -> Response:
    runtime = _runtime(request)
    try:
        deleted = await runtime.workspace.delete(project_id)
    except PersistenceFailure as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    if not deleted:
        raise HTTPException(status_code=404, detail="Project not found: {}".format(project_id))
    return Response(status_code=204)


@router.get(
    "/projects/{project_id}/media",
    response_model=MediaUrlResponse,
    tags=["projects"],
    summary="Get a playable URL for the project's media",
    description="A signed URL (cloud, time-limited) or file:// URI (local).",
    responses={404: {"model": ErrorResponse, "description": "Project or media not found"}},
)
async def get_media_url(request: Request, project_id: str) -> MediaUrlResponse:
    runtime = _runtime(request)
    _get_project(runtime, project_id)
    try:
        playable = await runtime.workspace.playable_url(project_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Project not found: {}".format(project_id))
    except SourceUnavailable as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return MediaUrlResponse(url=playable.url, expires_at=playable.expires_at)


# ---------------------------------------------------------------------------
# Endpoints: Queue and storage
# ---------------------------------------------------------------------------


@router.get(
    "/queue",
    response_model=QueueResponse,
    tags=["queue"],
    summary="Scheduler state",
    description="The project being processed now and the queued projects in order.",
)
async def get_queue(request: Request) -> QueueResponse:
    runtime = _runtime(request)
    active = runtime.scheduler.active_project_id
    skipped = runtime.scheduler.skipped
    return QueueResponse(
        active_project_id=active,
        active_progress=runtime.collection.progress(active) if active else None,
        queued=[p.id for p in runtime.collection.queued() if p.id not in skipped],
    )


@router.get(
    "/storage",
    response_model=StorageResponse,
    tags=["storage"],
    summary="Storage usage",
    description="Bytes used and the storage cap for local storage; cloud storage is not metered.",
)
async def get_storage(request: Request) -> StorageResponse:
    runtime = _runtime(request)
    used = await runtime.workspace.storage_footprint()
    return StorageResponse(
        mode=runtime.session.mode,
        used_bytes=used,
        limit_bytes=getattr(runtime.backend, "quota_bytes", None),
    )


@router.post(
    "/maintenance/sweep",
    response_model=SweepResponse,
    tags=["storage"],
    summary="Delete expired projects now",
    description="Runs the retention sweep immediately instead of waiting for the periodic one.",
    responses={502: {"model": ErrorResponse, "description": "Storage backend failure"}},
)
async def sweep_expired(request: Request) -> SweepResponse:
    runtime = _runtime(request)
    try:
        removed = await runtime.workspace.sweep_expired()
    except PersistenceFailure as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return SweepResponse(removed=removed)


# ---------------------------------------------------------------------------
# Endpoints: Health
# ---------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    tags=["health"],
    summary="Health check",
    description="Liveness and readiness check for load balancers and orchestrators.",
)
async def health_check(request: Request) -> HealthResponse:
    runtime = _runtime(request)
    return HealthResponse(status="ok", version=__version__, storage=runtime.session.mode)


def run_api(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Entry point for the scriptlift-api console script."""
    import uvicorn
    uvicorn.run(create_app(), host=host, port=port)
