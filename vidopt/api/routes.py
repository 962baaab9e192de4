"""REST API routes for vidopt."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from vidopt.core.errors import (
    ConfigurationError,
    DuplicateJobError,
    InvalidTransitionError,
    JobNotFoundError,
)
from vidopt.core.presets import PRESETS
from vidopt.models.job import AudioStrategy, JobRecord, MetadataCandidate, SubtitleStrategy
from vidopt.services.config_service import get_config, update_config
from vidopt.services.orchestrator import AddFilesResult, Orchestrator, orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["jobs"])


def get_orchestrator() -> Orchestrator:
    return orchestrator


# Request/Response Models
class AddFilesRequest(BaseModel):
    paths: list[str]


class SettingsUpdate(BaseModel):
    """Partial update of a job's conversion settings."""

    video_codec: str | None = None
    audio_strategy: AudioStrategy | None = None
    subtitle_strategy: SubtitleStrategy | None = None
    audio_codec: str | None = None
    audio_bitrate: str | None = None
    crf: int | None = None
    preset: str | None = None
    profile: str | None = None
    tune: str | None = None
    container: str | None = None
    output_dir: str | None = None
    output_name: str | None = None


class ResetRequest(BaseModel):
    requeue: bool = False


class MetadataSearchRequest(BaseModel):
    query: str
    year: str | None = None


class ConfigResponse(BaseModel):
    """Response model for preferences."""

    default_output_dir: str
    default_preset: str
    filename_template: str
    ffmpeg_path: str
    ffprobe_path: str
    tmdb_api_key: str
    tmdb_language: str


class ConfigUpdate(BaseModel):
    """Request model for updating preferences."""

    default_output_dir: str | None = None
    default_preset: str | None = None
    filename_template: str | None = None
    ffmpeg_path: str | None = None
    ffprobe_path: str | None = None
    tmdb_api_key: str | None = None
    tmdb_language: str | None = None


def _mask_key(key: str) -> str:
    if not key:
        return ""
    return f"{'*' * max(len(key) - 4, 0)}{key[-4:]}"


def _raise_http(e: Exception) -> None:
    """Map orchestrator errors onto HTTP status codes."""
    if isinstance(e, JobNotFoundError):
        raise HTTPException(status_code=404, detail=str(e)) from None
    if isinstance(e, DuplicateJobError | InvalidTransitionError):
        raise HTTPException(status_code=409, detail=str(e)) from None
    raise e


# --- Jobs ---


@router.get("/jobs", response_model=list[JobRecord])
async def list_jobs(orch: Orchestrator = Depends(get_orchestrator)) -> list[JobRecord]:
    """List all jobs in queue order."""
    return orch.list_jobs()


@router.post("/jobs", response_model=AddFilesResult)
async def add_jobs(
    request: AddFilesRequest, orch: Orchestrator = Depends(get_orchestrator)
) -> AddFilesResult:
    """Add files to the queue as idle jobs."""
    if not request.paths:
        raise HTTPException(status_code=400, detail="No files given")
    return await orch.add_files(request.paths)


@router.post("/jobs/start")
async def start_all(orch: Orchestrator = Depends(get_orchestrator)) -> dict:
    """Queue every idle job."""
    queued = await orch.start_all()
    return {"status": "started", "queued": queued, "active_job_id": orch.scheduler.active_job_id}


@router.get("/jobs/{job_id}", response_model=JobRecord)
async def get_job(job_id: str, orch: Orchestrator = Depends(get_orchestrator)) -> JobRecord:
    try:
        return orch.get_job(job_id)
    except JobNotFoundError as e:
        _raise_http(e)


@router.delete("/jobs/{job_id}")
async def delete_job(job_id: str, orch: Orchestrator = Depends(get_orchestrator)) -> dict:
    """Remove a job at any status, cancelling its conversion first."""
    if not await orch.remove(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return {"status": "deleted", "job_id": job_id}


@router.patch("/jobs/{job_id}/settings", response_model=JobRecord)
async def update_job_settings(
    job_id: str, update: SettingsUpdate, orch: Orchestrator = Depends(get_orchestrator)
) -> JobRecord:
    changes = update.model_dump(exclude_unset=True)
    try:
        return orch.update_settings(job_id, **changes)
    except JobNotFoundError as e:
        _raise_http(e)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from None


@router.post("/jobs/{job_id}/start", response_model=JobRecord)
async def start_job(job_id: str, orch: Orchestrator = Depends(get_orchestrator)) -> JobRecord:
    try:
        return await orch.enqueue(job_id)
    except (JobNotFoundError, InvalidTransitionError) as e:
        _raise_http(e)


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str, orch: Orchestrator = Depends(get_orchestrator)) -> dict:
    try:
        cancelled = await orch.cancel(job_id)
    except JobNotFoundError as e:
        _raise_http(e)
    return {"status": "cancelled" if cancelled else "unchanged", "job_id": job_id}


@router.post("/jobs/{job_id}/reset", response_model=JobRecord)
async def reset_job(
    job_id: str,
    request: ResetRequest | None = None,
    orch: Orchestrator = Depends(get_orchestrator),
) -> JobRecord:
    try:
        return orch.reset(job_id, requeue=request.requeue if request else False)
    except JobNotFoundError as e:
        _raise_http(e)


@router.get("/jobs/{job_id}/candidates", response_model=list[MetadataCandidate])
async def get_candidates(
    job_id: str, orch: Orchestrator = Depends(get_orchestrator)
) -> list[MetadataCandidate]:
    try:
        return orch.get_candidates(job_id)
    except JobNotFoundError as e:
        _raise_http(e)


@router.post("/jobs/{job_id}/metadata", response_model=JobRecord)
async def select_metadata(
    job_id: str, candidate: MetadataCandidate, orch: Orchestrator = Depends(get_orchestrator)
) -> JobRecord:
    """Apply a manually chosen metadata candidate."""
    try:
        return await orch.select_metadata(job_id, candidate)
    except JobNotFoundError as e:
        _raise_http(e)


@router.post("/metadata/search", response_model=list[MetadataCandidate])
async def search_metadata(
    request: MetadataSearchRequest, orch: Orchestrator = Depends(get_orchestrator)
) -> list[MetadataCandidate]:
    return await orch.search_metadata(request.query, request.year)


# --- Preferences ---


@router.get("/config", response_model=ConfigResponse)
async def get_configuration() -> ConfigResponse:
    """Get current preferences (API key masked)."""
    config = await get_config()
    return ConfigResponse(
        default_output_dir=config.default_output_dir,
        default_preset=config.default_preset,
        filename_template=config.filename_template,
        ffmpeg_path=config.ffmpeg_path,
        ffprobe_path=config.ffprobe_path,
        tmdb_api_key=_mask_key(config.tmdb_api_key),
        tmdb_language=config.tmdb_language,
    )


@router.put("/config")
async def update_configuration(
    update: ConfigUpdate, orch: Orchestrator = Depends(get_orchestrator)
) -> dict[str, Any]:
    """Update preferences."""
    # A masked key echoed back by the settings form is not a new key
    if update.tmdb_api_key and update.tmdb_api_key.startswith("*"):
        update.tmdb_api_key = None

    try:
        await update_config(**update.model_dump(exclude_unset=True))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await orch.refresh_preferences()
    return {"status": "updated"}


@router.get("/presets")
async def list_presets() -> dict[str, dict]:
    return {name: preset.model_dump(mode="json") for name, preset in PRESETS.items()}
