from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from fastapi import Depends, FastAPI, status
from fastapi.responses import FileResponse, JSONResponse

from stitcher.config import Settings, get_settings
from stitcher.errors import StitchError
from stitcher.models.api import (
    HealthResponse,
    JobStatusResponse,
    ProcessVideosRequest,
    ProcessVideosResponse,
    VideoStatsPayload,
)
from stitcher.services.janitor import JobStatusSweeper
from stitcher.services.stitching_service import StitchingService
from stitcher.storage.repository import JobRepository

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
log = logging.getLogger(__name__)

_repo = JobRepository()
_service: StitchingService | None = None


@asynccontextmanager
async def lifespan(_: FastAPI):
    settings = get_settings()
    os.makedirs(settings.output_dir, exist_ok=True)
    sweeper = JobStatusSweeper(
        _repo,
        ttl=timedelta(hours=settings.job_ttl_hours),
        interval_seconds=settings.sweep_interval_seconds,
    )
    sweeper.start()
    log.info("%s v%s running on port %s", settings.app_name, settings.app_version, settings.port)
    try:
        yield
    finally:
        sweeper.stop()


app = FastAPI(lifespan=lifespan)


def get_stitching_service(settings: Settings = Depends(get_settings)) -> StitchingService:
    global _service
    if _service is None:
        _service = StitchingService(repo=_repo, settings=settings)
    return _service


@app.post("/process-videos", response_model=ProcessVideosResponse)
def process_videos(
    payload: ProcessVideosRequest,
    service: StitchingService = Depends(get_stitching_service),
):
    job = service.create_job()
    try:
        job = service.process(job.id, payload)
    except StitchError as exc:
        if exc.http_status == status.HTTP_400_BAD_REQUEST:
            return JSONResponse(status_code=exc.http_status, content={"error": exc.message, "jobId": job.id})
        return JSONResponse(
            status_code=exc.http_status,
            content={"success": False, "error": exc.message, "jobId": job.id},
        )
    return ProcessVideosResponse(
        job_id=job.id,
        download_url=f"/download/{job.id}",
        video_stats=VideoStatsPayload.from_stats(job.video_stats),
        processed_videos=job.processed_videos or 0,
        scene_order=job.scene_order or [],
        message=job.message or "",
    )


@app.get("/status/{job_id}", response_model=JobStatusResponse)
def get_status(job_id: str, service: StitchingService = Depends(get_stitching_service)):
    try:
        job = service.get_job(job_id)
    except ValueError:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"error": "Job not found", "jobId": job_id},
        )
    return JobStatusResponse.from_job(job)


@app.get("/download/{job_id}")
def download(job_id: str, service: StitchingService = Depends(get_stitching_service)):
    try:
        path = service.output_path(job_id)
    except ValueError as exc:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"error": "Video file not found or not accessible", "details": str(exc)},
        )
    if not os.path.isfile(path):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"error": "Video file not found or not accessible", "details": f"no output for job {job_id}"},
        )
    return FileResponse(
        path,
        media_type="video/mp4",
        filename=f"final_video_{job_id}.mp4",
        headers={"Accept-Ranges": "bytes"},
    )


@app.get("/health", response_model=HealthResponse)
def health(
    settings: Settings = Depends(get_settings),
    service: StitchingService = Depends(get_stitching_service),
) -> HealthResponse:
    return HealthResponse(service=settings.app_name, timestamp=datetime.utcnow(), active_jobs=service.active_jobs())


@app.get("/")
def describe(settings: Settings = Depends(get_settings)) -> dict:
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "features": [
            "Scene number ordering",
            "Video validation",
            "Resolution and frame rate normalization",
            "Progress tracking",
            "Silent audio fallback",
            "Outro appending",
        ],
        "endpoints": {
            "process": "POST /process-videos",
            "status": "GET /status/:jobId",
            "download": "GET /download/:jobId",
            "health": "GET /health",
        },
        "usage": {
            "description": "Send POST request to /process-videos with your video data",
            "example": {
                "videos": [
                    {"scene_number": 1, "final_video_url": "https://..."},
                    {"scene_number": 2, "final_video_url": "https://..."},
                ],
                "mv_audio": "https://audio-url.com/audio.mp3",
            },
        },
    }
