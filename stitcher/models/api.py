from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .domain import JobStatus, StitchJob, VideoStats


class ProcessVideosRequest(BaseModel):
    # Entries are validated by the scene sequencer so malformed payloads map to 400 with a job id.
    videos: Optional[Any] = None
    mv_audio: Optional[Any] = None
    total_videos: Optional[Any] = None


class VideoStatsPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    duration: float
    file_size: int = Field(..., alias="fileSize")
    file_size_mb: str = Field(..., alias="fileSizeMB")

    @classmethod
    def from_stats(cls, stats: VideoStats) -> "VideoStatsPayload":
        return cls(duration=stats.duration, file_size=stats.file_size, file_size_mb=stats.file_size_mb)


class ProcessVideosResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    job_id: str = Field(..., alias="jobId")
    download_url: str = Field(..., alias="downloadUrl")
    video_stats: VideoStatsPayload = Field(..., alias="videoStats")
    processed_videos: int = Field(..., alias="processedVideos")
    scene_order: List[int] = Field(..., alias="sceneOrder")
    message: str


class JobStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId")
    status: JobStatus
    progress: int
    message: Optional[str] = None
    start_time: datetime = Field(..., alias="startTime")
    completed_time: Optional[datetime] = Field(default=None, alias="completedTime")
    failed_time: Optional[datetime] = Field(default=None, alias="failedTime")
    error: Optional[str] = None
    video_stats: Optional[VideoStatsPayload] = Field(default=None, alias="videoStats")
    processed_videos: Optional[int] = Field(default=None, alias="processedVideos")
    scene_order: Optional[List[int]] = Field(default=None, alias="sceneOrder")
    download_url: Optional[str] = Field(default=None, alias="downloadUrl")
    last_updated: datetime = Field(..., alias="lastUpdated")

    @classmethod
    def from_job(cls, job: StitchJob) -> "JobStatusResponse":
        completed = job.status == JobStatus.COMPLETED
        return cls(
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            message=job.message,
            start_time=job.start_time,
            completed_time=job.completed_time,
            failed_time=job.failed_time,
            error=job.error,
            video_stats=VideoStatsPayload.from_stats(job.video_stats) if job.video_stats else None,
            processed_videos=job.processed_videos,
            scene_order=job.scene_order,
            download_url=f"/download/{job.id}" if completed else None,
            last_updated=job.last_updated,
        )


class HealthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str = "OK"
    service: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    active_jobs: int = Field(..., alias="activeJobs")
