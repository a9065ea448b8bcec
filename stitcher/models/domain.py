from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class VideoStats(BaseModel):
    duration: float
    file_size: int
    file_size_mb: str


class VideoSegment(BaseModel):
    scene_number: int
    source_url: str
    local_path: Optional[str] = None
    has_audio: Optional[bool] = None
    duration: Optional[float] = None


class SequencedScenes(BaseModel):
    segments: List[VideoSegment]
    missing_scenes: List[int] = Field(default_factory=list)

    @property
    def scene_order(self) -> List[int]:
        return [segment.scene_number for segment in self.segments]


class PreparedAudio(BaseModel):
    path: str
    strategy: str
    silent: bool = False
    attempts: List[str] = Field(default_factory=list)


class StitchJob(BaseModel):
    id: str
    status: JobStatus = JobStatus.PROCESSING
    progress: int = 0
    message: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    video_stats: Optional[VideoStats] = None
    processed_videos: Optional[int] = None
    scene_order: Optional[List[int]] = None
    start_time: datetime = Field(default_factory=datetime.utcnow)
    last_updated: datetime = Field(default_factory=datetime.utcnow)
    completed_time: Optional[datetime] = None
    failed_time: Optional[datetime] = None
