import os
import threading

import pytest
from fastapi.testclient import TestClient

from stitcher.clients.ffmpeg import MediaInfo, StreamInfo
from stitcher.config import Settings, get_settings
from stitcher.errors import DownloadError, InvalidMediaError, ProbeError, TranscodeError
from stitcher.main import app, get_stitching_service
from stitcher.services.stitching_service import StitchingService
from stitcher.storage.repository import JobRepository

AUDIO_URL = "https://cdn.example.com/track"


class FakeRetriever:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.fetched = []
        self._lock = threading.Lock()

    def fetch(self, url, destination):
        if url in self.failing:
            raise DownloadError(f"Download failed with HTTP 404: {url}")
        with self._lock:
            self.fetched.append((url, destination))
        with open(destination, "wb") as f:
            f.write(b"media")
        return destination


class FakeEngine:
    def __init__(self, fail=None, partial=()):
        self.fail = dict(fail or {})
        self.partial = set(partial)
        self.jobs = []
        self._lock = threading.Lock()

    def run(self, job, on_progress=None):
        with self._lock:
            self.jobs.append(job)
        if job.label in self.fail:
            if job.label in self.partial:
                with open(job.output_path, "wb") as f:
                    f.write(b"partial")
            raise TranscodeError(self.fail[job.label])
        with open(job.output_path, "wb") as f:
            f.write(b"\x00" * 2048)
        if on_progress:
            on_progress(50.0)
            on_progress(100.0)

    def labels(self):
        return [job.label for job in self.jobs]

    def job(self, label):
        return next(job for job in self.jobs if job.label == label)


class FakeProber:
    def __init__(self, audio=None, durations=None, invalid=()):
        self.audio = dict(audio or {})
        self.durations = dict(durations or {})
        self.invalid = set(invalid)
        self.unreadable = set()

    def _duration(self, path):
        return self.durations.get(os.path.basename(path), 4.0)

    def validate_video(self, path):
        name = os.path.basename(path)
        if name in self.invalid:
            raise InvalidMediaError(f"{path} has no video stream")
        duration = self._duration(path)
        streams = [StreamInfo(index=0, codec_type="video", codec_name="h264", duration=duration)]
        if self.audio.get(name, True):
            streams.append(StreamInfo(index=1, codec_type="audio", codec_name="aac", duration=duration))
        return MediaInfo(path=path, duration=duration, streams=streams)

    def duration(self, path):
        if any(os.path.basename(path).startswith(prefix) for prefix in self.unreadable):
            raise ProbeError(f"ffprobe failed for {path}: moov atom not found")
        return self._duration(path)


class RecordingRepository(JobRepository):
    def __init__(self):
        super().__init__()
        self.progress_log = []

    def update(self, job_id, **changes):
        job = super().update(job_id, **changes)
        if job is not None:
            self.progress_log.append(job.progress)
        return job


def video_payload(*scene_numbers, audio=AUDIO_URL):
    return {
        "videos": [
            {"scene_number": number, "final_video_url": f"https://cdn.example.com/scene-{number}.mp4"}
            for number in scene_numbers
        ],
        "mv_audio": audio,
    }


@pytest.fixture
def outro_file(tmp_path):
    path = tmp_path / "assets" / "outro.mp4"
    path.parent.mkdir()
    path.write_bytes(b"outro")
    return path


@pytest.fixture
def settings(tmp_path, outro_file):
    return Settings(
        temp_root=str(tmp_path / "work"),
        output_dir=str(tmp_path / "output"),
        outro_path=str(outro_file),
    )


@pytest.fixture
def retriever():
    return FakeRetriever()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def prober():
    return FakeProber()


@pytest.fixture
def repo():
    return RecordingRepository()


@pytest.fixture
def service(repo, settings, retriever, engine, prober):
    return StitchingService(repo=repo, settings=settings, retriever=retriever, engine=engine, prober=prober)


@pytest.fixture
def client(service, settings):
    app.dependency_overrides[get_stitching_service] = lambda: service
    app.dependency_overrides[get_settings] = lambda: settings
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
