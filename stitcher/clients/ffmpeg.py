from __future__ import annotations

import json
import logging
import subprocess
import threading
from collections import deque
from typing import Any, Callable, List, Optional

from pydantic import BaseModel, Field

from stitcher.errors import InvalidMediaError, ProbeError, TranscodeError
from stitcher.services.filter_graph import FilterGraph

ProgressCallback = Callable[[float], None]


class TranscodeInput(BaseModel):
    path: str
    options: List[str] = Field(default_factory=list)


class TranscodeJob(BaseModel):
    """Declarative description of one ffmpeg invocation."""

    inputs: List[TranscodeInput]
    output_path: str
    graph: Optional[FilterGraph] = None
    maps: List[str] = Field(default_factory=list)
    output_options: List[str] = Field(default_factory=list)
    duration_hint: Optional[float] = None
    label: str = "transcode"


class StreamInfo(BaseModel):
    index: int
    codec_type: str
    codec_name: Optional[str] = None
    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None


class MediaInfo(BaseModel):
    path: str
    duration: Optional[float] = None
    streams: List[StreamInfo] = Field(default_factory=list)

    @property
    def has_audio(self) -> bool:
        return any(stream.codec_type == "audio" for stream in self.streams)

    @property
    def has_video(self) -> bool:
        return any(stream.codec_type == "video" for stream in self.streams)

    @property
    def video_duration(self) -> Optional[float]:
        for stream in self.streams:
            if stream.codec_type == "video" and stream.duration:
                return stream.duration
        return self.duration


def _as_float(value: Any) -> Optional[float]:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


class FFmpegEngine:
    """Runs :class:`TranscodeJob` descriptions through the ffmpeg binary.

    At most ``max_concurrent`` invocations run at once per engine; further
    callers block until a slot frees up.
    """

    def __init__(
        self,
        binary: str = "ffmpeg",
        max_concurrent: int = 2,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.binary = binary
        self.log = logger or logging.getLogger(__name__)
        self._slots = threading.BoundedSemaphore(max(1, max_concurrent))

    def build_command(self, job: TranscodeJob) -> List[str]:
        cmd = [self.binary, "-y", "-hide_banner", "-loglevel", "error", "-nostats", "-progress", "pipe:1"]
        for source in job.inputs:
            cmd.extend(source.options)
            cmd.extend(["-i", source.path])
        if job.graph is not None:
            cmd.extend(["-filter_complex", job.graph.render()])
            cmd.extend(job.graph.map_args())
        cmd.extend(job.maps)
        cmd.extend(job.output_options)
        cmd.append(job.output_path)
        return cmd

    def run(self, job: TranscodeJob, on_progress: ProgressCallback | None = None) -> None:
        cmd = self.build_command(job)
        with self._slots:
            self.log.info("ffmpeg started", extra={"label": job.label, "cmd": " ".join(cmd)})
            self._execute(cmd, job, on_progress)
        self.log.info("ffmpeg completed", extra={"label": job.label, "output": job.output_path})

    def _execute(self, cmd: List[str], job: TranscodeJob, on_progress: ProgressCallback | None) -> None:
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except OSError as exc:
            raise TranscodeError(f"Cannot start {self.binary}: {exc}") from exc

        if process.stdout is None:
            process.kill()
            raise TranscodeError(f"{self.binary} started without an output pipe")
        errors: deque[str] = deque(maxlen=40)
        last_percent = -1.0
        for raw in process.stdout:
            line = raw.strip()
            if not line:
                continue
            key, sep, value = line.partition("=")
            if not sep or " " in key:
                errors.append(line)
                continue
            if key == "out_time_ms" and on_progress and job.duration_hint:
                try:
                    seconds = int(value) / 1_000_000
                except ValueError:
                    continue
                percent = max(0.0, min(100.0, seconds / job.duration_hint * 100))
                if percent > last_percent:
                    last_percent = percent
                    on_progress(percent)
        returncode = process.wait()
        if returncode != 0:
            message = "\n".join(errors) or f"{self.binary} exited with code {returncode}"
            self.log.error("ffmpeg failed", extra={"label": job.label, "returncode": returncode})
            raise TranscodeError(message)
        if on_progress:
            on_progress(100.0)


class MediaProber:
    def __init__(self, binary: str = "ffprobe", timeout: float = 30.0, logger: Optional[logging.Logger] = None) -> None:
        self.binary = binary
        self.timeout = timeout
        self.log = logger or logging.getLogger(__name__)

    def probe(self, path: str) -> MediaInfo:
        cmd = [
            self.binary,
            "-hide_banner",
            "-v",
            "error",
            "-show_streams",
            "-show_format",
            "-of",
            "json",
            path,
        ]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ProbeError(f"ffprobe failed for {path}: {exc}") from exc
        if proc.returncode != 0:
            detail = (proc.stderr or "").strip() or f"exit code {proc.returncode}"
            raise ProbeError(f"ffprobe failed for {path}: {detail}")
        try:
            payload = json.loads(proc.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise ProbeError(f"ffprobe returned invalid JSON for {path}") from exc
        return self._parse(path, payload)

    def _parse(self, path: str, payload: dict[str, Any]) -> MediaInfo:
        streams = [
            StreamInfo(
                index=int(stream.get("index", position)),
                codec_type=str(stream.get("codec_type") or "unknown"),
                codec_name=stream.get("codec_name"),
                duration=_as_float(stream.get("duration")),
                width=stream.get("width"),
                height=stream.get("height"),
            )
            for position, stream in enumerate(payload.get("streams") or [])
        ]
        fmt = payload.get("format") or {}
        return MediaInfo(path=path, duration=_as_float(fmt.get("duration")), streams=streams)

    def validate_video(self, path: str) -> MediaInfo:
        """Probe ``path`` and insist on a video stream with a known duration."""
        info = self.probe(path)
        if not info.has_video:
            raise InvalidMediaError(f"{path} has no video stream")
        if not info.video_duration:
            raise InvalidMediaError(f"{path} has no readable duration")
        return info

    def duration(self, path: str) -> float:
        info = self.probe(path)
        if not info.duration:
            raise InvalidMediaError(f"{path} has no readable duration")
        return info.duration
