from __future__ import annotations

import logging
import os
import re
import shutil
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Dict, List
from uuid import uuid4

from stitcher.clients.downloader import AssetRetriever
from stitcher.clients.ffmpeg import FFmpegEngine, MediaProber, ProgressCallback, TranscodeInput, TranscodeJob
from stitcher.config import Settings
from stitcher.errors import (
    CleanupWarning,
    DownloadError,
    InputValidationError,
    MissingAssetError,
    ProbeError,
    StitchError,
)
from stitcher.models.api import ProcessVideosRequest
from stitcher.models.domain import JobStatus, SequencedScenes, StitchJob, VideoSegment, VideoStats
from stitcher.services.audio import AudioPreparer
from stitcher.services.filter_graph import (
    CanonicalFormat,
    ClipSpec,
    FilterGraph,
    build_outro_graph,
    build_stitch_graph,
    outro_case,
)
from stitcher.services.sequencer import sequence_scenes
from stitcher.storage.repository import JobRepository

_JOB_ID_RE = re.compile(r"^[0-9a-fA-F-]{32,36}$")


class StitchingService:
    def __init__(
        self,
        repo: JobRepository,
        settings: Settings,
        retriever: AssetRetriever | None = None,
        engine: FFmpegEngine | None = None,
        prober: MediaProber | None = None,
    ) -> None:
        self.repo = repo
        self.settings = settings
        self.log = logging.getLogger(__name__)
        self.retriever = retriever or AssetRetriever(timeout=settings.download_timeout, logger=self.log)
        self.engine = engine or FFmpegEngine(
            binary=settings.ffmpeg_binary,
            max_concurrent=settings.max_concurrent_transcodes,
            logger=self.log,
        )
        self.prober = prober or MediaProber(binary=settings.ffprobe_binary, logger=self.log)
        self.audio = AudioPreparer(self.retriever, self.engine, settings, logger=self.log)
        self.canonical = CanonicalFormat.from_settings(settings)
        os.makedirs(settings.output_dir, exist_ok=True)

    def create_job(self) -> StitchJob:
        job = StitchJob(id=uuid4().hex, message="Job created")
        self.repo.save(job)
        self.log.info("starting job", extra={"job_id": job.id})
        return job

    def get_job(self, job_id: str) -> StitchJob:
        job = self.repo.get(job_id)
        if not job:
            raise ValueError("Job not found")
        return job

    def active_jobs(self) -> int:
        return self.repo.count()

    def output_path(self, job_id: str) -> str:
        if not _JOB_ID_RE.match(job_id or ""):
            raise ValueError(f"invalid job id: {job_id!r}")
        return os.path.join(self.settings.output_dir, f"final_video_{job_id}.mp4")

    def process(self, job_id: str, payload: ProcessVideosRequest) -> StitchJob:
        """Run the whole pipeline for ``job_id`` and return the completed record.

        Raises the originating :class:`StitchError` after marking the job failed.
        """
        workspace: str | None = None
        try:
            scenes = self._validate(payload)
            self.repo.update(job_id, scene_order=scenes.scene_order)
            outro_path = self._require_outro()
            workspace = self._create_workspace(job_id)

            self._checkpoint(job_id, 10, "Processing audio...")
            audio = self.audio.prepare(payload.mv_audio.strip(), workspace)

            self._checkpoint(job_id, 20, "Downloading and sorting videos...")
            segments = self._download_segments(job_id, scenes.segments, workspace)

            self._checkpoint(job_id, 60, "Stitching videos together...")
            stitched_path = os.path.join(workspace, "stitched_video.mp4")
            self._stitch(segments, stitched_path, self._stage_progress(job_id, 60, 80, "Stitching videos together..."))

            self._checkpoint(job_id, 80, "Adding audio to final video...")
            final_path = self.output_path(job_id)
            # Rendered inside the workspace; only a finished file reaches output_dir.
            staged_path = os.path.join(workspace, os.path.basename(final_path))
            muxed_path = os.path.join(workspace, "muxed_video.mp4") if outro_path else staged_path
            self._mux(stitched_path, audio.path, muxed_path)

            if outro_path:
                self._checkpoint(job_id, 90, "Appending outro...")
                self._append_outro(muxed_path, outro_path, staged_path, self._stage_progress(job_id, 90, 99, "Appending outro..."))

            stats = self._collect_stats(staged_path)
            self._publish(staged_path, final_path)
            message = self._success_message(len(segments), audio.silent)
            job = self.repo.update(
                job_id,
                status=JobStatus.COMPLETED,
                progress=100,
                message=message,
                completed_time=datetime.utcnow(),
                video_stats=stats,
                processed_videos=len(segments),
            )
            self.log.info("job completed", extra={"job_id": job_id, "duration": stats.duration, "bytes": stats.file_size})
            return job or self.get_job(job_id)
        except StitchError as exc:
            self._fail(job_id, exc)
            raise
        except Exception as exc:
            self.log.exception("job crashed", extra={"job_id": job_id})
            error = StitchError(str(exc) or exc.__class__.__name__)
            self._fail(job_id, error)
            raise error from exc
        finally:
            if workspace:
                self._cleanup_workspace(job_id, workspace)

    def _validate(self, payload: ProcessVideosRequest) -> SequencedScenes:
        audio_url = payload.mv_audio
        if not isinstance(payload.videos, list) or not isinstance(audio_url, str) or not audio_url.strip():
            raise InputValidationError("Invalid input. Expected videos array and mv_audio URL")
        return sequence_scenes(payload.videos)

    def _require_outro(self) -> str | None:
        if not self.settings.outro_enabled:
            return None
        path = self.settings.outro_path
        if not os.path.isfile(path):
            raise MissingAssetError(f"Outro asset not found: {path}")
        return path

    def _create_workspace(self, job_id: str) -> str:
        workspace = os.path.join(self.settings.temp_root, job_id)
        os.makedirs(workspace, exist_ok=True)
        return workspace

    def _checkpoint(self, job_id: str, progress: int, message: str) -> None:
        self.repo.update(job_id, progress=progress, message=message)
        self.log.info(message, extra={"job_id": job_id, "progress": progress})

    def _stage_progress(self, job_id: str, start: int, end: int, message: str) -> ProgressCallback:
        def report(percent: float) -> None:
            self.repo.update(job_id, progress=start + int((end - start) * percent / 100), message=message)

        return report

    def _download_segments(self, job_id: str, segments: List[VideoSegment], workspace: str) -> List[VideoSegment]:
        total = len(segments)
        fetched: Dict[int, VideoSegment] = {}
        workers = max(1, min(self.settings.download_concurrency, total))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"dl-{job_id[:8]}") as pool:
            futures = {pool.submit(self._fetch_segment, segment, workspace): index for index, segment in enumerate(segments)}
            try:
                for future in as_completed(futures):
                    fetched[futures[future]] = future.result()
                    done = len(fetched)
                    self._checkpoint(job_id, 20 + (done * 40) // total, f"Downloaded {done}/{total} videos")
            except BaseException:
                for future in futures:
                    future.cancel()
                raise
        self.log.info("downloaded videos in order", extra={"job_id": job_id, "count": total})
        return [fetched[index] for index in range(total)]

    def _fetch_segment(self, segment: VideoSegment, workspace: str) -> VideoSegment:
        path = os.path.join(workspace, f"video_{segment.scene_number:03d}.mp4")
        try:
            self.retriever.fetch(segment.source_url, path)
        except DownloadError as exc:
            raise DownloadError(
                f"Failed to download video for scene {segment.scene_number}: {exc.message}"
            ) from exc
        try:
            info = self.prober.validate_video(path)
        except ProbeError as exc:
            raise type(exc)(
                f"Downloaded video for scene {segment.scene_number} is invalid or corrupted: {exc.message}"
            ) from exc
        return segment.model_copy(update={"local_path": path, "has_audio": info.has_audio, "duration": info.video_duration})

    def _encode_options(self, graph: FilterGraph) -> List[str]:
        options = [
            "-c:v",
            self.settings.video_codec,
            "-preset",
            self.settings.video_preset,
            "-crf",
            str(self.settings.video_crf),
            "-pix_fmt",
            self.settings.pixel_format,
        ]
        if graph.has_audio_output:
            options.extend(["-c:a", self.settings.audio_codec, "-b:a", self.settings.audio_bitrate])
        return options

    def _stitch(self, segments: List[VideoSegment], output_path: str, on_progress: ProgressCallback) -> None:
        clips = [ClipSpec(has_audio=bool(s.has_audio), duration=s.duration or 0.0) for s in segments]
        graph = build_stitch_graph(clips, self.canonical)
        self.log.info(
            "stitching videos",
            extra={"clips": len(clips), "with_audio": sum(1 for clip in clips if clip.has_audio)},
        )
        self.engine.run(
            TranscodeJob(
                label="stitch",
                inputs=[TranscodeInput(path=s.local_path or "") for s in segments],
                graph=graph,
                output_options=self._encode_options(graph),
                output_path=output_path,
                duration_hint=sum(clip.duration for clip in clips),
            ),
            on_progress,
        )

    def _mux(self, video_path: str, audio_path: str, output_path: str) -> None:
        # Video is copied untouched; -shortest bounds the result by the shorter stream.
        self.engine.run(
            TranscodeJob(
                label="mux",
                inputs=[TranscodeInput(path=video_path), TranscodeInput(path=audio_path)],
                maps=["-map", "0:v:0", "-map", "1:a:0"],
                output_options=[
                    "-c:v",
                    "copy",
                    "-c:a",
                    self.settings.audio_codec,
                    "-b:a",
                    self.settings.audio_bitrate,
                    "-shortest",
                ],
                output_path=output_path,
            )
        )

    def _append_outro(self, main_path: str, outro_path: str, output_path: str, on_progress: ProgressCallback) -> None:
        main_info = self.prober.validate_video(main_path)
        outro_info = self.prober.validate_video(outro_path)
        main = ClipSpec(has_audio=main_info.has_audio, duration=main_info.video_duration or 0.0)
        outro = ClipSpec(has_audio=outro_info.has_audio, duration=outro_info.video_duration or 0.0)
        graph = build_outro_graph(main, outro, self.canonical)
        self.log.info("appending outro", extra={"case": outro_case(main, outro).value, "outro": outro_path})
        self.engine.run(
            TranscodeJob(
                label="outro",
                inputs=[TranscodeInput(path=main_path), TranscodeInput(path=outro_path)],
                graph=graph,
                output_options=self._encode_options(graph),
                output_path=output_path,
                duration_hint=main.duration + outro.duration,
            ),
            on_progress,
        )

    def _collect_stats(self, path: str) -> VideoStats:
        duration = self.prober.duration(path)
        size = os.path.getsize(path)
        return VideoStats(duration=duration, file_size=size, file_size_mb=f"{size / (1024 * 1024):.2f}")

    def _success_message(self, count: int, silent: bool) -> str:
        seconds = self.settings.audio_target_seconds
        if seconds % 60 == 0:
            length = f"{int(seconds // 60)}-minute"
        else:
            length = f"{seconds:g}-second"
        track = "silent audio track" if silent else "audio track"
        return f"Successfully processed {count} videos with {length} {track}"

    def _publish(self, staged_path: str, final_path: str) -> None:
        shutil.move(staged_path, final_path)
        self.log.info("output published", extra={"path": final_path})

    def _discard_output(self, job_id: str) -> None:
        try:
            os.remove(self.output_path(job_id))
        except FileNotFoundError:
            pass
        except (OSError, ValueError):
            self.log.warning("stale output removal failed", extra={"job_id": job_id}, exc_info=True)

    def _fail(self, job_id: str, exc: StitchError) -> None:
        self._discard_output(job_id)
        self.log.error(
            "job failed",
            extra={"job_id": job_id, "error_type": type(exc).__name__, "error": exc.message},
        )
        self.repo.update(
            job_id,
            status=JobStatus.FAILED,
            error=exc.message,
            error_type=type(exc).__name__,
            message="Video stitching failed",
            failed_time=datetime.utcnow(),
        )

    def _cleanup_workspace(self, job_id: str, workspace: str) -> None:
        try:
            shutil.rmtree(workspace)
        except FileNotFoundError:
            pass
        except OSError as exc:
            warning = CleanupWarning(f"Cleanup failed for {workspace}: {exc}")
            self.log.warning(str(warning), extra={"job_id": job_id})
