from __future__ import annotations

import logging
import os
from typing import Callable, List, NamedTuple, Optional

from stitcher.clients.downloader import AssetRetriever
from stitcher.clients.ffmpeg import FFmpegEngine, TranscodeInput, TranscodeJob
from stitcher.config import Settings
from stitcher.errors import StitchError, TranscodeError
from stitcher.models.domain import PreparedAudio

RAW_AUDIO = "original_audio"
CANONICAL_AUDIO = "audio.wav"
TRIMMED_AUDIO = "audio_trimmed.m4a"


class AudioStrategy(NamedTuple):
    name: str
    run: Callable[[], str]
    needs_source: bool = True


class AudioPreparer:
    """Produces a trimmed, canonical audio track for a job.

    Strategies are tried in order and the first success wins. The last one
    synthesizes silence, so an unusable source never fails the job on its own.
    """

    def __init__(
        self,
        retriever: AssetRetriever,
        engine: FFmpegEngine,
        settings: Settings,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.retriever = retriever
        self.engine = engine
        self.settings = settings
        self.log = logger or logging.getLogger(__name__)

    def prepare(self, url: str, workspace: str) -> PreparedAudio:
        raw_path = os.path.join(workspace, RAW_AUDIO)
        canonical_path = os.path.join(workspace, CANONICAL_AUDIO)
        trimmed_path = os.path.join(workspace, TRIMMED_AUDIO)
        attempts: List[str] = []
        source_error: StitchError | None = None

        try:
            self.retriever.fetch(url, raw_path)
            source_ready = True
        except StitchError as exc:
            self.log.warning("audio download failed", extra={"url": url, "error": exc.message})
            attempts.append(f"download: {exc.message}")
            source_error = exc
            source_ready = False

        strategies = [
            AudioStrategy(
                "transcode_as_mp3",
                lambda: self._transcode(raw_path, canonical_path, trimmed_path, input_format="mp3"),
            ),
            AudioStrategy(
                "transcode_autodetect",
                lambda: self._transcode(raw_path, canonical_path, trimmed_path, input_format=None),
            ),
            AudioStrategy("silence", lambda: self.synthesize_silence(trimmed_path), needs_source=False),
        ]
        for strategy in strategies:
            if strategy.needs_source and not source_ready:
                continue
            try:
                path = strategy.run()
            except StitchError as exc:
                self.log.warning(
                    "audio strategy failed",
                    extra={"strategy": strategy.name, "error": exc.message},
                )
                attempts.append(f"{strategy.name}: {exc.message}")
                if strategy.needs_source:
                    source_error = exc
                    continue
                reason = source_error.message if source_error else "no audio source"
                raise TranscodeError(
                    f"Cannot create audio track: {reason}. Silent fallback also failed: {exc.message}"
                ) from exc
            silent = not strategy.needs_source
            if silent:
                self.log.warning("using silent audio track", extra={"attempts": attempts})
            else:
                self.log.info("audio prepared", extra={"strategy": strategy.name, "path": path})
            return PreparedAudio(path=path, strategy=strategy.name, silent=silent, attempts=attempts)
        raise TranscodeError("no audio strategy produced a track")  # pragma: no cover

    def _transcode(
        self,
        raw_path: str,
        canonical_path: str,
        trimmed_path: str,
        input_format: str | None,
    ) -> str:
        options = ["-f", input_format] if input_format else []
        self.engine.run(
            TranscodeJob(
                label=f"audio-decode-{input_format or 'auto'}",
                inputs=[TranscodeInput(path=raw_path, options=options)],
                output_path=canonical_path,
                output_options=[
                    "-vn",
                    "-c:a",
                    "pcm_s16le",
                    "-ac",
                    "2",
                    "-ar",
                    str(self.settings.sample_rate),
                ],
            )
        )
        self.engine.run(
            TranscodeJob(
                label="audio-trim",
                inputs=[TranscodeInput(path=canonical_path, options=["-ss", "0"])],
                output_path=trimmed_path,
                output_options=[
                    "-t",
                    f"{self.settings.audio_target_seconds:g}",
                    *self._delivery_options(),
                ],
            )
        )
        return trimmed_path

    def synthesize_silence(self, output_path: str) -> str:
        source = f"anullsrc=channel_layout={self.settings.channel_layout}:sample_rate={self.settings.sample_rate}"
        self.engine.run(
            TranscodeJob(
                label="audio-silence",
                inputs=[TranscodeInput(path=source, options=["-f", "lavfi"])],
                output_path=output_path,
                output_options=[
                    "-t",
                    f"{self.settings.audio_target_seconds:g}",
                    *self._delivery_options(),
                ],
            )
        )
        return output_path

    def _delivery_options(self) -> List[str]:
        return [
            "-c:a",
            self.settings.audio_codec,
            "-b:a",
            self.settings.audio_bitrate,
            "-ac",
            "2",
            "-ar",
            str(self.settings.sample_rate),
        ]
