from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STITCHER_", env_file=".env", env_file_encoding="utf-8")

    app_name: str = "Video Stitching Service"
    app_version: str = "2.0.0"
    host: str = "0.0.0.0"
    port: int = 3000

    # Local storage layout
    temp_root: str = "/tmp"
    output_dir: str = "/tmp/output"

    # Outro appended after the muxed video
    outro_enabled: bool = True
    outro_path: str = "assets/outro.mp4"

    # Canonical media format
    audio_target_seconds: float = 60.0
    target_width: int = 1920
    target_height: int = 1080
    target_fps: int = 30
    sample_rate: int = 44100
    channel_layout: str = "stereo"

    # Encoder parameters
    video_codec: str = "libx264"
    video_preset: str = "medium"
    video_crf: int = 23
    pixel_format: str = "yuv420p"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"

    # External tools and limits
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    download_timeout: float = 60.0
    download_concurrency: int = 4
    max_concurrent_transcodes: int = 2

    # Job status retention
    job_ttl_hours: float = 24.0
    sweep_interval_seconds: float = 3600.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
