from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # Render settings
    render_output_width: int = 1920
    render_output_height: int = 1080
    render_fps: int = 30
    render_audio_sample_rate: int = 48000
    render_background_color: str = "black"

    # Export defaults
    export_video_codec: str = "libx264"
    export_crf: int = 18
    export_preset: str = "medium"
    export_audio_codec: str = "aac"
    export_audio_bitrate: str = "192k"

    # Chunked preview
    preview_chunk_duration_s: float = 2.0
    preview_max_concurrent_renders: int = 2
    preview_prefetch_radius: int = 5  # chunks on each side of the playhead
    preview_cache_dir: str = "/tmp/render-core/chunk-cache"
    preview_output_dir: str = "/tmp/render-core/preview"
    preview_proxy_dir: str = "/tmp/render-core/proxies"
    preview_proxy_scale: float = 0.5
    preview_full_scale: float = 0.5
    preview_proxy_phase_weight: float = 0.7

    # Subprocess handling
    process_cancel_grace_s: float = 0.5
    process_stderr_tail_chars: int = 500


@lru_cache
def get_settings() -> Settings:
    return Settings()
