from typing import Any

from pydantic import BaseModel, Field

CodecOptionValue = str | int | float


class ExportSettings(BaseModel):
    """Encoder selection for a final export."""

    output_path: str
    video_codec: str = "libx264"
    video_codec_options: dict[str, CodecOptionValue] = Field(
        default_factory=lambda: {"crf": 18, "preset": "medium"}
    )
    audio_codec: str = "aac"
    audio_codec_options: dict[str, CodecOptionValue] = Field(default_factory=lambda: {"b": "192k"})
    use_gpu_encoding: bool = False
    gpu_encoder: str | None = Field(None, description="e.g. h264_nvenc; used when use_gpu_encoding is set")

    @classmethod
    def from_settings(cls, settings: Any, output_path: str, **overrides: Any) -> "ExportSettings":
        values: dict[str, Any] = {
            "output_path": output_path,
            "video_codec": settings.export_video_codec,
            "video_codec_options": {"crf": settings.export_crf, "preset": settings.export_preset},
            "audio_codec": settings.export_audio_codec,
            "audio_codec_options": {"b": settings.export_audio_bitrate},
        }
        values.update(overrides)
        return cls(**values)
