"""Media file information utilities using FFprobe."""

import asyncio
import json
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from render_core.config import get_settings
from render_core.exceptions import MediaProbeError
from render_core.schemas.timeline import MediaItem, MediaMetadata, MediaType

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".tiff"}
AUDIO_EXTENSIONS = {".mp3", ".wav", ".aac", ".flac", ".ogg", ".m4a", ".wma"}


def _get_settings():
    """Get settings lazily to avoid import issues in tests."""
    return get_settings()


@dataclass
class MediaInfo:
    """Media file information."""

    duration: float | None = None
    width: int | None = None
    height: int | None = None
    frame_rate: float | None = None
    video_codec: str | None = None
    audio_codec: str | None = None
    sample_rate: int | None = None
    channels: int | None = None
    has_video: bool = False
    has_audio: bool = False


def guess_media_type(file_path: str) -> MediaType:
    """Classify by extension; anything unknown is treated as video."""
    ext = Path(file_path).suffix.lower()
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext in AUDIO_EXTENSIONS:
        return "audio"
    return "video"


def _run_ffprobe(file_path: str, *args) -> dict:
    """Run ffprobe and return parsed JSON."""
    settings = _get_settings()
    cmd = [
        settings.ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        *args,
        file_path,
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise MediaProbeError(f"ffprobe could not be started: {e}") from e
    if result.returncode != 0:
        raise MediaProbeError(f"ffprobe failed: {result.stderr}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise MediaProbeError(f"Failed to parse ffprobe output: {e}") from e


def parse_frame_rate(value: Optional[str]) -> Optional[float]:
    """``"30000/1001"`` to 29.97. None for missing or zero rates."""
    if not value:
        return None
    if "/" in value:
        num, _, den = value.partition("/")
        try:
            num_f, den_f = float(num), float(den)
        except ValueError:
            return None
        if den_f == 0 or num_f == 0:
            return None
        return num_f / den_f
    try:
        rate = float(value)
    except ValueError:
        return None
    return rate or None


def parse_probe_output(data: dict) -> MediaInfo:
    info = MediaInfo()

    format_info = data.get("format", {})
    if "duration" in format_info:
        info.duration = float(format_info["duration"])

    for stream in data.get("streams", []):
        codec_type = stream.get("codec_type")

        if codec_type == "video" and not info.has_video:
            info.has_video = True
            info.width = stream.get("width")
            info.height = stream.get("height")
            info.video_codec = stream.get("codec_name")
            info.frame_rate = parse_frame_rate(stream.get("r_frame_rate")) or parse_frame_rate(
                stream.get("avg_frame_rate")
            )
            if info.duration is None and "duration" in stream:
                info.duration = float(stream["duration"])

        elif codec_type == "audio" and not info.has_audio:
            info.has_audio = True
            info.audio_codec = stream.get("codec_name")
            info.sample_rate = int(stream.get("sample_rate", 0)) or None
            info.channels = stream.get("channels")

    return info


def get_media_info(file_path: str) -> MediaInfo:
    """
    Get complete media file information.

    Args:
        file_path: Path to media file

    Returns:
        MediaInfo with duration in seconds

    Raises:
        MediaProbeError: If ffprobe fails
    """
    return parse_probe_output(_run_ffprobe(file_path, "-show_format", "-show_streams"))


def get_media_duration(file_path: str) -> float:
    """
    Get media file duration in seconds.

    Raises:
        MediaProbeError: If ffprobe fails or duration not found
    """
    data = _run_ffprobe(file_path, "-show_format")
    format_info = data.get("format", {})

    if "duration" not in format_info:
        raise MediaProbeError(f"Duration not found in: {file_path}")

    return float(format_info["duration"])


def get_video_dimensions(file_path: str) -> tuple[int, int]:
    """
    Get video width and height.

    Raises:
        MediaProbeError: If ffprobe fails or video stream not found
    """
    data = _run_ffprobe(file_path, "-show_streams", "-select_streams", "v")

    streams = data.get("streams", [])
    if not streams:
        raise MediaProbeError(f"No video stream found in: {file_path}")

    stream = streams[0]
    width = stream.get("width")
    height = stream.get("height")

    if width is None or height is None:
        raise MediaProbeError(f"Video dimensions not found in: {file_path}")

    return width, height


def probe_media(file_path: str, media_id: Optional[str] = None) -> MediaItem:
    """Probe ``file_path`` into a MediaItem ready for the compilers."""
    media_type = guess_media_type(file_path)
    info = get_media_info(file_path)
    metadata = None
    if info.has_video:
        metadata = MediaMetadata(width=info.width, height=info.height, frame_rate=info.frame_rate)
    return MediaItem(
        id=media_id or Path(file_path).stem,
        type=media_type,
        path=file_path,
        duration=info.duration or 0.0,
        metadata=metadata,
    )


async def probe_media_async(file_path: str, media_id: Optional[str] = None) -> MediaItem:
    return await asyncio.to_thread(probe_media, file_path, media_id)
