"""FFmpeg argument vectors for every kind of render job.

All builders return a complete ``cmd`` list starting with the ffmpeg binary,
ready for ``ProcessRunner.run``.
"""

from dataclasses import dataclass
from typing import Optional

from render_core.config import get_settings
from render_core.render.filter_graph import format_number
from render_core.render.timeline_slice import CompiledGraph
from render_core.schemas.export import ExportSettings

# NVENC uses p1 (fastest) .. p7 (slowest) instead of x264 preset names.
NVENC_PRESET_MAP = {
    "ultrafast": "p1",
    "superfast": "p1",
    "veryfast": "p2",
    "faster": "p3",
    "fast": "p4",
    "medium": "p5",
    "slow": "p6",
    "slower": "p7",
    "veryslow": "p7",
}
NVENC_DEFAULT_PRESET = "p5"

AUDIO_OPTION_FLAGS = {"b": "-b:a", "ar": "-ar", "ac": "-ac"}


@dataclass(frozen=True)
class EncoderProfile:
    """Fixed encoder settings for preview-grade outputs."""

    video_codec: str = "libx264"
    preset: str = "ultrafast"
    crf: int = 28
    tune: Optional[str] = None
    pix_fmt: str = "yuv420p"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"

    def video_args(self) -> list[str]:
        args = ["-c:v", self.video_codec, "-preset", self.preset, "-crf", str(self.crf)]
        if self.tune:
            args.extend(["-tune", self.tune])
        args.extend(["-pix_fmt", self.pix_fmt])
        return args

    def audio_args(self) -> list[str]:
        return ["-c:a", self.audio_codec, "-b:a", self.audio_bitrate]


CHUNK_PROFILE = EncoderProfile(crf=28, audio_bitrate="128k")
FULL_PREVIEW_PROFILE = EncoderProfile(crf=35, tune="fastdecode", audio_bitrate="64k")
PROXY_PROFILE = EncoderProfile(crf=23, audio_bitrate="128k")


def _ffmpeg_path(ffmpeg_path: Optional[str]) -> str:
    return ffmpeg_path or get_settings().ffmpeg_path


def _input_args(compiled: CompiledGraph) -> list[str]:
    args: list[str] = []
    for source in compiled.inputs:
        args.extend(["-i", source.path])
    return args


def _map_args(compiled: CompiledGraph) -> list[str]:
    args: list[str] = []
    for pad in compiled.maps:
        args.extend(["-map", pad])
    return args


def build_preview_command(
    compiled: CompiledGraph,
    output_path: str,
    profile: EncoderProfile = CHUNK_PROFILE,
    *,
    progress: bool = True,
    ffmpeg_path: Optional[str] = None,
) -> list[str]:
    """Command for a preview chunk or the full fast preview."""
    cmd = [
        _ffmpeg_path(ffmpeg_path),
        "-y",
        *_input_args(compiled),
        "-filter_complex", compiled.filter_complex,
        *_map_args(compiled),
        *profile.video_args(),
    ]
    if compiled.audio_output:
        cmd.extend(profile.audio_args())
    else:
        cmd.append("-an")
    cmd.extend(["-t", format_number(compiled.duration)])
    if progress:
        cmd.extend(["-progress", "pipe:1"])
    cmd.append(output_path)
    return cmd


def _video_codec_option_args(options: dict, use_gpu: bool) -> list[str]:
    args: list[str] = []
    for key, value in options.items():
        if use_gpu and key == "crf":
            args.extend(["-rc", "constqp", "-qp", str(value)])
        elif use_gpu and key == "preset":
            args.extend(["-preset", NVENC_PRESET_MAP.get(str(value), NVENC_DEFAULT_PRESET)])
        else:
            args.extend([f"-{key}", str(value)])
    return args


def build_export_command(
    compiled: CompiledGraph,
    export: ExportSettings,
    *,
    ffmpeg_path: Optional[str] = None,
) -> list[str]:
    """Command for the final export.

    With GPU encoding enabled the video codec becomes ``gpu_encoder`` and the
    x264-style ``crf``/``preset`` options are translated for NVENC.
    """
    use_gpu = export.use_gpu_encoding and bool(export.gpu_encoder)
    video_codec = export.gpu_encoder if use_gpu else export.video_codec

    cmd = [
        _ffmpeg_path(ffmpeg_path),
        *_input_args(compiled),
        "-filter_complex", compiled.filter_complex,
        *_map_args(compiled),
        "-c:v", video_codec,
        *_video_codec_option_args(export.video_codec_options, use_gpu),
        "-pix_fmt", "yuv420p",
    ]

    if compiled.audio_output:
        cmd.extend(["-c:a", export.audio_codec])
        for key, value in export.audio_codec_options.items():
            cmd.extend([AUDIO_OPTION_FLAGS.get(key, f"-{key}"), str(value)])
    else:
        cmd.append("-an")

    cmd.extend([
        "-t", format_number(compiled.duration),
        "-progress", "pipe:1",
        "-y",
        export.output_path,
    ])
    return cmd


def build_proxy_command(
    source_path: str,
    proxy_path: str,
    scale: float = 0.5,
    profile: EncoderProfile = PROXY_PROFILE,
    *,
    ffmpeg_path: Optional[str] = None,
) -> list[str]:
    """Downscaled, fast-decoding copy of a source video."""
    factor = format_number(scale)
    return [
        _ffmpeg_path(ffmpeg_path),
        "-y",
        "-i", source_path,
        "-vf", f"scale=trunc(iw*{factor}/2)*2:trunc(ih*{factor}/2)*2",
        *profile.video_args(),
        *profile.audio_args(),
        "-progress", "pipe:1",
        proxy_path,
    ]


def escape_concat_path(path: str) -> str:
    """Quote a path for a concat demuxer list file."""
    return path.replace("'", "'\\''")


def build_concat_list(paths: list[str]) -> str:
    return "".join(f"file '{escape_concat_path(p)}'\n" for p in paths)


def build_concat_command(
    list_path: str,
    output_path: str,
    *,
    ffmpeg_path: Optional[str] = None,
) -> list[str]:
    """Lossless join of already-encoded chunk files."""
    return [
        _ffmpeg_path(ffmpeg_path),
        "-y",
        "-f", "concat",
        "-safe", "0",
        "-i", list_path,
        "-c", "copy",
        "-movflags", "+faststart",
        output_path,
    ]
