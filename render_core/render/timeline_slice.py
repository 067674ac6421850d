"""Primitives shared by both compositors.

Windowing, layer order, input deduplication and per-clip normalization live
here so the overlay and concat compositors agree on trims and geometry.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional

from render_core.exceptions import CompileError
from render_core.render.filter_graph import Filter, FilterGraph, format_number
from render_core.schemas.timeline import (
    MediaItem,
    RenderSettings,
    RenderWindow,
    Timeline,
    Track,
)

logger = logging.getLogger(__name__)

PathExists = Callable[[str], bool]

VIDEO_OUTPUT_LABEL = "vout"
AUDIO_OUTPUT_LABEL = "aout"
BASE_LABEL = "base"


# ============================================================================
# Layer order
# ============================================================================


def top_to_bottom(timeline: Timeline) -> list[Track]:
    """Visible video tracks, topmost first (storage order)."""
    return [t for t in timeline.video_tracks if t.visible]


def bottom_to_top(timeline: Timeline) -> list[Track]:
    """Visible video tracks in compositing order."""
    return list(reversed(top_to_bottom(timeline)))


def audible_tracks(timeline: Timeline) -> list[Track]:
    return [t for t in timeline.audio_tracks if not t.muted]


# ============================================================================
# Inputs
# ============================================================================


def resolve_media_path(
    media: MediaItem,
    *,
    use_proxies: bool = False,
    path_exists: PathExists = os.path.exists,
) -> str:
    """Proxy path when requested and present on disk, else the source path."""
    if use_proxies and media.proxy_path and path_exists(media.proxy_path):
        return media.proxy_path
    return media.path


@dataclass
class InputSource:
    """One ``-i`` argument of the engine invocation."""

    index: int
    media_id: str
    path: str


class InputTable:
    """Engine inputs deduplicated by media id."""

    def __init__(self, *, use_proxies: bool = False, path_exists: PathExists = os.path.exists):
        self.use_proxies = use_proxies
        self.path_exists = path_exists
        self._sources: list[InputSource] = []
        self._by_media: dict[str, InputSource] = {}

    def index_for(self, media: MediaItem) -> int:
        source = self._by_media.get(media.id)
        if source is None:
            path = resolve_media_path(media, use_proxies=self.use_proxies, path_exists=self.path_exists)
            source = InputSource(index=len(self._sources), media_id=media.id, path=path)
            self._sources.append(source)
            self._by_media[media.id] = source
        return source.index

    @property
    def sources(self) -> list[InputSource]:
        return list(self._sources)

    def __len__(self) -> int:
        return len(self._sources)


# ============================================================================
# Windowing
# ============================================================================


@dataclass
class ClipSlice:
    """The part of a clip visible inside a render window.

    Local times are relative to the window start. Source times address the
    media file, and always span the same length as the visible part.
    """

    clip: Any
    media: MediaItem
    local_start: float
    local_end: float
    source_in: float
    source_out: float
    input_index: int = -1
    volume: float = 1.0

    @property
    def duration(self) -> float:
        return self.local_end - self.local_start


def slice_clip(clip: Any, media: MediaItem, window: RenderWindow) -> Optional[ClipSlice]:
    """Intersect a clip with the window. None when they do not overlap."""
    if not window.clip_intersects(clip):
        return None
    local_start = max(0.0, clip.timeline_start - window.start)
    local_end = min(window.duration, clip.timeline_end - window.start)
    if local_end <= local_start:
        return None
    source_in = clip.media_in + max(0.0, window.start - clip.timeline_start)
    return ClipSlice(
        clip=clip,
        media=media,
        local_start=local_start,
        local_end=local_end,
        source_in=source_in,
        source_out=source_in + (local_end - local_start),
    )


def collect_slices(
    tracks: Iterable[Track],
    media: Mapping[str, MediaItem],
    window: RenderWindow,
    inputs: InputTable,
    diagnostics: list[str],
    *,
    skip_images: bool = False,
) -> list[ClipSlice]:
    """Slice every enabled clip of ``tracks`` that intersects ``window``.

    Clips outside the window are dropped before media lookup, so their media
    never becomes an input.
    """
    slices = []
    for track in tracks:
        for clip in track.clips:
            if not clip.enabled or not window.clip_intersects(clip):
                continue
            item = media.get(clip.media_id) if clip.media_id else None
            if item is None:
                diagnostics.append(f"Media not found for clip: {clip.label}")
                continue
            if skip_images and item.type == "image":
                continue
            clip_slice = slice_clip(clip, item, window)
            if clip_slice is None:
                continue
            clip_slice.input_index = inputs.index_for(item)
            clip_slice.volume = track.volume
            slices.append(clip_slice)
    return slices


# ============================================================================
# Normalization
# ============================================================================


def background_source(settings: RenderSettings, duration: float, color: Optional[str] = None) -> Filter:
    return Filter.of(
        "color",
        c=color or settings.background_color,
        s=f"{settings.width}x{settings.height}",
        r=settings.frame_rate,
        d=duration,
    )


def source_trim_filters(clip_slice: ClipSlice) -> list[Filter]:
    """Select the source range; images loop a single frame instead."""
    if clip_slice.media.type == "image":
        return [
            Filter.of("loop", loop=-1, size=1),
            Filter.of("trim", 0, clip_slice.duration),
        ]
    return [Filter.of("trim", start=clip_slice.source_in, end=clip_slice.source_out)]


def geometry_filters(settings: RenderSettings) -> list[Filter]:
    """Scale to fit inside the output, then letterbox to exact size."""
    w, h = settings.width, settings.height
    return [
        Filter.of("scale", w, h, force_original_aspect_ratio="decrease"),
        Filter.of("pad", w, h, "(ow-iw)/2", "(oh-ih)/2", settings.background_color),
    ]


def normalize_video(clip_slice: ClipSlice, settings: RenderSettings, offset: float = 0.0) -> list[Filter]:
    """Per-clip video chain. ``offset`` shifts the first frame to that output time."""
    pts = "PTS-STARTPTS" if offset <= 0 else f"PTS-STARTPTS+{format_number(offset)}/TB"
    return [
        *source_trim_filters(clip_slice),
        Filter.of("setpts", pts),
        *geometry_filters(settings),
        Filter.of("fps", settings.frame_rate),
        Filter.of("format", "yuva420p"),
    ]


def normalize_audio(clip_slice: ClipSlice, settings: RenderSettings) -> list[Filter]:
    filters = [
        Filter.of("atrim", start=clip_slice.source_in, end=clip_slice.source_out),
        Filter.of("asetpts", "PTS-STARTPTS"),
        Filter.of("aresample", settings.sample_rate),
        Filter.of("aformat", channel_layouts="stereo"),
    ]
    if clip_slice.volume != 1.0:
        filters.append(Filter.of("volume", clip_slice.volume))
    return filters


def silence_source(settings: RenderSettings, duration: float) -> list[Filter]:
    return [
        Filter.of("anullsrc", r=settings.sample_rate, cl="stereo"),
        Filter.of("atrim", 0, duration),
    ]


# ============================================================================
# Compiled output
# ============================================================================


@dataclass
class CompiledGraph:
    """Everything the engine invocation needs, plus non-fatal diagnostics."""

    inputs: list[InputSource]
    graph: FilterGraph
    duration: float
    video_output: Optional[str] = VIDEO_OUTPUT_LABEL
    audio_output: Optional[str] = AUDIO_OUTPUT_LABEL
    diagnostics: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.diagnostics

    @property
    def filter_complex(self) -> str:
        return self.graph.serialize()

    @property
    def maps(self) -> list[str]:
        return [f"[{label}]" for label in (self.video_output, self.audio_output) if label]

    def raise_for_diagnostics(self) -> None:
        if self.diagnostics:
            raise CompileError(self.diagnostics)

    def to_dict(self) -> dict[str, Any]:
        return {
            "inputs": [s.path for s in self.inputs],
            "filter_complex": self.filter_complex,
            "maps": self.maps,
            "duration": self.duration,
            "diagnostics": list(self.diagnostics),
        }
