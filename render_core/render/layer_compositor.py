"""Overlay compositor.

Builds a filter graph for an arbitrary render window:

1. An opaque background canvas spanning the window
2. Every visible clip slice, normalized to the output geometry
3. Overlays stacked bottom to top, each gated to its time range
4. Audio branches delayed into place and mixed

Used for preview chunks and for the final export.
"""

import logging
import os
from typing import Mapping

from render_core.exceptions import NothingToRenderError
from render_core.render.audio_mixer import build_audio_mix
from render_core.render.filter_graph import Filter, FilterGraph, Quoted, format_number
from render_core.render.timeline_slice import (
    BASE_LABEL,
    VIDEO_OUTPUT_LABEL,
    CompiledGraph,
    InputTable,
    PathExists,
    audible_tracks,
    background_source,
    bottom_to_top,
    collect_slices,
    normalize_video,
)
from render_core.schemas.timeline import MediaItem, RenderSettings, RenderWindow, Timeline

logger = logging.getLogger(__name__)


def build_enable_expr(start_s: float, end_s: float) -> Quoted:
    """Gate expression keeping an overlay active on ``[start_s, end_s]``."""
    return Quoted(f"between(t,{format_number(start_s)},{format_number(end_s)})")


def compile_overlay(
    timeline: Timeline,
    media: Mapping[str, MediaItem],
    settings: RenderSettings,
    window: RenderWindow,
    *,
    use_proxies: bool = False,
    silent_audio: bool = True,
    path_exists: PathExists = os.path.exists,
) -> CompiledGraph:
    """Compile ``window`` of ``timeline`` with time-gated overlays.

    Args:
        timeline: Timeline to render
        media: Media items by id
        settings: Output geometry, frame rate and sample rate
        window: Time range to render
        use_proxies: Read proxy files where they exist on disk
        silent_audio: Produce a silent audio track when nothing is audible
        path_exists: File existence check used for proxy resolution

    Returns:
        CompiledGraph; clips with unknown media are reported in diagnostics

    Raises:
        NothingToRenderError: If the window has no duration and no clips
    """
    inputs = InputTable(use_proxies=use_proxies, path_exists=path_exists)
    diagnostics: list[str] = []
    graph = FilterGraph()

    video_slices = collect_slices(bottom_to_top(timeline), media, window, inputs, diagnostics)
    audio_slices = collect_slices(
        audible_tracks(timeline), media, window, inputs, diagnostics, skip_images=True
    )

    if window.duration <= 0 and not video_slices and not audio_slices:
        raise NothingToRenderError()

    duration = window.duration
    canvas = graph.add([], [background_source(settings, duration)], BASE_LABEL)

    for clip_slice in video_slices:
        clip_label = graph.add(
            [f"{clip_slice.input_index}:v"],
            normalize_video(clip_slice, settings, offset=clip_slice.local_start),
            graph.new_label("clip"),
        )
        overlay = Filter.of(
            "overlay",
            x=0,
            y=0,
            enable=build_enable_expr(clip_slice.local_start, clip_slice.local_end),
        )
        canvas = graph.add([canvas, clip_label], [overlay], graph.new_label("comp"))

    graph.add([canvas], [Filter.of("null")], VIDEO_OUTPUT_LABEL)

    audio_output = build_audio_mix(graph, audio_slices, settings, duration, silent_audio=silent_audio)

    logger.debug(
        f"[COMPILE] overlay window={window.start}-{window.end} "
        f"video={len(video_slices)} audio={len(audio_slices)} inputs={len(inputs)}"
    )
    for message in diagnostics:
        logger.warning(f"[COMPILE] {message}")

    return CompiledGraph(
        inputs=inputs.sources,
        graph=graph,
        duration=duration,
        video_output=VIDEO_OUTPUT_LABEL,
        audio_output=audio_output,
        diagnostics=diagnostics,
    )
