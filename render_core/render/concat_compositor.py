"""Concat compositor for the fast whole-timeline preview.

Each video track becomes one temporally complete stream: transparent gap
fillers alternate with normalized clips and are joined by ``concat``. The
per-track streams are then stacked on the background, one overlay per track,
without time gating. Requires clips on a track not to overlap; callers check
``has_track_overlaps`` and fall back to the overlay compositor.
"""

import logging
import os
from typing import Mapping

from render_core.exceptions import NothingToRenderError
from render_core.render.audio_mixer import build_audio_sequence
from render_core.render.filter_graph import Filter, FilterGraph
from render_core.render.timeline_slice import (
    BASE_LABEL,
    VIDEO_OUTPUT_LABEL,
    ClipSlice,
    CompiledGraph,
    InputTable,
    PathExists,
    audible_tracks,
    background_source,
    bottom_to_top,
    collect_slices,
    normalize_video,
)
from render_core.schemas.timeline import MediaItem, RenderSettings, RenderWindow, Timeline, Track

logger = logging.getLogger(__name__)

# Gaps shorter than this are absorbed instead of emitting a filler segment.
MIN_GAP_S = 0.001


def has_track_overlaps(timeline: Timeline) -> bool:
    """True when two enabled clips on one visible video track overlap in time."""
    for track in bottom_to_top(timeline):
        clips = sorted((c for c in track.clips if c.enabled), key=lambda c: c.timeline_start)
        for prev, nxt in zip(clips, clips[1:]):
            if nxt.timeline_start < prev.timeline_end - MIN_GAP_S:
                return True
    return False


def _transparent_filler(graph: FilterGraph, settings: RenderSettings, duration: float) -> str:
    return graph.add(
        [],
        [
            background_source(settings, duration, color="black@0.0"),
            Filter.of("format", "yuva420p"),
        ],
        graph.new_label("gap"),
    )


def _build_track_stream(
    graph: FilterGraph,
    track_slices: list[ClipSlice],
    settings: RenderSettings,
    duration: float,
) -> str:
    segments: list[str] = []
    # Length of the stream emitted so far; absorbed gaps carry over into the next filler.
    emitted = 0.0
    for clip_slice in sorted(track_slices, key=lambda s: s.local_start):
        gap = clip_slice.local_start - emitted
        if gap > MIN_GAP_S:
            segments.append(_transparent_filler(graph, settings, gap))
            emitted += gap
        segments.append(
            graph.add(
                [f"{clip_slice.input_index}:v"],
                normalize_video(clip_slice, settings),
                graph.new_label("seg"),
            )
        )
        emitted += clip_slice.local_end - clip_slice.local_start

    if duration - emitted > MIN_GAP_S:
        segments.append(_transparent_filler(graph, settings, duration - emitted))

    if len(segments) == 1:
        return segments[0]
    return graph.add(segments, [Filter.of("concat", n=len(segments), v=1, a=0)], graph.new_label("track"))


def compile_concat(
    timeline: Timeline,
    media: Mapping[str, MediaItem],
    settings: RenderSettings,
    window: RenderWindow | None = None,
    *,
    use_proxies: bool = True,
    path_exists: PathExists = os.path.exists,
) -> CompiledGraph:
    """Compile the timeline as concatenated per-track sequences.

    Args:
        timeline: Timeline to render
        media: Media items by id
        settings: Output geometry, frame rate and sample rate
        window: Range to render, defaults to the whole timeline
        use_proxies: Read proxy files where they exist on disk
        path_exists: File existence check used for proxy resolution

    Returns:
        CompiledGraph with ``vout`` and ``aout``

    Raises:
        NothingToRenderError: If the window has no duration and no clips
    """
    if window is None:
        window = RenderWindow(start=0.0, end=timeline.duration)

    inputs = InputTable(use_proxies=use_proxies, path_exists=path_exists)
    diagnostics: list[str] = []
    graph = FilterGraph()

    per_track: list[tuple[Track, list[ClipSlice]]] = []
    for track in bottom_to_top(timeline):
        track_slices = collect_slices([track], media, window, inputs, diagnostics)
        if track_slices:
            per_track.append((track, track_slices))
    audio_slices = collect_slices(
        audible_tracks(timeline), media, window, inputs, diagnostics, skip_images=True
    )

    if window.duration <= 0 and not per_track and not audio_slices:
        raise NothingToRenderError()

    duration = window.duration
    canvas = graph.add([], [background_source(settings, duration)], BASE_LABEL)
    for track, track_slices in per_track:
        stream = _build_track_stream(graph, track_slices, settings, duration)
        canvas = graph.add([canvas, stream], [Filter.of("overlay", x=0, y=0)], graph.new_label("comp"))
    graph.add([canvas], [Filter.of("null")], VIDEO_OUTPUT_LABEL)

    audio_output = build_audio_sequence(graph, audio_slices, settings, duration)

    logger.debug(
        f"[COMPILE] concat tracks={len(per_track)} audio={len(audio_slices)} "
        f"inputs={len(inputs)} duration={duration}"
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
