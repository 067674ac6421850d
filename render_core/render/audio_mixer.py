"""Audio branches for the compositors.

The overlay compositor places every audible slice at its window offset with
``adelay`` and mixes the branches. The concat compositor lays all audio clips
out as one chronological sequence.
"""

import logging
from typing import Optional

from render_core.render.filter_graph import Filter, FilterGraph
from render_core.render.timeline_slice import (
    AUDIO_OUTPUT_LABEL,
    ClipSlice,
    normalize_audio,
    silence_source,
)
from render_core.schemas.timeline import RenderSettings

logger = logging.getLogger(__name__)


def build_audio_mix(
    graph: FilterGraph,
    slices: list[ClipSlice],
    settings: RenderSettings,
    duration: float,
    *,
    silent_audio: bool = True,
) -> Optional[str]:
    """Add delayed, padded branches for ``slices`` and mix them into ``aout``.

    Args:
        graph: Graph to extend
        slices: Audible clip slices, already windowed
        settings: Output sample rate
        duration: Window length in seconds
        silent_audio: Emit a silent track when there is nothing audible

    Returns:
        The audio output label, or None when there is no audio and
        ``silent_audio`` is False
    """
    branches = []
    for clip_slice in slices:
        delay_ms = int(round(clip_slice.local_start * 1000))
        chain = normalize_audio(clip_slice, settings)
        chain.append(Filter.of("adelay", f"{delay_ms}|{delay_ms}"))
        chain.append(Filter.of("apad", whole_dur=duration))
        branches.append(graph.add([f"{clip_slice.input_index}:a"], chain, graph.new_label("a")))

    if len(branches) >= 2:
        return graph.add(
            branches,
            [Filter.of("amix", inputs=len(branches), duration="first", dropout_transition=0)],
            AUDIO_OUTPUT_LABEL,
        )
    if len(branches) == 1:
        return graph.add(branches, [Filter.of("anull")], AUDIO_OUTPUT_LABEL)
    if not silent_audio:
        return None
    return graph.add([], silence_source(settings, duration), AUDIO_OUTPUT_LABEL)


def build_audio_sequence(
    graph: FilterGraph,
    slices: list[ClipSlice],
    settings: RenderSettings,
    duration: float,
) -> str:
    """Concatenate audio slices chronologically with silent gap fillers.

    Slices from every track share one sequence. When two slices overlap, the
    one starting first keeps the overlap and the later one loses its head.
    """
    ordered = sorted(slices, key=lambda s: (s.local_start, s.local_end))
    segments: list[str] = []
    cursor = 0.0

    for clip_slice in ordered:
        if clip_slice.local_end <= cursor:
            logger.debug(f"[AUDIO] Dropping fully covered audio clip {clip_slice.clip.id}")
            continue
        if clip_slice.local_start < cursor:
            head = cursor - clip_slice.local_start
            clip_slice = ClipSlice(
                clip=clip_slice.clip,
                media=clip_slice.media,
                local_start=cursor,
                local_end=clip_slice.local_end,
                source_in=clip_slice.source_in + head,
                source_out=clip_slice.source_out,
                input_index=clip_slice.input_index,
                volume=clip_slice.volume,
            )
        gap = clip_slice.local_start - cursor
        if gap > 0:
            segments.append(graph.add([], silence_source(settings, gap), graph.new_label("asil")))
        segments.append(
            graph.add(
                [f"{clip_slice.input_index}:a"],
                normalize_audio(clip_slice, settings),
                graph.new_label("aseg"),
            )
        )
        cursor = clip_slice.local_end

    if duration - cursor > 0:
        segments.append(graph.add([], silence_source(settings, duration - cursor), graph.new_label("asil")))

    if not segments:
        return graph.add([], silence_source(settings, duration), AUDIO_OUTPUT_LABEL)
    if len(segments) == 1:
        return graph.add(segments, [Filter.of("anull")], AUDIO_OUTPUT_LABEL)
    return graph.add(segments, [Filter.of("concat", n=len(segments), v=0, a=1)], AUDIO_OUTPUT_LABEL)
