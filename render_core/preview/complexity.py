"""Detect timeline segments that cannot be played back by a plain decoder.

A segment is complex when video clips overlap, a clip carries an enabled
effect, or a clip plays at a speed other than 1x. The result is informational;
every chunk is still rendered the same way.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from render_core.preview.chunk_cache import partition
from render_core.render.timeline_slice import top_to_bottom
from render_core.schemas.timeline import Timeline

OVERLAP_SAMPLES = 10
SPEED_TOLERANCE_S = 0.01


class ComplexityReason(Enum):
    MULTIPLE_CLIPS = "multiple_clips"
    HAS_EFFECTS = "has_effects"
    SPEED_CHANGE = "speed_change"


@dataclass
class SegmentComplexity:
    start: float
    end: float
    is_complex: bool = False
    reasons: list[ComplexityReason] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "is_complex": self.is_complex,
            "reasons": [r.value for r in self.reasons],
        }


def _video_clips_in_range(timeline: Timeline, start: float, end: float) -> list[Any]:
    return [
        clip
        for track in top_to_bottom(timeline)
        for clip in track.clips
        if clip.enabled and clip.timeline_start < end and clip.timeline_end > start
    ]


def _active_at(clips: list[Any], t: float) -> list[Any]:
    return [c for c in clips if c.timeline_start <= t < c.timeline_end]


def has_speed_change(clip: Any) -> bool:
    return abs((clip.media_out - clip.media_in) - clip.duration) > SPEED_TOLERANCE_S


def analyze_segment_complexity(timeline: Timeline, start: float, end: float) -> SegmentComplexity:
    result = SegmentComplexity(start=start, end=end)
    clips = _video_clips_in_range(timeline, start, end)
    if not clips:
        return result

    span = end - start
    for i in range(OVERLAP_SAMPLES + 1):
        t = start + span * i / OVERLAP_SAMPLES
        if len(_active_at(clips, t)) > 1:
            result.reasons.append(ComplexityReason.MULTIPLE_CLIPS)
            break

    if any(effect.enabled for clip in clips for effect in clip.effects):
        result.reasons.append(ComplexityReason.HAS_EFFECTS)

    if any(has_speed_change(clip) for clip in clips):
        result.reasons.append(ComplexityReason.SPEED_CHANGE)

    result.is_complex = bool(result.reasons)
    return result


def analyze_timeline_complexity(
    timeline: Timeline,
    total_duration: float,
    chunk_duration: float,
) -> list[SegmentComplexity]:
    """One entry per chunk window of ``[0, total_duration)``."""
    return [
        analyze_segment_complexity(timeline, start, end)
        for start, end in partition(total_duration, chunk_duration)
    ]


def is_time_point_complex(timeline: Timeline, t: float) -> bool:
    active = _active_at(_video_clips_in_range(timeline, t, t + 1e-6), t)
    if len(active) > 1:
        return True
    return any(
        has_speed_change(clip) or any(e.enabled for e in clip.effects) for clip in active
    )


def single_clip_at_time(timeline: Timeline, t: float) -> Optional[Any]:
    """The topmost enabled video clip at ``t``, if any."""
    for track in top_to_bottom(timeline):
        for clip in track.clips:
            if clip.enabled and clip.timeline_start <= t < clip.timeline_end:
                return clip
    return None
