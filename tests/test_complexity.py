"""Tests for segment complexity analysis."""

from factories import timeline, vclip, video_track
from render_core.preview.complexity import (
    ComplexityReason,
    analyze_segment_complexity,
    analyze_timeline_complexity,
    is_time_point_complex,
    single_clip_at_time,
)


class TestSegmentComplexity:
    """Test the reasons a segment is complex."""

    def test_single_plain_clip(self):
        tl = timeline(video_track("v1", vclip("c1", "a", 0, 4)))
        result = analyze_segment_complexity(tl, 0, 2)
        assert not result.is_complex
        assert result.reasons == []

    def test_empty_segment(self):
        assert not analyze_segment_complexity(timeline(), 0, 2).is_complex

    def test_overlapping_layers(self):
        tl = timeline(
            video_track("v1", vclip("c1", "a", 0, 4, track_id="v1")),
            video_track("v2", vclip("c2", "b", 1, 2, track_id="v2")),
        )
        result = analyze_segment_complexity(tl, 0, 2)
        assert result.reasons == [ComplexityReason.MULTIPLE_CLIPS]

    def test_effects(self):
        tl = timeline(video_track("v1", vclip("c1", "a", 0, 4, effects=["blur"])))
        assert analyze_segment_complexity(tl, 0, 2).reasons == [ComplexityReason.HAS_EFFECTS]

    def test_speed_change(self):
        tl = timeline(video_track("v1", vclip("c1", "a", 0, 4, media_out=8)))
        result = analyze_segment_complexity(tl, 0, 2)
        assert result.reasons == [ComplexityReason.SPEED_CHANGE]
        assert result.to_dict()["reasons"] == ["speed_change"]

    def test_hidden_track_ignored(self):
        tl = timeline(
            video_track("v1", vclip("c1", "a", 0, 4, track_id="v1")),
            video_track("v2", vclip("c2", "b", 0, 4, track_id="v2"), visible=False),
        )
        assert not analyze_segment_complexity(tl, 0, 2).is_complex


class TestTimelineComplexity:
    def test_one_entry_per_chunk(self):
        tl = timeline(
            video_track("v1", vclip("c1", "a", 0, 5, track_id="v1")),
            video_track("v2", vclip("c2", "b", 2.5, 1, track_id="v2")),
        )
        results = analyze_timeline_complexity(tl, 5.0, 2.0)
        assert [(r.start, r.end) for r in results] == [(0.0, 2.0), (2.0, 4.0), (4.0, 5.0)]
        assert [r.is_complex for r in results] == [False, True, False]


class TestTimePoints:
    def test_is_time_point_complex(self):
        tl = timeline(
            video_track("v1", vclip("c1", "a", 0, 4, track_id="v1")),
            video_track("v2", vclip("c2", "b", 2, 2, track_id="v2")),
        )
        assert not is_time_point_complex(tl, 1.0)
        assert is_time_point_complex(tl, 3.0)

    def test_single_clip_at_time_prefers_top_layer(self):
        top = vclip("top", "a", 0, 4, track_id="v1")
        tl = timeline(
            video_track("v1", top),
            video_track("v2", vclip("bottom", "b", 0, 4, track_id="v2")),
        )
        assert single_clip_at_time(tl, 1.0).id == "top"
        assert single_clip_at_time(tl, 5.0) is None
