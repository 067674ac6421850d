"""Tests for the concat compositor."""

import pytest

from factories import (
    SMALL_SETTINGS,
    aclip,
    audio_media,
    audio_track,
    media_map,
    timeline,
    vclip,
    video_media,
    video_track,
)
from render_core.exceptions import NothingToRenderError
from render_core.render.concat_compositor import MIN_GAP_S, compile_concat, has_track_overlaps
from render_core.render.layer_compositor import compile_overlay
from render_core.schemas.timeline import RenderWindow


class TestTrackStreams:
    """Test per-track sequences with transparent fillers."""

    def test_gap_fillers_between_clips(self):
        tl = timeline(video_track("v1", vclip("c1", "a", 1, 2), vclip("c2", "b", 4, 1)))
        media = media_map(video_media("a"), video_media("b"))

        compiled = compile_concat(tl, media, SMALL_SETTINGS, path_exists=lambda p: False)

        assert compiled.duration == 5
        fillers = [f for f in compiled.graph.filters_named("color") if f.option("c") == "black@0.0"]
        assert [f.option("d") for f in fillers] == [1, 1]
        (concat,) = [f for f in compiled.graph.filters_named("concat") if f.option("v") == 1]
        # gap, c1, gap, c2
        assert concat.option("n") == 4

    def test_single_full_length_clip_needs_no_concat(self):
        tl = timeline(video_track("v1", vclip("c1", "a", 0, 3)))
        compiled = compile_concat(tl, media_map(video_media("a")), SMALL_SETTINGS, path_exists=lambda p: False)
        assert [f for f in compiled.graph.filters_named("concat") if f.option("v") == 1] == []
        overlay = compiled.graph.stage_producing("comp0")
        assert overlay.inputs == ("base", "seg0")

    def test_overlays_are_not_gated(self):
        tl = timeline(
            video_track("v1", vclip("c1", "a", 0, 2, track_id="v1")),
            video_track("v2", vclip("c2", "b", 1, 2, track_id="v2")),
        )
        media = media_map(video_media("a"), video_media("b"))

        compiled = compile_concat(tl, media, SMALL_SETTINGS, path_exists=lambda p: False)

        overlays = compiled.graph.filters_named("overlay")
        assert len(overlays) == 2
        assert all(o.option("enable") is None for o in overlays)
        # v2 is the lower layer and is composited first
        assert compiled.inputs[0].media_id == "b"

    def test_segments_start_at_zero(self):
        tl = timeline(video_track("v1", vclip("c1", "a", 2, 2)))
        compiled = compile_concat(tl, media_map(video_media("a")), SMALL_SETTINGS, path_exists=lambda p: False)
        (setpts,) = compiled.graph.filters_named("setpts")
        assert setpts.positional == ("PTS-STARTPTS",)

    def test_absorbed_gaps_do_not_accumulate(self):
        """Test that sub-millisecond gaps add up into a filler instead of shifting later clips."""
        tl = timeline(
            video_track(
                "v1",
                vclip("c1", "a", 0, 1),
                vclip("c2", "a", 1.0006, 1),
                vclip("c3", "a", 2.0012, 1),
                vclip("c4", "a", 3.0018, 1),
            )
        )

        compiled = compile_concat(tl, media_map(video_media("a")), SMALL_SETTINGS, path_exists=lambda p: False)

        fillers = [f.option("d") for f in compiled.graph.filters_named("color") if f.option("c") == "black@0.0"]
        assert fillers == [pytest.approx(0.0012)]
        assert abs(sum(fillers) + 4 - compiled.duration) < MIN_GAP_S

    def test_uses_proxies_by_default(self):
        tl = timeline(video_track("v1", vclip("c1", "a", 0, 2)))
        media = media_map(video_media("a", proxy_path="/proxies/a_proxy.mp4"))
        compiled = compile_concat(tl, media, SMALL_SETTINGS, path_exists=lambda p: True)
        assert compiled.inputs[0].path == "/proxies/a_proxy.mp4"

    def test_empty_timeline_raises(self):
        with pytest.raises(NothingToRenderError):
            compile_concat(timeline(), {}, SMALL_SETTINGS)


class TestAudioSequence:
    """Test the merged chronological audio sequence."""

    def test_gaps_filled_with_silence(self):
        tl = timeline(
            video_track("v1", vclip("c1", "a", 0, 6)),
            audio_track("a1", aclip("n", "voice", 2, 2)),
        )
        media = media_map(video_media("a"), audio_media("voice"))

        compiled = compile_concat(tl, media, SMALL_SETTINGS, path_exists=lambda p: False)

        stage = compiled.graph.stage_producing("aout")
        assert stage.filters[0].name == "concat"
        assert stage.filters[0].option("n") == 3
        silences = [f.positional for f in compiled.graph.filters_named("atrim") if f.positional]
        assert silences == [(0, 2), (0, 2)]

    def test_earlier_clip_wins_overlap(self):
        tl = timeline(
            audio_track("a1", aclip("first", "voice", 0, 3)),
            audio_track("a2", aclip("second", "music", 2, 2, media_in=10, track_id="a2")),
        )
        media = media_map(audio_media("voice"), audio_media("music"))

        compiled = compile_concat(tl, media, SMALL_SETTINGS, path_exists=lambda p: False)

        trims = [f for f in compiled.graph.filters_named("atrim") if not f.positional]
        assert [(t.option("start"), t.option("end")) for t in trims] == [(0, 3), (11, 12)]

    def test_fully_covered_clip_dropped(self):
        tl = timeline(
            audio_track("a1", aclip("long", "voice", 0, 5)),
            audio_track("a2", aclip("short", "music", 1, 2, track_id="a2")),
        )
        media = media_map(audio_media("voice"), audio_media("music"))

        compiled = compile_concat(tl, media, SMALL_SETTINGS, path_exists=lambda p: False)

        stage = compiled.graph.stage_producing("aout")
        assert stage.filters[0].name == "anull"


class TestOverlapDetection:
    """Test has_track_overlaps."""

    def test_adjacent_clips_do_not_overlap(self):
        tl = timeline(video_track("v1", vclip("c1", "a", 0, 2), vclip("c2", "a", 2, 2)))
        assert not has_track_overlaps(tl)

    def test_overlapping_clips_detected(self):
        tl = timeline(video_track("v1", vclip("c1", "a", 0, 2), vclip("c2", "a", 1.5, 2)))
        assert has_track_overlaps(tl)

    def test_disabled_and_hidden_ignored(self):
        tl = timeline(
            video_track("v1", vclip("c1", "a", 0, 2), vclip("c2", "a", 1, 2, enabled=False)),
            video_track("v2", vclip("c3", "a", 0, 2), vclip("c4", "a", 1, 2), visible=False),
        )
        assert not has_track_overlaps(tl)

    def test_overlap_across_tracks_is_fine(self):
        tl = timeline(
            video_track("v1", vclip("c1", "a", 0, 2, track_id="v1")),
            video_track("v2", vclip("c2", "a", 1, 2, track_id="v2")),
        )
        assert not has_track_overlaps(tl)


class TestCompositorAgreement:
    """Both compositors must pick the same source ranges and geometry."""

    def test_same_trims_and_geometry(self):
        tl = timeline(
            video_track("v1", vclip("c1", "a", 0.5, 2, media_in=3), vclip("c2", "b", 3, 1.5, media_in=8)),
        )
        media = media_map(video_media("a"), video_media("b"))
        window = RenderWindow(start=0, end=tl.duration)

        overlay = compile_overlay(tl, media, SMALL_SETTINGS, window)
        concat = compile_concat(tl, media, SMALL_SETTINGS, window, use_proxies=False)

        def signature(compiled, name):
            return [(f.positional, f.options) for f in compiled.graph.filters_named(name)]

        for name in ("trim", "scale", "pad", "fps"):
            assert signature(overlay, name) == signature(concat, name)
        assert [s.path for s in overlay.inputs] == [s.path for s in concat.inputs]
