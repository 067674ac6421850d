"""Tests for the typed filter graph model."""

import pytest

from render_core.render.filter_graph import Filter, FilterGraph, Quoted, format_number


class TestFormatNumber:
    """Test deterministic number rendering."""

    def test_integral_values_have_no_decimals(self):
        assert format_number(2.0) == "2"
        assert format_number(30) == "30"

    def test_fractions_are_trimmed(self):
        assert format_number(2.5) == "2.5"
        assert format_number(1 / 3) == "0.333333"

    def test_negative_zero(self):
        assert format_number(-0.0) == "0"


class TestFilter:
    """Test single filter serialization."""

    def test_name_only(self):
        assert Filter.of("null").serialize() == "null"

    def test_positional_and_options(self):
        f = Filter.of("scale", 1920, 1080, force_original_aspect_ratio="decrease")
        assert f.serialize() == "scale=1920:1080:force_original_aspect_ratio=decrease"

    def test_quoted_expression(self):
        f = Filter.of("overlay", x=0, y=0, enable=Quoted("between(t,0,2)"))
        assert f.serialize() == "overlay=x=0:y=0:enable='between(t,0,2)'"

    def test_option_lookup(self):
        f = Filter.of("trim", start=1.5, end=3)
        assert f.option("start") == 1.5
        assert f.option("missing", "x") == "x"


class TestFilterGraph:
    """Test stage composition and serialization."""

    def test_serialize_joins_stages(self):
        graph = FilterGraph()
        graph.add([], [Filter.of("color", c="black", s="640x360")], "base")
        graph.add(["base"], [Filter.of("null")], "vout")
        assert graph.serialize() == "color=c=black:s=640x360[base];[base]null[vout]"

    def test_filters_chain_with_commas(self):
        graph = FilterGraph()
        graph.add(["0:v"], [Filter.of("trim", start=0, end=2), Filter.of("setpts", "PTS-STARTPTS")], "clip0")
        assert graph.serialize() == "[0:v]trim=start=0:end=2,setpts=PTS-STARTPTS[clip0]"

    def test_new_label_is_unique_per_prefix(self):
        graph = FilterGraph()
        assert graph.new_label("clip") == "clip0"
        assert graph.new_label("clip") == "clip1"
        assert graph.new_label("a") == "a0"

    def test_duplicate_output_rejected(self):
        graph = FilterGraph()
        graph.add([], [Filter.of("anullsrc")], "aout")
        with pytest.raises(ValueError):
            graph.add([], [Filter.of("anullsrc")], "aout")

    def test_empty_stage_rejected(self):
        with pytest.raises(ValueError):
            FilterGraph().add(["0:v"], [], "x")

    def test_inspection_helpers(self):
        graph = FilterGraph()
        graph.add(["0:v"], [Filter.of("trim", start=1, end=2)], "c0")
        graph.add(["1:v"], [Filter.of("trim", start=3, end=4)], "c1")
        assert graph.stage_producing("c1").inputs == ("1:v",)
        assert [f.option("start") for f in graph.filters_named("trim")] == [1, 3]
        assert len(graph) == 2
