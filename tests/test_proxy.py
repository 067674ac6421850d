"""Tests for proxy generation helpers."""

import pytest

from conftest import FakeRunner
from factories import aclip, audio_media, audio_track, image_media, timeline, vclip, video_media, video_track
from render_core.preview.proxy import ProxyGenerator, media_ids_in_use, sanitize_proxy_paths


class TestMediaIdsInUse:
    def test_first_use_order_without_duplicates(self):
        tl = timeline(
            video_track("v1", vclip("c1", "b", 0, 1), vclip("c2", "a", 1, 1), vclip("c3", "b", 2, 1)),
            audio_track("a1", aclip("n1", "voice", 0, 3)),
        )
        assert media_ids_in_use(tl) == ["b", "a", "voice"]

    def test_disabled_clips_ignored(self):
        tl = timeline(video_track("v1", vclip("c1", "a", 0, 1, enabled=False)))
        assert media_ids_in_use(tl) == []


def test_sanitize_proxy_paths():
    media = {
        "a": video_media("a", proxy_path="/proxies/a_proxy.mp4"),
        "b": video_media("b", proxy_path="/proxies/b_proxy.mp4"),
    }
    cleaned = sanitize_proxy_paths(media, path_exists=lambda p: p.startswith("/proxies/a"))
    assert cleaned["a"].proxy_path == "/proxies/a_proxy.mp4"
    assert cleaned["b"].proxy_path is None
    assert media["b"].proxy_path == "/proxies/b_proxy.mp4"


class TestProxyGenerator:
    """Test proxy file creation through the runner."""

    def test_only_videos_need_proxies(self, temp_output_dir):
        generator = ProxyGenerator(temp_output_dir, FakeRunner(), path_exists=lambda p: False)
        assert generator.needs_proxy(video_media("a"))
        assert not generator.needs_proxy(audio_media("voice"))
        assert not generator.needs_proxy(image_media("logo"))

    def test_video_with_existing_proxy(self, temp_output_dir):
        generator = ProxyGenerator(temp_output_dir, FakeRunner(), path_exists=lambda p: True)
        assert not generator.needs_proxy(video_media("a", proxy_path="/proxies/a_proxy.mp4"))

    @pytest.mark.asyncio
    async def test_generate(self, temp_output_dir, fake_runner):
        generator = ProxyGenerator(temp_output_dir, fake_runner, scale=0.25)

        result = await generator.generate(video_media("a", duration=12.0))

        assert result.success and not result.skipped
        assert result.proxy_path == str(temp_output_dir / "a_proxy.mp4")
        (call,) = fake_runner.calls
        assert call["key"] == "proxy-a"
        assert call["duration"] == 12.0
        assert "scale=trunc(iw*0.25/2)*2:trunc(ih*0.25/2)*2" in call["cmd"]

    @pytest.mark.asyncio
    async def test_existing_file_skipped(self, temp_output_dir, fake_runner):
        (temp_output_dir / "a_proxy.mp4").write_bytes(b"proxy")
        generator = ProxyGenerator(temp_output_dir, fake_runner)

        result = await generator.generate(video_media("a"))

        assert result.skipped
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_failure_removes_partial_file(self, temp_output_dir, exit_failure):
        partial = temp_output_dir / "a_proxy.mp4"

        def fail(cmd, key):
            partial.write_bytes(b"half")
            return exit_failure(1)

        generator = ProxyGenerator(temp_output_dir, FakeRunner(result_for=fail), path_exists=lambda p: False)

        result = await generator.generate(video_media("a"))

        assert not result.success
        assert result.error == "FFmpeg exited with code 1: Invalid argument"
        assert not partial.exists()
