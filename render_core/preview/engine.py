"""Chunked preview engine.

Keeps a cache of pre-rendered chunks in sync with an edited timeline:

- ``initialize`` partitions the timeline and restores any cached chunks
- ``update_timeline`` re-hashes every chunk after an edit and invalidates the
  ones whose content changed
- chunks needing a render are fed to the scheduler, which renders them with
  the overlay compositor through the process runner
- ``get_playback_info`` tells the player whether a rendered chunk exists
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from render_core.config import get_settings
from render_core.exceptions import RenderCoreError
from render_core.preview.chunk_cache import Chunk, ChunkCache, ChunkStatus
from render_core.preview.complexity import analyze_segment_complexity
from render_core.preview.hashing import chunk_content_hash
from render_core.preview.scheduler import ChunkRenderResult, ChunkScheduler, RenderPriority
from render_core.render.commands import (
    CHUNK_PROFILE,
    build_concat_command,
    build_concat_list,
    build_preview_command,
)
from render_core.render.layer_compositor import compile_overlay
from render_core.render.runner import ProcessRunner, RunResult
from render_core.render.timeline_slice import PathExists
from render_core.schemas.timeline import MediaItem, RenderSettings, Timeline

logger = logging.getLogger(__name__)

CHUNK_JOB_PREFIX = "chunk-"


@dataclass
class PlaybackInfo:
    """How the player should present a given time."""

    mode: str  # "chunk" or "realtime"
    chunk_index: Optional[int] = None
    chunk_path: Optional[str] = None
    chunk_start_time: float = 0.0
    is_complex: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "chunk_index": self.chunk_index,
            "chunk_path": self.chunk_path,
            "chunk_start_time": self.chunk_start_time,
            "is_complex": self.is_complex,
        }


class PreviewEngine:
    """Owns the chunk cache and scheduler for one open project.

    Methods that queue renders must be called from the running event loop.
    """

    def __init__(
        self,
        cache_dir: str | Path | None = None,
        *,
        runner: Optional[ProcessRunner] = None,
        render_settings: Optional[RenderSettings] = None,
        chunk_duration: Optional[float] = None,
        max_concurrent: Optional[int] = None,
        path_exists: PathExists = os.path.exists,
    ):
        settings = get_settings()
        self.runner = runner or ProcessRunner()
        self.render_settings = render_settings or RenderSettings.from_settings(settings)
        self.path_exists = path_exists
        self.ffmpeg_path = settings.ffmpeg_path
        self.prefetch_radius = settings.preview_prefetch_radius
        self.cache = ChunkCache(
            cache_dir or settings.preview_cache_dir,
            chunk_duration,
            render_settings=self.render_settings,
        )
        self.scheduler = ChunkScheduler(self.cache, self.render_chunk, max_concurrent)
        self.timeline = Timeline()
        self.media: dict[str, MediaItem] = {}
        self._inflight_hashes: dict[int, str] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(
        self,
        timeline: Timeline,
        media: Mapping[str, MediaItem],
        *,
        project_path: Optional[str] = None,
        project_mtime: Optional[float] = None,
    ) -> list[Chunk]:
        """Partition the timeline, restore cached chunks and queue the rest."""
        self.timeline = timeline
        self.media = dict(media)
        self.cache.open(project_path, timeline.duration, project_mtime=project_mtime)
        self._reconcile()
        self._queue_pending()
        return self.cache.chunks

    def update_timeline(
        self,
        timeline: Timeline,
        media: Optional[Mapping[str, MediaItem]] = None,
        render_settings: Optional[RenderSettings] = None,
    ) -> list[int]:
        """Apply an edit. Returns the indices of chunks that need a new render."""
        self.timeline = timeline
        if media is not None:
            self.media = dict(media)
        settings_changed = False
        if render_settings is not None:
            self.render_settings = render_settings
            settings_changed = self.cache.apply_render_settings(render_settings)
            if settings_changed:
                logger.info("[PREVIEW] Render settings changed, all chunks invalidated")
        if timeline.duration != self.cache.total_duration:
            self.cache.initialize(timeline.duration)
        self._reconcile()
        self._queue_pending(RenderPriority.HIGH, retry_errors=settings_changed)
        return [c.index for c in self.cache.needing_render()]

    def _chunk_hash(self, chunk: Chunk) -> str:
        return chunk_content_hash(
            self.timeline, self.media, chunk.window, use_proxies=True, path_exists=self.path_exists
        )

    def _reconcile(self) -> list[int]:
        """Invalidate chunks whose cached or in-flight content no longer matches the timeline."""
        changed = []
        for chunk in self.cache.chunks:
            if chunk.status is ChunkStatus.VALID:
                rendered_hash = chunk.content_hash
            elif chunk.status is ChunkStatus.RENDERING:
                rendered_hash = self._inflight_hashes.get(chunk.index)
                if rendered_hash is None:
                    # Job not started yet; it hashes the timeline it renders.
                    continue
            else:
                continue
            if rendered_hash != self._chunk_hash(chunk):
                changed.extend(self.cache.invalidate(chunk.start, chunk.end))
        return changed

    def _queue_pending(
        self, priority: RenderPriority = RenderPriority.NORMAL, *, retry_errors: bool = False
    ) -> None:
        for chunk in self.cache.chunks:
            if chunk.status in (ChunkStatus.MISSING, ChunkStatus.STALE):
                self.scheduler.queue(chunk.index, priority)
            elif chunk.status is ChunkStatus.ERROR:
                # Retried once the content it failed on has changed.
                if retry_errors or chunk.failed_hash != self._chunk_hash(chunk):
                    if self.scheduler.queue(chunk.index, priority):
                        logger.info(f"[PREVIEW] Retrying failed chunk {chunk.index}")
            elif chunk.status is ChunkStatus.RENDERING and not self.scheduler.is_active(chunk.index):
                # Left behind by a cancelled job.
                self.scheduler.queue(chunk.index, priority)

    def invalidate_range(self, start: float, end: float) -> list[int]:
        """Explicit invalidation from the editing layer; re-renders at high priority."""
        affected = self.cache.invalidate(start, end)
        self._queue_pending(RenderPriority.HIGH)
        return affected

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    async def render_chunk(self, chunk: Chunk) -> ChunkRenderResult:
        """Compile and encode one chunk. Used as the scheduler's worker."""
        content_hash = self._chunk_hash(chunk)
        self._inflight_hashes[chunk.index] = content_hash
        try:
            return await self._render_chunk(chunk, content_hash)
        finally:
            if self._inflight_hashes.get(chunk.index) == content_hash:
                del self._inflight_hashes[chunk.index]

    async def _render_chunk(self, chunk: Chunk, content_hash: str) -> ChunkRenderResult:
        complexity = analyze_segment_complexity(self.timeline, chunk.start, chunk.end)
        try:
            compiled = compile_overlay(
                self.timeline,
                self.media,
                self.render_settings,
                chunk.window,
                use_proxies=True,
                path_exists=self.path_exists,
            )
        except RenderCoreError as e:
            return ChunkRenderResult(
                index=chunk.index, success=False, error=e.message, content_hash=content_hash
            )

        output_path = self.cache.chunk_output_path(chunk.index, content_hash)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = build_preview_command(compiled, str(output_path), CHUNK_PROFILE, ffmpeg_path=self.ffmpeg_path)
        logger.info(f"[CHUNK] Rendering chunk {chunk.index} ({chunk.start:.2f}-{chunk.end:.2f}s)")

        result: RunResult = await self.runner.run(
            cmd, key=f"{CHUNK_JOB_PREFIX}{chunk.index}", duration=chunk.duration
        )
        if result.cancelled:
            return ChunkRenderResult(index=chunk.index, success=False, cancelled=True)
        if not result.success:
            logger.error(f"[CHUNK] Chunk {chunk.index} failed: {result.error}")
            return ChunkRenderResult(
                index=chunk.index, success=False, error=result.error, content_hash=content_hash
            )
        return ChunkRenderResult(
            index=chunk.index,
            success=True,
            output_path=str(output_path),
            content_hash=content_hash,
            is_complex=complexity.is_complex,
        )

    def prioritize_chunks_near(self, time_s: float, radius: Optional[int] = None) -> list[int]:
        """Move chunks around the playhead to the front of the queue, nearest first."""
        center = self.cache.index_at(time_s)
        if center is None:
            return []
        radius = self.prefetch_radius if radius is None else radius
        nearby = [
            c for c in self.cache.chunks
            if abs(c.index - center) <= radius
            and c.status in (ChunkStatus.MISSING, ChunkStatus.STALE, ChunkStatus.ERROR)
        ]
        nearby.sort(key=lambda c: (abs(c.index - center), c.index))
        moved = []
        for chunk in nearby:
            if self.scheduler.reprioritize(chunk.index, RenderPriority.HIGH) or self.scheduler.queue(
                chunk.index, RenderPriority.HIGH
            ):
                moved.append(chunk.index)
        return moved

    def get_playback_info(self, time_s: float) -> PlaybackInfo:
        index = self.cache.index_at(time_s)
        if index is None:
            return PlaybackInfo(mode="realtime")
        chunk = self.cache.get(index)
        if chunk.status is ChunkStatus.VALID and chunk.output_path and self.path_exists(chunk.output_path):
            return PlaybackInfo(
                mode="chunk",
                chunk_index=index,
                chunk_path=chunk.output_path,
                chunk_start_time=chunk.start,
                is_complex=chunk.is_complex,
            )
        return PlaybackInfo(
            mode="realtime",
            chunk_index=index,
            chunk_start_time=chunk.start,
            is_complex=analyze_segment_complexity(self.timeline, chunk.start, chunk.end).is_complex,
        )

    async def wait_idle(self) -> None:
        await self.scheduler.wait_idle()

    async def cancel_all_chunks(self) -> None:
        """Stop every chunk render and empty the queue. Chunk statuses are not touched."""
        await self.scheduler.cancel_all()
        await self.runner.registry.cancel_all(prefix=CHUNK_JOB_PREFIX)

    async def assemble_full_preview(self, output_path: str | Path) -> Optional[RunResult]:
        """Join valid chunks into one file with the concat demuxer.

        Returns None when any chunk is not valid yet.
        """
        chunks = self.cache.chunks
        if not chunks or any(c.status is not ChunkStatus.VALID or not c.output_path for c in chunks):
            return None
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        list_path = self.cache.cache_dir / "concat_list.txt"
        list_path.write_text(build_concat_list([c.output_path for c in chunks]), encoding="utf-8")
        cmd = build_concat_command(str(list_path), str(output_path), ffmpeg_path=self.ffmpeg_path)
        logger.info(f"[CHUNK] Concatenating {len(chunks)} chunks into {output_path}")
        return await self.runner.run(cmd, key="preview-concat")

    async def clear_cache(self) -> None:
        await self.cancel_all_chunks()
        self.cache.clear_all()

    def stats(self) -> dict[str, Any]:
        return {**self.cache.stats(), **self.scheduler.status()}
