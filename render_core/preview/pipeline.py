"""Full-timeline fast preview.

Two phases behind one progress bar:

1. Proxy: every referenced video without a usable proxy gets one
2. Render: the whole timeline at reduced resolution through the concat
   compositor (overlay compositor when a track has overlapping clips)

``overall_percent`` never goes backwards. ``cancel`` kills whatever is
running and the run ends as cancelled, not failed.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from render_core.config import get_settings
from render_core.exceptions import RenderCoreError
from render_core.preview.proxy import PROXY_JOB_PREFIX, ProxyGenerator, media_ids_in_use, sanitize_proxy_paths
from render_core.render.commands import FULL_PREVIEW_PROFILE, build_preview_command
from render_core.render.concat_compositor import compile_concat, has_track_overlaps
from render_core.render.layer_compositor import compile_overlay
from render_core.render.progress import ProgressUpdate
from render_core.render.runner import ProcessRunner
from render_core.render.timeline_slice import PathExists
from render_core.schemas.preview import PipelinePhase, PipelineProgress
from render_core.schemas.timeline import MediaItem, RenderSettings, RenderWindow, Timeline

logger = logging.getLogger(__name__)

FULL_PREVIEW_JOB_KEY = "full-preview"

ProgressCallback = Callable[[PipelineProgress], Any]
ProxyCallback = Callable[[str, str], Any]


class PipelineStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PipelineResult:
    status: PipelineStatus
    output_path: Optional[str] = None
    error: Optional[str] = None
    proxies: dict[str, str] = field(default_factory=dict)
    media: dict[str, MediaItem] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status is PipelineStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "output_path": self.output_path,
            "error": self.error,
            "proxies": dict(self.proxies),
        }


class PreviewPipeline:
    """Runs proxy generation and the full preview render as one job."""

    def __init__(
        self,
        output_dir: str | Path | None = None,
        proxy_dir: str | Path | None = None,
        *,
        runner: Optional[ProcessRunner] = None,
        render_settings: Optional[RenderSettings] = None,
        path_exists: PathExists = os.path.exists,
    ):
        settings = get_settings()
        self.output_dir = Path(output_dir or settings.preview_output_dir)
        self.runner = runner or ProcessRunner()
        self.render_settings = render_settings or RenderSettings.from_settings(settings)
        self.preview_scale = settings.preview_full_scale
        self.proxy_weight = settings.preview_proxy_phase_weight
        self.ffmpeg_path = settings.ffmpeg_path
        self.path_exists = path_exists
        self.proxies = ProxyGenerator(proxy_dir, self.runner, path_exists=path_exists)
        self._cancelled = False
        self._running = False
        self._last_percent = 0.0
        self._on_progress: Optional[ProgressCallback] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def cancel(self) -> None:
        """Stop the running pipeline; its result becomes cancelled."""
        if not self._running:
            return
        self._cancelled = True
        logger.info("[PIPELINE] Cancel requested")
        await self.runner.registry.cancel_all(prefix=PROXY_JOB_PREFIX)
        await self.runner.registry.cancel(FULL_PREVIEW_JOB_KEY)

    def _emit(self, phase: PipelinePhase, overall: float, phase_percent: float, task: str) -> None:
        self._last_percent = max(self._last_percent, min(100.0, overall))
        if self._on_progress:
            self._on_progress(
                PipelineProgress(
                    phase=phase,
                    overall_percent=self._last_percent,
                    phase_percent=max(0.0, min(100.0, phase_percent)),
                    current_task=task,
                )
            )

    def _cancelled_result(self, proxies: dict[str, str], media: dict[str, MediaItem]) -> PipelineResult:
        logger.info("[PIPELINE] Cancelled")
        return PipelineResult(status=PipelineStatus.CANCELLED, proxies=proxies, media=media)

    async def run(
        self,
        timeline: Timeline,
        media: Mapping[str, MediaItem],
        *,
        on_progress: Optional[ProgressCallback] = None,
        on_proxy_generated: Optional[ProxyCallback] = None,
    ) -> PipelineResult:
        """
        Generate missing proxies, then render the full preview.

        Args:
            timeline: Timeline to preview
            media: Media items by id
            on_progress: Receives PipelineProgress updates
            on_proxy_generated: Called with (media_id, proxy_path) per new proxy

        Returns:
            PipelineResult; ``media`` carries the items with updated proxy paths
        """
        if self._running:
            raise RuntimeError("Preview pipeline is already running")
        self._running = True
        self._cancelled = False
        self._last_percent = 0.0
        self._on_progress = on_progress
        try:
            return await self._run(timeline, dict(media), on_proxy_generated)
        finally:
            self._running = False
            self._on_progress = None

    async def _run(
        self,
        timeline: Timeline,
        media: dict[str, MediaItem],
        on_proxy_generated: Optional[ProxyCallback],
    ) -> PipelineResult:
        media = sanitize_proxy_paths(media, self.path_exists)
        proxies: dict[str, str] = {}

        pending = [
            media[mid] for mid in media_ids_in_use(timeline)
            if mid in media and self.proxies.needs_proxy(media[mid])
        ]
        render_start = self.proxy_weight * 100 if pending else 0.0

        for i, item in enumerate(pending):
            if self._cancelled:
                return self._cancelled_result(proxies, media)

            def on_proxy_progress(update: ProgressUpdate, i: int = i, item: MediaItem = item) -> None:
                phase_percent = (i + update.percent / 100) / len(pending) * 100
                self._emit("proxy", phase_percent * self.proxy_weight, phase_percent, f"Proxy: {item.id}")

            self._emit("proxy", i / len(pending) * render_start, i / len(pending) * 100, f"Proxy: {item.id}")
            result = await self.proxies.generate(item, on_progress=on_proxy_progress)
            if result.cancelled or self._cancelled:
                return self._cancelled_result(proxies, media)
            if not result.success:
                return PipelineResult(
                    status=PipelineStatus.FAILED,
                    error=f"Proxy generation failed for {item.id}: {result.error}",
                    proxies=proxies,
                    media=media,
                )
            proxies[item.id] = result.proxy_path
            media[item.id] = item.with_proxy(result.proxy_path)
            if on_proxy_generated:
                on_proxy_generated(item.id, result.proxy_path)

        if pending:
            self._emit("proxy", render_start, 100.0, "Proxies ready")
        if self._cancelled:
            return self._cancelled_result(proxies, media)

        duration = timeline.duration
        if duration <= 0:
            return PipelineResult(
                status=PipelineStatus.FAILED, error="Nothing to render", proxies=proxies, media=media
            )

        settings = self.render_settings.scaled(self.preview_scale)
        window = RenderWindow(start=0.0, end=duration)
        try:
            if has_track_overlaps(timeline):
                logger.info("[PIPELINE] Overlapping clips on a track, using overlay compositor")
                compiled = compile_overlay(
                    timeline, media, settings, window, use_proxies=True, path_exists=self.path_exists
                )
            else:
                compiled = compile_concat(
                    timeline, media, settings, window, use_proxies=True, path_exists=self.path_exists
                )
        except RenderCoreError as e:
            return PipelineResult(status=PipelineStatus.FAILED, error=e.message, proxies=proxies, media=media)
        if not compiled.success:
            return PipelineResult(
                status=PipelineStatus.FAILED,
                error="; ".join(compiled.diagnostics),
                proxies=proxies,
                media=media,
            )

        self.output_dir.mkdir(parents=True, exist_ok=True)
        output_path = self.output_dir / f"preview-{int(time.time() * 1000)}.mp4"
        cmd = build_preview_command(compiled, str(output_path), FULL_PREVIEW_PROFILE, ffmpeg_path=self.ffmpeg_path)
        render_span = 100.0 - render_start

        def on_render_progress(update: ProgressUpdate) -> None:
            self._emit("render", render_start + update.percent / 100 * render_span, update.percent, "Rendering preview")

        self._emit("render", render_start, 0.0, "Rendering preview")
        logger.info(f"[PIPELINE] Rendering full preview {settings.width}x{settings.height} to {output_path}")
        result = await self.runner.run(
            cmd, key=FULL_PREVIEW_JOB_KEY, duration=duration, on_progress=on_render_progress
        )
        if result.cancelled or self._cancelled:
            return self._cancelled_result(proxies, media)
        if not result.success:
            return PipelineResult(status=PipelineStatus.FAILED, error=result.error, proxies=proxies, media=media)

        self._emit("render", 100.0, 100.0, "Done")
        return PipelineResult(
            status=PipelineStatus.COMPLETED, output_path=str(output_path), proxies=proxies, media=media
        )
