"""Proxy media generation.

Proxies are downscaled copies of source videos that decode fast enough for
preview rendering. They live at ``{proxy_dir}/{media_id}_proxy.mp4``.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional

from render_core.config import get_settings
from render_core.render.commands import build_proxy_command
from render_core.render.progress import ProgressUpdate
from render_core.render.runner import ProcessRunner
from render_core.render.timeline_slice import PathExists
from render_core.schemas.timeline import MediaItem, Timeline

logger = logging.getLogger(__name__)

PROXY_JOB_PREFIX = "proxy-"


@dataclass
class ProxyResult:
    media_id: str
    success: bool
    proxy_path: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False
    skipped: bool = False


def media_ids_in_use(timeline: Timeline) -> list[str]:
    """Media ids referenced by enabled clips, in first-use order."""
    seen: dict[str, None] = {}
    for clip in timeline.clips(enabled_only=True):
        if clip.media_id:
            seen.setdefault(clip.media_id, None)
    return list(seen)


def sanitize_proxy_paths(
    media: Mapping[str, MediaItem],
    path_exists: PathExists = os.path.exists,
) -> dict[str, MediaItem]:
    """Drop proxy paths whose file has disappeared."""
    result = {}
    for media_id, item in media.items():
        if item.proxy_path and not path_exists(item.proxy_path):
            logger.warning(f"[PROXY] Proxy missing for {media_id}, falling back to source: {item.proxy_path}")
            item = item.with_proxy(None)
        result[media_id] = item
    return result


class ProxyGenerator:
    """Creates proxy files through the process runner."""

    def __init__(
        self,
        proxy_dir: str | Path | None = None,
        runner: Optional[ProcessRunner] = None,
        *,
        scale: Optional[float] = None,
        path_exists: PathExists = os.path.exists,
    ):
        settings = get_settings()
        self.proxy_dir = Path(proxy_dir or settings.preview_proxy_dir)
        self.runner = runner or ProcessRunner()
        self.scale = scale or settings.preview_proxy_scale
        self.ffmpeg_path = settings.ffmpeg_path
        self.path_exists = path_exists

    def proxy_path_for(self, media_id: str) -> Path:
        return self.proxy_dir / f"{media_id}_proxy.mp4"

    def needs_proxy(self, item: MediaItem) -> bool:
        if item.type != "video":
            return False
        return not (item.proxy_path and self.path_exists(item.proxy_path))

    @staticmethod
    def job_key(media_id: str) -> str:
        return f"{PROXY_JOB_PREFIX}{media_id}"

    async def generate(
        self,
        item: MediaItem,
        on_progress: Optional[Callable[[ProgressUpdate], None]] = None,
    ) -> ProxyResult:
        """Create the proxy for ``item``; an existing file is reused."""
        proxy_path = self.proxy_path_for(item.id)
        if self.path_exists(str(proxy_path)):
            logger.info(f"[PROXY] Reusing existing proxy for {item.id}")
            return ProxyResult(media_id=item.id, success=True, proxy_path=str(proxy_path), skipped=True)

        self.proxy_dir.mkdir(parents=True, exist_ok=True)
        cmd = build_proxy_command(item.path, str(proxy_path), self.scale, ffmpeg_path=self.ffmpeg_path)
        logger.info(f"[PROXY] Generating proxy for {item.id}: {proxy_path}")
        result = await self.runner.run(
            cmd,
            key=self.job_key(item.id),
            duration=item.duration or None,
            on_progress=on_progress,
        )
        if result.cancelled:
            Path(proxy_path).unlink(missing_ok=True)
            return ProxyResult(media_id=item.id, success=False, cancelled=True, error="Cancelled")
        if not result.success:
            Path(proxy_path).unlink(missing_ok=True)
            logger.error(f"[PROXY] Proxy generation failed for {item.id}: {result.error}")
            return ProxyResult(media_id=item.id, success=False, error=result.error)
        return ProxyResult(media_id=item.id, success=True, proxy_path=str(proxy_path))
