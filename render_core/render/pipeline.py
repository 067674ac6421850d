"""Final export pipeline.

Compiles the whole timeline with the overlay compositor and encodes it with
the requested codec settings. Failures raise; nothing is retried.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional
from uuid import uuid4

from render_core.config import get_settings
from render_core.exceptions import (
    NothingToRenderError,
    ProcessExitError,
    ProcessSpawnError,
    RenderCancelledError,
)
from render_core.render.commands import build_export_command
from render_core.render.layer_compositor import compile_overlay
from render_core.render.progress import ProgressUpdate
from render_core.render.runner import ProcessRunner, RunErrorKind
from render_core.schemas.export import ExportSettings
from render_core.schemas.timeline import MediaItem, RenderSettings, RenderWindow, Timeline

logger = logging.getLogger(__name__)

EXPORT_JOB_PREFIX = "export"


# ============================================================================
# Enums
# ============================================================================


class RenderStatus(Enum):
    """Render job status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ============================================================================
# Dataclasses
# ============================================================================


@dataclass
class RenderProgress:
    """Progress information for an export job."""

    job_id: str
    status: RenderStatus
    percent: float = 0.0
    current_step: Optional[str] = None
    elapsed_ms: int = 0
    eta_s: Optional[float] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "percent": self.percent,
            "current_step": self.current_step,
            "elapsed_ms": self.elapsed_ms,
            "eta_s": self.eta_s,
            "error_message": self.error_message,
        }


@dataclass
class ExportResult:
    """A finished export."""

    job_id: str
    output_path: str
    duration: float
    elapsed_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "output_path": self.output_path,
            "duration": self.duration,
            "elapsed_ms": self.elapsed_ms,
        }


# ============================================================================
# Pipeline
# ============================================================================


class ExportPipeline:
    """
    Renders a timeline to a deliverable file.

    Handles:
    - Empty-timeline rejection before any process is spawned
    - Overlay compositing of every visible track
    - Audio mixing of every audible track
    - CPU or NVENC encoding
    - Progress reporting and cancellation
    """

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        *,
        job_id: Optional[str] = None,
        render_settings: Optional[RenderSettings] = None,
    ):
        settings = get_settings()
        self.runner = runner or ProcessRunner()
        self.job_id = job_id or str(uuid4())
        self.render_settings = render_settings or RenderSettings.from_settings(settings)
        self.ffmpeg_path = settings.ffmpeg_path
        self.progress = RenderProgress(job_id=self.job_id, status=RenderStatus.PENDING)
        self._progress_callback: Any = None
        self._cancel_check: Optional[Callable[[], Any]] = None

    @property
    def job_key(self) -> str:
        return f"{EXPORT_JOB_PREFIX}-{self.job_id}"

    def set_progress_callback(self, callback: Any) -> None:
        """Set callback for progress updates."""
        self._progress_callback = callback

    def _update_progress(self, percent: float, stage: str, eta_s: Optional[float] = None) -> None:
        """Update export progress."""
        self.progress.percent = max(self.progress.percent, percent)
        self.progress.current_step = stage
        self.progress.eta_s = eta_s
        if self._progress_callback:
            self._progress_callback(self.progress)

    async def _is_cancelled(self) -> bool:
        """Check if export has been cancelled."""
        if self._cancel_check is None:
            return False
        result = self._cancel_check()
        if asyncio.iscoroutine(result):
            return await result
        return result

    async def cancel(self) -> bool:
        """Kill the running encoder, if any."""
        return await self.runner.registry.cancel(self.job_key)

    def _fail(self, message: str, status: RenderStatus = RenderStatus.FAILED) -> None:
        self.progress.status = status
        self.progress.error_message = message

    async def export(
        self,
        timeline: Timeline,
        media: Mapping[str, MediaItem],
        export_settings: ExportSettings,
        cancel_check: Optional[Callable[[], Any]] = None,
    ) -> ExportResult:
        """
        Execute the export.

        Args:
            timeline: Timeline to export
            media: Media items by id
            export_settings: Output path and encoder options
            cancel_check: Optional (async) callable returning True if cancelled

        Returns:
            ExportResult describing the written file

        Raises:
            NothingToRenderError: If the timeline has no enabled clips
            CompileError: If a clip references unknown media
            ProcessSpawnError: If ffmpeg could not be started
            ProcessExitError: If ffmpeg failed
            RenderCancelledError: If the export was cancelled
        """
        self._cancel_check = cancel_check
        started = time.monotonic()

        duration = timeline.duration
        if duration <= 0 or not timeline.clips(enabled_only=True):
            self._fail("Timeline is empty")
            raise NothingToRenderError("Timeline is empty")

        self.progress.status = RenderStatus.PROCESSING
        self._update_progress(0, "Compiling filter graph")

        compiled = compile_overlay(
            timeline,
            media,
            self.render_settings,
            RenderWindow(start=0.0, end=duration),
            use_proxies=False,
            silent_audio=False,
        )
        if not compiled.success:
            self._fail("; ".join(compiled.diagnostics))
        compiled.raise_for_diagnostics()

        if await self._is_cancelled():
            self._fail("Export cancelled", RenderStatus.CANCELLED)
            raise RenderCancelledError("Export cancelled")

        Path(export_settings.output_path).parent.mkdir(parents=True, exist_ok=True)
        cmd = build_export_command(compiled, export_settings, ffmpeg_path=self.ffmpeg_path)
        logger.info(
            f"[EXPORT] job={self.job_id} duration={duration:.3f}s inputs={len(compiled.inputs)} "
            f"output={export_settings.output_path}"
        )
        graph_text = compiled.graph.serialize(";\n")
        logger.debug(f"[EXPORT] filter_complex:\n{graph_text}")

        def on_progress(update: ProgressUpdate) -> None:
            self._update_progress(update.percent, "Encoding", update.eta_s)

        self._update_progress(1, "Encoding")
        result = await self.runner.run(
            cmd, key=self.job_key, duration=duration, on_progress=on_progress
        )

        if result.error_kind is RunErrorKind.SPAWN:
            self._fail(result.error or "spawn failed")
            raise ProcessSpawnError(result.error, result=result)
        if result.cancelled or await self._is_cancelled():
            self._fail("Export cancelled", RenderStatus.CANCELLED)
            raise RenderCancelledError("Export cancelled", result=result)
        if not result.success:
            self._fail(result.error or "export failed")
            raise ProcessExitError(result.exit_code, result.stderr_tail, result=result)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        self.progress.status = RenderStatus.COMPLETED
        self.progress.elapsed_ms = elapsed_ms
        self._update_progress(100, "Completed")
        logger.info(f"[EXPORT] job={self.job_id} completed in {elapsed_ms}ms")

        return ExportResult(
            job_id=self.job_id,
            output_path=export_settings.output_path,
            duration=duration,
            elapsed_ms=elapsed_ms,
        )
