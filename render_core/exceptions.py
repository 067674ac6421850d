"""Custom exceptions for render_core.

Every error carries a machine-readable code so callers (an editor UI, a job
queue) can react without parsing messages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from render_core.render.runner import RunResult


class RenderCoreError(Exception):
    """Base exception for all render_core errors."""

    code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging or transport."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Compile Errors
# =============================================================================


class CompileError(RenderCoreError):
    """The filter graph could not be built for the requested window."""

    code = "COMPILE_FAILED"
    message = "Failed to compile filter graph"

    def __init__(self, diagnostics: list[str]):
        self.diagnostics = list(diagnostics)
        message = "; ".join(self.diagnostics) if self.diagnostics else self.message
        super().__init__(message, details={"diagnostics": self.diagnostics})


class NothingToRenderError(RenderCoreError):
    """The window holds no clips and has no duration."""

    code = "NOTHING_TO_RENDER"
    message = "Nothing to render"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


# =============================================================================
# Process Errors
# =============================================================================


class ProcessError(RenderCoreError):
    """Base class for engine subprocess failures."""

    code = "PROCESS_FAILED"
    message = "Render process failed"

    def __init__(self, message: str | None = None, *, result: RunResult | None = None):
        self.result = result
        details = result.to_dict() if result is not None else None
        super().__init__(message, details=details)


class ProcessSpawnError(ProcessError):
    """The engine binary could not be started."""

    code = "PROCESS_SPAWN_FAILED"
    message = "Failed to start render process"


class ProcessExitError(ProcessError):
    """The engine exited with a nonzero status."""

    code = "PROCESS_EXIT_FAILED"
    message = "Render process exited with an error"

    def __init__(self, exit_code: int | None, stderr_tail: str = "", *, result: RunResult | None = None):
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        message = f"FFmpeg exited with code {exit_code}"
        if stderr_tail:
            message = f"{message}: {stderr_tail}"
        super().__init__(message, result=result)


class RenderCancelledError(ProcessError):
    """The render was cancelled before it finished."""

    code = "RENDER_CANCELLED"
    message = "Render cancelled"


# =============================================================================
# Cache Errors
# =============================================================================


class ChunkNotFoundError(RenderCoreError):
    """Chunk index outside the current partition."""

    code = "CHUNK_NOT_FOUND"
    message = "Chunk not found"

    def __init__(self, index: int | None = None):
        message = f"Chunk not found: {index}" if index is not None else self.message
        super().__init__(message, details={"index": index})


class InvalidChunkTransitionError(RenderCoreError):
    """A status change the chunk state machine does not allow."""

    code = "INVALID_CHUNK_TRANSITION"
    message = "Invalid chunk state transition"

    def __init__(self, index: int, current: str, target: str):
        self.index = index
        self.current = current
        self.target = target
        super().__init__(
            f"Chunk {index} cannot move from {current} to {target}",
            details={"index": index, "from": current, "to": target},
        )


class ManifestError(RenderCoreError):
    """The cache manifest could not be read or written."""

    code = "MANIFEST_ERROR"
    message = "Cache manifest error"


# =============================================================================
# Media Errors
# =============================================================================


class MediaProbeError(RenderCoreError):
    """ffprobe failed or returned unusable output."""

    code = "MEDIA_PROBE_FAILED"
    message = "Failed to probe media file"
