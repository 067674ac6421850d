"""Schemas for the chunk cache manifest and preview pipeline reporting."""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

MANIFEST_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Cache Manifest
# =============================================================================


class ChunkManifestEntry(BaseModel):
    """A rendered chunk file recorded on disk."""
    index: int = Field(..., ge=0)
    content_hash: str
    file_name: str
    is_complex: bool = False


class CacheManifest(BaseModel):
    """Persisted record of valid chunk files for one project."""
    version: int = MANIFEST_VERSION
    project_hash: str
    project_mtime: float | None = None
    chunk_duration: float
    total_duration: float
    resolution: tuple[int, int]
    frame_rate: float
    chunks: list[ChunkManifestEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def entry_for(self, index: int) -> ChunkManifestEntry | None:
        for entry in self.chunks:
            if entry.index == index:
                return entry
        return None


# =============================================================================
# Pipeline Progress
# =============================================================================

PipelinePhase = Literal["proxy", "render"]


class PipelineProgress(BaseModel):
    """Unified progress report across the proxy and render phases."""
    phase: PipelinePhase
    overall_percent: float = Field(..., ge=0, le=100)
    phase_percent: float = Field(..., ge=0, le=100)
    current_task: str = ""
