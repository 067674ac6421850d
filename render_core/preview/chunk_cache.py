"""Chunked preview cache.

The timeline is partitioned into fixed-length windows (chunks). Each chunk
moves through an explicit state machine::

    missing --> rendering --> valid --> stale --> rendering
                    |                                ^
                    +--> error --------------------- +

Only ``mark_rendering``, ``mark_valid`` and ``mark_error`` write a chunk's
terminal fields. Invalidation only ever moves ``valid`` to ``stale``; a chunk
invalidated while rendering keeps its status and its result lands as
``stale`` so it is immediately eligible again.

Valid chunks are recorded in ``manifest.json`` next to the chunk files so a
reopened project can reuse them.
"""

import logging
import math
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from render_core.config import get_settings
from render_core.exceptions import ChunkNotFoundError, InvalidChunkTransitionError, ManifestError
from render_core.preview.hashing import project_hash
from render_core.schemas.preview import MANIFEST_VERSION, CacheManifest, ChunkManifestEntry
from render_core.schemas.timeline import RenderSettings, RenderWindow

logger = logging.getLogger(__name__)

MANIFEST_FILE_NAME = "manifest.json"


class ChunkStatus(Enum):
    MISSING = "missing"
    STALE = "stale"
    RENDERING = "rendering"
    VALID = "valid"
    ERROR = "error"


ALLOWED_TRANSITIONS: dict[ChunkStatus, set[ChunkStatus]] = {
    ChunkStatus.MISSING: {ChunkStatus.RENDERING},
    ChunkStatus.STALE: {ChunkStatus.RENDERING},
    ChunkStatus.ERROR: {ChunkStatus.RENDERING},
    ChunkStatus.VALID: {ChunkStatus.STALE, ChunkStatus.RENDERING},
    # rendering -> rendering re-admits a chunk whose job was cancelled.
    ChunkStatus.RENDERING: {ChunkStatus.VALID, ChunkStatus.STALE, ChunkStatus.ERROR, ChunkStatus.RENDERING},
}


@dataclass
class Chunk:
    """One fixed-length window of the timeline and its cached render."""

    index: int
    start: float
    end: float
    status: ChunkStatus = ChunkStatus.MISSING
    content_hash: Optional[str] = None
    output_path: Optional[str] = None
    error: Optional[str] = None
    is_complex: bool = False
    # Bumped by invalidation; compared with the value captured at render start.
    generation: int = 0
    render_generation: Optional[int] = None
    # Content hash the last failed render was attempted on.
    failed_hash: Optional[str] = None

    @property
    def window(self) -> RenderWindow:
        return RenderWindow(start=self.start, end=self.end)

    @property
    def duration(self) -> float:
        return self.end - self.start

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "start": self.start,
            "end": self.end,
            "status": self.status.value,
            "content_hash": self.content_hash,
            "output_path": self.output_path,
            "error": self.error,
            "is_complex": self.is_complex,
        }


def partition(duration: float, chunk_duration: float) -> list[tuple[float, float]]:
    """``[0, duration)`` split into windows; the last one may be shorter."""
    if duration <= 0:
        return []
    count = math.ceil(duration / chunk_duration - 1e-9)
    return [(i * chunk_duration, min((i + 1) * chunk_duration, duration)) for i in range(count)]


class ChunkCache:
    """Chunk state machine plus on-disk manifest."""

    def __init__(
        self,
        cache_dir: str | Path,
        chunk_duration: Optional[float] = None,
        *,
        render_settings: Optional[RenderSettings] = None,
    ):
        settings = get_settings()
        self.cache_dir = Path(cache_dir)
        self.chunk_duration = chunk_duration or settings.preview_chunk_duration_s
        if self.chunk_duration <= 0:
            raise ValueError("chunk_duration must be positive")
        self.render_settings = render_settings or RenderSettings.from_settings(settings)
        self.total_duration = 0.0
        self.project_hash = project_hash(None)
        self.project_mtime: Optional[float] = None
        self._chunks: list[Chunk] = []
        self._created_at = datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Partition
    # ------------------------------------------------------------------

    def initialize(self, duration: float) -> list[Chunk]:
        """Re-partition ``[0, duration)``.

        Chunks whose window is unchanged keep their state; new windows start
        missing and windows past the new end are dropped.
        """
        previous = {(c.start, c.end): c for c in self._chunks}
        chunks = []
        for index, (start, end) in enumerate(partition(duration, self.chunk_duration)):
            kept = previous.pop((start, end), None)
            if kept is not None:
                kept.index = index
                chunks.append(kept)
            else:
                chunks.append(Chunk(index=index, start=start, end=end))
        for dropped in previous.values():
            self._remove_file(dropped)
        self._chunks = chunks
        self.total_duration = max(0.0, duration)
        logger.info(f"[CACHE] Partitioned {duration:.3f}s into {len(chunks)} chunks of {self.chunk_duration}s")
        self.save_manifest()
        return self.chunks

    @property
    def chunks(self) -> list[Chunk]:
        return list(self._chunks)

    def get(self, index: int) -> Chunk:
        if not 0 <= index < len(self._chunks):
            raise ChunkNotFoundError(index)
        return self._chunks[index]

    def index_at(self, time_s: float) -> Optional[int]:
        if time_s < 0 or time_s >= self.total_duration:
            return None
        index = min(int(time_s // self.chunk_duration), len(self._chunks) - 1)
        return index if index >= 0 else None

    def needing_render(self) -> list[Chunk]:
        return [c for c in self._chunks if c.status in (ChunkStatus.MISSING, ChunkStatus.STALE)]

    def chunk_output_path(self, index: int, content_hash: str) -> Path:
        return self.cache_dir / f"chunk-{index}-{content_hash[:8]}.mp4"

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def _invalidate_chunk(self, chunk: Chunk) -> bool:
        if chunk.status is ChunkStatus.VALID:
            self._transition(chunk, ChunkStatus.STALE)
            chunk.generation += 1
            self._remove_file(chunk)
            return True
        if chunk.status is ChunkStatus.RENDERING:
            chunk.generation += 1
            return True
        return False

    def invalidate(self, start: float, end: float) -> list[int]:
        """Mark chunks intersecting ``[start, end)`` stale. Returns affected indices."""
        affected = [
            c.index
            for c in self._chunks
            if c.start < end and c.end > start and self._invalidate_chunk(c)
        ]
        if affected:
            logger.info(f"[CACHE] Invalidated {start:.3f}-{end:.3f}s: chunks {affected}")
            self.save_manifest()
        return affected

    def invalidate_all(self) -> list[int]:
        affected = [c.index for c in self._chunks if self._invalidate_chunk(c)]
        if affected:
            logger.info(f"[CACHE] Invalidated all chunks: {affected}")
            self.save_manifest()
        return affected

    def apply_render_settings(self, render_settings: RenderSettings) -> bool:
        """Adopt new output settings. Returns True when everything was invalidated."""
        changed = (
            render_settings.resolution != self.render_settings.resolution
            or render_settings.frame_rate != self.render_settings.frame_rate
            or render_settings.background_color != self.render_settings.background_color
            or render_settings.sample_rate != self.render_settings.sample_rate
        )
        self.render_settings = render_settings
        if changed:
            self.invalidate_all()
        return changed

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, chunk: Chunk, target: ChunkStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[chunk.status]:
            raise InvalidChunkTransitionError(chunk.index, chunk.status.value, target.value)
        chunk.status = target

    def mark_rendering(self, index: int) -> Chunk:
        chunk = self.get(index)
        self._transition(chunk, ChunkStatus.RENDERING)
        chunk.render_generation = chunk.generation
        chunk.error = None
        chunk.failed_hash = None
        return chunk

    def mark_valid(
        self,
        index: int,
        output_path: str | Path,
        content_hash: Optional[str] = None,
        is_complex: Optional[bool] = None,
    ) -> Chunk:
        """Record a finished render.

        Lands ``stale`` instead of ``valid`` when the chunk was invalidated
        after its render started.
        """
        chunk = self.get(index)
        if chunk.status is not ChunkStatus.RENDERING:
            raise InvalidChunkTransitionError(index, chunk.status.value, ChunkStatus.VALID.value)
        chunk.output_path = str(output_path)
        if content_hash is not None:
            chunk.content_hash = content_hash
        if is_complex is not None:
            chunk.is_complex = is_complex
        chunk.error = None
        if chunk.render_generation != chunk.generation:
            logger.info(f"[CACHE] Chunk {index} changed while rendering, result is stale")
            self._transition(chunk, ChunkStatus.STALE)
            self._remove_file(chunk)
        else:
            self._transition(chunk, ChunkStatus.VALID)
        chunk.render_generation = None
        self.save_manifest()
        return chunk

    def mark_error(self, index: int, message: str, content_hash: Optional[str] = None) -> Chunk:
        chunk = self.get(index)
        self._transition(chunk, ChunkStatus.ERROR)
        chunk.error = message
        chunk.failed_hash = content_hash
        chunk.render_generation = None
        self.save_manifest()
        return chunk

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @property
    def manifest_path(self) -> Path:
        return self.cache_dir / MANIFEST_FILE_NAME

    def _build_manifest(self) -> CacheManifest:
        entries = [
            ChunkManifestEntry(
                index=c.index,
                content_hash=c.content_hash,
                file_name=Path(c.output_path).name,
                is_complex=c.is_complex,
            )
            for c in self._chunks
            if c.status is ChunkStatus.VALID and c.output_path and c.content_hash
        ]
        return CacheManifest(
            version=MANIFEST_VERSION,
            project_hash=self.project_hash,
            project_mtime=self.project_mtime,
            chunk_duration=self.chunk_duration,
            total_duration=self.total_duration,
            resolution=self.render_settings.resolution,
            frame_rate=self.render_settings.frame_rate,
            chunks=entries,
            created_at=self._created_at,
            updated_at=datetime.now(timezone.utc),
        )

    def save_manifest(self) -> None:
        """Write the manifest atomically."""
        manifest = self._build_manifest()
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            tmp_path = self.manifest_path.with_suffix(".json.tmp")
            tmp_path.write_text(manifest.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp_path, self.manifest_path)
        except OSError as e:
            raise ManifestError(f"Failed to write manifest {self.manifest_path}: {e}") from e

    def load_manifest(self) -> Optional[CacheManifest]:
        """Read the manifest; None when absent or unreadable."""
        if not self.manifest_path.exists():
            return None
        try:
            return CacheManifest.model_validate_json(self.manifest_path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning(f"[CACHE] Ignoring unreadable manifest {self.manifest_path}: {e}")
            return None

    def can_reuse(self, manifest: CacheManifest) -> bool:
        return (
            manifest.version == MANIFEST_VERSION
            and manifest.project_hash == self.project_hash
            and tuple(manifest.resolution) == self.render_settings.resolution
            and manifest.frame_rate == self.render_settings.frame_rate
            and manifest.chunk_duration == self.chunk_duration
        )

    def open(
        self,
        project_path: Optional[str],
        duration: float,
        *,
        project_mtime: Optional[float] = None,
    ) -> list[Chunk]:
        """Partition ``duration`` and restore valid chunks recorded on disk.

        Restored chunks carry their recorded content hash; callers compare it
        against the current timeline and invalidate mismatches.
        """
        self.project_hash = project_hash(project_path)
        self.project_mtime = project_mtime
        self._chunks = []
        manifest = self.load_manifest()
        if manifest is not None and manifest.created_at:
            self._created_at = manifest.created_at

        chunks = [Chunk(index=i, start=s, end=e) for i, (s, e) in enumerate(partition(duration, self.chunk_duration))]
        restored = 0
        if manifest is not None and self.can_reuse(manifest):
            for entry in manifest.chunks:
                if entry.index >= len(chunks):
                    continue
                path = self.cache_dir / entry.file_name
                if not path.exists():
                    continue
                chunk = chunks[entry.index]
                chunk.status = ChunkStatus.VALID
                chunk.content_hash = entry.content_hash
                chunk.output_path = str(path)
                chunk.is_complex = entry.is_complex
                restored += 1
        elif manifest is not None:
            logger.warning("[CACHE] Manifest does not match current project settings, discarding cache")
            self._clear_files()
            self._created_at = datetime.now(timezone.utc)

        self._chunks = chunks
        self.total_duration = max(0.0, duration)
        logger.info(f"[CACHE] Opened cache with {len(chunks)} chunks, {restored} restored from manifest")
        self.save_manifest()
        return self.chunks

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def _remove_file(self, chunk: Chunk) -> None:
        if chunk.output_path:
            Path(chunk.output_path).unlink(missing_ok=True)
            chunk.output_path = None

    def _clear_files(self) -> None:
        if not self.cache_dir.exists():
            return
        for path in self.cache_dir.glob("chunk-*.mp4"):
            path.unlink(missing_ok=True)

    def clear_all(self) -> None:
        """Delete every chunk file and reset all chunks to missing."""
        self._clear_files()
        for chunk in self._chunks:
            if chunk.status is not ChunkStatus.RENDERING:
                chunk.status = ChunkStatus.MISSING
                chunk.content_hash = None
                chunk.error = None
            else:
                chunk.generation += 1
            chunk.output_path = None
        self.save_manifest()
        logger.info(f"[CACHE] Cleared {self.cache_dir}")

    def stats(self) -> dict[str, Any]:
        counts = {status.value: 0 for status in ChunkStatus}
        total_size = 0
        for chunk in self._chunks:
            counts[chunk.status.value] += 1
            if chunk.status is ChunkStatus.VALID and chunk.output_path:
                try:
                    total_size += os.path.getsize(chunk.output_path)
                except OSError:
                    continue
        return {
            "total_chunks": len(self._chunks),
            "cached_chunks": counts[ChunkStatus.VALID.value],
            "by_status": counts,
            "total_size": total_size,
        }
