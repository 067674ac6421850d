from render_core.preview.chunk_cache import Chunk, ChunkCache, ChunkStatus
from render_core.preview.engine import PlaybackInfo, PreviewEngine
from render_core.preview.pipeline import PipelineResult, PipelineStatus, PreviewPipeline
from render_core.preview.scheduler import ChunkScheduler, RenderPriority

__all__ = [
    "Chunk",
    "ChunkCache",
    "ChunkScheduler",
    "ChunkStatus",
    "PipelineResult",
    "PipelineStatus",
    "PlaybackInfo",
    "PreviewEngine",
    "PreviewPipeline",
    "RenderPriority",
]
