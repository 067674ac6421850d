from render_core.schemas.export import ExportSettings
from render_core.schemas.preview import CacheManifest, ChunkManifestEntry, PipelineProgress
from render_core.schemas.timeline import (
    AudioClip,
    Clip,
    Effect,
    MediaItem,
    MediaMetadata,
    RenderSettings,
    RenderWindow,
    Timeline,
    Track,
    VideoClip,
)

__all__ = [
    "AudioClip",
    "CacheManifest",
    "ChunkManifestEntry",
    "Clip",
    "Effect",
    "ExportSettings",
    "MediaItem",
    "MediaMetadata",
    "PipelineProgress",
    "RenderSettings",
    "RenderWindow",
    "Timeline",
    "Track",
    "VideoClip",
]
