"""Content hashes for cache validation.

A chunk hash covers exactly what the overlay compositor would read for that
window: the window itself, every intersecting clip with its layer position,
and the media file each clip resolves to.
"""

import hashlib
import json
import os
from typing import Any, Mapping, Optional

from render_core.render.timeline_slice import PathExists, resolve_media_path
from render_core.schemas.timeline import MediaItem, RenderSettings, RenderWindow, Timeline

UNSAVED_PROJECT_HASH = "unsaved-project"


def _digest(payload: Any) -> str:
    text = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def _clip_fingerprint(clip: Any) -> list[Any]:
    return [
        clip.id,
        round(clip.timeline_start, 6),
        round(clip.duration, 6),
        round(clip.media_in, 6),
        round(clip.media_out, 6),
        clip.enabled,
    ]


def chunk_content_hash(
    timeline: Timeline,
    media: Mapping[str, MediaItem],
    window: RenderWindow,
    *,
    use_proxies: bool = True,
    path_exists: PathExists = os.path.exists,
) -> str:
    """Hash of everything that affects the rendered pixels and samples of ``window``."""
    entries = []
    for position, track in enumerate(timeline.tracks):
        active = track.visible if track.type == "video" else not track.muted
        for clip in track.clips:
            if not window.clip_intersects(clip):
                continue
            item = media.get(clip.media_id) if clip.media_id else None
            source = (
                [item.id, item.type, resolve_media_path(item, use_proxies=use_proxies, path_exists=path_exists)]
                if item is not None
                else None
            )
            entries.append([
                track.id, position, track.type, active, track.volume,
                *_clip_fingerprint(clip),
                source,
            ])
    return _digest({"window": [round(window.start, 6), round(window.end, 6)], "clips": entries})


def timeline_hash(timeline: Timeline, settings: RenderSettings, duration: Optional[float] = None) -> str:
    """Hash of the whole timeline structure and output settings."""
    tracks = [
        {
            "id": track.id,
            "type": track.type,
            "muted": track.muted,
            "visible": track.visible,
            "volume": track.volume,
            "clips": [[*_clip_fingerprint(c), c.media_id] for c in track.clips],
        }
        for track in timeline.tracks
    ]
    return _digest({
        "tracks": tracks,
        "resolution": [settings.width, settings.height],
        "frame_rate": settings.frame_rate,
        "duration": round(timeline.duration if duration is None else duration, 6),
    })


def project_hash(project_path: Optional[str]) -> str:
    """Stable cache namespace for a project file."""
    if not project_path:
        return UNSAVED_PROJECT_HASH
    return hashlib.md5(project_path.encode("utf-8")).hexdigest()[:16]
