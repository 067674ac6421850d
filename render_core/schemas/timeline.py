from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


# =============================================================================
# Media
# =============================================================================

MediaType = Literal["video", "audio", "image"]


class MediaMetadata(BaseModel):
    """Probed stream properties. Any field may be unknown."""
    model_config = ConfigDict(frozen=True)

    width: int | None = None
    height: int | None = None
    frame_rate: float | None = None


class MediaItem(BaseModel):
    """A source file referenced by clips.

    Immutable once probed. The proxy path is the only thing that changes
    afterwards, through ``with_proxy``.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    type: MediaType
    path: str
    proxy_path: str | None = None
    duration: float = 0.0
    metadata: MediaMetadata | None = None

    def with_proxy(self, proxy_path: str | None) -> "MediaItem":
        return self.model_copy(update={"proxy_path": proxy_path})


# =============================================================================
# Clips
# =============================================================================


class Effect(BaseModel):
    """Effect attached to a clip. Only its presence matters here."""
    model_config = ConfigDict(extra="allow")

    type: str
    enabled: bool = True


class _ClipBase(BaseModel):
    id: str
    media_id: str | None = None
    track_id: str
    timeline_start: float = Field(..., ge=0)
    duration: float = Field(..., ge=0)
    media_in: float = Field(0.0, ge=0)
    media_out: float = Field(0.0, ge=0)
    enabled: bool = True
    name: str = ""
    effects: list[Effect] = Field(default_factory=list)

    @property
    def timeline_end(self) -> float:
        return self.timeline_start + self.duration

    @property
    def label(self) -> str:
        """Human-facing identifier used in diagnostics."""
        return self.name or self.id


class VideoClip(_ClipBase):
    type: Literal["video"] = "video"


class AudioClip(_ClipBase):
    type: Literal["audio"] = "audio"


Clip = Annotated[Union[VideoClip, AudioClip], Field(discriminator="type")]


# =============================================================================
# Tracks & Timeline
# =============================================================================

TrackType = Literal["video", "audio"]


class Track(BaseModel):
    """Ordered clip container. Clips keep insertion order."""
    id: str
    type: TrackType
    name: str = ""
    clips: list[Clip] = Field(default_factory=list)
    muted: bool = False
    visible: bool = True
    volume: float = 1.0

    @model_validator(mode="after")
    def _clip_types_match_track(self) -> "Track":
        for clip in self.clips:
            if clip.type != self.type:
                raise ValueError(
                    f"Clip {clip.id} of type {clip.type} cannot live on {self.type} track {self.id}"
                )
        return self


class Timeline(BaseModel):
    """Tracks in storage order. The first video track is the topmost layer."""
    tracks: list[Track] = Field(default_factory=list)

    @property
    def video_tracks(self) -> list[Track]:
        return [t for t in self.tracks if t.type == "video"]

    @property
    def audio_tracks(self) -> list[Track]:
        return [t for t in self.tracks if t.type == "audio"]

    def clips(self, *, enabled_only: bool = False) -> list[Any]:
        result = []
        for track in self.tracks:
            for clip in track.clips:
                if enabled_only and not clip.enabled:
                    continue
                result.append(clip)
        return result

    @property
    def duration(self) -> float:
        """End of the last enabled clip, or 0 for an empty timeline."""
        ends = [clip.timeline_end for clip in self.clips(enabled_only=True)]
        return max(ends, default=0.0)


# =============================================================================
# Render parameters
# =============================================================================


class RenderWindow(BaseModel):
    """Half-open time range ``[start, end)`` on the timeline."""
    model_config = ConfigDict(frozen=True)

    start: float = Field(..., ge=0)
    end: float = Field(..., ge=0)

    @model_validator(mode="after")
    def _end_after_start(self) -> "RenderWindow":
        if self.end < self.start:
            raise ValueError(f"Window end {self.end} precedes start {self.start}")
        return self

    @property
    def duration(self) -> float:
        return self.end - self.start

    def intersects(self, start: float, end: float) -> bool:
        return start < self.end and end > self.start

    def clip_intersects(self, clip: _ClipBase) -> bool:
        return self.intersects(clip.timeline_start, clip.timeline_end)


class RenderSettings(BaseModel):
    """Output geometry and timing shared by every compositor."""
    model_config = ConfigDict(frozen=True)

    width: int = Field(1920, gt=0)
    height: int = Field(1080, gt=0)
    frame_rate: float = Field(30, gt=0)
    background_color: str = "black"
    sample_rate: int = 48000

    @property
    def resolution(self) -> tuple[int, int]:
        return (self.width, self.height)

    def scaled(self, factor: float) -> "RenderSettings":
        """Copy at a reduced resolution, rounded to even dimensions for yuv420p."""
        width = max(2, int(round(self.width * factor / 2)) * 2)
        height = max(2, int(round(self.height * factor / 2)) * 2)
        return self.model_copy(update={"width": width, "height": height})

    @classmethod
    def from_settings(cls, settings: Any) -> "RenderSettings":
        return cls(
            width=settings.render_output_width,
            height=settings.render_output_height,
            frame_rate=settings.render_fps,
            background_color=settings.render_background_color,
            sample_rate=settings.render_audio_sample_rate,
        )
