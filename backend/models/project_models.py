"""
Pydantic models for the editor's project document.

The project document is what the store mutates and the gateway persists:
- ProjectSettings, the asset library and a Timeline of video/audio tracks
- Transient view state (selection, playhead, play flag, zoom)
- TrackedState, the partition of the document recorded by undo/redo

Attributes are snake_case in Python. On the wire every key is camelCase
(``assetLibrary``, ``videoTracks``, ``selectedClipIds``...) and both spellings
are accepted on input.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


DEFAULT_CLIP_DURATION = 5.0
MIN_TIMELINE_SCALE = 10.0
MAX_TIMELINE_SCALE = 200.0


# =============================================================================
# ENUMS
# =============================================================================


class AssetType(str, Enum):
    """Kind of media an asset holds."""
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


class TrackKind(str, Enum):
    """Type of track content."""
    VIDEO = "video"
    AUDIO = "audio"


class DocumentModel(BaseModel):
    """Base for every document model: camelCase aliases, enums stored as values."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )


# =============================================================================
# ASSETS
# =============================================================================


class Asset(DocumentModel):
    """
    A media file available to the project.

    Clips reference assets by ``asset_id`` only; removing an asset leaves
    those references dangling.
    """
    asset_id: str = Field(description="Unique asset identifier")
    file_name: str = Field(description="Original file name")
    type: AssetType = Field(description="image, video or audio")
    source_url: str | None = None
    thumbnail_url: str | None = None
    filmstrip_url: str | None = Field(
        default=None,
        description="Tiled filmstrip image for video assets"
    )
    filmstrip_frame_count: int | None = None
    filmstrip_frame_width: int | None = None
    filmstrip_frame_height: int | None = None
    duration: float | None = Field(default=None, description="Media length in seconds")
    is_placeholder: bool = False
    placeholder_description: str | None = None


class AssetPatch(DocumentModel):
    """Merge-patch for an Asset. Only fields that were set are applied."""
    asset_id: str | None = None
    file_name: str | None = None
    type: AssetType | None = None
    source_url: str | None = None
    thumbnail_url: str | None = None
    filmstrip_url: str | None = None
    filmstrip_frame_count: int | None = None
    filmstrip_frame_width: int | None = None
    filmstrip_frame_height: int | None = None
    duration: float | None = None
    is_placeholder: bool | None = None
    placeholder_description: str | None = None


# =============================================================================
# CLIP PROPERTIES
# =============================================================================


class Rect(DocumentModel):
    x: float
    y: float
    scale: float


class Position(DocumentModel):
    x: float
    y: float


class Animation(DocumentModel):
    """Ken Burns pan/zoom between two framing rectangles."""
    type: Literal["ken_burns"] = "ken_burns"
    start_rect: Rect
    end_rect: Rect


class Transition(DocumentModel):
    """Transition into the clip."""
    type: Literal["cross_dissolve"] = "cross_dissolve"
    duration: float = Field(ge=0)


class TextOverlay(DocumentModel):
    """Text drawn over a clip, timed relative to the clip start."""
    text: str
    start_time: float
    duration: float
    position: Position


class Clip(DocumentModel):
    """
    A timed placement of an asset on a track.

    ``start_time`` is the position on the timeline in seconds; the clip
    covers ``[start_time, start_time + duration)``.
    """
    clip_id: str = Field(description="Unique clip identifier")
    asset_id: str = Field(description="Weak reference to an Asset")
    start_time: float = Field(ge=0, description="Timeline position in seconds")
    duration: float = Field(gt=0, description="Length in seconds")
    volume: float = Field(default=1.0, ge=0, le=1)
    animation: Animation | None = None
    transition: Transition | None = None
    text_overlays: list[TextOverlay] = Field(default_factory=list)

    @property
    def end_time(self) -> float:
        """Exclusive end of the clip on the timeline."""
        return self.start_time + self.duration


class ClipPatch(DocumentModel):
    """Merge-patch for a Clip. Only fields that were set are applied."""
    clip_id: str | None = None
    asset_id: str | None = None
    start_time: float | None = None
    duration: float | None = None
    volume: float | None = None
    animation: Animation | None = None
    transition: Transition | None = None
    text_overlays: list[TextOverlay] | None = None


# =============================================================================
# TIMELINE
# =============================================================================


@dataclass(frozen=True)
class ClipLocation:
    """Where a clip sits: track kind, track index and position in the track."""
    kind: TrackKind
    track_index: int
    position: int
    clip: Clip


class Timeline(DocumentModel):
    """
    Video and audio tracks, each an ordered list of clips.

    Track lists grow on demand: addressing track ``k`` of a kind pads that
    kind's list with empty tracks up to and including ``k``. Clips on one
    track may overlap.
    """
    video_tracks: list[list[Clip]] = Field(default_factory=lambda: [[]])
    audio_tracks: list[list[Clip]] = Field(default_factory=lambda: [[]])

    def tracks(self, kind: TrackKind | str) -> list[list[Clip]]:
        """Get the track list for a kind."""
        if TrackKind(kind) == TrackKind.VIDEO:
            return self.video_tracks
        return self.audio_tracks

    def ensure_track(self, kind: TrackKind | str, index: int) -> list[Clip]:
        """Return track ``index`` of ``kind``, padding with empty tracks as needed."""
        tracks = self.tracks(kind)
        if len(tracks) <= index:
            tracks.extend([] for _ in range(index + 1 - len(tracks)))
        return tracks[index]

    def iter_tracks(self) -> Iterator[tuple[TrackKind, int, list[Clip]]]:
        """Yield (kind, index, track), all video tracks before audio tracks."""
        for kind in (TrackKind.VIDEO, TrackKind.AUDIO):
            for index, track in enumerate(self.tracks(kind)):
                yield kind, index, track

    def iter_clips(self) -> Iterator[Clip]:
        for _, _, track in self.iter_tracks():
            yield from track

    def find_clip(self, clip_id: str) -> ClipLocation | None:
        """Locate a clip, scanning video tracks first, then audio tracks."""
        for kind, track_index, track in self.iter_tracks():
            for position, clip in enumerate(track):
                if clip.clip_id == clip_id:
                    return ClipLocation(kind, track_index, position, clip)
        return None


# =============================================================================
# PROJECT DOCUMENT
# =============================================================================


class ProjectSettings(DocumentModel):
    name: str = "Untitled Project"
    resolution: Literal["1080p", "4K"] = "1080p"
    fps: float = 30
    duration: float = Field(default=60, description="Project length in seconds")


class TrackedState(DocumentModel):
    """
    The part of the document that undo/redo covers.

    Selection, playhead, play flag and zoom are deliberately absent.
    """
    project_settings: ProjectSettings = Field(default_factory=ProjectSettings)
    asset_library: list[Asset] = Field(default_factory=list)
    timeline: Timeline = Field(default_factory=Timeline)


class ProjectDocument(TrackedState):
    """
    Complete editor state: the tracked partition plus transient view state.

    Invariant: ``selected_clip_id`` is set iff exactly one clip is selected,
    and then equals ``selected_clip_ids[0]``.
    Validation restores it: duplicate ids are dropped and ``selected_clip_id``
    is derived from ``selected_clip_ids``. A lone ``selected_clip_id`` with an
    empty list becomes a one-clip selection.
    """
    selected_clip_id: str | None = None
    selected_clip_ids: list[str] = Field(default_factory=list)
    current_time: float = Field(default=0, ge=0)
    is_playing: bool = False
    timeline_scale: float = Field(
        default=50,
        ge=MIN_TIMELINE_SCALE,
        le=MAX_TIMELINE_SCALE,
        description="Timeline zoom level"
    )

    @model_validator(mode="after")
    def normalize_selection(self) -> ProjectDocument:
        clip_ids = list(dict.fromkeys(self.selected_clip_ids))
        if not clip_ids and self.selected_clip_id:
            clip_ids = [self.selected_clip_id]
        self.selected_clip_ids = clip_ids
        self.selected_clip_id = clip_ids[0] if len(clip_ids) == 1 else None
        return self

    @classmethod
    def default(cls) -> ProjectDocument:
        """The canonical empty project."""
        return cls()

    def tracked(self) -> TrackedState:
        """Deep copy of the tracked partition."""
        return TrackedState(
            project_settings=self.project_settings.model_copy(deep=True),
            asset_library=[a.model_copy(deep=True) for a in self.asset_library],
            timeline=self.timeline.model_copy(deep=True),
        )

    def with_tracked(self, tracked: TrackedState) -> ProjectDocument:
        """New document with the tracked partition replaced, view state kept."""
        return self.model_copy(
            update={
                "project_settings": tracked.project_settings.model_copy(deep=True),
                "asset_library": [a.model_copy(deep=True) for a in tracked.asset_library],
                "timeline": tracked.timeline.model_copy(deep=True),
            }
        )

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# API REQUEST/RESPONSE MODELS
# =============================================================================


class SelectionMode(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    TOGGLE = "toggle"


class AddClipRequest(DocumentModel):
    asset_id: str
    start_time: float = Field(default=0, ge=0)
    track_type: TrackKind = TrackKind.VIDEO
    track_index: int = Field(default=0, ge=0)


class SplitClipRequest(DocumentModel):
    split_time: float


class SelectionRequest(DocumentModel):
    clip_ids: list[str] = Field(default_factory=list)


class MoveSelectionRequest(DocumentModel):
    delta: float


class PlaybackRequest(DocumentModel):
    current_time: float | None = None
    is_playing: bool | None = None
    timeline_scale: float | None = None


class BatchCommand(DocumentModel):
    op: str = Field(description="Store command name, e.g. add_asset")
    args: dict[str, Any] = Field(default_factory=dict)


class BatchRequest(DocumentModel):
    commands: list[BatchCommand] = Field(default_factory=list)


class RestoreRequest(DocumentModel):
    project_id: str | None = None


class HistoryStatus(DocumentModel):
    can_undo: bool
    can_redo: bool
    history_size: int
    future_size: int


class ProjectResponse(DocumentModel):
    ok: bool
    project: ProjectDocument
    history: HistoryStatus


class ProjectSummary(DocumentModel):
    project_id: str
    project_name: str
    last_modified: datetime
    created_at: datetime


class ProjectListResponse(DocumentModel):
    ok: bool
    projects: list[ProjectSummary]
